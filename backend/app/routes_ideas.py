"""
Ideas pipeline API: enqueue generation jobs, read results and run logs.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from .db import get_session
from .dependencies import get_ai_queue, get_llm_provider, get_storage
from .routes_auth import require_auth
from .schemas import GenerateArtifactRequest, GenerateIdeasRequest
from .services.ai_queue import AiQueue
from .services.ideas_read import DEFAULT_IDEAS_PAGE_LIMIT, DEFAULT_LOGS_LIMIT, IdeasReadService
from .services.ideas_service import IdeasService
from .services.llm_provider import LLMProvider
from .services.object_storage import LocalObjectStorage
from .services.prompt_generation import PromptGenerationService

router = APIRouter(prefix="/api/ideas", tags=["ideas"], dependencies=[Depends(require_auth)])


def _ideas_service(
    session: AsyncSession = Depends(get_session),
    queue: AiQueue = Depends(get_ai_queue),
    storage: LocalObjectStorage = Depends(get_storage),
) -> IdeasService:
    return IdeasService(session, queue, storage)


@router.post("/generate", status_code=202)
async def generate_ideas(body: GenerateIdeasRequest, service: IdeasService = Depends(_ideas_service)):
    return await service.enqueue_ideas(
        project_id=body.project_id,
        persona_id=body.persona_id,
        topic=body.topic,
        count=body.count,
        idea_format=body.format.value,
    )


@router.get("")
async def list_ideas(
    session: AsyncSession = Depends(get_session),
    project_id: Optional[str] = Query(None, alias="projectId"),
    limit: int = Query(DEFAULT_IDEAS_PAGE_LIMIT, ge=1, le=50),
    cursor_created_at: Optional[str] = Query(None, alias="cursorCreatedAt"),
    cursor_id: Optional[str] = Query(None, alias="cursorId"),
):
    return await IdeasReadService(session).list_ideas(project_id, limit, cursor_created_at, cursor_id)


@router.delete("")
async def clear_ideas(
    project_id: Optional[str] = Query(None, alias="projectId"),
    service: IdeasService = Depends(_ideas_service),
):
    return await service.clear_ideas(project_id)


@router.get("/logs")
async def list_logs(
    session: AsyncSession = Depends(get_session),
    project_id: Optional[str] = Query(None, alias="projectId"),
    idea_id: Optional[str] = Query(None, alias="ideaId"),
    limit: int = Query(DEFAULT_LOGS_LIMIT, ge=1, le=100),
):
    return await IdeasReadService(session).list_logs(project_id, idea_id, limit)


@router.delete("/logs")
async def clear_logs(
    project_id: Optional[str] = Query(None, alias="projectId"),
    service: IdeasService = Depends(_ideas_service),
):
    return await service.clear_logs(project_id)


@router.delete("/logs/{log_id}")
async def remove_log(log_id: str, service: IdeasService = Depends(_ideas_service)):
    return await service.remove_log(log_id)


@router.delete("/assets/{asset_id}")
async def remove_asset(asset_id: str, service: IdeasService = Depends(_ideas_service)):
    return await service.remove_asset(asset_id)


@router.get("/{idea_id}")
async def get_idea(idea_id: str, session: AsyncSession = Depends(get_session)):
    return await IdeasReadService(session).get_idea(idea_id)


@router.delete("/{idea_id}")
async def remove_idea(idea_id: str, service: IdeasService = Depends(_ideas_service)):
    return await service.remove_idea(idea_id)


@router.post("/{idea_id}/script/generate", status_code=202)
async def generate_script(
    idea_id: str,
    body: Optional[GenerateArtifactRequest] = None,
    service: IdeasService = Depends(_ideas_service),
):
    return await service.enqueue_script(idea_id, regenerate=bool(body and body.regenerate))


@router.post("/{idea_id}/caption/generate", status_code=202)
async def generate_caption(
    idea_id: str,
    body: Optional[GenerateArtifactRequest] = None,
    service: IdeasService = Depends(_ideas_service),
):
    return await service.enqueue_caption(idea_id, regenerate=bool(body and body.regenerate))


@router.post("/{idea_id}/image/generate", status_code=202)
async def generate_image(
    idea_id: str,
    body: Optional[GenerateArtifactRequest] = None,
    service: IdeasService = Depends(_ideas_service),
):
    return await service.enqueue_image(idea_id, regenerate=bool(body and body.regenerate))


@router.post("/{idea_id}/video/generate", status_code=202)
async def generate_video(
    idea_id: str,
    body: Optional[GenerateArtifactRequest] = None,
    service: IdeasService = Depends(_ideas_service),
):
    return await service.enqueue_video(idea_id, regenerate=bool(body and body.regenerate))


@router.post("/{idea_id}/image-prompt/generate")
async def generate_image_prompt(
    idea_id: str,
    session: AsyncSession = Depends(get_session),
    llm_provider: LLMProvider = Depends(get_llm_provider),
):
    return await PromptGenerationService(session, llm_provider).generate_image_prompt(idea_id)


@router.post("/{idea_id}/video-prompt/generate")
async def generate_video_prompt(
    idea_id: str,
    session: AsyncSession = Depends(get_session),
    llm_provider: LLMProvider = Depends(get_llm_provider),
):
    return await PromptGenerationService(session, llm_provider).generate_video_prompt(idea_id)
