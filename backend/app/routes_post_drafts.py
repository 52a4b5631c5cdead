"""
Post draft API: assemble, moderate, approve and export drafts.
"""
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from .db import get_session
from .routes_auth import require_auth
from .schemas import ApprovePostDraftRequest, CreatePostDraftRequest
from .services.post_drafts import PostDraftsService

router = APIRouter(prefix="/api/post-drafts", tags=["post-drafts"], dependencies=[Depends(require_auth)])


def _service(session: AsyncSession = Depends(get_session)) -> PostDraftsService:
    return PostDraftsService(session)


@router.post("/from-idea/{idea_id}", status_code=201)
async def create_from_idea(
    idea_id: str,
    body: Optional[CreatePostDraftRequest] = None,
    service: PostDraftsService = Depends(_service),
):
    body = body or CreatePostDraftRequest()
    return await service.create_from_idea(
        idea_id,
        asset_ids=body.asset_ids,
        caption_id=body.caption_id,
        scheduled_at=body.scheduled_at,
    )


@router.get("/idea/{idea_id}/latest")
async def find_latest_by_idea(idea_id: str, service: PostDraftsService = Depends(_service)):
    return await service.find_latest_by_idea(idea_id)


@router.post("/{post_draft_id}/moderate")
async def moderate(post_draft_id: str, service: PostDraftsService = Depends(_service)):
    return await service.moderate(post_draft_id)


@router.post("/{post_draft_id}/approve")
async def approve(
    post_draft_id: str,
    body: Optional[ApprovePostDraftRequest] = None,
    service: PostDraftsService = Depends(_service),
):
    return await service.approve(post_draft_id, body.override_reason if body else None)


@router.post("/{post_draft_id}/unapprove")
async def unapprove(post_draft_id: str, service: PostDraftsService = Depends(_service)):
    return await service.unapprove(post_draft_id)


@router.post("/{post_draft_id}/mark-published")
async def mark_published(post_draft_id: str, service: PostDraftsService = Depends(_service)):
    return await service.mark_published(post_draft_id)


@router.get("/{post_draft_id}/export")
async def export(post_draft_id: str, service: PostDraftsService = Depends(_service)):
    return await service.export(post_draft_id)
