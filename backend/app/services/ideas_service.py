"""
Write side of the ideas pipeline: enqueue generation jobs and clean up.

Every entity job first persists a queued placeholder row, then publishes a
job that references it. Regeneration appends a new row; earlier rows stay.
"""
from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import delete, exists, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import ConflictError, EntityNotFoundError
from app.models import AiRunLog, Asset, AssetType, Caption, GenerationStatus, Idea, Persona, Project, Script
from app.services.ai_queue import AiQueue
from app.services.object_storage import LocalObjectStorage

logger = logging.getLogger(__name__)


class IdeasService:
    def __init__(self, session: AsyncSession, queue: AiQueue, storage: LocalObjectStorage | None = None):
        self.session = session
        self.queue = queue
        self.storage = storage

    async def _get_idea(self, idea_id: str) -> Idea:
        idea = await self.session.get(Idea, idea_id)
        if idea is None:
            raise EntityNotFoundError("Idea not found")
        return idea

    async def _has_succeeded(self, model, idea_id: str, *conditions) -> bool:
        return bool(await self.session.scalar(
            select(exists().where(
                model.idea_id == idea_id,
                model.status == GenerationStatus.succeeded.value,
                *conditions,
            ))
        ))

    async def enqueue_ideas(
        self,
        project_id: str,
        persona_id: str,
        topic: str,
        count: int = 5,
        idea_format: str = "reel",
    ) -> dict[str, Any]:
        if await self.session.get(Project, project_id) is None:
            raise EntityNotFoundError("Project not found")
        if await self.session.get(Persona, persona_id) is None:
            raise EntityNotFoundError("Persona not found")

        job_id = self.queue.enqueue_ideas({
            "project_id": project_id,
            "persona_id": persona_id,
            "topic": topic,
            "count": count,
            "format": idea_format,
        })
        return {"jobId": job_id, "status": GenerationStatus.queued.value}

    async def enqueue_script(self, idea_id: str, regenerate: bool = False) -> dict[str, Any]:
        await self._get_idea(idea_id)
        if not regenerate and await self._has_succeeded(Script, idea_id):
            raise ConflictError("Script already generated. Use regenerate=true to run again.")

        script = Script(idea_id=idea_id, status=GenerationStatus.queued.value)
        self.session.add(script)
        await self.session.commit()
        job_id = self.queue.enqueue_script(script.id)
        return {"jobId": job_id, "scriptId": script.id, "status": script.status}

    async def enqueue_caption(self, idea_id: str, regenerate: bool = False) -> dict[str, Any]:
        await self._get_idea(idea_id)
        if not regenerate and await self._has_succeeded(Caption, idea_id):
            raise ConflictError("Caption already generated. Use regenerate=true to run again.")

        caption = Caption(idea_id=idea_id, status=GenerationStatus.queued.value)
        self.session.add(caption)
        await self.session.commit()
        job_id = self.queue.enqueue_caption(caption.id)
        return {"jobId": job_id, "captionId": caption.id, "status": caption.status}

    async def _create_asset(self, idea: Idea, asset_type: AssetType, prompt: str | None, regenerate: bool) -> Asset:
        label = asset_type.value.capitalize()
        if not (prompt or "").strip():
            raise ConflictError(f"{label} prompt is empty. Generate {asset_type.value} prompt first.")
        if not regenerate and await self._has_succeeded(Asset, idea.id, Asset.type == asset_type.value):
            raise ConflictError(f"{label} already generated. Use regenerate=true to run again.")

        asset = Asset(
            idea_id=idea.id,
            type=asset_type.value,
            source_prompt=prompt,
            status=GenerationStatus.queued.value,
        )
        self.session.add(asset)
        await self.session.commit()
        return asset

    async def enqueue_image(self, idea_id: str, regenerate: bool = False) -> dict[str, Any]:
        idea = await self._get_idea(idea_id)
        asset = await self._create_asset(idea, AssetType.image, idea.image_prompt, regenerate)
        job_id = self.queue.enqueue_image(asset.id)
        return {"jobId": job_id, "assetId": asset.id, "status": asset.status}

    async def enqueue_video(self, idea_id: str, regenerate: bool = False) -> dict[str, Any]:
        idea = await self._get_idea(idea_id)
        asset = await self._create_asset(idea, AssetType.video, idea.video_prompt, regenerate)
        job_id = self.queue.enqueue_video(asset.id)
        return {"jobId": job_id, "assetId": asset.id, "status": asset.status}

    async def remove_asset(self, asset_id: str) -> dict[str, int]:
        asset = await self.session.get(Asset, asset_id)
        if asset is None:
            raise EntityNotFoundError("Asset not found")
        if asset.url and self.storage is not None:
            await self.storage.remove_by_public_url(asset.url)
        await self.session.delete(asset)
        await self.session.commit()
        return {"deleted": 1}

    async def remove_idea(self, idea_id: str) -> dict[str, int]:
        result = await self.session.execute(delete(Idea).where(Idea.id == idea_id))
        if not result.rowcount:
            raise EntityNotFoundError("Idea not found")
        await self.session.commit()
        return {"deleted": 1}

    async def remove_log(self, log_id: str) -> dict[str, int]:
        result = await self.session.execute(delete(AiRunLog).where(AiRunLog.id == log_id))
        if not result.rowcount:
            raise EntityNotFoundError("Log not found")
        await self.session.commit()
        return {"deleted": 1}

    async def clear_ideas(self, project_id: str | None) -> dict[str, int]:
        if not project_id:
            return {"deleted": 0}
        result = await self.session.execute(delete(Idea).where(Idea.project_id == project_id))
        await self.session.commit()
        logger.info(f"[ideas] Cleared {result.rowcount} ideas of project {project_id}")
        return {"deleted": result.rowcount or 0}

    async def clear_logs(self, project_id: str | None) -> dict[str, int]:
        if not project_id:
            return {"deleted": 0}
        result = await self.session.execute(delete(AiRunLog).where(AiRunLog.project_id == project_id))
        await self.session.commit()
        return {"deleted": result.rowcount or 0}
