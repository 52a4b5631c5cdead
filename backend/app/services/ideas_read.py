"""
Read side of the ideas pipeline.

list_ideas pages with a keyset cursor on (created_at DESC, id DESC) and
decorates each idea with its latest script / caption / image / video
summaries. Latest-row-per-group queries use row_number() so they run the
same on PostgreSQL and SQLite.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import and_, case, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import EntityNotFoundError, ValidationError
from app.models import AiRunLog, Asset, AssetType, Caption, GenerationStatus, Idea, Script

DEFAULT_IDEAS_PAGE_LIMIT = 20
MAX_IDEAS_PAGE_LIMIT = 50
DEFAULT_LOGS_LIMIT = 30
MAX_LOGS_LIMIT = 100


def iso_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def serialize_idea(idea: Idea) -> dict[str, Any]:
    return {
        "id": idea.id,
        "projectId": idea.project_id,
        "personaId": idea.persona_id,
        "topic": idea.topic,
        "hook": idea.hook,
        "format": idea.format,
        "status": idea.status,
        "error": idea.error,
        "imagePrompt": idea.image_prompt,
        "videoPrompt": idea.video_prompt,
        "createdAt": iso_datetime(idea.created_at),
    }


def serialize_script(script: Script | None) -> dict[str, Any] | None:
    if script is None:
        return None
    return {
        "id": script.id,
        "ideaId": script.idea_id,
        "text": script.text,
        "shotList": script.shot_list or [],
        "status": script.status,
        "error": script.error,
        "createdAt": iso_datetime(script.created_at),
    }


def serialize_caption(caption: Caption | None) -> dict[str, Any] | None:
    if caption is None:
        return None
    return {
        "id": caption.id,
        "ideaId": caption.idea_id,
        "text": caption.text,
        "hashtags": caption.hashtags or [],
        "status": caption.status,
        "error": caption.error,
        "createdAt": iso_datetime(caption.created_at),
    }


def serialize_asset(asset: Asset | None) -> dict[str, Any] | None:
    if asset is None:
        return None
    return {
        "id": asset.id,
        "ideaId": asset.idea_id,
        "type": asset.type,
        "url": asset.url,
        "mime": asset.mime,
        "width": asset.width,
        "height": asset.height,
        "duration": asset.duration,
        "sourcePrompt": asset.source_prompt,
        "provider": asset.provider,
        "status": asset.status,
        "error": asset.error,
        "createdAt": iso_datetime(asset.created_at),
    }


def serialize_run_log(log: AiRunLog) -> dict[str, Any]:
    return {
        "id": log.id,
        "provider": log.provider,
        "model": log.model,
        "operation": log.operation,
        "projectId": log.project_id,
        "ideaId": log.idea_id,
        "latencyMs": log.latency_ms,
        "tokens": log.tokens,
        "requestId": log.request_id,
        "status": log.status,
        "error": log.error,
        "errorCode": log.error_code,
        "rawResponse": log.raw_response,
        "createdAt": iso_datetime(log.created_at),
    }


def parse_cursor(cursor_created_at: str | None, cursor_id: str | None) -> tuple[datetime, str] | None:
    if bool(cursor_created_at) != bool(cursor_id):
        raise ValidationError("cursorCreatedAt and cursorId must be provided together")
    if not cursor_created_at or not cursor_id:
        return None
    try:
        created_at = datetime.fromisoformat(cursor_created_at.replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError("cursorCreatedAt must be a valid ISO date")
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return created_at, cursor_id


class IdeasReadService:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def _latest_by_idea(self, model, idea_ids: list[str], *conditions) -> dict[str, Any]:
        """Latest row of `model` per idea (created_at DESC, id DESC)."""
        rank = func.row_number().over(
            partition_by=model.idea_id,
            order_by=(model.created_at.desc(), model.id.desc()),
        ).label("rank")
        ranked = (
            select(model.id.label("row_id"), rank)
            .where(model.idea_id.in_(idea_ids), *conditions)
            .subquery()
        )
        rows = await self.session.scalars(
            select(model).join(ranked, and_(ranked.c.row_id == model.id, ranked.c.rank == 1))
        )
        return {row.idea_id: row for row in rows}

    async def _succeeded_counts(self, model, idea_ids: list[str]) -> dict[str, int]:
        result = await self.session.execute(
            select(model.idea_id, func.count())
            .where(model.idea_id.in_(idea_ids), model.status == GenerationStatus.succeeded.value)
            .group_by(model.idea_id)
        )
        return {idea_id: int(count) for idea_id, count in result.all()}

    async def _asset_counts(self, idea_ids: list[str]) -> dict[str, dict[str, int]]:
        succeeded = Asset.status == GenerationStatus.succeeded.value
        is_image = Asset.type == AssetType.image.value
        is_video = Asset.type == AssetType.video.value
        result = await self.session.execute(
            select(
                Asset.idea_id,
                func.sum(case((is_image, 1), else_=0)),
                func.sum(case((is_video, 1), else_=0)),
                func.sum(case((and_(is_image, succeeded), 1), else_=0)),
                func.sum(case((and_(is_video, succeeded), 1), else_=0)),
            )
            .where(Asset.idea_id.in_(idea_ids))
            .group_by(Asset.idea_id)
        )
        return {
            row[0]: {
                "imageAssetsCount": int(row[1] or 0),
                "videoAssetsCount": int(row[2] or 0),
                "imageSucceededCount": int(row[3] or 0),
                "videoSucceededCount": int(row[4] or 0),
            }
            for row in result.all()
        }

    async def list_ideas(
        self,
        project_id: str | None = None,
        limit: int = DEFAULT_IDEAS_PAGE_LIMIT,
        cursor_created_at: str | None = None,
        cursor_id: str | None = None,
    ) -> dict[str, Any]:
        limit = max(1, min(limit, MAX_IDEAS_PAGE_LIMIT))
        cursor = parse_cursor(cursor_created_at, cursor_id)

        query = select(Idea).order_by(Idea.created_at.desc(), Idea.id.desc()).limit(limit + 1)
        if project_id:
            query = query.where(Idea.project_id == project_id)
        if cursor:
            created_at, last_id = cursor
            query = query.where(
                or_(Idea.created_at < created_at, and_(Idea.created_at == created_at, Idea.id < last_id))
            )

        batch = list((await self.session.scalars(query)).all())
        has_more = len(batch) > limit
        ideas = batch[:limit]
        if not ideas:
            return {"items": [], "nextCursor": None, "hasMore": False}

        idea_ids = [idea.id for idea in ideas]
        succeeded = GenerationStatus.succeeded.value
        latest_scripts = await self._latest_by_idea(Script, idea_ids)
        latest_captions = await self._latest_by_idea(Caption, idea_ids)
        latest_images = await self._latest_by_idea(Asset, idea_ids, Asset.type == AssetType.image.value)
        latest_videos = await self._latest_by_idea(Asset, idea_ids, Asset.type == AssetType.video.value)
        current_images = await self._latest_by_idea(
            Asset, idea_ids, Asset.type == AssetType.image.value, Asset.status == succeeded
        )
        current_videos = await self._latest_by_idea(
            Asset, idea_ids, Asset.type == AssetType.video.value, Asset.status == succeeded
        )
        script_counts = await self._succeeded_counts(Script, idea_ids)
        caption_counts = await self._succeeded_counts(Caption, idea_ids)
        asset_counts = await self._asset_counts(idea_ids)

        items = []
        for idea in ideas:
            counts = asset_counts.get(idea.id, {})
            latest_image = latest_images.get(idea.id)
            latest_video = latest_videos.get(idea.id)
            items.append({
                **serialize_idea(idea),
                "latestScript": serialize_script(latest_scripts.get(idea.id)),
                "latestCaption": serialize_caption(latest_captions.get(idea.id)),
                "latestImage": serialize_asset(current_images.get(idea.id)),
                "latestVideo": serialize_asset(current_videos.get(idea.id)),
                "latestImageStatus": latest_image.status if latest_image else None,
                "latestVideoStatus": latest_video.status if latest_video else None,
                "scriptSucceededCount": script_counts.get(idea.id, 0),
                "captionSucceededCount": caption_counts.get(idea.id, 0),
                "imageAssetsCount": counts.get("imageAssetsCount", 0),
                "videoAssetsCount": counts.get("videoAssetsCount", 0),
                "imageSucceededCount": counts.get("imageSucceededCount", 0),
                "videoSucceededCount": counts.get("videoSucceededCount", 0),
            })

        last = ideas[-1]
        next_cursor = {"createdAt": iso_datetime(last.created_at), "id": last.id} if has_more else None
        return {"items": items, "nextCursor": next_cursor, "hasMore": has_more}

    async def get_idea(self, idea_id: str) -> dict[str, Any]:
        idea = await self.session.get(Idea, idea_id)
        if idea is None:
            raise EntityNotFoundError("Idea not found")

        def _ordered(model):
            return select(model).where(model.idea_id == idea_id).order_by(model.created_at.desc(), model.id.desc())

        scripts = (await self.session.scalars(_ordered(Script))).all()
        captions = (await self.session.scalars(_ordered(Caption))).all()
        assets = (await self.session.scalars(_ordered(Asset))).all()
        return {
            **serialize_idea(idea),
            "scripts": [serialize_script(s) for s in scripts],
            "captions": [serialize_caption(c) for c in captions],
            "assets": [serialize_asset(a) for a in assets],
        }

    async def list_logs(
        self,
        project_id: str | None = None,
        idea_id: str | None = None,
        limit: int = DEFAULT_LOGS_LIMIT,
    ) -> list[dict[str, Any]]:
        limit = max(1, min(limit, MAX_LOGS_LIMIT))
        query = select(AiRunLog).order_by(AiRunLog.created_at.desc(), AiRunLog.id.desc()).limit(limit)
        if project_id:
            query = query.where(AiRunLog.project_id == project_id)
        if idea_id:
            query = query.where(AiRunLog.idea_id == idea_id)
        logs = (await self.session.scalars(query)).all()
        return [serialize_run_log(log) for log in logs]
