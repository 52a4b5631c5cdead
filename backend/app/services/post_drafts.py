"""
Post drafts: assemble an idea's artifacts into a publishable unit and gate it
behind moderation.

State machine:
    draft --approve--> approved --mark_published--> published
    approved --unapprove--> draft
archived is terminal for every transition. Repeating the transition that led
to the current state is a no-op.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import ConflictError, EntityNotFoundError, ValidationError
from app.models import (
    Asset,
    AssetType,
    Caption,
    GenerationStatus,
    Idea,
    ModerationCheck,
    ModerationCheckStatus,
    PolicyRule,
    PolicyRuleSeverity,
    PolicyRuleType,
    PostDraft,
    PostDraftStatus,
)
from app.services import moderation
from app.services.ideas_read import iso_datetime, serialize_asset

logger = logging.getLogger(__name__)


def _unique_ids(values: Any) -> list[str]:
    if not isinstance(values, list):
        return []
    cleaned = [item.strip() for item in values if isinstance(item, str) and item.strip()]
    return list(dict.fromkeys(cleaned))


def default_asset_ids(assets: list[Asset]) -> list[str]:
    """Latest video and latest image; otherwise the latest asset of any type.

    `assets` must be succeeded assets ordered newest first.
    """
    selected: list[str] = []
    video = next((a for a in assets if a.type == AssetType.video.value), None)
    image = next((a for a in assets if a.type == AssetType.image.value), None)
    if video is not None:
        selected.append(video.id)
    if image is not None and image.id not in selected:
        selected.append(image.id)
    if not selected and assets:
        selected.append(assets[0].id)
    return selected


class PostDraftsService:
    def __init__(self, session: AsyncSession):
        self.session = session

    # Lookups

    async def _ensure_idea(self, idea_id: str) -> Idea:
        idea = await self.session.get(Idea, idea_id)
        if idea is None:
            raise EntityNotFoundError("Idea not found")
        return idea

    async def _get_draft(self, post_draft_id: str) -> PostDraft:
        draft = await self.session.get(PostDraft, post_draft_id)
        if draft is None:
            raise EntityNotFoundError("Post draft not found")
        return draft

    async def _succeeded(self, model, idea_id: str) -> list:
        return list((await self.session.scalars(
            select(model)
            .where(model.idea_id == idea_id, model.status == GenerationStatus.succeeded.value)
            .order_by(model.created_at.desc(), model.id.desc())
        )).all())

    async def _latest_check(self, post_draft_id: str) -> ModerationCheck | None:
        return await self.session.scalar(
            select(ModerationCheck)
            .where(ModerationCheck.post_draft_id == post_draft_id)
            .order_by(ModerationCheck.created_at.desc(), ModerationCheck.id.desc())
            .limit(1)
        )

    async def _caption_for(self, draft: PostDraft) -> Caption | None:
        if not draft.caption_id:
            return None
        return await self.session.scalar(
            select(Caption).where(Caption.id == draft.caption_id, Caption.idea_id == draft.idea_id)
        )

    async def _assets_for(self, draft: PostDraft) -> list[Asset]:
        asset_ids = _unique_ids(draft.selected_assets)
        if not asset_ids:
            return []
        assets = (await self.session.scalars(
            select(Asset).where(Asset.id.in_(asset_ids), Asset.idea_id == draft.idea_id)
        )).all()
        by_id = {asset.id: asset for asset in assets}
        return [by_id[asset_id] for asset_id in asset_ids if asset_id in by_id]

    async def _hard_dont_rules(self, persona_id: str) -> list[PolicyRule]:
        return list((await self.session.scalars(
            select(PolicyRule).where(
                PolicyRule.type == PolicyRuleType.dont.value,
                PolicyRule.severity == PolicyRuleSeverity.hard.value,
                or_(PolicyRule.persona_id == persona_id, PolicyRule.persona_id.is_(None)),
            )
        )).all())

    async def _payload(self, draft: PostDraft) -> dict[str, Any]:
        idea = await self.session.get(Idea, draft.idea_id)
        if idea is None:
            raise EntityNotFoundError("Idea not found for post draft")
        caption = await self._caption_for(draft)
        assets = await self._assets_for(draft)
        check = await self._latest_check(draft.id)
        return {
            "id": draft.id,
            "ideaId": draft.idea_id,
            "captionId": draft.caption_id,
            "selectedAssets": _unique_ids(draft.selected_assets),
            "status": draft.status,
            "scheduledAt": iso_datetime(draft.scheduled_at),
            "createdAt": iso_datetime(draft.created_at),
            "idea": {
                "id": idea.id,
                "projectId": idea.project_id,
                "personaId": idea.persona_id,
                "topic": idea.topic,
                "hook": idea.hook,
                "format": idea.format,
            },
            "assets": [serialize_asset(asset) for asset in assets],
            "caption": {
                "id": caption.id,
                "text": caption.text,
                "hashtags": caption.hashtags,
                "status": caption.status,
                "error": caption.error,
                "createdAt": iso_datetime(caption.created_at),
            } if caption else None,
            "latestModeration": {
                "id": check.id,
                "status": check.status,
                "checks": check.checks,
                "notes": check.notes,
                "createdAt": iso_datetime(check.created_at),
            } if check else None,
        }

    async def _set_status(self, draft: PostDraft, status: PostDraftStatus) -> dict[str, Any]:
        previous = draft.status
        draft.status = status.value
        await self.session.commit()
        logger.info(f"[post-drafts] Draft {draft.id}: {previous} -> {status.value}")
        return await self._payload(draft)

    # Operations

    async def create_from_idea(
        self,
        idea_id: str,
        asset_ids: list[str] | None = None,
        caption_id: str | None = None,
        scheduled_at: datetime | None = None,
    ) -> dict[str, Any]:
        await self._ensure_idea(idea_id)
        assets = await self._succeeded(Asset, idea_id)
        captions = await self._succeeded(Caption, idea_id)

        if asset_ids:
            selected = _unique_ids(asset_ids)
            available = {asset.id for asset in assets}
            if any(asset_id not in available for asset_id in selected):
                raise ValidationError("Some selected assets are not available for this idea")
        else:
            selected = default_asset_ids(assets)

        if caption_id:
            if caption_id not in {caption.id for caption in captions}:
                raise ValidationError("Selected caption is not available for this idea")
            selected_caption = caption_id
        else:
            selected_caption = captions[0].id if captions else None

        draft = PostDraft(
            idea_id=idea_id,
            caption_id=selected_caption,
            selected_assets=selected,
            status=PostDraftStatus.draft.value,
            scheduled_at=scheduled_at,
        )
        self.session.add(draft)
        await self.session.commit()
        return await self._payload(draft)

    async def find_latest_by_idea(self, idea_id: str) -> dict[str, Any] | None:
        await self._ensure_idea(idea_id)
        draft = await self.session.scalar(
            select(PostDraft)
            .where(PostDraft.idea_id == idea_id)
            .order_by(PostDraft.created_at.desc(), PostDraft.id.desc())
            .limit(1)
        )
        if draft is None:
            return None
        return await self._payload(draft)

    async def moderate(self, post_draft_id: str) -> dict[str, Any]:
        draft = await self._get_draft(post_draft_id)
        if draft.status == PostDraftStatus.archived.value:
            raise ConflictError("Archived draft cannot be moderated")

        idea = await self.session.get(Idea, draft.idea_id)
        if idea is None:
            raise EntityNotFoundError("Idea not found for post draft")
        caption = await self._caption_for(draft)
        assets = await self._assets_for(draft)
        rules = await self._hard_dont_rules(idea.persona_id)

        checks = moderation.run_checks(moderation.build_corpus(idea, caption, assets), rules)
        passed, notes = moderation.summarize(checks)
        self.session.add(ModerationCheck(
            post_draft_id=draft.id,
            checks=checks,
            status=(ModerationCheckStatus.passed if passed else ModerationCheckStatus.failed).value,
            notes=notes,
        ))
        await self.session.commit()
        logger.info(f"[post-drafts] Draft {draft.id} moderated: {notes}")
        return await self._payload(draft)

    async def approve(self, post_draft_id: str, override_reason: str | None = None) -> dict[str, Any]:
        draft = await self._get_draft(post_draft_id)
        if draft.status == PostDraftStatus.archived.value:
            raise ConflictError("Archived draft cannot be approved")
        if draft.status == PostDraftStatus.published.value:
            raise ConflictError("Published draft cannot be approved again")
        if draft.status == PostDraftStatus.approved.value:
            return await self._payload(draft)

        check = await self._latest_check(draft.id)
        if check is None:
            raise ConflictError("Run checks before approving draft")

        reason = (override_reason or "").strip()
        if len(reason) < 3:
            reason = ""
        if check.status != ModerationCheckStatus.passed.value and not reason:
            raise ConflictError("Moderation checks did not pass. Provide overrideReason to approve.")

        if reason:
            previous = (check.notes or "").strip()
            note = f"Override reason: {reason}"
            check.notes = f"{previous}\n{note}" if previous else note
        return await self._set_status(draft, PostDraftStatus.approved)

    async def mark_published(self, post_draft_id: str) -> dict[str, Any]:
        draft = await self._get_draft(post_draft_id)
        if draft.status == PostDraftStatus.archived.value:
            raise ConflictError("Archived draft cannot be published")
        if draft.status == PostDraftStatus.published.value:
            return await self._payload(draft)
        if draft.status != PostDraftStatus.approved.value:
            raise ConflictError("Draft must be approved before marking as published")
        return await self._set_status(draft, PostDraftStatus.published)

    async def unapprove(self, post_draft_id: str) -> dict[str, Any]:
        draft = await self._get_draft(post_draft_id)
        if draft.status == PostDraftStatus.archived.value:
            raise ConflictError("Archived draft cannot be unapproved")
        if draft.status == PostDraftStatus.published.value:
            raise ConflictError("Published draft cannot be unapproved")
        if draft.status == PostDraftStatus.draft.value:
            return await self._payload(draft)
        return await self._set_status(draft, PostDraftStatus.draft)

    async def export(self, post_draft_id: str) -> dict[str, Any]:
        return await self._payload(await self._get_draft(post_draft_id))
