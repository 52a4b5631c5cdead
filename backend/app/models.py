from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from .db import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class GenerationStatus(str, Enum):
    queued = "queued"
    running = "running"
    succeeded = "succeeded"
    failed = "failed"


class IdeaFormat(str, Enum):
    reel = "reel"
    short = "short"
    tiktok = "tiktok"


class AssetType(str, Enum):
    image = "image"
    video = "video"
    audio = "audio"


class AiOperation(str, Enum):
    ideas = "ideas"
    script = "script"
    caption = "caption"
    image_prompt = "image_prompt"
    video_prompt = "video_prompt"
    image = "image"
    video = "video"


class PromptTemplateKey(str, Enum):
    ideas = "ideas"
    script = "script"
    caption = "caption"
    image_prompt = "image_prompt"
    video_prompt = "video_prompt"


class PolicyRuleType(str, Enum):
    do = "DO"
    dont = "DONT"


class PolicyRuleSeverity(str, Enum):
    hard = "hard"
    soft = "soft"


class PostDraftStatus(str, Enum):
    draft = "draft"
    approved = "approved"
    published = "published"
    archived = "archived"


class ModerationCheckStatus(str, Enum):
    passed = "passed"
    failed = "failed"


def _created_at() -> Mapped[datetime]:
    return mapped_column(sa.DateTime(timezone=True), default=_utcnow, nullable=False, index=True)


class Project(Base):
    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    created_at: Mapped[datetime] = _created_at()


class Persona(Base):
    __tablename__ = "personas"

    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True, default=_uuid)
    project_id: Mapped[str | None] = mapped_column(sa.ForeignKey("projects.id", ondelete="CASCADE"), nullable=True)
    name: Mapped[str] = mapped_column(sa.String(120), nullable=False)
    age: Mapped[int | None] = mapped_column(sa.Integer(), nullable=True)
    archetype_tone: Mapped[str | None] = mapped_column(sa.String(120), nullable=True)
    bio: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    visual_code: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    voice_code: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    created_at: Mapped[datetime] = _created_at()


class PolicyRule(Base):
    __tablename__ = "policy_rules"

    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True, default=_uuid)
    persona_id: Mapped[str | None] = mapped_column(sa.ForeignKey("personas.id", ondelete="CASCADE"), nullable=True)
    type: Mapped[PolicyRuleType] = mapped_column(sa.String(8), nullable=False)
    text: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    severity: Mapped[PolicyRuleSeverity] = mapped_column(sa.String(8), nullable=False)
    created_at: Mapped[datetime] = _created_at()


class PromptTemplate(Base):
    __tablename__ = "prompt_templates"

    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True, default=_uuid)
    persona_id: Mapped[str | None] = mapped_column(sa.ForeignKey("personas.id", ondelete="CASCADE"), nullable=True)
    key: Mapped[PromptTemplateKey] = mapped_column(sa.String(32), nullable=False)
    template: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    created_at: Mapped[datetime] = _created_at()


class Idea(Base):
    __tablename__ = "ideas"
    __table_args__ = (sa.Index("ix_ideas_project_created", "project_id", "created_at", "id"),)

    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True, default=_uuid)
    project_id: Mapped[str] = mapped_column(sa.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    persona_id: Mapped[str] = mapped_column(sa.ForeignKey("personas.id", ondelete="CASCADE"), nullable=False)
    topic: Mapped[str] = mapped_column(sa.String(280), nullable=False)
    hook: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    format: Mapped[IdeaFormat] = mapped_column(sa.String(16), nullable=False)
    status: Mapped[GenerationStatus] = mapped_column(sa.String(16), nullable=False, default=GenerationStatus.queued.value)
    error: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    image_prompt: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    video_prompt: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    created_at: Mapped[datetime] = _created_at()


class Script(Base):
    __tablename__ = "scripts"

    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True, default=_uuid)
    idea_id: Mapped[str] = mapped_column(sa.ForeignKey("ideas.id", ondelete="CASCADE"), nullable=False, index=True)
    text: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    shot_list: Mapped[list | None] = mapped_column(sa.JSON, nullable=True)
    status: Mapped[GenerationStatus] = mapped_column(sa.String(16), nullable=False, default=GenerationStatus.queued.value)
    error: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    created_at: Mapped[datetime] = _created_at()


class Caption(Base):
    __tablename__ = "captions"

    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True, default=_uuid)
    idea_id: Mapped[str] = mapped_column(sa.ForeignKey("ideas.id", ondelete="CASCADE"), nullable=False, index=True)
    text: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    hashtags: Mapped[list | None] = mapped_column(sa.JSON, nullable=True)
    status: Mapped[GenerationStatus] = mapped_column(sa.String(16), nullable=False, default=GenerationStatus.queued.value)
    error: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    created_at: Mapped[datetime] = _created_at()


class Asset(Base):
    __tablename__ = "assets"

    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True, default=_uuid)
    idea_id: Mapped[str] = mapped_column(sa.ForeignKey("ideas.id", ondelete="CASCADE"), nullable=False, index=True)
    type: Mapped[AssetType] = mapped_column(sa.String(16), nullable=False)
    url: Mapped[str | None] = mapped_column(sa.String(2048), nullable=True)
    mime: Mapped[str | None] = mapped_column(sa.String(128), nullable=True)
    width: Mapped[int | None] = mapped_column(sa.Integer(), nullable=True)
    height: Mapped[int | None] = mapped_column(sa.Integer(), nullable=True)
    duration: Mapped[int | None] = mapped_column(sa.Integer(), nullable=True)
    source_prompt: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    provider: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    status: Mapped[GenerationStatus] = mapped_column(sa.String(16), nullable=False, default=GenerationStatus.queued.value)
    error: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    created_at: Mapped[datetime] = _created_at()


class AiRunLog(Base):
    __tablename__ = "ai_run_logs"

    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True, default=_uuid)
    provider: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    model: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    operation: Mapped[AiOperation] = mapped_column(sa.String(32), nullable=False)
    project_id: Mapped[str | None] = mapped_column(sa.String(36), nullable=True, index=True)
    idea_id: Mapped[str | None] = mapped_column(sa.String(36), nullable=True, index=True)
    latency_ms: Mapped[int | None] = mapped_column(sa.Integer(), nullable=True)
    tokens: Mapped[int | None] = mapped_column(sa.Integer(), nullable=True)
    request_id: Mapped[str | None] = mapped_column(sa.String(128), nullable=True)
    status: Mapped[GenerationStatus] = mapped_column(sa.String(16), nullable=False)
    error: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    error_code: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    raw_response: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    created_at: Mapped[datetime] = _created_at()


class AiProviderSettings(Base):
    __tablename__ = "ai_provider_settings"

    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True, default=_uuid)
    scope: Mapped[str] = mapped_column(sa.String(32), nullable=False, unique=True, default="global")
    provider: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    model: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    api_key_encrypted: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    base_url: Mapped[str | None] = mapped_column(sa.String(2048), nullable=True)
    response_language: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    max_tokens: Mapped[int | None] = mapped_column(sa.Integer(), nullable=True)
    ai_test_mode: Mapped[bool | None] = mapped_column(sa.Boolean(), nullable=True)
    is_enabled: Mapped[bool] = mapped_column(sa.Boolean(), nullable=False, default=True)
    updated_by: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )


class AiProviderModel(Base):
    """A saved provider/model profile; at most one per scope is active."""

    __tablename__ = "ai_provider_models"
    __table_args__ = (
        sa.UniqueConstraint("scope", "provider", "model", name="uq_ai_provider_models_scope_provider_model"),
    )

    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True, default=_uuid)
    scope: Mapped[str] = mapped_column(sa.String(32), nullable=False, default="global")
    provider: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    model: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    base_url: Mapped[str | None] = mapped_column(sa.String(2048), nullable=True)
    response_language: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    max_tokens: Mapped[int | None] = mapped_column(sa.Integer(), nullable=True)
    is_enabled: Mapped[bool] = mapped_column(sa.Boolean(), nullable=False, default=True)
    api_key_encrypted: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    updated_by: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(sa.Boolean(), nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )


class PostDraft(Base):
    __tablename__ = "post_drafts"

    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True, default=_uuid)
    idea_id: Mapped[str] = mapped_column(sa.ForeignKey("ideas.id", ondelete="CASCADE"), nullable=False, index=True)
    caption_id: Mapped[str | None] = mapped_column(sa.ForeignKey("captions.id", ondelete="SET NULL"), nullable=True)
    selected_assets: Mapped[list] = mapped_column(sa.JSON, nullable=False, default=list)
    status: Mapped[PostDraftStatus] = mapped_column(sa.String(16), nullable=False, default=PostDraftStatus.draft.value)
    scheduled_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = _created_at()


class ModerationCheck(Base):
    __tablename__ = "moderation_checks"

    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True, default=_uuid)
    post_draft_id: Mapped[str] = mapped_column(
        sa.ForeignKey("post_drafts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    checks: Mapped[dict] = mapped_column(sa.JSON, nullable=False)
    status: Mapped[ModerationCheckStatus] = mapped_column(sa.String(16), nullable=False)
    notes: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    created_at: Mapped[datetime] = _created_at()
