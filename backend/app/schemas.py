from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .models import IdeaFormat, PolicyRuleSeverity, PolicyRuleType, PromptTemplateKey


class CamelModel(BaseModel):
    """Request body accepting both camelCase (API clients) and snake_case keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class GenerateIdeasRequest(CamelModel):
    project_id: str
    persona_id: str
    topic: str = Field(min_length=1, max_length=280)
    count: int = Field(default=5, ge=1, le=10)
    format: IdeaFormat = IdeaFormat.reel

    @field_validator("topic")
    @classmethod
    def strip_topic(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("topic must not be empty")
        return value


class GenerateArtifactRequest(CamelModel):
    regenerate: bool = False


class CreatePostDraftRequest(CamelModel):
    asset_ids: list[str] | None = None
    caption_id: str | None = None
    scheduled_at: datetime | None = None


class ApprovePostDraftRequest(CamelModel):
    override_reason: str | None = Field(default=None, min_length=3, max_length=1000)


class AiSettingsUpdate(CamelModel):
    provider: str
    model: str | None = Field(default=None, max_length=255)
    api_key: str | None = None
    clear_api_key: bool = False
    base_url: str | None = None
    response_language: str | None = Field(default=None, max_length=64)
    max_tokens: int | None = None
    ai_test_mode: bool | None = None
    is_enabled: bool = True


class AiConnectionTestRequest(CamelModel):
    provider: str | None = None
    model: str | None = Field(default=None, max_length=255)
    api_key: str | None = None
    base_url: str | None = None


class ProjectCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)


class ProjectRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    created_at: datetime


class PersonaCreate(CamelModel):
    project_id: str | None = None
    name: str = Field(min_length=1, max_length=120)
    age: int | None = Field(default=None, ge=0, le=150)
    archetype_tone: str | None = Field(default=None, max_length=120)
    bio: str | None = None
    visual_code: str | None = None
    voice_code: str | None = None


class PersonaRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    project_id: str | None
    name: str
    age: int | None
    archetype_tone: str | None
    bio: str | None
    visual_code: str | None
    voice_code: str | None
    created_at: datetime


class PolicyRuleCreate(CamelModel):
    persona_id: str | None = None
    type: PolicyRuleType
    text: str = Field(min_length=1, max_length=2000)
    severity: PolicyRuleSeverity = PolicyRuleSeverity.hard


class PolicyRuleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    persona_id: str | None
    type: str
    text: str
    severity: str
    created_at: datetime


class PromptTemplateCreate(CamelModel):
    persona_id: str | None = None
    key: PromptTemplateKey
    template: str = Field(min_length=1)


class PromptTemplateRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    persona_id: str | None
    key: str
    template: str
    created_at: datetime
