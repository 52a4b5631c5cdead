"""
Synchronous image / video prompt generation for an idea.

Runs inside the HTTP request: needs the latest succeeded script, stores the
prompt on the idea and always writes one run log (succeeded, mock or failed).
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import ConflictError, EntityNotFoundError, ProviderTimeoutError, UpstreamTimeoutError
from app.models import AiOperation, GenerationStatus, Idea, PromptTemplateKey, Script
from app.services.ai_settings import AiRuntimeConfig, AiSettingsService
from app.services.llm_provider import LLMProvider
from app.services.mock_fallback import build_mock_image_prompt, build_mock_video_prompt
from app.services.prompt_renderer import PromptRenderer
from app.services.response_normalizer import (
    DEFAULT_IMAGE_MAX_PROMPT_CHARS,
    DEFAULT_VIDEO_MAX_PROMPT_CHARS,
    normalize_prompt,
)
from app.services.run_log import MOCK_MODEL_NAME, MOCK_PROVIDER_NAME, RunLogEntry, save_run_log
from app.services.worker_errors import extract_error_details, should_use_mock_fallback, worker_test_mode
from app.settings import Settings, get_settings

logger = logging.getLogger(__name__)

PROMPT_OUTPUT_CONTRACT = """

SCRIPT CONTEXT:
Script text:
{script_text}
Shot list:
{shot_list}

STRICT OUTPUT CONTRACT:
- Return a single JSON object only.
- Do not use markdown code fences.
- Do not include explanations or extra keys.
- Write the "prompt" value strictly in "{language}".
- Required shape:
{{
  "prompt":"{kind} generation prompt text"
}}
"""


@dataclass(frozen=True)
class _PromptKind:
    kind: str
    template_key: PromptTemplateKey
    operation: AiOperation
    column: str
    max_chars: int
    build_mock: Callable[[], str]


IMAGE_PROMPT = _PromptKind(
    "image", PromptTemplateKey.image_prompt, AiOperation.image_prompt, "image_prompt",
    DEFAULT_IMAGE_MAX_PROMPT_CHARS, build_mock_image_prompt,
)
VIDEO_PROMPT = _PromptKind(
    "video", PromptTemplateKey.video_prompt, AiOperation.video_prompt, "video_prompt",
    DEFAULT_VIDEO_MAX_PROMPT_CHARS, build_mock_video_prompt,
)


def shot_list_text(shot_list: list | None) -> str:
    items = [str(item).strip() for item in shot_list or [] if str(item).strip()]
    if not items:
        return "-"
    return "\n".join(f"{index}. {item}" for index, item in enumerate(items, start=1))


def prompt_schema(kind: str) -> dict:
    return {
        "name": f"{kind}_prompt_output",
        "strict": True,
        "schema": {
            "type": "object",
            "additionalProperties": False,
            "required": ["prompt"],
            "properties": {"prompt": {"type": "string", "minLength": 1}},
        },
    }


class PromptGenerationService:
    def __init__(self, session: AsyncSession, llm_provider: LLMProvider, settings: Settings | None = None):
        self.session = session
        self.llm_provider = llm_provider
        self.settings = settings or get_settings()

    async def generate_image_prompt(self, idea_id: str) -> dict[str, str]:
        return await self._generate(idea_id, IMAGE_PROMPT)

    async def generate_video_prompt(self, idea_id: str) -> dict[str, str]:
        return await self._generate(idea_id, VIDEO_PROMPT)

    async def _latest_succeeded_script(self, idea_id: str) -> Script | None:
        return await self.session.scalar(
            select(Script)
            .where(Script.idea_id == idea_id, Script.status == GenerationStatus.succeeded.value)
            .order_by(Script.created_at.desc(), Script.id.desc())
            .limit(1)
        )

    async def _store(self, idea_id: str, prompt_kind: _PromptKind, prompt: str, entry: RunLogEntry) -> None:
        await self.session.execute(update(Idea).where(Idea.id == idea_id).values({prompt_kind.column: prompt}))
        await save_run_log(self.session, entry)

    async def _generate(self, idea_id: str, prompt_kind: _PromptKind) -> dict[str, str]:
        idea = await self.session.get(Idea, idea_id)
        if idea is None:
            raise EntityNotFoundError("Idea not found")
        script = await self._latest_succeeded_script(idea_id)
        if script is None:
            raise ConflictError("Script is required. Generate script first.")

        project_id, persona_id = idea.project_id, idea.persona_id
        started = time.monotonic()
        runtime: AiRuntimeConfig = await AiSettingsService(self.session, self.settings).get_runtime_config()
        shots = shot_list_text(script.shot_list)
        try:
            rendered = await PromptRenderer(self.session).render(
                persona_id,
                prompt_kind.template_key.value,
                {
                    "topic": idea.topic,
                    "idea_topic": idea.topic,
                    "hook": idea.hook,
                    "idea_hook": idea.hook,
                    "format": idea.format,
                    "script": script.text or "",
                    "script_text": script.text or "",
                    "shot_list": shots,
                    "shots": shots,
                    "language": runtime.response_language,
                    "response_language": runtime.response_language,
                },
                response_language=runtime.response_language,
            )
            result = await self.llm_provider.generate_json(
                rendered + PROMPT_OUTPUT_CONTRACT.format(
                    script_text=script.text or "n/a",
                    shot_list=shots,
                    language=runtime.response_language,
                    kind=prompt_kind.kind,
                ),
                max_tokens=runtime.max_tokens,
                temperature=0.7,
                config=runtime,
                response_schema=prompt_schema(prompt_kind.kind),
            )
            prompt = normalize_prompt(result.data, prompt_kind.max_chars, prompt_kind.kind)
            await self._store(idea_id, prompt_kind, prompt, RunLogEntry(
                operation=prompt_kind.operation,
                provider=result.provider,
                model=result.model,
                status=GenerationStatus.succeeded,
                project_id=project_id,
                idea_id=idea_id,
                latency_ms=int((time.monotonic() - started) * 1000),
                tokens=result.tokens,
                request_id=result.request_id,
            ))
            return {"prompt": prompt}
        except Exception as exc:
            await self.session.rollback()
            if should_use_mock_fallback(exc, worker_test_mode(self.settings), runtime.ai_test_mode):
                prompt = prompt_kind.build_mock()
                await self._store(idea_id, prompt_kind, prompt, RunLogEntry(
                    operation=prompt_kind.operation,
                    provider=MOCK_PROVIDER_NAME,
                    model=MOCK_MODEL_NAME,
                    status=GenerationStatus.succeeded,
                    project_id=project_id,
                    idea_id=idea_id,
                    latency_ms=int((time.monotonic() - started) * 1000),
                    tokens=0,
                ))
                return {"prompt": prompt}

            details = extract_error_details(exc)
            await save_run_log(self.session, RunLogEntry(
                operation=prompt_kind.operation,
                provider=runtime.provider,
                model=runtime.model or "unknown-model",
                status=GenerationStatus.failed,
                project_id=project_id,
                idea_id=idea_id,
                latency_ms=int((time.monotonic() - started) * 1000),
                error=details.message,
                error_code=details.code,
                raw_response=details.raw_response,
            ))
            logger.error(f"[prompts] {prompt_kind.kind} prompt generation failed for idea {idea_id}: {details.message}")
            if isinstance(exc, ProviderTimeoutError):
                raise UpstreamTimeoutError("AI provider timed out. Please try again in a moment.") from exc
            raise
