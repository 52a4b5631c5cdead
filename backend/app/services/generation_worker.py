"""
AI generation job handlers.

Each handler follows the same sequence:
1. load the target row (missing row -> unrecoverable)
2. mark it running, clear the previous error
3. resolve runtime config, render the prompt, call the provider
4. normalize, persist success together with exactly one run log

Failures are caught at the handler boundary. Every failure marks the row
failed with the error text; a retry marks it running again in step 2. Only a
terminal failure (last attempt or unrecoverable error) writes a failed run
log. In AI test mode a missing-credential error is replaced by a
deterministic mock artifact.
"""
from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.errors import EntityNotFoundError, GenerationValidationError, UnrecoverableJobError
from app.models import AiOperation, Asset, Caption, GenerationStatus, Idea, PromptTemplateKey, Script
from app.services.ai_queue import AiJobName
from app.services.ai_settings import AiRuntimeConfig, AiSettingsService, env_runtime_config
from app.services.llm_provider import LLMProvider
from app.services.media_providers import ImageProvider, VideoProvider
from app.services.mock_fallback import build_mock_caption, build_mock_ideas, build_mock_script
from app.services.object_storage import LocalObjectStorage
from app.services.prompt_renderer import PromptRenderer
from app.services.response_normalizer import (
    normalize_caption_text,
    normalize_hashtags,
    normalize_ideas,
    normalize_script_text,
    normalize_shot_list,
    preview_unknown,
)
from app.services.run_log import MOCK_MODEL_NAME, MOCK_PROVIDER_NAME, RunLogEntry, build_run_log
from app.services.worker_errors import (
    RetryPolicy,
    extract_error_details,
    should_use_mock_fallback,
    to_entity_error,
    to_queue_error,
    worker_test_mode,
)
from app.settings import Settings, get_settings

logger = logging.getLogger(__name__)

IDEAS_OUTPUT_CONTRACT = """

STRICT OUTPUT CONTRACT:
- Return a single JSON object only.
- Do not use markdown code fences.
- Do not include explanations or extra keys.
- Required shape:
{
  "ideas": [
    {"topic":"...", "hook":"...", "format":"reel|short|tiktok"}
  ]
}
If unavailable, return {"ideas": []}.
"""

SCRIPT_OUTPUT_CONTRACT = """

STRICT OUTPUT CONTRACT:
- Return a single JSON object only.
- Do not use markdown code fences.
- Write "text" and every "shotList" item in "{language}".
- Required shape:
{{
  "text": "full script text",
  "shotList": ["shot 1", "shot 2"]
}}
"""

CAPTION_OUTPUT_CONTRACT = """

STRICT OUTPUT CONTRACT:
- Return a single JSON object only.
- Do not use markdown code fences.
- Write "text" in "{language}".
- Required shape:
{{
  "text": "caption text",
  "hashtags": ["#tag1", "#tag2"]
}}
"""


def ideas_schema(count: int) -> dict:
    return {
        "name": "ideas_output",
        "strict": True,
        "schema": {
            "type": "object",
            "additionalProperties": False,
            "required": ["ideas"],
            "properties": {
                "ideas": {
                    "type": "array",
                    "minItems": count,
                    "items": {
                        "type": "object",
                        "additionalProperties": True,
                        "required": ["topic", "hook", "format"],
                        "properties": {
                            "topic": {"type": "string", "minLength": 1},
                            "hook": {"type": "string", "minLength": 1},
                            "format": {"type": "string", "minLength": 1},
                        },
                    },
                },
            },
        },
    }


SCRIPT_SCHEMA = {
    "name": "script_output",
    "strict": True,
    "schema": {
        "type": "object",
        "additionalProperties": False,
        "required": ["text", "shotList"],
        "properties": {
            "text": {"type": "string", "minLength": 1},
            "shotList": {"type": "array", "items": {"type": "string"}},
        },
    },
}

CAPTION_SCHEMA = {
    "name": "caption_output",
    "strict": True,
    "schema": {
        "type": "object",
        "additionalProperties": False,
        "required": ["text", "hashtags"],
        "properties": {
            "text": {"type": "string", "minLength": 1},
            "hashtags": {"type": "array", "items": {"type": "string"}},
        },
    },
}


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _idea_variables(idea: Idea, runtime: AiRuntimeConfig) -> dict[str, Any]:
    return {
        "topic": idea.topic,
        "idea_topic": idea.topic,
        "hook": idea.hook,
        "idea_hook": idea.hook,
        "format": idea.format,
        "language": runtime.response_language,
        "response_language": runtime.response_language,
    }


class GenerationWorker:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        llm_provider: LLMProvider,
        *,
        image_provider: ImageProvider,
        video_provider: VideoProvider,
        storage: LocalObjectStorage,
        settings: Settings | None = None,
        policy: RetryPolicy | None = None,
    ):
        self.session_factory = session_factory
        self.llm_provider = llm_provider
        self.image_provider = image_provider
        self.video_provider = video_provider
        self.storage = storage
        self.settings = settings or get_settings()
        self.policy = policy or RetryPolicy.from_settings(self.settings)
        self.worker_test_mode = worker_test_mode(self.settings)

    async def run(self, job_name: str, payload: dict[str, Any], attempts_made: int = 0) -> None:
        handlers: dict[str, Callable[[dict[str, Any], int], Awaitable[None]]] = {
            AiJobName.generate_ideas.value: self.handle_generate_ideas,
            AiJobName.generate_script.value: self.handle_generate_script,
            AiJobName.generate_caption.value: self.handle_generate_caption,
            AiJobName.generate_image.value: self.handle_generate_image,
            AiJobName.generate_video.value: self.handle_generate_video,
        }
        handler = handlers.get(job_name)
        if handler is None:
            raise UnrecoverableJobError(ValueError(f"Unknown AI job: {job_name}"))
        await handler(payload, attempts_made)

    # Persistence helpers

    async def _runtime_config(self, session: AsyncSession) -> AiRuntimeConfig:
        return await AiSettingsService(session, self.settings).get_runtime_config()

    async def _update_entity(
        self,
        session: AsyncSession,
        model: type,
        entity_id: str,
        values: dict[str, Any],
        run_log: RunLogEntry | None = None,
    ) -> None:
        """Update one row and optionally append its run log in the same commit."""
        await session.execute(update(model).where(model.id == entity_id).values(**values))
        if run_log is not None:
            session.add(build_run_log(run_log))
        await session.commit()

    async def _load_or_fail(self, session: AsyncSession, model: type, entity_id: str, label: str):
        entity = await session.get(model, entity_id)
        if entity is None:
            logger.error(f"[worker] {label} {entity_id} not found, dropping job")
            raise UnrecoverableJobError(EntityNotFoundError(f'{label} "{entity_id}" not found'))
        await self._update_entity(
            session, model, entity_id, {"status": GenerationStatus.running.value, "error": None}
        )
        return entity

    async def _load_idea_or_fail(self, session: AsyncSession, model: type, entity_id: str, idea_id: str) -> Idea:
        idea = await session.get(Idea, idea_id)
        if idea is None:
            await self._update_entity(
                session, model, entity_id, {"status": GenerationStatus.failed.value, "error": "Idea not found"}
            )
            raise UnrecoverableJobError(EntityNotFoundError("Idea not found"))
        return idea

    def _failure_log(
        self,
        error: BaseException,
        operation: AiOperation,
        runtime: AiRuntimeConfig | None,
        *,
        project_id: str | None,
        idea_id: str | None,
        started: float,
        provider: str | None = None,
        model: str | None = None,
    ) -> RunLogEntry:
        config = runtime or env_runtime_config(self.settings)
        details = extract_error_details(error)
        return RunLogEntry(
            operation=operation,
            provider=provider or config.provider,
            model=model or config.model or "unknown-model",
            status=GenerationStatus.failed,
            project_id=project_id,
            idea_id=idea_id,
            latency_ms=_elapsed_ms(started),
            error=details.message,
            error_code=details.code,
            raw_response=details.raw_response,
        )

    async def _handle_failure(
        self,
        session: AsyncSession,
        error: BaseException,
        attempts_made: int,
        failure_log: RunLogEntry,
        entity: tuple[type, str] | None = None,
    ) -> BaseException:
        """Record the failure and return the exception the queue should see."""
        terminal = self.policy.is_terminal_failure(error, attempts_made)
        try:
            if entity is not None:
                model, entity_id = entity
                values: dict[str, Any] = {"status": GenerationStatus.failed.value, "error": to_entity_error(error)}
                await self._update_entity(session, model, entity_id, values, failure_log if terminal else None)
            elif terminal:
                session.add(build_run_log(failure_log))
                await session.commit()
        except Exception as exc:
            await session.rollback()
            logger.error(f"[worker] Failed to record {failure_log.operation.value} failure: {exc}")

        attempt = attempts_made + 1
        logger.error(
            f"[worker] {failure_log.operation.value} failed "
            f"(attempt {attempt}/{self.policy.max_attempts}, terminal={terminal}): {error}"
        )
        return to_queue_error(self.policy, error)

    def _use_mock(self, error: BaseException, runtime: AiRuntimeConfig | None) -> bool:
        return should_use_mock_fallback(error, self.worker_test_mode, runtime.ai_test_mode if runtime else None)

    @staticmethod
    def _mock_log(operation: AiOperation, project_id: str | None, idea_id: str | None, started: float) -> RunLogEntry:
        return RunLogEntry(
            operation=operation,
            provider=MOCK_PROVIDER_NAME,
            model=MOCK_MODEL_NAME,
            status=GenerationStatus.succeeded,
            project_id=project_id,
            idea_id=idea_id,
            latency_ms=_elapsed_ms(started),
            tokens=0,
        )

    @staticmethod
    def _add_ideas(session: AsyncSession, payload: dict[str, Any], ideas: list[dict[str, str]]) -> None:
        for item in ideas:
            session.add(Idea(
                project_id=payload["project_id"],
                persona_id=payload["persona_id"],
                topic=item["topic"],
                hook=item["hook"],
                format=item["format"],
                status=GenerationStatus.succeeded.value,
            ))

    # Handlers

    async def handle_generate_ideas(self, payload: dict[str, Any], attempts_made: int = 0) -> None:
        started = time.monotonic()
        count = int(payload.get("count") or 5)
        idea_format = payload.get("format") or "reel"
        project_id = payload["project_id"]
        runtime: AiRuntimeConfig | None = None

        async with self.session_factory() as session:
            try:
                runtime = await self._runtime_config(session)
                prompt = await PromptRenderer(session).render(
                    payload["persona_id"],
                    PromptTemplateKey.ideas.value,
                    {"topic": payload["topic"], "count": count, "format": idea_format},
                    response_language=runtime.response_language,
                )
                result = await self.llm_provider.generate_json(
                    prompt + IDEAS_OUTPUT_CONTRACT,
                    max_tokens=runtime.max_tokens,
                    temperature=0.7,
                    config=runtime,
                    response_schema=ideas_schema(count),
                )
                ideas = normalize_ideas(result.data, idea_format)
                if len(ideas) < count:
                    raise GenerationValidationError(
                        f"LLM returned {len(ideas)} ideas, expected at least {count}. "
                        f"Response preview: {preview_unknown(result.data)}"
                    )

                self._add_ideas(session, payload, ideas[:count])
                session.add(build_run_log(RunLogEntry(
                    operation=AiOperation.ideas,
                    provider=result.provider,
                    model=result.model,
                    status=GenerationStatus.succeeded,
                    project_id=project_id,
                    latency_ms=_elapsed_ms(started),
                    tokens=result.tokens,
                    request_id=result.request_id,
                )))
                await session.commit()
                logger.info(f"[worker] Generated {count} ideas for project {project_id}")
            except Exception as exc:
                await session.rollback()
                if self._use_mock(exc, runtime):
                    self._add_ideas(session, payload, build_mock_ideas(count, idea_format))
                    session.add(build_run_log(self._mock_log(AiOperation.ideas, project_id, None, started)))
                    await session.commit()
                    logger.info(f"[worker] AI test mode: stored {count} mock ideas for project {project_id}")
                    return
                failure_log = self._failure_log(
                    exc, AiOperation.ideas, runtime, project_id=project_id, idea_id=None, started=started
                )
                queue_error = await self._handle_failure(session, exc, attempts_made, failure_log)
                if queue_error is exc:
                    raise
                raise queue_error from exc

    async def handle_generate_script(self, payload: dict[str, Any], attempts_made: int = 0) -> None:
        started = time.monotonic()
        script_id = payload["script_id"]
        runtime: AiRuntimeConfig | None = None

        async with self.session_factory() as session:
            script = await self._load_or_fail(session, Script, script_id, "Script")
            idea = await self._load_idea_or_fail(session, Script, script_id, script.idea_id)
            idea_id, project_id = idea.id, idea.project_id
            topic, hook = idea.topic, idea.hook
            try:
                runtime = await self._runtime_config(session)
                prompt = await PromptRenderer(session).render(
                    idea.persona_id,
                    PromptTemplateKey.script.value,
                    _idea_variables(idea, runtime),
                    response_language=runtime.response_language,
                )
                result = await self.llm_provider.generate_json(
                    prompt + SCRIPT_OUTPUT_CONTRACT.format(language=runtime.response_language),
                    max_tokens=runtime.max_tokens,
                    temperature=0.7,
                    config=runtime,
                    response_schema=SCRIPT_SCHEMA,
                )
                text = normalize_script_text(result.data, self.settings.script_max_chars)
                shot_list = normalize_shot_list(result.data)

                await self._update_entity(
                    session,
                    Script,
                    script_id,
                    {"text": text, "shot_list": shot_list, "status": GenerationStatus.succeeded.value, "error": None},
                    RunLogEntry(
                        operation=AiOperation.script,
                        provider=result.provider,
                        model=result.model,
                        status=GenerationStatus.succeeded,
                        project_id=project_id,
                        idea_id=idea_id,
                        latency_ms=_elapsed_ms(started),
                        tokens=result.tokens,
                        request_id=result.request_id,
                    ),
                )
                logger.info(f"[worker] Script {script_id} generated")
            except Exception as exc:
                await session.rollback()
                if self._use_mock(exc, runtime):
                    mock = build_mock_script(topic, hook)
                    await self._update_entity(
                        session,
                        Script,
                        script_id,
                        {"text": mock["text"], "shot_list": mock["shot_list"],
                         "status": GenerationStatus.succeeded.value, "error": None},
                        self._mock_log(AiOperation.script, project_id, idea_id, started),
                    )
                    return
                failure_log = self._failure_log(
                    exc, AiOperation.script, runtime, project_id=project_id, idea_id=idea_id, started=started
                )
                queue_error = await self._handle_failure(session, exc, attempts_made, failure_log, (Script, script_id))
                if queue_error is exc:
                    raise
                raise queue_error from exc

    async def handle_generate_caption(self, payload: dict[str, Any], attempts_made: int = 0) -> None:
        started = time.monotonic()
        caption_id = payload["caption_id"]
        runtime: AiRuntimeConfig | None = None

        async with self.session_factory() as session:
            caption = await self._load_or_fail(session, Caption, caption_id, "Caption")
            idea = await self._load_idea_or_fail(session, Caption, caption_id, caption.idea_id)
            idea_id, project_id, topic = idea.id, idea.project_id, idea.topic
            try:
                runtime = await self._runtime_config(session)
                prompt = await PromptRenderer(session).render(
                    idea.persona_id,
                    PromptTemplateKey.caption.value,
                    _idea_variables(idea, runtime),
                    response_language=runtime.response_language,
                )
                result = await self.llm_provider.generate_json(
                    prompt + CAPTION_OUTPUT_CONTRACT.format(language=runtime.response_language),
                    max_tokens=runtime.max_tokens,
                    temperature=0.8,
                    config=runtime,
                    response_schema=CAPTION_SCHEMA,
                )
                text = normalize_caption_text(result.data)
                hashtags = normalize_hashtags(result.data)

                await self._update_entity(
                    session,
                    Caption,
                    caption_id,
                    {"text": text, "hashtags": hashtags, "status": GenerationStatus.succeeded.value, "error": None},
                    RunLogEntry(
                        operation=AiOperation.caption,
                        provider=result.provider,
                        model=result.model,
                        status=GenerationStatus.succeeded,
                        project_id=project_id,
                        idea_id=idea_id,
                        latency_ms=_elapsed_ms(started),
                        tokens=result.tokens,
                        request_id=result.request_id,
                    ),
                )
                logger.info(f"[worker] Caption {caption_id} generated")
            except Exception as exc:
                await session.rollback()
                if self._use_mock(exc, runtime):
                    mock = build_mock_caption(topic)
                    await self._update_entity(
                        session,
                        Caption,
                        caption_id,
                        {"text": mock["text"], "hashtags": mock["hashtags"],
                         "status": GenerationStatus.succeeded.value, "error": None},
                        self._mock_log(AiOperation.caption, project_id, idea_id, started),
                    )
                    return
                failure_log = self._failure_log(
                    exc, AiOperation.caption, runtime, project_id=project_id, idea_id=idea_id, started=started
                )
                queue_error = await self._handle_failure(
                    session, exc, attempts_made, failure_log, (Caption, caption_id)
                )
                if queue_error is exc:
                    raise
                raise queue_error from exc

    async def handle_generate_image(self, payload: dict[str, Any], attempts_made: int = 0) -> None:
        started = time.monotonic()
        asset_id = payload["asset_id"]

        async with self.session_factory() as session:
            asset = await self._load_or_fail(session, Asset, asset_id, "Asset")
            idea = await self._load_idea_or_fail(session, Asset, asset_id, asset.idea_id)
            idea_id, project_id = idea.id, idea.project_id
            prompt = (idea.image_prompt or "").strip()
            stored_url: str | None = None
            try:
                if not prompt:
                    raise GenerationValidationError("Image prompt is empty. Generate image prompt first.")
                image = await self.image_provider.generate_image(prompt)
                # File first; removed again below if the row update fails
                stored_url = await self.storage.save(image.data, image.mime, idea_id)
                await self._update_entity(
                    session,
                    Asset,
                    asset_id,
                    {
                        "url": stored_url,
                        "mime": image.mime,
                        "width": image.width,
                        "height": image.height,
                        "source_prompt": prompt,
                        "provider": self.image_provider.name,
                        "status": GenerationStatus.succeeded.value,
                        "error": None,
                    },
                    RunLogEntry(
                        operation=AiOperation.image,
                        provider=self.image_provider.name,
                        model=self.image_provider.model,
                        status=GenerationStatus.succeeded,
                        project_id=project_id,
                        idea_id=idea_id,
                        latency_ms=_elapsed_ms(started),
                    ),
                )
                logger.info(f"[worker] Image asset {asset_id} stored at {stored_url}")
            except Exception as exc:
                await session.rollback()
                if stored_url:
                    removed = await self.storage.remove_by_public_url(stored_url)
                    if not removed:
                        logger.warning(f"[worker] Orphaned image {stored_url} for asset {asset_id} was not removed")
                failure_log = self._failure_log(
                    exc,
                    AiOperation.image,
                    None,
                    project_id=project_id,
                    idea_id=idea_id,
                    started=started,
                    provider=self.image_provider.name,
                    model=self.image_provider.model,
                )
                queue_error = await self._handle_failure(session, exc, attempts_made, failure_log, (Asset, asset_id))
                if queue_error is exc:
                    raise
                raise queue_error from exc

    async def handle_generate_video(self, payload: dict[str, Any], attempts_made: int = 0) -> None:
        started = time.monotonic()
        asset_id = payload["asset_id"]

        async with self.session_factory() as session:
            asset = await self._load_or_fail(session, Asset, asset_id, "Asset")
            idea = await self._load_idea_or_fail(session, Asset, asset_id, asset.idea_id)
            idea_id, project_id = idea.id, idea.project_id
            prompt = (idea.video_prompt or "").strip()
            try:
                if not prompt:
                    raise GenerationValidationError("Video prompt is empty. Generate video prompt first.")
                video = await self.video_provider.generate_video(prompt)
                await self._update_entity(
                    session,
                    Asset,
                    asset_id,
                    {
                        "url": video.url,
                        "mime": video.mime,
                        "width": video.width,
                        "height": video.height,
                        "duration": video.duration,
                        "source_prompt": prompt,
                        "provider": self.video_provider.name,
                        "status": GenerationStatus.succeeded.value,
                        "error": None,
                    },
                    RunLogEntry(
                        operation=AiOperation.video,
                        provider=self.video_provider.name,
                        model=self.video_provider.model,
                        status=GenerationStatus.succeeded,
                        project_id=project_id,
                        idea_id=idea_id,
                        latency_ms=_elapsed_ms(started),
                    ),
                )
                logger.info(f"[worker] Video asset {asset_id} ready: {video.url}")
            except Exception as exc:
                await session.rollback()
                failure_log = self._failure_log(
                    exc,
                    AiOperation.video,
                    None,
                    project_id=project_id,
                    idea_id=idea_id,
                    started=started,
                    provider=self.video_provider.name,
                    model=self.video_provider.model,
                )
                queue_error = await self._handle_failure(session, exc, attempts_made, failure_log, (Asset, asset_id))
                if queue_error is exc:
                    raise
                raise queue_error from exc
