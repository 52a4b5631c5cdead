"""
Celery tasks for AI generation.

One task per job name (generate-ideas, generate-script, ...). Each runs
GenerationWorker in a fresh event loop via asyncio.run() with its own engine.

Retry decisions belong to RetryPolicy: a retryable failure is rescheduled
with the configured backoff, a terminal one propagates and on_failure moves
the job to the dead-letter queue.
"""
from __future__ import annotations

import asyncio
import logging
import traceback
from typing import Any

from celery import Task

from app.services.ai_queue import (
    AI_GENERATION_QUEUE,
    AI_GENERATION_DLQ,
    DEAD_LETTER_TASK_NAME,
    AiJobName,
    build_dead_letter_record,
    publish_dead_letter,
)
from app.services.worker_errors import RetryPolicy
from app.settings import get_settings
from app.worker.celery_app import celery_app

logger = logging.getLogger(__name__)


def _retry_policy() -> RetryPolicy:
    return RetryPolicy.from_settings(get_settings())


async def _run_job_async(job_name: str, payload: dict[str, Any], attempts_made: int) -> None:
    """Run one job with a fresh engine; a worker process never shares a loop between tasks."""
    from sqlalchemy.ext.asyncio import create_async_engine

    from app.db import make_session_factory
    from app.services.generation_worker import GenerationWorker
    from app.services.llm_provider import build_llm_provider
    from app.services.media_providers import MockImageProvider, MockVideoProvider
    from app.services.object_storage import LocalObjectStorage

    settings = get_settings()
    engine = create_async_engine(settings.async_database_url, echo=False)
    try:
        worker = GenerationWorker(
            make_session_factory(engine),
            build_llm_provider(settings),
            image_provider=MockImageProvider(),
            video_provider=MockVideoProvider(settings),
            storage=LocalObjectStorage(settings=settings),
            settings=settings,
            policy=_retry_policy(),
        )
        await worker.run(job_name, payload, attempts_made)
    finally:
        await engine.dispose()


def _run_job(task: Task, job_name: str, payload: dict[str, Any]) -> dict:
    policy = _retry_policy()
    attempts_made = task.request.retries
    logger.info(
        f"[worker] Starting {job_name} (celery_id={task.request.id}, attempt={attempts_made + 1}/{policy.max_attempts})"
    )
    try:
        asyncio.run(_run_job_async(job_name, payload, attempts_made))
    except Exception as exc:
        if policy.is_terminal_failure(exc, attempts_made):
            raise
        countdown = policy.backoff_seconds(attempts_made + 1)
        logger.warning(f"[worker] {job_name} will retry in {countdown}s: {exc}")
        raise task.retry(exc=exc, countdown=countdown, max_retries=policy.max_attempts - 1)
    return {"status": "succeeded", "job": job_name}


class AiGenerationTask(Task):
    """Base task: terminal failures are recorded in the dead-letter queue."""

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        policy = _retry_policy()
        stack = str(einfo) if einfo is not None else "".join(traceback.format_exception(exc))
        record = build_dead_letter_record(
            job_id=task_id,
            job_name=self.name,
            attempts_made=self.request.retries + 1,
            max_attempts=policy.max_attempts,
            error=exc,
            error_stack=stack,
            data=(kwargs or {}).get("payload"),
            original_queue=AI_GENERATION_QUEUE,
        )
        publish_dead_letter(self.app, record)


def _task_options(job_name: AiJobName) -> dict[str, Any]:
    return {"bind": True, "base": AiGenerationTask, "name": job_name.value, "queue": AI_GENERATION_QUEUE}


@celery_app.task(**_task_options(AiJobName.generate_ideas))
def generate_ideas(self, payload: dict) -> dict:
    return _run_job(self, AiJobName.generate_ideas.value, payload)


@celery_app.task(**_task_options(AiJobName.generate_script))
def generate_script(self, payload: dict) -> dict:
    return _run_job(self, AiJobName.generate_script.value, payload)


@celery_app.task(**_task_options(AiJobName.generate_caption))
def generate_caption(self, payload: dict) -> dict:
    return _run_job(self, AiJobName.generate_caption.value, payload)


@celery_app.task(**_task_options(AiJobName.generate_image))
def generate_image(self, payload: dict) -> dict:
    return _run_job(self, AiJobName.generate_image.value, payload)


@celery_app.task(**_task_options(AiJobName.generate_video))
def generate_video(self, payload: dict) -> dict:
    return _run_job(self, AiJobName.generate_video.value, payload)


@celery_app.task(name=DEAD_LETTER_TASK_NAME, queue=AI_GENERATION_DLQ)
def dead_letter(record: dict) -> dict:
    """Consumed only by an operator-run worker (-Q ai-generation-dlq)."""
    logger.error(
        f"[dlq] {record.get('original_name')} job {record.get('original_job_id')} "
        f"failed after {record.get('attempts_made')}/{record.get('max_attempts')} attempts: "
        f"{record.get('error_message')}"
    )
    return record
