"""
Publishing side of the AI generation queue.

Queue:       ai-generation      (one Celery task per job name)
Dead letter: ai-generation-dlq  (records of jobs that failed for good)

Entity jobs get deterministic ids ({kind}-{entity_id}) so a job can be traced
back to the row it fills.
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from celery import Celery

logger = logging.getLogger(__name__)

AI_GENERATION_QUEUE = "ai-generation"
AI_GENERATION_DLQ = "ai-generation-dlq"
DEAD_LETTER_TASK_NAME = "ai-generation.dead-letter"


class AiJobName(str, Enum):
    generate_ideas = "generate-ideas"
    generate_script = "generate-script"
    generate_caption = "generate-caption"
    generate_image = "generate-image"
    generate_video = "generate-video"


class AiQueue:
    def __init__(self, celery: Celery):
        self.celery = celery

    def _send(self, job_name: AiJobName, payload: dict[str, Any], job_id: str) -> str:
        result = self.celery.send_task(
            job_name.value,
            kwargs={"payload": payload},
            task_id=job_id,
            queue=AI_GENERATION_QUEUE,
        )
        logger.info(f"[ai-queue] Enqueued {job_name.value} job {result.id}")
        return result.id

    def enqueue_ideas(self, payload: dict[str, Any]) -> str:
        return self._send(AiJobName.generate_ideas, payload, f"ideas-{uuid.uuid4()}")

    def enqueue_script(self, script_id: str) -> str:
        return self._send(AiJobName.generate_script, {"script_id": script_id}, f"script-{script_id}")

    def enqueue_caption(self, caption_id: str) -> str:
        return self._send(AiJobName.generate_caption, {"caption_id": caption_id}, f"caption-{caption_id}")

    def enqueue_image(self, asset_id: str) -> str:
        return self._send(AiJobName.generate_image, {"asset_id": asset_id}, f"image-{asset_id}")

    def enqueue_video(self, asset_id: str) -> str:
        return self._send(AiJobName.generate_video, {"asset_id": asset_id}, f"video-{asset_id}")


def build_dead_letter_record(
    *,
    job_id: str | None,
    job_name: str,
    attempts_made: int,
    max_attempts: int,
    error: BaseException | None,
    error_stack: str | None,
    data: Any,
    original_queue: str = AI_GENERATION_QUEUE,
) -> dict[str, Any]:
    return {
        "original_queue": original_queue,
        "original_job_id": job_id,
        "original_name": job_name,
        "attempts_made": attempts_made,
        "max_attempts": max_attempts,
        "failed_at": datetime.now(timezone.utc).isoformat(),
        "error_message": str(error) if error is not None else None,
        "error_stack": error_stack,
        "data": data,
    }


def publish_dead_letter(celery: Celery, record: dict[str, Any]) -> bool:
    """Best-effort: a broken DLQ must not mask the original failure."""
    try:
        celery.send_task(DEAD_LETTER_TASK_NAME, kwargs={"record": record}, queue=AI_GENERATION_DLQ)
    except Exception as exc:
        logger.error(f"[ai-queue] Failed to publish dead letter for job {record.get('original_job_id')}: {exc}")
        return False
    logger.warning(
        f"[ai-queue] Job {record.get('original_job_id')} ({record.get('original_name')}) moved to {AI_GENERATION_DLQ}"
    )
    return True
