"""
AI run log (audit trail) helpers.

One row per terminal provider call: a success, or the final failed attempt.
"""
from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from app.models import AiOperation, AiRunLog, GenerationStatus

MAX_RUN_LOG_ERROR_CHARS = 4000
MAX_RUN_LOG_RAW_RESPONSE_CHARS = 60000
MAX_PROVIDER_CHARS = 32
MAX_MODEL_CHARS = 64

MOCK_PROVIDER_NAME = "mock-test-fallback"
MOCK_MODEL_NAME = "mock-ai"


def normalize_run_log_error(value: str | None) -> str | None:
    text = (value or "").strip()
    if not text:
        return None
    return text[:MAX_RUN_LOG_ERROR_CHARS]


def normalize_run_log_raw_response(value: str | None) -> str | None:
    if not value or not value.strip():
        return None
    return value[:MAX_RUN_LOG_RAW_RESPONSE_CHARS]


@dataclass
class RunLogEntry:
    operation: AiOperation
    provider: str
    model: str
    status: GenerationStatus
    project_id: str | None = None
    idea_id: str | None = None
    latency_ms: int | None = None
    tokens: int | None = None
    request_id: str | None = None
    error: str | None = None
    error_code: str | None = None
    raw_response: str | None = None


def build_run_log(entry: RunLogEntry) -> AiRunLog:
    return AiRunLog(
        provider=(entry.provider or "unknown")[:MAX_PROVIDER_CHARS],
        model=(entry.model or "unknown-model")[:MAX_MODEL_CHARS],
        operation=entry.operation.value,
        project_id=entry.project_id,
        idea_id=entry.idea_id,
        latency_ms=entry.latency_ms,
        tokens=entry.tokens,
        request_id=entry.request_id,
        status=entry.status.value,
        error=normalize_run_log_error(entry.error),
        error_code=entry.error_code,
        raw_response=normalize_run_log_raw_response(entry.raw_response),
    )


async def save_run_log(session: AsyncSession, entry: RunLogEntry) -> AiRunLog:
    row = build_run_log(entry)
    session.add(row)
    await session.commit()
    return row
