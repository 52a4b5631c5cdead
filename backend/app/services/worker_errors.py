"""
Failure policy for AI generation jobs.

RetryPolicy decides retry vs. terminal failure independently of the queue
library; the Celery task layer only asks it questions.
"""
from __future__ import annotations

from dataclasses import dataclass

from app.errors import (
    ConfigurationError,
    EntityNotFoundError,
    GenerationValidationError,
    LlmResponseError,
    UnrecoverableJobError,
)
from app.services.ai_settings import parse_bool
from app.settings import Settings

UNKNOWN_WORKER_ERROR = "Unknown AI worker error"
MAX_ENTITY_ERROR_CHARS = 4000

# Missing credentials, missing prompt templates / entities and unsatisfiable
# generation results fail the same way on every attempt.
UNRECOVERABLE_ERRORS = (ConfigurationError, EntityNotFoundError, GenerationValidationError)


@dataclass(frozen=True)
class ErrorDetails:
    message: str
    code: str | None
    raw_response: str | None


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_ms: int = 1500
    backoff_strategy: str = "fixed"

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=max(settings.queue_attempts, 1),
            backoff_ms=max(settings.queue_backoff_ms, 0),
            backoff_strategy=settings.queue_backoff_strategy,
        )

    def is_unrecoverable(self, error: BaseException) -> bool:
        if isinstance(error, UnrecoverableJobError):
            return True
        return isinstance(error, UNRECOVERABLE_ERRORS)

    def is_final_attempt(self, attempts_made: int) -> bool:
        """attempts_made counts attempts finished before the current one."""
        return attempts_made + 1 >= self.max_attempts

    def is_terminal_failure(self, error: BaseException, attempts_made: int) -> bool:
        """No further attempt will run: the entity is marked failed and a run log written."""
        return self.is_unrecoverable(error) or self.is_final_attempt(attempts_made)

    def backoff_seconds(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based)."""
        delay_ms = self.backoff_ms
        if self.backoff_strategy == "exponential":
            delay_ms = self.backoff_ms * 2 ** max(attempt - 1, 0)
        return delay_ms / 1000


def to_error_message(error: BaseException | None) -> str:
    if error is None:
        return UNKNOWN_WORKER_ERROR
    message = getattr(error, "message", None) or str(error)
    return message or UNKNOWN_WORKER_ERROR


def to_entity_error(error: BaseException) -> str:
    return to_error_message(error).strip()[:MAX_ENTITY_ERROR_CHARS] or UNKNOWN_WORKER_ERROR


def extract_error_details(error: BaseException) -> ErrorDetails:
    if isinstance(error, LlmResponseError):
        return ErrorDetails(error.message, error.code, error.raw_response)
    return ErrorDetails(to_error_message(error), None, None)


def should_use_mock_fallback(error: BaseException, worker_test_mode: bool, run_test_mode: bool | None) -> bool:
    """Mock artifacts only replace a missing-credential failure in AI test mode.

    The per-run value (stored settings) wins over the worker environment.
    """
    test_mode = run_test_mode if run_test_mode is not None else worker_test_mode
    return bool(test_mode) and isinstance(error, ConfigurationError)


def worker_test_mode(settings: Settings) -> bool:
    return parse_bool(settings.ai_test_mode, False)


def to_queue_error(policy: RetryPolicy, error: BaseException) -> BaseException:
    if policy.is_unrecoverable(error) and not isinstance(error, UnrecoverableJobError):
        return UnrecoverableJobError(error)
    return error
