"""
Tests for app.services.worker_errors
"""

import pytest

from app.errors import (
    ConfigurationError,
    EntityNotFoundError,
    GenerationValidationError,
    LlmResponseError,
    MalformedResponseError,
    PromptTemplateNotFoundError,
    UnrecoverableJobError,
)
from app.services.worker_errors import (
    UNKNOWN_WORKER_ERROR,
    RetryPolicy,
    extract_error_details,
    should_use_mock_fallback,
    to_entity_error,
    to_queue_error,
)


class TestRetryPolicy:
    """Retry vs. terminal classification."""

    @pytest.mark.parametrize(
        "error",
        [
            ConfigurationError("LLM_MODEL is not configured for AI generation"),
            EntityNotFoundError("Idea not found"),
            PromptTemplateNotFoundError('Prompt template "script" not found'),
            GenerationValidationError("LLM returned 1 ideas, expected at least 3."),
            UnrecoverableJobError(RuntimeError("x")),
        ],
    )
    def test_unrecoverable(self, error):
        policy = RetryPolicy(max_attempts=3)
        assert policy.is_unrecoverable(error)
        assert policy.is_terminal_failure(error, attempts_made=0)

    @pytest.mark.parametrize(
        "error",
        [LlmResponseError("502", "provider_request_failed"), MalformedResponseError("empty"), RuntimeError("db")],
    )
    def test_retryable_until_last_attempt(self, error):
        policy = RetryPolicy(max_attempts=3)
        assert not policy.is_terminal_failure(error, attempts_made=0)
        assert not policy.is_terminal_failure(error, attempts_made=1)
        assert policy.is_terminal_failure(error, attempts_made=2)

    def test_single_attempt(self):
        assert RetryPolicy(max_attempts=1).is_final_attempt(0)

    def test_backoff(self):
        assert RetryPolicy(backoff_ms=1500).backoff_seconds(3) == 1.5
        exponential = RetryPolicy(backoff_ms=1000, backoff_strategy="exponential")
        assert [exponential.backoff_seconds(n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]

    def test_from_settings(self, make_settings):
        policy = RetryPolicy.from_settings(make_settings(queue_attempts="0", queue_backoff_ms="-5"))
        assert policy.max_attempts == 1
        assert policy.backoff_ms == 0

    def test_queue_error_wrapping(self):
        policy = RetryPolicy()
        config_error = ConfigurationError("missing key")
        wrapped = to_queue_error(policy, config_error)
        assert isinstance(wrapped, UnrecoverableJobError)
        assert wrapped.cause is config_error

        retryable = RuntimeError("flaky")
        assert to_queue_error(policy, retryable) is retryable
        already = UnrecoverableJobError(retryable)
        assert to_queue_error(policy, already) is already


class TestErrorDetails:
    def test_llm_error_details(self):
        details = extract_error_details(LlmResponseError("bad", "invalid_json_payload", "<raw>"))
        assert (details.message, details.code, details.raw_response) == ("bad", "invalid_json_payload", "<raw>")

    def test_plain_error_details(self):
        details = extract_error_details(ValueError("nope"))
        assert (details.message, details.code, details.raw_response) == ("nope", None, None)

    def test_entity_error_text(self):
        assert to_entity_error(RuntimeError("")) == UNKNOWN_WORKER_ERROR
        assert len(to_entity_error(RuntimeError("x" * 5000))) == 4000


class TestMockFallbackDecision:
    """Typed configuration errors only, per-run value first."""

    def test_requires_configuration_error(self):
        assert should_use_mock_fallback(ConfigurationError("missing"), True, None)
        assert not should_use_mock_fallback(LlmResponseError("is not configured for AI generation", "x"), True, None)

    def test_run_value_wins(self):
        error = ConfigurationError("missing")
        assert not should_use_mock_fallback(error, True, False)
        assert should_use_mock_fallback(error, False, True)
        assert not should_use_mock_fallback(error, False, None)
