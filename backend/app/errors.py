"""
Domain errors shared by services, workers and routes.

Each AppError subclass carries the HTTP status the API layer maps it to.
Job handlers use the same types to decide whether a failure is worth a retry:
configuration, not-found and validation errors are terminal, transport and
malformed-response errors are retried.
"""
from __future__ import annotations


class AppError(Exception):
    """Base class for errors with a user-facing message."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConfigurationError(AppError):
    """A required credential, model or base URL is missing."""

    status_code = 503


class ValidationError(AppError):
    status_code = 400


class GenerationValidationError(ValidationError):
    """Generated output is well-formed but does not satisfy the request."""


class EntityNotFoundError(AppError):
    status_code = 404


class PromptTemplateNotFoundError(EntityNotFoundError):
    pass


class ConflictError(AppError):
    status_code = 409


class RateLimitExceeded(AppError):
    status_code = 429

    def __init__(self, message: str, retry_after_sec: int):
        super().__init__(message)
        self.retry_after_sec = retry_after_sec


class RateLimiterUnavailable(AppError):
    status_code = 503


class UpstreamTimeoutError(AppError):
    """Synchronous provider call exceeded its deadline."""

    status_code = 504


class LlmResponseError(Exception):
    """Provider call failed or returned something that is not usable JSON.

    code is one of: provider_request_failed, empty_response, invalid_json_payload.
    """

    def __init__(self, message: str, code: str, raw_response: str | None = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.raw_response = raw_response


class ProviderTimeoutError(LlmResponseError):
    def __init__(self, message: str, raw_response: str | None = None):
        super().__init__(message, "provider_request_failed", raw_response)


class MalformedResponseError(LlmResponseError):
    """Parsed JSON lacks the fields a normalizer needs."""

    def __init__(self, message: str, raw_response: str | None = None):
        super().__init__(message, "invalid_json_payload", raw_response)


class UnrecoverableJobError(Exception):
    """Wraps an error the queue must not retry."""

    def __init__(self, cause: BaseException):
        super().__init__(str(cause))
        self.cause = cause


class UpstreamUnavailableError(AppError):
    """Provider rejected or failed a synchronous request."""

    status_code = 503
