"""
Confidant exception hierarchy.

All confidant exceptions inherit from ConfidantError, making it easy for
consumers to catch gateway-level errors while still distinguishing specific
failure modes.  Every error carries ``layer`` and ``context`` metadata so
route handlers and operators can see where a failure originated.
"""

from __future__ import annotations

from typing import Any

from loguru import logger


class ConfidantError(Exception):
    """Base exception class for all confidant errors."""

    def __init__(self, message: str = "", *, layer: str | None = None, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.layer = layer
        self.context: dict[str, Any] = dict(context or {})


class ConfigurationError(ConfidantError):
    """Raised for configuration errors (missing keys, invalid values)."""


class ValidationError(ConfidantError):
    """Raised when a caller supplies invalid input (bad role, forbidden override)."""


class APIError(ConfidantError):
    """Raised for API communication errors."""


class LLMError(APIError):
    """Raised for inference server errors."""


class LLMTimeoutError(LLMError):
    """The request exceeded its configured deadline. Safe to retry."""


class LLMUnavailableError(LLMError):
    """The inference server refused or reset the connection. Safe to retry."""


class MalformedResponseError(LLMError):
    """The transport succeeded but the payload is unusable. Not retried."""


class NoModelConfiguredError(ConfigurationError, LLMError):
    """No model could be resolved, not even the built-in default."""


class RateLimitedError(LLMError):
    """Admission denied by the rate limiter. Handled inside the request queue."""

    def __init__(self, message: str = "", *, retry_after: float = 0.0, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class RecoveryError(ConfidantError):
    """A structured-response parsing strategy (or the whole chain) failed."""


def is_retryable(error: BaseException) -> bool:
    """Whether a caller may reasonably retry after *error*."""
    return isinstance(error, (LLMTimeoutError, LLMUnavailableError))


def wrap_error(
    error: BaseException,
    message: str,
    *,
    layer: str,
    context: dict[str, Any] | None = None,
) -> ConfidantError:
    """Attach layer/context metadata to *error* before it reaches a caller.

    Confidant errors keep their type (so ``except LLMTimeoutError`` still
    works upstream); existing metadata wins over the new context.  Foreign
    exceptions are wrapped in :class:`LLMError` with ``__cause__`` set.
    """
    context = dict(context or {})
    if isinstance(error, ConfidantError):
        error.layer = error.layer or layer
        error.context = {**context, **error.context}
        wrapped = error
    else:
        wrapped = LLMError(f"{message}: {error}", layer=layer, context=context)
        wrapped.__cause__ = error

    logger.error(
        f"{message} [{wrapped.layer}] {type(wrapped).__name__}: {wrapped}"
        + (f" context={wrapped.context}" if wrapped.context else "")
    )
    return wrapped


def friendly_error_message(error: Exception) -> str:
    """Return a short, user-readable message for a gateway error.

    Strips internal details and maps known error classes to safe messages.
    """
    if isinstance(error, NoModelConfiguredError):
        return "No language model is configured. Ask an administrator to set one up."
    if isinstance(error, LLMTimeoutError):
        return "The model took too long to answer. Please try again."
    if isinstance(error, LLMUnavailableError):
        return "The model server is not reachable right now. Please check that it is running."
    if isinstance(error, MalformedResponseError):
        return "The model returned a response I couldn't understand."
    if isinstance(error, RateLimitedError):
        return "The model is busy right now. Please try again in a moment."
    if isinstance(error, ValidationError):
        return f"Invalid request: {error}"
    if isinstance(error, ConfigurationError):
        return f"Configuration problem: {error}"
    return "Something unexpected happened. Please try again."
