"""Tests for confidant.core.exceptions."""

import pytest

from confidant.core.exceptions import (
    APIError,
    ConfidantError,
    ConfigurationError,
    LLMError,
    LLMTimeoutError,
    LLMUnavailableError,
    MalformedResponseError,
    NoModelConfiguredError,
    RateLimitedError,
    RecoveryError,
    ValidationError,
    friendly_error_message,
    is_retryable,
    wrap_error,
)


def test_hierarchy():
    """All exceptions should inherit from ConfidantError."""
    for exc_cls in [
        ConfigurationError,
        ValidationError,
        APIError,
        LLMError,
        LLMTimeoutError,
        LLMUnavailableError,
        MalformedResponseError,
        NoModelConfiguredError,
        RateLimitedError,
        RecoveryError,
    ]:
        assert issubclass(exc_cls, ConfidantError)


def test_llm_error_is_api_error():
    assert issubclass(LLMError, APIError)
    assert issubclass(LLMTimeoutError, LLMError)
    assert issubclass(MalformedResponseError, LLMError)


def test_no_model_configured_is_both_configuration_and_llm_error():
    assert issubclass(NoModelConfiguredError, ConfigurationError)
    assert issubclass(NoModelConfiguredError, LLMError)


def test_metadata():
    err = LLMError("boom", layer="transport", context={"status": 500})
    assert str(err) == "boom"
    assert err.layer == "transport"
    assert err.context == {"status": 500}


def test_rate_limited_retry_after():
    err = RateLimitedError("slow down", retry_after=12.5, layer="rate_limiter")
    assert err.retry_after == 12.5
    assert err.layer == "rate_limiter"


def test_is_retryable():
    assert is_retryable(LLMTimeoutError("t"))
    assert is_retryable(LLMUnavailableError("u"))
    assert not is_retryable(MalformedResponseError("m"))
    assert not is_retryable(ValueError("v"))


class TestWrapError:
    def test_keeps_package_error_type(self):
        original = LLMTimeoutError("too slow", context={"timeout": 30})
        wrapped = wrap_error(original, "Request failed", layer="request_queue", context={"request_id": "abc"})
        assert wrapped is original
        assert isinstance(wrapped, LLMTimeoutError)
        assert wrapped.layer == "request_queue"
        assert wrapped.context == {"request_id": "abc", "timeout": 30}

    def test_existing_layer_and_context_win(self):
        original = LLMError("x", layer="transport", context={"status": 502})
        wrapped = wrap_error(original, "Request failed", layer="request_queue", context={"status": 0})
        assert wrapped.layer == "transport"
        assert wrapped.context["status"] == 502

    def test_wraps_foreign_error(self):
        cause = RuntimeError("socket exploded")
        wrapped = wrap_error(cause, "Request failed", layer="request_queue")
        assert isinstance(wrapped, LLMError)
        assert wrapped.__cause__ is cause
        assert "socket exploded" in str(wrapped)
        assert wrapped.layer == "request_queue"


@pytest.mark.parametrize(
    ("error", "fragment"),
    [
        (NoModelConfiguredError("none"), "No language model"),
        (LLMTimeoutError("t"), "too long"),
        (LLMUnavailableError("u"), "not reachable"),
        (MalformedResponseError("m"), "couldn't understand"),
        (ValidationError("bad role"), "bad role"),
        (RuntimeError("internal detail"), "Something unexpected"),
    ],
)
def test_friendly_error_message(error, fragment):
    message = friendly_error_message(error)
    assert fragment in message
    if isinstance(error, RuntimeError):
        assert "internal detail" not in message


def test_catch_base():
    """Catching ConfidantError should catch all subtypes."""
    try:
        raise MalformedResponseError("no choices")
    except ConfidantError as e:
        assert "no choices" in str(e)
