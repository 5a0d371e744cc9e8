from __future__ import annotations

import pytest

from castor.errors import (
    AbortError,
    APIError,
    AuthenticationError,
    CastorError,
    CircuitOpenError,
    RateLimitError,
    ServiceError,
    ServiceUnavailableError,
    Severity,
    _walk_exception_chain,
)

pytestmark = pytest.mark.unit


def test_api_error_structured_metadata() -> None:
    err = APIError(
        "boom",
        hint="do this",
        retryable=True,
        status_code=429,
        retry_after_s=2.0,
        provider="openai",
        body='{"error": "slow down"}',
    )

    assert str(err) == "boom"
    assert err.hint == "do this"
    assert err.retryable is True
    assert err.status_code == 429
    assert err.retry_after_s == 2.0
    assert err.provider == "openai"
    assert err.body == '{"error": "slow down"}'


def test_api_error_defaults_to_none() -> None:
    err = APIError("fail")
    assert err.hint is None
    assert err.retryable is None
    assert err.status_code is None
    assert err.retry_after_s is None
    assert err.provider is None
    assert err.body is None


def test_subclass_hierarchy() -> None:
    """Typed upstream and gate errors are catchable as their bases."""
    assert isinstance(RateLimitError("r"), APIError)
    assert isinstance(AuthenticationError("a"), CastorError)
    assert isinstance(CircuitOpenError("open"), ServiceUnavailableError)
    assert isinstance(AbortError(), CastorError)


def test_abort_error_has_default_message() -> None:
    assert str(AbortError()) == "Request aborted"


def test_service_error_carries_classification_and_cause() -> None:
    cause = RateLimitError("429", status_code=429)
    err = ServiceError(
        "slow down",
        category="rate_limit",
        severity=Severity.MEDIUM,
        provider="gemini",
        request_id="req_1",
        original_error=cause,
        status_code=429,
        attempts=3,
    )

    assert err.category == "rate_limit"
    assert err.severity is Severity.MEDIUM
    assert err.provider == "gemini"
    assert err.request_id == "req_1"
    assert err.original_error is cause
    assert err.status_code == 429
    assert err.attempts == 3


def test_walk_exception_chain_follows_cause_and_survives_cycles() -> None:
    inner = APIError("inner", status_code=503)
    outer = RuntimeError("outer")
    outer.__cause__ = inner
    inner.__context__ = outer  # cycle

    chain = list(_walk_exception_chain(outer))

    assert chain[0] is outer
    assert inner in chain
    assert len(chain) == 2
