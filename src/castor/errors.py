"""Exception hierarchy for Castor."""

from __future__ import annotations

from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator


class Severity(StrEnum):
    """How badly a surfaced failure affects the driver."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class CastorError(Exception):
    """Base exception for all Castor errors."""

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint = hint


class ConfigurationError(CastorError):
    """Configuration validation or resolution failed."""


class AbortError(CastorError):
    """The caller cancelled the request."""

    def __init__(self, message: str = "Request aborted", *, hint: str | None = None):
        super().__init__(message, hint=hint)


class RequestTimeoutError(CastorError):
    """The per-request timeout elapsed before the stream finished."""


class APIError(CastorError):
    """Upstream call failed.

    Drivers attach the HTTP status and a fragment of the response body so the
    error policy can classify the failure without provider-specific rules.
    """

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        status_code: int | None = None,
        retryable: bool | None = None,
        retry_after_s: float | None = None,
        provider: str | None = None,
        body: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.status_code = status_code
        self.retryable = retryable
        self.retry_after_s = retry_after_s
        self.provider = provider
        self.body = body


class RateLimitError(APIError):
    """Rate limit exceeded (HTTP 429)."""


class AuthenticationError(APIError):
    """Credential missing, invalid or not permitted (HTTP 401/403)."""


class StreamParseError(APIError):
    """The upstream stream reported an in-band error or could not be decoded."""


class ServiceUnavailableError(CastorError):
    """A local gate refused the request before it reached the network."""


class CircuitOpenError(ServiceUnavailableError):
    """The circuit breaker is open."""


class ServiceUnhealthyError(ServiceUnavailableError):
    """The driver was marked unhealthy and needs a manual reset."""


class ServiceError(CastorError):
    """Terminal failure surfaced by the orchestrator after retries.

    Carries the classification of the last attempt and the original cause
    (also chained as ``__cause__``).
    """

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        category: str,
        severity: Severity,
        provider: str,
        request_id: str,
        original_error: BaseException,
        status_code: int | None = None,
        attempts: int = 1,
    ) -> None:
        super().__init__(message, hint=hint)
        self.category = category
        self.severity = severity
        self.provider = provider
        self.request_id = request_id
        self.original_error = original_error
        self.status_code = status_code
        self.attempts = attempts


def _walk_exception_chain(exc: BaseException) -> Iterator[BaseException]:
    """Yield *exc* and its ``__cause__``/``__context__`` chain, with cycle protection."""
    seen: set[int] = set()
    stack: list[BaseException] = [exc]
    while stack:
        cur = stack.pop()
        if id(cur) in seen:
            continue
        seen.add(id(cur))
        yield cur

        cause = cur.__cause__
        if isinstance(cause, BaseException):
            stack.append(cause)
        context = cur.__context__
        if isinstance(context, BaseException):
            stack.append(context)
