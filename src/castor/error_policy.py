"""Error policy: normalize heterogeneous upstream errors, then classify them.

Normalization (any error shape -> `ErrorShape`) and classification
(`ErrorShape` -> `ErrorClassification`) are separate steps. The rule table is
declarative and evaluated in order; the first matching rule wins.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import json
import re
from typing import Any, Final, Literal

from castor.errors import AbortError, _walk_exception_chain

ErrorType = Literal[
    "rate_limit",
    "auth",
    "quota",
    "network",
    "timeout",
    "server",
    "stream_parse",
    "abort",
    "client",
    "unknown",
]

_STATUS_IN_TEXT: Final = re.compile(r"\b(4\d{2}|5\d{2})\b")


@dataclass(frozen=True)
class ErrorShape:
    """Provider-neutral view of an error."""

    message: str
    status: int | None = None
    is_abort: bool = False

    @property
    def message_lower(self) -> str:
        return self.message.lower()


@dataclass(frozen=True)
class ErrorClassification:
    """Outcome of `classify`."""

    type: ErrorType
    retryable: bool
    reason: str
    provider: str = ""
    http_status: int | None = None
    raw: Any = None


@dataclass(frozen=True)
class _Rule:
    type: ErrorType
    retryable: bool
    reason: str
    needles: tuple[str, ...] = ()
    statuses: frozenset[int] = frozenset()
    min_status: int | None = None
    max_status: int | None = None

    def matches(self, shape: ErrorShape) -> bool:
        status = shape.status
        if status is not None:
            if status in self.statuses:
                return True
            if self.min_status is not None and status >= self.min_status:
                if self.max_status is None or status <= self.max_status:
                    return True
        msg = shape.message_lower
        return any(n in msg for n in self.needles)


# Abort and timeout are resolved before this table (see `classify`).
_RULES: Final[tuple[_Rule, ...]] = (
    _Rule(
        "rate_limit",
        True,
        "Rate limited or quota exceeded",
        needles=("rate limit", "quota", "exceeded"),
        statuses=frozenset({429}),
    ),
    _Rule(
        "auth",
        # Retryable so that credential rotation can consume the attempt.
        True,
        "Authentication/authorization error (likely bad or expired key)",
        needles=("unauthorized", "forbidden", "invalid api key", "api key"),
        statuses=frozenset({401, 403}),
    ),
    _Rule(
        "server",
        True,
        "Server-side error or overload",
        needles=("service unavailable", "overloaded", "server error"),
        min_status=500,
    ),
    _Rule(
        "network",
        True,
        "Network connectivity failure",
        needles=("network", "failed to fetch", "connection"),
    ),
    _Rule(
        "stream_parse",
        True,
        "Streaming/parse error (often transient)",
        needles=(
            "failed to parse stream",
            "stream error",
            "parsing error",
            "malformed response",
        ),
    ),
    _Rule("client", False, "Client error", min_status=400, max_status=499),
)


def parse_status_from_text(text: str) -> int | None:
    """Recover a 4xx/5xx status code embedded in an error message."""
    m = _STATUS_IN_TEXT.search(text or "")
    return int(m.group(1)) if m else None


def _as_status(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int) and 100 <= value <= 599:
        return value
    return None


def _status_from_object(obj: Any) -> int | None:
    for attr in ("status_code", "status", "code"):
        status = _as_status(getattr(obj, attr, None))
        if status is not None:
            return status
    response = getattr(obj, "response", None)
    if response is not None:
        return _as_status(getattr(response, "status_code", None))
    return None


def _normalize_mapping(error: dict[str, Any]) -> tuple[str, int | None]:
    inner = error.get("error")
    if isinstance(inner, dict):
        message = inner.get("message") or json.dumps(inner, default=str)
        status = _as_status(inner.get("status")) or _as_status(error.get("status"))
        return str(message), status
    if isinstance(inner, str):
        return inner, _as_status(error.get("status"))
    if isinstance(error.get("message"), str):
        return error["message"], _as_status(error.get("status"))
    try:
        return json.dumps(error, default=str), None
    except (TypeError, ValueError):
        return str(error), None


def normalize_error(error: Any) -> ErrorShape:
    """Reduce any supported error shape to an `ErrorShape`.

    Supported shapes: response-like objects (``status_code``/``status`` with
    ``reason_phrase``, ``status_text`` or ``statusText``),
    ``{"error": {"message", "status"}}`` mappings, exceptions (status read
    from the exception chain), and anything else via ``str()``.
    """
    message = ""
    status: int | None = None
    is_abort = False

    if isinstance(error, BaseException):
        message = str(error) or type(error).__name__
        for e in _walk_exception_chain(error):
            if isinstance(e, (AbortError, asyncio.CancelledError)):
                is_abort = True
            if status is None:
                status = _status_from_object(e)
        if type(error).__name__ == "AbortError":
            is_abort = True
    elif isinstance(error, dict):
        message, status = _normalize_mapping(error)
    elif error is not None and _status_from_object(error) is not None:
        # Response-like object (e.g. httpx.Response).
        status = _status_from_object(error)
        reason = (
            getattr(error, "reason_phrase", None)
            or getattr(error, "status_text", None)
            or getattr(error, "statusText", "")
        )
        message = f"{status} {reason or ''}".strip()
    elif error is not None:
        msg_attr = getattr(error, "message", None)
        message = msg_attr if isinstance(msg_attr, str) else str(error)

    if status is None:
        status = parse_status_from_text(message)
    if "abort" in message.lower():
        is_abort = True
    return ErrorShape(message=message, status=status, is_abort=is_abort)


def classify(provider: str, error: Any) -> ErrorClassification:
    """Classify *error* into the fixed taxonomy and decide retryability."""
    shape = error if isinstance(error, ErrorShape) else normalize_error(error)
    p = str(provider or "").lower()
    raw = error

    if shape.is_abort:
        return ErrorClassification(
            "abort", False, "Request aborted by caller", p, shape.status, raw
        )
    if "timeout" in shape.message_lower or "timed out" in shape.message_lower:
        return ErrorClassification(
            "timeout", True, "Operation timed out", p, shape.status, raw
        )
    for rule in _RULES:
        if rule.matches(shape):
            reason = rule.reason
            if rule.type == "client":
                reason = f"Client error {shape.status}"
            return ErrorClassification(
                rule.type, rule.retryable, reason, p, shape.status, raw
            )
    return ErrorClassification(
        "unknown", False, shape.message or "Unknown error", p, shape.status, raw
    )


def is_retryable(provider: str, error: Any) -> bool:
    """Return True when *error* is retryable per `classify`."""
    return classify(provider, error).retryable
