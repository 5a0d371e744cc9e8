"""Shared driver-side error helpers.

Drivers never decide retryability themselves. They surface failures as
`APIError` carrying the HTTP status, a Retry-After hint and a body fragment,
and leave classification to `castor.error_policy`.
"""

from __future__ import annotations

import asyncio
import json
import re
from typing import TYPE_CHECKING, Any

from castor.errors import (
    APIError,
    AuthenticationError,
    CastorError,
    RateLimitError,
    _walk_exception_chain,
)

if TYPE_CHECKING:
    import httpx

BODY_FRAGMENT_CHARS = 500

_PROTO_DURATION_RE = re.compile(r"^(\d+(?:\.\d+)?)s$")

_KEY_ENV_VARS = {"openai": "OPENAI_API_KEY", "gemini": "GEMINI_API_KEY"}


def extract_status_code(exc: BaseException) -> int | None:
    """Walk the exception chain to find an HTTP status code."""
    for e in _walk_exception_chain(exc):
        for attr in ("status_code", "code", "status"):
            value = getattr(e, attr, None)
            if isinstance(value, int) and 100 <= value <= 599:
                return value
        response = getattr(e, "response", None)
        value = getattr(response, "status_code", None)
        if isinstance(value, int) and 100 <= value <= 599:
            return value
    return None


def _retry_info_seconds(exc: BaseException) -> float | None:
    """Read a Google-style ``RetryInfo.retryDelay`` (e.g. ``"8s"``) from ``.details``."""
    details: Any = getattr(exc, "details", None)
    if not isinstance(details, dict):
        return None
    error: Any = details.get("error")
    if not isinstance(error, dict):
        return None
    for entry in error.get("details") or ():
        if not isinstance(entry, dict):
            continue
        if "RetryInfo" not in str(entry.get("@type", "")):
            continue
        m = _PROTO_DURATION_RE.match(str(entry.get("retryDelay", "")))
        if m:
            return float(m.group(1))
    return None


def parse_retry_after(raw: Any) -> float | None:
    if not isinstance(raw, str) or not raw.strip():
        return None
    try:
        seconds = float(raw)
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


def extract_retry_after_s(exc: BaseException) -> float | None:
    """Walk the exception chain to find a retry-after delay in seconds."""
    for e in _walk_exception_chain(exc):
        value = getattr(e, "retry_after_s", None)
        if isinstance(value, (int, float)) and value >= 0:
            return float(value)

        headers: Any = getattr(getattr(e, "response", None), "headers", None)
        if headers is not None and hasattr(headers, "get"):
            seconds = parse_retry_after(headers.get("Retry-After"))
            if seconds is not None:
                return seconds

        retry_info = _retry_info_seconds(e)
        if retry_info is not None:
            return retry_info
    return None


def auth_hint(provider: str, status_code: int | None) -> str | None:
    if status_code in (401, 403):
        env_var = _KEY_ENV_VARS.get(provider, "the API key")
        return f"Check credentials/permissions (try setting {env_var} or Config.api_keys)."
    return None


def _error_class(status_code: int | None) -> type[APIError]:
    if status_code == 429:
        return RateLimitError
    if status_code in (401, 403):
        return AuthenticationError
    return APIError


def wrap_driver_error(
    exc: BaseException, *, provider: str, message: str
) -> CastorError:
    """Map SDK or transport exceptions into `APIError` with stable metadata.

    Cancellation is re-raised untouched; Castor's own errors pass through with
    missing provider context filled in.
    """
    if isinstance(exc, asyncio.CancelledError):
        raise exc
    if isinstance(exc, APIError):
        if exc.provider is None:
            exc.provider = provider
        return exc
    if isinstance(exc, CastorError):
        return exc

    status_code = extract_status_code(exc)
    cause = str(exc) or type(exc).__name__
    status_note = f" (status={status_code})" if status_code is not None else ""
    return _error_class(status_code)(
        f"{message}{status_note}: {cause}",
        hint=auth_hint(provider, status_code),
        status_code=status_code,
        retry_after_s=extract_retry_after_s(exc),
        provider=provider,
    )


def _body_message(body: str) -> str:
    try:
        data = json.loads(body)
    except ValueError:
        return body[:BODY_FRAGMENT_CHARS]
    err: Any = data.get("error") if isinstance(data, dict) else None
    if isinstance(err, dict) and err.get("message"):
        return str(err["message"])
    if isinstance(err, str):
        return err
    return body[:BODY_FRAGMENT_CHARS]


async def raise_for_status(
    response: httpx.Response, *, provider: str, label: str
) -> None:
    """Raise an `APIError` carrying status and body fragment for non-2xx responses."""
    if response.is_success:
        return
    body = (await response.aread()).decode("utf-8", errors="replace")
    status = response.status_code
    detail = _body_message(body).strip() or response.reason_phrase
    raise _error_class(status)(
        f"{label} API error {status}: {detail}",
        hint=auth_hint(provider, status),
        status_code=status,
        retry_after_s=parse_retry_after(response.headers.get("Retry-After")),
        provider=provider,
        body=body[:BODY_FRAGMENT_CHARS],
    )

