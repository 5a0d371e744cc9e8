"""Driver protocol and helpers shared by the wire drivers."""

from __future__ import annotations

import codecs
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from castor.config import Config
    from castor.types import ProviderCapabilities, StreamEvent, StreamRequest, Turn


@runtime_checkable
class Driver(Protocol):
    """Provider-specific streaming implementation."""

    provider: str
    model: str

    @property
    def capabilities(self) -> ProviderCapabilities:
        """Feature flags and limits of this provider."""
        ...

    @property
    def requires_credentials(self) -> bool:
        """Whether attempts need an API key from the credential set."""
        ...

    def is_configured(self, api_key: str | None) -> bool:
        """Whether the driver can attempt a request with *api_key*."""
        ...

    def stream(self, request: StreamRequest) -> AsyncIterator[StreamEvent]:
        """Stream normalized events for one attempt."""
        ...

    async def aclose(self) -> None:
        """Release transport resources."""
        ...


class LineAssembler:
    """Rolling byte buffer that yields complete lines and keeps the partial tail."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> list[str]:
        self._buffer += self._decoder.decode(chunk)
        if "\n" not in self._buffer:
            return []
        *lines, self._buffer = self._buffer.split("\n")
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> list[str]:
        """Return any trailing partial line at end of stream."""
        self._buffer += self._decoder.decode(b"", final=True)
        tail, self._buffer = self._buffer, ""
        return [tail.rstrip("\r")] if tail.strip() else []


def system_prompt_of(history: list[Turn], custom_rules: str = "") -> str | None:
    """Text of the head system turn, else the custom rules, else None."""
    if history and history[0].role == "system":
        return history[0].text_content or None
    return custom_rules.strip() or None


def without_system(history: list[Turn]) -> list[Turn]:
    """History with every system turn removed."""
    return [t for t in history if t.role != "system"]


def sampling_params(config: Config, overrides: dict[str, Any]) -> dict[str, Any]:
    """Config sampling defaults with per-request ``temperature``/``top_p``/``max_tokens`` overrides."""
    params: dict[str, Any] = {
        "temperature": config.temperature,
        "top_p": config.top_p,
        "max_tokens": config.max_tokens,
    }
    params.update({k: v for k, v in overrides.items() if k in params and v is not None})
    return params
