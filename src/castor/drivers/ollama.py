"""Self-hosted Ollama driver over newline-delimited JSON."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

import httpx

from castor.cancel import guard_stream
from castor.drivers._errors import raise_for_status, wrap_driver_error
from castor.drivers.base import (
    LineAssembler,
    sampling_params,
    system_prompt_of,
    without_system,
)
from castor.errors import CastorError, ConfigurationError, StreamParseError
from castor.types import ProviderCapabilities, TextEvent, ToolProtocol, UsageEvent

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from castor.config import Config
    from castor.types import StreamEvent, StreamRequest, Turn

logger = logging.getLogger(__name__)

_ROLES = {"user": "user", "model": "assistant"}


def build_messages(history: list[Turn], custom_rules: str = "") -> list[dict[str, str]]:
    """Text-only chat messages; tool parts are not sent."""
    messages: list[dict[str, str]] = []
    system = system_prompt_of(history, custom_rules)
    if system:
        messages.append({"role": "system", "content": system})
    for turn in without_system(history):
        text = turn.text_content
        if text.strip():
            messages.append({"role": _ROLES[turn.role], "content": text})
    return messages


class OllamaDriver:
    """Ollama ``/api/chat`` streaming driver. No tools, no credentials."""

    provider = "ollama"

    def __init__(
        self, config: Config, *, http_client: httpx.AsyncClient | None = None
    ) -> None:
        self.config = config
        self.model = config.model
        self.base_url = config.base_url or "http://localhost:11434"
        self.timeout_s = config.timeout_s
        self._client = http_client
        self._owns_client = http_client is None

    @property
    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(
            provider=self.provider,
            supports_function_calling=False,
            supports_system_instruction=True,
            tool_protocol=ToolProtocol.NONE,
            max_context=8_192,
            max_tokens=self.config.max_tokens,
        )

    @property
    def requires_credentials(self) -> bool:
        return False

    def is_configured(self, api_key: str | None) -> bool:
        return bool(self.model and self.base_url)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout_s))
        return self._client

    def build_payload(self, request: StreamRequest) -> dict[str, Any]:
        params = sampling_params(self.config, request.model_params)
        return {
            "model": self.model,
            "messages": build_messages(request.history, request.custom_rules),
            "stream": True,
            "options": {
                "temperature": params["temperature"],
                "top_p": params["top_p"],
                "num_predict": params["max_tokens"],
            },
        }

    def stream(self, request: StreamRequest) -> AsyncIterator[StreamEvent]:
        return guard_stream(
            self._events(request), cancel=request.cancel, timeout_s=self.timeout_s
        )

    async def _events(self, request: StreamRequest) -> AsyncIterator[StreamEvent]:
        if not self.model:
            raise ConfigurationError("Ollama model is not configured")
        client = self._get_client()
        try:
            async with client.stream(
                "POST", f"{self.base_url}/api/chat", json=self.build_payload(request)
            ) as response:
                await raise_for_status(response, provider=self.provider, label="Ollama")
                assembler = LineAssembler()
                async for chunk in response.aiter_bytes():
                    for line in assembler.feed(chunk):
                        for event, done in _decode_line(line):
                            yield event
                            if done:
                                return
                for line in assembler.flush():
                    for event, _ in _decode_line(line):
                        yield event
        except CastorError:
            raise
        except httpx.HTTPError as e:
            raise wrap_driver_error(
                e, provider=self.provider, message="Ollama request failed"
            ) from e

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None


def _decode_line(line: str) -> list[tuple[StreamEvent, bool]]:
    """Decode one NDJSON object into ``(event, done)`` pairs."""
    line = line.strip()
    if not line:
        return []
    try:
        obj = json.loads(line)
    except ValueError:
        logger.debug("Skipping unparsable NDJSON line: %.120s", line)
        return []
    if not isinstance(obj, dict):
        return []
    if obj.get("error"):
        raise StreamParseError(
            f"Ollama stream error: {obj['error']}", provider="ollama"
        )

    out: list[tuple[StreamEvent, bool]] = []
    content = (obj.get("message") or {}).get("content")
    if content:
        out.append((TextEvent(content), False))
    if obj.get("done") and ("prompt_eval_count" in obj or "eval_count" in obj):
        out.append(
            (
                UsageEvent(
                    prompt_tokens=int(obj.get("prompt_eval_count") or 0),
                    completion_tokens=int(obj.get("eval_count") or 0),
                ),
                True,
            )
        )
    return out
