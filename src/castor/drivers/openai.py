"""OpenAI-compatible chat-completions driver over server-sent events."""

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
from castor.errors import AuthenticationError, CastorError, StreamParseError
from castor.tools import from_provider_calls, to_provider_calls
from castor.types import (
    FunctionCall,
    FunctionCallsEvent,
    ProviderCapabilities,
    TextEvent,
    ToolProtocol,
    UsageEvent,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from castor.config import Config
    from castor.types import StreamEvent, StreamRequest, Turn

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


# =============================================================================
# Outbound messages
# =============================================================================


def _tool_content(response: Any) -> str:
    if isinstance(response, str):
        return response
    return json.dumps(response, default=str)


def build_messages(history: list[Turn], custom_rules: str = "") -> list[dict[str, Any]]:
    """Translate turns into chat-completions messages with strict tool pairing."""
    messages: list[dict[str, Any]] = []
    system = system_prompt_of(history, custom_rules)
    if system:
        messages.append({"role": "system", "content": system})

    for turn in without_system(history):
        text = turn.text_content
        if turn.role == "user":
            for resp in turn.function_responses:
                messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": resp.id,
                        "name": resp.name,
                        "content": _tool_content(resp.response),
                    }
                )
            if text.strip():
                messages.append({"role": "user", "content": text})
            continue

        calls = [
            FunctionCall(id=c.id, name=c.name, args=c.args)
            for c in turn.function_calls
            if c.id and c.name
        ]
        if calls:
            messages.append(
                {
                    "role": "assistant",
                    "content": text or None,
                    "tool_calls": to_provider_calls(ToolProtocol.OPENAI, calls),
                }
            )
        elif text.strip():
            messages.append({"role": "assistant", "content": text})

    return enforce_tool_pairing(messages)


def enforce_tool_pairing(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Trim at the first assistant ``tool_calls`` block left unresolved.

    Every assistant message declaring ``tool_calls`` must be followed by one
    ``tool`` message per declared id before any other message. Tool messages
    answering no open call are dropped.
    """
    out: list[dict[str, Any]] = []
    open_ids: set[str] = set()
    block_start = 0

    for msg in messages:
        if msg["role"] == "tool":
            call_id = msg.get("tool_call_id")
            if call_id in open_ids:
                open_ids.discard(call_id)
                out.append(msg)
            else:
                logger.debug("Dropping tool message for unknown call id %r", call_id)
            continue
        if open_ids:
            break
        if msg["role"] == "assistant" and msg.get("tool_calls"):
            open_ids = {tc["id"] for tc in msg["tool_calls"]}
            block_start = len(out)
        out.append(msg)

    if open_ids:
        logger.warning(
            "Trimmed %d outbound message(s) at an unresolved tool_calls block",
            len(messages) - block_start,
        )
        return out[:block_start]
    return out


# =============================================================================
# Inbound stream
# =============================================================================


class ToolCallAccumulator:
    """Aggregates streamed tool-call fragments keyed by their integer ``index``.

    A call is promoted once its id and name are known and the concatenated
    ``arguments`` text parses as a JSON object.
    """

    def __init__(self) -> None:
        self._slots: dict[int, dict[str, str]] = {}

    def __len__(self) -> int:
        return len(self._slots)

    def add(self, fragment: dict[str, Any]) -> None:
        index = fragment.get("index")
        if not isinstance(index, int):
            index = 0
        slot = self._slots.setdefault(index, {"id": "", "name": "", "arguments": ""})
        if fragment.get("id"):
            slot["id"] = str(fragment["id"])
        fn = fragment.get("function") or {}
        if fn.get("name"):
            slot["name"] = str(fn["name"])
        if fn.get("arguments"):
            slot["arguments"] += str(fn["arguments"])

    def pop_complete(self, *, final: bool = False) -> list[FunctionCall]:
        """Remove and return the calls that are complete.

        With *final*, empty argument text counts as ``{}`` and calls that can
        never complete are discarded.
        """
        ready: list[dict[str, str]] = []
        for index in sorted(self._slots):
            slot = self._slots[index]
            arguments = slot["arguments"] or ("{}" if final else "")
            if slot["id"] and slot["name"] and _is_json_object(arguments):
                ready.append({**slot, "arguments": arguments})
                del self._slots[index]
        if final and self._slots:
            logger.warning(
                "Discarding %d incomplete tool call(s) at end of stream",
                len(self._slots),
            )
            self._slots.clear()
        return from_provider_calls(ToolProtocol.OPENAI, ready)


def _is_json_object(text: str) -> bool:
    if not text:
        return False
    try:
        return isinstance(json.loads(text), dict)
    except ValueError:
        return False


class SSEDecoder:
    """Turns ``data:`` lines into stream events; sets ``done`` on ``[DONE]``."""

    def __init__(self) -> None:
        self.calls = ToolCallAccumulator()
        self.done = False

    def feed_line(self, line: str) -> list[StreamEvent]:
        line = line.strip()
        if not line.startswith(DATA_PREFIX):
            return []
        data = line[len(DATA_PREFIX) :].strip()
        if data == DONE_SENTINEL:
            self.done = True
            return self.finish()
        try:
            payload = json.loads(data)
        except ValueError:
            logger.debug("Skipping malformed SSE payload: %.120s", data)
            return []
        if not isinstance(payload, dict):
            return []
        return self._handle(payload)

    def finish(self) -> list[StreamEvent]:
        calls = self.calls.pop_complete(final=True)
        return [FunctionCallsEvent(tuple(calls))] if calls else []

    def _handle(self, payload: dict[str, Any]) -> list[StreamEvent]:
        error = payload.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else error
            raise StreamParseError(
                f"OpenAI stream error: {message}", provider="openai"
            )

        events: list[StreamEvent] = []
        choices = payload.get("choices") or []
        choice = choices[0] if choices and isinstance(choices[0], dict) else {}
        delta = choice.get("delta") or {}

        content = delta.get("content")
        if content:
            events.append(TextEvent(content))

        for fragment in delta.get("tool_calls") or ():
            if isinstance(fragment, dict):
                self.calls.add(fragment)
        if len(self.calls):
            calls = self.calls.pop_complete(final=bool(choice.get("finish_reason")))
            if calls:
                events.append(FunctionCallsEvent(tuple(calls)))

        usage = payload.get("usage")
        if isinstance(usage, dict):
            events.append(
                UsageEvent(
                    prompt_tokens=int(usage.get("prompt_tokens") or 0),
                    completion_tokens=int(usage.get("completion_tokens") or 0),
                )
            )
        return events


# =============================================================================
# Driver
# =============================================================================


class OpenAIDriver:
    """OpenAI-compatible ``/chat/completions`` streaming driver."""

    provider = "openai"

    def __init__(
        self, config: Config, *, http_client: httpx.AsyncClient | None = None
    ) -> None:
        self.config = config
        self.model = config.model
        self.base_url = config.base_url or "https://api.openai.com/v1"
        self.timeout_s = config.timeout_s
        self._client = http_client
        self._owns_client = http_client is None

    @property
    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(
            provider=self.provider,
            supports_function_calling=True,
            supports_system_instruction=True,
            tool_protocol=ToolProtocol.OPENAI,
            max_context=128_000,
            max_tokens=self.config.max_tokens,
            rate_limits={
                "requests_per_minute": self.config.rate_limit.requests_per_minute
            },
        )

    @property
    def requires_credentials(self) -> bool:
        return True

    def is_configured(self, api_key: str | None) -> bool:
        return bool(api_key and self.model)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout_s))
        return self._client

    def build_payload(self, request: StreamRequest) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": build_messages(request.history, request.custom_rules),
            "stream": True,
            "stream_options": {"include_usage": True},
            **sampling_params(self.config, request.model_params),
        }
        if request.tools:
            payload["tools"] = request.tools
            payload["tool_choice"] = request.tool_choice or self.config.tool_choice
        return payload

    def stream(self, request: StreamRequest) -> AsyncIterator[StreamEvent]:
        return guard_stream(
            self._events(request), cancel=request.cancel, timeout_s=self.timeout_s
        )

    async def _events(self, request: StreamRequest) -> AsyncIterator[StreamEvent]:
        if not request.api_key:
            raise AuthenticationError(
                "OpenAI API key is not configured",
                hint="Set OPENAI_API_KEY or pass Config(api_keys=...).",
                provider=self.provider,
            )
        headers = {
            "Authorization": f"Bearer {request.api_key}",
            "Accept": "text/event-stream",
        }
        client = self._get_client()
        try:
            async with client.stream(
                "POST",
                f"{self.base_url}/chat/completions",
                json=self.build_payload(request),
                headers=headers,
            ) as response:
                await raise_for_status(response, provider=self.provider, label="OpenAI")
                assembler = LineAssembler()
                decoder = SSEDecoder()
                async for chunk in response.aiter_bytes():
                    for line in assembler.feed(chunk):
                        for event in decoder.feed_line(line):
                            yield event
                        if decoder.done:
                            return
                for line in assembler.flush():
                    for event in decoder.feed_line(line):
                        yield event
                    if decoder.done:
                        return
                for event in decoder.finish():
                    yield event
        except CastorError:
            raise
        except httpx.HTTPError as e:
            raise wrap_driver_error(
                e, provider=self.provider, message="OpenAI request failed"
            ) from e

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
