"""Mock driver for testing without network calls."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from castor.cancel import guard_stream
from castor.types import ProviderCapabilities, TextEvent, ToolProtocol, UsageEvent

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from castor.types import StreamEvent, StreamRequest

ECHO_LIMIT = 100


class MockDriver:
    """Deterministic echo driver.

    Streams ``echo: <last user text>`` word by word, then a fixed usage event.
    """

    provider = "mock"

    def __init__(self, model: str = "mock-model", *, timeout_s: float = 300.0) -> None:
        self.model = model
        self.timeout_s = timeout_s

    @property
    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(
            provider=self.provider,
            supports_function_calling=False,
            supports_system_instruction=True,
            tool_protocol=ToolProtocol.NONE,
            max_context=8_192,
            max_tokens=1_024,
        )

    @property
    def requires_credentials(self) -> bool:
        return False

    def is_configured(self, api_key: str | None) -> bool:  # noqa: ARG002
        return True

    def stream(self, request: StreamRequest) -> AsyncIterator[StreamEvent]:
        return guard_stream(
            self._events(request), cancel=request.cancel, timeout_s=self.timeout_s
        )

    async def _events(self, request: StreamRequest) -> AsyncIterator[StreamEvent]:
        prompt = next(
            (t.text_content for t in reversed(request.history) if t.role == "user"),
            "",
        )
        words = f"echo: {prompt.strip()[:ECHO_LIMIT]}".split(" ")
        for i, word in enumerate(words):
            await asyncio.sleep(0)
            yield TextEvent(word if i == 0 else f" {word}")
        yield UsageEvent(prompt_tokens=10, completion_tokens=len(words))

    async def aclose(self) -> None:
        return None
