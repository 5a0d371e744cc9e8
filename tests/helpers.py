"""Test helpers (small, reusable doubles).

Keep this file tiny and purpose-built: it exists to prevent test suites from
growing lots of one-off driver classes as coverage expands.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from castor.cancel import guard_stream
from castor.types import ProviderCapabilities, TextEvent, ToolProtocol

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from castor.cancel import CancelToken
    from castor.types import StreamEvent, StreamRequest


@dataclass
class FakeClock:
    """Manually advanced monotonic clock."""

    now: float = 1_000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@dataclass
class RecordingSleep:
    """Cancel-aware sleep double that records delays and advances a clock."""

    clock: FakeClock | None = None
    delays: list[float] = field(default_factory=list)

    async def __call__(self, delay_s: float, cancel: CancelToken | None = None) -> None:
        if cancel is not None:
            cancel.raise_if_cancelled()
        self.delays.append(delay_s)
        if self.clock is not None:
            self.clock.advance(delay_s)
        await asyncio.sleep(0)


@dataclass(frozen=True)
class Pause:
    """Script step: block the stream for *seconds* of real time."""

    seconds: float


@dataclass
class ScriptedDriver:
    """Driver double that replays one scripted attempt per `stream` call.

    Each script entry is a list of steps: events are yielded, exceptions are
    raised, `Pause` sleeps. An exhausted script yields a single ``"ok"``.
    """

    script: list[list[Any]] = field(default_factory=list)
    provider: str = "scripted"
    model: str = "scripted-model"
    needs_credentials: bool = True
    tool_protocol: ToolProtocol = ToolProtocol.OPENAI
    requests: list[StreamRequest] = field(default_factory=list)
    closed: bool = False

    @property
    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(
            provider=self.provider,
            supports_function_calling=self.tool_protocol is not ToolProtocol.NONE,
            supports_system_instruction=True,
            tool_protocol=self.tool_protocol,
            max_context=8_192,
            max_tokens=1_024,
        )

    @property
    def requires_credentials(self) -> bool:
        return self.needs_credentials

    def is_configured(self, api_key: str | None) -> bool:
        return bool(api_key) or not self.needs_credentials

    @property
    def api_keys_seen(self) -> list[str | None]:
        return [r.api_key for r in self.requests]

    def stream(self, request: StreamRequest) -> AsyncIterator[StreamEvent]:
        self.requests.append(request)
        steps = self.script.pop(0) if self.script else [TextEvent("ok")]
        return guard_stream(self._replay(steps), cancel=request.cancel)

    async def _replay(self, steps: list[Any]) -> AsyncIterator[StreamEvent]:
        for step in steps:
            await asyncio.sleep(0)
            if isinstance(step, BaseException):
                raise step
            if isinstance(step, Pause):
                await asyncio.sleep(step.seconds)
                continue
            yield step

    async def aclose(self) -> None:
        self.closed = True
