"""Request counters, bounded rolling windows and the health snapshot schema."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, Field

WINDOW_S = 300.0
MAX_RECENT_REQUESTS = 200
MAX_RECENT_ERRORS = 10


@dataclass
class ServiceCounters:
    """Lifetime counters for one driver."""

    requests: int = 0
    successes: int = 0
    failures: int = 0
    aborted: int = 0
    attempts: int = 0
    retries: int = 0
    total_latency_ms: float = 0.0

    @property
    def average_latency_ms(self) -> float:
        return self.total_latency_ms / self.requests if self.requests else 0.0


@dataclass(frozen=True)
class RequestSample:
    ts: float
    success: bool
    latency_ms: float


@dataclass(frozen=True)
class ErrorSample:
    ts: float
    message: str
    category: str = "unknown"


@dataclass
class RollingWindow:
    """Bounded ring of samples, trimmed to *window_s* on every update."""

    window_s: float = WINDOW_S
    max_len: int = MAX_RECENT_REQUESTS
    _items: deque[Any] = field(default_factory=deque)

    def add(self, item: Any, now: float) -> None:
        self._items.append(item)
        while len(self._items) > self.max_len:
            self._items.popleft()
        self.evict(now)

    def evict(self, now: float) -> None:
        cutoff = now - self.window_s
        while self._items and self._items[0].ts < cutoff:
            self._items.popleft()

    def items(self) -> list[Any]:
        return list(self._items)

    def clear(self) -> None:
        self._items.clear()

    def __len__(self) -> int:
        return len(self._items)


class WindowStats(BaseModel):
    window_s: float = WINDOW_S
    count: int = 0
    success_rate: float = 0.0
    avg_latency_ms: float = 0.0


class ErrorEntry(BaseModel):
    ts: float
    message: str
    category: str


class HealthSnapshot(BaseModel):
    """Dashboard-facing health view of one driver."""

    provider: str
    model: str
    healthy: bool
    breaker_state: str
    failure_count: int = 0
    counters: dict[str, float] = Field(default_factory=dict)
    rolling_window: WindowStats = Field(default_factory=WindowStats)
    recent_errors: list[ErrorEntry] = Field(default_factory=list)
    last_error: str | None = None


def window_stats(samples: list[RequestSample], window_s: float = WINDOW_S) -> WindowStats:
    """Summarize request samples already trimmed to the window."""
    if not samples:
        return WindowStats(window_s=window_s)
    ok = sum(1 for s in samples if s.success)
    return WindowStats(
        window_s=window_s,
        count=len(samples),
        success_rate=ok / len(samples),
        avg_latency_ms=sum(s.latency_ms for s in samples) / len(samples),
    )
