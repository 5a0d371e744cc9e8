"""Counters, rolling windows and the health snapshot model."""

from __future__ import annotations

import pytest

from castor.metrics import (
    ErrorSample,
    HealthSnapshot,
    RequestSample,
    RollingWindow,
    ServiceCounters,
    window_stats,
)

pytestmark = pytest.mark.unit


def test_average_latency_guards_against_zero_requests() -> None:
    counters = ServiceCounters()
    assert counters.average_latency_ms == 0.0

    counters.requests = 4
    counters.total_latency_ms = 100.0
    assert counters.average_latency_ms == 25.0


def test_rolling_window_is_bounded_by_length() -> None:
    window = RollingWindow(window_s=1_000.0, max_len=3)
    for i in range(5):
        window.add(ErrorSample(ts=float(i), message=f"e{i}"), now=float(i))

    assert [s.message for s in window.items()] == ["e2", "e3", "e4"]


def test_rolling_window_evicts_old_samples() -> None:
    window = RollingWindow(window_s=300.0)
    window.add(RequestSample(ts=0.0, success=True, latency_ms=1.0), now=0.0)
    window.add(RequestSample(ts=250.0, success=True, latency_ms=1.0), now=250.0)

    window.add(RequestSample(ts=400.0, success=False, latency_ms=1.0), now=400.0)

    assert [s.ts for s in window.items()] == [250.0, 400.0]
    window.clear()
    assert len(window) == 0


def test_window_stats() -> None:
    samples = [
        RequestSample(ts=1.0, success=True, latency_ms=10.0),
        RequestSample(ts=2.0, success=False, latency_ms=30.0),
    ]

    stats = window_stats(samples)

    assert stats.count == 2
    assert stats.success_rate == 0.5
    assert stats.avg_latency_ms == 20.0
    assert window_stats([]).count == 0


def test_health_snapshot_serializes() -> None:
    snapshot = HealthSnapshot(
        provider="openai", model="gpt-4o-mini", healthy=True, breaker_state="CLOSED"
    )

    data = snapshot.model_dump()

    assert data["rolling_window"]["window_s"] == 300.0
    assert data["recent_errors"] == []
    assert data["last_error"] is None
