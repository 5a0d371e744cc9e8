"""Bounded async retry with exponential backoff and jitter variants.

Retry decisions are delegated to the error policy; this module only computes
delays and drives the loop.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import random
from typing import TYPE_CHECKING, Literal, TypeVar

from castor.error_policy import classify
from castor.errors import APIError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

T = TypeVar("T")

Jitter = Literal["none", "full", "equal", "decorrelated"]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry policy with exponential backoff and optional jitter."""

    max_attempts: int = 3
    initial_delay_s: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay_s: float = 12.0
    jitter: Jitter = "full"

    def __post_init__(self) -> None:
        """Validate invariants to keep retry behavior predictable."""
        if self.max_attempts < 1:
            raise ValueError("RetryPolicy.max_attempts must be >= 1")
        if self.initial_delay_s < 0:
            raise ValueError("RetryPolicy.initial_delay_s must be >= 0")
        if self.backoff_multiplier <= 0:
            raise ValueError("RetryPolicy.backoff_multiplier must be > 0")
        if self.max_delay_s < 0:
            raise ValueError("RetryPolicy.max_delay_s must be >= 0")
        if self.jitter not in ("none", "full", "equal", "decorrelated"):
            raise ValueError(f"RetryPolicy.jitter is not supported: {self.jitter!r}")


def base_delay(attempt: int, policy: RetryPolicy) -> float:
    """Unjittered delay after *attempt* (1-based): ``base * mult^(attempt-1)``, capped."""
    raw = policy.initial_delay_s * (policy.backoff_multiplier ** max(0, attempt - 1))
    return min(policy.max_delay_s, raw)


def compute_delay(
    attempt: int,
    prev_delay: float | None = None,
    policy: RetryPolicy | None = None,
    *,
    rng: random.Random | None = None,
) -> float:
    """Return the sleep in seconds before the attempt following *attempt*.

    ``prev_delay`` only matters for decorrelated jitter, where it defaults to
    the initial delay on the first application.
    """
    policy = policy or RetryPolicy()
    uniform = (rng or random).uniform
    delay = base_delay(attempt, policy)

    if policy.jitter == "none":
        pass
    elif policy.jitter == "full":
        delay = uniform(0.0, delay)
    elif policy.jitter == "equal":
        delay = delay / 2 + uniform(0.0, delay / 2)
    else:
        base = policy.initial_delay_s
        prev = base if prev_delay is None else prev_delay
        upper = max(base, prev * policy.backoff_multiplier)
        delay = min(policy.max_delay_s, uniform(base, upper))
    return max(0.0, delay)


def retry_after_floor(exc: BaseException, policy: RetryPolicy) -> float | None:
    """Return a provider Retry-After hint, capped at ``max_delay_s``."""
    if isinstance(exc, APIError):
        v = exc.retry_after_s
        if isinstance(v, (int, float)) and v >= 0:
            return min(float(v), policy.max_delay_s)
    return None


async def retry_async(
    factory: Callable[[int], Awaitable[T]],
    *,
    provider: str,
    policy: RetryPolicy | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    rng: random.Random | None = None,
) -> T:
    """Run ``factory(attempt)`` until it succeeds or the error policy says stop."""
    policy = policy or RetryPolicy()
    prev_delay: float | None = None
    attempt = 0

    while True:
        attempt += 1
        try:
            return await factory(attempt)
        except Exception as exc:
            classification = classify(provider, exc)
            if not classification.retryable or attempt >= policy.max_attempts:
                raise
            delay = compute_delay(attempt, prev_delay, policy, rng=rng)
            floor = retry_after_floor(exc, policy)
            if floor is not None:
                delay = max(delay, floor)
            prev_delay = delay
            logger.warning(
                "%s attempt %d failed (%s); retrying in %.2fs",
                provider,
                attempt,
                classification.type,
                delay,
            )
            await sleep(delay)
