"""Per-driver circuit breaker.

A plain state value with no background timer: transitions are evaluated when
the next request passes through `CircuitBreaker.before_attempt`.

    CLOSED --(failures >= threshold)--> OPEN --(cooldown elapsed)--> HALF_OPEN
    HALF_OPEN --(success)--> CLOSED
    HALF_OPEN --(failure or probe cap exceeded)--> OPEN
"""

from __future__ import annotations

from enum import StrEnum
import logging
import time
from typing import TYPE_CHECKING

from castor.config import CircuitBreakerPolicy
from castor.errors import CircuitOpenError

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)


class BreakerState(StrEnum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    """Failure-counting breaker guarding one driver."""

    def __init__(
        self,
        policy: CircuitBreakerPolicy | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        name: str = "driver",
    ) -> None:
        self.policy = policy or CircuitBreakerPolicy()
        self._clock = clock
        self.name = name
        self.state = BreakerState.CLOSED
        self.failure_count = 0
        self.last_failure_ts: float | None = None
        self.half_open_attempts = 0

    def before_attempt(self) -> None:
        """Admit an attempt or raise `CircuitOpenError`."""
        if self.state is BreakerState.OPEN:
            elapsed = self._clock() - (self.last_failure_ts or 0.0)
            if elapsed < self.policy.cooldown_s:
                raise CircuitOpenError(
                    f"{self.name} circuit breaker is open "
                    f"(retry in {self.policy.cooldown_s - elapsed:.1f}s)",
                    hint="Upstream failed repeatedly; wait for the cooldown.",
                )
            self.state = BreakerState.HALF_OPEN
            self.half_open_attempts = 0
            logger.info("%s breaker half-open after %.1fs cooldown", self.name, elapsed)

        if self.state is BreakerState.HALF_OPEN:
            self.half_open_attempts += 1
            if self.half_open_attempts > self.policy.half_open_max_attempts:
                self._open()
                raise CircuitOpenError(
                    f"{self.name} circuit breaker re-opened after "
                    f"{self.policy.half_open_max_attempts} half-open probe(s)",
                )

    def release_probe(self) -> None:
        """Return a half-open probe slot taken by an attempt that never finished."""
        if self.state is BreakerState.HALF_OPEN and self.half_open_attempts > 0:
            self.half_open_attempts -= 1

    def record_success(self) -> None:
        if self.state is not BreakerState.CLOSED:
            logger.info("%s breaker closed", self.name)
        self.state = BreakerState.CLOSED
        self.failure_count = 0
        self.half_open_attempts = 0

    def record_failure(self) -> None:
        """Count a surfaced failure and open the breaker when warranted.

        Failures while already OPEN keep the original ``last_failure_ts`` so
        rejected requests do not extend the cooldown.
        """
        self.failure_count += 1
        if self.state is BreakerState.HALF_OPEN:
            self._open()
        elif (
            self.state is BreakerState.CLOSED
            and self.failure_count >= self.policy.failure_threshold
        ):
            self._open()

    def reset(self) -> None:
        self.state = BreakerState.CLOSED
        self.failure_count = 0
        self.last_failure_ts = None
        self.half_open_attempts = 0

    def _open(self) -> None:
        self.state = BreakerState.OPEN
        self.last_failure_ts = self._clock()
        self.half_open_attempts = 0
        logger.warning(
            "%s breaker opened after %d failures", self.name, self.failure_count
        )
