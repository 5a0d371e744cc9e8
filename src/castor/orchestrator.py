"""Request supervision around one driver.

`Orchestrator.stream` runs the request lifecycle: admission gates (rate limit,
configuration, health, circuit breaker, cancellation), credential rotation,
delegation to the driver, classification of failures, bounded retries with
backoff, and metrics. Retries and rotation are invisible to the caller: it sees
the events of the successful attempt, or exactly one raised error.
"""

from __future__ import annotations

import asyncio
from collections import deque
from contextlib import aclosing
from dataclasses import asdict
import logging
import random
import time
from typing import TYPE_CHECKING, Any
import uuid

from castor import cancel as cancellation
from castor.breaker import BreakerState, CircuitBreaker
from castor.config import CircuitBreakerPolicy, RateLimit
from castor.credentials import CredentialSet, KeyRotationSession
from castor.error_policy import ErrorClassification, classify
from castor.errors import (
    AbortError,
    ConfigurationError,
    ServiceError,
    ServiceUnavailableError,
    ServiceUnhealthyError,
    Severity,
)
from castor.metrics import (
    MAX_RECENT_ERRORS,
    MAX_RECENT_REQUESTS,
    WINDOW_S,
    ErrorEntry,
    ErrorSample,
    HealthSnapshot,
    RequestSample,
    RollingWindow,
    ServiceCounters,
    window_stats,
)
from castor.retry import RetryPolicy, compute_delay, retry_after_floor
from castor.types import (
    FunctionCallsEvent,
    StreamRequest,
    TextEvent,
    coerce_history,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Mapping

    from castor.cancel import CancelToken
    from castor.config import Config
    from castor.drivers.base import Driver
    from castor.types import StreamEvent, ToolChoice, Turn

    SleepFn = Callable[[float, CancelToken | None], Awaitable[None]]

logger = logging.getLogger(__name__)

RATE_WINDOW_S = 60.0

_SEVERITY: dict[str, Severity] = {
    "auth": Severity.HIGH,
    "client": Severity.LOW,
    "abort": Severity.LOW,
}

_USER_MESSAGES: dict[str, str] = {
    "auth": "{provider} rejected the credentials. Please review your configuration.",
    "rate_limit": "{provider} is rate limiting requests. Please try again later.",
    "quota": "{provider} is rate limiting requests. Please try again later.",
    "network": "Could not reach {provider}. Please check your connection.",
}
_GENERIC_MESSAGE = "{provider} request failed: {detail}. Please try again."


class RequestWindow:
    """Sliding-window request gate over the last 60 seconds."""

    def __init__(
        self,
        requests_per_minute: int,
        *,
        clock: Callable[[], float] = time.monotonic,
        window_s: float = RATE_WINDOW_S,
    ) -> None:
        self.requests_per_minute = requests_per_minute
        self.window_s = window_s
        self._clock = clock
        self._stamps: deque[float] = deque()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._stamps)

    def _evict(self, now: float) -> None:
        cutoff = now - self.window_s
        while self._stamps and self._stamps[0] <= cutoff:
            self._stamps.popleft()

    async def acquire(
        self,
        cancel: CancelToken | None = None,
        *,
        sleep: SleepFn = cancellation.sleep,
    ) -> None:
        """Record a request, first waiting until the oldest entry ages out if full."""
        async with self._lock:
            while True:
                now = self._clock()
                self._evict(now)
                if len(self._stamps) < self.requests_per_minute:
                    self._stamps.append(now)
                    return
                wait_s = self._stamps[0] + self.window_s - now
                logger.debug("Rate limit gate full; waiting %.2fs", wait_s)
                await sleep(wait_s, cancel)

    def clear(self) -> None:
        self._stamps.clear()


class Orchestrator:
    """Supervises one driver: gates, retries, rotation, breaker and health.

    Example:
        orchestrator = Orchestrator.from_config(Config(provider="ollama", model="llama3"))
        async for event in orchestrator.stream([Turn.text("user", "hi")]):
            ...
    """

    def __init__(
        self,
        driver: Driver,
        credentials: CredentialSet | None = None,
        *,
        retry: RetryPolicy | None = None,
        rate_limit: RateLimit | None = None,
        circuit_breaker: CircuitBreakerPolicy | None = None,
        rotate_on_success: bool = False,
        critical_categories: Iterable[str] = (),
        clock: Callable[[], float] = time.monotonic,
        sleep: SleepFn = cancellation.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.driver = driver
        self.credentials = credentials if credentials is not None else CredentialSet()
        self.retry = retry or RetryPolicy()
        self.rotate_on_success = rotate_on_success
        self.critical_categories = frozenset(critical_categories)
        self._clock = clock
        self._sleep = sleep
        self._rng = rng

        self.healthy = True
        self.last_error: str | None = None
        self.breaker = CircuitBreaker(
            circuit_breaker, clock=clock, name=driver.provider
        )
        self.request_window = RequestWindow(
            (rate_limit or RateLimit()).requests_per_minute, clock=clock
        )
        self.counters = ServiceCounters()
        self._recent_requests = RollingWindow(WINDOW_S, MAX_RECENT_REQUESTS)
        self._recent_errors = RollingWindow(WINDOW_S, MAX_RECENT_ERRORS)

    @classmethod
    def from_config(
        cls, config: Config, driver: Driver | None = None, **kwargs: Any
    ) -> Orchestrator:
        """Build an orchestrator, and its driver unless given, from a `Config`."""
        if driver is None:
            from castor.drivers import create_driver

            driver = create_driver(config)
        return cls(
            driver,
            CredentialSet(config.api_keys or ()),
            retry=config.retry,
            rate_limit=config.rate_limit,
            circuit_breaker=config.circuit_breaker,
            rotate_on_success=config.rotate_on_success,
            critical_categories=config.critical_categories,
            **kwargs,
        )

    @property
    def provider(self) -> str:
        return self.driver.provider

    # ------------------------------------------------------------------
    # Request lifecycle
    # ------------------------------------------------------------------

    async def stream(
        self,
        history: Iterable[Turn | Mapping[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        custom_rules: str = "",
        cancel: CancelToken | None = None,
        model_params: dict[str, Any] | None = None,
        tool_choice: ToolChoice | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream one request's events through the driver with retries.

        Raises:
            AbortError: The request was cancelled.
            ServiceError: The request failed and will not be retried.
        """
        turns = coerce_history(history)
        request_id = f"req_{uuid.uuid4().hex[:12]}"
        start = self._clock()
        self.counters.requests += 1
        self.credentials.reset_tried()
        session = KeyRotationSession(
            self.credentials, rotate_on_success=self.rotate_on_success
        )
        policy = self.retry
        success = False
        committed = False
        probe = False
        prev_delay: float | None = None
        attempt = 0
        logger.info("%s request %s started", self.provider, request_id)

        try:
            while True:
                attempt += 1
                self.counters.attempts += 1
                try:
                    probe = await self._admit(attempt, session, cancel)
                    request = StreamRequest(
                        history=turns,
                        tools=tools,
                        custom_rules=custom_rules,
                        cancel=cancel,
                        api_key=session.current_key(),
                        model_params=dict(model_params or {}),
                        tool_choice=tool_choice,
                    )
                    async with aclosing(self.driver.stream(request)) as events:
                        async for event in events:
                            if isinstance(event, (TextEvent, FunctionCallsEvent)):
                                committed = True
                            yield event
                except Exception as exc:
                    classification = classify(self.provider, exc)
                    if classification.type == "abort" or (
                        cancel is not None and cancel.cancelled
                    ):
                        if isinstance(exc, AbortError):
                            raise
                        raise AbortError(str(exc) or "Request aborted") from exc

                    # A failed half-open probe is terminal.
                    if probe or not self._can_retry(
                        classification, attempt, session, committed
                    ):
                        raise self._surface(
                            exc, classification, request_id, attempt
                        ) from exc

                    delay = compute_delay(attempt, prev_delay, policy, rng=self._rng)
                    floor = retry_after_floor(exc, policy)
                    if floor is not None:
                        delay = max(delay, floor)
                    prev_delay = delay
                    self.counters.retries += 1
                    logger.warning(
                        "%s request %s attempt %d failed (%s); retrying in %.2fs",
                        self.provider,
                        request_id,
                        attempt,
                        classification.type,
                        delay,
                    )
                    await self._sleep(delay, cancel)
                    continue

                self.breaker.record_success()
                session.on_success()
                self.counters.successes += 1
                success = True
                return
        except (AbortError, asyncio.CancelledError):
            self.counters.aborted += 1
            logger.info("%s request %s aborted", self.provider, request_id)
            raise
        finally:
            if probe:
                self.breaker.release_probe()
            now = self._clock()
            latency_ms = (now - start) * 1000.0
            self.counters.total_latency_ms += latency_ms
            self._recent_requests.add(RequestSample(now, success, latency_ms), now)
            logger.info(
                "%s request %s finished: success=%s attempts=%d latency=%.0fms",
                self.provider,
                request_id,
                success,
                attempt,
                latency_ms,
            )

    async def _admit(
        self, attempt: int, session: KeyRotationSession, cancel: CancelToken | None
    ) -> bool:
        """Run the admission gates in order, then rotate for retries.

        Returns whether this attempt holds a half-open probe slot.
        """
        await self.request_window.acquire(cancel, sleep=self._sleep)
        if not self.driver.is_configured(session.current_key()):
            raise ConfigurationError(
                f"{self.provider} driver is not configured",
                hint="Provide credentials and a model in Config.",
            )
        if not self.healthy:
            raise ServiceUnhealthyError(
                f"{self.provider} driver is marked unhealthy",
                hint="Call reset_health() once the cause is resolved.",
            )
        if cancel is not None:
            cancel.raise_if_cancelled()
        self.breaker.before_attempt()
        session.on_before_attempt(attempt)
        return self.breaker.state is BreakerState.HALF_OPEN

    def _can_retry(
        self,
        classification: ErrorClassification,
        attempt: int,
        session: KeyRotationSession,
        committed: bool,
    ) -> bool:
        if not classification.retryable or committed:
            return False
        if attempt >= self.retry.max_attempts:
            return False
        return not (self.driver.requires_credentials and session.has_tried_all())

    def _severity(self, category: str) -> Severity:
        if category in self.critical_categories:
            return Severity.CRITICAL
        return _SEVERITY.get(category, Severity.MEDIUM)

    def _surface(
        self,
        exc: Exception,
        classification: ErrorClassification,
        request_id: str,
        attempts: int,
    ) -> ServiceError:
        """Record a terminal failure and build the error the caller sees."""
        category = classification.type
        severity = self._severity(category)
        detail = str(exc) or type(exc).__name__
        now = self._clock()

        self.counters.failures += 1
        # Local gate refusals never reached the upstream.
        if not isinstance(exc, (ServiceUnavailableError, ConfigurationError)):
            self.breaker.record_failure()
        self.last_error = detail
        self._recent_errors.add(ErrorSample(now, detail, category), now)
        if severity is Severity.CRITICAL:
            self.healthy = False
            logger.error("%s marked unhealthy after %s error", self.provider, category)

        logger.warning(
            "%s request %s failed after %d attempt(s): %s",
            self.provider,
            request_id,
            attempts,
            classification.reason,
        )
        template = _USER_MESSAGES.get(category, _GENERIC_MESSAGE)
        return ServiceError(
            template.format(provider=self.provider, detail=detail),
            hint=getattr(exc, "hint", None) or classification.reason,
            category=category,
            severity=severity,
            provider=self.provider,
            request_id=request_id,
            original_error=exc,
            status_code=classification.http_status,
            attempts=attempts,
        )

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def health(self) -> HealthSnapshot:
        """Snapshot for dashboards; evicts samples older than the window."""
        now = self._clock()
        self._recent_requests.evict(now)
        self._recent_errors.evict(now)
        counters: dict[str, float] = dict(asdict(self.counters))
        counters["average_latency_ms"] = self.counters.average_latency_ms
        return HealthSnapshot(
            provider=self.provider,
            model=self.driver.model,
            healthy=self.healthy,
            breaker_state=self.breaker.state.value,
            failure_count=self.breaker.failure_count,
            counters=counters,
            rolling_window=window_stats(self._recent_requests.items(), WINDOW_S),
            recent_errors=[
                ErrorEntry(ts=e.ts, message=e.message, category=e.category)
                for e in self._recent_errors.items()
            ],
            last_error=self.last_error,
        )

    def reset_metrics(self) -> None:
        self.counters = ServiceCounters()
        self._recent_requests.clear()
        self._recent_errors.clear()
        self.request_window.clear()
        self.last_error = None

    def mark_unhealthy(self, reason: str | None = None) -> None:
        self.healthy = False
        if reason:
            self.last_error = reason
        logger.warning("%s marked unhealthy: %s", self.provider, reason or "manual")

    def reset_health(self) -> None:
        """Manual recovery: healthy again with a closed breaker."""
        self.healthy = True
        self.breaker.reset()
        logger.info("%s health reset", self.provider)

    async def aclose(self) -> None:
        await self.driver.aclose()
