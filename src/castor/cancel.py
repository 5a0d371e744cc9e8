"""Cooperative cancellation: a cancel token, cancel-aware sleep and stream guard.

Every suspension point of a request (rate-limit wait, backoff wait, transport
read) is raced against the request's `CancelToken`. The stream guard also
enforces the per-request timeout, so a timeout behaves like a built-in cancel
that surfaces as `RequestTimeoutError` instead of `AbortError`.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, TypeVar

from castor.errors import AbortError, RequestTimeoutError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

T = TypeVar("T")


class CancelToken:
    """A one-shot cancellation signal shared by a caller and a request."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str | None = None) -> None:
        """Signal cancellation. Later calls keep the first reason."""
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise AbortError(
                f"Request aborted: {self.reason}" if self.reason else "Request aborted"
            )


async def sleep(delay_s: float, cancel: CancelToken | None = None) -> None:
    """Sleep for *delay_s*, raising `AbortError` as soon as *cancel* fires."""
    if cancel is None:
        if delay_s > 0:
            await asyncio.sleep(delay_s)
        return
    cancel.raise_if_cancelled()
    if delay_s <= 0:
        return
    try:
        await asyncio.wait_for(cancel.wait(), timeout=delay_s)
    except TimeoutError:
        return
    cancel.raise_if_cancelled()


async def guard_stream(
    source: AsyncIterator[T],
    *,
    cancel: CancelToken | None = None,
    timeout_s: float | None = None,
) -> AsyncIterator[T]:
    """Re-yield *source*, racing every read against *cancel* and a deadline.

    On cancel or timeout the pending read is cancelled and *source* is closed,
    which releases the underlying transport.
    """
    if cancel is not None:
        cancel.raise_if_cancelled()

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_s if timeout_s else None
    cancel_task: asyncio.Future[None] | None = (
        asyncio.ensure_future(cancel.wait()) if cancel is not None else None
    )
    pending: asyncio.Future[T] | None = None
    try:
        while True:
            pending = asyncio.ensure_future(anext(source))
            waiters: set[asyncio.Future[object]] = {pending}  # type: ignore[arg-type]
            if cancel_task is not None:
                waiters.add(cancel_task)  # type: ignore[arg-type]
            remaining = None if deadline is None else max(0.0, deadline - loop.time())
            done, _ = await asyncio.wait(
                waiters, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
            )

            if pending in done:
                task, pending = pending, None
                try:
                    item = task.result()
                except StopAsyncIteration:
                    return
                yield item
                continue

            pending.cancel()
            await asyncio.wait({pending})
            pending = None
            if cancel is not None and cancel.cancelled:
                cancel.raise_if_cancelled()
            raise RequestTimeoutError(f"Request timeout after {timeout_s:g}s")
    finally:
        if pending is not None and not pending.done():
            pending.cancel()
            await asyncio.wait({pending})
        if cancel_task is not None:
            cancel_task.cancel()
        aclose = getattr(source, "aclose", None)
        if aclose is not None:
            await aclose()
