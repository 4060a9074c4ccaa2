"""Cooperative cancellation token shared by every suspension point of a session."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, TypeVar

from prompt_dispatch.models import CANCELLED_ERROR
from prompt_dispatch.providers.base import FailureType, RequestCancelledError

T = TypeVar("T")


class CancelToken:
    """One-shot cancellation flag bound to the event loop that first waits on it.

    ``cancel()`` may be called from any thread; the wake-up of waiting
    coroutines is scheduled onto the owning loop. A token may be created
    outside a running loop.
    """

    def __init__(self) -> None:
        self._loop: asyncio.AbstractEventLoop | None = None
        self._event = asyncio.Event()
        self._reason: str | None = None

    def _bind(self) -> None:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()

    @property
    def cancelled(self) -> bool:
        return self._reason is not None

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = CANCELLED_ERROR) -> bool:
        """Fire the token. Returns False if it had already fired."""
        if self._reason is not None:
            return False
        self._reason = reason
        loop = self._loop
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if loop is None or running is loop:
            # nobody waits yet, or we are on the owning loop
            self._event.set()
        elif not loop.is_closed():
            loop.call_soon_threadsafe(self._event.set)
        return True

    async def wait(self) -> None:
        self._bind()
        await self._event.wait()

    async def sleep(self, delay: float) -> bool:
        """Sleep for ``delay`` seconds; return True if cancelled meanwhile."""
        if self.cancelled:
            return True
        self._bind()
        if delay <= 0:
            await asyncio.sleep(0)
            return self.cancelled
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return self.cancelled
        return True

    def error(self) -> RequestCancelledError:
        reason = self._reason or CANCELLED_ERROR
        failure_type = FailureType.CLOSED if reason != CANCELLED_ERROR else FailureType.CANCELLED
        return RequestCancelledError(reason, failure_type=failure_type)

    async def race(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token fires first.

        When the token wins the awaitable's task is cancelled and
        RequestCancelledError is raised.
        """
        self._bind()
        task: asyncio.Future[Any] = asyncio.ensure_future(awaitable)
        if self.cancelled:
            task.cancel()
            raise self.error()
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()
        if task in done:
            return task.result()
        task.cancel()
        raise self.error()
