"""Async concurrency primitives for the scheduler: cancellation, dispatch permits, timeouts."""

from __future__ import annotations

import asyncio
import inspect
import threading
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable

T = TypeVar("T")


class CancellationToken:
    """Cooperative cancellation token that may be cancelled from any thread.

    The flag itself is a ``threading.Event``; waiters on an event loop are woken
    through ``call_soon_threadsafe`` on the loop that first awaited the token.
    """

    def __init__(self) -> None:
        self._flag = threading.Event()
        self._lock = threading.Lock()
        self._reason: str | None = None
        self._waiter: asyncio.Event | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        with self._lock:
            if self._flag.is_set():
                return
            self._reason = reason
            self._flag.set()
            waiter, loop = self._waiter, self._loop
        if waiter is not None and loop is not None and not loop.is_closed():
            loop.call_soon_threadsafe(waiter.set)

    @property
    def is_cancelled(self) -> bool:
        return self._flag.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    async def wait(self) -> None:
        with self._lock:
            if self._waiter is None:
                self._waiter = asyncio.Event()
                self._loop = asyncio.get_running_loop()
                if self._flag.is_set():
                    self._waiter.set()
            waiter = self._waiter
        await waiter.wait()


class BoundedSemaphore:
    """Dispatch permits that also record the highest number ever held at once."""

    def __init__(self, limit: int) -> None:
        if limit <= 0:
            raise ValueError("limit must be > 0")
        self.limit = limit
        self.in_use = 0
        self.peak = 0
        self._permits = asyncio.Semaphore(limit)

    @asynccontextmanager
    async def permit(self) -> AsyncIterator[None]:
        # A waiter cancelled before acquiring holds nothing to release.
        await self._permits.acquire()
        self.in_use += 1
        self.peak = max(self.peak, self.in_use)
        try:
            yield
        finally:
            self.release()

    def release(self) -> None:
        if self.in_use <= 0:
            raise RuntimeError("release called more times than acquire")
        self.in_use -= 1
        self._permits.release()


async def run_with_timeout(awaitable: Awaitable[T], timeout_seconds: float) -> T:
    """Await ``awaitable`` for at most ``timeout_seconds``; raise ``TimeoutError`` after that.

    On timeout the awaitable is cancelled. Work it handed to a thread keeps
    running; see ``invoke_worker``.
    """
    if timeout_seconds <= 0:
        if inspect.iscoroutine(awaitable):
            awaitable.close()
        raise ValueError("timeout_seconds must be > 0")
    try:
        async with asyncio.timeout(timeout_seconds):
            return await awaitable
    except TimeoutError:
        raise TimeoutError(f"operation timed out after {timeout_seconds} seconds") from None


__all__ = [
    "BoundedSemaphore",
    "CancellationToken",
    "run_with_timeout",
]
