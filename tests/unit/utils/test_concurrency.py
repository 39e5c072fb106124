"""Unit tests for cancellation tokens, permits, and timeouts."""

from __future__ import annotations

import asyncio
import threading

import pytest

from phase_orchestrator.utils.concurrency import (
    BoundedSemaphore,
    CancellationToken,
    run_with_timeout,
)


async def test_cancellation_from_another_thread_wakes_waiters() -> None:
    token = CancellationToken()
    waiter = asyncio.create_task(token.wait())
    await asyncio.sleep(0)

    canceller = threading.Thread(target=token.cancel, args=("operator stop",))
    canceller.start()
    canceller.join()
    await asyncio.wait_for(waiter, timeout=2)

    assert token.is_cancelled
    assert token.reason == "operator stop"
    token.cancel("second reason")
    assert token.reason == "operator stop"


async def test_waiting_on_an_already_cancelled_token_returns_at_once() -> None:
    token = CancellationToken()
    token.cancel()

    await asyncio.wait_for(token.wait(), timeout=1)

    assert token.reason == "cancelled"


async def test_semaphore_tracks_usage_and_peak() -> None:
    semaphore = BoundedSemaphore(2)
    release = asyncio.Event()

    async def hold() -> None:
        async with semaphore.permit():
            await release.wait()

    holders = [asyncio.create_task(hold()) for _ in range(3)]
    for _ in range(10):
        await asyncio.sleep(0)

    assert semaphore.in_use == 2
    assert semaphore.peak == 2

    release.set()
    await asyncio.gather(*holders)

    assert semaphore.in_use == 0
    assert semaphore.peak == 2
    with pytest.raises(RuntimeError, match="more times than acquire"):
        semaphore.release()


def test_semaphore_rejects_non_positive_limit() -> None:
    with pytest.raises(ValueError, match="limit must be > 0"):
        BoundedSemaphore(0)


async def test_run_with_timeout_returns_value_or_raises() -> None:
    async def quick() -> str:
        return "done"

    assert await run_with_timeout(quick(), 1) == "done"
    with pytest.raises(TimeoutError, match="timed out after 0.01 seconds"):
        await run_with_timeout(asyncio.sleep(5), 0.01)
    with pytest.raises(ValueError, match="timeout_seconds must be > 0"):
        await run_with_timeout(quick(), 0)


async def test_run_with_timeout_cancels_the_awaited_work() -> None:
    cancelled = asyncio.Event()

    async def slow() -> None:
        try:
            await asyncio.sleep(5)
        except asyncio.CancelledError:
            cancelled.set()
            raise

    with pytest.raises(TimeoutError):
        await run_with_timeout(slow(), 0.01)

    assert cancelled.is_set()
