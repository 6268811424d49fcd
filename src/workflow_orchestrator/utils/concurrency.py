"""Async primitives for level dispatch: cancellation, bounded pools and timeouts."""

from __future__ import annotations

import asyncio
import inspect
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Generic, TypeVar

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Iterable

T = TypeVar("T")


class CancellationToken:
    """Cooperative cancellation shared by every task of one workflow run.

    The first reason given to ``cancel`` is kept; later calls only re-signal.
    """

    __slots__ = ("_event", "_reason")

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str | None = None) -> None:
        if not self._event.is_set():
            self._reason = reason
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self.is_cancelled:
            raise asyncio.CancelledError(self._reason or "operation cancelled")


class BoundedSemaphore:
    """Counting gate over ``asyncio.Semaphore`` that reports its high-water mark."""

    def __init__(self, limit: int) -> None:
        if limit <= 0:
            raise ValueError("limit must be > 0")
        self.limit = limit
        self.in_use = 0
        self.peak = 0
        self._gate = asyncio.Semaphore(limit)

    @property
    def available(self) -> int:
        return self.limit - self.in_use

    async def acquire(self) -> None:
        await self._gate.acquire()
        self.in_use += 1
        if self.in_use > self.peak:
            self.peak = self.in_use

    def release(self) -> None:
        if not self.in_use:
            raise RuntimeError("release called more times than acquire")
        self.in_use -= 1
        self._gate.release()

    @asynccontextmanager
    async def permit(self) -> AsyncIterator[None]:
        await self.acquire()
        try:
            yield
        finally:
            self.release()

    def snapshot(self) -> dict[str, int]:
        return {
            "limit": self.limit,
            "in_use": self.in_use,
            "available": self.available,
            "peak": self.peak,
        }


@dataclass(slots=True)
class WorkerPool(Generic[T]):
    """Run one level's coroutines with bounded concurrency, yielding results as they finish.

    Every coroutine is wrapped in a task up front and gated by the semaphore, so
    none is left un-awaited when the pool stops early. The first failure cancels
    the remaining tasks and is re-raised.
    """

    max_concurrency: int
    _semaphore: BoundedSemaphore = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if self.max_concurrency <= 0:
            raise ValueError("max_concurrency must be > 0")
        self._semaphore = BoundedSemaphore(self.max_concurrency)

    @property
    def semaphore(self) -> BoundedSemaphore:
        return self._semaphore

    async def run(self, coroutines: Iterable[Awaitable[T]]) -> AsyncIterator[T]:
        remaining = {asyncio.create_task(self._gated(item)) for item in coroutines}
        try:
            while remaining:
                finished, remaining = await asyncio.wait(
                    remaining, return_when=asyncio.FIRST_COMPLETED
                )
                for task in finished:
                    # Raises the task's exception or CancelledError.
                    yield task.result()
        finally:
            await _cancel_and_wait(remaining)

    async def _gated(self, coroutine: Awaitable[T]) -> T:
        async with self._semaphore.permit():
            return await coroutine


async def run_with_timeout(
    coroutine: Awaitable[T],
    timeout_seconds: float,
    cancel_token: CancellationToken | None = None,
) -> T:
    """Await ``coroutine`` under a timeout, aborting early when ``cancel_token`` fires.

    Raises ``TimeoutError`` on expiry and ``asyncio.CancelledError`` on cancellation.
    The work is cancelled and awaited before either is raised.
    """
    if timeout_seconds <= 0:
        _discard(coroutine)
        raise ValueError("timeout_seconds must be > 0")
    if cancel_token is not None and cancel_token.is_cancelled:
        _discard(coroutine)
        cancel_token.raise_if_cancelled()

    work: asyncio.Task[T] = asyncio.ensure_future(coroutine)
    racers: set[asyncio.Task[Any]] = {work}
    watcher: asyncio.Task[None] | None = None
    if cancel_token is not None:
        watcher = asyncio.create_task(cancel_token.wait())
        racers.add(watcher)

    try:
        await asyncio.wait(racers, timeout=timeout_seconds, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        await _cancel_and_wait({work})
        raise
    finally:
        await _cancel_and_wait({watcher} if watcher is not None else set())

    if work.done():
        return work.result()
    await _cancel_and_wait({work})
    if cancel_token is not None:
        cancel_token.raise_if_cancelled()
    raise TimeoutError(f"operation timed out after {timeout_seconds} seconds")


async def sleep_unless_cancelled(
    delay_seconds: float,
    cancel_token: CancellationToken | None = None,
) -> bool:
    """Sleep for ``delay_seconds``; return ``False`` if cancelled first."""
    if cancel_token is None:
        if delay_seconds > 0:
            await asyncio.sleep(delay_seconds)
        return True
    if delay_seconds > 0 and not cancel_token.is_cancelled:
        with suppress(TimeoutError):
            await asyncio.wait_for(cancel_token.wait(), timeout=delay_seconds)
    return not cancel_token.is_cancelled


async def _cancel_and_wait(tasks: set[asyncio.Task[Any]]) -> None:
    pending = [task for task in tasks if not task.done()]
    for task in pending:
        task.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)


def _discard(awaitable: Awaitable[object]) -> None:
    # A coroutine that is never scheduled must be closed to avoid a GC warning.
    if inspect.iscoroutine(awaitable):
        awaitable.close()


__all__ = [
    "BoundedSemaphore",
    "CancellationToken",
    "WorkerPool",
    "run_with_timeout",
    "sleep_unless_cancelled",
]
