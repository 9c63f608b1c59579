"""
Injectable clock for every timed wait in turnwatch.

All waits in the package go through a `Clock` so that convergence windows can
be exercised deterministically:

    clock = VirtualClock()
    result = await clock.run(poll_until_converged(extractor, clock=clock, ...))

`VirtualClock.run` lets the event loop drain ready callbacks, then jumps
virtual time straight to the earliest pending timer. A 120s timeout finishes
in milliseconds of real time.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import time
from collections.abc import Awaitable
from dataclasses import dataclass
from typing import Any, Protocol, TypeVar, runtime_checkable

from .exceptions import InstrumentationError

T = TypeVar("T")


@runtime_checkable
class Clock(Protocol):
    def now(self) -> float:
        """Current time in milliseconds."""
        ...

    async def wait(self, ms: float) -> None: ...


class SystemClock:
    """Wall clock: `time.monotonic()` plus `asyncio.sleep()`."""

    def now(self) -> float:
        return time.monotonic() * 1000.0

    async def wait(self, ms: float) -> None:
        await asyncio.sleep(max(0.0, ms) / 1000.0)


class VirtualClock:
    """
    Deterministic clock for tests.

    Time only moves inside `run()`, and only when every task is parked on a
    clock timer (or on something a clock timer will eventually unblock).
    """

    def __init__(self, start_ms: float = 0.0, *, idle_spins: int = 100) -> None:
        self._now = float(start_ms)
        self._idle_spins = idle_spins
        self._timers: list[tuple[float, int, asyncio.Future]] = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._now

    async def wait(self, ms: float) -> None:
        if ms <= 0:
            await asyncio.sleep(0)
            return
        fut = asyncio.get_running_loop().create_future()
        heapq.heappush(self._timers, (self._now + ms, next(self._seq), fut))
        await fut

    def pending_timers(self) -> int:
        return sum(1 for _, _, fut in self._timers if not fut.done())

    def _advance(self) -> bool:
        while self._timers and self._timers[0][2].done():
            heapq.heappop(self._timers)
        if not self._timers:
            return False
        self._now = max(self._now, self._timers[0][0])
        while self._timers and self._timers[0][0] <= self._now:
            _, _, fut = heapq.heappop(self._timers)
            if not fut.done():
                fut.set_result(None)
        return True

    async def run(self, awaitable: Awaitable[T]) -> T:
        task = asyncio.ensure_future(awaitable)
        while not task.done():
            for _ in range(self._idle_spins):
                await asyncio.sleep(0)
                if task.done():
                    break
            if task.done():
                break
            if not self._advance():
                task.cancel()
                raise RuntimeError(
                    f"VirtualClock: task blocked at t={self._now:.0f}ms with no pending timers"
                )
        return task.result()


@dataclass
class Deadline:
    """Absolute expiry on a clock, threaded through nested waits."""

    clock: Clock
    expires_at: float

    @classmethod
    def after(cls, clock: Clock, timeout_ms: float) -> Deadline:
        return cls(clock=clock, expires_at=clock.now() + max(0.0, timeout_ms))

    def remaining_ms(self) -> float:
        return max(0.0, self.expires_at - self.clock.now())

    @property
    def expired(self) -> bool:
        return self.clock.now() >= self.expires_at

    def child(self, cap_ms: float) -> Deadline:
        """A deadline no later than this one and at most `cap_ms` away."""
        return Deadline(self.clock, min(self.expires_at, self.clock.now() + max(0.0, cap_ms)))


def _cancel_pending(*tasks: asyncio.Future) -> None:
    for task in tasks:
        if not task.done():
            task.cancel()


async def bounded(
    clock: Clock,
    awaitable: Awaitable[T],
    timeout_ms: float,
    *,
    operation: str = "evaluate",
) -> T:
    """
    Await `awaitable`, but give up after `timeout_ms` on `clock`.

    An overrun raises InstrumentationError; the underlying call is cancelled.
    """
    task = asyncio.ensure_future(awaitable)
    timer = asyncio.ensure_future(clock.wait(timeout_ms))
    try:
        await asyncio.wait({task, timer}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        _cancel_pending(task, timer)
        raise
    if task.done():
        _cancel_pending(timer)
        return task.result()
    _cancel_pending(task)
    raise InstrumentationError.from_call_timeout(operation, timeout_ms)


async def first_completed(clock: Clock, event: asyncio.Event, timeout_ms: float) -> bool:
    """
    Wait until `event` is set or `timeout_ms` elapses on `clock`.

    Returns True if the event fired. The event is not cleared.
    """
    if event.is_set():
        return True
    waiter: asyncio.Future[Any] = asyncio.ensure_future(event.wait())
    timer = asyncio.ensure_future(clock.wait(timeout_ms))
    try:
        await asyncio.wait({waiter, timer}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        _cancel_pending(waiter, timer)
    return event.is_set()
