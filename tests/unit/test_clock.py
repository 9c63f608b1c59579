from __future__ import annotations

import asyncio

import pytest

from turnwatch.clock import Deadline, SystemClock, VirtualClock, bounded, first_completed
from turnwatch.exceptions import InstrumentationError


@pytest.mark.asyncio
async def test_virtual_clock_jumps_to_next_timer() -> None:
    clock = VirtualClock()

    async def _run() -> float:
        await clock.wait(1500)
        await clock.wait(250)
        return clock.now()

    assert await clock.run(_run()) == 1750


@pytest.mark.asyncio
async def test_virtual_clock_interleaves_tasks_in_time_order() -> None:
    clock = VirtualClock()
    order: list[tuple[str, float]] = []

    async def ticker(name: str, every: float, count: int) -> None:
        for _ in range(count):
            await clock.wait(every)
            order.append((name, clock.now()))

    async def _run() -> None:
        await asyncio.gather(ticker("a", 400, 3), ticker("b", 500, 2))

    await clock.run(_run())
    assert [t for _, t in order] == [400, 500, 800, 1000, 1200]


@pytest.mark.asyncio
async def test_virtual_clock_raises_when_blocked_without_timers() -> None:
    clock = VirtualClock()
    with pytest.raises(RuntimeError, match="no pending timers"):
        await clock.run(asyncio.Event().wait())


@pytest.mark.asyncio
async def test_bounded_converts_overrun_to_instrumentation_error() -> None:
    clock = VirtualClock()

    async def slow() -> str:
        await clock.wait(5000)
        return "late"

    with pytest.raises(InstrumentationError) as exc_info:
        await clock.run(bounded(clock, slow(), 500, operation="evaluate"))
    assert exc_info.value.operation == "evaluate"
    assert clock.now() == 500


@pytest.mark.asyncio
async def test_bounded_returns_fast_result() -> None:
    clock = VirtualClock()

    async def fast() -> str:
        return "ok"

    assert await clock.run(bounded(clock, fast(), 500)) == "ok"
    assert clock.now() == 0
    assert clock.pending_timers() == 0


@pytest.mark.asyncio
async def test_first_completed_event_or_tick() -> None:
    clock = VirtualClock()
    event = asyncio.Event()

    async def _run() -> tuple[bool, float, bool]:
        fired = await first_completed(clock, event, 300)
        at = clock.now()
        event.set()
        return fired, at, await first_completed(clock, event, 300)

    fired, at, second = await clock.run(_run())
    assert fired is False
    assert at == 300
    assert second is True


def test_deadline_child_is_capped() -> None:
    clock = VirtualClock(start_ms=1000)
    deadline = Deadline.after(clock, 2000)
    assert deadline.remaining_ms() == 2000
    assert deadline.child(500).expires_at == 1500
    assert deadline.child(10_000).expires_at == 3000
    assert deadline.expired is False


@pytest.mark.asyncio
async def test_system_clock_is_monotonic() -> None:
    clock = SystemClock()
    t0 = clock.now()
    await clock.wait(1)
    assert clock.now() >= t0
