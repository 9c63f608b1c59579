from __future__ import annotations

import pytest

from turnwatch.clock import Deadline, VirtualClock
from turnwatch.constants import LONG_MIN_STABLE_MS, SHORT_MIN_STABLE_MS, SHORT_REQUIRED_CYCLES
from turnwatch.convergence import (
    DEFAULT_POLICY,
    ConvergenceTracker,
    StabilityPolicy,
    poll_until_converged,
)
from turnwatch.exceptions import InstrumentationError
from turnwatch.models import CompletionSignals, Sample, Snapshot


def _sample(text: str | None, *, stop: bool = False, finished: bool = False) -> Sample:
    return Sample(
        snapshot=Snapshot(text=text) if text is not None else None,
        signals=CompletionSignals(stop_visible=stop, finished_visible=finished),
    )


class _TimelineExtractor:
    """Returns whatever `script(now_ms)` says; counts calls."""

    def __init__(self, clock: VirtualClock, script) -> None:
        self.clock = clock
        self.script = script
        self.calls: list[float] = []

    async def sample(self, min_turn_index=None) -> Sample:
        self.calls.append(self.clock.now())
        result = self.script(self.clock.now())
        if isinstance(result, Exception):
            raise result
        return result


@pytest.mark.parametrize(
    "length,bucket",
    [(1, "short"), (15, "short"), (16, "medium"), (39, "medium"), (40, "long"), (499, "long"), (500, "other")],
)
def test_bucket_boundaries(length: int, bucket: str) -> None:
    assert DEFAULT_POLICY.classify(length).name == bucket


def test_bucket_table_values() -> None:
    rules = {r.name: r for r in DEFAULT_POLICY.buckets()}
    assert (rules["short"].required_stable_cycles, rules["short"].min_stable_ms) == (12, 8000)
    assert (rules["medium"].required_stable_cycles, rules["medium"].min_stable_ms) == (8, 1200)
    assert (rules["long"].required_stable_cycles, rules["long"].min_stable_ms) == (8, 2000)
    assert (rules["other"].required_stable_cycles, rules["other"].min_stable_ms) == (10, 3000)
    for rule in rules.values():
        assert rule.completion_stable_target <= rule.required_stable_cycles


@pytest.mark.parametrize("length", [1, 3, 8, 15])
@pytest.mark.parametrize("interval", [100, 400, 1000])
def test_short_answers_need_twelve_cycles_and_eight_seconds(length: int, interval: int) -> None:
    # A finished affordance must not shorten the short-bucket window.
    tracker = ConvergenceTracker()
    text = "x" * length
    now = 0
    assert tracker.observe(_sample(text, finished=True), now) is False
    while True:
        now += interval
        converged = tracker.observe(_sample(text, finished=True), now)
        cycles = tracker.state.stable_cycles
        if converged:
            assert cycles >= SHORT_REQUIRED_CYCLES
            assert now >= SHORT_MIN_STABLE_MS
            break
        assert cycles < SHORT_REQUIRED_CYCLES or now < SHORT_MIN_STABLE_MS
    expected_cycles = max(SHORT_REQUIRED_CYCLES, -(-SHORT_MIN_STABLE_MS // interval))
    assert tracker.state.stable_cycles == expected_cycles


def test_only_length_increase_resets_the_window() -> None:
    tracker = ConvergenceTracker()
    tracker.observe(_sample("Hello world!!"), 0)
    tracker.observe(_sample("Hello world!!"), 400)
    tracker.observe(_sample("Hello"), 800)
    assert tracker.state.stable_cycles == 2
    assert tracker.best.text == "Hello world!!"

    tracker.observe(_sample("Hello world!! And more."), 1200)
    assert tracker.state.stable_cycles == 0
    assert tracker.state.last_change_at == 1200


def test_absent_and_placeholder_samples_do_not_touch_counters() -> None:
    tracker = ConvergenceTracker()
    tracker.observe(_sample("Partial"), 0)
    tracker.observe(_sample("Partial"), 400)
    before = (tracker.state.stable_cycles, tracker.state.last_change_at, tracker.state.samples)
    for t in (800, 1200, 1600):
        assert tracker.observe(_sample(None), t) is False
    assert (tracker.state.stable_cycles, tracker.state.last_change_at, tracker.state.samples) == before


def test_visible_stop_control_suppresses_convergence() -> None:
    tracker = ConvergenceTracker()
    text = "A medium length reply text"  # medium bucket
    tracker.observe(_sample(text), 0)
    for i in range(1, 20):
        assert tracker.observe(_sample(text, stop=True), i * 400) is False
    assert tracker.observe(_sample(text), 20 * 400) is True


def test_finished_affordance_lowers_cycle_target_but_not_duration() -> None:
    text = "A medium length reply text"
    with_done = ConvergenceTracker()
    without = ConvergenceTracker()
    with_done.observe(_sample(text, finished=True), 0)
    without.observe(_sample(text), 0)

    converged_at = {}
    for i in range(1, 12):
        t = i * 400
        if with_done.observe(_sample(text, finished=True), t):
            converged_at.setdefault("done", t)
        if without.observe(_sample(text), t):
            converged_at.setdefault("plain", t)
    assert converged_at == {"done": 1600, "plain": 3200}

    fast = ConvergenceTracker()
    fast.observe(_sample(text, finished=True), 0)
    for i in range(1, 6):
        assert fast.observe(_sample(text, finished=True), i * 100) is False


@pytest.mark.asyncio
async def test_hi_converges_only_after_eight_seconds_and_twelve_samples() -> None:
    clock = VirtualClock()
    extractor = _TimelineExtractor(clock, lambda now: _sample("Hi!"))

    result = await clock.run(
        poll_until_converged(
            extractor, clock=clock, deadline=Deadline.after(clock, 60_000), poll_interval_ms=400
        )
    )

    assert result.converged is True
    assert result.snapshot.text == "Hi!"
    assert clock.now() == 8000
    assert result.state.stable_cycles >= 12
    assert len(extractor.calls) >= 13


@pytest.mark.asyncio
async def test_growing_text_restarts_window_from_last_growth() -> None:
    clock = VirtualClock()

    def script(now: float) -> Sample:
        if now < 400:
            return _sample("A")
        if now < 800:
            return _sample("AB")
        return _sample("ABC")

    extractor = _TimelineExtractor(clock, script)
    result = await clock.run(
        poll_until_converged(
            extractor, clock=clock, deadline=Deadline.after(clock, 60_000), poll_interval_ms=400
        )
    )

    assert result.converged is True
    assert result.snapshot.text == "ABC"
    assert result.state.last_change_at == 800
    assert clock.now() - 800 >= LONG_MIN_STABLE_MS
    # "ABC" is short, so the short window applies from the last growth.
    assert clock.now() == 800 + SHORT_MIN_STABLE_MS


@pytest.mark.asyncio
async def test_poller_times_out_with_partial() -> None:
    clock = VirtualClock()
    extractor = _TimelineExtractor(clock, lambda now: _sample("Still typing", stop=True))
    result = await clock.run(
        poll_until_converged(extractor, clock=clock, deadline=Deadline.after(clock, 3000))
    )
    assert result.converged is False
    assert result.snapshot is None
    assert result.partial.text == "Still typing"
    assert clock.now() == 3000


@pytest.mark.asyncio
async def test_poller_tolerates_a_few_instrumentation_errors() -> None:
    clock = VirtualClock()

    def script(now: float):
        if now < 1200:
            return InstrumentationError("transient")
        return _sample("Recovered answer text")

    policy = StabilityPolicy()
    extractor = _TimelineExtractor(clock, script)
    result = await clock.run(
        poll_until_converged(
            extractor, clock=clock, deadline=Deadline.after(clock, 60_000), policy=policy
        )
    )
    assert result.converged is True
    assert result.snapshot.text == "Recovered answer text"


@pytest.mark.asyncio
async def test_poller_gives_up_after_too_many_consecutive_errors() -> None:
    clock = VirtualClock()
    extractor = _TimelineExtractor(clock, lambda now: InstrumentationError("socket closed"))
    with pytest.raises(InstrumentationError):
        await clock.run(
            poll_until_converged(
                extractor,
                clock=clock,
                deadline=Deadline.after(clock, 60_000),
                max_consecutive_errors=2,
            )
        )
    assert len(extractor.calls) == 3
