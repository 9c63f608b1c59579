"""
Stability convergence: decides when a streamed reply has stopped growing.

The candidate's length picks a bucket; convergence needs both a run of
samples without growth and a minimum quiet period since the last growth.
Only a length increase restarts the window. Ties and shorter reads count as
stable cycles, and an absent/placeholder sample changes nothing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .clock import Clock, Deadline
from .constants import (
    DEFAULT_POLL_INTERVAL_MS,
    LONG_COMPLETION_TARGET,
    LONG_MAX_LENGTH,
    LONG_MIN_STABLE_MS,
    LONG_REQUIRED_CYCLES,
    MAX_CONSECUTIVE_ERRORS,
    MEDIUM_COMPLETION_TARGET,
    MEDIUM_MAX_LENGTH,
    MEDIUM_MIN_STABLE_MS,
    MEDIUM_REQUIRED_CYCLES,
    OTHER_COMPLETION_TARGET,
    OTHER_MIN_STABLE_MS,
    OTHER_REQUIRED_CYCLES,
    SHORT_COMPLETION_TARGET,
    SHORT_MAX_LENGTH,
    SHORT_MIN_STABLE_MS,
    SHORT_REQUIRED_CYCLES,
)
from .exceptions import InstrumentationError
from .models import Sample, Snapshot

if TYPE_CHECKING:
    from .extractor import DomSnapshotExtractor
    from .race import RaceGate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BucketRule:
    name: str
    max_length: int | None  # exclusive; None means unbounded
    required_stable_cycles: int
    min_stable_ms: float
    completion_stable_target: int


@dataclass(frozen=True)
class StabilityPolicy:
    """Length buckets, checked in order short, medium, long, other."""

    short: BucketRule = BucketRule(
        "short", SHORT_MAX_LENGTH, SHORT_REQUIRED_CYCLES, SHORT_MIN_STABLE_MS, SHORT_COMPLETION_TARGET
    )
    medium: BucketRule = BucketRule(
        "medium",
        MEDIUM_MAX_LENGTH,
        MEDIUM_REQUIRED_CYCLES,
        MEDIUM_MIN_STABLE_MS,
        MEDIUM_COMPLETION_TARGET,
    )
    long: BucketRule = BucketRule(
        "long", LONG_MAX_LENGTH, LONG_REQUIRED_CYCLES, LONG_MIN_STABLE_MS, LONG_COMPLETION_TARGET
    )
    other: BucketRule = BucketRule(
        "other", None, OTHER_REQUIRED_CYCLES, OTHER_MIN_STABLE_MS, OTHER_COMPLETION_TARGET
    )

    def buckets(self) -> tuple[BucketRule, ...]:
        return (self.short, self.medium, self.long, self.other)

    def classify(self, length: int) -> BucketRule:
        for rule in self.buckets():
            if rule.max_length is None or length < rule.max_length:
                return rule
        return self.other


DEFAULT_POLICY = StabilityPolicy()


@dataclass
class ConvergenceState:
    """Owned by exactly one strategy; never shared across concurrent tasks."""

    best_snapshot: Snapshot | None = None
    last_length: int = 0
    stable_cycles: int = 0
    last_change_at: float | None = None
    samples: int = 0


class ConvergenceTracker:
    """
    Folds samples into a ConvergenceState and reports convergence.

    Example:
        tracker = ConvergenceTracker()
        for t, sample in stream:
            if tracker.observe(sample, t):
                return tracker.state.best_snapshot
    """

    def __init__(self, policy: StabilityPolicy | None = None) -> None:
        self.policy = policy or DEFAULT_POLICY
        self.state = ConvergenceState()

    @property
    def best(self) -> Snapshot | None:
        return self.state.best_snapshot

    def rule(self) -> BucketRule | None:
        if self.state.best_snapshot is None:
            return None
        return self.policy.classify(self.state.best_snapshot.length)

    def observe(self, sample: Sample, now: float) -> bool:
        snapshot = sample.snapshot
        if snapshot is None:
            return False

        state = self.state
        state.samples += 1
        length = snapshot.length
        if state.best_snapshot is None or length > state.last_length:
            state.best_snapshot = snapshot
            state.last_length = length
            state.stable_cycles = 0
            state.last_change_at = now
            return False

        state.stable_cycles += 1
        if length == state.last_length:
            state.best_snapshot = snapshot
        return self._converged(sample, now)

    def _converged(self, sample: Sample, now: float) -> bool:
        state = self.state
        rule = self.policy.classify(state.last_length)
        signals = sample.signals
        if signals.stop_visible:
            return False
        target = rule.required_stable_cycles
        if signals.finished_visible:
            target = min(target, rule.completion_stable_target)
        quiet_ms = now - (state.last_change_at if state.last_change_at is not None else now)
        return state.stable_cycles >= target and quiet_ms >= rule.min_stable_ms


@dataclass
class PollResult:
    converged: bool
    snapshot: Snapshot | None = None
    state: ConvergenceState = field(default_factory=ConvergenceState)
    last_sample: Sample | None = None

    @property
    def partial(self) -> Snapshot | None:
        return self.state.best_snapshot


async def poll_until_converged(
    extractor: DomSnapshotExtractor,
    *,
    clock: Clock,
    deadline: Deadline,
    policy: StabilityPolicy | None = None,
    poll_interval_ms: float = DEFAULT_POLL_INTERVAL_MS,
    min_turn_index: int | None = None,
    gate: RaceGate | None = None,
    max_consecutive_errors: int = MAX_CONSECUTIVE_ERRORS,
    label: str = "poll",
) -> PollResult:
    """
    Time-sliced poller: sample every `poll_interval_ms` until converged,
    the deadline passes, or `gate` settles.

    Up to `max_consecutive_errors` InstrumentationErrors in a row are
    tolerated; the next one propagates.
    """
    tracker = ConvergenceTracker(policy)
    consecutive_errors = 0
    last_sample: Sample | None = None

    while True:
        if gate is not None and gate.settled:
            logger.debug(f"{label}: race already settled, stopping")
            break
        try:
            sample = await extractor.sample(min_turn_index)
        except InstrumentationError as e:
            consecutive_errors += 1
            logger.debug(f"{label}: sample failed ({consecutive_errors}/{max_consecutive_errors}): {e}")
            if consecutive_errors > max_consecutive_errors:
                raise
        else:
            consecutive_errors = 0
            if gate is not None and gate.settled:
                break
            last_sample = sample
            if tracker.observe(sample, clock.now()):
                state = tracker.state
                logger.debug(
                    f"{label}: converged on {state.last_length} chars after "
                    f"{state.stable_cycles} stable cycles"
                )
                return PollResult(True, state.best_snapshot, state, last_sample)

        if deadline.expired:
            break
        await clock.wait(min(poll_interval_ms, deadline.remaining_ms()))

    return PollResult(False, None, tracker.state, last_sample)
