"""
Recovery chain for a race in which neither strategy converged.

1. Re-poll with the extractor alone (no watcher) for the remaining budget,
   first with the structural+fallback extractor, then content-root only if
   the previous path was knocked out by instrumentation errors.
2. Settle pass: poll briefly for a strictly longer or differently
   identified snapshot, to absorb last-moment UI updates.
3. Nothing converged: dump the DOM and raise ConvergenceTimeout carrying the
   best partial snapshot seen anywhere.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .backends.protocol import BrowserBackend
from .clock import Clock, Deadline
from .constants import DEFAULT_POLL_INTERVAL_MS, RECOVERY_SETTLE_MS
from .convergence import StabilityPolicy, poll_until_converged
from .dom_debug import log_dom_failure
from .exceptions import ConvergenceTimeout, InstrumentationError
from .extractor import DomSnapshotExtractor, ExtractMode
from .logs import SessionLogger
from .models import Snapshot

logger = logging.getLogger(__name__)

RECOVERY_MODES: tuple[ExtractMode, ...] = ("structural+fallback", "content-root")


def is_improvement(current: Snapshot, fresh: Snapshot | None, *, strict: bool = False) -> bool:
    """
    True if `fresh` should replace `current`.

    Longer text always wins, as does a message id the current snapshot lacks.
    Unless `strict`, a same-or-longer snapshot with different text wins too.
    """
    if fresh is None:
        return False
    if fresh.length > current.length:
        return True
    if fresh.message_id and fresh.message_id != current.message_id:
        if not current.message_id or strict:
            return True
    if strict:
        return False
    return fresh.text != current.text and fresh.length >= current.length


@dataclass
class RefreshResult:
    snapshot: Snapshot
    refreshed: bool
    stop_visible: bool


async def refresh_capture(
    extractor: DomSnapshotExtractor,
    candidate: Snapshot,
    *,
    clock: Clock,
    window_ms: float,
    poll_interval_ms: float = DEFAULT_POLL_INTERVAL_MS,
    min_turn_index: int | None = None,
    strict: bool = False,
    until_stop_clears: bool = True,
) -> RefreshResult:
    """
    Poll up to `window_ms` for a better snapshot than `candidate`.

    With `until_stop_clears`, stops early once no stop control is visible.
    Instrumentation errors end the refresh and keep what was captured so far.
    """
    deadline = Deadline.after(clock, window_ms)
    refreshed = False
    stop_visible = False
    while not deadline.expired:
        try:
            sample = await extractor.sample(min_turn_index)
        except InstrumentationError as e:
            logger.debug(f"refresh: sample failed, keeping capture: {e}")
            break
        stop_visible = sample.signals.stop_visible
        if is_improvement(candidate, sample.snapshot, strict=strict):
            candidate = sample.snapshot
            refreshed = True
            logger.debug(f"refresh: replaced candidate ({candidate.length} chars)")
        if until_stop_clears and not stop_visible:
            break
        await clock.wait(min(poll_interval_ms, deadline.remaining_ms()))
    return RefreshResult(candidate, refreshed, stop_visible)


def _longer(a: Snapshot | None, b: Snapshot | None) -> Snapshot | None:
    if a is None:
        return b
    if b is None:
        return a
    return b if b.length > a.length else a


class RecoveryChain:
    def __init__(
        self,
        extractor: DomSnapshotExtractor,
        *,
        clock: Clock,
        session_logger: SessionLogger,
        policy: StabilityPolicy | None = None,
        poll_interval_ms: float = DEFAULT_POLL_INTERVAL_MS,
        settle_ms: float = RECOVERY_SETTLE_MS,
        max_consecutive_errors: int = 5,
        min_turn_index: int | None = None,
    ) -> None:
        self.extractor = extractor
        self.clock = clock
        self.session_logger = session_logger
        self.policy = policy
        self.poll_interval_ms = poll_interval_ms
        self.settle_ms = settle_ms
        self.max_consecutive_errors = max_consecutive_errors
        self.min_turn_index = min_turn_index

    @property
    def backend(self) -> BrowserBackend:
        return self.extractor.backend

    async def run(
        self,
        deadline: Deadline,
        *,
        timeout_ms: float,
        partial: Snapshot | None = None,
        failures: dict[str, str] | None = None,
    ) -> Snapshot:
        failures = failures if failures is not None else {}
        candidate: Snapshot | None = None

        for mode in RECOVERY_MODES:
            if deadline.expired:
                break
            try:
                result = await poll_until_converged(
                    self.extractor.with_mode(mode),
                    clock=self.clock,
                    deadline=deadline,
                    policy=self.policy,
                    poll_interval_ms=self.poll_interval_ms,
                    min_turn_index=self.min_turn_index,
                    max_consecutive_errors=self.max_consecutive_errors,
                    label=f"recovery[{mode}]",
                )
            except InstrumentationError as e:
                failures[f"recovery[{mode}]"] = str(e)
                logger.warning(f"recovery path {mode} failed: {e}")
                continue
            partial = _longer(partial, result.partial)
            if result.converged:
                candidate = result.snapshot
                break

        if candidate is not None:
            self.session_logger("Recovered assistant response via polling fallback")
            settled = await refresh_capture(
                self.extractor,
                candidate,
                clock=self.clock,
                window_ms=self.settle_ms,
                poll_interval_ms=self.poll_interval_ms,
                min_turn_index=self.min_turn_index,
                strict=True,
                until_stop_clears=False,
            )
            return settled.snapshot

        await log_dom_failure(
            self.backend, self.session_logger, "assistant-response", clock=self.clock
        )
        raise ConvergenceTimeout.assistant_response(
            timeout_ms=timeout_ms, partial=partial, failures=failures
        )
