"""
Event-driven completion watcher.

Subscribes to document mutations and re-samples on each coalesced burst (or
on a periodic tick when the page is quiet), feeding the same convergence
tracker the poller uses. While watching it also dismisses a stuck
stop/cancel control whose label shows it is not a real "stop generating"
button.
"""

from __future__ import annotations

import asyncio
import json
import logging

from .backends.protocol import evaluate_value
from .clock import Clock, Deadline, bounded, first_completed
from .constants import (
    DEFAULT_EVAL_TIMEOUT_MS,
    DEFAULT_MUTATION_BURST_MS,
    DEFAULT_WATCH_TICK_MS,
    STOP_BUTTON_SELECTOR,
)
from .convergence import ConvergenceTracker, PollResult, StabilityPolicy
from .exceptions import InstrumentationError
from .extractor import DomSnapshotExtractor
from .models import CompletionSignals

logger = logging.getLogger(__name__)


def build_dismiss_stuck_stop_script() -> str:
    selector = json.dumps(STOP_BUTTON_SELECTOR)
    return f"""
    (() => {{
        const stop = document.querySelector({selector});
        if (!stop) return false;
        const label = (stop.getAttribute('aria-label') || '').toLowerCase();
        if (label.includes('stop')) return false;
        stop.click();
        return true;
    }})()
    """


def is_stuck_stop(signals: CompletionSignals) -> bool:
    """A visible stop-like control whose label does not say "stop"."""
    if not signals.stop_visible:
        return False
    return "stop" not in (signals.stop_label or "").lower()


class MutationWatcher:
    def __init__(
        self,
        extractor: DomSnapshotExtractor,
        *,
        clock: Clock,
        policy: StabilityPolicy | None = None,
        tick_ms: float = DEFAULT_WATCH_TICK_MS,
        burst_ms: int = DEFAULT_MUTATION_BURST_MS,
        min_turn_index: int | None = None,
        dismiss_stuck_stop: bool = True,
        eval_timeout_ms: float = DEFAULT_EVAL_TIMEOUT_MS,
    ) -> None:
        self.extractor = extractor
        self.clock = clock
        self.policy = policy
        self.tick_ms = tick_ms
        self.burst_ms = burst_ms
        self.min_turn_index = min_turn_index
        self.dismiss_stuck_stop = dismiss_stuck_stop
        self.eval_timeout_ms = eval_timeout_ms
        self.notifications = 0
        self.dismissals = 0
        self.evaluating = False

    def _on_mutation(self, event: asyncio.Event) -> None:
        self.notifications += 1
        event.set()

    async def _page_call(self, awaitable):
        """Await a page round trip, flagging it as in flight meanwhile."""
        self.evaluating = True
        try:
            return await awaitable
        finally:
            self.evaluating = False

    async def _dismiss(self) -> None:
        clicked = await self._page_call(
            evaluate_value(
                self.extractor.backend,
                build_dismiss_stuck_stop_script(),
                clock=self.clock,
                timeout_ms=self.eval_timeout_ms,
                operation="dismiss_stuck_stop",
            )
        )
        if clicked:
            self.dismissals += 1
            logger.info("watcher: dismissed a stuck stop control")

    async def run(self, deadline: Deadline, gate=None) -> PollResult:
        """
        Watch until converged, deadline, or `gate` settles.

        Any InstrumentationError (including a failed subscription) propagates;
        the race decides what to do with it.
        """
        event = asyncio.Event()
        backend = self.extractor.backend
        subscription = await bounded(
            self.clock,
            backend.subscribe_mutations(lambda: self._on_mutation(event), burst_ms=self.burst_ms),
            self.eval_timeout_ms,
            operation="subscribe_mutations",
        )
        tracker = ConvergenceTracker(self.policy)
        last_sample = None
        last_dismiss_at: float | None = None
        try:
            while True:
                if gate is not None and gate.settled:
                    break
                event.clear()
                sample = await self._page_call(self.extractor.sample(self.min_turn_index))
                if gate is not None and gate.settled:
                    break
                last_sample = sample
                if tracker.observe(sample, self.clock.now()):
                    return PollResult(True, tracker.state.best_snapshot, tracker.state, sample)

                now = self.clock.now()
                if (
                    self.dismiss_stuck_stop
                    and is_stuck_stop(sample.signals)
                    and (last_dismiss_at is None or now - last_dismiss_at >= self.tick_ms)
                ):
                    last_dismiss_at = now
                    await self._dismiss()

                if deadline.expired:
                    break
                await first_completed(
                    self.clock, event, min(self.tick_ms, deadline.remaining_ms())
                )
        finally:
            try:
                await subscription.unsubscribe()
            except InstrumentationError as e:
                logger.debug(f"watcher: unsubscribe failed: {e}")
        return PollResult(False, None, tracker.state, last_sample)
