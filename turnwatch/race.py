"""
Completion race: event-driven watcher vs. time-sliced poller.

Both strategies sample the same extractor, each with its own convergence
state. The first to converge commits through a RaceGate; once the gate is
settled every later commit is refused, so a cancelled loser can never change
the result. If neither converges, the recovery chain takes over.

Usage:
    outcome = await wait_for_assistant_response(
        backend, ResponseWaitOptions(timeout_ms=90_000, min_turn_index=turns)
    )
    print(outcome.kind, outcome.text)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from .backends.protocol import BrowserBackend
from .clock import Clock, Deadline, SystemClock
from .constants import (
    DEFAULT_EVAL_TIMEOUT_MS,
    DEFAULT_MUTATION_BURST_MS,
    DEFAULT_POLL_INTERVAL_MS,
    DEFAULT_RESPONSE_TIMEOUT_MS,
    DEFAULT_WATCH_TICK_MS,
    MAX_CONSECUTIVE_ERRORS,
    POST_CAPTURE_REFRESH_MS,
    RECOVERY_SETTLE_MS,
)
from .convergence import PollResult, StabilityPolicy, poll_until_converged
from .exceptions import InstrumentationError
from .extractor import ContentRootWeights, DomSnapshotExtractor
from .logs import SessionLogger
from .markdown import capture_assistant_markdown
from .models import RaceOutcome, Snapshot
from .recovery import RecoveryChain, refresh_capture
from .watcher import MutationWatcher

logger = logging.getLogger(__name__)


class RaceGate:
    """First-commit-wins latch shared by the racing strategies."""

    def __init__(self) -> None:
        self.settled = False
        self.winner: str | None = None
        self.snapshot: Snapshot | None = None
        self.refused: list[str] = []

    def commit(self, kind: str, snapshot: Snapshot) -> bool:
        if self.settled:
            self.refused.append(kind)
            logger.debug(f"race: late {kind} result refused ({snapshot.length} chars)")
            return False
        self.settled = True
        self.winner = kind
        self.snapshot = snapshot
        return True


@dataclass
class ResponseWaitOptions:
    timeout_ms: float = DEFAULT_RESPONSE_TIMEOUT_MS
    poll_interval_ms: float = DEFAULT_POLL_INTERVAL_MS
    watch_tick_ms: float = DEFAULT_WATCH_TICK_MS
    mutation_burst_ms: int = DEFAULT_MUTATION_BURST_MS
    eval_timeout_ms: float = DEFAULT_EVAL_TIMEOUT_MS
    post_capture_refresh_ms: float = POST_CAPTURE_REFRESH_MS
    recovery_settle_ms: float = RECOVERY_SETTLE_MS
    max_consecutive_errors: int = MAX_CONSECUTIVE_ERRORS
    min_turn_index: int | None = None
    policy: StabilityPolicy | None = None
    weights: ContentRootWeights | None = None
    capture_markdown: bool = False
    dismiss_stuck_stop: bool = True


class CompletionRace:
    def __init__(
        self,
        backend: BrowserBackend,
        options: ResponseWaitOptions | None = None,
        *,
        clock: Clock | None = None,
        session_logger: SessionLogger | None = None,
        extractor: DomSnapshotExtractor | None = None,
    ) -> None:
        self.backend = backend
        self.options = options or ResponseWaitOptions()
        self.clock = clock or SystemClock()
        self.session_logger = session_logger or SessionLogger()
        self.extractor = extractor or DomSnapshotExtractor(
            backend,
            clock=self.clock,
            weights=self.options.weights or ContentRootWeights(),
            eval_timeout_ms=self.options.eval_timeout_ms,
        )
        self.gate = RaceGate()
        self.watcher: MutationWatcher | None = None

    async def _watch(self, deadline: Deadline) -> PollResult:
        opts = self.options
        watcher = self.watcher = MutationWatcher(
            self.extractor,
            clock=self.clock,
            policy=opts.policy,
            tick_ms=opts.watch_tick_ms,
            burst_ms=opts.mutation_burst_ms,
            min_turn_index=opts.min_turn_index,
            dismiss_stuck_stop=opts.dismiss_stuck_stop,
            eval_timeout_ms=opts.eval_timeout_ms,
        )
        result = await watcher.run(deadline, gate=self.gate)
        if result.converged and result.snapshot is not None:
            self.gate.commit("observer", result.snapshot)
        return result

    async def _poll(self, deadline: Deadline) -> PollResult:
        opts = self.options
        result = await poll_until_converged(
            self.extractor,
            clock=self.clock,
            deadline=deadline,
            policy=opts.policy,
            poll_interval_ms=opts.poll_interval_ms,
            min_turn_index=opts.min_turn_index,
            gate=self.gate,
            max_consecutive_errors=opts.max_consecutive_errors,
        )
        if result.converged and result.snapshot is not None:
            self.gate.commit("poll", result.snapshot)
        return result

    async def _terminate_loser(self) -> None:
        try:
            await self.backend.terminate_execution()
        except InstrumentationError as e:
            logger.debug(f"race: terminate_execution failed: {e}")

    async def _race(
        self, deadline: Deadline, failures: dict[str, str]
    ) -> tuple[str | None, Snapshot | None]:
        """Run both strategies; returns (winner, best partial)."""
        tasks = {
            asyncio.ensure_future(self._watch(deadline)): "observer",
            asyncio.ensure_future(self._poll(deadline)): "poll",
        }
        pending = set(tasks)
        partial: Snapshot | None = None
        try:
            while pending and not self.gate.settled:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    name = tasks[task]
                    error = task.exception()
                    if isinstance(error, InstrumentationError):
                        failures[name] = str(error)
                        logger.warning(f"race: {name} strategy failed: {error}")
                        continue
                    if error is not None:
                        raise error
                    result: PollResult = task.result()
                    if result.partial is not None and (
                        partial is None or result.partial.length > partial.length
                    ):
                        partial = result.partial
        finally:
            # only an observer cut off mid page call can leave a script running
            observer_busy = (
                any(tasks[t] == "observer" for t in pending)
                and self.watcher is not None
                and self.watcher.evaluating
            )
            for task in pending:
                task.cancel()
        if self.gate.winner == "poll" and observer_busy:
            await self._terminate_loser()
        return self.gate.winner, partial

    async def run(self) -> RaceOutcome:
        opts = self.options
        started = self.clock.now()
        deadline = Deadline.after(self.clock, opts.timeout_ms)
        failures: dict[str, str] = {}
        self.gate = RaceGate()
        self.watcher = None
        self.session_logger("Waiting for assistant response")

        winner, partial = await self._race(deadline, failures)
        snapshot = self.gate.snapshot

        if winner is None or snapshot is None:
            recovery = RecoveryChain(
                self.extractor,
                clock=self.clock,
                session_logger=self.session_logger,
                policy=opts.policy,
                poll_interval_ms=opts.poll_interval_ms,
                settle_ms=opts.recovery_settle_ms,
                max_consecutive_errors=opts.max_consecutive_errors,
                min_turn_index=opts.min_turn_index,
            )
            snapshot = await recovery.run(
                deadline, timeout_ms=opts.timeout_ms, partial=partial, failures=failures
            )
            return RaceOutcome(
                kind="recovered",
                snapshot=snapshot,
                elapsed_ms=self.clock.now() - started,
                failures=failures,
                markdown=await self._markdown(snapshot),
            )

        if winner == "poll":
            self.session_logger("Captured assistant response via snapshot watchdog")
        else:
            self.session_logger("Captured assistant response via mutation watcher")

        snapshot, refreshed = await self._post_capture(snapshot, deadline)
        return RaceOutcome(
            kind=winner,
            snapshot=snapshot,
            elapsed_ms=self.clock.now() - started,
            refreshed=refreshed,
            failures=failures,
            markdown=await self._markdown(snapshot),
        )

    async def _post_capture(self, snapshot: Snapshot, deadline: Deadline) -> tuple[Snapshot, bool]:
        opts = self.options
        if opts.post_capture_refresh_ms <= 0:
            return snapshot, False
        result = await refresh_capture(
            self.extractor,
            snapshot,
            clock=self.clock,
            window_ms=opts.post_capture_refresh_ms,
            poll_interval_ms=opts.poll_interval_ms,
            min_turn_index=opts.min_turn_index,
        )
        snapshot, refreshed = result.snapshot, result.refreshed
        if not result.stop_visible or deadline.expired:
            return snapshot, refreshed

        logger.info("post-capture: stop control still visible, waiting out generation")
        try:
            resumed = await poll_until_converged(
                self.extractor,
                clock=self.clock,
                deadline=deadline,
                policy=opts.policy,
                poll_interval_ms=opts.poll_interval_ms,
                min_turn_index=opts.min_turn_index,
                max_consecutive_errors=opts.max_consecutive_errors,
                label="post-capture",
            )
        except InstrumentationError as e:
            logger.warning(f"post-capture poll failed, keeping capture: {e}")
            return snapshot, refreshed
        if resumed.converged and resumed.snapshot is not None:
            if resumed.snapshot.text != snapshot.text:
                return resumed.snapshot, True
            return snapshot, refreshed
        logger.warning(
            f"post-capture poll did not converge before deadline; keeping {snapshot.length} chars"
        )
        return snapshot, refreshed

    async def _markdown(self, snapshot: Snapshot) -> str | None:
        if not self.options.capture_markdown:
            return None
        return await capture_assistant_markdown(
            self.backend,
            snapshot,
            clock=self.clock,
            session_logger=self.session_logger,
            eval_timeout_ms=self.options.eval_timeout_ms,
        )


async def wait_for_assistant_response(
    backend: BrowserBackend,
    options: ResponseWaitOptions | None = None,
    *,
    clock: Clock | None = None,
    session_logger: SessionLogger | None = None,
) -> RaceOutcome:
    """Race watcher and poller for the final assistant reply."""
    race = CompletionRace(backend, options, clock=clock, session_logger=session_logger)
    return await race.run()
