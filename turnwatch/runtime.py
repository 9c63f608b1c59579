"""
Conversation runtime: one object bundling backend, clock and logger for a
chat session's waits.

Example usage with Playwright:
    from playwright.async_api import async_playwright
    from turnwatch import ConversationRuntime, ResponseWaitOptions

    async with async_playwright() as p:
        browser = await p.chromium.connect_over_cdp("http://127.0.0.1:9222")
        page = browser.contexts[0].pages[0]
        runtime = await ConversationRuntime.from_playwright_page(page, verbose=True)

        turns = await runtime.current_turn_count()
        await runtime.confirm_attachment("notes.txt")
        await runtime.wait_for_attachment_completion(["notes.txt"])
        # ... submit the prompt through the page ...
        outcome = await runtime.wait_for_response(min_turn_index=turns)
        print(outcome.text)
"""

from __future__ import annotations

import dataclasses
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING

from .attachments import (
    AttachmentConfirmation,
    AttachmentOptions,
    wait_for_attachment_completion,
    wait_for_user_turn_attachments,
)
from .backends.playwright_backend import PlaywrightBackend
from .backends.protocol import BrowserBackend
from .clock import Clock, SystemClock
from .exceptions import TurnwatchError
from .extractor import DomSnapshotExtractor
from .logs import LogSink, SessionLogger
from .markdown import capture_assistant_markdown
from .models import RaceOutcome, Snapshot
from .race import CompletionRace, ResponseWaitOptions

if TYPE_CHECKING:
    from playwright.async_api import Page


class ConversationRuntime:
    def __init__(
        self,
        backend: BrowserBackend,
        *,
        logger: SessionLogger | LogSink | None = None,
        clock: Clock | None = None,
        response_options: ResponseWaitOptions | None = None,
        attachment_options: AttachmentOptions | None = None,
    ) -> None:
        self.backend = backend
        self.logger = SessionLogger.wrap(logger)
        self.clock = clock or SystemClock()
        self.response_options = response_options or ResponseWaitOptions()
        self.attachment_options = attachment_options or AttachmentOptions()
        self.last_outcome: RaceOutcome | None = None

    @classmethod
    async def from_playwright_page(
        cls,
        page: Page,
        *,
        verbose: bool = False,
        session_log: LogSink | None = None,
        echo: Callable[[str], None] | None = None,
        response_options: ResponseWaitOptions | None = None,
        attachment_options: AttachmentOptions | None = None,
    ) -> ConversationRuntime:
        """Create a runtime over a Chromium Playwright page via its CDP session."""
        backend = await PlaywrightBackend.from_page(page)
        return cls(
            backend,
            logger=SessionLogger(verbose=verbose, session_log=session_log, echo=echo),
            response_options=response_options,
            attachment_options=attachment_options,
        )

    def _extractor(self) -> DomSnapshotExtractor:
        return DomSnapshotExtractor(
            self.backend,
            clock=self.clock,
            eval_timeout_ms=self.response_options.eval_timeout_ms,
        )

    async def current_turn_count(self) -> int:
        """Number of conversation turns on the page; use as `min_turn_index` before sending."""
        return await self._extractor().turn_count()

    async def wait_for_response(
        self,
        *,
        timeout_ms: float | None = None,
        min_turn_index: int | None = None,
        capture_markdown: bool | None = None,
    ) -> RaceOutcome:
        overrides = {}
        if timeout_ms is not None:
            overrides["timeout_ms"] = timeout_ms
        if min_turn_index is not None:
            overrides["min_turn_index"] = min_turn_index
        if capture_markdown is not None:
            overrides["capture_markdown"] = capture_markdown
        options = dataclasses.replace(self.response_options, **overrides)
        race = CompletionRace(self.backend, options, clock=self.clock, session_logger=self.logger)
        self.last_outcome = await race.run()
        return self.last_outcome

    async def confirm_attachment(self, file_path: str | Path, expected_count: int = 1) -> bool:
        confirmation = AttachmentConfirmation(
            self.backend,
            clock=self.clock,
            session_logger=self.logger,
            options=self.attachment_options,
        )
        return await confirmation.confirm(file_path, expected_count)

    async def wait_for_attachment_completion(self, expected_names: list[str]) -> None:
        await wait_for_attachment_completion(
            self.backend,
            expected_names,
            options=self.attachment_options,
            clock=self.clock,
            session_logger=self.logger,
        )

    async def wait_for_user_turn_attachments(self, expected_names: list[str]) -> bool:
        return await wait_for_user_turn_attachments(
            self.backend,
            expected_names,
            options=self.attachment_options,
            clock=self.clock,
            session_logger=self.logger,
        )

    async def capture_markdown(self, snapshot: Snapshot | None = None) -> str | None:
        """Markdown for `snapshot` (default: the last captured reply)."""
        if snapshot is None:
            if self.last_outcome is None:
                raise TurnwatchError("No captured response to copy; call wait_for_response first")
            snapshot = self.last_outcome.snapshot
        return await capture_assistant_markdown(
            self.backend,
            snapshot,
            clock=self.clock,
            session_logger=self.logger,
            eval_timeout_ms=self.response_options.eval_timeout_ms,
        )
