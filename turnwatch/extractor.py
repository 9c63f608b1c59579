"""
DOM snapshot extractor.

Evaluates a page-side script that returns the latest assistant reply plus the
completion affordances around it, then validates and filters the result in
Python. Every extraction path (watcher, poller, recovery, refresh) goes
through `DomSnapshotExtractor.admit`, so placeholder and stale-turn filtering
is applied identically everywhere.

Modes:
- "structural+fallback": scan conversation turns newest-first; if no
  assistant turn matches, fall back to the scored content-root search.
- "structural": conversation turns only.
- "content-root": scored content-root search only.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Literal

from pydantic import ValidationError

from .backends.protocol import BrowserBackend, evaluate_value
from .clock import Clock, SystemClock
from .constants import (
    ACTION_BUTTON_WEIGHT,
    ASSISTANT_ROLE_SELECTOR,
    ASSISTANT_ROLE_WEIGHT,
    CONTENT_ROOT_CANDIDATE_SELECTOR,
    CONTENT_ROOT_EXCLUDE_SELECTOR,
    CONVERSATION_TURN_SELECTOR,
    DEFAULT_EVAL_TIMEOUT_MS,
    DONE_MARKER,
    FINISHED_ACTIONS_SELECTOR,
    MARKDOWN_BODY_SELECTORS,
    MARKDOWN_NODE_WEIGHT,
    STOP_BUTTON_SELECTOR,
)
from .exceptions import ExtractionMismatch
from .models import ExtractionPayload, Sample, Snapshot
from .placeholder import DEFAULT_FILTER, PlaceholderFilter

logger = logging.getLogger(__name__)

ExtractMode = Literal["structural+fallback", "structural", "content-root"]


@dataclass(frozen=True)
class ContentRootWeights:
    """Scores used to pick the content root when no conversation turn matches."""

    action_button: int = ACTION_BUTTON_WEIGHT
    assistant_role: int = ASSISTANT_ROLE_WEIGHT
    markdown_node: int = MARKDOWN_NODE_WEIGHT


_EXTRACTOR_TEMPLATE = r"""
(() => {
  const CFG = __CONFIG__;
  const visible = (el) => {
    if (!el) return false;
    if (typeof el.getClientRects === 'function' && el.getClientRects().length === 0) return false;
    const style = window.getComputedStyle ? window.getComputedStyle(el) : null;
    return !style || (style.visibility !== 'hidden' && style.display !== 'none');
  };
  const isAssistantTurn = (node) => {
    if (!(node instanceof HTMLElement)) return false;
    const role = (node.getAttribute('data-message-author-role') || node.getAttribute('data-turn') || '').toLowerCase();
    if (role === 'assistant') return true;
    if (role === 'user') return false;
    const testId = (node.getAttribute('data-testid') || '').toLowerCase();
    if (testId.includes('assistant')) return true;
    return Boolean(node.querySelector(CFG.assistant) || node.querySelector('[data-testid*="assistant"]'));
  };
  const expandCollapsibles = (root) => {
    if (!CFG.expand) return;
    for (const button of Array.from(root.querySelectorAll('button'))) {
      if (button.hasAttribute('data-turnwatch-expanded')) continue;
      const label = (button.textContent || '').toLowerCase();
      const testid = (button.getAttribute('data-testid') || '').toLowerCase();
      if (label.includes('more') || label.includes('expand') || label.includes('show') ||
          testid.includes('markdown') || testid.includes('toggle')) {
        button.setAttribute('data-turnwatch-expanded', '1');
        button.click();
      }
    }
  };
  const preferredBody = (root) => {
    for (const sel of CFG.markdown) {
      const found = root.querySelector(sel);
      if (found && (found.innerText || '').trim()) return found;
    }
    return root;
  };
  const readSignals = (lastAssistant) => {
    const stop = document.querySelector(CFG.stop);
    const stopVisible = Boolean(stop) && visible(stop);
    let finished = false;
    if (lastAssistant) {
      finished = Array.from(lastAssistant.querySelectorAll(CFG.finished)).some(visible);
    }
    if (!finished) {
      const markers = document.querySelectorAll('[role="status"], [aria-live], [data-testid*="status"]');
      finished = Array.from(markers).some((el) => (el.innerText || '').trim() === CFG.done);
    }
    return {
      stopVisible,
      stopLabel: stop ? (stop.getAttribute('aria-label') || (stop.textContent || '').trim() || null) : null,
      finishedVisible: finished,
    };
  };
  const structural = (turns) => {
    for (let index = turns.length - 1; index >= 0; index -= 1) {
      const turn = turns[index];
      if (!isAssistantTurn(turn)) continue;
      const messageRoot = turn.querySelector(CFG.assistant) || turn;
      expandCollapsibles(messageRoot);
      const body = preferredBody(messageRoot);
      const text = body.innerText || '';
      if (!text.trim()) continue;
      return {
        node: turn,
        snapshot: {
          text,
          html: body.innerHTML || '',
          messageId: messageRoot.getAttribute('data-message-id') || turn.getAttribute('data-message-id'),
          turnId: turn.getAttribute('data-testid') || messageRoot.getAttribute('data-testid'),
          turnIndex: index,
        },
      };
    }
    return null;
  };
  const contentRoot = (turns) => {
    const markdownSel = CFG.markdown.join(', ');
    let best = null;
    let bestScore = 0;
    for (const el of Array.from(document.querySelectorAll(CFG.rootCandidates))) {
      if (el.closest(CFG.exclude)) continue;
      const score =
        el.querySelectorAll(CFG.finished).length * CFG.weights.action +
        el.querySelectorAll(CFG.assistant).length * CFG.weights.role +
        el.querySelectorAll(markdownSel).length * CFG.weights.markdown;
      if (score > bestScore) {
        best = el;
        bestScore = score;
      }
    }
    if (!best) return null;
    const nodes = Array.from(best.querySelectorAll(markdownSel)).filter((n) => !n.closest(CFG.exclude));
    for (let i = nodes.length - 1; i >= 0; i -= 1) {
      const text = nodes[i].innerText || '';
      if (!text.trim()) continue;
      const turn = nodes[i].closest(CFG.turns);
      const turnIndex = turn ? turns.indexOf(turn) : -1;
      return {
        node: nodes[i].closest(CFG.assistant) || nodes[i],
        snapshot: {
          text,
          html: nodes[i].innerHTML || '',
          messageId: (nodes[i].closest('[data-message-id]') || nodes[i]).getAttribute('data-message-id'),
          turnId: turn ? turn.getAttribute('data-testid') : null,
          turnIndex: turnIndex >= 0 ? turnIndex : null,
        },
      };
    }
    return null;
  };

  const turns = Array.from(document.querySelectorAll(CFG.turns));
  let found = null;
  let source = null;
  if (CFG.mode !== 'content-root') {
    found = structural(turns);
    source = found ? 'structural' : null;
  }
  if (!found && CFG.mode !== 'structural') {
    found = contentRoot(turns);
    source = found ? 'content-root' : null;
  }
  return {
    snapshot: found ? found.snapshot : null,
    source,
    signals: readSignals(found ? found.node : null),
    turnCount: turns.length,
  };
})()
"""


def build_extractor_script(
    mode: ExtractMode = "structural+fallback",
    *,
    weights: ContentRootWeights | None = None,
    expand_collapsibles: bool = True,
) -> str:
    weights = weights or ContentRootWeights()
    config = {
        "mode": mode,
        "turns": CONVERSATION_TURN_SELECTOR,
        "assistant": ASSISTANT_ROLE_SELECTOR,
        "markdown": list(MARKDOWN_BODY_SELECTORS),
        "stop": STOP_BUTTON_SELECTOR,
        "finished": FINISHED_ACTIONS_SELECTOR,
        "done": DONE_MARKER,
        "rootCandidates": CONTENT_ROOT_CANDIDATE_SELECTOR,
        "exclude": CONTENT_ROOT_EXCLUDE_SELECTOR,
        "weights": {
            "action": weights.action_button,
            "role": weights.assistant_role,
            "markdown": weights.markdown_node,
        },
        "expand": expand_collapsibles,
    }
    return _EXTRACTOR_TEMPLATE.replace("__CONFIG__", json.dumps(config))


def parse_extraction(value: Any) -> ExtractionPayload:
    """
    Validate a raw extractor result.

    `None` means the page had nothing to offer. Anything that is not the
    expected object shape raises ExtractionMismatch.
    """
    if value is None:
        return ExtractionPayload()
    if not isinstance(value, dict):
        raise ExtractionMismatch.from_payload(value, "expected an object")
    try:
        payload = ExtractionPayload.model_validate(value)
    except ValidationError as e:
        raise ExtractionMismatch.from_payload(value, str(e)) from e
    if payload.snapshot is not None and not payload.snapshot.text.strip():
        payload = payload.model_copy(update={"snapshot": None, "source": None})
    return payload


@dataclass
class DomSnapshotExtractor:
    """
    Reads the candidate assistant reply from the live page.

    Example:
        extractor = DomSnapshotExtractor(backend)
        snap = await extractor.extract(min_turn_index=4)
        if snap is not None:
            print(snap.text)
    """

    backend: BrowserBackend
    clock: Clock = field(default_factory=SystemClock)
    mode: ExtractMode = "structural+fallback"
    weights: ContentRootWeights = field(default_factory=ContentRootWeights)
    placeholder: PlaceholderFilter = DEFAULT_FILTER
    eval_timeout_ms: float = DEFAULT_EVAL_TIMEOUT_MS
    expand_collapsibles: bool = True

    def with_mode(self, mode: ExtractMode) -> DomSnapshotExtractor:
        return replace(self, mode=mode)

    async def read_payload(self) -> ExtractionPayload:
        """Raw validated read. Raises InstrumentationError or ExtractionMismatch."""
        value = await evaluate_value(
            self.backend,
            build_extractor_script(
                self.mode, weights=self.weights, expand_collapsibles=self.expand_collapsibles
            ),
            clock=self.clock,
            timeout_ms=self.eval_timeout_ms,
            operation=f"extract[{self.mode}]",
        )
        return parse_extraction(value)

    def admit(self, snapshot: Snapshot | None, min_turn_index: int | None = None) -> Snapshot | None:
        """Return `snapshot` if it may be folded into convergence, else None."""
        if snapshot is None:
            return None
        if self.placeholder.is_placeholder(snapshot.text):
            logger.debug(f"placeholder rejected: {snapshot.text[:60]!r}")
            return None
        if min_turn_index is not None:
            if snapshot.turn_index is None or snapshot.turn_index < min_turn_index:
                logger.debug(
                    f"stale turn rejected: turn_index={snapshot.turn_index} < {min_turn_index}"
                )
                return None
        return snapshot

    async def sample(self, min_turn_index: int | None = None) -> Sample:
        """
        One filtered read. A mismatched payload yields an empty sample;
        InstrumentationError propagates to the calling strategy.
        """
        try:
            payload = await self.read_payload()
        except ExtractionMismatch as e:
            logger.debug(f"extraction mismatch treated as no snapshot: {e}")
            return Sample()
        return Sample(
            snapshot=self.admit(payload.snapshot, min_turn_index),
            signals=payload.signals,
            source=payload.source,
        )

    async def extract(self, min_turn_index: int | None = None) -> Snapshot | None:
        return (await self.sample(min_turn_index)).snapshot

    async def turn_count(self) -> int:
        try:
            return (await self.read_payload()).turn_count
        except ExtractionMismatch:
            return 0
