"""
Diagnostic DOM dumps for failed waits.

Dumps are best-effort: a dump that itself fails is logged at debug level and
never masks the error being reported.
"""

from __future__ import annotations

import json
import logging

from .backends.protocol import BrowserBackend, evaluate_value
from .clock import Clock, SystemClock
from .constants import (
    CONVERSATION_TURN_SELECTOR,
    DEBUG_RECENT_TURNS,
    DEBUG_TURN_TEXT_CHARS,
    DEFAULT_EVAL_TIMEOUT_MS,
)
from .exceptions import InstrumentationError
from .logs import SessionLogger

logger = logging.getLogger(__name__)


def build_conversation_debug_expression(text_chars: int = DEBUG_TURN_TEXT_CHARS) -> str:
    selector = json.dumps(CONVERSATION_TURN_SELECTOR)
    return f"""
    (() => {{
        const turns = Array.from(document.querySelectorAll({selector}));
        return turns.map((node) => ({{
            role: node.getAttribute('data-message-author-role') || node.getAttribute('data-turn'),
            text: (node.innerText || '').slice(0, {int(text_chars)}),
            testid: node.getAttribute('data-testid'),
        }}));
    }})()
    """


async def log_conversation_snapshot(
    backend: BrowserBackend,
    session_logger: SessionLogger,
    *,
    clock: Clock | None = None,
    timeout_ms: float = DEFAULT_EVAL_TIMEOUT_MS,
) -> list[dict] | None:
    """Log the most recent conversation turns; returns what was logged."""
    value = await evaluate_value(
        backend,
        build_conversation_debug_expression(),
        clock=clock or SystemClock(),
        timeout_ms=timeout_ms,
        operation="conversation_debug",
    )
    if not isinstance(value, list):
        return None
    recent = value[-DEBUG_RECENT_TURNS:]
    session_logger.diagnostic(f"Conversation snapshot: {json.dumps(recent, ensure_ascii=False)}")
    return recent


async def log_dom_failure(
    backend: BrowserBackend,
    session_logger: SessionLogger,
    context: str,
    *,
    clock: Clock | None = None,
) -> None:
    """Dump recent turns for `context`; silent unless the logger is verbose."""
    if not session_logger.verbose:
        return
    session_logger.diagnostic(
        f"Browser automation failure ({context}); capturing DOM snapshot for debugging..."
    )
    try:
        await log_conversation_snapshot(backend, session_logger, clock=clock)
    except InstrumentationError as e:
        logger.debug(f"DOM snapshot for {context} failed: {e}")
