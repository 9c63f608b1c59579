"""
Markdown capture for a finished assistant reply.

Preferred path: click the turn's copy button with the page clipboard
intercepted and return what the app would have copied. When that fails, the
snapshot HTML is converted locally with markdownify.
"""

from __future__ import annotations

import json
import logging

from markdownify import markdownify

from .backends.protocol import BrowserBackend, evaluate_value
from .clock import Clock, SystemClock
from .constants import COPY_BUTTON_SELECTOR, DEFAULT_EVAL_TIMEOUT_MS
from .dom_debug import log_dom_failure
from .exceptions import InstrumentationError
from .logs import SessionLogger
from .models import Snapshot

logger = logging.getLogger(__name__)

COPY_TIMEOUT_MS = 5000

_COPY_TEMPLATE = r"""
(() => {
  const CFG = __CONFIG__;
  const lastIn = (node) => {
    if (!node) return null;
    const buttons = Array.from(node.querySelectorAll(CFG.button));
    return buttons.length ? buttons[buttons.length - 1] : null;
  };
  const locateButton = () => {
    if (CFG.messageId) {
      const found = lastIn(document.querySelector('[data-message-id="' + CSS.escape(CFG.messageId) + '"]'));
      if (found) return found;
    }
    if (CFG.turnId) {
      const found = lastIn(document.querySelector('[data-testid="' + CSS.escape(CFG.turnId) + '"]'));
      if (found) return found;
    }
    return lastIn(document);
  };
  const interceptClipboard = () => {
    const clipboard = navigator.clipboard;
    const state = { text: '' };
    if (!clipboard) return { state, restore: () => {} };
    const originalWriteText = clipboard.writeText;
    const originalWrite = clipboard.write;
    clipboard.writeText = (value) => {
      state.text = typeof value === 'string' ? value : '';
      return Promise.resolve();
    };
    clipboard.write = async (items) => {
      try {
        const list = Array.isArray(items) ? items : items ? [items] : [];
        for (const item of list) {
          const types = item && Array.isArray(item.types) ? item.types : [];
          if (types.includes('text/plain') && typeof item.getType === 'function') {
            const blob = await item.getType('text/plain');
            state.text = (await blob.text()) || '';
            break;
          }
        }
      } catch (e) {
        state.text = '';
      }
    };
    return {
      state,
      restore: () => {
        clipboard.writeText = originalWriteText;
        clipboard.write = originalWrite;
      },
    };
  };
  return new Promise((resolve) => {
    const button = locateButton();
    if (!button) {
      resolve({ success: false, status: 'missing-button' });
      return;
    }
    const interception = interceptClipboard();
    let settled = false;
    let pollId = null;
    let timeoutId = null;
    const read = () => {
      const markdown = interception.state.text || '';
      return { success: Boolean(markdown.trim()), markdown };
    };
    const onCopy = () => finish(read());
    const finish = (payload) => {
      if (settled) return;
      settled = true;
      clearInterval(pollId);
      clearTimeout(timeoutId);
      button.removeEventListener('copy', onCopy, true);
      interception.restore();
      resolve(payload);
    };
    button.addEventListener('copy', onCopy, true);
    button.scrollIntoView({ block: 'center', behavior: 'instant' });
    button.click();
    pollId = setInterval(() => {
      const payload = read();
      if (payload.success) finish(payload);
    }, 100);
    timeoutId = setTimeout(() => finish({ success: false, status: 'timeout' }), CFG.timeoutMs);
  });
})()
"""


def build_copy_expression(snapshot: Snapshot, timeout_ms: int = COPY_TIMEOUT_MS) -> str:
    config = {
        "button": COPY_BUTTON_SELECTOR,
        "messageId": snapshot.message_id,
        "turnId": snapshot.turn_id,
        "timeoutMs": int(timeout_ms),
    }
    return _COPY_TEMPLATE.replace("__CONFIG__", json.dumps(config))


def html_to_markdown(html: str | None) -> str | None:
    if not html or not html.strip():
        return None
    converted = markdownify(html, heading_style="ATX", bullets="-").strip()
    return converted or None


async def copy_markdown(
    backend: BrowserBackend,
    snapshot: Snapshot,
    *,
    clock: Clock | None = None,
    session_logger: SessionLogger | None = None,
    eval_timeout_ms: float = DEFAULT_EVAL_TIMEOUT_MS,
) -> str | None:
    """Copy-button capture only. Returns None when the app copied nothing."""
    clock = clock or SystemClock()
    session_logger = session_logger or SessionLogger()
    value = await evaluate_value(
        backend,
        build_copy_expression(snapshot),
        await_promise=True,
        clock=clock,
        timeout_ms=eval_timeout_ms + COPY_TIMEOUT_MS,
        operation="copy_markdown",
    )
    if isinstance(value, dict) and value.get("success") and isinstance(value.get("markdown"), str):
        return value["markdown"]

    status = value.get("status") if isinstance(value, dict) else None
    if status != "missing-button":
        if status:
            session_logger(f"Copy button fallback status: {status}")
        await log_dom_failure(backend, session_logger, "copy-markdown", clock=clock)
    return None


async def capture_assistant_markdown(
    backend: BrowserBackend,
    snapshot: Snapshot,
    *,
    clock: Clock | None = None,
    session_logger: SessionLogger | None = None,
    eval_timeout_ms: float = DEFAULT_EVAL_TIMEOUT_MS,
) -> str | None:
    """Copy-button markdown, falling back to converting the snapshot HTML."""
    try:
        copied = await copy_markdown(
            backend,
            snapshot,
            clock=clock,
            session_logger=session_logger,
            eval_timeout_ms=eval_timeout_ms,
        )
    except InstrumentationError as e:
        logger.warning(f"copy-button markdown capture failed: {e}")
        copied = None
    if copied is not None:
        return copied
    return html_to_markdown(snapshot.html)
