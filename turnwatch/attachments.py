"""
Attachment confirmation: proves an injected file registered with the composer.

Same convergence idea as the response race, applied to composer signals:

1. Capture a baseline of chip/input/count signals before touching anything.
2. Inject into ranked `<input type=file>` targets one at a time; after each,
   wait a bounded window for a signal *delta* against the baseline, then
   clear the target before trying the next.
3. If no DOM-injected target produced a delta, inject via a page-side
   `DataTransfer` as a last resort.
4. Once a delta appears, wait for the composite signal key to stop churning.

Name matching and chip signatures are computed here in Python from the raw
labels the page reports.

Example:
    confirmation = AttachmentConfirmation(backend)
    await confirmation.confirm("/tmp/report.txt")
    await wait_for_attachment_completion(backend, ["report.txt"])
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import mimetypes
import re
from dataclasses import dataclass, field
from pathlib import Path

from pydantic import ValidationError

from .backends.protocol import BrowserBackend, evaluate_value
from .clock import Clock, Deadline, SystemClock
from .constants import (
    ATTACHMENT_CHIP_SELECTORS,
    ATTACHMENT_MIN_STABLE_MS,
    ATTACHMENT_POLL_INTERVAL_MS,
    ATTACHMENT_STABLE_CYCLES,
    ATTACHMENT_TARGET_WINDOW_MS,
    ATTACHMENT_UPLOADING_STABLE_CYCLES,
    CONVERSATION_TURN_SELECTOR,
    DEFAULT_ATTACHMENT_TIMEOUT_MS,
    DEFAULT_EVAL_TIMEOUT_MS,
    MAX_DATA_TRANSFER_BYTES,
    SEND_BUTTON_SELECTORS,
    UPLOAD_STATUS_SELECTORS,
    UPLOAD_TARGET_ATTRIBUTE,
    USER_ROLE_SELECTOR,
)
from .dom_debug import log_dom_failure
from .exceptions import AttachmentError, ConvergenceTimeout, ExtractionMismatch, InstrumentationError
from .logs import SessionLogger
from .models import (
    AttachmentSignals,
    ComposerReadiness,
    ComposerReading,
    FileInputCandidate,
    UserTurnReading,
)

logger = logging.getLogger(__name__)

ELLIPSIS_RE = re.compile(r"…|\.\.\.")
MIN_PREFIX_CHARS = 3
IMAGE_SUFFIXES = {".png", ".jpg", ".jpeg", ".gif", ".webp", ".bmp", ".heic", ".svg", ".tif", ".tiff"}


@dataclass
class AttachmentOptions:
    timeout_ms: float = DEFAULT_ATTACHMENT_TIMEOUT_MS
    per_target_window_ms: float = ATTACHMENT_TARGET_WINDOW_MS
    poll_interval_ms: float = ATTACHMENT_POLL_INTERVAL_MS
    stable_cycles: int = ATTACHMENT_STABLE_CYCLES
    min_stable_ms: float = ATTACHMENT_MIN_STABLE_MS
    uploading_stable_cycles: int = ATTACHMENT_UPLOADING_STABLE_CYCLES
    data_transfer_fallback: bool = True
    max_data_transfer_bytes: int = MAX_DATA_TRANSFER_BYTES
    eval_timeout_ms: float = DEFAULT_EVAL_TIMEOUT_MS


# ---------------------------------------------------------------------------
# Name matching and ranking (pure)
# ---------------------------------------------------------------------------


def _stem(name: str) -> str:
    suffix = Path(name).suffix
    return name[: -len(suffix)] if suffix and len(suffix) < len(name) else name


def matches_expected_name(label: str | None, expected: str) -> bool:
    """
    Fuzzy match of a UI label against the expected file name.

    - exact: the label contains the full name
    - prefix: label and name share a stem prefix, extension ignored
    - ellipsis: for "head…tail" labels, the name starts with head and ends with tail
    """
    if not label:
        return False
    text = " ".join(label.strip().lower().split())
    name = expected.strip().lower()
    if not text or not name:
        return False
    if name in text:
        return True

    parts = ELLIPSIS_RE.split(text, maxsplit=1)
    if len(parts) == 2:
        head, tail = parts[0].strip(), parts[1].strip()
        if not head and not tail:
            return False
        if len(head) + len(tail) > len(name):
            return False
        return name.startswith(head) and name.endswith(tail)

    name_stem, label_stem = _stem(name), _stem(text)
    if len(label_stem) >= MIN_PREFIX_CHARS and name_stem.startswith(label_stem):
        return True
    return len(name_stem) >= MIN_PREFIX_CHARS and label_stem.startswith(name_stem)


def is_image_file(file_name: str) -> bool:
    guessed, _ = mimetypes.guess_type(file_name)
    if guessed:
        return guessed.startswith("image/")
    return Path(file_name).suffix.lower() in IMAGE_SUFFIXES


def accepts_images(candidate: FileInputCandidate) -> bool:
    accept = (candidate.accept or "").strip().lower()
    if not accept:
        return True
    parts = [p.strip() for p in accept.split(",") if p.strip()]
    return any(p.startswith("image/") or p == "*/*" or p in IMAGE_SUFFIXES for p in parts)


def rank_file_inputs(candidates: list[FileInputCandidate], file_name: str) -> list[FileInputCandidate]:
    """
    Order injection targets for `file_name`.

    Non-image files never go to image-only inputs. Multi-file inputs come
    before single-file ones; image files prefer inputs that accept images.
    Later inputs in document order win ties.
    """
    image = is_image_file(file_name)
    usable = [c for c in candidates if image or not c.image_only]

    def key(c: FileInputCandidate) -> tuple:
        image_pref = 0 if (not image or accepts_images(c)) else 1
        return (image_pref, 0 if c.multiple else 1, -c.index)

    return sorted(usable, key=key)


def chip_signature(labels: list[str]) -> str:
    normalized = sorted(" ".join(label.lower().split()) for label in labels if label.strip())
    if not normalized:
        return ""
    return hashlib.sha256("\n".join(normalized).encode("utf-8")).hexdigest()[:16]


def build_signals(reading: ComposerReading, file_name: str) -> AttachmentSignals:
    return AttachmentSignals(
        ui_match=any(matches_expected_name(label, file_name) for label in reading.chip_labels),
        input_match=any(matches_expected_name(n, file_name) for n in reading.input_names),
        chip_count=reading.chip_count,
        input_count=reading.input_count,
        file_count=reading.file_count,
        uploading=reading.uploading,
        chip_signature=chip_signature(reading.chip_labels),
        chip_labels=list(reading.chip_labels),
        input_names=list(reading.input_names),
    )


def has_delta(baseline: AttachmentSignals, current: AttachmentSignals, expected_count: int = 1) -> bool:
    """
    True if `current` shows the attachment registered relative to `baseline`:
    a new/changed chip, a newly matching input file, or a composer count that
    grew to at least `expected_count`.
    """
    if current.chip_count > baseline.chip_count:
        return True
    if current.ui_match and (
        not baseline.ui_match or current.chip_signature != baseline.chip_signature
    ):
        return True
    if current.input_match and not baseline.input_match:
        return True
    return current.file_count > baseline.file_count and current.file_count >= expected_count


# ---------------------------------------------------------------------------
# Page-side scripts
# ---------------------------------------------------------------------------

_COMPOSER_READING_TEMPLATE = r"""
(() => {
  const CFG = __CONFIG__;
  const seen = new Set();
  const chipLabels = [];
  const addLabel = (node, text) => {
    if (seen.has(node)) return;
    seen.add(node);
    const label = (text || '').trim();
    if (label) chipLabels.push(label);
  };
  for (const selector of CFG.chips) {
    for (const node of Array.from(document.querySelectorAll(selector))) {
      if (node.closest('[data-message-author-role]')) continue;
      if (node.matches('input[type="file"]')) continue;
      const label = node.textContent || node.getAttribute('aria-label') || node.getAttribute('title') || '';
      addLabel(node, label);
    }
  }
  for (const btn of Array.from(document.querySelectorAll('[aria-label="Remove file"]'))) {
    const card = btn.parentElement && btn.parentElement.parentElement;
    if (card) addLabel(card, card.innerText || '');
  }
  const inputNames = [];
  let inputCount = 0;
  for (const input of Array.from(document.querySelectorAll('input[type="file"]'))) {
    const files = Array.from(input.files || []);
    inputCount += files.length;
    for (const file of files) if (file && file.name) inputNames.push(file.name);
  }
  let fileCount = 0;
  for (const node of Array.from(document.querySelectorAll('button, div, span'))) {
    if (node.children.length > 2) continue;
    const match = /(\d+)\s+files?\b/i.exec((node.textContent || '').trim());
    if (match) fileCount = Math.max(fileCount, parseInt(match[1], 10));
  }
  const uploading = CFG.uploadStatus.some((selector) =>
    Array.from(document.querySelectorAll(selector)).some((node) => {
      const busy = node.getAttribute('aria-busy');
      const state = node.getAttribute('data-state');
      if (busy === 'true' || state === 'loading' || state === 'uploading' || state === 'pending') return true;
      const text = (node.textContent || '').toLowerCase();
      return text.includes('uploading') || text.includes('processing');
    }),
  );
  let sendButton = null;
  for (const selector of CFG.send) {
    sendButton = document.querySelector(selector);
    if (sendButton) break;
  }
  const disabled = sendButton
    ? sendButton.hasAttribute('disabled') ||
      sendButton.getAttribute('aria-disabled') === 'true' ||
      sendButton.getAttribute('data-disabled') === 'true' ||
      window.getComputedStyle(sendButton).pointerEvents === 'none'
    : null;
  return {
    chipLabels,
    inputNames,
    chipCount: chipLabels.length,
    inputCount,
    fileCount,
    uploading,
    state: sendButton ? (disabled ? 'disabled' : 'ready') : 'missing',
  };
})()
"""

_TAG_INPUTS_TEMPLATE = r"""
(() => {
  const ATTR = __ATTR__;
  const inputs = Array.from(document.querySelectorAll('input[type="file"]'));
  const imageOnly = (accept) => {
    const parts = String(accept || '').split(',').map((p) => p.trim().toLowerCase()).filter(Boolean);
    return parts.length > 0 && parts.every((p) => p.startsWith('image/'));
  };
  return inputs.map((el, index) => {
    el.setAttribute(ATTR, String(index));
    return {
      index,
      multiple: Boolean(el.multiple),
      accept: el.getAttribute('accept'),
      imageOnly: imageOnly(el.getAttribute('accept')),
      fileCount: (el.files || []).length,
    };
  });
})()
"""

_DISPATCH_TEMPLATE = r"""
(() => {
  const el = document.querySelector(__SELECTOR__);
  if (!(el instanceof HTMLInputElement)) return false;
  el.dispatchEvent(new Event('input', { bubbles: true }));
  el.dispatchEvent(new Event('change', { bubbles: true }));
  return true;
})()
"""

_DATA_TRANSFER_TEMPLATE = r"""
(() => {
  const CFG = __CONFIG__;
  const el = document.querySelector(CFG.selector);
  if (!(el instanceof HTMLInputElement)) return false;
  const raw = atob(CFG.data);
  const bytes = new Uint8Array(raw.length);
  for (let i = 0; i < raw.length; i += 1) bytes[i] = raw.charCodeAt(i);
  const file = new File([bytes], CFG.name, { type: CFG.mime });
  const transfer = new DataTransfer();
  transfer.items.add(file);
  el.files = transfer.files;
  el.dispatchEvent(new Event('input', { bubbles: true }));
  el.dispatchEvent(new Event('change', { bubbles: true }));
  return true;
})()
"""

_USER_TURN_TEMPLATE = r"""
(() => {
  const CFG = __CONFIG__;
  const turns = Array.from(document.querySelectorAll(CFG.turns));
  const userTurns = turns.filter((node) => node.matches(CFG.user) || node.querySelector(CFG.user));
  const last = userTurns[userTurns.length - 1];
  if (!last) return { ok: false };
  const labels = [];
  let attachmentUiCount = 0;
  for (const node of Array.from(last.querySelectorAll('*'))) {
    const testid = (node.getAttribute('data-testid') || '').toLowerCase();
    const isAttachment = testid.includes('attachment') || testid.includes('file') ||
      node.tagName === 'IMG' || Boolean(node.getAttribute('download'));
    if (isAttachment) attachmentUiCount += 1;
    for (const attr of ['aria-label', 'title', 'alt']) {
      const value = node.getAttribute(attr);
      if (value) labels.push(value);
    }
    if (isAttachment && node.textContent) labels.push(node.textContent.trim());
  }
  return {
    ok: true,
    text: last.innerText || '',
    labels,
    hasAttachmentUi: attachmentUiCount > 0,
    attachmentUiCount,
  };
})()
"""


def target_selector(index: int) -> str:
    return f'input[type="file"][{UPLOAD_TARGET_ATTRIBUTE}="{index}"]'


def build_composer_reading_script() -> str:
    config = {
        "chips": list(ATTACHMENT_CHIP_SELECTORS),
        "uploadStatus": list(UPLOAD_STATUS_SELECTORS),
        "send": list(SEND_BUTTON_SELECTORS),
    }
    return _COMPOSER_READING_TEMPLATE.replace("__CONFIG__", json.dumps(config))


def build_tag_inputs_script() -> str:
    return _TAG_INPUTS_TEMPLATE.replace("__ATTR__", json.dumps(UPLOAD_TARGET_ATTRIBUTE))


def build_dispatch_script(index: int) -> str:
    return _DISPATCH_TEMPLATE.replace("__SELECTOR__", json.dumps(target_selector(index)))


def build_data_transfer_script(index: int, file_name: str, data: bytes, mime: str) -> str:
    config = {
        "selector": target_selector(index),
        "name": file_name,
        "mime": mime,
        "data": base64.b64encode(data).decode("ascii"),
    }
    return _DATA_TRANSFER_TEMPLATE.replace("__CONFIG__", json.dumps(config))


def build_user_turn_script() -> str:
    config = {"turns": CONVERSATION_TURN_SELECTOR, "user": USER_ROLE_SELECTOR}
    return _USER_TURN_TEMPLATE.replace("__CONFIG__", json.dumps(config))


# ---------------------------------------------------------------------------
# Page readers
# ---------------------------------------------------------------------------


class _PageReader:
    def __init__(
        self,
        backend: BrowserBackend,
        *,
        clock: Clock | None = None,
        session_logger: SessionLogger | None = None,
        options: AttachmentOptions | None = None,
    ) -> None:
        self.backend = backend
        self.clock = clock or SystemClock()
        self.session_logger = session_logger or SessionLogger()
        self.options = options or AttachmentOptions()

    async def _eval(self, expression: str, operation: str):
        return await evaluate_value(
            self.backend,
            expression,
            clock=self.clock,
            timeout_ms=self.options.eval_timeout_ms,
            operation=operation,
        )

    async def read_composer(self) -> ComposerReading:
        value = await self._eval(build_composer_reading_script(), "read_composer")
        if not isinstance(value, dict):
            raise ExtractionMismatch.from_payload(value, "expected composer object")
        try:
            return ComposerReading.model_validate(value)
        except ValidationError as e:
            raise ExtractionMismatch.from_payload(value, str(e)) from e

    async def read_signals(self, file_name: str) -> AttachmentSignals:
        return build_signals(await self.read_composer(), file_name)

    async def read_readiness(self) -> ComposerReadiness:
        value = await self._eval(build_composer_reading_script(), "read_readiness")
        if not isinstance(value, dict):
            raise ExtractionMismatch.from_payload(value, "expected composer object")
        try:
            return ComposerReadiness.model_validate(value)
        except ValidationError as e:
            raise ExtractionMismatch.from_payload(value, str(e)) from e


@dataclass
class _DeltaWait:
    signals: AttachmentSignals | None = None
    uploading_latched: bool = False
    last: AttachmentSignals | None = None


@dataclass
class AttachmentAttempt:
    """What happened during one `confirm` call (for logging and tests)."""

    file_name: str
    baseline: AttachmentSignals | None = None
    attempted_targets: list[int] = field(default_factory=list)
    cleared_targets: list[int] = field(default_factory=list)
    used_data_transfer: bool = False
    short_circuit: bool = False
    final: AttachmentSignals | None = None


class AttachmentConfirmation(_PageReader):
    """Injects one file and confirms the composer registered it."""

    last_attempt: AttachmentAttempt | None = None

    async def _safe_signals(self, file_name: str) -> AttachmentSignals | None:
        try:
            return await self.read_signals(file_name)
        except (InstrumentationError, ExtractionMismatch) as e:
            logger.debug(f"attachment signal read failed: {e}")
            return None

    async def _await_delta(
        self,
        baseline: AttachmentSignals,
        file_name: str,
        expected_count: int,
        deadline: Deadline,
    ) -> _DeltaWait:
        outcome = _DeltaWait()
        while True:
            current = await self._safe_signals(file_name)
            if current is not None:
                outcome.last = current
                if has_delta(baseline, current, expected_count):
                    outcome.signals = current
                    return outcome
                if current.uploading and not baseline.uploading:
                    outcome.uploading_latched = True
            if deadline.expired:
                return outcome
            await self.clock.wait(min(self.options.poll_interval_ms, deadline.remaining_ms()))

    async def _await_stable(
        self,
        baseline: AttachmentSignals,
        first: AttachmentSignals,
        attempt: AttachmentAttempt,
        expected_count: int,
        deadline: Deadline,
    ) -> AttachmentSignals:
        """Wait for the composite signal key to stop churning after a delta."""
        opts = self.options
        file_name = attempt.file_name
        current = first
        key = first.composite_key()
        stable = 0
        since = self.clock.now()
        while not deadline.expired:
            await self.clock.wait(min(opts.poll_interval_ms, deadline.remaining_ms()))
            reading = await self._safe_signals(file_name)
            if reading is None:
                continue
            current = reading
            now = self.clock.now()
            if not has_delta(baseline, current, expected_count) or current.composite_key() != key:
                key = current.composite_key()
                stable = 0
                since = now
                continue
            stable += 1
            if not current.uploading and stable >= opts.stable_cycles and now - since >= opts.min_stable_ms:
                return current
        if has_delta(baseline, current, expected_count):
            logger.warning(f"attachment {file_name!r} registered but signals still churning at deadline")
            return current
        logger.warning(f"attachment {file_name!r} signals vanished before settling")
        raise await self._fail(attempt)

    async def _inject(self, candidate: FileInputCandidate, path: Path) -> bool:
        node_id = await self.backend.query_dom(target_selector(candidate.index))
        if node_id is None:
            logger.debug(f"attachment target {candidate.index} vanished before injection")
            return False
        await self.backend.set_file_input_files(node_id, [str(path)])
        await self._eval(build_dispatch_script(candidate.index), "dispatch_file_events")
        return True

    async def _clear(self, candidate: FileInputCandidate) -> None:
        node_id = await self.backend.query_dom(target_selector(candidate.index))
        if node_id is None:
            return
        await self.backend.set_file_input_files(node_id, [])
        await self._eval(build_dispatch_script(candidate.index), "dispatch_file_events")

    async def _inject_data_transfer(self, candidate: FileInputCandidate, path: Path) -> bool:
        size = path.stat().st_size
        if size > self.options.max_data_transfer_bytes:
            logger.warning(
                f"skipping DataTransfer fallback for {path.name}: {size} bytes exceeds limit"
            )
            return False
        mime = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        script = build_data_transfer_script(candidate.index, path.name, path.read_bytes(), mime)
        return bool(await self._eval(script, "inject_data_transfer"))

    async def list_targets(self) -> list[FileInputCandidate]:
        value = await self._eval(build_tag_inputs_script(), "tag_file_inputs")
        if not isinstance(value, list):
            raise ExtractionMismatch.from_payload(value, "expected a list of file inputs")
        try:
            return [FileInputCandidate.model_validate(item) for item in value]
        except ValidationError as e:
            raise ExtractionMismatch.from_payload(value, str(e)) from e

    async def _fail(self, attempt: AttachmentAttempt) -> ConvergenceTimeout:
        self.session_logger(f"Attachment did not register with the composer: {attempt.file_name}")
        await log_dom_failure(
            self.backend, self.session_logger, "attachment-not-registered", clock=self.clock
        )
        return ConvergenceTimeout.attachment_not_registered(
            file_name=attempt.file_name,
            timeout_ms=self.options.timeout_ms,
            attempted_targets=attempt.attempted_targets,
        )

    async def confirm(self, file_path: str | Path, expected_count: int = 1) -> bool:
        """
        Inject `file_path` and return True once the composer registered it.

        Raises ConvergenceTimeout("attachment-not-registered") when every
        target and the fallback are exhausted, AttachmentError when the file
        is missing or the page has no file input at all.
        """
        path = Path(file_path)
        if not path.is_file():
            raise AttachmentError(f"Attachment not found: {path}", reason_code="file-missing")
        file_name = path.name
        opts = self.options
        deadline = Deadline.after(self.clock, opts.timeout_ms)
        attempt = AttachmentAttempt(file_name=file_name)
        self.last_attempt = attempt

        baseline = await self.read_signals(file_name)
        attempt.baseline = baseline
        if baseline.input_match or baseline.file_count >= expected_count:
            attempt.short_circuit = True
            attempt.final = baseline
            self.session_logger(f"Attachment already present: {file_name}")
            return True

        candidates = rank_file_inputs(await self.list_targets(), file_name)
        if not candidates:
            await log_dom_failure(
                self.backend, self.session_logger, "file-input-missing", clock=self.clock
            )
            raise AttachmentError(
                "Unable to locate a file input for the attachment", reason_code="file-input-missing"
            )

        latched = False
        for candidate in candidates:
            if deadline.expired:
                break
            try:
                injected = await self._inject(candidate, path)
            except InstrumentationError as e:
                attempt.attempted_targets.append(candidate.index)
                logger.warning(f"attachment injection into input #{candidate.index} failed: {e}")
                continue
            if not injected:
                continue
            attempt.attempted_targets.append(candidate.index)
            logger.info(f"attachment {file_name!r} injected into input #{candidate.index}")

            waited = await self._await_delta(
                baseline, file_name, expected_count, deadline.child(opts.per_target_window_ms)
            )
            if waited.signals is None and waited.uploading_latched:
                latched = True
                logger.info("attachment upload in progress; not trying other inputs")
                waited = await self._await_delta(baseline, file_name, expected_count, deadline)
            if waited.signals is not None:
                attempt.final = await self._await_stable(
                    baseline, waited.signals, attempt, expected_count, deadline
                )
                self.session_logger(f"Attachment queued (file input #{candidate.index})")
                return True
            if latched:
                break
            try:
                await self._clear(candidate)
            except InstrumentationError as e:
                logger.warning(f"clearing attachment input #{candidate.index} failed: {e}")
                continue
            attempt.cleared_targets.append(candidate.index)

        if opts.data_transfer_fallback and not latched and not deadline.expired:
            target = candidates[0]
            try:
                injected = await self._inject_data_transfer(target, path)
            except InstrumentationError as e:
                logger.warning(f"DataTransfer injection for {file_name!r} failed: {e}")
                injected = False
            if injected:
                attempt.used_data_transfer = True
                logger.info(f"attachment {file_name!r} injected via DataTransfer")
                waited = await self._await_delta(baseline, file_name, expected_count, deadline)
                if waited.signals is not None:
                    attempt.final = await self._await_stable(
                        baseline, waited.signals, attempt, expected_count, deadline
                    )
                    self.session_logger("Attachment queued (DataTransfer)")
                    return True

        raise await self._fail(attempt)


async def confirm_attachment(
    backend: BrowserBackend,
    file_path: str | Path,
    expected_count: int = 1,
    *,
    options: AttachmentOptions | None = None,
    clock: Clock | None = None,
    session_logger: SessionLogger | None = None,
) -> bool:
    confirmation = AttachmentConfirmation(
        backend, clock=clock, session_logger=session_logger, options=options
    )
    return await confirmation.confirm(file_path, expected_count)


async def wait_for_attachment_completion(
    backend: BrowserBackend,
    expected_names: list[str],
    *,
    options: AttachmentOptions | None = None,
    clock: Clock | None = None,
    session_logger: SessionLogger | None = None,
) -> None:
    """
    Wait until the composer is ready to send with every expected file attached.

    Resolves when uploads are idle, every name is matched by a chip or input,
    and the send button is ready (or absent while files are attached). An
    input-name match that holds for `uploading_stable_cycles` samples also
    resolves, for UIs whose progress indicator never clears.
    """
    reader = _PageReader(backend, clock=clock, session_logger=session_logger, options=options)
    opts = reader.options
    deadline = Deadline.after(reader.clock, opts.timeout_ms)
    input_matched_cycles = 0
    missing: list[str] = list(expected_names)
    state: str | None = None

    while True:
        try:
            readiness = await reader.read_readiness()
        except (InstrumentationError, ExtractionMismatch) as e:
            logger.debug(f"composer readiness read failed: {e}")
            readiness = None
        if readiness is not None:
            state = readiness.state
            labels = readiness.chip_labels + readiness.input_names
            missing = [
                name
                for name in expected_names
                if not any(matches_expected_name(label, name) for label in labels)
            ]
            if not readiness.uploading and not missing:
                if readiness.state == "ready" or (readiness.state == "missing" and labels):
                    return
            inputs_cover = bool(expected_names) and all(
                any(matches_expected_name(n, name) for n in readiness.input_names)
                for name in expected_names
            )
            input_matched_cycles = input_matched_cycles + 1 if inputs_cover else 0
            if input_matched_cycles >= opts.uploading_stable_cycles:
                logger.info("attachment inputs stable; treating upload as complete")
                return
        if deadline.expired:
            break
        await reader.clock.wait(min(opts.poll_interval_ms, deadline.remaining_ms()))

    reader.session_logger(
        "Attachment upload timed out while waiting for the composer to become ready."
    )
    await log_dom_failure(backend, reader.session_logger, "file-upload-timeout", clock=reader.clock)
    raise ConvergenceTimeout.attachment_upload(
        missing=missing, timeout_ms=opts.timeout_ms, state=state
    )


async def wait_for_user_turn_attachments(
    backend: BrowserBackend,
    expected_names: list[str],
    *,
    options: AttachmentOptions | None = None,
    clock: Clock | None = None,
    session_logger: SessionLogger | None = None,
) -> bool:
    """
    Check the last sent user turn shows the expected attachments.

    Returns False if the turn never shows any attachment UI (the app renders
    none for this kind of file). Raises ConvergenceTimeout when attachment UI
    exists but the names never appear.
    """
    reader = _PageReader(backend, clock=clock, session_logger=session_logger, options=options)
    opts = reader.options
    deadline = Deadline.after(reader.clock, opts.timeout_ms)
    saw_attachment_ui = False
    missing = list(expected_names)

    while True:
        try:
            value = await reader._eval(build_user_turn_script(), "read_user_turn")
            reading = UserTurnReading.model_validate(value) if isinstance(value, dict) else None
        except (InstrumentationError, ValidationError) as e:
            logger.debug(f"user turn read failed: {e}")
            reading = None
        if reading is not None and reading.ok:
            saw_attachment_ui = saw_attachment_ui or reading.has_attachment_ui
            haystack = reading.labels + [reading.text]
            missing = [
                name
                for name in expected_names
                if not any(matches_expected_name(label, name) for label in haystack)
            ]
            if not missing:
                return True
            if reading.attachment_ui_count >= len(expected_names) > 0:
                return True
        if deadline.expired:
            break
        await reader.clock.wait(min(opts.poll_interval_ms, deadline.remaining_ms()))

    if not saw_attachment_ui:
        logger.info("sent user turn shows no attachment UI; skipping name verification")
        return False
    await log_dom_failure(backend, reader.session_logger, "user-turn-attachments", clock=reader.clock)
    raise ConvergenceTimeout.user_turn_attachments(missing=missing, timeout_ms=opts.timeout_ms)
