from __future__ import annotations

import re

import pytest

from turnwatch.attachments import (
    AttachmentConfirmation,
    AttachmentOptions,
    build_signals,
    chip_signature,
    has_delta,
    matches_expected_name,
    rank_file_inputs,
    wait_for_attachment_completion,
    wait_for_user_turn_attachments,
)
from turnwatch.clock import VirtualClock
from turnwatch.constants import (
    ATTACHMENT_NOT_REGISTERED,
    ATTACHMENT_UPLOAD_TIMEOUT,
    USER_TURN_ATTACHMENT_TIMEOUT,
)
from turnwatch.exceptions import AttachmentError, ConvergenceTimeout, InstrumentationError
from turnwatch.logs import SessionLogger
from turnwatch.models import AttachmentSignals, ComposerReading, FileInputCandidate

_INDEX_RE = re.compile(r'="(\d+)"')


class _ComposerBackend:
    """
    A fake composer page.

    File inputs listed in `accepting` register a chip as soon as a file is
    set on them. `on_set` can replace that behaviour, and `schedule` queues
    page changes at virtual times.
    """

    def __init__(
        self,
        clock: VirtualClock,
        inputs: list[dict],
        *,
        accepting: set[int] = frozenset(),
        data_transfer_result: bool = False,
        data_transfer_registers: bool = False,
        file_count: int = 0,
        state: str = "ready",
        uploading: bool = False,
        user_turn: dict | None = None,
    ) -> None:
        self.clock = clock
        self.inputs = inputs
        self.accepting = set(accepting)
        self.data_transfer_result = data_transfer_result
        self.data_transfer_registers = data_transfer_registers
        self.chip_labels: list[str] = []
        self.input_names: list[str] = []
        self.file_count = file_count
        self.state = state
        self.uploading = uploading
        self.user_turn = user_turn
        self.set_calls: list[tuple[int, list[str]]] = []
        self.data_transfer_calls = 0
        self.dumps = 0
        self.on_set = None
        self._scheduled: list[tuple[float, object]] = []

    def schedule(self, at_ms: float, fn) -> None:
        self._scheduled.append((at_ms, fn))

    def register(self, name: str) -> None:
        self.chip_labels.append(name)
        self.input_names.append(name)

    def _apply_due(self) -> None:
        now = self.clock.now()
        due = [item for item in self._scheduled if item[0] <= now]
        self._scheduled = [item for item in self._scheduled if item[0] > now]
        for _, fn in due:
            fn()

    def _composer(self) -> dict:
        return {
            "chipLabels": list(self.chip_labels),
            "inputNames": list(self.input_names),
            "chipCount": len(self.chip_labels),
            "inputCount": len(self.input_names),
            "fileCount": self.file_count,
            "uploading": self.uploading,
            "state": self.state,
        }

    async def evaluate(self, expression, *, return_by_value=True, await_promise=False):
        self._apply_due()
        if "hasAttachmentUi" in expression:
            value = self.user_turn
        elif "new DataTransfer()" in expression:
            self.data_transfer_calls += 1
            if self.data_transfer_registers:
                self.register(re.search(r'"name": "([^"]+)"', expression).group(1))
            value = self.data_transfer_result or self.data_transfer_registers
        elif "chipLabels" in expression:
            value = self._composer()
        elif "setAttribute(ATTR" in expression:
            value = list(self.inputs)
        elif "el.dispatchEvent" in expression:
            value = True
        else:
            self.dumps += 1
            value = []
        return {"result": {"value": value}}

    async def query_dom(self, selector):
        match = _INDEX_RE.search(selector)
        return 100 + int(match.group(1)) if match else None

    async def set_file_input_files(self, node_id, paths):
        self.set_calls.append((node_id, list(paths)))
        index = node_id - 100
        if self.on_set is not None:
            self.on_set(index, paths)
        elif paths and index in self.accepting:
            for p in paths:
                self.register(p.rsplit("/", 1)[-1])


def _signals(**kwargs) -> AttachmentSignals:
    return AttachmentSignals(**kwargs)


def _candidate(index, **kwargs) -> FileInputCandidate:
    return FileInputCandidate(index=index, **kwargs)


@pytest.fixture
def notes(tmp_path):
    path = tmp_path / "notes.txt"
    path.write_text("meeting notes\n", encoding="utf-8")
    return path


@pytest.mark.parametrize(
    "label,expected,result",
    [
        ("notes.txt", "notes.txt", True),
        ("Notes.TXT  Document", "notes.txt", True),
        ("quarterly_rep…2024.pdf", "quarterly_report_2024.pdf", True),
        ("quarterly_rep...2023.pdf", "quarterly_report_2024.pdf", False),
        ("quarterly", "quarterly_report_2024.pdf", True),
        ("notes", "notes.txt", True),
        ("no", "notes.txt", False),
        ("image.png", "notes.txt", False),
        (None, "notes.txt", False),
        ("   ", "notes.txt", False),
    ],
)
def test_matches_expected_name(label, expected, result) -> None:
    assert matches_expected_name(label, expected) is result


def test_chip_signature_is_order_and_case_insensitive() -> None:
    assert chip_signature(["B.txt", "a.txt"]) == chip_signature(["a.TXT", "  b.txt "])
    assert chip_signature(["a.txt"]) != chip_signature(["a.txt", "b.txt"])
    assert chip_signature([]) == ""
    assert len(chip_signature(["a.txt"])) == 16


def test_build_signals_matches_names() -> None:
    reading = ComposerReading(chipLabels=["notes.txt"], inputNames=[], chipCount=1, inputCount=0)
    signals = build_signals(reading, "notes.txt")
    assert signals.ui_match is True
    assert signals.input_match is False
    assert signals.chip_signature == chip_signature(["notes.txt"])


def test_has_delta() -> None:
    empty = _signals()
    assert has_delta(empty, _signals(chip_count=1)) is True
    assert has_delta(empty, _signals(ui_match=True, chip_signature="abc")) is True
    assert has_delta(
        _signals(ui_match=True, chip_signature="abc", chip_count=1),
        _signals(ui_match=True, chip_signature="def", chip_count=1),
    ) is True
    assert has_delta(empty, _signals(input_match=True)) is True
    assert has_delta(empty, _signals(file_count=2), expected_count=2) is True
    assert has_delta(empty, _signals(file_count=1), expected_count=2) is False
    assert has_delta(_signals(chip_count=1, ui_match=True), _signals(chip_count=1, ui_match=True)) is False


def test_rank_excludes_image_only_inputs_for_other_files() -> None:
    candidates = [
        _candidate(0, imageOnly=True, accept="image/*"),
        _candidate(1),
        _candidate(2, multiple=True),
        _candidate(3, multiple=True),
    ]
    assert [c.index for c in rank_file_inputs(candidates, "notes.txt")] == [3, 2, 1]


def test_rank_prefers_image_accepting_inputs_for_images() -> None:
    candidates = [
        _candidate(0, imageOnly=True, accept="image/*"),
        _candidate(1, multiple=True, accept=".pdf"),
        _candidate(2),
    ]
    assert [c.index for c in rank_file_inputs(candidates, "photo.png")] == [2, 0, 1]


@pytest.mark.asyncio
async def test_confirm_skips_image_only_input_for_text_file(notes) -> None:
    clock = VirtualClock()
    backend = _ComposerBackend(
        clock,
        [{"index": 0, "imageOnly": True, "accept": "image/*"}, {"index": 1}],
        accepting={1},
    )
    confirmation = AttachmentConfirmation(backend, clock=clock)

    assert await clock.run(confirmation.confirm(notes)) is True

    assert backend.set_calls == [(101, [str(notes)])]
    attempt = confirmation.last_attempt
    assert attempt.attempted_targets == [1]
    assert attempt.final.ui_match is True
    assert attempt.used_data_transfer is False


@pytest.mark.asyncio
async def test_confirm_rotates_targets_and_clears_failed_ones(notes) -> None:
    clock = VirtualClock()
    backend = _ComposerBackend(
        clock, [{"index": 0, "multiple": True}, {"index": 1}], accepting={1}
    )
    confirmation = AttachmentConfirmation(
        backend, clock=clock, options=AttachmentOptions(per_target_window_ms=1000)
    )

    assert await clock.run(confirmation.confirm(notes)) is True

    assert backend.set_calls == [(100, [str(notes)]), (100, []), (101, [str(notes)])]
    assert confirmation.last_attempt.attempted_targets == [0, 1]
    assert confirmation.last_attempt.cleared_targets == [0]


@pytest.mark.asyncio
async def test_confirm_falls_back_to_data_transfer(notes) -> None:
    clock = VirtualClock()
    backend = _ComposerBackend(clock, [{"index": 0}], data_transfer_registers=True)
    seen: list[str] = []
    confirmation = AttachmentConfirmation(
        backend,
        clock=clock,
        session_logger=SessionLogger(echo=seen.append),
        options=AttachmentOptions(per_target_window_ms=1000),
    )

    assert await clock.run(confirmation.confirm(notes)) is True

    assert backend.data_transfer_calls == 1
    assert confirmation.last_attempt.used_data_transfer is True
    assert "Attachment queued (DataTransfer)" in seen


@pytest.mark.asyncio
async def test_confirm_raises_when_nothing_registers(notes) -> None:
    clock = VirtualClock()
    backend = _ComposerBackend(
        clock, [{"index": 0, "multiple": True}, {"index": 1}], data_transfer_result=True
    )
    confirmation = AttachmentConfirmation(
        backend,
        clock=clock,
        session_logger=SessionLogger(verbose=True),
        options=AttachmentOptions(timeout_ms=4000, per_target_window_ms=1000),
    )

    with pytest.raises(ConvergenceTimeout) as exc_info:
        await clock.run(confirmation.confirm(notes))

    err = exc_info.value
    assert err.stage == ATTACHMENT_NOT_REGISTERED
    assert err.details["attempted_targets"] == [0, 1]
    assert confirmation.last_attempt.used_data_transfer is True
    assert confirmation.last_attempt.cleared_targets == [0, 1]
    assert backend.dumps == 1
    assert clock.now() == 4000


@pytest.mark.asyncio
async def test_confirm_short_circuits_when_already_attached(notes) -> None:
    clock = VirtualClock()
    backend = _ComposerBackend(clock, [{"index": 0}], file_count=1)
    confirmation = AttachmentConfirmation(backend, clock=clock)

    assert await clock.run(confirmation.confirm(notes)) is True
    assert backend.set_calls == []
    assert confirmation.last_attempt.short_circuit is True


@pytest.mark.asyncio
async def test_unrelated_file_in_input_does_not_short_circuit(notes) -> None:
    clock = VirtualClock()
    backend = _ComposerBackend(clock, [{"index": 0}], accepting={0})
    backend.input_names.append("old_report.pdf")
    confirmation = AttachmentConfirmation(backend, clock=clock)

    assert await clock.run(confirmation.confirm(notes)) is True

    assert backend.set_calls == [(100, [str(notes)])]
    assert confirmation.last_attempt.short_circuit is False
    assert confirmation.last_attempt.final.input_match is True


@pytest.mark.asyncio
async def test_confirm_short_circuits_when_input_already_holds_file(notes) -> None:
    clock = VirtualClock()
    backend = _ComposerBackend(clock, [{"index": 0}])
    backend.input_names.append("notes.txt")
    confirmation = AttachmentConfirmation(backend, clock=clock)

    assert await clock.run(confirmation.confirm(notes)) is True
    assert backend.set_calls == []
    assert confirmation.last_attempt.short_circuit is True


@pytest.mark.asyncio
async def test_injection_error_moves_on_to_next_target(notes) -> None:
    clock = VirtualClock()
    backend = _ComposerBackend(clock, [{"index": 0, "multiple": True}, {"index": 1}])

    def on_set(index, paths):
        if index == 0:
            raise InstrumentationError("DOM.setFileInputFiles failed: node detached")
        if paths:
            backend.register("notes.txt")

    backend.on_set = on_set
    confirmation = AttachmentConfirmation(backend, clock=clock)

    assert await clock.run(confirmation.confirm(notes)) is True

    assert backend.set_calls == [(100, [str(notes)]), (101, [str(notes)])]
    assert confirmation.last_attempt.attempted_targets == [0, 1]
    assert confirmation.last_attempt.cleared_targets == []


@pytest.mark.asyncio
async def test_chip_that_vanishes_fails_with_dump(notes) -> None:
    clock = VirtualClock()
    backend = _ComposerBackend(clock, [{"index": 0}])

    def on_set(index, paths):
        if not paths:
            return
        backend.register("notes.txt")

        def remove():
            backend.chip_labels.clear()
            backend.input_names.clear()

        backend.schedule(clock.now() + 600, remove)

    backend.on_set = on_set
    seen: list[str] = []
    confirmation = AttachmentConfirmation(
        backend,
        clock=clock,
        session_logger=SessionLogger(verbose=True, echo=seen.append),
        options=AttachmentOptions(timeout_ms=4000),
    )

    with pytest.raises(ConvergenceTimeout) as exc_info:
        await clock.run(confirmation.confirm(notes))

    err = exc_info.value
    assert err.stage == ATTACHMENT_NOT_REGISTERED
    assert err.details["attempted_targets"] == [0]
    assert backend.dumps == 1
    assert clock.now() == 4000
    assert "Attachment did not register with the composer: notes.txt" in seen


@pytest.mark.asyncio
async def test_uploading_latch_stops_target_rotation(notes) -> None:
    clock = VirtualClock()
    backend = _ComposerBackend(clock, [{"index": 0, "multiple": True}, {"index": 1}])

    def on_set(index, paths):
        if not paths:
            return
        backend.uploading = True

        def finish():
            backend.uploading = False
            backend.register("notes.txt")

        backend.schedule(clock.now() + 2000, finish)

    backend.on_set = on_set
    confirmation = AttachmentConfirmation(
        backend, clock=clock, options=AttachmentOptions(per_target_window_ms=1000)
    )

    assert await clock.run(confirmation.confirm(notes)) is True

    assert backend.set_calls == [(100, [str(notes)])]
    assert confirmation.last_attempt.cleared_targets == []
    assert confirmation.last_attempt.final.uploading is False


@pytest.mark.asyncio
async def test_confirm_missing_file(tmp_path) -> None:
    clock = VirtualClock()
    confirmation = AttachmentConfirmation(_ComposerBackend(clock, []), clock=clock)
    with pytest.raises(AttachmentError) as exc_info:
        await clock.run(confirmation.confirm(tmp_path / "absent.txt"))
    assert exc_info.value.reason_code == "file-missing"


@pytest.mark.asyncio
async def test_confirm_without_file_inputs(notes) -> None:
    clock = VirtualClock()
    confirmation = AttachmentConfirmation(_ComposerBackend(clock, []), clock=clock)
    with pytest.raises(AttachmentError) as exc_info:
        await clock.run(confirmation.confirm(notes))
    assert exc_info.value.reason_code == "file-input-missing"


@pytest.mark.asyncio
async def test_upload_completion_when_composer_ready() -> None:
    clock = VirtualClock()
    backend = _ComposerBackend(clock, [])
    backend.register("notes.txt")
    await clock.run(wait_for_attachment_completion(backend, ["notes.txt"], clock=clock))
    assert clock.now() == 0


@pytest.mark.asyncio
async def test_upload_completion_via_stable_input_names() -> None:
    clock = VirtualClock()
    backend = _ComposerBackend(clock, [], state="disabled", uploading=True)
    backend.input_names.append("notes.txt")
    await clock.run(wait_for_attachment_completion(backend, ["notes.txt"], clock=clock))
    assert clock.now() == 1250


@pytest.mark.asyncio
async def test_upload_completion_timeout() -> None:
    clock = VirtualClock()
    backend = _ComposerBackend(clock, [], state="disabled", uploading=True)
    seen: list[str] = []
    with pytest.raises(ConvergenceTimeout) as exc_info:
        await clock.run(
            wait_for_attachment_completion(
                backend,
                ["notes.txt"],
                clock=clock,
                options=AttachmentOptions(timeout_ms=1000),
                session_logger=SessionLogger(echo=seen.append),
            )
        )
    err = exc_info.value
    assert err.stage == ATTACHMENT_UPLOAD_TIMEOUT
    assert err.details == {"missing": ["notes.txt"], "state": "disabled"}
    assert "Attachment upload timed out while waiting for the composer to become ready." in seen


@pytest.mark.asyncio
async def test_user_turn_shows_attachment() -> None:
    clock = VirtualClock()
    backend = _ComposerBackend(
        clock,
        [],
        user_turn={"ok": True, "text": "see file", "labels": ["notes.txt"], "hasAttachmentUi": True, "attachmentUiCount": 1},
    )
    assert await clock.run(wait_for_user_turn_attachments(backend, ["notes.txt"], clock=clock)) is True


@pytest.mark.asyncio
async def test_user_turn_without_attachment_ui_returns_false() -> None:
    clock = VirtualClock()
    backend = _ComposerBackend(
        clock, [], user_turn={"ok": True, "text": "hello", "labels": [], "hasAttachmentUi": False}
    )
    result = await clock.run(
        wait_for_user_turn_attachments(
            backend, ["notes.txt"], clock=clock, options=AttachmentOptions(timeout_ms=1000)
        )
    )
    assert result is False


@pytest.mark.asyncio
async def test_user_turn_missing_name_raises() -> None:
    clock = VirtualClock()
    backend = _ComposerBackend(
        clock,
        [],
        user_turn={
            "ok": True,
            "text": "two files",
            "labels": ["a.txt"],
            "hasAttachmentUi": True,
            "attachmentUiCount": 1,
        },
    )
    with pytest.raises(ConvergenceTimeout) as exc_info:
        await clock.run(
            wait_for_user_turn_attachments(
                backend, ["a.txt", "b.txt"], clock=clock, options=AttachmentOptions(timeout_ms=1000)
            )
        )
    assert exc_info.value.stage == USER_TURN_ATTACHMENT_TIMEOUT
    assert exc_info.value.details["missing"] == ["b.txt"]
