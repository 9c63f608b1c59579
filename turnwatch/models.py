"""
Pydantic models for turnwatch.

Snapshots and attachment signals are created fresh on every page read and are
never mutated afterwards.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class Snapshot(BaseModel):
    """Point-in-time extraction of the candidate assistant reply."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    text: str
    html: str | None = None
    turn_id: str | None = Field(default=None, alias="turnId")
    message_id: str | None = Field(default=None, alias="messageId")
    turn_index: int | None = Field(default=None, alias="turnIndex")

    @property
    def length(self) -> int:
        return len(self.text)


class CompletionSignals(BaseModel):
    """Generation/finished affordances read alongside a snapshot."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    stop_visible: bool = Field(default=False, alias="stopVisible")
    stop_label: str | None = Field(default=None, alias="stopLabel")
    finished_visible: bool = Field(default=False, alias="finishedVisible")


class ExtractionPayload(BaseModel):
    """Raw shape returned by the page-side extractor script."""

    model_config = ConfigDict(populate_by_name=True)

    snapshot: Snapshot | None = None
    source: Literal["structural", "content-root"] | None = None
    signals: CompletionSignals = Field(default_factory=CompletionSignals)
    turn_count: int = Field(default=0, alias="turnCount")


class Sample(BaseModel):
    """One admitted extractor read: the snapshot (if any) plus affordances."""

    model_config = ConfigDict(frozen=True)

    snapshot: Snapshot | None = None
    signals: CompletionSignals = Field(default_factory=CompletionSignals)
    source: str | None = None


class AttachmentSignals(BaseModel):
    """Point-in-time read of composer attachment state."""

    model_config = ConfigDict(frozen=True)

    ui_match: bool = False
    input_match: bool = False
    chip_count: int = 0
    input_count: int = 0
    file_count: int = 0
    uploading: bool = False
    chip_signature: str = ""
    chip_labels: list[str] = Field(default_factory=list)
    input_names: list[str] = Field(default_factory=list)

    def composite_key(self) -> tuple:
        """Key used by the attachment convergence loop to detect churn."""
        return (
            self.chip_count,
            self.chip_signature,
            self.input_count,
            self.file_count,
            self.ui_match,
            self.input_match,
        )


class ComposerReading(BaseModel):
    """Raw composer state as reported by the page (before name matching)."""

    model_config = ConfigDict(populate_by_name=True)

    chip_labels: list[str] = Field(default_factory=list, alias="chipLabels")
    input_names: list[str] = Field(default_factory=list, alias="inputNames")
    chip_count: int = Field(default=0, alias="chipCount")
    input_count: int = Field(default=0, alias="inputCount")
    file_count: int = Field(default=0, alias="fileCount")
    uploading: bool = False


class FileInputCandidate(BaseModel):
    """A tagged `<input type=file>` that can receive an injected attachment."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    index: int
    multiple: bool = False
    accept: str | None = None
    image_only: bool = Field(default=False, alias="imageOnly")
    file_count: int = Field(default=0, alias="fileCount")


class ComposerReadiness(BaseModel):
    """Send-button/uploading state used before a prompt is submitted."""

    model_config = ConfigDict(populate_by_name=True)

    state: Literal["ready", "disabled", "missing"] = "missing"
    uploading: bool = False
    chip_labels: list[str] = Field(default_factory=list, alias="chipLabels")
    input_names: list[str] = Field(default_factory=list, alias="inputNames")


class UserTurnReading(BaseModel):
    """Last user turn, as read after a prompt was sent."""

    model_config = ConfigDict(populate_by_name=True)

    ok: bool = False
    text: str = ""
    labels: list[str] = Field(default_factory=list)
    has_attachment_ui: bool = Field(default=False, alias="hasAttachmentUi")
    attachment_ui_count: int = Field(default=0, alias="attachmentUiCount")


class RaceOutcome(BaseModel):
    """Winning snapshot of a response wait, with provenance."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["observer", "poll", "recovered"]
    snapshot: Snapshot
    elapsed_ms: float = 0.0
    refreshed: bool = False
    failures: dict[str, str] = Field(default_factory=dict)
    markdown: str | None = None

    @property
    def text(self) -> str:
        return self.snapshot.text
