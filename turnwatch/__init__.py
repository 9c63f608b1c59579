"""
turnwatch: completion detection for streamed chat replies and injected
attachments, over a browser instrumentation channel.
"""

from .attachments import (
    AttachmentConfirmation,
    AttachmentOptions,
    confirm_attachment,
    has_delta,
    matches_expected_name,
    rank_file_inputs,
    wait_for_attachment_completion,
    wait_for_user_turn_attachments,
)
from .backends import BrowserBackend, CDPBackend, PlaywrightBackend, evaluate_value
from .clock import Clock, Deadline, SystemClock, VirtualClock
from .convergence import (
    DEFAULT_POLICY,
    BucketRule,
    ConvergenceState,
    ConvergenceTracker,
    StabilityPolicy,
    poll_until_converged,
)
from .exceptions import (
    AttachmentError,
    ConvergenceTimeout,
    ExtractionMismatch,
    InstrumentationError,
    TurnwatchError,
)
from .extractor import ContentRootWeights, DomSnapshotExtractor
from .logs import FileSessionLog, SessionLogger
from .markdown import capture_assistant_markdown
from .models import (
    AttachmentSignals,
    CompletionSignals,
    FileInputCandidate,
    RaceOutcome,
    Sample,
    Snapshot,
)
from .placeholder import PlaceholderFilter, is_placeholder
from .race import CompletionRace, RaceGate, ResponseWaitOptions, wait_for_assistant_response
from .recovery import RecoveryChain
from .runtime import ConversationRuntime

__version__ = "0.1.0"

__all__ = [
    "AttachmentConfirmation",
    "AttachmentError",
    "AttachmentOptions",
    "AttachmentSignals",
    "BrowserBackend",
    "BucketRule",
    "CDPBackend",
    "Clock",
    "CompletionRace",
    "CompletionSignals",
    "ContentRootWeights",
    "ConvergenceState",
    "ConvergenceTimeout",
    "ConvergenceTracker",
    "ConversationRuntime",
    "DEFAULT_POLICY",
    "Deadline",
    "DomSnapshotExtractor",
    "ExtractionMismatch",
    "FileInputCandidate",
    "FileSessionLog",
    "InstrumentationError",
    "PlaceholderFilter",
    "PlaywrightBackend",
    "RaceGate",
    "RaceOutcome",
    "RecoveryChain",
    "ResponseWaitOptions",
    "Sample",
    "SessionLogger",
    "Snapshot",
    "StabilityPolicy",
    "SystemClock",
    "TurnwatchError",
    "VirtualClock",
    "capture_assistant_markdown",
    "confirm_attachment",
    "evaluate_value",
    "has_delta",
    "is_placeholder",
    "matches_expected_name",
    "poll_until_converged",
    "rank_file_inputs",
    "wait_for_assistant_response",
    "wait_for_attachment_completion",
    "wait_for_user_turn_attachments",
]
