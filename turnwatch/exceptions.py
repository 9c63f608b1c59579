"""
Turnwatch exception taxonomy.

- InstrumentationError: the browser channel failed (transport error, script
  exception, call overrun). Recoverable: strategies absorb it and hand off.
- ExtractionMismatch: the extractor returned an unexpected shape. Treated as
  "no snapshot" by every caller.
- ConvergenceTimeout: a wait ran out of budget. Fatal to the wait call and
  tagged with the stage that gave up.
"""

from __future__ import annotations

from typing import Any

from .constants import (
    ASSISTANT_RESPONSE_TIMEOUT,
    ATTACHMENT_NOT_REGISTERED,
    ATTACHMENT_UPLOAD_TIMEOUT,
    USER_TURN_ATTACHMENT_TIMEOUT,
)
from .models import Snapshot


class TurnwatchError(RuntimeError):
    """Base class for all turnwatch errors."""


class InstrumentationError(TurnwatchError):
    """Transport/evaluate failure on the browser instrumentation channel."""

    def __init__(self, message: str, *, operation: str | None = None, details: Any = None):
        super().__init__(message)
        self.operation = operation
        self.details = details

    @classmethod
    def from_exception_details(
        cls, details: dict[str, Any], *, operation: str = "evaluate"
    ) -> InstrumentationError:
        """Build from a CDP `exceptionDetails` object."""
        text = ""
        exception = details.get("exception") if isinstance(details, dict) else None
        if isinstance(exception, dict):
            text = str(exception.get("description") or exception.get("value") or "")
        if not text and isinstance(details, dict):
            text = str(details.get("text") or "")
        return cls(
            f"Script raised in page: {text or 'unknown exception'}",
            operation=operation,
            details=details,
        )

    @classmethod
    def from_call_timeout(cls, operation: str, timeout_ms: float) -> InstrumentationError:
        return cls(
            f"{operation} did not return within {timeout_ms:.0f}ms",
            operation=operation,
            details={"timeout_ms": timeout_ms},
        )


class ExtractionMismatch(TurnwatchError):
    """Extractor produced a value of unexpected shape."""

    def __init__(self, message: str, *, payload: Any = None):
        super().__init__(message)
        self.payload = payload

    @classmethod
    def from_payload(cls, payload: Any, reason: str) -> ExtractionMismatch:
        kind = type(payload).__name__
        return cls(f"Unexpected extractor payload ({kind}): {reason}", payload=payload)


class ConvergenceTimeout(TurnwatchError):
    """
    A wait exhausted its deadline without a stable result.

    `stage` tags where the wait gave up. `partial` carries the best unconverged
    snapshot observed (if any) so the caller can keep the session resumable.
    """

    def __init__(
        self,
        message: str,
        *,
        stage: str,
        timeout_ms: float,
        partial: Snapshot | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.stage = stage
        self.timeout_ms = timeout_ms
        self.partial = partial
        self.details = details or {}

    @classmethod
    def assistant_response(
        cls,
        *,
        timeout_ms: float,
        partial: Snapshot | None = None,
        failures: dict[str, str] | None = None,
    ) -> ConvergenceTimeout:
        message = f"Assistant response did not converge within {timeout_ms:.0f}ms"
        if partial is not None:
            message += f" (last partial: {partial.length} chars)"
        return cls(
            message,
            stage=ASSISTANT_RESPONSE_TIMEOUT,
            timeout_ms=timeout_ms,
            partial=partial,
            details={"failures": dict(failures or {})},
        )

    @classmethod
    def attachment_not_registered(
        cls,
        *,
        file_name: str,
        timeout_ms: float,
        attempted_targets: list[int] | None = None,
    ) -> ConvergenceTimeout:
        return cls(
            f"Attachment {file_name!r} did not register with the composer within {timeout_ms:.0f}ms",
            stage=ATTACHMENT_NOT_REGISTERED,
            timeout_ms=timeout_ms,
            details={"file_name": file_name, "attempted_targets": list(attempted_targets or [])},
        )

    @classmethod
    def attachment_upload(
        cls, *, missing: list[str], timeout_ms: float, state: str | None = None
    ) -> ConvergenceTimeout:
        return cls(
            f"Attachments did not finish uploading before timeout ({timeout_ms:.0f}ms)",
            stage=ATTACHMENT_UPLOAD_TIMEOUT,
            timeout_ms=timeout_ms,
            details={"missing": list(missing), "state": state},
        )

    @classmethod
    def user_turn_attachments(cls, *, missing: list[str], timeout_ms: float) -> ConvergenceTimeout:
        return cls(
            f"Attachment was not present in the sent user turn: {', '.join(missing)}",
            stage=USER_TURN_ATTACHMENT_TIMEOUT,
            timeout_ms=timeout_ms,
            details={"missing": list(missing)},
        )


class AttachmentError(TurnwatchError):
    """Non-timeout attachment failure (no usable input, unreadable file)."""

    def __init__(self, message: str, *, reason_code: str):
        super().__init__(message)
        self.reason_code = reason_code
