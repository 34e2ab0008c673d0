"""
Exceptions for the liveshift migration orchestrator.

Exception Hierarchy:
    LiveShiftError (base)
    +-- InvalidCursor
    +-- IncomparableCursor
    +-- InvalidChangeEvent
    +-- InvalidTransition
    +-- ApplyError
    |   +-- ApplyTransientError
    |   +-- ApplyStalled
    +-- VerificationMismatch
    +-- DrainTimeout
    +-- SourceStreamDisconnected
    +-- BulkLoadError
    +-- SessionError
    |   +-- SessionAlreadyActiveError
    |   +-- SessionNotFoundError
    +-- UnknownCommandError

Every exception carries an ErrorClassification so callers can decide how
to react (retry, escalate to the operator, or reject) without matching
on concrete types.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any
from uuid import UUID

if TYPE_CHECKING:
    from liveshift.models import AppliedResult, Direction, MigrationState, VerificationReport


class ErrorSeverity(Enum):
    """
    Severity level of orchestrator errors.

    Attributes:
        CRITICAL: Risk of data loss; requires immediate operator attention.
        ERROR: Operation failed and needs operator intervention.
        WARNING: Condition that may resolve on its own.
        INFO: Informational, not a failure.
    """

    CRITICAL = "critical"
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"

    @property
    def log_level(self) -> int:
        """Get the corresponding Python logging level."""
        return {
            ErrorSeverity.CRITICAL: logging.CRITICAL,
            ErrorSeverity.ERROR: logging.ERROR,
            ErrorSeverity.WARNING: logging.WARNING,
            ErrorSeverity.INFO: logging.INFO,
        }[self]


class ErrorRecoverability(Enum):
    """
    How an error can be recovered from.

    Attributes:
        REJECTED: Misuse rejected before any state was mutated.
        TRANSIENT: Retried automatically inside the component.
        OPERATOR: Escalated; an operator decides how to proceed.
        FATAL: The current run cannot continue.
    """

    REJECTED = "rejected"
    TRANSIENT = "transient"
    OPERATOR = "operator"
    FATAL = "fatal"

    @property
    def should_retry(self) -> bool:
        """True only for TRANSIENT errors."""
        return self == ErrorRecoverability.TRANSIENT

    @property
    def needs_operator(self) -> bool:
        """True for errors escalated to the control surface."""
        return self == ErrorRecoverability.OPERATOR


@dataclass(frozen=True)
class ErrorClassification:
    """
    Classification metadata for an error type.

    Attributes:
        severity: The severity level of the error.
        recoverability: How the error can be recovered from.
        error_code: Unique error code for programmatic handling.
        suggested_action: Human-readable guidance for operators.
    """

    severity: ErrorSeverity
    recoverability: ErrorRecoverability
    error_code: str
    suggested_action: str

    def to_dict(self) -> dict[str, Any]:
        """Convert classification to dictionary for serialization."""
        return {
            "severity": self.severity.value,
            "recoverability": self.recoverability.value,
            "error_code": self.error_code,
            "suggested_action": self.suggested_action,
        }


class LiveShiftError(Exception):
    """
    Base exception for all liveshift errors.

    Attributes:
        message: Human-readable error description.
        run_id: The migration run involved, if any.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="LIVESHIFT_ERROR",
        suggested_action="Review orchestrator logs",
    )

    def __init__(self, message: str, *, run_id: UUID | None = None) -> None:
        self.message = message
        self.run_id = run_id
        super().__init__(message)

    def __str__(self) -> str:
        if self.run_id:
            return f"{self.message} run_id={self.run_id}"
        return self.message

    @property
    def classification(self) -> ErrorClassification:
        """Get the classification for this exception."""
        return self._default_classification

    @property
    def severity(self) -> ErrorSeverity:
        return self.classification.severity

    @property
    def recoverability(self) -> ErrorRecoverability:
        return self.classification.recoverability

    @property
    def error_code(self) -> str:
        return self.classification.error_code

    def to_dict(self) -> dict[str, Any]:
        """Convert the exception to a dictionary for alerts and logs."""
        return {
            "message": self.message,
            "run_id": str(self.run_id) if self.run_id else None,
            "error_code": self.error_code,
            "classification": self.classification.to_dict(),
        }


class InvalidCursor(LiveShiftError):
    """Raised when a raw cursor string cannot be parsed."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.REJECTED,
        error_code="INVALID_CURSOR",
        suggested_action="Check the cursor text against the expected GTID set or HLC format",
    )

    def __init__(self, raw: Any, reason: str) -> None:
        self.raw = raw
        self.reason = reason
        super().__init__(f"Invalid cursor {raw!r}: {reason}")


class IncomparableCursor(LiveShiftError):
    """Raised when two cursors from different address spaces are compared."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.REJECTED,
        error_code="INCOMPARABLE_CURSOR",
        suggested_action="Only compare cursors produced by the same stream direction",
    )

    def __init__(self, left_space: str, right_space: str) -> None:
        self.left_space = left_space
        self.right_space = right_space
        super().__init__(f"Cannot compare a {left_space} cursor with a {right_space} cursor")


class InvalidChangeEvent(LiveShiftError):
    """Raised when a raw change event lacks the data needed to normalize it."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.OPERATOR,
        error_code="INVALID_CHANGE_EVENT",
        suggested_action="Inspect the raw change event emitted by the change stream",
    )

    def __init__(self, message: str, raw: Any = None) -> None:
        self.raw = raw
        super().__init__(message)


class InvalidTransition(LiveShiftError):
    """
    Raised when a state transition is not in the state machine's adjacency list.

    Always raised before any state is mutated.

    Attributes:
        current_state: The state the run is in.
        target_state: The state that was requested.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.REJECTED,
        error_code="INVALID_TRANSITION",
        suggested_action="Check the run's current state before issuing the command",
    )

    def __init__(
        self,
        current_state: MigrationState,
        target_state: MigrationState,
        *,
        run_id: UUID | None = None,
        detail: str | None = None,
    ) -> None:
        self.current_state = current_state
        self.target_state = target_state
        message = f"Invalid transition: {current_state.value} -> {target_state.value}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message, run_id=run_id)


class ApplyError(LiveShiftError):
    """Base class for errors raised while applying staged records."""


class ApplyTransientError(ApplyError):
    """
    Raised by target connectors for errors that may succeed on retry.

    Connectivity loss and serialization conflicts are transient.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="APPLY_TRANSIENT",
        suggested_action="None; the applier retries with backoff",
    )


class ApplyStalled(ApplyError):
    """
    Raised when the applier cannot make forward progress.

    Either the retry budget for a transient error was exhausted or a
    non-transient error (a real data divergence) was hit. The affected
    records stay in the staging store; nothing is dropped.

    Attributes:
        record_ids: Staging records that could not be applied.
        cause: The last underlying error.
        transient: Whether the cause was transient (budget exhausted).
        result: The partial result of the batch.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.OPERATOR,
        error_code="APPLY_STALLED",
        suggested_action="Resolve the target error, then resume the replication session",
    )

    def __init__(
        self,
        message: str,
        *,
        record_ids: list[int],
        cause: BaseException | None = None,
        transient: bool = False,
        result: AppliedResult | None = None,
    ) -> None:
        self.record_ids = record_ids
        self.cause = cause
        self.transient = transient
        self.result = result
        super().__init__(message)


class VerificationMismatch(LiveShiftError):
    """
    Reported when a verification report has a failing verdict.

    Not fatal by itself; the operator may override or abort.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.OPERATOR,
        error_code="VERIFICATION_MISMATCH",
        suggested_action="Review mismatched keys, then override the verification or abort",
    )

    def __init__(self, report: VerificationReport, *, run_id: UUID | None = None) -> None:
        self.report = report
        tables = ", ".join(report.failed_tables) or "<none>"
        super().__init__(
            f"Verification failed for tables: {tables} "
            f"({report.total_mismatches} mismatched rows)",
            run_id=run_id,
        )


class DrainTimeout(LiveShiftError):
    """
    Reported when the drain bound is not met within the configured timeout.

    The run stays in Draining; it is never aborted automatically.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.OPERATOR,
        error_code="DRAIN_TIMEOUT",
        suggested_action="Confirm application writes to the source have stopped",
    )

    def __init__(self, elapsed_seconds: float, backlog: int, *, run_id: UUID | None = None) -> None:
        self.elapsed_seconds = elapsed_seconds
        self.backlog = backlog
        super().__init__(
            f"Drain not certified after {elapsed_seconds:.1f}s (backlog={backlog})",
            run_id=run_id,
        )


class SourceStreamDisconnected(LiveShiftError):
    """
    Raised by change stream sources when the connection drops.

    The replication session resumes from its last checkpoint.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="SOURCE_STREAM_DISCONNECTED",
        suggested_action="None; the session reconnects from its last checkpoint",
    )


class BulkLoadError(LiveShiftError):
    """Raised when the bulk loader fails. Fatal to the current run."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="BULK_LOAD_FAILED",
        suggested_action="Inspect the bulk loader output and start a new run",
    )


class SessionError(LiveShiftError):
    """Base class for replication session misuse."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.REJECTED,
        error_code="SESSION_ERROR",
        suggested_action="Check the session state before issuing the command",
    )


class SessionAlreadyActiveError(SessionError):
    """Raised when a second session is started in a direction that has one."""

    def __init__(self, direction: Direction, session_id: UUID) -> None:
        self.direction = direction
        self.session_id = session_id
        super().__init__(
            f"A {direction.value} replication session is already active: {session_id}"
        )


class SessionNotFoundError(SessionError):
    """Raised when no session exists for the requested direction."""

    def __init__(self, direction: Direction) -> None:
        self.direction = direction
        super().__init__(f"No active {direction.value} replication session")


class UnknownCommandError(LiveShiftError):
    """Raised by the control surface for commands it does not know."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.REJECTED,
        error_code="UNKNOWN_COMMAND",
        suggested_action="Use one of the documented operator commands",
    )

    def __init__(self, command: str) -> None:
        self.command = command
        super().__init__(f"Unknown operator command: {command!r}")


__all__ = [
    "ErrorSeverity",
    "ErrorRecoverability",
    "ErrorClassification",
    "LiveShiftError",
    "InvalidCursor",
    "IncomparableCursor",
    "InvalidChangeEvent",
    "InvalidTransition",
    "ApplyError",
    "ApplyTransientError",
    "ApplyStalled",
    "VerificationMismatch",
    "DrainTimeout",
    "SourceStreamDisconnected",
    "BulkLoadError",
    "SessionError",
    "SessionAlreadyActiveError",
    "SessionNotFoundError",
    "UnknownCommandError",
]
