"""
Data models for the migration orchestrator.

Enums:
    - MigrationState: Migration run lifecycle states
    - Direction: Replication direction
    - SessionState: Replication session lifecycle states
    - StagingStatus: Staging record lifecycle states

Core Models:
    - EndpointDescriptor: Describes a database endpoint
    - TableFilter: Selects the tables a run migrates
    - StagingRecord: A change event plus apply bookkeeping
    - BulkLoadResult / BulkLoadRecord: Outcome of the snapshot copy
    - TableVerification / VerificationReport: Verifier result contract
    - ReplicationSession: One direction of streaming replication
    - AppliedResult: Outcome of one apply batch
    - DrainStatus: Drain certification sample
    - StateTransition: Audit entry for a state change
    - MigrationRun: The top-level aggregate
    - MigrationStatus: Read-only snapshot for operators
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any
from urllib.parse import urlsplit, urlunsplit
from uuid import UUID

from liveshift.cursors import SourceCursor, TargetCursor
from liveshift.events import ChangeEvent


class MigrationState(Enum):
    """
    Migration run lifecycle states.

    State machine transitions:
        NOT_STARTED -> BULK_LOADING -> BULK_VERIFYING -> FORWARD_STREAMING
            -> DRAINING -> CUTOVER_READY -> REVERSE_STREAMING
            -> DECOMMISSIONING -> COMPLETE
        Any non-terminal state -> ABORTED

    The machine only moves forward. Re-entering a state or re-running a
    completed transition is invalid.
    """

    NOT_STARTED = "not_started"
    BULK_LOADING = "bulk_loading"
    BULK_VERIFYING = "bulk_verifying"
    FORWARD_STREAMING = "forward_streaming"
    DRAINING = "draining"
    CUTOVER_READY = "cutover_ready"
    REVERSE_STREAMING = "reverse_streaming"
    DECOMMISSIONING = "decommissioning"
    COMPLETE = "complete"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        """Terminal states are COMPLETE and ABORTED."""
        return self in (MigrationState.COMPLETE, MigrationState.ABORTED)

    @property
    def is_gate(self) -> bool:
        """States that wait for an operator (or autopilot) decision."""
        return self in (MigrationState.DRAINING, MigrationState.CUTOVER_READY)

    @property
    def is_streaming(self) -> bool:
        """States in which a replication session is expected to run."""
        return self in (
            MigrationState.FORWARD_STREAMING,
            MigrationState.DRAINING,
            MigrationState.CUTOVER_READY,
            MigrationState.REVERSE_STREAMING,
        )

    def can_transition_to(self, target: MigrationState) -> bool:
        """
        Check if a transition to ``target`` is in the adjacency list.

        Args:
            target: The state to move to.

        Returns:
            True if the transition is valid.
        """
        if self.is_terminal:
            return False
        if target == MigrationState.ABORTED:
            return True
        return _TRANSITIONS.get(self) == target


_TRANSITIONS: dict[MigrationState, MigrationState] = {
    MigrationState.NOT_STARTED: MigrationState.BULK_LOADING,
    MigrationState.BULK_LOADING: MigrationState.BULK_VERIFYING,
    MigrationState.BULK_VERIFYING: MigrationState.FORWARD_STREAMING,
    MigrationState.FORWARD_STREAMING: MigrationState.DRAINING,
    MigrationState.DRAINING: MigrationState.CUTOVER_READY,
    MigrationState.CUTOVER_READY: MigrationState.REVERSE_STREAMING,
    MigrationState.REVERSE_STREAMING: MigrationState.DECOMMISSIONING,
    MigrationState.DECOMMISSIONING: MigrationState.COMPLETE,
}


class Direction(Enum):
    """Replication direction relative to the original source."""

    FORWARD = "forward"
    """Original source -> new target."""

    REVERSE = "reverse"
    """New target -> original source (failback)."""

    @property
    def opposite(self) -> Direction:
        return Direction.REVERSE if self == Direction.FORWARD else Direction.FORWARD


class SessionState(Enum):
    """Replication session lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    STALLED = "stalled"
    """Forward progress halted; waiting for operator resolution."""
    STOPPING = "stopping"
    STOPPED = "stopped"

    @property
    def is_active(self) -> bool:
        return self in (SessionState.PENDING, SessionState.RUNNING, SessionState.STALLED)


class StagingStatus(Enum):
    """Staging record lifecycle states."""

    PENDING = "pending"
    RETRY_PENDING = "retry_pending"
    APPLIED = "applied"
    FAILED = "failed"
    """Non-transient failure; held until an operator requeues it."""

    @property
    def is_unapplied(self) -> bool:
        """Records the applier should pick up."""
        return self in (StagingStatus.PENDING, StagingStatus.RETRY_PENDING)


@dataclass(frozen=True)
class EndpointDescriptor:
    """
    Describes a database endpoint taking part in a migration.

    Attributes:
        name: Operator-facing endpoint name (e.g. "mysql-primary").
        dialect: Database dialect (e.g. "mysql", "cockroachdb").
        dsn: Connection string. Passwords are redacted when rendered.
    """

    name: str
    dialect: str
    dsn: str = ""

    @property
    def redacted_dsn(self) -> str:
        """The DSN with any password replaced by ``***``."""
        if not self.dsn:
            return ""
        parts = urlsplit(self.dsn)
        if parts.password is None:
            return self.dsn
        netloc = parts.netloc.replace(f":{parts.password}@", ":***@", 1)
        return urlunsplit(parts._replace(netloc=netloc))

    def __str__(self) -> str:
        return f"{self.name} ({self.dialect})"

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "dialect": self.dialect, "dsn": self.redacted_dsn}


@dataclass(frozen=True)
class TableFilter:
    """
    Regular expression selecting tables by name (full match).

    The default skips tables starting with an underscore, which keeps the
    orchestrator's own ``_replicator`` bookkeeping tables out of a run.
    """

    pattern: str = "[^_].*"

    def __post_init__(self) -> None:
        try:
            re.compile(self.pattern)
        except re.error as e:
            raise ValueError(f"Invalid table filter {self.pattern!r}: {e}") from e

    def matches(self, table: str) -> bool:
        """Check a table name (unqualified or qualified)."""
        name = table.rpartition(".")[2]
        return re.fullmatch(self.pattern, name, flags=re.IGNORECASE) is not None


@dataclass
class StagingRecord:
    """
    A staged change event plus apply bookkeeping.

    Attributes:
        record_id: Store-assigned identifier.
        event: The immutable change event.
        arrival_seq: Arrival order, breaking ties between equal commit tokens.
        staged_at: When the record was first staged.
        status: Current lifecycle status.
        attempts: Apply attempts made so far (failed and successful).
        applied_at: When the record was applied.
        last_error: Last apply error message.
        target_position: Target cursor reported after the apply, if known.
        deliveries: Times the change stream delivered this change.
    """

    record_id: int
    event: ChangeEvent
    arrival_seq: int
    staged_at: datetime
    status: StagingStatus = StagingStatus.PENDING
    attempts: int = 0
    applied_at: datetime | None = None
    last_error: str | None = None
    target_position: SourceCursor | TargetCursor | None = None
    deliveries: int = 1

    @property
    def is_applied(self) -> bool:
        return self.status == StagingStatus.APPLIED

    @property
    def order_key(self) -> tuple[int, int, int]:
        """Commit token order, then arrival order (source tokens share one key)."""
        major, minor = self.event.commit_token.sort_key
        return (major, minor, self.arrival_seq)


@dataclass(frozen=True)
class BulkLoadResult:
    """
    What a bulk loader reports on completion.

    Attributes:
        row_counts: Rows copied per qualified table.
        cursor: Source position at or before the snapshot start.
    """

    row_counts: dict[str, int]
    cursor: SourceCursor | TargetCursor

    @property
    def total_rows(self) -> int:
        return sum(self.row_counts.values())


@dataclass(frozen=True)
class BulkLoadRecord:
    """The bulk load as recorded on the migration run."""

    result: BulkLoadResult
    started_at: datetime
    completed_at: datetime

    @property
    def duration(self) -> timedelta:
        return self.completed_at - self.started_at


@dataclass(frozen=True)
class TableVerification:
    """
    Verification outcome for one table.

    Attributes:
        table: Qualified table name.
        source_rows: Row count on the source.
        target_rows: Row count on the target.
        mismatch_count: Total mismatched primary keys (not truncated).
        mismatched_keys: Bounded sample of mismatched primary keys.
    """

    table: str
    source_rows: int
    target_rows: int
    mismatch_count: int = 0
    mismatched_keys: tuple[tuple[Any, ...], ...] = ()

    @property
    def passed(self) -> bool:
        return self.mismatch_count == 0 and self.source_rows == self.target_rows

    @property
    def truncated(self) -> bool:
        """True when the key sample is smaller than the mismatch total."""
        return len(self.mismatched_keys) < self.mismatch_count


@dataclass(frozen=True)
class VerificationReport:
    """
    Result contract of the external verifier.

    Attributes:
        tables: Per-table outcomes.
        generated_at: When the verification finished.
    """

    tables: tuple[TableVerification, ...]
    generated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def passed(self) -> bool:
        """Aggregate verdict: every table passed."""
        return all(table.passed for table in self.tables)

    @property
    def failed_tables(self) -> list[str]:
        return [table.table for table in self.tables if not table.passed]

    @property
    def total_mismatches(self) -> int:
        return sum(table.mismatch_count for table in self.tables)

    def to_dict(self) -> dict[str, Any]:
        return {
            "passed": self.passed,
            "generated_at": self.generated_at.isoformat(),
            "tables": [
                {
                    "table": table.table,
                    "source_rows": table.source_rows,
                    "target_rows": table.target_rows,
                    "mismatch_count": table.mismatch_count,
                    "mismatched_keys": [list(key) for key in table.mismatched_keys],
                    "truncated": table.truncated,
                    "passed": table.passed,
                }
                for table in self.tables
            ],
        }


@dataclass
class ReplicationSession:
    """
    One direction of streaming replication.

    Mutable because the session's cursor and counters change while it runs.

    Attributes:
        id: Session identifier.
        direction: Forward or reverse.
        source: Endpoint changes are read from.
        target: Endpoint changes are applied to.
        seed_cursor: Position the session started from.
        cursor: Last durably applied position (never regresses except via
            an operator-forced reseed).
        state: Session lifecycle state.
        started_at: When the session started.
        last_event_at: When the last change event was received.
        rows_applied: Cumulative rows applied.
        stopped_at: When the session stopped.
        last_error: Last escalated error.
    """

    id: UUID
    direction: Direction
    source: EndpointDescriptor
    target: EndpointDescriptor
    seed_cursor: SourceCursor | TargetCursor
    cursor: SourceCursor | TargetCursor
    state: SessionState = SessionState.PENDING
    started_at: datetime | None = None
    last_event_at: datetime | None = None
    rows_applied: int = 0
    stopped_at: datetime | None = None
    last_error: str | None = None

    @property
    def is_active(self) -> bool:
        return self.state.is_active


@dataclass(frozen=True)
class AppliedResult:
    """
    Outcome of applying one batch of staged records.

    Attributes:
        applied: Records applied in this batch.
        rows_upserted: Net upserts issued to the target.
        rows_deleted: Net deletes issued to the target.
        retries: Transient failures retried within the batch.
        failed_record_ids: Records that could not be applied.
        checkpoint: Stream checkpoint after the batch, if it moved.
        duration_seconds: Wall time spent on the batch.
    """

    applied: int = 0
    rows_upserted: int = 0
    rows_deleted: int = 0
    retries: int = 0
    failed_record_ids: tuple[int, ...] = ()
    checkpoint: SourceCursor | TargetCursor | None = None
    duration_seconds: float = 0.0


@dataclass(frozen=True)
class DrainStatus:
    """
    One drain certification sample.

    Attributes:
        backlog: Unapplied staged records at sample time.
        quiet_seconds: Seconds since the session last received an event.
        zero_backlog_seconds: Seconds the backlog has stayed at zero.
        drained: Whether both drain conditions hold.
        timed_out: Whether the drain timeout has elapsed.
        reason: Why the pipeline is not drained, if it is not.
        sampled_at: When the sample was taken.
    """

    backlog: int
    quiet_seconds: float
    zero_backlog_seconds: float
    drained: bool
    sampled_at: datetime
    timed_out: bool = False
    reason: str | None = None


@dataclass(frozen=True)
class StateTransition:
    """Audit entry for one state change of a migration run."""

    from_state: MigrationState
    to_state: MigrationState
    at: datetime
    reason: str | None = None
    actor: str | None = None


@dataclass
class MigrationRun:
    """
    Top-level aggregate for one migration attempt.

    Replaces the ad hoc variables of a scripted migration (captured
    cursor strings, container names) with typed fields.

    Attributes:
        id: Run identifier.
        source: Original source endpoint.
        target: New target endpoint.
        table_filter: Tables included in the run.
        state: Current state.
        bulk_load: Bulk load record, once the copy completed.
        verifications: Verification reports in the order received.
        verification_override: Operator reason for proceeding past a
            failed verification, if any.
        sessions: Replication session history (forward, then reverse).
        transitions: State transition history.
        alerts: Escalated conditions (stalls, drain timeouts, mismatches).
        source_retired: Set once the source is decommissioned.
        created_at: When the run was created.
        completed_at: When the run reached a terminal state.
        last_error: Last fatal error message.
    """

    id: UUID
    source: EndpointDescriptor
    target: EndpointDescriptor
    table_filter: TableFilter = field(default_factory=TableFilter)
    state: MigrationState = MigrationState.NOT_STARTED
    bulk_load: BulkLoadRecord | None = None
    verifications: list[VerificationReport] = field(default_factory=list)
    verification_override: str | None = None
    sessions: list[ReplicationSession] = field(default_factory=list)
    transitions: list[StateTransition] = field(default_factory=list)
    alerts: list[dict[str, Any]] = field(default_factory=list)
    source_retired: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None
    last_error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def latest_verification(self) -> VerificationReport | None:
        return self.verifications[-1] if self.verifications else None

    @property
    def started_at(self) -> datetime | None:
        """When the run left NOT_STARTED."""
        for transition in self.transitions:
            if transition.from_state == MigrationState.NOT_STARTED:
                return transition.at
        return None

    def active_session(self, direction: Direction) -> ReplicationSession | None:
        """Get the active session for a direction, if any."""
        for session in reversed(self.sessions):
            if session.direction == direction and session.is_active:
                return session
        return None

    def latest_session(self, direction: Direction) -> ReplicationSession | None:
        for session in reversed(self.sessions):
            if session.direction == direction:
                return session
        return None

    def entered_at(self, state: MigrationState) -> datetime | None:
        """When the run most recently entered ``state``."""
        for transition in reversed(self.transitions):
            if transition.to_state == state:
                return transition.at
        return None


@dataclass(frozen=True)
class SessionStatus:
    """Snapshot of one replication session for status reporting."""

    session_id: UUID
    direction: Direction
    state: SessionState
    cursor: str
    backlog: int
    rows_applied: int
    last_event_at: datetime | None
    last_error: str | None


@dataclass(frozen=True)
class MigrationStatus:
    """
    Read-only snapshot of a migration run for the control surface.

    Attributes:
        run_id: Run identifier.
        state: Current state.
        sessions: Active or latest session per direction.
        drain: Latest drain sample while draining.
        verification_passed: Latest verification verdict, if any.
        verification_overridden: Whether an operator overrode a failure.
        alerts: Escalated conditions.
        source_retired: Whether the source was decommissioned.
    """

    run_id: UUID
    state: MigrationState
    sessions: tuple[SessionStatus, ...] = ()
    drain: DrainStatus | None = None
    verification_passed: bool | None = None
    verification_overridden: bool = False
    alerts: tuple[dict[str, Any], ...] = ()
    source_retired: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "run_id": str(self.run_id),
            "state": self.state.value,
            "sessions": [
                {
                    "session_id": str(s.session_id),
                    "direction": s.direction.value,
                    "state": s.state.value,
                    "cursor": s.cursor,
                    "backlog": s.backlog,
                    "rows_applied": s.rows_applied,
                    "last_event_at": s.last_event_at.isoformat() if s.last_event_at else None,
                    "last_error": s.last_error,
                }
                for s in self.sessions
            ],
            "drain": (
                {
                    "backlog": self.drain.backlog,
                    "quiet_seconds": self.drain.quiet_seconds,
                    "zero_backlog_seconds": self.drain.zero_backlog_seconds,
                    "drained": self.drain.drained,
                    "timed_out": self.drain.timed_out,
                    "reason": self.drain.reason,
                }
                if self.drain
                else None
            ),
            "verification_passed": self.verification_passed,
            "verification_overridden": self.verification_overridden,
            "alerts": list(self.alerts),
            "source_retired": self.source_retired,
        }


__all__ = [
    "MigrationState",
    "Direction",
    "SessionState",
    "StagingStatus",
    "EndpointDescriptor",
    "TableFilter",
    "StagingRecord",
    "BulkLoadResult",
    "BulkLoadRecord",
    "TableVerification",
    "VerificationReport",
    "ReplicationSession",
    "AppliedResult",
    "DrainStatus",
    "StateTransition",
    "MigrationRun",
    "SessionStatus",
    "MigrationStatus",
]
