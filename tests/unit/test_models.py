"""
Unit tests for the migration data models.

Tests cover:
- MigrationState adjacency and properties
- Direction and session/staging status helpers
- EndpointDescriptor DSN redaction
- TableFilter matching
- VerificationReport verdicts and serialization
- MigrationRun lookups
- MigrationStatus serialization
"""

from datetime import UTC, datetime, timedelta
from uuid import uuid4

import pytest

from liveshift.models import (
    Direction,
    DrainStatus,
    EndpointDescriptor,
    MigrationRun,
    MigrationState,
    MigrationStatus,
    ReplicationSession,
    SessionState,
    SessionStatus,
    StagingRecord,
    StagingStatus,
    StateTransition,
    TableFilter,
    TableVerification,
    VerificationReport,
)
from tests.fixtures import create_event, source_token

NOW = datetime(2024, 1, 1, tzinfo=UTC)

ORDER = [
    MigrationState.NOT_STARTED,
    MigrationState.BULK_LOADING,
    MigrationState.BULK_VERIFYING,
    MigrationState.FORWARD_STREAMING,
    MigrationState.DRAINING,
    MigrationState.CUTOVER_READY,
    MigrationState.REVERSE_STREAMING,
    MigrationState.DECOMMISSIONING,
    MigrationState.COMPLETE,
]


def endpoint(name: str = "mysql") -> EndpointDescriptor:
    return EndpointDescriptor(name=name, dialect=name)


def create_session(direction: Direction, state: SessionState) -> ReplicationSession:
    return ReplicationSession(
        id=uuid4(),
        direction=direction,
        source=endpoint("mysql"),
        target=endpoint("cockroach"),
        seed_cursor=source_token(1),
        cursor=source_token(1),
        state=state,
    )


# ============================================================================
# State machine
# ============================================================================


class TestMigrationStateTransitions:
    @pytest.mark.parametrize(("current", "target"), list(zip(ORDER, ORDER[1:], strict=False)))
    def test_forward_steps_are_valid(
        self, current: MigrationState, target: MigrationState
    ) -> None:
        assert current.can_transition_to(target)

    def test_states_cannot_be_skipped(self) -> None:
        assert not MigrationState.NOT_STARTED.can_transition_to(MigrationState.BULK_VERIFYING)
        assert not MigrationState.FORWARD_STREAMING.can_transition_to(
            MigrationState.CUTOVER_READY
        )

    def test_states_cannot_go_backward_or_repeat(self) -> None:
        assert not MigrationState.DRAINING.can_transition_to(MigrationState.FORWARD_STREAMING)
        assert not MigrationState.FORWARD_STREAMING.can_transition_to(
            MigrationState.FORWARD_STREAMING
        )

    @pytest.mark.parametrize("state", ORDER[:-1])
    def test_any_non_terminal_state_can_abort(self, state: MigrationState) -> None:
        assert state.can_transition_to(MigrationState.ABORTED)

    @pytest.mark.parametrize("state", [MigrationState.COMPLETE, MigrationState.ABORTED])
    def test_terminal_states_are_final(self, state: MigrationState) -> None:
        assert state.is_terminal
        assert not state.can_transition_to(MigrationState.ABORTED)
        assert not any(state.can_transition_to(other) for other in MigrationState)


class TestMigrationStateProperties:
    def test_gates(self) -> None:
        gates = {state for state in MigrationState if state.is_gate}

        assert gates == {MigrationState.DRAINING, MigrationState.CUTOVER_READY}

    def test_streaming_states(self) -> None:
        assert MigrationState.FORWARD_STREAMING.is_streaming
        assert MigrationState.REVERSE_STREAMING.is_streaming
        assert not MigrationState.BULK_VERIFYING.is_streaming
        assert not MigrationState.DECOMMISSIONING.is_streaming


class TestEnumHelpers:
    def test_direction_opposite(self) -> None:
        assert Direction.FORWARD.opposite == Direction.REVERSE
        assert Direction.REVERSE.opposite == Direction.FORWARD

    def test_session_active_states(self) -> None:
        assert SessionState.STALLED.is_active
        assert SessionState.PENDING.is_active
        assert not SessionState.STOPPING.is_active
        assert not SessionState.STOPPED.is_active

    def test_staging_unapplied_states(self) -> None:
        assert StagingStatus.PENDING.is_unapplied
        assert StagingStatus.RETRY_PENDING.is_unapplied
        assert not StagingStatus.FAILED.is_unapplied
        assert not StagingStatus.APPLIED.is_unapplied


# ============================================================================
# Endpoints and filters
# ============================================================================


class TestEndpointDescriptor:
    def test_password_is_redacted(self) -> None:
        descriptor = EndpointDescriptor(
            name="mysql", dialect="mysql", dsn="mysql://root:hunter2@db:3306/chinook"
        )

        assert descriptor.redacted_dsn == "mysql://root:***@db:3306/chinook"
        assert "hunter2" not in str(descriptor.to_dict())

    def test_dsn_without_password_is_unchanged(self) -> None:
        descriptor = EndpointDescriptor(
            name="crdb", dialect="cockroachdb", dsn="postgresql://root@crdb:26257/defaultdb"
        )

        assert descriptor.redacted_dsn == descriptor.dsn

    def test_str(self) -> None:
        assert str(endpoint("mysql")) == "mysql (mysql)"


class TestTableFilter:
    def test_default_skips_underscore_tables(self) -> None:
        table_filter = TableFilter()

        assert table_filter.matches("artist")
        assert table_filter.matches("chinook.artist")
        assert not table_filter.matches("_replicator_staging")
        assert not table_filter.matches("chinook._replicator_checkpoints")

    def test_pattern_is_a_case_insensitive_full_match(self) -> None:
        table_filter = TableFilter("artist|album")

        assert table_filter.matches("Artist")
        assert not table_filter.matches("artists")

    def test_invalid_pattern_is_rejected(self) -> None:
        with pytest.raises(ValueError, match="Invalid table filter"):
            TableFilter("(")


# ============================================================================
# Records and reports
# ============================================================================


class TestStagingRecord:
    def test_order_key_uses_commit_token_then_arrival(self) -> None:
        first = StagingRecord(1, create_event(2), arrival_seq=5, staged_at=NOW)
        second = StagingRecord(2, create_event(2, key=2), arrival_seq=6, staged_at=NOW)
        earlier = StagingRecord(3, create_event(1), arrival_seq=7, staged_at=NOW)

        ordered = sorted([second, earlier, first], key=lambda r: r.order_key)

        assert [r.record_id for r in ordered] == [3, 1, 2]

    def test_is_applied(self) -> None:
        record = StagingRecord(1, create_event(1), arrival_seq=1, staged_at=NOW)
        assert not record.is_applied

        record.status = StagingStatus.APPLIED
        assert record.is_applied


class TestVerificationReport:
    def test_passes_when_every_table_matches(self) -> None:
        report = VerificationReport(
            tables=(TableVerification("chinook.artist", source_rows=10, target_rows=10),)
        )

        assert report.passed
        assert report.failed_tables == []
        assert report.total_mismatches == 0

    def test_row_count_difference_fails(self) -> None:
        table = TableVerification("chinook.artist", source_rows=10, target_rows=9)

        assert not table.passed

    def test_failed_tables_and_truncation(self) -> None:
        report = VerificationReport(
            tables=(
                TableVerification("chinook.artist", source_rows=3, target_rows=3),
                TableVerification(
                    "chinook.album",
                    source_rows=5,
                    target_rows=5,
                    mismatch_count=3,
                    mismatched_keys=((1,), (2,)),
                ),
            )
        )

        assert not report.passed
        assert report.failed_tables == ["chinook.album"]
        assert report.total_mismatches == 3

        data = report.to_dict()
        album = data["tables"][1]
        assert data["passed"] is False
        assert album["mismatched_keys"] == [[1], [2]]
        assert album["truncated"] is True


# ============================================================================
# Run aggregate
# ============================================================================


class TestMigrationRun:
    def test_active_and_latest_session(self) -> None:
        stopped = create_session(Direction.FORWARD, SessionState.STOPPED)
        run = MigrationRun(id=uuid4(), source=endpoint(), target=endpoint("cockroach"))
        run.sessions.append(stopped)

        assert run.active_session(Direction.FORWARD) is None
        assert run.latest_session(Direction.FORWARD) is stopped
        assert run.latest_session(Direction.REVERSE) is None

        running = create_session(Direction.REVERSE, SessionState.RUNNING)
        run.sessions.append(running)
        assert run.active_session(Direction.REVERSE) is running

    def test_entered_at_and_started_at(self) -> None:
        run = MigrationRun(id=uuid4(), source=endpoint(), target=endpoint("cockroach"))
        run.transitions.append(
            StateTransition(MigrationState.NOT_STARTED, MigrationState.BULK_LOADING, at=NOW)
        )
        later = NOW + timedelta(minutes=5)
        run.transitions.append(
            StateTransition(MigrationState.BULK_LOADING, MigrationState.BULK_VERIFYING, at=later)
        )

        assert run.started_at == NOW
        assert run.entered_at(MigrationState.BULK_VERIFYING) == later
        assert run.entered_at(MigrationState.DRAINING) is None

    def test_latest_verification(self) -> None:
        run = MigrationRun(id=uuid4(), source=endpoint(), target=endpoint("cockroach"))
        assert run.latest_verification is None

        report = VerificationReport(tables=())
        run.verifications.append(report)
        assert run.latest_verification is report


class TestMigrationStatus:
    def test_to_dict(self) -> None:
        session_id = uuid4()
        status = MigrationStatus(
            run_id=uuid4(),
            state=MigrationState.DRAINING,
            sessions=(
                SessionStatus(
                    session_id=session_id,
                    direction=Direction.FORWARD,
                    state=SessionState.RUNNING,
                    cursor=str(source_token(4)),
                    backlog=2,
                    rows_applied=40,
                    last_event_at=NOW,
                    last_error=None,
                ),
            ),
            drain=DrainStatus(
                backlog=2,
                quiet_seconds=1.5,
                zero_backlog_seconds=0.0,
                drained=False,
                sampled_at=NOW,
            ),
            verification_passed=True,
        )

        data = status.to_dict()

        assert data["state"] == "draining"
        assert data["sessions"][0]["session_id"] == str(session_id)
        assert data["sessions"][0]["direction"] == "forward"
        assert data["sessions"][0]["last_event_at"] == NOW.isoformat()
        assert data["drain"]["drained"] is False
        assert data["verification_passed"] is True

    def test_to_dict_without_drain(self) -> None:
        status = MigrationStatus(run_id=uuid4(), state=MigrationState.NOT_STARTED)

        assert status.to_dict()["drain"] is None
