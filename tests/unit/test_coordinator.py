"""
Unit tests for MigrationCoordinator.

Tests cover:
- State machine enforcement (rejected commands leave the run unchanged)
- Bulk load and verification completion through poll()
- Failed verification: alert, override, abort
- Bulk load failure aborting the run
- Drain certification and drain timeout alerts
- Cutover: forward stop, reverse seeding, backlog wait, retry after a failed start
- Session stall alerts, resume and reseed through the coordinator
- Checkpoint acknowledgement and staging purge
- Decommission and abort
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Sequence
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from liveshift.config import DrainConfig, SessionConfig
from liveshift.connectors.in_memory import (
    InMemoryBulkLoader,
    InMemoryDatabase,
    InMemoryTargetConnector,
)
from liveshift.connectors.interface import Endpoint
from liveshift.coordinator import MigrationCoordinator
from liveshift.cursors import SourceCursor, TargetCursor
from liveshift.events import ChangeEvent
from liveshift.exceptions import (
    DrainTimeout,
    InvalidTransition,
    SessionNotFoundError,
)
from liveshift.models import (
    Direction,
    MigrationState,
    SessionState,
    TableVerification,
    VerificationReport,
)
from liveshift.retry import RetryConfig
from liveshift.staging.in_memory import InMemoryStagingStore
from tests.fixtures import (
    ARTIST_TABLE,
    BlockingBulkLoader,
    create_coordinator,
    fast_config,
    poll_until,
    seed_artists,
    source_token,
    wait_until,
)

FAILED_REPORT = VerificationReport(
    tables=(
        TableVerification(
            ARTIST_TABLE,
            source_rows=10,
            target_rows=10,
            mismatch_count=5,
            mismatched_keys=((1,), (2,), (3,), (4,), (5,)),
        ),
    )
)


class GatedConnector(InMemoryTargetConnector):
    """Applies only while ``gate`` is set (open by default)."""

    def __init__(self, database: InMemoryDatabase) -> None:
        super().__init__(database)
        self.gate = asyncio.Event()
        self.gate.set()

    async def apply(self, events: Sequence[ChangeEvent]) -> None:
        await self.gate.wait()
        await super().apply(events)


def failing_verifier(report: VerificationReport = FAILED_REPORT) -> MagicMock:
    verifier = MagicMock()
    verifier.verify = AsyncMock(return_value=report)
    return verifier


@pytest_asyncio.fixture
async def coordinator(
    source_db: InMemoryDatabase, target_db: InMemoryDatabase
) -> AsyncIterator[MigrationCoordinator]:
    await seed_artists(source_db, 1, 10)
    coordinator = create_coordinator(source_db, target_db)
    yield coordinator
    await coordinator.shutdown(force=True)


async def reach_forward_streaming(coordinator: MigrationCoordinator) -> None:
    await coordinator.start()
    status = await coordinator.wait_for_state(MigrationState.FORWARD_STREAMING, timeout=5.0)
    assert status.state == MigrationState.FORWARD_STREAMING


async def reach_cutover_ready(coordinator: MigrationCoordinator) -> None:
    await reach_forward_streaming(coordinator)
    await coordinator.begin_drain()
    status = await coordinator.wait_for_state(MigrationState.CUTOVER_READY, timeout=5.0)
    assert status.state == MigrationState.CUTOVER_READY


# ============================================================================
# State machine enforcement
# ============================================================================


class TestStateMachine:
    @pytest.mark.asyncio
    async def test_initial_status(self, coordinator: MigrationCoordinator) -> None:
        status = await coordinator.get_status()

        assert status.state == MigrationState.NOT_STARTED
        assert status.run_id == coordinator.run.id
        assert status.sessions == ()
        assert status.verification_passed is None

    @pytest.mark.asyncio
    async def test_start_twice_is_rejected(self, coordinator: MigrationCoordinator) -> None:
        await coordinator.start()
        transitions = list(coordinator.run.transitions)

        with pytest.raises(InvalidTransition) as exc_info:
            await coordinator.start()

        assert exc_info.value.current_state == MigrationState.BULK_LOADING
        assert coordinator.run.transitions == transitions

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "command",
        ["begin_drain", "confirm_cutover", "decommission"],
    )
    async def test_commands_out_of_order_are_rejected(
        self, coordinator: MigrationCoordinator, command: str
    ) -> None:
        with pytest.raises(InvalidTransition):
            await getattr(coordinator, command)()

        assert coordinator.state == MigrationState.NOT_STARTED
        assert coordinator.run.transitions == []

    @pytest.mark.asyncio
    async def test_forward_streaming_cannot_be_entered_twice(
        self, coordinator: MigrationCoordinator
    ) -> None:
        await reach_forward_streaming(coordinator)

        with pytest.raises(InvalidTransition) as exc_info:
            await coordinator.override_verification("again")

        assert exc_info.value.target_state == MigrationState.FORWARD_STREAMING
        assert len(coordinator.run.sessions) == 1
        assert coordinator.state == MigrationState.FORWARD_STREAMING

    @pytest.mark.asyncio
    async def test_transitions_are_recorded(self, coordinator: MigrationCoordinator) -> None:
        await reach_forward_streaming(coordinator)

        path = [(t.from_state, t.to_state) for t in coordinator.run.transitions]

        assert path == [
            (MigrationState.NOT_STARTED, MigrationState.BULK_LOADING),
            (MigrationState.BULK_LOADING, MigrationState.BULK_VERIFYING),
            (MigrationState.BULK_VERIFYING, MigrationState.FORWARD_STREAMING),
        ]
        assert coordinator.run.started_at is not None
        assert coordinator.metrics.get_snapshot().transitions == [
            "not_started->bulk_loading",
            "bulk_loading->bulk_verifying",
            "bulk_verifying->forward_streaming",
        ]

    @pytest.mark.asyncio
    async def test_wait_for_state_times_out(
        self, source_db: InMemoryDatabase, target_db: InMemoryDatabase
    ) -> None:
        loader = BlockingBulkLoader(source_db, target_db)
        coordinator = create_coordinator(source_db, target_db, bulk_loader=loader)
        await coordinator.start()

        try:
            with pytest.raises(TimeoutError):
                await coordinator.wait_for_state(MigrationState.FORWARD_STREAMING, timeout=0.1)
        finally:
            await coordinator.shutdown(force=True)

        assert coordinator.state == MigrationState.BULK_LOADING


# ============================================================================
# Bulk load and verification
# ============================================================================


class TestBulkLoadAndVerification:
    @pytest.mark.asyncio
    async def test_passing_verification_starts_forward_session(
        self,
        coordinator: MigrationCoordinator,
        target_db: InMemoryDatabase,
    ) -> None:
        await reach_forward_streaming(coordinator)

        run = coordinator.run
        assert run.bulk_load is not None
        assert run.bulk_load.result.total_rows == 10
        assert run.bulk_load.duration >= timedelta(0)
        assert run.latest_verification is not None
        assert run.latest_verification.passed
        assert target_db.count(ARTIST_TABLE) == 10

        forward = coordinator.pipeline(Direction.FORWARD)
        assert forward.session.seed_cursor == source_token(10)
        assert forward.session.state == SessionState.RUNNING

    @pytest.mark.asyncio
    async def test_writes_during_forward_streaming_replicate(
        self,
        coordinator: MigrationCoordinator,
        source_db: InMemoryDatabase,
        target_db: InMemoryDatabase,
    ) -> None:
        await reach_forward_streaming(coordinator)

        await seed_artists(source_db, 11, 5)
        await wait_until(lambda: target_db.count(ARTIST_TABLE) == 15)
        forward = coordinator.pipeline(Direction.FORWARD)
        await wait_until(lambda: forward.session.rows_applied == 5)

        status = await coordinator.get_status()
        assert status.sessions[0].direction == Direction.FORWARD
        assert status.sessions[0].rows_applied == 5

    @pytest.mark.asyncio
    async def test_failed_verification_waits_for_operator(
        self, source_db: InMemoryDatabase, target_db: InMemoryDatabase
    ) -> None:
        coordinator = create_coordinator(source_db, target_db, verifier=failing_verifier())
        await coordinator.start()

        status = await poll_until(coordinator, lambda s: s.verification_passed is False)
        await coordinator.poll()

        assert coordinator.state == MigrationState.BULK_VERIFYING
        assert coordinator.run.sessions == []
        assert [alert["error_code"] for alert in status.alerts] == ["VERIFICATION_MISMATCH"]

    @pytest.mark.asyncio
    async def test_override_starts_forward_streaming(
        self, source_db: InMemoryDatabase, target_db: InMemoryDatabase
    ) -> None:
        coordinator = create_coordinator(source_db, target_db, verifier=failing_verifier())
        await coordinator.start()
        await poll_until(coordinator, lambda s: s.verification_passed is False)

        try:
            status = await coordinator.override_verification("known drift", actor="alice")
        finally:
            await coordinator.shutdown(force=True)

        assert status.state == MigrationState.FORWARD_STREAMING
        assert status.verification_overridden
        assert coordinator.run.verification_override == "known drift"
        assert coordinator.run.transitions[-1].actor == "alice"

    @pytest.mark.asyncio
    async def test_override_before_report_is_rejected(
        self, source_db: InMemoryDatabase, target_db: InMemoryDatabase
    ) -> None:
        release = asyncio.Event()

        async def slow_verify(*args: object) -> VerificationReport:
            await release.wait()
            return FAILED_REPORT

        verifier = MagicMock()
        verifier.verify = AsyncMock(side_effect=slow_verify)
        coordinator = create_coordinator(source_db, target_db, verifier=verifier)
        await coordinator.start()
        await coordinator.wait_for_state(MigrationState.BULK_VERIFYING, timeout=5.0)

        try:
            with pytest.raises(InvalidTransition, match="has not finished"):
                await coordinator.override_verification("impatient")
        finally:
            release.set()
            await coordinator.shutdown(force=True)

        assert coordinator.state == MigrationState.BULK_VERIFYING

    @pytest.mark.asyncio
    async def test_mismatch_sample_is_capped(
        self, source_db: InMemoryDatabase, target_db: InMemoryDatabase
    ) -> None:
        coordinator = create_coordinator(
            source_db,
            target_db,
            verifier=failing_verifier(),
            config=fast_config(verification_sample_limit=2),
        )
        await coordinator.start()
        await poll_until(coordinator, lambda s: s.verification_passed is False)

        report = coordinator.run.latest_verification
        assert report is not None
        assert report.tables[0].mismatched_keys == ((1,), (2,))
        assert report.tables[0].mismatch_count == 5
        assert report.tables[0].truncated

    @pytest.mark.asyncio
    async def test_verifier_error_raises_alert(
        self, source_db: InMemoryDatabase, target_db: InMemoryDatabase
    ) -> None:
        verifier = MagicMock()
        verifier.verify = AsyncMock(side_effect=ConnectionError("verifier unreachable"))
        coordinator = create_coordinator(source_db, target_db, verifier=verifier)
        await coordinator.start()

        status = await poll_until(coordinator, lambda s: bool(s.alerts))

        assert status.alerts[0]["error_code"] == "VERIFIER_FAILED"
        assert "verifier unreachable" in status.alerts[0]["message"]
        assert status.state == MigrationState.BULK_VERIFYING

    @pytest.mark.asyncio
    async def test_bulk_load_failure_aborts(
        self, source_db: InMemoryDatabase, target_db: InMemoryDatabase
    ) -> None:
        loader = InMemoryBulkLoader(source_db, target_db, error=OSError("disk full"))
        coordinator = create_coordinator(source_db, target_db, bulk_loader=loader)
        await coordinator.start()

        status = await coordinator.wait_for_state(MigrationState.FORWARD_STREAMING, timeout=5.0)

        assert status.state == MigrationState.ABORTED
        assert status.alerts[0]["error_code"] == "BULK_LOAD_FAILED"
        assert "bulk load failed" in (coordinator.run.last_error or "")
        assert coordinator.run.completed_at is not None


# ============================================================================
# Drain and cutover
# ============================================================================


class TestDrain:
    @pytest.mark.asyncio
    async def test_drain_certifies_cutover_ready(
        self,
        coordinator: MigrationCoordinator,
        source_db: InMemoryDatabase,
        target_db: InMemoryDatabase,
    ) -> None:
        await reach_forward_streaming(coordinator)
        await seed_artists(source_db, 11, 3)

        await coordinator.begin_drain()
        status = await coordinator.wait_for_state(MigrationState.CUTOVER_READY, timeout=5.0)

        assert status.state == MigrationState.CUTOVER_READY
        assert status.drain is not None
        assert status.drain.drained
        assert target_db.count(ARTIST_TABLE) == 13

    @pytest.mark.asyncio
    async def test_drain_timeout_alerts_once(
        self, source_db: InMemoryDatabase, target_db: InMemoryDatabase
    ) -> None:
        config = fast_config(
            drain=DrainConfig(
                quiet_period_seconds=60.0,
                sustained_window_seconds=0.1,
                drain_timeout_seconds=0.2,
                sample_interval_seconds=0.01,
            )
        )
        coordinator = create_coordinator(source_db, target_db, config=config)
        await reach_forward_streaming(coordinator)
        await coordinator.begin_drain()

        try:
            await poll_until(coordinator, lambda s: bool(s.alerts))
            for _ in range(5):
                await asyncio.sleep(0.02)
                status = await coordinator.poll()
        finally:
            await coordinator.shutdown(force=True)

        codes = [alert["error_code"] for alert in status.alerts]
        assert codes == ["DRAIN_TIMEOUT"]
        assert status.state == MigrationState.DRAINING


class TestCutover:
    @pytest.mark.asyncio
    async def test_cutover_starts_reverse_replication(
        self,
        coordinator: MigrationCoordinator,
        source_db: InMemoryDatabase,
        target_db: InMemoryDatabase,
    ) -> None:
        await reach_cutover_ready(coordinator)
        target_position = target_db.current_position()

        status = await coordinator.confirm_cutover()

        assert status.state == MigrationState.REVERSE_STREAMING
        forward = coordinator.run.latest_session(Direction.FORWARD)
        reverse = coordinator.pipeline(Direction.REVERSE).session
        assert forward is not None
        assert forward.state == SessionState.STOPPED
        assert reverse.seed_cursor == target_position
        assert reverse.state == SessionState.RUNNING

        await target_db.insert(ARTIST_TABLE, {"ArtistId": 99, "Name": "Written on target"})
        await wait_until(lambda: source_db.get(ARTIST_TABLE, (99,)) is not None)

    @pytest.mark.asyncio
    async def test_cutover_waits_for_backlog_then_times_out(
        self, source_db: InMemoryDatabase, target_db: InMemoryDatabase
    ) -> None:
        connector = GatedConnector(target_db)
        target = Endpoint(
            descriptor=target_db.descriptor,
            changes=target_db.endpoint().changes,
            connector=connector,
            primary_keys=target_db.primary_keys,
        )
        config = fast_config(
            session=SessionConfig(
                poll_interval_seconds=0.01,
                reconnect=RetryConfig(initial_delay=0.01, max_delay=0.05),
                stop_timeout_seconds=0.2,
            )
        )
        coordinator = create_coordinator(source_db, target_db, target=target, config=config)
        await reach_cutover_ready(coordinator)

        connector.gate.clear()
        await seed_artists(source_db, 50, 1)

        try:
            with pytest.raises(DrainTimeout):
                await coordinator.confirm_cutover()
            assert coordinator.state == MigrationState.CUTOVER_READY
            assert coordinator.run.alerts[-1]["error_code"] == "DRAIN_TIMEOUT"
            assert coordinator.pipeline(Direction.FORWARD).session.is_active

            connector.gate.set()
            status = await coordinator.confirm_cutover()
        finally:
            await coordinator.shutdown(force=True)

        assert status.state == MigrationState.REVERSE_STREAMING
        assert target_db.get(ARTIST_TABLE, (50,)) is not None


    @pytest.mark.asyncio
    async def test_failed_reverse_start_can_be_retried(
        self, source_db: InMemoryDatabase, target_db: InMemoryDatabase
    ) -> None:
        failures = [ConnectionError("staging database unavailable")]

        class FlakyStagingStore(InMemoryStagingStore):
            async def checkpoint(self) -> SourceCursor | TargetCursor | None:
                if failures:
                    raise failures.pop()
                return await super().checkpoint()

        async def staging_factory(direction: Direction) -> InMemoryStagingStore:
            if direction == Direction.REVERSE:
                return FlakyStagingStore(direction.value, enable_tracing=False)
            return InMemoryStagingStore(direction.value, enable_tracing=False)

        coordinator = create_coordinator(source_db, target_db, staging_factory=staging_factory)
        await reach_cutover_ready(coordinator)

        try:
            with pytest.raises(ConnectionError):
                await coordinator.confirm_cutover()
            assert coordinator.state == MigrationState.CUTOVER_READY
            assert coordinator.run.active_session(Direction.REVERSE) is None

            status = await coordinator.confirm_cutover()
        finally:
            await coordinator.shutdown(force=True)

        assert status.state == MigrationState.REVERSE_STREAMING
        reverse = [s for s in coordinator.run.sessions if s.direction == Direction.REVERSE]
        assert len(reverse) == 1
        assert reverse[0].state == SessionState.RUNNING

# ============================================================================
# Sessions through the coordinator
# ============================================================================


class TestSessionCommands:
    @pytest.mark.asyncio
    async def test_unknown_session_is_reported(self, coordinator: MigrationCoordinator) -> None:
        with pytest.raises(SessionNotFoundError):
            await coordinator.resume_session(Direction.REVERSE)

        with pytest.raises(SessionNotFoundError):
            coordinator.pipeline(Direction.FORWARD)

    @pytest.mark.asyncio
    async def test_stall_raises_alert_and_resume_recovers(
        self, source_db: InMemoryDatabase, target_db: InMemoryDatabase
    ) -> None:
        await seed_artists(source_db, 1, 3)
        target = target_db.endpoint()
        coordinator = create_coordinator(source_db, target_db, target=target)
        await reach_forward_streaming(coordinator)
        assert isinstance(target.connector, InMemoryTargetConnector)

        target.connector.fail_always(ValueError("check constraint violated"))
        await seed_artists(source_db, 4, 1)

        try:
            status = await poll_until(
                coordinator,
                lambda s: s.sessions[0].state == SessionState.STALLED,
            )
            alert = status.alerts[-1]
            assert alert["error_code"] == "APPLY_STALLED"
            assert alert["direction"] == "forward"
            assert status.state == MigrationState.FORWARD_STREAMING

            target.connector.clear_failures()
            assert await coordinator.resume_session("forward") == 1
            await wait_until(lambda: target_db.get(ARTIST_TABLE, (4,)) is not None)
        finally:
            await coordinator.shutdown(force=True)

    @pytest.mark.asyncio
    async def test_reseed_through_coordinator(
        self, coordinator: MigrationCoordinator
    ) -> None:
        await reach_forward_streaming(coordinator)

        status = await coordinator.reseed_session("forward", str(source_token(4)))

        assert status.state == MigrationState.FORWARD_STREAMING
        assert status.sessions[0].state == SessionState.RUNNING
        assert coordinator.pipeline(Direction.FORWARD).session.seed_cursor == source_token(4)

    @pytest.mark.asyncio
    async def test_acknowledge_checkpoint_purges_old_records(
        self,
        coordinator: MigrationCoordinator,
        source_db: InMemoryDatabase,
        target_db: InMemoryDatabase,
    ) -> None:
        await reach_forward_streaming(coordinator)
        await seed_artists(source_db, 11, 4)
        await wait_until(lambda: target_db.count(ARTIST_TABLE) == 14)
        await coordinator.pipeline(Direction.FORWARD).wait_until_idle()

        assert await coordinator.acknowledge_checkpoint("forward") == 0
        purged = await coordinator.acknowledge_checkpoint(
            Direction.FORWARD, older_than=datetime.now(UTC) + timedelta(minutes=1)
        )

        assert purged == 4


# ============================================================================
# Terminal states
# ============================================================================


class TestTerminalStates:
    @pytest.mark.asyncio
    async def test_decommission_completes_the_run(
        self, coordinator: MigrationCoordinator
    ) -> None:
        await reach_cutover_ready(coordinator)
        await coordinator.confirm_cutover()

        status = await coordinator.decommission(actor="alice")

        assert status.state == MigrationState.COMPLETE
        assert status.source_retired
        assert coordinator.run.completed_at is not None
        assert coordinator.pipeline(Direction.REVERSE).session.state == SessionState.STOPPED
        assert all(not s.is_active for s in coordinator.run.sessions)

    @pytest.mark.asyncio
    async def test_abort_during_bulk_load(
        self, source_db: InMemoryDatabase, target_db: InMemoryDatabase
    ) -> None:
        loader = BlockingBulkLoader(source_db, target_db)
        coordinator = create_coordinator(source_db, target_db, bulk_loader=loader)
        await coordinator.start()
        await asyncio.wait_for(loader.started.wait(), timeout=5.0)

        status = await coordinator.abort("wrong target cluster")

        assert status.state == MigrationState.ABORTED
        assert coordinator.run.last_error == "wrong target cluster"
        assert target_db.count(ARTIST_TABLE) == 0

        with pytest.raises(InvalidTransition):
            await coordinator.abort("again")

    @pytest.mark.asyncio
    async def test_abort_stops_sessions(self, coordinator: MigrationCoordinator) -> None:
        await reach_forward_streaming(coordinator)

        await coordinator.abort("rollback", force=True)

        assert coordinator.state == MigrationState.ABORTED
        assert coordinator.pipeline(Direction.FORWARD).session.state == SessionState.STOPPED

        with pytest.raises(InvalidTransition):
            await coordinator.begin_drain()

    @pytest.mark.asyncio
    async def test_shutdown_keeps_state(self, coordinator: MigrationCoordinator) -> None:
        await reach_forward_streaming(coordinator)

        await coordinator.shutdown()

        assert coordinator.state == MigrationState.FORWARD_STREAMING
        assert coordinator.pipeline(Direction.FORWARD).session.state == SessionState.STOPPED

    @pytest.mark.asyncio
    async def test_status_serializes(self, coordinator: MigrationCoordinator) -> None:
        await reach_forward_streaming(coordinator)

        data = (await coordinator.get_status()).to_dict()

        assert data["state"] == "forward_streaming"
        assert data["sessions"][0]["direction"] == "forward"
        assert data["verification_passed"] is True
