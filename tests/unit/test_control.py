"""
Unit tests for the operator console and autopilot.

Tests cover:
- Command name resolution
- Dispatch to the coordinator and the command history
- AutopilotPolicy validation
- run_autopilot stopping points
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from liveshift.connectors.in_memory import InMemoryDatabase
from liveshift.control import (
    AutopilotPolicy,
    OperatorCommand,
    OperatorConsole,
    run_autopilot,
)
from liveshift.coordinator import MigrationCoordinator
from liveshift.exceptions import InvalidTransition, UnknownCommandError
from liveshift.models import MigrationState, TableVerification, VerificationReport
from tests.fixtures import ARTIST_TABLE, create_coordinator, seed_artists


@pytest_asyncio.fixture
async def coordinator(
    source_db: InMemoryDatabase, target_db: InMemoryDatabase
) -> AsyncIterator[MigrationCoordinator]:
    await seed_artists(source_db, 1, 5)
    coordinator = create_coordinator(source_db, target_db)
    yield coordinator
    await coordinator.shutdown(force=True)


def mismatch_verifier() -> MagicMock:
    report = VerificationReport(
        tables=(TableVerification(ARTIST_TABLE, source_rows=5, target_rows=4, mismatch_count=1),)
    )
    verifier = MagicMock()
    verifier.verify = AsyncMock(return_value=report)
    return verifier


# ============================================================================
# Operator console
# ============================================================================


class TestCommandResolution:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("name", ["begin_drain", "BEGIN_DRAIN", "begin-drain", " begin_drain "])
    async def test_names_resolve(self, name: str) -> None:
        coordinator = MagicMock()
        coordinator.begin_drain = AsyncMock()
        coordinator.get_status = AsyncMock(return_value="status")
        console = OperatorConsole(coordinator)

        assert await console.execute(name) == "status"
        coordinator.begin_drain.assert_awaited_once_with(actor="operator")

    @pytest.mark.asyncio
    async def test_unknown_command(self, coordinator: MigrationCoordinator) -> None:
        console = OperatorConsole(coordinator)

        with pytest.raises(UnknownCommandError) as exc_info:
            await console.execute("rollback")

        assert exc_info.value.command == "rollback"
        assert console.history == []

    def test_read_only_commands(self) -> None:
        assert not OperatorCommand.STATUS.mutates
        assert not OperatorCommand.POLL.mutates
        assert OperatorCommand.ABORT.mutates


class TestConsoleDispatch:
    @pytest.mark.asyncio
    async def test_start_and_history(self, coordinator: MigrationCoordinator) -> None:
        console = OperatorConsole(coordinator, actor="alice")

        status = await console.execute(OperatorCommand.START)
        await console.execute("status")

        assert status.state == MigrationState.BULK_LOADING
        assert [record.command for record in console.history] == [OperatorCommand.START]
        assert console.history[0].actor == "alice"
        assert console.history[0].error is None
        assert coordinator.run.transitions[0].actor == "alice"

    @pytest.mark.asyncio
    async def test_actor_override(self, coordinator: MigrationCoordinator) -> None:
        console = OperatorConsole(coordinator, actor="alice")

        await console.execute("start", actor="bob")

        assert console.history[0].actor == "bob"
        assert "actor" not in console.history[0].arguments

    @pytest.mark.asyncio
    async def test_rejected_command_is_recorded_and_raised(
        self, coordinator: MigrationCoordinator
    ) -> None:
        console = OperatorConsole(coordinator)

        with pytest.raises(InvalidTransition):
            await console.execute("confirm_cutover")

        record = console.history[0]
        assert record.command == OperatorCommand.CONFIRM_CUTOVER
        assert record.error is not None
        assert "not_started" in record.error
        assert coordinator.state == MigrationState.NOT_STARTED

    @pytest.mark.asyncio
    async def test_abort_passes_reason(self, coordinator: MigrationCoordinator) -> None:
        console = OperatorConsole(coordinator)

        status = await console.execute("abort", reason="change freeze")

        assert status.state == MigrationState.ABORTED
        assert coordinator.run.last_error == "change freeze"
        assert console.history[0].arguments == {"reason": "change freeze"}

    @pytest.mark.asyncio
    async def test_session_commands_forward_arguments(self) -> None:
        coordinator = MagicMock()
        coordinator.resume_session = AsyncMock(return_value=2)
        coordinator.reseed_session = AsyncMock()
        coordinator.acknowledge_checkpoint = AsyncMock(return_value=0)
        coordinator.get_status = AsyncMock()
        console = OperatorConsole(coordinator)

        await console.execute("resume_session", direction="forward")
        await console.execute("reseed_session", direction="reverse", cursor="1700000000.0")
        await console.execute("acknowledge_checkpoint", direction="forward")

        coordinator.resume_session.assert_awaited_once_with("forward")
        coordinator.reseed_session.assert_awaited_once_with("reverse", "1700000000.0")
        coordinator.acknowledge_checkpoint.assert_awaited_once_with("forward", None)
        assert len(console.history) == 3


# ============================================================================
# Autopilot
# ============================================================================


class TestAutopilotPolicy:
    def test_defaults(self) -> None:
        policy = AutopilotPolicy()

        assert not policy.override_failed_verification
        assert not policy.decommission
        assert policy.stop_on_stall
        assert policy.actor == "autopilot"

    @pytest.mark.parametrize(
        "kwargs",
        [{"poll_interval_seconds": 0}, {"timeout_seconds": -1.0}],
    )
    def test_validation(self, kwargs: dict[str, float]) -> None:
        with pytest.raises(ValueError):
            AutopilotPolicy(**kwargs)


class TestRunAutopilot:
    @pytest.mark.asyncio
    async def test_stops_at_reverse_streaming(self, coordinator: MigrationCoordinator) -> None:
        policy = AutopilotPolicy(poll_interval_seconds=0.01, timeout_seconds=10.0)

        status = await run_autopilot(coordinator, policy)

        assert status.state == MigrationState.REVERSE_STREAMING
        assert {t.actor for t in coordinator.run.transitions} == {"autopilot", "coordinator"}

    @pytest.mark.asyncio
    async def test_decommissions_when_allowed(self, coordinator: MigrationCoordinator) -> None:
        policy = AutopilotPolicy(
            decommission=True, poll_interval_seconds=0.01, timeout_seconds=10.0
        )

        status = await run_autopilot(coordinator, policy)

        assert status.state == MigrationState.COMPLETE
        assert status.source_retired

    @pytest.mark.asyncio
    async def test_stops_on_failed_verification(
        self, source_db: InMemoryDatabase, target_db: InMemoryDatabase
    ) -> None:
        coordinator = create_coordinator(source_db, target_db, verifier=mismatch_verifier())
        policy = AutopilotPolicy(poll_interval_seconds=0.01, timeout_seconds=5.0)

        status = await run_autopilot(coordinator, policy)

        assert status.state == MigrationState.BULK_VERIFYING
        assert status.verification_passed is False
        assert coordinator.run.verification_override is None

    @pytest.mark.asyncio
    async def test_overrides_failed_verification_when_allowed(
        self, source_db: InMemoryDatabase, target_db: InMemoryDatabase
    ) -> None:
        coordinator = create_coordinator(source_db, target_db, verifier=mismatch_verifier())
        policy = AutopilotPolicy(
            override_failed_verification=True,
            override_reason="row counts reconciled manually",
            poll_interval_seconds=0.01,
            timeout_seconds=10.0,
        )

        try:
            status = await run_autopilot(coordinator, policy)
        finally:
            await coordinator.shutdown(force=True)

        assert status.state == MigrationState.REVERSE_STREAMING
        assert status.verification_overridden
        assert coordinator.run.verification_override == "row counts reconciled manually"

    @pytest.mark.asyncio
    async def test_returns_terminal_state(self, coordinator: MigrationCoordinator) -> None:
        await coordinator.abort("cancelled before start")

        status = await run_autopilot(coordinator, AutopilotPolicy(poll_interval_seconds=0.01))

        assert status.state == MigrationState.ABORTED

    @pytest.mark.asyncio
    async def test_timeout(self) -> None:
        coordinator = MagicMock()
        coordinator.poll = AsyncMock(
            return_value=MagicMock(state=MigrationState.BULK_LOADING, sessions=())
        )
        policy = AutopilotPolicy(poll_interval_seconds=0.01, timeout_seconds=0.05)

        with pytest.raises(TimeoutError):
            await run_autopilot(coordinator, policy)
