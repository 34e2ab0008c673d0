"""
Operator control surface.

The migration pauses at explicit gates (``DRAINING``, ``CUTOVER_READY``)
instead of blocking for input. Those gates are advanced either by an
operator issuing commands through ``OperatorConsole`` or by
``run_autopilot`` applying an ``AutopilotPolicy``.

Usage:
    >>> console = OperatorConsole(coordinator)
    >>> await console.execute("start")
    >>> await console.execute(OperatorCommand.BEGIN_DRAIN)
    >>> await console.execute("abort", reason="target rejected writes")
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from liveshift.coordinator import MigrationCoordinator
from liveshift.exceptions import UnknownCommandError
from liveshift.models import MigrationState, MigrationStatus, SessionState

logger = logging.getLogger(__name__)


class OperatorCommand(Enum):
    """Commands accepted by the operator console."""

    START = "start"
    STATUS = "status"
    POLL = "poll"
    OVERRIDE_VERIFICATION = "override_verification"
    BEGIN_DRAIN = "begin_drain"
    CONFIRM_CUTOVER = "confirm_cutover"
    DECOMMISSION = "decommission"
    ABORT = "abort"
    RESUME_SESSION = "resume_session"
    RESEED_SESSION = "reseed_session"
    ACKNOWLEDGE_CHECKPOINT = "acknowledge_checkpoint"

    @property
    def mutates(self) -> bool:
        """Whether the command can change the run or its sessions."""
        return self not in (OperatorCommand.STATUS, OperatorCommand.POLL)


@dataclass(frozen=True)
class CommandRecord:
    """Audit entry for one executed command."""

    command: OperatorCommand
    arguments: dict[str, Any]
    actor: str
    executed_at: datetime
    error: str | None = None


class OperatorConsole:
    """
    Dispatches operator commands to a coordinator.

    Every command returns the run status after it executed. Errors from
    the coordinator (``InvalidTransition`` in particular) propagate
    unchanged, after being recorded in the command history.

    Example:
        >>> console = OperatorConsole(coordinator, actor="alice")
        >>> status = await console.execute("override_verification", reason="known drift")
    """

    def __init__(self, coordinator: MigrationCoordinator, *, actor: str = "operator") -> None:
        self._coordinator = coordinator
        self._actor = actor
        self._history: list[CommandRecord] = []
        self._handlers: dict[OperatorCommand, Callable[..., Awaitable[Any]]] = {
            OperatorCommand.START: self._start,
            OperatorCommand.STATUS: self._status,
            OperatorCommand.POLL: self._poll,
            OperatorCommand.OVERRIDE_VERIFICATION: self._override_verification,
            OperatorCommand.BEGIN_DRAIN: self._begin_drain,
            OperatorCommand.CONFIRM_CUTOVER: self._confirm_cutover,
            OperatorCommand.DECOMMISSION: self._decommission,
            OperatorCommand.ABORT: self._abort,
            OperatorCommand.RESUME_SESSION: self._resume_session,
            OperatorCommand.RESEED_SESSION: self._reseed_session,
            OperatorCommand.ACKNOWLEDGE_CHECKPOINT: self._acknowledge_checkpoint,
        }

    @property
    def history(self) -> list[CommandRecord]:
        return list(self._history)

    async def execute(
        self,
        command: OperatorCommand | str,
        **arguments: Any,
    ) -> MigrationStatus:
        """
        Execute a command.

        Args:
            command: Command or its name
            **arguments: Command arguments (e.g. ``reason``, ``direction``)

        Returns:
            The run status after the command

        Raises:
            UnknownCommandError: If the command is not recognized
        """
        resolved = self._resolve(command)
        handler = self._handlers[resolved]
        actor = arguments.pop("actor", self._actor)

        try:
            await handler(actor=actor, **arguments)
        except Exception as e:
            self._record(resolved, arguments, actor, error=str(e))
            logger.warning("Command %s from %s failed: %s", resolved.value, actor, e)
            raise

        if resolved.mutates:
            self._record(resolved, arguments, actor)
            logger.info("Command %s executed by %s", resolved.value, actor)
        return await self._coordinator.get_status()

    @staticmethod
    def _resolve(command: OperatorCommand | str) -> OperatorCommand:
        if isinstance(command, OperatorCommand):
            return command
        try:
            return OperatorCommand(command.strip().lower().replace("-", "_"))
        except ValueError:
            raise UnknownCommandError(command) from None

    def _record(
        self,
        command: OperatorCommand,
        arguments: dict[str, Any],
        actor: str,
        error: str | None = None,
    ) -> None:
        self._history.append(
            CommandRecord(
                command=command,
                arguments=dict(arguments),
                actor=actor,
                executed_at=datetime.now(UTC),
                error=error,
            )
        )

    # Handlers

    async def _start(self, *, actor: str, table_filter: Any = None) -> None:
        await self._coordinator.start(table_filter, actor=actor)

    async def _status(self, *, actor: str) -> None:
        return None

    async def _poll(self, *, actor: str) -> None:
        await self._coordinator.poll()

    async def _override_verification(self, *, actor: str, reason: str) -> None:
        await self._coordinator.override_verification(reason, actor=actor)

    async def _begin_drain(self, *, actor: str) -> None:
        await self._coordinator.begin_drain(actor=actor)

    async def _confirm_cutover(self, *, actor: str) -> None:
        await self._coordinator.confirm_cutover(actor=actor)

    async def _decommission(self, *, actor: str) -> None:
        await self._coordinator.decommission(actor=actor)

    async def _abort(self, *, actor: str, reason: str, force: bool = False) -> None:
        await self._coordinator.abort(reason, force=force, actor=actor)

    async def _resume_session(self, *, actor: str, direction: str) -> None:
        await self._coordinator.resume_session(direction)

    async def _reseed_session(self, *, actor: str, direction: str, cursor: Any) -> None:
        await self._coordinator.reseed_session(direction, cursor)

    async def _acknowledge_checkpoint(
        self,
        *,
        actor: str,
        direction: str,
        older_than: datetime | None = None,
    ) -> None:
        await self._coordinator.acknowledge_checkpoint(direction, older_than)


@dataclass(frozen=True)
class AutopilotPolicy:
    """
    Decisions the autopilot takes in place of an operator.

    Attributes:
        override_failed_verification: Proceed past a failed verification
            instead of waiting for an operator.
        override_reason: Reason recorded with an automatic override.
        decommission: Retire the source after cutover. If False the
            autopilot stops once reverse streaming has started.
        stop_on_stall: Return as soon as a session stalls.
        poll_interval_seconds: Delay between polls.
        timeout_seconds: Give up after this long (None = no limit).
        actor: Name recorded on the transitions the autopilot makes.
    """

    override_failed_verification: bool = False
    override_reason: str = "overridden by autopilot policy"
    decommission: bool = False
    stop_on_stall: bool = True
    poll_interval_seconds: float = 0.1
    timeout_seconds: float | None = None
    actor: str = "autopilot"

    def __post_init__(self) -> None:
        if self.poll_interval_seconds <= 0:
            raise ValueError(
                f"poll_interval_seconds must be positive, got {self.poll_interval_seconds}"
            )
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise ValueError(f"timeout_seconds must be positive, got {self.timeout_seconds}")


async def run_autopilot(
    coordinator: MigrationCoordinator,
    policy: AutopilotPolicy | None = None,
) -> MigrationStatus:
    """
    Drive a migration through its gates without an operator.

    Returns when the run reaches the point the policy stops at, when it
    needs a decision the policy does not allow (a failed verification
    without override, a stalled session), or when it becomes terminal.

    Raises:
        TimeoutError: If ``policy.timeout_seconds`` elapses first
    """
    policy = policy or AutopilotPolicy()
    actor = policy.actor

    async with asyncio.timeout(policy.timeout_seconds):
        while True:
            status = await coordinator.poll()
            state = status.state

            if state.is_terminal:
                return status

            if policy.stop_on_stall and any(
                session.state == SessionState.STALLED for session in status.sessions
            ):
                logger.warning("Autopilot stopping: a session stalled in state %s", state.value)
                return status

            if state == MigrationState.NOT_STARTED:
                await coordinator.start(actor=actor)
                continue

            if state == MigrationState.BULK_VERIFYING and status.verification_passed is False:
                if not policy.override_failed_verification:
                    logger.warning("Autopilot stopping: verification failed")
                    return status
                await coordinator.override_verification(policy.override_reason, actor=actor)
                continue

            if state == MigrationState.FORWARD_STREAMING:
                await coordinator.begin_drain(actor=actor)
                continue

            if state == MigrationState.CUTOVER_READY:
                await coordinator.confirm_cutover(actor=actor)
                continue

            if state == MigrationState.REVERSE_STREAMING:
                if not policy.decommission:
                    return status
                await coordinator.decommission(actor=actor)
                continue

            await asyncio.sleep(policy.poll_interval_seconds)


__all__ = [
    "OperatorCommand",
    "OperatorConsole",
    "CommandRecord",
    "AutopilotPolicy",
    "run_autopilot",
]
