"""
MigrationCoordinator - Orchestrates a bidirectional migration.

The coordinator owns one ``MigrationRun`` and is the single authority
over its state. Long-running work (bulk load, verification, replication)
runs in background tasks; commands only validate, start or stop that
work, and move the run through its state machine.

State machine:
    NOT_STARTED -> BULK_LOADING: ``start()`` launches the snapshot copy
    BULK_LOADING -> BULK_VERIFYING: ``poll()`` sees the copy finish and
        launches the verifier
    BULK_VERIFYING -> FORWARD_STREAMING: ``poll()`` sees a passing report,
        or ``override_verification()`` accepts a failing one; the forward
        session is seeded at the bulk-load cursor
    FORWARD_STREAMING -> DRAINING: ``begin_drain()``
    DRAINING -> CUTOVER_READY: ``poll()`` certifies the forward backlog drained
    CUTOVER_READY -> REVERSE_STREAMING: ``confirm_cutover()`` stops the forward
        session and seeds the reverse one at the target's current position
    REVERSE_STREAMING -> DECOMMISSIONING -> COMPLETE: ``decommission()``
    Any non-terminal state -> ABORTED: ``abort()`` or a failed bulk load

Every command validates its transition before touching any state, so a
rejected command leaves the run exactly as it was.

Usage:
    >>> coordinator = MigrationCoordinator(
    ...     source=mysql_endpoint,
    ...     target=cockroach_endpoint,
    ...     bulk_loader=loader,
    ...     verifier=verifier,
    ... )
    >>> await coordinator.start()
    >>> await coordinator.wait_for_state(MigrationState.FORWARD_STREAMING)
    >>> await coordinator.begin_drain()
    >>> await coordinator.wait_for_state(MigrationState.CUTOVER_READY)
    >>> await coordinator.confirm_cutover()
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

from liveshift.config import MigrationConfig
from liveshift.connectors.interface import BulkLoader, Endpoint, Verifier
from liveshift.cursors import SourceCursor, TargetCursor
from liveshift.drain import DrainDetector
from liveshift.exceptions import (
    BulkLoadError,
    DrainTimeout,
    InvalidTransition,
    LiveShiftError,
    SessionAlreadyActiveError,
    SessionNotFoundError,
    VerificationMismatch,
)
from liveshift.metrics import MigrationMetrics
from liveshift.models import (
    BulkLoadRecord,
    BulkLoadResult,
    Direction,
    MigrationRun,
    MigrationState,
    MigrationStatus,
    ReplicationSession,
    SessionStatus,
    StateTransition,
    TableFilter,
    VerificationReport,
)
from liveshift.observability import (
    ATTR_ACTOR,
    ATTR_FROM_STATE,
    ATTR_RUN_ID,
    ATTR_STATE,
    ATTR_TO_STATE,
    Tracer,
    create_tracer,
)
from liveshift.session import ReplicationPipeline
from liveshift.staging.in_memory import InMemoryStagingStore
from liveshift.staging.interface import StagingStore

logger = logging.getLogger(__name__)

StagingFactory = Callable[[Direction], Awaitable[StagingStore]]


class MigrationCoordinator:
    """
    Drives one migration run from bulk load to decommission.

    Bulk load and verification are awaited in background tasks and
    completed by ``poll()``, so ``abort()`` is accepted while they run.
    Replication sessions run as ``ReplicationPipeline`` instances; a
    stalled session raises an alert but never aborts the run on its own.

    Example:
        >>> coordinator = MigrationCoordinator(
        ...     source=source_db.endpoint(),
        ...     target=target_db.endpoint(),
        ...     bulk_loader=InMemoryBulkLoader(source_db, target_db),
        ...     verifier=InMemoryVerifier(source_db, target_db),
        ...     enable_tracing=False,
        ... )
        >>> await coordinator.start()
    """

    def __init__(
        self,
        source: Endpoint,
        target: Endpoint,
        bulk_loader: BulkLoader,
        verifier: Verifier,
        staging_factory: StagingFactory | None = None,
        config: MigrationConfig | None = None,
        *,
        run_id: UUID | None = None,
        clock: Callable[[], datetime] | None = None,
        metrics: MigrationMetrics | None = None,
        enable_metrics: bool = True,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the coordinator.

        Args:
            source: The database being migrated away from
            target: The database being migrated to
            bulk_loader: Snapshot copier
            verifier: Row-by-row comparer
            staging_factory: Creates the staging store for a direction
                (defaults to an in-memory store per direction)
            config: Migration configuration
            run_id: Identifier for the run (generated if not given)
            clock: Time source (defaults to UTC wall clock)
            metrics: Optional metrics container
            enable_metrics: Whether to create exporting metrics when
                ``metrics`` is not given
            tracer: Optional tracer (if not provided, one will be created)
            enable_tracing: Whether to enable OpenTelemetry tracing (default True)
        """
        self._source = source
        self._target = target
        self._bulk_loader = bulk_loader
        self._verifier = verifier
        self._config = config or MigrationConfig()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._staging_factory = staging_factory or self._default_staging

        self._run = MigrationRun(
            id=run_id or uuid4(),
            source=source.descriptor,
            target=target.descriptor,
            table_filter=self._config.build_table_filter(),
            created_at=self._clock(),
        )
        self._metrics = metrics or MigrationMetrics(
            run_id=str(self._run.id), enable_metrics=enable_metrics
        )

        self._pipelines: dict[Direction, ReplicationPipeline] = {}
        self._background: asyncio.Task[Any] | None = None
        self._bulk_started_at: datetime | None = None
        self._drain_detector: DrainDetector | None = None
        self._drain_timeout_reported = False
        self._lock = asyncio.Lock()

    @property
    def run(self) -> MigrationRun:
        return self._run

    @property
    def state(self) -> MigrationState:
        return self._run.state

    @property
    def config(self) -> MigrationConfig:
        return self._config

    @property
    def metrics(self) -> MigrationMetrics:
        return self._metrics

    def pipeline(self, direction: Direction) -> ReplicationPipeline:
        """
        Get the pipeline for a direction.

        Raises:
            SessionNotFoundError: If no session was started in that direction
        """
        pipeline = self._pipelines.get(direction)
        if pipeline is None:
            raise SessionNotFoundError(direction)
        return pipeline

    # =========================================================================
    # Commands
    # =========================================================================

    async def start(
        self,
        table_filter: TableFilter | None = None,
        *,
        actor: str = "operator",
    ) -> MigrationStatus:
        """
        Start the bulk load.

        Args:
            table_filter: Tables to migrate (defaults to the configured filter)
            actor: Who issued the command

        Raises:
            InvalidTransition: If the run was already started
        """
        async with self._lock:
            with self._tracer.span(
                "liveshift.coordinator.start",
                {ATTR_RUN_ID: str(self._run.id), ATTR_ACTOR: actor},
            ):
                self._check_transition(MigrationState.BULK_LOADING)
                if table_filter is not None:
                    self._run.table_filter = table_filter
                self._transition(MigrationState.BULK_LOADING, "bulk load started", actor)
                self._bulk_started_at = self._clock()
                self._background = asyncio.create_task(
                    self._bulk_loader.load(
                        self._run.source, self._run.target, self._run.table_filter
                    ),
                    name=f"liveshift-bulk-load-{self._run.id}",
                )
                logger.info(
                    "Started migration %s from %s to %s (tables matching %r)",
                    self._run.id,
                    self._run.source,
                    self._run.target,
                    self._run.table_filter.pattern,
                )
                return await self._build_status()

    async def poll(self) -> MigrationStatus:
        """
        Complete finished background work and evaluate automatic transitions.

        Call periodically (``wait_for_state`` does). Handles bulk-load and
        verification completion and drain certification.
        """
        async with self._lock:
            state = self._run.state
            if state == MigrationState.BULK_LOADING:
                await self._poll_bulk_load()
            elif state == MigrationState.BULK_VERIFYING:
                await self._poll_verification()
            elif state == MigrationState.DRAINING:
                await self._poll_drain()
            return await self._build_status()

    async def override_verification(
        self,
        reason: str,
        *,
        actor: str = "operator",
    ) -> MigrationStatus:
        """
        Accept a failed verification and start forward streaming.

        Args:
            reason: Why the mismatch is acceptable (recorded on the run)
            actor: Who issued the override

        Raises:
            InvalidTransition: If not in BULK_VERIFYING with a failed report
        """
        async with self._lock:
            self._check_transition(MigrationState.FORWARD_STREAMING)
            report = self._run.latest_verification
            if report is None:
                raise InvalidTransition(
                    self._run.state,
                    MigrationState.FORWARD_STREAMING,
                    run_id=self._run.id,
                    detail="verification has not finished",
                )
            if report.passed:
                raise InvalidTransition(
                    self._run.state,
                    MigrationState.FORWARD_STREAMING,
                    run_id=self._run.id,
                    detail="verification passed, nothing to override",
                )

            self._run.verification_override = reason
            logger.warning(
                "Verification of migration %s overridden by %s: %s (%d mismatches in %s)",
                self._run.id,
                actor,
                reason,
                report.total_mismatches,
                ", ".join(report.failed_tables),
            )
            await self._start_forward(f"verification overridden: {reason}", actor)
            return await self._build_status()

    async def begin_drain(self, *, actor: str = "operator") -> MigrationStatus:
        """
        Signal intent to cut over and start certifying the forward lag.

        Raises:
            InvalidTransition: If not in FORWARD_STREAMING
        """
        async with self._lock:
            self._check_transition(MigrationState.DRAINING)
            forward = self.pipeline(Direction.FORWARD)
            self._drain_detector = DrainDetector(
                forward.staging,
                self._config.drain,
                clock=self._clock,
                tracer=self._tracer,
            )
            self._drain_timeout_reported = False
            self._transition(MigrationState.DRAINING, "cutover requested", actor)
            return await self._build_status()

    async def confirm_cutover(self, *, actor: str = "operator") -> MigrationStatus:
        """
        Confirm that application traffic now goes to the target.

        Waits for the forward backlog to empty, stops the forward session
        gracefully, then starts the reverse session seeded at the
        target's current position.

        Raises:
            InvalidTransition: If not in CUTOVER_READY
            DrainTimeout: If the forward backlog does not empty in time;
                the run stays in CUTOVER_READY
        """
        async with self._lock:
            with self._tracer.span(
                "liveshift.coordinator.confirm_cutover",
                {ATTR_RUN_ID: str(self._run.id), ATTR_ACTOR: actor},
            ):
                self._check_transition(MigrationState.REVERSE_STREAMING)
                forward = self.pipeline(Direction.FORWARD)
                timeout = self._config.session.stop_timeout_seconds
                try:
                    await forward.wait_until_idle(timeout=timeout)
                except TimeoutError as e:
                    error = DrainTimeout(timeout, await forward.backlog(), run_id=self._run.id)
                    self._alert(error)
                    raise error from e

                await forward.stop()
                seed = await self._target.connector.current_position()
                logger.info(
                    "Cutover of migration %s confirmed by %s; forward stopped at %s, "
                    "reverse seeded at %s",
                    self._run.id,
                    actor,
                    forward.session.cursor,
                    seed,
                )
                await self._start_session(Direction.REVERSE, seed)
                self._transition(MigrationState.REVERSE_STREAMING, "cutover confirmed", actor)
                return await self._build_status()

    async def decommission(self, *, actor: str = "operator") -> MigrationStatus:
        """
        Retire the source: stop the reverse session and complete the run.

        Raises:
            InvalidTransition: If not in REVERSE_STREAMING
        """
        async with self._lock:
            self._check_transition(MigrationState.DECOMMISSIONING)
            self._transition(MigrationState.DECOMMISSIONING, "decommission requested", actor)

            reverse = self._pipelines.get(Direction.REVERSE)
            if reverse is not None:
                await reverse.stop()
            self._run.source_retired = True
            self._transition(MigrationState.COMPLETE, "source retired", actor)
            self._run.completed_at = self._clock()
            logger.info("Migration %s complete; %s retired", self._run.id, self._run.source)
            return await self._build_status()

    async def abort(
        self,
        reason: str,
        *,
        force: bool = False,
        actor: str = "operator",
    ) -> MigrationStatus:
        """
        Abandon the run.

        Background work is cancelled and every session stopped. A graceful
        abort lets in-flight apply batches reach their checkpoint.

        Args:
            reason: Why the run is abandoned
            force: Cancel in-flight batches instead of waiting
            actor: Who issued the abort

        Raises:
            InvalidTransition: If the run is already terminal
        """
        async with self._lock:
            self._check_transition(MigrationState.ABORTED)
            await self._cancel_background()
            for pipeline in self._pipelines.values():
                await pipeline.stop(force=force)
            self._abort(reason, actor)
            return await self._build_status()

    async def resume_session(self, direction: Direction | str) -> int:
        """
        Resume a stalled session after the cause was fixed.

        Returns:
            Number of failed records requeued

        Raises:
            SessionNotFoundError: If no session ran in that direction
            SessionError: If the session is not stalled
        """
        async with self._lock:
            return await self.pipeline(Direction(direction)).resume()

    async def reseed_session(
        self,
        direction: Direction | str,
        cursor: SourceCursor | TargetCursor | str,
    ) -> MigrationStatus:
        """
        Restart a session from an operator-chosen cursor.

        Raises:
            SessionNotFoundError: If no session ran in that direction
            InvalidCursor: If the cursor is not in the stream's address space
        """
        async with self._lock:
            await self.pipeline(Direction(direction)).reseed(cursor)
            return await self._build_status()

    async def acknowledge_checkpoint(
        self,
        direction: Direction | str,
        older_than: datetime | None = None,
    ) -> int:
        """
        Acknowledge a session's checkpoint and purge applied staging records.

        Args:
            direction: Session direction
            older_than: Only purge records applied before this time
                (defaults to now minus the staging retention)

        Returns:
            Number of staging records removed
        """
        async with self._lock:
            pipeline = self.pipeline(Direction(direction))
            checkpoint = await pipeline.staging.checkpoint()
            if checkpoint is None:
                return 0
            cutoff = older_than or (
                self._clock() - timedelta(seconds=self._config.staging_retention_seconds)
            )
            purged = await pipeline.staging.purge(checkpoint, cutoff)
            logger.info(
                "Purged %d applied %s staging records up to %s",
                purged,
                pipeline.session.direction.value,
                checkpoint,
            )
            return purged

    async def get_status(self) -> MigrationStatus:
        return await self._build_status()

    async def wait_for_state(
        self,
        state: MigrationState,
        *,
        timeout: float | None = None,
        poll_interval: float | None = None,
    ) -> MigrationStatus:
        """
        Poll until the run reaches ``state`` or a terminal state.

        Args:
            state: State to wait for
            timeout: Maximum seconds to wait (None = forever)
            poll_interval: Seconds between polls (defaults to config)

        Returns:
            Status when the state (or a terminal state) is reached

        Raises:
            TimeoutError: If timeout exceeded
        """
        interval = poll_interval or self._config.poll_interval_seconds
        loop = asyncio.get_running_loop()
        start = loop.time()

        while True:
            status = await self.poll()
            if status.state == state or status.state.is_terminal:
                return status

            if timeout is not None and loop.time() - start >= timeout:
                raise TimeoutError(
                    f"Timeout waiting for state {state.value} (run is {status.state.value})"
                )

            await asyncio.sleep(interval)

    async def shutdown(self, force: bool = False) -> None:
        """Stop background work and sessions without changing the run state."""
        await self._cancel_background()
        for pipeline in self._pipelines.values():
            await pipeline.stop(force=force)

    # =========================================================================
    # Background completion
    # =========================================================================

    async def _poll_bulk_load(self) -> None:
        task = self._background
        if task is None or not task.done():
            return
        self._background = None

        try:
            result: BulkLoadResult = task.result()
        except Exception as e:
            error = e if isinstance(e, BulkLoadError) else BulkLoadError(str(e))
            logger.error("Bulk load for migration %s failed: %s", self._run.id, e)
            self._alert(error)
            for pipeline in self._pipelines.values():
                await pipeline.stop(force=True)
            self._abort(f"bulk load failed: {e}", "coordinator")
            return

        self._run.bulk_load = BulkLoadRecord(
            result=result,
            started_at=self._bulk_started_at or self._clock(),
            completed_at=self._clock(),
        )
        logger.info(
            "Bulk load for migration %s copied %d rows in %d tables; cursor %s",
            self._run.id,
            result.total_rows,
            len(result.row_counts),
            result.cursor,
        )
        self._transition(MigrationState.BULK_VERIFYING, "bulk load complete", "coordinator")
        self._background = asyncio.create_task(
            self._verifier.verify(self._run.source, self._run.target, self._run.table_filter),
            name=f"liveshift-verify-{self._run.id}",
        )

    async def _poll_verification(self) -> None:
        task = self._background
        if task is None or not task.done():
            return
        self._background = None

        try:
            report: VerificationReport = task.result()
        except Exception as e:
            logger.error("Verifier for migration %s failed: %s", self._run.id, e)
            self._alert_raw("VERIFIER_FAILED", f"Verifier failed: {e}")
            return

        report = self._limit_samples(report)
        self._run.verifications.append(report)
        if report.passed:
            logger.info(
                "Verification of migration %s passed for %d tables",
                self._run.id,
                len(report.tables),
            )
            await self._start_forward("verification passed", "coordinator")
            return

        mismatch = VerificationMismatch(report, run_id=self._run.id)
        logger.warning("%s; waiting for override or abort", mismatch)
        self._alert(mismatch)

    async def _poll_drain(self) -> None:
        detector = self._drain_detector
        forward = self._pipelines.get(Direction.FORWARD)
        if detector is None or forward is None:
            return

        latest = detector.latest
        if latest is not None and (
            (self._clock() - latest.sampled_at).total_seconds()
            < self._config.drain.sample_interval_seconds
        ):
            return

        started_at = self._run.entered_at(MigrationState.DRAINING)
        status = await detector.sample(forward.session, started_at)
        if status.drained:
            logger.info(
                "Forward stream of migration %s drained (quiet %.1fs, empty %.1fs)",
                self._run.id,
                status.quiet_seconds,
                status.zero_backlog_seconds,
            )
            self._transition(MigrationState.CUTOVER_READY, "forward stream drained", "coordinator")
            return

        if status.timed_out and not self._drain_timeout_reported and started_at is not None:
            self._drain_timeout_reported = True
            error = DrainTimeout(
                detector.elapsed_seconds(started_at), status.backlog, run_id=self._run.id
            )
            logger.warning("%s (%s)", error, status.reason)
            self._alert(error)

    def _limit_samples(self, report: VerificationReport) -> VerificationReport:
        limit = self._config.verification_sample_limit
        if all(len(table.mismatched_keys) <= limit for table in report.tables):
            return report
        return replace(
            report,
            tables=tuple(
                replace(table, mismatched_keys=table.mismatched_keys[:limit])
                for table in report.tables
            ),
        )

    # =========================================================================
    # Sessions
    # =========================================================================

    async def _start_forward(self, reason: str, actor: str) -> None:
        bulk_load = self._run.bulk_load
        if bulk_load is None:
            raise InvalidTransition(
                self._run.state,
                MigrationState.FORWARD_STREAMING,
                run_id=self._run.id,
                detail="no bulk-load cursor to seed from",
            )
        await self._start_session(Direction.FORWARD, bulk_load.result.cursor)
        self._transition(MigrationState.FORWARD_STREAMING, reason, actor)

    async def _start_session(
        self,
        direction: Direction,
        seed: SourceCursor | TargetCursor,
    ) -> ReplicationPipeline:
        active = self._run.active_session(direction)
        if active is not None:
            raise SessionAlreadyActiveError(direction, active.id)

        if direction == Direction.FORWARD:
            reader, writer = self._source, self._target
        else:
            reader, writer = self._target, self._source

        session = ReplicationSession(
            id=uuid4(),
            direction=direction,
            source=reader.descriptor,
            target=writer.descriptor,
            seed_cursor=seed,
            cursor=seed,
        )
        staging = await self._staging_factory(direction)
        pipeline = ReplicationPipeline(
            session,
            reader.changes,
            writer.connector,
            staging,
            self._config.session,
            self._config.applier,
            primary_keys=reader.primary_keys,
            table_filter=self._run.table_filter,
            metrics=self._metrics,
            on_stall=self._on_session_stall,
            clock=self._clock,
            tracer=self._tracer,
        )
        # Registered only once running, so a failed start can be retried
        await pipeline.start()
        self._run.sessions.append(session)
        self._pipelines[direction] = pipeline
        return pipeline

    def _on_session_stall(self, pipeline: ReplicationPipeline, error: BaseException) -> None:
        session = pipeline.session
        if isinstance(error, LiveShiftError):
            self._alert(error, direction=session.direction.value, session_id=str(session.id))
        else:
            self._alert_raw(
                "SESSION_STALLED",
                str(error),
                direction=session.direction.value,
                session_id=str(session.id),
            )

    async def _default_staging(self, direction: Direction) -> StagingStore:
        return InMemoryStagingStore(
            stream_id=direction.value,
            clock=self._clock,
            tracer=self._tracer,
        )

    async def _cancel_background(self) -> None:
        task = self._background
        self._background = None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    # =========================================================================
    # State machine
    # =========================================================================

    def _check_transition(self, target: MigrationState) -> None:
        current = self._run.state
        if not current.can_transition_to(target):
            raise InvalidTransition(current, target, run_id=self._run.id)

    def _transition(self, target: MigrationState, reason: str, actor: str) -> None:
        self._check_transition(target)
        current = self._run.state
        with self._tracer.span(
            "liveshift.coordinator.transition",
            {
                ATTR_RUN_ID: str(self._run.id),
                ATTR_FROM_STATE: current.value,
                ATTR_TO_STATE: target.value,
                ATTR_ACTOR: actor,
            },
        ):
            self._run.transitions.append(
                StateTransition(
                    from_state=current,
                    to_state=target,
                    at=self._clock(),
                    reason=reason,
                    actor=actor,
                )
            )
            self._run.state = target
            self._metrics.record_transition(current.value, target.value)
            logger.info(
                "Migration %s: %s -> %s (%s)",
                self._run.id,
                current.value,
                target.value,
                reason,
                extra={ATTR_STATE: target.value, ATTR_ACTOR: actor},
            )

    def _abort(self, reason: str, actor: str) -> None:
        self._transition(MigrationState.ABORTED, reason, actor)
        self._run.last_error = reason
        self._run.completed_at = self._clock()
        logger.warning("Aborted migration %s: %s", self._run.id, reason)

    def _alert(self, error: LiveShiftError, **context: Any) -> None:
        alert = error.to_dict()
        alert["raised_at"] = self._clock().isoformat()
        alert.update(context)
        self._run.alerts.append(alert)

    def _alert_raw(self, error_code: str, message: str, **context: Any) -> None:
        self._run.alerts.append(
            {
                "message": message,
                "run_id": str(self._run.id),
                "error_code": error_code,
                "raised_at": self._clock().isoformat(),
                **context,
            }
        )

    async def _build_status(self) -> MigrationStatus:
        sessions = []
        for session in self._run.sessions:
            pipeline = self._pipelines.get(session.direction)
            backlog = 0
            if pipeline is not None and pipeline.session is session:
                backlog = await pipeline.backlog()
            sessions.append(
                SessionStatus(
                    session_id=session.id,
                    direction=session.direction,
                    state=session.state,
                    cursor=str(session.cursor),
                    backlog=backlog,
                    rows_applied=session.rows_applied,
                    last_event_at=session.last_event_at,
                    last_error=session.last_error,
                )
            )

        report = self._run.latest_verification
        drain = None
        if self._drain_detector is not None:
            drain = self._drain_detector.latest
        return MigrationStatus(
            run_id=self._run.id,
            state=self._run.state,
            sessions=tuple(sessions),
            drain=drain,
            verification_passed=report.passed if report is not None else None,
            verification_overridden=self._run.verification_override is not None,
            alerts=tuple(dict(alert) for alert in self._run.alerts),
            source_retired=self._run.source_retired,
        )


__all__ = ["MigrationCoordinator", "StagingFactory"]
