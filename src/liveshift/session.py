"""
ReplicationPipeline - runs one direction of streaming replication.

A pipeline drives a ``ReplicationSession`` with two background tasks:

    reader:  change stream -> normalizer -> staging store
    applier: staging store -> Applier -> target connector

The reader only stages; the applier only applies what is staged. A stall
in one does not stop the other, so a stalled target never loses changes
the source keeps producing.

Session State Machine:
    PENDING -> RUNNING <-> STALLED
    RUNNING / STALLED -> STOPPING -> STOPPED

Usage:
    >>> pipeline = ReplicationPipeline(session, source.changes, target.connector, staging)
    >>> await pipeline.start()
    >>> ...
    >>> await pipeline.stop()  # waits for the in-flight batch
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from datetime import UTC, datetime
from typing import Any

from liveshift.applier import Applier
from liveshift.config import ApplierConfig, SessionConfig
from liveshift.connectors.interface import ChangeStreamSource, TargetConnector
from liveshift.cursors import SourceCursor, TargetCursor, advance, parse_cursor, rewind
from liveshift.events import ChangeEventNormalizer
from liveshift.exceptions import (
    ApplyStalled,
    SessionError,
    SourceStreamDisconnected,
)
from liveshift.metrics import MigrationMetrics
from liveshift.models import AppliedResult, ReplicationSession, SessionState, TableFilter
from liveshift.observability import (
    ATTR_CURSOR,
    ATTR_DIRECTION,
    ATTR_SESSION_ID,
    Tracer,
    create_tracer,
)
from liveshift.retry import RetryStats, calculate_backoff
from liveshift.staging.interface import StagingStore

logger = logging.getLogger(__name__)

StallCallback = Callable[["ReplicationPipeline", BaseException], None]


class ReplicationPipeline:
    """
    Runs a replication session as a reader task and an applier task.

    Example:
        >>> pipeline = ReplicationPipeline(
        ...     session,
        ...     source=source_endpoint.changes,
        ...     target=target_endpoint.connector,
        ...     staging=InMemoryStagingStore("forward"),
        ... )
        >>> await pipeline.start()
    """

    def __init__(
        self,
        session: ReplicationSession,
        source: ChangeStreamSource,
        target: TargetConnector,
        staging: StagingStore,
        config: SessionConfig | None = None,
        applier_config: ApplierConfig | None = None,
        *,
        primary_keys: Mapping[str, Sequence[str]] | None = None,
        table_filter: TableFilter | None = None,
        metrics: MigrationMetrics | None = None,
        on_stall: StallCallback | None = None,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the pipeline.

        Args:
            session: The session this pipeline runs
            source: Change stream to read from
            target: Connector to apply to
            staging: Staging store for this stream
            config: Session configuration
            applier_config: Applier configuration
            primary_keys: Key columns per qualified table for the normalizer
            table_filter: Tables to replicate (others are skipped)
            metrics: Optional metrics container
            on_stall: Called when the session stalls
            clock: Time source for event timestamps
            sleep: Awaitable used for reconnect backoff
            tracer: Optional tracer (if not provided, one will be created)
            enable_tracing: Whether to enable OpenTelemetry tracing (default True)
        """
        self._session = session
        self._source = source
        self._target = target
        self._staging = staging
        self._config = config or SessionConfig()
        self._table_filter = table_filter or TableFilter()
        self._metrics = metrics
        self._on_stall = on_stall
        self._clock = clock or (lambda: datetime.now(UTC))
        self._sleep = sleep
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._normalizer = ChangeEventNormalizer(source.address_space, primary_keys=primary_keys)
        self._applier = Applier(
            target,
            staging,
            applier_config,
            direction=session.direction.value,
            metrics=metrics,
            tracer=self._tracer,
            sleep=sleep,
        )

        self._reader_task: asyncio.Task[None] | None = None
        self._applier_task: asyncio.Task[None] | None = None
        self._wake = asyncio.Event()
        self._stopping = False
        self._reader_stalled = False
        self._applier_stalled = False
        self._reconnect_stats = RetryStats()

    @property
    def session(self) -> ReplicationSession:
        return self._session

    @property
    def staging(self) -> StagingStore:
        return self._staging

    @property
    def normalizer(self) -> ChangeEventNormalizer:
        return self._normalizer

    @property
    def reconnect_stats(self) -> RetryStats:
        """Change stream connections opened and dropped."""
        return self._reconnect_stats

    @property
    def is_running(self) -> bool:
        return self._session.state == SessionState.RUNNING

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """
        Start the reader and applier tasks.

        Raises:
            SessionError: If the session was already started
        """
        if self._session.state != SessionState.PENDING:
            raise SessionError(
                f"Session {self._session.id} cannot start from state {self._session.state.value}"
            )

        with self._tracer.span(
            "liveshift.session.start",
            {
                ATTR_SESSION_ID: str(self._session.id),
                ATTR_DIRECTION: self._session.direction.value,
                ATTR_CURSOR: str(self._session.seed_cursor),
            },
        ):
            checkpoint = await self._staging.checkpoint()
            if checkpoint is not None:
                self._session.cursor = advance(self._session.cursor, checkpoint)
            self._session.state = SessionState.RUNNING
            self._session.started_at = self._clock()
            self._spawn_reader()
            self._spawn_applier()

            logger.info(
                "Started %s replication session %s from %s",
                self._session.direction.value,
                self._session.id,
                self._session.cursor,
            )

    async def stop(self, force: bool = False) -> None:
        """
        Stop the session.

        A graceful stop stops reading, then lets the in-flight batch finish
        and reach its checkpoint. A forced stop cancels immediately and
        leaves the cursor at the last checkpoint.

        Args:
            force: Cancel the applier instead of waiting for it
        """
        if self._session.state in (SessionState.STOPPED, SessionState.PENDING):
            self._session.state = SessionState.STOPPED
            return

        self._session.state = SessionState.STOPPING
        self._stopping = True
        self._wake.set()
        await self._cancel(self._reader_task)

        if force:
            await self._cancel(self._applier_task)
        elif self._applier_task is not None and not self._applier_task.done():
            try:
                await asyncio.wait_for(
                    asyncio.shield(self._applier_task),
                    timeout=self._config.stop_timeout_seconds,
                )
            except TimeoutError:
                logger.warning(
                    "Session %s did not finish its batch within %.1fs, cancelling",
                    self._session.id,
                    self._config.stop_timeout_seconds,
                )
                await self._cancel(self._applier_task)

        checkpoint = await self._staging.checkpoint()
        if checkpoint is not None:
            self._session.cursor = advance(self._session.cursor, checkpoint)
        self._session.state = SessionState.STOPPED
        self._session.stopped_at = self._clock()
        logger.info(
            "Stopped %s replication session %s at %s%s",
            self._session.direction.value,
            self._session.id,
            self._session.cursor,
            " (forced)" if force else "",
        )

    async def resume(self) -> int:
        """
        Resume a stalled session after the operator resolved the cause.

        Failed records are requeued and the stopped tasks restarted.

        Returns:
            Number of failed records requeued

        Raises:
            SessionError: If the session is not stalled
        """
        if self._session.state != SessionState.STALLED:
            raise SessionError(
                f"Session {self._session.id} is {self._session.state.value}, not stalled"
            )

        requeued = await self._staging.requeue_failed()
        self._session.state = SessionState.RUNNING
        self._session.last_error = None
        if self._reader_stalled or self._task_done(self._reader_task):
            self._spawn_reader()
        if self._applier_stalled or self._task_done(self._applier_task):
            self._spawn_applier()
        logger.info(
            "Resumed %s replication session %s (%d records requeued)",
            self._session.direction.value,
            self._session.id,
            requeued,
        )
        return requeued

    async def reseed(self, cursor: SourceCursor | TargetCursor | str) -> None:
        """
        Restart the session from an operator-chosen cursor.

        This is the only way a session cursor can move backwards.

        Args:
            cursor: New starting position in the source's address space

        Raises:
            SessionError: If the session is stopped
            InvalidCursor: If the cursor belongs to another address space
        """
        if self._session.state in (SessionState.STOPPING, SessionState.STOPPED):
            raise SessionError(f"Session {self._session.id} is {self._session.state.value}")

        new_cursor = parse_cursor(cursor, self._source.address_space)
        await self._cancel(self._reader_task)
        await self._cancel(self._applier_task)

        await self._staging.reset_checkpoint(new_cursor)
        previous = self._session.cursor
        self._session.seed_cursor = new_cursor
        self._session.cursor = new_cursor
        self._session.last_error = None

        if self._session.state != SessionState.PENDING:
            self._session.state = SessionState.RUNNING
            self._spawn_reader()
            self._spawn_applier()
        logger.warning(
            "Reseeded %s replication session %s from %s to %s",
            self._session.direction.value,
            self._session.id,
            previous,
            new_cursor,
        )

    async def backlog(self) -> int:
        """Staged records not yet applied."""
        return await self._staging.backlog_size()

    async def wait_until_idle(self, timeout: float = 10.0) -> None:
        """
        Wait until every staged record is applied.

        Raises:
            TimeoutError: If the backlog is not empty within ``timeout``
            SessionError: If the session stalls while waiting
        """
        async with asyncio.timeout(timeout):
            while True:
                if self._session.state == SessionState.STALLED and self._applier_stalled:
                    raise SessionError(
                        f"Session {self._session.id} stalled: {self._session.last_error}"
                    )
                if await self._staging.backlog_size() == 0:
                    return
                await asyncio.sleep(self._config.poll_interval_seconds)

    # =========================================================================
    # Background tasks
    # =========================================================================

    def _spawn_reader(self) -> None:
        self._reader_stalled = False
        self._reader_task = asyncio.create_task(
            self._read_loop(), name=f"liveshift-reader-{self._session.direction.value}"
        )

    def _spawn_applier(self) -> None:
        self._applier_stalled = False
        self._stopping = False
        self._applier_task = asyncio.create_task(
            self._apply_loop(), name=f"liveshift-applier-{self._session.direction.value}"
        )

    async def _resume_cursor(self) -> SourceCursor | TargetCursor:
        checkpoint = await self._staging.checkpoint()
        if checkpoint is None:
            return self._session.seed_cursor
        # Overlap the last checkpointed transaction; staging absorbs the repeats.
        return advance(self._session.seed_cursor, rewind(checkpoint))

    async def _read_loop(self) -> None:
        failures = 0
        while True:
            from_cursor = await self._resume_cursor()
            self._reconnect_stats.attempts += 1
            try:
                async for raw in self._source.stream(from_cursor):
                    if not self._table_filter.matches(raw.table):
                        continue
                    event = self._normalizer.normalize(raw)
                    record = await self._staging.append(event)
                    self._session.last_event_at = self._clock()
                    failures = 0
                    if self._metrics is not None:
                        if record.deliveries > 1 or record.is_applied:
                            self._metrics.record_duplicate_coalesced(self._session.direction.value)
                        else:
                            self._metrics.record_events_staged(self._session.direction.value)
                    self._wake.set()
            except SourceStreamDisconnected as e:
                failures += 1
                if failures > self._config.max_reconnect_attempts:
                    self._reader_stalled = True
                    self._stall(e)
                    return
                delay = calculate_backoff(failures - 1, self._config.reconnect)
                self._reconnect_stats.record_failure(e, delay)
                logger.warning(
                    "Change stream for %s session %s disconnected, reconnecting from %s in %.2fs",
                    self._session.direction.value,
                    self._session.id,
                    from_cursor,
                    delay,
                    extra={"attempt": failures, "error": str(e)},
                )
                await self._sleep(delay)
            except Exception as e:
                logger.exception(
                    "Reader for %s session %s failed",
                    self._session.direction.value,
                    self._session.id,
                )
                self._reader_stalled = True
                self._stall(e)
                return
            else:
                logger.info(
                    "Change stream for %s session %s ended",
                    self._session.direction.value,
                    self._session.id,
                )
                return

    async def _apply_loop(self) -> None:
        while not self._stopping:
            self._wake.clear()
            records = await self._staging.next_unapplied(limit=self._config.batch_size)
            if records:
                try:
                    result = await self._applier.apply_batch(records)
                except ApplyStalled as e:
                    if e.result is not None:
                        self._record_applied(e.result)
                    self._applier_stalled = True
                    self._stall(e)
                    return
                self._record_applied(result)
                continue

            if self._metrics is not None:
                self._metrics.record_backlog(
                    self._session.direction.value, await self._staging.backlog_size()
                )
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(
                    self._wake.wait(), timeout=self._config.poll_interval_seconds
                )

    def _record_applied(self, result: AppliedResult) -> None:
        if result.checkpoint is not None:
            self._session.cursor = advance(self._session.cursor, result.checkpoint)
        self._session.rows_applied += result.applied

    def _stall(self, error: BaseException) -> None:
        if self._session.state in (SessionState.STOPPING, SessionState.STOPPED):
            return
        self._session.state = SessionState.STALLED
        self._session.last_error = str(error)
        logger.error(
            "%s replication session %s stalled at %s: %s",
            self._session.direction.value.capitalize(),
            self._session.id,
            self._session.cursor,
            error,
        )
        if self._on_stall is not None:
            self._on_stall(self, error)

    @staticmethod
    def _task_done(task: asyncio.Task[None] | None) -> bool:
        return task is None or task.done()

    @staticmethod
    async def _cancel(task: asyncio.Task[None] | None) -> None:
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task


__all__ = ["ReplicationPipeline", "StallCallback"]
