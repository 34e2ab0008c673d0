"""
Applier: moves staged change events onto a target.

A batch is applied as the net effect per row: records are grouped by
``(table, key)`` and only the last mutation of each group is written.
Because every write is an upsert or a delete by key, replaying a batch
leaves the target unchanged.

Transient target errors are retried with exponential backoff; each
failed attempt is recorded on the staged records. When the retry budget
runs out, or the error is not transient, the batch escalates as
``ApplyStalled`` and the records stay staged.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

from liveshift.config import ApplierConfig
from liveshift.connectors.interface import TargetConnector
from liveshift.cursors import SourceCursor, TargetCursor, advance
from liveshift.events import ChangeEvent, OperationKind
from liveshift.exceptions import ApplyStalled
from liveshift.metrics import MigrationMetrics
from liveshift.models import AppliedResult, StagingRecord
from liveshift.observability import (
    ATTR_BATCH_SIZE,
    ATTR_DIRECTION,
    Tracer,
    create_tracer,
)
from liveshift.retry import calculate_backoff, is_transient
from liveshift.staging.interface import StagingStore

logger = logging.getLogger(__name__)


def net_changes(records: Sequence[StagingRecord]) -> list[ChangeEvent]:
    """
    Reduce records to the last mutation per row.

    Rows keep the order in which they first appear in ``records``.
    """
    latest: dict[tuple[str, tuple[Any, ...]], ChangeEvent] = {}
    for record in records:
        latest[record.event.row_key] = record.event
    return list(latest.values())


class Applier:
    """
    Applies batches of staged records to a target connector.

    Example:
        >>> applier = Applier(connector, staging, ApplierConfig())
        >>> records = await staging.next_unapplied(limit=500)
        >>> result = await applier.apply_batch(records)
    """

    def __init__(
        self,
        target: TargetConnector,
        staging: StagingStore,
        config: ApplierConfig | None = None,
        *,
        direction: str = "forward",
        metrics: MigrationMetrics | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """
        Initialize the applier.

        Args:
            target: Connector writing into the target database
            staging: Staging store the records come from
            config: Retry configuration
            direction: Stream direction label for logs and metrics
            metrics: Optional metrics container
            tracer: Optional tracer (if not provided, one will be created)
            enable_tracing: Whether to enable OpenTelemetry tracing (default True)
            sleep: Awaitable used for backoff delays
        """
        self._target = target
        self._staging = staging
        self._config = config or ApplierConfig()
        self._direction = direction
        self._metrics = metrics
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._sleep = sleep

    async def apply_batch(self, records: Sequence[StagingRecord]) -> AppliedResult:
        """
        Apply a batch of staged records.

        Records must be in staging order. The stream checkpoint only moves
        over the contiguous prefix of records that were applied.

        Args:
            records: Records from ``StagingStore.next_unapplied``

        Returns:
            What was applied

        Raises:
            ApplyStalled: If the batch could not be fully applied
        """
        if not records:
            return AppliedResult()

        with self._tracer.span(
            "liveshift.applier.apply_batch",
            {ATTR_DIRECTION: self._direction, ATTR_BATCH_SIZE: len(records)},
        ):
            started = time.monotonic()
            prefix = list(records)
            blocked: StagingRecord | None = None
            for index, record in enumerate(records):
                if record.event.operation == OperationKind.UNKNOWN:
                    prefix, blocked = list(records[:index]), record
                    break

            result = await self._apply_prefix(prefix, started)

            if blocked is not None:
                reason = (
                    f"Unrecognized operation on {blocked.event.qualified_table} "
                    f"key={blocked.event.key} at {blocked.event.commit_token}"
                )
                await self._staging.mark_failed(blocked, reason, retryable=False)
                self._record_stall("UnknownOperation")
                logger.error("Apply stalled on %s stream: %s", self._direction, reason)
                raise ApplyStalled(
                    reason,
                    record_ids=[blocked.record_id],
                    result=result,
                )
            return result

    async def _apply_prefix(
        self,
        records: list[StagingRecord],
        started: float,
    ) -> AppliedResult:
        if not records:
            return AppliedResult(duration_seconds=time.monotonic() - started)

        events = net_changes(records)
        max_attempts = self._config.retry.max_attempts
        retries = 0

        for attempt in range(max_attempts):
            try:
                await self._target.apply(events)
                break
            except Exception as e:
                transient = is_transient(e)
                for record in records:
                    await self._staging.mark_failed(record, str(e), retryable=transient)
                if transient and self._metrics is not None:
                    self._metrics.record_apply_retry(self._direction, type(e).__name__)

                if transient and attempt + 1 < max_attempts:
                    retries += 1
                    delay = calculate_backoff(attempt, self._config.retry)
                    logger.warning(
                        "Transient apply failure on %s stream, retrying in %.2fs",
                        self._direction,
                        delay,
                        extra={
                            "attempt": attempt + 1,
                            "max_attempts": max_attempts,
                            "error": str(e),
                            "error_type": type(e).__name__,
                        },
                    )
                    await self._sleep(delay)
                    continue

                self._record_stall(type(e).__name__)
                if transient:
                    message = f"Retry budget exhausted after {max_attempts} attempts: {e}"
                    logger.error("Apply on %s stream stalled: %s", self._direction, message)
                else:
                    message = f"Non-transient apply failure: {e}"
                    logger.error(
                        "Apply on %s stream stalled: %s", self._direction, message, exc_info=True
                    )
                raise ApplyStalled(
                    message,
                    record_ids=[record.record_id for record in records],
                    cause=e,
                    transient=transient,
                    result=AppliedResult(
                        retries=retries,
                        failed_record_ids=tuple(record.record_id for record in records),
                        duration_seconds=time.monotonic() - started,
                    ),
                ) from e

        checkpoint: SourceCursor | TargetCursor | None = None
        for record in records:
            token = record.event.commit_token
            checkpoint = token if checkpoint is None else advance(checkpoint, token)
        await self._staging.mark_applied(records, checkpoint)

        deleted = sum(1 for event in events if event.operation == OperationKind.DELETE)
        result = AppliedResult(
            applied=len(records),
            rows_upserted=len(events) - deleted,
            rows_deleted=deleted,
            retries=retries,
            checkpoint=checkpoint,
            duration_seconds=time.monotonic() - started,
        )
        if self._metrics is not None:
            self._metrics.record_rows_applied(
                self._direction, upserted=result.rows_upserted, deleted=result.rows_deleted
            )
            self._metrics.record_batch_duration(self._direction, result.duration_seconds)
        if retries:
            logger.info(
                "Batch of %d records applied on %s stream after %d retries",
                len(records),
                self._direction,
                retries,
                extra={"retries": retries},
            )
        return result

    def _record_stall(self, error_type: str) -> None:
        if self._metrics is not None:
            self._metrics.record_apply_stall(self._direction, error_type)


__all__ = ["Applier", "net_changes"]
