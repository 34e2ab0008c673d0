"""
In-memory staging store.

Keeps staged records in process memory. Intended for tests, demos and
single-process runs where losing the staging buffer on restart is
acceptable.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import replace
from datetime import UTC, datetime

from liveshift.cursors import SourceCursor, TargetCursor, advance, is_at_or_after
from liveshift.events import ChangeEvent
from liveshift.models import StagingRecord, StagingStatus
from liveshift.observability import ATTR_BATCH_SIZE, ATTR_STREAM_ID, Tracer, create_tracer

logger = logging.getLogger(__name__)


class InMemoryStagingStore:
    """
    In-memory implementation of the staging store.

    Records handed out are copies; mutating them does not change the
    store.

    Example:
        >>> store = InMemoryStagingStore("forward")
        >>> record = await store.append(event)
        >>> batch = await store.next_unapplied(limit=100)
    """

    def __init__(
        self,
        stream_id: str = "default",
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """
        Initialize an empty store.

        Args:
            stream_id: Replication stream served by this store
            tracer: Optional tracer (if not provided, one will be created)
            enable_tracing: Whether to enable OpenTelemetry tracing (default True)
            clock: Time source for staged/applied timestamps
        """
        self._stream_id = stream_id
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._clock = clock or (lambda: datetime.now(UTC))
        self._records: dict[int, StagingRecord] = {}
        self._by_dedup_key: dict[tuple, int] = {}
        self._checkpoint: SourceCursor | TargetCursor | None = None
        self._next_id = 1
        self._lock = asyncio.Lock()

    @property
    def stream_id(self) -> str:
        return self._stream_id

    async def append(self, event: ChangeEvent) -> StagingRecord:
        with self._tracer.span("liveshift.staging.append", {ATTR_STREAM_ID: self._stream_id}):
            async with self._lock:
                existing_id = self._by_dedup_key.get(event.dedup_key)
                if existing_id is not None:
                    existing = self._records[existing_id]
                    if existing.is_applied:
                        return replace(existing)
                    existing.event = event
                    existing.deliveries += 1
                    logger.debug(
                        "Coalesced re-delivered change %s on stream %s",
                        existing.record_id,
                        self._stream_id,
                    )
                    return replace(existing)

                record = StagingRecord(
                    record_id=self._next_id,
                    event=event,
                    arrival_seq=self._next_id,
                    staged_at=self._clock(),
                )
                self._next_id += 1
                self._records[record.record_id] = record
                self._by_dedup_key[event.dedup_key] = record.record_id
                return replace(record)

    async def next_unapplied(
        self,
        after: SourceCursor | TargetCursor | None = None,
        limit: int = 100,
    ) -> list[StagingRecord]:
        async with self._lock:
            candidates = [
                record
                for record in self._records.values()
                if record.status.is_unapplied
                and (after is None or not is_at_or_after(after, record.event.commit_token))
            ]
            candidates.sort(key=lambda record: record.order_key)
            return [replace(record) for record in candidates[:limit]]

    async def mark_applied(
        self,
        records: Sequence[StagingRecord],
        checkpoint: SourceCursor | TargetCursor | None,
        target_position: SourceCursor | TargetCursor | None = None,
    ) -> None:
        with self._tracer.span(
            "liveshift.staging.mark_applied",
            {ATTR_STREAM_ID: self._stream_id, ATTR_BATCH_SIZE: len(records)},
        ):
            async with self._lock:
                # Validate everything before mutating so the update is all or nothing.
                stored = [self._require(record.record_id) for record in records]
                merged = self._checkpoint
                if checkpoint is not None:
                    merged = checkpoint if merged is None else advance(merged, checkpoint)

                now = self._clock()
                for record in stored:
                    record.status = StagingStatus.APPLIED
                    record.attempts += 1
                    record.applied_at = now
                    record.target_position = target_position
                self._checkpoint = merged

    async def mark_failed(
        self,
        record: StagingRecord,
        error: str,
        *,
        retryable: bool = True,
    ) -> StagingRecord:
        async with self._lock:
            stored = self._require(record.record_id)
            stored.attempts += 1
            stored.last_error = error
            stored.status = StagingStatus.RETRY_PENDING if retryable else StagingStatus.FAILED
            return replace(stored)

    async def checkpoint(self) -> SourceCursor | TargetCursor | None:
        async with self._lock:
            return self._checkpoint

    async def reset_checkpoint(self, cursor: SourceCursor | TargetCursor) -> None:
        async with self._lock:
            logger.warning(
                "Checkpoint of stream %s reset from %s to %s",
                self._stream_id,
                self._checkpoint,
                cursor,
            )
            self._checkpoint = cursor

    async def backlog_size(self) -> int:
        async with self._lock:
            return sum(1 for record in self._records.values() if not record.is_applied)

    async def get(self, record_id: int) -> StagingRecord | None:
        async with self._lock:
            record = self._records.get(record_id)
            return replace(record) if record else None

    async def requeue_failed(self) -> int:
        async with self._lock:
            count = 0
            for record in self._records.values():
                if record.status == StagingStatus.FAILED:
                    record.status = StagingStatus.RETRY_PENDING
                    count += 1
            return count

    async def purge(
        self,
        acknowledged: SourceCursor | TargetCursor,
        older_than: datetime,
    ) -> int:
        async with self._lock:
            doomed = [
                record
                for record in self._records.values()
                if record.is_applied
                and record.applied_at is not None
                and record.applied_at < older_than
                and is_at_or_after(acknowledged, record.event.commit_token)
            ]
            for record in doomed:
                del self._records[record.record_id]
                del self._by_dedup_key[record.event.dedup_key]
            return len(doomed)

    async def all_records(self) -> list[StagingRecord]:
        """Get every stored record in staging order."""
        async with self._lock:
            return [
                replace(record)
                for record in sorted(self._records.values(), key=lambda r: r.order_key)
            ]

    def _require(self, record_id: int) -> StagingRecord:
        record = self._records.get(record_id)
        if record is None:
            raise KeyError(f"Unknown staging record {record_id} on stream {self._stream_id}")
        return record


__all__ = ["InMemoryStagingStore"]
