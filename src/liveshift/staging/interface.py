"""
Staging store protocol.

The staging store is the durable buffer between a change stream and the
applier. Every change event is appended before it is applied, so a crash
between read and apply never loses data.

Each store instance serves one replication stream (identified by
``stream_id``) and holds that stream's checkpoint: the cursor up to which
every staged record has been applied.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import Protocol, runtime_checkable

from liveshift.cursors import SourceCursor, TargetCursor
from liveshift.events import ChangeEvent
from liveshift.models import StagingRecord


@runtime_checkable
class StagingStore(Protocol):
    """
    Protocol for staging stores.

    Implementations must make ``append`` durable before returning and
    ``mark_applied`` atomic: the records and the stream checkpoint are
    never observably torn.
    """

    @property
    def stream_id(self) -> str:
        """Replication stream served by this store."""
        ...

    async def append(self, event: ChangeEvent) -> StagingRecord:
        """
        Stage a change event.

        Idempotent on ``(table, key, commit token)``. A re-delivery of a
        record that is not yet applied coalesces to the latest image and
        keeps the record's id and arrival order. A re-delivery of an
        applied record returns the stored record unchanged.

        Args:
            event: The change event to stage

        Returns:
            The staged (or existing) record
        """
        ...

    async def next_unapplied(
        self,
        after: SourceCursor | TargetCursor | None = None,
        limit: int = 100,
    ) -> list[StagingRecord]:
        """
        Get the next records to apply.

        Args:
            after: Only return records whose commit token is strictly after
                this cursor (None returns every unapplied record)
            limit: Maximum records to return

        Returns:
            Pending and retry-pending records in arrival order, except
            that target tokens are ordered by timestamp first
        """
        ...

    async def mark_applied(
        self,
        records: Sequence[StagingRecord],
        checkpoint: SourceCursor | TargetCursor | None,
        target_position: SourceCursor | TargetCursor | None = None,
    ) -> None:
        """
        Atomically mark records applied and store the stream checkpoint.

        The stored checkpoint never regresses: a checkpoint behind the
        stored one is merged, not written over it.

        Args:
            records: Records applied on the target
            checkpoint: Stream checkpoint covering the records (None keeps
                the current one)
            target_position: Target position observed after the apply
        """
        ...

    async def mark_failed(
        self,
        record: StagingRecord,
        error: str,
        *,
        retryable: bool = True,
    ) -> StagingRecord:
        """
        Record a failed apply attempt.

        Args:
            record: The record that failed
            error: Error description
            retryable: False parks the record as failed until an operator
                requeues it

        Returns:
            The updated record
        """
        ...

    async def checkpoint(self) -> SourceCursor | TargetCursor | None:
        """Get the stream checkpoint, or None if nothing was applied yet."""
        ...

    async def reset_checkpoint(self, cursor: SourceCursor | TargetCursor) -> None:
        """
        Replace the stream checkpoint, even with an earlier cursor.

        Only used for an operator-forced reseed.
        """
        ...

    async def backlog_size(self) -> int:
        """Number of staged records not yet applied (including failed)."""
        ...

    async def get(self, record_id: int) -> StagingRecord | None:
        ...

    async def requeue_failed(self) -> int:
        """
        Move failed records back to retry-pending.

        Returns:
            Number of records requeued
        """
        ...

    async def purge(
        self,
        acknowledged: SourceCursor | TargetCursor,
        older_than: datetime,
    ) -> int:
        """
        Remove applied records covered by an acknowledged checkpoint.

        Args:
            acknowledged: Operator-acknowledged checkpoint
            older_than: Only records applied before this time are removed

        Returns:
            Number of records removed
        """
        ...


__all__ = ["StagingStore"]
