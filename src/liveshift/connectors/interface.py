"""
Protocols for the external collaborators of a migration.

The orchestrator never talks to a database directly. Bulk copy, row
diffing, change capture and writes all go through these narrow
interfaces, so any database pair can be migrated by supplying adapters.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from liveshift.cursors import AddressSpace, SourceCursor, TargetCursor
from liveshift.events import ChangeEvent, RawChangeEvent
from liveshift.models import BulkLoadResult, EndpointDescriptor, TableFilter, VerificationReport


@runtime_checkable
class ChangeStreamSource(Protocol):
    """
    An ordered, restartable stream of committed row changes.

    The stream is infinite: iteration only ends when the consumer stops
    or the connection drops.
    """

    @property
    def address_space(self) -> AddressSpace:
        """Address space of the positions this stream emits."""
        ...

    def stream(
        self,
        from_cursor: SourceCursor | TargetCursor,
    ) -> AsyncIterator[RawChangeEvent]:
        """
        Stream changes committed after ``from_cursor``.

        Raises:
            SourceStreamDisconnected: When the connection drops; the
                consumer may restart from its last checkpoint.
        """
        ...


@runtime_checkable
class TargetConnector(Protocol):
    """Writes normalized change events into a database."""

    async def apply(self, events: Sequence[ChangeEvent]) -> None:
        """
        Apply events in order: upsert for insert/update, delete by key.

        Applying the same events twice must leave the same state.

        Raises:
            ApplyTransientError: For errors that may succeed on retry.
            Exception: Any other error is treated as non-transient.
        """
        ...

    async def current_position(self) -> SourceCursor | TargetCursor:
        """Get the database's current position in its own address space."""
        ...


@runtime_checkable
class BulkLoader(Protocol):
    """Copies a consistent snapshot of the selected tables."""

    async def load(
        self,
        source: EndpointDescriptor,
        target: EndpointDescriptor,
        table_filter: TableFilter,
    ) -> BulkLoadResult:
        """
        Copy the selected tables from source to target.

        The returned cursor is at or before the start of the snapshot, so
        replaying changes from it never skips a write.

        Raises:
            BulkLoadError: If the copy fails.
        """
        ...


@runtime_checkable
class Verifier(Protocol):
    """Compares source and target row by row."""

    async def verify(
        self,
        source: EndpointDescriptor,
        target: EndpointDescriptor,
        table_filter: TableFilter,
    ) -> VerificationReport:
        ...


@dataclass(frozen=True)
class Endpoint:
    """
    One side of a migration.

    Attributes:
        descriptor: Name, dialect and DSN of the database.
        changes: Change stream reading this database's commits.
        connector: Connector writing into this database.
        primary_keys: Key columns per qualified table, for change streams
            that do not send keys separately.
    """

    descriptor: EndpointDescriptor
    changes: ChangeStreamSource
    connector: TargetConnector
    primary_keys: dict[str, list[str]] | None = None

    @property
    def address_space(self) -> AddressSpace:
        return self.changes.address_space


__all__ = [
    "ChangeStreamSource",
    "TargetConnector",
    "BulkLoader",
    "Verifier",
    "Endpoint",
]
