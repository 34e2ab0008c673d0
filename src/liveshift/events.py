"""
Change event model.

A ``ChangeEvent`` is the canonical, dialect-independent record of one
committed row mutation. Change stream sources emit loosely shaped
``RawChangeEvent`` objects; ``ChangeEventNormalizer`` turns them into
``ChangeEvent`` instances.

Normalization is total: an operation name the normalizer does not know
becomes ``OperationKind.UNKNOWN`` and is kept for operator inspection.
It is never dropped.

Delete events may carry a key-only row image. This is an accepted
limitation: replaying a delete only needs the primary key.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from liveshift.cursors import AddressSpace, Cursor, parse_cursor
from liveshift.exceptions import InvalidChangeEvent

logger = logging.getLogger(__name__)


class OperationKind(Enum):
    """Kind of row mutation carried by a change event."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"
    UNKNOWN = "unknown"
    """Placeholder for operations the normalizer did not recognize."""

    @property
    def writes_row(self) -> bool:
        """True for operations applied as an upsert."""
        return self in (OperationKind.INSERT, OperationKind.UPDATE)


# Operation names emitted by binlog readers, Debezium-style envelopes and
# changefeed sinks.
_OPERATION_ALIASES: dict[str, OperationKind] = {
    "insert": OperationKind.INSERT,
    "c": OperationKind.INSERT,
    "create": OperationKind.INSERT,
    "r": OperationKind.INSERT,
    "write_rows": OperationKind.INSERT,
    "update": OperationKind.UPDATE,
    "u": OperationKind.UPDATE,
    "upsert": OperationKind.UPDATE,
    "update_rows": OperationKind.UPDATE,
    "delete": OperationKind.DELETE,
    "d": OperationKind.DELETE,
    "delete_rows": OperationKind.DELETE,
}


class ChangeEvent(BaseModel):
    """
    One committed row mutation.

    Attributes:
        schema_name: Schema (database) the table belongs to.
        table: Table name.
        operation: Kind of mutation.
        key: Primary-key values in key column order.
        row: Full row image; None or key-only for deletes.
        commit_token: Cursor of the commit in the source's address space.
        committed_at: Commit time reported by the source, if any.
        ingested_at: When the orchestrator received the event.
    """

    model_config = ConfigDict(frozen=True)

    schema_name: str = Field(..., min_length=1)
    table: str = Field(..., min_length=1)
    operation: OperationKind
    key: tuple[Any, ...] = Field(..., min_length=1)
    row: dict[str, Any] | None = None
    commit_token: Cursor
    committed_at: datetime | None = None
    ingested_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def qualified_table(self) -> str:
        """Schema-qualified table name."""
        return f"{self.schema_name}.{self.table}"

    @property
    def row_key(self) -> tuple[str, tuple[Any, ...]]:
        """Identity of the affected row, used to group per-key mutations."""
        return (self.qualified_table, self.key)

    @property
    def dedup_key(self) -> tuple[str, tuple[Any, ...], str]:
        """The ``(table, key, commit token)`` triple re-deliveries share."""
        return (self.qualified_table, self.key, str(self.commit_token))


class RawChangeEvent(BaseModel):
    """
    A change as emitted by a change stream source, before normalization.

    Binlog readers set ``op``. Changefeed sinks usually omit it and send
    ``after=None`` for deletes.

    Attributes:
        table: Schema-qualified table name (``schema.table``).
        op: Operation name as emitted by the source, if any.
        key: Primary-key values, if the source sends them separately.
        before: Row image before the change.
        after: Row image after the change.
        position: Commit position text in the source's address space.
        committed_at: Source commit time.
    """

    table: str
    op: str | None = None
    key: Sequence[Any] | None = None
    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None
    position: str
    committed_at: datetime | None = None


class ChangeEventNormalizer:
    """
    Converts raw change stream records into ``ChangeEvent`` instances.

    Example:
        >>> normalizer = ChangeEventNormalizer(
        ...     AddressSpace.SOURCE_LOG,
        ...     primary_keys={"chinook.artist": ["ArtistId"]},
        ... )
        >>> event = normalizer.normalize(raw)
    """

    def __init__(
        self,
        space: AddressSpace,
        *,
        primary_keys: Mapping[str, Sequence[str]] | None = None,
        max_unknown_retained: int = 100,
    ) -> None:
        """
        Initialize the normalizer.

        Args:
            space: Address space of the stream's commit positions.
            primary_keys: Key columns per qualified table (lower-cased
                lookup), used when a raw event carries no explicit key.
            max_unknown_retained: How many unknown-operation events to keep
                for operator inspection.
        """
        self._space = space
        self._primary_keys = {
            table.lower(): list(columns) for table, columns in (primary_keys or {}).items()
        }
        self._unknown: deque[ChangeEvent] = deque(maxlen=max_unknown_retained)
        self._unknown_count = 0

    @property
    def space(self) -> AddressSpace:
        return self._space

    @property
    def unknown_events(self) -> list[ChangeEvent]:
        """Most recent events whose operation was not recognized."""
        return list(self._unknown)

    @property
    def unknown_count(self) -> int:
        """Total unknown-operation events seen (not bounded)."""
        return self._unknown_count

    def normalize(self, raw: RawChangeEvent) -> ChangeEvent:
        """
        Normalize a raw change event.

        Raises:
            InvalidChangeEvent: If the table is not schema-qualified or no
                primary key can be determined.
            InvalidCursor: If the position does not parse in this space.
        """
        schema_name, _, table = raw.table.rpartition(".")
        if not schema_name or not table:
            raise InvalidChangeEvent(f"Table {raw.table!r} is not schema-qualified", raw)

        operation = self._operation_for(raw)
        if operation == OperationKind.DELETE:
            row = raw.before if raw.before is not None else raw.after
        else:
            row = raw.after if raw.after is not None else raw.before
        key = self._key_for(raw, row)

        if operation == OperationKind.DELETE and row is None:
            # Key-only delete image.
            columns = self._primary_keys.get(raw.table.lower())
            if columns and len(columns) == len(key):
                row = dict(zip(columns, key, strict=True))

        event = ChangeEvent(
            schema_name=schema_name,
            table=table,
            operation=operation,
            key=key,
            row=row,
            commit_token=parse_cursor(raw.position, self._space),
            committed_at=raw.committed_at,
        )

        if operation == OperationKind.UNKNOWN:
            self._unknown.append(event)
            self._unknown_count += 1
            logger.warning(
                "Unrecognized operation %r on %s key=%s at %s; kept for inspection",
                raw.op,
                event.qualified_table,
                event.key,
                event.commit_token,
            )
        return event

    def _operation_for(self, raw: RawChangeEvent) -> OperationKind:
        if raw.op is None:
            # Changefeed envelope: a missing after-image is a delete.
            return OperationKind.DELETE if raw.after is None else OperationKind.UPDATE
        return _OPERATION_ALIASES.get(raw.op.strip().lower(), OperationKind.UNKNOWN)

    def _key_for(self, raw: RawChangeEvent, row: dict[str, Any] | None) -> tuple[Any, ...]:
        if raw.key is not None and len(raw.key) > 0:
            return tuple(raw.key)
        columns = self._primary_keys.get(raw.table.lower())
        if not columns:
            raise InvalidChangeEvent(
                f"No key in change for {raw.table} and no primary key columns configured",
                raw,
            )
        if row is None:
            raise InvalidChangeEvent(f"No key or row image in change for {raw.table}", raw)
        missing = [column for column in columns if column not in row]
        if missing:
            raise InvalidChangeEvent(
                f"Row image for {raw.table} lacks key columns {missing}",
                raw,
            )
        return tuple(row[column] for column in columns)


def normalize(
    raw: RawChangeEvent,
    space: AddressSpace,
    primary_keys: Mapping[str, Sequence[str]] | None = None,
) -> ChangeEvent:
    """Normalize one raw event without keeping normalizer state."""
    return ChangeEventNormalizer(space, primary_keys=primary_keys).normalize(raw)


__all__ = [
    "OperationKind",
    "ChangeEvent",
    "RawChangeEvent",
    "ChangeEventNormalizer",
    "normalize",
]
