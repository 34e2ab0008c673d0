"""
In-memory databases and connectors.

``InMemoryDatabase`` models one database with primary-keyed tables and a
commit log in its own address space: a source-log database numbers
transactions like a GTID-enabled binary log, a target-clock database
stamps them with hybrid logical timestamps. Every write, whether made by
an application or by a connector, is committed to the log, as it would
be on a real database.

The connectors built on it support failure injection so tests can
exercise retries, stalls and reconnects without a real database.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import AsyncIterator, Sequence
from copy import deepcopy
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from liveshift.connectors.interface import Endpoint
from liveshift.cursors import (
    AddressSpace,
    SourceCursor,
    TargetCursor,
    initial_cursor,
    is_at_or_after,
)
from liveshift.events import ChangeEvent, OperationKind, RawChangeEvent
from liveshift.exceptions import (
    ApplyTransientError,
    BulkLoadError,
    SourceStreamDisconnected,
)
from liveshift.models import (
    BulkLoadResult,
    EndpointDescriptor,
    TableFilter,
    TableVerification,
    VerificationReport,
)

logger = logging.getLogger(__name__)

RowKey = tuple[Any, ...]


@dataclass(frozen=True)
class _CommittedChange:
    position: SourceCursor | TargetCursor
    table: str
    op: str
    key: RowKey
    before: dict[str, Any] | None
    after: dict[str, Any] | None
    committed_at: datetime


class InMemoryDatabase:
    """
    An in-memory database with a commit log.

    Example:
        >>> source = InMemoryDatabase("mysql", AddressSpace.SOURCE_LOG, dialect="mysql")
        >>> source.create_table("chinook.artist", ["ArtistId"])
        >>> await source.insert("chinook.artist", {"ArtistId": 1, "Name": "AC/DC"})
        >>> source.current_position()
    """

    def __init__(
        self,
        name: str,
        space: AddressSpace,
        *,
        dialect: str | None = None,
        server_id: str | None = None,
    ) -> None:
        """
        Initialize an empty database.

        Args:
            name: Endpoint name
            space: Address space of the commit log
            dialect: Dialect reported in the descriptor (defaults to
                "mysql" for a source-log database, "cockroachdb" otherwise)
            server_id: GTID source id (source-log databases only)
        """
        self.name = name
        self.space = space
        self.dialect = dialect or (
            "mysql" if space == AddressSpace.SOURCE_LOG else "cockroachdb"
        )
        self.server_id = (server_id or str(uuid.uuid4())).lower()
        self._tables: dict[str, dict[RowKey, dict[str, Any]]] = {}
        self._primary_keys: dict[str, list[str]] = {}
        self._log: list[_CommittedChange] = []
        self._position: SourceCursor | TargetCursor = initial_cursor(space)
        self._sequence = 0
        self._last_wall = 0
        self._last_logical = 0
        self._changed = asyncio.Condition()

    @property
    def descriptor(self) -> EndpointDescriptor:
        return EndpointDescriptor(name=self.name, dialect=self.dialect, dsn=f"memory://{self.name}")

    @property
    def primary_keys(self) -> dict[str, list[str]]:
        return {table: list(columns) for table, columns in self._primary_keys.items()}

    @property
    def tables(self) -> list[str]:
        return sorted(self._tables)

    @property
    def changed(self) -> asyncio.Condition:
        """Notified whenever a transaction commits."""
        return self._changed

    @property
    def log_length(self) -> int:
        return len(self._log)

    def create_table(self, table: str, key_columns: Sequence[str]) -> None:
        """Create a table (schema-qualified name) if it does not exist."""
        if not key_columns:
            raise ValueError(f"Table {table} needs at least one key column")
        self._tables.setdefault(table, {})
        self._primary_keys[table] = list(key_columns)

    def key_of(self, table: str, row: dict[str, Any]) -> RowKey:
        return tuple(row[column] for column in self._require_table(table))

    def rows(self, table: str) -> dict[RowKey, dict[str, Any]]:
        """Get a copy of a table's rows by key."""
        self._require_table(table)
        return deepcopy(self._tables[table])

    def get(self, table: str, key: RowKey) -> dict[str, Any] | None:
        self._require_table(table)
        row = self._tables[table].get(tuple(key))
        return dict(row) if row is not None else None

    def count(self, table: str) -> int:
        self._require_table(table)
        return len(self._tables[table])

    def tables_matching(self, table_filter: TableFilter) -> list[str]:
        return [table for table in self.tables if table_filter.matches(table)]

    def current_position(self) -> SourceCursor | TargetCursor:
        """Position of the last committed transaction."""
        return self._position

    async def insert(self, table: str, row: dict[str, Any]) -> None:
        await self.commit([("insert", table, row)])

    async def update(self, table: str, row: dict[str, Any]) -> None:
        await self.commit([("update", table, row)])

    async def delete(self, table: str, key: RowKey) -> None:
        columns = self._require_table(table)
        await self.commit([("delete", table, dict(zip(columns, key, strict=True)))])

    async def commit(self, operations: Sequence[tuple[str, str, dict[str, Any]]]) -> None:
        """
        Commit one transaction.

        Args:
            operations: ``(op, table, row)`` triples; ``op`` is "insert",
                "update" (both upserts) or "delete" (only key columns of
                ``row`` are read)
        """
        if not operations:
            return
        position = self._next_position()
        committed_at = datetime.now(UTC)
        for op, table, row in operations:
            key = self.key_of(table, row)
            rows = self._tables[table]
            before = rows.get(key)
            if op == "delete":
                rows.pop(key, None)
                after = None
            elif op in ("insert", "update"):
                after = dict(row)
                rows[key] = after
            else:
                raise ValueError(f"Unsupported operation: {op!r}")
            self._log.append(
                _CommittedChange(
                    position=position,
                    table=table,
                    op=op,
                    key=key,
                    before=dict(before) if before is not None else None,
                    after=dict(after) if after is not None else None,
                    committed_at=committed_at,
                )
            )
        self._position = position
        async with self._changed:
            self._changed.notify_all()

    def load_rows(self, table: str, rows: dict[RowKey, dict[str, Any]]) -> None:
        """Bulk import rows without writing to the commit log."""
        self._require_table(table)
        self._tables[table].update(deepcopy(rows))

    def changes_after(self, index: int) -> list[_CommittedChange]:
        return self._log[index:]

    def _next_position(self) -> SourceCursor | TargetCursor:
        if self.space == AddressSpace.SOURCE_LOG:
            self._sequence += 1
            return SourceCursor.single(self.server_id, self._sequence)
        now = time.time_ns()
        if now > self._last_wall:
            self._last_wall, self._last_logical = now, 0
        else:
            self._last_logical += 1
        return TargetCursor(wall_time=self._last_wall, logical=self._last_logical)

    def _require_table(self, table: str) -> list[str]:
        columns = self._primary_keys.get(table)
        if columns is None:
            raise KeyError(f"Unknown table {table} in database {self.name}")
        return columns

    def endpoint(self) -> Endpoint:
        """Bundle this database with an in-memory change stream and connector."""
        return Endpoint(
            descriptor=self.descriptor,
            changes=InMemoryChangeStream(self),
            connector=InMemoryTargetConnector(self),
            primary_keys=self.primary_keys,
        )


class InMemoryChangeStream:
    """
    Change stream over an ``InMemoryDatabase`` commit log.

    Source-log databases emit binlog-style records (explicit operation
    names); target-clock databases emit changefeed-style records (no
    operation, a missing after-image means delete).

    Disconnects can be injected with ``disconnect()`` or
    ``disconnect_after(n)``.
    """

    def __init__(self, database: InMemoryDatabase) -> None:
        self._database = database
        self._disconnect_pending = False
        self._disconnect_after: int | None = None
        self._wake_task: asyncio.Task[None] | None = None
        self.connections = 0

    @property
    def address_space(self) -> AddressSpace:
        return self._database.space

    def disconnect(self) -> None:
        """Drop the current connection at the next opportunity."""
        self._disconnect_pending = True
        self._wake_task = asyncio.get_running_loop().create_task(self._wake())

    def disconnect_after(self, events: int) -> None:
        """Drop the connection after emitting ``events`` more records."""
        self._disconnect_after = events

    async def _wake(self) -> None:
        async with self._database.changed:
            self._database.changed.notify_all()

    async def stream(
        self,
        from_cursor: SourceCursor | TargetCursor,
    ) -> AsyncIterator[RawChangeEvent]:
        self.connections += 1
        index = 0
        while True:
            if self._disconnect_pending:
                self._disconnect_pending = False
                raise SourceStreamDisconnected(f"Change stream of {self._database.name} dropped")

            pending = self._database.changes_after(index)
            if not pending:
                async with self._database.changed:
                    await self._database.changed.wait_for(
                        lambda: self._database.log_length > index or self._disconnect_pending
                    )
                continue

            for change in pending:
                index += 1
                if is_at_or_after(from_cursor, change.position):
                    continue
                if self._disconnect_after is not None:
                    if self._disconnect_after <= 0:
                        self._disconnect_after = None
                        raise SourceStreamDisconnected(
                            f"Change stream of {self._database.name} dropped"
                        )
                    self._disconnect_after -= 1
                yield self._to_raw(change)

    def _to_raw(self, change: _CommittedChange) -> RawChangeEvent:
        if self._database.space == AddressSpace.SOURCE_LOG:
            op = {"insert": "write_rows", "update": "update_rows", "delete": "delete_rows"}
            return RawChangeEvent(
                table=change.table,
                op=op[change.op],
                key=list(change.key),
                before=change.before,
                after=change.after,
                position=str(change.position),
                committed_at=change.committed_at,
            )
        return RawChangeEvent(
            table=change.table,
            key=list(change.key),
            after=change.after,
            position=str(change.position),
            committed_at=change.committed_at,
        )


class InMemoryTargetConnector:
    """
    Target connector writing into an ``InMemoryDatabase``.

    Each ``apply`` call commits one transaction.

    Example:
        >>> connector = InMemoryTargetConnector(database)
        >>> connector.fail_next(3)  # three transient failures, then success
    """

    def __init__(self, database: InMemoryDatabase) -> None:
        self._database = database
        self._failures: list[BaseException] = []
        self._permanent_failure: BaseException | None = None
        self.apply_calls = 0
        self.events_applied = 0

    @property
    def database(self) -> InMemoryDatabase:
        return self._database

    def fail_next(self, times: int, error: BaseException | None = None) -> None:
        """Fail the next ``times`` apply calls (transient by default)."""
        for _ in range(times):
            self._failures.append(error or ApplyTransientError("injected transient failure"))

    def fail_always(self, error: BaseException) -> None:
        """Fail every apply call until ``clear_failures()``."""
        self._permanent_failure = error

    def clear_failures(self) -> None:
        self._failures.clear()
        self._permanent_failure = None

    async def apply(self, events: Sequence[ChangeEvent]) -> None:
        self.apply_calls += 1
        if self._permanent_failure is not None:
            raise self._permanent_failure
        if self._failures:
            raise self._failures.pop(0)

        operations: list[tuple[str, str, dict[str, Any]]] = []
        for event in events:
            if event.operation == OperationKind.DELETE:
                columns = self._database.primary_keys[event.qualified_table]
                operations.append(
                    ("delete", event.qualified_table, dict(zip(columns, event.key, strict=True)))
                )
            elif event.operation.writes_row and event.row is not None:
                operations.append(("update", event.qualified_table, dict(event.row)))
            else:
                raise ValueError(
                    f"Cannot apply {event.operation.value} change to {event.qualified_table}"
                )
        await self._database.commit(operations)
        self.events_applied += len(events)

    async def current_position(self) -> SourceCursor | TargetCursor:
        return self._database.current_position()


class InMemoryBulkLoader:
    """
    Copies tables between two ``InMemoryDatabase`` instances.

    The source position is captured before the first row is read, so the
    returned cursor is at or before the start of the snapshot.
    """

    def __init__(
        self,
        source: InMemoryDatabase,
        target: InMemoryDatabase,
        *,
        error: BaseException | None = None,
    ) -> None:
        self._source = source
        self._target = target
        self._error = error

    async def load(
        self,
        source: EndpointDescriptor,
        target: EndpointDescriptor,
        table_filter: TableFilter,
    ) -> BulkLoadResult:
        cursor = self._source.current_position()
        if self._error is not None:
            raise BulkLoadError(f"Bulk load from {source} failed: {self._error}") from self._error

        row_counts: dict[str, int] = {}
        for table in self._source.tables_matching(table_filter):
            self._target.create_table(table, self._source.primary_keys[table])
            rows = self._source.rows(table)
            self._target.load_rows(table, rows)
            row_counts[table] = len(rows)
            logger.info("Copied %d rows of %s from %s to %s", len(rows), table, source, target)
            # Let other tasks (and application writes) run between tables.
            await asyncio.sleep(0)
        return BulkLoadResult(row_counts=row_counts, cursor=cursor)


class InMemoryVerifier:
    """
    Compares two ``InMemoryDatabase`` instances table by table.

    Mismatched keys are reported as a bounded, sorted sample; the full
    mismatch count is always exact.
    """

    def __init__(
        self,
        source: InMemoryDatabase,
        target: InMemoryDatabase,
        *,
        sample_limit: int = 100,
    ) -> None:
        self._source = source
        self._target = target
        self._sample_limit = sample_limit

    async def verify(
        self,
        source: EndpointDescriptor,
        target: EndpointDescriptor,
        table_filter: TableFilter,
    ) -> VerificationReport:
        results = []
        for table in self._source.tables_matching(table_filter):
            source_rows = self._source.rows(table)
            target_rows = self._target.rows(table) if table in self._target.tables else {}
            mismatched = [
                key
                for key in set(source_rows) | set(target_rows)
                if source_rows.get(key) != target_rows.get(key)
            ]
            mismatched.sort(key=repr)
            results.append(
                TableVerification(
                    table=table,
                    source_rows=len(source_rows),
                    target_rows=len(target_rows),
                    mismatch_count=len(mismatched),
                    mismatched_keys=tuple(mismatched[: self._sample_limit]),
                )
            )
            await asyncio.sleep(0)
        return VerificationReport(tables=tuple(results))


__all__ = [
    "InMemoryDatabase",
    "InMemoryChangeStream",
    "InMemoryTargetConnector",
    "InMemoryBulkLoader",
    "InMemoryVerifier",
]
