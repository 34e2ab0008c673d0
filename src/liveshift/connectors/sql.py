"""
SQL target connector over a SQLAlchemy async engine.

Applies normalized change events with dialect-specific upserts:

- PostgreSQL / CockroachDB / SQLite: ``INSERT ... ON CONFLICT DO UPDATE``
- MySQL: ``INSERT ... ON DUPLICATE KEY UPDATE``

Deletes are issued by primary key. Driver errors are classified so the
applier knows what to retry: lost connections and serialization
failures become ``ApplyTransientError``; everything else (integrity
violations in particular) propagates unchanged as non-transient.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from sqlalchemy import MetaData, Table, and_, delete, text
from sqlalchemy.dialects import mysql, postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncConnection

from liveshift._connection import (
    TRANSIENT_SQLSTATES,
    SQLBind,
    is_transient_db_error,
    transient_db_errors,
    unit_of_work,
)
from liveshift.cursors import AddressSpace, SourceCursor, TargetCursor, parse_cursor
from liveshift.events import ChangeEvent, OperationKind
from liveshift.observability import ATTR_BATCH_SIZE, ATTR_DB_SYSTEM, Tracer, create_tracer

logger = logging.getLogger(__name__)

DEFAULT_POSITION_QUERIES: dict[str, str] = {
    "cockroachdb": "SELECT cluster_logical_timestamp()",
    "mysql": "SELECT @@global.gtid_executed",
}

DEFAULT_ADDRESS_SPACES: dict[str, AddressSpace] = {
    "cockroachdb": AddressSpace.TARGET_CLOCK,
    "mysql": AddressSpace.SOURCE_LOG,
}


class SQLTargetConnector:
    """
    Target connector writing through SQLAlchemy.

    Table definitions are reflected on first use and cached.

    Example:
        >>> engine = create_async_engine("cockroachdb+asyncpg://root@localhost:26257/defaultdb")
        >>> connector = SQLTargetConnector(engine)
        >>> await connector.apply(events)
        >>> position = await connector.current_position()
    """

    def __init__(
        self,
        conn: SQLBind,
        *,
        address_space: AddressSpace | None = None,
        position_query: str | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the connector.

        Args:
            conn: Database connection or engine
            address_space: Address space of ``current_position()``
                (derived from the dialect for MySQL and CockroachDB; CockroachDB
                behind the postgresql dialect is detected from its version string)
            position_query: Query returning the current position as a single
                value (derived from the dialect for MySQL and CockroachDB)
            tracer: Optional tracer (if not provided, one will be created)
            enable_tracing: Whether to enable OpenTelemetry tracing (default True)
        """
        self.conn = conn
        self._dialect = conn.dialect.name
        self._address_space = address_space or DEFAULT_ADDRESS_SPACES.get(self._dialect)
        self._position_query = position_query or DEFAULT_POSITION_QUERIES.get(self._dialect)
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._tables: dict[str, Table] = {}

    @property
    def dialect(self) -> str:
        return self._dialect

    async def apply(self, events: Sequence[ChangeEvent]) -> None:
        with self._tracer.span(
            "liveshift.sql_target.apply",
            {ATTR_DB_SYSTEM: self._dialect, ATTR_BATCH_SIZE: len(events)},
        ):
            with transient_db_errors(self._dialect):
                async with unit_of_work(self.conn) as conn:
                    for event in events:
                        table = await self._reflect(conn, event)
                        await conn.execute(self._statement(table, event))

    async def current_position(self) -> SourceCursor | TargetCursor:
        if self._position_query is None and self._dialect == "postgresql":
            await self._detect_cockroachdb()
        if self._position_query is None or self._address_space is None:
            raise ValueError(
                f"No position query for dialect {self._dialect!r}; "
                "pass position_query and address_space"
            )
        with transient_db_errors(self._dialect):
            async with unit_of_work(self.conn, write=False) as conn:
                result = await conn.execute(text(self._position_query))
                value = result.scalar_one()
        return parse_cursor(str(value) if value is not None else None, self._address_space)

    async def _detect_cockroachdb(self) -> None:
        # CockroachDB reached through the postgresql dialect (asyncpg without
        # sqlalchemy-cockroachdb) still reports the dialect as postgresql.
        with transient_db_errors(self._dialect):
            async with unit_of_work(self.conn, write=False) as conn:
                version = (await conn.execute(text("SELECT version()"))).scalar_one()
        if "cockroachdb" not in str(version).lower():
            return
        logger.info("Detected CockroachDB behind the postgresql dialect: %s", version)
        self._dialect = "cockroachdb"
        self._address_space = self._address_space or DEFAULT_ADDRESS_SPACES["cockroachdb"]
        self._position_query = DEFAULT_POSITION_QUERIES["cockroachdb"]

    async def _reflect(self, conn: AsyncConnection, event: ChangeEvent) -> Table:
        cached = self._tables.get(event.qualified_table)
        if cached is not None:
            return cached

        def load(sync_conn: Any) -> Table:
            return Table(
                event.table,
                MetaData(),
                schema=event.schema_name,
                autoload_with=sync_conn,
            )

        table = await conn.run_sync(load)
        if not table.primary_key.columns:
            raise ValueError(f"Table {event.qualified_table} has no primary key")
        self._tables[event.qualified_table] = table
        logger.debug("Reflected %s for %s target", event.qualified_table, self._dialect)
        return table

    def _statement(self, table: Table, event: ChangeEvent) -> Any:
        key_columns = [column.name for column in table.primary_key.columns]
        if event.operation == OperationKind.DELETE:
            if len(key_columns) != len(event.key):
                raise ValueError(
                    f"Key {event.key} does not match primary key {key_columns} "
                    f"of {event.qualified_table}"
                )
            return delete(table).where(
                and_(
                    *(
                        table.c[column] == value
                        for column, value in zip(key_columns, event.key, strict=True)
                    )
                )
            )
        if not event.operation.writes_row or event.row is None:
            raise ValueError(
                f"Cannot apply {event.operation.value} change to {event.qualified_table}"
            )
        return self._upsert(table, key_columns, dict(event.row))

    def _upsert(self, table: Table, key_columns: list[str], row: dict[str, Any]) -> Any:
        updates = [column for column in row if column not in key_columns]
        if self._dialect == "mysql":
            stmt = mysql.insert(table).values(row)
            # MySQL has no DO NOTHING; assigning a key column to itself is the idiom.
            assignments = {column: stmt.inserted[column] for column in updates or key_columns[:1]}
            return stmt.on_duplicate_key_update(assignments)

        if self._dialect == "sqlite":
            stmt = sqlite.insert(table).values(row)
        else:
            stmt = postgresql.insert(table).values(row)
        if not updates:
            return stmt.on_conflict_do_nothing(index_elements=key_columns)
        return stmt.on_conflict_do_update(
            index_elements=key_columns,
            set_={column: stmt.excluded[column] for column in updates},
        )


__all__ = [
    "SQLTargetConnector",
    "is_transient_db_error",
    "TRANSIENT_SQLSTATES",
]
