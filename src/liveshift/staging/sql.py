"""
SQL staging store over a SQLAlchemy async engine.

Staged records live in ``<prefix>_staging`` and stream checkpoints in
``<prefix>_checkpoints``; the default prefix is ``_replicator``, which the
default table filter excludes from migration. The SQL is portable across
PostgreSQL, CockroachDB and SQLite (``ON CONFLICT`` upserts).

Every operation runs in a single transaction, so a batch of applied
records and the stream checkpoint are committed together.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from typing import Any

from pydantic import TypeAdapter
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection

from liveshift._connection import SQLBind, unit_of_work
from liveshift.cursors import Cursor, SourceCursor, TargetCursor, advance, is_at_or_after
from liveshift.events import ChangeEvent
from liveshift.models import StagingRecord, StagingStatus
from liveshift.observability import ATTR_BATCH_SIZE, ATTR_STREAM_ID, Tracer, create_tracer

logger = logging.getLogger(__name__)

_CURSOR_ADAPTER: TypeAdapter[SourceCursor | TargetCursor] = TypeAdapter(Cursor)
_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")

_COLUMNS = """
    record_id, table_name, row_key, commit_token, sort_major, sort_minor,
    event_json, status, attempts, deliveries, staged_at, applied_at,
    last_error, target_position
"""


def _dump_cursor(cursor: SourceCursor | TargetCursor | None) -> str | None:
    return cursor.model_dump_json() if cursor is not None else None


def _load_cursor(raw: str | None) -> SourceCursor | TargetCursor | None:
    return _CURSOR_ADAPTER.validate_json(raw) if raw else None


def _row_key(event: ChangeEvent) -> str:
    return json.dumps(event.model_dump(mode="json")["key"], separators=(",", ":"))


class SQLStagingStore:
    """
    SQL implementation of the staging store.

    Example:
        >>> engine = create_async_engine("sqlite+aiosqlite:///staging.db")
        >>> store = SQLStagingStore(engine, "forward")
        >>> await store.initialize()
        >>> record = await store.append(event)
    """

    def __init__(
        self,
        conn: SQLBind,
        stream_id: str = "default",
        *,
        table_prefix: str = "_replicator",
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """
        Initialize the store.

        Args:
            conn: Database connection or engine
            stream_id: Replication stream served by this store
            table_prefix: Prefix for the staging and checkpoint tables
            tracer: Optional tracer (if not provided, one will be created)
            enable_tracing: Whether to enable OpenTelemetry tracing (default True)
            clock: Time source for staged/applied timestamps

        Raises:
            ValueError: If the table prefix is not a plain SQL identifier
        """
        if not _IDENTIFIER_RE.match(table_prefix):
            raise ValueError(f"Invalid table prefix: {table_prefix!r}")
        self.conn = conn
        self._stream_id = stream_id
        self._staging_table = f"{table_prefix}_staging"
        self._checkpoint_table = f"{table_prefix}_checkpoints"
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._clock = clock or (lambda: datetime.now(UTC))

    @property
    def stream_id(self) -> str:
        return self._stream_id

    @property
    def staging_table(self) -> str:
        return self._staging_table

    @property
    def checkpoint_table(self) -> str:
        return self._checkpoint_table

    async def initialize(self) -> None:
        """Create the staging and checkpoint tables if they do not exist."""
        statements = [
            f"""
            CREATE TABLE IF NOT EXISTS {self._staging_table} (
                stream_id VARCHAR(255) NOT NULL,
                record_id BIGINT NOT NULL,
                table_name VARCHAR(512) NOT NULL,
                row_key TEXT NOT NULL,
                commit_token TEXT NOT NULL,
                sort_major BIGINT NOT NULL,
                sort_minor BIGINT NOT NULL,
                event_json TEXT NOT NULL,
                status VARCHAR(32) NOT NULL,
                attempts INTEGER NOT NULL DEFAULT 0,
                deliveries INTEGER NOT NULL DEFAULT 1,
                staged_at VARCHAR(64) NOT NULL,
                applied_at VARCHAR(64),
                last_error TEXT,
                target_position TEXT,
                PRIMARY KEY (stream_id, record_id),
                UNIQUE (stream_id, table_name, row_key, commit_token)
            )
            """,
            f"""
            CREATE INDEX IF NOT EXISTS {self._staging_table}_pending_idx
                ON {self._staging_table} (stream_id, status, sort_major, sort_minor, record_id)
            """,
            f"""
            CREATE TABLE IF NOT EXISTS {self._checkpoint_table} (
                stream_id VARCHAR(255) PRIMARY KEY,
                cursor_json TEXT NOT NULL,
                updated_at VARCHAR(64) NOT NULL
            )
            """,
        ]
        async with unit_of_work(self.conn) as conn:
            for statement in statements:
                await conn.execute(text(statement))

    async def append(self, event: ChangeEvent) -> StagingRecord:
        with self._tracer.span("liveshift.staging.append", {ATTR_STREAM_ID: self._stream_id}):
            row_key = _row_key(event)
            token = str(event.commit_token)
            async with unit_of_work(self.conn) as conn:
                result = await conn.execute(
                    text(f"""
                        SELECT {_COLUMNS} FROM {self._staging_table}
                        WHERE stream_id = :stream_id AND table_name = :table_name
                          AND row_key = :row_key AND commit_token = :commit_token
                    """),
                    {
                        "stream_id": self._stream_id,
                        "table_name": event.qualified_table,
                        "row_key": row_key,
                        "commit_token": token,
                    },
                )
                existing = result.fetchone()
                if existing is not None:
                    record = self._to_record(existing)
                    if record.is_applied:
                        return record
                    await conn.execute(
                        text(f"""
                            UPDATE {self._staging_table}
                            SET event_json = :event_json, deliveries = deliveries + 1
                            WHERE stream_id = :stream_id AND record_id = :record_id
                        """),
                        {
                            "event_json": event.model_dump_json(),
                            "stream_id": self._stream_id,
                            "record_id": record.record_id,
                        },
                    )
                    record.event = event
                    record.deliveries += 1
                    return record

                result = await conn.execute(
                    text(f"""
                        SELECT COALESCE(MAX(record_id), 0) FROM {self._staging_table}
                        WHERE stream_id = :stream_id
                    """),
                    {"stream_id": self._stream_id},
                )
                record_id = int(result.scalar_one()) + 1
                staged_at = self._clock()
                major, minor = event.commit_token.sort_key
                await conn.execute(
                    text(f"""
                        INSERT INTO {self._staging_table}
                            (stream_id, record_id, table_name, row_key, commit_token,
                             sort_major, sort_minor, event_json, status, attempts,
                             deliveries, staged_at)
                        VALUES (:stream_id, :record_id, :table_name, :row_key, :commit_token,
                                :sort_major, :sort_minor, :event_json, :status, 0,
                                1, :staged_at)
                    """),
                    {
                        "stream_id": self._stream_id,
                        "record_id": record_id,
                        "table_name": event.qualified_table,
                        "row_key": row_key,
                        "commit_token": token,
                        "sort_major": major,
                        "sort_minor": minor,
                        "event_json": event.model_dump_json(),
                        "status": StagingStatus.PENDING.value,
                        "staged_at": staged_at.isoformat(),
                    },
                )
                return StagingRecord(
                    record_id=record_id,
                    event=event,
                    arrival_seq=record_id,
                    staged_at=staged_at,
                )

    async def next_unapplied(
        self,
        after: SourceCursor | TargetCursor | None = None,
        limit: int = 100,
    ) -> list[StagingRecord]:
        first_page = text(f"""
            SELECT {_COLUMNS} FROM {self._staging_table}
            WHERE stream_id = :stream_id AND status IN (:pending, :retry_pending)
            ORDER BY sort_major, sort_minor, record_id
            LIMIT :page_size
        """)
        next_page = text(f"""
            SELECT {_COLUMNS} FROM {self._staging_table}
            WHERE stream_id = :stream_id AND status IN (:pending, :retry_pending)
              AND (sort_major > :last_major
                   OR (sort_major = :last_major AND sort_minor > :last_minor)
                   OR (sort_major = :last_major AND sort_minor = :last_minor
                       AND record_id > :last_id))
            ORDER BY sort_major, sort_minor, record_id
            LIMIT :page_size
        """)
        params: dict[str, Any] = {
            "stream_id": self._stream_id,
            "pending": StagingStatus.PENDING.value,
            "retry_pending": StagingStatus.RETRY_PENDING.value,
            "page_size": limit,
        }
        records: list[StagingRecord] = []
        async with unit_of_work(self.conn, write=False) as conn:
            query = first_page
            while len(records) < limit:
                rows = (await conn.execute(query, params)).fetchall()
                # Source cursors are only partially ordered, so "after" is
                # checked per channel here rather than in SQL.
                for row in rows:
                    record = self._to_record(row)
                    if after is not None and is_at_or_after(after, record.event.commit_token):
                        continue
                    records.append(record)
                    if len(records) >= limit:
                        break
                if len(rows) < limit:
                    break
                last = rows[-1]
                params.update(
                    last_major=last.sort_major,
                    last_minor=last.sort_minor,
                    last_id=last.record_id,
                )
                query = next_page
        return records

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
            now = self._clock().isoformat()
            async with unit_of_work(self.conn) as conn:
                if records:
                    await conn.execute(
                        text(f"""
                            UPDATE {self._staging_table}
                            SET status = :status, attempts = attempts + 1,
                                applied_at = :applied_at, target_position = :target_position
                            WHERE stream_id = :stream_id AND record_id = :record_id
                        """),
                        [
                            {
                                "status": StagingStatus.APPLIED.value,
                                "applied_at": now,
                                "target_position": _dump_cursor(target_position),
                                "stream_id": self._stream_id,
                                "record_id": record.record_id,
                            }
                            for record in records
                        ],
                    )
                if checkpoint is not None:
                    current = await self._read_checkpoint(conn)
                    merged = checkpoint if current is None else advance(current, checkpoint)
                    await self._write_checkpoint(conn, merged, now)

    async def mark_failed(
        self,
        record: StagingRecord,
        error: str,
        *,
        retryable: bool = True,
    ) -> StagingRecord:
        status = StagingStatus.RETRY_PENDING if retryable else StagingStatus.FAILED
        async with unit_of_work(self.conn) as conn:
            await conn.execute(
                text(f"""
                    UPDATE {self._staging_table}
                    SET attempts = attempts + 1, last_error = :error, status = :status
                    WHERE stream_id = :stream_id AND record_id = :record_id
                """),
                {
                    "error": error,
                    "status": status.value,
                    "stream_id": self._stream_id,
                    "record_id": record.record_id,
                },
            )
            updated = await self._fetch(conn, record.record_id)
        if updated is None:
            raise KeyError(f"Unknown staging record {record.record_id} on stream {self._stream_id}")
        return updated

    async def checkpoint(self) -> SourceCursor | TargetCursor | None:
        async with unit_of_work(self.conn, write=False) as conn:
            return await self._read_checkpoint(conn)

    async def reset_checkpoint(self, cursor: SourceCursor | TargetCursor) -> None:
        async with unit_of_work(self.conn) as conn:
            current = await self._read_checkpoint(conn)
            logger.warning(
                "Checkpoint of stream %s reset from %s to %s",
                self._stream_id,
                current,
                cursor,
            )
            await self._write_checkpoint(conn, cursor, self._clock().isoformat())

    async def backlog_size(self) -> int:
        async with unit_of_work(self.conn, write=False) as conn:
            result = await conn.execute(
                text(f"""
                    SELECT COUNT(*) FROM {self._staging_table}
                    WHERE stream_id = :stream_id AND status <> :applied
                """),
                {"stream_id": self._stream_id, "applied": StagingStatus.APPLIED.value},
            )
            return int(result.scalar_one())

    async def get(self, record_id: int) -> StagingRecord | None:
        async with unit_of_work(self.conn, write=False) as conn:
            return await self._fetch(conn, record_id)

    async def requeue_failed(self) -> int:
        async with unit_of_work(self.conn) as conn:
            result = await conn.execute(
                text(f"""
                    UPDATE {self._staging_table} SET status = :retry_pending
                    WHERE stream_id = :stream_id AND status = :failed
                """),
                {
                    "retry_pending": StagingStatus.RETRY_PENDING.value,
                    "stream_id": self._stream_id,
                    "failed": StagingStatus.FAILED.value,
                },
            )
            return result.rowcount or 0

    async def purge(
        self,
        acknowledged: SourceCursor | TargetCursor,
        older_than: datetime,
    ) -> int:
        async with unit_of_work(self.conn) as conn:
            result = await conn.execute(
                text(f"""
                    SELECT {_COLUMNS} FROM {self._staging_table}
                    WHERE stream_id = :stream_id AND status = :applied
                """),
                {"stream_id": self._stream_id, "applied": StagingStatus.APPLIED.value},
            )
            doomed = [
                {"stream_id": self._stream_id, "record_id": record.record_id}
                for record in map(self._to_record, result.fetchall())
                if record.applied_at is not None
                and record.applied_at < older_than
                and is_at_or_after(acknowledged, record.event.commit_token)
            ]
            if doomed:
                await conn.execute(
                    text(f"""
                        DELETE FROM {self._staging_table}
                        WHERE stream_id = :stream_id AND record_id = :record_id
                    """),
                    doomed,
                )
            return len(doomed)

    async def _fetch(self, conn: AsyncConnection, record_id: int) -> StagingRecord | None:
        result = await conn.execute(
            text(f"""
                SELECT {_COLUMNS} FROM {self._staging_table}
                WHERE stream_id = :stream_id AND record_id = :record_id
            """),
            {"stream_id": self._stream_id, "record_id": record_id},
        )
        row = result.fetchone()
        return self._to_record(row) if row else None

    async def _read_checkpoint(self, conn: AsyncConnection) -> SourceCursor | TargetCursor | None:
        result = await conn.execute(
            text(f"SELECT cursor_json FROM {self._checkpoint_table} WHERE stream_id = :stream_id"),
            {"stream_id": self._stream_id},
        )
        row = result.fetchone()
        return _load_cursor(row[0]) if row else None

    async def _write_checkpoint(
        self,
        conn: AsyncConnection,
        cursor: SourceCursor | TargetCursor,
        now: str,
    ) -> None:
        await conn.execute(
            text(f"""
                INSERT INTO {self._checkpoint_table} (stream_id, cursor_json, updated_at)
                VALUES (:stream_id, :cursor_json, :updated_at)
                ON CONFLICT (stream_id) DO UPDATE
                SET cursor_json = excluded.cursor_json,
                    updated_at = excluded.updated_at
            """),
            {
                "stream_id": self._stream_id,
                "cursor_json": _dump_cursor(cursor),
                "updated_at": now,
            },
        )

    @staticmethod
    def _to_record(row: Any) -> StagingRecord:
        return StagingRecord(
            record_id=int(row.record_id),
            event=ChangeEvent.model_validate_json(row.event_json),
            arrival_seq=int(row.record_id),
            staged_at=datetime.fromisoformat(row.staged_at),
            status=StagingStatus(row.status),
            attempts=int(row.attempts),
            applied_at=datetime.fromisoformat(row.applied_at) if row.applied_at else None,
            last_error=row.last_error,
            target_position=_load_cursor(row.target_position),
            deliveries=int(row.deliveries),
        )


__all__ = ["SQLStagingStore"]
