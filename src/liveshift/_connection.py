"""
SQLAlchemy plumbing shared by the SQL staging store and target connector.

Both accept either an ``AsyncEngine`` or a caller-owned ``AsyncConnection``.
With an engine every unit of work opens its own connection, inside a
transaction when it writes. A caller-owned connection is used as is and
the caller decides when to commit.
"""

from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager, contextmanager

from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from liveshift.exceptions import ApplyTransientError

SQLBind = AsyncConnection | AsyncEngine

# Serialization failure, deadlock, connection exceptions, admin shutdown
TRANSIENT_SQLSTATES = frozenset({"40001", "40P01", "08000", "08003", "08006", "57P01"})


@asynccontextmanager
async def unit_of_work(conn: SQLBind, *, write: bool = True) -> AsyncIterator[AsyncConnection]:
    """
    Yield the connection for one unit of work.

    Example:
        >>> async with unit_of_work(self.conn) as conn:
        ...     await conn.execute(statement, params)
        >>> async with unit_of_work(self.conn, write=False) as conn:
        ...     rows = (await conn.execute(query)).fetchall()
    """
    if not isinstance(conn, AsyncEngine):
        yield conn
        return
    opener = conn.begin() if write else conn.connect()
    async with opener as connection:
        yield connection


def is_transient_db_error(error: DBAPIError) -> bool:
    """Check whether a driver error is worth retrying."""
    if isinstance(error, OperationalError) or error.connection_invalidated:
        return True
    orig = error.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    return sqlstate in TRANSIENT_SQLSTATES


@contextmanager
def transient_db_errors(dialect: str) -> Iterator[None]:
    """
    Re-raise retryable driver errors as ``ApplyTransientError``.

    Other driver errors (integrity violations in particular) propagate
    unchanged.
    """
    try:
        yield
    except DBAPIError as e:
        if is_transient_db_error(e):
            raise ApplyTransientError(f"Transient {dialect} error: {e.orig}") from e
        raise


__all__ = [
    "SQLBind",
    "TRANSIENT_SQLSTATES",
    "is_transient_db_error",
    "transient_db_errors",
    "unit_of_work",
]
