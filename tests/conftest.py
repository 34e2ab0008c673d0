"""
Shared pytest fixtures for the liveshift tests.

This module provides:
- A manual clock for time-dependent logic (manual_clock)
- A change event factory (make_event)
- In-memory databases with a ``chinook.artist`` table (source_db, target_db)
- Staging store fixtures (staging)
- SQLite engine fixtures (sqlite_engine)
- Tracing and metrics fixtures (mock_tracer, metrics)

Plain helpers live in ``tests.fixtures``.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from liveshift.connectors.in_memory import InMemoryDatabase
from liveshift.cursors import AddressSpace
from liveshift.events import ChangeEvent
from liveshift.metrics import MigrationMetrics
from liveshift.observability import MockTracer
from liveshift.staging.in_memory import InMemoryStagingStore
from tests.fixtures import ARTIST_TABLE, SERVER_ID, ManualClock, create_event

# ============================================================================
# Clock and events
# ============================================================================


@pytest.fixture
def manual_clock() -> ManualClock:
    """Provide a manual clock starting at 2024-01-01T00:00:00Z."""
    return ManualClock()


@pytest.fixture
def make_event() -> Callable[..., ChangeEvent]:
    """
    Factory fixture for change events.

    Example:
        def test_something(make_event):
            event = make_event(1, key=7, name="AC/DC")
    """
    return create_event


# ============================================================================
# Databases
# ============================================================================


@pytest.fixture
def source_db() -> InMemoryDatabase:
    """A source-log database with an empty ``chinook.artist`` table."""
    database = InMemoryDatabase(
        "mysql", AddressSpace.SOURCE_LOG, dialect="mysql", server_id=SERVER_ID
    )
    database.create_table(ARTIST_TABLE, ["ArtistId"])
    return database


@pytest.fixture
def target_db() -> InMemoryDatabase:
    """A target-clock database with an empty ``chinook.artist`` table."""
    database = InMemoryDatabase("cockroach", AddressSpace.TARGET_CLOCK)
    database.create_table(ARTIST_TABLE, ["ArtistId"])
    return database


# ============================================================================
# Stores
# ============================================================================


@pytest.fixture
def staging(manual_clock: ManualClock) -> InMemoryStagingStore:
    return InMemoryStagingStore("forward", enable_tracing=False, clock=manual_clock)


@pytest_asyncio.fixture
async def sqlite_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """
    Provide an async SQLite engine backed by a temporary file.

    Yields:
        AsyncEngine: Engine disposed after the test.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'liveshift.db'}")
    yield engine
    await engine.dispose()


# ============================================================================
# Observability
# ============================================================================


@pytest.fixture
def mock_tracer() -> MockTracer:
    return MockTracer()


@pytest.fixture
def metrics() -> MigrationMetrics:
    """Metrics recording into snapshots only (no exporter)."""
    return MigrationMetrics(run_id="test-run", enable_metrics=False)
