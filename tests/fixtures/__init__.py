"""
Shared test helpers for the liveshift tests.

Import from here in test modules; conftest.py wraps these in fixtures.
"""

from tests.fixtures.changes import (
    ARTIST_TABLE,
    SERVER_ID,
    ManualClock,
    create_event,
    seed_artists,
    source_token,
    target_token,
    wait_until,
)
from tests.fixtures.migration import (
    BlockingBulkLoader,
    create_coordinator,
    fast_config,
    poll_until,
)

__all__ = [
    "ARTIST_TABLE",
    "SERVER_ID",
    "ManualClock",
    "create_event",
    "seed_artists",
    "source_token",
    "target_token",
    "wait_until",
    "BlockingBulkLoader",
    "create_coordinator",
    "fast_config",
    "poll_until",
]
