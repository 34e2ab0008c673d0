"""
Interfaces to the databases and tools taking part in a migration.

Protocols:
    - ChangeStreamSource: Restartable stream of committed row changes
    - TargetConnector: Applies change events to a database
    - BulkLoader: Copies a consistent snapshot
    - Verifier: Compares source and target row by row

Implementations:
    - InMemoryDatabase and the in-memory connectors built on it
    - SQLTargetConnector: SQLAlchemy-backed target connector
"""

from liveshift.connectors.in_memory import (
    InMemoryBulkLoader,
    InMemoryChangeStream,
    InMemoryDatabase,
    InMemoryTargetConnector,
    InMemoryVerifier,
)
from liveshift.connectors.interface import (
    BulkLoader,
    ChangeStreamSource,
    Endpoint,
    TargetConnector,
    Verifier,
)
from liveshift.connectors.sql import SQLTargetConnector

__all__ = [
    "BulkLoader",
    "ChangeStreamSource",
    "Endpoint",
    "TargetConnector",
    "Verifier",
    "InMemoryDatabase",
    "InMemoryChangeStream",
    "InMemoryTargetConnector",
    "InMemoryBulkLoader",
    "InMemoryVerifier",
    "SQLTargetConnector",
]
