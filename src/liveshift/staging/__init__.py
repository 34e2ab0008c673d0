"""
Staging stores: the durable buffer between change streams and appliers.

- StagingStore: Protocol every store implements
- InMemoryStagingStore: Process-local store for tests and demos
- SQLStagingStore: Store backed by a SQLAlchemy async engine
"""

from liveshift.staging.in_memory import InMemoryStagingStore
from liveshift.staging.interface import StagingStore
from liveshift.staging.sql import SQLStagingStore

__all__ = [
    "StagingStore",
    "InMemoryStagingStore",
    "SQLStagingStore",
]
