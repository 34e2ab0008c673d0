"""
liveshift - Low-downtime, bidirectional database migrations.

This library provides:
- Direction-aware cursors for source-log (GTID) and target-clock (HLC) streams
- Normalized change events and an idempotent staging store
- An applier with per-row net effect, retries and stall escalation
- Replication pipelines for forward and reverse (failback) streaming
- A conservative drain detector gating cutover
- A migration state machine with an operator console and autopilot
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("liveshift")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

from liveshift.applier import Applier, net_changes
from liveshift.config import ApplierConfig, DrainConfig, MigrationConfig, SessionConfig
from liveshift.connectors import (
    BulkLoader,
    ChangeStreamSource,
    Endpoint,
    InMemoryBulkLoader,
    InMemoryChangeStream,
    InMemoryDatabase,
    InMemoryTargetConnector,
    InMemoryVerifier,
    SQLTargetConnector,
    TargetConnector,
    Verifier,
)
from liveshift.control import AutopilotPolicy, OperatorCommand, OperatorConsole, run_autopilot
from liveshift.coordinator import MigrationCoordinator
from liveshift.cursors import (
    AddressSpace,
    Cursor,
    SourceCursor,
    TargetCursor,
    advance,
    initial_cursor,
    is_at_or_after,
    parse_cursor,
)
from liveshift.drain import DrainDetector, DrainStats
from liveshift.events import (
    ChangeEvent,
    ChangeEventNormalizer,
    OperationKind,
    RawChangeEvent,
    normalize,
)
from liveshift.exceptions import (
    ApplyError,
    ApplyStalled,
    ApplyTransientError,
    BulkLoadError,
    DrainTimeout,
    ErrorClassification,
    ErrorRecoverability,
    ErrorSeverity,
    IncomparableCursor,
    InvalidChangeEvent,
    InvalidCursor,
    InvalidTransition,
    LiveShiftError,
    SessionAlreadyActiveError,
    SessionError,
    SessionNotFoundError,
    SourceStreamDisconnected,
    UnknownCommandError,
    VerificationMismatch,
)
from liveshift.metrics import MetricSnapshot, MigrationMetrics
from liveshift.models import (
    AppliedResult,
    BulkLoadResult,
    Direction,
    DrainStatus,
    EndpointDescriptor,
    MigrationRun,
    MigrationState,
    MigrationStatus,
    ReplicationSession,
    SessionState,
    SessionStatus,
    StagingRecord,
    StagingStatus,
    TableFilter,
    TableVerification,
    VerificationReport,
)
from liveshift.retry import RetryConfig, calculate_backoff
from liveshift.session import ReplicationPipeline
from liveshift.staging import InMemoryStagingStore, SQLStagingStore, StagingStore

__all__ = [
    "__version__",
    # Cursors
    "AddressSpace",
    "Cursor",
    "SourceCursor",
    "TargetCursor",
    "advance",
    "initial_cursor",
    "is_at_or_after",
    "parse_cursor",
    # Events
    "ChangeEvent",
    "ChangeEventNormalizer",
    "OperationKind",
    "RawChangeEvent",
    "normalize",
    # Models
    "AppliedResult",
    "BulkLoadResult",
    "Direction",
    "DrainStatus",
    "EndpointDescriptor",
    "MigrationRun",
    "MigrationState",
    "MigrationStatus",
    "ReplicationSession",
    "SessionState",
    "SessionStatus",
    "StagingRecord",
    "StagingStatus",
    "TableFilter",
    "TableVerification",
    "VerificationReport",
    # Configuration
    "ApplierConfig",
    "DrainConfig",
    "MigrationConfig",
    "SessionConfig",
    "RetryConfig",
    "calculate_backoff",
    # Staging
    "StagingStore",
    "InMemoryStagingStore",
    "SQLStagingStore",
    # Connectors
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
    # Runtime
    "Applier",
    "net_changes",
    "ReplicationPipeline",
    "DrainDetector",
    "DrainStats",
    "MigrationCoordinator",
    "OperatorCommand",
    "OperatorConsole",
    "AutopilotPolicy",
    "run_autopilot",
    # Metrics
    "MetricSnapshot",
    "MigrationMetrics",
    # Exceptions
    "LiveShiftError",
    "ErrorClassification",
    "ErrorRecoverability",
    "ErrorSeverity",
    "InvalidCursor",
    "IncomparableCursor",
    "InvalidChangeEvent",
    "InvalidTransition",
    "ApplyError",
    "ApplyTransientError",
    "ApplyStalled",
    "VerificationMismatch",
    "DrainTimeout",
    "SourceStreamDisconnected",
    "BulkLoadError",
    "SessionError",
    "SessionAlreadyActiveError",
    "SessionNotFoundError",
    "UnknownCommandError",
]
