"""
Standard span and metric attributes for liveshift.

Attribute names follow OpenTelemetry semantic conventions where one
exists (``db.system``); everything else lives under ``liveshift.``.

Example:
    >>> from liveshift.observability.attributes import ATTR_RUN_ID, ATTR_STATE
    >>>
    >>> with tracer.span(
    ...     "liveshift.coordinator.transition",
    ...     {ATTR_RUN_ID: str(run.id), ATTR_STATE: run.state.value},
    ... ):
    ...     pass
"""

# =============================================================================
# Migration Run Attributes
# =============================================================================

ATTR_RUN_ID = "liveshift.run.id"
"""Migration run identifier (UUID string)."""

ATTR_STATE = "liveshift.run.state"
"""Current migration state value."""

ATTR_FROM_STATE = "liveshift.transition.from"
"""State a transition leaves."""

ATTR_TO_STATE = "liveshift.transition.to"
"""State a transition enters."""

ATTR_ACTOR = "liveshift.actor"
"""Who issued a command (operator name or 'autopilot')."""

# =============================================================================
# Session Attributes
# =============================================================================

ATTR_SESSION_ID = "liveshift.session.id"
"""Replication session identifier (UUID string)."""

ATTR_DIRECTION = "liveshift.session.direction"
"""Replication direction ('forward' or 'reverse')."""

ATTR_CURSOR = "liveshift.cursor"
"""Cursor text in its address space."""

ATTR_STREAM_ID = "liveshift.staging.stream_id"
"""Staging stream a record belongs to."""

# =============================================================================
# Apply Attributes
# =============================================================================

ATTR_BATCH_SIZE = "liveshift.batch.size"
"""Number of staged records in a batch (integer)."""

ATTR_ROWS_APPLIED = "liveshift.rows.applied"
"""Net row mutations issued to the target (integer)."""

ATTR_TABLE = "liveshift.table"
"""Schema-qualified table name."""

ATTR_RETRY_COUNT = "liveshift.retry.count"
"""Number of retry attempts made (integer)."""

ATTR_ERROR_TYPE = "error.type"
"""Exception class name of an error."""

# =============================================================================
# Database Attributes (OTEL semantic conventions)
# =============================================================================

ATTR_DB_SYSTEM = "db.system"
"""Database dialect of an endpoint (e.g. 'mysql', 'cockroachdb')."""

ATTR_ENDPOINT = "liveshift.endpoint"
"""Endpoint name."""

__all__ = [
    "ATTR_RUN_ID",
    "ATTR_STATE",
    "ATTR_FROM_STATE",
    "ATTR_TO_STATE",
    "ATTR_ACTOR",
    "ATTR_SESSION_ID",
    "ATTR_DIRECTION",
    "ATTR_CURSOR",
    "ATTR_STREAM_ID",
    "ATTR_BATCH_SIZE",
    "ATTR_ROWS_APPLIED",
    "ATTR_TABLE",
    "ATTR_RETRY_COUNT",
    "ATTR_ERROR_TYPE",
    "ATTR_DB_SYSTEM",
    "ATTR_ENDPOINT",
]
