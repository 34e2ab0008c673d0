"""
Observability utilities for liveshift.

Composition-based tracing plus the standard span attribute names shared
by every component.

Example:
    >>> from liveshift.observability import create_tracer
    >>>
    >>> class Verifier:
    ...     def __init__(self, enable_tracing: bool = True):
    ...         self._tracer = create_tracer(__name__, enable_tracing)
"""

from liveshift.observability.attributes import (
    ATTR_ACTOR,
    ATTR_BATCH_SIZE,
    ATTR_CURSOR,
    ATTR_DB_SYSTEM,
    ATTR_DIRECTION,
    ATTR_ENDPOINT,
    ATTR_ERROR_TYPE,
    ATTR_FROM_STATE,
    ATTR_RETRY_COUNT,
    ATTR_ROWS_APPLIED,
    ATTR_RUN_ID,
    ATTR_SESSION_ID,
    ATTR_STATE,
    ATTR_STREAM_ID,
    ATTR_TABLE,
    ATTR_TO_STATE,
)
from liveshift.observability.tracer import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    RecordedSpan,
    Tracer,
    create_tracer,
    span_attributes,
)

__all__ = [
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "RecordedSpan",
    "create_tracer",
    "span_attributes",
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
