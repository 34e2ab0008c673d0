"""
Tracers injected into liveshift components.

Every component that emits spans takes an optional ``tracer`` and an
``enable_tracing`` flag and resolves them with ``create_tracer``; none of
them imports OpenTelemetry itself. Span attributes may be passed with
UUID, enum or cursor values and ``None`` for "unknown"; tracers normalize
them before they reach the exporter.

Example:
    >>> from liveshift.observability import ATTR_RUN_ID, create_tracer
    >>>
    >>> tracer = create_tracer(__name__, enable_tracing=True)
    >>> with tracer.span("liveshift.coordinator.start", {ATTR_RUN_ID: run.id}):
    ...     ...
"""

from __future__ import annotations

import contextlib
from collections.abc import Generator, Mapping
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from opentelemetry import trace

if TYPE_CHECKING:
    from opentelemetry.trace import Span

AttributeValue = str | bool | int | float


def span_attributes(attributes: Mapping[str, Any] | None) -> dict[str, AttributeValue]:
    """
    Convert attributes to values OpenTelemetry accepts.

    ``None`` values are dropped, enums are replaced by their value and
    anything else that is not a primitive (UUIDs, cursors, descriptors) is
    rendered with ``str``.
    """
    if not attributes:
        return {}
    cleaned: dict[str, AttributeValue] = {}
    for key, value in attributes.items():
        if value is None:
            continue
        if isinstance(value, Enum):
            value = value.value
        if not isinstance(value, (str, bool, int, float)):
            value = str(value)
        cleaned[key] = value
    return cleaned


@runtime_checkable
class Tracer(Protocol):
    """What components need from a tracer."""

    def span(
        self,
        name: str,
        attributes: Mapping[str, Any] | None = None,
    ) -> AbstractContextManager[Span | None]:
        """
        Open a span around a block.

        Args:
            name: Dotted span name under ``liveshift.``
            attributes: Span attributes (see ``span_attributes``)

        Returns:
            Context manager yielding the span, or None when not recording
        """
        ...

    @property
    def enabled(self) -> bool:
        """True if spans are recorded."""
        ...


class NullTracer:
    """Tracer used when tracing is disabled."""

    @contextlib.contextmanager
    def span(
        self,
        name: str,
        attributes: Mapping[str, Any] | None = None,
    ) -> Generator[None, None, None]:
        yield None

    @property
    def enabled(self) -> bool:
        return False


class OpenTelemetryTracer:
    """
    Tracer backed by the globally configured OpenTelemetry provider.

    With no provider configured the API returns non-recording spans.
    Exceptions escaping a span are recorded on it and mark it as failed.

    Args:
        tracer_name: Instrumentation scope name (typically ``__name__``)
    """

    def __init__(self, tracer_name: str) -> None:
        self._tracer = trace.get_tracer(tracer_name)

    def span(
        self,
        name: str,
        attributes: Mapping[str, Any] | None = None,
    ) -> AbstractContextManager[Span | None]:
        return self._tracer.start_as_current_span(
            name,
            attributes=span_attributes(attributes),
            record_exception=True,
            set_status_on_exception=True,
        )

    @property
    def enabled(self) -> bool:
        return True


@dataclass
class RecordedSpan:
    """A span captured by ``MockTracer``."""

    name: str
    attributes: dict[str, AttributeValue] = field(default_factory=dict)
    error: BaseException | None = None


class MockTracer:
    """
    Tracer for tests that keeps every span it opens.

    Example:
        >>> tracer = MockTracer()
        >>> with tracer.span("liveshift.drain.sample", {ATTR_DIRECTION: Direction.FORWARD}):
        ...     pass
        >>> tracer.find("liveshift.drain.sample")[0].attributes
        {'liveshift.session.direction': 'forward'}
    """

    def __init__(self) -> None:
        self.spans: list[RecordedSpan] = []

    @contextlib.contextmanager
    def span(
        self,
        name: str,
        attributes: Mapping[str, Any] | None = None,
    ) -> Generator[None, None, None]:
        recorded = RecordedSpan(name, span_attributes(attributes))
        self.spans.append(recorded)
        try:
            yield None
        except BaseException as e:
            recorded.error = e
            raise

    @property
    def enabled(self) -> bool:
        return True

    @property
    def span_names(self) -> list[str]:
        return [span.name for span in self.spans]

    def find(self, name: str) -> list[RecordedSpan]:
        """Get the recorded spans with a given name, in order."""
        return [span for span in self.spans if span.name == name]

    def clear(self) -> None:
        self.spans.clear()


def create_tracer(name: str, enable_tracing: bool = True) -> Tracer:
    """
    Resolve the tracer for a component.

    Args:
        name: Instrumentation scope name (typically ``__name__``)
        enable_tracing: Whether spans should be recorded

    Returns:
        OpenTelemetryTracer if enabled, NullTracer otherwise
    """
    if enable_tracing:
        return OpenTelemetryTracer(name)
    return NullTracer()


__all__ = [
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "RecordedSpan",
    "create_tracer",
    "span_attributes",
]
