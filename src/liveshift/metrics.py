"""
OpenTelemetry metrics for migration runs.

Instruments are created from the globally configured meter provider.
With no provider configured the OpenTelemetry API hands out no-op
instruments, so recording is always safe.

Example:
    >>> from liveshift.metrics import MigrationMetrics
    >>>
    >>> metrics = MigrationMetrics("run-123")
    >>> metrics.record_events_staged("forward", 10)
    >>> metrics.record_rows_applied("forward", upserted=8, deleted=2)
    >>> metrics.record_transition("draining", "cutover_ready")

Metrics Exposed:
    - liveshift.events.staged (Counter): Change events appended to staging
    - liveshift.events.duplicates (Counter): Re-delivered events coalesced by staging
    - liveshift.rows.applied (Counter): Net row mutations applied to a target
    - liveshift.apply.retries (Counter): Transient apply failures retried
    - liveshift.apply.stalls (Counter): Batches escalated as stalled
    - liveshift.batch.duration (Histogram): Apply batch duration
    - liveshift.staging.backlog (Gauge): Unapplied staged records
    - liveshift.transitions (Counter): Migration state transitions

All metrics carry a 'run_id' attribute; stream metrics add 'direction'.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from opentelemetry import metrics
from opentelemetry.metrics import CallbackOptions, Observation


def _get_meter(enable_metrics: bool) -> metrics.Meter:
    if not enable_metrics:
        return metrics.NoOpMeter("liveshift")
    return metrics.get_meter("liveshift", version="1.0.0")


@dataclass(frozen=True)
class MetricSnapshot:
    """
    Snapshot of accumulated metric values for a run.

    Attributes:
        events_staged: Events staged per direction
        duplicates_coalesced: Re-deliveries per direction
        rows_applied: Rows applied per direction
        apply_retries: Retried apply failures per direction
        apply_stalls: Stalled batches per direction
        backlog: Last reported backlog per direction
        transitions: Transitions as ``"from->to"`` strings, in order
    """

    events_staged: dict[str, int] = field(default_factory=dict)
    duplicates_coalesced: dict[str, int] = field(default_factory=dict)
    rows_applied: dict[str, int] = field(default_factory=dict)
    apply_retries: dict[str, int] = field(default_factory=dict)
    apply_stalls: dict[str, int] = field(default_factory=dict)
    backlog: dict[str, int] = field(default_factory=dict)
    transitions: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "events_staged": dict(self.events_staged),
            "duplicates_coalesced": dict(self.duplicates_coalesced),
            "rows_applied": dict(self.rows_applied),
            "apply_retries": dict(self.apply_retries),
            "apply_stalls": dict(self.apply_stalls),
            "backlog": dict(self.backlog),
            "transitions": list(self.transitions),
        }


@dataclass
class MigrationMetrics:
    """
    Container for migration metric instruments.

    Attributes:
        run_id: Migration run identifier for metric labels
        enable_metrics: Whether metrics are exported (default True)
    """

    run_id: str
    enable_metrics: bool = True

    _events_staged_counter: Any = field(default=None, init=False, repr=False)
    _duplicates_counter: Any = field(default=None, init=False, repr=False)
    _rows_applied_counter: Any = field(default=None, init=False, repr=False)
    _retries_counter: Any = field(default=None, init=False, repr=False)
    _stalls_counter: Any = field(default=None, init=False, repr=False)
    _batch_duration_histogram: Any = field(default=None, init=False, repr=False)
    _transitions_counter: Any = field(default=None, init=False, repr=False)

    # Internal counters for snapshot
    _events_staged: dict[str, int] = field(default_factory=dict, init=False, repr=False)
    _duplicates: dict[str, int] = field(default_factory=dict, init=False, repr=False)
    _rows_applied: dict[str, int] = field(default_factory=dict, init=False, repr=False)
    _retries: dict[str, int] = field(default_factory=dict, init=False, repr=False)
    _stalls: dict[str, int] = field(default_factory=dict, init=False, repr=False)
    _backlog: dict[str, int] = field(default_factory=dict, init=False, repr=False)
    _transitions: list[str] = field(default_factory=list, init=False, repr=False)

    def __post_init__(self) -> None:
        """Initialize metric instruments."""
        meter = _get_meter(self.enable_metrics)

        self._events_staged_counter = meter.create_counter(
            name="liveshift.events.staged",
            unit="events",
            description="Change events appended to the staging store",
        )
        self._duplicates_counter = meter.create_counter(
            name="liveshift.events.duplicates",
            unit="events",
            description="Re-delivered change events coalesced by the staging store",
        )
        self._rows_applied_counter = meter.create_counter(
            name="liveshift.rows.applied",
            unit="rows",
            description="Net row mutations applied to the target",
        )
        self._retries_counter = meter.create_counter(
            name="liveshift.apply.retries",
            unit="attempts",
            description="Transient apply failures that were retried",
        )
        self._stalls_counter = meter.create_counter(
            name="liveshift.apply.stalls",
            unit="batches",
            description="Apply batches escalated as stalled",
        )
        self._batch_duration_histogram = meter.create_histogram(
            name="liveshift.batch.duration",
            unit="s",
            description="Time spent applying one batch of staged records",
        )
        self._transitions_counter = meter.create_counter(
            name="liveshift.transitions",
            unit="transitions",
            description="Migration state transitions",
        )
        meter.create_observable_gauge(
            name="liveshift.staging.backlog",
            callbacks=[self._observe_backlog],
            unit="records",
            description="Staged change events not yet applied",
        )

    def _attributes(self, direction: str | None = None) -> dict[str, str]:
        attrs = {"run_id": self.run_id}
        if direction is not None:
            attrs["direction"] = direction
        return attrs

    def _observe_backlog(self, options: CallbackOptions) -> Any:
        """Report the last known backlog per direction during collection."""
        for direction, backlog in self._backlog.items():
            yield Observation(value=backlog, attributes=self._attributes(direction))

    @staticmethod
    def _bump(counts: dict[str, int], key: str, amount: int) -> None:
        counts[key] = counts.get(key, 0) + amount

    def record_events_staged(self, direction: str, count: int = 1) -> None:
        self._events_staged_counter.add(count, self._attributes(direction))
        self._bump(self._events_staged, direction, count)

    def record_duplicate_coalesced(self, direction: str) -> None:
        self._duplicates_counter.add(1, self._attributes(direction))
        self._bump(self._duplicates, direction, 1)

    def record_rows_applied(self, direction: str, *, upserted: int, deleted: int) -> None:
        """
        Record rows applied by one batch.

        Args:
            direction: Stream direction value
            upserted: Net upserts issued
            deleted: Net deletes issued
        """
        if upserted:
            self._rows_applied_counter.add(
                upserted, {**self._attributes(direction), "operation": "upsert"}
            )
        if deleted:
            self._rows_applied_counter.add(
                deleted, {**self._attributes(direction), "operation": "delete"}
            )
        self._bump(self._rows_applied, direction, upserted + deleted)

    def record_apply_retry(self, direction: str, error_type: str | None = None) -> None:
        attrs = self._attributes(direction)
        if error_type:
            attrs["error_type"] = error_type
        self._retries_counter.add(1, attrs)
        self._bump(self._retries, direction, 1)

    def record_apply_stall(self, direction: str, error_type: str | None = None) -> None:
        attrs = self._attributes(direction)
        if error_type:
            attrs["error_type"] = error_type
        self._stalls_counter.add(1, attrs)
        self._bump(self._stalls, direction, 1)

    def record_batch_duration(self, direction: str, duration_seconds: float) -> None:
        self._batch_duration_histogram.record(duration_seconds, self._attributes(direction))

    def record_backlog(self, direction: str, backlog: int) -> None:
        """
        Update the backlog reported by the observable gauge.

        Args:
            direction: Stream direction value
            backlog: Unapplied staged records
        """
        self._backlog[direction] = max(0, backlog)

    def record_transition(self, from_state: str, to_state: str) -> None:
        self._transitions_counter.add(
            1, {**self._attributes(), "from_state": from_state, "to_state": to_state}
        )
        self._transitions.append(f"{from_state}->{to_state}")

    def get_snapshot(self) -> MetricSnapshot:
        """
        Get a snapshot of current metric values.

        Returns:
            MetricSnapshot with accumulated values
        """
        return MetricSnapshot(
            events_staged=dict(self._events_staged),
            duplicates_coalesced=dict(self._duplicates),
            rows_applied=dict(self._rows_applied),
            apply_retries=dict(self._retries),
            apply_stalls=dict(self._stalls),
            backlog=dict(self._backlog),
            transitions=list(self._transitions),
        )


__all__ = [
    "MetricSnapshot",
    "MigrationMetrics",
]
