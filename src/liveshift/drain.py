"""
DrainDetector - certify that a replication pipeline has caught up.

Cutover is only safe once every change committed on the source has been
applied to the target. Because the change stream is infinite, "caught
up" is decided from two observable conditions, both of which must hold:

    - Quiet: no change event received for at least the quiet period
      (by default the source's flush period bound, 30 s).
    - Empty: the staging backlog has been zero continuously for the
      sustained window. Any sample with a non-zero backlog, or any event
      received inside the window, restarts it.

The detector is deliberately conservative: a steady trickle of writes
keeps the pipeline from being certified.

Usage:
    >>> detector = DrainDetector(staging, DrainConfig(), clock=clock)
    >>> status = await detector.sample(session)
    >>> if status.drained:
    ...     await coordinator.confirm_cutover()
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from liveshift.config import DrainConfig
from liveshift.models import DrainStatus, ReplicationSession
from liveshift.observability import ATTR_DIRECTION, ATTR_SESSION_ID, Tracer, create_tracer
from liveshift.staging.interface import StagingStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DrainStats:
    """
    Aggregate statistics over the retained drain samples.

    Attributes:
        current_backlog: Backlog in the most recent sample.
        average_backlog: Average backlog over the window.
        max_backlog: Largest backlog observed in the window.
        sample_count: Number of samples in the window.
        first_sample_at: Timestamp of the first sample.
        last_sample_at: Timestamp of the most recent sample.
        is_converging: Whether the backlog is trending downward.
    """

    current_backlog: int
    average_backlog: float
    max_backlog: int
    sample_count: int
    first_sample_at: datetime | None
    last_sample_at: datetime | None
    is_converging: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "current_backlog": self.current_backlog,
            "average_backlog": self.average_backlog,
            "max_backlog": self.max_backlog,
            "sample_count": self.sample_count,
            "first_sample_at": self.first_sample_at.isoformat() if self.first_sample_at else None,
            "last_sample_at": self.last_sample_at.isoformat() if self.last_sample_at else None,
            "is_converging": self.is_converging,
        }


class DrainDetector:
    """
    Decides when a replication session has drained.

    Example:
        >>> detector = DrainDetector(staging, DrainConfig(quiet_period_seconds=5))
        >>> await detector.is_drained(session)
        False
    """

    def __init__(
        self,
        staging: StagingStore,
        config: DrainConfig | None = None,
        clock: Callable[[], datetime] | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the detector.

        Args:
            staging: Staging store of the session being drained
            config: Drain thresholds
            clock: Time source (defaults to UTC wall clock)
            tracer: Optional tracer (if not provided, one will be created)
            enable_tracing: Whether to enable OpenTelemetry tracing (default True)
        """
        self._staging = staging
        self._config = config or DrainConfig()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._zero_since: datetime | None = None
        self._samples: deque[DrainStatus] = deque(maxlen=self._config.max_samples)

    @property
    def config(self) -> DrainConfig:
        return self._config

    @property
    def latest(self) -> DrainStatus | None:
        return self._samples[-1] if self._samples else None

    async def sample(
        self,
        session: ReplicationSession,
        drain_started_at: datetime | None = None,
    ) -> DrainStatus:
        """
        Take one drain sample.

        Args:
            session: The session being drained
            drain_started_at: When draining began, for timeout reporting

        Returns:
            The sample, with ``drained`` set if both conditions hold
        """
        with self._tracer.span(
            "liveshift.drain.sample",
            {ATTR_SESSION_ID: str(session.id), ATTR_DIRECTION: session.direction.value},
        ):
            backlog = await self._staging.backlog_size()
            now = self._clock()

            last_activity = session.last_event_at or session.started_at
            quiet_seconds = (now - last_activity).total_seconds() if last_activity else 0.0

            if backlog > 0:
                self._zero_since = None
            else:
                if self._zero_since is None:
                    self._zero_since = now
                if session.last_event_at is not None and session.last_event_at > self._zero_since:
                    self._zero_since = session.last_event_at
            zero_seconds = (now - self._zero_since).total_seconds() if self._zero_since else 0.0

            reason = None
            if backlog > 0:
                reason = f"{backlog} staged changes not yet applied"
            elif quiet_seconds < self._config.quiet_period_seconds:
                reason = (
                    f"last change {quiet_seconds:.1f}s ago, "
                    f"need {self._config.quiet_period_seconds:.1f}s of quiet"
                )
            elif zero_seconds < self._config.sustained_window_seconds:
                reason = (
                    f"backlog empty for {zero_seconds:.1f}s, "
                    f"need {self._config.sustained_window_seconds:.1f}s"
                )

            status = DrainStatus(
                backlog=backlog,
                quiet_seconds=quiet_seconds,
                zero_backlog_seconds=zero_seconds,
                drained=reason is None,
                sampled_at=now,
                timed_out=(
                    drain_started_at is not None and self.is_timed_out(drain_started_at)
                ),
                reason=reason,
            )
            self._samples.append(status)
            return status

    async def is_drained(self, session: ReplicationSession) -> bool:
        """Sample and report whether the session is drained."""
        return (await self.sample(session)).drained

    def is_timed_out(self, started_at: datetime) -> bool:
        """Check whether draining has run past the drain timeout."""
        elapsed = (self._clock() - started_at).total_seconds()
        return elapsed >= self._config.drain_timeout_seconds

    def elapsed_seconds(self, started_at: datetime) -> float:
        return (self._clock() - started_at).total_seconds()

    def get_stats(self) -> DrainStats:
        """
        Get aggregate statistics over the retained samples.

        Returns:
            DrainStats with summary metrics.
        """
        if not self._samples:
            return DrainStats(
                current_backlog=0,
                average_backlog=0.0,
                max_backlog=0,
                sample_count=0,
                first_sample_at=None,
                last_sample_at=None,
            )

        backlogs = [sample.backlog for sample in self._samples]
        return DrainStats(
            current_backlog=backlogs[-1],
            average_backlog=sum(backlogs) / len(backlogs),
            max_backlog=max(backlogs),
            sample_count=len(backlogs),
            first_sample_at=self._samples[0].sampled_at,
            last_sample_at=self._samples[-1].sampled_at,
            is_converging=self._is_converging(backlogs),
        )

    def get_sample_history(self) -> list[DrainStatus]:
        return list(self._samples)

    def reset(self) -> None:
        """Forget the zero-backlog window and sample history."""
        self._zero_since = None
        self._samples.clear()

    @staticmethod
    def _is_converging(backlogs: list[int]) -> bool:
        # Second half of the window averaging lower than the first half.
        if len(backlogs) < 4:
            return False
        mid = len(backlogs) // 2
        first = backlogs[:mid]
        second = backlogs[mid:]
        return sum(second) / len(second) < sum(first) / len(first)


__all__ = ["DrainDetector", "DrainStats"]
