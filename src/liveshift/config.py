"""
Configuration for the migration orchestrator.

All configuration objects are frozen dataclasses validated on
construction, with ``to_dict``/``from_dict`` for JSON storage.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from liveshift.models import TableFilter
from liveshift.retry import RetryConfig


@dataclass(frozen=True)
class ApplierConfig:
    """
    Configuration for applying staged records to a target.

    Attributes:
        retry: Backoff policy for transient target errors. The applier
            makes at most ``retry.max_retries + 1`` attempts per batch.
    """

    retry: RetryConfig = field(default_factory=RetryConfig)

    def to_dict(self) -> dict[str, Any]:
        return {"retry": self.retry.to_dict()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ApplierConfig:
        if "retry" in data:
            return cls(retry=RetryConfig.from_dict(data["retry"]))
        return cls()


@dataclass(frozen=True)
class DrainConfig:
    """
    Thresholds for certifying that a replication pipeline is drained.

    Attributes:
        quiet_period_seconds: Minimum time since the last change event
            (default 30, the source's flush period bound).
        sustained_window_seconds: How long the backlog must stay at zero
            (default 10).
        drain_timeout_seconds: When to raise a drain timeout alert
            (default 15 minutes).
        sample_interval_seconds: How often the coordinator samples while
            draining (default 1).
        max_samples: Samples kept for statistics (default 1000).

    Example:
        >>> config = DrainConfig(quiet_period_seconds=5.0)
        >>> config.sustained_window_seconds
        10.0
    """

    quiet_period_seconds: float = 30.0
    sustained_window_seconds: float = 10.0
    drain_timeout_seconds: float = 900.0
    sample_interval_seconds: float = 1.0
    max_samples: int = 1000

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.quiet_period_seconds < 0:
            raise ValueError(
                f"quiet_period_seconds must be >= 0, got {self.quiet_period_seconds}"
            )

        if self.sustained_window_seconds < 0:
            raise ValueError(
                f"sustained_window_seconds must be >= 0, got {self.sustained_window_seconds}"
            )

        if self.drain_timeout_seconds <= 0:
            raise ValueError(
                f"drain_timeout_seconds must be positive, got {self.drain_timeout_seconds}"
            )

        if self.sample_interval_seconds <= 0:
            raise ValueError(
                f"sample_interval_seconds must be positive, got {self.sample_interval_seconds}"
            )

        if self.max_samples < 1:
            raise ValueError(f"max_samples must be >= 1, got {self.max_samples}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "quiet_period_seconds": self.quiet_period_seconds,
            "sustained_window_seconds": self.sustained_window_seconds,
            "drain_timeout_seconds": self.drain_timeout_seconds,
            "sample_interval_seconds": self.sample_interval_seconds,
            "max_samples": self.max_samples,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DrainConfig:
        return cls(
            quiet_period_seconds=data.get("quiet_period_seconds", 30.0),
            sustained_window_seconds=data.get("sustained_window_seconds", 10.0),
            drain_timeout_seconds=data.get("drain_timeout_seconds", 900.0),
            sample_interval_seconds=data.get("sample_interval_seconds", 1.0),
            max_samples=data.get("max_samples", 1000),
        )


@dataclass(frozen=True)
class SessionConfig:
    """
    Configuration for a replication session.

    Attributes:
        batch_size: Maximum staged records per apply batch (default 500).
        poll_interval_seconds: Applier idle poll interval (default 0.1).
        max_reconnect_attempts: Consecutive change stream reconnects before
            the session is marked stalled (default 10).
        reconnect: Backoff between reconnects.
        stop_timeout_seconds: How long a graceful stop waits for the
            in-flight batch before cancelling (default 30).
    """

    batch_size: int = 500
    poll_interval_seconds: float = 0.1
    max_reconnect_attempts: int = 10
    reconnect: RetryConfig = field(
        default_factory=lambda: RetryConfig(initial_delay=0.5, max_delay=10.0)
    )
    stop_timeout_seconds: float = 30.0

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")

        if self.poll_interval_seconds <= 0:
            raise ValueError(
                f"poll_interval_seconds must be positive, got {self.poll_interval_seconds}"
            )

        if self.max_reconnect_attempts < 0:
            raise ValueError(
                f"max_reconnect_attempts must be >= 0, got {self.max_reconnect_attempts}"
            )

        if self.stop_timeout_seconds <= 0:
            raise ValueError(
                f"stop_timeout_seconds must be positive, got {self.stop_timeout_seconds}"
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_size": self.batch_size,
            "poll_interval_seconds": self.poll_interval_seconds,
            "max_reconnect_attempts": self.max_reconnect_attempts,
            "reconnect": self.reconnect.to_dict(),
            "stop_timeout_seconds": self.stop_timeout_seconds,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionConfig:
        defaults = cls()
        return cls(
            batch_size=data.get("batch_size", defaults.batch_size),
            poll_interval_seconds=data.get(
                "poll_interval_seconds", defaults.poll_interval_seconds
            ),
            max_reconnect_attempts=data.get(
                "max_reconnect_attempts", defaults.max_reconnect_attempts
            ),
            reconnect=(
                RetryConfig.from_dict(data["reconnect"])
                if "reconnect" in data
                else defaults.reconnect
            ),
            stop_timeout_seconds=data.get("stop_timeout_seconds", defaults.stop_timeout_seconds),
        )


@dataclass(frozen=True)
class MigrationConfig:
    """
    Configuration for a migration run.

    This class is immutable (frozen) to prevent accidental modification
    during a run.

    Attributes:
        table_filter: Full-match table name pattern (default ``[^_].*``).
        verification_sample_limit: Mismatched keys kept per table in a
            verification report (default 100).
        staging_retention_seconds: How long applied staging records are kept
            after their checkpoint is acknowledged (default 24 hours).
        poll_interval_seconds: How often background waits re-check state
            (default 0.1).
        applier: Applier configuration.
        drain: Drain detector configuration.
        session: Replication session configuration.

    Example:
        >>> config = MigrationConfig(
        ...     table_filter="artist|album",
        ...     drain=DrainConfig(quiet_period_seconds=5.0),
        ... )
    """

    table_filter: str = "[^_].*"
    verification_sample_limit: int = 100
    staging_retention_seconds: float = 86400.0
    poll_interval_seconds: float = 0.1
    applier: ApplierConfig = field(default_factory=ApplierConfig)
    drain: DrainConfig = field(default_factory=DrainConfig)
    session: SessionConfig = field(default_factory=SessionConfig)

    def __post_init__(self) -> None:
        """Validate configuration values."""
        TableFilter(self.table_filter)

        if self.verification_sample_limit < 1:
            raise ValueError(
                f"verification_sample_limit must be >= 1, got {self.verification_sample_limit}"
            )

        if self.staging_retention_seconds < 0:
            raise ValueError(
                f"staging_retention_seconds must be >= 0, got {self.staging_retention_seconds}"
            )

        if self.poll_interval_seconds <= 0:
            raise ValueError(
                f"poll_interval_seconds must be positive, got {self.poll_interval_seconds}"
            )

    def build_table_filter(self) -> TableFilter:
        return TableFilter(self.table_filter)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert to dictionary for JSON storage.

        Returns:
            Dictionary representation suitable for JSON serialization.
        """
        return {
            "table_filter": self.table_filter,
            "verification_sample_limit": self.verification_sample_limit,
            "staging_retention_seconds": self.staging_retention_seconds,
            "poll_interval_seconds": self.poll_interval_seconds,
            "applier": self.applier.to_dict(),
            "drain": self.drain.to_dict(),
            "session": self.session.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MigrationConfig:
        """
        Create from dictionary.

        Args:
            data: Dictionary containing configuration values.

        Returns:
            MigrationConfig instance.
        """
        return cls(
            table_filter=data.get("table_filter", "[^_].*"),
            verification_sample_limit=data.get("verification_sample_limit", 100),
            staging_retention_seconds=data.get("staging_retention_seconds", 86400.0),
            poll_interval_seconds=data.get("poll_interval_seconds", 0.1),
            applier=ApplierConfig.from_dict(data.get("applier", {})),
            drain=DrainConfig.from_dict(data.get("drain", {})),
            session=SessionConfig.from_dict(data.get("session", {})),
        )


__all__ = [
    "ApplierConfig",
    "DrainConfig",
    "SessionConfig",
    "MigrationConfig",
]
