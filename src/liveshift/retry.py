"""
Backoff shared by appliers and change-stream readers.

An applier retries a batch against its target and a reader reconnects a
dropped change stream. Both wait between attempts according to a
``RetryConfig``; whether a failure earns another attempt is decided by
``is_transient``.
"""

import random
from dataclasses import asdict, dataclass, field, fields
from typing import Any

from liveshift.exceptions import ApplyTransientError, LiveShiftError, SourceStreamDisconnected

# Raised by connectors and streams for failures that may clear on their own.
# OSError covers socket-level errors from drivers.
TRANSIENT_EXCEPTIONS: tuple[type[Exception], ...] = (
    ApplyTransientError,
    SourceStreamDisconnected,
    ConnectionError,
    TimeoutError,
    OSError,
)


@dataclass(frozen=True)
class RetryConfig:
    """
    Backoff between attempts at a batch or a stream connection.

    Retry ``n`` (0-based) waits ``initial_delay * exponential_base ** n``
    seconds, capped at ``max_delay`` and then moved by up to ``jitter``
    times itself in either direction.

    Example:
        >>> RetryConfig(max_retries=3, initial_delay=0.5).max_attempts
        4
    """

    max_retries: int = 5
    initial_delay: float = 0.5
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: float = 0.1

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError(f"max_retries cannot be negative (got {self.max_retries})")
        if self.initial_delay <= 0:
            raise ValueError(f"initial_delay must be positive (got {self.initial_delay})")
        if self.max_delay < self.initial_delay:
            raise ValueError(
                f"max_delay {self.max_delay} is below initial_delay {self.initial_delay}"
            )
        if self.exponential_base <= 1.0:
            raise ValueError(
                f"exponential_base must exceed 1.0 (got {self.exponential_base})"
            )
        if not 0.0 <= self.jitter <= 1.0:
            raise ValueError(f"jitter must lie in [0, 1] (got {self.jitter})")

    @property
    def max_attempts(self) -> int:
        """Attempts allowed in total, counting the first."""
        return self.max_retries + 1

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RetryConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown retry settings: {', '.join(unknown)}")
        return cls(**data)


@dataclass
class RetryStats:
    """
    Failures seen by one retrying loop.

    ``attempts`` is maintained by the owner (one per connection or batch
    attempt); failures are recorded here with the delay that followed them.
    """

    attempts: int = 0
    failures: int = 0
    total_delay_seconds: float = 0.0
    last_error: str | None = None
    failures_by_type: dict[str, int] = field(default_factory=dict)

    def record_failure(self, error: BaseException, delay: float = 0.0) -> None:
        self.failures += 1
        self.total_delay_seconds += delay
        self.last_error = str(error)
        name = type(error).__name__
        self.failures_by_type[name] = self.failures_by_type.get(name, 0) + 1

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def calculate_backoff(attempt: int, config: RetryConfig) -> float:
    """
    Seconds to wait before retry number ``attempt`` (0-based).

    Example:
        >>> config = RetryConfig(initial_delay=1.0, max_delay=60.0, jitter=0.0)
        >>> [calculate_backoff(n, config) for n in range(4)]
        [1.0, 2.0, 4.0, 8.0]
    """
    delay = min(config.initial_delay * config.exponential_base**attempt, config.max_delay)
    spread = delay * config.jitter
    return max(0.0, delay + random.uniform(-spread, spread))  # nosec B311


def is_transient(error: BaseException) -> bool:
    """
    Check whether a failure may succeed if attempted again.

    liveshift errors answer through their recoverability; anything else is
    transient when it is one of ``TRANSIENT_EXCEPTIONS``.
    """
    if isinstance(error, LiveShiftError):
        return error.recoverability.should_retry
    return isinstance(error, TRANSIENT_EXCEPTIONS)


__all__ = [
    "TRANSIENT_EXCEPTIONS",
    "RetryConfig",
    "RetryStats",
    "calculate_backoff",
    "is_transient",
]
