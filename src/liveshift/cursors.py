"""
Cursor abstraction for change-stream positions.

A cursor marks a resumable position in a change stream. There are two
address spaces and they are never unified:

- ``SourceCursor`` lives in the ``source_log`` space. It is a set of
  per-channel transaction sequence numbers, written in MySQL GTID set
  notation (``3E11FA47-71CA-11E1-9E33-C80AA9429562:1-23``). Each channel
  keeps its high-water mark.
- ``TargetCursor`` lives in the ``target_clock`` space. It is a single
  hybrid logical timestamp written as ``<wall nanos>.<10-digit logical>``,
  the form returned by ``cluster_logical_timestamp()``.

Comparing cursors across spaces raises ``IncomparableCursor``.

Example:
    >>> from liveshift.cursors import parse_cursor, is_at_or_after
    >>> a = parse_cursor("3e11fa47-71ca-11e1-9e33-c80aa9429562:1-23")
    >>> b = parse_cursor("3e11fa47-71ca-11e1-9e33-c80aa9429562:1-20")
    >>> is_at_or_after(a, b)
    True
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Annotated, Any, Literal, Protocol, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from liveshift.exceptions import IncomparableCursor, InvalidCursor

_INTERVAL_RE = re.compile(r"^(\d+)(?:-(\d+))?$")
_TAG_RE = re.compile(r"^[a-z_][a-z0-9_]{0,31}$")
_HLC_RE = re.compile(r"^(\d+)(?:\.(\d{1,10}))?$")
_LOGICAL_DIGITS = 10


class AddressSpace(Enum):
    """Address spaces a cursor can belong to."""

    SOURCE_LOG = "source_log"
    """Per-channel transaction identifiers from the source binary log."""

    TARGET_CLOCK = "target_clock"
    """Hybrid logical timestamps from the distributed SQL target."""


class SourceCursor(BaseModel):
    """
    Position in the source log address space.

    Attributes:
        positions: Sorted ``(channel, sequence)`` pairs; a channel's
            sequence is the highest transaction seen on that channel.
    """

    model_config = ConfigDict(frozen=True)

    space: Literal["source_log"] = "source_log"
    positions: tuple[tuple[str, int], ...] = ()

    @field_validator("positions")
    @classmethod
    def _normalize_positions(
        cls, value: tuple[tuple[str, int], ...]
    ) -> tuple[tuple[str, int], ...]:
        merged: dict[str, int] = {}
        for channel, sequence in value:
            if not channel:
                raise ValueError("channel must not be empty")
            if sequence < 1:
                raise ValueError(f"sequence for {channel} must be >= 1, got {sequence}")
            key = channel.lower()
            merged[key] = max(merged.get(key, 0), sequence)
        return tuple(sorted(merged.items()))

    @classmethod
    def single(cls, channel: str, sequence: int) -> SourceCursor:
        """Create the commit token of one transaction."""
        return cls(positions=((channel, sequence),))

    @property
    def address_space(self) -> AddressSpace:
        return AddressSpace.SOURCE_LOG

    @property
    def is_initial(self) -> bool:
        """True for the cursor positioned before any event."""
        return not self.positions

    @property
    def sort_key(self) -> tuple[int, int]:
        """
        Ordering key used by the staging store.

        Sequences on different channels are unrelated, so source tokens
        share one key and staged records keep the order the log delivered
        them in.
        """
        return (0, 0)

    def channel_position(self, channel: str) -> int:
        """Get the high-water mark for a channel (0 if never seen)."""
        return dict(self.positions).get(channel.lower(), 0)

    def __str__(self) -> str:
        parts = []
        for channel, sequence in self.positions:
            interval = "1" if sequence == 1 else f"1-{sequence}"
            parts.append(f"{channel}:{interval}")
        return ",".join(parts)


class TargetCursor(BaseModel):
    """
    Position in the target clock address space.

    Attributes:
        wall_time: Wall clock component in nanoseconds.
        logical: Logical counter breaking ties within one wall time.
    """

    model_config = ConfigDict(frozen=True)

    space: Literal["target_clock"] = "target_clock"
    wall_time: int = Field(default=0, ge=0)
    logical: int = Field(default=0, ge=0, lt=10**_LOGICAL_DIGITS)

    @property
    def address_space(self) -> AddressSpace:
        return AddressSpace.TARGET_CLOCK

    @property
    def is_initial(self) -> bool:
        return self.wall_time == 0 and self.logical == 0

    @property
    def sort_key(self) -> tuple[int, int]:
        return (self.wall_time, self.logical)

    def __str__(self) -> str:
        return f"{self.wall_time}.{self.logical:0{_LOGICAL_DIGITS}d}"


Cursor = Annotated[Union[SourceCursor, TargetCursor], Field(discriminator="space")]
"""Either cursor variant, discriminated on ``space``."""


class HasCommitToken(Protocol):
    """Anything carrying the cursor of the commit that produced it."""

    @property
    def commit_token(self) -> SourceCursor | TargetCursor: ...


def initial_cursor(space: AddressSpace) -> SourceCursor | TargetCursor:
    """Get the cursor representing "before any event" in a space."""
    if space == AddressSpace.SOURCE_LOG:
        return SourceCursor()
    return TargetCursor()


def parse_cursor(raw: Any, space: AddressSpace | None = None) -> SourceCursor | TargetCursor:
    """
    Parse a raw cursor.

    Args:
        raw: Cursor text, an existing cursor, or None/"" for the initial
            cursor (only when ``space`` is given).
        space: Expected address space. Detected from the text when omitted:
            text containing ``:`` is a GTID set, a decimal is an HLC timestamp.

    Returns:
        The parsed cursor.

    Raises:
        InvalidCursor: If the text is malformed or belongs to a different
            space than requested.
    """
    if isinstance(raw, (SourceCursor, TargetCursor)):
        if space is not None and raw.address_space != space:
            raise InvalidCursor(raw, f"expected a {space.value} cursor, got {raw.space}")
        return raw

    if raw is None or (isinstance(raw, str) and not raw.strip()):
        if space is None:
            raise InvalidCursor(raw, "empty cursor needs an explicit address space")
        return initial_cursor(space)

    if not isinstance(raw, str):
        raise InvalidCursor(raw, f"unsupported cursor type {type(raw).__name__}")

    text = raw.strip()
    if space is None:
        if ":" in text:
            space = AddressSpace.SOURCE_LOG
        elif _HLC_RE.match(text):
            space = AddressSpace.TARGET_CLOCK
        else:
            raise InvalidCursor(raw, "neither a GTID set nor a logical timestamp")

    if space == AddressSpace.SOURCE_LOG:
        return _parse_gtid_set(text)
    return _parse_logical_timestamp(text)


def _parse_gtid_set(text: str) -> SourceCursor:
    # MySQL prints long GTID sets with a newline after each comma.
    positions: list[tuple[str, int]] = []
    for member in text.replace("\n", "").split(","):
        member = member.strip()
        if not member:
            continue
        parts = member.split(":")
        if len(parts) < 2:
            raise InvalidCursor(text, f"GTID member {member!r} has no intervals")
        source_id = parts[0].strip().lower()
        if not source_id:
            raise InvalidCursor(text, f"GTID member {member!r} has no source id")
        channel = source_id
        seen_interval = False
        for part in parts[1:]:
            part = part.strip()
            interval = _INTERVAL_RE.match(part)
            if interval:
                start = int(interval.group(1))
                end = int(interval.group(2) or start)
                if start < 1 or end < start:
                    raise InvalidCursor(text, f"bad interval {part!r}")
                positions.append((channel, end))
                seen_interval = True
            elif _TAG_RE.match(part):
                channel = f"{source_id}:{part}"
            else:
                raise InvalidCursor(text, f"bad GTID component {part!r}")
        if not seen_interval:
            raise InvalidCursor(text, f"GTID member {member!r} has no intervals")
    return SourceCursor(positions=tuple(positions))


def _parse_logical_timestamp(text: str) -> TargetCursor:
    match = _HLC_RE.match(text)
    if not match:
        raise InvalidCursor(text, "expected <wall>.<logical> decimal timestamp")
    logical_text = match.group(2) or "0"
    return TargetCursor(
        wall_time=int(match.group(1)),
        logical=int(logical_text.ljust(_LOGICAL_DIGITS, "0")),
    )


def _check_same_space(
    a: SourceCursor | TargetCursor,
    b: SourceCursor | TargetCursor,
) -> None:
    if a.space != b.space:
        raise IncomparableCursor(a.space, b.space)


def is_at_or_after(a: SourceCursor | TargetCursor, b: SourceCursor | TargetCursor) -> bool:
    """
    Check whether cursor ``a`` is at or after cursor ``b``.

    For source cursors every channel of ``b`` must be present in ``a``
    with an equal or higher sequence.

    Raises:
        IncomparableCursor: If the cursors belong to different spaces.
    """
    _check_same_space(a, b)
    if isinstance(a, SourceCursor) and isinstance(b, SourceCursor):
        mine = dict(a.positions)
        return all(mine.get(channel, 0) >= sequence for channel, sequence in b.positions)
    return a.sort_key >= b.sort_key


def advance(
    current: SourceCursor | TargetCursor,
    event: HasCommitToken | SourceCursor | TargetCursor,
) -> SourceCursor | TargetCursor:
    """
    Move a cursor past an event's commit token.

    The result is never behind ``current``; advancing past an event that
    was already covered returns an equal cursor.

    Raises:
        IncomparableCursor: If the token belongs to another space.
    """
    token = event if isinstance(event, (SourceCursor, TargetCursor)) else event.commit_token
    _check_same_space(current, token)
    if isinstance(current, SourceCursor) and isinstance(token, SourceCursor):
        return SourceCursor(positions=current.positions + token.positions)
    return current if current.sort_key >= token.sort_key else token


def rewind(cursor: SourceCursor | TargetCursor) -> SourceCursor | TargetCursor:
    """
    Step a cursor back by one transaction.

    Every row of a transaction carries the same commit token, so a stream
    resumed strictly after a checkpoint would skip the rows of the last
    transaction that had not been staged yet. Resuming from the rewound
    cursor re-delivers that transaction instead.

    Example:
        >>> str(rewind(parse_cursor("3e11fa47-71ca-11e1-9e33-c80aa9429562:1-23")))
        '3e11fa47-71ca-11e1-9e33-c80aa9429562:1-22'
    """
    if isinstance(cursor, SourceCursor):
        return SourceCursor(
            positions=tuple(
                (channel, sequence - 1) for channel, sequence in cursor.positions if sequence > 1
            )
        )
    if cursor.logical > 0:
        return TargetCursor(wall_time=cursor.wall_time, logical=cursor.logical - 1)
    if cursor.wall_time > 0:
        return TargetCursor(wall_time=cursor.wall_time - 1, logical=10**_LOGICAL_DIGITS - 1)
    return cursor


__all__ = [
    "AddressSpace",
    "Cursor",
    "SourceCursor",
    "TargetCursor",
    "initial_cursor",
    "parse_cursor",
    "is_at_or_after",
    "advance",
    "rewind",
]
