"""Injectable clock.

The policy engine and campaign runner read "now" through a Clock so runs
can be replayed at a fixed instant (``--now`` on the CLI, and in tests).
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Wall-clock time in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock:
    """A clock frozen at one instant that can be advanced manually."""

    def __init__(self, at: datetime) -> None:
        self._at = to_utc(at)

    def now(self) -> datetime:
        return self._at

    def advance(self, *, days: int = 0, hours: int = 0) -> datetime:
        delta = timedelta(days=days, hours=hours)
        if delta <= timedelta(0):
            raise ValueError("advance() needs a positive duration")
        self._at = self._at + delta
        return self._at


def to_utc(value: datetime) -> datetime:
    """Return an aware UTC datetime; naive values are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_instant(raw: str) -> datetime:
    """Parse an ISO 8601 date or datetime string into aware UTC.

    A bare date means midnight UTC on that day.
    """
    text = raw.strip()
    if not text:
        raise ValueError("empty timestamp")
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return to_utc(datetime.fromisoformat(text))
