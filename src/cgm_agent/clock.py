"""Injectable clocks.

Every component that needs "now" (window boundaries for catch-up, cooldown
checks, history timestamps) receives a :class:`Clock` instead of reading
system time directly, so tests can pin time.

All timestamps in the system are naive UTC ``datetime`` objects, matching
what the SQLite ``DateTime`` columns round-trip.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Wall-clock time as naive UTC."""

    def now(self) -> datetime:
        return datetime.now(UTC).replace(tzinfo=None)


class FrozenClock:
    """A clock that only moves when told to."""

    def __init__(self, start: datetime) -> None:
        self._now = start

    def now(self) -> datetime:
        return self._now

    def set(self, value: datetime) -> None:
        self._now = value

    def advance(self, delta: timedelta) -> datetime:
        self._now += delta
        return self._now
