"""
Clock -- injectable time source.

Services, the auto-approval batch and the HTTP layer receive a Clock instead
of calling ``datetime.now()``.  Review deadlines, review timestamps and
dispute resolution timestamps all come from it.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone


class Clock(ABC):
    """Source of timezone-aware UTC timestamps."""

    @abstractmethod
    def now(self) -> datetime:
        ...


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Frozen clock for tests.

    Time only moves when the test moves it, so a review window can be
    crossed without sleeping::

        clock = DeterministicClock(submitted_at)
        clock.advance_hours(49)
    """

    def __init__(self, start: datetime | None = None):
        if start is None:
            start = datetime(2024, 6, 1, 9, 0, 0, tzinfo=timezone.utc)
        if start.tzinfo is None:
            raise ValueError("DeterministicClock requires an aware datetime")
        self._current = start.astimezone(timezone.utc)

    def now(self) -> datetime:
        return self._current

    def advance(self, **delta: float) -> datetime:
        """Move forward by a ``timedelta``-style keyword span."""
        self._current += timedelta(**delta)
        return self._current

    def advance_hours(self, hours: float) -> datetime:
        return self.advance(hours=hours)
