"""Injectable time source."""

from datetime import datetime, timedelta, timezone
from typing import Optional


class Clock:
    """Returns the current time as a timezone-aware UTC datetime."""

    def now(self) -> datetime:
        raise NotImplementedError


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock(Clock):
    """
    A clock that only moves when told to.

    Used for deterministic allowance scheduling in tests.
    """

    def __init__(self, at: Optional[datetime] = None):
        self._now = at or datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)
        if self._now.tzinfo is None:
            self._now = self._now.replace(tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._now

    def set(self, at: datetime) -> None:
        if at.tzinfo is None:
            at = at.replace(tzinfo=timezone.utc)
        self._now = at

    def advance(self, **kwargs) -> datetime:
        """Move forward by a timedelta given as keyword arguments (days=1, ...)."""
        self._now = self._now + timedelta(**kwargs)
        return self._now
