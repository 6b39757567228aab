"""
Clock sources
The engine reads time only through a Clock so tests can drive it with synthetic time
"""
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from models.cooling import to_utc


class Clock(Protocol):
    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall-clock time in UTC"""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock:
    """
    Manually driven clock

    Args:
        start: initial time (defaults to the current UTC time)
    """

    def __init__(self, start: Optional[datetime] = None):
        self._now = to_utc(start) if start is not None else datetime.now(timezone.utc)

    def now(self) -> datetime:
        return self._now

    def set(self, value: datetime):
        self._now = to_utc(value)

    def advance(self, **kwargs) -> datetime:
        """Move forward by a timedelta built from kwargs, e.g. advance(minutes=91)"""
        self._now = self._now + timedelta(**kwargs)
        return self._now
