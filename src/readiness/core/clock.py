"""
Clock abstraction used for age computation and timestamps.
"""

from datetime import datetime, timezone
from typing import Optional


class Clock:
    """System clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def current_year(self) -> int:
        return self.now().year


class FixedClock(Clock):
    """
    Clock frozen at a single instant.

    Example:
        >>> clock = FixedClock.for_year(2025)
        >>> clock.current_year()
        2025
    """

    def __init__(self, instant: datetime):
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=timezone.utc)
        self._instant = instant

    @classmethod
    def for_year(cls, year: int, month: int = 6, day: int = 1) -> "FixedClock":
        return cls(datetime(year, month, day, tzinfo=timezone.utc))

    def now(self) -> datetime:
        return self._instant


def resolve_clock(clock: Optional[Clock]) -> Clock:
    return clock if clock is not None else Clock()
