"""
Clock Module

Injectable time source so that overdue, penalty and payment timestamps can be
tested deterministically.
"""

from abc import ABC, abstractmethod
from datetime import datetime, date, timedelta, timezone
from threading import Lock
from typing import Optional


class Clock(ABC):
    """Source of the current time"""

    @abstractmethod
    def now(self) -> datetime:
        """Current timezone-aware UTC datetime"""
        pass

    def today(self) -> date:
        """Current calendar date"""
        return self.now().date()


class SystemClock(Clock):
    """Wall clock"""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock(Clock):
    """Clock frozen at a given instant; can be moved forward in tests"""

    def __init__(self, current: Optional[datetime] = None):
        if current is None:
            current = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)
        elif isinstance(current, date) and not isinstance(current, datetime):
            current = datetime(current.year, current.month, current.day, 9, 0, tzinfo=timezone.utc)
        elif current.tzinfo is None:
            current = current.replace(tzinfo=timezone.utc)
        self._current = current
        self._lock = Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._current

    def advance(self, days: int = 0, **kwargs) -> datetime:
        """Move the clock forward"""
        with self._lock:
            self._current = self._current + timedelta(days=days, **kwargs)
            return self._current

    def set(self, current: datetime) -> None:
        with self._lock:
            self._current = current
