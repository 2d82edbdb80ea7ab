"""
Clock Module

Injectable time source. Every timestamp the workflow records comes from a
Clock so tests can pin and move time deterministically.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone, timedelta
from typing import Optional


class Clock(ABC):
    """Time source interface"""

    @abstractmethod
    def now(self) -> datetime:
        """Current time, timezone-aware"""


class SystemClock(Clock):
    """Wall-clock time in UTC"""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock(Clock):
    """Clock that only moves when told to"""

    def __init__(self, current: Optional[datetime] = None):
        self._current = current or datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)
        if self._current.tzinfo is None:
            self._current = self._current.replace(tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._current

    def advance(self, **kwargs) -> datetime:
        """Move forward by the given timedelta keyword arguments"""
        self._current = self._current + timedelta(**kwargs)
        return self._current

    def set(self, current: datetime) -> None:
        if current.tzinfo is None:
            current = current.replace(tzinfo=timezone.utc)
        self._current = current
