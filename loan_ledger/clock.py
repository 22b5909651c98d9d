"""
Clock Module

Supplies "now" and "today" to the ledger so the date-gated batch passes can be
driven deterministically. All times are timezone-aware UTC.
"""

from datetime import datetime, timezone, timedelta, date
from typing import Optional
import threading


class Clock:
    """Source of the current time"""

    def now(self) -> datetime:
        raise NotImplementedError

    def today(self) -> date:
        """Current calendar date in UTC, no time-of-day component"""
        return self.now().astimezone(timezone.utc).date()


class SystemClock(Clock):
    """Wall-clock time in UTC"""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock(Clock):
    """Manually controlled clock for tests and replays"""

    def __init__(self, initial_time: Optional[datetime] = None):
        if initial_time is None:
            initial_time = datetime(2024, 1, 1, tzinfo=timezone.utc)
        if initial_time.tzinfo is None:
            initial_time = initial_time.replace(tzinfo=timezone.utc)
        self._current_time = initial_time
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._current_time

    def set(self, new_time: datetime) -> None:
        if new_time.tzinfo is None:
            new_time = new_time.replace(tzinfo=timezone.utc)
        with self._lock:
            self._current_time = new_time

    def advance(self, days: int = 0, seconds: int = 0) -> datetime:
        """Move time forward and return the new current time"""
        with self._lock:
            self._current_time = self._current_time + timedelta(days=days, seconds=seconds)
            return self._current_time
