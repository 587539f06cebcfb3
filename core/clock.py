"""
Core Module - Clock.

============================================================
RESPONSIBILITY
============================================================
Provides a testable clock abstraction for the monitoring runtime.

- Every timestamp on results, samples and alerts comes from a clock
- Silence periods, sustained durations and inactivity timeouts
  are measured against the injected clock
- Tests drive time explicitly with MockClock

============================================================
DESIGN PRINCIPLES
============================================================
- UTC only
- Injected, never global
- Thread-safe

============================================================
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional
import threading
import time


# ============================================================
# CLOCK PROTOCOL
# ============================================================

class ClockProtocol(ABC):
    """Abstract interface for the runtime clock."""

    @abstractmethod
    def now(self) -> datetime:
        """Get current UTC datetime."""
        pass

    @abstractmethod
    def timestamp(self) -> float:
        """Get current Unix timestamp."""
        pass

    @abstractmethod
    def monotonic(self) -> float:
        """Get a monotonic reading in seconds, for measuring durations."""
        pass

    def seconds_since(self, moment: Optional[datetime]) -> Optional[float]:
        """Seconds elapsed since a past moment, None if no moment."""
        if moment is None:
            return None
        return (self.now() - moment).total_seconds()


# ============================================================
# SYSTEM CLOCK (PRODUCTION)
# ============================================================

class SystemClock(ClockProtocol):
    """
    Production clock using actual system time.

    All times are in UTC.
    """

    def now(self) -> datetime:
        """Get current UTC datetime."""
        return datetime.now(timezone.utc)

    def timestamp(self) -> float:
        """Get current Unix timestamp."""
        return time.time()

    def monotonic(self) -> float:
        """Get monotonic reading."""
        return time.monotonic()


# ============================================================
# MOCK CLOCK (TESTING)
# ============================================================

class MockClock(ClockProtocol):
    """
    Mock clock for testing.

    Time only moves when the test moves it.
    """

    def __init__(self, initial_time: Optional[datetime] = None):
        """
        Initialize mock clock.

        Args:
            initial_time: Starting time (defaults to current UTC)
        """
        initial_time = initial_time or datetime.now(timezone.utc)
        if initial_time.tzinfo is None:
            initial_time = initial_time.replace(tzinfo=timezone.utc)
        self._time = initial_time
        self._lock = threading.Lock()

    def now(self) -> datetime:
        """Get current (mocked) datetime."""
        with self._lock:
            return self._time

    def timestamp(self) -> float:
        """Get current (mocked) timestamp."""
        with self._lock:
            return self._time.timestamp()

    def monotonic(self) -> float:
        """Mocked monotonic reading, tied to the mocked wall time."""
        return self.timestamp()

    def set_time(self, new_time: datetime) -> None:
        """Set the current time."""
        with self._lock:
            if new_time.tzinfo is None:
                new_time = new_time.replace(tzinfo=timezone.utc)
            self._time = new_time

    def advance(self, seconds: float = 0, **kwargs) -> None:
        """
        Advance time by the specified amount.

        Args:
            seconds: Number of seconds to advance
            **kwargs: Passed to timedelta (hours, minutes, days, etc.)
        """
        with self._lock:
            self._time = self._time + timedelta(seconds=seconds, **kwargs)


# ============================================================
# TIMESTAMP UTILITIES
# ============================================================

def to_iso8601(dt: Optional[datetime]) -> Optional[str]:
    """Convert datetime to ISO 8601 string (None passes through)."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def from_iso8601(iso_string: str) -> datetime:
    """Parse ISO 8601 string to datetime."""
    dt = datetime.fromisoformat(iso_string)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


__all__ = [
    "ClockProtocol",
    "SystemClock",
    "MockClock",
    "to_iso8601",
    "from_iso8601",
]
