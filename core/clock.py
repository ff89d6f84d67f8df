"""
Core Module - Clock.

============================================================
RESPONSIBILITY
============================================================
Provides the time source used by the allocation engine.

- Every "now" inside the engine comes from an injected clock
- Enables deterministic tests of cool-down windows
- All timestamps are timezone-aware UTC

============================================================
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional
import threading


# ============================================================
# CLOCK PROTOCOL
# ============================================================

class ClockProtocol(ABC):
    """Abstract interface for the engine clock."""

    @abstractmethod
    def now(self) -> datetime:
        """Get current UTC datetime."""
        pass

    def format_iso(self, dt: Optional[datetime] = None) -> str:
        """Format datetime as ISO 8601."""
        return to_iso8601(dt or self.now())


# ============================================================
# SYSTEM CLOCK (PRODUCTION)
# ============================================================

class SystemClock(ClockProtocol):
    """Wall clock, always UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


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
        self._time = ensure_utc(initial_time or datetime.now(timezone.utc))
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._time

    def set_time(self, new_time: datetime) -> None:
        """Set the current time."""
        with self._lock:
            self._time = ensure_utc(new_time)

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

def ensure_utc(dt: datetime) -> datetime:
    """Attach UTC to naive datetimes; convert aware ones to UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso8601(dt: datetime) -> str:
    """Convert datetime to ISO 8601 string."""
    return ensure_utc(dt).isoformat()


def from_iso8601(iso_string: str) -> datetime:
    """Parse ISO 8601 string to datetime (accepts a trailing 'Z')."""
    if iso_string.endswith("Z"):
        iso_string = iso_string[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(iso_string))


__all__ = [
    "ClockProtocol",
    "SystemClock",
    "MockClock",
    "ensure_utc",
    "to_iso8601",
    "from_iso8601",
]
