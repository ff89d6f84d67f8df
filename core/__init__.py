"""
Core Module Package.

Infrastructure shared by the allocation engine and its collaborators.

Components:
- clock: Unified time abstraction
"""

from .clock import (
    ClockProtocol,
    SystemClock,
    MockClock,
    ensure_utc,
    to_iso8601,
    from_iso8601,
)

__all__ = [
    "ClockProtocol",
    "SystemClock",
    "MockClock",
    "ensure_utc",
    "to_iso8601",
    "from_iso8601",
]
