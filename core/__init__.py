"""
Core Module Package.

This package contains the core infrastructure components
that the monitoring runtime depends on.

Components:
- clock: Injectable time abstraction
- exceptions: Custom exception hierarchy
- scheduler: Periodic tasks with a shared shutdown signal
"""

from .clock import ClockProtocol, SystemClock, MockClock, to_iso8601, from_iso8601
from .exceptions import (
    Severity,
    MonitoringError,
    ConfigurationError,
    ValidationError,
    InvalidOperation,
    NotFoundError,
    ConcurrencyConflict,
    ProbeError,
    NotificationError,
)
from .scheduler import PeriodicTask, TaskScheduler

__all__ = [
    "ClockProtocol",
    "SystemClock",
    "MockClock",
    "to_iso8601",
    "from_iso8601",
    "Severity",
    "MonitoringError",
    "ConfigurationError",
    "ValidationError",
    "InvalidOperation",
    "NotFoundError",
    "ConcurrencyConflict",
    "ProbeError",
    "NotificationError",
    "PeriodicTask",
    "TaskScheduler",
]
