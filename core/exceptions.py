"""
Core Module - Exceptions.

============================================================
RESPONSIBILITY
============================================================
Defines all custom exceptions for the monitoring runtime.

- Provides clear exception hierarchy
- Separates locally recovered errors from caller-facing ones
- Includes context for debugging

============================================================
EXCEPTION HIERARCHY
============================================================
MonitoringError (base)
├── ConfigurationError
├── ValidationError
│   └── InvalidOperation
├── NotFoundError
├── ConcurrencyConflict
├── ProbeError
└── NotificationError

============================================================
PROPAGATION
============================================================
- ProbeError: recovered inside the health poller
- NotificationError: recorded in the dispatch outcome
- ValidationError / InvalidOperation / NotFoundError: raised
  to the caller (management surface)
- ConcurrencyConflict: raised, never swallowed

============================================================
"""

from enum import Enum
from datetime import datetime, timezone
from typing import Any, Dict, Optional


# ============================================================
# SEVERITY LEVELS
# ============================================================

class Severity(Enum):
    """Exception severity levels for logging."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# ============================================================
# BASE EXCEPTION
# ============================================================

class MonitoringError(Exception):
    """
    Base exception for all monitoring runtime errors.

    All exceptions carry:
    - severity: for logging
    - context: for debugging
    - timestamp: when the error occurred
    """

    default_severity: Severity = Severity.MEDIUM

    def __init__(
        self,
        message: str,
        severity: Optional[Severity] = None,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(message)

        self.message = message
        self.severity = severity or self.default_severity
        self.context = context or {}
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)

        if cause:
            self.context["cause_type"] = type(cause).__name__
            self.context["cause_message"] = str(cause)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize exception for logging/API translation."""
        return {
            "type": type(self).__name__,
            "message": self.message,
            "severity": self.severity.value,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "cause": str(self.cause) if self.cause else None,
        }

    def to_log_format(self) -> str:
        """Format exception for logging."""
        ctx_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
        line = f"[{self.severity.value.upper()}] {type(self).__name__}: {self.message}"
        return f"{line} | {ctx_str}" if ctx_str else line


# ============================================================
# CONFIGURATION ERRORS
# ============================================================

class ConfigurationError(MonitoringError):
    """Error in runtime configuration."""

    default_severity = Severity.HIGH

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        actual_value: Optional[Any] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})

        if config_key:
            context["config_key"] = config_key
        if actual_value is not None:
            context["actual_value"] = str(actual_value)[:100]

        super().__init__(message, context=context, **kwargs)


# ============================================================
# CALLER-FACING ERRORS
# ============================================================

class ValidationError(MonitoringError):
    """Malformed rule, service, metric or subscription definition."""

    default_severity = Severity.LOW

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})

        if field:
            context["field"] = field
        if value is not None:
            context["value"] = str(value)[:100]

        self.field = field
        super().__init__(message, context=context, **kwargs)


class InvalidOperation(ValidationError):
    """Operation not allowed for the target, e.g. decrementing a counter."""


class NotFoundError(MonitoringError):
    """Unknown service, rule, alert, channel or client id."""

    default_severity = Severity.LOW

    def __init__(self, kind: str, identifier: str, **kwargs):
        context = kwargs.pop("context", {})
        context["kind"] = kind
        context["id"] = identifier

        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}", context=context, **kwargs)


class ConcurrencyConflict(MonitoringError):
    """A second active alert was about to be stored for one fingerprint."""

    default_severity = Severity.HIGH

    def __init__(
        self,
        fingerprint: str,
        existing_alert_id: Optional[str] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})
        context["fingerprint"] = fingerprint
        if existing_alert_id:
            context["existing_alert_id"] = existing_alert_id

        self.fingerprint = fingerprint
        self.existing_alert_id = existing_alert_id
        super().__init__(
            f"Active alert already exists for fingerprint {fingerprint}",
            context=context,
            **kwargs,
        )


# ============================================================
# LOCALLY RECOVERED ERRORS
# ============================================================

class ProbeError(MonitoringError):
    """A health probe failed."""

    CONNECTION_REFUSED = "connection_refused"
    TIMEOUT = "timeout"
    HTTP_ERROR = "http_error"
    UNKNOWN = "unknown"

    def __init__(
        self,
        message: str,
        kind: str = UNKNOWN,
        service_name: Optional[str] = None,
        status_code: Optional[int] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})
        context["kind"] = kind
        if service_name:
            context["service"] = service_name
        if status_code is not None:
            context["status_code"] = status_code

        self.kind = kind
        self.service_name = service_name
        self.status_code = status_code
        super().__init__(message, context=context, **kwargs)


class NotificationError(MonitoringError):
    """A notification channel failed to deliver."""

    def __init__(
        self,
        message: str,
        channel_id: Optional[str] = None,
        status_code: Optional[int] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})
        if channel_id:
            context["channel_id"] = channel_id
        if status_code is not None:
            context["status_code"] = status_code

        self.channel_id = channel_id
        self.status_code = status_code
        super().__init__(message, context=context, **kwargs)


__all__ = [
    "Severity",
    "MonitoringError",
    "ConfigurationError",
    "ValidationError",
    "InvalidOperation",
    "NotFoundError",
    "ConcurrencyConflict",
    "ProbeError",
    "NotificationError",
]
