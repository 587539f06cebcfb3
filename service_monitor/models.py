"""
╔══════════════════════════════════════════════════════════════════════════════╗
║                        SERVICE MONITOR - DATA MODEL                          ║
║                                                                              ║
║  Records shared by the poller, the aggregator, the alert engine,             ║
║  the notification dispatcher and the broadcast hub.                          ║
║                                                                              ║
╚══════════════════════════════════════════════════════════════════════════════╝

============================================================
OWNERSHIP
============================================================

- Registry:        MonitoredService, AlertRule definitions
- HealthPoller:    latest HealthCheckResult per service
- AlertEngine:     Alert lifecycle
- BroadcastHub:    ClientSubscription state

============================================================
ALERT LIFECYCLE
============================================================

    active ──► acknowledged ──► resolved
       └────────────────────────►┘

resolved is terminal.

============================================================
"""

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple

from core.clock import to_iso8601
from core.exceptions import ValidationError


# ============================================================
# ENUMS
# ============================================================

class HealthStatus(Enum):
    """Overall system health."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"


class ProbeErrorKind(Enum):
    """Classification of a failed probe."""

    CONNECTION_REFUSED = "connection_refused"
    TIMEOUT = "timeout"
    HTTP_ERROR = "http_error"
    UNKNOWN = "unknown"


class MetricKind(Enum):
    """Metric types."""

    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"
    SUMMARY = "summary"


class MetricCategory(Enum):
    """Metric categories used for summaries."""

    SYSTEM = "system"
    APPLICATION = "application"
    BUSINESS = "business"


class Operator(Enum):
    """Comparison operators for alert conditions."""

    GT = ">"
    LT = "<"
    GTE = ">="
    LTE = "<="
    EQ = "=="
    NEQ = "!="


class AlertSeverity(Enum):
    """Alert severity, ordinal."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        """Ordinal position, LOW = 0."""
        return list(AlertSeverity).index(self)


class AlertStatus(Enum):
    """Alert lifecycle states."""

    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


class AlertSource(Enum):
    """Who created an alert."""

    RULE = "rule"
    MANUAL = "manual"


class Topic(Enum):
    """Realtime subscription topics."""

    METRICS = "metrics"
    HEALTH = "health"
    ALERTS = "alerts"
    ALL = "all"


class ChannelType(Enum):
    """Notification channel adapters."""

    WEBHOOK = "webhook"
    CHAT_WEBHOOK = "chat_webhook"
    EMAIL = "email"


# ============================================================
# PARSING HELPERS
# ============================================================

def parse_enum(enum_cls, value: Any, field_name: str):
    """Parse an enum member from itself or its value."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(str(m.value) for m in enum_cls)
        raise ValidationError(
            f"Invalid {field_name}: {value!r} (allowed: {allowed})",
            field=field_name,
            value=value,
        )


def to_number(value: Any, field_name: str) -> float:
    """Numeric cast; bools become 0/1, anything else non-numeric is rejected."""
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        try:
            number = float(value)
        except (TypeError, ValueError):
            raise ValidationError(
                f"{field_name} must be numeric, got {value!r}",
                field=field_name,
                value=value,
            )
    if math.isnan(number):
        raise ValidationError(f"{field_name} must not be NaN", field=field_name)
    return number


def normalize_labels(labels: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    """Copy labels into a plain str -> str dict."""
    if not labels:
        return {}
    return {str(k): str(v) for k, v in labels.items()}


def label_key(labels: Optional[Mapping[str, Any]]) -> Tuple[Tuple[str, str], ...]:
    """Order-independent identity of a label set."""
    return tuple(sorted(normalize_labels(labels).items()))


def new_id(prefix: str) -> str:
    """Generate a prefixed unique id."""
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


# ============================================================
# SERVICES & HEALTH
# ============================================================

@dataclass
class MonitoredService:
    """A service whose health endpoint is polled."""

    name: str
    base_url: str
    health_path: str = "/health"
    timeout: float = 5.0
    poll_interval: float = 30.0

    @property
    def url(self) -> str:
        """Full probe URL."""
        return f"{self.base_url.rstrip('/')}/{self.health_path.lstrip('/')}"

    def validate(self) -> None:
        """Raise ValidationError if the definition is malformed."""
        if not self.name or not str(self.name).strip():
            raise ValidationError("Service name is required", field="name")
        if not self.base_url or not str(self.base_url).startswith(("http://", "https://")):
            raise ValidationError(
                "Service base_url must be an http(s) URL",
                field="base_url",
                value=self.base_url,
            )
        if to_number(self.timeout, "timeout") <= 0:
            raise ValidationError("Service timeout must be > 0", field="timeout", value=self.timeout)
        if to_number(self.poll_interval, "poll_interval") <= 0:
            raise ValidationError(
                "Service poll_interval must be > 0",
                field="poll_interval",
                value=self.poll_interval,
            )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MonitoredService":
        """Build from a configuration mapping."""
        service = cls(
            name=data.get("name", ""),
            base_url=data.get("base_url") or data.get("url", ""),
            health_path=data.get("health_path", "/health"),
            timeout=data.get("timeout", 5.0),
            poll_interval=data.get("poll_interval", 30.0),
        )
        service.validate()
        service.timeout = float(service.timeout)
        service.poll_interval = float(service.poll_interval)
        return service

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "base_url": self.base_url,
            "health_path": self.health_path,
            "timeout": self.timeout,
            "poll_interval": self.poll_interval,
        }


@dataclass(frozen=True)
class HealthCheckResult:
    """Outcome of one probe. Immutable once produced."""

    service_name: str
    healthy: bool
    response_time_ms: Optional[float]
    timestamp: datetime
    status_code: Optional[int] = None
    error_kind: Optional[ProbeErrorKind] = None
    error: Optional[str] = None
    url: Optional[str] = None
    details: Optional[Any] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.service_name,
            "healthy": self.healthy,
            "response_time_ms": self.response_time_ms,
            "status_code": self.status_code,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "error": self.error,
            "url": self.url,
            "details": self.details,
            "timestamp": to_iso8601(self.timestamp),
        }


@dataclass
class SystemHealthSnapshot:
    """Point-in-time aggregate of the latest probe results."""

    status: HealthStatus
    total_services: int
    healthy_services: int
    unhealthy_services: int
    health_percentage: float
    services: Dict[str, HealthCheckResult]
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "total_services": self.total_services,
            "healthy_services": self.healthy_services,
            "unhealthy_services": self.unhealthy_services,
            "health_percentage": self.health_percentage,
            "services": {name: r.to_dict() for name, r in self.services.items()},
            "timestamp": to_iso8601(self.timestamp),
        }


# ============================================================
# METRICS
# ============================================================

@dataclass
class MetricSample:
    """A single write to a time series."""

    name: str
    value: float
    kind: MetricKind = MetricKind.GAUGE
    category: MetricCategory = MetricCategory.APPLICATION
    labels: Dict[str, str] = field(default_factory=dict)
    timestamp: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MetricSample":
        """Build from a management-surface mapping."""
        if "name" not in data or "value" not in data:
            raise ValidationError("Metric sample requires name and value")
        return cls(
            name=data["name"],
            value=to_number(data["value"], "value"),
            kind=parse_enum(MetricKind, data.get("kind", "gauge"), "kind"),
            category=parse_enum(MetricCategory, data.get("category", "application"), "category"),
            labels=normalize_labels(data.get("labels")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind.value,
            "category": self.category.value,
            "value": self.value,
            "labels": dict(self.labels),
            "timestamp": to_iso8601(self.timestamp),
        }


# ============================================================
# ALERT RULES
# ============================================================

@dataclass
class AlertCondition:
    """Threshold condition of a rule."""

    operator: Operator
    threshold: float
    sustained_duration: float = 0.0  # seconds the condition must hold

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operator": self.operator.value,
            "threshold": self.threshold,
            "sustained_duration": self.sustained_duration,
        }


@dataclass
class AlertRule:
    """
    An alert rule definition.

    fingerprint_labels names the label dimensions that split one rule
    into independent alert instances (e.g. ["service"] for a
    per-service uptime rule). An empty list means one instance per rule.
    """

    id: str
    name: str
    metric_name: str
    condition: AlertCondition
    severity: AlertSeverity = AlertSeverity.MEDIUM
    description: str = ""
    enabled: bool = True
    notification_channels: List[str] = field(default_factory=list)
    silence_period: float = 0.0
    max_occurrences: int = 0  # 0 = unlimited
    labels: Dict[str, str] = field(default_factory=dict)
    fingerprint_labels: List[str] = field(default_factory=list)

    # Statistics
    trigger_count: int = 0
    last_triggered: Optional[datetime] = None
    last_evaluated: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], rule_id: Optional[str] = None) -> "AlertRule":
        """
        Build and validate a rule from a configuration mapping.

        Raises ValidationError on malformed definitions.
        """
        name = data.get("name")
        if not name or not str(name).strip():
            raise ValidationError("Rule name is required", field="name")

        metric_name = data.get("metric_name") or data.get("metric")
        if not metric_name or not str(metric_name).strip():
            raise ValidationError("Rule metric_name is required", field="metric_name")

        cond = data.get("condition")
        if not isinstance(cond, Mapping):
            raise ValidationError("Rule condition must be a mapping", field="condition")
        if "operator" not in cond or "threshold" not in cond:
            raise ValidationError("Rule condition requires operator and threshold", field="condition")

        sustained = to_number(
            cond.get("sustained_duration", cond.get("duration", 0)),
            "condition.sustained_duration",
        )
        if sustained < 0:
            raise ValidationError("sustained_duration must be >= 0", field="condition.sustained_duration")

        condition = AlertCondition(
            operator=parse_enum(Operator, cond["operator"], "condition.operator"),
            threshold=to_number(cond["threshold"], "condition.threshold"),
            sustained_duration=sustained,
        )

        silence_period = to_number(data.get("silence_period", 0), "silence_period")
        if silence_period < 0:
            raise ValidationError("silence_period must be >= 0", field="silence_period")

        max_occurrences = data.get("max_occurrences", 0)
        if isinstance(max_occurrences, bool) or not isinstance(max_occurrences, int) or max_occurrences < 0:
            raise ValidationError(
                "max_occurrences must be a non-negative integer",
                field="max_occurrences",
                value=max_occurrences,
            )

        channels = data.get("notification_channels", [])
        if isinstance(channels, str) or not all(isinstance(c, str) for c in channels):
            raise ValidationError(
                "notification_channels must be a list of channel ids",
                field="notification_channels",
            )

        fingerprint_labels = data.get("fingerprint_labels", [])
        if isinstance(fingerprint_labels, str) or not all(isinstance(l, str) for l in fingerprint_labels):
            raise ValidationError(
                "fingerprint_labels must be a list of label names",
                field="fingerprint_labels",
            )

        return cls(
            id=rule_id or data.get("id") or new_id("rule"),
            name=str(name),
            description=str(data.get("description", "")),
            metric_name=str(metric_name),
            condition=condition,
            severity=parse_enum(AlertSeverity, data.get("severity", "medium"), "severity"),
            enabled=bool(data.get("enabled", True)),
            notification_channels=list(channels),
            silence_period=silence_period,
            max_occurrences=max_occurrences,
            labels=normalize_labels(data.get("labels")),
            fingerprint_labels=list(fingerprint_labels),
        )

    def fingerprint(self, labels: Optional[Mapping[str, str]] = None) -> str:
        """
        Dedup key for one instance of this rule.

        Only the declared fingerprint_labels contribute.
        """
        if not self.fingerprint_labels:
            return self.id
        labels = labels or {}
        parts = [f"{name}={labels.get(name, '')}" for name in sorted(self.fingerprint_labels)]
        return f"{self.id}|{','.join(parts)}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "metric_name": self.metric_name,
            "condition": self.condition.to_dict(),
            "severity": self.severity.value,
            "enabled": self.enabled,
            "notification_channels": list(self.notification_channels),
            "silence_period": self.silence_period,
            "max_occurrences": self.max_occurrences,
            "labels": dict(self.labels),
            "fingerprint_labels": list(self.fingerprint_labels),
            "trigger_count": self.trigger_count,
            "last_triggered": to_iso8601(self.last_triggered),
            "last_evaluated": to_iso8601(self.last_evaluated),
            "created_at": to_iso8601(self.created_at),
            "updated_at": to_iso8601(self.updated_at),
        }


# ============================================================
# ALERTS
# ============================================================

@dataclass
class Alert:
    """An alert record owned by the alert engine."""

    id: str
    fingerprint: str
    severity: AlertSeverity
    title: str
    message: str
    created_at: datetime
    rule_id: Optional[str] = None
    source: AlertSource = AlertSource.RULE
    status: AlertStatus = AlertStatus.ACTIVE
    labels: Dict[str, str] = field(default_factory=dict)
    data: Dict[str, Any] = field(default_factory=dict)

    # Lifecycle
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    acknowledge_comment: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolve_comment: Optional[str] = None

    # Repetition
    occurrence_count: int = 1
    last_occurrence_at: Optional[datetime] = None
    notification_count: int = 0
    last_notified_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        """Active or acknowledged."""
        return self.status != AlertStatus.RESOLVED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "rule_id": self.rule_id,
            "fingerprint": self.fingerprint,
            "status": self.status.value,
            "severity": self.severity.value,
            "title": self.title,
            "message": self.message,
            "source": self.source.value,
            "labels": dict(self.labels),
            "data": dict(self.data),
            "created_at": to_iso8601(self.created_at),
            "acknowledged_at": to_iso8601(self.acknowledged_at),
            "acknowledged_by": self.acknowledged_by,
            "resolved_at": to_iso8601(self.resolved_at),
            "resolved_by": self.resolved_by,
            "occurrence_count": self.occurrence_count,
            "last_occurrence_at": to_iso8601(self.last_occurrence_at),
            "notification_count": self.notification_count,
        }


# ============================================================
# REALTIME
# ============================================================

@dataclass
class ClientSubscription:
    """Subscription state of one realtime client."""

    client_id: str
    connected_at: datetime
    last_activity: datetime
    topics: Set[Topic] = field(default_factory=set)

    def wants(self, topic: Topic) -> bool:
        """Whether updates for topic go to this client."""
        return topic in self.topics or Topic.ALL in self.topics

    def to_dict(self) -> Dict[str, Any]:
        return {
            "client_id": self.client_id,
            "topics": sorted(t.value for t in self.topics),
            "connected_at": to_iso8601(self.connected_at),
            "last_activity": to_iso8601(self.last_activity),
        }


# ============================================================
# NOTIFICATIONS
# ============================================================

@dataclass
class NotificationChannelConfig:
    """Configuration of one notification channel."""

    id: str
    type: ChannelType
    url: Optional[str] = None
    method: str = "POST"
    headers: Dict[str, str] = field(default_factory=dict)
    enabled: bool = True
    timeout: float = 10.0
    name: Optional[str] = None

    # Email only
    recipients: List[str] = field(default_factory=list)
    sender: Optional[str] = None
    smtp_server: Optional[str] = None
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    use_tls: bool = True

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "NotificationChannelConfig":
        """Build and validate a channel config."""
        channel_id = data.get("id")
        if not channel_id:
            raise ValidationError("Channel id is required", field="id")
        channel_type = parse_enum(ChannelType, data.get("type", "webhook"), "type")

        config = cls(
            id=str(channel_id),
            type=channel_type,
            url=data.get("url"),
            method=str(data.get("method", "POST")).upper(),
            headers=normalize_labels(data.get("headers")),
            enabled=bool(data.get("enabled", True)),
            timeout=to_number(data.get("timeout", 10.0), "timeout"),
            name=data.get("name"),
            recipients=list(data.get("recipients", [])),
            sender=data.get("sender"),
            smtp_server=data.get("smtp_server"),
            smtp_port=int(data.get("smtp_port", 587)),
            smtp_username=data.get("smtp_username"),
            smtp_password=data.get("smtp_password"),
            use_tls=bool(data.get("use_tls", True)),
        )

        if channel_type in (ChannelType.WEBHOOK, ChannelType.CHAT_WEBHOOK) and not config.url:
            raise ValidationError(f"Channel {config.id} requires a url", field="url")
        if channel_type == ChannelType.EMAIL and (not config.smtp_server or not config.recipients):
            raise ValidationError(
                f"Channel {config.id} requires smtp_server and recipients",
                field="smtp_server",
            )
        if config.timeout <= 0:
            raise ValidationError("Channel timeout must be > 0", field="timeout")

        return config

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "url": self.url,
            "method": self.method,
            "enabled": self.enabled,
            "timeout": self.timeout,
            "recipients": list(self.recipients),
        }


@dataclass
class NotificationOutcome:
    """Result of one delivery attempt."""

    channel_id: str
    alert_id: str
    success: bool
    sent_at: datetime
    error: Optional[str] = None
    status_code: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channel_id": self.channel_id,
            "alert_id": self.alert_id,
            "success": self.success,
            "error": self.error,
            "status_code": self.status_code,
            "sent_at": to_iso8601(self.sent_at),
        }


__all__ = [
    "HealthStatus",
    "ProbeErrorKind",
    "MetricKind",
    "MetricCategory",
    "Operator",
    "AlertSeverity",
    "AlertStatus",
    "AlertSource",
    "Topic",
    "ChannelType",
    "parse_enum",
    "to_number",
    "normalize_labels",
    "label_key",
    "new_id",
    "MonitoredService",
    "HealthCheckResult",
    "SystemHealthSnapshot",
    "MetricSample",
    "AlertCondition",
    "AlertRule",
    "Alert",
    "ClientSubscription",
    "NotificationChannelConfig",
    "NotificationOutcome",
]
