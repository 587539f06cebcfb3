"""
Alert Engine.

============================================================
PURPOSE
============================================================
Evaluates alert rules, owns the alert lifecycle and hands
alerts to the notification dispatcher.

PRINCIPLES:
- Deterministic rule evaluation
- Clear alert lifecycle (active -> acknowledged -> resolved)
- At most one open alert per fingerprint
- Notification is best effort and never blocks the lifecycle

============================================================
CONCURRENCY
============================================================
Every alert mutation, from the evaluation tick or from the
management surface, passes through one asyncio.Lock gate.
Evaluation is single-flight: a tick that finds another tick
still running returns immediately. Notifications are sent
after the gate is released.

============================================================
"""

import asyncio
import inspect
import logging
import re
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple, Union

from core.clock import ClockProtocol, SystemClock, to_iso8601
from core.exceptions import ConcurrencyConflict, NotFoundError, ValidationError
from ..metrics.aggregator import MetricsAggregator
from ..models import (
    Alert,
    AlertRule,
    AlertSeverity,
    AlertSource,
    AlertStatus,
    new_id,
    normalize_labels,
    parse_enum,
)
from ..notifications.dispatch import NotificationDispatcher
from .repository import AlertRepository, InMemoryAlertRepository
from .rules import RuleInstance, resolve_instances


logger = logging.getLogger(__name__)


SYSTEM_ACTOR = "system"

PERIOD_RE = re.compile(r"^(\d+)([mhdw])$")
PERIOD_UNITS = {"m": 60, "h": 3600, "d": 86400, "w": 604800}
DEFAULT_PERIOD_SECONDS = 86400

# Callback type for newly created alerts
AlertCallback = Callable[[Alert], Union[None, Awaitable[None]]]


def parse_period(period: str) -> timedelta:
    """
    Parse a statistics window such as "30m", "24h", "7d" or "1w".

    Unparseable input falls back to 24 hours.
    """
    match = PERIOD_RE.match(str(period).strip())
    if not match:
        return timedelta(seconds=DEFAULT_PERIOD_SECONDS)
    value, unit = match.groups()
    return timedelta(seconds=int(value) * PERIOD_UNITS[unit])


class AlertEngine:
    """
    Rule evaluation and alert lifecycle.

    This is the central alert coordination point.
    """

    def __init__(
        self,
        registry,
        aggregator: Optional[MetricsAggregator] = None,
        poller=None,
        dispatcher: Optional[NotificationDispatcher] = None,
        clock: Optional[ClockProtocol] = None,
        repository: Optional[AlertRepository] = None,
    ):
        """
        Initialize alert engine.

        Args:
            registry: MonitorRegistry holding the rules
            aggregator: Metric source for rules
            poller: HealthPoller, source for service_up rules
            dispatcher: Notification dispatcher
            clock: Clock for lifecycle timestamps
            repository: Alert storage (in-memory by default)
        """
        self._registry = registry
        self._aggregator = aggregator
        self._poller = poller
        self._dispatcher = dispatcher
        self._clock = clock or SystemClock()
        self._alerts = repository or InMemoryAlertRepository()

        # Serialized gate for alert mutations
        self._gate = asyncio.Lock()
        # Single-flight guard for evaluation ticks
        self._tick_lock = asyncio.Lock()

        self._pending_since: Dict[str, datetime] = {}
        self._last_notified: Dict[str, datetime] = {}
        self._callbacks: List[AlertCallback] = []

        self._evaluation_count = 0
        self._skipped_ticks = 0
        self._last_evaluation: Optional[datetime] = None

    @property
    def repository(self) -> AlertRepository:
        return self._alerts

    def on_alert_created(self, callback: AlertCallback) -> None:
        """Register a callback for newly created alerts."""
        self._callbacks.append(callback)

    # =========================================================
    # EVALUATION
    # =========================================================

    async def evaluate_all(self) -> List[Alert]:
        """
        Evaluate every enabled rule once.

        Returns the alerts created by this tick.
        """
        if self._tick_lock.locked():
            self._skipped_ticks += 1
            logger.info("Alert evaluation already running, skipping tick")
            return []

        async with self._tick_lock:
            created: List[Alert] = []
            outgoing: List[Tuple[Alert, List[str]]] = []
            rules = self._registry.list_rules(enabled_only=True)

            async with self._gate:
                now = self._clock.now()
                self._resolve_orphans(now)
                for rule in rules:
                    try:
                        self._evaluate_rule(rule, now, created, outgoing)
                    except Exception as e:
                        logger.error(f"Error evaluating rule {rule.id}: {e}")

                self._evaluation_count += 1
                self._last_evaluation = now

            await self._after_gate(created, outgoing)

            if created:
                logger.info(f"Alert evaluation created {len(created)} alert(s)")
            return created

    def _resolve_orphans(self, now: datetime) -> None:
        """
        Resolve open rule alerts that no current rule instance can own.

        An alert is orphaned when its rule was deleted, or when the
        rule's fingerprint_labels changed so its fingerprint is no
        longer produced.
        """
        for alert in self._alerts.list_active():
            if alert.source != AlertSource.RULE:
                continue

            rule = self._registry.get_rule(alert.rule_id) if alert.rule_id else None
            if rule is None:
                comment = "Rule deleted"
            elif rule.fingerprint(alert.labels) != alert.fingerprint:
                comment = "Rule changed"
            else:
                continue

            self._pending_since.pop(alert.fingerprint, None)
            self._last_notified.pop(alert.fingerprint, None)
            self._apply_resolve(alert, SYSTEM_ACTOR, comment, now)

    def _evaluate_rule(
        self,
        rule: AlertRule,
        now: datetime,
        created: List[Alert],
        outgoing: List[Tuple[Alert, List[str]]],
    ) -> None:
        rule.last_evaluated = now
        instances = resolve_instances(rule, self._aggregator, self._poller)

        if not instances:
            logger.debug(f"No value available for rule {rule.id} ({rule.metric_name}), skipping")
            return

        for instance in instances:
            fingerprint = instance.fingerprint
            holds = instance.holds
            open_alert = self._alerts.find_open(fingerprint)

            if not holds:
                self._pending_since.pop(fingerprint, None)
                if open_alert is not None:
                    self._apply_resolve(open_alert, SYSTEM_ACTOR, "Condition cleared", now)
                continue

            if open_alert is None:
                if not self._sustained(rule, fingerprint, now):
                    continue
                alert = self._open_rule_alert(rule, instance, now)
                created.append(alert)
                self._queue_notification(rule, alert, now, outgoing)
            else:
                open_alert.occurrence_count += 1
                open_alert.last_occurrence_at = now
                open_alert.data["currentValue"] = instance.value
                self._alerts.put(open_alert)
                if open_alert.status == AlertStatus.ACTIVE:
                    self._queue_notification(rule, open_alert, now, outgoing)

    def _sustained(self, rule: AlertRule, fingerprint: str, now: datetime) -> bool:
        """Whether the condition has held for the rule's sustained duration."""
        duration = rule.condition.sustained_duration
        since = self._pending_since.setdefault(fingerprint, now)
        if duration <= 0:
            return True
        held = (now - since).total_seconds()
        if held < duration:
            logger.debug(f"Rule {rule.id} condition pending for {held:.0f}s of {duration:.0f}s")
            return False
        return True

    def _open_rule_alert(self, rule: AlertRule, instance: RuleInstance, now: datetime) -> Alert:
        alert = Alert(
            id=new_id("alert"),
            rule_id=rule.id,
            fingerprint=instance.fingerprint,
            severity=rule.severity,
            title=rule.name,
            message=f"{rule.description or rule.name}. Current value: {_format_value(instance.value)}",
            created_at=now,
            source=AlertSource.RULE,
            labels=dict(instance.labels),
            data={
                "metric": rule.metric_name,
                "currentValue": instance.value,
                "threshold": rule.condition.threshold,
                "operator": rule.condition.operator.value,
                "labels": dict(instance.labels),
            },
            last_occurrence_at=now,
        )
        self._alerts.put(alert)

        rule.trigger_count += 1
        rule.last_triggered = now

        logger.warning(
            f"Alert triggered: {alert.title} [{alert.severity.value}] ({alert.fingerprint})"
        )
        return alert

    def _queue_notification(
        self,
        rule: AlertRule,
        alert: Alert,
        now: datetime,
        outgoing: List[Tuple[Alert, List[str]]],
    ) -> None:
        """Mark the alert notified and queue delivery, unless silenced or capped."""
        if self._dispatcher is None or not rule.notification_channels:
            return

        if rule.max_occurrences and alert.notification_count >= rule.max_occurrences:
            logger.debug(f"Alert {alert.id} reached max occurrences ({rule.max_occurrences}), not notifying")
            return

        last = self._last_notified.get(alert.fingerprint)
        if last is not None and (now - last).total_seconds() < rule.silence_period:
            logger.debug(f"Alert {alert.id} silenced until {to_iso8601(last + timedelta(seconds=rule.silence_period))}")
            return

        channels = []
        for channel_id in rule.notification_channels:
            channel = self._dispatcher.get_channel(channel_id)
            if channel is not None and not channel.enabled:
                continue
            channels.append(channel_id)
        if not channels:
            return

        alert.notification_count += 1
        alert.last_notified_at = now
        self._last_notified[alert.fingerprint] = now
        outgoing.append((alert, channels))

    async def _after_gate(self, created: List[Alert], outgoing: List[Tuple[Alert, List[str]]]) -> None:
        """Callbacks and notifications, outside the gate."""
        for alert in created:
            await self._emit_created(alert)

        if outgoing:
            await asyncio.gather(
                *(self._dispatcher.dispatch(alert, channels) for alert, channels in outgoing)
            )

    async def _emit_created(self, alert: Alert) -> None:
        for callback in self._callbacks:
            try:
                outcome = callback(alert)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.error(f"Alert callback error: {e}")

    # =========================================================
    # MANUAL OPERATIONS
    # =========================================================

    async def create_alert(
        self,
        title: str,
        message: str,
        severity: Union[AlertSeverity, str] = AlertSeverity.MEDIUM,
        fingerprint: Optional[str] = None,
        rule_id: Optional[str] = None,
        labels: Optional[Mapping[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        notification_channels: Optional[List[str]] = None,
    ) -> Alert:
        """
        Create an alert by hand.

        Without an explicit fingerprint, alerts tied to a rule use
        the rule's fingerprint for the labels; others get a unique one.

        Raises:
            ValidationError: malformed input
            NotFoundError: unknown rule_id
            ConcurrencyConflict: an open alert holds the fingerprint
        """
        if not title or not str(title).strip():
            raise ValidationError("Alert title is required", field="title")
        severity = parse_enum(AlertSeverity, severity, "severity")
        labels = normalize_labels(labels)

        rule = None
        if rule_id is not None:
            rule = self._registry.get_rule(rule_id)
            if rule is None:
                raise NotFoundError("rule", rule_id)

        alert_id = new_id("alert")
        if fingerprint is None:
            fingerprint = rule.fingerprint(labels) if rule else f"manual|{alert_id}"

        async with self._gate:
            existing = self._alerts.find_open(fingerprint)
            if existing is not None:
                raise ConcurrencyConflict(fingerprint, existing_alert_id=existing.id)

            now = self._clock.now()
            alert = Alert(
                id=alert_id,
                rule_id=rule_id,
                fingerprint=fingerprint,
                severity=severity,
                title=str(title),
                message=str(message or title),
                created_at=now,
                source=AlertSource.MANUAL,
                labels=labels,
                data=dict(data or {}),
                last_occurrence_at=now,
            )
            self._alerts.put(alert)

            outgoing: List[Tuple[Alert, List[str]]] = []
            channels = notification_channels
            if channels is None and rule is not None:
                channels = rule.notification_channels
            if channels and self._dispatcher is not None:
                alert.notification_count = 1
                alert.last_notified_at = now
                self._last_notified[fingerprint] = now
                outgoing.append((alert, list(channels)))

        logger.warning(f"Manual alert created: {alert.title} [{alert.severity.value}] ({fingerprint})")
        await self._after_gate([alert], outgoing)
        return alert

    async def acknowledge(self, alert_id: str, by: str = "user", comment: Optional[str] = None) -> Alert:
        """
        Acknowledge an active alert.

        No-op when the alert is already acknowledged or resolved.
        """
        async with self._gate:
            alert = self._get_or_raise(alert_id)
            if alert.status != AlertStatus.ACTIVE:
                logger.debug(f"Alert {alert_id} already {alert.status.value}, acknowledge ignored")
                return alert

            alert.status = AlertStatus.ACKNOWLEDGED
            alert.acknowledged_at = self._clock.now()
            alert.acknowledged_by = by
            alert.acknowledge_comment = comment
            self._alerts.put(alert)

        logger.info(f"Alert acknowledged: {alert_id} by {by}")
        return alert

    async def resolve(self, alert_id: str, by: str = "user", comment: Optional[str] = None) -> Alert:
        """
        Resolve an open alert.

        No-op when the alert is already resolved.
        """
        async with self._gate:
            alert = self._get_or_raise(alert_id)
            if alert.status == AlertStatus.RESOLVED:
                logger.debug(f"Alert {alert_id} already resolved, resolve ignored")
                return alert
            self._apply_resolve(alert, by, comment, self._clock.now())
        return alert

    def _apply_resolve(self, alert: Alert, by: str, comment: Optional[str], now: datetime) -> None:
        alert.status = AlertStatus.RESOLVED
        alert.resolved_at = now
        alert.resolved_by = by
        alert.resolve_comment = comment
        self._alerts.put(alert)
        logger.info(f"Alert resolved: {alert.id} ({alert.fingerprint}) by {by}")

    def _get_or_raise(self, alert_id: str) -> Alert:
        alert = self._alerts.get(alert_id)
        if alert is None:
            raise NotFoundError("alert", alert_id)
        return alert

    # =========================================================
    # QUERIES
    # =========================================================

    def get_alert(self, alert_id: str) -> Optional[Alert]:
        """Get alert by ID."""
        return self._alerts.get(alert_id)

    def get_active_alerts(self) -> List[Alert]:
        """Open alerts, newest first."""
        return sorted(self._alerts.list_active(), key=lambda a: a.created_at, reverse=True)

    def get_alerts(
        self,
        status: Optional[Union[AlertStatus, str]] = None,
        severity: Optional[Union[AlertSeverity, str]] = None,
        rule_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Alert]:
        """Filtered alerts, newest first."""
        if status is not None:
            status = parse_enum(AlertStatus, status, "status")
        if severity is not None:
            severity = parse_enum(AlertSeverity, severity, "severity")
        if limit < 0 or offset < 0:
            raise ValidationError("limit and offset must be >= 0")

        alerts = [
            a for a in self._alerts.list()
            if (status is None or a.status == status)
            and (severity is None or a.severity == severity)
            and (rule_id is None or a.rule_id == rule_id)
        ]
        alerts.sort(key=lambda a: a.created_at, reverse=True)
        return alerts[offset:offset + limit]

    def get_statistics(self, period: str = "24h") -> Dict[str, Any]:
        """Alert counts for alerts created within the period."""
        window = parse_period(period)
        since = self._clock.now() - window
        alerts = [a for a in self._alerts.list() if a.created_at >= since]

        by_rule: Dict[str, int] = {}
        for alert in alerts:
            key = alert.rule_id or "manual"
            by_rule[key] = by_rule.get(key, 0) + 1

        return {
            "period": period,
            "since": to_iso8601(since),
            "total": len(alerts),
            "active": sum(1 for a in alerts if a.status == AlertStatus.ACTIVE),
            "acknowledged": sum(1 for a in alerts if a.status == AlertStatus.ACKNOWLEDGED),
            "resolved": sum(1 for a in alerts if a.status == AlertStatus.RESOLVED),
            "by_severity": {
                s.value: sum(1 for a in alerts if a.severity == s)
                for s in AlertSeverity
            },
            "by_rule": by_rule,
        }

    def get_status(self) -> Dict[str, Any]:
        """Engine status for dashboards."""
        rules = self._registry.list_rules()
        alerts = self._alerts.list()
        return {
            "total_rules": len(rules),
            "active_rules": sum(1 for r in rules if r.enabled),
            "total_alerts": len(alerts),
            "active_alerts": sum(1 for a in alerts if a.status == AlertStatus.ACTIVE),
            "acknowledged_alerts": sum(1 for a in alerts if a.status == AlertStatus.ACKNOWLEDGED),
            "channels": len(self._dispatcher.list_channels()) if self._dispatcher else 0,
            "evaluation_count": self._evaluation_count,
            "skipped_ticks": self._skipped_ticks,
            "last_evaluation": to_iso8601(self._last_evaluation),
        }

    def get_alert_summary(self) -> Dict[str, Any]:
        """Open alert counts, used by the realtime alerts_update push."""
        active = self.get_active_alerts()
        return {
            "active_alerts": [a.to_dict() for a in active],
            "count": len(active),
            "critical_count": sum(1 for a in active if a.severity == AlertSeverity.CRITICAL),
        }


def _format_value(value: Optional[float]) -> str:
    if value is None:
        return "n/a"
    if float(value).is_integer():
        return str(int(value))
    return f"{value:.2f}"


__all__ = [
    "SYSTEM_ACTOR",
    "AlertEngine",
    "AlertCallback",
    "parse_period",
]
