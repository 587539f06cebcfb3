"""
Service Monitor - Registry.

============================================================
CENTRAL DEFINITION REGISTRY
============================================================

Holds the definitions the runtime works from:
- Monitored services (polled by the HealthPoller)
- Alert rules (evaluated by the AlertEngine)

Definitions are validated on the way in. Malformed ones
raise ValidationError, unknown ids raise NotFoundError.

============================================================
"""

import threading
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from core.clock import ClockProtocol, SystemClock
from core.exceptions import NotFoundError, ValidationError
from .alerts.repository import InMemoryRuleRepository, Repository
from .models import AlertRule, MonitoredService


logger = logging.getLogger(__name__)


# =============================================================
# CALLBACK TYPES
# =============================================================

# (event, service) with event in {"added", "removed"}
ServiceListener = Callable[[str, MonitoredService], None]

SERVICE_ADDED = "added"
SERVICE_REMOVED = "removed"

_RULE_STATS_FIELDS = ("trigger_count", "last_triggered", "last_evaluated", "created_at", "updated_at")


# =============================================================
# REGISTRY
# =============================================================


class MonitorRegistry:
    """
    Registry of monitored services and alert rules.

    ============================================================
    THREAD SAFETY
    ============================================================

    All operations are thread-safe. Listeners are invoked
    outside the lock.

    ============================================================
    """

    def __init__(
        self,
        clock: Optional[ClockProtocol] = None,
        rule_repository: Optional[Repository[AlertRule]] = None,
    ):
        """
        Initialize registry.

        Args:
            clock: Clock for rule timestamps
            rule_repository: Rule storage (in-memory by default)
        """
        self._clock = clock or SystemClock()
        self._rules = rule_repository or InMemoryRuleRepository()
        self._services: Dict[str, MonitoredService] = {}
        self._lock = threading.RLock()
        self._service_listeners: List[ServiceListener] = []

        logger.info("MonitorRegistry initialized")

    # =========================================================
    # SERVICE LISTENERS
    # =========================================================

    def add_service_listener(self, callback: ServiceListener) -> None:
        """Register a callback for service add/remove events."""
        self._service_listeners.append(callback)

    def _notify_service(self, event: str, service: MonitoredService) -> None:
        for callback in self._service_listeners:
            try:
                callback(event, service)
            except Exception as e:
                logger.error(f"Service listener error: {e}")

    # =========================================================
    # SERVICES
    # =========================================================

    def add_service(self, service: Union[MonitoredService, Mapping[str, Any]]) -> MonitoredService:
        """Add or replace a monitored service."""
        if isinstance(service, MonitoredService):
            service.validate()
        else:
            service = MonitoredService.from_dict(service)

        with self._lock:
            replaced = service.name in self._services
            self._services[service.name] = service

        logger.info(f"{'Replaced' if replaced else 'Added'} monitored service: {service.name} ({service.url})")
        self._notify_service(SERVICE_ADDED, service)
        return service

    def update_service(self, service_name: str, **changes) -> MonitoredService:
        """
        Change fields of a registered service.

        The name is the service identity and cannot be changed.
        """
        with self._lock:
            current = self._services.get(service_name)
            if current is None:
                raise NotFoundError("service", service_name)
            data = current.to_dict()

        if "name" in changes and changes["name"] != service_name:
            raise ValidationError("Service name cannot be changed", field="name", value=changes["name"])

        data.update(changes)
        return self.add_service(MonitoredService.from_dict(data))

    def remove_service(self, name: str) -> bool:
        """Remove a service; False if it was not registered."""
        with self._lock:
            service = self._services.pop(name, None)

        if service is None:
            return False

        logger.info(f"Removed monitored service: {name}")
        self._notify_service(SERVICE_REMOVED, service)
        return True

    def get_service(self, name: str) -> Optional[MonitoredService]:
        """Get a service by name."""
        with self._lock:
            return self._services.get(name)

    def list_services(self) -> List[MonitoredService]:
        """All registered services."""
        with self._lock:
            return list(self._services.values())

    # =========================================================
    # RULES
    # =========================================================

    def create_rule(self, rule: Union[AlertRule, Mapping[str, Any]]) -> AlertRule:
        """
        Create a rule.

        Raises:
            ValidationError: malformed definition or duplicate id
        """
        if not isinstance(rule, AlertRule):
            rule = AlertRule.from_dict(rule)
        else:
            # Round-trip through from_dict for validation
            AlertRule.from_dict(rule.to_dict(), rule_id=rule.id)

        with self._lock:
            if self._rules.get(rule.id) is not None:
                raise ValidationError(f"Rule already exists: {rule.id}", field="id", value=rule.id)
            now = self._clock.now()
            rule.created_at = rule.created_at or now
            rule.updated_at = now
            self._rules.put(rule)

        logger.info(f"Created alert rule: {rule.id} ({rule.name})")
        return rule

    def update_rule(self, rule_id: str, changes: Mapping[str, Any]) -> AlertRule:
        """
        Apply changes to a rule.

        The id and trigger statistics are preserved.
        """
        with self._lock:
            current = self._get_rule_or_raise(rule_id)

            data = current.to_dict()
            for key, value in changes.items():
                if key == "condition" and isinstance(value, Mapping):
                    data["condition"] = {**data["condition"], **value}
                elif key not in ("id",) + _RULE_STATS_FIELDS:
                    data[key] = value

            updated = AlertRule.from_dict(data, rule_id=rule_id)
            for name in _RULE_STATS_FIELDS:
                setattr(updated, name, getattr(current, name))
            updated.updated_at = self._clock.now()

            self._rules.put(updated)

        logger.info(f"Updated alert rule: {rule_id}")
        return updated

    def delete_rule(self, rule_id: str) -> None:
        """Delete a rule."""
        with self._lock:
            if not self._rules.delete(rule_id):
                raise NotFoundError("rule", rule_id)
        logger.info(f"Deleted alert rule: {rule_id}")

    def toggle_rule(self, rule_id: str) -> AlertRule:
        """Flip a rule's enabled flag."""
        with self._lock:
            rule = self._get_rule_or_raise(rule_id)
            return self._set_enabled(rule, not rule.enabled)

    def enable_rule(self, rule_id: str) -> AlertRule:
        with self._lock:
            return self._set_enabled(self._get_rule_or_raise(rule_id), True)

    def disable_rule(self, rule_id: str) -> AlertRule:
        with self._lock:
            return self._set_enabled(self._get_rule_or_raise(rule_id), False)

    def get_rule(self, rule_id: str) -> Optional[AlertRule]:
        """Get a rule by id."""
        return self._rules.get(rule_id)

    def list_rules(self, enabled_only: bool = False) -> List[AlertRule]:
        """All rules, optionally only enabled ones."""
        rules = self._rules.list()
        if enabled_only:
            return [r for r in rules if r.enabled]
        return rules

    def _get_rule_or_raise(self, rule_id: str) -> AlertRule:
        rule = self._rules.get(rule_id)
        if rule is None:
            raise NotFoundError("rule", rule_id)
        return rule

    def _set_enabled(self, rule: AlertRule, enabled: bool) -> AlertRule:
        rule.enabled = enabled
        rule.updated_at = self._clock.now()
        self._rules.put(rule)
        logger.info(f"Alert rule {rule.id} {'enabled' if enabled else 'disabled'}")
        return rule


__all__ = [
    "MonitorRegistry",
    "ServiceListener",
    "SERVICE_ADDED",
    "SERVICE_REMOVED",
]
