"""
Alerts - Repository.

============================================================
PURPOSE
============================================================
Storage interface for alert rules and alerts.

The runtime keeps everything in memory; the interface exists
so a durable store can be substituted without touching the
engine or the registry.

============================================================
INVARIANT
============================================================
At most one open (active or acknowledged) alert per
fingerprint. put() enforces it.

============================================================
"""

import logging
import threading
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Dict, Generic, List, Optional, TypeVar

from core.exceptions import ConcurrencyConflict
from ..models import Alert, AlertRule, AlertStatus


logger = logging.getLogger(__name__)


T = TypeVar("T")


# ============================================================
# INTERFACES
# ============================================================

class Repository(ABC, Generic[T]):
    """Abstract keyed store."""

    @abstractmethod
    def get(self, key: str) -> Optional[T]:
        """Get an item by id, None if absent."""
        pass

    @abstractmethod
    def put(self, item: T) -> T:
        """Insert or replace an item."""
        pass

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Delete an item; False if it did not exist."""
        pass

    @abstractmethod
    def list(self) -> List[T]:
        """All items in insertion order."""
        pass


class AlertRepository(Repository[Alert]):
    """Alert store with fingerprint lookups."""

    @abstractmethod
    def list_active(self) -> List[Alert]:
        """Alerts whose status is not resolved."""
        pass

    @abstractmethod
    def find_open(self, fingerprint: str) -> Optional[Alert]:
        """The open alert for a fingerprint, if any."""
        pass


# ============================================================
# IN-MEMORY IMPLEMENTATIONS
# ============================================================

class InMemoryRuleRepository(Repository[AlertRule]):
    """Rule definitions keyed by rule id."""

    def __init__(self):
        """Initialize rule repository."""
        self._rules: "OrderedDict[str, AlertRule]" = OrderedDict()
        self._lock = threading.RLock()

    def get(self, key: str) -> Optional[AlertRule]:
        with self._lock:
            return self._rules.get(key)

    def put(self, item: AlertRule) -> AlertRule:
        with self._lock:
            self._rules[item.id] = item
            return item

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._rules.pop(key, None) is not None

    def list(self) -> List[AlertRule]:
        with self._lock:
            return list(self._rules.values())


class InMemoryAlertRepository(AlertRepository):
    """
    Alerts keyed by id, with a fingerprint index of open alerts.

    Resolved alerts are kept up to max_history; the oldest
    resolved ones are evicted first. Open alerts are never evicted.
    """

    def __init__(self, max_history: int = 1000):
        """
        Initialize alert repository.

        Args:
            max_history: Maximum number of resolved alerts retained
        """
        self._alerts: "OrderedDict[str, Alert]" = OrderedDict()
        self._open_by_fingerprint: Dict[str, str] = {}
        self._max_history = max_history
        self._lock = threading.RLock()

    def get(self, key: str) -> Optional[Alert]:
        with self._lock:
            return self._alerts.get(key)

    def put(self, item: Alert) -> Alert:
        """
        Store or update an alert.

        Raises:
            ConcurrencyConflict: another open alert holds the fingerprint
        """
        with self._lock:
            holder = self._open_by_fingerprint.get(item.fingerprint)
            if item.is_open and holder is not None and holder != item.id:
                raise ConcurrencyConflict(item.fingerprint, existing_alert_id=holder)

            self._alerts[item.id] = item

            if item.is_open:
                self._open_by_fingerprint[item.fingerprint] = item.id
            elif holder == item.id:
                del self._open_by_fingerprint[item.fingerprint]
                self._evict()

            return item

    def delete(self, key: str) -> bool:
        with self._lock:
            alert = self._alerts.pop(key, None)
            if alert is None:
                return False
            if self._open_by_fingerprint.get(alert.fingerprint) == key:
                del self._open_by_fingerprint[alert.fingerprint]
            return True

    def list(self) -> List[Alert]:
        with self._lock:
            return list(self._alerts.values())

    def list_active(self) -> List[Alert]:
        with self._lock:
            return [self._alerts[i] for i in self._open_by_fingerprint.values()]

    def find_open(self, fingerprint: str) -> Optional[Alert]:
        with self._lock:
            alert_id = self._open_by_fingerprint.get(fingerprint)
            return self._alerts.get(alert_id) if alert_id else None

    def _evict(self) -> None:
        resolved = [a.id for a in self._alerts.values() if a.status == AlertStatus.RESOLVED]
        excess = len(resolved) - self._max_history
        for alert_id in resolved[:max(excess, 0)]:
            del self._alerts[alert_id]
        if excess > 0:
            logger.debug(f"Evicted {excess} resolved alert(s) from history")


__all__ = [
    "Repository",
    "AlertRepository",
    "InMemoryRuleRepository",
    "InMemoryAlertRepository",
]
