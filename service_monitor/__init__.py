"""
Service Monitor Package.

Runtime core of a monitoring service for a set of dependent
services.

Components:
- registry: Monitored services and alert rule definitions
- health: Concurrent health polling
- metrics: Metric aggregation, collectors, Prometheus exposition
- alerts: Rule evaluation and alert lifecycle
- notifications: Best-effort alert delivery
- realtime: Topic broadcast hub and websocket server
- runtime: Wiring and periodic tasks
"""

from .config import MonitorConfig, default_rules
from .registry import MonitorRegistry
from .health import HealthPoller
from .metrics import MetricsAggregator
from .alerts import AlertEngine
from .notifications import NotificationDispatcher
from .realtime import BroadcastHub, create_app
from .runtime import MonitoringRuntime

__version__ = "1.0.0"

__all__ = [
    "MonitorConfig",
    "default_rules",
    "MonitorRegistry",
    "HealthPoller",
    "MetricsAggregator",
    "AlertEngine",
    "NotificationDispatcher",
    "BroadcastHub",
    "create_app",
    "MonitoringRuntime",
]
