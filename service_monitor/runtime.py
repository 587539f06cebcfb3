"""
Service Monitor - Runtime.

============================================================
PURPOSE
============================================================
Builds every component once and passes them by reference.

Periodic tasks:
- health_poll          HealthPoller.poll_all
- metric_sample        system/application collectors
- alert_evaluation     AlertEngine.evaluate_all
- broadcast_metrics    metrics_update push
- broadcast_alerts     alerts_update push
- broadcast_health     health_update push
- client_cleanup       inactive realtime clients

The management surface (rules, alerts, services, metric
samples) is exposed as plain methods.

============================================================
"""

import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import aiohttp
from aiohttp import web

from core.clock import ClockProtocol, SystemClock, to_iso8601
from core.exceptions import ConfigurationError
from core.scheduler import TaskScheduler
from .alerts.engine import AlertEngine
from .alerts.repository import InMemoryAlertRepository
from .config import MonitorConfig
from .health.poller import HealthPoller
from .metrics.aggregator import MetricHandle, MetricsAggregator
from .metrics.collectors import ApplicationMetricsCollector, SystemMetricsCollector
from .models import (
    Alert,
    AlertRule,
    HealthCheckResult,
    MetricCategory,
    MetricKind,
    MetricSample,
    MonitoredService,
    Topic,
)
from .notifications.dispatch import NotificationDispatcher
from .realtime.hub import BroadcastHub
from .realtime.server import create_app
from .registry import MonitorRegistry


logger = logging.getLogger(__name__)


class MonitoringRuntime:
    """
    One monitoring runtime instance.

    ============================================================
    USAGE
    ============================================================

    runtime = MonitoringRuntime(MonitorConfig.from_env())
    await runtime.start()
    ...
    await runtime.stop()

    ============================================================
    """

    def __init__(
        self,
        config: Optional[MonitorConfig] = None,
        clock: Optional[ClockProtocol] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        """
        Initialize runtime.

        Args:
            config: Runtime configuration (defaults if None)
            clock: Clock shared by every component
            session: HTTP session shared by probes and webhooks

        Raises:
            ConfigurationError: invalid configuration
        """
        self.config = config or MonitorConfig()
        errors = self.config.validate()
        if errors:
            raise ConfigurationError(f"Invalid configuration: {'; '.join(errors)}")

        self.clock = clock or SystemClock()
        cfg = self.config

        self.aggregator = MetricsAggregator(self.clock, summary_window=cfg.summary_window)
        self.registry = MonitorRegistry(self.clock)
        self.poller = HealthPoller(
            self.registry,
            self.aggregator,
            self.clock,
            session=session,
            count_pending_as_unhealthy=cfg.count_pending_as_unhealthy,
        )
        self.dispatcher = NotificationDispatcher(
            cfg.channels,
            aggregator=self.aggregator,
            clock=self.clock,
            session=session,
            service_name=cfg.service_name,
            history_size=cfg.notification_history_size,
        )
        self.engine = AlertEngine(
            self.registry,
            aggregator=self.aggregator,
            poller=self.poller,
            dispatcher=self.dispatcher,
            clock=self.clock,
            repository=InMemoryAlertRepository(max_history=cfg.alert_history_size),
        )
        self.hub = BroadcastHub(
            self.clock,
            inactivity_timeout=cfg.client_inactivity_timeout,
            metrics_provider=self.aggregator.get_complete_summary,
            health_provider=lambda: self.poller.snapshot().to_dict(),
            alerts_provider=self.engine.get_alert_summary,
        )
        self.system_collector = SystemMetricsCollector(self.aggregator, self.clock)
        self.app_collector = ApplicationMetricsCollector(self.aggregator, self.clock, cfg.service_name)
        self.scheduler = TaskScheduler()

        # Discrete realtime events
        self.poller.on_health_change(self.hub.publish_health_change)
        self.engine.on_alert_created(self.hub.publish_alert)

        for service in cfg.services:
            self.registry.add_service(service)
        for rule in cfg.rules:
            self.registry.create_rule(rule)

        self._register_tasks()
        self._started_at = None

        logger.info(
            f"MonitoringRuntime initialized: {len(cfg.services)} service(s), "
            f"{len(cfg.rules)} rule(s), {len(cfg.channels)} channel(s)"
        )

    # =========================================================
    # LIFECYCLE
    # =========================================================

    def _register_tasks(self) -> None:
        cfg = self.config
        self.scheduler.add("health_poll", cfg.health_check_interval, self.poller.poll_all)
        self.scheduler.add("metric_sample", cfg.metrics_sample_interval, self.sample_metrics)
        self.scheduler.add("alert_evaluation", cfg.alert_evaluation_interval, self.engine.evaluate_all,
                           run_immediately=False)
        self.scheduler.add("broadcast_metrics", cfg.metrics_broadcast_interval,
                           lambda: self.hub.broadcast(Topic.METRICS), run_immediately=False)
        self.scheduler.add("broadcast_alerts", cfg.alerts_broadcast_interval,
                           lambda: self.hub.broadcast(Topic.ALERTS), run_immediately=False)
        self.scheduler.add("broadcast_health", cfg.health_broadcast_interval,
                           lambda: self.hub.broadcast(Topic.HEALTH), run_immediately=False)
        self.scheduler.add("client_cleanup", cfg.client_cleanup_interval, self.hub.cleanup_inactive,
                           run_immediately=False)

    @property
    def is_running(self) -> bool:
        return self.scheduler.is_running

    async def start(self) -> None:
        """Start every periodic task."""
        if self.is_running:
            return
        self._started_at = self.clock.now()
        await self.scheduler.start()
        logger.info("Monitoring runtime started")

    async def stop(self) -> None:
        """
        Stop every periodic task and release resources.

        In-flight ticks get the configured shutdown timeout to finish.
        """
        await self.scheduler.stop(self.config.shutdown_timeout)
        await self.hub.close_all()
        await self.poller.close()
        await self.dispatcher.close()
        logger.info("Monitoring runtime stopped")

    async def sample_metrics(self) -> None:
        """One metric sample tick."""
        await self.system_collector.safe_collect()
        await self.app_collector.safe_collect()

    def create_app(self) -> web.Application:
        """aiohttp application serving /ws, /metrics and /health."""
        return create_app(self.hub, self.aggregator, self.app_collector, self.poller, self.engine)

    # =========================================================
    # MANAGEMENT - RULES
    # =========================================================

    def create_rule(self, data: Union[AlertRule, Mapping[str, Any]]) -> AlertRule:
        return self.registry.create_rule(data)

    def update_rule(self, rule_id: str, changes: Mapping[str, Any]) -> AlertRule:
        return self.registry.update_rule(rule_id, changes)

    def delete_rule(self, rule_id: str) -> None:
        self.registry.delete_rule(rule_id)

    def toggle_rule(self, rule_id: str) -> AlertRule:
        return self.registry.toggle_rule(rule_id)

    def list_rules(self, enabled_only: bool = False) -> List[AlertRule]:
        return self.registry.list_rules(enabled_only)

    # =========================================================
    # MANAGEMENT - ALERTS
    # =========================================================

    async def create_alert(self, title: str, message: str, **kwargs) -> Alert:
        return await self.engine.create_alert(title, message, **kwargs)

    async def acknowledge_alert(self, alert_id: str, by: str = "user", comment: Optional[str] = None) -> Alert:
        return await self.engine.acknowledge(alert_id, by, comment)

    async def resolve_alert(self, alert_id: str, by: str = "user", comment: Optional[str] = None) -> Alert:
        return await self.engine.resolve(alert_id, by, comment)

    # =========================================================
    # MANAGEMENT - SERVICES
    # =========================================================

    def add_service(self, service: Union[MonitoredService, Mapping[str, Any]]) -> MonitoredService:
        return self.poller.add_service(service)

    def remove_service(self, name: str) -> bool:
        return self.poller.remove_service(name)

    async def check_service(self, name: str) -> HealthCheckResult:
        return await self.poller.poll_one(name)

    # =========================================================
    # MANAGEMENT - METRICS
    # =========================================================

    async def record_metric(self, sample: Union[MetricSample, Mapping[str, Any]]) -> MetricSample:
        """Record a sample and push it to metrics subscribers."""
        if not isinstance(sample, MetricSample):
            sample = MetricSample.from_dict(sample)
        sample = self.aggregator.record(sample)
        await self.hub.publish_metric_update(sample)
        return sample

    def register_custom_metric(
        self,
        kind: Union[MetricKind, str],
        name: str,
        help: str = "",
        label_names: Sequence[str] = (),
    ) -> MetricHandle:
        return self.aggregator.register_custom(kind, name, help, label_names, MetricCategory.BUSINESS)

    # =========================================================
    # STATUS
    # =========================================================

    def get_status(self) -> Dict[str, Any]:
        """Runtime status for dashboards and logs."""
        snapshot = self.poller.snapshot()
        return {
            "service": self.config.service_name,
            "running": self.is_running,
            "started_at": to_iso8601(self._started_at),
            "health": {
                "status": snapshot.status.value,
                "health_percentage": snapshot.health_percentage,
                "total_services": snapshot.total_services,
            },
            "alerts": self.engine.get_status(),
            "notifications": self.dispatcher.get_stats(),
            "realtime": self.hub.get_stats(),
            "tasks": self.scheduler.status(),
        }


__all__ = [
    "MonitoringRuntime",
]
