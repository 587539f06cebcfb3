"""
Metrics - Collectors.

============================================================
PURPOSE
============================================================
Feed the MetricsAggregator with the monitor's own metrics.

- SystemMetricsCollector: host CPU, memory and disk via psutil,
  sampled on the metric sample tick
- ApplicationMetricsCollector: HTTP traffic of the monitor's own
  server and its open realtime connections

PRINCIPLES:
- Collectors only read the host and write to the aggregator
- A failing collection is logged, never raised to the scheduler

============================================================
"""

import asyncio
import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime
from typing import Any, Deque, Dict, Optional, Sequence, Tuple

import psutil

from core.clock import ClockProtocol, SystemClock
from ..models import MetricCategory, MetricKind
from .aggregator import MetricsAggregator


logger = logging.getLogger(__name__)


# ============================================================
# BASE COLLECTOR
# ============================================================

class BaseCollector(ABC):
    """Base class for metric collectors."""

    def __init__(self, name: str, aggregator: MetricsAggregator, clock: Optional[ClockProtocol] = None):
        """Initialize collector."""
        self._name = name
        self._aggregator = aggregator
        self._clock = clock or SystemClock()
        self._last_collection_time: Optional[datetime] = None
        self._collection_count = 0
        self._error_count = 0

    @property
    def name(self) -> str:
        """Collector name."""
        return self._name

    @abstractmethod
    async def collect(self) -> Any:
        """Collect and record one round of metrics."""
        pass

    async def safe_collect(self) -> Any:
        """
        Safely collect data with error handling.

        Never throws, returns None on error.
        """
        try:
            self._last_collection_time = self._clock.now()
            self._collection_count += 1
            return await self.collect()
        except Exception as e:
            self._error_count += 1
            logger.error(f"Collector {self._name} error: {e}")
            return None

    def get_stats(self) -> Dict[str, Any]:
        return {
            "name": self._name,
            "collections": self._collection_count,
            "errors": self._error_count,
            "last_collection": self._last_collection_time.isoformat() if self._last_collection_time else None,
        }


# ============================================================
# SYSTEM METRICS COLLECTOR
# ============================================================

class SystemMetricsCollector(BaseCollector):
    """
    Host metrics via psutil.

    cpu_percent is read without an interval, so it reports usage
    since the previous tick. The first reading after start is 0.
    """

    def __init__(
        self,
        aggregator: MetricsAggregator,
        clock: Optional[ClockProtocol] = None,
        mountpoints: Sequence[str] = ("/",),
    ):
        """Initialize system metrics collector."""
        super().__init__("system", aggregator, clock)
        self._mountpoints = tuple(mountpoints)

        aggregator.define(MetricKind.GAUGE, "system_cpu_usage_percent",
                          "CPU usage percentage", category=MetricCategory.SYSTEM)
        aggregator.define(MetricKind.GAUGE, "system_memory_usage_percent",
                          "Memory usage percentage", category=MetricCategory.SYSTEM)
        aggregator.define(MetricKind.GAUGE, "system_memory_usage_bytes",
                          "Memory usage in bytes", ["type"], category=MetricCategory.SYSTEM)
        aggregator.define(MetricKind.GAUGE, "system_disk_usage_percent",
                          "Disk usage percentage", ["mountpoint"], category=MetricCategory.SYSTEM)
        aggregator.define(MetricKind.GAUGE, "system_load_average",
                          "System load average", ["period"], category=MetricCategory.SYSTEM)

    async def collect(self) -> Dict[str, float]:
        """Sample the host and record gauges."""
        readings = await asyncio.to_thread(self._read)

        for name, labels, value in readings:
            self._aggregator.set_gauge(name, value, labels, category=MetricCategory.SYSTEM)

        return {name: value for name, labels, value in readings if not labels}

    def _read(self) -> list:
        readings = []

        readings.append(("system_cpu_usage_percent", None, psutil.cpu_percent(interval=None)))

        memory = psutil.virtual_memory()
        readings.append(("system_memory_usage_percent", None, memory.percent))
        readings.append(("system_memory_usage_bytes", {"type": "used"}, float(memory.used)))
        readings.append(("system_memory_usage_bytes", {"type": "free"}, float(memory.available)))
        readings.append(("system_memory_usage_bytes", {"type": "total"}, float(memory.total)))

        for mountpoint in self._mountpoints:
            try:
                disk = psutil.disk_usage(mountpoint)
            except OSError as e:
                logger.warning(f"Disk usage unavailable for {mountpoint}: {e}")
                continue
            readings.append(("system_disk_usage_percent", {"mountpoint": mountpoint}, disk.percent))

        try:
            load1, load5, load15 = psutil.getloadavg()
            readings.append(("system_load_average", {"period": "1m"}, load1))
            readings.append(("system_load_average", {"period": "5m"}, load5))
            readings.append(("system_load_average", {"period": "15m"}, load15))
        except (AttributeError, OSError):
            pass

        return readings


# ============================================================
# APPLICATION METRICS COLLECTOR
# ============================================================

class ApplicationMetricsCollector(BaseCollector):
    """
    HTTP and connection metrics of the monitor process itself.

    http_error_rate is the percentage of requests with status
    >= 400 within the trailing error_rate_window seconds.
    """

    def __init__(
        self,
        aggregator: MetricsAggregator,
        clock: Optional[ClockProtocol] = None,
        service_name: str = "metrics-service",
        error_rate_window: float = 300.0,
    ):
        """Initialize application metrics collector."""
        super().__init__("application", aggregator, clock)
        self._service_name = service_name
        self._window = error_rate_window
        self._outcomes: Deque[Tuple[float, bool]] = deque()
        self._connections: Dict[str, int] = {}
        self._lock = threading.Lock()
        self._started = self._clock.monotonic()

        request_labels = ["method", "route", "status_code"]
        aggregator.define(MetricKind.COUNTER, "http_requests_total",
                          "Total number of HTTP requests", request_labels)
        aggregator.define(MetricKind.HISTOGRAM, "http_request_duration_seconds",
                          "Duration of HTTP requests in seconds", request_labels)
        aggregator.define(MetricKind.COUNTER, "http_errors_total",
                          "Total number of HTTP error responses", request_labels)
        aggregator.define(MetricKind.GAUGE, "http_error_rate",
                          "Percentage of HTTP requests that failed in the trailing window")
        aggregator.define(MetricKind.GAUGE, "active_connections",
                          "Number of active connections", ["type"])
        aggregator.define(MetricKind.GAUGE, "process_uptime_seconds",
                          "Seconds since the monitor started")

    def record_request(self, method: str, route: str, status_code: int, duration_seconds: float) -> None:
        """Record one served HTTP request."""
        labels = {"method": method.upper(), "route": route, "status_code": str(status_code)}
        is_error = status_code >= 400

        self._aggregator.increment("http_requests_total", 1, labels)
        self._aggregator.observe("http_request_duration_seconds", max(duration_seconds, 0.0), labels)
        if is_error:
            self._aggregator.increment("http_errors_total", 1, labels)

        with self._lock:
            self._outcomes.append((self._clock.monotonic(), is_error))
        self._update_error_rate()

    def connection_opened(self, kind: str = "websocket") -> None:
        with self._lock:
            self._connections[kind] = self._connections.get(kind, 0) + 1
            count = self._connections[kind]
        self._aggregator.set_gauge("active_connections", count, {"type": kind})

    def connection_closed(self, kind: str = "websocket") -> None:
        with self._lock:
            self._connections[kind] = max(self._connections.get(kind, 0) - 1, 0)
            count = self._connections[kind]
        self._aggregator.set_gauge("active_connections", count, {"type": kind})

    @property
    def uptime_seconds(self) -> float:
        return self._clock.monotonic() - self._started

    def error_rate(self) -> Optional[float]:
        """Error percentage over the trailing window, None without traffic."""
        cutoff = self._clock.monotonic() - self._window
        with self._lock:
            while self._outcomes and self._outcomes[0][0] < cutoff:
                self._outcomes.popleft()
            if not self._outcomes:
                return None
            errors = sum(1 for _, is_error in self._outcomes if is_error)
            return errors / len(self._outcomes) * 100.0

    async def collect(self) -> Dict[str, Any]:
        """Refresh derived gauges."""
        rate = self._update_error_rate()
        uptime = self.uptime_seconds
        self._aggregator.set_gauge("process_uptime_seconds", uptime)
        return {"http_error_rate": rate, "process_uptime_seconds": uptime}

    def _update_error_rate(self) -> float:
        rate = self.error_rate()
        if rate is None:
            rate = 0.0
        self._aggregator.set_gauge("http_error_rate", rate)
        return rate


__all__ = [
    "BaseCollector",
    "SystemMetricsCollector",
    "ApplicationMetricsCollector",
]
