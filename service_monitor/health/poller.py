"""
Health - Poller.

============================================================
PURPOSE
============================================================
Probes the health endpoint of every monitored service and
keeps the latest result per service.

PRINCIPLES:
- Probes run concurrently; a slow or failing service never
  fails or delays its siblings beyond its own timeout
- Network errors are recorded as unhealthy results, never raised
- A result for a service removed mid-cycle is discarded

============================================================
CLASSIFICATION
============================================================
- healthy:            status 200-399
- http_error:         status >= 400 (status recorded)
- connection_refused: nothing listening
- timeout:            no response within the service timeout
- unknown:            anything else

============================================================
"""

import asyncio
import errno
import inspect
import logging
import threading
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import aiohttp

from core.clock import ClockProtocol, SystemClock, to_iso8601
from core.exceptions import NotFoundError, ProbeError
from ..metrics.aggregator import MetricsAggregator
from ..models import (
    HealthCheckResult,
    HealthStatus,
    MetricCategory,
    MetricKind,
    MonitoredService,
    ProbeErrorKind,
    SystemHealthSnapshot,
)
from ..registry import SERVICE_ADDED, SERVICE_REMOVED, MonitorRegistry


logger = logging.getLogger(__name__)


USER_AGENT = "metrics-service-health-checker"

RESPONSE_TIME_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)

# (service_name, healthy, result)
HealthChangeCallback = Callable[[str, bool, HealthCheckResult], Union[None, Awaitable[None]]]


class HealthPoller:
    """
    Concurrent health prober over the registry's services.

    ============================================================
    USAGE
    ============================================================

    poller = HealthPoller(registry, aggregator)
    snapshot = await poller.poll_all()
    print(snapshot.status, snapshot.health_percentage)

    ============================================================
    """

    def __init__(
        self,
        registry: MonitorRegistry,
        aggregator: Optional[MetricsAggregator] = None,
        clock: Optional[ClockProtocol] = None,
        session: Optional[aiohttp.ClientSession] = None,
        count_pending_as_unhealthy: bool = True,
    ):
        """
        Initialize poller.

        Args:
            registry: Source of monitored services
            aggregator: Receives service_up / response time metrics
            clock: Clock for result timestamps
            session: Shared HTTP session (created lazily if None)
            count_pending_as_unhealthy: Count services without a result
                as unhealthy in snapshots
        """
        self._registry = registry
        self._aggregator = aggregator
        self._clock = clock or SystemClock()
        self._session = session
        self._owns_session = session is None
        self._count_pending = count_pending_as_unhealthy

        self._results: Dict[str, HealthCheckResult] = {}
        self._generations: Dict[str, int] = {}
        self._check_counts: Dict[str, int] = {}
        self._lock = threading.Lock()
        self._callbacks: List[HealthChangeCallback] = []

        registry.add_service_listener(self._on_registry_event)

        if aggregator is not None:
            aggregator.define(MetricKind.GAUGE, "service_up",
                              "Whether the monitored service is up (1) or down (0)", ["service"])
            aggregator.define(MetricKind.HISTOGRAM, "service_response_time_seconds",
                              "Health check response time in seconds", ["service"],
                              buckets=RESPONSE_TIME_BUCKETS)
            aggregator.define(MetricKind.COUNTER, "health_checks_total",
                              "Total number of health checks", ["outcome", "service"])

    # =========================================================
    # SERVICE MANAGEMENT
    # =========================================================

    def add_service(self, service: Union[MonitoredService, Dict[str, Any]]) -> MonitoredService:
        """Add or replace a monitored service."""
        return self._registry.add_service(service)

    def remove_service(self, name: str) -> bool:
        """Remove a monitored service and its latest result."""
        return self._registry.remove_service(name)

    def _on_registry_event(self, event: str, service: MonitoredService) -> None:
        with self._lock:
            self._generations[service.name] = self._generations.get(service.name, 0) + 1
            if event == SERVICE_REMOVED:
                self._results.pop(service.name, None)
                self._check_counts.pop(service.name, None)

        if event == SERVICE_REMOVED and self._aggregator is not None:
            labels = {"service": service.name}
            self._aggregator.remove_series("service_up", labels)
            self._aggregator.remove_series("service_response_time_seconds", labels)
            self._aggregator.remove_matching("health_checks_total", labels)

    def on_health_change(self, callback: HealthChangeCallback) -> None:
        """Register a callback for healthy/unhealthy flips."""
        self._callbacks.append(callback)

    # =========================================================
    # POLLING
    # =========================================================

    async def poll_all(self) -> SystemHealthSnapshot:
        """Probe every service concurrently and return the new snapshot."""
        services = self._registry.list_services()

        if services:
            outcomes = await asyncio.gather(
                *(self._check(service) for service in services),
                return_exceptions=True,
            )
            for service, outcome in zip(services, outcomes):
                if isinstance(outcome, BaseException) and not isinstance(outcome, asyncio.CancelledError):
                    logger.error(f"Health check for {service.name} failed unexpectedly: {outcome}")

        snapshot = self.snapshot()
        logger.debug(
            f"Health poll complete: {snapshot.healthy_services}/{snapshot.total_services} healthy "
            f"({snapshot.status.value})"
        )
        return snapshot

    async def poll_one(self, name: str) -> HealthCheckResult:
        """Probe a single service."""
        service = self._registry.get_service(name)
        if service is None:
            raise NotFoundError("service", name)
        return await self._check(service)

    async def _check(self, service: MonitoredService) -> HealthCheckResult:
        with self._lock:
            generation = self._generations.get(service.name, 0)

        result = await self._probe(service)

        with self._lock:
            if self._generations.get(service.name, 0) != generation:
                logger.debug(f"Discarding stale health result for {service.name}")
                return result
            previous = self._results.get(service.name)
            self._results[service.name] = result
            self._check_counts[service.name] = self._check_counts.get(service.name, 0) + 1

        self._publish_metrics(result)

        if result.healthy:
            logger.debug(f"Health check passed: {service.name} ({result.response_time_ms:.1f}ms)")
        else:
            logger.warning(f"Health check failed: {service.name} - {result.error}")

        if previous is not None and previous.healthy != result.healthy:
            await self._emit_change(result)

        return result

    async def _probe(self, service: MonitoredService) -> HealthCheckResult:
        """Run one probe. Never raises."""
        url = service.url
        headers = {"User-Agent": USER_AGENT, "X-Service-Name": service.name}
        started = time.perf_counter()
        status_code = None
        details = None

        try:
            session = await self._get_session()
            timeout = aiohttp.ClientTimeout(total=service.timeout)
            async with session.get(url, headers=headers, timeout=timeout) as response:
                status_code = response.status
                details = await self._read_details(response)
                elapsed_ms = (time.perf_counter() - started) * 1000

                if not 200 <= status_code < 400:
                    raise ProbeError(
                        f"HTTP {status_code}",
                        kind=ProbeError.HTTP_ERROR,
                        service_name=service.name,
                        status_code=status_code,
                    )

            return HealthCheckResult(
                service_name=service.name,
                healthy=True,
                response_time_ms=elapsed_ms,
                timestamp=self._clock.now(),
                status_code=status_code,
                url=url,
                details=details,
            )

        except ProbeError as e:
            return self._failure(service, e, started, details)
        except asyncio.TimeoutError as e:
            error = ProbeError(
                f"Timed out after {service.timeout}s",
                kind=ProbeError.TIMEOUT,
                service_name=service.name,
                cause=e,
            )
            return self._failure(service, error, started)
        except aiohttp.ClientConnectorError as e:
            kind = ProbeError.CONNECTION_REFUSED if _is_refused(e) else ProbeError.UNKNOWN
            error = ProbeError(str(e), kind=kind, service_name=service.name, cause=e)
            return self._failure(service, error, started)
        except (aiohttp.ClientError, OSError, ValueError) as e:
            error = ProbeError(str(e) or type(e).__name__, kind=ProbeError.UNKNOWN, service_name=service.name, cause=e)
            return self._failure(service, error, started)

    def _failure(
        self,
        service: MonitoredService,
        error: ProbeError,
        started: float,
        details: Any = None,
    ) -> HealthCheckResult:
        elapsed_ms = (time.perf_counter() - started) * 1000
        return HealthCheckResult(
            service_name=service.name,
            healthy=False,
            response_time_ms=elapsed_ms,
            timestamp=self._clock.now(),
            status_code=error.status_code,
            error_kind=ProbeErrorKind(error.kind),
            error=error.message,
            url=service.url,
            details=details,
        )

    @staticmethod
    async def _read_details(response: aiohttp.ClientResponse) -> Any:
        """Optional JSON body of the health endpoint."""
        if response.content_type != "application/json":
            return None
        try:
            return await response.json()
        except (aiohttp.ContentTypeError, ValueError):
            return None

    def _publish_metrics(self, result: HealthCheckResult) -> None:
        if self._aggregator is None:
            return
        labels = {"service": result.service_name}
        outcome = "success" if result.healthy else result.error_kind.value

        self._aggregator.set_gauge("service_up", 1.0 if result.healthy else 0.0, labels)
        self._aggregator.increment("health_checks_total", 1, {"service": result.service_name, "outcome": outcome})
        if result.response_time_ms is not None:
            self._aggregator.observe("service_response_time_seconds", result.response_time_ms / 1000.0, labels)

    async def _emit_change(self, result: HealthCheckResult) -> None:
        logger.info(
            f"Service {result.service_name} is now {'healthy' if result.healthy else 'unhealthy'}"
        )
        for callback in self._callbacks:
            try:
                outcome = callback(result.service_name, result.healthy, result)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.error(f"Health change callback error: {e}")

    # =========================================================
    # QUERIES
    # =========================================================

    def get_result(self, name: str) -> Optional[HealthCheckResult]:
        """Latest result for a service."""
        with self._lock:
            return self._results.get(name)

    def get_results(self) -> Dict[str, HealthCheckResult]:
        """Latest result per service."""
        with self._lock:
            return dict(self._results)

    def snapshot(self) -> SystemHealthSnapshot:
        """
        Aggregate the latest results.

        healthy if nothing is unhealthy (an empty registry is
        healthy), critical if nothing is healthy, degraded otherwise.
        """
        services = self._registry.list_services()
        with self._lock:
            results = {s.name: self._results[s.name] for s in services if s.name in self._results}

        pending = len(services) - len(results)
        healthy = sum(1 for r in results.values() if r.healthy)
        total = len(services) if self._count_pending else len(results)
        unhealthy = total - healthy

        if unhealthy == 0:
            status = HealthStatus.HEALTHY
        elif healthy == 0:
            status = HealthStatus.CRITICAL
        else:
            status = HealthStatus.DEGRADED

        if pending:
            logger.debug(f"{pending} service(s) have no health result yet")

        return SystemHealthSnapshot(
            status=status,
            total_services=total,
            healthy_services=healthy,
            unhealthy_services=unhealthy,
            health_percentage=round(healthy / total * 100, 2) if total else 100.0,
            services=results,
            timestamp=self._clock.now(),
        )

    def service_values(self) -> Dict[str, float]:
        """service_up value per service with a result."""
        with self._lock:
            return {name: 1.0 if r.healthy else 0.0 for name, r in self._results.items()}

    def get_statistics(self) -> Dict[str, Any]:
        """Response time and success statistics over the latest results."""
        with self._lock:
            results = list(self._results.values())
            total_checks = sum(self._check_counts.values())

        if not results:
            return {
                "average_response_time_ms": 0.0,
                "min_response_time_ms": 0.0,
                "max_response_time_ms": 0.0,
                "success_rate": 0.0,
                "services_checked": 0,
                "total_checks": total_checks,
                "last_check_time": None,
            }

        healthy = [r for r in results if r.healthy]
        times = [r.response_time_ms for r in healthy if r.response_time_ms is not None]

        return {
            "average_response_time_ms": sum(times) / len(times) if times else 0.0,
            "min_response_time_ms": min(times) if times else 0.0,
            "max_response_time_ms": max(times) if times else 0.0,
            "success_rate": len(healthy) / len(results) * 100,
            "services_checked": len(results),
            "total_checks": total_checks,
            "last_check_time": to_iso8601(max(r.timestamp for r in results)),
        }

    # =========================================================
    # SESSION
    # =========================================================

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the session if this poller created it."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
            self._session = None


def _is_refused(error: aiohttp.ClientConnectorError) -> bool:
    os_error = getattr(error, "os_error", None)
    if isinstance(os_error, ConnectionRefusedError):
        return True
    if getattr(os_error, "errno", None) == errno.ECONNREFUSED:
        return True
    return "refused" in str(error).lower()


__all__ = [
    "USER_AGENT",
    "HealthPoller",
    "HealthChangeCallback",
]
