"""
Tests for the Health Poller.

============================================================
PURPOSE
============================================================
Probe real local HTTP endpoints and verify classification,
aggregation and change notification.

TEST PRINCIPLES:
- A failing service never fails its siblings
- Probe errors become unhealthy results, never exceptions
- Results for removed services are discarded

============================================================
"""

import asyncio
import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

from aiohttp import web
from aiohttp.test_utils import TestServer, unused_port

from core.clock import MockClock
from core.exceptions import NotFoundError
from service_monitor.health.poller import USER_AGENT, HealthPoller
from service_monitor.metrics.aggregator import MetricsAggregator
from service_monitor.models import HealthStatus, MonitoredService, ProbeErrorKind
from service_monitor.registry import MonitorRegistry


# ============================================================
# HELPERS
# ============================================================

def build_app(state):
    """Health endpoints whose behaviour is driven by `state`."""

    async def ok(request):
        state.setdefault("headers", []).append(dict(request.headers))
        return web.json_response({"status": "ok", "version": "1.2.3"})

    async def fail(request):
        return web.Response(status=503, text="unavailable")

    async def flappy(request):
        return web.Response(status=200 if state.get("up", True) else 500)

    async def slow(request):
        await asyncio.sleep(state.get("delay", 0.5))
        return web.Response(text="late")

    async def gated(request):
        state["entered"].set()
        await state["release"].wait()
        return web.Response(text="ok")

    app = web.Application()
    app.router.add_get("/ok", ok)
    app.router.add_get("/fail", fail)
    app.router.add_get("/flappy", flappy)
    app.router.add_get("/slow", slow)
    app.router.add_get("/gated", gated)
    return app


def base_url(server):
    return f"http://{server.host}:{server.port}"


@pytest.fixture
def clock():
    return MockClock(datetime(2024, 1, 1, tzinfo=timezone.utc))


@pytest.fixture
def registry(clock):
    return MonitorRegistry(clock)


@pytest.fixture
def aggregator(clock):
    return MetricsAggregator(clock)


# ============================================================
# CLASSIFICATION TESTS
# ============================================================

class TestProbeClassification:
    """Tests for probe outcome classification."""

    @pytest.mark.asyncio
    async def test_healthy_probe(self, registry, aggregator, clock):
        state = {}
        async with TestServer(build_app(state)) as server:
            poller = HealthPoller(registry, aggregator, clock)
            try:
                poller.add_service(MonitoredService("api", base_url(server), "/ok"))
                result = await poller.poll_one("api")
            finally:
                await poller.close()

        assert result.healthy is True
        assert result.status_code == 200
        assert result.error_kind is None
        assert result.response_time_ms >= 0
        assert result.timestamp == clock.now()
        assert result.details == {"status": "ok", "version": "1.2.3"}
        assert state["headers"][0]["User-Agent"] == USER_AGENT
        assert state["headers"][0]["X-Service-Name"] == "api"
        assert aggregator.get_value("service_up", {"service": "api"}) == 1.0
        assert aggregator.get_value("health_checks_total", {"service": "api", "outcome": "success"}) == 1.0

    @pytest.mark.asyncio
    async def test_http_error(self, registry, aggregator, clock):
        async with TestServer(build_app({})) as server:
            poller = HealthPoller(registry, aggregator, clock)
            try:
                poller.add_service(MonitoredService("api", base_url(server), "/fail"))
                result = await poller.poll_one("api")
            finally:
                await poller.close()

        assert result.healthy is False
        assert result.error_kind == ProbeErrorKind.HTTP_ERROR
        assert result.status_code == 503
        assert aggregator.get_value("service_up", {"service": "api"}) == 0.0

    @pytest.mark.asyncio
    async def test_connection_refused(self, registry, clock):
        port = unused_port()
        poller = HealthPoller(registry, clock=clock)
        try:
            poller.add_service(MonitoredService("db", f"http://127.0.0.1:{port}"))
            result = await poller.poll_one("db")
        finally:
            await poller.close()

        assert result.healthy is False
        assert result.error_kind == ProbeErrorKind.CONNECTION_REFUSED
        assert result.status_code is None

    @pytest.mark.asyncio
    async def test_timeout(self, registry, clock):
        async with TestServer(build_app({"delay": 0.5})) as server:
            poller = HealthPoller(registry, clock=clock)
            try:
                poller.add_service(MonitoredService("slow", base_url(server), "/slow", timeout=0.1))
                result = await poller.poll_one("slow")
            finally:
                await poller.close()

        assert result.healthy is False
        assert result.error_kind == ProbeErrorKind.TIMEOUT

    @pytest.mark.asyncio
    async def test_poll_one_unknown_service(self, registry, clock):
        poller = HealthPoller(registry, clock=clock)
        with pytest.raises(NotFoundError):
            await poller.poll_one("missing")


# ============================================================
# AGGREGATION TESTS
# ============================================================

class TestSnapshot:
    """Tests for snapshot aggregation."""

    def test_empty_registry_is_healthy(self, registry, clock):
        snapshot = HealthPoller(registry, clock=clock).snapshot()

        assert snapshot.status == HealthStatus.HEALTHY
        assert snapshot.total_services == 0
        assert snapshot.health_percentage == 100.0

    def test_pending_services(self, registry, clock):
        registry.add_service(MonitoredService("api", "http://localhost:1"))

        counted = HealthPoller(registry, clock=clock, count_pending_as_unhealthy=True).snapshot()
        ignored = HealthPoller(registry, clock=clock, count_pending_as_unhealthy=False).snapshot()

        assert counted.status == HealthStatus.CRITICAL
        assert counted.total_services == 1
        assert ignored.status == HealthStatus.HEALTHY
        assert ignored.total_services == 0

    @pytest.mark.asyncio
    async def test_degraded_with_one_failure(self, registry, aggregator, clock):
        async with TestServer(build_app({})) as server:
            poller = HealthPoller(registry, aggregator, clock)
            try:
                for name in ("api", "auth", "search"):
                    poller.add_service(MonitoredService(name, base_url(server), "/ok"))
                poller.add_service(MonitoredService("billing", base_url(server), "/fail"))

                snapshot = await poller.poll_all()
            finally:
                await poller.close()

        assert snapshot.status == HealthStatus.DEGRADED
        assert snapshot.total_services == 4
        assert snapshot.healthy_services == 3
        assert snapshot.unhealthy_services == 1
        assert snapshot.health_percentage == 75.0
        assert snapshot.services["billing"].error_kind == ProbeErrorKind.HTTP_ERROR

        stats = poller.get_statistics()
        assert stats["services_checked"] == 4
        assert stats["success_rate"] == 75.0

    @pytest.mark.asyncio
    async def test_one_healthy_three_refused_is_degraded(self, registry, aggregator, clock):
        async with TestServer(build_app({})) as server:
            poller = HealthPoller(registry, aggregator, clock)
            try:
                poller.add_service(MonitoredService("api", base_url(server), "/ok"))
                for name in ("auth", "search", "billing"):
                    poller.add_service(MonitoredService(name, f"http://127.0.0.1:{unused_port()}"))

                snapshot = await poller.poll_all()
            finally:
                await poller.close()

        assert snapshot.status == HealthStatus.DEGRADED
        assert snapshot.total_services == 4
        assert snapshot.healthy_services == 1
        assert snapshot.unhealthy_services == 3
        assert snapshot.health_percentage == 25.0
        for name in ("auth", "search", "billing"):
            assert snapshot.services[name].error_kind == ProbeErrorKind.CONNECTION_REFUSED

    @pytest.mark.asyncio
    async def test_all_down_is_critical(self, registry, clock):
        poller = HealthPoller(registry, clock=clock)
        try:
            poller.add_service(MonitoredService("a", f"http://127.0.0.1:{unused_port()}"))
            poller.add_service(MonitoredService("b", f"http://127.0.0.1:{unused_port()}"))
            snapshot = await poller.poll_all()
        finally:
            await poller.close()

        assert snapshot.status == HealthStatus.CRITICAL
        assert snapshot.health_percentage == 0.0
        assert poller.service_values() == {"a": 0.0, "b": 0.0}


# ============================================================
# LIFECYCLE TESTS
# ============================================================

class TestPollerLifecycle:
    """Tests for service removal and change callbacks."""

    @pytest.mark.asyncio
    async def test_removed_mid_flight_result_discarded(self, registry, aggregator, clock):
        state = {"entered": asyncio.Event(), "release": asyncio.Event()}
        async with TestServer(build_app(state)) as server:
            poller = HealthPoller(registry, aggregator, clock)
            try:
                poller.add_service(MonitoredService("gated", base_url(server), "/gated"))
                probe = asyncio.create_task(poller.poll_one("gated"))

                await asyncio.wait_for(state["entered"].wait(), timeout=5)
                assert poller.remove_service("gated") is True
                state["release"].set()
                await probe
            finally:
                await poller.close()

        assert poller.get_result("gated") is None
        assert poller.snapshot().total_services == 0
        assert aggregator.get_value("service_up", {"service": "gated"}) is None

    @pytest.mark.asyncio
    async def test_removal_drops_latest_result(self, registry, aggregator, clock):
        async with TestServer(build_app({})) as server:
            poller = HealthPoller(registry, aggregator, clock)
            try:
                poller.add_service(MonitoredService("api", base_url(server), "/ok"))
                poller.add_service(MonitoredService("billing", base_url(server), "/fail"))
                await poller.poll_all()
                assert poller.get_result("api") is not None

                poller.remove_service("api")
            finally:
                await poller.close()

        assert poller.get_result("api") is None
        assert aggregator.get_value("service_up", {"service": "api"}) is None
        assert aggregator.get_series("service_response_time_seconds", {"service": "api"}) == []
        assert aggregator.get_series("health_checks_total", {"service": "api"}) == []
        assert aggregator.get_value("service_up", {"service": "billing"}) == 0.0
        assert len(aggregator.get_series("health_checks_total", {"service": "billing"})) == 1

    @pytest.mark.asyncio
    async def test_change_callbacks_fire_on_flip_only(self, registry, clock):
        state = {"up": True}
        sync_callback = MagicMock()
        async_callback = AsyncMock()

        async with TestServer(build_app(state)) as server:
            poller = HealthPoller(registry, clock=clock)
            poller.on_health_change(sync_callback)
            poller.on_health_change(async_callback)
            try:
                poller.add_service(MonitoredService("api", base_url(server), "/flappy"))

                await poller.poll_all()
                await poller.poll_all()
                sync_callback.assert_not_called()

                state["up"] = False
                await poller.poll_all()
                await poller.poll_all()

                state["up"] = True
                await poller.poll_all()
            finally:
                await poller.close()

        assert sync_callback.call_count == 2
        assert [c.args[1] for c in sync_callback.call_args_list] == [False, True]
        assert async_callback.await_count == 2
        assert async_callback.await_args_list[0].args[0] == "api"

    @pytest.mark.asyncio
    async def test_failing_callback_isolated(self, registry, clock):
        state = {"up": True}
        async with TestServer(build_app(state)) as server:
            poller = HealthPoller(registry, clock=clock)
            poller.on_health_change(MagicMock(side_effect=RuntimeError("callback bug")))
            try:
                poller.add_service(MonitoredService("api", base_url(server), "/flappy"))
                await poller.poll_all()
                state["up"] = False
                snapshot = await poller.poll_all()
            finally:
                await poller.close()

        assert snapshot.unhealthy_services == 1

    @pytest.mark.asyncio
    async def test_shared_session_not_closed(self, registry, clock):
        session = MagicMock()
        session.closed = False
        session.close = AsyncMock()

        poller = HealthPoller(registry, clock=clock, session=session)
        await poller.close()

        session.close.assert_not_called()
