"""
Tests for the Monitoring Runtime and CLI entry point.

============================================================
PURPOSE
============================================================
Verify component wiring, the management surface and the
start/stop lifecycle of the periodic tasks.

============================================================
"""

import asyncio
import logging
import pytest
from datetime import datetime, timezone

import app
from app import build_config, create_parser, main
from core.clock import MockClock
from core.exceptions import ConfigurationError
from service_monitor.config import MonitorConfig
from service_monitor.models import AlertRule
from service_monitor.realtime.hub import INITIAL_DATA, METRIC_UPDATE
from service_monitor.runtime import MonitoringRuntime


# ============================================================
# HELPERS
# ============================================================

class FakeClient:
    """In-memory realtime client."""

    def __init__(self, client_id):
        self.client_id = client_id
        self.sent = []
        self.closed = False

    async def send_json(self, payload):
        self.sent.append(payload)

    async def close(self):
        self.closed = True


@pytest.fixture
def clock():
    return MockClock(datetime(2024, 1, 1, tzinfo=timezone.utc))


@pytest.fixture
def runtime(clock):
    return MonitoringRuntime(MonitorConfig(), clock=clock)


# ============================================================
# CONSTRUCTION TESTS
# ============================================================

class TestRuntimeConstruction:
    """Tests for runtime wiring."""

    def test_invalid_config_rejected(self):
        with pytest.raises(ConfigurationError):
            MonitoringRuntime(MonitorConfig(health_check_interval=0))

    def test_configured_rules_loaded(self, clock):
        rule = AlertRule.from_dict({
            "id": "cpu_high",
            "name": "CPU Usage High",
            "metric_name": "system_cpu_usage_percent",
            "condition": {"operator": ">", "threshold": 80},
        })
        runtime = MonitoringRuntime(MonitorConfig(rules=[rule]), clock=clock)

        assert [r.id for r in runtime.list_rules()] == ["cpu_high"]

    def test_tasks_registered(self, runtime):
        assert set(runtime.get_status()["tasks"]) == {
            "health_poll",
            "metric_sample",
            "alert_evaluation",
            "broadcast_metrics",
            "broadcast_alerts",
            "broadcast_health",
            "client_cleanup",
        }

    def test_status(self, runtime):
        status = runtime.get_status()

        assert status["service"] == "metrics-service"
        assert status["running"] is False
        assert status["started_at"] is None
        assert status["health"]["status"] == "healthy"
        assert status["alerts"]["total_alerts"] == 0


# ============================================================
# MANAGEMENT TESTS
# ============================================================

class TestRuntimeManagement:
    """Tests for the management surface."""

    @pytest.mark.asyncio
    async def test_record_metric_pushed(self, runtime):
        client = FakeClient("c1")
        await runtime.hub.on_connect(client)
        runtime.hub.subscribe("c1", "metrics")

        sample = await runtime.record_metric({"name": "orders_total", "value": 2, "kind": "counter"})

        assert sample.name == "orders_total"
        assert runtime.aggregator.get_value("orders_total") == 2.0
        assert [m["type"] for m in client.sent] == [INITIAL_DATA, METRIC_UPDATE]

    @pytest.mark.asyncio
    async def test_rule_round_trip(self, runtime):
        runtime.create_rule({
            "id": "queue_deep",
            "name": "Queue Deep",
            "metric_name": "queue_depth",
            "condition": {"operator": ">", "threshold": 10},
            "silence_period": 900,
        })
        runtime.aggregator.set_gauge("queue_depth", 50)

        created = await runtime.engine.evaluate_all()

        assert [a.rule_id for a in created] == ["queue_deep"]
        assert runtime.toggle_rule("queue_deep").enabled is False
        runtime.delete_rule("queue_deep")
        assert runtime.list_rules() == []

    @pytest.mark.asyncio
    async def test_manual_alert_lifecycle(self, runtime):
        alert = await runtime.create_alert("Deploy", "Deploy started")

        acknowledged = await runtime.acknowledge_alert(alert.id, by="ops")
        resolved = await runtime.resolve_alert(alert.id)

        assert acknowledged.acknowledged_by == "ops"
        assert resolved.status.value == "resolved"

    def test_custom_metric(self, runtime):
        handle = runtime.register_custom_metric("counter", "signups_total", "Signups", ["plan"])
        handle.labels(plan="pro").inc()

        assert runtime.aggregator.get_value("signups_total", {"plan": "pro"}) == 1.0


# ============================================================
# LIFECYCLE TESTS
# ============================================================

class TestRuntimeLifecycle:
    """Tests for start and stop."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, clock):
        config = MonitorConfig(
            health_check_interval=0.05,
            metrics_sample_interval=0.05,
            alert_evaluation_interval=0.05,
            metrics_broadcast_interval=0.05,
            shutdown_timeout=1.0,
        )
        runtime = MonitoringRuntime(config, clock=clock)

        await runtime.start()
        assert runtime.is_running is True
        await asyncio.sleep(0.2)
        await runtime.stop()

        tasks = runtime.get_status()["tasks"]
        assert runtime.is_running is False
        assert tasks["health_poll"]["runs"] >= 1
        assert tasks["alert_evaluation"]["runs"] >= 1
        assert all(not t["running"] for t in tasks.values())


# ============================================================
# CLI TESTS
# ============================================================

class TestCli:
    """Tests for argument parsing and config building."""

    def test_overrides(self, tmp_path):
        config_file = tmp_path / "monitor.yaml"
        config_file.write_text("service_name: edge\nuse_default_rules: false\n")

        args = create_parser().parse_args([
            "--config", str(config_file),
            "--port", "9100",
            "--log-format", "json",
        ])
        config = build_config(args)

        assert config.service_name == "edge"
        assert config.port == 9100
        assert config.log_format == "json"
        assert config.rules == []

    @pytest.fixture
    def quiet_logging(self, monkeypatch):
        monkeypatch.setattr(app, "setup_logging", lambda *args, **kwargs: logging.getLogger("service_monitor"))

    def test_validate_only(self, tmp_path, quiet_logging):
        config_file = tmp_path / "monitor.yaml"
        config_file.write_text("service_name: edge\n")

        assert main(["--config", str(config_file), "--validate-config"]) == 0

    def test_invalid_config_exit_code(self, tmp_path, quiet_logging):
        config_file = tmp_path / "monitor.yaml"
        config_file.write_text("health_check_interval: -1\n")

        assert main(["--config", str(config_file), "--validate-config"]) == 2
