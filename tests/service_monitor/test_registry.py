"""
Tests for the Data Model, Registry and Configuration.

============================================================
PURPOSE
============================================================
Verify that definitions are validated on the way in and
that the registry is the single source of services and rules.

TEST PRINCIPLES:
- Malformed definitions raise ValidationError
- Unknown ids raise NotFoundError
- Rule statistics survive updates

============================================================
"""

import pytest
from datetime import datetime, timezone
from unittest.mock import MagicMock

from core.clock import MockClock
from core.exceptions import ConfigurationError, NotFoundError, ValidationError
from service_monitor.config import DEFAULT_RULES, MonitorConfig, default_rules, parse_services
from service_monitor.models import (
    AlertRule,
    AlertSeverity,
    ClientSubscription,
    MetricSample,
    MonitoredService,
    NotificationChannelConfig,
    Operator,
    Topic,
    label_key,
    to_number,
)
from service_monitor.registry import SERVICE_ADDED, SERVICE_REMOVED, MonitorRegistry


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def clock():
    return MockClock(datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def registry(clock):
    return MonitorRegistry(clock)


def rule_data(**overrides):
    data = {
        "id": "cpu_high",
        "name": "CPU Usage High",
        "metric_name": "system_cpu_usage_percent",
        "condition": {"operator": ">", "threshold": 80},
        "severity": "high",
    }
    data.update(overrides)
    return data


# ============================================================
# MODEL TESTS
# ============================================================

class TestAlertRuleValidation:
    """Tests for AlertRule.from_dict."""

    def test_valid_rule(self):
        rule = AlertRule.from_dict(rule_data(silence_period=600, max_occurrences=3))

        assert rule.condition.operator == Operator.GT
        assert rule.condition.threshold == 80.0
        assert rule.severity == AlertSeverity.HIGH
        assert rule.silence_period == 600
        assert rule.max_occurrences == 3
        assert rule.enabled is True

    def test_aliases(self):
        """Test the metric and duration aliases."""
        rule = AlertRule.from_dict({
            "name": "Slow",
            "metric": "http_request_duration_seconds",
            "condition": {"operator": ">", "threshold": 1, "duration": 600},
        })
        assert rule.metric_name == "http_request_duration_seconds"
        assert rule.condition.sustained_duration == 600
        assert rule.id.startswith("rule_")

    @pytest.mark.parametrize("overrides,field", [
        ({"name": ""}, "name"),
        ({"metric_name": None}, "metric_name"),
        ({"condition": {"operator": "=>", "threshold": 1}}, "condition.operator"),
        ({"condition": {"operator": ">", "threshold": "high"}}, "condition.threshold"),
        ({"condition": {"operator": ">"}}, "condition"),
        ({"severity": "urgent"}, "severity"),
        ({"silence_period": -1}, "silence_period"),
        ({"max_occurrences": -2}, "max_occurrences"),
        ({"max_occurrences": 1.5}, "max_occurrences"),
        ({"notification_channels": "default"}, "notification_channels"),
    ])
    def test_malformed_rule(self, overrides, field):
        with pytest.raises(ValidationError) as exc_info:
            AlertRule.from_dict(rule_data(**overrides))
        assert exc_info.value.field == field

    def test_fingerprint_without_labels_is_rule_id(self):
        rule = AlertRule.from_dict(rule_data())
        assert rule.fingerprint({"service": "api"}) == "cpu_high"

    def test_fingerprint_uses_declared_labels_only(self):
        rule = AlertRule.from_dict(rule_data(id="svc", fingerprint_labels=["service"]))
        assert rule.fingerprint({"service": "api", "instance": "a"}) == "svc|service=api"
        assert rule.fingerprint({"service": "api", "instance": "b"}) == "svc|service=api"
        assert rule.fingerprint({"service": "db"}) != rule.fingerprint({"service": "api"})


class TestModelHelpers:
    """Tests for parsing helpers and small records."""

    def test_to_number(self):
        assert to_number(True, "v") == 1.0
        assert to_number("2.5", "v") == 2.5
        with pytest.raises(ValidationError):
            to_number("abc", "v")
        with pytest.raises(ValidationError):
            to_number(float("nan"), "v")

    def test_label_key_is_order_independent(self):
        assert label_key({"a": 1, "b": 2}) == label_key({"b": "2", "a": "1"})

    def test_service_url(self):
        service = MonitoredService("api", "http://localhost:8000/", health_path="health")
        assert service.url == "http://localhost:8000/health"

    def test_service_requires_http_url(self):
        with pytest.raises(ValidationError):
            MonitoredService.from_dict({"name": "api", "base_url": "localhost:8000"})

    def test_metric_sample_from_dict(self):
        sample = MetricSample.from_dict({"name": "orders_total", "value": "3", "kind": "counter"})
        assert sample.value == 3.0
        with pytest.raises(ValidationError):
            MetricSample.from_dict({"name": "orders_total"})

    def test_subscription_all_topic(self):
        now = datetime.now(timezone.utc)
        subscription = ClientSubscription("c1", now, now, topics={Topic.ALL})
        assert subscription.wants(Topic.METRICS)
        assert subscription.wants(Topic.ALERTS)

    def test_channel_config_validation(self):
        with pytest.raises(ValidationError):
            NotificationChannelConfig.from_dict({"id": "hook", "type": "webhook"})
        with pytest.raises(ValidationError):
            NotificationChannelConfig.from_dict({"id": "mail", "type": "email", "smtp_server": "smtp"})
        with pytest.raises(ValidationError):
            NotificationChannelConfig.from_dict({"id": "x", "type": "pager", "url": "http://x"})

        config = NotificationChannelConfig.from_dict({"id": "hook", "url": "http://x", "method": "put"})
        assert config.method == "PUT"


# ============================================================
# REGISTRY TESTS
# ============================================================

class TestRegistryServices:
    """Tests for service registration."""

    def test_add_and_list(self, registry):
        registry.add_service({"name": "api", "base_url": "http://localhost:8000"})
        assert registry.get_service("api").url == "http://localhost:8000/health"
        assert [s.name for s in registry.list_services()] == ["api"]

    def test_listeners_notified(self, registry):
        listener = MagicMock()
        registry.add_service_listener(listener)

        service = registry.add_service({"name": "api", "base_url": "http://localhost:8000"})
        assert registry.remove_service("api") is True
        assert registry.remove_service("api") is False

        assert listener.call_args_list[0].args == (SERVICE_ADDED, service)
        assert listener.call_args_list[1].args == (SERVICE_REMOVED, service)
        assert listener.call_count == 2

    def test_failing_listener_isolated(self, registry):
        registry.add_service_listener(MagicMock(side_effect=RuntimeError("listener bug")))
        registry.add_service({"name": "api", "base_url": "http://localhost:8000"})
        assert registry.get_service("api") is not None

    def test_update_service(self, registry):
        registry.add_service({"name": "api", "base_url": "http://localhost:8000"})
        updated = registry.update_service("api", timeout=2.0)
        assert updated.timeout == 2.0

        assert registry.update_service("api", name="api", health_path="/ready").health_path == "/ready"

        with pytest.raises(ValidationError) as exc_info:
            registry.update_service("api", name="other")
        assert exc_info.value.field == "name"
        assert registry.get_service("api").name == "api"
        with pytest.raises(NotFoundError):
            registry.update_service("missing", timeout=1.0)


class TestRegistryRules:
    """Tests for rule CRUD."""

    def test_create_sets_timestamps(self, registry, clock):
        rule = registry.create_rule(rule_data())
        assert rule.created_at == clock.now()
        assert registry.get_rule("cpu_high") is rule

    def test_duplicate_id_rejected(self, registry):
        registry.create_rule(rule_data())
        with pytest.raises(ValidationError):
            registry.create_rule(rule_data())

    def test_malformed_rule_leaves_registry_unchanged(self, registry):
        with pytest.raises(ValidationError):
            registry.create_rule(rule_data(condition={"operator": "~", "threshold": 1}))
        assert registry.list_rules() == []

    def test_update_preserves_id_and_stats(self, registry, clock):
        rule = registry.create_rule(rule_data())
        rule.trigger_count = 4
        clock.advance(60)

        updated = registry.update_rule("cpu_high", {
            "id": "renamed",
            "condition": {"threshold": 95},
            "trigger_count": 0,
        })

        assert updated.id == "cpu_high"
        assert updated.condition.threshold == 95
        assert updated.condition.operator == Operator.GT
        assert updated.trigger_count == 4
        assert updated.updated_at == clock.now()

    def test_update_validates(self, registry):
        registry.create_rule(rule_data())
        with pytest.raises(ValidationError):
            registry.update_rule("cpu_high", {"severity": "extreme"})
        assert registry.get_rule("cpu_high").severity == AlertSeverity.HIGH

    def test_unknown_rule_ids(self, registry):
        with pytest.raises(NotFoundError):
            registry.update_rule("missing", {"enabled": False})
        with pytest.raises(NotFoundError):
            registry.delete_rule("missing")
        with pytest.raises(NotFoundError):
            registry.toggle_rule("missing")

    def test_toggle_and_enabled_filter(self, registry):
        registry.create_rule(rule_data())
        registry.create_rule(rule_data(id="mem", metric_name="system_memory_usage_percent"))

        assert registry.toggle_rule("cpu_high").enabled is False
        assert [r.id for r in registry.list_rules(enabled_only=True)] == ["mem"]

        registry.enable_rule("cpu_high")
        registry.disable_rule("mem")
        assert [r.id for r in registry.list_rules(enabled_only=True)] == ["cpu_high"]

    def test_delete(self, registry):
        registry.create_rule(rule_data())
        registry.delete_rule("cpu_high")
        assert registry.get_rule("cpu_high") is None


# ============================================================
# CONFIGURATION TESTS
# ============================================================

class TestMonitorConfig:
    """Tests for MonitorConfig loading and validation."""

    def test_defaults_are_valid(self):
        assert MonitorConfig().validate() == []

    def test_default_rules(self):
        rules = default_rules(["default"])
        assert len(rules) == len(DEFAULT_RULES)
        by_id = {r.id: r for r in rules}
        assert by_id["service_down"].fingerprint_labels == ["service"]
        assert by_id["memory_critical"].severity == AlertSeverity.CRITICAL
        assert all(r.notification_channels == ["default"] for r in rules)

    def test_parse_services(self):
        services = parse_services("api=http://localhost:8000, db=http://localhost:5433")
        assert [s.name for s in services] == ["api", "db"]
        with pytest.raises(ConfigurationError):
            parse_services("api")

    def test_from_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("HEALTH_CHECK_INTERVAL", "10")
        monkeypatch.setenv("MONITORED_SERVICES", "api=http://localhost:8000")
        monkeypatch.setenv("WEBHOOK_URL", "http://hooks.local/alerts")
        monkeypatch.setenv("MONITOR_PORT", "9100")
        monkeypatch.delenv("SLACK_WEBHOOK_URL", raising=False)
        monkeypatch.delenv("ALERT_SMTP_SERVER", raising=False)

        config = MonitorConfig.from_env(str(tmp_path / "missing.env"))

        assert config.health_check_interval == 10.0
        assert config.port == 9100
        assert config.services[0].poll_interval == 10.0
        assert [c.id for c in config.channels] == ["default"]
        assert all(r.notification_channels == ["default"] for r in config.rules)
        assert config.validate() == []

    def test_from_env_notification_timeout(self, monkeypatch, tmp_path):
        monkeypatch.setenv("NOTIFICATION_TIMEOUT", "3")
        monkeypatch.setenv("WEBHOOK_URL", "http://hooks.local/alerts")
        monkeypatch.setenv("SLACK_WEBHOOK_URL", "http://chat.local/hook")
        monkeypatch.setenv("ALERT_SMTP_SERVER", "smtp.local")
        monkeypatch.setenv("ALERT_EMAIL_TO", "ops@example.com")

        config = MonitorConfig.from_env(str(tmp_path / "missing.env"))

        assert config.notification_timeout == 3.0
        assert [c.id for c in config.channels] == ["default", "slack", "email"]
        assert all(c.timeout == 3.0 for c in config.channels)

    def test_from_env_rejects_bad_number(self, monkeypatch, tmp_path):
        monkeypatch.setenv("SERVICE_TIMEOUT", "fast")
        with pytest.raises(ConfigurationError):
            MonitorConfig.from_env(str(tmp_path / "missing.env"))

    def test_from_yaml(self, tmp_path):
        path = tmp_path / "monitor.yaml"
        path.write_text(
            "port: 9200\n"
            "use_default_rules: false\n"
            "services:\n"
            "  - name: api\n"
            "    base_url: http://localhost:8000\n"
            "notification_timeout: 4\n"
            "channels:\n"
            "  - id: ops\n"
            "    type: chat_webhook\n"
            "    url: http://chat.local/hook\n"
            "  - id: pager\n"
            "    type: webhook\n"
            "    url: http://pager.local/hook\n"
            "    timeout: 1.5\n"
            "rules:\n"
            "  - id: api_down\n"
            "    name: API Down\n"
            "    metric_name: service_up\n"
            "    condition: {operator: '==', threshold: 0}\n"
            "    notification_channels: [ops]\n"
        )

        config = MonitorConfig.from_yaml(path)

        assert config.port == 9200
        assert [r.id for r in config.rules] == ["api_down"]
        assert config.channels[0].id == "ops"
        assert config.channels[0].timeout == 4.0
        assert config.channels[1].timeout == 1.5
        assert config.validate() == []

    def test_from_yaml_invalid_rule(self, tmp_path):
        path = tmp_path / "monitor.yaml"
        path.write_text("rules:\n  - name: broken\n")
        with pytest.raises(ConfigurationError):
            MonitorConfig.from_yaml(path)

    def test_validate_reports_problems(self):
        config = MonitorConfig(health_check_interval=0, port=70000, log_format="xml")
        config.rules = [AlertRule.from_dict(rule_data(notification_channels=["nowhere"]))]

        errors = config.validate()

        assert "health_check_interval must be > 0" in errors
        assert "port must be 1-65535" in errors
        assert any("unknown channel nowhere" in e for e in errors)
