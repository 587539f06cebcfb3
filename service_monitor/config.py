"""
Service Monitor - Configuration.

============================================================
CONFIGURABLE RUNTIME
============================================================

All runtime parameters are configurable:
- Poll, sample, evaluation and broadcast intervals
- Probe and notification timeouts
- Client inactivity threshold
- Monitored services, alert rules, notification channels

Configuration can be loaded from:
- Default values
- Environment variables (.env supported)
- YAML config file

============================================================
"""

import os
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from core.exceptions import ConfigurationError, MonitoringError
from .models import AlertRule, MonitoredService, NotificationChannelConfig


logger = logging.getLogger(__name__)


# =============================================================
# DEFAULT ALERT RULES
# =============================================================


DEFAULT_RULES: List[Dict[str, Any]] = [
    {
        "id": "cpu_high",
        "name": "CPU Usage High",
        "description": "CPU usage is above 80%",
        "metric_name": "system_cpu_usage_percent",
        "condition": {"operator": ">", "threshold": 80, "sustained_duration": 300},
        "severity": "medium",
        "silence_period": 900,
    },
    {
        "id": "memory_critical",
        "name": "Memory Usage Critical",
        "description": "Memory usage is above 90%",
        "metric_name": "system_memory_usage_percent",
        "condition": {"operator": ">", "threshold": 90, "sustained_duration": 180},
        "severity": "critical",
        "silence_period": 600,
    },
    {
        "id": "service_down",
        "name": "Service Down",
        "description": "A monitored service is down",
        "metric_name": "service_up",
        "condition": {"operator": "==", "threshold": 0, "sustained_duration": 60},
        "severity": "critical",
        "silence_period": 600,
        "fingerprint_labels": ["service"],
    },
    {
        "id": "http_errors_high",
        "name": "HTTP Errors High",
        "description": "HTTP error rate is above 5%",
        "metric_name": "http_error_rate",
        "condition": {"operator": ">", "threshold": 5, "sustained_duration": 300},
        "severity": "medium",
        "silence_period": 900,
    },
    {
        "id": "response_time_slow",
        "name": "Response Time Slow",
        "description": "Average response time is above 1 second",
        "metric_name": "http_request_duration_seconds",
        "condition": {"operator": ">", "threshold": 1, "sustained_duration": 600},
        "severity": "medium",
        "silence_period": 900,
    },
]


def default_rules(channel_ids: Optional[List[str]] = None) -> List[AlertRule]:
    """Build the built-in rule set, notifying the given channels."""
    rules = []
    for data in DEFAULT_RULES:
        definition = dict(data)
        definition["notification_channels"] = list(channel_ids or [])
        rules.append(AlertRule.from_dict(definition))
    return rules


# =============================================================
# ENV HELPERS
# =============================================================


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number", config_key=name, actual_value=raw)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer", config_key=name, actual_value=raw)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def parse_services(raw: str) -> List[MonitoredService]:
    """
    Parse MONITORED_SERVICES.

    Format: name=url[,name=url]
    """
    services = []
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        if "=" not in entry:
            raise ConfigurationError(
                f"Invalid service entry {entry!r}, expected name=url",
                config_key="MONITORED_SERVICES",
                actual_value=entry,
            )
        name, url = entry.split("=", 1)
        services.append(MonitoredService(name=name.strip(), base_url=url.strip()))
    return services


# =============================================================
# MAIN CONFIGURATION
# =============================================================


@dataclass
class MonitorConfig:
    """
    Main configuration for the monitoring runtime.
    """
    # Identity
    service_name: str = "metrics-service"

    # Server
    host: str = "0.0.0.0"
    port: int = 8080

    # Health polling
    health_check_interval: float = 30.0
    service_timeout: float = 5.0
    count_pending_as_unhealthy: bool = True

    # Metrics
    metrics_sample_interval: float = 5.0
    summary_window: int = 1000

    # Alerting
    alert_evaluation_interval: float = 30.0
    alert_history_size: int = 1000
    use_default_rules: bool = True

    # Broadcast
    metrics_broadcast_interval: float = 5.0
    alerts_broadcast_interval: float = 10.0
    health_broadcast_interval: float = 30.0
    client_cleanup_interval: float = 120.0
    client_inactivity_timeout: float = 300.0

    # Notifications
    notification_timeout: float = 10.0
    notification_history_size: int = 500

    # Shutdown
    shutdown_timeout: float = 5.0

    # Logging
    log_level: str = "INFO"
    log_format: str = "text"

    services: List[MonitoredService] = field(default_factory=list)
    rules: List[AlertRule] = field(default_factory=list)
    channels: List[NotificationChannelConfig] = field(default_factory=list)

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "MonitorConfig":
        """
        Load configuration from environment variables.

        Environment variables:
        - HEALTH_CHECK_INTERVAL
        - SERVICE_TIMEOUT
        - ALERT_EVALUATION_INTERVAL
        - METRICS_SAMPLE_INTERVAL
        - CLIENT_INACTIVITY_TIMEOUT
        - NOTIFICATION_TIMEOUT (per-delivery bound of every channel)
        - MONITORED_SERVICES
        - WEBHOOK_URL, SLACK_WEBHOOK_URL
        - ALERT_SMTP_SERVER, ALERT_SMTP_PORT, ALERT_EMAIL_FROM,
          ALERT_EMAIL_TO, ALERT_EMAIL_USERNAME, ALERT_EMAIL_PASSWORD,
          ALERT_EMAIL_TLS
        - MONITOR_HOST, MONITOR_PORT
        - LOG_LEVEL, LOG_FORMAT
        """
        load_dotenv(env_file)

        config = cls()

        config.health_check_interval = _env_float("HEALTH_CHECK_INTERVAL", config.health_check_interval)
        config.service_timeout = _env_float("SERVICE_TIMEOUT", config.service_timeout)
        config.alert_evaluation_interval = _env_float(
            "ALERT_EVALUATION_INTERVAL", config.alert_evaluation_interval
        )
        config.metrics_sample_interval = _env_float(
            "METRICS_SAMPLE_INTERVAL", config.metrics_sample_interval
        )
        config.client_inactivity_timeout = _env_float(
            "CLIENT_INACTIVITY_TIMEOUT", config.client_inactivity_timeout
        )
        config.notification_timeout = _env_float("NOTIFICATION_TIMEOUT", config.notification_timeout)

        config.host = os.getenv("MONITOR_HOST", config.host)
        config.port = _env_int("MONITOR_PORT", config.port)
        config.log_level = os.getenv("LOG_LEVEL", config.log_level).upper()
        config.log_format = os.getenv("LOG_FORMAT", config.log_format).lower()

        if os.getenv("MONITORED_SERVICES"):
            config.services = parse_services(os.getenv("MONITORED_SERVICES"))
            for service in config.services:
                service.timeout = config.service_timeout
                service.poll_interval = config.health_check_interval

        # Channels
        if os.getenv("WEBHOOK_URL"):
            config.channels.append(NotificationChannelConfig.from_dict({
                "id": "default",
                "type": "webhook",
                "url": os.getenv("WEBHOOK_URL"),
                "timeout": config.notification_timeout,
            }))
        if os.getenv("SLACK_WEBHOOK_URL"):
            config.channels.append(NotificationChannelConfig.from_dict({
                "id": "slack",
                "type": "chat_webhook",
                "url": os.getenv("SLACK_WEBHOOK_URL"),
                "timeout": config.notification_timeout,
            }))
        if os.getenv("ALERT_SMTP_SERVER") and os.getenv("ALERT_EMAIL_TO"):
            config.channels.append(NotificationChannelConfig.from_dict({
                "id": "email",
                "type": "email",
                "smtp_server": os.getenv("ALERT_SMTP_SERVER"),
                "smtp_port": _env_int("ALERT_SMTP_PORT", 587),
                "sender": os.getenv("ALERT_EMAIL_FROM", "monitor@localhost"),
                "recipients": [r.strip() for r in os.getenv("ALERT_EMAIL_TO").split(",") if r.strip()],
                "smtp_username": os.getenv("ALERT_EMAIL_USERNAME"),
                "smtp_password": os.getenv("ALERT_EMAIL_PASSWORD"),
                "use_tls": _env_bool("ALERT_EMAIL_TLS", True),
                "timeout": config.notification_timeout,
            }))

        if config.use_default_rules:
            config.rules = default_rules([c.id for c in config.channels])

        return config

    @classmethod
    def from_yaml(cls, path: Path) -> "MonitorConfig":
        """
        Load configuration from YAML file.

        Unknown scalar keys are ignored. Malformed service, rule or
        channel entries raise ConfigurationError.
        """
        import yaml

        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Failed to load YAML config from {path}: {e}", cause=e)

        config = cls()

        for key, value in data.items():
            if key in ("services", "rules", "channels"):
                continue
            if hasattr(config, key):
                setattr(config, key, value)
            else:
                logger.warning(f"Ignoring unknown config key: {key}")

        try:
            config.services = [MonitoredService.from_dict(s) for s in data.get("services", [])]
            # Channels without their own timeout inherit notification_timeout
            config.channels = [
                NotificationChannelConfig.from_dict({"timeout": config.notification_timeout, **c})
                for c in data.get("channels", [])
            ]
            config.rules = [AlertRule.from_dict(r) for r in data.get("rules", [])]
        except MonitoringError as e:
            raise ConfigurationError(f"Invalid entry in {path}: {e.message}", cause=e)

        if config.use_default_rules:
            configured = {r.id for r in config.rules}
            channel_ids = [c.id for c in config.channels]
            config.rules.extend(r for r in default_rules(channel_ids) if r.id not in configured)

        return config

    def validate(self) -> List[str]:
        """Return a list of configuration problems (empty when valid)."""
        errors = []

        intervals = {
            "health_check_interval": self.health_check_interval,
            "service_timeout": self.service_timeout,
            "metrics_sample_interval": self.metrics_sample_interval,
            "alert_evaluation_interval": self.alert_evaluation_interval,
            "metrics_broadcast_interval": self.metrics_broadcast_interval,
            "alerts_broadcast_interval": self.alerts_broadcast_interval,
            "health_broadcast_interval": self.health_broadcast_interval,
            "client_cleanup_interval": self.client_cleanup_interval,
            "client_inactivity_timeout": self.client_inactivity_timeout,
            "notification_timeout": self.notification_timeout,
        }
        for name, value in intervals.items():
            if value <= 0:
                errors.append(f"{name} must be > 0")

        if not 0 < self.port < 65536:
            errors.append("port must be 1-65535")

        if self.log_format not in ("json", "text"):
            errors.append("log_format must be 'json' or 'text'")

        names = [s.name for s in self.services]
        if len(names) != len(set(names)):
            errors.append("service names must be unique")

        channel_ids = {c.id for c in self.channels}
        for rule in self.rules:
            for channel_id in rule.notification_channels:
                if channel_id not in channel_ids:
                    errors.append(f"rule {rule.id} references unknown channel {channel_id}")

        return errors

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "service_name": self.service_name,
            "host": self.host,
            "port": self.port,
            "health_check_interval": self.health_check_interval,
            "service_timeout": self.service_timeout,
            "metrics_sample_interval": self.metrics_sample_interval,
            "alert_evaluation_interval": self.alert_evaluation_interval,
            "client_inactivity_timeout": self.client_inactivity_timeout,
            "services": [s.to_dict() for s in self.services],
            "rules": [r.id for r in self.rules],
            "channels": [c.to_dict() for c in self.channels],
        }
