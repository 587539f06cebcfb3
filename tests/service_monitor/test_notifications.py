"""
Tests for Notification Channels and Dispatch.

============================================================
PURPOSE
============================================================
Deliver alerts to real local webhook endpoints and verify
payloads, failure outcomes and channel isolation.

TEST PRINCIPLES:
- send() never raises
- One failing channel never affects another
- Every attempt is counted

============================================================
"""

import asyncio
import smtplib
import pytest
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

from aiohttp import web
from aiohttp.test_utils import TestServer

from core.clock import MockClock
from core.exceptions import NotFoundError, NotificationError
from service_monitor.metrics.aggregator import MetricsAggregator
from service_monitor.models import (
    Alert,
    AlertSeverity,
    NotificationChannelConfig,
)
from service_monitor.notifications.channels import (
    ChatWebhookChannel,
    EmailChannel,
    WebhookChannel,
    create_channel,
)
from service_monitor.notifications.dispatch import NotificationDispatcher


# ============================================================
# HELPERS
# ============================================================

def build_receiver(received):
    """Webhook receiver recording every request."""

    async def hook(request):
        received.append({
            "method": request.method,
            "path": request.path,
            "headers": dict(request.headers),
            "json": await request.json(),
        })
        return web.json_response({"ok": True})

    async def broken(request):
        return web.Response(status=500, text="internal error")

    async def slow(request):
        await asyncio.sleep(0.5)
        return web.json_response({"ok": True})

    app = web.Application()
    app.router.add_route("*", "/hook", hook)
    app.router.add_post("/broken", broken)
    app.router.add_post("/slow", slow)
    return app


def url(server, path):
    return f"http://{server.host}:{server.port}{path}"


@pytest.fixture
def clock():
    return MockClock(datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def alert(clock):
    return Alert(
        id="alert_1",
        fingerprint="cpu_high",
        severity=AlertSeverity.CRITICAL,
        title="CPU Usage High",
        message="CPU usage is above 80%. Current value: 95",
        created_at=clock.now(),
        rule_id="cpu_high",
        data={"metric": "system_cpu_usage_percent", "currentValue": 95.0},
    )


# ============================================================
# CHANNEL TESTS
# ============================================================

class TestWebhookChannel:
    """Tests for the JSON webhook channel."""

    @pytest.mark.asyncio
    async def test_payload_delivered(self, alert, clock):
        received = []
        async with TestServer(build_receiver(received)) as server:
            config = NotificationChannelConfig.from_dict({
                "id": "default",
                "type": "webhook",
                "url": url(server, "/hook"),
                "method": "PUT",
                "headers": {"X-Token": "secret"},
            })
            channel = create_channel(config, clock=clock, service_name="metrics-service")
            try:
                status = await channel.deliver(alert)
            finally:
                await channel.close()

        assert isinstance(channel, WebhookChannel)
        assert status == 200
        assert received[0]["method"] == "PUT"
        assert received[0]["headers"]["X-Token"] == "secret"

        body = received[0]["json"]
        assert body["service"] == "metrics-service"
        assert body["timestamp"] == "2024-01-01T12:00:00+00:00"
        assert body["alert"]["id"] == "alert_1"
        assert body["alert"]["severity"] == "critical"
        assert body["alert"]["status"] == "active"
        assert body["alert"]["createdAt"] == "2024-01-01T12:00:00+00:00"
        assert body["alert"]["data"]["currentValue"] == 95.0

    @pytest.mark.asyncio
    async def test_http_error_raises_with_status(self, alert, clock):
        async with TestServer(build_receiver([])) as server:
            config = NotificationChannelConfig.from_dict({"id": "default", "url": url(server, "/broken")})
            channel = WebhookChannel(config, clock=clock)
            try:
                with pytest.raises(NotificationError) as exc_info:
                    await channel.deliver(alert)
            finally:
                await channel.close()

        assert exc_info.value.status_code == 500
        assert exc_info.value.channel_id == "default"

    @pytest.mark.asyncio
    async def test_timeout_raises(self, alert, clock):
        async with TestServer(build_receiver([])) as server:
            config = NotificationChannelConfig.from_dict({
                "id": "default",
                "url": url(server, "/slow"),
                "timeout": 0.1,
            })
            channel = WebhookChannel(config, clock=clock)
            try:
                with pytest.raises(NotificationError) as exc_info:
                    await channel.deliver(alert)
            finally:
                await channel.close()

        assert "timed out" in exc_info.value.message


class TestChatWebhookChannel:
    """Tests for the chat attachment channel."""

    def test_payload(self, alert, clock):
        config = NotificationChannelConfig.from_dict({
            "id": "slack", "type": "chat_webhook", "url": "http://chat.local/hook",
        })
        channel = create_channel(config, clock=clock)

        payload = channel.build_payload(alert)
        attachment = payload["attachments"][0]

        assert isinstance(channel, ChatWebhookChannel)
        assert payload["text"] == "Alert: CPU Usage High"
        assert attachment["color"] == "#ff0000"
        assert attachment["footer"] == "Metrics Service"
        assert attachment["ts"] == int(alert.created_at.timestamp())
        assert {"title": "Severity", "value": "critical", "short": True} in attachment["fields"]

    @pytest.mark.parametrize("severity,color", [
        (AlertSeverity.HIGH, "#ff6600"),
        (AlertSeverity.MEDIUM, "#ffaa00"),
        (AlertSeverity.LOW, "#0066cc"),
    ])
    def test_severity_colors(self, alert, clock, severity, color):
        config = NotificationChannelConfig.from_dict({
            "id": "slack", "type": "chat_webhook", "url": "http://chat.local/hook",
        })
        alert.severity = severity
        assert ChatWebhookChannel(config, clock=clock).build_payload(alert)["attachments"][0]["color"] == color


class TestEmailChannel:
    """Tests for the SMTP channel."""

    def make_config(self):
        return NotificationChannelConfig.from_dict({
            "id": "email",
            "type": "email",
            "smtp_server": "smtp.local",
            "smtp_port": 2525,
            "sender": "monitor@example.com",
            "recipients": ["ops@example.com", "dev@example.com"],
            "smtp_username": "monitor",
            "smtp_password": "pw",
        })

    def test_message(self, alert, clock):
        msg = EmailChannel(self.make_config(), clock=clock).build_payload(alert)

        assert msg["Subject"] == "[CRITICAL] CPU Usage High"
        assert msg["To"] == "ops@example.com, dev@example.com"
        assert msg["From"] == "monitor@example.com"

    @pytest.mark.asyncio
    async def test_deliver(self, alert, clock):
        with patch("service_monitor.notifications.channels.smtplib.SMTP") as smtp_cls:
            server = smtp_cls.return_value
            await EmailChannel(self.make_config(), clock=clock).deliver(alert)

        smtp_cls.assert_called_once_with("smtp.local", 2525, timeout=10.0)
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("monitor", "pw")
        server.send_message.assert_called_once()
        server.quit.assert_called_once()

    @pytest.mark.asyncio
    async def test_smtp_failure(self, alert, clock):
        with patch("service_monitor.notifications.channels.smtplib.SMTP") as smtp_cls:
            smtp_cls.return_value.login.side_effect = smtplib.SMTPAuthenticationError(535, b"denied")
            with pytest.raises(NotificationError):
                await EmailChannel(self.make_config(), clock=clock).deliver(alert)
            smtp_cls.return_value.quit.assert_called_once()


# ============================================================
# DISPATCHER TESTS
# ============================================================

class TestNotificationDispatcher:
    """Tests for NotificationDispatcher."""

    @pytest.mark.asyncio
    async def test_failing_channel_isolated(self, alert, clock):
        received = []
        aggregator = MetricsAggregator(clock)
        async with TestServer(build_receiver(received)) as server:
            dispatcher = NotificationDispatcher(
                [
                    {"id": "good", "url": url(server, "/hook")},
                    {"id": "bad", "url": url(server, "/broken")},
                ],
                aggregator=aggregator,
                clock=clock,
            )
            try:
                outcomes = await dispatcher.dispatch(alert, ["good", "bad", "good"])
            finally:
                await dispatcher.close()

        by_channel = {o.channel_id: o for o in outcomes}
        assert len(outcomes) == 2
        assert by_channel["good"].success is True
        assert by_channel["bad"].success is False
        assert by_channel["bad"].status_code == 500
        assert len(received) == 1
        assert aggregator.get_value("notifications_total", {"channel": "good", "outcome": "success"}) == 1.0
        assert aggregator.get_value("notifications_total", {"channel": "bad", "outcome": "failure"}) == 1.0

    @pytest.mark.asyncio
    async def test_unknown_channel_outcome(self, alert, clock):
        dispatcher = NotificationDispatcher(clock=clock)

        outcome = await dispatcher.send("nowhere", alert)

        assert outcome.success is False
        assert "Unknown notification channel" in outcome.error
        assert dispatcher.recent_outcomes()[0] is outcome

    @pytest.mark.asyncio
    async def test_disabled_channel_outcome(self, alert, clock):
        dispatcher = NotificationDispatcher(
            [{"id": "off", "url": "http://127.0.0.1:1/hook", "enabled": False}],
            clock=clock,
        )

        outcome = await dispatcher.send("off", alert)

        assert outcome.success is False
        assert "disabled" in outcome.error
        assert dispatcher.get_stats() == {
            "channels": 1,
            "enabled_channels": 0,
            "recent_sent": 0,
            "recent_failed": 1,
        }

    @pytest.mark.asyncio
    async def test_unexpected_channel_error_recorded(self, alert, clock):
        channel = MagicMock()
        channel.id = "flaky"
        channel.enabled = True
        channel.config = NotificationChannelConfig.from_dict({"id": "flaky", "url": "http://x"})
        channel.deliver.side_effect = RuntimeError("boom")

        dispatcher = NotificationDispatcher([channel], clock=clock)
        outcome = await dispatcher.send("flaky", alert)

        assert outcome.success is False
        assert outcome.error == "RuntimeError: boom"

    @pytest.mark.asyncio
    async def test_test_channel(self, clock):
        received = []
        async with TestServer(build_receiver(received)) as server:
            dispatcher = NotificationDispatcher([{"id": "default", "url": url(server, "/hook")}], clock=clock)
            try:
                outcome = await dispatcher.test_channel("default")
                with pytest.raises(NotFoundError):
                    await dispatcher.test_channel("missing")
            finally:
                await dispatcher.close()

        assert outcome.success is True
        assert received[0]["json"]["alert"]["title"] == "Test notification"

    def test_channel_management(self, clock):
        dispatcher = NotificationDispatcher(clock=clock)
        dispatcher.add_channel({"id": "default", "url": "http://hooks.local"})

        assert [c.id for c in dispatcher.list_channels()] == ["default"]
        assert dispatcher.remove_channel("default") is True
        assert dispatcher.remove_channel("default") is False
        assert dispatcher.get_channel("default") is None
