"""
Notification Channels.

============================================================
PURPOSE
============================================================
Deliver alerts to external endpoints.

- WebhookChannel: JSON alert payload, configurable method/headers
- ChatWebhookChannel: chat attachment with severity colour
- EmailChannel: plain text mail over SMTP

PRINCIPLES:
- One attempt per delivery, no retries
- Every delivery is bounded by the channel timeout
- Failures raise NotificationError; the dispatcher records them

============================================================
"""

import asyncio
import logging
import smtplib
from abc import ABC, abstractmethod
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, Optional

import aiohttp

from core.clock import ClockProtocol, SystemClock, to_iso8601
from core.exceptions import NotificationError
from ..models import Alert, AlertSeverity, ChannelType, NotificationChannelConfig


logger = logging.getLogger(__name__)


# ============================================================
# BASE CHANNEL
# ============================================================

class NotificationChannel(ABC):
    """Base class for notification channels."""

    def __init__(
        self,
        config: NotificationChannelConfig,
        session: Optional[aiohttp.ClientSession] = None,
        clock: Optional[ClockProtocol] = None,
        service_name: str = "metrics-service",
    ):
        """Initialize channel."""
        self.config = config
        self._session = session
        self._owns_session = session is None
        self._clock = clock or SystemClock()
        self._service_name = service_name

    @property
    def id(self) -> str:
        return self.config.id

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    @abstractmethod
    def build_payload(self, alert: Alert) -> Any:
        """Render the alert for this channel."""
        pass

    @abstractmethod
    async def deliver(self, alert: Alert) -> Optional[int]:
        """
        Send one alert.

        Returns the response status code where the transport has one.

        Raises:
            NotificationError: delivery failed
        """
        pass

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the session if this channel created it."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
            self._session = None


# ============================================================
# WEBHOOK
# ============================================================

class WebhookChannel(NotificationChannel):
    """Generic JSON webhook."""

    def build_payload(self, alert: Alert) -> Dict[str, Any]:
        return {
            "alert": {
                "id": alert.id,
                "title": alert.title,
                "message": alert.message,
                "severity": alert.severity.value,
                "status": alert.status.value,
                "source": alert.source.value,
                "createdAt": to_iso8601(alert.created_at),
                "data": alert.data,
            },
            "service": self._service_name,
            "timestamp": to_iso8601(self._clock.now()),
        }

    async def deliver(self, alert: Alert) -> Optional[int]:
        return await self._post_json(self.config.method, self.build_payload(alert), self.config.headers)

    async def _post_json(self, method: str, payload: Any, headers: Dict[str, str]) -> int:
        try:
            session = await self._get_session()
            timeout = aiohttp.ClientTimeout(total=self.config.timeout)
            async with session.request(
                method,
                self.config.url,
                json=payload,
                headers=headers,
                timeout=timeout,
            ) as response:
                if response.status >= 400:
                    body = await response.text()
                    raise NotificationError(
                        f"{self.config.type.value} {self.id} returned {response.status}: {body[:200]}",
                        channel_id=self.id,
                        status_code=response.status,
                    )
                return response.status
        except NotificationError:
            raise
        except asyncio.TimeoutError as e:
            raise NotificationError(
                f"{self.config.type.value} {self.id} timed out after {self.config.timeout}s",
                channel_id=self.id,
                cause=e,
            )
        except aiohttp.ClientError as e:
            raise NotificationError(
                f"{self.config.type.value} {self.id} failed: {e}",
                channel_id=self.id,
                cause=e,
            )


# ============================================================
# CHAT WEBHOOK
# ============================================================

class ChatWebhookChannel(WebhookChannel):
    """Chat incoming-webhook with a coloured attachment."""

    SEVERITY_COLORS = {
        AlertSeverity.CRITICAL: "#ff0000",
        AlertSeverity.HIGH: "#ff6600",
        AlertSeverity.MEDIUM: "#ffaa00",
        AlertSeverity.LOW: "#0066cc",
    }

    def build_payload(self, alert: Alert) -> Dict[str, Any]:
        created = to_iso8601(alert.created_at)
        return {
            "text": f"Alert: {alert.title}",
            "attachments": [{
                "color": self.SEVERITY_COLORS.get(alert.severity, "#666666"),
                "title": alert.title,
                "text": alert.message,
                "fields": [
                    {"title": "Severity", "value": alert.severity.value, "short": True},
                    {"title": "Status", "value": alert.status.value, "short": True},
                    {"title": "Source", "value": alert.source.value, "short": True},
                    {"title": "Time", "value": created, "short": True},
                ],
                "footer": "Metrics Service",
                "ts": int(alert.created_at.timestamp()),
            }],
        }

    async def deliver(self, alert: Alert) -> Optional[int]:
        return await self._post_json("POST", self.build_payload(alert), self.config.headers)


# ============================================================
# EMAIL
# ============================================================

class EmailChannel(NotificationChannel):
    """
    SMTP mail.

    smtplib is blocking, so the send runs in a worker thread with
    the channel timeout applied to the socket.
    """

    def build_payload(self, alert: Alert) -> MIMEMultipart:
        msg = MIMEMultipart()
        msg["From"] = self.config.sender or f"{self._service_name}@localhost"
        msg["To"] = ", ".join(self.config.recipients)
        msg["Subject"] = f"[{alert.severity.value.upper()}] {alert.title}"

        lines = [
            alert.message,
            "",
            f"Severity: {alert.severity.value}",
            f"Status: {alert.status.value}",
            f"Source: {alert.source.value}",
            f"Created: {to_iso8601(alert.created_at)}",
            f"Alert ID: {alert.id}",
        ]
        for key, value in alert.data.items():
            lines.append(f"{key}: {value}")

        msg.attach(MIMEText("\n".join(lines), "plain"))
        return msg

    async def deliver(self, alert: Alert) -> Optional[int]:
        msg = self.build_payload(alert)
        try:
            await asyncio.to_thread(self._send, msg)
        except (smtplib.SMTPException, OSError) as e:
            raise NotificationError(f"email {self.id} failed: {e}", channel_id=self.id, cause=e)
        return None

    def _send(self, msg: MIMEMultipart) -> None:
        server = smtplib.SMTP(self.config.smtp_server, self.config.smtp_port, timeout=self.config.timeout)
        try:
            if self.config.use_tls:
                server.starttls()
            if self.config.smtp_username and self.config.smtp_password:
                server.login(self.config.smtp_username, self.config.smtp_password)
            server.send_message(msg)
        finally:
            server.quit()


# ============================================================
# FACTORY
# ============================================================

_CHANNEL_CLASSES = {
    ChannelType.WEBHOOK: WebhookChannel,
    ChannelType.CHAT_WEBHOOK: ChatWebhookChannel,
    ChannelType.EMAIL: EmailChannel,
}


def create_channel(
    config: NotificationChannelConfig,
    session: Optional[aiohttp.ClientSession] = None,
    clock: Optional[ClockProtocol] = None,
    service_name: str = "metrics-service",
) -> NotificationChannel:
    """Build the channel adapter for a config."""
    return _CHANNEL_CLASSES[config.type](config, session=session, clock=clock, service_name=service_name)


__all__ = [
    "NotificationChannel",
    "WebhookChannel",
    "ChatWebhookChannel",
    "EmailChannel",
    "create_channel",
]
