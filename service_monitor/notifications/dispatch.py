"""
Notification Dispatch.

============================================================
PURPOSE
============================================================
Fan an alert out to its channels, best effort.

PRINCIPLES:
- send() never raises; every attempt yields an outcome
- Channels are contacted concurrently and independently
- No retries
- Outcomes are logged, counted and kept in a bounded history

============================================================
"""

import asyncio
import logging
from collections import deque
from typing import Any, Deque, Dict, Iterable, List, Mapping, Optional, Union

import aiohttp

from core.clock import ClockProtocol, SystemClock
from core.exceptions import NotFoundError, NotificationError
from ..metrics.aggregator import MetricsAggregator
from ..models import (
    Alert,
    AlertSeverity,
    AlertSource,
    MetricKind,
    NotificationChannelConfig,
    NotificationOutcome,
    new_id,
)
from .channels import NotificationChannel, create_channel


logger = logging.getLogger(__name__)


class NotificationDispatcher:
    """
    Owns the configured channels and delivers alerts to them.
    """

    def __init__(
        self,
        channels: Optional[Iterable[Union[NotificationChannelConfig, NotificationChannel]]] = None,
        aggregator: Optional[MetricsAggregator] = None,
        clock: Optional[ClockProtocol] = None,
        session: Optional[aiohttp.ClientSession] = None,
        service_name: str = "metrics-service",
        history_size: int = 500,
    ):
        """
        Initialize dispatcher.

        Args:
            channels: Channel configs or ready-made channel adapters
            aggregator: Receives notifications_total
            clock: Clock for outcome timestamps
            session: Shared HTTP session for webhook channels
            service_name: Reported in webhook payloads
            history_size: Number of outcomes retained
        """
        self._aggregator = aggregator
        self._clock = clock or SystemClock()
        self._session = session
        self._service_name = service_name
        self._channels: Dict[str, NotificationChannel] = {}
        self._history: Deque[NotificationOutcome] = deque(maxlen=history_size)

        if aggregator is not None:
            aggregator.define(MetricKind.COUNTER, "notifications_total",
                              "Total notification attempts", ["channel", "outcome"])

        for channel in channels or []:
            self.add_channel(channel)

    # =========================================================
    # CHANNELS
    # =========================================================

    def add_channel(
        self,
        channel: Union[NotificationChannelConfig, NotificationChannel, Mapping[str, Any]],
    ) -> NotificationChannel:
        """Add or replace a channel."""
        if isinstance(channel, Mapping):
            channel = NotificationChannelConfig.from_dict(channel)
        if isinstance(channel, NotificationChannelConfig):
            channel = create_channel(channel, self._session, self._clock, self._service_name)

        self._channels[channel.id] = channel
        logger.info(f"Notification channel registered: {channel.id} ({channel.config.type.value})")
        return channel

    def remove_channel(self, channel_id: str) -> bool:
        return self._channels.pop(channel_id, None) is not None

    def get_channel(self, channel_id: str) -> Optional[NotificationChannel]:
        return self._channels.get(channel_id)

    def list_channels(self) -> List[NotificationChannel]:
        return list(self._channels.values())

    # =========================================================
    # DELIVERY
    # =========================================================

    async def send(self, channel_id: str, alert: Alert) -> NotificationOutcome:
        """
        Deliver one alert to one channel.

        Never raises.
        """
        channel = self._channels.get(channel_id)
        status_code = None
        error = None

        try:
            if channel is None:
                raise NotificationError(f"Unknown notification channel: {channel_id}", channel_id=channel_id)
            if not channel.enabled:
                raise NotificationError(f"Notification channel disabled: {channel_id}", channel_id=channel_id)
            status_code = await channel.deliver(alert)
        except NotificationError as e:
            error = e.message
            status_code = e.status_code
        except Exception as e:
            error = f"{type(e).__name__}: {e}"

        outcome = NotificationOutcome(
            channel_id=channel_id,
            alert_id=alert.id,
            success=error is None,
            sent_at=self._clock.now(),
            error=error,
            status_code=status_code,
        )
        self._record(outcome)
        return outcome

    async def dispatch(self, alert: Alert, channel_ids: Iterable[str]) -> List[NotificationOutcome]:
        """Deliver an alert to several channels concurrently."""
        channel_ids = list(dict.fromkeys(channel_ids))
        if not channel_ids:
            return []
        return list(await asyncio.gather(*(self.send(cid, alert) for cid in channel_ids)))

    async def test_channel(self, channel_id: str) -> NotificationOutcome:
        """Send a synthetic alert through one channel."""
        if channel_id not in self._channels:
            raise NotFoundError("channel", channel_id)

        now = self._clock.now()
        alert = Alert(
            id=new_id("test"),
            fingerprint=f"test|channel={channel_id}",
            severity=AlertSeverity.LOW,
            title="Test notification",
            message=f"Test notification from {self._service_name}",
            created_at=now,
            source=AlertSource.MANUAL,
            data={"test": True},
        )
        return await self.send(channel_id, alert)

    def _record(self, outcome: NotificationOutcome) -> None:
        self._history.append(outcome)

        if outcome.success:
            logger.info(f"Notification sent for alert {outcome.alert_id} via {outcome.channel_id}")
        else:
            logger.error(
                f"Notification failed for alert {outcome.alert_id} via {outcome.channel_id}: {outcome.error}"
            )

        if self._aggregator is not None:
            self._aggregator.increment(
                "notifications_total",
                1,
                {"channel": outcome.channel_id, "outcome": "success" if outcome.success else "failure"},
            )

    # =========================================================
    # QUERIES
    # =========================================================

    def recent_outcomes(self, limit: int = 50) -> List[NotificationOutcome]:
        """Most recent outcomes, newest first."""
        return list(self._history)[-limit:][::-1]

    def get_stats(self) -> Dict[str, Any]:
        sent = sum(1 for o in self._history if o.success)
        return {
            "channels": len(self._channels),
            "enabled_channels": sum(1 for c in self._channels.values() if c.enabled),
            "recent_sent": sent,
            "recent_failed": len(self._history) - sent,
        }

    async def close(self) -> None:
        """Close channel sessions."""
        for channel in self._channels.values():
            await channel.close()


__all__ = [
    "NotificationDispatcher",
]
