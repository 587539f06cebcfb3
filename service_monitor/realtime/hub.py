"""
Realtime - Broadcast Hub.

============================================================
PURPOSE
============================================================
Pushes monitoring state to connected realtime clients.

- Clients subscribe to topics: metrics, health, alerts, all
- Periodic pushes: metrics_update, health_update, alerts_update
- Discrete events: alert:triggered, health:change, metrics:update
- Every message is an envelope {type, data, timestamp}

PRINCIPLES:
- A client that fails a send is disconnected; others are unaffected
- Clients idle past the inactivity threshold are closed

============================================================
"""

import asyncio
import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Protocol, Union

from core.clock import ClockProtocol, SystemClock, to_iso8601
from core.exceptions import NotFoundError, ValidationError
from ..models import (
    Alert,
    ClientSubscription,
    MetricSample,
    Topic,
    parse_enum,
)


logger = logging.getLogger(__name__)


# ============================================================
# MESSAGE TYPES
# ============================================================

INITIAL_DATA = "initial_data"
METRICS_UPDATE = "metrics_update"
HEALTH_UPDATE = "health_update"
ALERTS_UPDATE = "alerts_update"
ALERT_TRIGGERED = "alert:triggered"
HEALTH_CHANGE = "health:change"
METRIC_UPDATE = "metrics:update"

PERIODIC_TYPES = {
    Topic.METRICS: METRICS_UPDATE,
    Topic.HEALTH: HEALTH_UPDATE,
    Topic.ALERTS: ALERTS_UPDATE,
}

DataProvider = Callable[[], Dict[str, Any]]


class RealtimeClient(Protocol):
    """A connected push client."""

    client_id: str

    async def send_json(self, payload: Dict[str, Any]) -> None:
        ...

    async def close(self) -> None:
        ...


# ============================================================
# BROADCAST HUB
# ============================================================

class BroadcastHub:
    """
    Topic-based fan-out to realtime clients.

    ============================================================
    THREAD SAFETY
    ============================================================

    Subscription state is guarded by a lock; sends happen
    outside it.

    ============================================================
    """

    def __init__(
        self,
        clock: Optional[ClockProtocol] = None,
        inactivity_timeout: float = 300.0,
        metrics_provider: Optional[DataProvider] = None,
        health_provider: Optional[DataProvider] = None,
        alerts_provider: Optional[DataProvider] = None,
    ):
        """
        Initialize hub.

        Args:
            clock: Clock for activity tracking and envelope timestamps
            inactivity_timeout: Seconds of silence before a client is closed
            metrics_provider: Builds metrics_update data
            health_provider: Builds health_update data
            alerts_provider: Builds alerts_update data
        """
        self._clock = clock or SystemClock()
        self._inactivity_timeout = inactivity_timeout
        self._providers: Dict[Topic, Optional[DataProvider]] = {
            Topic.METRICS: metrics_provider,
            Topic.HEALTH: health_provider,
            Topic.ALERTS: alerts_provider,
        }
        self._clients: Dict[str, RealtimeClient] = {}
        self._subscriptions: Dict[str, ClientSubscription] = {}
        self._lock = threading.Lock()
        self._messages_sent = 0
        self._send_failures = 0

    def set_provider(self, topic: Union[Topic, str], provider: DataProvider) -> None:
        topic = parse_enum(Topic, topic, "topic")
        if topic not in PERIODIC_TYPES:
            raise ValidationError(f"No periodic update for topic {topic.value}", field="topic")
        self._providers[topic] = provider

    # =========================================================
    # CONNECTIONS
    # =========================================================

    async def on_connect(self, client: RealtimeClient) -> ClientSubscription:
        """Register a client and push the initial data."""
        now = self._clock.now()
        subscription = ClientSubscription(client_id=client.client_id, connected_at=now, last_activity=now)

        with self._lock:
            self._clients[client.client_id] = client
            self._subscriptions[client.client_id] = subscription
            count = len(self._clients)

        logger.info(f"Realtime client connected: {client.client_id} ({count} connected)")

        await self._send(client, self.envelope(INITIAL_DATA, {
            "metrics": self._provide(Topic.METRICS),
            "health": self._provide(Topic.HEALTH),
            "alerts": self._provide(Topic.ALERTS),
        }))
        return subscription

    async def on_disconnect(self, client_id: str) -> bool:
        """Forget a client. False if it was not connected."""
        with self._lock:
            client = self._clients.pop(client_id, None)
            self._subscriptions.pop(client_id, None)
            count = len(self._clients)

        if client is None:
            return False

        logger.info(f"Realtime client disconnected: {client_id} ({count} connected)")
        return True

    async def _drop(self, client_id: str, reason: str) -> None:
        """Disconnect and close a client."""
        with self._lock:
            client = self._clients.get(client_id)
        if client is None:
            return

        await self.on_disconnect(client_id)
        logger.warning(f"Dropping realtime client {client_id}: {reason}")
        try:
            await client.close()
        except Exception as e:
            logger.debug(f"Error closing client {client_id}: {e}")

    # =========================================================
    # SUBSCRIPTIONS
    # =========================================================

    def subscribe(self, client_id: str, topic: Union[Topic, str]) -> ClientSubscription:
        """Add a topic to a client's subscriptions."""
        topic = parse_enum(Topic, topic, "topic")
        with self._lock:
            subscription = self._get_or_raise(client_id)
            subscription.topics.add(topic)
            subscription.last_activity = self._clock.now()
        logger.debug(f"Client {client_id} subscribed to {topic.value}")
        return subscription

    def unsubscribe(self, client_id: str, topic: Optional[Union[Topic, str]] = None) -> ClientSubscription:
        """Remove one topic, or every topic when topic is None."""
        if topic is not None:
            topic = parse_enum(Topic, topic, "topic")
        with self._lock:
            subscription = self._get_or_raise(client_id)
            if topic is None:
                subscription.topics.clear()
            else:
                subscription.topics.discard(topic)
            subscription.last_activity = self._clock.now()
        return subscription

    def touch(self, client_id: str) -> None:
        """Record client activity (e.g. a ping)."""
        with self._lock:
            self._get_or_raise(client_id).last_activity = self._clock.now()

    def get_subscription(self, client_id: str) -> Optional[ClientSubscription]:
        with self._lock:
            return self._subscriptions.get(client_id)

    def _get_or_raise(self, client_id: str) -> ClientSubscription:
        subscription = self._subscriptions.get(client_id)
        if subscription is None:
            raise NotFoundError("client", client_id)
        return subscription

    # =========================================================
    # BROADCASTING
    # =========================================================

    def envelope(self, message_type: str, data: Any) -> Dict[str, Any]:
        """Wrap data in the push envelope."""
        return {
            "type": message_type,
            "data": data,
            "timestamp": to_iso8601(self._clock.now()),
        }

    async def broadcast(self, topic: Union[Topic, str]) -> int:
        """
        Push the periodic update of a topic to its subscribers.

        Returns the number of clients reached.
        """
        topic = parse_enum(Topic, topic, "topic")
        if topic not in PERIODIC_TYPES:
            raise ValidationError(f"No periodic update for topic {topic.value}", field="topic")

        if not self._subscribers(topic):
            return 0

        return await self._publish(topic, self.envelope(PERIODIC_TYPES[topic], self._provide(topic)))

    async def publish_alert(self, alert: Alert) -> int:
        """Push a newly triggered alert."""
        return await self._publish(Topic.ALERTS, self.envelope(ALERT_TRIGGERED, alert.to_dict()))

    async def publish_health_change(self, service_name: str, healthy: bool, *_) -> int:
        """Push a service health flip."""
        return await self._publish(Topic.HEALTH, self.envelope(HEALTH_CHANGE, {
            "service": service_name,
            "healthy": healthy,
            "status": "healthy" if healthy else "unhealthy",
        }))

    async def publish_metric_update(self, sample: MetricSample) -> int:
        """Push a recorded metric sample."""
        return await self._publish(Topic.METRICS, self.envelope(METRIC_UPDATE, sample.to_dict()))

    async def _publish(self, topic: Topic, envelope: Dict[str, Any]) -> int:
        clients = self._subscribers(topic)
        if not clients:
            return 0

        results = await asyncio.gather(*(self._send(client, envelope) for client in clients))
        delivered = sum(1 for ok in results if ok)
        logger.debug(f"Broadcast {envelope['type']} to {delivered}/{len(clients)} client(s)")
        return delivered

    async def _send(self, client: RealtimeClient, envelope: Dict[str, Any]) -> bool:
        try:
            await client.send_json(envelope)
            self._messages_sent += 1
            return True
        except Exception as e:
            self._send_failures += 1
            await self._drop(client.client_id, f"send failed: {e}")
            return False

    def _subscribers(self, topic: Topic) -> List[RealtimeClient]:
        with self._lock:
            return [
                self._clients[cid]
                for cid, sub in self._subscriptions.items()
                if sub.wants(topic) and cid in self._clients
            ]

    def _provide(self, topic: Topic) -> Dict[str, Any]:
        provider = self._providers.get(topic)
        if provider is None:
            return {}
        try:
            return provider()
        except Exception as e:
            logger.error(f"Error building {topic.value} update: {e}")
            return {}

    # =========================================================
    # MAINTENANCE
    # =========================================================

    async def cleanup_inactive(self) -> List[str]:
        """Close and forget clients idle beyond the inactivity threshold."""
        with self._lock:
            stale = [
                cid for cid, sub in self._subscriptions.items()
                if self._clock.seconds_since(sub.last_activity) > self._inactivity_timeout
            ]

        for client_id in stale:
            await self._drop(client_id, "inactive")

        if stale:
            logger.info(f"Cleaned up {len(stale)} inactive client(s)")
        return stale

    async def close_all(self) -> None:
        """Close every client, used on shutdown."""
        with self._lock:
            client_ids = list(self._clients)
        for client_id in client_ids:
            await self._drop(client_id, "shutdown")

    def get_stats(self) -> Dict[str, Any]:
        """Client count and per-topic subscription counts."""
        with self._lock:
            subscriptions = list(self._subscriptions.values())
        return {
            "connected_clients": len(subscriptions),
            "subscriptions": {
                topic.value: sum(1 for s in subscriptions if topic in s.topics)
                for topic in Topic
            },
            "messages_sent": self._messages_sent,
            "send_failures": self._send_failures,
            "clients": [s.to_dict() for s in subscriptions],
        }


__all__ = [
    "INITIAL_DATA",
    "METRICS_UPDATE",
    "HEALTH_UPDATE",
    "ALERTS_UPDATE",
    "ALERT_TRIGGERED",
    "HEALTH_CHANGE",
    "METRIC_UPDATE",
    "RealtimeClient",
    "BroadcastHub",
]
