"""
Realtime - HTTP Server.

============================================================
PURPOSE
============================================================
aiohttp application exposing the monitor's outer surfaces.

- GET /ws       realtime push channel (websocket)
- GET /metrics  Prometheus text exposition
- GET /health   liveness of the monitor itself

Client messages on /ws are JSON objects:
    {"action": "subscribe",   "topic": "metrics"}
    {"action": "unsubscribe", "topic": "alerts"}   (no topic = all)
    {"action": "ping"}

On-demand requests are answered to the asking client only:
    {"action": "request:metrics", "metric_type": "system"}   (default all)
    {"action": "request:health", "service": "api"}          (no service = system)
    {"action": "request:alerts", "filters": {"status": "active"}}
    {"action": "request:status"}

============================================================
"""

import json
import logging
import math
import time
import uuid
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Optional

from aiohttp import WSMsgType, web

from core.clock import to_iso8601
from core.exceptions import InvalidOperation, MonitoringError, ValidationError
from ..metrics.aggregator import MetricsAggregator
from ..metrics.collectors import ApplicationMetricsCollector
from ..metrics.exporter import CONTENT_TYPE_LATEST
from ..models import to_number
from .hub import BroadcastHub

if TYPE_CHECKING:
    from ..alerts.engine import AlertEngine
    from ..health.poller import HealthPoller


logger = logging.getLogger(__name__)


HUB_KEY = web.AppKey("hub", BroadcastHub)
AGGREGATOR_KEY = web.AppKey("aggregator", MetricsAggregator)

METRICS_RESPONSE = "metrics_response"
HEALTH_RESPONSE = "health_response"
ALERTS_RESPONSE = "alerts_response"
STATUS_RESPONSE = "status"

ALERT_FILTERS = ("status", "severity", "rule_id", "limit", "offset")


# ============================================================
# JSON ENCODER
# ============================================================

class MonitorEncoder(json.JSONEncoder):
    """JSON encoder for push payloads."""

    def default(self, obj):
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, Enum):
            return obj.value
        if isinstance(obj, set):
            return sorted(obj)
        if hasattr(obj, "to_dict"):
            return obj.to_dict()
        return super().default(obj)


def dumps(data: Any) -> str:
    return json.dumps(data, cls=MonitorEncoder)


def json_response(data: Any, status: int = 200) -> web.Response:
    """Create JSON response."""
    return web.Response(text=dumps(data), status=status, content_type="application/json")


# ============================================================
# WEBSOCKET CLIENT
# ============================================================

class WebSocketClient:
    """RealtimeClient over an aiohttp websocket."""

    def __init__(self, ws: web.WebSocketResponse, client_id: Optional[str] = None):
        self.client_id = client_id or f"ws_{uuid.uuid4().hex[:12]}"
        self._ws = ws

    async def send_json(self, payload: Dict[str, Any]) -> None:
        if self._ws.closed:
            raise ConnectionResetError("websocket closed")
        await self._ws.send_str(dumps(payload))

    async def close(self) -> None:
        if not self._ws.closed:
            await self._ws.close()


# ============================================================
# HANDLERS
# ============================================================

class MonitorServer:
    """Request handlers bound to the runtime components."""

    def __init__(
        self,
        hub: BroadcastHub,
        aggregator: MetricsAggregator,
        collector: Optional[ApplicationMetricsCollector] = None,
        poller: Optional["HealthPoller"] = None,
        engine: Optional["AlertEngine"] = None,
        heartbeat: float = 30.0,
    ):
        """Initialize handlers."""
        self._hub = hub
        self._aggregator = aggregator
        self._collector = collector
        self._poller = poller
        self._engine = engine
        self._heartbeat = heartbeat

    async def health(self, request: web.Request) -> web.Response:
        """
        GET /health

        Liveness of the monitor process.
        """
        return json_response({"status": "ok", "clients": self._hub.get_stats()["connected_clients"]})

    async def metrics(self, request: web.Request) -> web.Response:
        """
        GET /metrics

        Prometheus text exposition of every metric.
        """
        body = self._aggregator.export()
        response = web.Response(body=body.encode("utf-8"))
        response.headers["Content-Type"] = CONTENT_TYPE_LATEST
        return response

    async def websocket(self, request: web.Request) -> web.WebSocketResponse:
        """
        GET /ws

        Realtime push channel.
        """
        ws = web.WebSocketResponse(heartbeat=self._heartbeat)
        await ws.prepare(request)

        client = WebSocketClient(ws)
        if self._collector is not None:
            self._collector.connection_opened("websocket")

        try:
            await self._hub.on_connect(client)

            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    await self._handle_message(client, msg.data)
                elif msg.type == WSMsgType.ERROR:
                    logger.warning(f"Websocket {client.client_id} error: {ws.exception()}")
        finally:
            await self._hub.on_disconnect(client.client_id)
            if self._collector is not None:
                self._collector.connection_closed("websocket")

        return ws

    async def _handle_message(self, client: WebSocketClient, raw: str) -> None:
        try:
            message = json.loads(raw)
        except ValueError:
            await self._reply(client, "error", {"message": "Invalid JSON"})
            return

        if not isinstance(message, dict):
            await self._reply(client, "error", {"message": "Message must be a JSON object"})
            return

        action = message.get("action")
        topic = message.get("topic")

        try:
            if action == "subscribe":
                subscription = self._hub.subscribe(client.client_id, topic)
                await self._reply(client, "subscription_confirmed", {
                    "topic": topic,
                    "topics": sorted(t.value for t in subscription.topics),
                })
            elif action == "unsubscribe":
                subscription = self._hub.unsubscribe(client.client_id, topic)
                await self._reply(client, "unsubscription_confirmed", {
                    "topic": topic,
                    "topics": sorted(t.value for t in subscription.topics),
                })
            elif action == "ping":
                self._hub.touch(client.client_id)
                await self._reply(client, "pong", {})
            elif action == "request:metrics":
                await self._reply(client, METRICS_RESPONSE, self._metrics_data(message))
            elif action == "request:health":
                await self._reply(client, HEALTH_RESPONSE, await self._health_data(message))
            elif action == "request:alerts":
                await self._reply(client, ALERTS_RESPONSE, self._alerts_data(message))
            elif action == "request:status":
                await self._reply(client, STATUS_RESPONSE, self._status_data(client))
            else:
                await self._reply(client, "error", {"message": f"Unknown action: {action}"})
        except MonitoringError as e:
            logger.debug(f"Websocket {client.client_id} {action} failed: {e.message}")
            await self._reply(client, "error", {"action": action, "message": e.message})

    # =========================================================
    # ON-DEMAND REQUESTS
    # =========================================================

    def _metrics_data(self, message: Dict[str, Any]) -> Dict[str, Any]:
        """One category summary, or all of them."""
        metric_type = message.get("metric_type") or "all"
        if metric_type == "all":
            metrics = self._aggregator.get_complete_summary()
        else:
            metrics = self._aggregator.get_summary(metric_type)
        return {"metric_type": metric_type, "metrics": metrics}

    async def _health_data(self, message: Dict[str, Any]) -> Dict[str, Any]:
        """A fresh probe of one service, or the current system snapshot."""
        if self._poller is None:
            raise InvalidOperation("Health data is not available")

        service = message.get("service")
        if service:
            result = await self._poller.poll_one(service)
            return {"service": service, "health": result.to_dict()}
        return {"service": None, "health": self._poller.snapshot().to_dict()}

    def _alerts_data(self, message: Dict[str, Any]) -> Dict[str, Any]:
        """Alerts matching the request filters, newest first."""
        if self._engine is None:
            raise InvalidOperation("Alert data is not available")

        filters = message.get("filters") or {}
        if not isinstance(filters, dict):
            raise ValidationError("filters must be an object", field="filters")
        unknown = sorted(set(filters) - set(ALERT_FILTERS))
        if unknown:
            raise ValidationError(f"Unknown alert filters: {', '.join(unknown)}", field="filters")

        query = dict(filters)
        for key in ("limit", "offset"):
            if key in query:
                number = to_number(query[key], key)
                if math.isinf(number):
                    raise ValidationError(f"{key} must be finite", field=key)
                query[key] = int(number)

        alerts = self._engine.get_alerts(**query)
        return {
            "filters": filters,
            "alerts": [a.to_dict() for a in alerts],
            "count": len(alerts),
        }

    def _status_data(self, client: WebSocketClient) -> Dict[str, Any]:
        """Connection details of the asking client."""
        subscription = self._hub.get_subscription(client.client_id)
        return {
            "client_id": client.client_id,
            "connected_at": to_iso8601(subscription.connected_at) if subscription else None,
            "subscriptions": sorted(t.value for t in subscription.topics) if subscription else [],
            "connected_clients": self._hub.get_stats()["connected_clients"],
            "uptime_seconds": self._collector.uptime_seconds if self._collector else None,
        }

    async def _reply(self, client: WebSocketClient, message_type: str, data: Dict[str, Any]) -> None:
        try:
            await client.send_json(self._hub.envelope(message_type, data))
        except ConnectionError as e:
            logger.debug(f"Reply to {client.client_id} failed: {e}")


# ============================================================
# MIDDLEWARE
# ============================================================

def metrics_middleware(collector: ApplicationMetricsCollector):
    """Record request count, duration and errors of every HTTP request."""

    @web.middleware
    async def middleware(request: web.Request, handler):
        if request.path == "/ws":
            return await handler(request)

        started = time.perf_counter()
        status = 500
        try:
            response = await handler(request)
            status = response.status
            return response
        except web.HTTPException as e:
            status = e.status
            raise
        finally:
            resource = request.match_info.route.resource
            route = resource.canonical if resource is not None else "unmatched"
            collector.record_request(request.method, route, status, time.perf_counter() - started)

    return middleware


# ============================================================
# APPLICATION FACTORY
# ============================================================

def create_app(
    hub: BroadcastHub,
    aggregator: MetricsAggregator,
    collector: Optional[ApplicationMetricsCollector] = None,
    poller: Optional["HealthPoller"] = None,
    engine: Optional["AlertEngine"] = None,
) -> web.Application:
    """
    Create the monitor application.

    Returns an aiohttp Application with all routes configured.
    """
    server = MonitorServer(hub, aggregator, collector, poller, engine)

    middlewares = [metrics_middleware(collector)] if collector is not None else []
    app = web.Application(middlewares=middlewares)
    app[HUB_KEY] = hub
    app[AGGREGATOR_KEY] = aggregator

    app.router.add_get("/health", server.health)
    app.router.add_get("/metrics", server.metrics)
    app.router.add_get("/ws", server.websocket)

    return app


__all__ = [
    "HUB_KEY",
    "AGGREGATOR_KEY",
    "METRICS_RESPONSE",
    "HEALTH_RESPONSE",
    "ALERTS_RESPONSE",
    "STATUS_RESPONSE",
    "MonitorEncoder",
    "json_response",
    "WebSocketClient",
    "MonitorServer",
    "metrics_middleware",
    "create_app",
]
