"""
Realtime - Topic broadcast hub and HTTP/websocket server.
"""

from .hub import (
    INITIAL_DATA,
    METRICS_UPDATE,
    HEALTH_UPDATE,
    ALERTS_UPDATE,
    ALERT_TRIGGERED,
    HEALTH_CHANGE,
    METRIC_UPDATE,
    RealtimeClient,
    BroadcastHub,
)
from .server import MonitorEncoder, WebSocketClient, MonitorServer, metrics_middleware, create_app

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
    "MonitorEncoder",
    "WebSocketClient",
    "MonitorServer",
    "metrics_middleware",
    "create_app",
]
