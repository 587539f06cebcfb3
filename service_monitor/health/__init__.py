"""
Health - Service health polling.
"""

from .poller import USER_AGENT, HealthPoller, HealthChangeCallback

__all__ = [
    "USER_AGENT",
    "HealthPoller",
    "HealthChangeCallback",
]
