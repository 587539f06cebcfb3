"""
Notifications - Alert delivery to external channels.
"""

from .channels import (
    NotificationChannel,
    WebhookChannel,
    ChatWebhookChannel,
    EmailChannel,
    create_channel,
)
from .dispatch import NotificationDispatcher

__all__ = [
    "NotificationChannel",
    "WebhookChannel",
    "ChatWebhookChannel",
    "EmailChannel",
    "create_channel",
    "NotificationDispatcher",
]
