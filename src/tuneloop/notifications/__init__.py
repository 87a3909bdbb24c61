"""Human-facing notifications: labeling requests and operator alerts.

Channels register as handlers on a NotificationManager:

    from tuneloop.notifications import DiscordNotifier, NotificationManager

    manager = NotificationManager()
    manager.register_handler("discord", DiscordNotifier(webhook_url))
"""

from .base import (
    NotificationAction,
    NotificationEvent,
    NotificationHandler,
    NotificationKind,
    NotificationLevel,
    NotificationManager,
    pipeline_notification,
)
from .discord import DiscordNotifier

__all__ = [
    "NotificationAction",
    "NotificationEvent",
    "NotificationHandler",
    "NotificationKind",
    "NotificationLevel",
    "NotificationManager",
    "pipeline_notification",
    "DiscordNotifier",
]
