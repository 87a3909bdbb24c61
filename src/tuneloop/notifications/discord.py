"""Discord notification handler using webhooks."""

from __future__ import annotations

import os
from typing import Optional

import requests

from ..logging_config import get_logger
from .base import NotificationEvent, NotificationHandler, NotificationLevel

logger = get_logger(__name__)

# Discord button styles
_BUTTON_STYLES = {"primary": 1, "secondary": 2, "success": 3, "danger": 4}

_COLORS = {
    NotificationLevel.INFO: 0x0099FF,
    NotificationLevel.SUCCESS: 0x36A64F,
    NotificationLevel.WARNING: 0xFFAA00,
    NotificationLevel.ERROR: 0xFF0000,
    NotificationLevel.CRITICAL: 0x8B0000,
}


class DiscordNotifier(NotificationHandler):
    """Send notifications to Discord via webhooks."""

    def __init__(self, webhook_url: Optional[str] = None, username: str = "tuneloop"):
        """Initialize Discord notifier.

        Args:
            webhook_url: Discord webhook URL (from env: DISCORD_WEBHOOK_URL)
            username: Bot username shown in Discord
        """
        self.webhook_url = webhook_url or os.getenv("DISCORD_WEBHOOK_URL")
        self.username = username

    def is_configured(self) -> bool:
        return bool(self.webhook_url)

    def send(self, event: NotificationEvent) -> bool:
        if not self.is_configured():
            logger.warning("Discord notifier not configured")
            return False

        try:
            response = requests.post(self.webhook_url, json=self.build_payload(event), timeout=10)
        except requests.Timeout:
            logger.error("Discord notification timeout")
            return False
        except requests.RequestException as e:
            logger.error(f"Failed to send Discord notification: {e}")
            return False

        # Discord answers 204 without ?wait=true, 200 with it
        if response.status_code in (200, 204):
            logger.debug(f"Discord notification sent: {event.title}")
            return True
        logger.error(f"Failed to send Discord notification: {response.status_code}")
        return False

    def build_payload(self, event: NotificationEvent) -> dict:
        fields = []
        if event.model_name:
            fields.append({"name": "Model", "value": event.model_name, "inline": True})
        for name, value in event.fields.items():
            fields.append({"name": name, "value": value[:1024] or "-", "inline": len(value) <= 40})

        if event.error_details:
            error_text = event.error_details
            if len(error_text) > 1024:
                error_text = error_text[:1000] + "..."
            fields.append({"name": "Error Details", "value": f"```{error_text}```", "inline": False})

        embed = {
            "title": event.title,
            "description": event.message,
            "color": _COLORS.get(event.level, 0x0099FF),
            "fields": fields,
            "timestamp": event.timestamp.isoformat(),
            "footer": {"text": event.footer or f"Level: {event.level.upper()}"},
        }

        payload: dict = {"username": self.username, "embeds": [embed]}
        if event.actions:
            payload["components"] = [
                {
                    "type": 1,
                    "components": [
                        {
                            "type": 2,
                            "label": action.label,
                            "style": _BUTTON_STYLES.get(action.style, 2),
                            "custom_id": action.custom_id,
                        }
                        for action in event.actions
                    ],
                }
            ]
        return payload
