"""Base notification classes and notification kinds."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from ..events import DomainEvent, EventBus, EventType
from ..logging_config import get_logger

logger = get_logger(__name__)


class NotificationLevel(str, Enum):
    """Notification severity levels."""

    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class NotificationKind(str, Enum):
    """Pipeline situations that reach a human."""

    LABEL_REQUESTED = "label_requested"
    READY_FOR_PROMOTION = "ready_for_promotion"
    MODEL_PROMOTED = "model_promoted"
    MODEL_ROLLED_BACK = "model_rolled_back"
    FINE_TUNING_FAILED = "fine_tuning_failed"
    DRIFT_DETECTED = "drift_detected"


@dataclass
class NotificationAction:
    """A button attached to a notification."""

    label: str
    custom_id: str
    style: str = "secondary"


@dataclass
class NotificationEvent:
    """Structured notification event."""

    kind: NotificationKind
    title: str
    message: str
    level: NotificationLevel = NotificationLevel.INFO
    timestamp: datetime = field(default_factory=datetime.now)

    # Optional context
    model_name: Optional[str] = None
    fields: dict[str, str] = field(default_factory=dict)
    actions: list[NotificationAction] = field(default_factory=list)
    footer: Optional[str] = None
    error_details: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        data["level"] = self.level.value
        data["timestamp"] = self.timestamp.isoformat()
        return data

    def __str__(self) -> str:
        return f"[{self.level.upper()}] {self.title}: {self.message}"


class NotificationHandler(ABC):
    """Base class for notification handlers."""

    @abstractmethod
    def send(self, event: NotificationEvent) -> bool:
        """Send notification for event.

        Returns:
            True if successful, False otherwise
        """

    @abstractmethod
    def is_configured(self) -> bool:
        """Check if handler is properly configured."""


class NotificationManager:
    """Manages notifications across multiple channels."""

    def __init__(self):
        self.handlers: dict[str, NotificationHandler] = {}
        self.enabled_channels: set[str] = set()
        self.sent = 0
        self.failed = 0

    def register_handler(self, name: str, handler: NotificationHandler) -> None:
        self.handlers[name] = handler
        if handler.is_configured():
            self.enabled_channels.add(name)
            logger.info(f"Registered notification handler: {name}")
        else:
            logger.warning(f"Handler {name} not properly configured, skipping")

    def send_event(self, event: NotificationEvent) -> bool:
        """Send to every enabled channel. True if at least one accepted it."""
        if not self.enabled_channels:
            logger.debug(f"No notification channels enabled, dropping: {event.title}")
            return False

        sent_count = 0
        for channel in sorted(self.enabled_channels):
            handler = self.handlers[channel]
            try:
                if handler.send(event):
                    sent_count += 1
            except Exception as e:
                logger.error(f"Failed to send notification via {channel}: {e}", exc_info=True)

        if sent_count:
            self.sent += 1
        else:
            self.failed += 1
        return sent_count > 0

    async def send_event_async(self, event: NotificationEvent) -> bool:
        """``send_event`` off the event loop; handlers block on HTTP."""
        return await asyncio.to_thread(self.send_event, event)

    def notify(
        self,
        title: str,
        message: str,
        kind: NotificationKind | str = NotificationKind.FINE_TUNING_FAILED,
        level: NotificationLevel = NotificationLevel.INFO,
        **kwargs,
    ) -> bool:
        if isinstance(kind, str):
            kind = NotificationKind(kind)
        return self.send_event(
            NotificationEvent(kind=kind, title=title, message=message, level=level, **kwargs)
        )

    # ------------------------------------------------------------------
    # Pipeline events
    # ------------------------------------------------------------------

    def attach(self, bus: EventBus) -> None:
        """Notify operators about promotion, rollback and failure events."""
        self._bus = bus
        for event_type in (
            EventType.FINE_TUNING_FAILED,
            EventType.FINE_TUNING_READY_FOR_PROMOTION,
            EventType.FINE_TUNING_PROMOTED,
            EventType.FINE_TUNING_ROLLED_BACK,
            EventType.CONTINUOUS_UPDATE_ROLLED_BACK,
        ):
            bus.subscribe(event_type, self.on_pipeline_event)

    def on_pipeline_event(self, event: DomainEvent) -> None:
        notification = pipeline_notification(event)
        if notification is not None and self.enabled_channels:
            self._bus.spawn(
                self.send_event_async(notification),
                name=f"notify:{notification.kind.value}",
            )

    def get_status(self) -> dict[str, Any]:
        return {
            "registered_handlers": list(self.handlers.keys()),
            "enabled_channels": sorted(self.enabled_channels),
            "sent": self.sent,
            "failed": self.failed,
            "channel_status": {
                name: {
                    "configured": handler.is_configured(),
                    "handler_type": handler.__class__.__name__,
                }
                for name, handler in self.handlers.items()
            },
        }


def pipeline_notification(event: DomainEvent) -> NotificationEvent | None:
    """Operator notification for a pipeline event, if it warrants one."""
    p = event.payload
    if event.event_type == EventType.FINE_TUNING_FAILED:
        return NotificationEvent(
            kind=NotificationKind.FINE_TUNING_FAILED,
            title=f"Fine-tuning failed: {p.get('category')}",
            message=f"Job {p.get('job_id')} failed",
            level=NotificationLevel.ERROR,
            error_details=p.get("error"),
        )
    if event.event_type == EventType.FINE_TUNING_READY_FOR_PROMOTION:
        return NotificationEvent(
            kind=NotificationKind.READY_FOR_PROMOTION,
            title=f"Ready for promotion: {p.get('model')}",
            message=(
                f"Win rate {float(p.get('win_rate', 0.0)):.1%} over "
                f"{p.get('tests_completed')} tests. Promote with "
                f"`tuneloop jobs promote {p.get('job_id')}`."
            ),
            level=NotificationLevel.SUCCESS,
            model_name=p.get("model"),
        )
    if event.event_type == EventType.FINE_TUNING_PROMOTED:
        return NotificationEvent(
            kind=NotificationKind.MODEL_PROMOTED,
            title=f"Model promoted: {p.get('model')}",
            message=f"Replaces {p.get('previous_model') or 'the base model'} for {p.get('category')}",
            level=NotificationLevel.SUCCESS,
            model_name=p.get("model"),
        )
    if event.event_type == EventType.FINE_TUNING_ROLLED_BACK:
        return NotificationEvent(
            kind=NotificationKind.MODEL_ROLLED_BACK,
            title=f"Model rolled back: {p.get('category')}",
            message=f"{p.get('from')} -> {p.get('to')}: {p.get('reason')}",
            level=NotificationLevel.WARNING,
            model_name=p.get("to"),
        )
    if event.event_type == EventType.CONTINUOUS_UPDATE_ROLLED_BACK:
        update = p.get("update", {})
        change = update.get("metrics", {}).get("performance_change", 0.0)
        return NotificationEvent(
            kind=NotificationKind.DRIFT_DETECTED,
            title=f"Incremental update rolled back: {update.get('model_name')}",
            message=f"Performance change {change:+.1%}",
            level=NotificationLevel.WARNING,
            model_name=update.get("model_name"),
        )
    return None
