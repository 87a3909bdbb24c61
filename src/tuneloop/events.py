"""Typed domain events and the in-process event bus.

Every component talks to the others through events published here. Each
event type has its own handler list; observing everything means registering
one handler against every type with ``subscribe_all``. Handlers run under a
supervisor that logs failures and keeps delivering to the remaining handlers.
Handlers that do external I/O hand the slow part to ``EventBus.spawn`` so
the bus is never held up by a model call.
"""

from __future__ import annotations

import asyncio
import inspect
import uuid
from collections import Counter, defaultdict
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Union

from .logging_config import get_logger

logger = get_logger(__name__)


class EventType(str, Enum):
    """Event names consumed and produced by the pipeline."""

    # Produced by the moderation system
    VIOLATION_DETECTED = "violation.detected"
    MODERATION_ACTION_EXECUTED = "moderation.action_executed"
    TRUST_SCORE_CHANGED = "trust_score.changed"
    RAG_CONTEXT_ENHANCED = "rag.context_enhanced"
    RAG_SUSPICIOUS_SIMILARITY = "rag.suspicious_similarity"
    INTENT_ANALYZED = "intent.analyzed"
    SCAM_DETECTED = "scam.detected"
    TOOL_EXECUTED = "tool.executed"
    AI_CORRECTION = "ai.correction"
    POLICY_EVALUATED = "policy.evaluated"
    SENTIMENT_ANALYZED = "sentiment.analyzed"
    NETWORK_RAID_DETECTED = "network.raid_detected"
    NETWORK_BOT_PATTERN = "network.bot_pattern"
    USER_PROFILE_UPDATED = "user.profile_updated"
    WORKFLOW_PARSED = "workflow.parsed"
    LANGUAGE_DETECTED = "language.detected"

    # Produced by the pipeline
    TRAINING_EXAMPLE_COLLECTED = "training_example.collected"
    FINE_TUNING_COMPLETED = "fine_tuning.completed"
    FINE_TUNING_FAILED = "fine_tuning.failed"
    FINE_TUNING_PROMOTED = "fine_tuning.promoted"
    FINE_TUNING_ROLLED_BACK = "fine_tuning.rolled_back"
    FINE_TUNING_READY_FOR_PROMOTION = "fine_tuning.ready_for_promotion"
    AB_TEST_COMPLETED = "ab_test.completed"
    CONTINUOUS_UPDATE_APPLIED = "continuous_fine_tuning.update_applied"
    CONTINUOUS_UPDATE_ROLLED_BACK = "continuous_fine_tuning.update_rolled_back"
    ACTIVE_LEARNING_FEEDBACK = "active_learning.feedback_received"


@dataclass
class DomainEvent:
    """An event with its correlation chain."""

    event_type: EventType
    payload: dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: datetime = field(default_factory=datetime.now)
    correlation_id: str | None = None
    causation_id: str | None = None
    user_id: str | None = None
    guild_id: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.event_type, EventType):
            self.event_type = EventType(self.event_type)
        if self.correlation_id is None:
            self.correlation_id = self.event_id

    def create_child(self, event_type: EventType, payload: dict[str, Any]) -> DomainEvent:
        """Create an event caused by this one, keeping the correlation id."""
        return DomainEvent(
            event_type=event_type,
            payload=payload,
            correlation_id=self.correlation_id,
            causation_id=self.event_id,
            user_id=self.user_id,
            guild_id=self.guild_id,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "payload": self.payload,
            "event_id": self.event_id,
            "timestamp": self.timestamp.isoformat(),
            "correlation_id": self.correlation_id,
            "causation_id": self.causation_id,
            "user_id": self.user_id,
            "guild_id": self.guild_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DomainEvent:
        timestamp = data.get("timestamp")
        return cls(
            event_type=EventType(data["event_type"]),
            payload=data.get("payload", {}),
            event_id=data.get("event_id") or uuid.uuid4().hex,
            timestamp=datetime.fromisoformat(timestamp) if timestamp else datetime.now(),
            correlation_id=data.get("correlation_id"),
            causation_id=data.get("causation_id"),
            user_id=data.get("user_id"),
            guild_id=data.get("guild_id"),
        )


@dataclass
class HandlerResult:
    """Outcome reported by an event handler."""

    ok: bool = True
    error: str | None = None

    @classmethod
    def failure(cls, error: str) -> HandlerResult:
        return cls(ok=False, error=error)


HandlerReturn = Union[HandlerResult, None]
Handler = Callable[[DomainEvent], Union[HandlerReturn, Awaitable[HandlerReturn]]]


def _handler_name(handler: Handler) -> str:
    return getattr(handler, "__qualname__", None) or repr(handler)


class EventBus:
    """Dispatches events to the handlers registered for their type."""

    def __init__(self) -> None:
        self._handlers: dict[EventType, list[Handler]] = defaultdict(list)
        self._tasks: set[asyncio.Task] = set()
        self._published: Counter[str] = Counter()
        self._failures: Counter[str] = Counter()
        self._task_failures = 0

    def subscribe(self, event_type: EventType, handler: Handler) -> None:
        handlers = self._handlers[EventType(event_type)]
        if handler not in handlers:
            handlers.append(handler)

    def subscribe_all(self, handler: Handler) -> None:
        """Register ``handler`` against every event type."""
        for event_type in EventType:
            self.subscribe(event_type, handler)

    def unsubscribe(self, event_type: EventType, handler: Handler) -> None:
        handlers = self._handlers.get(EventType(event_type), [])
        if handler in handlers:
            handlers.remove(handler)

    def handlers(self, event_type: EventType) -> list[Handler]:
        return list(self._handlers.get(EventType(event_type), []))

    async def publish(self, event: DomainEvent) -> list[HandlerResult]:
        """Deliver ``event`` to every subscriber.

        Never raises because of a handler; failures are logged and counted.
        """
        self._published[event.event_type.value] += 1
        results = []
        for handler in self.handlers(event.event_type):
            results.append(await self._deliver(handler, event))
        return results

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
        """Run ``coro`` out-of-band; its failure is logged, not raised."""
        task = asyncio.get_running_loop().create_task(self._guard(coro, name), name=name)
        self._track(task)
        return task

    async def drain(self) -> None:
        """Wait until every spawned task has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def stats(self) -> dict[str, Any]:
        return {
            "published": dict(self._published),
            "handler_failures": dict(self._failures),
            "task_failures": self._task_failures,
            "pending_tasks": len(self._tasks),
            "subscriptions": {
                event_type.value: len(handlers)
                for event_type, handlers in self._handlers.items()
                if handlers
            },
        }

    def _track(self, task: asyncio.Task) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver(self, handler: Handler, event: DomainEvent) -> HandlerResult:
        name = _handler_name(handler)
        try:
            result = handler(event)
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            logger.exception(
                f"Handler {name} failed on {event.event_type.value} ({event.event_id})"
            )
            self._failures[event.event_type.value] += 1
            return HandlerResult.failure(str(e))

        if result is None:
            return HandlerResult()
        if not result.ok:
            self._failures[event.event_type.value] += 1
            logger.warning(
                f"Handler {name} reported failure on {event.event_type.value}: {result.error}"
            )
        return result

    async def _guard(self, coro: Coroutine[Any, Any, Any], name: str) -> Any:
        try:
            return await coro
        except asyncio.CancelledError:
            raise
        except Exception:
            self._task_failures += 1
            logger.exception(f"Background task {name} failed")
            return None
