"""Human labeling queue for uncertain predictions."""

from __future__ import annotations

import secrets
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any

from ..collector.example import (
    ModelTarget,
    QualityAssessment,
    QualityFactors,
    QualityTier,
    TrainingCategory,
    TrainingExample,
)
from ..events import DomainEvent, EventBus, EventType
from ..logging_config import get_logger
from ..notifications import NotificationAction, NotificationEvent, NotificationKind, NotificationManager
from ..schema import ActiveLearningConfig
from ..storage import read_json, write_json
from .sampler import (
    EVENT_CATEGORIES,
    committee_diversity,
    extract_confidence,
    extract_input,
    extract_output,
    extract_predictions,
)

logger = get_logger(__name__)


class Strategy(str, Enum):
    """How an example was selected for labeling."""

    UNCERTAINTY_SAMPLING = "uncertainty_sampling"
    QUERY_BY_COMMITTEE = "query_by_committee"
    EXPECTED_MODEL_CHANGE = "expected_model_change"
    DIVERSITY_SAMPLING = "diversity_sampling"
    ERROR_REDUCTION = "error_reduction"


class LabelStatus(str, Enum):
    PENDING = "pending"
    LABELED = "labeled"
    SKIPPED = "skipped"
    EXPIRED = "expired"


def _parse_time(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


@dataclass
class LabelingRequest:
    requested_at: datetime = field(default_factory=datetime.now)
    status: LabelStatus = LabelStatus.PENDING
    notified: bool = False
    assigned_to: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "requested_at": self.requested_at.isoformat(),
            "status": self.status.value,
            "notified": self.notified,
            "assigned_to": self.assigned_to,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LabelingRequest:
        return cls(
            requested_at=_parse_time(data.get("requested_at")) or datetime.now(),
            status=LabelStatus(data.get("status", "pending")),
            notified=bool(data.get("notified", False)),
            assigned_to=data.get("assigned_to"),
        )


@dataclass
class HumanLabel:
    labeled_by: str
    was_correct: bool
    correct_label: str | None = None
    feedback: str | None = None
    labeled_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "labeled_by": self.labeled_by,
            "was_correct": self.was_correct,
            "correct_label": self.correct_label,
            "feedback": self.feedback,
            "labeled_at": self.labeled_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HumanLabel:
        return cls(
            labeled_by=data["labeled_by"],
            was_correct=bool(data["was_correct"]),
            correct_label=data.get("correct_label"),
            feedback=data.get("feedback"),
            labeled_at=_parse_time(data.get("labeled_at")) or datetime.now(),
        )


@dataclass
class UncertainExample:
    """A prediction waiting for a human verdict."""

    id: str
    category: TrainingCategory
    input: str
    predicted_output: str
    confidence: float
    uncertainty: float
    strategy: Strategy = Strategy.UNCERTAINTY_SAMPLING
    metadata: dict[str, Any] = field(default_factory=dict)
    predictions: list[dict[str, Any]] = field(default_factory=list)
    timestamp: datetime = field(default_factory=datetime.now)
    labeling_request: LabelingRequest | None = None
    human_label: HumanLabel | None = None

    @property
    def status(self) -> LabelStatus:
        if self.labeling_request is None:
            return LabelStatus.PENDING
        return self.labeling_request.status

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "category": self.category.value,
            "input": self.input,
            "predicted_output": self.predicted_output,
            "confidence": self.confidence,
            "uncertainty": self.uncertainty,
            "strategy": self.strategy.value,
            "metadata": self.metadata,
            "predictions": self.predictions,
            "labeling_request": self.labeling_request.to_dict() if self.labeling_request else None,
            "human_label": self.human_label.to_dict() if self.human_label else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UncertainExample:
        request = data.get("labeling_request")
        label = data.get("human_label")
        return cls(
            id=data["id"],
            category=TrainingCategory(data["category"]),
            input=data["input"],
            predicted_output=data["predicted_output"],
            confidence=float(data["confidence"]),
            uncertainty=float(data["uncertainty"]),
            strategy=Strategy(data.get("strategy", "uncertainty_sampling")),
            metadata=data.get("metadata", {}),
            predictions=data.get("predictions", []),
            timestamp=_parse_time(data.get("timestamp")) or datetime.now(),
            labeling_request=LabelingRequest.from_dict(request) if request else None,
            human_label=HumanLabel.from_dict(label) if label else None,
        )


def _new_id(prefix: str) -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(5)}"


def labeling_notification(example: UncertainExample) -> NotificationEvent:
    """The message a labeler sees, with correct/incorrect/skip buttons."""
    return NotificationEvent(
        kind=NotificationKind.LABEL_REQUESTED,
        title="Active Learning - Human Label Needed",
        message=f"Low-confidence {example.category.value} prediction needs review.",
        fields={
            "Category": example.category.value,
            "Confidence": f"{example.confidence:.1%}",
            "Uncertainty": f"{example.uncertainty:.1%}",
            "Input": example.input[:500],
            "AI Prediction": example.predicted_output[:500],
        },
        actions=[
            NotificationAction("Correct", f"label:{example.id}:correct", "success"),
            NotificationAction("Incorrect", f"label:{example.id}:incorrect", "danger"),
            NotificationAction("Skip", f"label:{example.id}:skip", "secondary"),
        ],
        footer=f"Example ID: {example.id}",
    )


class LabelingQueue:
    """Bounded queue of uncertain predictions awaiting human labels.

    Watches detector events; a prediction whose confidence is below
    ``uncertainty_threshold`` is queued with ``uncertainty = 1 - confidence``
    and one labeling request goes out through the notification manager.
    A submitted label becomes a gold training example published as
    ``training_example.collected`` (``stored=False``) for the collector.

    A full queue evicts its oldest entry below ``low_uncertainty_eviction``;
    when there is none the new example is dropped.

    Example:
        queue = LabelingQueue(config, notifier=manager, bus=bus, data_dir=path)
        await queue.submit_label(example_id, "mod#1", was_correct=False,
                                 correct_label="Type: spam, Severity: low")
    """

    def __init__(
        self,
        config: ActiveLearningConfig | None = None,
        notifier: NotificationManager | None = None,
        bus: EventBus | None = None,
        data_dir: Path | None = None,
    ):
        self.config = config or ActiveLearningConfig()
        self.notifier = notifier
        self.bus = bus
        self.data_dir = data_dir

        self._queue: dict[str, UncertainExample] = {}
        self.total_requests = 0
        self.labeled = 0
        self.skipped = 0
        self.expired = 0
        self.dropped = 0
        self.by_strategy: Counter[str] = Counter()

        if self.data_dir is not None:
            self._load()
        if bus is not None:
            self.attach(bus)

    def attach(self, bus: EventBus) -> None:
        self.bus = bus
        for event_type in EVENT_CATEGORIES:
            bus.subscribe(event_type, self.on_prediction)

    @property
    def snapshot_path(self) -> Path | None:
        return self.data_dir / "queue.json" if self.data_dir is not None else None

    def __len__(self) -> int:
        return len(self._queue)

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    async def on_prediction(self, event: DomainEvent) -> None:
        if not self.config.enabled:
            return
        confidence = extract_confidence(event.payload)
        if confidence is None or confidence >= self.config.uncertainty_threshold:
            return

        logger.info(f"Uncertain prediction on {event.event_type.value}: {confidence:.2f} confidence")
        example = UncertainExample(
            id=_new_id("uncertain"),
            category=EVENT_CATEGORIES[event.event_type],
            input=extract_input(event.payload),
            predicted_output=extract_output(event.payload),
            confidence=confidence,
            uncertainty=1.0 - confidence,
            strategy=Strategy.UNCERTAINTY_SAMPLING,
            metadata={
                "guild_id": event.guild_id or event.payload.get("guild_id") or "unknown",
                "user_id": event.user_id,
                "correlation_id": event.correlation_id,
                "source_event": event.event_type.value,
            },
            predictions=extract_predictions(event.payload, confidence),
        )
        await self.add(example)

    async def query_by_committee(
        self,
        input: str,
        predictions: list[dict[str, Any]],
        category: TrainingCategory = TrainingCategory.VIOLATION_DETECTION,
        guild_id: str = "unknown",
    ) -> UncertainExample | None:
        """Queue ``input`` when the committee's outputs disagree enough.

        ``predictions`` holds ``{"model", "output", "confidence"}`` dicts.
        Returns the queued example, or None when the models agree.
        """
        if not predictions:
            return None
        diversity = committee_diversity([str(p["output"]) for p in predictions])
        if diversity < self.config.committee_disagreement_threshold:
            return None

        confidences = [float(p.get("confidence", 0.0)) for p in predictions]
        best = max(predictions, key=lambda p: float(p.get("confidence", 0.0)))
        example = UncertainExample(
            id=_new_id("committee"),
            category=TrainingCategory(category),
            input=input,
            predicted_output=str(best["output"]),
            confidence=sum(confidences) / len(confidences),
            uncertainty=diversity,
            strategy=Strategy.QUERY_BY_COMMITTEE,
            metadata={"guild_id": guild_id, "committee": [p.get("model") for p in predictions]},
            predictions=[
                {"label": str(p["output"]), "confidence": float(p.get("confidence", 0.0))}
                for p in predictions
            ],
        )
        return example if await self.add(example) else None

    async def add(self, example: UncertainExample) -> bool:
        """Queue ``example`` and request a label. False when dropped."""
        if len(self._queue) >= self.config.max_queue_size:
            logger.warning(f"Labeling queue at max capacity ({self.config.max_queue_size})")
            victim = self._oldest_low_priority()
            if victim is None:
                self.dropped += 1
                logger.warning(f"Queue full of high-uncertainty items, dropping {example.id}")
                return False
            del self._queue[victim.id]
            logger.info(f"Evicted {victim.id} (uncertainty {victim.uncertainty:.2f})")

        example.labeling_request = LabelingRequest()
        self._queue[example.id] = example
        self.total_requests += 1
        self.by_strategy[example.strategy.value] += 1
        self._save()
        logger.info(
            f"Added uncertain example to queue: {example.id} (uncertainty: {example.uncertainty:.2f})"
        )

        if self.notifier is not None:
            if self.bus is not None:
                self.bus.spawn(self._request_label(example), name=f"label_request:{example.id}")
            else:
                await self._request_label(example)
        return True

    def _oldest_low_priority(self) -> UncertainExample | None:
        candidates = [
            e for e in self._queue.values() if e.uncertainty < self.config.low_uncertainty_eviction
        ]
        return min(candidates, key=lambda e: e.timestamp, default=None)

    async def _request_label(self, example: UncertainExample) -> None:
        assert self.notifier is not None
        if await self.notifier.send_event_async(labeling_notification(example)):
            if example.labeling_request is not None:
                example.labeling_request.notified = True
            if example.id in self._queue:
                self._save()
        else:
            logger.warning(f"Labeling request for {example.id} was not delivered")

    # ------------------------------------------------------------------
    # Labels
    # ------------------------------------------------------------------

    async def submit_label(
        self,
        example_id: str,
        labeled_by: str,
        was_correct: bool,
        correct_label: str | None = None,
        feedback: str | None = None,
    ) -> TrainingExample:
        """Record a human verdict and turn it into a gold training example.

        Raises:
            KeyError: ``example_id`` is not queued
            ValueError: the prediction is marked wrong without a correction
        """
        example = self.get(example_id)
        if not was_correct and not correct_label:
            raise ValueError(f"A correct_label is required when marking {example_id} incorrect")

        example.human_label = HumanLabel(
            labeled_by=labeled_by,
            was_correct=was_correct,
            correct_label=correct_label,
            feedback=feedback,
        )
        if example.labeling_request is not None:
            example.labeling_request.status = LabelStatus.LABELED
        self.labeled += 1
        logger.info(f"Human label received for {example_id}: {'CORRECT' if was_correct else 'INCORRECT'}")

        training_example = self.to_training_example(example)
        del self._queue[example_id]
        self._save()

        if self.bus is not None:
            collected = DomainEvent(
                event_type=EventType.TRAINING_EXAMPLE_COLLECTED,
                payload={
                    "example": training_example.to_dict(),
                    "stored": False,
                    "source": "active_learning",
                },
                correlation_id=example.metadata.get("correlation_id"),
                guild_id=example.metadata.get("guild_id"),
            )
            await self.bus.publish(collected)
            await self.bus.publish(
                collected.create_child(
                    EventType.ACTIVE_LEARNING_FEEDBACK,
                    {
                        "example_id": example_id,
                        "was_correct": was_correct,
                        "uncertainty": example.uncertainty,
                        "category": example.category.value,
                    },
                )
            )
        return training_example

    @staticmethod
    def to_training_example(example: UncertainExample) -> TrainingExample:
        label = example.human_label
        if label is None:
            raise ValueError(f"{example.id} has no human label")
        edge_case = example.uncertainty > 0.5
        metadata: dict[str, Any] = {
            "guild_id": example.metadata.get("guild_id", "unknown"),
            "confidence": example.confidence,
            "outcome": "success" if label.was_correct else "corrected",
            "human_feedback": True,
            "labeled_by": label.labeled_by,
            "strategy": example.strategy.value,
        }
        if not label.was_correct:
            metadata["correction_type"] = "false_negative"
        if label.feedback:
            metadata["feedback"] = label.feedback

        return TrainingExample(
            id=f"active_learning_{example.id}",
            category=example.category,
            model_target=ModelTarget.GENERAL,
            input=example.input,
            output=example.predicted_output if label.was_correct else str(label.correct_label),
            quality=QualityAssessment(
                tier=QualityTier.GOLD,
                score=1.0,
                factors=QualityFactors(
                    confidence_score=1.0,
                    has_detailed_reasoning=True,
                    has_human_validation=True,
                    has_contextual_data=True,
                    has_clear_outcome=True,
                    is_edge_case=edge_case,
                ),
                reasons=(
                    "GOLD tier: human validated via active learning",
                    f"Selected by {example.strategy.value.replace('_', ' ')}",
                    "Edge case with high learning value" if edge_case else "Moderate uncertainty example",
                ),
            ),
            metadata=metadata,
        )

    def skip(self, example_id: str, labeled_by: str) -> None:
        example = self.get(example_id)
        if example.labeling_request is not None:
            example.labeling_request.status = LabelStatus.SKIPPED
            example.labeling_request.assigned_to = labeled_by
        self.skipped += 1
        del self._queue[example_id]
        self._save()
        logger.info(f"Labeling skipped for {example_id} by {labeled_by}")

    def expire_stale(self, now: datetime | None = None) -> int:
        """Drop pending requests older than the labeling timeout."""
        now = now or datetime.now()
        timeout = timedelta(seconds=self.config.labeling_timeout_seconds)
        stale = [
            example
            for example in self._queue.values()
            if example.labeling_request is not None
            and example.labeling_request.status == LabelStatus.PENDING
            and now - example.labeling_request.requested_at > timeout
        ]
        for example in stale:
            example.labeling_request.status = LabelStatus.EXPIRED
            del self._queue[example.id]
            logger.warning(f"Labeling request expired: {example.id}")
        if stale:
            self.expired += len(stale)
            self._save()
        return len(stale)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, example_id: str) -> UncertainExample:
        try:
            return self._queue[example_id]
        except KeyError:
            raise KeyError(f"Example not in labeling queue: {example_id}") from None

    def pending(self) -> list[UncertainExample]:
        """Queued examples, most uncertain first."""
        return sorted(self._queue.values(), key=lambda e: (-e.uncertainty, e.timestamp))

    def stats(self) -> dict[str, Any]:
        size = len(self._queue)
        return {
            "queue_size": size,
            "total_requests": self.total_requests,
            "labeled": self.labeled,
            "skipped": self.skipped,
            "expired": self.expired,
            "dropped": self.dropped,
            "labeling_rate": self.labeled / self.total_requests if self.total_requests else 0.0,
            "by_strategy": {s.value: self.by_strategy.get(s.value, 0) for s in Strategy},
            "avg_uncertainty": (
                sum(e.uncertainty for e in self._queue.values()) / size if size else 0.0
            ),
        }

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _save(self) -> None:
        if self.snapshot_path is None:
            return
        write_json(
            self.snapshot_path,
            {
                "examples": [e.to_dict() for e in self._queue.values()],
                "counters": {
                    "total_requests": self.total_requests,
                    "labeled": self.labeled,
                    "skipped": self.skipped,
                    "expired": self.expired,
                    "dropped": self.dropped,
                    "by_strategy": dict(self.by_strategy),
                },
                "timestamp": datetime.now().isoformat(),
            },
        )

    def _load(self) -> None:
        data = read_json(self.snapshot_path)
        if not data:
            return
        try:
            examples = [UncertainExample.from_dict(e) for e in data.get("examples", [])]
            counters = data.get("counters", {})
            totals = {
                key: int(counters.get(key, 0))
                for key in ("total_requests", "labeled", "skipped", "expired", "dropped")
            }
            by_strategy = Counter({k: int(v) for k, v in counters.get("by_strategy", {}).items()})
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring corrupt labeling queue snapshot: {e}")
            return

        self._queue = {e.id: e for e in examples[-self.config.max_queue_size :]}
        self.total_requests = totals["total_requests"]
        self.labeled = totals["labeled"]
        self.skipped = totals["skipped"]
        self.expired = totals["expired"]
        self.dropped = totals["dropped"]
        self.by_strategy = by_strategy
        logger.info(f"Loaded {len(self._queue)} examples from labeling queue")
