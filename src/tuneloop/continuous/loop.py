"""Continuous fine-tuning loop.

Between full retrains, small incremental updates keep the deployed model
current:
1. Gather new gold/silver examples since the last update
2. Mix in replayed older examples
3. Pick a learning rate from the configured schedule
4. Train, checkpoint, and validate against the previous model
5. Roll back to the last checkpoint when performance drifts
"""

from __future__ import annotations

import dataclasses
import random
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from ..abtest.engine import ABTestEngine, ModelConfig, Winner, task_type_for
from ..collector.collector import ExampleCollector
from ..collector.example import QualityTier, TrainingExample
from ..events import DomainEvent, EventBus, EventType
from ..logging_config import LogContext, get_logger
from ..orchestrator.trainer import TrainerRunner, render_modelfile
from ..schema import ContinuousConfig, LearningRateSchedule
from ..storage import read_json, write_json, write_jsonl
from .checkpoints import Checkpoint, CheckpointStore
from .replay import ReplayBuffer
from .schedule import learning_rate

logger = get_logger(__name__)

_REPLAY_TIERS = {QualityTier.GOLD, QualityTier.SILVER}


class UpdateStatus(str, Enum):
    PENDING = "pending"
    APPLYING = "applying"
    SUCCESS = "success"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


@dataclass
class PerformanceMetric:
    model_name: str
    accuracy: float
    confidence_delta: float = 0.0
    latency_delta: float = 0.0
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "model_name": self.model_name,
            "accuracy": self.accuracy,
            "confidence_delta": self.confidence_delta,
            "latency_delta": self.latency_delta,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PerformanceMetric:
        return cls(
            timestamp=datetime.fromisoformat(data["timestamp"]),
            model_name=data.get("model_name", ""),
            accuracy=float(data.get("accuracy", 0.0)),
            confidence_delta=float(data.get("confidence_delta", 0.0)),
            latency_delta=float(data.get("latency_delta", 0.0)),
        )


@dataclass
class IncrementalUpdate:
    """One incremental training run."""

    id: str
    update_number: int
    model_name: str
    base_model_name: str
    learning_rate: float
    examples_added: int
    replay_examples: int = 0
    status: UpdateStatus = UpdateStatus.PENDING
    performance_change: float = 0.0
    drift_detected: bool = False
    replay_buffer_size: int = 0
    dataset_path: Path | None = None
    modelfile_path: Path | None = None
    checkpoint_path: Path | None = None
    error: str | None = None
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "update_number": self.update_number,
            "model_name": self.model_name,
            "base_model_name": self.base_model_name,
            "learning_rate": self.learning_rate,
            "status": self.status.value,
            "metrics": {
                "examples_added": self.examples_added,
                "replay_examples": self.replay_examples,
                "replay_buffer_size": self.replay_buffer_size,
                "performance_change": self.performance_change,
                "drift_detected": self.drift_detected,
            },
            "dataset_path": str(self.dataset_path) if self.dataset_path else None,
            "modelfile_path": str(self.modelfile_path) if self.modelfile_path else None,
            "checkpoint_path": str(self.checkpoint_path) if self.checkpoint_path else None,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IncrementalUpdate:
        metrics = data.get("metrics", {})
        return cls(
            id=data["id"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            update_number=int(data["update_number"]),
            model_name=data["model_name"],
            base_model_name=data["base_model_name"],
            learning_rate=float(data["learning_rate"]),
            status=UpdateStatus(data.get("status", "pending")),
            examples_added=metrics.get("examples_added", 0),
            replay_examples=metrics.get("replay_examples", 0),
            replay_buffer_size=metrics.get("replay_buffer_size", 0),
            performance_change=metrics.get("performance_change", 0.0),
            drift_detected=metrics.get("drift_detected", False),
            dataset_path=Path(data["dataset_path"]) if data.get("dataset_path") else None,
            modelfile_path=Path(data["modelfile_path"]) if data.get("modelfile_path") else None,
            checkpoint_path=Path(data["checkpoint_path"]) if data.get("checkpoint_path") else None,
            error=data.get("error"),
        )


def replay_count(new_count: int, ratio: float) -> int:
    """Replay examples needed so they make up ``ratio`` of the mixed batch."""
    if ratio <= 0:
        return 0
    return round(new_count * ratio / (1 - ratio))


class ContinuousFineTuner:
    """Runs incremental updates on a timer and guards them with checkpoints.

    State (update counter, last update time, replay buffer, recent updates)
    lives in ``{data_dir}/state.json`` and is rewritten after every update.
    """

    def __init__(
        self,
        collector: ExampleCollector,
        ab_engine: ABTestEngine,
        trainer: TrainerRunner,
        data_dir: Path,
        config: ContinuousConfig | None = None,
        bus: EventBus | None = None,
        rng: random.Random | None = None,
    ):
        self.collector = collector
        self.ab_engine = ab_engine
        self.trainer = trainer
        self.data_dir = data_dir
        self.config = config or ContinuousConfig()
        self.bus = bus
        self._rng = rng or random.Random()

        self.checkpoints = CheckpointStore(data_dir / "checkpoints")
        self.replay_buffer = ReplayBuffer(self.config.replay_buffer_size)
        self.performance_history: list[PerformanceMetric] = []
        self.updates: list[IncrementalUpdate] = []
        self.update_counter = 0
        # Model names never repeat, even after a rollback rewinds update_counter
        self.model_sequence = 0
        self.current_model: str | None = None
        self.last_update_time: datetime | None = None
        self._applying: IncrementalUpdate | None = None

        self._load_state()

        if bus is not None:
            self.attach(bus)

    def attach(self, bus: EventBus) -> None:
        self.bus = bus
        bus.subscribe(EventType.TRAINING_EXAMPLE_COLLECTED, self.on_example_collected)
        bus.subscribe(EventType.AB_TEST_COMPLETED, self.on_ab_test_completed)

    @property
    def state_path(self) -> Path:
        return self.data_dir / "state.json"

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    def on_example_collected(self, event: DomainEvent) -> None:
        """Feed stored gold/silver examples into the replay buffer."""
        if not event.payload.get("stored"):
            return
        example = TrainingExample.from_dict(event.payload["example"])
        if example.tier in _REPLAY_TIERS:
            self.replay_buffer.add(example)

    def on_ab_test_completed(self, event: DomainEvent) -> None:
        p = event.payload
        if p.get("winner") == Winner.UNKNOWN:
            return
        metrics = p.get("metrics") or {}
        self.record_performance(
            PerformanceMetric(
                model_name=p.get("model_b", ""),
                accuracy=1.0 if p.get("winner") == "B" else 0.0,
                confidence_delta=float(metrics.get("confidence_delta", 0.0)),
                latency_delta=float(metrics.get("latency_delta", 0.0)),
            )
        )

    def record_performance(self, metric: PerformanceMetric) -> None:
        self.performance_history.append(metric)
        window = self.config.performance_window_size
        if len(self.performance_history) > window * 3:
            self.performance_history = self.performance_history[-window * 2 :]

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def current_learning_rate(self) -> float:
        return learning_rate(
            self.config.learning_rate_schedule,
            self.config.base_learning_rate,
            self.update_counter,
            [m.accuracy for m in self.performance_history],
            self.config.performance_window_size,
        )

    def model_name(self, update_number: int) -> str:
        return f"{self.config.model_prefix}_continuous_v{update_number}"

    def latest_model_name(self) -> str:
        """The model the next update builds on."""
        return self.current_model or self.config.base_model

    @property
    def update_in_progress(self) -> bool:
        return self._applying is not None

    def new_examples(self) -> list[TrainingExample]:
        examples = self.collector.get_examples(since=self.last_update_time, tiers=_REPLAY_TIERS)
        examples.sort(key=lambda ex: ex.timestamp)
        return examples[: self.config.batch_size]

    async def check_and_apply(self) -> IncrementalUpdate | None:
        """Run one update if enough new examples have arrived."""
        if not self.config.enabled:
            return None
        if self._applying is not None:
            logger.debug("Incremental update already running, skipping tick")
            return None

        new_examples = self.new_examples()
        if len(new_examples) < self.config.min_examples_for_update:
            logger.debug(
                f"Not enough new examples: {len(new_examples)} < "
                f"{self.config.min_examples_for_update}"
            )
            return None

        n = self.update_counter
        update = IncrementalUpdate(
            id=f"update_{int(time.time() * 1000)}_{secrets.token_hex(5)}",
            update_number=n,
            model_name=self.model_name(self.model_sequence),
            base_model_name=self.latest_model_name(),
            learning_rate=self.current_learning_rate(),
            examples_added=len(new_examples),
            replay_buffer_size=len(self.replay_buffer),
        )
        self.updates.append(update)

        # Claimed before the first await
        self._applying = update
        try:
            with LogContext(update_number=n, model=update.model_name):
                await self._apply(update, new_examples)
        finally:
            self._applying = None

        if update.status != UpdateStatus.FAILED:
            self.update_counter += 1
            self.model_sequence += 1
            if update.status == UpdateStatus.SUCCESS:
                self.current_model = update.model_name
            self.last_update_time = max(ex.timestamp for ex in new_examples)
            event_type = (
                EventType.CONTINUOUS_UPDATE_ROLLED_BACK
                if update.status == UpdateStatus.ROLLED_BACK
                else EventType.CONTINUOUS_UPDATE_APPLIED
            )
            if self.bus is not None:
                await self.bus.publish(
                    DomainEvent(event_type=event_type, payload={"update": update.to_dict()})
                )
        self._save_state()
        return update

    async def _apply(self, update: IncrementalUpdate, new_examples: list[TrainingExample]) -> None:
        update.status = UpdateStatus.APPLYING
        try:
            replay = self.replay_buffer.sample(
                replay_count(len(new_examples), self.config.replay_ratio), self._rng
            )
            mixed = new_examples + replay
            update.replay_examples = len(replay)
            logger.info(
                f"Training set: {len(mixed)} examples "
                f"({len(new_examples)} new + {len(replay)} replay)"
            )

            update.dataset_path = self.data_dir / f"{update.id}_dataset.jsonl"
            write_jsonl(
                update.dataset_path,
                (
                    {
                        "prompt": ex.input,
                        "response": ex.output,
                        "category": ex.category.value,
                        "quality": ex.score,
                    }
                    for ex in mixed
                ),
            )
            update.modelfile_path = self.trainer.write_modelfile(
                update.model_name, self.modelfile_for(update)
            )
            await self.trainer.create(update.model_name, update.modelfile_path, update.dataset_path)

            if update.update_number % self.config.checkpoint_interval == 0:
                update.checkpoint_path = self._checkpoint(update)

            update.performance_change = await self.validate(update, mixed)
        except Exception as e:
            update.status = UpdateStatus.FAILED
            update.error = str(e)
            logger.error(f"Incremental update {update.update_number} failed: {e}")
            return

        if update.performance_change < -self.config.drift_threshold:
            update.drift_detected = True
            logger.warning(f"Performance degradation detected: {update.performance_change:+.1%}")
            if self.config.auto_rollback:
                self.rollback(update)
                return

        update.status = UpdateStatus.SUCCESS
        logger.info(
            f"Incremental update {update.update_number} completed "
            f"(performance change {update.performance_change:+.1%})"
        )

    def modelfile_for(self, update: IncrementalUpdate) -> str:
        assert update.dataset_path is not None
        return render_modelfile(
            base_model=update.base_model_name,
            system=(
                "You are Becas, an intelligent Discord bot for community moderation "
                "and trust scoring."
            ),
            adapter=update.dataset_path.name,
            parameters={
                "temperature": 0.7,
                "top_p": 0.9,
                "learning_rate": update.learning_rate,
            },
        )

    def _ensure_registered(self, name: str, kind: str) -> None:
        if not self.ab_engine.has_model(name):
            self.ab_engine.register_model(ModelConfig(name=name, type=kind, model_id=name))

    async def validate(self, update: IncrementalUpdate, examples: list[TrainingExample]) -> float:
        """Compare the updated model with its base; returns B share minus A share."""
        task_type = task_type_for(self.config.validation_task_type)
        cases: list[tuple[str, str | None]] = [
            (ex.input, ex.output) for ex in examples[: self.config.validation_cases]
        ]
        if not cases:
            return 0.0

        self._ensure_registered(
            update.base_model_name, "base" if update.update_number == 0 else "fine_tuned"
        )
        self._ensure_registered(update.model_name, "fine_tuned")
        batch = await self.ab_engine.run_batch(
            update.base_model_name, update.model_name, task_type, cases
        )
        return batch.delta

    # ------------------------------------------------------------------
    # Checkpoints and rollback
    # ------------------------------------------------------------------

    def _checkpoint(self, update: IncrementalUpdate) -> Path:
        return self.checkpoints.save(
            Checkpoint(
                update_number=update.update_number,
                timestamp=update.timestamp,
                model_name=update.model_name,
                replay_snapshot=self.replay_buffer.snapshot(last=100),
                performance_metrics=[m.to_dict() for m in self.performance_history[-50:]],
                config=self.config.to_dict(),
            )
        )

    def rollback(self, update: IncrementalUpdate) -> Checkpoint | None:
        logger.warning(f"Rolling back update {update.update_number}")
        update.status = UpdateStatus.ROLLED_BACK

        checkpoint = self.checkpoints.latest_before(update.update_number)
        if checkpoint is None:
            logger.warning("No previous checkpoint found, staying with current state")
            return None

        self.restore(checkpoint)
        logger.info(f"Rolled back to checkpoint {checkpoint.update_number}")
        return checkpoint

    def restore(self, checkpoint: Checkpoint) -> None:
        self.update_counter = checkpoint.update_number
        self.current_model = checkpoint.model_name
        if checkpoint.config:
            self.config = ContinuousConfig.from_dict(checkpoint.config)
        self.replay_buffer = ReplayBuffer.from_examples(
            self.config.replay_buffer_size, checkpoint.replay_snapshot
        )

    async def trigger_update(self) -> IncrementalUpdate:
        """Run an update now. Raises ``RuntimeError`` when none was produced."""
        logger.info("Manually triggered incremental update")
        update = await self.check_and_apply()
        if update is None:
            raise RuntimeError("No update was created")
        return update

    def configure(self, **changes: Any) -> ContinuousConfig:
        known = {f.name for f in dataclasses.fields(ContinuousConfig)}
        unknown = sorted(set(changes) - known)
        if unknown:
            raise ValueError(f"Unknown continuous settings: {', '.join(unknown)}")
        if "learning_rate_schedule" in changes:
            changes["learning_rate_schedule"] = LearningRateSchedule(changes["learning_rate_schedule"])

        self.config = dataclasses.replace(self.config, **changes)
        if self.replay_buffer.capacity != self.config.replay_buffer_size:
            self.replay_buffer.resize(self.config.replay_buffer_size)
        self._save_state()
        logger.info(f"Continuous fine-tuning configured: {changes}")
        return self.config

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def get_statistics(self) -> dict[str, Any]:
        return {
            "enabled": self.config.enabled,
            "total_updates": self.update_counter,
            "current_model": self.latest_model_name(),
            "update_in_progress": self.update_in_progress,
            "last_update_time": self.last_update_time.isoformat() if self.last_update_time else None,
            "replay_buffer_size": len(self.replay_buffer),
            "current_learning_rate": self.current_learning_rate(),
            "recent_performance": [m.to_dict() for m in self.performance_history[-20:]],
            "updates": [u.to_dict() for u in self.updates[-10:]],
        }

    def _save_state(self) -> None:
        write_json(
            self.state_path,
            {
                "update_counter": self.update_counter,
                "model_sequence": self.model_sequence,
                "current_model": self.current_model,
                "last_update_time": (
                    self.last_update_time.isoformat() if self.last_update_time else None
                ),
                "replay_buffer": self.replay_buffer.to_dict(),
                "performance_history": [m.to_dict() for m in self.performance_history],
                "updates": [u.to_dict() for u in self.updates[-10:]],
                "timestamp": datetime.now().isoformat(),
            },
        )

    def _load_state(self) -> None:
        state = read_json(self.state_path)
        if not state:
            logger.debug("No persisted continuous state, starting fresh")
            return
        try:
            last = state.get("last_update_time")
            last_time = datetime.fromisoformat(last) if last else None
            counter = int(state.get("update_counter", 0))
            sequence = int(state.get("model_sequence", counter))
            current = state.get("current_model")
            buffer = ReplayBuffer.from_dict(
                state.get("replay_buffer", {}), capacity=self.config.replay_buffer_size
            )
            history = [PerformanceMetric.from_dict(m) for m in state.get("performance_history", [])]
            updates = [IncrementalUpdate.from_dict(u) for u in state.get("updates", [])]
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring corrupt continuous state: {e}")
            return

        self.last_update_time = last_time
        self.update_counter = counter
        self.model_sequence = sequence
        self.current_model = current
        self.replay_buffer = buffer
        self.performance_history = history
        self.updates = updates
        logger.info(f"Loaded continuous state: {self.update_counter} updates completed")
