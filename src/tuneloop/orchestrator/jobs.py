"""Fine-tuning job records and their durable store."""

from __future__ import annotations

import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from ..collector.example import TrainingCategory
from ..logging_config import get_logger
from ..storage import read_json, write_json

logger = get_logger(__name__)


class PipelineStage(str, Enum):
    COLLECTING = "collecting"
    READY = "ready"
    TRAINING = "training"
    TESTING = "testing"
    EVALUATING = "evaluating"
    PROMOTING = "promoting"
    DEPLOYED = "deployed"
    FAILED = "failed"


IN_FLIGHT_STAGES = frozenset({PipelineStage.TRAINING, PipelineStage.TESTING})


def new_job_id() -> str:
    return f"job_{int(time.time() * 1000)}_{secrets.token_hex(5)}"


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass
class FineTuningJob:
    """One attempt to produce a better model for a category."""

    id: str
    category: TrainingCategory
    base_model: str
    target_model: str
    version: int
    stage: PipelineStage = PipelineStage.COLLECTING
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    # Data
    training_examples: int = 0
    gold_examples: int = 0
    silver_examples: int = 0
    bronze_examples: int = 0

    # Training
    dataset_path: Path | None = None
    modelfile_path: Path | None = None
    fine_tuning_started: datetime | None = None
    fine_tuning_completed: datetime | None = None
    error: str | None = None

    # Testing
    ab_tests_completed: int = 0
    win_rate: float = 0.0
    average_quality_improvement: float | None = None

    # Promotion
    promoted: bool = False
    promoted_at: datetime | None = None
    promotion_reason: str | None = None
    previous_version: str | None = None
    rolled_back_at: datetime | None = None
    rollback_reason: str | None = None

    @property
    def rolled_back(self) -> bool:
        return self.rolled_back_at is not None

    def transition(self, stage: PipelineStage) -> None:
        self.stage = stage
        self.updated_at = datetime.now()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "category": self.category.value,
            "base_model": self.base_model,
            "target_model": self.target_model,
            "version": self.version,
            "stage": self.stage.value,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "training_examples": self.training_examples,
            "gold_examples": self.gold_examples,
            "silver_examples": self.silver_examples,
            "bronze_examples": self.bronze_examples,
            "dataset_path": str(self.dataset_path) if self.dataset_path else None,
            "modelfile_path": str(self.modelfile_path) if self.modelfile_path else None,
            "fine_tuning_started": _iso(self.fine_tuning_started),
            "fine_tuning_completed": _iso(self.fine_tuning_completed),
            "error": self.error,
            "ab_tests_completed": self.ab_tests_completed,
            "win_rate": self.win_rate,
            "average_quality_improvement": self.average_quality_improvement,
            "promoted": self.promoted,
            "promoted_at": _iso(self.promoted_at),
            "promotion_reason": self.promotion_reason,
            "previous_version": self.previous_version,
            "rolled_back": self.rolled_back,
            "rolled_back_at": _iso(self.rolled_back_at),
            "rollback_reason": self.rollback_reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FineTuningJob:
        return cls(
            id=data["id"],
            category=TrainingCategory(data["category"]),
            base_model=data["base_model"],
            target_model=data["target_model"],
            version=int(data["version"]),
            stage=PipelineStage(data.get("stage", "collecting")),
            created_at=_dt(data.get("created_at")) or datetime.now(),
            updated_at=_dt(data.get("updated_at")) or datetime.now(),
            training_examples=data.get("training_examples", 0),
            gold_examples=data.get("gold_examples", 0),
            silver_examples=data.get("silver_examples", 0),
            bronze_examples=data.get("bronze_examples", 0),
            dataset_path=Path(data["dataset_path"]) if data.get("dataset_path") else None,
            modelfile_path=Path(data["modelfile_path"]) if data.get("modelfile_path") else None,
            fine_tuning_started=_dt(data.get("fine_tuning_started")),
            fine_tuning_completed=_dt(data.get("fine_tuning_completed")),
            error=data.get("error"),
            ab_tests_completed=data.get("ab_tests_completed", 0),
            win_rate=float(data.get("win_rate") or 0.0),
            average_quality_improvement=data.get("average_quality_improvement"),
            promoted=bool(data.get("promoted", False)),
            promoted_at=_dt(data.get("promoted_at")),
            promotion_reason=data.get("promotion_reason"),
            previous_version=data.get("previous_version"),
            rolled_back_at=_dt(data.get("rolled_back_at")),
            rollback_reason=data.get("rollback_reason"),
        )


class JobStore:
    """One JSON file per job, rewritten atomically on every save."""

    def __init__(self, jobs_dir: Path):
        self.jobs_dir = jobs_dir

    def path_for(self, job_id: str) -> Path:
        return self.jobs_dir / f"{job_id}.json"

    def save(self, job: FineTuningJob) -> None:
        write_json(self.path_for(job.id), job.to_dict())

    def load_all(self) -> list[FineTuningJob]:
        if not self.jobs_dir.exists():
            return []
        jobs = []
        for path in sorted(self.jobs_dir.glob("*.json")):
            data = read_json(path)
            if data is None:
                continue
            try:
                jobs.append(FineTuningJob.from_dict(data))
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping corrupt job file {path.name}: {e}")
        return jobs
