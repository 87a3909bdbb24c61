"""Checkpoint records for incremental updates."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from ..logging_config import get_logger
from ..storage import read_json, write_json

logger = get_logger(__name__)


@dataclass
class Checkpoint:
    update_number: int
    model_name: str
    replay_snapshot: list[dict[str, Any]] = field(default_factory=list)
    performance_metrics: list[dict[str, Any]] = field(default_factory=list)
    config: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "update_number": self.update_number,
            "timestamp": self.timestamp.isoformat(),
            "model_name": self.model_name,
            "replay_buffer_snapshot": self.replay_snapshot,
            "performance_metrics": self.performance_metrics,
            "config": self.config,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Checkpoint:
        return cls(
            update_number=int(data["update_number"]),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            model_name=data["model_name"],
            replay_snapshot=data.get("replay_buffer_snapshot", []),
            performance_metrics=data.get("performance_metrics", []),
            config=data.get("config", {}),
        )


class CheckpointStore:
    """Stores ``checkpoint_{n}.json`` files in one directory."""

    def __init__(self, checkpoint_dir: Path):
        self.checkpoint_dir = checkpoint_dir

    def path_for(self, update_number: int) -> Path:
        return self.checkpoint_dir / f"checkpoint_{update_number}.json"

    def save(self, checkpoint: Checkpoint) -> Path:
        path = self.path_for(checkpoint.update_number)
        write_json(path, checkpoint.to_dict())
        logger.info(f"Checkpoint created: {path}")
        return path

    def load_all(self) -> list[Checkpoint]:
        if not self.checkpoint_dir.exists():
            return []
        checkpoints = []
        for path in self.checkpoint_dir.glob("checkpoint_*.json"):
            data = read_json(path)
            if data is None:
                continue
            try:
                checkpoints.append(Checkpoint.from_dict(data))
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping corrupt checkpoint {path.name}: {e}")
        return sorted(checkpoints, key=lambda c: c.update_number)

    def latest_before(self, update_number: int) -> Checkpoint | None:
        """Most recent checkpoint with a lower update number."""
        earlier = [c for c in self.load_all() if c.update_number < update_number]
        return earlier[-1] if earlier else None
