"""Continuous fine-tuning between full retrains.

Components:
- ReplayBuffer: keeps older high-quality examples in every update
- learning_rate: constant, decay and adaptive schedules
- CheckpointStore: periodic snapshots used for rollback on drift
- ContinuousFineTuner: the update loop itself
"""

from .checkpoints import Checkpoint, CheckpointStore
from .loop import (
    ContinuousFineTuner,
    IncrementalUpdate,
    PerformanceMetric,
    UpdateStatus,
    replay_count,
)
from .replay import ReplayBuffer
from .schedule import adaptive_rate, constant_rate, decay_rate, learning_rate

__all__ = [
    # Loop
    "ContinuousFineTuner",
    "IncrementalUpdate",
    "PerformanceMetric",
    "UpdateStatus",
    "replay_count",
    # Replay
    "ReplayBuffer",
    # Schedules
    "learning_rate",
    "constant_rate",
    "decay_rate",
    "adaptive_rate",
    # Checkpoints
    "Checkpoint",
    "CheckpointStore",
]
