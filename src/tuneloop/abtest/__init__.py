"""Shadow A/B testing of fine-tuned models."""

from .engine import (
    BASE_MODELS,
    ABTestEngine,
    ABTestResult,
    BatchResult,
    ComparisonReport,
    ModelConfig,
    ModelOutput,
    ModelTaskStats,
    TaskType,
    Winner,
    parse_confidence,
    task_type_for,
    word_overlap,
)
from .inference import InferenceClient, TextGenerator

__all__ = [
    # Engine
    "ABTestEngine",
    "ABTestResult",
    "BatchResult",
    "ComparisonReport",
    "ModelTaskStats",
    "Winner",
    # Models
    "BASE_MODELS",
    "ModelConfig",
    "ModelOutput",
    "TaskType",
    "task_type_for",
    # Scoring
    "parse_confidence",
    "word_overlap",
    # Inference
    "InferenceClient",
    "TextGenerator",
]
