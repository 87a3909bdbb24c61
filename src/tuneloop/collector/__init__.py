"""Training example collection and quality grading.

Domain events from the moderation system are mapped to input/output pairs,
scored on a fixed set of quality factors and stored per category:
- gold >= 0.90, silver >= 0.75, bronze >= 0.60
- reject-tier examples are never stored
"""

from .collector import ExampleCollector
from .example import (
    ModelTarget,
    QualityAssessment,
    QualityFactors,
    QualityTier,
    TrainingCategory,
    TrainingExample,
    new_example_id,
)
from .mappers import MAPPERS, ExampleDraft
from .scoring import QualityScorer

__all__ = [
    # Collection
    "ExampleCollector",
    "ExampleDraft",
    "MAPPERS",
    # Data model
    "TrainingExample",
    "TrainingCategory",
    "ModelTarget",
    "QualityTier",
    "QualityFactors",
    "QualityAssessment",
    "new_example_id",
    # Scoring
    "QualityScorer",
]
