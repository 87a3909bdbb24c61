"""Active learning: route uncertain predictions to human labelers.

Low-confidence predictions and committee disagreements are queued, a
labeling request goes out per example, and every human verdict comes back
into the collector as a gold training example.
"""

from .queue import (
    HumanLabel,
    LabelingQueue,
    LabelingRequest,
    LabelStatus,
    Strategy,
    UncertainExample,
    labeling_notification,
)
from .sampler import (
    EVENT_CATEGORIES,
    committee_diversity,
    extract_confidence,
    extract_input,
    extract_output,
    extract_predictions,
)

__all__ = [
    # Queue
    "LabelingQueue",
    "UncertainExample",
    "LabelingRequest",
    "HumanLabel",
    "LabelStatus",
    "Strategy",
    "labeling_notification",
    # Sampling
    "EVENT_CATEGORIES",
    "committee_diversity",
    "extract_confidence",
    "extract_input",
    "extract_output",
    "extract_predictions",
]
