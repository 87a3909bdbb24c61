"""Training example data model."""

from __future__ import annotations

import secrets
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TrainingCategory(str, Enum):
    VIOLATION_DETECTION = "violation_detection"
    SCAM_DETECTION = "scam_detection"
    INTENT_CLASSIFICATION = "intent_classification"
    TOOL_SELECTION = "tool_selection"
    TRUST_PREDICTION = "trust_prediction"
    MODERATION_DECISION = "moderation_decision"
    POLICY_INTERPRETATION = "policy_interpretation"
    SENTIMENT_ANALYSIS = "sentiment_analysis"
    LANGUAGE_DETECTION = "language_detection"
    NETWORK_ANALYSIS = "network_analysis"
    USER_PROFILING = "user_profiling"
    WORKFLOW_PARSING = "workflow_parsing"
    HUMAN_CORRECTION = "human_correction"
    RAG_CONTEXT_ENHANCEMENT = "rag_context_enhancement"


class ModelTarget(str, Enum):
    """Model family an example is meant for."""

    QWEN = "qwen"
    LLAMA = "llama"
    GENERAL = "general"


class QualityTier(str, Enum):
    GOLD = "gold"
    SILVER = "silver"
    BRONZE = "bronze"
    REJECT = "reject"

    @property
    def rank(self) -> int:
        """Lower is better: gold 0, silver 1, bronze 2, reject 3."""
        return _TIER_RANK[self]

    def at_least(self, other: QualityTier) -> bool:
        """True when this tier is as good as or better than ``other``."""
        return self.rank <= other.rank


_TIER_RANK = {
    QualityTier.GOLD: 0,
    QualityTier.SILVER: 1,
    QualityTier.BRONZE: 2,
    QualityTier.REJECT: 3,
}


@dataclass(frozen=True)
class QualityFactors:
    """Signals that contribute to an example's quality score."""

    confidence_score: float = 0.5
    has_detailed_reasoning: bool = False
    has_human_validation: bool = False
    has_contextual_data: bool = False
    is_rag_enhanced: bool = False
    has_multiple_precedents: bool = False
    has_clear_outcome: bool = False
    is_edge_case: bool = False
    is_common_pattern: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QualityFactors:
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass(frozen=True)
class QualityAssessment:
    tier: QualityTier
    score: float
    factors: QualityFactors
    reasons: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "tier": self.tier.value,
            "score": self.score,
            "factors": self.factors.to_dict(),
            "reasons": list(self.reasons),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QualityAssessment:
        return cls(
            tier=QualityTier(data["tier"]),
            score=float(data["score"]),
            factors=QualityFactors.from_dict(data.get("factors", {})),
            reasons=tuple(data.get("reasons", [])),
        )


def new_example_id(category: TrainingCategory) -> str:
    return f"{category.value}_{int(time.time() * 1000)}_{secrets.token_hex(5)}"


@dataclass(frozen=True)
class TrainingExample:
    """One graded unit of training data. Immutable once stored."""

    id: str
    category: TrainingCategory
    model_target: ModelTarget
    input: str
    output: str
    quality: QualityAssessment
    metadata: dict[str, Any] = field(default_factory=dict)
    system_prompt: str | None = None
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def tier(self) -> QualityTier:
        return self.quality.tier

    @property
    def score(self) -> float:
        return self.quality.score

    @property
    def outcome(self) -> str:
        return str(self.metadata.get("outcome") or "unknown")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "category": self.category.value,
            "model_target": self.model_target.value,
            "input": self.input,
            "output": self.output,
            "system_prompt": self.system_prompt,
            "metadata": self.metadata,
            "quality": self.quality.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TrainingExample:
        timestamp = data.get("timestamp")
        return cls(
            id=data["id"],
            category=TrainingCategory(data["category"]),
            model_target=ModelTarget(data.get("model_target", "general")),
            input=data["input"],
            output=data["output"],
            quality=QualityAssessment.from_dict(data["quality"]),
            metadata=data.get("metadata", {}),
            system_prompt=data.get("system_prompt"),
            timestamp=datetime.fromisoformat(timestamp) if timestamp else datetime.now(),
        )
