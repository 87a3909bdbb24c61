"""Quality scoring for training examples.

Combines the quality factors into one score:
- confidence (continuous, weighted)
- reasoning, outcome clarity, human validation
- RAG context, precedents, contextual data
- edge-case and common-pattern bonuses

The score is an additive weighted sum capped to [0, 1]; the tier is a step
function of the score.
"""

from __future__ import annotations

from ..schema import QualityConfig
from .example import QualityAssessment, QualityFactors, QualityTier


class QualityScorer:
    """Scores quality factors and assigns tiers.

    Example:
        ```python
        scorer = QualityScorer()
        assessment = scorer.assess(QualityFactors(confidence_score=0.9, has_clear_outcome=True))
        assessment.tier  # QualityTier.REJECT (0.465)
        ```
    """

    def __init__(self, config: QualityConfig | None = None):
        self.config = config or QualityConfig()

    def score(self, factors: QualityFactors) -> float:
        w = self.config.weights
        total = max(0.0, min(1.0, factors.confidence_score)) * w.confidence
        if factors.has_detailed_reasoning:
            total += w.detailed_reasoning
        if factors.has_clear_outcome:
            total += w.clear_outcome
        if factors.has_human_validation:
            total += w.human_validation
        if factors.is_rag_enhanced:
            total += w.rag_enhanced
        if factors.has_multiple_precedents:
            total += w.multiple_precedents
        if factors.has_contextual_data:
            total += w.contextual_data
        if factors.is_edge_case:
            total += w.edge_case
        if factors.is_common_pattern:
            total += w.common_pattern
        # Rounded so sums like 0.35 + 0.15 + ... land exactly on thresholds
        return round(max(0.0, min(1.0, total)), 6)

    def tier_for(self, score: float) -> QualityTier:
        if score >= self.config.gold_threshold:
            return QualityTier.GOLD
        if score >= self.config.silver_threshold:
            return QualityTier.SILVER
        if score >= self.config.bronze_threshold:
            return QualityTier.BRONZE
        return QualityTier.REJECT

    def reasons(self, tier: QualityTier, factors: QualityFactors) -> list[str]:
        reasons = [
            {
                QualityTier.GOLD: "GOLD tier: excellent quality for fine-tuning",
                QualityTier.SILVER: "SILVER tier: good quality training example",
                QualityTier.BRONZE: "BRONZE tier: acceptable quality with limitations",
                QualityTier.REJECT: "REJECT: quality too low for training",
            }[tier]
        ]

        if factors.confidence_score >= 0.9:
            reasons.append("Very high confidence (>= 0.9)")
        if factors.has_detailed_reasoning:
            reasons.append("Detailed reasoning provided")
        if factors.has_human_validation:
            reasons.append("Human validated")
        if factors.is_rag_enhanced:
            reasons.append("RAG-enhanced with historical context")
        if factors.has_multiple_precedents:
            reasons.append("Multiple precedents available")
        if factors.has_contextual_data:
            reasons.append("Rich contextual data")
        if factors.has_clear_outcome:
            reasons.append("Clear, unambiguous outcome")
        if factors.is_edge_case:
            reasons.append("Edge case with high learning value")
        if factors.is_common_pattern:
            reasons.append("Common pattern, good for coverage")

        if factors.confidence_score < 0.7:
            reasons.append("Warning: low confidence score")
        if not factors.has_detailed_reasoning:
            reasons.append("Warning: lacks detailed reasoning")
        if not factors.has_clear_outcome:
            reasons.append("Warning: ambiguous outcome")

        return reasons

    def assess(self, factors: QualityFactors) -> QualityAssessment:
        score = self.score(factors)
        tier = self.tier_for(score)
        return QualityAssessment(
            tier=tier,
            score=score,
            factors=factors,
            reasons=tuple(self.reasons(tier, factors)),
        )
