"""Reading predictions out of detector events."""

from __future__ import annotations

import json
from typing import Any

from ..collector.example import TrainingCategory
from ..events import EventType

# Prediction events watched for uncertainty, and the category a label lands in
EVENT_CATEGORIES: dict[EventType, TrainingCategory] = {
    EventType.VIOLATION_DETECTED: TrainingCategory.VIOLATION_DETECTION,
    EventType.SCAM_DETECTED: TrainingCategory.SCAM_DETECTION,
    EventType.INTENT_ANALYZED: TrainingCategory.INTENT_CLASSIFICATION,
    EventType.POLICY_EVALUATED: TrainingCategory.POLICY_INTERPRETATION,
    EventType.SENTIMENT_ANALYZED: TrainingCategory.SENTIMENT_ANALYSIS,
    EventType.LANGUAGE_DETECTED: TrainingCategory.LANGUAGE_DETECTION,
    EventType.NETWORK_RAID_DETECTED: TrainingCategory.NETWORK_ANALYSIS,
    EventType.NETWORK_BOT_PATTERN: TrainingCategory.NETWORK_ANALYSIS,
}

_NESTED_KEYS = ("analysis", "deep_intent", "evaluation")
_INPUT_KEYS = ("evidence", "text", "message", "content")


def _clip(text: str, limit: int = 500) -> str:
    return text[:limit]


def _dump(payload: dict[str, Any]) -> str:
    return _clip(json.dumps(payload, ensure_ascii=False, default=str))


def extract_confidence(payload: dict[str, Any]) -> float | None:
    """Model confidence carried by a prediction payload.

    Looks at the top-level ``confidence`` first, then the nested
    ``analysis``, ``deep_intent`` and ``evaluation`` shapes, then the
    magnitude of a sentiment ``score``. None when the payload has none.
    """
    if payload.get("confidence") is not None:
        return float(payload["confidence"])
    for key in _NESTED_KEYS:
        nested = payload.get(key)
        if isinstance(nested, dict) and nested.get("confidence") is not None:
            return float(nested["confidence"])
    if payload.get("score") is not None and "sentiment" in payload:
        return min(abs(float(payload["score"])), 1.0)
    return None


def extract_input(payload: dict[str, Any]) -> str:
    for key in _INPUT_KEYS:
        if payload.get(key):
            return str(payload[key])
    return _dump(payload)


def extract_output(payload: dict[str, Any]) -> str:
    """The prediction a human is asked to confirm, as one line of text."""
    if payload.get("violation_type"):
        return (
            f"Type: {payload['violation_type']}, "
            f"Severity: {payload.get('severity', 'unknown')}, "
            f"Reasoning: {payload.get('reasoning', '')}"
        )

    analysis = payload.get("analysis")
    if isinstance(analysis, dict) and "is_scam" in analysis:
        return f"Is Scam: {analysis['is_scam']}, Type: {analysis.get('scam_type', 'none')}"

    deep_intent = payload.get("deep_intent")
    if isinstance(deep_intent, dict) and deep_intent.get("primary_intent"):
        return f"Intent: {deep_intent['primary_intent']}"

    evaluation = payload.get("evaluation")
    if isinstance(evaluation, dict) and "violates" in evaluation:
        return f"Violates: {evaluation['violates']}, Reasoning: {evaluation.get('reasoning', '')}"

    if payload.get("sentiment"):
        return f"Sentiment: {payload['sentiment']}, Emotion: {payload.get('emotion', 'neutral')}"

    if payload.get("detected_language"):
        return f"Language: {payload['detected_language']}"

    if payload.get("pattern"):
        return f"Pattern: {payload['pattern']}"

    return _dump(payload)


def _label(payload: dict[str, Any]) -> str:
    if payload.get("violation_type"):
        return str(payload["violation_type"])
    analysis = payload.get("analysis")
    if isinstance(analysis, dict) and "is_scam" in analysis:
        return "scam" if analysis["is_scam"] else "not_scam"
    deep_intent = payload.get("deep_intent")
    if isinstance(deep_intent, dict) and deep_intent.get("primary_intent"):
        return str(deep_intent["primary_intent"])
    evaluation = payload.get("evaluation")
    if isinstance(evaluation, dict) and "violates" in evaluation:
        return "violates" if evaluation["violates"] else "compliant"
    for key in ("sentiment", "detected_language", "pattern"):
        if payload.get(key):
            return str(payload[key])
    return "unknown"


def extract_predictions(payload: dict[str, Any], confidence: float) -> list[dict[str, Any]]:
    return [{"label": _label(payload), "confidence": confidence}]


def committee_diversity(outputs: list[str]) -> float:
    """Distinct outputs over committee size; 0.0 for an empty committee."""
    if not outputs:
        return 0.0
    return len(set(outputs)) / len(outputs)
