"""Per-event-type conversion of domain events into example drafts.

Each mapper turns one event payload into a canonical ``(input, output)``
text pair, metadata and quality factors. A mapper returns ``None`` when the
event should not become training data; a payload missing a required field
raises ``KeyError`` or ``TypeError`` and is reported by the collector.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from ..events import DomainEvent, EventType
from ..schema import QualityConfig
from .example import ModelTarget, QualityFactors, TrainingCategory


@dataclass
class ExampleDraft:
    """An example before grading."""

    category: TrainingCategory
    model_target: ModelTarget
    input: str
    output: str
    factors: QualityFactors
    metadata: dict[str, Any] = field(default_factory=dict)
    system_prompt: str | None = None


Mapper = Callable[[DomainEvent, QualityConfig], "ExampleDraft | None"]

MAPPERS: dict[EventType, Mapper] = {}


def mapper(*event_types: EventType) -> Callable[[Mapper], Mapper]:
    def register(func: Mapper) -> Mapper:
        for event_type in event_types:
            MAPPERS[event_type] = func
        return func

    return register


def _guild(event: DomainEvent) -> str:
    return event.guild_id or event.payload.get("guild_id") or "unknown"


def _fmt(value: Any) -> str:
    return f"{float(value):.2f}"


@mapper(EventType.VIOLATION_DETECTED)
def map_violation(event: DomainEvent, config: QualityConfig) -> ExampleDraft | None:
    p = event.payload
    confidence = float(p["confidence"])
    if confidence < config.min_confidence_for_training:
        return None
    reasoning = p.get("reasoning") or ""

    return ExampleDraft(
        category=TrainingCategory.VIOLATION_DETECTION,
        model_target=ModelTarget.QWEN,
        input=(
            "Analyze this message for content policy violations:\n\n"
            f'Message: "{p["evidence"]}"\n\n'
            "Determine if this violates content policies and provide:\n"
            "1. Violation type (if any)\n"
            "2. Severity level (critical, high, medium, low, none)\n"
            "3. Confidence score (0-1)\n"
            "4. Detailed reasoning"
        ),
        output=(
            "Violation Analysis:\n"
            f"Type: {p['violation_type']}\n"
            f"Severity: {p.get('severity', 'unknown')}\n"
            f"Confidence: {_fmt(confidence)}\n"
            f"Reasoning: {reasoning}"
        ),
        metadata={
            "guild_id": _guild(event),
            "user_id": event.user_id,
            "confidence": confidence,
            "outcome": "success",
            "violation_type": p["violation_type"],
        },
        factors=QualityFactors(
            confidence_score=confidence,
            has_detailed_reasoning=len(reasoning) > 50,
            has_clear_outcome=True,
        ),
    )


@mapper(EventType.INTENT_ANALYZED)
def map_intent(event: DomainEvent, config: QualityConfig) -> ExampleDraft:
    p = event.payload
    deep = p["deep_intent"]
    confidence = float(deep["confidence"])
    reasoning = deep.get("reasoning") or ""

    return ExampleDraft(
        category=TrainingCategory.INTENT_CLASSIFICATION,
        model_target=ModelTarget.QWEN,
        input=(
            "Analyze the intent and emotional state of this message:\n\n"
            f'Message: "{p["message"]}"\n\n'
            "Provide:\n"
            "1. Primary intent type\n"
            "2. Secondary intent (if any)\n"
            "3. Emotional state\n"
            "4. Suggested moderation action\n"
            "5. Detailed reasoning"
        ),
        output=(
            "Intent Analysis:\n"
            f"Primary Intent: {deep['primary_intent']}\n"
            f"Secondary Intent: {deep.get('secondary_intent') or 'none'}\n"
            f"Emotional State: {deep.get('emotional_state', 'unknown')}\n"
            f"Suggested Action: {deep.get('suggested_action', 'none')}\n"
            f"Confidence: {_fmt(confidence)}\n"
            f"Reasoning: {reasoning}"
        ),
        metadata={
            "guild_id": _guild(event),
            "user_id": event.user_id,
            "confidence": confidence,
            "intent_type": deep["primary_intent"],
            "emotional_state": deep.get("emotional_state"),
        },
        factors=QualityFactors(
            confidence_score=confidence,
            has_detailed_reasoning=len(reasoning) > 50,
            has_clear_outcome=True,
            has_contextual_data=bool(p.get("conversational_context")),
        ),
    )


@mapper(EventType.SCAM_DETECTED)
def map_scam(event: DomainEvent, config: QualityConfig) -> ExampleDraft:
    p = event.payload
    analysis = p["analysis"]
    confidence = float(analysis["confidence"])
    is_scam = bool(analysis["is_scam"])
    reasoning = analysis.get("reasoning") or ""
    scam_type = analysis.get("scam_type", "none")

    return ExampleDraft(
        category=TrainingCategory.SCAM_DETECTION,
        model_target=ModelTarget.QWEN,
        input=(
            "Analyze this message for scam indicators:\n\n"
            f'Message: "{p["text"]}"\n\n'
            "Determine:\n"
            "1. Is this a scam? (yes/no)\n"
            "2. Scam type (if applicable)\n"
            "3. Severity level\n"
            "4. Confidence score\n"
            "5. Specific indicators\n"
            "6. Detailed reasoning"
        ),
        output=(
            "Scam Analysis:\n"
            f"Is Scam: {'YES' if is_scam else 'NO'}\n"
            f"Type: {scam_type}\n"
            f"Severity: {analysis.get('severity', 'unknown')}\n"
            f"Confidence: {_fmt(confidence)}\n"
            f"Indicators: {', '.join(analysis.get('indicators', []))}\n"
            f"Reasoning: {reasoning}\n"
            f"Permanent Ban Recommended: {'YES' if analysis.get('should_ban_permanently') else 'NO'}"
        ),
        metadata={
            "guild_id": _guild(event),
            "user_id": event.user_id,
            "confidence": confidence,
            "outcome": "success" if is_scam else "uncertain",
            "scam_type": scam_type,
            "severity": analysis.get("severity"),
        },
        factors=QualityFactors(
            confidence_score=confidence,
            has_detailed_reasoning=len(reasoning) > 50,
            has_clear_outcome=is_scam,
            is_edge_case=scam_type == "social_engineering",
        ),
    )


@mapper(EventType.TOOL_EXECUTED)
def map_tool(event: DomainEvent, config: QualityConfig) -> ExampleDraft:
    p = event.payload
    success = bool(p["success"])

    return ExampleDraft(
        category=TrainingCategory.TOOL_SELECTION,
        model_target=ModelTarget.LLAMA,
        input=(
            "Given this user request, select the appropriate tool and parameters:\n\n"
            f'Request: "{p["input"]}"\n\n'
            "Available tool categories: moderation, trust, analytics, data, intelligence\n\n"
            "Provide:\n"
            "1. Tool name\n"
            "2. Tool category\n"
            "3. Required parameters\n"
            "4. Reasoning for selection"
        ),
        output=(
            "Tool Selection:\n"
            f"Tool: {p['tool_name']}\n"
            f"Category: {p.get('tool_category', 'unknown')}\n"
            f"Result: {'SUCCESS' if success else 'FAILURE'}\n"
            f"Output: {json.dumps(p.get('output'), default=str)}"
        ),
        metadata={
            "guild_id": _guild(event),
            "outcome": "success" if success else "failure",
            "tool_name": p["tool_name"],
            "tool_category": p.get("tool_category"),
        },
        factors=QualityFactors(
            confidence_score=0.95 if success else 0.70,
            has_clear_outcome=True,
            has_contextual_data=True,
        ),
    )


@mapper(EventType.TRUST_SCORE_CHANGED)
def map_trust(event: DomainEvent, config: QualityConfig) -> ExampleDraft:
    p = event.payload
    delta = float(p["delta"])
    reason = p.get("reason") or ""

    return ExampleDraft(
        category=TrainingCategory.TRUST_PREDICTION,
        model_target=ModelTarget.GENERAL,
        input=(
            "Predict the trust score change for this moderation event:\n\n"
            f"User: {p['user_id']}\n"
            f"Current Trust Score: {p['old_score']}\n"
            f"Event: {reason}\n\n"
            "Predict:\n"
            "1. New trust score\n"
            "2. Delta (change amount)\n"
            "3. Reasoning for change"
        ),
        output=(
            "Trust Score Prediction:\n"
            f"Previous Score: {p['old_score']}\n"
            f"New Score: {p['new_score']}\n"
            f"Delta: {'+' if delta > 0 else ''}{p['delta']}\n"
            f"Reasoning: {reason}"
        ),
        metadata={
            "guild_id": p.get("guild_id") or _guild(event),
            "user_id": p["user_id"],
            "trust_score_before": p["old_score"],
            "trust_score_after": p["new_score"],
            "outcome": "success",
        },
        factors=QualityFactors(
            confidence_score=0.90,
            has_clear_outcome=True,
            has_contextual_data=True,
            is_common_pattern=abs(delta) <= 10,
        ),
    )


@mapper(EventType.MODERATION_ACTION_EXECUTED)
def map_moderation(event: DomainEvent, config: QualityConfig) -> ExampleDraft:
    p = event.payload
    reason = p.get("reason") or ""
    duration = p.get("duration")

    return ExampleDraft(
        category=TrainingCategory.MODERATION_DECISION,
        model_target=ModelTarget.GENERAL,
        input=(
            "Determine the appropriate moderation action:\n\n"
            f'Violation: "{reason}"\n'
            f"User: {p['target_user_id']}\n"
            "Context: Standard community guidelines\n\n"
            "What action should be taken?"
        ),
        output=(
            "Moderation Decision:\n"
            f"Action: {p['action_type']}\n"
            f"Duration: {f'{duration}ms' if duration else 'N/A'}\n"
            f"Justification: {reason}"
        ),
        metadata={
            "guild_id": p.get("guild_id") or _guild(event),
            "user_id": p["target_user_id"],
            "outcome": "success",
            "action_type": p["action_type"],
        },
        factors=QualityFactors(
            confidence_score=0.90,
            has_clear_outcome=True,
            has_detailed_reasoning=len(reason) > 20,
        ),
    )


@mapper(EventType.RAG_CONTEXT_ENHANCED)
def map_rag(event: DomainEvent, config: QualityConfig) -> ExampleDraft:
    p = event.payload
    enhanced = float(p["enhanced_confidence"])
    precedents = int(p.get("precedents", 0))

    return ExampleDraft(
        category=TrainingCategory.RAG_CONTEXT_ENHANCEMENT,
        model_target=ModelTarget.GENERAL,
        input=(
            "Analyze this content with historical context:\n\n"
            f"[{precedents} similar past cases available]\n\n"
            "Current case analysis needed.\n\n"
            "Provide enhanced decision using historical precedents."
        ),
        output=(
            "RAG-Enhanced Analysis:\n"
            f"Original Confidence: {_fmt(p.get('original_confidence', 0.0))}\n"
            f"Enhanced Confidence: {_fmt(enhanced)}\n"
            f"Precedents Considered: {precedents}\n"
            f"Enhanced Reasoning: {p.get('enhanced_reasoning', '')}"
        ),
        metadata={
            "guild_id": p.get("guild_id") or _guild(event),
            "confidence": enhanced,
            "outcome": "success",
            "rag_enhanced": True,
            "precedents": precedents,
        },
        factors=QualityFactors(
            confidence_score=enhanced,
            has_detailed_reasoning=True,
            has_clear_outcome=True,
            is_rag_enhanced=True,
            has_multiple_precedents=precedents > 2,
            has_contextual_data=True,
        ),
    )


@mapper(EventType.RAG_SUSPICIOUS_SIMILARITY)
def map_suspicious_similarity(event: DomainEvent, config: QualityConfig) -> ExampleDraft:
    p = event.payload
    similar = int(p["similar_violations"])
    avg_similarity = float(p["avg_similarity"])
    examples = p.get("examples", [])
    past_types = ", ".join(str(e.get("violation_type", "unknown")) for e in examples)
    assessment = (
        "HIGH RISK - Monitor closely"
        if avg_similarity > 0.85
        else "Medium risk - Watch for patterns"
    )

    return ExampleDraft(
        category=TrainingCategory.VIOLATION_DETECTION,
        model_target=ModelTarget.GENERAL,
        input=(
            f"This message is similar to {similar} past violations:\n\n"
            f"Average similarity: {_fmt(avg_similarity)}\n"
            f"Past violation types: {past_types}\n\n"
            "Should this be flagged as suspicious?"
        ),
        output=(
            "Proactive Pattern Detection:\n"
            f"Similar Violations: {similar}\n"
            f"Avg Similarity: {_fmt(avg_similarity)}\n"
            f"Assessment: {assessment}\n"
            f"Past Examples: {json.dumps(examples, indent=2, default=str)}"
        ),
        metadata={
            "guild_id": p.get("guild_id") or _guild(event),
            "confidence": avg_similarity,
            "outcome": "uncertain",
            "rag_enhanced": True,
            "precedents": similar,
        },
        factors=QualityFactors(
            confidence_score=avg_similarity,
            has_contextual_data=True,
            is_rag_enhanced=True,
            has_multiple_precedents=similar > 2,
        ),
    )


@mapper(EventType.AI_CORRECTION)
def map_correction(event: DomainEvent, config: QualityConfig) -> ExampleDraft:
    correction = event.payload["correction"]
    decision = correction["ai_decision"]
    moderator = correction.get("moderator_action", {})
    moderator_reason = moderator.get("reason")

    output_lines = [
        "Corrected Decision:",
        f"AI was WRONG - {correction['category']}",
        f"Mistake: {correction.get('ai_mistake', '')}",
        f"Lesson Learned: {correction.get('lesson', '')}",
        f"Moderator's Action: {moderator.get('type', 'none')}",
    ]
    if moderator_reason:
        output_lines.append(f"Moderator Reasoning: {moderator_reason}")

    return ExampleDraft(
        category=TrainingCategory.HUMAN_CORRECTION,
        model_target=ModelTarget.GENERAL,
        input=(
            "Review this AI decision:\n\n"
            f"AI Decision: {decision['action']}\n"
            f"Target: {decision.get('target', 'unknown')}\n"
            f"Reason: {decision.get('reason', '')}\n"
            f"Confidence: {decision.get('confidence', 'unknown')}\n"
            f"Context: {decision.get('context', '')}\n\n"
            "What is the correct action?"
        ),
        output="\n".join(output_lines),
        metadata={
            "guild_id": correction.get("guild_id") or _guild(event),
            "outcome": "corrected",
            "human_feedback": True,
            "correction_type": correction["category"],
            "confidence": decision.get("confidence"),
        },
        factors=QualityFactors(
            confidence_score=1.0,
            has_detailed_reasoning=True,
            has_human_validation=True,
            has_clear_outcome=True,
            is_edge_case=True,
        ),
    )


@mapper(EventType.POLICY_EVALUATED)
def map_policy(event: DomainEvent, config: QualityConfig) -> ExampleDraft:
    p = event.payload
    policy = p["policy"]
    evaluation = p["evaluation"]
    violates = bool(evaluation["violates"])
    confidence = float(evaluation["confidence"])
    reasoning = evaluation.get("reasoning") or ""

    return ExampleDraft(
        category=TrainingCategory.POLICY_INTERPRETATION,
        model_target=ModelTarget.GENERAL,
        input=(
            "Evaluate if this message violates the policy:\n\n"
            f'Policy: "{policy["description"]}"\n'
            f"Threshold: {policy.get('threshold', 'n/a')}\n\n"
            f'Message: "{p["message"]}"\n\n'
            "Does this violate the policy?"
        ),
        output=(
            "Policy Evaluation:\n"
            f"Violates: {'YES' if violates else 'NO'}\n"
            f"Confidence: {_fmt(confidence)}\n"
            f"Reasoning: {reasoning}"
        ),
        metadata={
            "guild_id": _guild(event),
            "confidence": confidence,
            "outcome": "success" if violates else "uncertain",
        },
        factors=QualityFactors(
            confidence_score=confidence,
            has_detailed_reasoning=len(reasoning) > 30,
            has_clear_outcome=violates,
        ),
    )


@mapper(EventType.SENTIMENT_ANALYZED)
def map_sentiment(event: DomainEvent, config: QualityConfig) -> ExampleDraft:
    p = event.payload
    score = float(p["score"])

    return ExampleDraft(
        category=TrainingCategory.SENTIMENT_ANALYSIS,
        model_target=ModelTarget.QWEN,
        input=(
            "Analyze the sentiment and emotion of this message:\n\n"
            f'Message: "{p["message"]}"\n\n'
            "Provide:\n"
            "1. Overall sentiment (positive, negative, neutral)\n"
            "2. Sentiment score (-1 to 1)\n"
            "3. Primary emotion"
        ),
        output=(
            "Sentiment Analysis:\n"
            f"Sentiment: {p['sentiment']}\n"
            f"Score: {_fmt(score)}\n"
            f"Emotion: {p.get('emotion', 'unknown')}"
        ),
        metadata={
            "guild_id": _guild(event),
            "emotional_state": p.get("emotion"),
            "confidence": abs(score),
        },
        factors=QualityFactors(
            confidence_score=abs(score),
            has_clear_outcome=abs(score) > 0.5,
        ),
    )


@mapper(EventType.NETWORK_RAID_DETECTED, EventType.NETWORK_BOT_PATTERN)
def map_network(event: DomainEvent, config: QualityConfig) -> ExampleDraft:
    p = event.payload
    users = p.get("users", [])
    indicators = ", ".join(p.get("indicators", []))
    confidence = float(p["confidence"])
    likely = confidence > 0.8

    return ExampleDraft(
        category=TrainingCategory.NETWORK_ANALYSIS,
        model_target=ModelTarget.GENERAL,
        input=(
            "Analyze this network activity pattern:\n\n"
            f"Users involved: {len(users)}\n"
            f"Activity indicators: {indicators}\n\n"
            "Is this a coordinated attack or bot activity?"
        ),
        output=(
            "Network Analysis:\n"
            f"Pattern Detected: {p['pattern']}\n"
            f"Confidence: {_fmt(confidence)}\n"
            f"Users Involved: {len(users)}\n"
            f"Indicators: {indicators}\n"
            f"Assessment: {'LIKELY COORDINATED ATTACK' if likely else 'Suspicious but uncertain'}"
        ),
        metadata={
            "guild_id": _guild(event),
            "confidence": confidence,
            "outcome": "success" if likely else "uncertain",
            "pattern": p["pattern"],
        },
        factors=QualityFactors(
            confidence_score=confidence,
            has_clear_outcome=likely,
            has_contextual_data=len(users) > 3,
        ),
    )


@mapper(EventType.USER_PROFILE_UPDATED)
def map_user_profile(event: DomainEvent, config: QualityConfig) -> ExampleDraft:
    p = event.payload
    profile = p["profile"]
    updates = p.get("updates", [])

    return ExampleDraft(
        category=TrainingCategory.USER_PROFILING,
        model_target=ModelTarget.GENERAL,
        input=(
            "Predict user behavior based on profile:\n\n"
            f"User ID: {p['user_id']}\n"
            f"Activity level: {profile.get('activity_level', 'unknown')}\n"
            f"Trust score: {profile.get('trust_score', 'unknown')}\n"
            f"Recent violations: {profile.get('violations', 0)}\n\n"
            "What is the likely behavior pattern?"
        ),
        output=(
            "User Profile Analysis:\n"
            f"Behavior Pattern: {profile.get('behavior_pattern', 'unknown')}\n"
            f"Risk Level: {profile.get('risk_level', 'unknown')}\n"
            f"Predictions: {', '.join(str(u) for u in updates)}"
        ),
        metadata={
            "guild_id": _guild(event),
            "user_id": p["user_id"],
            "trust_score_before": profile.get("trust_score"),
        },
        factors=QualityFactors(
            confidence_score=0.85,
            has_contextual_data=True,
            has_detailed_reasoning=len(updates) > 0,
        ),
    )


@mapper(EventType.WORKFLOW_PARSED)
def map_workflow(event: DomainEvent, config: QualityConfig) -> ExampleDraft:
    p = event.payload
    parsed = p.get("parsed")
    steps = p.get("steps", [])

    return ExampleDraft(
        category=TrainingCategory.WORKFLOW_PARSING,
        model_target=ModelTarget.LLAMA,
        input=(
            "Parse this workflow into actionable steps:\n\n"
            f'Workflow: "{p["workflow_text"]}"\n\n'
            "Provide:\n"
            "1. Parsed steps\n"
            "2. Dependencies\n"
            "3. Execution order"
        ),
        output=(
            "Workflow Parsing:\n"
            f"Steps: {' -> '.join(str(s) for s in steps)}\n"
            f"Parsed Structure: {json.dumps(parsed, indent=2, default=str)}"
        ),
        metadata={
            "guild_id": _guild(event),
            "outcome": "success" if parsed else "failure",
        },
        factors=QualityFactors(
            confidence_score=0.90 if parsed else 0.50,
            has_clear_outcome=bool(parsed),
            has_detailed_reasoning=len(steps) > 1,
        ),
    )


@mapper(EventType.LANGUAGE_DETECTED)
def map_language(event: DomainEvent, config: QualityConfig) -> ExampleDraft:
    p = event.payload
    confidence = float(p["confidence"])

    return ExampleDraft(
        category=TrainingCategory.LANGUAGE_DETECTION,
        model_target=ModelTarget.GENERAL,
        input=(
            "Detect the language of this text:\n\n"
            f'Text: "{p["text"]}"\n\n'
            "What language is this?"
        ),
        output=(
            "Language Detection:\n"
            f"Language: {p['detected_language']}\n"
            f"Confidence: {_fmt(confidence)}"
        ),
        metadata={
            "guild_id": _guild(event),
            "confidence": confidence,
            "outcome": "success" if confidence > 0.8 else "uncertain",
        },
        factors=QualityFactors(
            confidence_score=confidence,
            has_clear_outcome=confidence > 0.8,
        ),
    )
