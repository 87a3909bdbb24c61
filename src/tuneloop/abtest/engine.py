"""A/B testing of fine-tuned models against their base models.

Both models answer the same prompt concurrently; the winner is decided by
word overlap with an expected output when one is known, and by a
confidence/reasoning/latency heuristic otherwise. Per-model statistics drive
the comparison report that gates promotion.
"""

from __future__ import annotations

import asyncio
import random
import re
import secrets
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from ..events import DomainEvent, EventBus, EventType
from ..logging_config import get_logger
from ..schema import ABTestingConfig, OrchestratorConfig
from ..storage import append_jsonl, iter_jsonl, write_json, write_jsonl
from .inference import TextGenerator

logger = get_logger(__name__)

_CONFIDENCE_RE = re.compile(r"confidence[:\s]+([0-9.]+)", re.IGNORECASE)


class TaskType(str, Enum):
    VIOLATION_DETECTION = "violation_detection"
    INTENT_CLASSIFICATION = "intent_classification"
    SCAM_DETECTION = "scam_detection"
    TOOL_SELECTION = "tool_selection"
    SENTIMENT_ANALYSIS = "sentiment_analysis"
    POLICY_INTERPRETATION = "policy_interpretation"


def task_type_for(category: str) -> TaskType:
    """Task type a training category is evaluated under."""
    try:
        return TaskType(str(getattr(category, "value", category)))
    except ValueError:
        return TaskType.VIOLATION_DETECTION


class Winner(str, Enum):
    A = "A"
    B = "B"
    TIE = "tie"
    # both models failed to answer
    UNKNOWN = "unknown"


INFERENCE_ERROR = "ERROR"


@dataclass
class ModelConfig:
    """A model that can take part in a test."""

    name: str
    type: str
    model_id: str
    description: str = ""
    trained_on: str | None = None
    fine_tuned_at: datetime | None = None

    def __post_init__(self) -> None:
        if self.type not in ("base", "fine_tuned"):
            raise ValueError(f"Model type must be 'base' or 'fine_tuned', got {self.type!r}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type,
            "model_id": self.model_id,
            "description": self.description,
            "trained_on": self.trained_on,
            "fine_tuned_at": self.fine_tuned_at.isoformat() if self.fine_tuned_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ModelConfig:
        fine_tuned_at = data.get("fine_tuned_at")
        return cls(
            name=data["name"],
            type=data.get("type", "base"),
            model_id=data.get("model_id", data["name"]),
            description=data.get("description", ""),
            trained_on=data.get("trained_on"),
            fine_tuned_at=datetime.fromisoformat(fine_tuned_at) if fine_tuned_at else None,
        )


BASE_MODELS = (
    ModelConfig(
        name="qwen3-base",
        type="base",
        model_id="qwen3:1.7b",
        description="Base Qwen3 1.7B model, fast context understanding",
    ),
    ModelConfig(
        name="llama-base",
        type="base",
        model_id="llama3.2:3b",
        description="Base Llama 3.2 3B model, reasoning and tool selection",
    ),
)


@dataclass
class ModelOutput:
    result: str
    confidence: float
    latency_ms: float
    reasoning: str | None = None

    @property
    def failed(self) -> bool:
        return self.result == INFERENCE_ERROR

    def to_dict(self) -> dict[str, Any]:
        return {
            "result": self.result,
            "confidence": self.confidence,
            "latency_ms": self.latency_ms,
            "reasoning": self.reasoning,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ModelOutput:
        return cls(
            result=data.get("result", ""),
            confidence=float(data.get("confidence", 0.0)),
            latency_ms=float(data.get("latency_ms", 0.0)),
            reasoning=data.get("reasoning"),
        )


@dataclass
class ABTestResult:
    """One head-to-head comparison. Immutable once recorded."""

    id: str
    task_type: TaskType
    model_a: str
    model_b: str
    input: str
    output_a: ModelOutput
    output_b: ModelOutput
    winner: Winner
    metrics: dict[str, float]
    expected_output: str | None = None
    guild_id: str = "unknown"
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "task_type": self.task_type.value,
            "guild_id": self.guild_id,
            "model_a": self.model_a,
            "model_b": self.model_b,
            "input": self.input,
            "expected_output": self.expected_output,
            "output_a": self.output_a.to_dict(),
            "output_b": self.output_b.to_dict(),
            "winner": self.winner.value,
            "metrics": self.metrics,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ABTestResult:
        return cls(
            id=data["id"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            task_type=TaskType(data["task_type"]),
            guild_id=data.get("guild_id", "unknown"),
            model_a=data["model_a"],
            model_b=data["model_b"],
            input=data.get("input", ""),
            expected_output=data.get("expected_output"),
            output_a=ModelOutput.from_dict(data.get("output_a", {})),
            output_b=ModelOutput.from_dict(data.get("output_b", {})),
            winner=Winner(data["winner"]),
            metrics=data.get("metrics", {}),
        )


@dataclass
class ModelTaskStats:
    total: int = 0
    wins: int = 0
    losses: int = 0
    ties: int = 0

    @property
    def win_rate(self) -> float:
        return self.wins / self.total if self.total else 0.0

    def record(self, outcome: str) -> None:
        self.total += 1
        if outcome == "win":
            self.wins += 1
        elif outcome == "loss":
            self.losses += 1
        else:
            self.ties += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "wins": self.wins,
            "losses": self.losses,
            "ties": self.ties,
            "win_rate": self.win_rate,
        }


@dataclass
class BatchResult:
    total: int = 0
    a_wins: int = 0
    b_wins: int = 0
    ties: int = 0
    # not part of total
    unknown: int = 0

    @property
    def delta(self) -> float:
        """B win share minus A win share."""
        if not self.total:
            return 0.0
        return self.b_wins / self.total - self.a_wins / self.total


@dataclass
class ComparisonReport:
    model_a: str
    model_b: str
    total_tests: int
    win_rate: float
    overall_winner: Winner
    confidence: float
    by_task_type: dict[str, dict[str, Any]]
    recommendation: str
    reasoning: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "model_a": self.model_a,
            "model_b": self.model_b,
            "total_tests": self.total_tests,
            "win_rate": self.win_rate,
            "overall_winner": self.overall_winner.value,
            "confidence": self.confidence,
            "by_task_type": self.by_task_type,
            "recommendation": self.recommendation,
            "reasoning": self.reasoning,
        }


def parse_confidence(text: str, default: float = 0.8) -> float:
    match = _CONFIDENCE_RE.search(text or "")
    value = default
    if match:
        try:
            value = float(match.group(1))
        except ValueError:
            value = default
    return max(0.0, min(1.0, value))


def word_overlap(output: str, expected: str) -> float:
    """Jaccard similarity of lowercase whitespace-split words."""
    output_words = set(output.lower().split())
    expected_words = set(expected.lower().split())
    union = output_words | expected_words
    if not union:
        return 0.0
    return len(output_words & expected_words) / len(union)


def winner_for_rate(win_rate: float) -> Winner:
    if win_rate > 0.55:
        return Winner.B
    if win_rate < 0.45:
        return Winner.A
    return Winner.TIE


class ABTestEngine:
    """Runs shadow comparisons and keeps per-model win statistics.

    Results are held in memory (bounded by ``max_results``) and appended to
    ``{results_dir}/results.jsonl``; the journal is replayed into the
    statistics on construction. Once the journal holds twice ``max_results``
    lines it is rewritten with the retained results only. Pass
    ``compact_journal=False`` for a read-only view of another process's
    journal.
    """

    def __init__(
        self,
        client: TextGenerator,
        config: ABTestingConfig | None = None,
        promotion: OrchestratorConfig | None = None,
        results_dir: Path | None = None,
        bus: EventBus | None = None,
        inference_timeout: float = 60.0,
        rng: random.Random | None = None,
        compact_journal: bool = True,
    ):
        self.client = client
        self.config = config or ABTestingConfig()
        self.promotion = promotion or OrchestratorConfig()
        self.results_dir = results_dir
        self.bus = bus
        self.inference_timeout = inference_timeout
        self._rng = rng or random.Random()
        self.compact_journal = compact_journal
        self._journal_lines = 0

        self._models: dict[str, ModelConfig] = {}
        self._active: dict[TaskType, tuple[str, str]] = {}
        self._results: deque[ABTestResult] = deque(maxlen=self.config.max_results)
        self._stats: dict[str, dict[TaskType, ModelTaskStats]] = {}

        for model in BASE_MODELS:
            self.register_model(model)

        if self.results_dir is not None:
            self._replay_journal()

        if bus is not None:
            self.attach(bus)

    def attach(self, bus: EventBus) -> None:
        self.bus = bus
        bus.subscribe(EventType.VIOLATION_DETECTED, self.on_violation_detected)
        bus.subscribe(EventType.SCAM_DETECTED, self.on_scam_detected)
        bus.subscribe(EventType.INTENT_ANALYZED, self.on_intent_analyzed)

    # ------------------------------------------------------------------
    # Models and active tests
    # ------------------------------------------------------------------

    def register_model(self, config: ModelConfig) -> None:
        self._models[config.name] = config
        self._stats.setdefault(config.name, {})
        logger.info(f"Registered model: {config.name} ({config.type})")

    def has_model(self, name: str) -> bool:
        return name in self._models

    def get_model(self, name: str) -> ModelConfig:
        try:
            return self._models[name]
        except KeyError:
            raise ValueError(f"Model not found: {name}") from None

    def models(self) -> list[ModelConfig]:
        return list(self._models.values())

    def setup_test(self, task_type: TaskType, model_a: str, model_b: str) -> None:
        """Activate live comparison of ``model_a`` against ``model_b``."""
        missing = [name for name in (model_a, model_b) if name not in self._models]
        if missing:
            raise ValueError(f"Models not found: {', '.join(missing)}")
        task_type = TaskType(task_type)
        self._active[task_type] = (model_a, model_b)
        logger.info(f"A/B test configured for {task_type.value}: {model_a} vs {model_b}")

    def clear_test(self, task_type: TaskType) -> None:
        self._active.pop(TaskType(task_type), None)

    def active_tests(self) -> dict[TaskType, tuple[str, str]]:
        return dict(self._active)

    # ------------------------------------------------------------------
    # Running tests
    # ------------------------------------------------------------------

    async def run_test(
        self,
        task_type: TaskType,
        input: str,
        expected_output: str | None = None,
        model_a: str = "qwen3-base",
        model_b: str = "llama-base",
        guild_id: str = "unknown",
    ) -> ABTestResult:
        task_type = TaskType(task_type)
        config_a = self.get_model(model_a)
        config_b = self.get_model(model_b)

        output_a, output_b = await asyncio.gather(
            self._infer(config_a, input),
            self._infer(config_b, input),
        )

        winner = self.determine_winner(output_a, output_b, expected_output)
        result = ABTestResult(
            id=f"ab_{int(time.time() * 1000)}_{secrets.token_hex(5)}",
            task_type=task_type,
            guild_id=guild_id,
            model_a=model_a,
            model_b=model_b,
            input=input,
            expected_output=expected_output,
            output_a=output_a,
            output_b=output_b,
            winner=winner,
            metrics=self.compute_metrics(output_a, output_b, expected_output),
        )
        self._record(result)

        if self.bus is not None:
            await self.bus.publish(
                DomainEvent(
                    event_type=EventType.AB_TEST_COMPLETED,
                    payload={
                        "test_id": result.id,
                        "task_type": task_type.value,
                        "model_a": model_a,
                        "model_b": model_b,
                        "winner": winner.value,
                        "metrics": result.metrics,
                    },
                    guild_id=None if guild_id == "unknown" else guild_id,
                )
            )

        logger.info(
            f"A/B test {result.id} completed: winner={winner.value} "
            f"(quality delta {result.metrics['quality_delta']:+.2f})"
        )
        return result

    async def run_batch(
        self,
        model_a: str,
        model_b: str,
        task_type: TaskType,
        cases: list[tuple[str, str | None]],
    ) -> BatchResult:
        """Run ``cases`` one after another and tally the winners."""
        batch = BatchResult()
        for prompt, expected in cases:
            result = await self.run_test(task_type, prompt, expected, model_a, model_b)
            if result.winner == Winner.UNKNOWN:
                batch.unknown += 1
                continue
            batch.total += 1
            if result.winner == Winner.A:
                batch.a_wins += 1
            elif result.winner == Winner.B:
                batch.b_wins += 1
            else:
                batch.ties += 1
        return batch

    async def _infer(self, model: ModelConfig, prompt: str) -> ModelOutput:
        start = time.perf_counter()
        try:
            response = await asyncio.wait_for(
                self.client.generate(model.model_id, prompt),
                timeout=self.inference_timeout,
            )
        except Exception as e:
            latency_ms = (time.perf_counter() - start) * 1000
            logger.error(f"Model {model.name} inference failed: {e!r}")
            return ModelOutput(
                result=INFERENCE_ERROR,
                confidence=0.0,
                latency_ms=latency_ms,
                reasoning=str(e) or type(e).__name__,
            )

        latency_ms = (time.perf_counter() - start) * 1000
        return ModelOutput(
            result=response,
            confidence=parse_confidence(response, self.config.default_confidence),
            latency_ms=latency_ms,
            reasoning=response,
        )

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def quality_score(self, output: ModelOutput) -> float:
        budget = self.config.latency_budget_ms
        score = output.confidence * 0.4
        if output.reasoning and len(output.reasoning) > self.config.min_reasoning_chars:
            score += 0.3
        if output.latency_ms < budget:
            score += 0.3 * (1 - output.latency_ms / budget)
        return min(1.0, score)

    def determine_winner(
        self,
        output_a: ModelOutput,
        output_b: ModelOutput,
        expected_output: str | None = None,
    ) -> Winner:
        if output_a.failed and output_b.failed:
            return Winner.UNKNOWN
        if expected_output:
            score_a = word_overlap(output_a.result, expected_output)
            score_b = word_overlap(output_b.result, expected_output)
            margin = self.config.accuracy_margin
        else:
            score_a = self.quality_score(output_a)
            score_b = self.quality_score(output_b)
            margin = self.config.quality_margin

        if score_a > score_b + margin:
            return Winner.A
        if score_b > score_a + margin:
            return Winner.B
        return Winner.TIE

    def compute_metrics(
        self,
        output_a: ModelOutput,
        output_b: ModelOutput,
        expected_output: str | None = None,
    ) -> dict[str, float]:
        accuracy_delta = 0.0
        if expected_output:
            accuracy_delta = word_overlap(output_b.result, expected_output) - word_overlap(
                output_a.result, expected_output
            )
        return {
            "accuracy_delta": accuracy_delta,
            "confidence_delta": output_b.confidence - output_a.confidence,
            "latency_delta": output_b.latency_ms - output_a.latency_ms,
            "quality_delta": self.quality_score(output_b) - self.quality_score(output_a),
        }

    # ------------------------------------------------------------------
    # Statistics and reporting
    # ------------------------------------------------------------------

    def _record(self, result: ABTestResult, persist: bool = True) -> None:
        self._results.append(result)
        outcomes = {
            Winner.A: ("win", "loss"),
            Winner.B: ("loss", "win"),
            Winner.TIE: ("tie", "tie"),
        }.get(result.winner)
        if outcomes is not None:
            for model, outcome in zip((result.model_a, result.model_b), outcomes):
                per_task = self._stats.setdefault(model, {})
                per_task.setdefault(result.task_type, ModelTaskStats()).record(outcome)

        if persist and self.results_dir is not None:
            append_jsonl(self.journal_path, result.to_dict())
            self._journal_lines += 1
            self._maybe_compact()

    @property
    def journal_path(self) -> Path:
        assert self.results_dir is not None
        return self.results_dir / "results.jsonl"

    def _maybe_compact(self) -> None:
        if not self.compact_journal or self._journal_lines < 2 * self.config.max_results:
            return
        self._journal_lines = write_jsonl(
            self.journal_path, (result.to_dict() for result in self._results)
        )
        logger.info(f"Compacted A/B journal to the last {self._journal_lines} results")

    def _replay_journal(self) -> None:
        replayed = 0
        for record in iter_jsonl(self.journal_path):
            self._journal_lines += 1
            try:
                result = ABTestResult.from_dict(record)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping unreadable A/B result: {e}")
                continue
            self._record(result, persist=False)
            replayed += 1
        if replayed:
            logger.info(f"Replayed {replayed} A/B test results from {self.results_dir}")
        self._maybe_compact()

    def results(self) -> list[ABTestResult]:
        return list(self._results)

    def model_stats(self, model: str, task_type: TaskType | None = None) -> ModelTaskStats:
        per_task = self._stats.get(model, {})
        if task_type is not None:
            return per_task.get(TaskType(task_type), ModelTaskStats())
        combined = ModelTaskStats()
        for stats in per_task.values():
            combined.total += stats.total
            combined.wins += stats.wins
            combined.losses += stats.losses
            combined.ties += stats.ties
        return combined

    def comparison_report(self, model_a: str, model_b: str) -> ComparisonReport:
        tests = [
            r
            for r in self._results
            if r.model_a == model_a and r.model_b == model_b and r.winner != Winner.UNKNOWN
        ]
        if not tests:
            raise ValueError(f"No test results found for {model_a} vs {model_b}")

        min_tests = self.promotion.min_tests_before_promotion
        min_rate = self.promotion.min_win_rate_for_promotion
        win_rate = sum(1 for t in tests if t.winner == Winner.B) / len(tests)

        by_task_type: dict[str, dict[str, Any]] = {}
        for task_type in sorted({t.task_type for t in tests}, key=lambda t: t.value):
            task_tests = [t for t in tests if t.task_type == task_type]
            task_rate = sum(1 for t in task_tests if t.winner == Winner.B) / len(task_tests)
            by_task_type[task_type.value] = {
                "winner": winner_for_rate(task_rate).value,
                "win_rate": task_rate,
                "sample_size": len(task_tests),
            }

        if len(tests) < min_tests:
            recommendation = "need_more_data"
            reasoning = (
                f"Only {len(tests)} tests completed. Need {min_tests} minimum "
                "for statistical significance."
            )
        elif win_rate >= min_rate:
            recommendation = "promote_B"
            reasoning = (
                f"Model B ({model_b}) outperforms Model A with {win_rate:.1%} win rate "
                f"over {len(tests)} tests. Recommend promoting to production."
            )
        elif win_rate <= 1 - min_rate:
            recommendation = "keep_A"
            reasoning = f"Model A ({model_a}) outperforms Model B. Keep using Model A."
        else:
            recommendation = "need_more_data"
            reasoning = (
                f"Results are inconclusive. Win rate: {win_rate:.1%}. "
                "Need more tests or larger improvement."
            )

        report = ComparisonReport(
            model_a=model_a,
            model_b=model_b,
            total_tests=len(tests),
            win_rate=win_rate,
            overall_winner=winner_for_rate(win_rate),
            confidence=abs(win_rate - 0.5) * 2,
            by_task_type=by_task_type,
            recommendation=recommendation,
            reasoning=reasoning,
        )
        logger.info(
            f"Comparison {model_a} vs {model_b}: winner={report.overall_winner.value} "
            f"recommendation={recommendation}"
        )
        return report

    def export_results(self, filename: str) -> Path:
        if self.results_dir is None:
            raise ValueError("Cannot export results without a results directory")
        path = self.results_dir / filename
        write_json(path, [result.to_dict() for result in self._results])
        logger.info(f"Exported {len(self._results)} test results to {path}")
        return path

    def get_stats(self) -> dict[str, Any]:
        by_task_type: dict[str, int] = {}
        for result in self._results:
            by_task_type[result.task_type.value] = by_task_type.get(result.task_type.value, 0) + 1

        by_model: dict[str, dict[str, Any]] = {}
        for model, per_task in self._stats.items():
            tests = sum(stats.total for stats in per_task.values())
            rates = [stats.win_rate for stats in per_task.values() if stats.total]
            by_model[model] = {
                "tests": tests,
                "avg_win_rate": sum(rates) / len(rates) if rates else 0.0,
            }

        return {
            "total_tests": len(self._results),
            "by_task_type": by_task_type,
            "by_model": by_model,
            "active_tests": {
                task_type.value: {"model_a": a, "model_b": b}
                for task_type, (a, b) in self._active.items()
            },
        }

    # ------------------------------------------------------------------
    # Live sampling
    # ------------------------------------------------------------------

    def _sample(self, event: DomainEvent, task_type: TaskType, prompt: str, expected: str) -> None:
        if not self.config.enabled or self.bus is None:
            return
        test = self._active.get(task_type)
        if test is None:
            return
        if self._rng.random() >= self.config.sample_rate:
            return
        model_a, model_b = test
        guild_id = event.guild_id or event.payload.get("guild_id") or "unknown"
        self.bus.spawn(
            self.run_test(task_type, prompt, expected, model_a, model_b, guild_id),
            name=f"ab_test:{task_type.value}:{event.event_id}",
        )

    def on_violation_detected(self, event: DomainEvent) -> None:
        p = event.payload
        prompt = (
            "Analyze this message for content policy violations:\n"
            f'Message: "{p["evidence"]}"\n'
            "Determine violation type, severity, and provide reasoning."
        )
        expected = (
            f"Type: {p['violation_type']}, Severity: {p.get('severity', 'unknown')}, "
            f"Confidence: {float(p['confidence']):.2f}"
        )
        self._sample(event, TaskType.VIOLATION_DETECTION, prompt, expected)

    def on_scam_detected(self, event: DomainEvent) -> None:
        p = event.payload
        analysis = p["analysis"]
        prompt = (
            "Analyze this message for scam indicators:\n"
            f'Message: "{p["text"]}"\n'
            "Determine if scam, type, severity, and provide reasoning."
        )
        expected = (
            f"Is Scam: {bool(analysis['is_scam'])}, Type: {analysis.get('scam_type', 'none')}, "
            f"Confidence: {float(analysis['confidence']):.2f}"
        )
        self._sample(event, TaskType.SCAM_DETECTION, prompt, expected)

    def on_intent_analyzed(self, event: DomainEvent) -> None:
        p = event.payload
        deep = p["deep_intent"]
        prompt = (
            "Analyze the intent and emotional state of this message:\n"
            f'Message: "{p["message"]}"\n'
            "Provide primary intent, emotional state, and suggested action."
        )
        expected = (
            f"Intent: {deep['primary_intent']}, Emotion: {deep.get('emotional_state', 'unknown')}, "
            f"Confidence: {float(deep['confidence']):.2f}"
        )
        self._sample(event, TaskType.INTENT_CLASSIFICATION, prompt, expected)
