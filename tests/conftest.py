from __future__ import annotations

import sys
from datetime import datetime
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from tuneloop.collector import (  # noqa: E402
    ExampleCollector,
    ModelTarget,
    QualityAssessment,
    QualityFactors,
    QualityTier,
    TrainingCategory,
    TrainingExample,
)
from tuneloop.events import DomainEvent, EventBus, EventType  # noqa: E402
from tuneloop.orchestrator import TrainerRunner  # noqa: E402
from tuneloop.schema import GeneralConfig, PipelineConfig, TrainerConfig  # noqa: E402

LONG_REASONING = (
    "The message repeats a phishing link three times and impersonates "
    "server staff to request account credentials."
)

_SCORES = {
    QualityTier.GOLD: 0.95,
    QualityTier.SILVER: 0.80,
    QualityTier.BRONZE: 0.65,
    QualityTier.REJECT: 0.40,
}

_counter = 0


def make_example(
    category: TrainingCategory = TrainingCategory.VIOLATION_DETECTION,
    tier: QualityTier = QualityTier.GOLD,
    outcome: str = "success",
    score: float | None = None,
    timestamp: datetime | None = None,
    model_target: ModelTarget = ModelTarget.QWEN,
) -> TrainingExample:
    """Build a graded example without going through a mapper."""
    global _counter
    _counter += 1
    return TrainingExample(
        id=f"{category.value}_test_{_counter}",
        category=category,
        model_target=model_target,
        input=f"input {_counter}",
        output=f"output {_counter}",
        quality=QualityAssessment(
            tier=tier,
            score=_SCORES[tier] if score is None else score,
            factors=QualityFactors(confidence_score=0.9, has_clear_outcome=True),
        ),
        metadata={"outcome": outcome},
        timestamp=timestamp or datetime.now(),
    )


def violation_event(
    confidence: float = 0.95,
    reasoning: str = LONG_REASONING,
    violation_type: str = "phishing",
    guild_id: str = "guild-1",
) -> DomainEvent:
    return DomainEvent(
        event_type=EventType.VIOLATION_DETECTED,
        payload={
            "evidence": "click here to verify your account",
            "violation_type": violation_type,
            "severity": "high",
            "confidence": confidence,
            "reasoning": reasoning,
        },
        user_id="user-1",
        guild_id=guild_id,
    )


class FakeInference:
    """Scripted text generator keyed by model id.

    A response may be a string, an exception instance (raised), or a
    callable taking the prompt.
    """

    def __init__(self, responses: dict | None = None, default: str = "no opinion"):
        self.responses = dict(responses or {})
        self.default = default
        self.calls: list[tuple[str, str]] = []

    async def generate(self, model_id: str, prompt: str) -> str:
        self.calls.append((model_id, prompt))
        response = self.responses.get(model_id, self.default)
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(prompt)
        return response


class FakeTrainer(TrainerRunner):
    """Trainer that records commands instead of running them.

    ``during_create`` is awaited with the target name while the trainer call
    is in progress.
    """

    def __init__(self, modelfiles_dir: Path, fail_with: str | None = None):
        super().__init__(TrainerConfig(), modelfiles_dir=modelfiles_dir)
        self.fail_with = fail_with
        self.commands: list[list[str]] = []
        self.during_create = None

    async def create(self, target: str, modelfile: Path, dataset: Path | None = None) -> str:
        if self.during_create is not None:
            await self.during_create(target)
        return await super().create(target, modelfile, dataset)

    def _run(self, cmd: list[str]) -> str:
        self.commands.append(cmd)
        if self.fail_with:
            raise RuntimeError(self.fail_with)
        return "success"


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def collector(tmp_path: Path) -> ExampleCollector:
    return ExampleCollector(data_dir=tmp_path / "examples")


@pytest.fixture
def fake_client() -> FakeInference:
    return FakeInference()


@pytest.fixture
def trainer(tmp_path: Path) -> FakeTrainer:
    return FakeTrainer(tmp_path / "modelfiles")


@pytest.fixture
def pipeline_config(tmp_path: Path) -> PipelineConfig:
    config = PipelineConfig(general=GeneralConfig(data_dir=tmp_path / "data"))
    config.orchestrator.auto_fine_tune = False
    config.continuous.enabled = False
    return config
