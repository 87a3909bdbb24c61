"""Tests for the fine-tuning orchestrator."""

import asyncio

import pytest

from conftest import FakeInference, FakeTrainer, make_example
from tuneloop.abtest import ABTestEngine, TaskType
from tuneloop.collector import ExampleCollector, QualityTier, TrainingCategory
from tuneloop.dataset import DatasetExporter
from tuneloop.events import DomainEvent, EventBus, EventType
from tuneloop.orchestrator import (
    FineTuningJob,
    FineTuningOrchestrator,
    JobStore,
    PipelineStage,
    base_model_for,
    render_modelfile,
)
from tuneloop.schema import OrchestratorConfig

SCAM = TrainingCategory.SCAM_DETECTION


def _config(**overrides):
    values = {
        "min_gold_examples": 5,
        "min_total_examples": 10,
        "min_quality_score": 0.85,
        "min_tests_before_promotion": 3,
        "min_win_rate_for_promotion": 0.65,
    }
    values.update(overrides)
    return OrchestratorConfig(**values)


class Harness:
    """Orchestrator with in-memory collaborators over one directory."""

    def __init__(self, tmp_path, config=None, fail_with=None, bus=None):
        self.tmp_path = tmp_path
        self.bus = bus or EventBus()
        self.events = []
        self.bus.subscribe_all(self.events.append)
        self.collector = ExampleCollector()
        self.exporter = DatasetExporter(self.collector, tmp_path / "datasets", seed=1)
        self.engine = ABTestEngine(FakeInference())
        self.trainer = FakeTrainer(tmp_path / "modelfiles", fail_with=fail_with)
        self.config = config or _config()
        self.orchestrator = self.build()

    def build(self, **kwargs):
        return FineTuningOrchestrator(
            self.collector,
            self.exporter,
            self.engine,
            self.trainer,
            JobStore(self.tmp_path / "jobs"),
            self.config,
            bus=self.bus,
            **kwargs,
        )

    def fill(self, category=SCAM, count=10, tier=QualityTier.GOLD):
        for _ in range(count):
            self.collector.add_example(make_example(category=category, tier=tier))

    def published(self, event_type):
        return [e for e in self.events if e.event_type == event_type]

    def ab_result(self, model_b, winner="B"):
        return DomainEvent(
            EventType.AB_TEST_COMPLETED,
            {"model_a": "qwen3-base", "model_b": model_b, "winner": winner, "metrics": {}},
        )


@pytest.fixture
def harness(tmp_path):
    return Harness(tmp_path)


class TestReadiness:
    """Test readiness thresholds."""

    def test_total_threshold(self, tmp_path):
        orchestrator = Harness(tmp_path, config=OrchestratorConfig()).orchestrator
        stats = {
            "by_category": {"scam_detection": 1500},
            "gold_per_category": {"scam_detection": 600},
            "avg_quality_per_category": {"scam_detection": 0.9},
        }
        assert not orchestrator.is_ready(SCAM, stats)

        stats["by_category"]["scam_detection"] = 2000
        assert orchestrator.is_ready(SCAM, stats)

    def test_quality_threshold(self, harness):
        harness.fill(count=10, tier=QualityTier.SILVER)
        assert asyncio.run(harness.orchestrator.check_readiness()) == []

    def test_ready_category_gets_one_job(self, harness):
        harness.fill(count=10)

        jobs = asyncio.run(harness.orchestrator.check_readiness())
        assert [job.category for job in jobs] == [SCAM]
        assert asyncio.run(harness.orchestrator.check_readiness()) == []


class TestJobExecution:
    """Test training runs and their failure path."""

    def test_job_reaches_testing(self, harness):
        harness.fill(count=10)
        job = asyncio.run(harness.orchestrator.create_job(SCAM))

        assert job.stage == PipelineStage.TESTING
        assert job.target_model == "becas-qwen3-scam_detection-v1"
        assert job.training_examples == 10
        assert job.gold_examples == 10
        assert job.dataset_path.exists()
        assert job.modelfile_path.exists()
        assert harness.trainer.commands == [
            ["ollama", "create", job.target_model, "-f", str(job.modelfile_path)]
        ]
        assert harness.engine.has_model(job.target_model)
        assert harness.engine.active_tests()[TaskType.SCAM_DETECTION] == (
            "qwen3-base",
            job.target_model,
        )
        assert len(harness.published(EventType.FINE_TUNING_COMPLETED)) == 1

    def test_llama_category(self, harness):
        harness.fill(category=TrainingCategory.TOOL_SELECTION, count=10)
        job = asyncio.run(harness.orchestrator.create_job(TrainingCategory.TOOL_SELECTION))

        assert base_model_for(TrainingCategory.TOOL_SELECTION) == "llama3.2:3b"
        assert job.target_model == "becas-llama3.2-tool_selection-v1"

    def test_trainer_failure_marks_job_failed(self, tmp_path):
        harness = Harness(tmp_path, fail_with="Trainer exited with code 1: no space left")
        harness.fill(count=10)

        job = asyncio.run(harness.orchestrator.create_job(SCAM))

        assert job.stage == PipelineStage.FAILED
        assert "no space left" in job.error
        failed = harness.published(EventType.FINE_TUNING_FAILED)
        assert failed[0].payload["job_id"] == job.id
        assert not harness.engine.has_model(job.target_model)

    def test_one_job_in_flight_per_category(self, harness):
        harness.fill(count=10)
        asyncio.run(harness.orchestrator.create_job(SCAM))

        with pytest.raises(ValueError, match="already in progress"):
            asyncio.run(harness.orchestrator.create_job(SCAM))

    def test_category_stays_busy_while_trainer_runs(self, harness):
        harness.fill(count=10)
        seen = {}

        async def during_create(target):
            orchestrator = harness.orchestrator
            in_flight = orchestrator.in_flight_job(SCAM)
            seen["in_flight"] = (in_flight.target_model, in_flight.stage)
            seen["created"] = await orchestrator.check_readiness()
            # returns at once instead of waiting for the running job
            with pytest.raises(ValueError, match="already in progress"):
                await asyncio.wait_for(orchestrator.create_job(SCAM), timeout=1)

        harness.trainer.during_create = during_create
        job = asyncio.run(harness.orchestrator.create_job(SCAM))

        assert seen["in_flight"] == (job.target_model, PipelineStage.TRAINING)
        assert seen["created"] == []
        assert job.stage == PipelineStage.TESTING
        assert len(harness.orchestrator.list_jobs(SCAM)) == 1

    def test_version_increments_after_failure(self, tmp_path):
        harness = Harness(tmp_path, fail_with="boom")
        harness.fill(count=10)
        first = asyncio.run(harness.orchestrator.create_job(SCAM))
        harness.trainer.fail_with = None
        second = asyncio.run(harness.orchestrator.create_job(SCAM))

        assert first.version == 1
        assert second.version == 2
        assert second.target_model.endswith("-v2")

    def test_render_modelfile(self):
        text = render_modelfile(
            "qwen3:1.7b",
            "You are a moderator.",
            adapter="data.jsonl",
            parameters={"temperature": 0.3},
            header=["Version: 1"],
        )
        assert text.startswith("# Version: 1\n\nFROM qwen3:1.7b\n")
        assert "ADAPTER data.jsonl" in text
        assert "PARAMETER temperature 0.3" in text


class TestPromotion:
    """Test the promotion gate, promotion and rollback."""

    def _testing_job(self, harness):
        harness.fill(count=10)
        return asyncio.run(harness.orchestrator.create_job(SCAM))

    def test_win_rate_gate(self, harness):
        job = self._testing_job(harness)

        async def feed(winners):
            for winner in winners:
                await harness.bus.publish(harness.ab_result(job.target_model, winner))

        asyncio.run(feed(["B", "A"]))
        assert job.ab_tests_completed == 2
        assert job.win_rate == pytest.approx(0.5)
        assert job.stage == PipelineStage.TESTING

        asyncio.run(feed(["B"]))
        assert job.win_rate == pytest.approx(2 / 3)
        assert job.stage == PipelineStage.EVALUATING
        ready = harness.published(EventType.FINE_TUNING_READY_FOR_PROMOTION)
        assert ready[0].payload["job_id"] == job.id

        # Evaluating jobs no longer count results
        asyncio.run(feed(["A"]))
        assert job.ab_tests_completed == 3

    def test_results_for_other_models_ignored(self, harness):
        job = self._testing_job(harness)
        asyncio.run(harness.bus.publish(harness.ab_result("llama-base")))
        assert job.ab_tests_completed == 0

    def test_auto_promote(self, tmp_path):
        harness = Harness(tmp_path, config=_config(auto_promote=True))
        job = self._testing_job(harness)

        async def feed():
            for _ in range(3):
                await harness.bus.publish(harness.ab_result(job.target_model))

        asyncio.run(feed())
        assert job.stage == PipelineStage.DEPLOYED
        assert harness.orchestrator.deployed_models() == {"scam_detection": job.target_model}

    def test_promote(self, harness):
        job = self._testing_job(harness)
        promoted = asyncio.run(harness.orchestrator.promote(job.id))

        assert promoted.stage == PipelineStage.DEPLOYED
        assert promoted.promoted
        assert promoted.previous_version is None
        assert TaskType.SCAM_DETECTION not in harness.engine.active_tests()
        assert harness.published(EventType.FINE_TUNING_PROMOTED)[0].payload["model"] == job.target_model

    def test_undecided_results_not_counted(self, harness):
        job = self._testing_job(harness)

        asyncio.run(harness.bus.publish(harness.ab_result(job.target_model, "unknown")))

        assert job.ab_tests_completed == 0
        assert job.win_rate == 0.0

    def test_promote_requires_testing_or_evaluating(self, tmp_path):
        harness = Harness(tmp_path, fail_with="boom")
        job = self._testing_job(harness)

        with pytest.raises(ValueError, match="cannot promote"):
            asyncio.run(harness.orchestrator.promote(job.id))

    def test_promote_unknown_job(self, harness):
        with pytest.raises(KeyError):
            asyncio.run(harness.orchestrator.promote("job_missing"))

    def test_rollback_restores_previous(self, harness):
        first = self._testing_job(harness)
        asyncio.run(harness.orchestrator.promote(first.id))
        second = asyncio.run(harness.orchestrator.create_job(SCAM))
        asyncio.run(harness.orchestrator.promote(second.id))
        assert second.previous_version == first.target_model

        result = asyncio.run(harness.orchestrator.rollback(SCAM, "false positives spiked"))

        assert result.ok
        assert result.from_model == second.target_model
        assert result.to_model == first.target_model
        assert second.stage == PipelineStage.DEPLOYED
        assert second.rolled_back
        assert second.error is None
        assert second.rollback_reason == "false positives spiked"
        assert harness.orchestrator.deployed_models() == {"scam_detection": first.target_model}
        assert harness.orchestrator.get_stats()["by_stage"] == {"deployed": 2}

        restored = harness.build()
        assert restored.deployed_models() == {"scam_detection": first.target_model}
        assert restored.get_job(second.id).to_dict()["rolled_back"] is True

    def test_second_rollback_has_nowhere_to_go(self, harness):
        first = self._testing_job(harness)
        asyncio.run(harness.orchestrator.promote(first.id))
        second = asyncio.run(harness.orchestrator.create_job(SCAM))
        asyncio.run(harness.orchestrator.promote(second.id))
        asyncio.run(harness.orchestrator.rollback(SCAM, "regression"))

        result = asyncio.run(harness.orchestrator.rollback(SCAM, "again"))
        assert not result.ok
        assert result.error == "No previous version to rollback to"
        assert not first.rolled_back

    def test_rollback_without_deployment(self, harness):
        result = asyncio.run(harness.orchestrator.rollback(SCAM, "test"))
        assert not result.ok
        assert "No deployed model" in result.error

    def test_rollback_without_previous(self, harness):
        job = self._testing_job(harness)
        asyncio.run(harness.orchestrator.promote(job.id))

        result = asyncio.run(harness.orchestrator.rollback(SCAM, "test"))
        assert not result.ok
        assert result.error == "No previous version to rollback to"


class TestPersistence:
    """Test reloading jobs after a restart."""

    def test_reload_restores_state(self, tmp_path):
        harness = Harness(tmp_path)
        harness.fill(count=10)
        testing = asyncio.run(harness.orchestrator.create_job(SCAM))
        interrupted = FineTuningJob(
            id="job_interrupted",
            category=TrainingCategory.INTENT_CLASSIFICATION,
            base_model="qwen3:1.7b",
            target_model="becas-qwen3-intent_classification-v1",
            version=1,
            stage=PipelineStage.TRAINING,
        )
        harness.orchestrator.store.save(interrupted)

        harness.engine = ABTestEngine(FakeInference())
        restored = harness.build()

        assert restored.get_job("job_interrupted").stage == PipelineStage.FAILED
        assert restored.get_job(testing.id).stage == PipelineStage.TESTING
        assert harness.engine.has_model(testing.target_model)
        assert TaskType.SCAM_DETECTION in harness.engine.active_tests()

    def test_inspection_load_leaves_running_jobs_alone(self, tmp_path):
        harness = Harness(tmp_path)
        running = FineTuningJob(
            id="job_running",
            category=SCAM,
            base_model="qwen3:1.7b",
            target_model="becas-qwen3-scam_detection-v1",
            version=1,
            stage=PipelineStage.TRAINING,
        )
        harness.orchestrator.store.save(running)

        viewer = harness.build(recover_interrupted=False)

        assert viewer.get_job("job_running").stage == PipelineStage.TRAINING
        assert viewer.in_flight_job(SCAM).id == "job_running"
        on_disk = harness.orchestrator.store.load_all()
        assert [job.stage for job in on_disk] == [PipelineStage.TRAINING]
        assert on_disk[0].error is None

    def test_reload_keeps_latest_deployment(self, tmp_path):
        harness = Harness(tmp_path)
        harness.fill(count=10)
        first = asyncio.run(harness.orchestrator.create_job(SCAM))
        asyncio.run(harness.orchestrator.promote(first.id))
        second = asyncio.run(harness.orchestrator.create_job(SCAM))
        asyncio.run(harness.orchestrator.promote(second.id))

        restored = harness.build()
        assert restored.deployed_models() == {"scam_detection": second.target_model}
        assert len(restored.list_jobs(SCAM)) == 2
        assert restored.get_stats()["by_stage"] == {"deployed": 2}
