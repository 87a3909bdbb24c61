"""Tests for the A/B testing engine."""

import asyncio
import json

import pytest

from conftest import FakeInference, violation_event
from tuneloop.abtest import (
    ABTestEngine,
    ModelConfig,
    ModelOutput,
    TaskType,
    Winner,
    parse_confidence,
    task_type_for,
    word_overlap,
)
from tuneloop.events import EventType
from tuneloop.schema import ABTestingConfig, OrchestratorConfig

EXPECTED = "Type: phishing, Severity: high, Confidence: 0.95"
GOOD_ANSWER = (
    "Type: phishing, Severity: high, Confidence: 0.95 because the link impersonates "
    "staff and asks for credentials"
)


class TestScoring:
    """Test confidence parsing and winner selection."""

    def test_parse_confidence(self):
        assert parse_confidence("Confidence: 0.72") == 0.72
        assert parse_confidence("confidence 0.5 overall") == 0.5
        assert parse_confidence("no number here") == 0.8
        assert parse_confidence("Confidence: 7") == 1.0

    def test_word_overlap(self):
        assert word_overlap("a b c", "a b c") == 1.0
        assert word_overlap("a b", "c d") == 0.0
        assert word_overlap("", "") == 0.0
        assert word_overlap("A b", "a c") == pytest.approx(1 / 3)

    def test_winner_uses_overlap_with_expected(self):
        engine = ABTestEngine(FakeInference())
        a = ModelOutput(result="something else entirely", confidence=0.99, latency_ms=1)
        b = ModelOutput(result=EXPECTED, confidence=0.1, latency_ms=1900)

        assert engine.determine_winner(a, b, EXPECTED) == Winner.B

    def test_winner_within_margin_is_tie(self):
        engine = ABTestEngine(FakeInference())
        a = ModelOutput(result="x", confidence=0.80, latency_ms=100)
        b = ModelOutput(result="x", confidence=0.85, latency_ms=100)

        # 0.02 quality difference, margin 0.05
        assert engine.determine_winner(a, b) == Winner.TIE

    def test_quality_score(self):
        engine = ABTestEngine(FakeInference())
        output = ModelOutput(result="r", confidence=1.0, latency_ms=1000, reasoning="x" * 51)

        assert engine.quality_score(output) == pytest.approx(0.4 + 0.3 + 0.15)

    def test_task_type_for_category(self):
        assert task_type_for("scam_detection") == TaskType.SCAM_DETECTION
        assert task_type_for("network_analysis") == TaskType.VIOLATION_DETECTION


class TestABTestEngine:
    """Test running comparisons and reporting."""

    def test_base_models_registered(self):
        engine = ABTestEngine(FakeInference())

        assert engine.get_model("qwen3-base").model_id == "qwen3:1.7b"
        assert engine.get_model("llama-base").model_id == "llama3.2:3b"
        with pytest.raises(ValueError):
            engine.get_model("missing")

    def test_setup_test_requires_models(self):
        engine = ABTestEngine(FakeInference())

        with pytest.raises(ValueError, match="candidate"):
            engine.setup_test(TaskType.SCAM_DETECTION, "qwen3-base", "candidate")

    def test_run_test_with_expected_output(self, bus):
        client = FakeInference({"qwen3:1.7b": "no idea", "llama3.2:3b": GOOD_ANSWER})
        engine = ABTestEngine(client, bus=bus)
        completed = []
        bus.subscribe(EventType.AB_TEST_COMPLETED, completed.append)

        result = asyncio.run(engine.run_test(TaskType.VIOLATION_DETECTION, "prompt", EXPECTED))

        assert result.winner == Winner.B
        assert result.metrics["accuracy_delta"] > 0
        assert result.output_b.confidence == 0.95
        assert len(completed) == 1
        assert completed[0].payload["winner"] == "B"
        assert engine.model_stats("llama-base").wins == 1
        assert engine.model_stats("qwen3-base").losses == 1

    def test_inference_failure_scores_as_error(self):
        client = FakeInference(
            {"qwen3:1.7b": ConnectionError("refused"), "llama3.2:3b": GOOD_ANSWER}
        )
        engine = ABTestEngine(client)

        result = asyncio.run(engine.run_test(TaskType.VIOLATION_DETECTION, "prompt"))

        assert result.output_a.result == "ERROR"
        assert result.output_a.confidence == 0.0
        assert result.winner == Winner.B

    def test_both_models_failing_is_unknown(self, bus):
        client = FakeInference(
            {"qwen3:1.7b": ConnectionError("refused"), "llama3.2:3b": TimeoutError()}
        )
        engine = ABTestEngine(client, bus=bus)
        completed = []
        bus.subscribe(EventType.AB_TEST_COMPLETED, completed.append)

        result = asyncio.run(engine.run_test(TaskType.VIOLATION_DETECTION, "prompt", EXPECTED))
        batch = asyncio.run(
            engine.run_batch("qwen3-base", "llama-base", TaskType.VIOLATION_DETECTION, [("p", None)])
        )

        assert result.winner == Winner.UNKNOWN
        assert result.output_a.failed and result.output_b.failed
        assert completed[0].payload["winner"] == "unknown"
        assert (batch.total, batch.unknown, batch.delta) == (0, 1, 0.0)
        assert engine.model_stats("llama-base").total == 0
        assert len(engine.results()) == 2
        with pytest.raises(ValueError, match="No test results"):
            engine.comparison_report("qwen3-base", "llama-base")

    def test_run_batch_tallies(self):
        client = FakeInference({"qwen3:1.7b": EXPECTED, "llama3.2:3b": "wrong"})
        engine = ABTestEngine(client)
        cases = [("p1", EXPECTED), ("p2", EXPECTED), ("p3", EXPECTED)]

        batch = asyncio.run(
            engine.run_batch("qwen3-base", "llama-base", TaskType.VIOLATION_DETECTION, cases)
        )

        assert batch.total == 3
        assert batch.a_wins == 3
        assert batch.delta == -1.0

    def test_report_needs_more_data(self):
        engine = ABTestEngine(FakeInference({"llama3.2:3b": GOOD_ANSWER}))
        asyncio.run(engine.run_test(TaskType.VIOLATION_DETECTION, "p", EXPECTED))

        report = engine.comparison_report("qwen3-base", "llama-base")
        assert report.recommendation == "need_more_data"
        assert report.total_tests == 1

    def test_report_recommends_promotion(self):
        engine = ABTestEngine(
            FakeInference({"llama3.2:3b": GOOD_ANSWER}),
            promotion=OrchestratorConfig(min_tests_before_promotion=4),
        )
        for _ in range(4):
            asyncio.run(engine.run_test(TaskType.VIOLATION_DETECTION, "p", EXPECTED))

        report = engine.comparison_report("qwen3-base", "llama-base")
        assert report.win_rate == 1.0
        assert report.overall_winner == Winner.B
        assert report.confidence == 1.0
        assert report.recommendation == "promote_B"
        assert report.by_task_type["violation_detection"]["sample_size"] == 4

    def test_report_keeps_a(self):
        engine = ABTestEngine(
            FakeInference({"qwen3:1.7b": GOOD_ANSWER}),
            promotion=OrchestratorConfig(min_tests_before_promotion=2),
        )
        for _ in range(2):
            asyncio.run(engine.run_test(TaskType.VIOLATION_DETECTION, "p", EXPECTED))

        assert engine.comparison_report("qwen3-base", "llama-base").recommendation == "keep_A"

    def test_report_without_results(self):
        with pytest.raises(ValueError):
            ABTestEngine(FakeInference()).comparison_report("qwen3-base", "llama-base")

    def test_journal_replay(self, tmp_path):
        client = FakeInference({"llama3.2:3b": GOOD_ANSWER})
        engine = ABTestEngine(client, results_dir=tmp_path)
        for _ in range(2):
            asyncio.run(engine.run_test(TaskType.SCAM_DETECTION, "p", EXPECTED))

        restored = ABTestEngine(client, results_dir=tmp_path)
        assert len(restored.results()) == 2
        assert restored.model_stats("llama-base", TaskType.SCAM_DETECTION).wins == 2

        path = restored.export_results("export.json")
        assert path.exists()

    def test_journal_is_compacted(self, tmp_path):
        client = FakeInference({"llama3.2:3b": GOOD_ANSWER})
        config = ABTestingConfig(max_results=3)
        engine = ABTestEngine(client, config, results_dir=tmp_path)
        for i in range(5):
            asyncio.run(engine.run_test(TaskType.SCAM_DETECTION, f"p{i}", EXPECTED))
        assert len(engine.journal_path.read_text().splitlines()) == 5

        asyncio.run(engine.run_test(TaskType.SCAM_DETECTION, "p5", EXPECTED))

        lines = engine.journal_path.read_text().splitlines()
        assert len(lines) == 3
        assert [json.loads(line)["input"] for line in lines] == ["p3", "p4", "p5"]

    def test_oversized_journal_trimmed_on_start(self, tmp_path):
        client = FakeInference({"llama3.2:3b": GOOD_ANSWER})
        engine = ABTestEngine(client, results_dir=tmp_path)
        for i in range(7):
            asyncio.run(engine.run_test(TaskType.SCAM_DETECTION, f"p{i}", EXPECTED))

        config = ABTestingConfig(max_results=3)
        viewer = ABTestEngine(client, config, results_dir=tmp_path, compact_journal=False)
        assert len(viewer.results()) == 3
        assert len(engine.journal_path.read_text().splitlines()) == 7

        restored = ABTestEngine(client, config, results_dir=tmp_path)
        assert [r.input for r in restored.results()] == ["p4", "p5", "p6"]
        assert len(engine.journal_path.read_text().splitlines()) == 3

    def test_export_without_directory(self):
        with pytest.raises(ValueError):
            ABTestEngine(FakeInference()).export_results("out.json")


class TestLiveSampling:
    """Test shadow comparisons triggered by detector events."""

    def test_active_test_is_sampled(self, bus):
        client = FakeInference({"llama3.2:3b": GOOD_ANSWER})
        engine = ABTestEngine(client, config=ABTestingConfig(sample_rate=1.0), bus=bus)
        engine.register_model(ModelConfig(name="candidate", type="fine_tuned", model_id="cand:1"))
        engine.setup_test(TaskType.VIOLATION_DETECTION, "qwen3-base", "candidate")

        async def run():
            await bus.publish(violation_event())
            await bus.drain()

        asyncio.run(run())

        assert len(engine.results()) == 1
        result = engine.results()[0]
        assert result.model_b == "candidate"
        assert result.guild_id == "guild-1"
        assert {model for model, _ in client.calls} == {"qwen3:1.7b", "cand:1"}

    def test_no_active_test_no_sampling(self, bus):
        engine = ABTestEngine(FakeInference(), config=ABTestingConfig(sample_rate=1.0), bus=bus)

        async def run():
            await bus.publish(violation_event())
            await bus.drain()

        asyncio.run(run())
        assert engine.results() == []

    def test_clear_test(self):
        engine = ABTestEngine(FakeInference())
        engine.setup_test(TaskType.SCAM_DETECTION, "qwen3-base", "llama-base")
        engine.clear_test(TaskType.SCAM_DETECTION)

        assert engine.active_tests() == {}
