"""Tests for continuous fine-tuning."""

import asyncio
import random
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest

from conftest import FakeInference, FakeTrainer, make_example
from tuneloop.abtest import ABTestEngine, BatchResult
from tuneloop.collector import ExampleCollector, QualityTier, TrainingCategory
from tuneloop.continuous import (
    ContinuousFineTuner,
    ReplayBuffer,
    UpdateStatus,
    adaptive_rate,
    decay_rate,
    learning_rate,
    replay_count,
)
from tuneloop.events import DomainEvent, EventBus, EventType
from tuneloop.schema import ContinuousConfig, LearningRateSchedule

START = datetime(2026, 1, 1, 12, 0)


class Harness:
    def __init__(self, tmp_path, fail_with=None, **config):
        values = {
            "min_examples_for_update": 5,
            "batch_size": 10,
            "validation_cases": 5,
            "learning_rate_schedule": LearningRateSchedule.CONSTANT,
        }
        values.update(config)
        self.tmp_path = tmp_path
        self.config = ContinuousConfig(**values)
        self.bus = EventBus()
        self.events = []
        self.bus.subscribe_all(self.events.append)
        self.collector = ExampleCollector()
        self.client = FakeInference()
        self.engine = ABTestEngine(self.client)
        self.trainer = FakeTrainer(tmp_path / "modelfiles", fail_with=fail_with)
        self.tuner = self.build()
        self._minutes = 0

    def build(self):
        return ContinuousFineTuner(
            self.collector,
            self.engine,
            self.trainer,
            self.tmp_path / "continuous",
            self.config,
            bus=self.bus,
            rng=random.Random(3),
        )

    def fill(self, count, tier=QualityTier.GOLD, category=TrainingCategory.VIOLATION_DETECTION):
        for _ in range(count):
            self._minutes += 1
            self.collector.add_example(
                make_example(
                    category=category,
                    tier=tier,
                    timestamp=START + timedelta(minutes=self._minutes),
                )
            )

    def published(self, event_type):
        return [e for e in self.events if e.event_type == event_type]


@pytest.fixture
def harness(tmp_path):
    return Harness(tmp_path)


class TestReplayBuffer:
    """Test the bounded replay buffer."""

    def test_fifo_eviction(self):
        buffer = ReplayBuffer(capacity=2)
        first, second, third = (make_example() for _ in range(3))
        for example in (first, second, third):
            buffer.add(example)

        assert len(buffer) == 2
        assert first.id not in buffer
        assert [ex.id for ex in buffer.examples] == [second.id, third.id]

    def test_sample_spreads_across_categories(self):
        buffer = ReplayBuffer(capacity=100)
        for _ in range(20):
            buffer.add(make_example(category=TrainingCategory.VIOLATION_DETECTION))
            buffer.add(make_example(category=TrainingCategory.SCAM_DETECTION))

        sample = buffer.sample(30, random.Random(0))

        assert len(sample) == 30
        by_category = {}
        for example in sample:
            by_category[example.category] = by_category.get(example.category, 0) + 1
        assert by_category == {
            TrainingCategory.VIOLATION_DETECTION: 15,
            TrainingCategory.SCAM_DETECTION: 15,
        }

    def test_sample_small_category(self):
        buffer = ReplayBuffer(capacity=100)
        buffer.add(make_example(category=TrainingCategory.SCAM_DETECTION))
        for _ in range(10):
            buffer.add(make_example(category=TrainingCategory.VIOLATION_DETECTION))

        sample = buffer.sample(6, random.Random(0))
        assert len(sample) == 4
        assert len({ex.id for ex in sample}) == 4

    def test_zero_capacity_and_empty(self):
        buffer = ReplayBuffer(capacity=0)
        buffer.add(make_example())
        assert len(buffer) == 0
        assert buffer.sample(5) == []

    def test_resize(self):
        buffer = ReplayBuffer(capacity=5)
        for _ in range(5):
            buffer.add(make_example())
        buffer.resize(2)
        assert len(buffer) == 2
        with pytest.raises(ValueError):
            buffer.resize(-1)

    def test_dict_roundtrip(self):
        buffer = ReplayBuffer(capacity=10)
        buffer.add(make_example())
        restored = ReplayBuffer.from_dict(buffer.to_dict())

        assert restored.capacity == 10
        assert [ex.id for ex in restored.examples] == [ex.id for ex in buffer.examples]


class TestSchedules:
    """Test learning-rate schedules."""

    def test_replay_count(self):
        assert replay_count(70, 0.3) == 30
        assert replay_count(10, 0.3) == 4
        assert replay_count(10, 0.0) == 0

    def test_decay(self):
        assert decay_rate(1e-4, 0) == 1e-4
        assert decay_rate(1e-4, 2) == pytest.approx(1e-4 * 0.9025)

    def test_adaptive_improving(self):
        assert adaptive_rate(1e-4, [0.0, 0.0, 1.0, 1.0], window=2) == pytest.approx(1.1e-4)

    def test_adaptive_degrading(self):
        assert adaptive_rate(1e-4, [1.0, 1.0, 0.0, 0.0], window=2) == pytest.approx(0.9e-4)

    def test_adaptive_empty_prior_window(self):
        assert adaptive_rate(1e-4, [0.5, 0.5], window=2) == pytest.approx(1.1e-4)

    def test_adaptive_bounds(self):
        assert adaptive_rate(1e-3, [0.0, 1.0], window=1) == 1e-3
        assert adaptive_rate(1e-5, [1.0, 0.0], window=1) == 1e-5

    def test_short_history_uses_base(self):
        assert adaptive_rate(1e-4, [1.0], window=2) == 1e-4
        assert learning_rate(LearningRateSchedule.CONSTANT, 2e-4, 9, [], 10) == 2e-4


class TestIncrementalUpdates:
    """Test the update loop."""

    def test_not_enough_examples(self, harness):
        harness.fill(4)

        assert asyncio.run(harness.tuner.check_and_apply()) is None
        with pytest.raises(RuntimeError):
            asyncio.run(harness.tuner.trigger_update())

    def test_disabled(self, tmp_path):
        harness = Harness(tmp_path, enabled=False)
        harness.fill(10)
        assert asyncio.run(harness.tuner.check_and_apply()) is None

    def test_bronze_examples_ignored(self, harness):
        harness.fill(10, tier=QualityTier.BRONZE)
        assert asyncio.run(harness.tuner.check_and_apply()) is None

    def test_successful_update(self, harness):
        harness.fill(12)
        for _ in range(10):
            harness.tuner.replay_buffer.add(make_example(category=TrainingCategory.SCAM_DETECTION))

        update = asyncio.run(harness.tuner.check_and_apply())

        assert update.status == UpdateStatus.SUCCESS
        assert update.update_number == 0
        assert update.model_name == "becas_continuous_v0"
        assert update.base_model_name == "llama3.2:latest"
        assert update.examples_added == 10
        assert update.replay_examples == 4
        assert update.learning_rate == 1e-4
        assert update.checkpoint_path.exists()
        assert update.dataset_path.exists()
        assert harness.tuner.update_counter == 1
        assert harness.tuner.last_update_time == START + timedelta(minutes=10)
        # 5 validation cases, two models each
        assert len(harness.client.calls) == 10
        assert len(harness.published(EventType.CONTINUOUS_UPDATE_APPLIED)) == 1

    def test_next_update_builds_on_previous(self, harness):
        harness.fill(10)
        asyncio.run(harness.tuner.check_and_apply())
        harness.fill(10)

        update = asyncio.run(harness.tuner.check_and_apply())
        assert update.update_number == 1
        assert update.base_model_name == "becas_continuous_v0"
        assert update.checkpoint_path is None

    def test_failed_update_does_not_advance(self, tmp_path):
        harness = Harness(tmp_path, fail_with="Trainer exited with code 1")
        harness.fill(10)

        update = asyncio.run(harness.tuner.check_and_apply())

        assert update.status == UpdateStatus.FAILED
        assert "code 1" in update.error
        assert harness.tuner.update_counter == 0
        assert harness.tuner.last_update_time is None
        assert harness.published(EventType.CONTINUOUS_UPDATE_APPLIED) == []

        harness.trainer.fail_with = None
        retry = asyncio.run(harness.tuner.check_and_apply())
        assert retry.status == UpdateStatus.SUCCESS
        assert retry.update_number == 0

    def test_drift_rolls_back(self, harness):
        harness.fill(10)
        asyncio.run(harness.tuner.check_and_apply())
        harness.fill(10)

        drifted = BatchResult(total=20, a_wins=5, b_wins=2, ties=13)
        with patch.object(harness.engine, "run_batch", AsyncMock(return_value=drifted)):
            update = asyncio.run(harness.tuner.check_and_apply())

        assert update.performance_change == pytest.approx(-0.15)
        assert update.drift_detected
        assert update.status == UpdateStatus.ROLLED_BACK
        assert harness.tuner.update_counter == 1
        rolled_back = harness.published(EventType.CONTINUOUS_UPDATE_ROLLED_BACK)
        assert rolled_back[0].payload["update"]["metrics"]["drift_detected"] is True
        assert harness.tuner.latest_model_name() == "becas_continuous_v0"

        harness.fill(10)
        retry = asyncio.run(harness.tuner.check_and_apply())
        assert retry.update_number == 1
        assert retry.model_name == "becas_continuous_v2"
        assert retry.base_model_name == "becas_continuous_v0"

        restored = harness.build()
        assert restored.model_sequence == 3
        assert restored.latest_model_name() == "becas_continuous_v2"

    def test_tick_during_update_skips(self, harness):
        harness.fill(10)
        seen = {}

        async def during_create(target):
            seen["in_progress"] = harness.tuner.update_in_progress
            seen["tick"] = await asyncio.wait_for(harness.tuner.check_and_apply(), timeout=1)
            seen["stats"] = harness.tuner.get_statistics()["update_in_progress"]

        harness.trainer.during_create = during_create
        update = asyncio.run(harness.tuner.check_and_apply())

        assert seen == {"in_progress": True, "tick": None, "stats": True}
        assert update.status == UpdateStatus.SUCCESS
        assert len(harness.tuner.updates) == 1
        assert not harness.tuner.update_in_progress

    def test_drift_without_auto_rollback(self, tmp_path):
        harness = Harness(tmp_path, auto_rollback=False)
        harness.fill(10)

        drifted = BatchResult(total=10, a_wins=5, b_wins=0, ties=5)
        with patch.object(harness.engine, "run_batch", AsyncMock(return_value=drifted)):
            update = asyncio.run(harness.tuner.check_and_apply())

        assert update.drift_detected
        assert update.status == UpdateStatus.SUCCESS

    def test_small_regression_is_not_drift(self, harness):
        harness.fill(10)

        slight = BatchResult(total=20, a_wins=3, b_wins=2, ties=15)
        with patch.object(harness.engine, "run_batch", AsyncMock(return_value=slight)):
            update = asyncio.run(harness.tuner.check_and_apply())

        assert update.performance_change == pytest.approx(-0.05)
        assert not update.drift_detected
        assert update.status == UpdateStatus.SUCCESS


class TestEventsAndState:
    """Test bus handlers and persisted state."""

    def test_replay_buffer_fed_by_stored_examples(self, harness):
        async def publish(example, stored):
            await harness.bus.publish(
                DomainEvent(
                    EventType.TRAINING_EXAMPLE_COLLECTED,
                    {"example": example.to_dict(), "stored": stored},
                )
            )

        async def run():
            await publish(make_example(tier=QualityTier.GOLD), True)
            await publish(make_example(tier=QualityTier.BRONZE), True)
            await publish(make_example(tier=QualityTier.SILVER), False)

        asyncio.run(run())
        assert len(harness.tuner.replay_buffer) == 1

    def test_ab_results_recorded(self, harness):
        event = DomainEvent(
            EventType.AB_TEST_COMPLETED,
            {"model_b": "becas_continuous_v0", "winner": "B", "metrics": {"confidence_delta": 0.1}},
        )
        asyncio.run(harness.bus.publish(event))

        metric = harness.tuner.performance_history[-1]
        assert metric.accuracy == 1.0
        assert metric.confidence_delta == 0.1

    def test_state_survives_restart(self, harness):
        harness.fill(10)
        harness.tuner.replay_buffer.add(make_example())
        asyncio.run(harness.tuner.check_and_apply())

        restored = harness.build()
        stats = restored.get_statistics()

        assert stats["total_updates"] == 1
        assert stats["last_update_time"] == (START + timedelta(minutes=10)).isoformat()
        assert stats["replay_buffer_size"] == 1
        assert stats["updates"][0]["status"] == "success"

    def test_undecodable_state_starts_fresh(self, tmp_path):
        state = tmp_path / "continuous" / "state.json"
        state.parent.mkdir(parents=True)
        state.write_bytes(b"\xff\xfe\x00garbage")

        harness = Harness(tmp_path)
        assert harness.tuner.update_counter == 0
        assert harness.tuner.last_update_time is None

        harness.fill(10)
        update = asyncio.run(harness.tuner.check_and_apply())
        assert update.status == UpdateStatus.SUCCESS
        assert harness.build().update_counter == 1

    def test_configure(self, harness):
        config = harness.tuner.configure(replay_buffer_size=5, learning_rate_schedule="decay")

        assert config.replay_buffer_size == 5
        assert config.learning_rate_schedule == LearningRateSchedule.DECAY
        assert harness.tuner.replay_buffer.capacity == 5
        with pytest.raises(ValueError):
            harness.tuner.configure(unknown_setting=1)

    def test_invalid_config(self):
        with pytest.raises(ValueError):
            ContinuousConfig(replay_ratio=1.0)
