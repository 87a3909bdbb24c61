"""Tests for the domain event bus."""

import asyncio

from tuneloop.events import DomainEvent, EventBus, EventType, HandlerResult


class TestDomainEvent:
    """Test DomainEvent correlation and serialization."""

    def test_correlation_defaults_to_own_id(self):
        event = DomainEvent(EventType.VIOLATION_DETECTED, {"confidence": 0.9})

        assert event.correlation_id == event.event_id
        assert event.causation_id is None

    def test_child_keeps_correlation(self):
        parent = DomainEvent(EventType.VIOLATION_DETECTED, {}, guild_id="g1", user_id="u1")
        child = parent.create_child(EventType.TRAINING_EXAMPLE_COLLECTED, {"stored": True})

        assert child.correlation_id == parent.correlation_id
        assert child.causation_id == parent.event_id
        assert child.guild_id == "g1"
        assert child.user_id == "u1"
        assert child.event_id != parent.event_id

    def test_dict_roundtrip(self):
        event = DomainEvent(EventType.SCAM_DETECTED, {"text": "free nitro"}, guild_id="g1")
        restored = DomainEvent.from_dict(event.to_dict())

        assert restored.event_type == EventType.SCAM_DETECTED
        assert restored.event_id == event.event_id
        assert restored.timestamp == event.timestamp
        assert restored.payload == {"text": "free nitro"}

    def test_event_type_from_string(self):
        event = DomainEvent("violation.detected")
        assert event.event_type == EventType.VIOLATION_DETECTED


class TestEventBus:
    """Test handler dispatch and supervision."""

    def test_publish_reaches_sync_and_async_handlers(self, bus):
        seen = []

        def sync_handler(event):
            seen.append(("sync", event.event_type))

        async def async_handler(event):
            seen.append(("async", event.event_type))

        bus.subscribe(EventType.VIOLATION_DETECTED, sync_handler)
        bus.subscribe(EventType.VIOLATION_DETECTED, async_handler)
        results = asyncio.run(bus.publish(DomainEvent(EventType.VIOLATION_DETECTED)))

        assert len(results) == 2
        assert all(result.ok for result in results)
        assert [kind for kind, _ in seen] == ["sync", "async"]

    def test_failing_handler_does_not_stop_delivery(self, bus):
        seen = []

        def broken(event):
            raise RuntimeError("boom")

        bus.subscribe(EventType.VIOLATION_DETECTED, broken)
        bus.subscribe(EventType.VIOLATION_DETECTED, lambda event: seen.append(event))
        results = asyncio.run(bus.publish(DomainEvent(EventType.VIOLATION_DETECTED)))

        assert len(seen) == 1
        assert not results[0].ok
        assert results[0].error == "boom"
        assert bus.stats()["handler_failures"] == {"violation.detected": 1}

    def test_reported_failure_is_counted(self, bus):
        bus.subscribe(EventType.SCAM_DETECTED, lambda event: HandlerResult.failure("bad payload"))
        asyncio.run(bus.publish(DomainEvent(EventType.SCAM_DETECTED)))

        assert bus.stats()["handler_failures"] == {"scam.detected": 1}

    def test_subscribe_is_idempotent(self, bus):
        def handler(event):
            return None

        bus.subscribe(EventType.SCAM_DETECTED, handler)
        bus.subscribe(EventType.SCAM_DETECTED, handler)
        assert len(bus.handlers(EventType.SCAM_DETECTED)) == 1

        bus.unsubscribe(EventType.SCAM_DETECTED, handler)
        assert bus.handlers(EventType.SCAM_DETECTED) == []

    def test_subscribe_all(self, bus):
        seen = []
        bus.subscribe_all(lambda event: seen.append(event.event_type))

        async def publish_two():
            await bus.publish(DomainEvent(EventType.AB_TEST_COMPLETED))
            await bus.publish(DomainEvent(EventType.LANGUAGE_DETECTED))

        asyncio.run(publish_two())
        assert seen == [EventType.AB_TEST_COMPLETED, EventType.LANGUAGE_DETECTED]

    def test_spawned_failure_is_logged_not_raised(self, bus):
        async def fails():
            raise ValueError("background")

        async def run():
            bus.spawn(fails(), name="failing")
            await bus.drain()

        asyncio.run(run())
        stats = bus.stats()
        assert stats["task_failures"] == 1
        assert stats["pending_tasks"] == 0
