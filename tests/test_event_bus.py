"""Tests for the observability event bus."""

from __future__ import annotations

import time

from trustmesh.events import ALL_EVENT_TYPES, Event, InMemoryEventBus, QueuedEventBus


class TestEvent:
    """Tests for the Event dataclass."""

    def test_event_creation(self) -> None:
        """Event creates with required fields and sensible defaults."""
        event = Event(event_type="identity.issued", source="authority:example.org")
        assert event.event_type == "identity.issued"
        assert event.payload == {}
        assert event.timestamp is not None
        assert event.event_id.startswith("evt-")

    def test_standard_event_types_are_unique(self) -> None:
        assert len(ALL_EVENT_TYPES) == len(set(ALL_EVENT_TYPES))


class TestInMemoryEventBus:
    """Tests for the synchronous in-process event bus."""

    def test_publish_and_subscribe(self) -> None:
        bus = InMemoryEventBus()
        received: list[Event] = []
        bus.subscribe("federation.*", received.append)

        bus.publish("federation.imported", source="federation", peer="partner.org")
        bus.publish("policy.evaluated", source="policy")

        assert len(received) == 1
        assert received[0].payload == {"peer": "partner.org"}

    def test_wildcard_receives_everything(self) -> None:
        bus = InMemoryEventBus()
        received: list[Event] = []
        bus.subscribe("*", received.append)
        for event_type in ALL_EVENT_TYPES:
            bus.publish(event_type, source="test")
        assert [e.event_type for e in received] == ALL_EVENT_TYPES

    def test_unsubscribe(self) -> None:
        bus = InMemoryEventBus()
        received: list[Event] = []
        bus.subscribe("*", received.append)
        bus.unsubscribe(received.append)
        bus.publish("identity.issued", source="test")
        assert received == []

    def test_failing_handler_does_not_break_emit(self) -> None:
        """A raising sink must never fail the core operation."""
        bus = InMemoryEventBus()
        received: list[Event] = []

        def broken(event: Event) -> None:
            raise RuntimeError("sink down")

        bus.subscribe("*", broken)
        bus.subscribe("*", received.append)
        bus.publish("identity.revoked", source="test")

        assert len(received) == 1


class TestQueuedEventBus:
    """Tests for the bounded, non-blocking event bus."""

    def test_drain_delivers_queued_events(self) -> None:
        bus = QueuedEventBus()
        received: list[Event] = []
        bus.subscribe("*", received.append)

        bus.publish("identity.issued", source="test")
        bus.publish("identity.denied", source="test")
        assert received == []

        assert bus.drain() == 2
        assert [e.event_type for e in received] == ["identity.issued", "identity.denied"]

    def test_full_queue_drops_instead_of_blocking(self) -> None:
        bus = QueuedEventBus(maxsize=2)
        for _ in range(5):
            bus.publish("policy.evaluated", source="test")
        assert bus.dropped == 3
        assert bus.drain() == 2

    def test_background_delivery(self) -> None:
        bus = QueuedEventBus()
        received: list[Event] = []
        bus.subscribe("*", received.append)
        bus.start()
        try:
            bus.publish("authority.rotated", source="test")
            deadline = time.monotonic() + 2.0
            while not received and time.monotonic() < deadline:
                time.sleep(0.01)
        finally:
            bus.stop()
        assert [e.event_type for e in received] == ["authority.rotated"]

    def test_stop_drains_remaining_events(self) -> None:
        bus = QueuedEventBus()
        received: list[Event] = []
        bus.subscribe("*", received.append)
        bus.publish("identity.issued", source="test")
        bus.stop()
        assert len(received) == 1
