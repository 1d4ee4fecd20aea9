"""Tests for the event bus."""

from flaketree.tree.events import (
    EventBus,
    NodeUpdated,
    StatusChanged,
    StatusLevel,
    TreeEvent,
    TreeReset,
)
from flaketree.tree.paths import AttrPath


class TestEventBus:
    def test_given_subscriber_when_publish_then_receives_event(self) -> None:
        # Given
        bus = EventBus()
        received: list[TreeEvent] = []
        bus.subscribe(received.append)

        # When
        bus.publish(NodeUpdated(AttrPath.of("programs")))

        # Then
        assert received == [NodeUpdated(AttrPath.of("programs"))]

    def test_given_unsubscribed_when_publish_then_not_called(self) -> None:
        bus = EventBus()
        received: list[TreeEvent] = []
        unsubscribe = bus.subscribe(received.append)

        unsubscribe()
        bus.publish(TreeReset())

        assert received == []
        assert len(bus) == 0

    def test_given_failing_subscriber_when_publish_then_others_still_notified(self) -> None:
        """A subscriber raising does not break the publisher or other subscribers."""
        # Given
        bus = EventBus()
        received: list[TreeEvent] = []

        def broken(event: TreeEvent) -> None:
            raise RuntimeError("render failed")

        bus.subscribe(broken)
        bus.subscribe(received.append)

        # When
        bus.publish(TreeReset())

        # Then
        assert received == [TreeReset()]

    def test_given_status_helper_when_called_then_status_event_published(self) -> None:
        bus = EventBus()
        received: list[TreeEvent] = []
        bus.subscribe(received.append)

        bus.status(StatusLevel.ERROR, "Failed to evaluate programs", AttrPath.of("programs"))

        (event,) = received
        assert isinstance(event, StatusChanged)
        assert event.level is StatusLevel.ERROR
        assert event.message == "Failed to evaluate programs"
        assert event.path == AttrPath.of("programs")
        assert event.timestamp is not None
