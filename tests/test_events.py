"""Tests for the event bus."""

import pytest
from structlog.testing import capture_logs

from story_pulse.events import EventBus, EventName


class TestEventBus:
    def test_listeners_called_in_order(self):
        bus = EventBus()
        calls = []
        bus.on(EventName.GESTURE, lambda p: calls.append(("a", p)))
        bus.on("gesture", lambda p: calls.append(("b", p)))

        assert bus.emit(EventName.GESTURE, 1) == 2
        assert calls == [("a", 1), ("b", 1)]

    def test_off(self):
        bus = EventBus()
        listener = lambda p: None  # noqa: E731
        bus.on(EventName.EMOTION, listener)
        assert bus.listener_count(EventName.EMOTION) == 1
        assert bus.off(EventName.EMOTION, listener) is True
        assert bus.off(EventName.EMOTION, listener) is False
        assert bus.emit(EventName.EMOTION, None) == 0

    def test_failing_listener_is_isolated(self):
        bus = EventBus()
        received = []

        def broken(payload):
            raise RuntimeError("boom")

        bus.on(EventName.HEARTRATE, broken)
        bus.on(EventName.HEARTRATE, received.append)

        assert bus.emit(EventName.HEARTRATE, 72) == 1
        assert received == [72]

    def test_listener_error_is_logged(self):
        bus = EventBus()

        def broken(payload):
            raise RuntimeError("boom")

        bus.on(EventName.GESTURE, broken)
        with capture_logs() as logs:
            assert bus.emit(EventName.GESTURE, None) == 0

        (entry,) = logs
        assert entry["event"] == "events.listener_error"
        assert entry["event_name"] == "gesture"
        assert entry["log_level"] == "error"

    def test_unknown_event_rejected(self):
        bus = EventBus()
        with pytest.raises(ValueError):
            bus.on("telemetry", lambda p: None)
