"""Tests for the single / double shake classifier."""

import asyncio

import pytest

from story_pulse.events import EventBus, EventName
from story_pulse.gestures.classifier import GestureClassifier, GestureState, confirmation_tolerance
from story_pulse.gestures.scheduler import LoopScheduler, ManualScheduler
from story_pulse.models import GestureType


def shake(classifier, scheduler: ManualScheduler, at: int, magnitude: float = 2.5):
    scheduler.advance_to(at)
    return classifier.ingest(magnitude, scheduler.now_ms())


class TestTolerance:
    @pytest.mark.parametrize(
        "max_interval, expected",
        [(200, 50), (500, 50), (800, 80), (1500, 150), (2000, 200), (5000, 200)],
    )
    def test_bounds(self, max_interval, expected):
        assert confirmation_tolerance(max_interval) == expected


class TestSingle:
    def test_confirmed_after_window(self, classifier, scheduler, recorder):
        shake(classifier, scheduler, 1000, 2.5)
        assert classifier.state is GestureState.PENDING_SINGLE

        scheduler.advance_to(1799)
        assert recorder.of(EventName.GESTURE) == []

        scheduler.advance_to(1800)
        events = recorder.of(EventName.GESTURE)
        assert len(events) == 1
        assert events[0].type is GestureType.SINGLE
        assert events[0].magnitude == 2.5
        assert events[0].timestamp == 1000
        assert events[0].interval is None
        assert classifier.state is GestureState.IDLE

    def test_ingest_returns_none_for_first_sample(self, classifier, scheduler):
        assert shake(classifier, scheduler, 0) is None

    def test_consecutive_singles(self, classifier, scheduler, recorder):
        shake(classifier, scheduler, 0, 3.0)
        shake(classifier, scheduler, 1500, 4.0)
        scheduler.advance(2000)
        events = recorder.of(EventName.GESTURE)
        assert [e.type for e in events] == [GestureType.SINGLE, GestureType.SINGLE]
        assert [e.magnitude for e in events] == [3.0, 4.0]


class TestDouble:
    def test_double_inside_window(self, classifier, scheduler, recorder):
        shake(classifier, scheduler, 0, 2.5)
        event = shake(classifier, scheduler, 300, 2.8)

        assert event is not None
        assert event.type is GestureType.DOUBLE
        assert event.magnitude == 2.8
        assert event.timestamp == 300
        assert event.interval == 300
        assert classifier.state is GestureState.IDLE

        scheduler.advance(5000)
        assert recorder.of(EventName.GESTURE) == [event]

    def test_second_sample_after_window_starts_new_cycle(self, bus, recorder):
        # A sample that lands after max_interval but before the timer runs
        # must not pair with the stale one.
        scheduler = ManualScheduler()
        classifier = GestureClassifier(bus, scheduler)
        classifier.ingest(2.5, 0)
        classifier.ingest(2.5, 900)
        assert recorder.of(EventName.GESTURE) == []
        assert [g.timestamp for g in classifier.pending] == [900]


class TestFiltering:
    def test_below_threshold_ignored(self, classifier, scheduler, recorder):
        assert shake(classifier, scheduler, 0, 1.9) is None
        assert classifier.state is GestureState.IDLE
        assert scheduler.pending == 0
        assert classifier.last_accepted_timestamp is None

    def test_threshold_is_inclusive(self, classifier, scheduler):
        shake(classifier, scheduler, 0, 2.0)
        assert classifier.state is GestureState.PENDING_SINGLE

    def test_debounce_drops_without_advancing(self, classifier, scheduler, recorder):
        shake(classifier, scheduler, 0)
        assert shake(classifier, scheduler, 150) is None
        assert classifier.last_accepted_timestamp == 0
        assert len(classifier.pending) == 1

        # 220 ms after the last *accepted* sample, so it passes debounce.
        event = shake(classifier, scheduler, 220)
        assert event.type is GestureType.DOUBLE
        assert event.interval == 220

    def test_disabled_classifier_is_inert(self, classifier, scheduler, recorder):
        classifier.configure(enabled=False)
        shake(classifier, scheduler, 0, 9.0)
        shake(classifier, scheduler, 300, 9.0)
        scheduler.advance(2000)
        assert recorder.events == []
        assert scheduler.pending == 0

    def test_configure_changes_window(self, classifier, scheduler, recorder):
        classifier.configure(max_interval=400, threshold=3.0)
        shake(classifier, scheduler, 0, 2.5)
        assert classifier.state is GestureState.IDLE

        shake(classifier, scheduler, 1000, 3.5)
        scheduler.advance_to(1400)
        events = recorder.of(EventName.GESTURE)
        assert len(events) == 1
        assert events[0].type is GestureType.SINGLE


class TestReset:
    def test_reset_cancels_pending_single(self, classifier, scheduler, recorder):
        shake(classifier, scheduler, 0)
        classifier.reset()
        assert classifier.state is GestureState.IDLE
        assert scheduler.pending == 0

        scheduler.advance(5000)
        assert recorder.of(EventName.GESTURE) == []

    def test_reset_clears_debounce(self, classifier, scheduler):
        shake(classifier, scheduler, 0)
        classifier.reset()
        shake(classifier, scheduler, 50)
        assert classifier.last_accepted_timestamp == 50


class TestLoopScheduler:
    async def test_single_confirmed_on_real_loop(self):
        bus = EventBus()
        received = []
        bus.on(EventName.GESTURE, received.append)
        scheduler = LoopScheduler()
        classifier = GestureClassifier(bus, scheduler, max_interval=200)

        classifier.ingest(3.0)
        await asyncio.sleep(0.35)

        assert len(received) == 1
        assert received[0].type is GestureType.SINGLE
