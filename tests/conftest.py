"""Shared pytest fixtures."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path

# The API lifespan builds its engine from the cached Settings, so point it
# at a throwaway database before anything reads the environment.
_TMP_DIR = Path(tempfile.mkdtemp(prefix="story-pulse-tests-"))
os.environ.setdefault("STORY_PULSE_DATABASE_URL", f"sqlite+aiosqlite:///{_TMP_DIR / 'test.db'}")

import pytest  # noqa: E402

from story_pulse.analysis.heart_rate import HeartRateSignalAnalyzer  # noqa: E402
from story_pulse.device.coordinator import DeviceConnectionCoordinator  # noqa: E402
from story_pulse.events import EventBus, EventName  # noqa: E402
from story_pulse.gestures.classifier import GestureClassifier  # noqa: E402
from story_pulse.gestures.scheduler import ManualScheduler  # noqa: E402
from story_pulse.storage.settings_store import MemorySettingsStore  # noqa: E402


class EventRecorder:
    """Collects ``(event, payload)`` pairs from every bus event."""

    def __init__(self, bus: EventBus) -> None:
        self.events: list[tuple[EventName, object]] = []
        for name in EventName:
            bus.on(name, self._listener(name))

    def _listener(self, name: EventName):
        return lambda payload: self.events.append((name, payload))

    def of(self, name: EventName) -> list:
        return [payload for event, payload in self.events if event is name]

    def names(self) -> list[EventName]:
        return [event for event, _ in self.events]


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def recorder(bus: EventBus) -> EventRecorder:
    return EventRecorder(bus)


@pytest.fixture
def analyzer() -> HeartRateSignalAnalyzer:
    return HeartRateSignalAnalyzer()


@pytest.fixture
def classifier(bus: EventBus, scheduler: ManualScheduler) -> GestureClassifier:
    return GestureClassifier(bus, scheduler)


@pytest.fixture
def store() -> MemorySettingsStore:
    return MemorySettingsStore()


@pytest.fixture
def coordinator(
    store: MemorySettingsStore, bus: EventBus, scheduler: ManualScheduler,
) -> DeviceConnectionCoordinator:
    return DeviceConnectionCoordinator(store, bus, scheduler=scheduler, reconnect_delay=5.0)
