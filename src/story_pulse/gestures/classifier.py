"""Single vs. double shake classification from accelerometer magnitudes.

A single shake and the first half of a double shake look identical when
they arrive, so the classifier defers the decision:

1. The first qualifying sample opens a pending window and arms a timer of
   ``max_interval`` ms.
2. A second qualifying sample inside the window cancels the timer and
   emits ``double`` immediately.
3. If the timer fires with exactly one sample still in the window, the
   first sample is confirmed as ``single``.

Qualifying means: classifier enabled, ``magnitude >= threshold`` and at
least ``debounce_interval`` ms since the previously accepted sample.
"""

from __future__ import annotations

import math
from enum import Enum

import structlog

from story_pulse.analysis.signal import clamp
from story_pulse.events import EventBus, EventName
from story_pulse.gestures.scheduler import LoopScheduler, Scheduler, TimerHandle
from story_pulse.models import GestureEvent, GestureSample, GestureType

logger = structlog.get_logger(__name__)

DEFAULT_THRESHOLD = 2.0
DEFAULT_MAX_INTERVAL = 800
DEFAULT_DEBOUNCE_INTERVAL = 200


class GestureState(str, Enum):
    IDLE = "idle"
    PENDING_SINGLE = "pending_single"


def confirmation_tolerance(max_interval: float) -> int:
    """Extra slack (ms) allowed when the single-shake timer re-checks the window."""
    return int(clamp(math.floor(max_interval * 0.1), 50, 200))


class GestureClassifier:
    """Debounced two-stage shake classifier.

    Parameters
    ----------
    bus : EventBus | None
        Receives ``gesture`` events.  Emission also happens through the
        return value of :meth:`ingest` for the synchronous ``double`` case.
    scheduler : Scheduler | None
        Clock and timer source; defaults to the running ``asyncio`` loop.
    """

    def __init__(
        self,
        bus: EventBus | None = None,
        scheduler: Scheduler | None = None,
        *,
        threshold: float = DEFAULT_THRESHOLD,
        max_interval: int = DEFAULT_MAX_INTERVAL,
        debounce_interval: int = DEFAULT_DEBOUNCE_INTERVAL,
        enabled: bool = True,
    ) -> None:
        self._bus = bus or EventBus()
        self._scheduler: Scheduler = scheduler or LoopScheduler()
        self.threshold = threshold
        self.max_interval = max_interval
        self.debounce_interval = debounce_interval
        self.enabled = enabled

        self._window: list[GestureSample] = []
        self._timer: TimerHandle | None = None
        self._last_accepted: int | None = None

    # ── Configuration ─────────────────────────────────────────

    def configure(
        self,
        *,
        threshold: float | None = None,
        max_interval: int | None = None,
        debounce_interval: int | None = None,
        enabled: bool | None = None,
    ) -> None:
        if threshold is not None:
            self.threshold = threshold
        if max_interval is not None:
            self.max_interval = max_interval
        if debounce_interval is not None:
            self.debounce_interval = debounce_interval
        if enabled is not None:
            self.enabled = enabled

    # ── Introspection ─────────────────────────────────────────

    @property
    def state(self) -> GestureState:
        return GestureState.PENDING_SINGLE if self._window else GestureState.IDLE

    @property
    def pending(self) -> list[GestureSample]:
        return list(self._window)

    @property
    def last_accepted_timestamp(self) -> int | None:
        return self._last_accepted

    # ── Ingestion ─────────────────────────────────────────────

    def ingest(self, magnitude: float, timestamp: int | None = None) -> GestureEvent | None:
        """Feed one accelerometer magnitude (g).

        Returns the ``double`` event when this sample completes one;
        ``single`` events are only ever emitted later, from the timer.
        """
        if not self.enabled:
            logger.debug("gesture.disabled")
            return None

        now = timestamp if timestamp is not None else self._scheduler.now_ms()

        if magnitude < self.threshold:
            logger.debug("gesture.below_threshold", magnitude=magnitude, threshold=self.threshold)
            return None

        if self._last_accepted is not None and now - self._last_accepted < self.debounce_interval:
            logger.debug(
                "gesture.debounced",
                gap_ms=now - self._last_accepted,
                debounce_ms=self.debounce_interval,
            )
            return None

        self._window = [g for g in self._window if now - g.timestamp <= self.max_interval]
        previous = len(self._window)
        result: GestureEvent | None = None

        if previous == 0:
            sample = GestureSample(magnitude=magnitude, timestamp=now)
            self._window.append(sample)
            self._cancel_timer()
            self._timer = self._scheduler.call_later(
                self.max_interval, lambda: self._confirm_single(sample),
            )
            logger.debug("gesture.first_sample", magnitude=magnitude, timestamp=now)
        elif previous == 1:
            self._cancel_timer()
            interval = now - self._window[0].timestamp
            self._window = []
            result = GestureEvent(
                type=GestureType.DOUBLE, magnitude=magnitude, timestamp=now, interval=interval,
            )
            logger.info("gesture.double_detected", magnitude=magnitude, interval_ms=interval)
            self._bus.emit(EventName.GESTURE, result)
        else:
            logger.info("gesture.overflow_discarded", pending=previous)

        self._last_accepted = now
        return result

    def _confirm_single(self, first: GestureSample) -> None:
        self._timer = None
        check_time = self._scheduler.now_ms()
        limit = self.max_interval + confirmation_tolerance(self.max_interval)
        remaining = [g for g in self._window if check_time - g.timestamp <= limit]
        self._window = []

        if len(remaining) == 1:
            event = GestureEvent(
                type=GestureType.SINGLE, magnitude=first.magnitude, timestamp=first.timestamp,
            )
            logger.info("gesture.single_confirmed", magnitude=first.magnitude)
            self._bus.emit(EventName.GESTURE, event)
        else:
            logger.debug("gesture.single_not_confirmed", remaining=len(remaining))

    # ── Cancellation ──────────────────────────────────────────

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def reset(self) -> None:
        """Drop the pending window and cancel the confirmation timer."""
        self._cancel_timer()
        self._window = []
        self._last_accepted = None
