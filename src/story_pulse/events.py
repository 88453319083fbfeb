"""Synchronous publish / subscribe bus for analyzer and device events.

Listeners are plain callables invoked in registration order on the
emitting thread.  A listener that raises is logged and skipped so the
remaining listeners still run.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Callable

import structlog

logger = structlog.get_logger(__name__)


class EventName(str, Enum):
    """Events re-broadcast to UI / prompt consumers.

    Payload types:

    * ``HEARTRATE`` — :class:`~story_pulse.models.HeartRateEvent`
    * ``GESTURE`` — :class:`~story_pulse.models.GestureEvent`
    * ``EMOTION`` — :class:`~story_pulse.models.EmotionState`
    * ``SHIFT`` — :class:`~story_pulse.models.EmotionShift`
    * ``CONNECT`` / ``DISCONNECT`` — :class:`~story_pulse.models.ConnectionEvent`
    * ``ERROR`` — the :class:`Exception` that was raised
    """

    HEARTRATE = "heartrate"
    GESTURE = "gesture"
    EMOTION = "emotion"
    SHIFT = "shift"
    CONNECT = "connect"
    DISCONNECT = "disconnect"
    ERROR = "error"


Listener = Callable[[Any], None]


class EventBus:
    """Fan-out of named events to registered listeners."""

    def __init__(self) -> None:
        self._listeners: dict[EventName, list[Listener]] = {name: [] for name in EventName}

    # ── Listener management ───────────────────────────────────

    def on(self, event: EventName | str, listener: Listener) -> None:
        self._listeners[EventName(event)].append(listener)

    def off(self, event: EventName | str, listener: Listener) -> bool:
        """Remove *listener*.  Return ``True`` if it was registered."""
        listeners = self._listeners[EventName(event)]
        if listener in listeners:
            listeners.remove(listener)
            return True
        return False

    def listener_count(self, event: EventName | str) -> int:
        return len(self._listeners[EventName(event)])

    # ── Emission ──────────────────────────────────────────────

    def emit(self, event: EventName | str, payload: Any = None) -> int:
        """Deliver *payload* to every listener of *event*.

        Returns the number of listeners that completed without raising.
        """
        name = EventName(event)
        delivered = 0
        for listener in list(self._listeners[name]):
            try:
                listener(payload)
                delivered += 1
            except Exception:
                logger.exception(
                    "events.listener_error",
                    event_name=name.value,
                    listener=getattr(listener, "__qualname__", repr(listener)),
                )
        return delivered
