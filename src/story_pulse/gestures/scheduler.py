"""Clock and cancelable-timer abstraction used by the gesture classifier.

Two implementations:

* :class:`LoopScheduler` — wall clock plus ``asyncio`` ``call_later``;
  used at runtime.
* :class:`ManualScheduler` — a virtual clock advanced explicitly; used
  for deterministic replays of recorded sessions and in tests.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import time
from typing import Callable, Protocol


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    """Millisecond clock with single-shot deferred callbacks."""

    def now_ms(self) -> int: ...

    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> TimerHandle: ...


class LoopScheduler:
    """Wall-clock time and timers on the running ``asyncio`` loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop

    def now_ms(self) -> int:
        return int(time.time() * 1000)

    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        loop = self._loop or asyncio.get_running_loop()
        return loop.call_later(delay_ms / 1000, callback)


class _ManualHandle:
    __slots__ = ("cancelled",)

    def __init__(self) -> None:
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Virtual clock; timers fire only from :meth:`advance` / :meth:`advance_to`."""

    def __init__(self, start_ms: int = 0) -> None:
        self._now = start_ms
        self._seq = itertools.count()
        self._timers: list[tuple[float, int, _ManualHandle, Callable[[], None]]] = []

    def now_ms(self) -> int:
        return self._now

    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> _ManualHandle:
        handle = _ManualHandle()
        heapq.heappush(self._timers, (self._now + delay_ms, next(self._seq), handle, callback))
        return handle

    @property
    def pending(self) -> int:
        return sum(1 for _, _, h, _ in self._timers if not h.cancelled)

    def advance(self, ms: int) -> None:
        self.advance_to(self._now + ms)

    def advance_to(self, target_ms: int) -> None:
        """Move the clock forward, firing every timer due on the way."""
        while self._timers and self._timers[0][0] <= target_ms:
            due, _, handle, callback = heapq.heappop(self._timers)
            if handle.cancelled:
                continue
            self._now = max(self._now, int(due))
            callback()
        self._now = max(self._now, target_ms)
