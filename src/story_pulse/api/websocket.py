"""WebSocket connection manager — broadcast bus events to UI clients."""

from __future__ import annotations

import asyncio
import json
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import structlog
from fastapi import WebSocket
from pydantic import BaseModel

from story_pulse.events import EventBus, EventName

logger = structlog.get_logger(__name__)


# ── Streaming statistics ─────────────────────────────────────

@dataclass
class StreamStats:
    """Outbound message counters per channel."""
    total_outbound: int = 0
    per_channel: dict[str, int] = field(default_factory=dict)
    started_at: float = field(default_factory=time.monotonic)

    def record_outbound(self, channel: str) -> None:
        self.total_outbound += 1
        self.per_channel[channel] = self.per_channel.get(channel, 0) + 1

    def snapshot(self) -> dict[str, Any]:
        return {
            "uptime_seconds": round(time.monotonic() - self.started_at),
            "total_outbound": self.total_outbound,
            "channels": dict(self.per_channel),
        }


class ConnectionManager:
    """Manage WebSocket clients and fan bus events out to them.

    Each :class:`EventName` is a channel; ``all`` receives everything.
    """

    def __init__(self) -> None:
        self._connections: dict[str, list[WebSocket]] = {}
        self._all: list[WebSocket] = []
        self._lock = asyncio.Lock()
        self._pending: set[asyncio.Task] = set()
        self.stats = StreamStats()
        self._recent: deque[dict[str, Any]] = deque(maxlen=200)

    # ── Connection lifecycle ──────────────────────────────────

    async def connect(self, ws: WebSocket, channels: str | list[str] | None = None) -> None:
        """Accept a WebSocket and subscribe it to channels."""
        await ws.accept()
        await self.subscribe(ws, channels)

    async def subscribe(self, ws: WebSocket, channels: str | list[str] | None = None) -> None:
        if isinstance(channels, str):
            channels = [channels]
        async with self._lock:
            if ws not in self._all:
                self._all.append(ws)
            for ch in (channels or ["all"]):
                if ch != "all":
                    self._connections.setdefault(ch, []).append(ws)
        logger.info("ws.connected", total=len(self._all), channels=channels or ["all"])

    async def disconnect(self, ws: WebSocket) -> None:
        """Remove a WebSocket from all channels."""
        async with self._lock:
            if ws in self._all:
                self._all.remove(ws)
            for ch_list in self._connections.values():
                if ws in ch_list:
                    ch_list.remove(ws)
        logger.info("ws.disconnected", total=len(self._all))

    @property
    def active_count(self) -> int:
        return len(self._all)

    # ── Broadcasting ──────────────────────────────────────────

    async def broadcast(self, message: dict[str, Any], channel: str) -> None:
        """Send a JSON message to subscribers of *channel* plus ``all`` clients."""
        subscribed = [ws for ws in self._all if ws not in self._connections_for_others(channel)]
        if not subscribed:
            return

        payload = json.dumps(message, default=_json_default)
        dead: list[WebSocket] = []
        for ws in subscribed:
            try:
                await ws.send_text(payload)
            except Exception:
                dead.append(ws)
        self.stats.record_outbound(channel)

        for ws in dead:
            await self.disconnect(ws)

    def _connections_for_others(self, channel: str) -> set[WebSocket]:
        """Clients subscribed to specific channels, none of which is *channel*."""
        selective = {ws for subs in self._connections.values() for ws in subs}
        wanted = set(self._connections.get(channel, []))
        return selective - wanted

    async def broadcast_event(self, event: EventName, payload: Any) -> None:
        data = _to_jsonable(payload)
        message = {"type": event.value, "data": data}
        self._recent.appendleft({**message, "timestamp": datetime.now(timezone.utc).isoformat()})
        await self.broadcast(message, event.value)

    def attach(self, bus: EventBus) -> None:
        """Forward every bus event to connected clients.

        Bus listeners are synchronous, so each broadcast runs as a task on
        the current loop.
        """
        for name in EventName:
            bus.on(name, self._forwarder(name))

    def _forwarder(self, name: EventName):
        def forward(payload: Any) -> None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                return
            task = loop.create_task(self.broadcast_event(name, payload))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
        forward.__qualname__ = f"ConnectionManager.forward[{name.value}]"
        return forward

    # ── Admin helpers ─────────────────────────────────────────

    def get_recent_messages(self, limit: int = 100) -> list[dict[str, Any]]:
        return list(self._recent)[:limit]


def _to_jsonable(payload: Any) -> Any:
    if isinstance(payload, BaseModel):
        return payload.model_dump(mode="json", by_alias=True)
    if isinstance(payload, BaseException):
        return {"error": type(payload).__name__, "message": str(payload)}
    return payload


def _json_default(obj: Any) -> Any:
    """Fallback JSON serialiser for datetime / enums."""
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    raise TypeError(f"Not serialisable: {type(obj)}")
