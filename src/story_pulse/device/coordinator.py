"""Device connection coordinator — transport lifecycle, dispatch and settings.

Architecture
~~~~~~~~~~~~
* **Transport** (:mod:`story_pulse.device.transports`) yields raw frames.
* **dispatch()** decodes each frame and routes it by ``type``:
  heartbeats to :class:`HeartRateSignalAnalyzer`, gestures to
  :class:`GestureClassifier`, device chatter to the log.
* **EventBus** re-broadcasts ``heartrate`` / ``emotion`` / ``shift`` /
  ``gesture`` / ``connect`` / ``disconnect`` / ``error`` to listeners.
* **SettingsStore** persists the clamped :class:`DeviceSettings`.

Failure handling
~~~~~~~~~~~~~~~~
Bad frames are logged and dropped.  Transport failures emit ``error`` and
``disconnect`` and, while the feature stays enabled, schedule a reconnect
after ``reconnect_delay`` seconds.  Nothing here terminates the process.
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Any, Callable

import structlog

from story_pulse.analysis.heart_rate import HeartRateSignalAnalyzer
from story_pulse.config import get_settings
from story_pulse.device.messages import DeviceInfoMessage, GestureMessage, HeartbeatMessage, decode_message
from story_pulse.device.statistics import engagement_snapshot, heart_rate_trend
from story_pulse.device.transports import BaseTransport, get_transport
from story_pulse.events import EventBus, EventName
from story_pulse.exceptions import MessageDecodeError, TransportError
from story_pulse.gestures.classifier import GestureClassifier
from story_pulse.gestures.scheduler import LoopScheduler, Scheduler, TimerHandle
from story_pulse.models import (
    ConnectionEvent,
    ConnectionState,
    ConnectionType,
    DeviceSettings,
    DeviceStatus,
    EngagementSnapshot,
    HeartRateEvent,
    HeartRateReading,
    HeartRateTrend,
)
from story_pulse.storage.settings_store import (
    MemorySettingsStore,
    SettingsStore,
    load_device_settings,
    save_device_settings,
)

logger = structlog.get_logger(__name__)

MAX_READINGS = 300

TransportFactory = Callable[[DeviceSettings], BaseTransport]


class DeviceConnectionCoordinator:
    """Composition root for the biofeedback core.

    Integration::

        coordinator = DeviceConnectionCoordinator(SqlSettingsStore())
        coordinator.bus.on("gesture", on_gesture)
        await coordinator.start()
        ...
        await coordinator.close()
    """

    def __init__(
        self,
        store: SettingsStore | None = None,
        bus: EventBus | None = None,
        *,
        scheduler: Scheduler | None = None,
        analyzer: HeartRateSignalAnalyzer | None = None,
        classifier: GestureClassifier | None = None,
        transport_factory: TransportFactory | None = None,
        reconnect_delay: float | None = None,
    ) -> None:
        self.bus = bus or EventBus()
        self._store = store or MemorySettingsStore()
        self._scheduler: Scheduler = scheduler or LoopScheduler()
        self.analyzer = analyzer or HeartRateSignalAnalyzer()
        self.classifier = classifier or GestureClassifier(self.bus, self._scheduler)
        self._transport_factory = transport_factory or get_transport
        self._reconnect_delay = (
            reconnect_delay if reconnect_delay is not None else get_settings().reconnect_delay_seconds
        )

        self.settings = DeviceSettings()
        self._state = ConnectionState.DISCONNECTED
        self._transport: BaseTransport | None = None
        self._reader: asyncio.Task | None = None
        self._reconnect_timer: TimerHandle | None = None
        self._reconnect_task: asyncio.Task | None = None
        # Bumped by disconnect(); an open() that finishes under an older
        # generation is discarded.
        self._generation = 0

        self._heart_rate: float = 0.0
        self._finger_detected = False
        self._readings: deque[HeartRateReading] = deque(maxlen=MAX_READINGS)

    # ── Lifecycle ─────────────────────────────────────────────

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def enabled(self) -> bool:
        return self.settings.enabled

    async def start(self) -> None:
        """Restore persisted settings and connect if the feature is enabled."""
        self.apply_settings(await load_device_settings(self._store))
        logger.info(
            "device.settings_loaded",
            enabled=self.settings.enabled,
            connection_type=self.settings.connection_type.value,
        )
        if self.settings.enabled:
            await self.ensure_connection()

    async def ensure_connection(self) -> bool:
        """Connect unless disabled, already connected, or mid-connect.

        Returns ``True`` when a connection is up after the call.
        """
        if not self.settings.enabled or self._state is not ConnectionState.DISCONNECTED:
            return self.connected

        self._cancel_reconnect()
        self._state = ConnectionState.CONNECTING
        generation = self._generation
        transport: BaseTransport | None = None
        try:
            transport = self._transport_factory(self.settings)
            await transport.open()
        except TransportError as exc:
            if transport is not None:
                await self._close_transport(transport)
            if generation != self._generation:
                logger.info("device.connect_abandoned", error=str(exc))
                return False
            logger.warning("device.connect_failed", error=str(exc))
            self._state = ConnectionState.DISCONNECTED
            self.bus.emit(EventName.ERROR, exc)
            self._schedule_reconnect()
            return False

        # disconnect() or a newer connect() ran while open() was pending.
        if generation != self._generation or not self.settings.enabled:
            logger.info("device.connect_abandoned", transport=transport.describe())
            await self._close_transport(transport)
            if generation == self._generation:
                self._state = ConnectionState.DISCONNECTED
            return False

        self._transport = transport
        self._state = ConnectionState.CONNECTED
        self._reader = asyncio.create_task(self._read_loop(transport))
        logger.info("device.connected", transport=transport.describe())
        self.bus.emit(
            EventName.CONNECT,
            ConnectionEvent(type=transport.connection_type, source=transport.describe()),
        )
        return True

    async def connect(
        self,
        connection_type: ConnectionType | str | None = None,
        address: str | None = None,
        *,
        baud_rate: int | None = None,
    ) -> bool:
        """Enable the feature, point it at a device and connect.

        *address* is the device IP for WebSocket or the port name for serial.
        """
        if self._state is not ConnectionState.DISCONNECTED:
            await self.disconnect()
        if connection_type is not None:
            self.settings.connection_type = connection_type
        if address is not None:
            if self.settings.connection_type is ConnectionType.SERIAL:
                self.settings.serial_port = address
            else:
                self.settings.device_ip = address
        if baud_rate is not None:
            self.settings.serial_baud_rate = baud_rate
        self.settings.enabled = True
        await self._persist()
        return await self.ensure_connection()

    async def disconnect(self) -> None:
        """Tear down the link and cancel every pending timer.

        No ``gesture`` event fires after this returns, and a connection
        attempt still in ``open()`` is abandoned.
        """
        self._generation += 1
        self._cancel_reconnect()
        transport, self._transport = self._transport, None
        reader, self._reader = self._reader, None

        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
        if transport is not None:
            await self._close_transport(transport)

        self.classifier.reset()
        self._heart_rate = 0.0
        self._finger_detected = False
        self._state = ConnectionState.DISCONNECTED
        logger.info("device.disconnected")
        self.bus.emit(EventName.DISCONNECT, ConnectionEvent(
            type=transport.connection_type if transport else None, source="user",
        ))

    async def close(self) -> None:
        """Shutdown hook: disconnect without touching persisted settings."""
        if self._state is not ConnectionState.DISCONNECTED or self._reconnect_timer is not None:
            await self.disconnect()
        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()

    def reset_session(self) -> None:
        """Forget all heart-rate history and any pending gesture."""
        self.analyzer.reset()
        self.classifier.reset()
        self._readings.clear()

    # ── Reader / reconnect ────────────────────────────────────

    async def _read_loop(self, transport: BaseTransport) -> None:
        error: Exception | None = None
        try:
            async for frame in transport.lines():
                self.dispatch(frame)
        except TransportError as exc:
            error = exc
        except Exception as exc:
            logger.exception("device.reader_crashed", transport=transport.describe())
            error = exc

        if self._transport is not transport:
            return
        await self._link_lost(transport, error)

    async def _link_lost(self, transport: BaseTransport, error: Exception | None) -> None:
        self._transport = None
        self._reader = None
        await self._close_transport(transport)
        self.classifier.reset()
        self._heart_rate = 0.0
        self._finger_detected = False
        self._state = ConnectionState.DISCONNECTED

        if error is not None:
            logger.warning("device.link_failed", transport=transport.describe(), error=str(error))
            self.bus.emit(EventName.ERROR, error)
        else:
            logger.info("device.link_closed", transport=transport.describe())
        self.bus.emit(
            EventName.DISCONNECT,
            ConnectionEvent(type=transport.connection_type, source=transport.describe(),
                            detail=str(error) if error else None),
        )
        self._schedule_reconnect()

    async def _close_transport(self, transport: BaseTransport) -> None:
        try:
            await transport.close()
        except Exception as exc:
            logger.warning("device.close_failed", transport=transport.describe(), error=str(exc))

    def _schedule_reconnect(self) -> None:
        self._cancel_reconnect()
        if not self.settings.enabled:
            return
        logger.info("device.reconnect_scheduled", delay_seconds=self._reconnect_delay)
        self._reconnect_timer = self._scheduler.call_later(
            self._reconnect_delay * 1000, self._on_reconnect_timer,
        )

    def _on_reconnect_timer(self) -> None:
        self._reconnect_timer = None
        if self.settings.enabled and self._state is ConnectionState.DISCONNECTED:
            logger.info("device.reconnecting")
            self._reconnect_task = asyncio.get_running_loop().create_task(self.ensure_connection())

    def _cancel_reconnect(self) -> None:
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_timer is not None

    # ── Dispatch ──────────────────────────────────────────────

    def dispatch(self, raw: str | bytes | dict[str, Any]) -> bool:
        """Decode one inbound frame and route it.  Returns ``False`` if dropped."""
        try:
            message = decode_message(raw)
        except MessageDecodeError as exc:
            logger.warning("device.frame_dropped", reason=str(exc), raw=str(exc.raw)[:200])
            return False

        if isinstance(message, HeartbeatMessage):
            self._on_heartbeat(message)
        elif isinstance(message, GestureMessage):
            self.classifier.ingest(message.magnitude, self._scheduler.now_ms())
        elif isinstance(message, DeviceInfoMessage):
            logger.debug("device.info_message", type=message.type, device_event=message.event)
        return True

    def _on_heartbeat(self, message: HeartbeatMessage) -> None:
        now = self._scheduler.now_ms()
        self._heart_rate = message.bpm
        self._finger_detected = message.finger_detected

        state = None
        if message.bpm > 0:
            state = self.analyzer.ingest(message.bpm, now)
        if state is not None:
            self._readings.append(HeartRateReading(
                bpm=message.bpm, finger_detected=message.finger_detected, timestamp=now,
            ))

        self.bus.emit(EventName.HEARTRATE, HeartRateEvent(
            bpm=message.bpm, finger_detected=message.finger_detected, instant=message.instant,
        ))
        if state is not None:
            self.bus.emit(EventName.EMOTION, state)
            shift = self.analyzer.detect_emotion_shift()
            if shift is not None:
                self.bus.emit(EventName.SHIFT, shift)

    # ── Statistics ────────────────────────────────────────────

    @property
    def readings(self) -> list[HeartRateReading]:
        return list(self._readings)

    def heart_rate_trend(self) -> HeartRateTrend:
        return heart_rate_trend(list(self._readings))

    def engagement_snapshot(self) -> EngagementSnapshot:
        return engagement_snapshot(list(self._readings), self._heart_rate)

    def status(self) -> DeviceStatus:
        return DeviceStatus(
            state=self._state,
            connected=self.connected,
            heart_rate=self._heart_rate,
            finger_detected=self._finger_detected,
            settings=self.settings.model_copy(),
        )

    # ── Settings ──────────────────────────────────────────────

    def apply_settings(self, settings: DeviceSettings) -> None:
        """Adopt *settings* in memory (no persistence, no connection change)."""
        self.settings = settings
        self._apply_gesture_settings()

    def _apply_gesture_settings(self) -> None:
        self.classifier.configure(
            threshold=self.settings.gesture_threshold,
            max_interval=self.settings.gesture_max_interval,
            debounce_interval=self.settings.gesture_debounce_interval,
            enabled=self.settings.gesture_enabled,
        )

    async def _persist(self) -> None:
        try:
            await save_device_settings(self._store, self.settings)
        except Exception:
            logger.exception("device.settings_save_failed")

    async def update_settings(self, **changes: Any) -> DeviceSettings:
        """Apply several settings at once (each clamped), persist, react.

        Raises :class:`ValueError` for unknown fields or non-numeric input.
        """
        unknown = set(changes) - set(DeviceSettings.model_fields)
        if unknown:
            raise ValueError(f"unknown settings: {sorted(unknown)}")

        was_enabled = self.settings.enabled
        candidate = self.settings.model_copy()
        for name, value in changes.items():
            setattr(candidate, name, value)
        self.settings = candidate
        self._apply_gesture_settings()
        await self._persist()
        logger.info("device.settings_updated", **{k: getattr(self.settings, k) for k in changes})

        if self.settings.enabled and not was_enabled:
            await self.ensure_connection()
        elif not self.settings.enabled and was_enabled:
            self._cancel_reconnect()
            if self._state is not ConnectionState.DISCONNECTED:
                await self.disconnect()
        return self.settings

    async def set_enabled(self, enabled: bool) -> None:
        await self.update_settings(enabled=bool(enabled))

    async def set_game_mode(self, mode: int) -> None:
        await self.update_settings(game_mode=mode)

    async def set_heart_rate_target(self, target: int) -> None:
        await self.update_settings(heart_rate_target=target)

    async def set_gesture_enabled(self, enabled: bool) -> None:
        await self.update_settings(gesture_enabled=bool(enabled))

    async def set_gesture_threshold(self, threshold: float) -> None:
        await self.update_settings(gesture_threshold=threshold)

    async def set_gesture_max_interval(self, interval: int) -> None:
        await self.update_settings(gesture_max_interval=interval)

    async def set_gesture_debounce_interval(self, interval: int) -> None:
        await self.update_settings(gesture_debounce_interval=interval)

    async def set_device_ip(self, ip: str) -> None:
        await self.update_settings(device_ip=ip)

    async def set_serial_config(self, port: str | None, baud_rate: int | None = None) -> None:
        changes: dict[str, Any] = {"serial_port": port or None}
        if baud_rate:
            changes["serial_baud_rate"] = baud_rate
        await self.update_settings(**changes)
