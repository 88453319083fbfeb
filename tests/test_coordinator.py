"""Tests for the device connection coordinator."""

import asyncio
import json

import pytest
from structlog.testing import capture_logs

from story_pulse.device.coordinator import DeviceConnectionCoordinator
from story_pulse.device.transports import BaseTransport, WebSocketTransport, get_transport
from story_pulse.events import EventName
from story_pulse.exceptions import TransportError
from story_pulse.models import ConnectionState, ConnectionType, DeviceSettings, GestureType
from story_pulse.storage.settings_store import DEVICE_SETTINGS_KEY, MemorySettingsStore


class FakeTransport(BaseTransport):
    """In-memory transport fed through a queue.

    Queue items: a frame string, ``None`` for an orderly close, or an
    exception instance raised from ``lines()``.  When *gate* is given,
    ``open()`` waits for it.
    """

    connection_type = ConnectionType.WEBSOCKET

    def __init__(self, fail_open: bool = False, gate: asyncio.Event | None = None) -> None:
        self.fail_open = fail_open
        self.gate = gate
        self.frames: asyncio.Queue = asyncio.Queue()
        self.opened = False
        self.closed = False

    def describe(self) -> str:
        return "fake://device"

    async def open(self) -> None:
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_open:
            raise TransportError("device unreachable")
        self.opened = True

    async def lines(self):
        while True:
            item = await self.frames.get()
            if item is None:
                return
            if isinstance(item, Exception):
                raise item
            yield item

    async def close(self) -> None:
        self.closed = True


class TransportFactory:
    def __init__(self, *fail_pattern: bool) -> None:
        self.fail_pattern = list(fail_pattern)
        self.created: list[FakeTransport] = []

    def __call__(self, settings: DeviceSettings) -> FakeTransport:
        fail = self.fail_pattern.pop(0) if self.fail_pattern else False
        transport = FakeTransport(fail_open=fail)
        self.created.append(transport)
        return transport


async def settle(rounds: int = 5) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


def heartbeat(bpm, finger=True) -> str:
    return json.dumps({"type": "heartbeat", "heartRate": bpm, "fingerDetected": finger})


@pytest.fixture
def factory() -> TransportFactory:
    return TransportFactory()


@pytest.fixture
def linked(store, bus, scheduler, factory) -> DeviceConnectionCoordinator:
    return DeviceConnectionCoordinator(
        store, bus, scheduler=scheduler, transport_factory=factory, reconnect_delay=5.0,
    )


# ── Dispatch ──────────────────────────────────────────────────


class TestDispatch:
    def test_heartbeat_routes_to_analyzer(self, coordinator, recorder):
        assert coordinator.dispatch(heartbeat(72)) is True

        assert len(coordinator.analyzer.history) == 1
        (hr,) = recorder.of(EventName.HEARTRATE)
        assert hr.bpm == 72
        assert hr.finger_detected is True
        (emotion,) = recorder.of(EventName.EMOTION)
        assert emotion.current_hr == 72
        assert recorder.names() == [EventName.HEARTRATE, EventName.EMOTION]
        assert coordinator.status().heart_rate == 72

    def test_zero_bpm_not_analysed(self, coordinator, recorder):
        coordinator.dispatch(heartbeat(0, finger=False))
        assert coordinator.analyzer.history == []
        assert coordinator.readings == []
        assert recorder.names() == [EventName.HEARTRATE]

    def test_out_of_range_bpm_only_rebroadcast(self, coordinator, recorder):
        coordinator.dispatch(heartbeat(250))
        assert coordinator.analyzer.history == []
        assert coordinator.readings == []
        assert recorder.names() == [EventName.HEARTRATE]

    def test_shift_emitted_after_emotion(self, coordinator, scheduler, recorder):
        for bpm in (70, 70, 100):
            coordinator.dispatch(heartbeat(bpm))
            scheduler.advance(1000)
        assert recorder.names()[-3:] == [EventName.HEARTRATE, EventName.EMOTION, EventName.SHIFT]
        (shift,) = recorder.of(EventName.SHIFT)
        assert shift.to_emotion.value == "excited"

    def test_gesture_routes_to_classifier(self, coordinator, scheduler, recorder):
        coordinator.dispatch({"type": "gesture", "magnitude": 3.0})
        scheduler.advance(250)
        coordinator.dispatch({"type": "gesture", "magnitude": 3.2})

        (event,) = recorder.of(EventName.GESTURE)
        assert event.type is GestureType.DOUBLE
        assert event.interval == 250
        assert coordinator.analyzer.history == []

    def test_info_messages_ignored(self, coordinator, recorder):
        assert coordinator.dispatch({"type": "system", "event": "boot"}) is True
        assert coordinator.dispatch({"type": "threshold_info", "threshold": 2.0}) is True
        assert recorder.events == []

    def test_info_message_logged_with_device_event(self, coordinator):
        with capture_logs() as logs:
            coordinator.dispatch({"type": "system", "event": "boot"})
        (entry,) = [e for e in logs if e["event"] == "device.info_message"]
        assert entry["type"] == "system"
        assert entry["device_event"] == "boot"

    @pytest.mark.parametrize("raw", ["{broken", '{"type": "telemetry"}', "[]", ""])
    def test_malformed_frames_dropped(self, coordinator, recorder, raw):
        assert coordinator.dispatch(raw) is False
        assert recorder.events == []
        assert coordinator.analyzer.history == []

    def test_trend_and_engagement(self, coordinator, scheduler):
        for bpm in [60] * 10 + [80] * 10:
            coordinator.dispatch(heartbeat(bpm))
            scheduler.advance(1000)

        assert coordinator.heart_rate_trend().trend == "rising"
        snap = coordinator.engagement_snapshot()
        assert snap.heart_rate == 80
        assert snap.engagement == 50

    def test_readings_are_bounded(self, coordinator):
        for _ in range(320):
            coordinator.dispatch(heartbeat(70))
        assert len(coordinator.readings) == 300

    def test_reset_session(self, coordinator, scheduler, recorder):
        for bpm in range(60, 72):
            coordinator.dispatch(heartbeat(bpm))
        coordinator.dispatch({"type": "gesture", "magnitude": 5})
        coordinator.reset_session()

        assert coordinator.analyzer.baseline is None
        assert coordinator.readings == []
        scheduler.advance(5000)
        assert recorder.of(EventName.GESTURE) == []


# ── Settings ──────────────────────────────────────────────────


class TestSettings:
    async def test_setters_clamp_and_persist(self, coordinator, store):
        await coordinator.set_gesture_threshold(50)
        await coordinator.set_gesture_max_interval(50)
        await coordinator.set_gesture_debounce_interval(-5)
        await coordinator.set_heart_rate_target(300)
        await coordinator.set_game_mode(0)

        s = coordinator.settings
        assert (s.gesture_threshold, s.gesture_max_interval, s.gesture_debounce_interval) == (10.0, 200, 0)
        assert (s.heart_rate_target, s.game_mode) == (180, 1)

        stored = await store.get(DEVICE_SETTINGS_KEY)
        assert stored["gesture_threshold"] == 10.0
        assert stored["gesture_max_interval"] == 200
        assert stored["game_mode"] == 1

        assert coordinator.classifier.threshold == 10.0
        assert coordinator.classifier.max_interval == 200
        assert coordinator.classifier.debounce_interval == 0

    async def test_non_numeric_rejected_without_partial_update(self, coordinator, store):
        with pytest.raises(ValueError):
            await coordinator.update_settings(gesture_threshold=4.0, gesture_max_interval="soon")
        assert coordinator.settings.gesture_threshold == 2.0
        assert await store.get(DEVICE_SETTINGS_KEY) is None

    async def test_unknown_setting_rejected(self, coordinator):
        with pytest.raises(ValueError, match="unknown settings"):
            await coordinator.update_settings(volume=11)

    async def test_gesture_disable_stops_classification(self, coordinator, scheduler, recorder):
        await coordinator.set_gesture_enabled(False)
        coordinator.dispatch({"type": "gesture", "magnitude": 9})
        scheduler.advance(2000)
        assert recorder.of(EventName.GESTURE) == []

    async def test_serial_config(self, coordinator):
        await coordinator.set_serial_config("/dev/ttyUSB0", 9600)
        assert coordinator.settings.serial_port == "/dev/ttyUSB0"
        assert coordinator.settings.serial_baud_rate == 9600

        await coordinator.set_serial_config("")
        assert coordinator.settings.serial_port is None
        assert coordinator.settings.serial_baud_rate == 9600

    async def test_start_restores_persisted_settings(self, bus, scheduler, factory):
        store = MemorySettingsStore({
            DEVICE_SETTINGS_KEY: {"gesture_threshold": 3.5, "gesture_max_interval": "oops"},
        })
        coordinator = DeviceConnectionCoordinator(
            store, bus, scheduler=scheduler, transport_factory=factory, reconnect_delay=5.0,
        )
        await coordinator.start()

        assert coordinator.classifier.threshold == 3.5
        assert coordinator.classifier.max_interval == 800
        assert factory.created == []
        assert coordinator.state is ConnectionState.DISCONNECTED


# ── Connection lifecycle ──────────────────────────────────────


class TestConnection:
    async def test_disabled_never_connects(self, linked, factory):
        assert await linked.ensure_connection() is False
        assert factory.created == []

    async def test_connect_and_stream(self, linked, factory, store, recorder):
        assert await linked.connect("websocket", "10.0.0.2") is True
        assert linked.state is ConnectionState.CONNECTED
        assert linked.settings.device_ip == "10.0.0.2"
        assert (await store.get(DEVICE_SETTINGS_KEY))["enabled"] is True

        (connect,) = recorder.of(EventName.CONNECT)
        assert connect.source == "fake://device"

        factory.created[0].frames.put_nowait(heartbeat(75))
        await settle()
        assert [e.bpm for e in recorder.of(EventName.HEARTRATE)] == [75]

        await linked.disconnect()

    async def test_ensure_connection_is_idempotent(self, linked, factory):
        await linked.connect()
        assert await linked.ensure_connection() is True
        assert len(factory.created) == 1
        await linked.disconnect()

    async def test_start_connects_when_enabled(self, bus, scheduler, factory):
        store = MemorySettingsStore({DEVICE_SETTINGS_KEY: {"enabled": True, "device_ip": "10.0.0.9"}})
        coordinator = DeviceConnectionCoordinator(
            store, bus, scheduler=scheduler, transport_factory=factory, reconnect_delay=5.0,
        )
        await coordinator.start()
        assert coordinator.connected
        await coordinator.close()
        assert coordinator.state is ConnectionState.DISCONNECTED
        assert factory.created[0].closed

    async def test_disconnect_tears_down(self, linked, factory, recorder):
        await linked.connect()
        transport = factory.created[0]
        await linked.disconnect()

        assert linked.state is ConnectionState.DISCONNECTED
        assert transport.closed
        assert linked.status().heart_rate == 0
        (event,) = recorder.of(EventName.DISCONNECT)
        assert event.source == "user"
        assert not linked.reconnect_pending

    async def test_disconnect_cancels_pending_single(self, linked, scheduler, recorder):
        await linked.connect()
        linked.dispatch({"type": "gesture", "magnitude": 4.0})
        await linked.disconnect()

        scheduler.advance(5000)
        assert recorder.of(EventName.GESTURE) == []

    async def test_failed_open_schedules_reconnect(self, linked, scheduler, recorder):
        linked._transport_factory = factory = TransportFactory(True)
        assert await linked.connect() is False

        assert linked.state is ConnectionState.DISCONNECTED
        assert factory.created[0].closed
        (error,) = recorder.of(EventName.ERROR)
        assert isinstance(error, TransportError)
        assert linked.reconnect_pending

        scheduler.advance(4999)
        await settle()
        assert len(factory.created) == 1

        scheduler.advance(1)
        await settle()
        assert len(factory.created) == 2
        assert linked.connected
        await linked.disconnect()

    async def test_missing_address_schedules_reconnect(self, store, bus, scheduler, recorder):
        coordinator = DeviceConnectionCoordinator(
            store, bus, scheduler=scheduler, transport_factory=get_transport, reconnect_delay=5.0,
        )
        assert await coordinator.connect(ConnectionType.WEBSOCKET) is False
        assert "no device IP" in str(recorder.of(EventName.ERROR)[0])
        assert coordinator.reconnect_pending
        await coordinator.close()
        assert not coordinator.reconnect_pending

    async def test_link_failure_emits_error_and_reconnects(self, linked, factory, recorder):
        await linked.connect()
        factory.created[0].frames.put_nowait(TransportError("cable pulled"))
        await settle()

        assert linked.state is ConnectionState.DISCONNECTED
        assert factory.created[0].closed
        names = recorder.names()
        assert names.index(EventName.ERROR) < names.index(EventName.DISCONNECT)
        assert recorder.of(EventName.DISCONNECT)[0].detail == "cable pulled"
        assert linked.reconnect_pending
        await linked.close()

    async def test_orderly_close_reconnects_without_error(self, linked, factory, recorder):
        await linked.connect()
        factory.created[0].frames.put_nowait(None)
        await settle()

        assert recorder.of(EventName.ERROR) == []
        assert len(recorder.of(EventName.DISCONNECT)) == 1
        assert linked.reconnect_pending
        await linked.close()

    async def test_disabling_cancels_reconnect(self, linked, recorder):
        linked._transport_factory = TransportFactory(True)
        await linked.connect()
        assert linked.reconnect_pending

        await linked.set_enabled(False)
        assert not linked.reconnect_pending

    async def test_enabling_connects(self, linked, factory):
        await linked.set_enabled(True)
        assert linked.connected
        await linked.set_enabled(False)
        assert linked.state is ConnectionState.DISCONNECTED
        assert factory.created[0].closed

    async def test_reader_survives_info_frames(self, linked, factory, recorder):
        await linked.connect()
        frames = factory.created[0].frames
        frames.put_nowait(json.dumps({"type": "system", "event": "boot"}))
        frames.put_nowait(json.dumps({"type": "status", "event": "ready"}))
        frames.put_nowait(heartbeat(70))
        await settle()

        assert linked.connected
        assert [e.bpm for e in recorder.of(EventName.HEARTRATE)] == [70]
        assert recorder.of(EventName.ERROR) == []
        await linked.disconnect()

    async def test_unexpected_reader_error_reconnects(self, linked, factory, recorder):
        await linked.connect()
        factory.created[0].frames.put_nowait(ValueError("decoder bug"))
        await settle()

        assert linked.state is ConnectionState.DISCONNECTED
        assert factory.created[0].closed
        (error,) = recorder.of(EventName.ERROR)
        assert isinstance(error, ValueError)
        assert len(recorder.of(EventName.DISCONNECT)) == 1
        assert linked.reconnect_pending
        await linked.close()

    async def test_disable_while_opening_abandons_link(self, linked, recorder):
        gate = asyncio.Event()
        slow = FakeTransport(gate=gate)
        linked._transport_factory = lambda settings: slow

        attempt = asyncio.create_task(linked.connect())
        await settle()
        assert linked.state is ConnectionState.CONNECTING

        await linked.set_enabled(False)
        gate.set()

        assert await attempt is False
        assert linked.state is ConnectionState.DISCONNECTED
        assert slow.closed
        assert recorder.of(EventName.CONNECT) == []
        assert not linked.reconnect_pending

    async def test_disconnect_while_opening_abandons_link(self, linked, recorder):
        gate = asyncio.Event()
        slow = FakeTransport(gate=gate)
        linked._transport_factory = lambda settings: slow

        attempt = asyncio.create_task(linked.connect())
        await settle()
        await linked.disconnect()
        gate.set()

        assert await attempt is False
        assert linked.state is ConnectionState.DISCONNECTED
        assert slow.closed
        assert recorder.of(EventName.CONNECT) == []

    async def test_connect_during_pending_open_keeps_one_link(self, linked, recorder):
        gate = asyncio.Event()
        slow, fast = FakeTransport(gate=gate), FakeTransport()
        queued = [slow, fast]
        linked._transport_factory = lambda settings: queued.pop(0)

        first = asyncio.create_task(linked.connect())
        await settle()
        assert await linked.connect() is True
        gate.set()

        assert await first is False
        assert slow.closed
        assert not fast.closed
        assert linked.connected

        fast.frames.put_nowait(heartbeat(72))
        await settle()
        assert len(recorder.of(EventName.HEARTRATE)) == 1
        assert len(recorder.of(EventName.CONNECT)) == 1
        await linked.disconnect()


class TestTransportRegistry:
    def test_websocket_factory(self):
        transport = get_transport(DeviceSettings(device_ip="192.168.4.1"))
        assert isinstance(transport, WebSocketTransport)
        assert transport.url == "ws://192.168.4.1:81"

    def test_serial_requires_port(self):
        with pytest.raises(TransportError, match="serial port"):
            get_transport(DeviceSettings(connection_type="serial"))
