"""Device transports — serial line and WebSocket frame sources.

A transport only moves text frames; decoding and dispatch belong to the
coordinator.  Adding a transport:

1. Subclass :class:`BaseTransport`.
2. Implement ``open``, ``lines`` and ``close``.
3. Register it with :func:`register_transport`.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import AsyncIterator, Callable

import serial
import structlog
import websockets
from websockets.exceptions import ConnectionClosedError, WebSocketException

from story_pulse.config import Settings, get_settings
from story_pulse.exceptions import TransportError
from story_pulse.models import ConnectionType, DeviceSettings

logger = structlog.get_logger(__name__)


class BaseTransport(ABC):
    """Contract every device transport must implement."""

    connection_type: ConnectionType

    @abstractmethod
    async def open(self) -> None:
        """Establish the link.  Raise :class:`TransportError` on failure."""

    @abstractmethod
    def lines(self) -> AsyncIterator[str]:
        """Yield raw frames until the link closes.

        Ends normally on an orderly close; raises :class:`TransportError`
        when the link fails.
        """

    @abstractmethod
    async def close(self) -> None:
        """Release the link.  Safe to call more than once."""

    def describe(self) -> str:
        return self.connection_type.value


# ── Serial ────────────────────────────────────────────────────


class SerialTransport(BaseTransport):
    """Newline-delimited JSON over a serial port (pyserial).

    Blocking reads run in a worker thread; ``read_timeout`` bounds how long
    a cancelled read can linger.
    """

    connection_type = ConnectionType.SERIAL

    def __init__(self, port: str, baud_rate: int = 115200, *, read_timeout: float = 1.0) -> None:
        self._port = port
        self._baud_rate = baud_rate
        self._read_timeout = read_timeout
        self._serial: serial.Serial | None = None

    def describe(self) -> str:
        return f"serial:{self._port}@{self._baud_rate}"

    async def open(self) -> None:
        try:
            self._serial = await asyncio.to_thread(
                serial.Serial, self._port, self._baud_rate, timeout=self._read_timeout,
            )
        except (serial.SerialException, OSError, ValueError) as exc:
            raise TransportError(f"cannot open serial port {self._port}: {exc}") from exc
        logger.info("transport.serial_opened", port=self._port, baud_rate=self._baud_rate)

    async def lines(self) -> AsyncIterator[str]:
        if self._serial is None:
            raise TransportError("serial port is not open")
        port = self._serial
        while port.is_open:
            try:
                raw = await asyncio.to_thread(port.readline)
            except (serial.SerialException, OSError, TypeError) as exc:
                raise TransportError(f"serial read failed: {exc}") from exc
            if not raw:
                continue
            line = raw.decode("utf-8", errors="replace").strip()
            if line:
                yield line

    async def close(self) -> None:
        port, self._serial = self._serial, None
        if port is not None and port.is_open:
            await asyncio.to_thread(port.close)
            logger.info("transport.serial_closed", port=self._port)


# ── WebSocket ─────────────────────────────────────────────────


class WebSocketTransport(BaseTransport):
    """JSON text frames from the device's WebSocket server (``ws://<ip>:81``)."""

    connection_type = ConnectionType.WEBSOCKET

    def __init__(self, host: str, port: int = 81, *, open_timeout: float = 5.0) -> None:
        self._url = f"ws://{host}:{port}"
        self._open_timeout = open_timeout
        self._ws = None

    @property
    def url(self) -> str:
        return self._url

    def describe(self) -> str:
        return self._url

    async def open(self) -> None:
        try:
            self._ws = await websockets.connect(self._url, open_timeout=self._open_timeout)
        except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
            raise TransportError(f"cannot connect to {self._url}: {exc}") from exc
        logger.info("transport.websocket_opened", url=self._url)

    async def lines(self) -> AsyncIterator[str]:
        if self._ws is None:
            raise TransportError("websocket is not open")
        try:
            async for message in self._ws:
                if isinstance(message, bytes):
                    message = message.decode("utf-8", errors="replace")
                yield message
        except ConnectionClosedError as exc:
            raise TransportError(f"websocket closed abnormally: {exc}") from exc

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()
            logger.info("transport.websocket_closed", url=self._url)


# ── Registry ──────────────────────────────────────────────────

TransportFactory = Callable[[DeviceSettings, Settings], BaseTransport]


def _serial_factory(device: DeviceSettings, settings: Settings) -> BaseTransport:
    if not device.serial_port:
        raise TransportError("no serial port configured")
    return SerialTransport(
        device.serial_port, device.serial_baud_rate, read_timeout=settings.serial_read_timeout,
    )


def _websocket_factory(device: DeviceSettings, settings: Settings) -> BaseTransport:
    if not device.device_ip:
        raise TransportError("no device IP configured")
    return WebSocketTransport(
        device.device_ip, settings.websocket_port, open_timeout=settings.websocket_open_timeout,
    )


_REGISTRY: dict[ConnectionType, TransportFactory] = {
    ConnectionType.SERIAL: _serial_factory,
    ConnectionType.WEBSOCKET: _websocket_factory,
}


def register_transport(connection_type: ConnectionType, factory: TransportFactory) -> None:
    """Register (or replace) the factory for a connection type."""
    _REGISTRY[connection_type] = factory


def get_transport(device: DeviceSettings, settings: Settings | None = None) -> BaseTransport:
    """Build the transport selected by ``device.connection_type``.

    Raises :class:`TransportError` if the type is unregistered or its
    address is missing.
    """
    factory = _REGISTRY.get(device.connection_type)
    if factory is None:
        raise TransportError(f"no transport registered for {device.connection_type.value}")
    return factory(device, settings or get_settings())
