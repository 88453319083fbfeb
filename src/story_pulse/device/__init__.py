"""Device link — frame decoding, transports and the connection coordinator."""

from story_pulse.device.coordinator import DeviceConnectionCoordinator
from story_pulse.device.messages import (
    DeviceInfoMessage,
    GestureMessage,
    HeartbeatMessage,
    decode_message,
)

__all__ = [
    "DeviceConnectionCoordinator",
    "DeviceInfoMessage",
    "GestureMessage",
    "HeartbeatMessage",
    "decode_message",
]
