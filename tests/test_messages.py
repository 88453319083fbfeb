"""Tests for inbound device frame decoding."""

import json

import pytest

from story_pulse.device.messages import (
    DeviceInfoMessage,
    GestureMessage,
    HeartbeatMessage,
    decode_message,
)
from story_pulse.exceptions import MessageDecodeError


class TestHeartbeat:
    def test_serial_field_names(self):
        msg = decode_message('{"type": "heartbeat", "heartRate": 72, "fingerDetected": true}')
        assert isinstance(msg, HeartbeatMessage)
        assert msg.bpm == 72
        assert msg.finger_detected is True

    def test_websocket_field_names(self):
        msg = decode_message({"type": "heartrate", "bpm": 88, "instant": 90.5})
        assert isinstance(msg, HeartbeatMessage)
        assert msg.bpm == 88
        assert msg.finger_detected is False
        assert msg.instant == 90.5

    def test_missing_or_null_bpm_is_zero(self):
        assert decode_message({"type": "heartbeat"}).bpm == 0
        assert decode_message({"type": "heartbeat", "heartRate": None}).bpm == 0

    def test_bytes_frame(self):
        msg = decode_message(b'{"type":"heartbeat","heartRate":65}\r\n')
        assert msg.bpm == 65

    def test_non_numeric_bpm_rejected(self):
        with pytest.raises(MessageDecodeError):
            decode_message({"type": "heartbeat", "heartRate": "fast"})
        with pytest.raises(MessageDecodeError):
            decode_message({"type": "heartbeat", "heartRate": True})


class TestGesture:
    def test_magnitude(self):
        msg = decode_message(json.dumps({"type": "gesture", "magnitude": 2.5, "x": 1}))
        assert isinstance(msg, GestureMessage)
        assert msg.magnitude == 2.5

    def test_negative_magnitude_rejected(self):
        with pytest.raises(MessageDecodeError):
            decode_message({"type": "gesture", "magnitude": -1})


class TestDeviceInfo:
    @pytest.mark.parametrize("kind", ["system", "threshold_info", "status"])
    def test_info_types(self, kind):
        msg = decode_message({"type": kind, "event": "boot", "uptime": 3})
        assert isinstance(msg, DeviceInfoMessage)
        assert msg.type == kind
        assert msg.event == "boot"
        assert msg.model_extra["uptime"] == 3


class TestMalformed:
    @pytest.mark.parametrize(
        "raw",
        [
            "",
            "   ",
            "not json",
            "[1, 2, 3]",
            "42",
            '{"type": "unknown"}',
            '{"heartRate": 70}',
        ],
    )
    def test_rejected(self, raw):
        with pytest.raises(MessageDecodeError) as exc_info:
            decode_message(raw)
        assert exc_info.value.raw == raw

    def test_error_names_frame_type(self):
        with pytest.raises(MessageDecodeError, match="unknown"):
            decode_message({"type": "unknown"})
