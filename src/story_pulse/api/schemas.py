"""Request / response models for the local UI bridge."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel

from story_pulse.models import (
    ConnectionType,
    EmotionShift,
    EmotionState,
    EngagementSnapshot,
    HeartRateTrend,
)


class SettingsUpdate(BaseModel):
    """Partial settings change.  Out-of-range numbers are clamped, not rejected."""
    enabled: bool | None = None
    connection_type: ConnectionType | None = None
    device_ip: str | None = None
    serial_port: str | None = None
    serial_baud_rate: int | None = None
    game_mode: float | None = None
    heart_rate_target: float | None = None
    gesture_enabled: bool | None = None
    gesture_threshold: float | None = None
    gesture_max_interval: float | None = None
    gesture_debounce_interval: float | None = None


class ConnectRequest(BaseModel):
    connection_type: ConnectionType | None = None
    address: str | None = None  # device IP (websocket) or port name (serial)
    baud_rate: int | None = None


class EmotionResponse(BaseModel):
    state: EmotionState | None = None
    summary: str | None = None
    suggestion: str | None = None
    shift: EmotionShift | None = None
    trend: HeartRateTrend
    engagement: EngagementSnapshot


class IngestResponse(BaseModel):
    accepted: bool
    detail: dict[str, Any] = {}
