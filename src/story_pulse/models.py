"""Shared Pydantic models used across the framework."""

from __future__ import annotations

import math
import time
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


def now_ms() -> int:
    """Wall-clock time in integer milliseconds."""
    return int(time.time() * 1000)


# ── Enums ─────────────────────────────────────────────────────

class Emotion(str, Enum):
    """Heart-rate zones, calmest first."""
    VERY_CALM = "very_calm"
    CALM = "calm"
    NEUTRAL = "neutral"
    INTERESTED = "interested"
    EXCITED = "excited"
    VERY_EXCITED = "very_excited"
    INTENSE = "intense"


class HRVLevel(str, Enum):
    """Bucketed RMSSD of successive heart-rate differences."""
    VERY_LOW = "very_low"
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    VERY_HIGH = "very_high"


class Trend(str, Enum):
    RISING = "rising"
    STABLE = "stable"
    FALLING = "falling"


class Volatility(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class GestureType(str, Enum):
    SINGLE = "single"
    DOUBLE = "double"


class ConnectionType(str, Enum):
    """Supported device transports."""
    SERIAL = "serial"
    WEBSOCKET = "websocket"


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


# ── Heart-rate analysis ───────────────────────────────────────

class HeartRateSample(BaseModel):
    """A single accepted heart-rate value in the analyzer history."""
    model_config = ConfigDict(frozen=True)

    value: float
    timestamp: int


class EmotionState(BaseModel):
    """Snapshot produced by the analyzer for every accepted sample."""
    emotion: Emotion
    intensity: float = Field(ge=0, le=100)
    arousal: float = Field(ge=0, le=100)
    valence: float = Field(ge=-100, le=100)
    current_hr: float
    baseline_hr: float | None = None
    hr_delta: float = 0.0
    hr_variability: HRVLevel | None = None
    trend: Trend = Trend.STABLE
    volatility: Volatility = Volatility.LOW
    trend_strength: float = Field(0.0, ge=0, le=100)
    timestamp: int = Field(default_factory=now_ms)


class EmotionShift(BaseModel):
    """A notable change across the three most recent emotion snapshots."""
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["shift"] = "shift"
    from_emotion: Emotion = Field(alias="from")
    to_emotion: Emotion = Field(alias="to")
    intensity_delta: float
    arousal_delta: float
    timestamp: int = Field(default_factory=now_ms)


# ── Gestures ──────────────────────────────────────────────────

class GestureSample(BaseModel):
    """An accelerometer sample waiting in the pending window."""
    model_config = ConfigDict(frozen=True)

    magnitude: float
    timestamp: int


class GestureEvent(BaseModel):
    """Terminal output of one classification cycle."""
    model_config = ConfigDict(frozen=True)

    type: GestureType
    magnitude: float
    timestamp: int
    interval: int | None = None


# ── Coordinator payloads ──────────────────────────────────────

class HeartRateEvent(BaseModel):
    """Re-broadcast of a raw heartbeat frame."""
    bpm: float
    finger_detected: bool = False
    instant: float | None = None


class HeartRateReading(BaseModel):
    """Raw heartbeat kept in the coordinator's rolling history."""
    model_config = ConfigDict(frozen=True)

    bpm: float
    finger_detected: bool = False
    timestamp: int = Field(default_factory=now_ms)


class ConnectionEvent(BaseModel):
    type: ConnectionType | None = None
    source: str = "device"
    detail: str | None = None


class HeartRateTrend(BaseModel):
    """Coarse trend over the coordinator's raw history (last 60 readings)."""
    trend: Literal["rising", "stable", "falling", "insufficient_data"]
    avg_rate: int = 0
    min_rate: float = 0
    max_rate: float = 0
    variance: float = 0.0
    recent_avg: int | None = None
    older_avg: int | None = None


class EngagementState(str, Enum):
    CALM = "calm"
    NEUTRAL = "neutral"
    EXCITED = "excited"
    AROUSED = "aroused"
    ANXIOUS = "anxious"
    BORED = "bored"


class EngagementSnapshot(BaseModel):
    """Excitement / tension / engagement scores relative to the rolling mean."""
    state: EngagementState = EngagementState.CALM
    excitement: int = 0
    tension: int = 0
    engagement: int = 0
    heart_rate: float = 0
    trend: str = "stable"
    debug: dict[str, Any] = Field(default_factory=dict)


# ── Persisted device configuration ────────────────────────────

def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _as_number(value: Any, *, integer: bool = False) -> float:
    if isinstance(value, bool):
        raise ValueError("boolean is not a number")
    try:
        number = float(value)
    except TypeError as exc:
        raise ValueError(f"{value!r} is not a number") from exc
    if math.isnan(number):
        raise ValueError("NaN is not a valid setting")
    if integer and math.isfinite(number):
        return float(math.trunc(number))
    return number


class DeviceSettings(BaseModel):
    """User-tunable thresholds and connection details.

    Every numeric field is clamped into its documented range instead of
    being rejected, so setters and persisted documents share one rule.
    """
    model_config = ConfigDict(validate_assignment=True, use_enum_values=False)

    enabled: bool = False
    connection_type: ConnectionType = ConnectionType.WEBSOCKET
    device_ip: str = ""
    serial_port: str | None = None
    serial_baud_rate: int = 115200

    game_mode: int = 5
    heart_rate_target: int = 120

    gesture_enabled: bool = True
    gesture_threshold: float = 2.0
    gesture_max_interval: int = 800
    gesture_debounce_interval: int = 200

    @field_validator("game_mode", mode="before")
    @classmethod
    def _clamp_game_mode(cls, v: Any) -> int:
        return int(_clamp(_as_number(v, integer=True), 1, 10))

    @field_validator("heart_rate_target", mode="before")
    @classmethod
    def _clamp_hr_target(cls, v: Any) -> int:
        return int(_clamp(_as_number(v, integer=True), 80, 180))

    @field_validator("gesture_threshold", mode="before")
    @classmethod
    def _clamp_threshold(cls, v: Any) -> float:
        return _clamp(_as_number(v), 0.5, 10.0)

    @field_validator("gesture_max_interval", mode="before")
    @classmethod
    def _clamp_max_interval(cls, v: Any) -> int:
        return int(_clamp(_as_number(v, integer=True), 200, 2000))

    @field_validator("gesture_debounce_interval", mode="before")
    @classmethod
    def _clamp_debounce(cls, v: Any) -> int:
        return int(_clamp(_as_number(v, integer=True), 0, 1000))

    @field_validator("device_ip", mode="before")
    @classmethod
    def _strip_ip(cls, v: Any) -> str:
        return str(v or "").strip()


class DeviceStatus(BaseModel):
    """Point-in-time view of the coordinator for UI consumers."""
    state: ConnectionState
    connected: bool
    heart_rate: float = 0
    finger_detected: bool = False
    settings: DeviceSettings
