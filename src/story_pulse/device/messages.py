"""Decoding of inbound device frames into a tagged union.

Each frame is one JSON object whose ``type`` field selects the variant:

=====================================  =========================
``type``                               model
=====================================  =========================
``heartbeat`` / ``heartrate``          :class:`HeartbeatMessage`
``gesture``                            :class:`GestureMessage`
``system`` / ``threshold_info`` /      :class:`DeviceInfoMessage`
``status``
=====================================  =========================

Anything else raises :class:`~story_pulse.exceptions.MessageDecodeError`.
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Literal, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from story_pulse.exceptions import MessageDecodeError


class HeartbeatMessage(BaseModel):
    """Heart-rate frame.  Serial firmware sends ``heartRate``, WiFi firmware ``bpm``."""
    model_config = ConfigDict(extra="ignore")

    type: Literal["heartbeat", "heartrate"]
    bpm: float = Field(0.0, validation_alias=AliasChoices("bpm", "heartRate", "heart_rate"))
    finger_detected: bool = Field(
        False, validation_alias=AliasChoices("fingerDetected", "finger_detected"),
    )
    instant: float | None = None

    @field_validator("bpm", mode="before")
    @classmethod
    def _missing_bpm_is_zero(cls, v: Any) -> Any:
        if v is None:
            return 0.0
        if isinstance(v, bool):
            raise ValueError("bpm must be a number")
        return v

    @field_validator("finger_detected", mode="before")
    @classmethod
    def _null_finger(cls, v: Any) -> Any:
        return False if v is None else v


class GestureMessage(BaseModel):
    """Accelerometer frame carrying the resultant magnitude in g."""
    model_config = ConfigDict(extra="ignore")

    type: Literal["gesture"]
    magnitude: float = Field(0.0, ge=0)

    @field_validator("magnitude", mode="before")
    @classmethod
    def _missing_magnitude_is_zero(cls, v: Any) -> Any:
        if v is None:
            return 0.0
        if isinstance(v, bool):
            raise ValueError("magnitude must be a number")
        return v


class DeviceInfoMessage(BaseModel):
    """Boot, threshold and status chatter.  Logged, never analysed."""
    model_config = ConfigDict(extra="allow")

    type: Literal["system", "threshold_info", "status"]
    event: str | None = None


DeviceMessage = Annotated[
    Union[HeartbeatMessage, GestureMessage, DeviceInfoMessage],
    Field(discriminator="type"),
]

_adapter: TypeAdapter[Any] = TypeAdapter(DeviceMessage)


def decode_message(raw: str | bytes | dict[str, Any]) -> HeartbeatMessage | GestureMessage | DeviceInfoMessage:
    """Parse and validate one frame.

    Raises
    ------
    MessageDecodeError
        On invalid JSON, a non-object payload, an unknown ``type`` or a
        field that fails validation.
    """
    if isinstance(raw, (str, bytes, bytearray)):
        text = raw.decode("utf-8", errors="replace") if isinstance(raw, (bytes, bytearray)) else raw
        text = text.strip()
        if not text:
            raise MessageDecodeError("empty frame", raw)
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise MessageDecodeError(f"invalid JSON: {exc.msg}", raw) from exc
    else:
        data = raw

    if not isinstance(data, dict):
        raise MessageDecodeError(f"expected a JSON object, got {type(data).__name__}", raw)

    try:
        return _adapter.validate_python(data)
    except ValidationError as exc:
        raise MessageDecodeError(
            f"invalid {data.get('type', 'untyped')!r} frame: {exc.error_count()} error(s)", raw,
        ) from exc
