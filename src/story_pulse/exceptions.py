"""Exception hierarchy for the biofeedback core.

None of these are fatal to the host process: decode errors drop a single
frame, transport errors become ``error`` events and a scheduled reconnect.
"""

from __future__ import annotations


class StoryPulseError(Exception):
    """Base class for all package errors."""


class MessageDecodeError(StoryPulseError):
    """An inbound device frame could not be parsed or validated."""

    def __init__(self, message: str, raw: object = None) -> None:
        super().__init__(message)
        self.raw = raw


class TransportError(StoryPulseError):
    """The device transport could not be opened or failed while reading."""
