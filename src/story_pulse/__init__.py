"""story-pulse — heart-rate and gesture feedback for interactive fiction."""

__version__ = "0.1.0"
