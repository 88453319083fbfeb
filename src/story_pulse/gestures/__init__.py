"""Accelerometer gesture recognition."""

from story_pulse.gestures.classifier import GestureClassifier, GestureState
from story_pulse.gestures.scheduler import LoopScheduler, ManualScheduler, Scheduler

__all__ = ["GestureClassifier", "GestureState", "LoopScheduler", "ManualScheduler", "Scheduler"]
