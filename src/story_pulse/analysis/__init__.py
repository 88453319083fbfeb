"""Heart-rate analysis — rolling statistics and emotion-state estimation."""

from story_pulse.analysis.heart_rate import (
    HeartRateSignalAnalyzer,
    emotion_from_hr,
    estimate_valence,
)

__all__ = ["HeartRateSignalAnalyzer", "emotion_from_hr", "estimate_valence"]
