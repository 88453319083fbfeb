"""Heart-rate signal analysis — baseline, emotion zones, trend and HRV proxy.

The analyzer keeps a bounded rolling history of accepted samples and
recomputes an :class:`EmotionState` on every new one.  All derived values
are plain functions of that history:

* **Baseline** — mean of the lowest quartile, computed once the history
  first holds ``BASELINE_MIN_SAMPLES`` values and then frozen until
  :meth:`HeartRateSignalAnalyzer.reset`.
* **Emotion** — threshold ladder on the *current* value only.
* **Trend / strength** — OLS slope over the last ``WINDOW`` samples.
* **HRV proxy** — RMSSD of successive differences over the same window.
* **Volatility** — population standard deviation over the same window.
"""

from __future__ import annotations

import math
from collections import deque
from numbers import Real
from typing import Any

import structlog

from story_pulse.analysis.signal import clamp, linear_slope, population_std, rmssd
from story_pulse.models import (
    Emotion,
    EmotionShift,
    EmotionState,
    HeartRateSample,
    HRVLevel,
    Trend,
    Volatility,
    now_ms,
)

logger = structlog.get_logger(__name__)

# ── Constants ─────────────────────────────────────────────────

MAX_HISTORY = 60
MAX_EMOTION_HISTORY = 20
BASELINE_MIN_SAMPLES = 10
WINDOW = 10
MIN_WINDOW_SAMPLES = 5

MAX_VALID_HR = 220

# (exclusive upper bound, emotion) — anything >= the last bound is INTENSE
_HR_ZONES: tuple[tuple[float, Emotion], ...] = (
    (55, Emotion.VERY_CALM),
    (65, Emotion.CALM),
    (80, Emotion.NEUTRAL),
    (95, Emotion.INTERESTED),
    (110, Emotion.EXCITED),
    (130, Emotion.VERY_EXCITED),
)

_AROUSAL_MIN_HR = 50
_AROUSAL_MAX_HR = 140

_EMOTION_VALENCE: dict[Emotion, int] = {
    Emotion.VERY_CALM: 20,
    Emotion.CALM: 40,
    Emotion.NEUTRAL: 0,
    Emotion.INTERESTED: 60,
    Emotion.EXCITED: 80,
    Emotion.VERY_EXCITED: 70,
    Emotion.INTENSE: 30,
}

_SLOPE_THRESHOLD = 0.5

_SHIFT_INTENSITY_DELTA = 20
_SHIFT_AROUSAL_DELTA = 25

# ── Prompt text ───────────────────────────────────────────────

_BASE_SUGGESTIONS: dict[Emotion, str] = {
    Emotion.VERY_CALM: (
        "The player is calm: a good moment for deep narrative, emotional set-up "
        "or world-building. Longer dialogue and description work well."
    ),
    Emotion.NEUTRAL: (
        "The player is in a neutral state: keep the current pace and advance "
        "the main plot or character development."
    ),
    Emotion.INTERESTED: (
        "The player is getting interested: introduce new elements, reveal a "
        "secret or add more interactive choices."
    ),
    Emotion.EXCITED: (
        "The player is highly aroused: suited to climactic scenes, major "
        "decision points or thrilling moments. Quicken the pace and raise the drama."
    ),
    Emotion.INTENSE: (
        "The player is feeling something intense, so handle it with care: it "
        "may be tension, excitement or another strong emotion. Offer clear "
        "choices that keep the player in control."
    ),
}
_BASE_SUGGESTIONS[Emotion.CALM] = _BASE_SUGGESTIONS[Emotion.VERY_CALM]
_BASE_SUGGESTIONS[Emotion.VERY_EXCITED] = _BASE_SUGGESTIONS[Emotion.EXCITED]

_TREND_SUGGESTIONS: dict[Trend, str] = {
    Trend.RISING: " Arousal is rising, so tense or exciting plot lines can keep building.",
    Trend.FALLING: " Arousal is falling; consider slowing the pace or moving to calmer content.",
}
_HIGH_VOLATILITY_SUGGESTION = (
    " Emotions are fluctuating sharply: provide stable story anchors and avoid "
    "overly stimulating content."
)

_EMOTION_LABELS: dict[Emotion, str] = {
    Emotion.VERY_CALM: "very calm",
    Emotion.CALM: "calm",
    Emotion.NEUTRAL: "neutral",
    Emotion.INTERESTED: "interested / mildly excited",
    Emotion.EXCITED: "excited",
    Emotion.VERY_EXCITED: "very excited",
    Emotion.INTENSE: "intense",
}
_TREND_LABELS = {Trend.RISING: "rising", Trend.STABLE: "stable", Trend.FALLING: "falling"}
_VOLATILITY_LABELS = {
    Volatility.LOW: "steady",
    Volatility.MEDIUM: "some fluctuation",
    Volatility.HIGH: "sharp fluctuation",
}


def emotion_from_hr(hr: float) -> Emotion:
    """Map a single heart-rate value to its emotion zone."""
    for upper, emotion in _HR_ZONES:
        if hr < upper:
            return emotion
    return Emotion.INTENSE


def estimate_valence(emotion: Emotion, trend: Trend) -> float:
    """Table lookup nudged by trend, rescaled with ``(v - 50) * 2``.

    The table is not centred on 50, so the result is skewed (``neutral``
    maps to -100).  Only ``neutral`` + falling leaves [-100, 100] and is
    clamped.
    """
    valence = _EMOTION_VALENCE.get(emotion, 0)
    if trend is Trend.RISING:
        valence += 10
    elif trend is Trend.FALLING:
        valence -= 10
    return clamp((valence - 50) * 2, -100, 100)


def _is_valid_hr(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, Real):
        return False
    return math.isfinite(value) and 0 < value <= MAX_VALID_HR


class HeartRateSignalAnalyzer:
    """Streaming heart-rate analyzer producing :class:`EmotionState` snapshots.

    Instances are independent; the coordinator owns one per session.
    """

    def __init__(self) -> None:
        self._history: deque[HeartRateSample] = deque(maxlen=MAX_HISTORY)
        self._emotion_history: deque[EmotionState] = deque(maxlen=MAX_EMOTION_HISTORY)
        self._baseline: float | None = None
        self._current: EmotionState | None = None

    # ── Read-only views ───────────────────────────────────────

    @property
    def baseline(self) -> float | None:
        return self._baseline

    @property
    def current_emotion(self) -> EmotionState | None:
        return self._current

    @property
    def history(self) -> list[HeartRateSample]:
        return list(self._history)

    @property
    def emotion_history(self) -> list[EmotionState]:
        return list(self._emotion_history)

    # ── Ingestion ─────────────────────────────────────────────

    def ingest(self, value: Any, timestamp: int | None = None) -> EmotionState | None:
        """Add one heart-rate value and return the refreshed emotion state.

        Invalid values (non-numeric, non-finite, ``<= 0`` or ``> 220``) are
        logged and ignored; the analyzer state is left untouched and
        ``None`` is returned.
        """
        if not _is_valid_hr(value):
            logger.warning("heart_rate.invalid_sample", value=value)
            return None

        ts = timestamp if timestamp is not None else now_ms()
        self._history.append(HeartRateSample(value=float(value), timestamp=ts))

        if self._baseline is None and len(self._history) >= BASELINE_MIN_SAMPLES:
            self._compute_baseline()

        return self._analyze(ts)

    def reset(self) -> None:
        self._history.clear()
        self._emotion_history.clear()
        self._baseline = None
        self._current = None
        logger.info("heart_rate.reset")

    # ── Derived metrics ───────────────────────────────────────

    def _compute_baseline(self) -> None:
        ordered = sorted(s.value for s in self._history)
        lowest = ordered[: math.ceil(len(ordered) * 0.25)]
        self._baseline = sum(lowest) / len(lowest)
        logger.info("heart_rate.baseline_computed", baseline=round(self._baseline, 1))

    def _recent_values(self) -> list[float]:
        return [s.value for s in list(self._history)[-WINDOW:]]

    def intensity(self, hr: float) -> float:
        if self._baseline is None:
            return clamp((hr - 50) / 80 * 100, 0, 100)
        return clamp(abs(hr - self._baseline) / 40 * 100, 0, 100)

    @staticmethod
    def arousal(hr: float) -> float:
        return clamp((hr - _AROUSAL_MIN_HR) / (_AROUSAL_MAX_HR - _AROUSAL_MIN_HR) * 100, 0, 100)

    def hr_variability(self) -> HRVLevel | None:
        if len(self._history) < MIN_WINDOW_SAMPLES:
            return None
        value = rmssd(self._recent_values())
        if value < 2:
            return HRVLevel.VERY_LOW
        if value < 5:
            return HRVLevel.LOW
        if value < 10:
            return HRVLevel.NORMAL
        if value < 15:
            return HRVLevel.HIGH
        return HRVLevel.VERY_HIGH

    def _slope(self) -> float | None:
        if len(self._history) < MIN_WINDOW_SAMPLES:
            return None
        return linear_slope(self._recent_values())

    def trend(self) -> Trend:
        slope = self._slope()
        if slope is None:
            return Trend.STABLE
        if slope > _SLOPE_THRESHOLD:
            return Trend.RISING
        if slope < -_SLOPE_THRESHOLD:
            return Trend.FALLING
        return Trend.STABLE

    def trend_strength(self) -> float:
        slope = self._slope()
        if slope is None:
            return 0.0
        return clamp(abs(slope) * 20, 0, 100)

    def volatility(self) -> Volatility:
        if len(self._history) < MIN_WINDOW_SAMPLES:
            return Volatility.LOW
        std = population_std(self._recent_values())
        if std < 3:
            return Volatility.LOW
        if std < 7:
            return Volatility.MEDIUM
        return Volatility.HIGH

    def _analyze(self, timestamp: int) -> EmotionState:
        current_hr = self._history[-1].value
        emotion = emotion_from_hr(current_hr)
        trend = self.trend()

        state = EmotionState(
            emotion=emotion,
            intensity=self.intensity(current_hr),
            arousal=self.arousal(current_hr),
            valence=estimate_valence(emotion, trend),
            current_hr=current_hr,
            baseline_hr=self._baseline,
            hr_delta=current_hr - self._baseline if self._baseline is not None else 0.0,
            hr_variability=self.hr_variability(),
            trend=trend,
            volatility=self.volatility(),
            trend_strength=self.trend_strength(),
            timestamp=timestamp,
        )

        self._current = state
        self._emotion_history.append(state)
        return state

    # ── Shift detection ───────────────────────────────────────

    def detect_emotion_shift(self) -> EmotionShift | None:
        """Compare the oldest and newest of the last three snapshots."""
        if len(self._emotion_history) < 3:
            return None

        first = self._emotion_history[-3]
        last = self._emotion_history[-1]
        intensity_delta = last.intensity - first.intensity
        arousal_delta = last.arousal - first.arousal

        if (
            last.emotion != first.emotion
            or abs(intensity_delta) > _SHIFT_INTENSITY_DELTA
            or abs(arousal_delta) > _SHIFT_AROUSAL_DELTA
        ):
            return EmotionShift(
                from_emotion=first.emotion,
                to_emotion=last.emotion,
                intensity_delta=intensity_delta,
                arousal_delta=arousal_delta,
            )
        return None

    # ── Prompt helpers ────────────────────────────────────────

    def content_suggestion(self) -> str | None:
        """Directive for the story generator based on the current state."""
        state = self._current
        if state is None:
            return None

        suggestion = _BASE_SUGGESTIONS[state.emotion]
        suggestion += _TREND_SUGGESTIONS.get(state.trend, "")
        if state.volatility is Volatility.HIGH:
            suggestion += _HIGH_VOLATILITY_SUGGESTION
        return suggestion

    def emotion_summary(self) -> str | None:
        """Multi-line digest of the current state for prompt consumers."""
        e = self._current
        if e is None:
            return None

        if e.valence > 0:
            polarity = "positive"
        elif e.valence < 0:
            polarity = "negative"
        else:
            polarity = "neutral"

        lines = [
            f"Current emotion: {_EMOTION_LABELS[e.emotion]}",
            f"Intensity: {e.intensity:.0f}/100",
            f"Arousal: {e.arousal:.0f}/100",
            f"Valence: {polarity} ({e.valence:.0f})",
            f"Heart-rate trend: {_TREND_LABELS[e.trend]} (strength: {e.trend_strength:.0f}%)",
            f"Fluctuation: {_VOLATILITY_LABELS[e.volatility]}",
        ]
        if e.baseline_hr is not None:
            sign = "+" if e.hr_delta > 0 else ""
            lines.append(
                f"Heart rate: {e.current_hr:g} BPM (baseline: {e.baseline_hr:.1f} BPM, "
                f"delta: {sign}{e.hr_delta:.1f})"
            )
        else:
            lines.append(f"Heart rate: {e.current_hr:g} BPM (baseline pending)")

        shift = self.detect_emotion_shift()
        if shift is not None:
            lines.append(
                f"Emotion shift detected: {shift.from_emotion.value} -> {shift.to_emotion.value}"
            )
        return "\n".join(lines)
