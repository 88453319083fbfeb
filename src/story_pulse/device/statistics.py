"""Rolling statistics over the coordinator's raw heartbeat history.

These complement :mod:`story_pulse.analysis.heart_rate`: the analyzer
scores each sample against a sticky baseline, while these helpers compare
the newest readings with the mean of the last minute.
"""

from __future__ import annotations

import math
from typing import Sequence

from story_pulse.analysis.signal import clamp, population_variance
from story_pulse.models import EngagementSnapshot, EngagementState, HeartRateReading, HeartRateTrend

MIN_READINGS = 10
TREND_WINDOW = 60
_AVG_SPLIT = 10
_TREND_MARGIN = 5


def heart_rate_trend(readings: Sequence[HeartRateReading]) -> HeartRateTrend:
    """Compare the newest ten readings with the oldest ten of the last minute."""
    if len(readings) < MIN_READINGS:
        return HeartRateTrend(trend="insufficient_data")

    rates = [r.bpm for r in readings[-TREND_WINDOW:]]
    avg = sum(rates) / len(rates)
    variance = population_variance(rates)

    recent_avg = sum(rates[-_AVG_SPLIT:]) / _AVG_SPLIT
    older_avg = sum(rates[:_AVG_SPLIT]) / _AVG_SPLIT

    trend = "stable"
    if recent_avg > older_avg + _TREND_MARGIN:
        trend = "rising"
    elif recent_avg < older_avg - _TREND_MARGIN:
        trend = "falling"

    return HeartRateTrend(
        trend=trend,
        avg_rate=round(avg),
        min_rate=min(rates),
        max_rate=max(rates),
        variance=round(variance, 2),
        recent_avg=round(recent_avg),
        older_avg=round(older_avg),
    )


def engagement_snapshot(
    readings: Sequence[HeartRateReading], current_hr: float,
) -> EngagementSnapshot:
    """Score excitement, tension and engagement against the rolling mean.

    * excitement — deviation of *current_hr* from the mean, 10 % → 20 points
    * tension — standard deviation, 5 bpm → 0 and 30 bpm → 100
    * engagement — min/max range, 40 bpm → 100, floor of 20
    """
    trend = heart_rate_trend(readings)
    if trend.trend == "insufficient_data":
        return EngagementSnapshot(heart_rate=current_hr)

    baseline = trend.avg_rate
    excitement = clamp((current_hr - baseline) / baseline * 200, 0, 100) if baseline else 0.0
    std = math.sqrt(trend.variance)
    tension = clamp((std - 5) / 25 * 100, 0, 100)
    hr_range = trend.max_rate - trend.min_rate
    engagement = clamp(hr_range / 40 * 100, 20, 100)

    if excitement > 60 and tension > 60:
        state = EngagementState.AROUSED
    elif excitement > 50 and tension < 40:
        state = EngagementState.EXCITED
    elif tension > 60:
        state = EngagementState.ANXIOUS
    elif engagement < 30 and excitement < 30:
        state = EngagementState.BORED
    elif excitement < 30 and tension < 30:
        state = EngagementState.CALM
    else:
        state = EngagementState.NEUTRAL

    return EngagementSnapshot(
        state=state,
        excitement=round(excitement),
        tension=round(tension),
        engagement=round(engagement),
        heart_rate=current_hr,
        trend=trend.trend,
        debug={
            "baseline_hr": baseline,
            "std_dev": round(std, 1),
            "hr_range": hr_range,
            "variance": trend.variance,
        },
    )
