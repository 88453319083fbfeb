"""Small streaming-statistics helpers shared by the analyzers."""

from __future__ import annotations

import math
from typing import Sequence


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def linear_slope(values: Sequence[float]) -> float:
    """Ordinary least-squares slope of *values* against their index."""
    n = len(values)
    if n < 2:
        return 0.0
    sum_x = sum(range(n))
    sum_y = sum(values)
    sum_xy = sum(i * v for i, v in enumerate(values))
    sum_x2 = sum(i * i for i in range(n))
    denominator = n * sum_x2 - sum_x * sum_x
    if denominator == 0:
        return 0.0
    return (n * sum_xy - sum_x * sum_y) / denominator


def rmssd(values: Sequence[float]) -> float:
    """Root-mean-square of successive differences."""
    if len(values) < 2:
        return 0.0
    squares = [(b - a) ** 2 for a, b in zip(values, values[1:])]
    return math.sqrt(sum(squares) / len(squares))


def population_variance(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    mean = sum(values) / len(values)
    return sum((v - mean) ** 2 for v in values) / len(values)


def population_std(values: Sequence[float]) -> float:
    return math.sqrt(population_variance(values))
