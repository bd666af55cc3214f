"""Shared scoring and trend-regression helpers."""

import math
from dataclasses import dataclass
from typing import Sequence


def clamp(value: float, low: float, high: float) -> float:
    """Clamp value into [low, high]."""
    return max(low, min(high, value))


@dataclass(frozen=True)
class RegressionResult:
    slope: float
    intercept: float
    r_squared: float

    @property
    def confidence(self) -> float:
        return self.r_squared


_DEGENERATE = RegressionResult(slope=0.0, intercept=0.0, r_squared=0.0)


def linear_regression(ys: Sequence[float]) -> RegressionResult:
    """Ordinary least squares of ys against their index (0, 1, 2, ...).

    Degenerate inputs (fewer than two samples, zero variance in x, or
    constant y) produce zero confidence rather than an error. R-squared is
    clamped into [0, 1] so it can be used directly as a confidence.
    """
    n = len(ys)
    if n < 2:
        return _DEGENERATE

    xs = range(n)
    sum_x = sum(xs)
    sum_y = float(sum(ys))
    sum_xy = sum(x * y for x, y in zip(xs, ys))
    sum_xx = sum(x * x for x in xs)

    denominator = n * sum_xx - sum_x * sum_x
    if denominator == 0:
        return _DEGENERATE

    slope = (n * sum_xy - sum_x * sum_y) / denominator
    intercept = (sum_y - slope * sum_x) / n

    y_mean = sum_y / n
    ss_total = sum((y - y_mean) ** 2 for y in ys)
    if ss_total == 0:
        # Constant series: the fit is exact but carries no trend information
        return RegressionResult(slope=0.0, intercept=intercept, r_squared=0.0)

    ss_residual = sum((y - (slope * x + intercept)) ** 2 for x, y in zip(xs, ys))
    r_squared = 1 - ss_residual / ss_total
    if not math.isfinite(r_squared):
        r_squared = 0.0
    return RegressionResult(slope=slope, intercept=intercept, r_squared=clamp(r_squared, 0.0, 1.0))
