"""
Percentage change between two period values.

The sentinel values matter: the dashboard colors and labels depend on
+100 ("new data"), -100 ("dropped to zero") and 0 with is_zero_to_zero.
A value of exactly 0 counts as "no data".
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from typing import Optional

STABLE_THRESHOLD = 5


@dataclass
class PercentageChange:
    change_percent: float
    has_current_data: bool
    has_previous_data: bool
    is_no_data: bool
    is_zero_to_zero: bool

    def to_dict(self) -> dict:
        d = asdict(self)
        return {
            "changePercent": d["change_percent"],
            "hasCurrentData": d["has_current_data"],
            "hasPreviousData": d["has_previous_data"],
            "isNoData": d["is_no_data"],
            "isZeroToZero": d["is_zero_to_zero"],
        }


@dataclass
class TrendInfo:
    direction: str  # 'up' | 'down' | 'stable'
    color: str      # 'green' | 'red' | 'gray'
    label: str


def _round_half_up(value: float, digits: int = 1) -> float:
    factor = 10 ** digits
    return math.floor(value * factor + 0.5) / factor


def calculate_percentage_change(current: Optional[float], previous: Optional[float]) -> PercentageChange:
    current = current or 0
    previous = previous or 0

    has_current = current > 0
    has_previous = previous > 0
    is_no_data = not has_current and not has_previous
    is_zero_to_zero = current == 0 and previous == 0

    if is_no_data:
        change = 0.0
    elif has_current and not has_previous:
        change = 100.0
    elif has_previous and not has_current:
        change = -100.0
    elif is_zero_to_zero:
        change = 0.0
    else:
        change = _round_half_up(((current - previous) / abs(previous)) * 100)

    return PercentageChange(
        change_percent=change,
        has_current_data=has_current,
        has_previous_data=has_previous,
        is_no_data=is_no_data,
        is_zero_to_zero=is_zero_to_zero,
    )


def get_trend_info(change_percent: float, is_time_metric: bool = False) -> TrendInfo:
    """For time metrics a decrease is good (faster); otherwise an increase is good."""
    if abs(change_percent) < STABLE_THRESHOLD:
        return TrendInfo(direction="stable", color="gray", label="Stable")

    if is_time_metric:
        if change_percent < 0:
            return TrendInfo(direction="down", color="green", label="Faster")
        return TrendInfo(direction="up", color="red", label="Slower")

    if change_percent > 0:
        return TrendInfo(direction="up", color="green", label="Better")
    return TrendInfo(direction="down", color="red", label="Worse")


def format_percentage_change(change_percent: float) -> str:
    sign = "+" if change_percent > 0 else ""
    return f"{sign}{change_percent:.1f}%"
