"""
Period Calculator
=================
Date windows for period-over-period comparisons.

Three windows are always in play:
  current: the user-selected period (default: last P days ending today)
  last_month: 30-day window before current
  last_quarter: 90-day window before current

Chaining rule
-------------
  P >= GAPPED_CHAINING_MIN_DAYS:  previous windows end the day BEFORE current.from
                                  (no shared day with current)
  P <  GAPPED_CHAINING_MIN_DAYS:  previous windows end exactly AT current.from
                                  (touching windows, current.from counted in both)

Both rules are kept deliberately; tests pin the 59/60-day boundary.

All dates are ISO `YYYY-MM-DD` strings on the way out.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional, Union

LAST_MONTH_DAYS = 30
LAST_QUARTER_DAYS = 90
GAPPED_CHAINING_MIN_DAYS = 60
DEFAULT_PERIOD_DAYS = 30

DateLike = Union[str, date, datetime]


@dataclass(frozen=True)
class Period:
    start: str  # ISO date
    end: str    # ISO date

    def to_dict(self) -> dict:
        return {"from": self.start, "to": self.end}

    @classmethod
    def from_dict(cls, d: dict) -> "Period":
        return cls(start=to_iso_date(d["from"]), end=to_iso_date(d["to"]))


@dataclass(frozen=True)
class PeriodComparison:
    current: Period
    last_month: Period
    last_quarter: Period

    def to_dict(self) -> dict:
        return {
            "current": self.current.to_dict(),
            "lastMonth": self.last_month.to_dict(),
            "lastQuarter": self.last_quarter.to_dict(),
        }


def parse_date(value: DateLike) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def to_iso_date(value: DateLike) -> str:
    return parse_date(value).isoformat()


def days_between(start: DateLike, end: DateLike) -> int:
    """Ceiling of the day difference between two dates/timestamps."""
    if isinstance(start, str) and len(start) > 10:
        start = datetime.fromisoformat(start.replace("Z", "+00:00"))
    if isinstance(end, str) and len(end) > 10:
        end = datetime.fromisoformat(end.replace("Z", "+00:00"))
    if isinstance(start, datetime) and isinstance(end, datetime):
        return math.ceil((end - start).total_seconds() / 86400)
    return (parse_date(end) - parse_date(start)).days


def get_period_comparison(
    current_period: Optional[Union[Period, dict]] = None,
    period_length_days: int = DEFAULT_PERIOD_DAYS,
    today: Optional[date] = None,
) -> PeriodComparison:
    """Current, last-month and last-quarter windows for a period length."""
    today = today or date.today()

    if current_period is None:
        current = Period(
            start=(today - timedelta(days=period_length_days)).isoformat(),
            end=today.isoformat(),
        )
    elif isinstance(current_period, dict):
        current = Period.from_dict(current_period)
    else:
        current = current_period

    current_from = parse_date(current.start)

    if period_length_days >= GAPPED_CHAINING_MIN_DAYS:
        previous_end = current_from - timedelta(days=1)
    else:
        previous_end = current_from

    last_month = Period(
        start=(current_from - timedelta(days=LAST_MONTH_DAYS)).isoformat(),
        end=previous_end.isoformat(),
    )
    last_quarter = Period(
        start=(current_from - timedelta(days=LAST_QUARTER_DAYS)).isoformat(),
        end=previous_end.isoformat(),
    )
    return PeriodComparison(current=current, last_month=last_month, last_quarter=last_quarter)


def get_extended_date_range(period_length_days: int = DEFAULT_PERIOD_DAYS, today: Optional[date] = None) -> Period:
    """One superset window covering current + last quarter, always anchored at today."""
    today = today or date.today()
    return Period(
        start=(today - timedelta(days=period_length_days + LAST_QUARTER_DAYS)).isoformat(),
        end=today.isoformat(),
    )
