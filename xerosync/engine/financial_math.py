"""
Shared financial arithmetic for the aggregation engine.

Pure functions only. Dates follow the Australian financial year, which starts
on 1 July: FY2025 runs from 1 July 2024 to 30 June 2025.
"""

import math
from datetime import date, timedelta
from typing import Iterable, Optional

from xerosync.errors import AggregationInputError
from xerosync.models.enums import ComparisonPeriod

FISCAL_YEAR_START_MONTH = 7
DAYS_PER_YEAR = 365

# (label, inclusive lower bound, exclusive upper bound) in days past due
AGING_BUCKETS: tuple[tuple[str, int, float], ...] = (
    ("Current", 0, 31),
    ("31-60", 31, 61),
    ("61-90", 61, 91),
    ("90+", 91, math.inf),
)
CURRENT_BUCKET = AGING_BUCKETS[0][0]


def safe_divide(numerator: float, denominator: float) -> float:
    """numerator / denominator, or 0 when the denominator is 0."""
    if denominator == 0:
        return 0.0
    return numerator / denominator


def percentage_change(old: float, new: float) -> float:
    """
    Percent change from ``old`` to ``new`` relative to ``|old|``.

    With a zero baseline the change is 0 when ``new`` is also 0 and 100
    otherwise, whichever direction ``new`` moved.
    """
    if old == 0:
        return 0.0 if new == 0 else 100.0
    return (new - old) / abs(old) * 100


def is_significant_change(change_percent: float, threshold_percent: float) -> bool:
    return abs(change_percent) >= threshold_percent


def days_past_due(due_date: date, as_of: date) -> int:
    """Whole days past the due date, never negative."""
    return max(0, (as_of - due_date).days)


def assign_aging_bucket(days: int) -> str:
    for label, lower, upper in AGING_BUCKETS:
        if lower <= days < upper:
            return label
    raise AggregationInputError(f"Negative days past due: {days}")


def fiscal_year_of(day: date) -> int:
    """Financial year a date belongs to, named by the calendar year it ends in."""
    return day.year + 1 if day.month >= FISCAL_YEAR_START_MONTH else day.year


def fiscal_year_bounds(fiscal_year: int) -> tuple[date, date]:
    """First and last day of a financial year."""
    return date(fiscal_year - 1, FISCAL_YEAR_START_MONTH, 1), date(fiscal_year, 6, 30)


def _add_months(day: date, months: int) -> date:
    index = day.year * 12 + (day.month - 1) + months
    return date(index // 12, index % 12 + 1, 1)


def _period_start(day: date, period: ComparisonPeriod) -> date:
    if period == ComparisonPeriod.MONTH:
        return day.replace(day=1)
    if period == ComparisonPeriod.QUARTER:
        # Financial quarters: Jul-Sep, Oct-Dec, Jan-Mar, Apr-Jun
        return date(day.year, ((day.month - 1) // 3) * 3 + 1, 1)
    return fiscal_year_bounds(fiscal_year_of(day))[0]


_PERIOD_MONTHS = {
    ComparisonPeriod.MONTH: 1,
    ComparisonPeriod.QUARTER: 3,
    ComparisonPeriod.YEAR: 12,
}


def period_bounds(as_of: date, period: ComparisonPeriod) -> tuple[date, date, date, date]:
    """
    Current period-to-date and the equivalent span of the prior period.

    Returns:
        (current_start, current_end, prior_start, prior_end). The prior span
        covers as many days into the prior period as the current span covers,
        clamped to the prior period's last day.
    """
    months = _PERIOD_MONTHS[period]
    current_start = _period_start(as_of, period)
    prior_start = _add_months(current_start, -months)
    prior_last_day = current_start - timedelta(days=1)
    prior_end = min(prior_start + (as_of - current_start), prior_last_day)
    return current_start, as_of, prior_start, prior_end


def trailing_window(as_of: date, days: int = DAYS_PER_YEAR) -> tuple[date, date]:
    """Inclusive window of ``days`` days ending on ``as_of``."""
    return as_of - timedelta(days=days - 1), as_of


def in_window(day: Optional[date], start: date, end: date) -> bool:
    return day is not None and start <= day <= end


def require_finite(values: Iterable[float], what: str) -> None:
    for value in values:
        if not math.isfinite(value):
            raise AggregationInputError(f"Non-finite {what}: {value}")


def round_money(value: float) -> float:
    return round(value, 2)
