"""
stats/periods.py -- Calendar window resolution for statistics queries.

Week numbering is NOT ISO-8601: week 1 starts on the first Monday on or after
January 1, and week N starts 7*(N-1) days later. Days of early January before
that Monday belong to the previous year's last week. A year therefore has 52
or 53 weeks, counted up to the next year's week 1, and week_window rejects
week numbers past that. Dashboards and stored week targets depend on this
numbering, so it must not be swapped for date.isocalendar().

All datetimes are naive local time, matching what the stores persist.
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Optional

from core.errors import ValidationError

_END_OF_DAY = time(23, 59, 59, 999999)

PERIODS = ("month", "week")


@dataclass(frozen=True)
class PeriodWindow:
    """Closed interval [start, end] of naive datetimes."""

    start: datetime
    end: datetime

    def to_dict(self) -> dict:
        return {"startDate": self.start.isoformat(), "endDate": self.end.isoformat()}


def first_monday(year: int) -> date:
    jan1 = date(year, 1, 1)
    return jan1 + timedelta(days=(7 - jan1.weekday()) % 7)


def month_window(year: int, month: int) -> PeriodWindow:
    if not 1 <= month <= 12:
        raise ValidationError("month must be between 1 and 12.")
    last_day = calendar.monthrange(year, month)[1]
    return PeriodWindow(
        start=datetime(year, month, 1),
        end=datetime.combine(date(year, month, last_day), _END_OF_DAY),
    )


def weeks_in_year(year: int) -> int:
    return (first_monday(year + 1) - first_monday(year)).days // 7


def week_window(year: int, week: int) -> PeriodWindow:
    last = weeks_in_year(year)
    if not 1 <= week <= last:
        raise ValidationError(f"week must be between 1 and {last} for {year}.")
    monday = first_monday(year) + timedelta(days=7 * (week - 1))
    return PeriodWindow(
        start=datetime.combine(monday, time.min),
        end=datetime.combine(monday + timedelta(days=6), _END_OF_DAY),
    )


def quarter_window(year: int, quarter: int) -> PeriodWindow:
    if not 1 <= quarter <= 4:
        raise ValidationError("quarter must be between 1 and 4.")
    first = month_window(year, quarter * 3 - 2)
    last = month_window(year, quarter * 3)
    return PeriodWindow(start=first.start, end=last.end)


def year_window(year: int) -> PeriodWindow:
    return PeriodWindow(start=datetime(year, 1, 1), end=datetime.combine(date(year, 12, 31), _END_OF_DAY))


def resolve_period_window(
    period: str, year: int, month: Optional[int] = None, week: Optional[int] = None
) -> PeriodWindow:
    """Resolve a (period, year, month|week) request into a concrete window.

    Raises ValidationError for an unknown period or a missing/out-of-range
    month or week number.
    """
    if period == "month":
        if month is None:
            raise ValidationError("month is required for period=month.")
        return month_window(year, month)
    if period == "week":
        if week is None:
            raise ValidationError("week is required for period=week.")
        return week_window(year, week)
    raise ValidationError(f"Unknown period: {period}. Expected one of {', '.join(PERIODS)}.")


def current_week_number(today: date) -> tuple[int, int]:
    """Return (year, week) containing today under the first-Monday scheme.

    Days before the year's first Monday fall in the previous year's last week.
    """
    start = first_monday(today.year)
    if today < start:
        prev = first_monday(today.year - 1)
        return today.year - 1, (today - prev).days // 7 + 1
    return today.year, (today - start).days // 7 + 1


def period_start_until(time_range: str, now: datetime) -> PeriodWindow:
    """Window from the start of the current month/quarter/year up to now."""
    if time_range == "month":
        start = datetime(now.year, now.month, 1)
    elif time_range == "quarter":
        start = datetime(now.year, (now.month - 1) // 3 * 3 + 1, 1)
    elif time_range == "year":
        start = datetime(now.year, 1, 1)
    else:
        raise ValidationError(f"Unknown timeRange: {time_range}. Expected month, quarter or year.")
    return PeriodWindow(start=start, end=now)
