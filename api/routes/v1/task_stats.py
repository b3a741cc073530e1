"""
api/routes/v1/task_stats.py -- Target vs completion endpoints.

  GET /api/task-stats/user-stats  -- the caller's own month or week
  GET /api/task-stats/team-stats  -- every enabled user, paginated (admin, super_admin)

Missing year/month/week default to the period containing today. Out-of-range
month or week numbers are 400s; lookup failures degrade to zero-filled stats.
"""

from __future__ import annotations

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from api.models import PeriodEnum, success
from auth.dependencies import get_current_user, require_role
from auth.models import SessionUser
from core.config import get_settings
from stats.aggregator import StatisticsAggregator
from stats.periods import current_week_number

# Auth policy:
# - GET /task-stats/user-stats: requires auth
# - GET /task-stats/team-stats: requires role admin or super_admin
router = APIRouter()

_settings = get_settings()


def _resolve_defaults(
    period: PeriodEnum, year: Optional[int], month: Optional[int], week: Optional[int]
) -> tuple[int, Optional[int], Optional[int]]:
    today = date.today()
    if period is PeriodEnum.week:
        if week is None:
            this_year, this_week = current_week_number(today)
            return year or this_year, None, this_week
        return year or today.year, None, week
    return year or today.year, month or today.month, None


@router.get("/task-stats/user-stats")
def user_stats(
    request: Request,
    period: PeriodEnum = Query(PeriodEnum.month),
    year: Optional[int] = Query(None, ge=2000, le=2100),
    month: Optional[int] = Query(None),
    week: Optional[int] = Query(None),
    user: SessionUser = Depends(get_current_user),
) -> dict:
    """{targets, completions, progress, period, startDate, endDate} for the caller."""
    stats: StatisticsAggregator = request.app.state.stats
    year, month, week = _resolve_defaults(period, year, month, week)
    data = stats.get_user_task_stats(user.id, year, month=month, week=week, period=period.value)
    return success(data, path=request.url.path)


@router.get("/task-stats/team-stats")
def team_stats(
    request: Request,
    period: PeriodEnum = Query(PeriodEnum.month),
    year: Optional[int] = Query(None, ge=2000, le=2100),
    month: Optional[int] = Query(None),
    week: Optional[int] = Query(None),
    current: int = Query(1, ge=1),
    size: int = Query(_settings.page_size_default, ge=1, le=_settings.page_size_max),
    keyword: Optional[str] = Query(None, max_length=50),
    user: SessionUser = Depends(require_role("admin", "super_admin")),
) -> dict:
    stats: StatisticsAggregator = request.app.state.stats
    year, month, week = _resolve_defaults(period, year, month, week)
    data = stats.get_team_task_stats(
        year, month=month, week=week, period=period.value, current=current, size=size, keyword=keyword
    )
    return success(data, path=request.url.path)
