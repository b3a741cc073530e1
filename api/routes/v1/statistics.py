"""
api/routes/v1/statistics.py -- Revenue performance endpoints.

Read-only aggregates; the arithmetic lives in stats/aggregator.py.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from api.models import TimeRangeEnum, success
from auth.dependencies import get_current_user
from stats.aggregator import StatisticsAggregator

# Auth policy:
# - GET /statistics/*: requires auth
# Router-level dependency enforces auth; handlers do not repeat it.
router = APIRouter(dependencies=[Depends(get_current_user)])


@router.get("/statistics/employee-performance")
def employee_performance(
    request: Request,
    time_range: Optional[TimeRangeEnum] = Query(None, alias="timeRange"),
    user_id: Optional[int] = Query(None, alias="userId", ge=1),
    year: Optional[int] = Query(None, ge=2000, le=2100),
    month: Optional[int] = Query(None, ge=1, le=12),
) -> dict:
    """Per-employee training fees + project payments against target, highest first."""
    stats: StatisticsAggregator = request.app.state.stats
    rows = stats.get_employee_performance(
        time_range=time_range.value if time_range else None,
        user_id=user_id,
        year=year,
        month=month,
    )
    return success(rows, path=request.url.path)


@router.get("/statistics/performance-trend")
def performance_trend(
    request: Request,
    period: TimeRangeEnum = Query(TimeRangeEnum.month),
    year: Optional[int] = Query(None, ge=2000, le=2100),
) -> dict:
    """Company income per month, quarter, or year (last five years)."""
    stats: StatisticsAggregator = request.app.state.stats
    return success(stats.get_performance_trend(period.value, year), path=request.url.path)
