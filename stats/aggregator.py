"""
stats/aggregator.py -- Read-side statistics over CRM records.

Two families of numbers:
  - task stats: per-employee target vs completion for one month or one week.
    A customer counts toward a bucket when its CURRENT status maps to that
    bucket and its updated_at falls inside the window. There is no status
    history, so a customer moving consult -> registered inside one window
    counts once, as registered.
  - performance: money. Training fees of class students an employee enrolled
    (by join date) plus payments of completed tasks they are responsible for
    (by completion time).

Percentages are round-half-up integers and are 0 whenever the target is 0.

Layer rule: reads through UserStore and CRMStore only. No SQL here, and no
imports from api/.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Callable, Optional

from auth.models import UserSummary
from auth.store import UserStore
from core.config import Settings
from core.errors import ValidationError
from crm.models import CustomerStatus, EmployeeTarget
from crm.store import CRMStore
from stats.periods import (
    PeriodWindow,
    month_window,
    period_start_until,
    quarter_window,
    resolve_period_window,
    year_window,
)

logger = logging.getLogger("crmadmin.stats")

# (target attribute, response key prefix, counted status)
_BUCKETS = (
    ("consult_target", "consult", CustomerStatus.consult.value),
    ("follow_up_target", "followUp", CustomerStatus.effective_visit.value),
    ("develop_target", "develop", CustomerStatus.new_develop.value),
    ("register_target", "register", CustomerStatus.registered.value),
)

AMOUNT_PER_TASK_TARGET = 5000
DEFAULT_PERFORMANCE_TARGET = 200000
TREND_TARGET = 300000
TREND_YEARS = 5


def percent(completed: float, target: float) -> int:
    """round(completed / target * 100), half-up; 0 when target is 0 or negative."""
    if not target or target <= 0:
        return 0
    return int(math.floor(completed * 100 / target + 0.5))


class StatisticsAggregator:
    def __init__(
        self,
        users: UserStore,
        crm: CRMStore,
        settings: Settings,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._users = users
        self._crm = crm
        self._settings = settings
        self._clock = clock

    # ------------------------------------------------------------------
    # Task stats
    # ------------------------------------------------------------------

    def get_user_task_stats(
        self,
        employee_id: int,
        year: int,
        month: Optional[int] = None,
        week: Optional[int] = None,
        period: str = "month",
    ) -> dict:
        """Target vs completion for one employee in one month or week.

        Bad period arguments raise ValidationError. Any failure after the
        window is resolved is logged and answered with a zero-filled result
        so the dashboard keeps rendering.
        """
        window = resolve_period_window(period, year, month, week)
        period_number = week if period == "week" else month
        try:
            stats = self._task_stats(employee_id, period, year, period_number, window)
        except Exception:
            logger.exception(
                "Task stats failed for employee %s (%s %s/%s); returning zeros",
                employee_id,
                period,
                year,
                period_number,
            )
            stats = _zero_stats()
        return {**stats, "period": period, **window.to_dict()}

    def get_team_task_stats(
        self,
        year: int,
        month: Optional[int] = None,
        week: Optional[int] = None,
        period: str = "month",
        current: int = 1,
        size: int = 10,
        keyword: Optional[str] = None,
    ) -> dict:
        """Task stats for every enabled user, one page at a time, ordered by user id."""
        window = resolve_period_window(period, year, month, week)
        period_number = week if period == "week" else month
        employees = self._users.list_users(keyword=keyword)
        total = len(employees)
        page = employees[(current - 1) * size : current * size]

        team = []
        for emp in page:
            try:
                stats = self._task_stats(emp.id, period, year, period_number, window)
            except Exception:
                logger.exception("Task stats failed for employee %s; returning zeros", emp.id)
                stats = _zero_stats()
            team.append({"employee": _employee_dict(emp), **stats})

        return {
            "teamStats": team,
            "period": _period_label(period, year, period_number),
            "managedCount": total,
            "pagination": {
                "current": current,
                "size": size,
                "total": total,
                "pages": math.ceil(total / size) if size else 0,
            },
            **window.to_dict(),
        }

    def _task_stats(
        self, employee_id: int, period: str, year: int, period_number: int, window: PeriodWindow
    ) -> dict:
        target = self._crm.get_active_target(employee_id, period, year, period_number)
        counts = self._crm.count_customers_by_status(employee_id, window.start, window.end)

        targets, completions, progress = {}, {}, {}
        for attr, key, status in _BUCKETS:
            goal = getattr(target, attr) if target is not None else self._settings.default_task_target
            done = counts.get(status, 0)
            targets[f"{key}Target"] = goal
            completions[f"{key}Count"] = done
            progress[f"{key}Progress"] = percent(done, goal)
        return {"targets": targets, "completions": completions, "progress": progress}

    # ------------------------------------------------------------------
    # Performance
    # ------------------------------------------------------------------

    def get_employee_performance(
        self,
        time_range: Optional[str] = None,
        user_id: Optional[int] = None,
        year: Optional[int] = None,
        month: Optional[int] = None,
    ) -> list[dict]:
        """Per-employee revenue against target, highest total first.

        Window:
          time_range + year + month -> that calendar month
          time_range only           -> start of the current month/quarter/year until now
          nothing                   -> all time
        The target always comes from the current year's monthly targets: this
        month, the quarter's first month, or January for time_range=year.
        """
        now = self._clock()
        window: Optional[PeriodWindow] = None
        if time_range and year and month:
            window = month_window(year, month)
        elif time_range:
            window = period_start_until(time_range, now)
        start = window.start if window else None
        end = window.end if window else None

        target_month = now.month
        if time_range == "quarter":
            target_month = (now.month - 1) // 3 * 3 + 1
        elif time_range == "year":
            target_month = 1

        rows = []
        for emp in self._users.list_users(user_id=user_id, enabled_only=False):
            training = self._crm.sum_training_fees(start, end, user_id=emp.id)
            tasks = self._crm.sum_task_payments(start, end, user_id=emp.id)
            total = training + tasks
            target = _performance_target(self._crm.get_active_target(emp.id, "month", now.year, target_month))
            rows.append(
                {
                    "id": emp.id,
                    "name": emp.nick_name or emp.user_name,
                    "department": emp.department_name or "Unassigned",
                    "trainingFeeAmount": training,
                    "taskAmount": tasks,
                    "totalPerformance": total,
                    "target": target,
                    "ratio": percent(total, target),
                }
            )
        rows.sort(key=lambda r: r["totalPerformance"], reverse=True)
        logger.debug("Employee performance computed for %d users (timeRange=%s)", len(rows), time_range)
        return rows

    def get_performance_trend(self, period: str = "month", year: Optional[int] = None) -> list[dict]:
        """Company-wide income per month (12), quarter (4) or year (last 5, oldest first)."""
        year = year or self._clock().year
        if period == "month":
            buckets = [(f"{year}-{m:02d}", month_window(year, m)) for m in range(1, 13)]
        elif period == "quarter":
            buckets = [(f"Q{q}", quarter_window(year, q)) for q in range(1, 5)]
        elif period == "year":
            buckets = [(str(y), year_window(y)) for y in range(year - TREND_YEARS + 1, year + 1)]
        else:
            raise ValidationError(f"Unknown period: {period}. Expected month, quarter or year.")

        trend = []
        for label, window in buckets:
            training = self._crm.sum_training_fees(window.start, window.end)
            project = self._crm.sum_task_payments(window.start, window.end)
            trend.append(
                {
                    "period": label,
                    "targetPerformance": TREND_TARGET,
                    "actualPerformance": training + project,
                    "trainingFeeIncome": training,
                    "projectIncome": project,
                }
            )
        return trend


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _zero_stats() -> dict:
    return {
        "targets": {f"{key}Target": 0 for _, key, _ in _BUCKETS},
        "completions": {f"{key}Count": 0 for _, key, _ in _BUCKETS},
        "progress": {f"{key}Progress": 0 for _, key, _ in _BUCKETS},
    }


def _performance_target(target: Optional[EmployeeTarget]) -> int:
    if target is None:
        return DEFAULT_PERFORMANCE_TARGET
    task_total = target.consult_target + target.follow_up_target + target.develop_target + target.register_target
    return task_total * AMOUNT_PER_TASK_TARGET if task_total > 0 else DEFAULT_PERFORMANCE_TARGET


def _employee_dict(emp: UserSummary) -> dict:
    return {
        "id": emp.id,
        "userName": emp.user_name,
        "nickName": emp.nick_name,
        "roleName": ", ".join(emp.role_names),
    }


def _period_label(period: str, year: int, number: int) -> str:
    if period == "week":
        return f"{year}-W{number:02d}"
    return f"{year}-{number:02d}"
