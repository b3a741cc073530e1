"""
crm/models.py -- Domain dataclasses for customers, targets and revenue sources.

These are pure data containers with zero logic. Queries and aggregation live
in crm/store.py and stats/aggregator.py.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class CustomerStatus(str, Enum):
    consult = "consult"
    effective_visit = "effective_visit"
    new_develop = "new_develop"
    registered = "registered"
    arrived = "arrived"
    rejected = "rejected"
    vip = "vip"
    wechat_added = "wechat_added"
    not_arrived = "not_arrived"
    early_25 = "early_25"


TARGET_ACTIVE = 1
TARGET_INACTIVE = 0


@dataclass
class Customer:
    """A tracked prospect or student.

    status is the customer's current status only; updated_at is the last time
    any field changed. No transition history is kept.
    """

    customer_name: str
    responsible_person_id: int
    status: str = CustomerStatus.consult.value
    company: Optional[str] = None
    phone: Optional[str] = None
    created_by_id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    id: Optional[int] = None


@dataclass
class EmployeeTarget:
    """Per-employee goals for one month or one week.

    target_type is "month" (target_month set) or "week" (target_week set).
    status 0 rows are ignored by every lookup.
    """

    employee_id: int
    target_year: int
    target_type: str = "month"
    target_month: Optional[int] = None
    target_week: Optional[int] = None
    consult_target: int = 0
    follow_up_target: int = 0
    develop_target: int = 0
    register_target: int = 0
    status: int = TARGET_ACTIVE
    created_at: Optional[datetime] = None
    id: Optional[int] = None


@dataclass
class ClassStudent:
    """A class enrolment; training_fee counts toward created_by_id's performance on join_date."""

    student_name: str
    training_fee: float
    join_date: datetime
    created_by_id: int
    id: Optional[int] = None


@dataclass
class Task:
    """A project item; payment_amount counts toward the responsible person once completed."""

    task_name: str
    responsible_person_id: int
    is_completed: bool = False
    payment_amount: Optional[float] = None
    completion_time: Optional[datetime] = None
    id: Optional[int] = None
