"""
crm/store.py -- SQLAlchemy-backed persistence layer for CRM records.

Uses SQLAlchemy Core (not ORM) so the dataclasses in crm/models.py remain the
authoritative domain representation. Swapping SQLite for PostgreSQL is a
connection string change, not a rewrite.

Pattern: Repository + Data Mapper. CRMStore is the repository; the _row_to_*
functions are the mappers. Route handlers and the statistics aggregator never
touch SQL directly.

Tables: customers, employee_targets, class_students, tasks. User identity
lives in the Credential Store (auth/store.py); columns here hold user ids
only, so the two stores may share one database or use two.

Security: all queries use bound parameters. No f-strings in SQL.

Usage:
    store = CRMStore()
    cid = store.create_customer(Customer(customer_name="Li", responsible_person_id=3))
    store.update_customer_status(cid, "registered")
    counts = store.count_customers_by_status(3, start, end)
    store.close()
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    create_engine,
    event,
    func,
    or_,
    select,
    text,
)
from sqlalchemy.engine import Engine

from core.config import get_settings
from core.errors import ValidationError
from crm.models import TARGET_ACTIVE, ClassStudent, Customer, CustomerStatus, EmployeeTarget, Task

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_customers = Table(
    "customers",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("customer_name", String(100), nullable=False),
    Column("company", String(200)),
    Column("phone", String(20)),
    Column("status", String(30), nullable=False, server_default="consult"),
    Column("responsible_person_id", Integer, nullable=False, index=True),
    Column("created_by_id", Integer),
    Column("created_at", DateTime, nullable=False),
    Column("updated_at", DateTime, nullable=False, index=True),
)

_targets = Table(
    "employee_targets",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("employee_id", Integer, nullable=False, index=True),
    Column("target_type", String(10), nullable=False, server_default="month"),  # "month" | "week"
    Column("target_year", Integer, nullable=False),
    Column("target_month", Integer),
    Column("target_week", Integer),
    Column("consult_target", Integer, nullable=False, server_default="0"),
    Column("follow_up_target", Integer, nullable=False, server_default="0"),
    Column("develop_target", Integer, nullable=False, server_default="0"),
    Column("register_target", Integer, nullable=False, server_default="0"),
    Column("status", Integer, nullable=False, server_default="1"),
    Column("created_at", DateTime, nullable=False),
)

_class_students = Table(
    "class_students",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("student_name", String(100), nullable=False),
    Column("training_fee", Numeric(12, 2, asdecimal=False), nullable=False, server_default="0"),
    Column("join_date", DateTime, nullable=False),
    Column("created_by_id", Integer, nullable=False, index=True),
)

_tasks = Table(
    "tasks",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("task_name", String(200), nullable=False),
    Column("responsible_person_id", Integer, nullable=False, index=True),
    Column("is_completed", Boolean, nullable=False, server_default="0"),
    Column("payment_amount", Numeric(12, 2, asdecimal=False)),
    Column("completion_time", DateTime),
)

_STATUSES = {s.value for s in CustomerStatus}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now()


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety (per connection)."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _check_status(status: str) -> None:
    if status not in _STATUSES:
        raise ValidationError(f"Unknown customer status: {status}.")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CRMStore:
    def __init__(self, db_url: Optional[str] = None) -> None:
        db_url = db_url or get_settings().database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        metadata.create_all(self.engine)

    def ping(self) -> bool:
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True

    # ------------------------------------------------------------------
    # Customers
    # ------------------------------------------------------------------

    def create_customer(self, customer: Customer) -> int:
        """Insert a customer. created_at / updated_at default to now when not supplied."""
        _check_status(customer.status)
        now = _now()
        with self.engine.connect() as conn:
            result = conn.execute(
                _customers.insert().values(
                    customer_name=customer.customer_name,
                    company=customer.company,
                    phone=customer.phone,
                    status=customer.status,
                    responsible_person_id=customer.responsible_person_id,
                    created_by_id=customer.created_by_id,
                    created_at=customer.created_at or now,
                    updated_at=customer.updated_at or now,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def update_customer_status(self, customer_id: int, status: str, at: Optional[datetime] = None) -> bool:
        """Set a customer's current status and bump updated_at. Returns False if not found."""
        _check_status(status)
        with self.engine.connect() as conn:
            result = conn.execute(
                _customers.update()
                .where(_customers.c.id == customer_id)
                .values(status=status, updated_at=at or _now())
            )
            conn.commit()
        return result.rowcount > 0

    def get_customer(self, customer_id: int) -> Optional[Customer]:
        with self.engine.connect() as conn:
            row = conn.execute(_customers.select().where(_customers.c.id == customer_id)).fetchone()
        return _row_to_customer(row) if row is not None else None

    def list_customers(
        self,
        current: int,
        size: int,
        responsible_id: Optional[int] = None,
        created_or_responsible_id: Optional[int] = None,
        customer_name: Optional[str] = None,
        company: Optional[str] = None,
        status: Optional[str] = None,
    ) -> tuple[list[Customer], int]:
        """Return one page of customers (most recently updated first) and the total.

        Scope filters:
          responsible_id            -- only customers this user is responsible for
          created_or_responsible_id -- customers this user created OR is responsible for
        Neither set means every customer.
        """
        conditions = []
        if responsible_id is not None:
            conditions.append(_customers.c.responsible_person_id == responsible_id)
        if created_or_responsible_id is not None:
            conditions.append(
                or_(
                    _customers.c.created_by_id == created_or_responsible_id,
                    _customers.c.responsible_person_id == created_or_responsible_id,
                )
            )
        if customer_name:
            conditions.append(_customers.c.customer_name.ilike(f"%{customer_name}%"))
        if company:
            conditions.append(_customers.c.company.ilike(f"%{company}%"))
        if status:
            conditions.append(_customers.c.status == status)

        count_stmt = select(func.count()).select_from(_customers).where(*conditions)
        page_stmt = (
            _customers.select()
            .where(*conditions)
            .order_by(_customers.c.updated_at.desc(), _customers.c.id.desc())
            .offset((current - 1) * size)
            .limit(size)
        )
        with self.engine.connect() as conn:
            total = conn.execute(count_stmt).scalar() or 0
            rows = conn.execute(page_stmt).fetchall()
        return [_row_to_customer(r) for r in rows], total

    def count_customers_by_status(self, employee_id: int, start: datetime, end: datetime) -> dict[str, int]:
        """Count an employee's customers whose updated_at falls in [start, end], per current status.

        Only statuses with at least one customer appear in the result.
        """
        stmt = (
            select(_customers.c.status, func.count().label("n"))
            .where(
                (_customers.c.responsible_person_id == employee_id)
                & (_customers.c.updated_at >= start)
                & (_customers.c.updated_at <= end)
            )
            .group_by(_customers.c.status)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return {row.status: row.n for row in rows}

    # ------------------------------------------------------------------
    # Employee targets
    # ------------------------------------------------------------------

    def create_target(self, target: EmployeeTarget) -> int:
        if target.target_type not in ("month", "week"):
            raise ValidationError("target_type must be 'month' or 'week'.")
        with self.engine.connect() as conn:
            result = conn.execute(
                _targets.insert().values(
                    employee_id=target.employee_id,
                    target_type=target.target_type,
                    target_year=target.target_year,
                    target_month=target.target_month,
                    target_week=target.target_week,
                    consult_target=target.consult_target,
                    follow_up_target=target.follow_up_target,
                    develop_target=target.develop_target,
                    register_target=target.register_target,
                    status=target.status,
                    created_at=target.created_at or _now(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_active_target(
        self, employee_id: int, target_type: str, year: int, period_number: int
    ) -> Optional[EmployeeTarget]:
        """Return the newest active target for employee/type/year/month-or-week, or None."""
        period_col = _targets.c.target_week if target_type == "week" else _targets.c.target_month
        stmt = (
            _targets.select()
            .where(
                (_targets.c.employee_id == employee_id)
                & (_targets.c.target_type == target_type)
                & (_targets.c.target_year == year)
                & (period_col == period_number)
                & (_targets.c.status == TARGET_ACTIVE)
            )
            .order_by(_targets.c.created_at.desc(), _targets.c.id.desc())
            .limit(1)
        )
        with self.engine.connect() as conn:
            row = conn.execute(stmt).fetchone()
        return _row_to_target(row) if row is not None else None

    # ------------------------------------------------------------------
    # Revenue sources (employee performance)
    # ------------------------------------------------------------------

    def create_class_student(self, student: ClassStudent) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _class_students.insert().values(
                    student_name=student.student_name,
                    training_fee=student.training_fee,
                    join_date=student.join_date,
                    created_by_id=student.created_by_id,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def create_task(self, task: Task) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _tasks.insert().values(
                    task_name=task.task_name,
                    responsible_person_id=task.responsible_person_id,
                    is_completed=task.is_completed,
                    payment_amount=task.payment_amount,
                    completion_time=task.completion_time,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def sum_training_fees(
        self, start: Optional[datetime], end: Optional[datetime], user_id: Optional[int] = None
    ) -> float:
        """Sum training fees of students joining in [start, end]; one creator or everyone."""
        stmt = select(func.coalesce(func.sum(_class_students.c.training_fee), 0))
        if user_id is not None:
            stmt = stmt.where(_class_students.c.created_by_id == user_id)
        if start is not None:
            stmt = stmt.where(_class_students.c.join_date >= start)
        if end is not None:
            stmt = stmt.where(_class_students.c.join_date <= end)
        with self.engine.connect() as conn:
            return float(conn.execute(stmt).scalar() or 0)

    def sum_task_payments(
        self, start: Optional[datetime], end: Optional[datetime], user_id: Optional[int] = None
    ) -> float:
        """Sum payment amounts of tasks completed in [start, end]; one responsible person or everyone."""
        stmt = select(func.coalesce(func.sum(_tasks.c.payment_amount), 0)).where(
            _tasks.c.is_completed.is_(True) & _tasks.c.payment_amount.is_not(None)
        )
        if user_id is not None:
            stmt = stmt.where(_tasks.c.responsible_person_id == user_id)
        if start is not None:
            stmt = stmt.where(_tasks.c.completion_time >= start)
        if end is not None:
            stmt = stmt.where(_tasks.c.completion_time <= end)
        with self.engine.connect() as conn:
            return float(conn.execute(stmt).scalar() or 0)

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_customer(row) -> Customer:
    return Customer(
        id=row.id,
        customer_name=row.customer_name,
        company=row.company,
        phone=row.phone,
        status=row.status,
        responsible_person_id=row.responsible_person_id,
        created_by_id=row.created_by_id,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_target(row) -> EmployeeTarget:
    return EmployeeTarget(
        id=row.id,
        employee_id=row.employee_id,
        target_type=row.target_type,
        target_year=row.target_year,
        target_month=row.target_month,
        target_week=row.target_week,
        consult_target=row.consult_target,
        follow_up_target=row.follow_up_target,
        develop_target=row.develop_target,
        register_target=row.register_target,
        status=row.status,
        created_at=row.created_at,
    )
