"""
auth/store.py -- SQLAlchemy Core persistence layer for the Credential Store.

Pattern: Repository + Data Mapper (same as crm/store.py).
UserStore is the repository; _row_to_user / _row_to_login_record are the
mappers. Service and gate code never touches SQL directly.

Schema: users, departments, roles, permissions and the two join tables
(user_roles, role_permissions), plus the append-only login_records audit
table. The role -> permission graph is always loaded in one JOIN so a login
costs two queries regardless of how many roles a user holds.

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/, cache/, crm/, or stats/.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    or_,
    select,
    text,
)
from sqlalchemy.engine import Engine

from auth.models import USER_ENABLED, LoginRecord, Permission, Role, User, UserGraph, UserSummary
from core.config import get_settings

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_departments = Table(
    "departments",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("code", String(50), nullable=False, unique=True),
    Column("name", String(100), nullable=False),
    Column("status", Integer, nullable=False, server_default="1"),
)

_users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_name", String(50), nullable=False, unique=True),
    Column("password", Text, nullable=False),  # bcrypt hash
    Column("nick_name", String(50), nullable=False, server_default=""),
    Column("phone", String(20)),
    Column("email", String(100)),
    Column("gender", String(10)),
    Column("position", String(50)),
    Column("avatar", Text),
    Column("status", Integer, nullable=False, server_default="1"),  # 1 enabled, 0 disabled
    Column("department_id", Integer, ForeignKey("departments.id")),
    Column("contract_start_date", DateTime),
    Column("last_login_ip", String(45)),
    Column("last_login_time", DateTime),
    Column("created_at", DateTime, nullable=False),
)

_roles = Table(
    "roles",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("role_code", String(50), nullable=False, unique=True),
    Column("role_name", String(50), nullable=False),
    Column("role_type", String(20), nullable=False, server_default="permission"),
)

_permissions = Table(
    "permissions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("code", String(100), nullable=False, unique=True),
    Column("name", String(100), nullable=False, server_default=""),
)

_user_roles = Table(
    "user_roles",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("role_id", Integer, ForeignKey("roles.id", ondelete="CASCADE"), nullable=False),
    UniqueConstraint("user_id", "role_id", name="uq_user_role"),
)

_role_permissions = Table(
    "role_permissions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("role_id", Integer, ForeignKey("roles.id", ondelete="CASCADE"), nullable=False),
    Column("permission_id", Integer, ForeignKey("permissions.id", ondelete="CASCADE"), nullable=False),
    UniqueConstraint("role_id", "permission_id", name="uq_role_permission"),
)

_login_records = Table(
    "login_records",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("user_name", String(50), nullable=False),
    Column("login_ip", String(45), nullable=False),
    Column("user_agent", Text),
    Column("login_time", DateTime, nullable=False),
    Column("login_result", String(20), nullable=False, server_default="success"),
)


# ---------------------------------------------------------------------------
# Engine helpers
# ---------------------------------------------------------------------------


def _sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign-key enforcement.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


def make_engine(db_url: str) -> Engine:
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        # Route handlers run in FastAPI's thread pool; the same pooled
        # connection may be touched from more than one thread.
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _sqlite_pragmas)
    return engine


def _now() -> datetime:
    return datetime.now()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for users, departments, roles, permissions and login records.

    Usage:
        store = UserStore()
        dept_id = store.create_department("sales", "Sales")
        uid = store.create_user(User(user_name="alice", password=hash_password("pw"), department_id=dept_id))
        graph = store.get_user_graph_by_username("alice")
        store.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        self.engine: Engine = make_engine(db_url or get_settings().database_url)
        metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Return True when the database answers a trivial query."""
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True

    # ------------------------------------------------------------------
    # Writes used by seeding, admin tooling and tests
    # ------------------------------------------------------------------

    def create_department(self, code: str, name: str) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_departments.insert().values(code=code, name=name))
            conn.commit()
            return result.inserted_primary_key[0]

    def get_department_id(self, code: str) -> int | None:
        with self.engine.connect() as conn:
            return conn.execute(select(_departments.c.id).where(_departments.c.code == code)).scalar()

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the user_name already exists.
        The API boundary translates that into a 409.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    user_name=user.user_name,
                    password=user.password,
                    nick_name=user.nick_name,
                    phone=user.phone,
                    email=user.email,
                    gender=user.gender,
                    position=user.position,
                    avatar=user.avatar,
                    status=user.status,
                    department_id=user.department_id,
                    contract_start_date=user.contract_start_date,
                    created_at=_now(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def create_role(self, role: Role) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _roles.insert().values(role_code=role.role_code, role_name=role.role_name, role_type=role.role_type)
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def create_permission(self, permission: Permission) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_permissions.insert().values(code=permission.code, name=permission.name))
            conn.commit()
            return result.inserted_primary_key[0]

    def assign_role(self, user_id: int, role_id: int) -> None:
        with self.engine.connect() as conn:
            conn.execute(_user_roles.insert().values(user_id=user_id, role_id=role_id))
            conn.commit()

    def grant_permission(self, role_id: int, permission_id: int) -> None:
        with self.engine.connect() as conn:
            conn.execute(_role_permissions.insert().values(role_id=role_id, permission_id=permission_id))
            conn.commit()

    def revoke_permission(self, role_id: int, permission_id: int) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _role_permissions.delete().where(
                    (_role_permissions.c.role_id == role_id) & (_role_permissions.c.permission_id == permission_id)
                )
            )
            conn.commit()
        return result.rowcount > 0

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable columns on a user. Returns False if user_id was not found."""
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def delete_user(self, user_id: int) -> bool:
        with self.engine.connect() as conn:
            conn.execute(_user_roles.delete().where(_user_roles.c.user_id == user_id))
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
            conn.commit()
        return result.rowcount > 0

    def update_last_login(self, user_id: int, ip: str | None) -> None:
        """Stamp last-login IP and time. Called after every successful password login."""
        with self.engine.connect() as conn:
            conn.execute(
                _users.update().where(_users.c.id == user_id).values(last_login_ip=ip, last_login_time=_now())
            )
            conn.commit()

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_username(self, user_name: str) -> User | None:
        """Look up a user by exact user_name (case-sensitive)."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.user_name == user_name)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_role_by_code(self, role_code: str) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.role_code == role_code)).fetchone()
        if row is None:
            return None
        return Role(id=row.id, role_code=row.role_code, role_name=row.role_name, role_type=row.role_type)

    def get_permission_by_code(self, code: str) -> Permission | None:
        with self.engine.connect() as conn:
            row = conn.execute(_permissions.select().where(_permissions.c.code == code)).fetchone()
        return Permission(id=row.id, code=row.code, name=row.name) if row is not None else None

    def get_user_graph_by_username(self, user_name: str) -> UserGraph | None:
        """Load a user plus department and role -> permission graph by user_name."""
        return self._load_graph(_users.c.user_name == user_name)

    def get_user_graph_by_id(self, user_id: int) -> UserGraph | None:
        """Load a user plus department and role -> permission graph by primary key."""
        return self._load_graph(_users.c.id == user_id)

    def _load_graph(self, where_clause) -> UserGraph | None:
        user_stmt = (
            select(_users, _departments.c.name.label("department_name"))
            .select_from(_users.outerjoin(_departments, _users.c.department_id == _departments.c.id))
            .where(where_clause)
        )
        with self.engine.connect() as conn:
            row = conn.execute(user_stmt).fetchone()
            if row is None:
                return None
            graph_rows = conn.execute(
                select(_roles.c.role_code, _permissions.c.code)
                .select_from(
                    _user_roles.join(_roles, _user_roles.c.role_id == _roles.c.id)
                    .outerjoin(_role_permissions, _role_permissions.c.role_id == _roles.c.id)
                    .outerjoin(_permissions, _role_permissions.c.permission_id == _permissions.c.id)
                )
                .where(_user_roles.c.user_id == row.id)
                .order_by(_user_roles.c.id, _role_permissions.c.id)
            ).fetchall()

        # dict.fromkeys keeps first-seen order while dropping duplicates
        roles = list(dict.fromkeys(r.role_code for r in graph_rows))
        permissions = list(dict.fromkeys(r.code for r in graph_rows if r.code is not None))
        return UserGraph(
            user=_row_to_user(row),
            department_name=row.department_name or "",
            roles=roles,
            permissions=permissions,
        )

    def list_users(
        self,
        user_id: int | None = None,
        keyword: str | None = None,
        enabled_only: bool = True,
    ) -> list[UserSummary]:
        """Return user listing rows with department and role names, ordered by id.

        Two queries total: one for users, one for every listed user's roles.
        """
        stmt = select(
            _users.c.id, _users.c.user_name, _users.c.nick_name, _departments.c.name.label("department_name")
        ).select_from(_users.outerjoin(_departments, _users.c.department_id == _departments.c.id))
        if user_id is not None:
            stmt = stmt.where(_users.c.id == user_id)
        if enabled_only:
            stmt = stmt.where(_users.c.status == USER_ENABLED)
        if keyword:
            pattern = f"%{keyword}%"
            stmt = stmt.where(or_(_users.c.user_name.like(pattern), _users.c.nick_name.like(pattern)))
        stmt = stmt.order_by(_users.c.id)

        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
            ids = [r.id for r in rows]
            role_rows = []
            if ids:
                role_rows = conn.execute(
                    select(_user_roles.c.user_id, _roles.c.role_name)
                    .select_from(_user_roles.join(_roles, _user_roles.c.role_id == _roles.c.id))
                    .where(_user_roles.c.user_id.in_(ids))
                    .order_by(_user_roles.c.id)
                ).fetchall()

        roles_by_user: dict[int, list[str]] = {}
        for r in role_rows:
            roles_by_user.setdefault(r.user_id, []).append(r.role_name)
        return [
            UserSummary(
                id=r.id,
                user_name=r.user_name,
                nick_name=r.nick_name,
                department_name=r.department_name or "",
                role_names=roles_by_user.get(r.id, []),
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Login records
    # ------------------------------------------------------------------

    def record_login(self, record: LoginRecord) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _login_records.insert().values(
                    user_id=record.user_id,
                    user_name=record.user_name,
                    login_ip=record.login_ip,
                    user_agent=record.user_agent,
                    login_time=record.login_time or _now(),
                    login_result=record.login_result,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def list_login_records(self, current: int, size: int) -> tuple[list[LoginRecord], int]:
        """Return one page of login records (newest first) and the total count.

        nick_name and avatar are joined from users; records whose user has
        since been deleted keep their stored user_name.
        """
        stmt = (
            select(_login_records, _users.c.nick_name, _users.c.avatar)
            .select_from(_login_records.outerjoin(_users, _login_records.c.user_id == _users.c.id))
            .order_by(_login_records.c.login_time.desc(), _login_records.c.id.desc())
            .offset((current - 1) * size)
            .limit(size)
        )
        with self.engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(_login_records)).scalar() or 0
            rows = conn.execute(stmt).fetchall()
        return [_row_to_login_record(r) for r in rows], total

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        user_name=row.user_name,
        password=row.password,
        nick_name=row.nick_name or "",
        phone=row.phone,
        email=row.email,
        gender=row.gender,
        position=row.position,
        avatar=row.avatar,
        status=row.status,
        department_id=row.department_id,
        contract_start_date=row.contract_start_date,
        last_login_ip=row.last_login_ip,
        last_login_time=row.last_login_time,
        created_at=row.created_at,
    )


def _row_to_login_record(row) -> LoginRecord:
    return LoginRecord(
        id=row.id,
        user_id=row.user_id,
        user_name=row.user_name,
        login_ip=row.login_ip,
        user_agent=row.user_agent,
        login_time=row.login_time,
        login_result=row.login_result,
        nick_name=row.nick_name or "",
        avatar=row.avatar,
    )
