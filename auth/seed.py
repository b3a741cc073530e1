"""
auth/seed.py -- Default roles, permissions and the first super admin.

seed_defaults() is idempotent: roles, permissions and the admin account are
only created when missing, and a role's grants are only written when the role
itself is new. Re-running it never raises and never duplicates rows.

Layer rule: no imports from api/, crm/, or stats/.
"""

from __future__ import annotations

import logging

from auth.models import Permission, Role, User
from auth.store import UserStore
from auth.tokens import hash_password

logger = logging.getLogger("crmadmin.auth")

DEFAULT_ADMIN_USER = "admin"
DEFAULT_ADMIN_PASSWORD = "123456"  # nosec B105 -- documented bootstrap credential, change after first login

PERMISSIONS = {
    "customer:list": "List customers",
    "customer:create": "Create customers",
    "customer:update": "Update customers",
    "customer:delete": "Delete customers",
    "statistics:view": "View performance statistics",
    "task-stats:team": "View team task statistics",
    "system:login-records": "View login records",
    "system:cache": "Clear session cache",
}

ROLES = {
    "super_admin": ("Super Admin", list(PERMISSIONS)),
    "admin": ("Admin", ["customer:list", "customer:create", "customer:update", "statistics:view", "task-stats:team"]),
    "employee": ("Employee", ["customer:list", "customer:create", "customer:update"]),
}


def seed_defaults(store: UserStore, admin_password: str = DEFAULT_ADMIN_PASSWORD) -> int:
    """Create the default permission graph and admin account. Returns the admin's user id."""
    perm_ids: dict[str, int] = {}
    for code, name in PERMISSIONS.items():
        existing = store.get_permission_by_code(code)
        perm_ids[code] = existing.id if existing else store.create_permission(Permission(code=code, name=name))

    role_ids: dict[str, int] = {}
    for code, (name, grants) in ROLES.items():
        existing = store.get_role_by_code(code)
        if existing:
            role_ids[code] = existing.id
            continue
        role_ids[code] = store.create_role(Role(role_code=code, role_name=name))
        for perm in grants:
            store.grant_permission(role_ids[code], perm_ids[perm])
        logger.info("Seeded role %s with %d permissions", code, len(grants))

    admin = store.get_by_username(DEFAULT_ADMIN_USER)
    if admin is not None:
        return admin.id
    dept_id = store.get_department_id("headquarters") or store.create_department("headquarters", "Headquarters")
    admin_id = store.create_user(
        User(
            user_name=DEFAULT_ADMIN_USER,
            password=hash_password(admin_password),
            nick_name="Administrator",
            department_id=dept_id,
            position="Administrator",
        )
    )
    store.assign_role(admin_id, role_ids["super_admin"])
    logger.info("Seeded super admin %r (id=%s)", DEFAULT_ADMIN_USER, admin_id)
    return admin_id
