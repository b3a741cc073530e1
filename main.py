#!/usr/bin/env python3
"""
CRM admin -- operator command line.

Usage:
  python main.py init-db
  python main.py seed
  python main.py seed --admin-password s3cret-pass
  python main.py clear-cache
  python main.py clear-cache --user-id 7

Environment variables (or .env):
  DATABASE_URL         SQLAlchemy URL. Default: SQLite file next to auth/.
  REDIS_URL            Session cache. Default: redis://localhost:6379/0
  JWT_SECRET           Required unless DEBUG=true.
  JWT_REFRESH_SECRET   Required unless DEBUG=true. Must differ from JWT_SECRET.
"""

import argparse
import logging
import sys

from auth.seed import DEFAULT_ADMIN_PASSWORD, DEFAULT_ADMIN_USER, seed_defaults
from auth.store import UserStore
from cache.store import USER_PREFIX, SessionCache, create_redis_client, user_key
from core.config import get_settings
from crm.store import CRMStore


def _init_db() -> int:
    UserStore().close()
    CRMStore().close()
    print("Database tables created.")
    return 0


def _seed(admin_password: str) -> int:
    store = UserStore()
    try:
        admin_id = seed_defaults(store, admin_password)
    finally:
        store.close()
    print(f"Seed complete. Super admin '{DEFAULT_ADMIN_USER}' has id {admin_id}.")
    return 0


def _clear_cache(user_id) -> int:
    cache = SessionCache(create_redis_client(get_settings()))
    try:
        if not cache.ping():
            print("  [!] Redis is unreachable. Nothing was cleared.")
            return 1
        if user_id is not None:
            cache.delete(user_key(user_id))
            print(f"Session cache cleared for user {user_id}.")
        else:
            removed = cache.delete_pattern(f"{USER_PREFIX}*")
            print(f"Session cache cleared ({removed} entries).")
    finally:
        cache.close()
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        prog="crm-admin",
        description="Operator tasks for the CRM admin API.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py init-db
  python main.py seed
  python main.py clear-cache --user-id 7
        """,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create every table that does not exist yet")

    seed = sub.add_parser("seed", help="Create default roles, permissions and the super admin")
    seed.add_argument(
        "--admin-password",
        default=DEFAULT_ADMIN_PASSWORD,
        metavar="PASSWORD",
        help=f"Password for a newly created '{DEFAULT_ADMIN_USER}' account (default: {DEFAULT_ADMIN_PASSWORD})",
    )

    clear = sub.add_parser("clear-cache", help="Drop cached session projections")
    clear.add_argument(
        "--user-id",
        type=int,
        default=None,
        metavar="ID",
        help="Only clear this user's projection (default: every user)",
    )

    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(levelname)-5s %(name)s %(message)s")

    if args.command == "init-db":
        return _init_db()
    if args.command == "seed":
        return _seed(args.admin_password)
    return _clear_cache(args.user_id)


if __name__ == "__main__":
    sys.exit(main())
