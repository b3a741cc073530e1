"""
tests/conftest.py -- Shared test fixtures for CRM admin integration tests.

This module provides:
  - FakeRedis: an in-process stand-in for the handful of redis-py calls the
    SessionCache makes (GET/GETDEL/SET EX/DEL/EXISTS/TTL/SCAN/PING), with real TTL
    expiry and a switch to simulate an outage
  - _make_test_stores(): isolated in-memory DBs for the Credential Store and CRM
  - _patch_lifespan(): wires test stores and services into app.state,
    bypassing the real startup (no Redis server needed)
  - api_client: one TestClient per test module with the seeded super admin

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

The DEBUG env var must be set before any core/auth import so get_settings()
auto-generates the JWT secrets rather than raising ValueError.
"""

from __future__ import annotations

import fnmatch
import os
import threading
import time
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass

# CRITICAL: Set DEBUG before any core/auth import so get_settings() can
# auto-generate JWT secrets in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient
from redis.exceptions import ConnectionError as RedisConnectionError

from api.limiter import limiter
from api.main import app
from auth.captcha import CaptchaService
from auth.gate import AuthGate
from auth.models import USER_ENABLED, User
from auth.seed import seed_defaults
from auth.service import AuthService
from auth.store import UserStore
from auth.tokens import create_access_token, hash_password
from cache.store import SessionCache
from core.config import get_settings
from crm.store import CRMStore
from stats.aggregator import StatisticsAggregator

# ---------------------------------------------------------------------------
# Redis test double
# ---------------------------------------------------------------------------


class FakeRedis:
    """Dict-backed substitute for redis.Redis(decode_responses=True).

    Set .down = True to make every call raise ConnectionError.
    """

    def __init__(self) -> None:
        self._data: dict[str, str] = {}
        self._expires: dict[str, float] = {}
        self.down = False
        self._lock = threading.Lock()

    def _check(self) -> None:
        if self.down:
            raise RedisConnectionError("simulated outage")

    def _alive(self, key: str) -> bool:
        exp = self._expires.get(key)
        if exp is not None and exp <= time.monotonic():
            self._data.pop(key, None)
            self._expires.pop(key, None)
        return key in self._data

    def ping(self) -> bool:
        self._check()
        return True

    def get(self, key: str):
        self._check()
        return self._data[key] if self._alive(key) else None

    def getdel(self, key: str):
        self._check()
        with self._lock:
            if not self._alive(key):
                return None
            self._expires.pop(key, None)
            return self._data.pop(key)

    def set(self, key: str, value, ex=None) -> bool:
        self._check()
        self._data[key] = str(value)
        if ex:
            self._expires[key] = time.monotonic() + ex
        else:
            self._expires.pop(key, None)
        return True

    def delete(self, *keys: str) -> int:
        self._check()
        removed = 0
        for key in keys:
            if self._alive(key):
                removed += 1
            self._data.pop(key, None)
            self._expires.pop(key, None)
        return removed

    def exists(self, *keys: str) -> int:
        self._check()
        return sum(1 for key in keys if self._alive(key))

    def ttl(self, key: str) -> int:
        self._check()
        if not self._alive(key):
            return -2
        exp = self._expires.get(key)
        return -1 if exp is None else int(exp - time.monotonic())

    def scan_iter(self, match: str = "*", count: int | None = None):
        self._check()
        for key in list(self._data):
            if self._alive(key) and fnmatch.fnmatchcase(key, match):
                yield key

    def close(self) -> None:
        pass

    def flushall(self) -> None:
        self._data.clear()
        self._expires.clear()


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _make_test_stores(db_suffix: str) -> tuple[UserStore, CRMStore]:
    """Create isolated named shared-memory SQLite stores.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state (e.g. 'api', 'stats').
    """
    user_store = UserStore(db_url=f"sqlite:///file:test_users_{db_suffix}?mode=memory&cache=shared&uri=true")
    crm_store = CRMStore(db_url=f"sqlite:///file:test_crm_{db_suffix}?mode=memory&cache=shared&uri=true")
    return user_store, crm_store


def _patch_lifespan(user_store: UserStore, crm_store: CRMStore, cache: SessionCache):
    """Return an async context manager that replaces the real lifespan.

    Builds the same service graph as api.main.lifespan, but over the test
    stores and a FakeRedis-backed cache.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        settings = get_settings()
        app.state.settings = settings
        app.state.user_store = user_store
        app.state.crm_store = crm_store
        app.state.cache = cache
        app.state.captcha = CaptchaService(cache, settings.captcha_ttl)
        app.state.auth_service = AuthService(user_store, cache, app.state.captcha, settings)
        app.state.auth_gate = AuthGate(user_store, cache, settings)
        app.state.stats = StatisticsAggregator(user_store, crm_store, settings)
        yield

    return test_lifespan


@dataclass
class ApiEnv:
    client: TestClient
    token: str
    admin_id: int
    user_store: UserStore
    crm_store: CRMStore
    redis: FakeRedis
    cache: SessionCache

    def headers(self, token: str | None = None) -> dict:
        return {"Authorization": f"Bearer {token or self.token}"}

    def token_for(self, user_id: int, user_name: str) -> str:
        return create_access_token(get_settings(), user_id, user_name)[0]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_rate_limits():
    """Login is rate-limited per IP and every TestClient request comes from one IP."""
    limiter.reset()
    yield


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture(scope="module")
def api_client(request) -> Generator[ApiEnv, None, None]:
    """Yield an ApiEnv for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit real route handlers but use isolated in-memory stores. The
    default roles/permissions and the admin/123456 super admin are seeded
    before the client starts; token is a valid access token for that admin.
    """
    suffix = request.module.__name__.rsplit(".", 1)[-1]
    user_store, crm_store = _make_test_stores(suffix)
    admin_id = seed_defaults(user_store)
    fake = FakeRedis()
    cache = SessionCache(fake)

    token, _ = create_access_token(get_settings(), admin_id, "admin")

    app.router.lifespan_context = _patch_lifespan(user_store, crm_store, cache)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield ApiEnv(client, token, admin_id, user_store, crm_store, fake, cache)

    user_store.close()
    crm_store.close()


@pytest.fixture
def make_user(api_client: ApiEnv):
    """Factory: create a user holding the given role codes and return its id.

    User names must be unique within a test module (the DB is module-scoped).
    """

    def _make(user_name: str, password: str = "pass12345", roles=("employee",), status: int = USER_ENABLED) -> int:
        store = api_client.user_store
        uid = store.create_user(
            User(user_name=user_name, password=hash_password(password), nick_name=user_name.title(), status=status)
        )
        for code in roles:
            store.assign_role(uid, store.get_role_by_code(code).id)
        return uid

    return _make
