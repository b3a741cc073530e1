"""
tests/test_auth_routes.py -- Integration tests for the /api/auth endpoints.

Covers:
  - Login: success shape, token decodes to the user, cached projection equals
    the role -> permission graph, identical message for unknown user and
    wrong password, disabled account, missing fields, captcha enforcement
  - Token failures: missing (1002), invalid (2004), expired (2005)
  - Refresh: new access token, expired / invalid / wrong-type refresh tokens
  - Logout: blacklist until natural expiry, idempotence, blacklist survives
    a cleared session cache
  - Deleted users: 404 on a still-valid token
  - Super-admin tooling: login records, cache clearing, 403 for others

Fixtures used (from conftest.py):
  - api_client: ApiEnv with the seeded admin/123456 super admin
  - make_user: factory for extra users with given roles
"""

from __future__ import annotations

from types import SimpleNamespace

import pytest

import auth.service as auth_service
from auth.captcha import CaptchaService
from auth.models import USER_DISABLED
from auth.service import AuthService
from auth.tokens import _encode, create_refresh_token, decode_access_token
from cache.store import SessionCache, blacklist_key, captcha_key, user_key
from core.config import get_settings
from core.errors import ErrorCode

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _login(client, user_name: str, password: str):
    return client.post("/api/auth/login", json={"userName": user_name, "password": password})


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


class TestLogin:
    def test_admin_login_returns_tokens_and_user_info(self, api_client) -> None:
        resp = _login(api_client.client, "admin", "123456")
        assert resp.status_code == 200
        body = resp.json()
        assert body["code"] == 0
        assert body["path"] == "/api/auth/login"
        assert isinstance(body["timestamp"], int)
        data = body["data"]
        assert set(data) == {"token", "refreshToken", "expires", "userInfo"}
        info = data["userInfo"]
        assert info["userId"] == str(api_client.admin_id)
        assert info["userName"] == "admin"
        assert info["roles"] == ["super_admin"]
        assert "customer:list" in info["permissions"]
        assert info["buttons"] == info["permissions"]
        assert resp.headers["Cache-Control"] == "no-store"

    def test_token_decodes_to_same_user(self, api_client) -> None:
        data = _login(api_client.client, "admin", "123456").json()["data"]
        payload = decode_access_token(get_settings(), data["token"])
        assert payload["userId"] == api_client.admin_id
        assert payload["userName"] == "admin"
        assert data["expires"] == payload["exp"] * 1000

    def test_cached_permissions_match_role_graph(self, api_client) -> None:
        _login(api_client.client, "admin", "123456")
        cached = api_client.cache.get_json(user_key(api_client.admin_id))
        graph = api_client.user_store.get_user_graph_by_id(api_client.admin_id)
        assert cached["permissions"] == graph.permissions
        assert cached["roles"] == graph.roles
        assert cached["userName"] == "admin"

    def test_unknown_user_and_wrong_password_share_message(self, api_client) -> None:
        wrong_pw = _login(api_client.client, "admin", "not-the-password")
        no_user = _login(api_client.client, "nobody-here", "whatever")
        assert wrong_pw.status_code == no_user.status_code == 401
        assert wrong_pw.json()["message"] == no_user.json()["message"]
        assert wrong_pw.json()["code"] == no_user.json()["code"] == ErrorCode.AUTH_ERROR

    def test_disabled_account_rejected(self, api_client, make_user) -> None:
        make_user("disabled-login", password="pw-disabled", status=USER_DISABLED)
        resp = _login(api_client.client, "disabled-login", "pw-disabled")
        assert resp.status_code == 401
        assert resp.json()["code"] == ErrorCode.USER_DISABLED

    def test_missing_fields_are_validation_errors(self, api_client) -> None:
        resp = api_client.client.post("/api/auth/login", json={"userName": "", "password": ""})
        assert resp.status_code == 400
        assert resp.json()["code"] == ErrorCode.PARAM_ERROR

    def test_login_records_last_login(self, api_client, make_user) -> None:
        uid = make_user("stamp-login", password="pw-stamp")
        assert _login(api_client.client, "stamp-login", "pw-stamp").status_code == 200
        user = api_client.user_store.get_by_id(uid)
        assert user.last_login_time is not None
        assert user.last_login_ip == "testclient"

    def test_captcha_enforced_when_required(self, api_client, monkeypatch) -> None:
        monkeypatch.setattr(get_settings(), "captcha_required", True)
        client = api_client.client

        assert _login(client, "admin", "123456").status_code == 400

        issued = client.get("/api/auth/captcha").json()["data"]
        code = api_client.cache.get_json(captcha_key(issued["captchaId"]))
        resp = client.post(
            "/api/auth/login",
            json={"userName": "admin", "password": "123456", "captchaId": issued["captchaId"], "captcha": code},
        )
        assert resp.status_code == 200


# ---------------------------------------------------------------------------
# Token failures
# ---------------------------------------------------------------------------


class TestTokenFailures:
    def test_missing_token_is_401(self, api_client) -> None:
        resp = api_client.client.get("/api/auth/me")
        assert resp.status_code == 401
        assert resp.json()["code"] == ErrorCode.AUTH_ERROR
        assert resp.headers["WWW-Authenticate"] == "Bearer"

    def test_garbage_token_is_invalid(self, api_client) -> None:
        resp = api_client.client.get("/api/auth/me", headers=api_client.headers("not.a.jwt"))
        assert resp.status_code == 401
        assert resp.json()["code"] == ErrorCode.TOKEN_INVALID

    def test_expired_token_is_expired(self, api_client) -> None:
        settings = get_settings()
        expired, _ = _encode(api_client.admin_id, "admin", "access", settings.jwt_secret, -60)
        resp = api_client.client.get("/api/auth/me", headers=api_client.headers(expired))
        assert resp.status_code == 401
        assert resp.json()["code"] == ErrorCode.TOKEN_EXPIRED

    def test_refresh_token_not_accepted_as_access_token(self, api_client) -> None:
        refresh, _ = create_refresh_token(get_settings(), api_client.admin_id, "admin")
        resp = api_client.client.get("/api/auth/me", headers=api_client.headers(refresh))
        assert resp.status_code == 401
        assert resp.json()["code"] == ErrorCode.TOKEN_INVALID


# ---------------------------------------------------------------------------
# /me
# ---------------------------------------------------------------------------


class TestMe:
    def test_me_reflects_current_role_graph(self, api_client) -> None:
        resp = api_client.client.get("/api/auth/me", headers=api_client.headers())
        assert resp.status_code == 200
        info = resp.json()["data"]
        graph = api_client.user_store.get_user_graph_by_id(api_client.admin_id)
        assert info["roles"] == graph.roles
        assert info["permissions"] == graph.permissions
        assert info["department"] == "Headquarters"

    def test_deleted_user_is_404(self, api_client, make_user) -> None:
        uid = make_user("soon-deleted")
        token = api_client.token_for(uid, "soon-deleted")
        api_client.user_store.delete_user(uid)
        api_client.cache.delete(user_key(uid))
        resp = api_client.client.get("/api/auth/me", headers=api_client.headers(token))
        assert resp.status_code == 404
        assert resp.json()["code"] == ErrorCode.NOT_FOUND


# ---------------------------------------------------------------------------
# Refresh
# ---------------------------------------------------------------------------


class TestRefresh:
    def test_refresh_issues_working_access_token(self, api_client) -> None:
        data = _login(api_client.client, "admin", "123456").json()["data"]
        resp = api_client.client.post("/api/auth/refresh", json={"refreshToken": data["refreshToken"]})
        assert resp.status_code == 200
        new_token = resp.json()["data"]["token"]
        assert api_client.client.get("/api/auth/me", headers=api_client.headers(new_token)).status_code == 200

    def test_expired_refresh_token(self, api_client) -> None:
        settings = get_settings()
        expired, _ = _encode(api_client.admin_id, "admin", "refresh", settings.jwt_refresh_secret, -60)
        resp = api_client.client.post("/api/auth/refresh", json={"refreshToken": expired})
        assert resp.status_code == 401
        assert resp.json()["code"] == ErrorCode.TOKEN_EXPIRED

    def test_access_token_is_not_a_refresh_token(self, api_client) -> None:
        resp = api_client.client.post("/api/auth/refresh", json={"refreshToken": api_client.token})
        assert resp.status_code == 401
        assert resp.json()["code"] == ErrorCode.TOKEN_INVALID

    def test_empty_refresh_token(self, api_client) -> None:
        resp = api_client.client.post("/api/auth/refresh", json={})
        assert resp.status_code == 400

    def test_disabled_user_cannot_refresh(self, api_client, make_user) -> None:
        uid = make_user("refresh-disabled")
        refresh, _ = create_refresh_token(get_settings(), uid, "refresh-disabled")
        api_client.user_store.update_user(uid, status=USER_DISABLED)
        resp = api_client.client.post("/api/auth/refresh", json={"refreshToken": refresh})
        assert resp.status_code == 401


# ---------------------------------------------------------------------------
# Logout
# ---------------------------------------------------------------------------


class TestLogout:
    def test_logout_blacklists_token(self, api_client, make_user) -> None:
        make_user("logout-user", password="pw-logout")
        token = _login(api_client.client, "logout-user", "pw-logout").json()["data"]["token"]
        headers = api_client.headers(token)
        assert api_client.client.get("/api/auth/me", headers=headers).status_code == 200

        assert api_client.client.post("/api/auth/logout", headers=headers).status_code == 200

        resp = api_client.client.get("/api/auth/me", headers=headers)
        assert resp.status_code == 401
        assert api_client.cache.exists(blacklist_key(token))

    def test_logout_twice_is_safe(self, api_client, make_user) -> None:
        make_user("logout-twice", password="pw-twice")
        token = _login(api_client.client, "logout-twice", "pw-twice").json()["data"]["token"]
        headers = api_client.headers(token)
        assert api_client.client.post("/api/auth/logout", headers=headers).status_code == 200
        second = api_client.client.post("/api/auth/logout", headers=headers)
        assert second.status_code == 200
        assert second.json()["code"] == 0

    def test_logout_without_token_is_safe(self, api_client) -> None:
        assert api_client.client.post("/api/auth/logout").status_code == 200
        assert api_client.client.post("/api/auth/logout", headers=api_client.headers("junk")).status_code == 200

    def test_blacklist_lives_as_long_as_token(self, api_client, make_user) -> None:
        uid = make_user("short-lived")
        token, _ = _encode(uid, "short-lived", "access", get_settings().jwt_secret, 120)
        api_client.client.post("/api/auth/logout", headers=api_client.headers(token))
        ttl = api_client.cache.ttl(blacklist_key(token))
        assert 0 < ttl <= 120
        assert api_client.client.get("/api/auth/me", headers=api_client.headers(token)).status_code == 401

    @pytest.mark.parametrize("left", [120.1, 0.05])
    def test_blacklist_ttl_rounds_up_fractional_lifetime(self, fake_redis, monkeypatch, left) -> None:
        cache = SessionCache(fake_redis)
        service = AuthService(None, cache, CaptchaService(cache), get_settings())
        token, expires_ms = _encode(1, "fractional", "access", get_settings().jwt_secret, 300)
        exp = expires_ms / 1000
        monkeypatch.setattr(auth_service, "time", SimpleNamespace(time=lambda: exp - left))

        written = {}
        original = cache.set_json

        def record(key, value, ttl=None):
            written[key] = ttl
            original(key, value, ttl)

        monkeypatch.setattr(cache, "set_json", record)
        service.logout(f"Bearer {token}")

        assert written[blacklist_key(token)] >= left
        assert fake_redis.exists(blacklist_key(token)) == 1

    def test_blacklist_survives_session_cache_clear(self, api_client, make_user) -> None:
        uid = make_user("survivor", password="pw-survivor")
        token = _login(api_client.client, "survivor", "pw-survivor").json()["data"]["token"]
        api_client.client.post("/api/auth/logout", headers=api_client.headers(token))

        api_client.cache.delete_pattern("user:*")
        api_client.user_store.get_user_graph_by_id(uid)  # user still exists and is enabled

        assert api_client.client.get("/api/auth/me", headers=api_client.headers(token)).status_code == 401

    def test_logout_drops_session_projection(self, api_client, make_user) -> None:
        uid = make_user("drop-proj", password="pw-drop")
        token = _login(api_client.client, "drop-proj", "pw-drop").json()["data"]["token"]
        assert api_client.cache.get_json(user_key(uid)) is not None
        api_client.client.post("/api/auth/logout", headers=api_client.headers(token))
        assert api_client.cache.get_json(user_key(uid)) is None


# ---------------------------------------------------------------------------
# Super-admin tooling
# ---------------------------------------------------------------------------


class TestSuperAdminTools:
    def test_login_records_paginated(self, api_client) -> None:
        _login(api_client.client, "admin", "123456")
        resp = api_client.client.get("/api/auth/login-records?current=1&size=2", headers=api_client.headers())
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["current"] == 1
        assert data["size"] == 2
        assert data["total"] >= 1
        assert len(data["records"]) <= 2
        assert data["records"][0]["loginResult"] == "success"

    def test_login_records_forbidden_for_employee(self, api_client, make_user) -> None:
        uid = make_user("records-employee")
        token = api_client.token_for(uid, "records-employee")
        resp = api_client.client.get("/api/auth/login-records", headers=api_client.headers(token))
        assert resp.status_code == 403
        assert resp.json()["code"] == ErrorCode.PERMISSION_ERROR

    def test_clear_one_user_cache(self, api_client) -> None:
        api_client.cache.set_json(user_key(999), {"id": 999}, 60)
        resp = api_client.client.delete("/api/auth/cache/999", headers=api_client.headers())
        assert resp.status_code == 200
        assert api_client.cache.get_json(user_key(999)) is None

    def test_clear_all_user_caches_keeps_blacklist(self, api_client) -> None:
        api_client.cache.set_json(user_key(501), {"id": 501}, 60)
        api_client.cache.set_json(user_key(502), {"id": 502}, 60)
        api_client.cache.set_json(blacklist_key("tok"), True, 60)
        resp = api_client.client.delete("/api/auth/cache", headers=api_client.headers())
        assert resp.status_code == 200
        assert resp.json()["data"]["cleared"] >= 2
        assert api_client.cache.get_json(user_key(501)) is None
        assert api_client.cache.get_json(user_key(502)) is None
        assert api_client.cache.exists(blacklist_key("tok"))
