"""
auth/service.py -- Auth Core: login, logout, refresh, current user, captcha.

Every operation either returns a plain dict shaped for the SPA (camelCase
keys) or raises a typed error from core.errors. Nothing here knows about
HTTP; the route layer wraps results in the response envelope.

Consistency rules:
  - Login success is defined by password verification alone. The session
    cache write, last-login stamp and login record are independent
    best-effort side effects; a failure in any of them is logged and the
    issued tokens stand.
  - Unknown username and wrong password produce the same message and run
    the same bcrypt work, so neither text nor timing enumerates accounts.
  - Logout never fails. Blacklist entries live exactly as long as the token
    they revoke.
  - Refresh tokens are not rotated: they stay valid until natural expiry.

Layer rule: no imports from api/, crm/, or stats/.
"""

from __future__ import annotations

import logging
import math
import time

from sqlalchemy.exc import SQLAlchemyError

from auth.captcha import CaptchaService
from auth.models import LoginRecord, SessionUser, UserGraph
from auth.store import UserStore
from auth.tokens import (
    DUMMY_HASH,
    create_access_token,
    create_refresh_token,
    decode_refresh_token,
    extract_bearer,
    read_unverified_claims,
    verify_password,
)
from cache.store import USER_PREFIX, SessionCache, blacklist_key, user_key
from core.config import Settings
from core.errors import AuthError, ErrorCode, NotFoundError, ValidationError

logger = logging.getLogger("crmadmin.auth")

BAD_CREDENTIALS = "Invalid username or password."


class AuthService:
    def __init__(self, store: UserStore, cache: SessionCache, captcha: CaptchaService, settings: Settings) -> None:
        self._store = store
        self._cache = cache
        self._captcha = captcha
        self._settings = settings

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def login(
        self,
        user_name: str,
        password: str,
        ip: str | None = None,
        user_agent: str | None = None,
        captcha_id: str | None = None,
        captcha: str | None = None,
    ) -> dict:
        """Verify credentials and issue an access/refresh token pair.

        Returns {token, refreshToken, expires, userInfo}. expires is the
        access token's absolute expiry in epoch milliseconds.
        """
        if not user_name or not password:
            raise ValidationError("Username and password are required.")
        if self._settings.captcha_required and not self._captcha.verify(captcha_id, captcha):
            raise ValidationError("Captcha is incorrect or has expired.")

        graph = self._store.get_user_graph_by_username(user_name)
        if graph is None:
            # Same bcrypt cost as a real check -- do NOT return before hashing
            verify_password(password, DUMMY_HASH)
            raise AuthError(BAD_CREDENTIALS)
        user = graph.user
        if not user.is_enabled:
            raise AuthError("Account is disabled.", ErrorCode.USER_DISABLED)
        if not verify_password(password, user.password):
            raise AuthError(BAD_CREDENTIALS)

        token, expires = create_access_token(self._settings, user.id, user.user_name)
        refresh_token, _ = create_refresh_token(self._settings, user.id, user.user_name)

        self._cache_projection(graph)
        self._stamp_login(graph, ip, user_agent)
        logger.info("User %s (id=%s) logged in from %s", user.user_name, user.id, ip or "unknown")

        return {
            "token": token,
            "refreshToken": refresh_token,
            "expires": expires,
            "userInfo": build_user_info(graph),
        }

    def _stamp_login(self, graph: UserGraph, ip: str | None, user_agent: str | None) -> None:
        user = graph.user
        try:
            self._store.update_last_login(user.id, ip)
            self._store.record_login(
                LoginRecord(
                    user_id=user.id,
                    user_name=user.user_name,
                    login_ip=ip or "unknown",
                    user_agent=user_agent,
                )
            )
        except SQLAlchemyError:
            logger.warning("Could not record login for user %s", user.id, exc_info=True)

    # ------------------------------------------------------------------
    # Logout / refresh
    # ------------------------------------------------------------------

    def logout(self, authorization: str | None, current_user: SessionUser | None = None) -> None:
        """Blacklist the presented token for its remaining lifetime and drop the session projection.

        Safe to call with no token, an unparseable token, or twice in a row.
        """
        token = extract_bearer(authorization)
        if token:
            claims = read_unverified_claims(token) or {}
            exp = claims.get("exp")
            if isinstance(exp, (int, float)):
                remaining = math.ceil(exp - time.time())
                if remaining > 0:
                    self._cache.set_json(blacklist_key(token), True, remaining)
        if current_user is not None:
            self._cache.delete(user_key(current_user.id))
            logger.info("User %s (id=%s) logged out", current_user.user_name, current_user.id)

    def refresh(self, refresh_token: str) -> dict:
        """Mint a new access token from a valid refresh token. Returns {token, expires}."""
        if not refresh_token:
            raise ValidationError("Refresh token is required.")
        payload = decode_refresh_token(self._settings, refresh_token)
        user = self._store.get_by_id(payload["userId"])
        if user is None or not user.is_enabled:
            raise AuthError("User does not exist or is disabled.")
        token, expires = create_access_token(self._settings, user.id, user.user_name)
        logger.info("Access token refreshed for user %s", user.id)
        return {"token": token, "expires": expires}

    # ------------------------------------------------------------------
    # Current user
    # ------------------------------------------------------------------

    def get_current_user(self, user_id: int) -> dict:
        """Reload the user graph from the database, bypassing the cache.

        Refreshes the session projection as a side effect so permission
        changes become visible to the gate on the next request.
        """
        graph = self._store.get_user_graph_by_id(user_id)
        if graph is None:
            raise NotFoundError("User not found.")
        self._cache_projection(graph)
        return build_user_info(graph)

    def _cache_projection(self, graph: UserGraph) -> SessionUser:
        session = SessionUser.from_graph(graph)
        self._cache.set_json(user_key(session.id), session.to_cache(), self._settings.user_info_ttl)
        return session

    # ------------------------------------------------------------------
    # Captcha
    # ------------------------------------------------------------------

    def generate_captcha(self) -> dict:
        return self._captcha.generate()

    def verify_captcha(self, captcha_id: str | None, code: str | None) -> bool:
        return self._captcha.verify(captcha_id, code)

    # ------------------------------------------------------------------
    # Super-admin tooling
    # ------------------------------------------------------------------

    def list_login_records(self, current: int, size: int) -> tuple[list[dict], int]:
        records, total = self._store.list_login_records(current, size)
        rows = [
            {
                "id": r.id,
                "userId": r.user_id,
                "userName": r.user_name,
                "nickName": r.nick_name,
                "avatar": r.avatar,
                "loginIp": r.login_ip,
                "userAgent": r.user_agent,
                "loginTime": r.login_time.isoformat() if r.login_time else None,
                "loginResult": r.login_result,
            }
            for r in records
        ]
        return rows, total

    def clear_user_cache(self, user_id: int | None = None) -> int:
        """Drop one user's session projection, or every projection when user_id is None."""
        if user_id is not None:
            self._cache.delete(user_key(user_id))
            return 1
        return self._cache.delete_pattern(f"{USER_PREFIX}*")


def build_user_info(graph: UserGraph) -> dict:
    """UI-facing user info. permissions is duplicated under 'buttons' for the SPA's button gating."""
    user = graph.user
    return {
        "userId": str(user.id),
        "userName": user.user_name,
        "nickName": user.nick_name,
        "avatar": user.avatar,
        "email": user.email,
        "phone": user.phone,
        "gender": user.gender,
        "position": user.position or "",
        "department": graph.department_name,
        "contractStartDate": user.contract_start_date.isoformat() if user.contract_start_date else None,
        "roles": list(graph.roles),
        "permissions": list(graph.permissions),
        "buttons": list(graph.permissions),
    }
