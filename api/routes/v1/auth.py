"""
api/routes/v1/auth.py -- Authentication REST endpoints.

Routes:
  POST   /api/auth/login                 -- password (+ optional captcha) login; issues tokens
  POST   /api/auth/logout                -- blacklist the presented token; never fails
  POST   /api/auth/refresh               -- new access token from a refresh token
  GET    /api/auth/me                    -- fresh user info (requires auth)
  GET    /api/auth/captcha               -- new captcha image + id (public)
  GET    /api/auth/login-records         -- login audit trail (super_admin)
  DELETE /api/auth/cache                 -- drop every session projection (super_admin)
  DELETE /api/auth/cache/{user_id}       -- drop one session projection (super_admin)

Security:
  POST /login is rate-limited per IP (LOGIN_RATE_LIMIT, default 10/minute).
  Login and refresh responses carry Cache-Control: no-store.
  Handlers are thin: every rule lives in auth/service.py.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import LoginRequest, RefreshRequest, paginated, success
from auth.dependencies import get_current_user, require_role, try_get_current_user
from auth.models import SessionUser
from auth.service import AuthService
from core.config import get_settings

# Auth policy:
# - POST   /auth/login, /auth/refresh, GET /auth/captcha: public
# - POST   /auth/logout:            optional auth (best effort)
# - GET    /auth/me:                requires auth (get_current_user)
# - GET    /auth/login-records:     requires role super_admin
# - DELETE /auth/cache[/{user_id}]: requires role super_admin
router = APIRouter()

_super_admin = require_role("super_admin")


def _service(request: Request) -> AuthService:
    return request.app.state.auth_service


def _no_store(content: dict) -> JSONResponse:
    resp = JSONResponse(content=content)
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(get_settings().login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login")
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Verify credentials and return {token, refreshToken, expires, userInfo}.

    Unknown usernames and wrong passwords get the same 401 message.
    """
    data = _service(request).login(
        body.user_name,
        body.password,
        ip=request.client.host if request.client else None,
        user_agent=request.headers.get("User-Agent"),
        captcha_id=body.captcha_id,
        captcha=body.captcha,
    )
    return _no_store(success(data, "Login successful.", request.url.path))


@router.post("/auth/logout")
def logout(request: Request, user: Optional[SessionUser] = Depends(try_get_current_user)) -> dict:
    """Revoke the presented access token. Safe to call twice or without a token."""
    _service(request).logout(request.headers.get("Authorization"), user)
    return success(None, "Logged out.", request.url.path)


@router.post("/auth/refresh")
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    data = _service(request).refresh(body.refresh_token)
    return _no_store(success(data, "Token refreshed.", request.url.path))


@router.get("/auth/captcha")
def captcha(request: Request) -> dict:
    """Return {captchaId, captchaImage}; the code is valid once, for CAPTCHA_TTL seconds."""
    return success(_service(request).generate_captcha(), path=request.url.path)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me")
def me(request: Request, user: SessionUser = Depends(get_current_user)) -> dict:
    """Current user info, reloaded from the database (refreshes the session cache)."""
    return success(_service(request).get_current_user(user.id), path=request.url.path)


# ---------------------------------------------------------------------------
# Super-admin tooling
# ---------------------------------------------------------------------------


@router.get("/auth/login-records")
def login_records(
    request: Request,
    current: int = Query(1, ge=1),
    size: int = Query(get_settings().page_size_default, ge=1, le=get_settings().page_size_max),
    user: SessionUser = Depends(_super_admin),
) -> dict:
    records, total = _service(request).list_login_records(current, size)
    return paginated(records, total, current, size, path=request.url.path)


@router.delete("/auth/cache")
@router.delete("/auth/cache/{user_id}")
def clear_cache(request: Request, user_id: Optional[int] = None, user: SessionUser = Depends(_super_admin)) -> dict:
    """Drop one user's session projection, or all of them when no id is given."""
    removed = _service(request).clear_user_cache(user_id)
    return success({"cleared": removed}, "Cache cleared.", request.url.path)
