"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and authorization.

Three layers, stacked per route:
  - public routes (login, captcha, refresh) use none of these
  - authenticated routes use get_current_user()
  - privileged routes use require_permission() / require_role(), which run
    get_current_user() first

get_current_user() hands the route an explicit SessionUser. Handlers receive
identity as a typed argument rather than reading it off the request object.

try_get_current_user() is the soft variant (returns None on failure).

Layer rule: may import from fastapi (Depends/Request) because this module is
part of the FastAPI dependency injection system. No imports from api/, crm/,
or stats/.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Depends, Request

from auth.gate import AuthGate
from auth.models import SessionUser
from core.errors import PermissionDeniedError


def _gate(request: Request) -> AuthGate:
    return request.app.state.auth_gate


def try_get_current_user(request: Request) -> SessionUser | None:
    """Return the SessionUser for the request's bearer token, or None. Never raises."""
    return _gate(request).try_authenticate(request.headers.get("Authorization"))


def get_current_user(request: Request) -> SessionUser:
    """Require authentication. Raises AuthError (401) / NotFoundError (404).

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: SessionUser = Depends(get_current_user)): ...
    """
    return _gate(request).authenticate(request.headers.get("Authorization"))


def require_permission(code: str) -> Callable[..., SessionUser]:
    """Dependency factory: 403 unless the session's permission set contains code.

    Exact string match -- no wildcard or hierarchy semantics.

        @router.get("/customers")
        def route(user: SessionUser = Depends(require_permission("customer:list"))): ...
    """

    def dependency(user: SessionUser = Depends(get_current_user)) -> SessionUser:
        if code not in user.permissions:
            raise PermissionDeniedError(f"Missing permission: {code}.")
        return user

    return dependency


def require_role(*codes: str) -> Callable[..., SessionUser]:
    """Dependency factory: 403 unless the session holds at least one of the role codes."""

    def dependency(user: SessionUser = Depends(get_current_user)) -> SessionUser:
        if not any(code in user.roles for code in codes):
            raise PermissionDeniedError("Insufficient role.")
        return user

    return dependency
