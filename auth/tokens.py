"""
auth/tokens.py -- JWT and password hashing utilities.

Security design decisions:
  JWT: python-jose with HS256. Access and refresh tokens are signed with two
       different secrets and carry a "type" claim, so a refresh token can never
       be replayed as an access token (or vice versa). Claims: userId,
       userName, type, exp.

       Verification raises typed errors rather than returning None: the
       client needs to tell "expired" (silent refresh) from "invalid"
       (forced re-login), so the distinction must survive to the boundary.

  Passwords: bcrypt directly (no passlib wrapper). The _DUMMY_HASH constant
       enables timing equalization in AuthService.login() so response time
       does not reveal whether a username exists.

Layer rule: no imports from api/, cache/, crm/, or stats/. Import from core/
is allowed -- core/ is the kernel and has no reverse dependencies.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

import bcrypt
from jose import ExpiredSignatureError, JWTError, jwt

from core.config import Settings
from core.errors import AuthError, ErrorCode

logger = logging.getLogger("crmadmin.auth")

_ALGORITHM = "HS256"

ACCESS = "access"
REFRESH = "refresh"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Passwords longer than 72 bytes are silently truncated by bcrypt. The API
    layer caps password fields at 128 characters.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        return False


# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
DUMMY_HASH: str = hash_password("crmadmin_timing_dummy")


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def _encode(user_id: int, user_name: str, token_type: str, secret: str, expire_seconds: int) -> tuple[str, int]:
    expire = datetime.now(timezone.utc) + timedelta(seconds=expire_seconds)
    payload = {
        "userId": user_id,
        "userName": user_name,
        "type": token_type,
        "exp": expire,
    }
    token = jwt.encode(payload, secret, algorithm=_ALGORITHM)
    # exp is serialized as whole seconds; report the same instant the token carries
    return token, int(expire.timestamp()) * 1000


def create_access_token(settings: Settings, user_id: int, user_name: str) -> tuple[str, int]:
    """Return (token, absolute expiry in epoch milliseconds)."""
    return _encode(user_id, user_name, ACCESS, settings.jwt_secret, settings.jwt_expire_seconds)


def create_refresh_token(settings: Settings, user_id: int, user_name: str) -> tuple[str, int]:
    """Return (refresh token, absolute expiry in epoch milliseconds)."""
    return _encode(user_id, user_name, REFRESH, settings.jwt_refresh_secret, settings.jwt_refresh_expire_seconds)


def _decode(token: str, secret: str, token_type: str, label: str) -> dict:
    try:
        payload = jwt.decode(token, secret, algorithms=[_ALGORITHM])
    except ExpiredSignatureError as exc:
        raise AuthError(f"{label} expired.", ErrorCode.TOKEN_EXPIRED) from exc
    except JWTError as exc:
        raise AuthError(f"{label} invalid.", ErrorCode.TOKEN_INVALID) from exc
    if payload.get("type") != token_type or not isinstance(payload.get("userId"), int):
        raise AuthError(f"{label} invalid.", ErrorCode.TOKEN_INVALID)
    return payload


def decode_access_token(settings: Settings, token: str) -> dict:
    """Verify signature, expiry and type of an access token.

    Raises AuthError with TOKEN_EXPIRED or TOKEN_INVALID.
    """
    return _decode(token, settings.jwt_secret, ACCESS, "Token")


def decode_refresh_token(settings: Settings, token: str) -> dict:
    """Verify signature, expiry and type of a refresh token.

    Raises AuthError with TOKEN_EXPIRED or TOKEN_INVALID.
    """
    return _decode(token, settings.jwt_refresh_secret, REFRESH, "Refresh token")


def read_unverified_claims(token: str) -> dict | None:
    """Return the claims without verifying the signature, or None if unparseable.

    Only used at logout to learn a token's exp so the blacklist entry lives
    exactly as long as the token would have.
    """
    try:
        return jwt.get_unverified_claims(token)
    except JWTError:
        return None


def extract_bearer(authorization: str | None) -> str | None:
    """Return the token from an 'Authorization: Bearer <token>' header value."""
    if not authorization or not authorization.startswith("Bearer "):
        return None
    token = authorization[7:].strip()
    return token or None
