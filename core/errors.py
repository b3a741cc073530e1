"""
core/errors.py -- Typed error taxonomy shared by every layer.

Service and store code raise these; the single boundary in api/main.py turns
them into the standard response envelope via error_envelope(). Nothing below
the API layer builds HTTP responses itself.

Numeric codes are part of the client contract (the SPA switches on them to
choose between silent token refresh and forced re-login), so values must not
be renumbered.

Layer rule: core/ is the kernel. No imports from api/, auth/, cache/, crm/,
or stats/.
"""

from __future__ import annotations

from enum import IntEnum
from typing import Any

from sqlalchemy.exc import IntegrityError


class ErrorCode(IntEnum):
    SUCCESS = 0
    SYSTEM_ERROR = 1000
    PARAM_ERROR = 1001
    AUTH_ERROR = 1002
    PERMISSION_ERROR = 1003
    NOT_FOUND = 1004
    DUPLICATE_ERROR = 1005
    BUSINESS_ERROR = 2000
    USER_DISABLED = 2003
    TOKEN_INVALID = 2004
    TOKEN_EXPIRED = 2005


class ApiError(Exception):
    """Base class for every error that maps onto a response envelope."""

    def __init__(self, status_code: int, message: str, code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.code = int(code) if code is not None else status_code


class ValidationError(ApiError):
    """Malformed or missing input (400)."""

    def __init__(self, message: str, details: Any = None) -> None:
        super().__init__(400, message, ErrorCode.PARAM_ERROR)
        self.details = details


class AuthError(ApiError):
    """Bad credentials, or an invalid / expired / revoked token (401)."""

    def __init__(self, message: str, code: int = ErrorCode.AUTH_ERROR) -> None:
        super().__init__(401, message, code)


class PermissionDeniedError(ApiError):
    """Authenticated but lacking a required capability (403)."""

    def __init__(self, message: str = "Permission denied.") -> None:
        super().__init__(403, message, ErrorCode.PERMISSION_ERROR)


class NotFoundError(ApiError):
    def __init__(self, message: str = "Resource not found.") -> None:
        super().__init__(404, message, ErrorCode.NOT_FOUND)


class ConflictError(ApiError):
    """Uniqueness violation (409)."""

    def __init__(self, message: str) -> None:
        super().__init__(409, message, ErrorCode.DUPLICATE_ERROR)


class BusinessError(ApiError):
    """Domain-rule violation (400)."""

    def __init__(self, message: str, code: int = ErrorCode.BUSINESS_ERROR) -> None:
        super().__init__(400, message, code)


# ---------------------------------------------------------------------------
# Database constraint translation
# ---------------------------------------------------------------------------


def _unique_field(message: str) -> str:
    """Pull the offending column out of a driver's unique-violation message.

    SQLite:     'UNIQUE constraint failed: users.user_name'
    PostgreSQL: 'duplicate key value violates unique constraint ... Key (user_name)=(x) ...'
    """
    if "UNIQUE constraint failed:" in message:
        target = message.split("UNIQUE constraint failed:", 1)[1].strip().split(",")[0]
        return target.split(".")[-1].strip()
    if "Key (" in message:
        return message.split("Key (", 1)[1].split(")", 1)[0]
    return "value"


def translate_integrity_error(exc: IntegrityError) -> ApiError:
    """Map a storage-engine constraint violation onto the error taxonomy.

    The raw driver message never reaches the client; only a field-derived
    sentence does.
    """
    message = str(exc.orig) if exc.orig is not None else str(exc)
    lowered = message.lower()
    if "unique" in lowered or "duplicate key" in lowered:
        return ConflictError(f"{_unique_field(message)} already exists.")
    if "foreign key" in lowered:
        return BusinessError("Referenced record does not exist or is still in use.")
    if "not null" in lowered:
        return ValidationError("A required field is missing.")
    return ApiError(500, "Database operation failed.", ErrorCode.SYSTEM_ERROR)
