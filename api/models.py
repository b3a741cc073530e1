"""
API request and response models for the CRM admin REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
crm/models.py, which own the internal domain representation. Route handlers
map between the two.

Every response, success or failure, is the same envelope:
    {code, message, data, timestamp, path}
code 0 means success; any other value is an ErrorCode from core/errors.py.
"""

from __future__ import annotations

import math
import time
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from core.errors import ErrorCode

# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------


class Envelope(BaseModel):
    """The standard response wrapper."""

    model_config = ConfigDict(frozen=True)

    code: int = ErrorCode.SUCCESS
    message: str = "Success"
    data: Any = None
    timestamp: int = Field(default_factory=lambda: int(time.time() * 1000))
    path: str = ""


def success(data: Any = None, message: str = "Success", path: str = "") -> dict:
    """Build a code-0 envelope as a plain dict ready for JSON serialization."""
    return Envelope(data=data, message=message, path=path).model_dump()


def paginated(records: list, total: int, current: int, size: int, message: str = "Success", path: str = "") -> dict:
    """Success envelope whose data is {records, total, current, size, pages}."""
    data = {
        "records": records,
        "total": total,
        "current": current,
        "size": size,
        "pages": math.ceil(total / size) if size else 0,
    }
    return success(data, message, path)


def failure(code: int, message: str, path: str = "", data: Any = None) -> dict:
    return Envelope(code=code, message=message, data=data, path=path).model_dump()


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class PeriodEnum(str, Enum):
    month = "month"
    week = "week"


class TimeRangeEnum(str, Enum):
    month = "month"
    quarter = "quarter"
    year = "year"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/auth/login.

    Field names follow the SPA's camelCase; snake_case is accepted too.
    captchaId / captcha are only checked when CAPTCHA_REQUIRED is set.
    """

    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True)

    user_name: str = Field(default="", alias="userName", max_length=50)
    password: str = Field(default="", max_length=128)
    captcha_id: Optional[str] = Field(default=None, alias="captchaId")
    captcha: Optional[str] = Field(default=None, max_length=10)


class RefreshRequest(BaseModel):
    """Request body for POST /api/auth/refresh."""

    model_config = ConfigDict(populate_by_name=True)

    refresh_token: str = Field(default="", alias="refreshToken")


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class HealthResponse(BaseModel):
    """data payload for GET /api/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    database: str
    cache: str
