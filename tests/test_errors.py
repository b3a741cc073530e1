"""
tests/test_errors.py -- Error taxonomy, integrity translation and the response envelope.

Covers:
  - translate_integrity_error() on real SQLite constraint violations
  - error_envelope() for each error kind
  - Unknown routes and bad query params come back as envelopes, not FastAPI defaults
"""

from __future__ import annotations

import pytest
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import IntegrityError
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.main import error_envelope
from auth.models import Role, User
from auth.store import UserStore
from core.errors import (
    ApiError,
    AuthError,
    BusinessError,
    ConflictError,
    ErrorCode,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
    translate_integrity_error,
)


@pytest.fixture
def store():
    s = UserStore("sqlite:///:memory:")
    yield s
    s.close()


class TestIntegrityTranslation:
    def test_duplicate_username_is_conflict(self, store) -> None:
        store.create_user(User(user_name="dup", password="x"))
        with pytest.raises(IntegrityError) as info:
            store.create_user(User(user_name="dup", password="y"))
        err = translate_integrity_error(info.value)
        assert isinstance(err, ConflictError)
        assert err.status_code == 409
        assert err.code == ErrorCode.DUPLICATE_ERROR
        assert err.message == "user_name already exists."

    def test_foreign_key_is_business_error(self, store) -> None:
        role_id = store.create_role(Role(role_code="r", role_name="R"))
        with pytest.raises(IntegrityError) as info:
            store.assign_role(424242, role_id)
        err = translate_integrity_error(info.value)
        assert isinstance(err, BusinessError)
        assert err.status_code == 400
        assert err.code == ErrorCode.BUSINESS_ERROR

    def test_envelope_hides_driver_message(self, store) -> None:
        store.create_user(User(user_name="dup2", password="x"))
        with pytest.raises(IntegrityError) as info:
            store.create_user(User(user_name="dup2", password="y"))
        status, body = error_envelope(info.value, "/api/users")
        assert status == 409
        assert "UNIQUE constraint" not in body["message"]
        assert body["path"] == "/api/users"


@pytest.mark.parametrize(
    "exc, status, code",
    [
        (ValidationError("bad"), 400, ErrorCode.PARAM_ERROR),
        (AuthError("who?"), 401, ErrorCode.AUTH_ERROR),
        (AuthError("Token expired.", ErrorCode.TOKEN_EXPIRED), 401, ErrorCode.TOKEN_EXPIRED),
        (PermissionDeniedError(), 403, ErrorCode.PERMISSION_ERROR),
        (NotFoundError(), 404, ErrorCode.NOT_FOUND),
        (ConflictError("x already exists."), 409, ErrorCode.DUPLICATE_ERROR),
        (BusinessError("nope"), 400, ErrorCode.BUSINESS_ERROR),
        (ApiError(418, "teapot"), 418, 418),
        (StarletteHTTPException(status_code=404, detail="Not Found"), 404, ErrorCode.NOT_FOUND),
        (StarletteHTTPException(status_code=405, detail="Method Not Allowed"), 405, 405),
        (RuntimeError("secret internals"), 500, ErrorCode.SYSTEM_ERROR),
    ],
)
def test_error_envelope_mapping(exc, status, code) -> None:
    got_status, body = error_envelope(exc, "/p")
    assert got_status == status
    assert body["code"] == code
    assert body["data"] is None
    assert set(body) == {"code", "message", "data", "timestamp", "path"}


def test_system_error_message_is_generic() -> None:
    _, body = error_envelope(RuntimeError("secret internals"), "/p")
    assert "secret" not in body["message"]


def test_validation_error_details_are_data() -> None:
    _, body = error_envelope(ValidationError("bad", details={"field": "month"}), "/p")
    assert body["data"] == {"field": "month"}


def test_request_validation_error_lists_fields() -> None:
    exc = RequestValidationError(
        [{"loc": ("query", "current"), "msg": "Input should be greater than or equal to 1", "type": "greater_than_equal"}]
    )
    status, body = error_envelope(exc, "/api/customers")
    assert status == 400
    assert body["code"] == ErrorCode.PARAM_ERROR
    assert body["data"]["errors"][0]["field"] == "current"


class TestEnvelopeOverHttp:
    def test_unknown_route_is_envelope_404(self, api_client) -> None:
        resp = api_client.client.get("/api/does-not-exist")
        assert resp.status_code == 404
        body = resp.json()
        assert body["code"] == ErrorCode.NOT_FOUND
        assert body["path"] == "/api/does-not-exist"

    def test_bad_query_param_is_envelope_400(self, api_client) -> None:
        resp = api_client.client.get("/api/customers?current=0", headers=api_client.headers())
        assert resp.status_code == 400
        body = resp.json()
        assert body["code"] == ErrorCode.PARAM_ERROR
        assert body["data"]["errors"][0]["field"] == "current"
