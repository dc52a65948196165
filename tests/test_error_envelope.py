"""Tests for the error envelope and the error-code to HTTP status mapping.

Error responses have the shape:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<human_readable>", "details": ...},
    "request_id": "<id>"
}
"""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import ValidationError as PydanticValidationError

from tessera.api.error_handling import (
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
    status_for_error,
)
from tessera.api.schemas import Envelope, ErrorBody
from tessera.service import errors
from tessera.storage.errors import ConstraintViolation, StoreUnavailable


class TestStatusMapping:
    @pytest.mark.parametrize(
        "error,status",
        [
            (errors.ValidationError("bad"), 400),
            (errors.InvalidCredentialsError(), 401),
            (errors.AccountDeactivatedError(), 403),
            (errors.InvalidRefreshTokenError(), 401),
            (errors.TokenExpiredError(), 401),
            (errors.InvalidTokenError(), 401),
            (errors.NotFoundError("gone"), 404),
            (errors.InternalError(), 500),
        ],
    )
    def test_status_for_error(self, error, status):
        assert status_for_error(error) == status

    def test_unknown_code_is_server_error(self):
        assert status_for_error(errors.ServiceError("x", error_code="mystery")) == 500

    def test_core_errors_carry_no_status(self):
        assert not hasattr(errors.InvalidCredentialsError(), "status_code")

    def test_hierarchy(self):
        assert issubclass(errors.InvalidCredentialsError, errors.ValidationError)
        assert issubclass(errors.AccountDeactivatedError, errors.ValidationError)
        assert issubclass(errors.TokenExpiredError, errors.TokenVerificationError)
        assert issubclass(errors.InvalidTokenError, errors.TokenVerificationError)
        assert not issubclass(errors.TokenExpiredError, errors.InvalidTokenError)

    def test_codes_for_plain_statuses(self):
        assert _error_code_for_status(404) == "not_found"
        assert _error_code_for_status(405) == "validation_error"
        assert _error_code_for_status(503) == "server_error"


class TestEnvelopeModels:
    def test_error_body_defaults(self):
        body = ErrorBody(code="invalid_token", message="Invalid access token")
        assert body.details is None

    def test_error_body_rejects_unknown_code(self):
        with pytest.raises(PydanticValidationError):
            ErrorBody(code="teapot", message="nope")

    def test_envelope_status_pattern(self):
        with pytest.raises(PydanticValidationError):
            Envelope(status="maybe")

    def test_error_response_shape(self):
        response = _error_response(401, "Invalid refresh token", code="invalid_refresh_token")
        body = json.loads(response.body)
        assert response.status_code == 401
        assert body["status"] == "error"
        assert body["error"] == {
            "code": "invalid_refresh_token",
            "message": "Invalid refresh token",
            "details": None,
        }
        assert body["request_id"]
        assert set(body) == {"status", "error", "request_id"}


@pytest.fixture
def failing_client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/internal")
    def internal():
        raise errors.InternalError()

    @app.get("/conflict")
    def conflict():
        raise ConstraintViolation("email already exists", field="email")

    @app.get("/unavailable")
    def unavailable():
        raise StoreUnavailable("SELECT * FROM users timed out")

    @app.get("/boom")
    def boom():
        raise RuntimeError("secret path /srv/tessera/.jwt_secret")

    return TestClient(app, raise_server_exceptions=False)


class TestHandlers:
    def test_internal_error_is_opaque(self, failing_client):
        response = failing_client.get("/internal")
        assert response.status_code == 500
        assert response.json()["error"] == {
            "code": "server_error",
            "message": "internal server error",
            "details": None,
        }

    def test_constraint_violation_is_conflict(self, failing_client):
        response = failing_client.get("/conflict")
        assert response.status_code == 409
        assert response.json()["error"]["details"] == {"field": "email"}

    def test_storage_error_hides_detail(self, failing_client):
        response = failing_client.get("/unavailable")
        assert response.status_code == 500
        assert "SELECT" not in response.text

    def test_uncaught_exception_hides_detail(self, failing_client):
        response = failing_client.get("/boom")
        assert response.status_code == 500
        assert response.json()["error"]["code"] == "server_error"
        assert ".jwt_secret" not in response.text
