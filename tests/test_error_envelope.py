"""Tests for the error envelope format and error handling.

Error responses share one shape:
{
    "status": "error",
    "error": {
        "code": "<stable_code>",
        "message": "<human_readable>",
        "details": <object|array|null>
    },
    "request_id": "<uuid>"
}
"""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import ValidationError

from insightdash import app as app_module
from insightdash.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    register_exception_handlers,
)
from insightdash.api.schemas import Envelope, ErrorBody
from insightdash.config import reset_settings_cache
from insightdash.service.errors import ConflictError, ForbiddenError
from insightdash.storage.errors import ConstraintViolation


@pytest.fixture
def client():
    return TestClient(app_module.app)


@pytest.fixture
def failing_app():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/boom")
    async def boom():
        raise RuntimeError("disk on fire")

    @app.get("/forbidden")
    async def forbidden():
        raise ForbiddenError("nope", detail={"resource": "admin"})

    @app.get("/conflict")
    async def conflict():
        raise ConflictError("already there")

    @app.get("/constraint")
    async def constraint():
        raise ConstraintViolation("email already exists", {"field": "email"})

    return app


class TestErrorBody:
    def test_error_body_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.code == "unauthorized"
        assert error.details is None

    def test_error_body_with_details_list(self):
        error = ErrorBody(
            code="validation_error",
            message="Multiple errors",
            details=[{"field": "email"}, {"field": "password"}],
        )
        assert len(error.details) == 2

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")


class TestEnvelope:
    def test_envelope_request_id_auto_generated(self):
        envelope = Envelope(status="ok")
        assert len(envelope.request_id) == 36

    def test_envelope_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="success")


class TestErrorCodeMapping:
    @pytest.mark.parametrize(
        "status_code, code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (500, "server_error"),
        ],
    )
    def test_status_maps_to_code(self, status_code, code):
        assert _error_code_for_status(status_code) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"

    def test_all_codes_are_valid_error_body_codes(self):
        for code in set(_STATUS_TO_CODE.values()):
            ErrorBody(code=code, message="ok")


class TestEnvelopeOverHttp:
    def test_missing_token_is_enveloped(self, client):
        response = client.get("/v1/auth/me")

        assert response.status_code == 401
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "unauthorized"
        assert body["error"]["message"] == "not authorized, no token provided"
        assert body["request_id"] == response.headers["X-Request-ID"]

    def test_client_request_id_is_echoed(self, client):
        response = client.get("/v1/auth/me", headers={"X-Request-ID": "req-abc-123"})
        assert response.headers["X-Request-ID"] == "req-abc-123"
        assert response.json()["request_id"] == "req-abc-123"

    def test_body_validation_is_400_with_field_details(self, client):
        response = client.post("/v1/auth/register", json={"email": "a@example.com"})

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        fields = {d["field"] for d in error["details"]}
        assert {"password", "name"} <= fields

    def test_unknown_route_is_enveloped(self, client):
        response = client.get("/v1/nothing-here")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_security_headers(self, client):
        response = client.get("/v1/auth/me")
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert "no-store" in response.headers["Cache-Control"]


class TestServiceErrors:
    def test_service_error_carries_status_and_details(self, failing_app):
        response = TestClient(failing_app).get("/forbidden")

        assert response.status_code == 403
        assert response.json()["error"] == {
            "code": "forbidden",
            "message": "nope",
            "details": {"resource": "admin"},
        }

    def test_conflict(self, failing_app):
        response = TestClient(failing_app).get("/conflict")
        assert response.status_code == 409
        assert response.json()["error"]["details"] is None

    def test_constraint_violation_is_conflict(self, failing_app):
        response = TestClient(failing_app).get("/constraint")
        assert response.status_code == 409
        assert response.json()["error"]["details"] == {"field": "email"}


class TestUncaughtErrors:
    def test_internal_detail_hidden_outside_development(self, failing_app):
        client = TestClient(failing_app, raise_server_exceptions=False)

        response = client.get("/boom")

        assert response.status_code == 500
        error = response.json()["error"]
        assert error["code"] == "server_error"
        assert error["message"] == "internal server error"
        assert error["details"] is None
        assert "disk on fire" not in response.text

    def test_internal_detail_shown_in_development(self, failing_app, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "development")
        reset_settings_cache()
        client = TestClient(failing_app, raise_server_exceptions=False)

        response = client.get("/boom")

        assert response.status_code == 500
        assert response.json()["error"]["details"] == {
            "error_type": "RuntimeError",
            "error": "disk on fire",
        }
