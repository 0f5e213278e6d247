"""Tests for the JSON error body and request schema validation."""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import ValidationError as PydanticValidationError

from korella.api.error_handling import register_exception_handlers
from korella.api.routes import _http_error
from korella.api.schemas import (
    ErrorResponse,
    ForgotPasswordRequest,
    RegisterRequest,
    ResetPasswordRequest,
)
from korella.service.errors import (
    AccountLockedError,
    RateLimitedError,
    ServerError,
)
from korella.storage.errors import ConstraintViolation


@pytest.fixture
def client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/locked")
    async def locked():
        raise AccountLockedError("Account is locked", detail={"reason": "ACCOUNT_LOCKED"})

    @app.get("/throttled")
    async def throttled():
        raise RateLimitedError("Slow down", detail={"retry_after": 42})

    @app.get("/constraint")
    async def constraint():
        raise ConstraintViolation("email already exists", {"field": "email"})

    @app.get("/server")
    async def server():
        raise ServerError("Storage unavailable")

    @app.get("/http")
    async def http():
        raise _http_error("forbidden", "Not allowed", status_code=403, details={"why": "test"})

    @app.get("/boom")
    async def boom():
        raise RuntimeError("secret internals")

    @app.post("/forgot")
    async def forgot(body: ForgotPasswordRequest):
        return {"email": body.email}

    return TestClient(app, raise_server_exceptions=False)


class TestErrorBody:
    def test_locked_maps_to_423(self, client):
        response = client.get("/locked")
        assert response.status_code == 423
        assert response.json() == {
            "error": "Locked",
            "message": "Account is locked",
            "code": "locked",
            "details": {"reason": "ACCOUNT_LOCKED"},
        }

    def test_unknown_route_uses_error_body(self, client):
        response = client.get("/nowhere")
        assert response.status_code == 404
        assert response.json() == {"error": "Not Found", "message": "Not Found", "code": "not_found"}

    def test_rate_limited_sets_retry_after(self, client):
        response = client.get("/throttled")
        assert response.status_code == 429
        assert response.json()["retryAfter"] == 42
        assert response.headers["Retry-After"] == "42"

    def test_constraint_violation_is_conflict(self, client):
        response = client.get("/constraint")
        assert response.status_code == 409
        assert response.json()["details"] == {"field": "email"}

    def test_server_error(self, client):
        response = client.get("/server")
        assert response.status_code == 500
        assert response.json()["code"] == "server_error"

    def test_structured_http_exception(self, client):
        response = client.get("/http")
        assert response.status_code == 403
        assert response.json() == {
            "error": "Forbidden",
            "message": "Not allowed",
            "code": "forbidden",
            "details": {"why": "test"},
        }

    def test_uncaught_exception_hides_internals(self, client):
        response = client.get("/boom")
        assert response.status_code == 500
        body = response.json()
        assert body["message"] == "Internal server error"
        assert "secret" not in response.text

    def test_request_validation_is_400(self, client):
        response = client.post("/forgot", json={"email": "nope"})
        assert response.status_code == 400
        assert response.json()["message"] == "Valid email address is required"
        assert response.json()["code"] == "validation_error"

    def test_missing_body_field_is_400(self, client):
        response = client.post("/forgot", json={})
        assert response.status_code == 400
        assert response.json()["message"] == "Valid email address is required"

    def test_unknown_error_code_rejected(self):
        with pytest.raises(PydanticValidationError):
            ErrorResponse(error="Teapot", message="x", code="teapot")


class TestRequestSchemas:
    def test_email_is_normalized(self):
        body = ForgotPasswordRequest(email="  Ada@Example.COM ")
        assert body.email == "ada@example.com"

    def test_zero_width_characters_stripped(self):
        body = ForgotPasswordRequest(email="ad​a@example.com")
        assert body.email == "ada@example.com"

    @pytest.mark.parametrize(
        "email",
        ["", "plain", "@example.com", "ada@", "ada@localhost", "ada@-bad.com", "a b@example.com"],
    )
    def test_invalid_emails(self, email):
        with pytest.raises(PydanticValidationError):
            ForgotPasswordRequest(email=email)

    def test_register_name_cleaned(self):
        body = RegisterRequest(email="ada@example.com", password="x", full_name="  Ada  ")
        assert body.full_name == "Ada"

    def test_register_blank_name_rejected(self):
        with pytest.raises(PydanticValidationError):
            RegisterRequest(email="ada@example.com", password="x", full_name="​")

    def test_reset_token_length(self):
        with pytest.raises(PydanticValidationError):
            ResetPasswordRequest(token="123456789", new_password="Korella#Secure42")
        assert ResetPasswordRequest(token="1234567890", new_password="x").token == "1234567890"
