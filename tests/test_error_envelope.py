"""Tests for the structured error body, request ids and response headers."""

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError as PydanticValidationError

from tradedesk.api.schemas import ErrorBody
from tradedesk.service.errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ServiceError,
    ValidationError,
)


class TestErrorTaxonomy:
    def test_status_and_codes(self):
        cases = [
            (ValidationError("x"), 400, "validation_error"),
            (AuthenticationError("x"), 401, "unauthorized"),
            (AuthorizationError("x"), 403, "forbidden"),
            (NotFoundError("x"), 404, "not_found"),
            (ConflictError("x"), 409, "conflict"),
        ]
        for exc, status, code in cases:
            assert isinstance(exc, ServiceError)
            assert exc.status_code == status
            assert exc.error_code == code

    def test_field_and_detail_are_carried(self):
        exc = ValidationError("Email is required", field="email", detail={"hint": 1})
        assert exc.message == "Email is required"
        assert exc.field == "email"
        assert exc.detail == {"hint": 1}
        assert str(exc) == "Email is required"

    def test_error_body_rejects_unknown_code(self):
        with pytest.raises(PydanticValidationError):
            ErrorBody(code="teapot", message="no")


class TestEnvelope:
    """Every failing endpoint answers with the same shape."""

    def test_envelope_shape(self, client):
        response = client.get("/api/auth/me")
        body = response.json()
        assert set(body) == {"success", "message", "field", "error", "requestId"}
        assert body["success"] is False
        assert body["error"]["message"] == body["message"]
        assert body["requestId"] == response.headers["X-Request-ID"]

    def test_caller_request_id_is_echoed(self, client):
        response = client.get("/api/auth/me", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["requestId"] == "req-123"

    def test_malformed_json_is_a_400(self, client):
        response = client.post(
            "/api/auth/login",
            content="{not json",
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_unknown_route_uses_envelope(self, client):
        response = client.get("/api/auth/nope")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_unhandled_exception_is_a_500(self, app):
        @app.get("/boom")
        async def boom():
            raise RuntimeError("kaboom")

        response = TestClient(app, raise_server_exceptions=False).get(
            "/boom", headers={"X-Request-ID": "abc"}
        )
        assert response.status_code == 500
        body = response.json()
        assert body["message"] == "Internal server error"
        assert body["error"]["code"] == "server_error"
        assert "kaboom" not in response.text
        assert body["requestId"] == "abc"
        assert response.headers["X-Request-ID"] == "abc"
        assert response.headers["X-Content-Type-Options"] == "nosniff"


class TestResponseHeaders:
    def test_security_headers(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"

    def test_api_responses_are_not_cached(self, client):
        response = client.get("/api/auth/me")
        assert response.headers["Cache-Control"] == "no-store"
