"""Tests for the error envelope format and error handling.

Error responses conform to:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<safe message>", "details": ...},
    "request_id": "<correlation id>"
}
"""

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError as PydanticValidationError

from ventaro.api import error_handling
from ventaro.api.schemas import Envelope, ErrorBody
from ventaro.app import create_app
from ventaro.config import reset_settings_cache
from ventaro.service.errors import (
    SAFE_MESSAGES,
    STATUS_FOR_KIND,
    AuthenticationError,
    CSRFError,
    ErrorKind,
    ErrorSeverity,
    ExternalServiceError,
    NotFoundError,
    RateLimitedError,
    ServerError,
    ValidationError,
)


class RecordingSink:
    def __init__(self):
        self.captured = []

    def capture(self, error, *, severity, request_id, context):
        self.captured.append((type(error).__name__, severity, request_id, context))


@pytest.fixture
def sink():
    recording = RecordingSink()
    previous = error_handling.get_monitoring_sink()
    error_handling.set_monitoring_sink(recording)
    yield recording
    error_handling.set_monitoring_sink(previous)


@pytest.fixture
def client():
    app = create_app()

    @app.get("/raise/validation")
    async def raise_validation():
        raise ValidationError("bad input", field_errors={"email": ["email is required"]})

    @app.get("/raise/csrf")
    async def raise_csrf():
        raise CSRFError()

    @app.get("/raise/auth")
    async def raise_auth():
        raise AuthenticationError("token signature mismatch for user 42")

    @app.get("/raise/rate")
    async def raise_rate():
        raise RateLimitedError(headers={"Retry-After": "7", "X-RateLimit-Remaining": "0"})

    @app.get("/raise/server")
    async def raise_server():
        raise ServerError("failed reading /etc/ventaro/secret.key", severity=ErrorSeverity.CRITICAL)

    @app.get("/raise/upstream")
    async def raise_upstream():
        raise ExternalServiceError("provider returned 503", retryable=True)

    @app.get("/raise/missing")
    async def raise_missing():
        raise NotFoundError("no purchase row")

    @app.get("/raise/crash")
    async def raise_crash():
        raise RuntimeError("database password=hunter2 rejected")

    @app.get("/typed")
    async def typed(n: int):
        return {"n": n}

    return TestClient(app, raise_server_exceptions=False)


class TestErrorBody:
    def test_known_codes_are_accepted(self):
        for kind in ErrorKind:
            assert ErrorBody(code=kind.value, message="m").code == kind.value
        assert ErrorBody(code="csrf_token_invalid", message="m").code == "csrf_token_invalid"

    def test_unknown_code_is_rejected(self):
        with pytest.raises(PydanticValidationError):
            ErrorBody(code="teapot", message="m")

    def test_envelope_status_is_constrained(self):
        with pytest.raises(PydanticValidationError):
            Envelope(status="maybe")
        assert Envelope(status="ok", data={"a": 1}).request_id

    def test_status_table_covers_every_kind(self):
        assert set(STATUS_FOR_KIND) == set(ErrorKind)
        assert set(SAFE_MESSAGES) == set(ErrorKind)


class TestHandlers:
    def test_validation_error_returns_field_map(self, client):
        response = client.get("/raise/validation")
        assert response.status_code == 400
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "validation_error"
        assert body["error"]["message"] == SAFE_MESSAGES[ErrorKind.VALIDATION]
        assert body["error"]["details"] == {"email": ["email is required"]}

    def test_csrf_error_has_its_own_code(self, client):
        response = client.get("/raise/csrf")
        assert response.status_code == 403
        assert response.json()["error"] == {
            "code": "csrf_token_invalid",
            "message": "Invalid CSRF token.",
            "details": None,
        }

    def test_cause_never_reaches_the_caller(self, client):
        response = client.get("/raise/auth")
        assert response.status_code == 401
        assert "42" not in response.text
        assert response.json()["error"]["message"] == SAFE_MESSAGES[ErrorKind.AUTHENTICATION]

    def test_rate_limit_headers_are_passed_through(self, client):
        response = client.get("/raise/rate")
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "7"
        assert response.headers["X-RateLimit-Remaining"] == "0"

    def test_upstream_and_missing_map_to_their_status(self, client):
        upstream = client.get("/raise/upstream")
        assert upstream.status_code == 502
        assert upstream.json()["error"]["code"] == "external_api_error"
        missing = client.get("/raise/missing")
        assert missing.status_code == 404
        assert missing.json()["error"]["code"] == "not_found_error"

    def test_unhandled_exception_is_generic(self, client):
        response = client.get("/raise/crash")
        assert response.status_code == 500
        body = response.json()
        assert body["error"]["code"] == "internal_error"
        assert "hunter2" not in response.text
        assert body["error"]["details"] is None

    def test_unknown_route_uses_envelope(self, client):
        response = client.get("/api/nowhere")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found_error"

    def test_request_validation_maps_to_400(self, client):
        response = client.get("/typed", params={"n": "abc"})
        assert response.status_code == 400
        assert list(response.json()["error"]["details"]) == ["n"]

    def test_request_id_follows_correlation_header(self, client):
        response = client.get("/raise/validation", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["request_id"] == "req-123"

    def test_request_id_generated_when_absent(self, client):
        response = client.get("/raise/crash")
        assert response.json()["request_id"] == response.headers["X-Request-ID"]


class TestMonitoring:
    def test_critical_errors_reach_the_sink(self, client, sink):
        client.get("/raise/server", headers={"X-Request-ID": "req-9"})
        client.get("/raise/crash")
        assert [entry[0] for entry in sink.captured] == ["ServerError", "RuntimeError"]
        name, severity, request_id, context = sink.captured[0]
        assert severity == ErrorSeverity.CRITICAL
        assert request_id == "req-9"
        assert context == {"path": "/raise/server", "method": "GET"}

    def test_low_severity_errors_are_not_forwarded(self, client, sink):
        client.get("/raise/validation")
        client.get("/raise/upstream")
        assert sink.captured == []

    def test_threshold_is_configurable(self, client, sink, monkeypatch):
        monkeypatch.setenv("MONITORING_SEVERITY_THRESHOLD", "high")
        reset_settings_cache()
        client.get("/raise/upstream")
        assert [entry[0] for entry in sink.captured] == ["ExternalServiceError"]


class TestDevelopmentDetails:
    def test_debug_detail_only_in_development(self, client, monkeypatch):
        production_like = client.get("/raise/server").json()
        assert production_like["error"]["details"] is None

        monkeypatch.setenv("ENVIRONMENT", "development")
        reset_settings_cache()
        body = client.get("/raise/server").json()
        debug = body["error"]["details"]["debug"]
        assert "/etc/ventaro" not in debug["message"]
        assert "[redacted]" in debug["message"]
        # Message shown to the caller is still the safe one
        assert body["error"]["message"] == SAFE_MESSAGES[ErrorKind.INTERNAL]

    def test_development_keeps_field_errors(self, client, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "development")
        reset_settings_cache()
        details = client.get("/raise/validation").json()["error"]["details"]
        assert details["email"] == ["email is required"]
        assert "debug" in details
