"""Tests for the error envelope returned by every failing endpoint.

{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<text>", "details": <object|array|null>},
    "request_id": "<id>"
}
"""

import json

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from novachat import app as app_module
from novachat.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    error_envelope,
)
from novachat.api.schemas import Envelope, ErrorBody
from novachat.logging import correlation_id_var, set_correlation_id


class TestErrorBody:
    """Tests for the ErrorBody model."""

    def test_known_code_accepted(self):
        error = ErrorBody(code="unauthorized", message="Please log in again")
        assert error.details is None

    def test_unknown_code_rejected(self):
        """Only the stable codes may reach clients."""
        with pytest.raises(ValidationError):
            ErrorBody(code="session_gone", message="nope")

    def test_details_may_be_list(self):
        error = ErrorBody(code="validation_error", message="bad", details=[{"loc": ["email"]}])
        assert error.details == [{"loc": ["email"]}]


class TestEnvelope:
    """Tests for the Envelope model."""

    def test_invalid_status_rejected(self):
        with pytest.raises(ValidationError):
            Envelope(status="success")

    def test_request_id_generated(self):
        envelope = Envelope(status="ok")
        assert envelope.request_id

    def test_request_id_follows_correlation_id(self):
        """Inside a request the envelope reuses the correlation id."""
        set_correlation_id("corr-42")
        try:
            assert Envelope(status="ok").request_id == "corr-42"
        finally:
            correlation_id_var.set(None)

    def test_error_envelope_helper(self):
        envelope = error_envelope(
            "Session expired - logged in from another device",
            code="unauthorized",
            details={"reason": "SESSION_SUPERSEDED", "should_logout": True},
        )
        dumped = envelope.model_dump(mode="json")
        assert dumped["status"] == "error"
        assert dumped["data"] is None
        assert dumped["error"]["details"]["should_logout"] is True


class TestErrorCodeMapping:
    """HTTP status to stable error code."""

    @pytest.mark.parametrize(
        "status_code, code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (429, "rate_limited"),
            (500, "server_error"),
        ],
    )
    def test_mapping(self, status_code, code):
        assert _error_code_for_status(status_code) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"

    def test_every_stable_code_reachable(self):
        assert set(_STATUS_TO_CODE.values()) == {
            "unauthorized",
            "forbidden",
            "not_found",
            "rate_limited",
            "validation_error",
            "conflict",
            "server_error",
        }


class TestErrorResponses:
    """Envelope rendering, directly and through the app."""

    def test_error_response_body(self):
        response = _error_response(401, "Please log in again", {"reason": "NO_CREDENTIAL"})

        assert response.status_code == 401
        data = json.loads(response.body.decode())
        assert data["error"] == {
            "code": "unauthorized",
            "message": "Please log in again",
            "details": {"reason": "NO_CREDENTIAL"},
        }
        assert data["request_id"]

    def test_unknown_route_uses_envelope(self):
        with TestClient(app_module.app) as client:
            response = client.get("/v1/does-not-exist")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_malformed_body_is_validation_error(self):
        with TestClient(app_module.app) as client:
            response = client.post(
                "/v1/auth/login",
                content=b"{not json",
                headers={"Content-Type": "application/json"},
            )
        assert response.status_code == 400
        body = response.json()
        assert body["error"]["code"] == "validation_error"
        assert isinstance(body["error"]["details"], list)

    def test_security_headers_present(self):
        with TestClient(app_module.app) as client:
            response = client.get("/healthz")
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert "no-store" in response.headers["Cache-Control"]
