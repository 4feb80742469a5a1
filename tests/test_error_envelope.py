"""Tests for the error envelope and the exception-to-response mapping.

Every failure leaves the API in the same shape:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "...", "details": ...},
    "request_id": "<id>"
}
"""

import json
from datetime import datetime, timezone

import pytest
from fastapi import FastAPI, HTTPException, Request
from fastapi.testclient import TestClient
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from credcore.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from credcore.api.schemas import Envelope, ErrorBody
from credcore.service.errors import (
    AccountLockedError,
    AuthenticationError,
    CsrfStateError,
    RateLimitedError,
    UpstreamError,
)
from credcore.service.rate_limit import RateLimitResult
from credcore.service.tokens import TokenError, TokenFailure
from credcore.storage.errors import ConstraintViolation


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="unauthorized", message="invalid credentials")
        assert error.details is None

    def test_unknown_code_rejected(self):
        """Codes outside the stable set never reach clients."""
        with pytest.raises(PydanticValidationError):
            ErrorBody(code="teapot", message="short and stout")

    @pytest.mark.parametrize(
        "code",
        ["account_locked", "account_disabled", "email_unverified", "invalid_state", "upstream_error"],
    )
    def test_domain_codes_accepted(self, code):
        assert ErrorBody(code=code, message="x").code == code


class TestEnvelope:
    def test_request_id_generated(self):
        envelope = Envelope(status="ok")
        assert len(envelope.request_id) == 36

    def test_invalid_status(self):
        with pytest.raises(PydanticValidationError):
            Envelope(status="success")

    def test_error_serialization(self):
        envelope = Envelope(
            status="error",
            error=ErrorBody(code="rate_limited", message="slow down", details={"retry_after": 60}),
            request_id="req-1",
        )
        dumped = envelope.model_dump()
        assert dumped["error"]["details"]["retry_after"] == 60
        assert dumped["request_id"] == "req-1"
        assert dumped["data"] is None


class TestStatusMapping:
    @pytest.mark.parametrize(
        "status, code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (423, "account_locked"),
            (429, "rate_limited"),
            (500, "server_error"),
        ],
    )
    def test_known_statuses(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"
        assert _error_code_for_status(503) == "server_error"

    def test_mapped_codes_are_valid_error_codes(self):
        for code in _STATUS_TO_CODE.values():
            ErrorBody(code=code, message="x")

    def test_error_response_headers_and_body(self):
        response = _error_response(429, "slow down", {"retry_after": 5}, headers={"Retry-After": "5"})
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "5"
        data = json.loads(response.body.decode())
        assert data["status"] == "error"
        assert data["error"] == {
            "code": "rate_limited",
            "message": "slow down",
            "details": {"retry_after": 5},
        }


class _Body(BaseModel):
    count: int


def _app() -> FastAPI:
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/locked")
    async def locked():
        raise AccountLockedError(
            locked_until=datetime(2024, 1, 1, 12, 15, tzinfo=timezone.utc), retry_after=900
        )

    @app.get("/limited")
    async def limited():
        raise RateLimitedError(retry_after=12, limit=10)

    @app.get("/token")
    async def token():
        raise TokenError(TokenFailure.EXPIRED)

    @app.get("/state")
    async def state():
        raise CsrfStateError("invalid or expired state")

    @app.get("/upstream")
    async def upstream():
        raise UpstreamError()

    @app.get("/constraint")
    async def constraint():
        raise ConstraintViolation("email already exists", {"field": "email"})

    @app.get("/counted-401")
    async def counted_401(request: Request):
        request.state.rate_limit = RateLimitResult(
            allowed=True, limit=10, remaining=3, reset_seconds=42
        )
        raise AuthenticationError("invalid credentials")

    @app.get("/counted-http")
    async def counted_http(request: Request):
        request.state.rate_limit = RateLimitResult(
            allowed=True, limit=5, remaining=0, reset_seconds=7
        )
        raise HTTPException(status_code=404, detail="gone")

    @app.get("/boom")
    async def boom():
        raise KeyError("secret internals")

    @app.post("/validate")
    async def validate(body: _Body):
        return {"ok": True}

    return app


@pytest.fixture
def client():
    return TestClient(_app(), raise_server_exceptions=False)


class TestHandlers:
    def test_account_locked(self, client):
        resp = client.get("/locked")
        assert resp.status_code == 423
        assert resp.headers["Retry-After"] == "900"
        error = resp.json()["error"]
        assert error["code"] == "account_locked"
        assert error["details"]["retry_after"] == 900
        assert error["details"]["locked_until"].startswith("2024-01-01T12:15")

    def test_rate_limited(self, client):
        resp = client.get("/limited")
        assert resp.status_code == 429
        assert resp.headers["Retry-After"] == "12"
        assert resp.headers["X-RateLimit-Limit"] == "10"
        assert resp.json()["error"]["code"] == "rate_limited"

    def test_token_failure(self, client):
        resp = client.get("/token")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"
        assert resp.json()["error"]["details"] == {"reason": "expired"}

    def test_csrf_state(self, client):
        resp = client.get("/state")
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "invalid_state"

    def test_upstream_error_is_generic(self, client):
        resp = client.get("/upstream")
        assert resp.status_code == 500
        assert resp.json()["error"]["code"] == "upstream_error"
        assert resp.json()["error"]["message"] == "identity provider request failed"

    def test_constraint_violation(self, client):
        resp = client.get("/constraint")
        assert resp.status_code == 409
        assert resp.json()["error"]["details"] == {"field": "email"}

    def test_unhandled_exception_hides_detail(self, client):
        resp = client.get("/boom")
        assert resp.status_code == 500
        body = resp.json()
        assert body["error"]["code"] == "server_error"
        assert "secret" not in json.dumps(body)

    def test_request_validation(self, client):
        resp = client.post("/validate", json={"count": "many"})
        assert resp.status_code == 400
        error = resp.json()["error"]
        assert error["code"] == "validation_error"
        assert error["details"][0]["loc"] == ["body", "count"]

    def test_framework_404(self, client):
        resp = client.get("/missing")
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"

    def test_rate_limit_headers_survive_service_errors(self, client):
        resp = client.get("/counted-401")
        assert resp.status_code == 401
        assert resp.headers["X-RateLimit-Limit"] == "10"
        assert resp.headers["X-RateLimit-Remaining"] == "3"
        assert resp.headers["X-RateLimit-Reset"] == "42"

    def test_rate_limit_headers_survive_http_exceptions(self, client):
        resp = client.get("/counted-http")
        assert resp.status_code == 404
        assert resp.json()["error"]["message"] == "gone"
        assert resp.headers["X-RateLimit-Remaining"] == "0"

    def test_uncounted_errors_carry_no_rate_headers(self, client):
        resp = client.get("/token")
        assert "X-RateLimit-Limit" not in resp.headers
