"""Tests for the error envelope returned by every failing endpoint.

Error responses share one shape:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "...", "details": ...},
    "request_id": "<uuid>"
}
"""

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from authflow.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from authflow.api.schemas import Envelope, ErrorBody
from authflow.service.errors import (
    AccountHardLockedError,
    AccountSoftLockedError,
    CodeMismatchError,
    RateLimitedError,
    TokenReusedError,
)
from authflow.storage.errors import ConstraintViolation


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="invalid_credentials", message="invalid credentials")
        assert error.details is None

    def test_missing_message_raises(self):
        with pytest.raises(PydanticValidationError):
            ErrorBody(code="server_error")

    def test_unknown_code_is_rejected(self):
        with pytest.raises(PydanticValidationError):
            ErrorBody(code="user_not_found", message="no such user")

    @pytest.mark.parametrize(
        "code",
        [
            "invalid_credentials",
            "expired",
            "code_mismatch",
            "already_consumed",
            "already_resolved",
            "account_soft_locked",
            "account_hard_locked",
            "token_invalid",
            "token_reused",
            "token_expired",
            "device_rejected",
            "rate_limited",
        ],
    )
    def test_auth_codes_are_stable(self, code):
        assert ErrorBody(code=code, message="m").code == code


class TestEnvelope:
    def test_status_pattern(self):
        with pytest.raises(PydanticValidationError):
            Envelope(status="failed")

    def test_request_ids_are_unique(self):
        assert Envelope(status="ok").request_id != Envelope(status="ok").request_id


class TestStatusMapping:
    def test_known_statuses(self):
        assert _error_code_for_status(401) == "unauthorized"
        assert _error_code_for_status(410) == "expired"
        assert _error_code_for_status(423) == "account_locked"

    def test_unknown_status_is_server_error(self):
        assert _error_code_for_status(418) == "server_error"

    def test_every_mapped_code_is_valid(self):
        for code in _STATUS_TO_CODE.values():
            ErrorBody(code=code, message="m")

    def test_error_response_shape(self):
        response = _error_response(429, "slow down", headers={"Retry-After": "20"})
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "20"


class _Body(BaseModel):
    identifier: str


@pytest.fixture
def client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/soft")
    async def soft():
        raise AccountSoftLockedError("account locked")

    @app.get("/hard")
    async def hard():
        raise AccountHardLockedError("account locked")

    @app.get("/mismatch")
    async def mismatch():
        raise CodeMismatchError("invalid code", detail={"attempts_remaining": 3})

    @app.get("/cooldown")
    async def cooldown():
        raise RateLimitedError("code recently sent", retry_after_seconds=17)

    @app.get("/reused")
    async def reused():
        raise TokenReusedError("refresh token reused", detail={"family_id": "f1"})

    @app.get("/conflict")
    async def conflict():
        raise ConstraintViolation("identifier already registered", {"field": "identifier"})

    @app.get("/http")
    async def http_error():
        raise HTTPException(status_code=404, detail="nothing here")

    @app.get("/boom")
    async def boom():
        raise RuntimeError("database on fire")

    @app.post("/validated")
    async def validated(body: _Body):
        return body

    return TestClient(app, raise_server_exceptions=False)


def _error(response):
    body = response.json()
    assert body["status"] == "error"
    assert body["request_id"]
    return body["error"]


class TestHandlers:
    def test_soft_lock(self, client):
        response = client.get("/soft")
        assert response.status_code == 423
        error = _error(response)
        assert error["code"] == "account_soft_locked"
        assert error["details"]["unlock_method"] == "credential_reset"

    def test_hard_lock(self, client):
        error = _error(client.get("/hard"))
        assert error["code"] == "account_hard_locked"
        assert error["details"]["unlock_method"] == "support"

    def test_detail_is_passed_through(self, client):
        response = client.get("/mismatch")
        assert response.status_code == 401
        assert _error(response)["details"] == {"attempts_remaining": 3}

    def test_cooldown_sets_retry_after(self, client):
        response = client.get("/cooldown")
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "17"
        assert _error(response)["details"]["retry_after_seconds"] == 17

    def test_reuse_is_reported_as_invalid_token(self, client):
        response = client.get("/reused")
        assert response.status_code == 401
        error = _error(response)
        assert error["code"] == "token_invalid"
        assert error["details"] is None

    def test_constraint_violation(self, client):
        response = client.get("/conflict")
        assert response.status_code == 409
        assert _error(response)["code"] == "conflict"

    def test_http_exception(self, client):
        response = client.get("/http")
        assert response.status_code == 404
        assert _error(response)["code"] == "not_found"

    def test_unhandled_exception_hides_message(self, client):
        response = client.get("/boom")
        assert response.status_code == 500
        error = _error(response)
        assert error["code"] == "server_error"
        assert "fire" not in error["message"]

    def test_request_validation(self, client):
        response = client.post("/validated", json={})
        assert response.status_code == 400
        error = _error(response)
        assert error["code"] == "validation_error"
        assert error["details"][0]["loc"] == ["body", "identifier"]
