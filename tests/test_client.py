"""Tests for the HTTP client's single refresh-and-retry behaviour."""

import json

import httpx
import pytest

from authflow.client import AuthFlowClient, AuthFlowClientError


def _ok(data):
    return httpx.Response(200, json={"status": "ok", "data": data, "request_id": "r"})


def _error(status, code, message="nope"):
    return httpx.Response(
        status,
        json={
            "status": "error",
            "error": {"code": code, "message": message, "details": None},
            "request_id": "r",
        },
    )


def _tokens(suffix):
    return {"access_token": f"access-{suffix}", "refresh_token": f"refresh-{suffix}"}


class FakeServer:
    """Accepts one access token at a time and counts refresh calls."""

    def __init__(self, valid_access="access-1", refresh_ok=True):
        self.valid_access = valid_access
        self.refresh_ok = refresh_ok
        self.refresh_calls = 0
        self.me_calls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v1/auth/refresh":
            self.refresh_calls += 1
            if not self.refresh_ok:
                return _error(401, "token_invalid")
            body = json.loads(request.content)
            suffix = str(self.refresh_calls + 1)
            assert body["refresh_token"]
            self.valid_access = f"access-{suffix}"
            return _ok(_tokens(suffix))
        if request.url.path == "/v1/auth/me":
            self.me_calls += 1
            if request.headers.get("Authorization") != f"Bearer {self.valid_access}":
                return _error(401, "token_invalid")
            return _ok({"principal_id": "p1"})
        return _error(404, "not_found")


def _client(server, **kwargs):
    return AuthFlowClient(
        "http://authflow.test",
        access_token=kwargs.pop("access_token", "access-1"),
        refresh_token=kwargs.pop("refresh_token", "refresh-1"),
        transport=httpx.MockTransport(server),
        **kwargs,
    )


def test_valid_token_no_refresh():
    server = FakeServer()
    with _client(server) as client:
        assert client.me() == {"principal_id": "p1"}
    assert server.refresh_calls == 0


def test_expired_access_refreshes_once_and_retries():
    server = FakeServer(valid_access="access-fresh")
    rotated = []
    with _client(server, on_tokens=rotated.append) as client:
        assert client.me() == {"principal_id": "p1"}
        assert client.access_token == "access-2"
        assert client.refresh_token == "refresh-2"
    assert server.refresh_calls == 1
    assert server.me_calls == 2
    assert rotated == [_tokens("2")]


def test_failed_refresh_returns_original_401():
    server = FakeServer(valid_access="access-fresh", refresh_ok=False)
    with _client(server) as client:
        with pytest.raises(AuthFlowClientError) as excinfo:
            client.me()
    assert excinfo.value.status_code == 401
    assert server.refresh_calls == 1
    assert server.me_calls == 1


def test_retry_401_is_not_refreshed_again():
    server = FakeServer(valid_access="never-valid")

    def _always_reject(request):
        response = server(request)
        server.valid_access = "never-valid"
        return response

    with AuthFlowClient(
        "http://authflow.test",
        access_token="access-1",
        refresh_token="refresh-1",
        transport=httpx.MockTransport(_always_reject),
    ) as client:
        with pytest.raises(AuthFlowClientError):
            client.me()
    assert server.refresh_calls == 1
    assert server.me_calls == 2


def test_no_refresh_token_means_no_retry():
    server = FakeServer(valid_access="access-fresh")
    with _client(server, refresh_token=None) as client:
        with pytest.raises(AuthFlowClientError):
            client.me()
    assert server.refresh_calls == 0


def test_error_envelope_is_unwrapped():
    server = FakeServer()
    with _client(server) as client:
        with pytest.raises(AuthFlowClientError) as excinfo:
            client.request_action_otp()
    assert excinfo.value.code == "not_found"
    assert excinfo.value.status_code == 404
