from __future__ import annotations

import threading
from typing import Any, Callable, Dict, Optional

import httpx

from authflow.logging import get_logger

logger = get_logger(__name__)


class AuthFlowClientError(RuntimeError):
    """Non-2xx reply from the API, carrying the envelope's error body."""

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        details: Any = None,
    ) -> None:
        super().__init__(f"{status_code} {code}: {message}")
        self.status_code = status_code
        self.code = code
        self.message = message
        self.details = details


def _unwrap(resp: httpx.Response) -> Dict[str, Any]:
    try:
        body = resp.json()
    except ValueError:
        body = {}
    if resp.is_success and isinstance(body, dict) and body.get("status") == "ok":
        return body.get("data") or {}
    error = body.get("error") if isinstance(body, dict) else None
    error = error if isinstance(error, dict) else {}
    raise AuthFlowClientError(
        resp.status_code,
        error.get("code") or "server_error",
        error.get("message") or resp.reason_phrase,
        error.get("details"),
    )


class AuthFlowClient:
    """Thin HTTP client for the authflow API.

    Resource calls carry the current access token. A 401 triggers exactly
    one refresh and one retry; when the refresh itself fails the original
    401 response is returned to the caller.
    """

    def __init__(
        self,
        base_url: str,
        *,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
        on_tokens: Optional[Callable[[Dict[str, Any]], None]] = None,
    ) -> None:
        self.access_token = access_token
        self.refresh_token = refresh_token
        self.on_tokens = on_tokens
        self._refresh_lock = threading.Lock()
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"), timeout=timeout, transport=transport
        )

    def __enter__(self) -> "AuthFlowClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def _store_tokens(self, data: Dict[str, Any]) -> None:
        if data.get("access_token") and data.get("refresh_token"):
            self.access_token = data["access_token"]
            self.refresh_token = data["refresh_token"]
            if self.on_tokens is not None:
                self.on_tokens(data)

    def _auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"} if self.access_token else {}

    # ------------------------------------------------------------------
    # Authentication endpoints
    # ------------------------------------------------------------------

    def login(self, identifier: str, secret: str, device: Dict[str, Any]) -> Dict[str, Any]:
        data = _unwrap(
            self._client.post(
                "/v1/auth/login",
                json={"identifier": identifier, "secret": secret, "device": device},
            )
        )
        self._store_tokens(data)
        return data

    def verify_otp(
        self,
        code: str,
        purpose: str,
        *,
        principal_id: Optional[str] = None,
        challenge_id: Optional[str] = None,
        device: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": code, "purpose": purpose}
        if principal_id:
            payload["principal_id"] = principal_id
        if challenge_id:
            payload["challenge_id"] = challenge_id
        if device is not None:
            payload["device"] = device
        data = _unwrap(self._client.post("/v1/auth/verify-otp", json=payload))
        self._store_tokens(data)
        return data

    def refresh(self) -> Dict[str, Any]:
        if not self.refresh_token:
            raise AuthFlowClientError(401, "token_invalid", "no refresh token held")
        data = _unwrap(
            self._client.post("/v1/auth/refresh", json={"refresh_token": self.refresh_token})
        )
        self._store_tokens(data)
        return data

    def logout(self, *, all_devices: bool = False) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"all": all_devices}
        if self.refresh_token:
            payload["refresh_token"] = self.refresh_token
        data = _unwrap(
            self._client.post("/v1/auth/logout", json=payload, headers=self._auth_headers())
        )
        self.access_token = None
        self.refresh_token = None
        return data

    # ------------------------------------------------------------------
    # Resource calls
    # ------------------------------------------------------------------

    def request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        extra_headers = kwargs.pop("headers", None) or {}
        presented = self.access_token
        resp = self._client.request(
            method, path, headers={**extra_headers, **self._auth_headers()}, **kwargs
        )
        if resp.status_code != 401 or not self.refresh_token:
            return resp

        with self._refresh_lock:
            # Another thread may already have rotated the pair
            if self.access_token == presented:
                try:
                    self.refresh()
                except (AuthFlowClientError, httpx.HTTPError) as exc:
                    logger.warning("client_refresh_failed", error=str(exc))
                    return resp
        return self._client.request(
            method, path, headers={**extra_headers, **self._auth_headers()}, **kwargs
        )

    def me(self) -> Dict[str, Any]:
        return _unwrap(self.request("GET", "/v1/auth/me"))

    def request_action_otp(self, purpose: str = "wallet_action") -> Dict[str, Any]:
        return _unwrap(self.request("POST", "/v1/auth/otp/request", json={"purpose": purpose}))
