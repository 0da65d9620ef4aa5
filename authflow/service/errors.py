from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    ``error_code`` that clients branch on. The codes of the authentication
    core are:

    - invalid_credentials (401)
    - rate_limited (429)
    - expired (410)
    - code_mismatch (401)
    - already_consumed (409)
    - already_resolved (409)
    - account_soft_locked / account_hard_locked (423)
    - token_invalid / token_reused / token_expired (401)
    - device_rejected (403)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class ForbiddenError(ServiceError):
    """Caller is not allowed to perform this action (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class InvalidCredentialsError(ServiceError):
    """Identifier/secret pair rejected; never says which half was wrong."""
    status_code = 401
    error_code = "invalid_credentials"


class RateLimitedError(ServiceError):
    """Issue or resend attempted inside the cooldown window (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after_seconds: int = 0, **kwargs) -> None:
        detail = {**(kwargs.pop("detail", None) or {}), "retry_after_seconds": retry_after_seconds}
        super().__init__(message, detail=detail, **kwargs)
        self.retry_after_seconds = retry_after_seconds


class ExpiredError(ServiceError):
    """Challenge or confirmation is past its deadline; request a new one."""
    status_code = 410
    error_code = "expired"


class CodeMismatchError(ServiceError):
    """Submitted code does not match; the challenge stays open for retry."""
    status_code = 401
    error_code = "code_mismatch"


class AlreadyConsumedError(ServiceError):
    status_code = 409
    error_code = "already_consumed"


class AlreadyResolvedError(ServiceError):
    """Confirmation already reached a terminal state; the call is a no-op."""
    status_code = 409
    error_code = "already_resolved"


class AccountLockedError(ServiceError):
    status_code = 423
    error_code = "account_locked"
    unlock_method: str = "support"

    def __init__(self, message: str, **kwargs) -> None:
        detail = {**(kwargs.pop("detail", None) or {}), "unlock_method": self.unlock_method}
        super().__init__(message, detail=detail, **kwargs)


class AccountSoftLockedError(AccountLockedError):
    """Locked until the credential is reset through the self-service flow."""
    error_code = "account_soft_locked"
    unlock_method = "credential_reset"


class AccountHardLockedError(AccountLockedError):
    """Locked until a support operator intervenes."""
    error_code = "account_hard_locked"
    unlock_method = "support"


class TokenInvalidError(ServiceError):
    status_code = 401
    error_code = "token_invalid"


class TokenReusedError(TokenInvalidError):
    """A rotated refresh token was presented again; its family is revoked."""
    error_code = "token_reused"


class TokenExpiredError(ServiceError):
    status_code = 401
    error_code = "token_expired"


class DeviceRejectedError(ServiceError):
    """The confirmation channel explicitly denied the login."""
    status_code = 403
    error_code = "device_rejected"


__all__ = [
    "ServiceError",
    "ValidationError",
    "ForbiddenError",
    "NotFoundError",
    "ServerError",
    "InvalidCredentialsError",
    "RateLimitedError",
    "ExpiredError",
    "CodeMismatchError",
    "AlreadyConsumedError",
    "AlreadyResolvedError",
    "AccountLockedError",
    "AccountSoftLockedError",
    "AccountHardLockedError",
    "TokenInvalidError",
    "TokenReusedError",
    "TokenExpiredError",
    "DeviceRejectedError",
]
