from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from authflow.api.schemas import Envelope, ErrorBody
from authflow.logging import current_request_id, get_logger
from authflow.service.errors import (
    AccountLockedError,
    RateLimitedError,
    ServiceError,
    TokenReusedError,
)
from authflow.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    410: "expired",
    423: "account_locked",
    429: "rate_limited",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: Any = None,
    code: Optional[str] = None,
    headers: Optional[dict] = None,
) -> JSONResponse:
    envelope = Envelope(
        status="error",
        error=ErrorBody(
            code=code or _error_code_for_status(status_code), message=message, details=details
        ),
    )
    request_id = current_request_id()
    if request_id:
        envelope.request_id = request_id
    return JSONResponse(status_code=status_code, content=envelope.model_dump(), headers=headers)


async def _service_error(request: Request, exc: ServiceError) -> JSONResponse:
    if exc.status_code >= 500:
        log = logger.error
    elif isinstance(exc, (TokenReusedError, AccountLockedError)):
        # Reuse and locks are security events even though they are client errors
        log = logger.warning
    else:
        log = logger.info
    log(
        "auth_request_rejected",
        status_code=exc.status_code,
        error_code=exc.error_code,
        reason=exc.message,
        detail=exc.detail,
    )
    if isinstance(exc, TokenReusedError):
        return _error_response(exc.status_code, "invalid token", code="token_invalid")
    headers = None
    if isinstance(exc, RateLimitedError) and exc.retry_after_seconds:
        headers = {"Retry-After": str(exc.retry_after_seconds)}
    return _error_response(
        exc.status_code, exc.message, exc.detail or None, code=exc.error_code, headers=headers
    )


async def _constraint_violation(request: Request, exc: ConstraintViolation) -> JSONResponse:
    logger.warning("constraint_violation", reason=exc.message, detail=exc.detail)
    return _error_response(409, exc.message, exc.detail or None, code="conflict")


async def _request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Inputs are left out of the details since they may carry secrets
    errors = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]
    logger.info("request_validation_failed", error_count=len(errors))
    return _error_response(400, "invalid request", errors, code="validation_error")


async def _http_exception(request: Request, exc: HTTPException) -> JSONResponse:
    """Render route-raised errors, which carry ``{"error": {...}}`` as their detail."""
    error = exc.detail.get("error") if isinstance(exc.detail, dict) else None
    if isinstance(error, dict):
        message = error.get("message", "http error")
        code, details = error.get("code"), error.get("details")
    else:
        message, code, details = str(exc.detail), None, None
    if exc.status_code >= 500:
        logger.error("http_error", status_code=exc.status_code, error_code=code, reason=message)
    else:
        logger.info("http_client_error", status_code=exc.status_code, error_code=code, reason=message)
    return _error_response(exc.status_code, message, details, code=code, headers=exc.headers)


async def _unhandled(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_exception", exc_info=exc, error_type=type(exc).__name__)
    return _error_response(500, "internal server error", code="server_error")


def register_exception_handlers(app: FastAPI) -> None:
    """Render every failure as the error envelope."""
    app.add_exception_handler(ServiceError, _service_error)
    app.add_exception_handler(ConstraintViolation, _constraint_violation)
    app.add_exception_handler(RequestValidationError, _request_validation)
    app.add_exception_handler(HTTPException, _http_exception)
    app.add_exception_handler(Exception, _unhandled)
