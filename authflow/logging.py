from __future__ import annotations

import logging
import os
import uuid
from typing import Any, Dict, Iterable, Optional

import structlog

# Substrings of keys whose string values never reach log output
SECRET_KEY_MARKERS = ("password", "secret", "token", "authorization", "code", "otp", "ticket")
# Substrings of keys whose string values are partially masked
PII_KEY_MARKERS = ("email", "phone", "identifier", "national_id", "date_of_birth")
# Keys that match a marker but only ever carry labels
_LABEL_KEYS = frozenset({"event", "error_code", "token_type", "level", "logger"})

REDACTED = "[redacted]"


def bind_request_context(request_id: Optional[str] = None, **fields: Any) -> str:
    """Start a fresh log context for one request and return its request id."""
    request_id = request_id or str(uuid.uuid4())
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id, **fields)
    return request_id


def current_request_id() -> Optional[str]:
    return structlog.contextvars.get_contextvars().get("request_id")


def _mask(value: str) -> str:
    if "***" in value:
        return value
    if "@" in value:
        local, _, domain = value.partition("@")
        return f"{local[:1]}***@{domain}"
    if len(value) <= 4:
        return "***"
    return f"{value[:4]}***{value[-2:]}"


def _matches(key: str, markers: Iterable[str]) -> bool:
    return any(marker in key for marker in markers)


def redact_event(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Keep secrets, one-time codes and raw identifiers out of log lines.

    Only string values are touched, so counters such as ``failures`` or
    ``attempts_remaining`` stay readable even when their key matches.
    """
    for key, value in list(event_dict.items()):
        if key in _LABEL_KEYS or not isinstance(value, str):
            continue
        lowered = key.lower()
        if _matches(lowered, SECRET_KEY_MARKERS):
            event_dict[key] = REDACTED
        elif _matches(lowered, PII_KEY_MARKERS):
            event_dict[key] = _mask(value)
    return event_dict


def configure_logging(
    level: str = "INFO", *, json_output: bool = True, development_mode: bool = False
) -> None:
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_event,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


# Configured at import so module-level loggers are ready before Settings loads
configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
