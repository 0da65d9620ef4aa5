from __future__ import annotations

import hashlib
import re
from functools import lru_cache

NATIONAL_ID_PATTERN = re.compile(r"^[12]\d{9}$")
_SEPARATORS = re.compile(r"[\s\-().]")


@lru_cache(maxsize=16)
def _phone_patterns(country_code: str, local_pattern: str) -> tuple[re.Pattern, ...]:
    return (
        re.compile(rf"^{country_code}({local_pattern})$"),
        re.compile(rf"^0({local_pattern})$"),
        re.compile(rf"^({local_pattern})$"),
    )


def normalize_phone(
    raw: str, *, country_code: str = "966", local_pattern: str = r"5\d{8}"
) -> str | None:
    """Return the canonical ``+<cc><local>`` form, or None if ``raw`` is not a phone.

    Accepted shapes (separators ignored): ``+9665XXXXXXXX``, ``009665XXXXXXXX``,
    ``9665XXXXXXXX``, ``05XXXXXXXX`` and ``5XXXXXXXX``.
    """
    candidate = _SEPARATORS.sub("", raw or "")
    if candidate.startswith("+"):
        candidate = candidate[1:]
    elif candidate.startswith("00"):
        candidate = candidate[2:]
    if not candidate.isdigit():
        return None
    for pattern in _phone_patterns(country_code, local_pattern):
        match = pattern.match(candidate)
        if match:
            return f"+{country_code}{match.group(1)}"
    return None


def normalize_identifier(
    raw: str, *, country_code: str = "966", local_pattern: str = r"5\d{8}"
) -> str:
    """Canonicalise phone numbers; every other identifier passes through unmodified."""
    if NATIONAL_ID_PATTERN.match(raw or ""):
        return raw
    phone = normalize_phone(raw, country_code=country_code, local_pattern=local_pattern)
    return phone if phone is not None else raw


def is_national_id(value: str) -> bool:
    return bool(NATIONAL_ID_PATTERN.match(value or ""))


def identifier_bucket(identifier: str) -> str:
    """Lockout subject for identifiers that did not resolve to a principal."""
    digest = hashlib.sha256(identifier.encode("utf-8")).hexdigest()
    return f"identifier:{digest}"


def mask_identifier(identifier: str | None) -> str:
    if not identifier:
        return ""
    if "@" in identifier:
        local, _, domain = identifier.partition("@")
        return f"{local[:1]}***@{domain}"
    if len(identifier) <= 4:
        return "***"
    return identifier[:5] + "*" * max(0, len(identifier) - 7) + identifier[-2:]
