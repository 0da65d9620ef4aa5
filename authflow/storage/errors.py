from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base class for persistence failures surfaced to the service layer."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StorageError):
    """A uniqueness or reference constraint on principals or tokens was violated."""


class RecordNotFound(StorageError):
    """A mutation targeted a principal or record that does not exist."""


__all__ = ["StorageError", "ConstraintViolation", "RecordNotFound"]
