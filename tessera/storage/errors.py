from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base class for failures raised by a store backend."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StorageError):
    """Raised when a uniqueness constraint is violated on insert.

    ``field`` names the column whose value collided (``email``, ``username``,
    ``token_hash``) so callers never need to parse driver messages.
    """

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        detail: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, detail)
        self.field = field


class StoreUnavailable(StorageError):
    """The backend could not answer within the configured timeout."""


__all__ = ["StorageError", "ConstraintViolation", "StoreUnavailable"]
