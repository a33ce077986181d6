from __future__ import annotations

from typing import Any, Dict, Optional


class StoreError(Exception):
    """Base class for storage-layer failures."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StoreError):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""


class RecordNotFound(StoreError):
    """Raised when a conditional update or delete affected zero rows."""


class StoreTimeout(StoreError):
    """Raised when a store call exceeded its deadline; safe to retry."""


class StoreUnavailable(StoreError):
    """Raised when the backing store cannot be reached; safe to retry."""


__all__ = [
    "StoreError",
    "ConstraintViolation",
    "RecordNotFound",
    "StoreTimeout",
    "StoreUnavailable",
]
