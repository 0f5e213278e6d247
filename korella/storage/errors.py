from __future__ import annotations

from typing import Any, Dict, Optional


class StoreError(Exception):
    """Base class for account-store failures surfaced to the service layer."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StoreError):
    """Raised when a unique or foreign-key constraint rejects a write.

    ``detail["field"]`` names the offending column when it is known.
    """


__all__ = ["StoreError", "ConstraintViolation"]
