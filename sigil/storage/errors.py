from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreTimeout(Exception):
    """Raised when a shared store does not answer in time or cannot be reached."""

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        super().__init__(f"store operation '{operation}' failed")
        self.operation = operation
        self.cause = cause


__all__ = ["ConstraintViolation", "StoreTimeout"]
