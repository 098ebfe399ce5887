from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a directory uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class CorruptRecordError(Exception):
    """Raised when a stored session record cannot be decoded."""

    def __init__(self, key: str, reason: str):
        super().__init__(f"corrupt session record at {key}: {reason}")
        self.key = key
        self.reason = reason


__all__ = ["ConstraintViolation", "CorruptRecordError"]
