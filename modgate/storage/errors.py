from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a uniqueness or ownership constraint of the credential store is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class MissingRecord(ConstraintViolation):
    """A mutation referenced an account or key id the store does not hold."""


__all__ = ["ConstraintViolation", "MissingRecord"]
