from __future__ import annotations

from typing import Any, Dict, Optional

# Values reported in ConstraintViolation.detail["field"]
USERNAME_FIELD = "username"
EMAIL_FIELD = "email"
PROVIDER_IDENTITY_FIELD = "provider_identity"


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def field(self) -> Optional[str]:
        return self.detail.get("field")


__all__ = [
    "ConstraintViolation",
    "USERNAME_FIELD",
    "EMAIL_FIELD",
    "PROVIDER_IDENTITY_FIELD",
]
