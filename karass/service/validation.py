"""Input shape rules shared by the request schemas and the account provisioner."""

from __future__ import annotations

import re
import unicodedata
from typing import Optional

EMAIL_PATTERN = re.compile(r"[^\s@]+@[^\s@]+\.[^\s@]+")
USERNAME_PATTERN = re.compile(r"[a-zA-Z0-9_]{3,30}")
HANDLE_PATTERN = re.compile(r"[a-zA-Z0-9_]+")
MAX_EMAIL_LENGTH = 254
MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128


def normalize_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip()).lower()
    if len(normalized) > MAX_EMAIL_LENGTH:
        raise ValueError("email address too long")
    if not EMAIL_PATTERN.fullmatch(normalized):
        raise ValueError("invalid email address")
    return normalized


def validate_username(value: str) -> str:
    if not isinstance(value, str) or not USERNAME_PATTERN.fullmatch(value):
        raise ValueError(
            "username must be 3-30 characters of letters, numbers and underscores"
        )
    return value


def validate_password(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("password must be a string")
    if len(value) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(value) > MAX_PASSWORD_LENGTH:
        raise ValueError(f"password must be at most {MAX_PASSWORD_LENGTH} characters")
    if not any(ch.isupper() for ch in value):
        raise ValueError("password must contain an uppercase letter")
    if not any(ch.islower() for ch in value):
        raise ValueError("password must contain a lowercase letter")
    if not any(ch.isdigit() for ch in value):
        raise ValueError("password must contain a digit")
    return value


def validate_handle(value: Optional[str]) -> Optional[str]:
    """Optional display handle; a leading '@' is dropped."""
    if value is None:
        return None
    handle = value.strip().lstrip("@")
    if not handle:
        return None
    if len(handle) > 50:
        raise ValueError("handle must be at most 50 characters")
    if not HANDLE_PATTERN.fullmatch(handle):
        raise ValueError("handle must contain only letters, numbers and underscores")
    return handle
