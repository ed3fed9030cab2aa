from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from karass.service.validation import (
    normalize_email,
    validate_handle,
    validate_password,
    validate_username,
)
from karass.storage.models import User


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null


class Envelope(BaseModel):
    """API envelope format shared by success and error responses."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class _CamelModel(BaseModel):
    """Accepts and emits camelCase field names, as the mobile client sends them."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RegisterRequest(_CamelModel):
    email: str = Field(..., max_length=254)
    username: str
    password: str
    twitter_handle: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        return normalize_email(value)

    @field_validator("username")
    @classmethod
    def _validate_username(cls, value: str) -> str:
        return validate_username(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return validate_password(value)

    @field_validator("twitter_handle")
    @classmethod
    def _validate_twitter_handle(cls, value: Optional[str]) -> Optional[str]:
        return validate_handle(value)


class LoginRequest(_CamelModel):
    email_or_username: str = Field(..., min_length=1, max_length=254)
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email_or_username")
    @classmethod
    def _strip_identifier(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("email or username is required")
        return stripped


class OAuthCallbackRequest(_CamelModel):
    code: Optional[str] = Field(default=None, max_length=2048)
    state: Optional[str] = Field(default=None, max_length=128)


class UserResponse(_CamelModel):
    id: int
    email: Optional[str] = None
    username: str
    twitter_handle: Optional[str] = None
    github_handle: Optional[str] = None
    is_approved: bool
    is_admin: bool
    created_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            username=user.username,
            twitter_handle=user.twitter_handle,
            github_handle=user.github_handle,
            is_approved=user.is_approved,
            is_admin=user.is_admin,
            created_at=user.created_at,
        )


class AuthResponse(_CamelModel):
    token: str
    user: UserResponse
    is_new_user: Optional[bool] = None


class StatusResponse(_CamelModel):
    is_approved: bool
    is_admin: bool


class OAuthInitResponse(_CamelModel):
    auth_url: str
    state: str


class LinkResponse(_CamelModel):
    user: UserResponse


class AdminActionResponse(_CamelModel):
    message: str
    user: UserResponse


class UserListResponse(_CamelModel):
    users: List[UserResponse]
