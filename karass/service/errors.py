from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code returned to clients in the error envelope:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - upstream_error (502)
    - not_configured (503)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class InvalidStateError(ValidationError):
    """OAuth state token unknown, expired, already used or for another provider."""
    error_code = "invalid_state"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class TokenExpiredError(AuthenticationError):
    """Session token is past its expiry (401)."""
    error_code = "token_expired"


class InvalidTokenError(AuthenticationError):
    """Session token is malformed or its signature does not match (401)."""
    error_code = "invalid_token"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class EmailTakenError(ConflictError):
    error_code = "email_taken"


class UsernameTakenError(ConflictError):
    error_code = "username_taken"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after: int, **kwargs) -> None:
        detail = {**(kwargs.pop("detail", None) or {}), "retry_after": retry_after}
        super().__init__(message, detail=detail, **kwargs)
        self.retry_after = retry_after


class UpstreamError(ServiceError):
    """An identity provider was unreachable or rejected the request.

    Defaults to 502; callers pass status_code=400 when the failure was caused
    by client input such as a stale authorization code.
    """
    status_code = 502
    error_code = "upstream_error"


class ExchangeFailedError(UpstreamError):
    status_code = 400
    error_code = "exchange_failed"


class ProfileFetchFailedError(UpstreamError):
    error_code = "profile_fetch_failed"


class ProviderNotConfiguredError(ServiceError):
    """OAuth provider credentials are absent (503)."""
    status_code = 503
    error_code = "not_configured"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class UsernameGenerationExhaustedError(ServerError):
    error_code = "username_generation_exhausted"


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidStateError",
    "AuthenticationError",
    "TokenExpiredError",
    "InvalidTokenError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "EmailTakenError",
    "UsernameTakenError",
    "RateLimitedError",
    "UpstreamError",
    "ExchangeFailedError",
    "ProfileFetchFailedError",
    "ProviderNotConfiguredError",
    "ServerError",
    "UsernameGenerationExhaustedError",
]
