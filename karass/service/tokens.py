from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from karass.logging import get_logger
from karass.service.errors import (
    AuthenticationError,
    InvalidTokenError,
    TokenExpiredError,
)
from karass.storage.models import User

logger = get_logger(__name__)

DEFAULT_SESSION_TTL = timedelta(days=7)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def extract_bearer(authorization: Optional[str]) -> str:
    if not authorization:
        raise AuthenticationError("No token provided")
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("Authorization header must use the Bearer scheme")
    return token.strip()


@dataclass(frozen=True)
class SessionClaims:
    user_id: int
    username: str
    is_admin: bool
    issued_at: datetime
    expires_at: datetime


class SessionTokenIssuer:
    """Mints and verifies HS256 compact JWS session tokens."""

    def __init__(
        self,
        secret: str,
        *,
        ttl: timedelta = DEFAULT_SESSION_TTL,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if not secret:
            raise ValueError("session signing secret is required")
        self._secret = secret.encode()
        self.ttl = ttl
        self._clock = clock

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def issue(self, user: User) -> str:
        now = self._clock()
        payload: dict[str, Any] = {
            "user_id": user.id,
            "username": user.username,
            "is_admin": bool(user.is_admin),
            "iat": int(now.timestamp()),
            "exp": int((now + self.ttl).timestamp()),
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify(self, token: str) -> SessionClaims:
        """Check signature and expiry.

        Raises:
            InvalidTokenError: malformed token, wrong algorithm or bad signature
            TokenExpiredError: signature is valid but ``exp`` has passed
        """
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise InvalidTokenError("Invalid token")

        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError:
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError("Invalid token")
        # Reject alg=none and friends before touching the signature
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            raise InvalidTokenError("Invalid token")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise InvalidTokenError("Invalid token")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
            user_id = int(payload["user_id"])
            username = str(payload["username"])
            is_admin = bool(payload.get("is_admin", False))
            issued_at = datetime.fromtimestamp(int(payload.get("iat", 0)), tz=timezone.utc)
            expires_at = datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc)
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError("Invalid token")

        if self._clock() > expires_at:
            raise TokenExpiredError("Token expired, please log in again")
        return SessionClaims(
            user_id=user_id,
            username=username,
            is_admin=is_admin,
            issued_at=issued_at,
            expires_at=expires_at,
        )
