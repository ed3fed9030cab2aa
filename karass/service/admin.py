from __future__ import annotations

from typing import Iterable, List, Optional

from karass.logging import get_logger
from karass.service.errors import ForbiddenError, NotFoundError
from karass.service.provisioning import UserStore
from karass.service.tokens import SessionClaims, SessionTokenIssuer, extract_bearer
from karass.storage.models import User

logger = get_logger(__name__)


class AdminEmailAllowList:
    """Decides whether a newly registered email is pre-authorized for admin.

    Matching is exact after lower-casing; no wildcard or domain rules.
    """

    def __init__(self, emails: Iterable[str] = ()) -> None:
        self._emails = frozenset(e.strip().lower() for e in emails if e and e.strip())

    def __call__(self, email: str) -> bool:
        return bool(email) and email.strip().lower() in self._emails

    def __len__(self) -> int:
        return len(self._emails)


class AdminAuthorizer:
    """Gatekeeper for admin routes.

    The token's ``is_admin`` claim is necessary but not sufficient: the live
    flag is re-read from storage on every call so revocation takes effect
    before the token expires.
    """

    def __init__(self, tokens: SessionTokenIssuer, store: UserStore) -> None:
        self.tokens = tokens
        self.store = store

    def authenticate(self, authorization: Optional[str]) -> SessionClaims:
        return self.tokens.verify(extract_bearer(authorization))

    def authorize(self, authorization: Optional[str]) -> User:
        claims = self.authenticate(authorization)
        if not claims.is_admin:
            raise ForbiddenError("Admin access required")
        user = self.store.get_user(claims.user_id)
        if not user or not user.is_admin:
            logger.warning("admin_claim_revoked", user_id=claims.user_id)
            raise ForbiddenError("Admin access required")
        return user


class AdminService:
    def __init__(self, store) -> None:
        self.store = store

    def approve_user(self, user_id: int, *, actor: User) -> User:
        user = self.store.update_user_flags(user_id, is_approved=True)
        if not user:
            raise NotFoundError("User not found")
        logger.info("user_approved", user_id=user_id, actor_id=actor.id)
        return user

    def grant_admin(self, user_id: int, *, actor: User) -> User:
        user = self.store.update_user_flags(user_id, is_admin=True)
        if not user:
            raise NotFoundError("User not found")
        logger.info("admin_granted", user_id=user_id, actor_id=actor.id)
        return user

    def list_users(self) -> List[User]:
        return self.store.list_users()

    def list_pending_users(self) -> List[User]:
        return self.store.list_users(pending_only=True)
