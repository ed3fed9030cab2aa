from __future__ import annotations

import copy
import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from karass.logging import get_logger
from karass.storage.errors import (
    EMAIL_FIELD,
    PROVIDER_IDENTITY_FIELD,
    USERNAME_FIELD,
    ConstraintViolation,
)
from karass.storage.models import ProviderIdentity, User


class MemoryStore:
    """In-memory user store for tests and single-process development.

    Enforces the same uniqueness constraints as the Postgres schema so callers
    observe identical ConstraintViolation behaviour under races.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[int, User] = {}
        self._by_username: Dict[str, int] = {}
        self._by_email: Dict[str, int] = {}
        self._by_identity: Dict[Tuple[str, str], int] = {}
        self._user_id_seq = 1
        # RLock for all data operations; nested acquisition from helpers is fine
        self._data_lock = threading.RLock()

    def create_user(
        self,
        username: str,
        *,
        email: Optional[str] = None,
        password_hash: Optional[str] = None,
        twitter_handle: Optional[str] = None,
        identity: Optional[ProviderIdentity] = None,
        is_approved: bool = True,
        is_admin: bool = False,
    ) -> User:
        normalized_email = email.lower() if email else None
        with self._data_lock:
            # All checks happen before any write so a violation leaves no partial record
            if username in self._by_username:
                raise ConstraintViolation(
                    "username already exists", {"field": USERNAME_FIELD}
                )
            if normalized_email and normalized_email in self._by_email:
                raise ConstraintViolation("email already exists", {"field": EMAIL_FIELD})
            if identity and (identity.provider, identity.external_id) in self._by_identity:
                raise ConstraintViolation(
                    "provider identity already linked",
                    {"field": PROVIDER_IDENTITY_FIELD, "provider": identity.provider},
                )
            user_id = self._user_id_seq
            self._user_id_seq += 1
            now = datetime.now(timezone.utc)
            user = User(
                id=user_id,
                username=username,
                email=normalized_email,
                password_hash=password_hash,
                twitter_handle=twitter_handle,
                is_approved=is_approved,
                is_admin=is_admin,
                created_at=now,
            )
            if identity:
                user.identities.append(
                    ProviderIdentity(
                        provider=identity.provider,
                        external_id=identity.external_id,
                        handle=identity.handle,
                        user_id=user_id,
                        created_at=now,
                    )
                )
                self._by_identity[(identity.provider, identity.external_id)] = user_id
            self.users[user_id] = user
            self._by_username[username] = user_id
            if normalized_email:
                self._by_email[normalized_email] = user_id
            return copy.deepcopy(user)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return copy.deepcopy(user) if user else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            user_id = self._by_username.get(username)
            return self.get_user(user_id) if user_id is not None else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user_id = self._by_email.get(email.lower())
            return self.get_user(user_id) if user_id is not None else None

    def get_user_by_provider(self, provider: str, external_id: str) -> Optional[User]:
        with self._data_lock:
            user_id = self._by_identity.get((provider, external_id))
            return self.get_user(user_id) if user_id is not None else None

    def username_exists(self, username: str) -> bool:
        with self._data_lock:
            return username in self._by_username

    def link_provider_identity(
        self, user_id: int, identity: ProviderIdentity
    ) -> Optional[User]:
        key = (identity.provider, identity.external_id)
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            owner = self._by_identity.get(key)
            if owner is not None and owner != user_id:
                raise ConstraintViolation(
                    "provider identity already linked",
                    {"field": PROVIDER_IDENTITY_FIELD, "provider": identity.provider},
                )
            if owner is None:
                user.identities.append(
                    ProviderIdentity(
                        provider=identity.provider,
                        external_id=identity.external_id,
                        handle=identity.handle,
                        user_id=user_id,
                    )
                )
                self._by_identity[key] = user_id
                if identity.provider == "twitter" and identity.handle:
                    user.twitter_handle = identity.handle
            return copy.deepcopy(user)

    def update_user_flags(
        self,
        user_id: int,
        *,
        is_approved: Optional[bool] = None,
        is_admin: Optional[bool] = None,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if is_approved is not None:
                user.is_approved = is_approved
            if is_admin is not None:
                user.is_admin = is_admin
            return copy.deepcopy(user)

    def list_users(self, *, pending_only: bool = False) -> List[User]:
        with self._data_lock:
            users = [
                copy.deepcopy(user)
                for user in self.users.values()
                if not pending_only or not user.is_approved
            ]
        # Newest first
        users.sort(key=lambda u: (u.created_at, u.id), reverse=True)
        return users

    def ping(self) -> None:
        return None

    def close(self) -> None:
        return None
