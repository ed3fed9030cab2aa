from __future__ import annotations

import re
import secrets
import string
from typing import Callable, Iterator, Optional, Protocol, Tuple

from karass.logging import get_logger
from karass.service.errors import (
    ConflictError,
    EmailTakenError,
    NotFoundError,
    UsernameGenerationExhaustedError,
    UsernameTakenError,
    ValidationError,
)
from karass.service.passwords import CredentialHasher
from karass.service.validation import (
    normalize_email,
    validate_handle,
    validate_password,
    validate_username,
)
from karass.storage.errors import (
    EMAIL_FIELD,
    PROVIDER_IDENTITY_FIELD,
    USERNAME_FIELD,
    ConstraintViolation,
)
from karass.storage.models import ProviderIdentity, User

logger = get_logger(__name__)

MAX_USERNAME_ATTEMPTS = 100
RANDOM_FALLBACK_ATTEMPTS = 5
_BASE_USERNAME_LENGTH = 20
_FALLBACK_BASE = "user"
_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits


class UserStore(Protocol):
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
    ) -> User: ...

    def get_user(self, user_id: int) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def get_user_by_provider(self, provider: str, external_id: str) -> Optional[User]: ...

    def username_exists(self, username: str) -> bool: ...

    def link_provider_identity(
        self, user_id: int, identity: ProviderIdentity
    ) -> Optional[User]: ...


def sanitize_username(handle: Optional[str]) -> str:
    """Reduce a provider handle to a valid username stem."""
    base = re.sub(r"[^a-zA-Z0-9_]", "", handle or "")[:_BASE_USERNAME_LENGTH]
    return base if len(base) >= 3 else _FALLBACK_BASE


def random_suffix(length: int = 6) -> str:
    return "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(length))


def _never_admin(email: str) -> bool:
    return False


class AccountProvisioner:
    """Resolves credentials and external identities to stored users.

    The store's unique constraints are authoritative: every read done here is
    only a hint, and each insert is prepared to fail with ConstraintViolation.
    """

    def __init__(
        self,
        store: UserStore,
        hasher: CredentialHasher,
        *,
        is_admin_email: Callable[[str], bool] = _never_admin,
        max_username_attempts: int = MAX_USERNAME_ATTEMPTS,
        random_fallback_attempts: int = RANDOM_FALLBACK_ATTEMPTS,
        suffix_factory: Callable[[], str] = random_suffix,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.is_admin_email = is_admin_email
        self.max_username_attempts = max_username_attempts
        self.random_fallback_attempts = random_fallback_attempts
        self.suffix_factory = suffix_factory

    def provision_password_account(
        self,
        email: str,
        username: str,
        password: str,
        *,
        twitter_handle: Optional[str] = None,
    ) -> User:
        try:
            email = normalize_email(email)
            username = validate_username(username)
            password = validate_password(password)
            twitter_handle = validate_handle(twitter_handle)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

        if self.store.get_user_by_email(email):
            raise EmailTakenError("Email already registered")
        if self.store.username_exists(username):
            raise UsernameTakenError("Username already taken")

        password_hash = self.hasher.hash(password)
        try:
            user = self.store.create_user(
                username,
                email=email,
                password_hash=password_hash,
                twitter_handle=twitter_handle,
                is_admin=self.is_admin_email(email),
            )
        except ConstraintViolation as exc:
            # Lost a race with a concurrent registration
            if exc.field == EMAIL_FIELD:
                raise EmailTakenError("Email already registered") from exc
            if exc.field == USERNAME_FIELD:
                raise UsernameTakenError("Username already taken") from exc
            raise
        logger.info(
            "password_account_created",
            user_id=user.id,
            username=user.username,
            is_admin=user.is_admin,
        )
        return user

    def username_candidates(self, handle: Optional[str]) -> Iterator[str]:
        """``base``, ``base1`` .. ``baseN``, then a few ``base_xxxxxx`` fallbacks."""
        base = sanitize_username(handle)
        yield base
        for counter in range(1, self.max_username_attempts + 1):
            yield f"{base}{counter}"
        for _ in range(self.random_fallback_attempts):
            yield f"{base}_{self.suffix_factory()}"

    def provision_oauth_account(
        self,
        provider: str,
        external_id: str,
        handle: Optional[str],
        email: Optional[str] = None,
    ) -> Tuple[User, bool]:
        """Return ``(user, is_new_user)`` for an external identity.

        Two concurrent calls for the same identity converge on one stored
        user: the loser's insert hits the identity constraint and it returns
        the winner's row instead.
        """
        existing = self.store.get_user_by_provider(provider, external_id)
        if existing:
            return existing, False

        identity = ProviderIdentity(provider=provider, external_id=external_id, handle=handle)
        twitter_handle = handle if provider == "twitter" else None
        account_email = self._claimable_email(email)

        for candidate in self.username_candidates(handle):
            if self.store.username_exists(candidate):
                continue
            try:
                user = self._create_oauth_user(
                    candidate, identity, account_email, twitter_handle
                )
            except ConstraintViolation as exc:
                if exc.field == PROVIDER_IDENTITY_FIELD:
                    winner = self.store.get_user_by_provider(provider, external_id)
                    if winner:
                        logger.info(
                            "oauth_provision_race_converged",
                            provider=provider,
                            user_id=winner.id,
                        )
                        return winner, False
                    raise
                if exc.field == USERNAME_FIELD:
                    logger.info("oauth_username_race", provider=provider, candidate=candidate)
                    continue
                raise
            logger.info(
                "oauth_account_created",
                provider=provider,
                user_id=user.id,
                username=user.username,
            )
            return user, True

        logger.error(
            "username_generation_exhausted",
            provider=provider,
            base=sanitize_username(handle),
        )
        raise UsernameGenerationExhaustedError("Could not allocate a unique username")

    def _claimable_email(self, email: Optional[str]) -> Optional[str]:
        if not email:
            return None
        try:
            normalized = normalize_email(email)
        except ValueError:
            return None
        # Never attach an email that already belongs to another account
        if self.store.get_user_by_email(normalized):
            return None
        return normalized

    def _create_oauth_user(
        self,
        username: str,
        identity: ProviderIdentity,
        email: Optional[str],
        twitter_handle: Optional[str],
    ) -> User:
        try:
            return self.store.create_user(
                username,
                email=email,
                twitter_handle=twitter_handle,
                identity=identity,
            )
        except ConstraintViolation as exc:
            if exc.field != EMAIL_FIELD or email is None:
                raise
            # Email was claimed after the pre-check; keep the account, drop the email
            return self.store.create_user(
                username,
                twitter_handle=twitter_handle,
                identity=identity,
            )

    def link_provider_identity(
        self,
        user_id: int,
        provider: str,
        external_id: str,
        handle: Optional[str],
    ) -> User:
        identity = ProviderIdentity(provider=provider, external_id=external_id, handle=handle)
        try:
            user = self.store.link_provider_identity(user_id, identity)
        except ConstraintViolation as exc:
            raise ConflictError(
                "This account is already linked to another user",
                error_code="identity_taken",
            ) from exc
        if not user:
            raise NotFoundError("User not found")
        logger.info("provider_identity_linked", provider=provider, user_id=user_id)
        return user
