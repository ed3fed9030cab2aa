from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple

from karass.logging import get_logger
from karass.service.errors import (
    AuthenticationError,
    NotFoundError,
    ProviderNotConfiguredError,
    ServiceError,
    ValidationError,
)
from karass.service.oauth import OAuthProfile, OAuthProvider
from karass.service.passwords import CredentialHasher
from karass.service.pkce import PkceStateStore
from karass.service.provisioning import AccountProvisioner, UserStore
from karass.service.tokens import SessionClaims, SessionTokenIssuer
from karass.service.validation import normalize_email
from karass.storage.models import User

logger = get_logger(__name__)

_INVALID_CREDENTIALS = "Invalid credentials"
_OAUTH_ONLY_ACCOUNT = "Please use Twitter/X or GitHub to sign in"


class OAuthFlowState(str, Enum):
    INIT = "init"
    AWAITING_CALLBACK = "awaiting_callback"
    EXCHANGING = "exchanging"
    DONE = "done"
    FAILED = "failed"


@dataclass
class AuthResult:
    user: User
    token: str
    is_new_user: bool = False


class AuthService:
    """Password and OAuth sign-in flows on top of the provisioner and token issuer."""

    def __init__(
        self,
        store: UserStore,
        hasher: CredentialHasher,
        provisioner: AccountProvisioner,
        tokens: SessionTokenIssuer,
        pkce: PkceStateStore,
        providers: Dict[str, OAuthProvider],
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.provisioner = provisioner
        self.tokens = tokens
        self.pkce = pkce
        self.providers = providers
        self.logger = logger

    async def register(
        self,
        email: str,
        username: str,
        password: str,
        *,
        twitter_handle: Optional[str] = None,
    ) -> AuthResult:
        # Hashing is slow; keep it off the event loop
        user = await asyncio.to_thread(
            self.provisioner.provision_password_account,
            email,
            username,
            password,
            twitter_handle=twitter_handle,
        )
        return AuthResult(user=user, token=self.tokens.issue(user), is_new_user=True)

    def _find_login_user(self, email_or_username: str) -> Optional[User]:
        identifier = email_or_username.strip()
        if "@" in identifier:
            try:
                email = normalize_email(identifier)
            except ValueError:
                email = None
            user = self.store.get_user_by_email(email) if email else None
            if user:
                return user
        return self.store.get_user_by_username(identifier)

    async def login(self, email_or_username: str, password: str) -> AuthResult:
        user = self._find_login_user(email_or_username)
        if not user:
            self.logger.info("login_unknown_user")
            raise AuthenticationError(_INVALID_CREDENTIALS)
        if not user.password_hash:
            raise AuthenticationError(_OAUTH_ONLY_ACCOUNT)
        valid = await asyncio.to_thread(self.hasher.verify, password, user.password_hash)
        if not valid:
            self.logger.info("login_password_mismatch", user_id=user.id)
            raise AuthenticationError(_INVALID_CREDENTIALS)
        self.logger.info("login_success", user_id=user.id)
        return AuthResult(user=user, token=self.tokens.issue(user))

    def get_status(self, user_id: int) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    def get_provider(self, name: str) -> OAuthProvider:
        provider = self.providers.get(name)
        if provider is None:
            raise NotFoundError(f"Unknown provider: {name}")
        if not provider.is_configured:
            self.logger.warning("oauth_not_configured", provider=name)
            raise ProviderNotConfiguredError(f"{name} sign-in is not configured")
        return provider

    def _transition(self, provider: str, state: OAuthFlowState, **context) -> None:
        log_fn = self.logger.warning if state is OAuthFlowState.FAILED else self.logger.info
        log_fn("oauth_flow_state", provider=provider, flow_state=state.value, **context)

    def start_oauth(self, provider_name: str) -> Tuple[str, str]:
        """Begin a PKCE flow; returns ``(auth_url, state)``.

        The code verifier stays in the state store and is never returned.
        """
        provider = self.get_provider(provider_name)
        self._transition(provider.name, OAuthFlowState.INIT)
        challenge = self.pkce.begin(provider.name)
        auth_url = provider.build_authorization_url(
            challenge.state, challenge.code_challenge
        )
        self._transition(provider.name, OAuthFlowState.AWAITING_CALLBACK)
        return auth_url, challenge.state

    async def _resolve_profile(
        self, provider: OAuthProvider, code: Optional[str], state: Optional[str]
    ) -> OAuthProfile:
        if not code or not state:
            self._transition(provider.name, OAuthFlowState.FAILED, reason="missing_params")
            raise ValidationError("Missing code or state")
        try:
            code_verifier = self.pkce.consume(state, provider.name)
            self._transition(provider.name, OAuthFlowState.EXCHANGING)
            access_token = await provider.exchange_code(code, code_verifier)
            return await provider.fetch_profile(access_token)
        except ServiceError as exc:
            self._transition(provider.name, OAuthFlowState.FAILED, reason=exc.error_code)
            raise

    async def complete_oauth(
        self, provider_name: str, code: Optional[str], state: Optional[str]
    ) -> AuthResult:
        provider = self.get_provider(provider_name)
        profile = await self._resolve_profile(provider, code, state)
        user, is_new_user = await asyncio.to_thread(
            self.provisioner.provision_oauth_account,
            provider.name,
            profile.external_id,
            profile.handle,
            profile.email,
        )
        self._transition(
            provider.name, OAuthFlowState.DONE, user_id=user.id, is_new_user=is_new_user
        )
        return AuthResult(user=user, token=self.tokens.issue(user), is_new_user=is_new_user)

    async def link_provider(
        self,
        claims: SessionClaims,
        provider_name: str,
        code: Optional[str],
        state: Optional[str],
    ) -> User:
        """Attach a provider identity to the signed-in user's account."""
        provider = self.get_provider(provider_name)
        profile = await self._resolve_profile(provider, code, state)
        user = await asyncio.to_thread(
            self.provisioner.link_provider_identity,
            claims.user_id,
            provider.name,
            profile.external_id,
            profile.handle,
        )
        self._transition(provider.name, OAuthFlowState.DONE, user_id=user.id, linked=True)
        return user
