from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx

from karass.config import Settings
from karass.logging import get_logger
from karass.service.errors import ExchangeFailedError, ProfileFetchFailedError

logger = get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0
_USER_AGENT = "Karass-App"


def _external_id(value: Any) -> str:
    if value is None or isinstance(value, (dict, list)):
        raise ValueError("profile id missing")
    return str(value)


@dataclass
class OAuthProfile:
    """Provider profile normalized to the fields account provisioning needs."""

    external_id: str
    handle: str
    email: Optional[str] = None
    name: Optional[str] = None
    avatar_url: Optional[str] = None


class OAuthProvider:
    """Authorization-code + PKCE client for one identity provider.

    Subclasses supply endpoint URLs and override the token request and
    profile parsing where the provider deviates from the common shape.
    """

    name: str = ""
    authorize_url: str = ""
    token_url: str = ""
    profile_url: str = ""
    scopes: str = ""

    def __init__(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        redirect_uri: str,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.timeout = timeout
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout, follow_redirects=False, transport=self._transport
        )

    def build_authorization_url(self, state: str, code_challenge: str) -> str:
        params = {
            "response_type": "code",
            "client_id": self.client_id or "",
            "redirect_uri": self.redirect_uri,
            "scope": self.scopes,
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
        }
        return f"{self.authorize_url}?{urlencode(params)}"

    async def _post_token_request(
        self, client: httpx.AsyncClient, code: str, code_verifier: str
    ) -> httpx.Response:
        raise NotImplementedError

    async def exchange_code(self, code: str, code_verifier: str) -> str:
        """Trade an authorization code for an access token.

        Raises:
            ExchangeFailedError: 400 when the provider rejects the code,
                502 when it cannot be reached or answers garbage.
        """
        try:
            async with self._client() as client:
                response = await self._post_token_request(client, code, code_verifier)
        except httpx.TimeoutException as exc:
            logger.error("oauth_token_timeout", provider=self.name, error=str(exc))
            raise ExchangeFailedError(
                "Identity provider timed out", status_code=502
            ) from exc
        except httpx.HTTPError as exc:
            logger.error("oauth_token_transport_error", provider=self.name, error=str(exc))
            raise ExchangeFailedError(
                "Identity provider unreachable", status_code=502
            ) from exc

        try:
            payload = response.json()
        except ValueError:
            payload = None
        if response.is_error:
            logger.warning(
                "oauth_token_rejected",
                provider=self.name,
                status_code=response.status_code,
                provider_error=payload.get("error") if isinstance(payload, dict) else None,
            )
            status = 502 if response.status_code >= 500 else 400
            raise ExchangeFailedError(
                "Failed to exchange authorization code", status_code=status
            )
        if not isinstance(payload, dict):
            logger.error("oauth_token_parse_error", provider=self.name)
            raise ExchangeFailedError(
                "Failed to exchange authorization code", status_code=502
            )
        if payload.get("error"):
            logger.warning(
                "oauth_token_error",
                provider=self.name,
                provider_error=payload.get("error"),
                description=payload.get("error_description"),
            )
            raise ExchangeFailedError(
                payload.get("error_description") or "Failed to exchange authorization code"
            )
        access_token = payload.get("access_token")
        if not access_token:
            logger.error("oauth_no_access_token", provider=self.name)
            raise ExchangeFailedError("Failed to exchange authorization code")
        return access_token

    def _profile_headers(self, access_token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {access_token}"}

    def _parse_profile(self, payload: Dict[str, Any]) -> OAuthProfile:
        raise NotImplementedError

    async def _resolve_email(
        self, client: httpx.AsyncClient, access_token: str
    ) -> Optional[str]:
        return None

    async def fetch_profile(self, access_token: str) -> OAuthProfile:
        try:
            async with self._client() as client:
                response = await client.get(
                    self.profile_url, headers=self._profile_headers(access_token)
                )
                response.raise_for_status()
                payload = response.json()
                if not isinstance(payload, dict):
                    raise ValueError(f"unexpected profile payload {type(payload).__name__}")
                profile = self._parse_profile(payload)
                if not profile.email:
                    profile.email = await self._resolve_email(client, access_token)
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_profile_http_error",
                provider=self.name,
                status_code=exc.response.status_code,
            )
            raise ProfileFetchFailedError("Failed to fetch user profile") from exc
        except httpx.HTTPError as exc:
            logger.error("oauth_profile_transport_error", provider=self.name, error=str(exc))
            raise ProfileFetchFailedError("Failed to fetch user profile") from exc
        except (ValueError, KeyError, TypeError) as exc:
            logger.error("oauth_profile_parse_error", provider=self.name, error=str(exc))
            raise ProfileFetchFailedError("Failed to fetch user profile") from exc
        if not profile.external_id:
            logger.error("oauth_profile_missing_id", provider=self.name)
            raise ProfileFetchFailedError("Failed to fetch user profile")
        return profile


class TwitterProvider(OAuthProvider):
    """Twitter/X OAuth 2.0; confidential client, no email scope."""

    name = "twitter"
    authorize_url = "https://twitter.com/i/oauth2/authorize"
    token_url = "https://api.twitter.com/2/oauth2/token"
    profile_url = (
        "https://api.twitter.com/2/users/me?user.fields=id,name,username,profile_image_url"
    )
    scopes = "tweet.read users.read offline.access"

    async def _post_token_request(
        self, client: httpx.AsyncClient, code: str, code_verifier: str
    ) -> httpx.Response:
        return await client.post(
            self.token_url,
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.redirect_uri,
                "code_verifier": code_verifier,
                "client_id": self.client_id,
            },
            auth=(self.client_id or "", self.client_secret or ""),
        )

    def _parse_profile(self, payload: Dict[str, Any]) -> OAuthProfile:
        data = payload["data"]
        return OAuthProfile(
            external_id=_external_id(data["id"]),
            handle=data.get("username") or "",
            name=data.get("name"),
            avatar_url=data.get("profile_image_url"),
        )


class GitHubProvider(OAuthProvider):
    """GitHub OAuth app; email may be private and need a second call."""

    name = "github"
    authorize_url = "https://github.com/login/oauth/authorize"
    token_url = "https://github.com/login/oauth/access_token"
    profile_url = "https://api.github.com/user"
    emails_url = "https://api.github.com/user/emails"
    scopes = "read:user user:email"

    async def _post_token_request(
        self, client: httpx.AsyncClient, code: str, code_verifier: str
    ) -> httpx.Response:
        return await client.post(
            self.token_url,
            json={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "code": code,
                "redirect_uri": self.redirect_uri,
                "code_verifier": code_verifier,
            },
            headers={"Accept": "application/json"},
        )

    def _profile_headers(self, access_token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/vnd.github.v3+json",
            "User-Agent": _USER_AGENT,
        }

    def _parse_profile(self, payload: Dict[str, Any]) -> OAuthProfile:
        return OAuthProfile(
            external_id=_external_id(payload["id"]),
            handle=payload.get("login") or "",
            email=payload.get("email"),
            name=payload.get("name"),
            avatar_url=payload.get("avatar_url"),
        )

    async def _resolve_email(
        self, client: httpx.AsyncClient, access_token: str
    ) -> Optional[str]:
        # Best effort: a failure here leaves the account without an email
        try:
            response = await client.get(
                self.emails_url, headers=self._profile_headers(access_token)
            )
            if response.status_code != 200:
                logger.info(
                    "github_email_lookup_skipped", status_code=response.status_code
                )
                return None
            emails = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("github_email_lookup_failed", error=str(exc))
            return None
        if not isinstance(emails, list):
            return None
        return next(
            (
                entry.get("email")
                for entry in emails
                if isinstance(entry, dict) and entry.get("primary") and entry.get("verified")
            ),
            None,
        )


def build_providers(
    settings: Settings, *, transport: Optional[httpx.AsyncBaseTransport] = None
) -> Dict[str, OAuthProvider]:
    timeout = settings.oauth_http_timeout_seconds
    providers: Dict[str, OAuthProvider] = {
        "twitter": TwitterProvider(
            settings.twitter_client_id,
            settings.twitter_client_secret,
            settings.twitter_redirect_uri,
            timeout=timeout,
            transport=transport,
        ),
        "github": GitHubProvider(
            settings.github_client_id,
            settings.github_client_secret,
            settings.github_redirect_uri,
            timeout=timeout,
            transport=transport,
        ),
    }
    for name, provider in providers.items():
        if not provider.is_configured:
            logger.info("oauth_provider_disabled", provider=name)
    return providers
