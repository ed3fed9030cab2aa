from __future__ import annotations

import html
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Header, Path, Query, Request, Response
from fastapi.responses import HTMLResponse
from pydantic import BaseModel

from karass.api.schemas import (
    AdminActionResponse,
    AuthResponse,
    Envelope,
    LinkResponse,
    LoginRequest,
    OAuthCallbackRequest,
    OAuthInitResponse,
    RegisterRequest,
    StatusResponse,
    UserListResponse,
    UserResponse,
)
from karass.config import Settings
from karass.service.errors import RateLimitedError, ValidationError
from karass.service.runtime import get_runtime
from karass.service.tokens import SessionClaims
from karass.storage.models import User

router = APIRouter()

_RATE_LIMIT_MESSAGES = {
    "general": "Too many requests from this address, please try again later",
    "auth": "Too many authentication attempts, please try again later",
}


def _ok(payload: BaseModel) -> Envelope:
    return Envelope(
        status="ok",
        data=payload.model_dump(by_alias=True, mode="json", exclude_unset=True),
    )


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        """Apply rate limit headers per IETF draft-polli-ratelimit-headers."""
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


def _client_address(request: Request, settings: Settings) -> str:
    if settings.trust_proxy_headers:
        forwarded = request.headers.get("X-Forwarded-For", "")
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    return request.client.host if request.client else "unknown"


def rate_limited(policy: str):
    """Build a dependency enforcing the named rate-limit policy for a route."""

    async def _enforce(request: Request, response: Response) -> RateLimitInfo:
        runtime = get_runtime()
        limiter = runtime.rate_limiters[policy]
        decision = limiter.check(_client_address(request, runtime.settings))
        info = RateLimitInfo(
            decision.limit, decision.remaining, limiter.policy.window_seconds
        )
        info.apply_headers(response)
        if not decision.allowed:
            raise RateLimitedError(
                _RATE_LIMIT_MESSAGES[policy], retry_after=decision.retry_after
            )
        return info

    return _enforce


general_limit = Depends(rate_limited("general"))
auth_limit = Depends(rate_limited("auth"))


async def get_session_claims(authorization: Optional[str] = Header(None)) -> SessionClaims:
    return get_runtime().authorizer.authenticate(authorization)


async def get_admin_user(authorization: Optional[str] = Header(None)) -> User:
    return get_runtime().authorizer.authorize(authorization)


@router.post(
    "/auth/register",
    response_model=Envelope,
    status_code=201,
    tags=["auth"],
    dependencies=[auth_limit],
)
async def register(body: RegisterRequest):
    """Create a password account and return a session token.

    Raises:
        400: malformed email, username or password
        409: email or username already taken
        429: auth rate limit exceeded
    """
    runtime = get_runtime()
    result = await runtime.auth.register(
        email=body.email,
        username=body.username,
        password=body.password,
        twitter_handle=body.twitter_handle,
    )
    return _ok(AuthResponse(token=result.token, user=UserResponse.from_user(result.user)))


@router.post(
    "/auth/login", response_model=Envelope, tags=["auth"], dependencies=[auth_limit]
)
async def login(body: LoginRequest):
    """Authenticate with email or username plus password."""
    runtime = get_runtime()
    result = await runtime.auth.login(body.email_or_username, body.password)
    return _ok(AuthResponse(token=result.token, user=UserResponse.from_user(result.user)))


@router.get(
    "/auth/status/{user_id}",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[general_limit],
)
async def auth_status(user_id: int = Path(..., ge=1)):
    runtime = get_runtime()
    user = runtime.auth.get_status(user_id)
    return _ok(StatusResponse(is_approved=user.is_approved, is_admin=user.is_admin))


@router.get(
    "/auth/github/web-callback",
    response_class=HTMLResponse,
    tags=["auth"],
    dependencies=[general_limit],
)
async def github_web_callback(
    code: Optional[str] = Query(None, max_length=2048),
    state: Optional[str] = Query(None, max_length=128),
    error: Optional[str] = Query(None, max_length=256),
):
    """Bounce GitHub's browser redirect into the mobile app's deep link.

    GitHub only redirects to http(s) URLs, so it lands here and the page
    forwards code/state to the app, which then calls the callback endpoint.
    """
    if not code and not error:
        raise ValidationError("Missing code")
    params = {
        key: value
        for key, value in (("code", code), ("state", state), ("error", error))
        if value
    }
    target = f"{get_runtime().settings.app_callback_uri}?{urlencode(params)}"
    escaped = html.escape(target, quote=True)
    page = (
        "<!DOCTYPE html><html><head>"
        f'<meta http-equiv="refresh" content="0;url={escaped}">'
        "<title>Redirecting to Karass</title></head><body>"
        f'<p>Redirecting to Karass. <a href="{escaped}">Continue</a> if nothing happens.</p>'
        "</body></html>"
    )
    return HTMLResponse(content=page)


@router.get(
    "/auth/{provider}/init",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[auth_limit],
)
async def oauth_init(provider: str = Path(..., max_length=32)):
    """Start a PKCE authorization flow; returns the provider URL and state."""
    runtime = get_runtime()
    auth_url, state = runtime.auth.start_oauth(provider)
    return _ok(OAuthInitResponse(auth_url=auth_url, state=state))


@router.post(
    "/auth/{provider}/callback",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[auth_limit],
)
async def oauth_callback(
    provider: str = Path(..., max_length=32),
    body: Optional[OAuthCallbackRequest] = None,
):
    """Complete the PKCE flow: consume state, exchange code, provision, sign in.

    Raises:
        400: missing code/state, invalid or expired state, rejected code
        502: provider unreachable or profile fetch failed
        503: provider not configured
    """
    runtime = get_runtime()
    body = body or OAuthCallbackRequest()
    result = await runtime.auth.complete_oauth(provider, body.code, body.state)
    return _ok(
        AuthResponse(
            token=result.token,
            user=UserResponse.from_user(result.user),
            is_new_user=result.is_new_user,
        )
    )


@router.post(
    "/auth/{provider}/link",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[auth_limit],
)
async def oauth_link(
    provider: str = Path(..., max_length=32),
    body: Optional[OAuthCallbackRequest] = None,
    claims: SessionClaims = Depends(get_session_claims),
):
    """Attach a provider identity to the signed-in account."""
    runtime = get_runtime()
    body = body or OAuthCallbackRequest()
    user = await runtime.auth.link_provider(claims, provider, body.code, body.state)
    return _ok(LinkResponse(user=UserResponse.from_user(user)))


@router.post(
    "/admin/approve/{user_id}",
    response_model=Envelope,
    tags=["admin"],
    dependencies=[general_limit],
)
async def approve_user(
    user_id: int = Path(..., ge=1), admin: User = Depends(get_admin_user)
):
    runtime = get_runtime()
    user = runtime.admin.approve_user(user_id, actor=admin)
    return _ok(
        AdminActionResponse(message="User approved", user=UserResponse.from_user(user))
    )


@router.post(
    "/admin/set-admin/{user_id}",
    response_model=Envelope,
    tags=["admin"],
    dependencies=[general_limit],
)
async def set_admin(user_id: int = Path(..., ge=1), admin: User = Depends(get_admin_user)):
    runtime = get_runtime()
    user = runtime.admin.grant_admin(user_id, actor=admin)
    return _ok(
        AdminActionResponse(
            message="User granted admin privileges", user=UserResponse.from_user(user)
        )
    )


@router.get(
    "/admin/users", response_model=Envelope, tags=["admin"], dependencies=[general_limit]
)
async def list_users(admin: User = Depends(get_admin_user)):
    runtime = get_runtime()
    users = runtime.admin.list_users()
    return _ok(UserListResponse(users=[UserResponse.from_user(u) for u in users]))


@router.get(
    "/admin/users/pending",
    response_model=Envelope,
    tags=["admin"],
    dependencies=[general_limit],
)
async def list_pending_users(admin: User = Depends(get_admin_user)):
    runtime = get_runtime()
    users = runtime.admin.list_pending_users()
    return _ok(UserListResponse(users=[UserResponse.from_user(u) for u in users]))
