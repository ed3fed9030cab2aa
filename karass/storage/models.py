from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ProviderIdentity:
    """An external account (provider tag + provider's user id) linked to a user."""

    provider: str
    external_id: str
    handle: Optional[str] = None
    user_id: Optional[int] = None
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class User:
    id: int
    username: str
    email: Optional[str] = None
    password_hash: Optional[str] = None
    twitter_handle: Optional[str] = None
    is_approved: bool = True
    is_admin: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    identities: List[ProviderIdentity] = field(default_factory=list)

    def identity_for(self, provider: str) -> Optional[ProviderIdentity]:
        for identity in self.identities:
            if identity.provider == provider:
                return identity
        return None

    @property
    def github_handle(self) -> Optional[str]:
        identity = self.identity_for("github")
        return identity.handle if identity else None
