from __future__ import annotations

import threading
from datetime import timedelta
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from karass.config import Settings, get_settings, reset_settings_cache
from karass.logging import get_logger
from karass.service.admin import AdminAuthorizer, AdminEmailAllowList, AdminService
from karass.service.auth import AuthService
from karass.service.oauth import build_providers
from karass.service.passwords import CredentialHasher
from karass.service.pkce import PkceStateStore
from karass.service.provisioning import AccountProvisioner
from karass.service.rate_limit import RateLimiter, RateLimitPolicy
from karass.service.tokens import SessionTokenIssuer
from karass.storage.memory import MemoryStore
from karass.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a DSN for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Owns every long-lived service object, built once from Settings."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()
        self.store: Union[MemoryStore, PostgresStore]
        if self.settings.use_memory_store:
            self.store = MemoryStore()
            logger.info("store_initialized", backend="memory")
        else:
            self.store = PostgresStore(
                self.settings.database_url,
                min_size=self.settings.pg_pool_min_size,
                max_size=self.settings.pg_pool_max_size,
            )
            logger.info(
                "store_initialized",
                backend="postgres",
                dsn=_mask_url_password(self.settings.database_url),
            )

        self.hasher = CredentialHasher(
            time_cost=self.settings.password_hash_time_cost,
            memory_cost_kib=self.settings.password_hash_memory_cost_kib,
            parallelism=self.settings.password_hash_parallelism,
        )
        self.tokens = SessionTokenIssuer(
            self.settings.jwt_secret,
            ttl=timedelta(days=self.settings.session_ttl_days),
        )
        self.pkce = PkceStateStore(
            ttl_seconds=self.settings.pkce_state_ttl_seconds,
            max_entries=self.settings.pkce_max_entries,
        )
        self.rate_limiters = {
            "general": RateLimiter(
                RateLimitPolicy(
                    "general",
                    window_seconds=self.settings.general_rate_limit_window_seconds,
                    max_requests=self.settings.general_rate_limit_max_requests,
                ),
                max_clients=self.settings.rate_limit_max_clients,
            ),
            "auth": RateLimiter(
                RateLimitPolicy(
                    "auth",
                    window_seconds=self.settings.auth_rate_limit_window_seconds,
                    max_requests=self.settings.auth_rate_limit_max_requests,
                ),
                max_clients=self.settings.rate_limit_max_clients,
            ),
        }
        self.admin_emails = AdminEmailAllowList(self.settings.admin_emails)
        self.providers = build_providers(self.settings)
        self.provisioner = AccountProvisioner(
            self.store, self.hasher, is_admin_email=self.admin_emails
        )
        self.auth = AuthService(
            self.store,
            self.hasher,
            self.provisioner,
            self.tokens,
            self.pkce,
            self.providers,
        )
        self.authorizer = AdminAuthorizer(self.tokens, self.store)
        self.admin = AdminService(self.store)

    def close(self) -> None:
        self.store.close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> None:
    """Drop the runtime singleton and cached settings for isolated test runs."""
    global runtime
    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        runtime = None
        reset_settings_cache()
