from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from karass.logging import get_logger
from karass.storage.errors import (
    EMAIL_FIELD,
    PROVIDER_IDENTITY_FIELD,
    USERNAME_FIELD,
    ConstraintViolation,
)
from karass.storage.models import ProviderIdentity, User

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id BIGSERIAL PRIMARY KEY,
        username TEXT NOT NULL,
        email TEXT,
        password_hash TEXT,
        twitter_handle TEXT,
        is_approved BOOLEAN NOT NULL DEFAULT TRUE,
        is_admin BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT app_user_username_key UNIQUE (username)
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS app_user_email_lower_key
        ON app_user (lower(email)) WHERE email IS NOT NULL
    """,
    """
    CREATE TABLE IF NOT EXISTS user_provider_identity (
        id BIGSERIAL PRIMARY KEY,
        user_id BIGINT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        provider TEXT NOT NULL,
        external_id TEXT NOT NULL,
        handle TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT user_provider_identity_provider_external_id_key
            UNIQUE (provider, external_id)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS user_provider_identity_user_id_idx
        ON user_provider_identity (user_id)
    """,
)

_CONSTRAINT_FIELDS = {
    "app_user_username_key": USERNAME_FIELD,
    "app_user_email_lower_key": EMAIL_FIELD,
    "user_provider_identity_provider_external_id_key": PROVIDER_IDENTITY_FIELD,
}


class PostgresStore:
    """Postgres-backed user store.

    Uniqueness of usernames, emails (case-insensitive) and provider identities
    is enforced by the schema; violations surface as ConstraintViolation with
    ``detail["field"]`` naming the clashing column.
    """

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the user tables and unique indexes if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def _constraint_violation(self, exc: errors.UniqueViolation) -> ConstraintViolation:
        constraint = getattr(exc.diag, "constraint_name", None)
        field = _CONSTRAINT_FIELDS.get(constraint or "")
        if field is None:
            self.logger.warning("unknown_unique_constraint", constraint=constraint)
        return ConstraintViolation(
            f"{field or 'value'} already exists",
            {"field": field, "constraint": constraint},
        )

    def _identity_from_row(self, row: Dict[str, Any]) -> ProviderIdentity:
        return ProviderIdentity(
            provider=row["provider"],
            external_id=row["external_id"],
            handle=row.get("handle"),
            user_id=row["user_id"],
            created_at=row["created_at"],
        )

    def _user_from_row(
        self, row: Dict[str, Any], identities: Iterable[ProviderIdentity] = ()
    ) -> User:
        return User(
            id=row["id"],
            username=row["username"],
            email=row.get("email"),
            password_hash=row.get("password_hash"),
            twitter_handle=row.get("twitter_handle"),
            is_approved=row.get("is_approved", True),
            is_admin=row.get("is_admin", False),
            created_at=row["created_at"],
            identities=list(identities),
        )

    def _hydrate(self, conn, rows: List[Dict[str, Any]]) -> List[User]:
        if not rows:
            return []
        user_ids = [row["id"] for row in rows]
        identity_rows = conn.execute(
            """
            SELECT * FROM user_provider_identity
            WHERE user_id = ANY(%s)
            ORDER BY created_at, id
            """,
            (user_ids,),
        ).fetchall()
        by_user: Dict[int, List[ProviderIdentity]] = {}
        for identity_row in identity_rows:
            by_user.setdefault(identity_row["user_id"], []).append(
                self._identity_from_row(identity_row)
            )
        return [self._user_from_row(row, by_user.get(row["id"], [])) for row in rows]

    def _fetch_one(self, query: str, params: tuple) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
            if not row:
                return None
            return self._hydrate(conn, [row])[0]

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
        try:
            # User row and identity row commit together or not at all
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    """
                    INSERT INTO app_user
                        (username, email, password_hash, twitter_handle, is_approved, is_admin)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        username,
                        normalized_email,
                        password_hash,
                        twitter_handle,
                        is_approved,
                        is_admin,
                    ),
                ).fetchone()
                identities: List[ProviderIdentity] = []
                if identity:
                    identity_row = conn.execute(
                        """
                        INSERT INTO user_provider_identity
                            (user_id, provider, external_id, handle)
                        VALUES (%s, %s, %s, %s)
                        RETURNING *
                        """,
                        (row["id"], identity.provider, identity.external_id, identity.handle),
                    ).fetchone()
                    identities.append(self._identity_from_row(identity_row))
        except errors.UniqueViolation as exc:
            raise self._constraint_violation(exc) from exc
        return self._user_from_row(row, identities)

    def get_user(self, user_id: int) -> Optional[User]:
        return self._fetch_one("SELECT * FROM app_user WHERE id = %s", (user_id,))

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self._fetch_one("SELECT * FROM app_user WHERE username = %s", (username,))

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._fetch_one(
            "SELECT * FROM app_user WHERE lower(email) = lower(%s)", (email,)
        )

    def get_user_by_provider(self, provider: str, external_id: str) -> Optional[User]:
        return self._fetch_one(
            """
            SELECT u.* FROM app_user u
            JOIN user_provider_identity p ON p.user_id = u.id
            WHERE p.provider = %s AND p.external_id = %s
            """,
            (provider, external_id),
        )

    def username_exists(self, username: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 AS found FROM app_user WHERE username = %s", (username,)
            ).fetchone()
        return row is not None

    def link_provider_identity(
        self, user_id: int, identity: ProviderIdentity
    ) -> Optional[User]:
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    "SELECT * FROM app_user WHERE id = %s FOR UPDATE", (user_id,)
                ).fetchone()
                if not row:
                    return None
                existing = conn.execute(
                    """
                    SELECT user_id FROM user_provider_identity
                    WHERE provider = %s AND external_id = %s
                    """,
                    (identity.provider, identity.external_id),
                ).fetchone()
                if existing and existing["user_id"] != user_id:
                    raise ConstraintViolation(
                        "provider identity already linked",
                        {"field": PROVIDER_IDENTITY_FIELD, "provider": identity.provider},
                    )
                if not existing:
                    conn.execute(
                        """
                        INSERT INTO user_provider_identity
                            (user_id, provider, external_id, handle)
                        VALUES (%s, %s, %s, %s)
                        """,
                        (user_id, identity.provider, identity.external_id, identity.handle),
                    )
                    if identity.provider == "twitter" and identity.handle:
                        row = conn.execute(
                            "UPDATE app_user SET twitter_handle = %s WHERE id = %s RETURNING *",
                            (identity.handle, user_id),
                        ).fetchone()
                return self._hydrate(conn, [row])[0]
        except errors.UniqueViolation as exc:
            raise self._constraint_violation(exc) from exc

    def update_user_flags(
        self,
        user_id: int,
        *,
        is_approved: Optional[bool] = None,
        is_admin: Optional[bool] = None,
    ) -> Optional[User]:
        assignments: List[str] = []
        params: List[Any] = []
        if is_approved is not None:
            assignments.append("is_approved = %s")
            params.append(is_approved)
        if is_admin is not None:
            assignments.append("is_admin = %s")
            params.append(is_admin)
        if not assignments:
            return self.get_user(user_id)
        params.append(user_id)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_user SET {', '.join(assignments)} WHERE id = %s RETURNING *",
                tuple(params),
            ).fetchone()
            if not row:
                return None
            return self._hydrate(conn, [row])[0]

    def list_users(self, *, pending_only: bool = False) -> List[User]:
        query = "SELECT * FROM app_user"
        if pending_only:
            query += " WHERE is_approved = FALSE"
        query += " ORDER BY created_at DESC, id DESC"
        with self._connect() as conn:
            rows = conn.execute(query).fetchall()
            return self._hydrate(conn, rows)

    def ping(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1")

    def close(self) -> None:
        self.pool.close()
