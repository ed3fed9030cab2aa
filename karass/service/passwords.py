from __future__ import annotations

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError

from karass.logging import get_logger

logger = get_logger(__name__)


class CredentialHasher:
    """Salted argon2id password hashing.

    The work factor is fixed per instance. Calls are CPU-bound and slow on
    purpose; async callers should run them via ``asyncio.to_thread``.
    """

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost_kib: int = 65536,
        parallelism: int = 4,
    ) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost_kib,
            parallelism=parallelism,
            type=Type.ID,
        )

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password: str, hashed: str) -> bool:
        """Return True when ``password`` matches ``hashed``; never raises."""
        if not hashed:
            return False
        try:
            return self._hasher.verify(hashed, password)
        except (InvalidHashError, ValueError):
            # Non-ASCII garbage surfaces as UnicodeEncodeError rather than InvalidHashError
            logger.warning("password_hash_malformed")
            return False
        except VerificationError:
            # Covers VerifyMismatchError
            return False
