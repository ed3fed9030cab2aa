"""Tests for argon2id credential hashing."""

from karass.service.passwords import CredentialHasher


class TestCredentialHasher:
    def test_hash_is_argon2id_and_not_plaintext(self, hasher):
        hashed = hasher.hash("Secret123")

        assert hashed != "Secret123"
        assert hashed.startswith("$argon2id$")

    def test_same_password_produces_different_hashes(self, hasher):
        """Salting makes every hash unique."""
        assert hasher.hash("Secret123") != hasher.hash("Secret123")

    def test_verify_accepts_matching_password(self, hasher):
        hashed = hasher.hash("Secret123")

        assert hasher.verify("Secret123", hashed) is True

    def test_verify_rejects_wrong_password(self, hasher):
        hashed = hasher.hash("Secret123")

        assert hasher.verify("Secret124", hashed) is False
        assert hasher.verify("secret123", hashed) is False

    def test_verify_with_empty_hash_returns_false(self, hasher):
        assert hasher.verify("Secret123", "") is False
        assert hasher.verify("Secret123", None) is False

    def test_verify_with_malformed_hash_returns_false(self, hasher):
        assert hasher.verify("Secret123", "not-a-real-hash") is False

    def test_verify_with_non_ascii_hash_returns_false(self, hasher):
        assert hasher.verify("Secret123", "$argon2id$\u00e9") is False

    def test_hash_from_other_work_factor_still_verifies(self, hasher):
        """Parameters are encoded in the hash, so tuning never locks users out."""
        other = CredentialHasher(time_cost=2, memory_cost_kib=2048, parallelism=1)
        hashed = other.hash("Secret123")

        assert hasher.verify("Secret123", hashed) is True
