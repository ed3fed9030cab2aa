"""Tests for password and OAuth account provisioning."""

import threading

import pytest

from karass.service.admin import AdminEmailAllowList
from karass.service.errors import (
    ConflictError,
    EmailTakenError,
    NotFoundError,
    UsernameGenerationExhaustedError,
    UsernameTakenError,
    ValidationError,
)
from karass.service.provisioning import AccountProvisioner, sanitize_username
from karass.storage.models import ProviderIdentity


class StaleReadStore:
    """Wraps a store so pre-checks see an out-of-date view.

    Writes still go to the real store, so its unique constraints decide the
    outcome just as they would when another request commits in between.
    """

    def __init__(self, inner, *, stale_provider_reads=0, stale_emails=False, stale_usernames=False):
        self.inner = inner
        self.stale_provider_reads = stale_provider_reads
        self.stale_emails = stale_emails
        self.stale_usernames = stale_usernames
        self.created = []

    def __getattr__(self, name):
        return getattr(self.inner, name)

    def get_user_by_provider(self, provider, external_id):
        if self.stale_provider_reads > 0:
            self.stale_provider_reads -= 1
            return None
        return self.inner.get_user_by_provider(provider, external_id)

    def get_user_by_email(self, email):
        if self.stale_emails:
            return None
        return self.inner.get_user_by_email(email)

    def username_exists(self, username):
        if self.stale_usernames:
            return False
        return self.inner.username_exists(username)

    def create_user(self, username, **kwargs):
        self.created.append(username)
        return self.inner.create_user(username, **kwargs)


@pytest.fixture
def provisioner(memory_store, hasher):
    return AccountProvisioner(memory_store, hasher)


class TestSanitizeUsername:
    def test_strips_disallowed_characters(self):
        assert sanitize_username("al.ice-b!") == "aliceb"

    def test_strips_line_breaks(self):
        assert sanitize_username("alice\n") == "alice"

    def test_truncates_to_twenty(self):
        assert sanitize_username("a" * 40) == "a" * 20

    @pytest.mark.parametrize("handle", [None, "", "ab", "!!"])
    def test_short_handles_fall_back(self, handle):
        assert sanitize_username(handle) == "user"


class TestPasswordAccounts:
    def test_creates_account_with_hashed_password(self, provisioner, hasher):
        user = provisioner.provision_password_account(
            "Alice@Example.com", "alice", "Secret123", twitter_handle="@alice_tw"
        )

        assert user.id >= 1
        assert user.email == "alice@example.com"
        assert user.username == "alice"
        assert user.twitter_handle == "alice_tw"
        assert user.is_approved is True
        assert user.is_admin is False
        assert user.password_hash != "Secret123"
        assert hasher.verify("Secret123", user.password_hash)

    def test_duplicate_email_is_case_insensitive(self, provisioner, memory_store):
        provisioner.provision_password_account("a@x.com", "alice", "Secret123")

        with pytest.raises(EmailTakenError) as exc_info:
            provisioner.provision_password_account("A@X.COM", "bob", "Secret123")
        assert exc_info.value.status_code == 409
        assert exc_info.value.message == "Email already registered"
        assert memory_store.get_user_by_username("bob") is None

    def test_duplicate_username(self, provisioner):
        provisioner.provision_password_account("a@x.com", "alice", "Secret123")

        with pytest.raises(UsernameTakenError) as exc_info:
            provisioner.provision_password_account("b@x.com", "alice", "Secret123")
        assert exc_info.value.error_code == "username_taken"

    @pytest.mark.parametrize(
        "email, username, password",
        [
            ("not-an-email", "alice", "Secret123"),
            ("a@x.com", "a!", "Secret123"),
            ("a@x.com", "alice", "weak"),
        ],
    )
    def test_invalid_input(self, provisioner, email, username, password):
        with pytest.raises(ValidationError):
            provisioner.provision_password_account(email, username, password)

    def test_lost_email_race_maps_to_email_taken(self, memory_store, hasher):
        memory_store.create_user("first", email="a@x.com")
        store = StaleReadStore(memory_store, stale_emails=True, stale_usernames=True)
        provisioner = AccountProvisioner(store, hasher)

        with pytest.raises(EmailTakenError):
            provisioner.provision_password_account("a@x.com", "second", "Secret123")

    def test_lost_username_race_maps_to_username_taken(self, memory_store, hasher):
        memory_store.create_user("alice", email="first@x.com")
        store = StaleReadStore(memory_store, stale_usernames=True)
        provisioner = AccountProvisioner(store, hasher)

        with pytest.raises(UsernameTakenError):
            provisioner.provision_password_account("second@x.com", "alice", "Secret123")

    def test_allow_listed_email_becomes_admin(self, memory_store, hasher):
        provisioner = AccountProvisioner(
            memory_store, hasher, is_admin_email=AdminEmailAllowList(["Boss@Example.com"])
        )

        boss = provisioner.provision_password_account("boss@example.com", "boss", "Secret123")
        other = provisioner.provision_password_account("other@example.com", "other", "Secret123")

        assert boss.is_admin is True
        assert other.is_admin is False


class TestUsernameCandidates:
    def test_sequence(self, memory_store, hasher):
        provisioner = AccountProvisioner(
            memory_store,
            hasher,
            max_username_attempts=3,
            random_fallback_attempts=2,
            suffix_factory=lambda: "zz9zz9",
        )

        assert list(provisioner.username_candidates("bob")) == [
            "bob",
            "bob1",
            "bob2",
            "bob3",
            "bob_zz9zz9",
            "bob_zz9zz9",
        ]


class TestOAuthAccounts:
    def test_new_identity_creates_user(self, provisioner):
        user, is_new = provisioner.provision_oauth_account("github", "987", "octocat", "octo@x.com")

        assert is_new is True
        assert user.username == "octocat"
        assert user.email == "octo@x.com"
        assert user.password_hash is None
        assert user.github_handle == "octocat"
        assert user.twitter_handle is None

    def test_twitter_sets_twitter_handle(self, provisioner):
        user, _ = provisioner.provision_oauth_account("twitter", "12345", "alice")

        assert user.twitter_handle == "alice"
        assert user.email is None

    def test_existing_identity_returns_same_user(self, provisioner):
        first, _ = provisioner.provision_oauth_account("twitter", "12345", "alice")

        again, is_new = provisioner.provision_oauth_account("twitter", "12345", "renamed")

        assert is_new is False
        assert again.id == first.id
        assert again.username == "alice"

    def test_same_external_id_on_other_provider_is_distinct(self, provisioner):
        tw, _ = provisioner.provision_oauth_account("twitter", "1", "alice")
        gh, is_new = provisioner.provision_oauth_account("github", "1", "alice")

        assert is_new is True
        assert gh.id != tw.id

    def test_taken_username_gets_numeric_suffix(self, provisioner):
        provisioner.provision_password_account("a@x.com", "alice", "Secret123")

        user, is_new = provisioner.provision_oauth_account("twitter", "12345", "alice")

        assert is_new is True
        assert user.username == "alice1"

    def test_short_handle_uses_fallback_base(self, provisioner):
        user, _ = provisioner.provision_oauth_account("github", "5", "x")

        assert user.username == "user"

    def test_taken_email_is_not_attached(self, provisioner, memory_store):
        owner = provisioner.provision_password_account("a@x.com", "alice", "Secret123")

        user, is_new = provisioner.provision_oauth_account("github", "987", "octocat", "A@x.com")

        assert is_new is True
        assert user.id != owner.id
        assert user.email is None
        assert memory_store.get_user_by_email("a@x.com").id == owner.id

    def test_invalid_email_is_dropped(self, provisioner):
        user, _ = provisioner.provision_oauth_account("github", "987", "octocat", "nonsense")

        assert user.email is None

    def test_random_fallback_after_counter_exhausted(self, memory_store, hasher):
        provisioner = AccountProvisioner(
            memory_store,
            hasher,
            max_username_attempts=2,
            random_fallback_attempts=2,
            suffix_factory=lambda: "abc123",
        )
        for name in ("bob", "bob1", "bob2"):
            memory_store.create_user(name)

        user, _ = provisioner.provision_oauth_account("twitter", "77", "bob")

        assert user.username == "bob_abc123"

    def test_exhaustion_raises_and_creates_nothing(self, memory_store, hasher):
        provisioner = AccountProvisioner(
            memory_store,
            hasher,
            max_username_attempts=2,
            random_fallback_attempts=2,
            suffix_factory=lambda: "abc123",
        )
        for name in ("bob", "bob1", "bob2", "bob_abc123"):
            memory_store.create_user(name)

        with pytest.raises(UsernameGenerationExhaustedError) as exc_info:
            provisioner.provision_oauth_account("twitter", "77", "bob")
        assert exc_info.value.status_code == 500
        assert memory_store.get_user_by_provider("twitter", "77") is None

    def test_username_race_moves_to_next_candidate(self, memory_store, hasher):
        memory_store.create_user("alice")
        store = StaleReadStore(memory_store, stale_usernames=True)
        provisioner = AccountProvisioner(store, hasher)

        user, is_new = provisioner.provision_oauth_account("twitter", "12345", "alice")

        assert is_new is True
        assert user.username == "alice1"
        assert store.created == ["alice", "alice1"]

    def test_identity_race_converges_on_winner(self, memory_store, hasher):
        winner = memory_store.create_user(
            "alice", identity=ProviderIdentity(provider="twitter", external_id="12345")
        )
        store = StaleReadStore(memory_store, stale_provider_reads=1)
        provisioner = AccountProvisioner(store, hasher)

        user, is_new = provisioner.provision_oauth_account("twitter", "12345", "alice")

        assert is_new is False
        assert user.id == winner.id
        assert len(memory_store.list_users()) == 1

    def test_email_race_keeps_account_without_email(self, memory_store, hasher):
        memory_store.create_user("owner", email="octo@x.com")
        store = StaleReadStore(memory_store, stale_emails=True)
        provisioner = AccountProvisioner(store, hasher)

        user, is_new = provisioner.provision_oauth_account("github", "987", "octocat", "octo@x.com")

        assert is_new is True
        assert user.email is None
        assert user.github_handle == "octocat"

    def test_concurrent_first_logins_create_one_user(self, provisioner, memory_store):
        barrier = threading.Barrier(8)
        results = []
        lock = threading.Lock()

        def login():
            barrier.wait()
            outcome = provisioner.provision_oauth_account("github", "987", "octocat")
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=login) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len({user.id for user, _ in results}) == 1
        assert [is_new for _, is_new in results].count(True) == 1
        assert len(memory_store.list_users()) == 1


class TestLinkProviderIdentity:
    def test_links_identity_to_existing_account(self, provisioner, memory_store):
        user = provisioner.provision_password_account("a@x.com", "alice", "Secret123")

        linked = provisioner.link_provider_identity(user.id, "github", "987", "octocat")

        assert linked.github_handle == "octocat"
        assert memory_store.get_user_by_provider("github", "987").id == user.id

    def test_identity_owned_by_someone_else(self, provisioner):
        provisioner.provision_oauth_account("github", "987", "octocat")
        user = provisioner.provision_password_account("a@x.com", "alice", "Secret123")

        with pytest.raises(ConflictError) as exc_info:
            provisioner.link_provider_identity(user.id, "github", "987", "octocat")
        assert exc_info.value.error_code == "identity_taken"

    def test_unknown_user(self, provisioner):
        with pytest.raises(NotFoundError):
            provisioner.link_provider_identity(999, "github", "987", "octocat")
