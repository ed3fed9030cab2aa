import pytest

from karass.storage.errors import (
    EMAIL_FIELD,
    PROVIDER_IDENTITY_FIELD,
    USERNAME_FIELD,
    ConstraintViolation,
)
from karass.storage.models import ProviderIdentity


class TestMemoryStoreConstraints:
    def test_ids_are_sequential(self, memory_store):
        first = memory_store.create_user("one")
        second = memory_store.create_user("two")

        assert (first.id, second.id) == (1, 2)

    def test_username_unique(self, memory_store):
        memory_store.create_user("alice")

        with pytest.raises(ConstraintViolation) as exc_info:
            memory_store.create_user("alice")
        assert exc_info.value.field == USERNAME_FIELD

    def test_email_unique_ignoring_case(self, memory_store):
        memory_store.create_user("alice", email="Alice@X.com")

        with pytest.raises(ConstraintViolation) as exc_info:
            memory_store.create_user("bob", email="alice@x.COM")
        assert exc_info.value.field == EMAIL_FIELD
        assert memory_store.get_user_by_email("ALICE@x.com").username == "alice"

    def test_users_without_email_do_not_clash(self, memory_store):
        memory_store.create_user("a")
        memory_store.create_user("b")

        assert len(memory_store.list_users()) == 2

    def test_identity_unique_and_no_partial_write(self, memory_store):
        identity = ProviderIdentity(provider="github", external_id="1", handle="octo")
        memory_store.create_user("octo", identity=identity)

        with pytest.raises(ConstraintViolation) as exc_info:
            memory_store.create_user("octo2", email="o@x.com", identity=identity)
        assert exc_info.value.field == PROVIDER_IDENTITY_FIELD
        assert memory_store.username_exists("octo2") is False
        assert memory_store.get_user_by_email("o@x.com") is None

    def test_returned_users_are_copies(self, memory_store):
        user = memory_store.create_user("alice")
        user.is_admin = True

        assert memory_store.get_user(user.id).is_admin is False


class TestMemoryStoreUpdates:
    def test_link_identity_is_idempotent(self, memory_store):
        user = memory_store.create_user("alice")
        identity = ProviderIdentity(provider="twitter", external_id="9", handle="alice_tw")

        memory_store.link_provider_identity(user.id, identity)
        linked = memory_store.link_provider_identity(user.id, identity)

        assert len(linked.identities) == 1
        assert linked.twitter_handle == "alice_tw"
        assert memory_store.get_user_by_provider("twitter", "9").id == user.id

    def test_link_identity_owned_by_other_user(self, memory_store):
        identity = ProviderIdentity(provider="twitter", external_id="9")
        memory_store.create_user("owner", identity=identity)
        other = memory_store.create_user("other")

        with pytest.raises(ConstraintViolation):
            memory_store.link_provider_identity(other.id, identity)

    def test_link_identity_missing_user(self, memory_store):
        identity = ProviderIdentity(provider="twitter", external_id="9")

        assert memory_store.link_provider_identity(42, identity) is None

    def test_update_flags(self, memory_store):
        user = memory_store.create_user("alice")

        updated = memory_store.update_user_flags(user.id, is_admin=True)

        assert updated.is_admin is True
        assert updated.is_approved is True
        assert memory_store.update_user_flags(999, is_admin=True) is None

    def test_list_users_newest_first_and_pending_filter(self, memory_store):
        first = memory_store.create_user("first")
        second = memory_store.create_user("second", is_approved=False)

        assert [u.id for u in memory_store.list_users()] == [second.id, first.id]
        assert [u.id for u in memory_store.list_users(pending_only=True)] == [second.id]
