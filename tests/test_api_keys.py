"""Unit tests for ApiKeyService."""

import pytest

from modgate.service.api_keys import API_KEY_SCHEME, LOOKUP_PREFIX_LENGTH, ApiKeyService
from modgate.service.errors import ConflictError, NotFoundError, Unauthorized, ValidationError
from modgate.storage.memory import MemoryStore
from modgate.storage.models import Tier


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), encryption_key="unit-test-key", persist=False)


@pytest.fixture
def service(store):
    return ApiKeyService(store, max_keys_per_account=3)


@pytest.fixture
def owner(store):
    return store.create_account("owner", email="owner@example.com")


@pytest.fixture
def intruder(store):
    return store.create_account("intruder", email="intruder@example.com")


class TestCreateApiKey:
    def test_raw_key_is_returned_once_and_not_stored(self, service, store, owner):
        record, raw = service.create_api_key(owner.id, "ci")

        assert raw.startswith(API_KEY_SCHEME)
        assert record.prefix == raw[:LOOKUP_PREFIX_LENGTH]
        stored = store.get_api_key(record.id)
        assert stored.key_hash.startswith("$argon2id$")
        assert raw not in stored.key_hash
        assert all(raw != getattr(stored, field) for field in ("name", "prefix", "key_hash"))

    def test_key_inherits_account_tier(self, service, store, owner):
        store.set_tier(owner.id, Tier.ENTERPRISE)

        record, _ = service.create_api_key(owner.id, "bulk")

        assert record.tier == Tier.ENTERPRISE

    @pytest.mark.parametrize("name", ["", "   ", "x" * 65])
    def test_invalid_names_are_rejected(self, service, owner, name):
        with pytest.raises(ValidationError):
            service.create_api_key(owner.id, name)

    def test_unknown_account_is_rejected(self, service):
        with pytest.raises(NotFoundError):
            service.create_api_key("missing", "ci")

    def test_limit_per_account(self, service, owner):
        for index in range(3):
            service.create_api_key(owner.id, f"key-{index}")

        with pytest.raises(ConflictError):
            service.create_api_key(owner.id, "one-too-many")


class TestResolveKey:
    def test_exact_key_resolves_and_touches_last_used(self, service, store, owner):
        record, raw = service.create_api_key(owner.id, "ci")
        assert store.get_api_key(record.id).last_used_at is None

        resolved = service.resolve_key(raw)

        assert resolved is not None
        assert resolved.id == record.id
        assert store.get_api_key(record.id).last_used_at is not None

    def test_single_character_mutations_fail(self, service, owner):
        _, raw = service.create_api_key(owner.id, "ci")

        # One position inside the lookup prefix, one in the secret part
        for position in (LOOKUP_PREFIX_LENGTH - 1, len(raw) - 1):
            replacement = "A" if raw[position] != "A" else "B"
            mutated = raw[:position] + replacement + raw[position + 1 :]
            assert service.resolve_key(mutated) is None

    @pytest.mark.parametrize("raw", [None, "", "mg_", "mg_short"])
    def test_garbage_resolves_nothing(self, service, raw):
        assert service.resolve_key(raw) is None

    def test_get_user_from_key(self, service, owner):
        _, raw = service.create_api_key(owner.id, "ci")

        assert service.get_user_from_key(service.resolve_key(raw)).id == owner.id

    def test_deleted_owner_is_unauthorized(self, service, store, owner):
        _, raw = service.create_api_key(owner.id, "ci")
        record = service.resolve_key(raw)
        store.mark_deleted(owner.id)

        with pytest.raises(Unauthorized):
            service.get_user_from_key(record)


class TestRevokeKey:
    def test_non_owner_cannot_revoke(self, service, store, owner, intruder):
        record, raw = service.create_api_key(owner.id, "ci")

        assert service.revoke_key(record.id, intruder.id) is False
        assert store.get_api_key(record.id) is not None
        assert service.resolve_key(raw) is not None

    def test_owner_revokes(self, service, store, owner):
        record, raw = service.create_api_key(owner.id, "ci")

        assert service.revoke_key(record.id, owner.id) is True
        assert store.get_api_key(record.id) is None
        assert service.resolve_key(raw) is None

    def test_list_keys_hides_hashes(self, service, owner, intruder):
        service.create_api_key(owner.id, "first")
        service.create_api_key(owner.id, "second")
        service.create_api_key(intruder.id, "theirs")

        keys = service.list_keys(owner.id)

        assert [k.name for k in keys] == ["first", "second"]
        assert all(k.key_hash == "" for k in keys)
