"""Tests for the in-process principal and revocation stores."""

import json
from datetime import datetime, timedelta, timezone

import pytest

from staffledger.storage.errors import ConstraintViolation
from staffledger.storage.memory import MemoryRevocationStore, MemoryStore
from staffledger.storage.models import ROLE_EMPLOYEE, ROLE_SUPER_ADMIN


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


class TestPrincipalLookup:
    def test_new_principal_defaults_to_employee(self, memory_store):
        principal = memory_store.create_principal("a@x.com", "hash")

        assert principal.roles == {ROLE_EMPLOYEE}
        assert principal.is_active is True
        assert principal.failed_attempts == 0

    def test_email_lookup_ignores_case_and_padding(self, memory_store):
        created = memory_store.create_principal("Ada@Example.com", "hash")

        assert memory_store.find_by_email(" ada@example.COM ").id == created.id
        assert memory_store.find_with_roles("ADA@EXAMPLE.COM").id == created.id

    def test_duplicate_email_rejected(self, memory_store):
        memory_store.create_principal("a@x.com", "hash")

        with pytest.raises(ConstraintViolation) as excinfo:
            memory_store.create_principal("A@X.com", "other")

        assert excinfo.value.detail["field"] == "email"

    def test_unknown_lookups_return_none(self, memory_store):
        assert memory_store.find_by_email("nobody@x.com") is None
        assert memory_store.find_by_email("") is None
        assert memory_store.get_principal("missing-id") is None

    def test_deleted_principal_is_invisible(self, memory_store):
        principal = memory_store.create_principal("a@x.com", "hash")

        assert memory_store.delete_principal(principal.id) is True
        assert memory_store.delete_principal(principal.id) is False
        assert memory_store.find_by_email("a@x.com") is None
        assert memory_store.get_principal(principal.id) is None

    def test_email_reusable_after_delete(self, memory_store):
        first = memory_store.create_principal("a@x.com", "hash")
        memory_store.delete_principal(first.id)

        second = memory_store.create_principal("a@x.com", "hash")

        assert second.id != first.id
        assert memory_store.find_by_email("a@x.com").id == second.id


class TestWrites:
    def test_returned_principals_are_detached(self, memory_store):
        principal = memory_store.create_principal("a@x.com", "hash")
        principal.failed_attempts = 3
        principal.roles.add(ROLE_SUPER_ADMIN)

        fresh = memory_store.get_principal(principal.id)

        assert fresh.failed_attempts == 0
        assert fresh.roles == {ROLE_EMPLOYEE}

    def test_save_writes_through(self, memory_store):
        principal = memory_store.create_principal("a@x.com", "hash")
        principal.failed_attempts = 2

        memory_store.save(principal)

        assert memory_store.get_principal(principal.id).failed_attempts == 2

    def test_save_unknown_principal_rejected(self, memory_store):
        principal = memory_store.create_principal("a@x.com", "hash")
        principal.id = "not-stored"

        with pytest.raises(ConstraintViolation):
            memory_store.save(principal)

    def test_set_roles(self, memory_store):
        principal = memory_store.create_principal("a@x.com", "hash")

        updated = memory_store.set_roles(principal.id, {ROLE_EMPLOYEE, ROLE_SUPER_ADMIN})

        assert updated.roles == {ROLE_EMPLOYEE, ROLE_SUPER_ADMIN}
        assert memory_store.set_roles("missing-id", {ROLE_EMPLOYEE}) is None


class TestPersistence:
    def test_state_survives_reload(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        principal = store.create_principal(
            "a@x.com", "hash", first_name="Ada", roles={ROLE_SUPER_ADMIN}
        )
        locked_until = datetime(2025, 1, 7, 9, 0, tzinfo=timezone.utc)
        principal.failed_attempts = 5
        principal.locked_until = locked_until
        store.save(principal)

        reloaded = MemoryStore(fs_root=str(tmp_path)).get_principal(principal.id)

        assert reloaded.first_name == "Ada"
        assert reloaded.roles == {ROLE_SUPER_ADMIN}
        assert reloaded.failed_attempts == 5
        assert reloaded.locked_until == locked_until

    def test_naive_timestamps_load_as_utc(self, tmp_path):
        state_dir = tmp_path / "state"
        state_dir.mkdir()
        (state_dir / "principals.json").write_text(
            json.dumps(
                {
                    "principals": [
                        {
                            "id": "u-1",
                            "email": "a@x.com",
                            "password_hash": "hash",
                            "last_failed_attempt": "2025-01-06T08:00:00",
                            "roles": ["EMPLOYEE"],
                        }
                    ]
                }
            )
        )

        principal = MemoryStore(fs_root=str(tmp_path)).get_principal("u-1")

        assert principal.last_failed_attempt.tzinfo is not None
        assert principal.last_failed_attempt == datetime(
            2025, 1, 6, 8, 0, tzinfo=timezone.utc
        )
        assert principal.locked_until is None


class TestMemoryRevocationStore:
    async def test_insert_is_idempotent(self):
        store = MemoryRevocationStore()
        expires = datetime(2025, 1, 6, 10, 0, tzinfo=timezone.utc)

        assert await store.insert("tok", expires) is True
        assert await store.insert("tok", expires) is False
        assert await store.exists("tok") is True
        assert await store.exists("other") is False
        assert len(store) == 1

    async def test_prune_drops_only_expired(self, clock):
        store = MemoryRevocationStore()
        await store.insert("old", clock.now - timedelta(minutes=1))
        await store.insert("edge", clock.now)
        await store.insert("live", clock.now + timedelta(minutes=1))

        assert await store.prune_expired(clock.now) == 2
        assert await store.exists("live") is True
        assert await store.exists("old") is False
        assert await store.prune_expired(clock.now) == 0
