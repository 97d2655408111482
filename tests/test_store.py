"""
tests/test_store.py -- Integration tests for PrincipalStore (in-memory SQLite).

Covers:
  - create / find by id, email (case-insensitive), username, phone, provider id
  - uniqueness violations raise DuplicateKey naming the column
  - nullable provider ids never collide
  - update_by_id(): datetime round trip, unknown fields rejected, missing id -> False
  - set_roles / delete_by_id / delete_role cascade
  - seed_defaults() is idempotent
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from auth.models import Permission, Principal, Provider, Role
from auth.store import PrincipalStore
from core.errors import DuplicateKey


def _p(email: str, username: str, **fields) -> Principal:
    return Principal(email=email, username=username, **fields)


class TestPrincipalLookups:
    def test_create_assigns_id_and_created_at(self, store: PrincipalStore) -> None:
        created = store.create(_p("a@example.com", "a"))
        assert created.id and len(created.id) == 32
        assert created.created_at

    def test_email_is_normalized(self, store: PrincipalStore) -> None:
        created = store.create(_p("  Mixed@Example.COM ", "mixed"))
        assert created.email == "mixed@example.com"
        assert store.find_by_email("MIXED@example.com").id == created.id

    def test_find_by_username_and_phone(self, store: PrincipalStore) -> None:
        created = store.create(_p("b@example.com", "bee", phone_number="+15550001"))
        assert store.find_by_username("bee").id == created.id
        assert store.find_by_phone("+15550001").id == created.id
        assert store.find_by_phone("+19999999") is None

    def test_find_by_provider_id(self, store: PrincipalStore) -> None:
        created = store.create(_p("c@example.com", "c", microsoft_id="ms-42"))
        assert store.find_by_provider_id(Provider.MICROSOFT, "ms-42").id == created.id
        assert store.find_by_provider_id(Provider.GOOGLE, "ms-42") is None

    def test_missing_lookups_return_none(self, store: PrincipalStore) -> None:
        assert store.find_by_id("nope") is None
        assert store.find_by_email("nobody@example.com") is None
        assert store.find_with_roles_and_permissions("nope") is None

    def test_list_principals_filters(self, store: PrincipalStore) -> None:
        store.create(_p("x@example.com", "x"))
        store.create(_p("y@example.com", "y"))
        assert [p.username for p in store.list_principals()] == ["x", "y"]
        assert [p.username for p in store.list_principals(email="Y@example.com")] == ["y"]
        assert store.list_principals(username="zzz") == []


class TestUniqueness:
    @pytest.mark.parametrize(
        ("second", "column"),
        [
            (dict(email="dup@example.com", username="other"), "email"),
            (dict(email="other@example.com", username="dup"), "username"),
        ],
    )
    def test_duplicate_raises_typed_error(self, store: PrincipalStore, second: dict, column: str) -> None:
        store.create(_p("dup@example.com", "dup"))
        with pytest.raises(DuplicateKey) as excinfo:
            store.create(Principal(**second))
        assert excinfo.value.field == column

    def test_null_provider_ids_do_not_collide(self, store: PrincipalStore) -> None:
        store.create(_p("n1@example.com", "n1"))
        store.create(_p("n2@example.com", "n2"))
        assert len(store.list_principals()) == 2

    def test_update_to_taken_email(self, store: PrincipalStore) -> None:
        store.create(_p("taken@example.com", "t1"))
        other = store.create(_p("free@example.com", "t2"))
        with pytest.raises(DuplicateKey):
            store.update_by_id(other.id, email="taken@example.com")

    def test_duplicate_role_name(self, store: PrincipalStore) -> None:
        with pytest.raises(DuplicateKey):
            store.create_role(Role(name="admin"))


class TestUpdates:
    def test_datetime_fields_round_trip(self, store: PrincipalStore) -> None:
        created = store.create(_p("d@example.com", "d"))
        lock = datetime.now(timezone.utc) + timedelta(minutes=15)
        assert store.update_by_id(created.id, lock_until=lock, failed_login_attempts=2)
        loaded = store.find_by_id(created.id)
        assert loaded.lock_until == lock
        assert loaded.failed_login_attempts == 2

    def test_unknown_field_rejected(self, store: PrincipalStore) -> None:
        created = store.create(_p("e@example.com", "e"))
        with pytest.raises(ValueError):
            store.update_by_id(created.id, created_at="2020-01-01")

    def test_missing_principal_returns_false(self, store: PrincipalStore) -> None:
        assert store.update_by_id("missing", is_banned=True) is False

    def test_set_roles_replaces(self, store: PrincipalStore) -> None:
        user = store.find_role_by_name("user")
        admin = store.find_role_by_name("admin")
        created = store.create(_p("f@example.com", "f", role_ids=[user.id]))
        assert store.set_roles(created.id, [admin.id])
        assert store.find_by_id(created.id).role_ids == [admin.id]
        assert store.set_roles("missing", [admin.id]) is False


class TestDeletes:
    def test_delete_principal(self, store: PrincipalStore) -> None:
        created = store.create(_p("g@example.com", "g"))
        assert store.delete_by_id(created.id)
        assert store.find_by_id(created.id) is None
        assert store.delete_by_id(created.id) is False

    def test_delete_role_removes_principal_links(self, store: PrincipalStore) -> None:
        role = store.create_role(Role(name="temp"))
        created = store.create(_p("h@example.com", "h", role_ids=[role.id]))
        assert store.delete_role(role.id)
        assert store.find_by_id(created.id).role_ids == []

    def test_delete_permission_removes_role_links(self, store: PrincipalStore) -> None:
        perm = store.create_permission(Permission(name="tmp:use"))
        role = store.create_role(Role(name="tmp", permission_ids=[perm.id]))
        assert store.delete_permission(perm.id)
        assert store.find_role_by_id(role.id).permission_ids == []


class TestSeedDefaults:
    def test_idempotent(self, store: PrincipalStore) -> None:
        first = store.seed_defaults()
        second = store.seed_defaults()
        assert first == second
        assert len(store.list_roles()) == 2
        assert len(store.list_permissions()) == 3

    def test_user_role_has_no_permissions(self, store: PrincipalStore) -> None:
        assert store.find_role_by_name("user").permission_ids == []
