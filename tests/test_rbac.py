"""
tests/test_rbac.py -- Unit tests for RBAC permission resolution.

Covers:
  - permission shared by two roles appears once
  - principal with zero roles resolves to empty lists
  - dangling permission references are dropped
  - resolve_for_id(): NotFound for unknown ids
  - store failures surface as InternalError
"""

from __future__ import annotations

import pytest
from sqlalchemy.exc import OperationalError

from auth.models import Permission, Principal, Role
from auth.rbac import RbacResolver, flatten_access
from auth.store import PrincipalStore
from core.errors import InternalError, NotFound


def _role_with(store: PrincipalStore, name: str, *permission_names: str) -> Role:
    ids = []
    for pname in permission_names:
        perm = store.find_permission_by_name(pname) or store.create_permission(Permission(name=pname))
        ids.append(perm.id)
    return store.create_role(Role(name=name, permission_ids=ids))


class TestResolvePermissions:
    def test_shared_permission_appears_once(self, store: PrincipalStore, rbac: RbacResolver) -> None:
        r1 = _role_with(store, "editor", "docs:read", "docs:write")
        r2 = _role_with(store, "viewer", "docs:read")
        principal = store.create(Principal(email="a@example.com", username="a", role_ids=[r1.id, r2.id]))

        access = rbac.resolve_permissions(principal)

        assert sorted(access.permissions) == ["docs:read", "docs:write"]
        assert access.permissions.count("docs:read") == 1
        assert set(access.role_ids) == {r1.id, r2.id}
        assert set(access.role_names) == {"editor", "viewer"}

    def test_zero_roles_is_empty_not_error(self, store: PrincipalStore, rbac: RbacResolver) -> None:
        principal = store.create(Principal(email="none@example.com", username="none"))
        access = rbac.resolve_permissions(principal)
        assert access.role_ids == []
        assert access.role_names == []
        assert access.permissions == []

    def test_admin_role_resolves_seeded_permissions(self, store: PrincipalStore, rbac: RbacResolver) -> None:
        admin = store.find_role_by_name("admin")
        principal = store.create(Principal(email="root@example.com", username="root", role_ids=[admin.id]))
        assert sorted(rbac.resolve_permissions(principal).permissions) == [
            "permissions:manage",
            "roles:manage",
            "users:manage",
        ]

    def test_store_failure_is_internal_error(self, store: PrincipalStore, rbac: RbacResolver, monkeypatch) -> None:
        principal = Principal(email="x@example.com", username="x", id="p1", role_ids=["r1"])

        def broken(role_ids):
            raise OperationalError("SELECT", {}, Exception("database is locked"))

        monkeypatch.setattr(store, "find_roles_by_ids", broken)
        with pytest.raises(InternalError):
            rbac.resolve_permissions(principal)


class TestResolveForId:
    def test_unknown_principal_is_not_found(self, rbac: RbacResolver) -> None:
        with pytest.raises(NotFound):
            rbac.resolve_for_id("missing")

    def test_loads_principal_and_access(self, store: PrincipalStore, rbac: RbacResolver) -> None:
        role = _role_with(store, "auditor", "logs:read")
        created = store.create(Principal(email="b@example.com", username="b", role_ids=[role.id]))
        principal, access = rbac.resolve_for_id(created.id)
        assert principal.email == "b@example.com"
        assert access.permissions == ["logs:read"]


class TestFlattenAccess:
    def test_dangling_permission_reference_is_dropped(self) -> None:
        roles = [Role(name="r", id="r1", permission_ids=["p1", "gone"])]
        access = flatten_access(roles, [Permission(name="a:b", id="p1")])
        assert access.permissions == ["a:b"]

    def test_order_follows_first_appearance(self) -> None:
        roles = [
            Role(name="r1", id="r1", permission_ids=["p2", "p1"]),
            Role(name="r2", id="r2", permission_ids=["p1", "p3"]),
        ]
        perms = [Permission(name=n, id=i) for i, n in (("p1", "one"), ("p2", "two"), ("p3", "three"))]
        assert flatten_access(roles, perms).permissions == ["two", "one", "three"]
