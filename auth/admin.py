"""
auth/admin.py -- Administration of roles, permissions and principals.

Thin service over PrincipalStore that turns store outcomes into core errors:
  - False / None from an id-addressed store call -> NotFound
  - DuplicateKey on a name or email              -> Conflict
Routes in api/routes/v1/admin.py are gated by the admin and permission
guards; this module does no authorization of its own.

Principals created here skip email verification (is_verified=True) and get
the default role unless role ids are given.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from auth.credentials import generate_username
from auth.models import Permission, Principal, Role
from auth.store import PrincipalStore, normalize_email
from auth.tokens import hash_password
from core.errors import ConfigurationError, Conflict, DuplicateKey, NotFound

logger = logging.getLogger("authcore.admin")


class AdminService:
    def __init__(self, store: PrincipalStore, default_role_name: str = "user") -> None:
        self._store = store
        self.default_role_name = default_role_name

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------

    def list_permissions(self) -> list[Permission]:
        return self._store.list_permissions()

    def create_permission(self, name: str, category: str | None = None, description: str | None = None) -> Permission:
        try:
            permission = self._store.create_permission(Permission(name=name, category=category, description=description))
        except DuplicateKey as exc:
            raise Conflict(f"Permission {name!r} already exists.") from exc
        logger.info("Created permission %s", name)
        return permission

    def update_permission(self, permission_id: str, **fields) -> Permission:
        fields = {k: v for k, v in fields.items() if v is not None}
        try:
            found = self._store.update_permission(permission_id, **fields)
        except DuplicateKey as exc:
            raise Conflict("Permission name already exists.") from exc
        if not found:
            raise NotFound("Permission not found.")
        return self._store.find_permissions_by_ids([permission_id])[0]

    def delete_permission(self, permission_id: str) -> None:
        if not self._store.delete_permission(permission_id):
            raise NotFound("Permission not found.")
        logger.info("Deleted permission %s", permission_id)

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def list_roles(self) -> list[Role]:
        return self._store.list_roles()

    def create_role(self, name: str, description: str | None = None, permission_ids: list[str] | None = None) -> Role:
        permission_ids = list(permission_ids or [])
        self._require_permissions(permission_ids)
        try:
            role = self._store.create_role(Role(name=name, description=description, permission_ids=permission_ids))
        except DuplicateKey as exc:
            raise Conflict(f"Role {name!r} already exists.") from exc
        logger.info("Created role %s", name)
        return role

    def update_role(self, role_id: str, **fields) -> Role:
        fields = {k: v for k, v in fields.items() if v is not None}
        try:
            found = self._store.update_role(role_id, **fields)
        except DuplicateKey as exc:
            raise Conflict("Role name already exists.") from exc
        if not found:
            raise NotFound("Role not found.")
        return self._get_role(role_id)

    def set_role_permissions(self, role_id: str, permission_ids: list[str]) -> Role:
        """Replace the role's permission set. Unknown permission ids are NotFound."""
        self._require_permissions(permission_ids)
        if not self._store.set_role_permissions(role_id, permission_ids):
            raise NotFound("Role not found.")
        return self._get_role(role_id)

    def delete_role(self, role_id: str) -> None:
        if not self._store.delete_role(role_id):
            raise NotFound("Role not found.")
        logger.info("Deleted role %s", role_id)

    # ------------------------------------------------------------------
    # Principals
    # ------------------------------------------------------------------

    def list_principals(self, email: str | None = None, username: str | None = None) -> list[Principal]:
        return self._store.list_principals(email=email, username=username)

    def create_principal(
        self,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
        username: str | None = None,
        role_ids: list[str] | None = None,
    ) -> Principal:
        """Create a verified principal with a password. Conflict on a taken email or username."""
        email = normalize_email(email)
        if role_ids:
            self._require_roles(role_ids)
        else:
            role = self._store.find_role_by_name(self.default_role_name)
            if role is None:
                raise ConfigurationError(f"Default role {self.default_role_name!r} is not seeded.")
            role_ids = [role.id]
        try:
            principal = self._store.create(
                Principal(
                    email=email,
                    username=username or generate_username(first_name, last_name, email),
                    first_name=first_name,
                    last_name=last_name,
                    hashed_password=hash_password(password),
                    role_ids=role_ids,
                    is_verified=True,
                    password_changed_at=datetime.now(timezone.utc),
                )
            )
        except DuplicateKey as exc:
            raise Conflict("An account with these credentials already exists.") from exc
        logger.info("Admin created principal %s", principal.id)
        return principal

    def set_banned(self, principal_id: str, banned: bool) -> Principal:
        """Ban or unban a principal. Banning also revokes the live refresh token."""
        fields: dict = {"is_banned": banned}
        if banned:
            fields["refresh_token"] = None
        if not self._store.update_by_id(principal_id, **fields):
            raise NotFound("Principal not found.")
        logger.info("Principal %s %s", principal_id, "banned" if banned else "unbanned")
        return self._get_principal(principal_id)

    def set_principal_roles(self, principal_id: str, role_ids: list[str]) -> Principal:
        """Replace the principal's role set. NotFound if the principal or any role id is unknown."""
        self._require_roles(role_ids)
        if not self._store.set_roles(principal_id, role_ids):
            raise NotFound("Principal not found.")
        return self._get_principal(principal_id)

    def delete_principal(self, principal_id: str) -> None:
        if not self._store.delete_by_id(principal_id):
            raise NotFound("Principal not found.")
        logger.info("Admin deleted principal %s", principal_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _get_role(self, role_id: str) -> Role:
        role = self._store.find_role_by_id(role_id)
        if role is None:
            raise NotFound("Role not found.")
        return role

    def _get_principal(self, principal_id: str) -> Principal:
        principal = self._store.find_by_id(principal_id)
        if principal is None:
            raise NotFound("Principal not found.")
        return principal

    def _require_roles(self, role_ids: list[str]) -> None:
        found = {r.id for r in self._store.find_roles_by_ids(role_ids)}
        missing = set(role_ids) - found
        if missing:
            raise NotFound(f"Unknown role id(s): {', '.join(sorted(missing))}.")

    def _require_permissions(self, permission_ids: list[str]) -> None:
        found = {p.id for p in self._store.find_permissions_by_ids(permission_ids)}
        missing = set(permission_ids) - found
        if missing:
            raise NotFound(f"Unknown permission id(s): {', '.join(sorted(missing))}.")
