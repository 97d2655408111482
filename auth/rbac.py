"""
auth/rbac.py -- Resolve a principal's roles into the permission set carried by access tokens.

Permissions are granted through role membership only. resolve_permissions()
flattens every role the principal holds into one set (union, not
concatenation): a permission granted by two roles appears exactly once.
A principal with zero roles resolves to empty lists, not an error.

Store failures are surfaced as InternalError and not retried.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError

from auth.models import Permission, Principal, ResolvedAccess, Role
from auth.store import PrincipalStore
from core.errors import InternalError, NotFound

logger = logging.getLogger("authcore.rbac")


def flatten_access(roles: list[Role], permissions: list[Permission]) -> ResolvedAccess:
    """Merge role documents and their permission documents into a ResolvedAccess.

    Permission references that point at a deleted permission are dropped.
    Role order follows the input; permission order follows first appearance
    across roles.
    """
    names_by_id = {p.id: p.name for p in permissions}
    ordered: dict[str, None] = {}
    for role in roles:
        for permission_id in role.permission_ids:
            name = names_by_id.get(permission_id)
            if name:
                ordered[name] = None
    return ResolvedAccess(
        role_ids=[r.id for r in roles],
        role_names=[r.name for r in roles],
        permissions=list(ordered),
    )


class RbacResolver:
    """Load roles and permissions for a principal from the store."""

    def __init__(self, store: PrincipalStore) -> None:
        self._store = store

    def resolve_permissions(self, principal: Principal) -> ResolvedAccess:
        """Return the principal's role ids/names and deduplicated permission names."""
        if not principal.role_ids:
            return ResolvedAccess()
        try:
            roles = self._store.find_roles_by_ids(principal.role_ids)
            permission_ids = list(dict.fromkeys(pid for role in roles for pid in role.permission_ids))
            permissions = self._store.find_permissions_by_ids(permission_ids)
        except SQLAlchemyError as exc:
            logger.exception("Failed to resolve permissions for principal %s", principal.id)
            raise InternalError("Failed to resolve permissions.") from exc
        return flatten_access(roles, permissions)

    def resolve_for_id(self, principal_id: str) -> tuple[Principal, ResolvedAccess]:
        """Load a principal by id together with its resolved access.

        Raises NotFound if the principal does not exist.
        """
        try:
            loaded = self._store.find_with_roles_and_permissions(principal_id)
        except SQLAlchemyError as exc:
            logger.exception("Failed to load principal %s with roles", principal_id)
            raise InternalError("Failed to resolve permissions.") from exc
        if loaded is None:
            raise NotFound("Principal not found.")
        principal, roles, permissions = loaded
        return principal, flatten_access(roles, permissions)
