"""
auth/dependencies.py -- FastAPI Depends() guards for authentication and authorization.

get_current_principal() is the authentication guard:
  1. Require "Authorization: Bearer <access token>".
  2. Verify it as a purpose-less access token.
  3. Re-load the principal by the token subject. Ban and verification state
     are checked live, never trusted from the token.
  4. Reject a token whose iat predates the principal's last password change.
  5. Attach the decoded claims to request.state.claims for downstream guards.

Role, permission and admin guards are factories: the required role id or
permission name is bound when the route is declared, and the returned
instance is the dependency.

    @router.get("/reports", dependencies=[Depends(RequirePermission("reports:read"))])

Role and permission checks read the attached claims only (no store read).
RequireAdmin resolves the admin role id through AdminRoleCache, a single-slot
cache filled on first use and kept until restart. Two requests racing to fill
it both write the same id, so the overwrite is harmless.

Guards raise core errors (Unauthorized / Forbidden); api/main.py turns them
into the standard JSON envelope.

Layer rule: no imports from api/. auth/dependencies.py may import from
fastapi because this module is part of the FastAPI dependency injection
system.
"""

from __future__ import annotations

import logging

from fastapi import Depends, Request

from auth.models import Principal
from auth.store import PrincipalStore
from auth.tokens import TokenPurpose, issued_before
from core.errors import ConfigurationError, Forbidden, Unauthorized

logger = logging.getLogger("authcore.guards")


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_current_principal(request: Request) -> Principal:
    """Authenticate the request from its bearer access token.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(principal: Principal = Depends(get_current_principal)): ...
    """
    token = _bearer_token(request)
    if token is None:
        raise Unauthorized("Authentication required.")

    claims = request.app.state.tokens.verify(TokenPurpose.ACCESS, token)
    principal = request.app.state.store.find_by_id(claims["sub"])
    if principal is None:
        raise Unauthorized("Principal no longer exists.")
    if not principal.is_verified:
        raise Forbidden("Email not verified.")
    if principal.is_banned:
        raise Forbidden("Account has been banned.")
    if issued_before(claims, principal.password_changed_at):
        raise Unauthorized("Token expired due to password change.")

    request.state.claims = claims
    request.state.principal = principal
    return principal


class RequireRole:
    """Guard factory: the access token must list role_id among its roles."""

    def __init__(self, role_id: str) -> None:
        self.role_id = role_id

    def __call__(self, request: Request, principal: Principal = Depends(get_current_principal)) -> Principal:
        if self.role_id not in request.state.claims.get("roles", []):
            logger.info("Principal %s lacks role %s", principal.id, self.role_id)
            raise Forbidden("Insufficient role.")
        return principal


class RequirePermission:
    """Guard factory: the access token must list permission among its permissions."""

    def __init__(self, permission: str) -> None:
        self.permission = permission

    def __call__(self, request: Request, principal: Principal = Depends(get_current_principal)) -> Principal:
        if self.permission not in request.state.claims.get("permissions", []):
            logger.info("Principal %s lacks permission %s", principal.id, self.permission)
            raise Forbidden(f"Missing permission: {self.permission}.")
        return principal


class AdminRoleCache:
    """Single-slot cache for the admin role id.

    Filled on the first get() and kept for the lifetime of the process.
    Concurrent first calls may both query the store; each writes the same id.
    """

    def __init__(self, store: PrincipalStore, role_name: str = "admin") -> None:
        self._store = store
        self.role_name = role_name
        self._role_id: str | None = None

    def get(self) -> str:
        if self._role_id is None:
            role = self._store.find_role_by_name(self.role_name)
            if role is None:
                logger.error("Admin role %r not found -- seed data may be missing", self.role_name)
                raise ConfigurationError(f"Admin role {self.role_name!r} is not seeded.")
            self._role_id = role.id
        return self._role_id


class RequireAdmin:
    """Guard: the access token must carry the system admin role."""

    def __call__(self, request: Request, principal: Principal = Depends(get_current_principal)) -> Principal:
        admin_role_id = request.app.state.admin_role_cache.get()
        if admin_role_id not in request.state.claims.get("roles", []):
            logger.info("Principal %s denied admin access", principal.id)
            raise Forbidden("Admin access required.")
        return principal


require_admin = RequireAdmin()
