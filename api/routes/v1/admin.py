"""
api/routes/v1/admin.py -- Role, permission and principal administration endpoints.

Every route requires the admin role (require_admin) AND the permission for the
resource it touches (users:manage, roles:manage, permissions:manage). An
admin role stripped of a permission loses the matching routes.

Routes:
  GET    /api/v1/admin/permissions
  POST   /api/v1/admin/permissions
  PATCH  /api/v1/admin/permissions/{id}
  DELETE /api/v1/admin/permissions/{id}
  GET    /api/v1/admin/roles
  POST   /api/v1/admin/roles
  PATCH  /api/v1/admin/roles/{id}
  PUT    /api/v1/admin/roles/{id}/permissions
  DELETE /api/v1/admin/roles/{id}
  GET    /api/v1/admin/users?email=&username=
  POST   /api/v1/admin/users
  PUT    /api/v1/admin/users/{id}/roles
  POST   /api/v1/admin/users/{id}/ban
  POST   /api/v1/admin/users/{id}/unban
  DELETE /api/v1/admin/users/{id}
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response

from api.models import (
    AdminPrincipalCreate,
    PermissionCreate,
    PermissionPatch,
    PermissionResponse,
    PrincipalResponse,
    PrincipalRolesUpdate,
    RoleCreate,
    RolePatch,
    RolePermissionsUpdate,
    RoleResponse,
)
from auth.admin import AdminService
from auth.dependencies import RequirePermission, require_admin
from auth.models import Permission, Principal, Role

router = APIRouter(prefix="/admin", dependencies=[Depends(require_admin)])

_manage_users = [Depends(RequirePermission("users:manage"))]
_manage_roles = [Depends(RequirePermission("roles:manage"))]
_manage_permissions = [Depends(RequirePermission("permissions:manage"))]


def _admin(request: Request) -> AdminService:
    return request.app.state.admin


def _permission_out(p: Permission) -> PermissionResponse:
    return PermissionResponse(id=p.id, name=p.name, category=p.category, description=p.description)


def _role_out(r: Role) -> RoleResponse:
    return RoleResponse(id=r.id, name=r.name, description=r.description, permission_ids=r.permission_ids)


def _principal_out(p: Principal) -> PrincipalResponse:
    return PrincipalResponse(
        id=p.id,
        kind=p.kind.value,
        email=p.email,
        username=p.username,
        first_name=p.first_name,
        last_name=p.last_name,
        is_verified=p.is_verified,
        is_banned=p.is_banned,
        role_ids=p.role_ids,
        providers=p.linked_providers(),
        locked_until=p.lock_until.isoformat() if p.lock_until else None,
        created_at=p.created_at,
    )


# ---------------------------------------------------------------------------
# Permissions
# ---------------------------------------------------------------------------


@router.get("/permissions", response_model=list[PermissionResponse], dependencies=_manage_permissions)
async def list_permissions(request: Request) -> list[PermissionResponse]:
    return [_permission_out(p) for p in _admin(request).list_permissions()]


@router.post("/permissions", response_model=PermissionResponse, status_code=201, dependencies=_manage_permissions)
async def create_permission(request: Request, body: PermissionCreate) -> PermissionResponse:
    return _permission_out(_admin(request).create_permission(body.name, body.category, body.description))


@router.patch("/permissions/{permission_id}", response_model=PermissionResponse, dependencies=_manage_permissions)
async def update_permission(request: Request, permission_id: str, body: PermissionPatch) -> PermissionResponse:
    return _permission_out(_admin(request).update_permission(permission_id, **body.model_dump(exclude_unset=True)))


@router.delete("/permissions/{permission_id}", status_code=204, dependencies=_manage_permissions)
async def delete_permission(request: Request, permission_id: str) -> Response:
    _admin(request).delete_permission(permission_id)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------


@router.get("/roles", response_model=list[RoleResponse], dependencies=_manage_roles)
async def list_roles(request: Request) -> list[RoleResponse]:
    return [_role_out(r) for r in _admin(request).list_roles()]


@router.post("/roles", response_model=RoleResponse, status_code=201, dependencies=_manage_roles)
async def create_role(request: Request, body: RoleCreate) -> RoleResponse:
    return _role_out(_admin(request).create_role(body.name, body.description, body.permission_ids))


@router.patch("/roles/{role_id}", response_model=RoleResponse, dependencies=_manage_roles)
async def update_role(request: Request, role_id: str, body: RolePatch) -> RoleResponse:
    return _role_out(_admin(request).update_role(role_id, **body.model_dump(exclude_unset=True)))


@router.put("/roles/{role_id}/permissions", response_model=RoleResponse, dependencies=_manage_roles)
async def set_role_permissions(request: Request, role_id: str, body: RolePermissionsUpdate) -> RoleResponse:
    return _role_out(_admin(request).set_role_permissions(role_id, body.permission_ids))


@router.delete("/roles/{role_id}", status_code=204, dependencies=_manage_roles)
async def delete_role(request: Request, role_id: str) -> Response:
    _admin(request).delete_role(role_id)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Principals
# ---------------------------------------------------------------------------


@router.get("/users", response_model=list[PrincipalResponse], dependencies=_manage_users)
async def list_users(
    request: Request,
    email: Optional[str] = Query(default=None, max_length=255),
    username: Optional[str] = Query(default=None, max_length=64),
) -> list[PrincipalResponse]:
    return [_principal_out(p) for p in _admin(request).list_principals(email=email, username=username)]


@router.post("/users", response_model=PrincipalResponse, status_code=201, dependencies=_manage_users)
async def create_user(request: Request, body: AdminPrincipalCreate) -> PrincipalResponse:
    principal = _admin(request).create_principal(
        email=body.email,
        password=body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        username=body.username,
        role_ids=body.role_ids,
    )
    return _principal_out(principal)


@router.put("/users/{principal_id}/roles", response_model=PrincipalResponse, dependencies=_manage_users)
async def set_user_roles(request: Request, principal_id: str, body: PrincipalRolesUpdate) -> PrincipalResponse:
    return _principal_out(_admin(request).set_principal_roles(principal_id, body.role_ids))


@router.post("/users/{principal_id}/ban", response_model=PrincipalResponse, dependencies=_manage_users)
async def ban_user(request: Request, principal_id: str) -> PrincipalResponse:
    return _principal_out(_admin(request).set_banned(principal_id, True))


@router.post("/users/{principal_id}/unban", response_model=PrincipalResponse, dependencies=_manage_users)
async def unban_user(request: Request, principal_id: str) -> PrincipalResponse:
    return _principal_out(_admin(request).set_banned(principal_id, False))


@router.delete("/users/{principal_id}", status_code=204, dependencies=_manage_users)
async def delete_user(request: Request, principal_id: str) -> Response:
    _admin(request).delete_principal(principal_id)
    return Response(status_code=204)
