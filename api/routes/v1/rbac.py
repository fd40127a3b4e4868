"""
api/routes/v1/rbac.py -- Roles, modules, permissions and the grant matrix (ROLE_MANAGER).

Routes (all under /api/v1):
  GET/POST          /roles                      VIEW_LIST / CREATE
  GET/PATCH/DELETE  /roles/{id}                 VIEW_DETAIL / EDIT / DELETE
  GET/PUT           /roles/{id}/permissions     VIEW_DETAIL / EDIT
  POST              /roles/check-permission     any authenticated user
  GET/POST          /modules                    VIEW_LIST / CREATE
  GET/PATCH/DELETE  /modules/{id}               VIEW_DETAIL / EDIT / DELETE
  GET/POST          /permissions                VIEW_LIST / CREATE
  GET/PATCH/DELETE  /permissions/{id}           VIEW_DETAIL / EDIT / DELETE

Codes are upper-cased on write and must be unique (409). System roles
(ADMIN) cannot be deleted or deactivated.

check-permission answers from the DB grant tables, exactly as the
RequirePermission policy would, so the admin SPA can hide controls the caller
would be refused anyway.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from sqlalchemy.exc import IntegrityError

from api.models import (
    CatalogEntryCreate,
    CatalogEntryPatch,
    CatalogEntryResponse,
    CheckPermissionRequest,
    CheckPermissionResponse,
    RoleCreate,
    RolePatch,
    RolePermissionResponse,
    RolePermissionsUpdate,
    RoleResponse,
)
from auth.constants import ModuleCodes, PermissionCodes
from auth.dependencies import get_current_user, require_permission
from auth.models import Module, Permission, Role, User
from auth.store import UserStore

router = APIRouter()

_M = ModuleCodes.ROLE_MANAGER


def _not_found(entity: str) -> HTTPException:
    return HTTPException(status_code=404, detail={"code": "not_found", "message": f"{entity} not found."})


def _conflict(entity: str) -> HTTPException:
    return HTTPException(
        status_code=409,
        detail={"code": "conflict", "message": f"A {entity.lower()} with that code already exists."},
    )


# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------


@router.get("/roles", response_model=list[RoleResponse])
def list_roles(
    request: Request,
    current_user: User = Depends(require_permission(_M, PermissionCodes.VIEW_LIST)),
) -> list[RoleResponse]:
    return [RoleResponse.from_role(r) for r in request.app.state.user_store.list_roles()]


@router.post("/roles/check-permission", response_model=CheckPermissionResponse)
def check_permission(
    request: Request,
    body: CheckPermissionRequest,
    current_user: User = Depends(get_current_user),
) -> CheckPermissionResponse:
    module_code = body.module_code.upper()
    permission_code = body.permission_code.upper()
    allowed = request.app.state.user_store.has_permission(current_user.id, module_code, permission_code)
    return CheckPermissionResponse(module_code=module_code, permission_code=permission_code, allowed=allowed)


@router.get("/roles/{role_id}", response_model=RoleResponse)
def get_role(
    request: Request,
    role_id: int,
    current_user: User = Depends(require_permission(_M, PermissionCodes.VIEW_DETAIL)),
) -> RoleResponse:
    role = request.app.state.user_store.get_role(role_id)
    if role is None:
        raise _not_found("Role")
    return RoleResponse.from_role(role)


@router.post("/roles", response_model=RoleResponse, status_code=201)
def create_role(
    request: Request,
    body: RoleCreate,
    current_user: User = Depends(require_permission(_M, PermissionCodes.CREATE)),
) -> RoleResponse:
    user_store: UserStore = request.app.state.user_store
    if user_store.get_role_by_code(body.code) is not None:
        raise _conflict("Role")
    try:
        role_id = user_store.create_role(Role(code=body.code, name=body.name, is_active=body.is_active))
    except IntegrityError as exc:
        raise _conflict("Role") from exc
    return RoleResponse.from_role(user_store.get_role(role_id))


@router.patch("/roles/{role_id}", response_model=RoleResponse)
def update_role(
    request: Request,
    role_id: int,
    body: RolePatch,
    current_user: User = Depends(require_permission(_M, PermissionCodes.EDIT)),
) -> RoleResponse:
    user_store: UserStore = request.app.state.user_store
    role = user_store.get_role(role_id)
    if role is None:
        raise _not_found("Role")
    if role.is_system and body.is_active is False:
        raise HTTPException(
            status_code=400,
            detail={"code": "system_role", "message": "System roles cannot be deactivated."},
        )
    user_store.update_role(role_id, name=body.name, is_active=body.is_active)
    return RoleResponse.from_role(user_store.get_role(role_id))


@router.delete("/roles/{role_id}", status_code=204)
def delete_role(
    request: Request,
    role_id: int,
    current_user: User = Depends(require_permission(_M, PermissionCodes.DELETE)),
) -> Response:
    user_store: UserStore = request.app.state.user_store
    role = user_store.get_role(role_id)
    if role is None:
        raise _not_found("Role")
    if role.is_system:
        raise HTTPException(
            status_code=400,
            detail={"code": "system_role", "message": "System roles cannot be deleted."},
        )
    user_store.delete_role(role_id)
    return Response(status_code=204)


@router.get("/roles/{role_id}/permissions", response_model=list[RolePermissionResponse])
def get_role_permissions(
    request: Request,
    role_id: int,
    current_user: User = Depends(require_permission(_M, PermissionCodes.VIEW_DETAIL)),
) -> list[RolePermissionResponse]:
    user_store: UserStore = request.app.state.user_store
    if user_store.get_role(role_id) is None:
        raise _not_found("Role")
    return [RolePermissionResponse.from_grant(g) for g in user_store.get_role_permissions(role_id)]


@router.put("/roles/{role_id}/permissions", response_model=list[RolePermissionResponse])
def set_role_permissions(
    request: Request,
    role_id: int,
    body: RolePermissionsUpdate,
    current_user: User = Depends(require_permission(_M, PermissionCodes.EDIT)),
) -> list[RolePermissionResponse]:
    """Bulk upsert of grant cells. Cells not listed keep their current state."""
    user_store: UserStore = request.app.state.user_store
    if user_store.get_role(role_id) is None:
        raise _not_found("Role")
    module_ids = {m.id for m in user_store.list_modules()}
    permission_ids = {p.id for p in user_store.list_permissions()}
    for item in body.items:
        if item.module_id not in module_ids or item.permission_id not in permission_ids:
            raise HTTPException(
                status_code=400,
                detail={
                    "code": "unknown_grant",
                    "message": f"Unknown module {item.module_id} or permission {item.permission_id}.",
                },
            )
    user_store.set_role_permissions(role_id, [(i.module_id, i.permission_id, i.is_active) for i in body.items])
    return [RolePermissionResponse.from_grant(g) for g in user_store.get_role_permissions(role_id)]


# ---------------------------------------------------------------------------
# Modules
# ---------------------------------------------------------------------------


@router.get("/modules", response_model=list[CatalogEntryResponse])
def list_modules(
    request: Request,
    current_user: User = Depends(require_permission(_M, PermissionCodes.VIEW_LIST)),
) -> list[CatalogEntryResponse]:
    return [CatalogEntryResponse.from_entry(m) for m in request.app.state.user_store.list_modules()]


@router.get("/modules/{module_id}", response_model=CatalogEntryResponse)
def get_module(
    request: Request,
    module_id: int,
    current_user: User = Depends(require_permission(_M, PermissionCodes.VIEW_DETAIL)),
) -> CatalogEntryResponse:
    module = request.app.state.user_store.get_module(module_id)
    if module is None:
        raise _not_found("Module")
    return CatalogEntryResponse.from_entry(module)


@router.post("/modules", response_model=CatalogEntryResponse, status_code=201)
def create_module(
    request: Request,
    body: CatalogEntryCreate,
    current_user: User = Depends(require_permission(_M, PermissionCodes.CREATE)),
) -> CatalogEntryResponse:
    user_store: UserStore = request.app.state.user_store
    try:
        module_id = user_store.create_module(Module(code=body.code, name=body.name, description=body.description))
    except IntegrityError as exc:
        raise _conflict("Module") from exc
    return CatalogEntryResponse.from_entry(user_store.get_module(module_id))


@router.patch("/modules/{module_id}", response_model=CatalogEntryResponse)
def update_module(
    request: Request,
    module_id: int,
    body: CatalogEntryPatch,
    current_user: User = Depends(require_permission(_M, PermissionCodes.EDIT)),
) -> CatalogEntryResponse:
    user_store: UserStore = request.app.state.user_store
    if not user_store.update_module(module_id, name=body.name, description=body.description):
        raise _not_found("Module")
    return CatalogEntryResponse.from_entry(user_store.get_module(module_id))


@router.delete("/modules/{module_id}", status_code=204)
def delete_module(
    request: Request,
    module_id: int,
    current_user: User = Depends(require_permission(_M, PermissionCodes.DELETE)),
) -> Response:
    if not request.app.state.user_store.delete_module(module_id):
        raise _not_found("Module")
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Permissions
# ---------------------------------------------------------------------------


@router.get("/permissions", response_model=list[CatalogEntryResponse])
def list_permissions(
    request: Request,
    current_user: User = Depends(require_permission(_M, PermissionCodes.VIEW_LIST)),
) -> list[CatalogEntryResponse]:
    return [CatalogEntryResponse.from_entry(p) for p in request.app.state.user_store.list_permissions()]


@router.get("/permissions/{permission_id}", response_model=CatalogEntryResponse)
def get_permission(
    request: Request,
    permission_id: int,
    current_user: User = Depends(require_permission(_M, PermissionCodes.VIEW_DETAIL)),
) -> CatalogEntryResponse:
    permission = request.app.state.user_store.get_permission(permission_id)
    if permission is None:
        raise _not_found("Permission")
    return CatalogEntryResponse.from_entry(permission)


@router.post("/permissions", response_model=CatalogEntryResponse, status_code=201)
def create_permission(
    request: Request,
    body: CatalogEntryCreate,
    current_user: User = Depends(require_permission(_M, PermissionCodes.CREATE)),
) -> CatalogEntryResponse:
    user_store: UserStore = request.app.state.user_store
    try:
        permission_id = user_store.create_permission(
            Permission(code=body.code, name=body.name, description=body.description)
        )
    except IntegrityError as exc:
        raise _conflict("Permission") from exc
    return CatalogEntryResponse.from_entry(user_store.get_permission(permission_id))


@router.patch("/permissions/{permission_id}", response_model=CatalogEntryResponse)
def update_permission(
    request: Request,
    permission_id: int,
    body: CatalogEntryPatch,
    current_user: User = Depends(require_permission(_M, PermissionCodes.EDIT)),
) -> CatalogEntryResponse:
    user_store: UserStore = request.app.state.user_store
    if not user_store.update_permission(permission_id, name=body.name, description=body.description):
        raise _not_found("Permission")
    return CatalogEntryResponse.from_entry(user_store.get_permission(permission_id))


@router.delete("/permissions/{permission_id}", status_code=204)
def delete_permission(
    request: Request,
    permission_id: int,
    current_user: User = Depends(require_permission(_M, PermissionCodes.DELETE)),
) -> Response:
    if not request.app.state.user_store.delete_permission(permission_id):
        raise _not_found("Permission")
    return Response(status_code=204)
