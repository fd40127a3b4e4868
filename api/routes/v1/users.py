"""
api/routes/v1/users.py -- User administration (USER_MANAGER module).

Routes:
  GET    /api/v1/users           -- list (search, roleCode, isActive)     VIEW_LIST
  GET    /api/v1/users/{id}      -- detail                                VIEW_DETAIL
  POST   /api/v1/users           -- create with role codes                CREATE
  PATCH  /api/v1/users/{id}      -- email, name, phone, active, roles,
                                    support priority level                EDIT
  DELETE /api/v1/users/{id}      -- delete (not yourself)                 DELETE

Guards:
  Self-deactivation and self-deletion are rejected, so an administrator
  cannot lock themselves out.
  Unknown role codes in a create/update are rejected with 400 rather than
  silently dropped.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from sqlalchemy.exc import IntegrityError

from api.models import UserCreate, UserPatch, UserResponse
from auth.constants import ModuleCodes, PermissionCodes
from auth.dependencies import require_permission
from auth.models import User
from auth.policies import normalize_role_codes
from auth.store import UserStore
from auth.tokens import hash_password

router = APIRouter()

_M = ModuleCodes.USER_MANAGER


def _not_found() -> HTTPException:
    return HTTPException(status_code=404, detail={"code": "not_found", "message": "User not found."})


def _validated_roles(user_store: UserStore, codes: list[str]) -> list[str]:
    normalized = normalize_role_codes(codes)
    unknown = [c for c in normalized if user_store.get_role_by_code(c) is None]
    if unknown:
        raise HTTPException(
            status_code=400,
            detail={"code": "unknown_role", "message": f"Unknown role code(s): {', '.join(unknown)}."},
        )
    return normalized


@router.get("/users", response_model=list[UserResponse])
def list_users(
    request: Request,
    search: Optional[str] = Query(default=None, max_length=100),
    role_code: Optional[str] = Query(default=None, alias="roleCode", max_length=50),
    is_active: Optional[bool] = Query(default=None, alias="isActive"),
    current_user: User = Depends(require_permission(_M, PermissionCodes.VIEW_LIST)),
) -> list[UserResponse]:
    user_store: UserStore = request.app.state.user_store
    users = user_store.list_users(search=search, role_code=role_code, is_active=is_active)
    return [UserResponse.from_user(u) for u in users]


@router.get("/users/{user_id}", response_model=UserResponse)
def get_user(
    request: Request,
    user_id: int,
    current_user: User = Depends(require_permission(_M, PermissionCodes.VIEW_DETAIL)),
) -> UserResponse:
    user = request.app.state.user_store.get_by_id(user_id)
    if user is None:
        raise _not_found()
    return UserResponse.from_user(user)


@router.post("/users", response_model=UserResponse, status_code=201)
def create_user(
    request: Request,
    body: UserCreate,
    current_user: User = Depends(require_permission(_M, PermissionCodes.CREATE)),
) -> UserResponse:
    user_store: UserStore = request.app.state.user_store
    roles = _validated_roles(user_store, body.role_codes)
    new_user = User(
        username=body.username,
        email=body.email,
        full_name=body.full_name,
        phone=body.phone,
        hashed_password=hash_password(body.password),
        is_active=body.is_active,
    )
    try:
        user_id = user_store.create_user(new_user, role_codes=roles)
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "A user with that username or email already exists."},
        ) from exc
    return UserResponse.from_user(user_store.get_by_id(user_id))


@router.patch("/users/{user_id}", response_model=UserResponse)
def update_user(
    request: Request,
    user_id: int,
    body: UserPatch,
    current_user: User = Depends(require_permission(_M, PermissionCodes.EDIT)),
) -> UserResponse:
    user_store: UserStore = request.app.state.user_store
    target = user_store.get_by_id(user_id)
    if target is None:
        raise _not_found()

    updates = body.model_dump(exclude_unset=True, exclude={"role_codes"})
    if updates.get("is_active") is False and target.id == current_user.id:
        raise HTTPException(
            status_code=400,
            detail={"code": "self_deactivation", "message": "You cannot deactivate your own account."},
        )
    roles = _validated_roles(user_store, body.role_codes) if body.role_codes is not None else None

    try:
        user_store.update_user(user_id, **updates)
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "That email is already used by another account."},
        ) from exc
    if roles is not None:
        user_store.set_user_roles(user_id, roles)
    return UserResponse.from_user(user_store.get_by_id(user_id))


@router.delete("/users/{user_id}", status_code=204)
def delete_user(
    request: Request,
    user_id: int,
    current_user: User = Depends(require_permission(_M, PermissionCodes.DELETE)),
) -> Response:
    if user_id == current_user.id:
        raise HTTPException(
            status_code=400,
            detail={"code": "self_delete", "message": "You cannot delete your own account."},
        )
    if not request.app.state.user_store.delete_user(user_id):
        raise _not_found()
    return Response(status_code=204)
