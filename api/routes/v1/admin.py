"""
api/routes/v1/admin.py -- User, role and permission administration.

Every route requires SYSTEM_ADMIN (require_admin), which goes through
AuthorizationService and therefore honours the admin session fallback when
the permission lookup fails.

Routes:
  GET    /api/v1/admin/users                          -- paginated, filterable list
  POST   /api/v1/admin/users                          -- create an account
  GET    /api/v1/admin/users/{id}
  PATCH  /api/v1/admin/users/{id}
  DELETE /api/v1/admin/users/{id}                     -- soft delete (is_active = 0)
  POST   /api/v1/admin/users/{id}/reset-password      -- set a password, clear lockout
  POST   /api/v1/admin/users/{id}/unlock
  GET    /api/v1/admin/roles
  POST   /api/v1/admin/roles
  GET    /api/v1/admin/roles/{id}
  PATCH  /api/v1/admin/roles/{id}
  DELETE /api/v1/admin/roles/{id}                     -- soft delete, refused while in use
  POST   /api/v1/admin/roles/{id}/permissions/{name}  -- grant one permission
  DELETE /api/v1/admin/roles/{id}/permissions/{name}  -- revoke one permission
  GET    /api/v1/admin/permissions                    -- catalog, optional ?module=
  GET    /api/v1/admin/permissions/modules
  GET    /api/v1/admin/statistics                     -- active users per role

Lock-out guards:
  An admin cannot deactivate or delete their own account.
  The last active SYSTEM_ADMIN account cannot be deactivated, deleted or moved
  to a role without SYSTEM_ADMIN.
  The built-in "admin" role cannot lose SYSTEM_ADMIN and cannot be deleted.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response

from api.models import (
    AdminPasswordReset,
    AdminUserCreate,
    AdminUserPatch,
    MessageResponse,
    Pagination,
    PermissionResponse,
    RoleCreate,
    RolePatch,
    RoleResponse,
    RoleStat,
    StatisticsResponse,
    UserListResponse,
    UserResponse,
    UserTypeEnum,
)
from auth import permissions
from auth.dependencies import require_admin
from auth.errors import NotFound
from auth.guard import AccountSecurityGuard
from auth.models import Role, SessionUser, User
from auth.permissions import Permission, PermissionInfo
from auth.store import UserStore, from_iso
from auth.tokens import hash_password

logger = logging.getLogger("libraryauth.api")

ADMIN_ROLE_NAME = "admin"

router = APIRouter(prefix="/admin", dependencies=[Depends(require_admin)])


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


@router.get("/users", response_model=UserListResponse)
def list_users(
    request: Request,
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    search: str = Query("", max_length=100),
    role_id: Optional[int] = Query(None, ge=1),
    user_type: Optional[UserTypeEnum] = None,
) -> UserListResponse:
    """Active users, newest first. search matches username or email."""
    store: UserStore = request.app.state.user_store
    type_filter = user_type.value if user_type else None
    total = store.count_users(search=search, role_id=role_id, user_type=type_filter)
    users = store.list_users(
        limit=per_page,
        offset=(page - 1) * per_page,
        search=search,
        role_id=role_id,
        user_type=type_filter,
    )
    return UserListResponse(
        users=[_user_to_response(u) for u in users],
        pagination=Pagination(
            current_page=page,
            total_pages=max(1, math.ceil(total / per_page)),
            total_items=total,
            items_per_page=per_page,
        ),
    )


@router.post("/users", response_model=UserResponse, status_code=201)
def create_user(request: Request, body: AdminUserCreate) -> UserResponse:
    """Create an account. Without role_id the role named after user_type is used."""
    store: UserStore = request.app.state.user_store

    if body.role_id is not None:
        role = _require_role(store, body.role_id)
    else:
        role = store.get_role_by_name(body.user_type.value)

    if store.username_exists(body.username):
        raise HTTPException(
            status_code=409,
            detail={"code": "username_taken", "message": "That username is already taken."},
        )
    if store.email_exists(body.email):
        raise HTTPException(
            status_code=409,
            detail={"code": "email_taken", "message": "That email is already registered."},
        )

    user_id = store.create_user(
        User(
            username=body.username,
            email=body.email,
            password_hash=hash_password(body.password),
            phone=body.phone,
            address=body.address,
            role_id=role.id if role else None,
            user_type=body.user_type.value,
        )
    )
    logger.info("Admin created user %s (id=%s)", body.username, user_id)
    return _user_to_response(store.get_by_id(user_id))


@router.get("/users/{user_id}", response_model=UserResponse)
def get_user(request: Request, user_id: int) -> UserResponse:
    store: UserStore = request.app.state.user_store
    return _user_to_response(_require_user(store, user_id))


@router.patch("/users/{user_id}", response_model=UserResponse)
def update_user(
    request: Request,
    user_id: int,
    body: AdminUserPatch,
    current_user: SessionUser = Depends(require_admin),
) -> UserResponse:
    """Update profile fields, role, type or active status."""
    store: UserStore = request.app.state.user_store
    target = _require_user(store, user_id)

    updates = body.model_dump(exclude_none=True)
    if "user_type" in updates:
        updates["user_type"] = body.user_type.value
    if not updates:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )

    loses_admin = False
    if body.role_id is not None:
        new_role = _require_role(store, body.role_id)
        loses_admin = not permissions.has_permission(new_role.permissions, Permission.SYSTEM_ADMIN)
    if body.is_active is False:
        if target.id == current_user.id:
            raise HTTPException(
                status_code=400,
                detail={"code": "self_deactivation", "message": "You cannot deactivate your own account."},
            )
        loses_admin = True
    if loses_admin:
        _guard_last_admin(store, target)

    store.update_user(user_id, **updates)
    logger.info("Admin %s updated user %s fields=%s", current_user.id, user_id, sorted(updates))
    return _user_to_response(store.get_by_id(user_id))


@router.delete("/users/{user_id}", status_code=204)
def delete_user(
    request: Request,
    user_id: int,
    current_user: SessionUser = Depends(require_admin),
) -> Response:
    """Soft delete. The row is kept; login and permissions stop working."""
    store: UserStore = request.app.state.user_store
    target = _require_user(store, user_id)
    if target.id == current_user.id:
        raise HTTPException(
            status_code=400,
            detail={"code": "self_deactivation", "message": "You cannot delete your own account."},
        )
    _guard_last_admin(store, target)
    store.deactivate_user(user_id)
    logger.info("Admin %s deactivated user %s", current_user.id, user_id)
    return Response(status_code=204)


@router.post("/users/{user_id}/reset-password", response_model=MessageResponse)
def admin_reset_password(request: Request, user_id: int, body: AdminPasswordReset) -> MessageResponse:
    """Set a new password for the user and clear any lockout."""
    store: UserStore = request.app.state.user_store
    _require_user(store, user_id)
    store.set_password(user_id, hash_password(body.new_password), clear_lockout=True)
    logger.info("Admin reset the password of user %s", user_id)
    return MessageResponse(message="Password has been reset.")


@router.post("/users/{user_id}/unlock", response_model=MessageResponse)
def unlock_user(request: Request, user_id: int) -> MessageResponse:
    guard: AccountSecurityGuard = request.app.state.guard
    guard.unlock(user_id)
    return MessageResponse(message="Account unlocked.")


# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------


@router.get("/roles", response_model=list[RoleResponse])
def list_roles(request: Request) -> list[RoleResponse]:
    store: UserStore = request.app.state.user_store
    return [_role_to_response(r) for r in store.list_roles()]


@router.post("/roles", response_model=RoleResponse, status_code=201)
def create_role(request: Request, body: RoleCreate) -> RoleResponse:
    """Create a role from a list of permission names."""
    store: UserStore = request.app.state.user_store
    mask = _names_to_mask(body.permissions)
    if store.get_role_by_name(body.name) is not None:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "A role with that name already exists."},
        )
    role_id = store.create_role(
        Role(name=body.name, display_name=body.display_name, description=body.description, permissions=mask)
    )
    logger.info("Role %s created (id=%s, permissions=%d)", body.name, role_id, mask)
    return _role_to_response(_require_role(store, role_id))


@router.get("/roles/{role_id}", response_model=RoleResponse)
def get_role(request: Request, role_id: int) -> RoleResponse:
    store: UserStore = request.app.state.user_store
    return _role_to_response(_require_role(store, role_id))


@router.patch("/roles/{role_id}", response_model=RoleResponse)
def update_role(request: Request, role_id: int, body: RolePatch) -> RoleResponse:
    """Rename or re-describe a role, or replace its whole permission set."""
    store: UserStore = request.app.state.user_store
    role = _require_role(store, role_id)

    updates = body.model_dump(exclude_none=True)
    if body.permissions is not None:
        updates["permissions"] = _names_to_mask(body.permissions)
        _guard_admin_role(role, updates["permissions"])
    if "name" in updates and role.name == ADMIN_ROLE_NAME and updates["name"] != ADMIN_ROLE_NAME:
        raise HTTPException(
            status_code=400,
            detail={"code": "protected_role", "message": "The admin role cannot be renamed."},
        )
    if not updates:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )

    store.update_role(role_id, **updates)
    logger.info("Role %s updated fields=%s", role_id, sorted(updates))
    return _role_to_response(_require_role(store, role_id))


@router.delete("/roles/{role_id}", status_code=204)
def delete_role(request: Request, role_id: int) -> Response:
    """Soft delete a role that no active user holds."""
    store: UserStore = request.app.state.user_store
    role = _require_role(store, role_id)
    if role.name == ADMIN_ROLE_NAME:
        raise HTTPException(
            status_code=400,
            detail={"code": "protected_role", "message": "The admin role cannot be deleted."},
        )
    if store.count_users(role_id=role_id) > 0:
        raise HTTPException(
            status_code=400,
            detail={"code": "role_in_use", "message": "Reassign this role's users before deleting it."},
        )
    store.deactivate_role(role_id)
    logger.info("Role %s deactivated", role_id)
    return Response(status_code=204)


@router.post("/roles/{role_id}/permissions/{name}", response_model=RoleResponse)
def grant_permission(request: Request, role_id: int, name: str) -> RoleResponse:
    """OR one catalog bit into the role. Granting a bit the role has is a no-op."""
    store: UserStore = request.app.state.user_store
    bit = permissions.resolve(name)
    if store.add_role_permission(role_id, bit) is None:
        raise NotFound("Role not found.")
    logger.info("Granted %s to role %s", name.upper(), role_id)
    return _role_to_response(_require_role(store, role_id))


@router.delete("/roles/{role_id}/permissions/{name}", response_model=RoleResponse)
def revoke_permission(request: Request, role_id: int, name: str) -> RoleResponse:
    """Clear one catalog bit from the role. Revoking an absent bit is a no-op."""
    store: UserStore = request.app.state.user_store
    bit = permissions.resolve(name)
    role = _require_role(store, role_id)
    _guard_admin_role(role, permissions.remove_permission(role.permissions, bit))
    if store.remove_role_permission(role_id, bit) is None:
        raise NotFound("Role not found.")
    logger.info("Revoked %s from role %s", name.upper(), role_id)
    return _role_to_response(_require_role(store, role_id))


# ---------------------------------------------------------------------------
# Permission catalog and statistics
# ---------------------------------------------------------------------------


@router.get("/permissions", response_model=list[PermissionResponse])
def list_permissions(module: Optional[str] = Query(None, max_length=50)) -> list[PermissionResponse]:
    entries = permissions.by_module(module.lower()) if module else permissions.all_permissions()
    return [_permission_to_response(p) for p in entries]


@router.get("/permissions/modules", response_model=list[str])
def list_permission_modules() -> list[str]:
    return permissions.modules()


@router.get("/statistics", response_model=StatisticsResponse)
def statistics(request: Request) -> StatisticsResponse:
    store: UserStore = request.app.state.user_store
    return StatisticsResponse(users_by_role=[RoleStat(**row) for row in store.user_statistics()])


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _require_user(store: UserStore, user_id: int) -> User:
    user = store.get_by_id(user_id)
    if user is None:
        raise NotFound("User not found.")
    return user


def _require_role(store: UserStore, role_id: int) -> Role:
    role = store.get_role(role_id)
    if role is None:
        raise NotFound("Role not found.")
    return role


def _names_to_mask(names: list[str]) -> int:
    try:
        return permissions.names_to_bitmask(names)
    except NotFound as exc:
        raise HTTPException(
            status_code=400,
            detail={"code": "unknown_permission", "message": str(exc)},
        ) from exc


def _guard_last_admin(store: UserStore, target: User) -> None:
    """400 if target is an active admin and the only one left."""
    mask = store.get_user_permissions(target.id)
    if mask is None or not permissions.has_permission(mask, Permission.SYSTEM_ADMIN):
        return
    if store.count_active_admins() <= 1:
        raise HTTPException(
            status_code=400,
            detail={"code": "last_admin", "message": "Cannot remove the last active admin account."},
        )


def _guard_admin_role(role: Role, new_mask: int) -> None:
    if role.name == ADMIN_ROLE_NAME and not permissions.has_permission(new_mask, Permission.SYSTEM_ADMIN):
        raise HTTPException(
            status_code=400,
            detail={"code": "protected_role", "message": "The admin role must keep SYSTEM_ADMIN."},
        )


def _is_locked_now(locked_until: str | None) -> bool:
    return locked_until is not None and from_iso(locked_until) > datetime.now(timezone.utc)


def _user_to_response(user: User | None) -> UserResponse:
    if user is None:
        raise HTTPException(
            status_code=500,
            detail={"code": "internal_error", "message": "User not found after write."},
        )
    return UserResponse(
        id=user.id,
        username=user.username,
        email=user.email,
        phone=user.phone,
        address=user.address,
        role_id=user.role_id,
        role_name=user.role_name,
        user_type=user.user_type,
        is_active=user.is_active,
        failed_login_attempts=user.failed_login_attempts,
        locked=_is_locked_now(user.locked_until),
        locked_until=user.locked_until,
        created_at=user.created_at or "",
        last_login=user.last_login,
    )


def _role_to_response(role: Role) -> RoleResponse:
    return RoleResponse(
        id=role.id,
        name=role.name,
        display_name=role.display_name,
        description=role.description,
        permissions=role.permissions,
        permission_names=[p.name for p in permissions.permissions_to_names(role.permissions)],
        created_at=role.created_at or "",
        updated_at=role.updated_at,
    )


def _permission_to_response(info: PermissionInfo) -> PermissionResponse:
    return PermissionResponse(
        name=info.name,
        bit_value=info.bit_value,
        module=info.module,
        display_name=info.display_name,
    )
