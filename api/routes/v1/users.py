"""
api/routes/v1/users.py -- Staff and self-service views of member accounts.

Routes:
  GET /api/v1/users                   -- member directory (USERS_READ)
  GET /api/v1/users/{id}              -- profile (that user, or SYSTEM_ADMIN)
  GET /api/v1/users/{id}/permissions  -- effective permissions (that user, or SYSTEM_ADMIN)
  GET /api/v1/users/{id}/lock         -- lockout state (librarian or admin)

Account changes stay under /admin; nothing here writes.
"""

from __future__ import annotations

import math

from fastapi import APIRouter, Depends, Query, Request

from api.models import (
    LockStatusResponse,
    MemberListResponse,
    MemberSummary,
    MeResponse,
    Pagination,
    PermissionResponse,
)
from auth.authorization import AuthorizationService
from auth.dependencies import require_librarian, require_owner_or_admin, require_permission_by_name
from auth.errors import NotFound
from auth.guard import AccountSecurityGuard
from auth.models import User
from auth.store import UserStore

router = APIRouter(prefix="/users")

require_self_or_admin = require_owner_or_admin("user_id")


@router.get(
    "",
    response_model=MemberListResponse,
    dependencies=[Depends(require_permission_by_name("USERS_READ"))],
)
def list_members(
    request: Request,
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    search: str = Query("", max_length=100),
) -> MemberListResponse:
    store: UserStore = request.app.state.user_store
    total = store.count_users(search=search)
    users = store.list_users(limit=per_page, offset=(page - 1) * per_page, search=search)
    return MemberListResponse(
        members=[
            MemberSummary(id=u.id, username=u.username, email=u.email, role_name=u.role_name, user_type=u.user_type)
            for u in users
        ],
        pagination=Pagination(
            current_page=page,
            total_pages=max(1, math.ceil(total / per_page)),
            total_items=total,
            items_per_page=per_page,
        ),
    )


@router.get("/{user_id}", response_model=MeResponse, dependencies=[Depends(require_self_or_admin)])
def get_profile(request: Request, user_id: int) -> MeResponse:
    """Profile of one active account, with its effective permission names."""
    user = _require_active(request, user_id)
    authz: AuthorizationService = request.app.state.authz
    return MeResponse(
        user_id=user.id,
        username=user.username,
        email=user.email,
        user_type=user.user_type,
        role_id=user.role_id,
        role_name=user.role_name,
        permissions=[p.name for p in authz.list_permissions(user.id)],
        phone=user.phone,
        address=user.address,
        last_login=user.last_login,
    )


@router.get(
    "/{user_id}/permissions",
    response_model=list[PermissionResponse],
    dependencies=[Depends(require_self_or_admin)],
)
def get_user_permissions(request: Request, user_id: int) -> list[PermissionResponse]:
    user = _require_active(request, user_id)
    authz: AuthorizationService = request.app.state.authz
    return [
        PermissionResponse(name=p.name, bit_value=p.bit_value, module=p.module, display_name=p.display_name)
        for p in authz.list_permissions(user.id)
    ]


@router.get("/{user_id}/lock", response_model=LockStatusResponse, dependencies=[Depends(require_librarian)])
def get_lock_status(request: Request, user_id: int) -> LockStatusResponse:
    """Whether the account is locked out. Reading it clears an expired lock."""
    _require_active(request, user_id)
    guard: AccountSecurityGuard = request.app.state.guard
    state = guard.state(user_id)
    store: UserStore = request.app.state.user_store
    attempts, locked_until = store.get_lock_info(user_id)
    return LockStatusResponse(
        user_id=user_id,
        state=state.value,
        failed_login_attempts=attempts,
        locked_until=locked_until,
    )


def _require_active(request: Request, user_id: int) -> User:
    store: UserStore = request.app.state.user_store
    user = store.get_by_id(user_id)
    if user is None or not user.is_active:
        raise NotFound("User not found.")
    return user
