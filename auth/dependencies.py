"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and authorization.

Identity sources, checked in priority order:
  1. Authorization: Bearer <jwt> header -- API clients.
  2. Session cookie (request.session["user"]) -- set by POST /auth/login.

Both converge on a SessionUser built without a database read.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises HTTP 401 if unauthenticated.
require_permission(bit) wraps get_current_user() and raises HTTP 403 when
AuthorizationService denies the bit. Variants:
  require_permission_by_name(name)  -- same, for a catalog name
  require_any_permission(*bits)     -- at least one of the bits
  require_owner_or_admin(param)     -- the user named by a path param, or SYSTEM_ADMIN
require_admin is require_permission(SYSTEM_ADMIN); require_librarian is
require_any_permission(SYSTEM_ADMIN, BOOKS_CREATE).

Layer rule: no imports from api/.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import HTTPException, Request

from auth import permissions
from auth.authorization import AuthorizationService
from auth.models import SessionUser
from auth.permissions import Permission
from auth.tokens import decode_access_token, session_user_from


def try_get_current_user(request: Request) -> SessionUser | None:
    """Identify the request from a Bearer JWT or the session. Never raises."""
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        payload = decode_access_token(auth_header[7:])
        if payload:
            return session_user_from(payload)

    data = request.session.get("user") if "session" in request.scope else None
    if isinstance(data, dict):
        user = session_user_from(data)
        if user is not None:
            return user

    return None


def get_current_user(request: Request) -> SessionUser:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: SessionUser = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return user


def _forbidden(message: str) -> HTTPException:
    return HTTPException(status_code=403, detail={"code": "forbidden", "message": message})


def require_permission(required_bit: int, message: str = "You do not have permission for this action.") -> Callable:
    """Build a dependency that requires every bit in required_bit.

        @router.post("/books", dependencies=[Depends(require_permission(Permission.BOOKS_CREATE))])
    """

    def dependency(request: Request) -> SessionUser:
        user = get_current_user(request)
        authz: AuthorizationService = request.app.state.authz
        if not authz.has_permission(user.id, int(required_bit), session_user_type=user.user_type):
            raise _forbidden(message)
        return user

    return dependency


def require_permission_by_name(name: str, message: str = "You do not have permission for this action.") -> Callable:
    """require_permission() for a catalog name, e.g. "BOOKS_CREATE".

    The name is resolved when the dependency is built, so a typo fails at
    import with NotFound instead of on the first request.
    """
    return require_permission(permissions.resolve(name), message)


def require_any_permission(*bits: int, message: str = "You do not have permission for this action.") -> Callable:
    """Build a dependency that passes when the user holds at least one of bits."""
    if not bits:
        raise ValueError("require_any_permission() needs at least one permission")

    def dependency(request: Request) -> SessionUser:
        user = get_current_user(request)
        authz: AuthorizationService = request.app.state.authz
        if not any(authz.has_permission(user.id, int(bit), session_user_type=user.user_type) for bit in bits):
            raise _forbidden(message)
        return user

    return dependency


def require_owner_or_admin(param: str = "user_id") -> Callable:
    """Build a dependency for routes about one user: that user, or SYSTEM_ADMIN.

    The target id is read from the path parameter named param.
    """

    def dependency(request: Request) -> SessionUser:
        user = get_current_user(request)
        try:
            target = int(request.path_params[param])
        except (KeyError, ValueError):
            target = None
        if target == user.id:
            return user
        authz: AuthorizationService = request.app.state.authz
        if not authz.has_permission(user.id, int(Permission.SYSTEM_ADMIN), session_user_type=user.user_type):
            raise _forbidden("You can only access your own account.")
        return user

    return dependency


require_admin = require_permission(Permission.SYSTEM_ADMIN, "Admin access required.")

# Catalog or loan staff: admins, or anyone who can add books.
require_librarian = require_any_permission(
    Permission.SYSTEM_ADMIN,
    Permission.BOOKS_CREATE,
    message="Librarian or admin access required.",
)
