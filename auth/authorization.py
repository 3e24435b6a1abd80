"""
auth/authorization.py -- Resolve a user's effective permissions and check them.

user -> role_id -> roles.permissions (bitmask) -> (mask & required) == required

The check fails closed: no user, an inactive user, no role or an inactive
role all answer False.

Admin fallback (deliberate exception to least privilege):
  When the permission lookup itself fails (database outage), a caller whose
  *session* says user_type == "admin" is allowed through. This keeps the
  admin console reachable during an outage at the cost of trusting a
  session claim that was valid at login time. Every use is logged at WARNING.
  It applies only to lookup failures, never to a successful lookup that
  answers "no".
"""

from __future__ import annotations

import logging

from auth import permissions
from auth.errors import StoreError
from auth.permissions import PermissionInfo
from auth.store import UserStore

logger = logging.getLogger("libraryauth.authz")

ADMIN_USER_TYPE = "admin"


class AuthorizationService:
    def __init__(self, store: UserStore) -> None:
        self.store = store

    def get_permissions(self, user_id: int) -> int | None:
        """Role bitmask for an active user, None when there is no active role.

        Store errors propagate.
        """
        return self.store.get_user_permissions(user_id)

    def list_permissions(self, user_id: int) -> list[PermissionInfo]:
        mask = self.get_permissions(user_id)
        return permissions.permissions_to_names(mask) if mask else []

    def has_permission(self, user_id: int, required_bit: int, session_user_type: str | None = None) -> bool:
        try:
            mask = self.store.get_user_permissions(user_id)
        except StoreError:
            if session_user_type == ADMIN_USER_TYPE:
                logger.warning(
                    "Permission lookup failed for user %s; allowing via admin session fallback", user_id
                )
                return True
            logger.exception("Permission lookup failed for user %s; denying", user_id)
            return False
        if mask is None:
            return False
        return permissions.has_permission(mask, required_bit)

    # Name used by route handlers.
    check_permission = has_permission
