"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and services do
the work; these only carry shape.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class LockState(str, Enum):
    UNLOCKED = "unlocked"
    LOCKED = "locked"


@dataclass
class User:
    """A library account.

    role_id references a Role row by id; the user does not own the role.
    user_type is a coarse label copied into the session at login. It is only
    consulted by the admin fallback in AuthorizationService, never as the
    primary permission source.

    locked_until / password_created_at / created_at / last_login are UTC ISO
    8601 strings as stored.
    """

    username: str
    email: str
    id: int | None = None
    password_hash: str | None = None
    phone: str | None = None
    address: str | None = None
    role_id: int | None = None
    role_name: str | None = None
    user_type: str = "student"
    is_active: bool = True
    failed_login_attempts: int = 0
    locked_until: str | None = None
    password_created_at: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    last_login: str | None = None


@dataclass
class Role:
    """A named bundle of permissions stored as one integer bitmask."""

    name: str
    permissions: int = 0
    id: int | None = None
    display_name: str | None = None
    description: str | None = None
    is_active: bool = True
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class PasswordResetToken:
    """A single-use password reset credential.

    token is 32 random bytes hex-encoded (64 chars). It is valid while
    used is False and expires_at is in the future.
    """

    token: str
    user_id: int
    expires_at: str
    used: bool = False
    id: int | None = None
    created_at: str | None = None


@dataclass(frozen=True)
class SessionUser:
    """Identity carried by the session cookie or bearer JWT.

    Built without a database round trip, so the permission check can still
    see user_type when the store is unavailable.
    """

    id: int
    username: str
    user_type: str
    role_id: int | None = None
