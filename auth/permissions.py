"""
auth/permissions.py -- Static permission catalog and bitmask arithmetic.

Every permission owns exactly one bit. A role's permissions column is the OR
of its bits, so a check is a single AND:

    has_permission(mask, Permission.BOOKS_READ)  ->  (mask & 32) == 32

The catalog is append-only: a new permission takes the next free bit and
existing bit values never move, because stored role masks reference them.

Bitmasks are plain Python ints (arbitrary precision) persisted in a BIGINT
column. _build_registry() refuses any bit at or above 2**63 so a stored mask
can never overflow the signed 64-bit column.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntFlag
from typing import Iterable

from auth.errors import NotFound

MAX_BIT_VALUE = 1 << 62


class Permission(IntFlag):
    """Permission flags for role-based access control."""

    # users
    USERS_CREATE = 1 << 0
    USERS_READ = 1 << 1
    USERS_UPDATE = 1 << 2
    USERS_DELETE = 1 << 3
    # books
    BOOKS_CREATE = 1 << 4
    BOOKS_READ = 1 << 5
    BOOKS_UPDATE = 1 << 6
    BOOKS_DELETE = 1 << 7
    # categories
    CATEGORIES_CREATE = 1 << 8
    CATEGORIES_READ = 1 << 9
    CATEGORIES_UPDATE = 1 << 10
    CATEGORIES_DELETE = 1 << 11
    # borrow
    BORROW_CREATE = 1 << 12
    BORROW_READ = 1 << 13
    BORROW_UPDATE = 1 << 14
    BORROW_DELETE = 1 << 15
    BORROW_APPROVE = 1 << 16
    BORROW_RETURN = 1 << 17
    BORROW_VIEW_ALL = 1 << 18
    BORROW_MANAGE_OVERDUE = 1 << 19
    # system
    SYSTEM_ADMIN = 1 << 20
    SYSTEM_VIEW_LOGS = 1 << 21
    SYSTEM_BACKUP = 1 << 22
    SYSTEM_SETTINGS = 1 << 23


@dataclass(frozen=True)
class PermissionInfo:
    name: str
    bit_value: int
    module: str
    display_name: str


_DISPLAY_NAMES: dict[Permission, str] = {
    Permission.USERS_CREATE: "Create users",
    Permission.USERS_READ: "View users",
    Permission.USERS_UPDATE: "Update users",
    Permission.USERS_DELETE: "Delete users",
    Permission.BOOKS_CREATE: "Add books",
    Permission.BOOKS_READ: "View books",
    Permission.BOOKS_UPDATE: "Update books",
    Permission.BOOKS_DELETE: "Delete books",
    Permission.CATEGORIES_CREATE: "Create categories",
    Permission.CATEGORIES_READ: "View categories",
    Permission.CATEGORIES_UPDATE: "Update categories",
    Permission.CATEGORIES_DELETE: "Delete categories",
    Permission.BORROW_CREATE: "Create borrow requests",
    Permission.BORROW_READ: "View own borrow requests",
    Permission.BORROW_UPDATE: "Update borrow requests",
    Permission.BORROW_DELETE: "Cancel borrow requests",
    Permission.BORROW_APPROVE: "Approve or reject borrow requests",
    Permission.BORROW_RETURN: "Record returns",
    Permission.BORROW_VIEW_ALL: "View all borrow requests",
    Permission.BORROW_MANAGE_OVERDUE: "Manage overdue loans",
    Permission.SYSTEM_ADMIN: "System administration",
    Permission.SYSTEM_VIEW_LOGS: "View system logs",
    Permission.SYSTEM_BACKUP: "Run backups",
    Permission.SYSTEM_SETTINGS: "Change system settings",
}

# Role presets seeded into an empty roles table.
_STUDENT = (
    Permission.BOOKS_READ
    | Permission.CATEGORIES_READ
    | Permission.BORROW_CREATE
    | Permission.BORROW_READ
    | Permission.BORROW_UPDATE
    | Permission.BORROW_DELETE
)
_LIBRARIAN = (
    Permission.USERS_READ
    | Permission.BOOKS_CREATE
    | Permission.BOOKS_READ
    | Permission.BOOKS_UPDATE
    | Permission.BOOKS_DELETE
    | Permission.CATEGORIES_CREATE
    | Permission.CATEGORIES_READ
    | Permission.CATEGORIES_UPDATE
    | Permission.CATEGORIES_DELETE
    | Permission.BORROW_READ
    | Permission.BORROW_APPROVE
    | Permission.BORROW_RETURN
    | Permission.BORROW_VIEW_ALL
    | Permission.BORROW_MANAGE_OVERDUE
)


def _build_registry() -> tuple[PermissionInfo, ...]:
    seen = 0
    entries = []
    for flag in Permission:
        value = int(flag)
        if value <= 0 or value & (value - 1):
            raise ValueError(f"{flag.name} is not a single bit: {value}")
        if value > MAX_BIT_VALUE:
            raise ValueError(f"{flag.name} does not fit a signed 64-bit mask")
        if seen & value:
            raise ValueError(f"{flag.name} reuses bit {value}")
        seen |= value
        module = flag.name.split("_", 1)[0].lower()
        entries.append(PermissionInfo(flag.name, value, module, _DISPLAY_NAMES.get(flag, flag.name)))
    return tuple(sorted(entries, key=lambda p: (p.module, p.bit_value)))


_REGISTRY: tuple[PermissionInfo, ...] = _build_registry()
_BY_NAME: dict[str, PermissionInfo] = {p.name: p for p in _REGISTRY}
_BY_BIT: dict[int, PermissionInfo] = {p.bit_value: p for p in _REGISTRY}

# Bits are distinct, so the sum equals the OR.
ALL_PERMISSIONS: int = sum(p.bit_value for p in _REGISTRY)

DEFAULT_ROLES: list[dict] = [
    {"name": "admin", "display_name": "Administrator", "description": "Full access", "permissions": ALL_PERMISSIONS},
    {
        "name": "librarian",
        "display_name": "Librarian",
        "description": "Manages catalog and loans",
        "permissions": int(_LIBRARIAN),
    },
    {"name": "teacher", "display_name": "Teacher", "description": "Borrows books", "permissions": int(_STUDENT)},
    {"name": "staff", "display_name": "Staff", "description": "Borrows books", "permissions": int(_STUDENT)},
    {"name": "student", "display_name": "Student", "description": "Borrows books", "permissions": int(_STUDENT)},
]


# ---------------------------------------------------------------------------
# Registry lookups
# ---------------------------------------------------------------------------


def resolve(name: str) -> int:
    """Return the bit value for a permission name. Raises NotFound if unknown."""
    info = _BY_NAME.get(name.upper())
    if info is None:
        raise NotFound(f"Unknown permission: {name}")
    return info.bit_value


def get(bit_value: int) -> PermissionInfo | None:
    return _BY_BIT.get(bit_value)


def all_permissions() -> list[PermissionInfo]:
    """Every catalog entry, ordered by (module, bit_value)."""
    return list(_REGISTRY)


def by_module(module: str) -> list[PermissionInfo]:
    return [p for p in _REGISTRY if p.module == module]


def modules() -> list[str]:
    return sorted({p.module for p in _REGISTRY})


def is_known_mask(bitmask: int) -> bool:
    """True if bitmask is non-negative and every set bit is a catalog bit."""
    return bitmask >= 0 and bitmask & ~ALL_PERMISSIONS == 0


def names_to_bitmask(names: Iterable[str]) -> int:
    mask = 0
    for name in names:
        mask |= resolve(name)
    return mask


# ---------------------------------------------------------------------------
# Bitmask arithmetic
# ---------------------------------------------------------------------------


def has_permission(bitmask: int, required: int) -> bool:
    """Exact AND test: every bit of required must be present in bitmask.

    Combine bits with | to require several capabilities at once.
    """
    return (bitmask & required) == required


def add_permission(bitmask: int, bit: int) -> int:
    return bitmask | bit


def remove_permission(bitmask: int, bit: int) -> int:
    return bitmask & ~bit


def permissions_to_names(bitmask: int) -> list[PermissionInfo]:
    """Catalog entries fully present in bitmask, ordered by (module, bit_value).

    Bits with no catalog entry are ignored.
    """
    return [p for p in _REGISTRY if (bitmask & p.bit_value) == p.bit_value]
