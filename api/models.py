"""
API request and response models for LibraryAuth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Input validation lives here: every request body is checked for length,
character set and password strength before a handler runs. Values reach the
store unchanged and are bound as query parameters -- no escaping or
re-encoding happens anywhere.
"""

import re
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

USERNAME_PATTERN = r"^[a-zA-Z][a-zA-Z0-9_\-]*$"
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
PHONE_PATTERN = r"^\+?[0-9]{9,15}$"
RESET_TOKEN_PATTERN = r"^[0-9a-f]{64}$"

RESERVED_USERNAMES = frozenset(
    {
        "administrator",
        "admin",
        "support",
        "root",
        "postmaster",
        "abuse",
        "webmaster",
        "security",
        "info",
        "marketing",
        "sales",
        "noreply",
        "mail",
        "email",
        "help",
        "api",
    }
)

PASSWORD_MIN_LENGTH = 12
_PASSWORD_CLASSES = (
    (re.compile(r"[a-z]"), "a lowercase letter"),
    (re.compile(r"[A-Z]"), "an uppercase letter"),
    (re.compile(r"\d"), "a digit"),
    (re.compile(r"[^A-Za-z0-9]"), "a special character"),
)


def check_password_strength(value: str) -> str:
    """Raise ValueError unless value has every required character class."""
    missing = [label for pattern, label in _PASSWORD_CLASSES if not pattern.search(value)]
    if missing:
        raise ValueError("Password must contain " + ", ".join(missing) + ".")
    return value


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class UserTypeEnum(str, Enum):
    admin = "admin"
    librarian = "librarian"
    student = "student"
    staff = "staff"
    teacher = "teacher"


# ---------------------------------------------------------------------------
# Auth -- requests
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=3, max_length=25, pattern=USERNAME_PATTERN)
    email: str = Field(max_length=255, pattern=EMAIL_PATTERN)
    password: str = Field(min_length=PASSWORD_MIN_LENGTH, max_length=128)
    confirm_password: str = Field(max_length=128)
    phone: Optional[str] = Field(default=None, pattern=PHONE_PATTERN)
    address: Optional[str] = Field(default=None, max_length=500)

    @field_validator("username")
    @classmethod
    def not_reserved(cls, value: str) -> str:
        if value.lower() in RESERVED_USERNAMES:
            raise ValueError("This username is reserved.")
        return value.lower()

    @field_validator("email")
    @classmethod
    def lower_email(cls, value: str) -> str:
        return value.lower()

    @field_validator("password")
    @classmethod
    def strong_password(cls, value: str) -> str:
        return check_password_strength(value)

    @model_validator(mode="after")
    def passwords_match(self) -> "RegisterRequest":
        if self.password != self.confirm_password:
            raise ValueError("Password confirmation does not match.")
        return self


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=255)
    new_password: str = Field(min_length=PASSWORD_MIN_LENGTH, max_length=128)

    @field_validator("new_password")
    @classmethod
    def strong_password(cls, value: str) -> str:
        return check_password_strength(value)


class ForgotPasswordRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(max_length=255, pattern=EMAIL_PATTERN)


class ResetPasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/reset-password.

    A malformed token is reported as invalid_token by the route, not as a
    422, so the caller cannot tell a typo from an expired token.
    """

    token: str = Field(max_length=128)
    new_password: str = Field(min_length=PASSWORD_MIN_LENGTH, max_length=128)

    @field_validator("new_password")
    @classmethod
    def strong_password(cls, value: str) -> str:
        return check_password_strength(value)


# ---------------------------------------------------------------------------
# Auth -- responses
# ---------------------------------------------------------------------------


class LoginResponse(BaseModel):
    """Response for POST /api/v1/auth/login.

    When password_expired is True no session is created and access_token is
    None; the client must send the user through change/reset first.
    """

    model_config = ConfigDict(frozen=True)

    user_id: int
    username: str
    user_type: str
    password_expired: bool = False
    access_token: Optional[str] = None
    token_type: str = "bearer"
    expires_in: int = 0


class MeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: int
    username: str
    email: str
    user_type: str
    role_id: Optional[int]
    role_name: Optional[str]
    permissions: list[str]
    phone: Optional[str] = None
    address: Optional[str] = None
    last_login: Optional[str] = None


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


# ---------------------------------------------------------------------------
# Admin -- users
# ---------------------------------------------------------------------------


class AdminUserCreate(BaseModel):
    """Request body for POST /api/v1/admin/users.

    role_id defaults to the role named after user_type when omitted.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=3, max_length=25, pattern=USERNAME_PATTERN)
    email: str = Field(max_length=255, pattern=EMAIL_PATTERN)
    password: str = Field(min_length=PASSWORD_MIN_LENGTH, max_length=128)
    phone: Optional[str] = Field(default=None, pattern=PHONE_PATTERN)
    address: Optional[str] = Field(default=None, max_length=500)
    role_id: Optional[int] = Field(default=None, ge=1)
    user_type: UserTypeEnum = UserTypeEnum.student

    @field_validator("username", "email")
    @classmethod
    def lower(cls, value: str) -> str:
        return value.lower()

    @field_validator("password")
    @classmethod
    def strong_password(cls, value: str) -> str:
        return check_password_strength(value)


class AdminUserPatch(BaseModel):
    """Request body for PATCH /api/v1/admin/users/{id}. Omitted fields are unchanged."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: Optional[str] = Field(default=None, min_length=3, max_length=25, pattern=USERNAME_PATTERN)
    email: Optional[str] = Field(default=None, max_length=255, pattern=EMAIL_PATTERN)
    phone: Optional[str] = Field(default=None, pattern=PHONE_PATTERN)
    address: Optional[str] = Field(default=None, max_length=500)
    role_id: Optional[int] = Field(default=None, ge=1)
    user_type: Optional[UserTypeEnum] = None
    is_active: Optional[bool] = None

    @field_validator("username", "email")
    @classmethod
    def lower(cls, value: Optional[str]) -> Optional[str]:
        return value.lower() if value is not None else value


class AdminPasswordReset(BaseModel):
    new_password: str = Field(min_length=PASSWORD_MIN_LENGTH, max_length=128)

    @field_validator("new_password")
    @classmethod
    def strong_password(cls, value: str) -> str:
        return check_password_strength(value)


class UserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    email: str
    phone: Optional[str]
    address: Optional[str]
    role_id: Optional[int]
    role_name: Optional[str]
    user_type: str
    is_active: bool
    failed_login_attempts: int
    locked: bool
    locked_until: Optional[str]
    created_at: str
    last_login: Optional[str]


class Pagination(BaseModel):
    model_config = ConfigDict(frozen=True)

    current_page: int
    total_pages: int
    total_items: int
    items_per_page: int


class UserListResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    users: list[UserResponse]
    pagination: Pagination



# ---------------------------------------------------------------------------
# Members (staff-facing views of user accounts)
# ---------------------------------------------------------------------------


class MemberSummary(BaseModel):
    """Directory entry. No contact details beyond email, no lock data."""

    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    email: str
    role_name: Optional[str]
    user_type: str


class MemberListResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    members: list[MemberSummary]
    pagination: Pagination


class LockStatusResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: int
    state: str
    failed_login_attempts: int
    locked_until: Optional[str] = None


# ---------------------------------------------------------------------------
# Admin -- roles and permissions
# ---------------------------------------------------------------------------


class RoleCreate(BaseModel):
    """Request body for POST /api/v1/admin/roles. permissions are catalog names."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=2, max_length=50, pattern=r"^[a-z][a-z0-9_]*$")
    display_name: Optional[str] = Field(default=None, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    permissions: list[str] = Field(default_factory=list, max_length=64)


class RolePatch(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=2, max_length=50, pattern=r"^[a-z][a-z0-9_]*$")
    display_name: Optional[str] = Field(default=None, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    permissions: Optional[list[str]] = Field(default=None, max_length=64)


class PermissionResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    bit_value: int
    module: str
    display_name: str


class RoleResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    display_name: Optional[str]
    description: Optional[str]
    permissions: int
    permission_names: list[str]
    created_at: str
    updated_at: Optional[str]


class RoleStat(BaseModel):
    model_config = ConfigDict(frozen=True)

    role_name: str
    role_display_name: Optional[str]
    user_count: int


class StatisticsResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    users_by_role: list[RoleStat]


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]
