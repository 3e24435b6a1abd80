"""
auth/tokens.py -- Password hashing, JWT, and random token utilities.

Security design decisions:
  JWT: python-jose with HS256. Tokens carry user_id, username, user_type and
       role_id so a request can be identified without a database read.
       Verification returns None on any failure -- the dependency layer turns
       that into a 401.

  Passwords: bcrypt with a configurable work factor (BCRYPT_ROUNDS) over a
       SHA-256 pre-hash, so passwords past bcrypt's 72-byte limit work. The
       _DUMMY_HASH constant enables timing equalization in check_credentials()
       so response time does not reveal whether a username exists.

  Reset tokens: secrets.token_hex(32) gives 256 bits of entropy (64 hex
       chars). They are single-use and short-lived, stored as issued.

Layer rule: no imports from api/. Import from core/ is allowed -- core/ is the
kernel and has no reverse dependencies.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from auth.models import SessionUser
from core.config import get_settings

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("libraryauth.auth")

_settings = get_settings()

_ALGORITHM = "HS256"

RESET_TOKEN_BYTES = 32


# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def _prehash(plain: str) -> bytes:
    # bcrypt rejects input over 72 bytes. A base64 SHA-256 digest is 44 bytes
    # and contains no NUL, so any password length and encoding is accepted.
    return base64.b64encode(hashlib.sha256(plain.encode("utf-8")).digest())


def hash_password(plain: str, rounds: int | None = None) -> str:
    """Return a bcrypt hash of the given plaintext password.

    rounds defaults to Settings.bcrypt_rounds. The password is SHA-256
    pre-hashed, so its length is not limited by bcrypt.
    """
    salt = bcrypt.gensalt(rounds=_settings.bcrypt_rounds if rounds is None else rounds)
    return bcrypt.hashpw(_prehash(plain), salt).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(_prehash(plain), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash.
        return False


# Computed once at module load so the first failed login is not measurably
# slower than later ones.
_DUMMY_HASH: str = hash_password("libraryauth_timing_dummy")


def is_password_expired(password_created_at: str | None, now: datetime | None = None, days: int | None = None) -> bool:
    """True once password_created_at is more than `days` old.

    days defaults to Settings.password_expiry_days; 0 turns expiry off.
    """
    if days is None:
        days = _settings.password_expiry_days
    if not password_created_at or days <= 0:
        return False
    max_age = timedelta(days=days)
    created = datetime.fromisoformat(password_created_at)
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    return (now or datetime.now(timezone.utc)) > created + max_age


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def create_access_token(
    user_id: int,
    username: str,
    user_type: str,
    role_id: int | None = None,
    expire_seconds: int | None = None,
) -> str:
    """Encode a signed JWT with user identity and configurable expiry.

    Args:
        user_id:        Numeric user ID stored in the DB.
        username:       Stored as the JWT subject claim.
        user_type:      Account type label copied from the user row.
        role_id:        Role reference at login time (informational).
        expire_seconds: Token lifetime. None uses Settings.token_expire_seconds.
    """
    duration = _settings.token_expire_seconds if expire_seconds is None else expire_seconds
    expire = datetime.now(timezone.utc) + timedelta(seconds=duration)
    payload = {
        "sub": username,
        "user_id": user_id,
        "user_type": user_type,
        "role_id": role_id,
        "exp": expire,
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_access_token(token: str) -> dict | None:
    """Decode and verify a JWT. Returns the payload dict or None on any failure."""
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
        if "user_id" not in payload or "user_type" not in payload:
            return None
        return payload
    except JWTError:
        return None


def session_payload(user: User) -> dict:
    """The dict stored under request.session["user"] after login."""
    return {"id": user.id, "username": user.username, "user_type": user.user_type, "role_id": user.role_id}


def session_user_from(data: dict) -> SessionUser | None:
    """Rebuild a SessionUser from a session dict or JWT payload. None if malformed."""
    user_id = data.get("id", data.get("user_id"))
    username = data.get("username", data.get("sub"))
    if not isinstance(user_id, int) or not username:
        return None
    return SessionUser(
        id=user_id,
        username=username,
        user_type=data.get("user_type") or "student",
        role_id=data.get("role_id"),
    )


# ---------------------------------------------------------------------------
# User authentication (constant-time)
# ---------------------------------------------------------------------------


@dataclass
class LoginCheck:
    """Outcome of check_credentials().

    user is set whenever the username matched an active account, even if the
    password was wrong, so the caller can record the failed attempt.
    """

    user: User | None
    password_ok: bool


def check_credentials(store: UserStore, username: str, password: str) -> LoginCheck:
    """Verify a username/password pair with timing equalization.

    Always runs bcrypt whether or not the user exists:
    - Unknown or inactive username: bcrypt runs against _DUMMY_HASH
    - Wrong password: bcrypt runs against the real hash
    """
    user = store.get_by_username(username)
    if user is None or not user.is_active or not user.password_hash:
        verify_password(password, _DUMMY_HASH)
        return LoginCheck(user=None, password_ok=False)
    return LoginCheck(user=user, password_ok=verify_password(password, user.password_hash))


# ---------------------------------------------------------------------------
# Random tokens
# ---------------------------------------------------------------------------


def generate_reset_token(length_bytes: int = RESET_TOKEN_BYTES) -> str:
    """Return length_bytes of randomness as lowercase hex (2 chars per byte)."""
    return secrets.token_hex(length_bytes)

