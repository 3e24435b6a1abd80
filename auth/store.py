"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper.
UserStore is the repository; _row_to_user / _row_to_role / _row_to_token are
the mappers. Services and routes never touch SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL, no character
  encode/decode round trips -- the driver handles quoting.

Errors:
  Every public method runs inside _db_errors(), which turns IntegrityError
  into ConstraintViolation and any other SQLAlchemyError into
  TransientStoreError. Callers only ever see auth.errors types.

Transactions:
  consume_reset_token() is the one multi-statement write. It runs inside
  engine.begin() so the token flip and the password update commit together
  or roll back together. Every other method is a single statement.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    case,
    create_engine,
    event,
    func,
    or_,
    select,
    text,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth import permissions
from auth.errors import ConstraintViolation, InvalidOrExpiredToken, NotFound, TransientStoreError
from auth.models import PasswordResetToken, Role, User

logger = logging.getLogger("libraryauth.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_roles = Table(
    "roles",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(50), nullable=False, unique=True),
    Column("display_name", String(100)),
    Column("description", Text),
    Column("permissions", BigInteger, nullable=False, server_default="0"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32)),
)

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(50), nullable=False, unique=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", Text, nullable=False),
    Column("phone", String(20)),
    Column("address", Text),
    Column("role_id", Integer),  # references roles.id; NULL = no permissions
    Column("user_type", String(20), nullable=False, server_default="student"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("failed_login_attempts", Integer, nullable=False, server_default="0"),
    Column("locked_until", String(32)),
    Column("password_created_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32)),
    Column("last_login", String(32)),
)

_reset_tokens = Table(
    "password_reset_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token", String(64), nullable=False, unique=True),
    Column("user_id", Integer, nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("used", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
)

# Columns an admin may change through update_user(). Everything else has a
# dedicated method (passwords, lockout) or is store-managed.
_USER_UPDATABLE = {"username", "email", "phone", "address", "role_id", "user_type", "is_active"}
_ROLE_UPDATABLE = {"name", "display_name", "description", "permissions"}


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block on writers.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def to_iso(moment: datetime) -> str:
    """UTC ISO 8601 with fixed microsecond precision.

    A fixed width keeps string comparison in SQL equivalent to time order.
    """
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str) -> datetime:
    moment = datetime.fromisoformat(value)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def _now_iso() -> str:
    return to_iso(datetime.now(timezone.utc))


@contextmanager
def _db_errors() -> Iterator[None]:
    try:
        yield
    except IntegrityError as exc:
        raise ConstraintViolation("Duplicate or invalid value.") from exc
    except SQLAlchemyError as exc:
        logger.warning("Database error: %s", type(exc).__name__)
        raise TransientStoreError("The database is unavailable.") from exc


def _user_select():
    return select(_users, _roles.c.name.label("role_name")).select_from(
        _users.outerjoin(_roles, _users.c.role_id == _roles.c.id)
    )


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _user_filters(search: str = "", role_id: int | None = None, user_type: str | None = None) -> list:
    clauses = [_users.c.is_active == 1]
    if search:
        pattern = f"%{_escape_like(search.lower())}%"
        clauses.append(
            or_(
                func.lower(_users.c.username).like(pattern, escape="\\"),
                func.lower(_users.c.email).like(pattern, escape="\\"),
            )
        )
    if role_id:
        clauses.append(_users.c.role_id == role_id)
    if user_type:
        clauses.append(_users.c.user_type == user_type)
    return clauses


def _check_mask(mask: int) -> None:
    if not permissions.is_known_mask(mask):
        raise ValueError(f"Permission mask {mask} contains bits outside the catalog.")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User, Role and PasswordResetToken entities.

    Usage:
        store = UserStore("sqlite:///libraryauth.db")
        uid = store.create_user(User(username="alice", email="a@x.org", password_hash=hash_password("...")))
        mask = store.get_user_permissions(uid)
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        with _db_errors():
            _metadata.create_all(self.engine)
        self._seed_default_roles()

    @contextmanager
    def _connect(self) -> Iterator[Connection]:
        with _db_errors(), self.engine.connect() as conn:
            yield conn

    def _seed_default_roles(self) -> None:
        """Insert the default role set into an empty roles table. Idempotent."""
        with _db_errors(), self.engine.begin() as conn:
            if conn.execute(select(func.count()).select_from(_roles)).scalar():
                return
            now = _now_iso()
            for preset in permissions.DEFAULT_ROLES:
                conn.execute(_roles.insert().values(created_at=now, **preset))
        logger.info("Seeded %d default roles", len(permissions.DEFAULT_ROLES))

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self._connect() as conn:
                conn.execute(text("SELECT 1"))
        except TransientStoreError:
            return False
        return True

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        with self._connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (result or 0) > 0

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises ConstraintViolation if the username or email already exists.
        """
        now = _now_iso()
        with self._connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    username=user.username,
                    email=user.email,
                    password_hash=user.password_hash,
                    phone=user.phone,
                    address=user.address,
                    role_id=user.role_id,
                    user_type=user.user_type,
                    is_active=1 if user.is_active else 0,
                    password_created_at=user.password_created_at or now,
                    created_at=now,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_id(self, user_id: int) -> User | None:
        """Look up a user by primary key, active or not. Returns None if not found."""
        with self._connect() as conn:
            row = conn.execute(_user_select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_username(self, username: str) -> User | None:
        """Case-insensitive username lookup, active or not."""
        with self._connect() as conn:
            row = conn.execute(
                _user_select().where(func.lower(_users.c.username) == username.lower())
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        """Look up an active user by email (case-insensitive)."""
        with self._connect() as conn:
            row = conn.execute(
                _user_select().where((func.lower(_users.c.email) == email.lower()) & (_users.c.is_active == 1))
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def username_exists(self, username: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                select(_users.c.id).where(func.lower(_users.c.username) == username.lower())
            ).fetchone()
        return row is not None

    def email_exists(self, email: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(select(_users.c.id).where(func.lower(_users.c.email) == email.lower())).fetchone()
        return row is not None

    def list_users(
        self,
        limit: int = 50,
        offset: int = 0,
        search: str = "",
        role_id: int | None = None,
        user_type: str | None = None,
    ) -> list[User]:
        """Active users, newest first, filtered by search / role / type."""
        query = (
            _user_select()
            .where(*_user_filters(search, role_id, user_type))
            .order_by(_users.c.created_at.desc(), _users.c.id.desc())
            .limit(limit)
            .offset(offset)
        )
        with self._connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_user(r) for r in rows]

    def count_users(self, search: str = "", role_id: int | None = None, user_type: str | None = None) -> int:
        query = select(func.count()).select_from(_users).where(*_user_filters(search, role_id, user_type))
        with self._connect() as conn:
            return conn.execute(query).scalar() or 0

    def update_user(self, user_id: int, **fields) -> bool:
        """Update admin-editable fields on an existing user.

        Accepted fields: username, email, phone, address, role_id, user_type,
        is_active (bool). Unknown keys raise ValueError.

        Returns True if a row was updated, False if user_id was not found.
        """
        unknown = set(fields) - _USER_UPDATABLE
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        if "is_active" in fields:
            fields["is_active"] = 1 if fields["is_active"] else 0
        with self._connect() as conn:
            result = conn.execute(
                _users.update().where(_users.c.id == user_id).values(updated_at=_now_iso(), **fields)
            )
            conn.commit()
        return result.rowcount > 0

    def deactivate_user(self, user_id: int) -> bool:
        """Soft delete: the row stays for audit, login and permissions stop working."""
        with self._connect() as conn:
            result = conn.execute(
                _users.update().where(_users.c.id == user_id).values(is_active=0, updated_at=_now_iso())
            )
            conn.commit()
        return result.rowcount > 0

    def set_password(self, user_id: int, password_hash: str, clear_lockout: bool = False) -> bool:
        """Replace the password hash and restart the password age clock.

        clear_lockout=True also zeroes the failure counter and lock, which is
        what an admin-initiated reset wants.
        """
        values: dict = {"password_hash": password_hash, "password_created_at": _now_iso(), "updated_at": _now_iso()}
        if clear_lockout:
            values.update(failed_login_attempts=0, locked_until=None)
        with self._connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**values))
            conn.commit()
        return result.rowcount > 0

    def count_active_admins(self) -> int:
        """Active users whose active role carries SYSTEM_ADMIN."""
        bit = int(permissions.Permission.SYSTEM_ADMIN)
        query = (
            select(func.count())
            .select_from(_users.join(_roles, _users.c.role_id == _roles.c.id))
            .where(
                (_users.c.is_active == 1)
                & (_roles.c.is_active == 1)
                & (_roles.c.permissions.op("&")(bit) == bit)
            )
        )
        with self._connect() as conn:
            return conn.execute(query).scalar() or 0

    def user_statistics(self) -> list[dict]:
        """Active user count per active role, largest first."""
        query = (
            select(
                _roles.c.name.label("role_name"),
                _roles.c.display_name.label("role_display_name"),
                func.count(_users.c.id).label("user_count"),
            )
            .select_from(
                _roles.outerjoin(_users, (_users.c.role_id == _roles.c.id) & (_users.c.is_active == 1))
            )
            .where(_roles.c.is_active == 1)
            .group_by(_roles.c.id, _roles.c.name, _roles.c.display_name)
            .order_by(func.count(_users.c.id).desc(), _roles.c.display_name)
        )
        with self._connect() as conn:
            rows = conn.execute(query).fetchall()
        return [
            {"role_name": r.role_name, "role_display_name": r.role_display_name, "user_count": r.user_count}
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Login bookkeeping (driven by auth.guard)
    # ------------------------------------------------------------------

    def record_failed_attempt(self, user_id: int, max_attempts: int, lock_until: str) -> bool:
        """Increment the failure counter; set locked_until once it reaches max_attempts.

        One UPDATE: both SET expressions read the pre-update counter, so the
        lock decision uses the same value the increment produced.
        """
        attempts = _users.c.failed_login_attempts + 1
        with self._connect() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(
                    failed_login_attempts=attempts,
                    locked_until=case((attempts >= max_attempts, lock_until), else_=_users.c.locked_until),
                )
            )
            conn.commit()
        return result.rowcount > 0

    def reset_login_failures(self, user_id: int, last_login: str | None = None) -> bool:
        """Zero the counter and clear the lock. Stamps last_login when given."""
        values: dict = {"failed_login_attempts": 0, "locked_until": None}
        if last_login is not None:
            values["last_login"] = last_login
        with self._connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**values))
            conn.commit()
        return result.rowcount > 0

    def get_lock_info(self, user_id: int) -> tuple[int, str | None]:
        """Return (failed_login_attempts, locked_until). Raises NotFound."""
        with self._connect() as conn:
            row = conn.execute(
                select(_users.c.failed_login_attempts, _users.c.locked_until).where(_users.c.id == user_id)
            ).fetchone()
        if row is None:
            raise NotFound(f"User {user_id} not found.")
        return row.failed_login_attempts, row.locked_until

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------

    def get_user_permissions(self, user_id: int) -> int | None:
        """Bitmask of the active user's active role. None if either is missing."""
        query = (
            select(_roles.c.permissions)
            .select_from(_users.join(_roles, _users.c.role_id == _roles.c.id))
            .where((_users.c.id == user_id) & (_users.c.is_active == 1) & (_roles.c.is_active == 1))
        )
        with self._connect() as conn:
            row = conn.execute(query).fetchone()
        return int(row.permissions) if row is not None else None

    # ------------------------------------------------------------------
    # Role queries
    # ------------------------------------------------------------------

    def list_roles(self) -> list[Role]:
        with self._connect() as conn:
            rows = conn.execute(_roles.select().where(_roles.c.is_active == 1).order_by(_roles.c.id)).fetchall()
        return [_row_to_role(r) for r in rows]

    def get_role(self, role_id: int) -> Role | None:
        """Active role by id. Returns None if missing or soft-deleted."""
        with self._connect() as conn:
            row = conn.execute(
                _roles.select().where((_roles.c.id == role_id) & (_roles.c.is_active == 1))
            ).fetchone()
        return _row_to_role(row) if row is not None else None

    def get_role_by_name(self, name: str) -> Role | None:
        with self._connect() as conn:
            row = conn.execute(
                _roles.select().where((_roles.c.name == name) & (_roles.c.is_active == 1))
            ).fetchone()
        return _row_to_role(row) if row is not None else None

    def create_role(self, role: Role) -> int:
        """Insert a role. ValueError on unknown bits, ConstraintViolation on duplicate name."""
        _check_mask(role.permissions)
        with self._connect() as conn:
            result = conn.execute(
                _roles.insert().values(
                    name=role.name,
                    display_name=role.display_name,
                    description=role.description,
                    permissions=role.permissions,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def update_role(self, role_id: int, **fields) -> bool:
        """Update name / display_name / description / permissions of an active role."""
        unknown = set(fields) - _ROLE_UPDATABLE
        if unknown:
            raise ValueError(f"Unknown role fields: {unknown!r}")
        if "permissions" in fields:
            _check_mask(fields["permissions"])
        with self._connect() as conn:
            result = conn.execute(
                _roles.update()
                .where((_roles.c.id == role_id) & (_roles.c.is_active == 1))
                .values(updated_at=_now_iso(), **fields)
            )
            conn.commit()
        return result.rowcount > 0

    def deactivate_role(self, role_id: int) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                _roles.update().where(_roles.c.id == role_id).values(is_active=0, updated_at=_now_iso())
            )
            conn.commit()
        return result.rowcount > 0

    def add_role_permission(self, role_id: int, bit: int) -> int | None:
        """permissions = permissions | bit. Returns the new mask, None if the role is missing."""
        _check_mask(bit)
        return self._apply_role_mask(role_id, _roles.c.permissions.op("|")(bit))

    def remove_role_permission(self, role_id: int, bit: int) -> int | None:
        """permissions = permissions & ~bit. Returns the new mask, None if the role is missing."""
        # ~bit as a bound parameter is a negative int; BIGINT AND keeps it exact.
        return self._apply_role_mask(role_id, _roles.c.permissions.op("&")(~bit))

    def _apply_role_mask(self, role_id: int, expression) -> int | None:
        with _db_errors(), self.engine.begin() as conn:
            result = conn.execute(
                _roles.update()
                .where((_roles.c.id == role_id) & (_roles.c.is_active == 1))
                .values(permissions=expression, updated_at=_now_iso())
            )
            if result.rowcount == 0:
                return None
            return int(conn.execute(select(_roles.c.permissions).where(_roles.c.id == role_id)).scalar())

    # ------------------------------------------------------------------
    # Password reset tokens
    # ------------------------------------------------------------------

    def create_reset_token(self, token: PasswordResetToken) -> int:
        with self._connect() as conn:
            result = conn.execute(
                _reset_tokens.insert().values(
                    token=token.token,
                    user_id=token.user_id,
                    expires_at=token.expires_at,
                    used=1 if token.used else 0,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_reset_token(self, token: str) -> PasswordResetToken | None:
        with self._connect() as conn:
            row = conn.execute(_reset_tokens.select().where(_reset_tokens.c.token == token)).fetchone()
        return _row_to_token(row) if row is not None else None

    def consume_reset_token(self, token: str, password_hash: str, now: str) -> int:
        """Atomically spend a reset token and set the new password hash.

        The token UPDATE is conditional on used = 0 AND expires_at > now, so of
        two concurrent consumers only one sees rowcount == 1. Any exception
        inside the block rolls back both writes.

        Returns the user_id whose password changed.
        Raises InvalidOrExpiredToken if the token is unknown, used or expired.
        """
        valid = (_reset_tokens.c.token == token) & (_reset_tokens.c.used == 0) & (_reset_tokens.c.expires_at > now)
        with _db_errors(), self.engine.begin() as conn:
            row = conn.execute(select(_reset_tokens.c.id, _reset_tokens.c.user_id).where(valid)).fetchone()
            if row is None:
                raise InvalidOrExpiredToken()
            flipped = conn.execute(_reset_tokens.update().where(valid).values(used=1))
            if flipped.rowcount != 1:
                raise InvalidOrExpiredToken()
            updated = conn.execute(
                _users.update()
                .where((_users.c.id == row.user_id) & (_users.c.is_active == 1))
                .values(password_hash=password_hash, password_created_at=now, updated_at=now)
            )
            if updated.rowcount != 1:
                # Account vanished or was deactivated after the token was issued.
                raise InvalidOrExpiredToken()
            return row.user_id

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        password_hash=row.password_hash,
        phone=row.phone,
        address=row.address,
        role_id=row.role_id,
        role_name=getattr(row, "role_name", None),
        user_type=row.user_type,
        is_active=bool(row.is_active),
        failed_login_attempts=row.failed_login_attempts or 0,
        locked_until=row.locked_until,
        password_created_at=row.password_created_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
        last_login=row.last_login,
    )


def _row_to_role(row) -> Role:
    return Role(
        id=row.id,
        name=row.name,
        display_name=row.display_name,
        description=row.description,
        permissions=int(row.permissions or 0),
        is_active=bool(row.is_active),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_token(row) -> PasswordResetToken:
    return PasswordResetToken(
        id=row.id,
        token=row.token,
        user_id=row.user_id,
        expires_at=row.expires_at,
        used=bool(row.used),
        created_at=row.created_at,
    )
