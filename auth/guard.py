"""
auth/guard.py -- Failed-login counting and time-based account lockout.

State machine per user:

    UNLOCKED --(failure #max_attempts)--> LOCKED
    LOCKED   --(now >= locked_until)----> UNLOCKED   (implicit, normalized on read)
    LOCKED   --(admin unlock)-----------> UNLOCKED
    any      --(successful login)-------> UNLOCKED, counter = 0

Bookkeeping writes (record_failed_login, record_successful_login and the
expiry normalization) are best-effort: a store error is logged and swallowed
so a database hiccup never turns a rejected login into a 500 and never turns
it into an accepted one. is_locked() itself lets store errors propagate --
when the lock state cannot be read the login must not proceed.

Concurrent failures are plain read-modify-write UPDATEs; double counting under
a race is accepted (the lock fires at most one attempt early or late).
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from auth.errors import NotFound, StoreError
from auth.models import LockState
from auth.store import UserStore, from_iso, to_iso

logger = logging.getLogger("libraryauth.guard")

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_LOCKOUT = timedelta(minutes=15)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountSecurityGuard:
    def __init__(
        self,
        store: UserStore,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        lockout: timedelta = DEFAULT_LOCKOUT,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.max_attempts = max_attempts
        self.lockout = lockout
        self.clock = clock

    def record_failed_login(self, user_id: int) -> None:
        """Count one failed password check; lock once the count reaches max_attempts."""
        lock_until = to_iso(self.clock() + self.lockout)
        try:
            self.store.record_failed_attempt(user_id, self.max_attempts, lock_until)
        except StoreError:
            logger.exception("Could not record failed login for user %s", user_id)
            return
        try:
            attempts, locked_until = self.store.get_lock_info(user_id)
        except (StoreError, NotFound):
            return
        if locked_until is not None and attempts >= self.max_attempts:
            logger.warning("User %s locked until %s after %d failed logins", user_id, locked_until, attempts)

    def record_successful_login(self, user_id: int) -> None:
        """Reset the counter and stamp last_login."""
        try:
            self.store.reset_login_failures(user_id, last_login=to_iso(self.clock()))
        except StoreError:
            logger.exception("Could not reset login failures for user %s", user_id)

    def is_locked(self, user_id: int) -> bool:
        """True while now < locked_until. Unknown users are never locked.

        An expired lock is cleared in the store (counter and timestamp) so the
        next failure starts a fresh count.
        """
        try:
            _attempts, locked_until = self.store.get_lock_info(user_id)
        except NotFound:
            return False
        if locked_until is None:
            return False
        if self.clock() < from_iso(locked_until):
            return True
        try:
            self.store.reset_login_failures(user_id)
        except StoreError:
            logger.warning("Could not clear expired lock for user %s", user_id)
        return False

    def state(self, user_id: int) -> LockState:
        return LockState.LOCKED if self.is_locked(user_id) else LockState.UNLOCKED

    def unlock(self, user_id: int) -> None:
        """Force UNLOCKED regardless of the timer. Raises NotFound for unknown users."""
        if not self.store.reset_login_failures(user_id):
            raise NotFound(f"User {user_id} not found.")
        logger.info("User %s unlocked", user_id)
