"""
auth/password_reset.py -- Single-use, time-limited password reset tokens.

Lifecycle:

    issue()  -> ISSUED
    consume() on a valid token -> CONSUMED (terminal)
    expires_at passes          -> EXPIRED  (terminal, implicit; nothing is written)

consume() delegates to UserStore.consume_reset_token(), which flips the token
and writes the new password hash in one transaction.

The forgot-password endpoint must answer identically whether or not the
email matched an account, so it runs request_reset() as a background task.
request_reset() returns the token only so tests can observe it.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from urllib.parse import urlencode

from auth.errors import InvalidOrExpiredToken
from auth.mailer import RESET_SUBJECT, Mailer, render_reset_email
from auth.models import PasswordResetToken, User
from auth.store import UserStore, from_iso, to_iso
from auth.tokens import generate_reset_token, hash_password

logger = logging.getLogger("libraryauth.reset")

DEFAULT_TTL = timedelta(hours=1)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PasswordResetFlow:
    def __init__(
        self,
        store: UserStore,
        ttl: timedelta = DEFAULT_TTL,
        clock: Callable[[], datetime] = _utcnow,
        hasher: Callable[[str], str] = hash_password,
    ) -> None:
        self.store = store
        self.ttl = ttl
        self.clock = clock
        self.hasher = hasher

    def issue(self, email: str) -> str | None:
        """Create a token for the active account with this email. None if there is none."""
        user = self.store.get_by_email(email)
        if user is None:
            return None
        return self._issue_for(user)

    def _issue_for(self, user: User) -> str:
        token = generate_reset_token()
        self.store.create_reset_token(
            PasswordResetToken(token=token, user_id=user.id, expires_at=to_iso(self.clock() + self.ttl))
        )
        logger.info("Password reset token issued for user %s", user.id)
        return token

    def validate(self, token: str) -> PasswordResetToken | None:
        """Return the token record if it is unused and unexpired, else None."""
        record = self.store.get_reset_token(token)
        if record is None or record.used:
            return None
        if from_iso(record.expires_at) <= self.clock():
            return None
        return record

    def consume(self, token: str, new_password: str) -> int:
        """Spend the token and set the new password. Returns the user id.

        Raises InvalidOrExpiredToken for unknown, used or expired tokens.
        """
        if not token:
            raise InvalidOrExpiredToken()
        # Hash outside the transaction; bcrypt is slow and holds no DB lock.
        password_hash = self.hasher(new_password)
        user_id = self.store.consume_reset_token(token, password_hash, to_iso(self.clock()))
        logger.info("Password reset completed for user %s", user_id)
        return user_id

    def request_reset(self, email: str, base_url: str, mailer: Mailer) -> str | None:
        """Issue a token and email the reset link. Mail errors propagate."""
        user = self.store.get_by_email(email)
        if user is None:
            return None
        token = self._issue_for(user)
        reset_url = f"{base_url.rstrip('/')}/reset-password?{urlencode({'token': token})}"
        body = render_reset_email(
            username=user.username,
            reset_url=reset_url,
            ttl_minutes=int(self.ttl.total_seconds() // 60),
        )
        mailer.send(user.email, RESET_SUBJECT, body)
        return token
