"""
auth/errors.py -- Exception taxonomy for the auth core.

    AuthError
      NotFound               user / role / permission absent
      InvalidOrExpiredToken  reset token unknown, used, or past expires_at
      StoreError
        TransientStoreError  connection loss, timeout, any other DB failure
        ConstraintViolation  duplicate username / email / role name

The store translates SQLAlchemy exceptions into StoreError subclasses so the
services and routes never import sqlalchemy.exc. api/main.py maps each class
to one HTTP status and a generic message.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for every error raised by the auth package."""


class NotFound(AuthError):
    pass


class InvalidOrExpiredToken(AuthError):
    def __init__(self, message: str = "Reset token is invalid or has expired.") -> None:
        super().__init__(message)


class StoreError(AuthError):
    pass


class TransientStoreError(StoreError):
    pass


class ConstraintViolation(StoreError):
    pass
