"""
tests/conftest.py -- Shared test fixtures for LibraryAuth integration tests.

This module provides:
  - _make_test_store(): an isolated named in-memory DB per test module
  - _patch_lifespan(): wires the test store into app.state, bypassing real startup
  - api_client: TestClient with an admin JWT for API integration tests
  - student: a second, non-admin account on the same store
  - make_user: factory for further accounts on the same store
  - RecordingMailer: collects outgoing mail instead of talking SMTP

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

DEBUG and BCRYPT_ROUNDS must be set before any auth/core import:
get_settings() is cached on first use, DEBUG lets it auto-generate
SECRET_KEY, and 4 rounds keeps bcrypt fast.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import asynccontextmanager

os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, wire_services
from auth.models import User
from auth.store import UserStore
from auth.tokens import create_access_token, hash_password

ADMIN_USERNAME = "testadmin"
ADMIN_PASSWORD = "Adm1n!Passw0rd"
STUDENT_USERNAME = "teststudent"
STUDENT_PASSWORD = "Stud3nt!Passw0rd"


class RecordingMailer:
    """Mailer double: keeps (to, subject, html_body) tuples in .sent."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []

    def send(self, to: str, subject: str, html_body: str) -> None:
        self.sent.append((to, subject, html_body))


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _make_test_store(db_suffix: str) -> UserStore:
    """Create an isolated named shared-memory SQLite store.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state.
    """
    return UserStore(db_url=f"sqlite:///file:test_auth_{db_suffix}?mode=memory&cache=shared&uri=true")


def _patch_lifespan(store: UserStore, mailer: RecordingMailer):
    """Return an async context manager that replaces the real lifespan.

    Builds the same services as production on top of the test store and swaps
    in the recording mailer.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        wire_services(app, store)
        app.state.mailer = mailer
        yield

    return test_lifespan


def create_test_user(
    store: UserStore,
    username: str,
    password: str,
    role_name: str = "student",
    user_type: str = "student",
    **fields,
) -> int:
    role = store.get_role_by_name(role_name)
    return store.create_user(
        User(
            username=username,
            email=fields.pop("email", f"{username}@library.test"),
            password_hash=hash_password(password),
            role_id=role.id if role else None,
            user_type=user_type,
            **fields,
        )
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_rate_limits() -> None:
    """Every test starts with empty slowapi counters; they are shared process-wide."""
    limiter.reset()


@pytest.fixture
def store() -> Generator[UserStore, None, None]:
    """Fresh in-memory store with the default roles seeded."""
    s = UserStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, str, int], None, None]:
    """Yield (client, token, user_id) for API integration tests.

    The admin user holds the built-in admin role. The store and the recording
    mailer are reachable as client.app.state.user_store / .mailer.
    """
    test_store = _make_test_store(request.module.__name__.rsplit(".", 1)[-1])
    uid = create_test_user(test_store, ADMIN_USERNAME, ADMIN_PASSWORD, role_name="admin", user_type="admin")
    token = create_access_token(user_id=uid, username=ADMIN_USERNAME, user_type="admin", expire_seconds=3600)

    app.router.lifespan_context = _patch_lifespan(test_store, RecordingMailer())

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, token, uid

    test_store.close()


@pytest.fixture(scope="module")
def student(api_client) -> tuple[str, int]:
    """Yield (token, user_id) for a student account on the api_client store."""
    client, _, _ = api_client
    uid = create_test_user(client.app.state.user_store, STUDENT_USERNAME, STUDENT_PASSWORD)
    token = create_access_token(user_id=uid, username=STUDENT_USERNAME, user_type="student", expire_seconds=3600)
    return token, uid


@pytest.fixture(scope="module")
def make_user(api_client):
    """Factory fixture: make_user(username, password, role_name=..., user_type=..., **fields) -> id."""
    client, _, _ = api_client

    def factory(username: str, password: str, role_name: str = "student", user_type: str = "student", **fields) -> int:
        return create_test_user(client.app.state.user_store, username, password, role_name, user_type, **fields)

    return factory
