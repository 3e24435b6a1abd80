"""Unit tests for auth/authorization.py -- permission checks and the admin fallback."""

import logging

import pytest

from auth.authorization import AuthorizationService
from auth.errors import TransientStoreError
from auth.models import Role, User
from auth.permissions import Permission


class FailingStore:
    """Permission lookups fail as if the database connection dropped."""

    def get_user_permissions(self, user_id):
        raise TransientStoreError("The database is unavailable.")


@pytest.fixture
def authz(store) -> AuthorizationService:
    return AuthorizationService(store)


def _user(store, username: str, role_id: int | None) -> int:
    return store.create_user(
        User(username=username, email=f"{username}@library.test", password_hash="x", role_id=role_id)
    )


def test_mask_6_grants_bit_2_not_bit_8(store, authz):
    role_id = store.create_role(Role(name="users_rw", permissions=6))
    uid = _user(store, "alice", role_id)
    assert authz.has_permission(uid, 2) is True
    assert authz.has_permission(uid, 8) is False


def test_student_role(store, authz):
    uid = _user(store, "alice", store.get_role_by_name("student").id)
    assert authz.has_permission(uid, Permission.BOOKS_READ)
    assert authz.check_permission(uid, Permission.BORROW_CREATE)
    assert not authz.has_permission(uid, Permission.SYSTEM_ADMIN)


def test_combined_requirement_needs_every_bit(store, authz):
    uid = _user(store, "alice", store.get_role_by_name("student").id)
    assert authz.has_permission(uid, Permission.BOOKS_READ | Permission.BORROW_READ)
    assert not authz.has_permission(uid, Permission.BOOKS_READ | Permission.BOOKS_DELETE)


def test_user_without_role_is_denied(store, authz):
    uid = _user(store, "alice", None)
    assert authz.has_permission(uid, Permission.BOOKS_READ) is False
    assert authz.list_permissions(uid) == []


def test_unknown_user_is_denied(authz):
    assert authz.has_permission(999, Permission.BOOKS_READ) is False


def test_inactive_role_is_denied(store, authz):
    role_id = store.create_role(Role(name="temp", permissions=int(Permission.BOOKS_READ)))
    uid = _user(store, "alice", role_id)
    store.deactivate_role(role_id)
    assert authz.has_permission(uid, Permission.BOOKS_READ) is False


def test_inactive_user_is_denied_even_with_admin_session(store, authz):
    uid = _user(store, "root1", store.get_role_by_name("admin").id)
    store.deactivate_user(uid)
    assert authz.has_permission(uid, Permission.SYSTEM_ADMIN, session_user_type="admin") is False


def test_list_permissions(store, authz):
    role_id = store.create_role(Role(name="users_rw", permissions=6))
    uid = _user(store, "alice", role_id)
    assert [p.name for p in authz.list_permissions(uid)] == ["USERS_READ", "USERS_UPDATE"]


def test_lookup_failure_allows_admin_session(caplog):
    authz = AuthorizationService(FailingStore())
    with caplog.at_level(logging.WARNING, logger="libraryauth.authz"):
        assert authz.has_permission(1, Permission.SYSTEM_ADMIN, session_user_type="admin") is True
    assert "admin session fallback" in caplog.text


def test_lookup_failure_denies_everyone_else():
    authz = AuthorizationService(FailingStore())
    assert authz.has_permission(1, Permission.BOOKS_READ, session_user_type="librarian") is False
    assert authz.has_permission(1, Permission.BOOKS_READ) is False


def test_get_permissions_propagates_store_errors():
    authz = AuthorizationService(FailingStore())
    with pytest.raises(TransientStoreError):
        authz.get_permissions(1)
