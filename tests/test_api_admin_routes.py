"""
tests/test_api_admin_routes.py -- Integration tests for /api/v1/admin/*.

Coverage:
  - access control: 401 without identity, 403 for a student, admin fallback
    when the permission lookup fails
  - users: create, list/search/paginate, get, patch, soft delete, reset
    password, unlock, self-deactivation and last-admin guards
  - roles: create from permission names, patch, grant/revoke one permission,
    protected admin role, role in use
  - permission catalog and statistics
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from auth.errors import TransientStoreError
from auth.permissions import ALL_PERMISSIONS, Permission

GOOD_PASSWORD = "Library!Card-2026"


@pytest.fixture(autouse=True)
def _fresh_cookies(api_client: tuple[TestClient, str, int]) -> None:
    api_client[0].cookies.clear()


@pytest.fixture
def admin_headers(api_client) -> dict[str, str]:
    return {"Authorization": f"Bearer {api_client[1]}"}


def _role_id(client: TestClient, name: str) -> int:
    return client.app.state.user_store.get_role_by_name(name).id


# ---------------------------------------------------------------------------
# Access control
# ---------------------------------------------------------------------------


class TestAccess:
    def test_unauthenticated_is_401(self, api_client) -> None:
        client, _, _ = api_client
        resp = client.get("/api/v1/admin/users")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_student_is_403(self, api_client, student) -> None:
        client, _, _ = api_client
        token, _ = student
        resp = client.get("/api/v1/admin/users", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"

    def test_librarian_is_403(self, api_client, make_user) -> None:
        client, _, _ = api_client
        make_user("shelver", GOOD_PASSWORD, role_name="librarian", user_type="librarian")
        token = client.post(
            "/api/v1/auth/login", json={"username": "shelver", "password": GOOD_PASSWORD}
        ).json()["access_token"]
        client.cookies.clear()
        resp = client.get("/api/v1/admin/roles", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 403

    def test_admin_session_fallback_when_lookup_fails(self, api_client, student, admin_headers, monkeypatch) -> None:
        client, _, _ = api_client
        store = client.app.state.user_store

        def down(user_id):
            raise TransientStoreError("The database is unavailable.")

        monkeypatch.setattr(store, "get_user_permissions", down)

        # the admin token still opens an endpoint that does not itself need the store
        resp = client.get("/api/v1/admin/permissions/modules", headers=admin_headers)
        assert resp.status_code == 200

        token, _ = student
        resp = client.get("/api/v1/admin/permissions/modules", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 403

    def test_docs_admin_only(self, api_client, student, admin_headers) -> None:
        client, _, _ = api_client
        assert client.get("/docs").status_code == 401
        assert client.get("/docs", headers={"Authorization": f"Bearer {student[0]}"}).status_code == 403
        assert client.get("/docs", headers=admin_headers).status_code == 200


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class TestUsers:
    def test_create_user_defaults_role_from_user_type(self, api_client, admin_headers) -> None:
        client, _, _ = api_client
        resp = client.post(
            "/api/v1/admin/users",
            json={"username": "libby", "email": "libby@library.test", "password": GOOD_PASSWORD, "user_type": "librarian"},
            headers=admin_headers,
        )
        assert resp.status_code == 201, resp.text
        data = resp.json()
        assert data["role_name"] == "librarian"
        assert data["user_type"] == "librarian"
        assert data["locked"] is False

    def test_create_user_with_explicit_role(self, api_client, admin_headers) -> None:
        client, _, _ = api_client
        resp = client.post(
            "/api/v1/admin/users",
            json={
                "username": "teach1",
                "email": "teach1@library.test",
                "password": GOOD_PASSWORD,
                "user_type": "teacher",
                "role_id": _role_id(client, "staff"),
            },
            headers=admin_headers,
        )
        assert resp.status_code == 201
        assert resp.json()["role_name"] == "staff"

    def test_create_user_unknown_role(self, api_client, admin_headers) -> None:
        client, _, _ = api_client
        resp = client.post(
            "/api/v1/admin/users",
            json={"username": "norole", "email": "norole@library.test", "password": GOOD_PASSWORD, "role_id": 999},
            headers=admin_headers,
        )
        assert resp.status_code == 404

    def test_create_duplicate_user(self, api_client, admin_headers) -> None:
        client, _, _ = api_client
        body = {"username": "dupe", "email": "dupe@library.test", "password": GOOD_PASSWORD}
        assert client.post("/api/v1/admin/users", json=body, headers=admin_headers).status_code == 201
        resp = client.post("/api/v1/admin/users", json=body, headers=admin_headers)
        assert resp.status_code == 409

    def test_list_users_search_and_pagination(self, api_client, admin_headers, make_user) -> None:
        client, _, _ = api_client
        for i in range(3):
            make_user(f"pager{i}", GOOD_PASSWORD)
        resp = client.get("/api/v1/admin/users", params={"search": "pager", "per_page": 2}, headers=admin_headers)
        assert resp.status_code == 200
        data = resp.json()
        assert data["pagination"] == {"current_page": 1, "total_pages": 2, "total_items": 3, "items_per_page": 2}
        assert len(data["users"]) == 2

        page2 = client.get(
            "/api/v1/admin/users", params={"search": "pager", "per_page": 2, "page": 2}, headers=admin_headers
        ).json()
        assert len(page2["users"]) == 1

    def test_list_users_filter_by_type(self, api_client, admin_headers, make_user) -> None:
        client, _, _ = api_client
        make_user("staffer", GOOD_PASSWORD, role_name="staff", user_type="staff")
        data = client.get("/api/v1/admin/users", params={"user_type": "staff"}, headers=admin_headers).json()
        assert data["users"]
        assert all(u["user_type"] == "staff" for u in data["users"])

    def test_get_user_404(self, api_client, admin_headers) -> None:
        client, _, _ = api_client
        resp = client.get("/api/v1/admin/users/99999", headers=admin_headers)
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"

    def test_patch_user(self, api_client, admin_headers, make_user) -> None:
        client, _, _ = api_client
        uid = make_user("patchme", GOOD_PASSWORD)
        resp = client.patch(
            f"/api/v1/admin/users/{uid}",
            json={"phone": "0912345678", "role_id": _role_id(client, "teacher"), "user_type": "teacher"},
            headers=admin_headers,
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["phone"] == "0912345678"
        assert data["role_name"] == "teacher"
        assert data["user_type"] == "teacher"

    def test_patch_without_fields(self, api_client, admin_headers, make_user) -> None:
        client, _, _ = api_client
        uid = make_user("nochange", GOOD_PASSWORD)
        resp = client.patch(f"/api/v1/admin/users/{uid}", json={}, headers=admin_headers)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "no_changes"

    def test_cannot_deactivate_self(self, api_client, admin_headers) -> None:
        client, _, uid = api_client
        resp = client.patch(f"/api/v1/admin/users/{uid}", json={"is_active": False}, headers=admin_headers)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "self_deactivation"
        assert client.delete(f"/api/v1/admin/users/{uid}", headers=admin_headers).status_code == 400

    def test_last_admin_cannot_demote_self(self, api_client, admin_headers) -> None:
        client, _, admin_id = api_client
        store = client.app.state.user_store
        admin_role = _role_id(client, "admin")
        others = [u.id for u in store.list_users(limit=100, role_id=admin_role) if u.id != admin_id]
        for uid in others:
            store.deactivate_user(uid)
        try:
            resp = client.patch(
                f"/api/v1/admin/users/{admin_id}", json={"role_id": _role_id(client, "librarian")}, headers=admin_headers
            )
            assert resp.status_code == 400
            assert resp.json()["error"]["code"] == "last_admin"
        finally:
            for uid in others:
                store.update_user(uid, is_active=True)

    def test_demoting_another_admin_is_allowed(self, api_client, admin_headers, make_user) -> None:
        client, _, _ = api_client
        other = make_user("second_admin", GOOD_PASSWORD, role_name="admin", user_type="admin")
        resp = client.patch(
            f"/api/v1/admin/users/{other}", json={"role_id": _role_id(client, "student")}, headers=admin_headers
        )
        assert resp.status_code == 200
        assert resp.json()["role_name"] == "student"

    def test_soft_delete(self, api_client, admin_headers, make_user) -> None:
        client, _, _ = api_client
        uid = make_user("leaver", GOOD_PASSWORD)
        assert client.delete(f"/api/v1/admin/users/{uid}", headers=admin_headers).status_code == 204
        detail = client.get(f"/api/v1/admin/users/{uid}", headers=admin_headers).json()
        assert detail["is_active"] is False
        login = client.post("/api/v1/auth/login", json={"username": "leaver", "password": GOOD_PASSWORD})
        assert login.status_code == 401

    def test_admin_reset_password_clears_lockout(self, api_client, admin_headers, make_user) -> None:
        client, _, _ = api_client
        uid = make_user("locked_out", GOOD_PASSWORD)
        for _ in range(5):
            client.post("/api/v1/auth/login", json={"username": "locked_out", "password": "wrong"})
        assert client.get(f"/api/v1/admin/users/{uid}", headers=admin_headers).json()["locked"] is True

        resp = client.post(
            f"/api/v1/admin/users/{uid}/reset-password", json={"new_password": "Fresh!Start-2026"}, headers=admin_headers
        )
        assert resp.status_code == 200
        detail = client.get(f"/api/v1/admin/users/{uid}", headers=admin_headers).json()
        assert detail["locked"] is False
        assert detail["failed_login_attempts"] == 0
        login = client.post("/api/v1/auth/login", json={"username": "locked_out", "password": "Fresh!Start-2026"})
        assert login.status_code == 200

    def test_unlock_unknown_user(self, api_client, admin_headers) -> None:
        client, _, _ = api_client
        assert client.post("/api/v1/admin/users/99999/unlock", headers=admin_headers).status_code == 404


# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------


class TestRoles:
    def test_list_roles(self, api_client, admin_headers) -> None:
        client, _, _ = api_client
        roles = {r["name"]: r for r in client.get("/api/v1/admin/roles", headers=admin_headers).json()}
        assert {"admin", "librarian", "teacher", "staff", "student"} <= set(roles)
        assert roles["admin"]["permissions"] == ALL_PERMISSIONS
        assert "SYSTEM_ADMIN" in roles["admin"]["permission_names"]

    def test_create_role_from_names(self, api_client, admin_headers) -> None:
        client, _, _ = api_client
        resp = client.post(
            "/api/v1/admin/roles",
            json={"name": "assistant", "display_name": "Assistant", "permissions": ["books_read", "BORROW_RETURN"]},
            headers=admin_headers,
        )
        assert resp.status_code == 201, resp.text
        data = resp.json()
        assert data["permissions"] == int(Permission.BOOKS_READ | Permission.BORROW_RETURN)
        assert data["permission_names"] == ["BOOKS_READ", "BORROW_RETURN"]

    def test_create_role_unknown_permission(self, api_client, admin_headers) -> None:
        client, _, _ = api_client
        resp = client.post(
            "/api/v1/admin/roles", json={"name": "bad", "permissions": ["BOOKS_BURN"]}, headers=admin_headers
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "unknown_permission"

    def test_create_duplicate_role(self, api_client, admin_headers) -> None:
        client, _, _ = api_client
        resp = client.post("/api/v1/admin/roles", json={"name": "student"}, headers=admin_headers)
        assert resp.status_code == 409

    def test_grant_and_revoke_permission(self, api_client, admin_headers) -> None:
        client, _, _ = api_client
        role_id = client.post("/api/v1/admin/roles", json={"name": "volunteer"}, headers=admin_headers).json()["id"]

        granted = client.post(f"/api/v1/admin/roles/{role_id}/permissions/books_read", headers=admin_headers)
        assert granted.status_code == 200
        assert granted.json()["permissions"] == int(Permission.BOOKS_READ)

        again = client.post(f"/api/v1/admin/roles/{role_id}/permissions/BOOKS_READ", headers=admin_headers)
        assert again.json()["permissions"] == int(Permission.BOOKS_READ)

        revoked = client.delete(f"/api/v1/admin/roles/{role_id}/permissions/BOOKS_READ", headers=admin_headers)
        assert revoked.status_code == 200
        assert revoked.json()["permissions"] == 0

    def test_granted_permission_takes_effect(self, api_client, admin_headers, make_user) -> None:
        client, _, _ = api_client
        role_id = client.post("/api/v1/admin/roles", json={"name": "deputy"}, headers=admin_headers).json()["id"]
        uid = make_user("deputy1", GOOD_PASSWORD, role_name="deputy")
        authz = client.app.state.authz
        assert not authz.has_permission(uid, Permission.SYSTEM_ADMIN)
        client.post(f"/api/v1/admin/roles/{role_id}/permissions/SYSTEM_ADMIN", headers=admin_headers)
        assert authz.has_permission(uid, Permission.SYSTEM_ADMIN)

    def test_grant_unknown_permission_or_role(self, api_client, admin_headers) -> None:
        client, _, _ = api_client
        student_role = _role_id(client, "student")
        assert client.post(f"/api/v1/admin/roles/{student_role}/permissions/NOPE", headers=admin_headers).status_code == 404
        assert client.post("/api/v1/admin/roles/99999/permissions/BOOKS_READ", headers=admin_headers).status_code == 404

    def test_admin_role_is_protected(self, api_client, admin_headers) -> None:
        client, _, _ = api_client
        admin_role = _role_id(client, "admin")
        resp = client.delete(f"/api/v1/admin/roles/{admin_role}/permissions/SYSTEM_ADMIN", headers=admin_headers)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "protected_role"
        assert client.delete(f"/api/v1/admin/roles/{admin_role}", headers=admin_headers).status_code == 400
        resp = client.patch(f"/api/v1/admin/roles/{admin_role}", json={"permissions": ["BOOKS_READ"]}, headers=admin_headers)
        assert resp.status_code == 400

    def test_patch_role(self, api_client, admin_headers) -> None:
        client, _, _ = api_client
        role_id = client.post("/api/v1/admin/roles", json={"name": "intern"}, headers=admin_headers).json()["id"]
        resp = client.patch(
            f"/api/v1/admin/roles/{role_id}",
            json={"description": "Summer interns", "permissions": ["CATEGORIES_READ"]},
            headers=admin_headers,
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["description"] == "Summer interns"
        assert data["permission_names"] == ["CATEGORIES_READ"]

    def test_delete_role_in_use_then_free(self, api_client, admin_headers, make_user) -> None:
        client, _, _ = api_client
        role_id = client.post("/api/v1/admin/roles", json={"name": "seasonal"}, headers=admin_headers).json()["id"]
        uid = make_user("seasonal1", GOOD_PASSWORD, role_name="seasonal")

        resp = client.delete(f"/api/v1/admin/roles/{role_id}", headers=admin_headers)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "role_in_use"

        client.delete(f"/api/v1/admin/users/{uid}", headers=admin_headers)
        assert client.delete(f"/api/v1/admin/roles/{role_id}", headers=admin_headers).status_code == 204
        assert client.get(f"/api/v1/admin/roles/{role_id}", headers=admin_headers).status_code == 404


# ---------------------------------------------------------------------------
# Catalog and statistics
# ---------------------------------------------------------------------------


class TestCatalog:
    def test_list_permissions(self, api_client, admin_headers) -> None:
        client, _, _ = api_client
        data = client.get("/api/v1/admin/permissions", headers=admin_headers).json()
        assert len(data) == 24
        assert {"name": "BOOKS_READ", "bit_value": 32, "module": "books", "display_name": "View books"} in data

    def test_list_permissions_by_module(self, api_client, admin_headers) -> None:
        client, _, _ = api_client
        data = client.get("/api/v1/admin/permissions", params={"module": "system"}, headers=admin_headers).json()
        assert [p["name"] for p in data] == ["SYSTEM_ADMIN", "SYSTEM_VIEW_LOGS", "SYSTEM_BACKUP", "SYSTEM_SETTINGS"]

    def test_modules(self, api_client, admin_headers) -> None:
        client, _, _ = api_client
        data = client.get("/api/v1/admin/permissions/modules", headers=admin_headers).json()
        assert data == ["books", "borrow", "categories", "system", "users"]

    def test_statistics(self, api_client, admin_headers) -> None:
        client, _, _ = api_client
        data = client.get("/api/v1/admin/statistics", headers=admin_headers).json()
        counts = {row["role_name"]: row["user_count"] for row in data["users_by_role"]}
        assert counts["admin"] >= 1
        assert set(counts) >= {"admin", "librarian", "student"}
