"""End-to-end tests for the admin endpoints."""

import pytest
from fastapi.testclient import TestClient

import karass.app as app_module
from karass.service.runtime import get_runtime


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _headers(user):
    return {"Authorization": f"Bearer {get_runtime().tokens.issue(user)}"}


@pytest.fixture
def admin_headers():
    admin = get_runtime().store.create_user("root", email="root@example.com", is_admin=True)
    return _headers(admin)


@pytest.fixture
def member():
    return get_runtime().store.create_user("member", email="member@example.com")


class TestAdminAccess:
    def test_missing_token(self, client, member):
        resp = client.post(f"/admin/approve/{member.id}")

        assert resp.status_code == 401
        assert resp.json()["error"]["message"] == "No token provided"

    def test_invalid_token(self, client, member):
        resp = client.post(
            f"/admin/approve/{member.id}", headers={"Authorization": "Bearer garbage"}
        )

        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "invalid_token"

    def test_non_admin_forbidden(self, client, member):
        resp = client.post(f"/admin/set-admin/{member.id}", headers=_headers(member))

        assert resp.status_code == 403
        assert resp.json()["error"]["message"] == "Admin access required"
        assert get_runtime().store.get_user(member.id).is_admin is False

    def test_revoked_admin_token_stops_working(self, client, member):
        store = get_runtime().store
        admin = store.create_user("temp_admin", is_admin=True)
        headers = _headers(admin)
        assert client.post(f"/admin/approve/{member.id}", headers=headers).status_code == 200

        store.update_user_flags(admin.id, is_admin=False)
        resp = client.post(f"/admin/approve/{member.id}", headers=headers)

        assert resp.status_code == 403


class TestAdminActions:
    def test_approve_user(self, client, admin_headers):
        pending = get_runtime().store.create_user("newbie", is_approved=False)

        resp = client.post(f"/admin/approve/{pending.id}", headers=admin_headers)

        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["message"] == "User approved"
        assert data["user"]["isApproved"] is True
        status = client.get(f"/auth/status/{pending.id}").json()["data"]
        assert status["isApproved"] is True

    def test_set_admin(self, client, admin_headers, member):
        resp = client.post(f"/admin/set-admin/{member.id}", headers=admin_headers)

        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["message"] == "User granted admin privileges"
        assert data["user"]["isAdmin"] is True
        # The promoted user can now act as admin with a fresh token
        promoted = get_runtime().store.get_user(member.id)
        assert client.get("/admin/users", headers=_headers(promoted)).status_code == 200

    def test_unknown_target(self, client, admin_headers):
        resp = client.post("/admin/approve/999", headers=admin_headers)

        assert resp.status_code == 404

    def test_malformed_target(self, client, admin_headers):
        resp = client.post("/admin/set-admin/abc", headers=admin_headers)

        assert resp.status_code == 400

    def test_list_users_and_pending(self, client, admin_headers, member):
        pending = get_runtime().store.create_user("newbie", is_approved=False)

        everyone = client.get("/admin/users", headers=admin_headers)
        waiting = client.get("/admin/users/pending", headers=admin_headers)

        assert everyone.status_code == 200
        names = {u["username"] for u in everyone.json()["data"]["users"]}
        assert names == {"root", "member", "newbie"}
        assert [u["id"] for u in waiting.json()["data"]["users"]] == [pending.id]
