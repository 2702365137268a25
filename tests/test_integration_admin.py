"""Integration tests for the admin-only user management endpoints."""

import pytest

from conftest import SEED_EMAIL, SEED_PASSWORD, auth_header


@pytest.fixture
def admin_token(client):
    response = client.post(
        "/api/auth/login", json={"email": SEED_EMAIL, "password": SEED_PASSWORD}
    )
    assert response.status_code == 200
    client.cookies.clear()
    return response.json()["token"]


@pytest.fixture
def jane(client, register_payload):
    response = client.post("/api/auth/register", json=register_payload)
    assert response.status_code == 201
    client.cookies.clear()
    return response.json()


class TestUserListing:
    def test_admin_lists_users(self, client, admin_token, jane):
        response = client.get("/api/auth/users", headers=auth_header(admin_token))
        assert response.status_code == 200
        data = response.json()
        assert data["message"] == "Users retrieved successfully"
        emails = [u["email"] for u in data["users"]]
        assert emails == [SEED_EMAIL, "jane@example.com"]
        assert all("passwordHash" not in u for u in data["users"])

    def test_regular_user_is_forbidden(self, client, jane):
        response = client.get("/api/auth/users", headers=auth_header(jane["token"]))
        assert response.status_code == 403
        body = response.json()
        assert body["message"] == "Insufficient permissions"
        assert body["error"]["code"] == "forbidden"

    def test_anonymous_is_unauthorized(self, client):
        assert client.get("/api/auth/users").status_code == 401


class TestRoleUpdate:
    """PATCH /api/auth/users/{id}/role."""

    def test_non_admin_cannot_promote(self, client, runtime, jane):
        response = client.patch(
            f"/api/auth/users/{jane['user']['id']}/role",
            headers=auth_header(jane["token"]),
            json={"role": "admin"},
        )
        assert response.status_code == 403
        assert runtime.store.get_user(jane["user"]["id"]).role == "user"

    def test_admin_promotes_user(self, client, admin_token, jane):
        response = client.patch(
            f"/api/auth/users/{jane['user']['id']}/role",
            headers=auth_header(admin_token),
            json={"role": "admin"},
        )
        assert response.status_code == 200
        assert response.json()["user"]["role"] == "admin"

        # the existing session picks up the new role immediately
        listing = client.get("/api/auth/users", headers=auth_header(jane["token"]))
        assert listing.status_code == 200

    def test_invalid_role(self, client, admin_token, jane):
        response = client.patch(
            f"/api/auth/users/{jane['user']['id']}/role",
            headers=auth_header(admin_token),
            json={"role": "owner"},
        )
        assert response.status_code == 400
        assert response.json()["field"] == "role"

    def test_unknown_user(self, client, admin_token):
        response = client.patch(
            "/api/auth/users/does-not-exist/role",
            headers=auth_header(admin_token),
            json={"role": "user"},
        )
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"


class TestStatusUpdate:
    """PATCH /api/auth/users/{id}/status."""

    def test_deactivation_locks_user_out(self, client, admin_token, jane):
        response = client.patch(
            f"/api/auth/users/{jane['user']['id']}/status",
            headers=auth_header(admin_token),
            json={"isActive": False},
        )
        assert response.status_code == 200
        assert response.json()["user"]["isActive"] is False

        assert client.get("/api/auth/me", headers=auth_header(jane["token"])).status_code == 401
        login = client.post(
            "/api/auth/login",
            json={"email": "jane@example.com", "password": "Passw0rd!"},
        )
        assert login.status_code == 401
        assert login.json()["message"] == "Account is deactivated"

    def test_reactivation(self, client, admin_token, jane):
        path = f"/api/auth/users/{jane['user']['id']}/status"
        client.patch(path, headers=auth_header(admin_token), json={"isActive": False})
        response = client.patch(path, headers=auth_header(admin_token), json={"isActive": True})
        assert response.json()["user"]["isActive"] is True
        login = client.post(
            "/api/auth/login",
            json={"email": "jane@example.com", "password": "Passw0rd!"},
        )
        assert login.status_code == 200

    def test_missing_flag_is_rejected(self, client, admin_token, jane):
        response = client.patch(
            f"/api/auth/users/{jane['user']['id']}/status",
            headers=auth_header(admin_token),
            json={},
        )
        assert response.status_code == 400
        assert response.json()["field"] == "isActive"


class TestLoginAttemptAudit:
    def test_admin_reads_attempts(self, client, admin_token):
        client.post(
            "/api/auth/login", json={"email": "ghost@example.com", "password": "Nope1234"}
        )
        response = client.get(
            "/api/auth/login-attempts",
            headers=auth_header(admin_token),
            params={"email": "ghost@example.com"},
        )
        assert response.status_code == 200
        attempts = response.json()["attempts"]
        assert len(attempts) == 1
        assert attempts[0]["success"] is False
        assert attempts[0]["email"] == "ghost@example.com"

    def test_limit_is_bounded(self, client, admin_token):
        response = client.get(
            "/api/auth/login-attempts",
            headers=auth_header(admin_token),
            params={"limit": 0},
        )
        assert response.status_code == 400
        assert response.json()["field"] == "limit"
