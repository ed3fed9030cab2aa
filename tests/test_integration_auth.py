"""End-to-end tests for password registration, login and status."""

import pytest
from fastapi.testclient import TestClient

import karass.app as app_module
from karass.service.runtime import get_runtime


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _register(client, email="alice@example.com", username="alice", password="Secret123", **extra):
    body = {"email": email, "username": username, "password": password, **extra}
    return client.post("/auth/register", json=body)


def _login(client, identifier, password="Secret123", **kwargs):
    return client.post(
        "/auth/login",
        json={"emailOrUsername": identifier, "password": password},
        **kwargs,
    )


class TestRegister:
    def test_register_returns_token_and_user(self, client):
        resp = _register(client, twitterHandle="@alice_tw")

        assert resp.status_code == 201
        body = resp.json()
        assert body["status"] == "ok"
        user = body["data"]["user"]
        assert user["username"] == "alice"
        assert user["email"] == "alice@example.com"
        assert user["twitterHandle"] == "alice_tw"
        assert user["githubHandle"] is None
        assert user["isApproved"] is True
        assert user["isAdmin"] is False
        assert "createdAt" in user
        assert "password" not in str(user).lower()
        claims = get_runtime().tokens.verify(body["data"]["token"])
        assert claims.user_id == user["id"]

    def test_duplicate_email_any_case(self, client):
        assert _register(client).status_code == 201

        resp = _register(client, email="ALICE@example.com", username="alice2")

        assert resp.status_code == 409
        error = resp.json()["error"]
        assert error["code"] == "email_taken"
        assert error["message"] == "Email already registered"
        assert get_runtime().store.get_user_by_username("alice2") is None

    def test_duplicate_username(self, client):
        assert _register(client).status_code == 201

        resp = _register(client, email="other@example.com")

        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "username_taken"

    def test_weak_password_rejected_without_echo(self, client):
        resp = _register(client, password="weakpass")

        assert resp.status_code == 400
        error = resp.json()["error"]
        assert error["code"] == "validation_error"
        assert any(d["field"] == "password" for d in error["details"])
        assert "weakpass" not in resp.text

    def test_missing_fields(self, client):
        resp = client.post("/auth/register", json={"email": "a@x.com"})

        assert resp.status_code == 400
        fields = {d["field"] for d in resp.json()["error"]["details"]}
        assert {"username", "password"} <= fields

    def test_username_with_trailing_newline_rejected(self, client):
        assert _register(client, username="abc").status_code == 201

        resp = _register(client, email="other@example.com", username="abc\n")

        assert resp.status_code == 400
        error = resp.json()["error"]
        assert error["code"] == "validation_error"
        assert any(d["field"] == "username" for d in error["details"])

    def test_allow_listed_email_registers_as_admin(self, client, monkeypatch):
        monkeypatch.setenv("ADMIN_EMAILS", "boss@example.com, chief@example.com")

        resp = _register(client, email="Boss@Example.com", username="boss")

        assert resp.status_code == 201
        assert resp.json()["data"]["user"]["isAdmin"] is True


class TestLogin:
    def test_login_by_email_and_username(self, client):
        user_id = _register(client).json()["data"]["user"]["id"]

        by_email = _login(client, "ALICE@example.com")
        by_username = _login(client, "alice")

        assert by_email.status_code == 200
        assert by_username.status_code == 200
        assert by_email.json()["data"]["user"]["id"] == user_id
        assert get_runtime().tokens.verify(by_username.json()["data"]["token"]).user_id == user_id

    def test_wrong_password_and_unknown_user_look_alike(self, client):
        _register(client)

        wrong = _login(client, "alice", "Secret999")
        unknown = _login(client, "nobody")

        for resp in (wrong, unknown):
            assert resp.status_code == 401
            assert resp.json()["error"]["message"] == "Invalid credentials"

    def test_oauth_only_account_is_told_to_use_provider(self, client):
        get_runtime().store.create_user("octocat")

        resp = _login(client, "octocat")

        assert resp.status_code == 401
        assert resp.json()["error"]["message"] == "Please use Twitter/X or GitHub to sign in"

    def test_login_with_unnormalized_email_as_registered(self, client):
        fullwidth = "\uff21\uff2c\uff29\uff23\uff25@example.com"
        user_id = _register(client, email=fullwidth).json()["data"]["user"]["id"]

        resp = _login(client, fullwidth)

        assert resp.status_code == 200
        assert resp.json()["data"]["user"]["id"] == user_id

    def test_malformed_email_identifier_is_invalid_credentials(self, client):
        _register(client)

        resp = _login(client, "alice@@")

        assert resp.status_code == 401
        assert resp.json()["error"]["message"] == "Invalid credentials"

    def test_blank_identifier(self, client):
        resp = _login(client, "   ")

        assert resp.status_code == 400


class TestStatus:
    def test_status_for_existing_user(self, client):
        user_id = _register(client).json()["data"]["user"]["id"]

        resp = client.get(f"/auth/status/{user_id}")

        assert resp.status_code == 200
        assert resp.json()["data"] == {"isApproved": True, "isAdmin": False}

    def test_unknown_user(self, client):
        resp = client.get("/auth/status/999")

        assert resp.status_code == 404
        assert resp.json()["error"]["message"] == "User not found"

    @pytest.mark.parametrize("user_id", ["abc", "0", "-3"])
    def test_malformed_id(self, client, user_id):
        resp = client.get(f"/auth/status/{user_id}")

        assert resp.status_code == 400


class TestAuthRateLimit:
    def test_eleventh_attempt_is_rejected(self, client):
        statuses = [_login(client, "nobody").status_code for _ in range(10)]

        blocked = _login(client, "nobody")

        assert statuses == [401] * 10
        assert blocked.status_code == 429
        assert blocked.json()["error"]["code"] == "rate_limited"
        assert 1 <= int(blocked.headers["Retry-After"]) <= 900

    def test_rate_limit_headers(self, client):
        resp = _register(client)

        assert resp.status_code == 201
        assert resp.headers["X-RateLimit-Limit"] == "10"
        assert resp.headers["X-RateLimit-Remaining"] == "9"

    def test_auth_and_general_limits_are_separate(self, client):
        for _ in range(10):
            _login(client, "nobody")

        assert _login(client, "nobody").status_code == 429
        assert client.get("/auth/status/999").status_code == 404

    def test_forwarded_address_used_when_trusted(self, client, monkeypatch):
        monkeypatch.setenv("TRUST_PROXY_HEADERS", "true")
        for _ in range(10):
            _login(client, "nobody", headers={"X-Forwarded-For": "203.0.113.5"})

        blocked = _login(client, "nobody", headers={"X-Forwarded-For": "203.0.113.5"})
        other = _login(client, "nobody", headers={"X-Forwarded-For": "198.51.100.7, 10.0.0.1"})

        assert blocked.status_code == 429
        assert other.status_code == 401
