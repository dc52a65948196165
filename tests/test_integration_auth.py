"""Integration tests for the HTTP auth flow.

Covers register, login, refresh rotation, logout and the profile endpoint
through the FastAPI app with the memory store.
"""

import time

import pytest
from fastapi.testclient import TestClient

from tessera import app as app_module
from tessera.service.runtime import get_runtime

EMAIL = "alice@example.com"
PASSWORD = "Passw0rd1"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def registered(client):
    response = client.post(
        "/auth/register",
        json={"email": EMAIL, "password": PASSWORD, "username": "alice"},
    )
    assert response.status_code == 201
    return response.json()


def _login(client, email=EMAIL, password=PASSWORD):
    return client.post("/auth/login", json={"email": email, "password": password})


class TestRegister:
    def test_register_creates_user(self, client):
        response = client.post(
            "/auth/register",
            json={
                "email": EMAIL,
                "password": PASSWORD,
                "username": "alice",
                "first_name": "Alice",
            },
        )
        assert response.status_code == 201
        data = response.json()
        assert data["email"] == EMAIL
        assert data["message"] == "User registered successfully"
        assert get_runtime().store.get_user(data["user_id"]) is not None

    def test_register_rejects_duplicate_email(self, client, registered):
        response = client.post(
            "/auth/register", json={"email": EMAIL, "password": PASSWORD}
        )
        assert response.status_code == 400
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "validation_error"
        assert body["error"]["message"] == "User with this email already exists"

    def test_register_rejects_weak_password(self, client):
        response = client.post(
            "/auth/register", json={"email": EMAIL, "password": "weak"}
        )
        assert response.status_code == 400
        assert response.json()["error"]["details"] == {"field": "password"}

    def test_register_missing_field(self, client):
        response = client.post("/auth/register", json={"email": EMAIL})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"


class TestLogin:
    def test_login_returns_token_pair(self, client, registered):
        response = _login(client)
        assert response.status_code == 200
        data = response.json()
        assert data["token_type"] == "Bearer"
        assert data["expires_in"] == 3600
        assert data["access_token"].count(".") == 2
        assert data["refresh_token"]
        assert response.headers["Cache-Control"] == "no-store"

    def test_wrong_password_and_unknown_email_match(self, client, registered):
        wrong = _login(client, password="Wr0ngPassword")
        unknown = _login(client, email="nobody@example.com")
        assert wrong.status_code == unknown.status_code == 401
        wrong_error = wrong.json()["error"]
        unknown_error = unknown.json()["error"]
        assert wrong_error == unknown_error
        assert wrong_error["code"] == "invalid_credentials"

    def test_deactivated_account(self, client, registered):
        get_runtime().sessions.set_active(registered["user_id"], False)
        response = _login(client)
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "account_deactivated"


class TestRefreshAndLogout:
    def test_rotation_flow(self, client, registered):
        first = _login(client).json()

        rotated = client.post("/auth/refresh", json={"refresh_token": first["refresh_token"]})
        assert rotated.status_code == 200
        second = rotated.json()
        assert second["refresh_token"] != first["refresh_token"]

        replay = client.post("/auth/refresh", json={"refresh_token": first["refresh_token"]})
        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "invalid_refresh_token"

        third = client.post("/auth/refresh", json={"refresh_token": second["refresh_token"]})
        assert third.status_code == 200

        logout = client.post(
            "/auth/logout",
            headers={"Authorization": f"Bearer {second['access_token']}"},
        )
        assert logout.status_code == 200
        assert logout.json() == {"status": "ok", "revoked": 1}

        after = client.post(
            "/auth/refresh", json={"refresh_token": third.json()["refresh_token"]}
        )
        assert after.status_code == 401

    def test_logout_requires_token(self, client):
        response = client.post("/auth/logout")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_token"
        assert response.headers["WWW-Authenticate"] == "Bearer"


class TestProfile:
    def test_me_returns_profile(self, client, registered):
        tokens = _login(client).json()
        response = client.get(
            "/auth/me", headers={"Authorization": f"Bearer {tokens['access_token']}"}
        )
        assert response.status_code == 200
        data = response.json()
        assert data["id"] == registered["user_id"]
        assert data["email"] == EMAIL
        assert data["username"] == "alice"
        assert data["is_active"] is True
        assert "password_hash" not in data
        assert "created_at" in data

    def test_me_with_tampered_token(self, client, registered):
        tokens = _login(client).json()
        response = client.get(
            "/auth/me",
            headers={"Authorization": f"Bearer {tokens['access_token']}x"},
        )
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_token"

    def test_me_with_expired_token(self, client, registered):
        runtime = get_runtime()
        runtime.token_issuer._clock = lambda: 1_000_000.0
        expired = runtime.token_issuer.issue_access_token(registered["user_id"], EMAIL)
        runtime.token_issuer._clock = time.time
        response = client.get("/auth/me", headers={"Authorization": f"Bearer {expired}"})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "token_expired"


class TestHealth:
    def test_healthz_reports_store(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["store"] == "memory"

    def test_request_id_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.headers["X-Frame-Options"] == "DENY"
