"""Integration tests for the HTTP authentication flow.

Tests the complete flow including:
- Login and bearer authentication
- Progressive lockout
- Logout and token revocation
- Password change and admin reset
"""

import pytest
from fastapi.testclient import TestClient

from staffledger import app as app_module
from staffledger.service.runtime import get_runtime
from staffledger.storage.models import ROLE_EMPLOYEE, ROLE_SUPER_ADMIN

PASSWORD = "Secret#123"
ADMIN_PASSWORD = "Admin#Pass9"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def _seed(email, password=PASSWORD, *, roles=None, is_active=True, **names):
    runtime = get_runtime()
    return runtime.store.create_principal(
        email,
        runtime.auth.hash_password(password),
        roles=roles or {ROLE_EMPLOYEE},
        is_active=is_active,
        **names,
    )


def _login(client, email, password=PASSWORD):
    return client.post("/v1/auth/login", json={"email": email, "password": password})


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def employee():
    return _seed("a@x.com", first_name="Ada", last_name="Lovelace")


@pytest.fixture
def admin():
    return _seed(
        "root@x.com", ADMIN_PASSWORD, roles={ROLE_EMPLOYEE, ROLE_SUPER_ADMIN}
    )


class TestLogin:
    def test_login_returns_token_and_summary(self, client, employee):
        response = _login(client, "A@X.com")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["token_type"] == "bearer"
        assert data["token"].count(".") == 2
        assert data["user"] == {
            "id": employee.id,
            "name": "AdaLovelace",
            "email": "a@x.com",
            "is_active": True,
        }

    def test_token_authenticates_me(self, client, employee):
        token = _login(client, "a@x.com").json()["data"]["token"]

        response = client.get("/v1/auth/me", headers=_bearer(token))

        assert response.status_code == 200
        assert response.json()["data"] == {
            "user_id": employee.id,
            "email": "a@x.com",
            "roles": [ROLE_EMPLOYEE],
        }

    def test_unknown_email_and_wrong_password_look_alike(self, client, employee):
        """Both failures return the same status, code and message."""
        unknown = _login(client, "ghost@x.com")
        wrong = _login(client, "a@x.com", "Wrong#123")

        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json()["error"] == wrong.json()["error"]
        assert wrong.json()["error"]["message"] == "invalid email or password"

    def test_malformed_email_is_rejected(self, client):
        response = _login(client, "not-an-email")

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_disabled_account_is_refused(self, client):
        _seed("off@x.com", is_active=False)

        response = _login(client, "off@x.com")

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "account disabled"

    def test_me_requires_token(self, client):
        response = client.get("/v1/auth/me")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_garbage_token_is_anonymous(self, client, employee):
        response = client.get("/v1/auth/me", headers=_bearer("not.a.token"))

        assert response.status_code == 401


class TestLockout:
    def test_fifth_failure_locks_account(self, client, employee):
        for _ in range(5):
            assert _login(client, "a@x.com", "Wrong#123").status_code == 401

        response = _login(client, "a@x.com")

        assert response.status_code == 423
        error = response.json()["error"]
        assert error["code"] == "account_locked"
        assert error["message"].startswith("Account is locked until: ")
        assert "locked_until" in error["details"]

    def test_success_resets_failures(self, client, employee):
        for _ in range(4):
            _login(client, "a@x.com", "Wrong#123")
        assert _login(client, "a@x.com").status_code == 200

        for _ in range(4):
            _login(client, "a@x.com", "Wrong#123")

        assert _login(client, "a@x.com").status_code == 200
        assert get_runtime().store.get_principal(employee.id).failed_attempts == 0


class TestLogout:
    def test_missing_token(self, client):
        response = client.post("/v1/auth/logout")

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Missing token"

    def test_logout_revokes_token(self, client, employee):
        token = _login(client, "a@x.com").json()["data"]["token"]

        response = client.post("/v1/auth/logout", headers=_bearer(token))

        assert response.status_code == 200
        assert response.json()["data"]["message"] == "Logout successful"
        assert client.get("/v1/auth/me", headers=_bearer(token)).status_code == 401

    def test_second_logout_succeeds(self, client, employee):
        token = _login(client, "a@x.com").json()["data"]["token"]
        client.post("/v1/auth/logout", headers=_bearer(token))

        response = client.post("/v1/auth/logout", headers=_bearer(token))

        assert response.status_code == 200

    def test_forged_token_is_rejected(self, client):
        response = client.post("/v1/auth/logout", headers=_bearer("a.b.c"))

        assert response.status_code == 401


class TestPasswords:
    def test_change_password(self, client, employee):
        token = _login(client, "a@x.com").json()["data"]["token"]

        response = client.post(
            "/v1/users/change-password",
            json={"old_password": PASSWORD, "new_password": "Fresh#456"},
            headers=_bearer(token),
        )

        assert response.status_code == 200
        assert _login(client, "a@x.com", "Fresh#456").status_code == 200
        assert _login(client, "a@x.com", PASSWORD).status_code == 401

    def test_change_password_wrong_old(self, client, employee):
        token = _login(client, "a@x.com").json()["data"]["token"]

        response = client.post(
            "/v1/users/change-password",
            json={"old_password": "Nope#0000", "new_password": "Fresh#456"},
            headers=_bearer(token),
        )

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Old password is incorrect"

    def test_change_password_rejects_weak_password(self, client, employee):
        token = _login(client, "a@x.com").json()["data"]["token"]

        response = client.post(
            "/v1/users/change-password",
            json={"old_password": PASSWORD, "new_password": "weak"},
            headers=_bearer(token),
        )

        assert response.status_code == 400

    def test_reset_requires_super_admin(self, client, employee):
        token = _login(client, "a@x.com").json()["data"]["token"]

        response = client.post(
            f"/v1/users/{employee.id}/reset-password",
            json={"password": "Fresh#456"},
            headers=_bearer(token),
        )

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_admin_resets_password(self, client, employee, admin):
        token = _login(client, "root@x.com", ADMIN_PASSWORD).json()["data"]["token"]

        response = client.post(
            f"/v1/users/{employee.id}/reset-password",
            json={"password": "Fresh#456"},
            headers=_bearer(token),
        )

        assert response.status_code == 200
        assert _login(client, "a@x.com", "Fresh#456").status_code == 200

    def test_reset_unknown_user(self, client, admin):
        token = _login(client, "root@x.com", ADMIN_PASSWORD).json()["data"]["token"]

        response = client.post(
            "/v1/users/no-such-user/reset-password",
            json={"password": "Fresh#456"},
            headers=_bearer(token),
        )

        assert response.status_code == 404


class TestPlumbing:
    def test_healthz_on_memory_backends(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["type"] == "memory"
        assert body["checks"]["redis"]["status"] == "not_configured"

    def test_request_id_is_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
