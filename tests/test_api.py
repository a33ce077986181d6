"""HTTP flows through the FastAPI app backed by the memory store."""

import asyncio

import pytest
from fastapi.testclient import TestClient

from authcore import app as app_module
from authcore.api.error_handling import _STATUS_TO_CODE, _error_response
from authcore.config import reset_settings_cache
from authcore.service.runtime import get_runtime
from authcore.storage.models import Role

PASSWORD = "OldPass1!"


class RecordingMailer:
    def __init__(self):
        self.verifications = []
        self.resets = []

    def send_email_verification(self, to_email, secret, *, ttl_hours=24):
        self.verifications.append((to_email, secret))
        return True

    def send_password_reset(self, to_email, secret, *, ttl_minutes=60):
        self.resets.append((to_email, secret))
        return True


@pytest.fixture
def mailer(reset_runtime_state):
    recorder = RecordingMailer()
    reset_runtime_state.credentials.mailer = recorder
    return recorder


@pytest.fixture
def client(mailer):
    return TestClient(app_module.app)


def _register(client, email="jo@example.com", username="joe"):
    return client.post(
        "/v1/auth/register",
        json={"email": email, "username": username, "display_name": "Jo", "password": PASSWORD},
    )


def _login(client, email="jo@example.com", password=PASSWORD):
    return client.post("/v1/auth/login", json={"email": email, "password": password})


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


def _make_admin(user_id):
    asyncio.run(get_runtime().credentials.assign_role(user_id, Role.ADMIN))


class TestRegisterAndLogin:
    def test_register_returns_user(self, client, mailer):
        response = _register(client)
        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["email"] == "jo@example.com"
        assert body["data"]["verified"] is False
        assert body["data"]["roles"] == ["user"]
        assert "password" not in body["data"]
        assert len(mailer.verifications) == 1

    def test_duplicate_email_conflict(self, client):
        _register(client)
        response = _register(client, username="jo2")
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "email_exists"

    def test_weak_password_rejected(self, client):
        response = client.post(
            "/v1/auth/register",
            json={"email": "kim@example.com", "username": "kim", "display_name": "Kim", "password": "weak"},
        )
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert error["details"] == {"field": "password"}

    def test_signup_disabled(self, client, monkeypatch):
        monkeypatch.setenv("ALLOW_SIGNUP", "false")
        reset_settings_cache()
        response = _register(client)
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_login_returns_tokens(self, client):
        _register(client)
        response = _login(client)
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["token_type"] == "bearer"
        assert data["access_token"].count(".") == 2
        assert data["refresh_token"]
        assert response.headers["Cache-Control"] == "no-store"

    def test_unknown_email_and_wrong_password_look_the_same(self, client):
        _register(client)
        wrong = _login(client, password="WrongPass1!")
        unknown = _login(client, email="nobody@example.com")
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json()["error"] == unknown.json()["error"]

    def test_missing_field_is_422_envelope(self, client):
        response = client.post("/v1/auth/login", json={"email": "jo@example.com"})
        assert response.status_code == 422
        assert response.json()["status"] == "error"
        assert response.json()["error"]["code"] == "validation_error"


class TestTokens:
    def test_me_requires_bearer(self, client):
        response = client.get("/v1/auth/me")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_me_with_access_token(self, client):
        _register(client)
        token = _login(client).json()["data"]["access_token"]
        response = client.get("/v1/auth/me", headers=_bearer(token))
        assert response.status_code == 200
        assert response.json()["data"]["username"] == "joe"

    def test_garbage_token_rejected(self, client):
        response = client.get("/v1/auth/validate", headers=_bearer("not.a.token"))
        assert response.status_code == 401

    def test_validate_reports_claims(self, client):
        _register(client)
        token = _login(client).json()["data"]["access_token"]
        data = client.get("/v1/auth/validate", headers=_bearer(token)).json()["data"]
        assert data["valid"] is True
        assert data["roles"] == ["user"]

    def test_refresh_rotates_and_old_token_dies(self, client):
        _register(client)
        first = _login(client).json()["data"]
        second = client.post("/v1/auth/refresh", json={"refresh_token": first["refresh_token"]})
        assert second.status_code == 200

        replay = client.post("/v1/auth/refresh", json={"refresh_token": first["refresh_token"]})
        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "token_invalid"

    def test_logout_all_devices(self, client):
        _register(client)
        sessions = [_login(client).json()["data"] for _ in range(3)]
        response = client.post(
            "/v1/auth/logout",
            json={"all_devices": True},
            headers=_bearer(sessions[0]["access_token"]),
        )
        assert response.json()["data"] == {"revoked": 3}
        for session in sessions:
            replay = client.post("/v1/auth/refresh", json={"refresh_token": session["refresh_token"]})
            assert replay.status_code == 401


class TestEmailAndPasswords:
    def test_verify_email(self, client, mailer):
        _register(client)
        secret = mailer.verifications[-1][1]
        response = client.post("/v1/auth/verify-email", json={"token": secret})
        assert response.status_code == 200
        assert response.json()["data"]["verified"] is True

        again = client.post("/v1/auth/verify-email", json={"token": secret})
        assert again.status_code == 401

    def test_reset_response_does_not_reveal_accounts(self, client, mailer):
        _register(client)
        known = client.post("/v1/auth/password/reset", json={"email": "jo@example.com"})
        unknown = client.post("/v1/auth/password/reset", json={"email": "ghost@example.com"})
        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"] == unknown.json()["data"]
        assert len(mailer.resets) == 1

    def test_reset_confirm_replaces_password(self, client, mailer):
        _register(client)
        client.post("/v1/auth/password/reset", json={"email": "jo@example.com"})
        secret = mailer.resets[-1][1]

        response = client.post(
            "/v1/auth/password/reset/confirm",
            json={"token": secret, "new_password": "NewPass1!"},
        )
        assert response.status_code == 200
        assert _login(client).status_code == 401
        assert _login(client, password="NewPass1!").status_code == 200

    def test_change_password_requires_current(self, client):
        _register(client)
        token = _login(client).json()["data"]["access_token"]
        response = client.post(
            "/v1/auth/password/change",
            json={"current_password": "WrongPass1!", "new_password": "NewPass1!"},
            headers=_bearer(token),
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_current_password"


class TestAdminRoutes:
    def test_non_admin_forbidden(self, client):
        user_id = _register(client).json()["data"]["id"]
        token = _login(client).json()["data"]["access_token"]
        response = client.get(f"/v1/auth/users/{user_id}/roles", headers=_bearer(token))
        assert response.status_code == 403

    def test_admin_manages_roles(self, client):
        admin_id = _register(client).json()["data"]["id"]
        _make_admin(admin_id)
        member_id = _register(client, email="lee@example.com", username="lee").json()["data"]["id"]
        token = _login(client).json()["data"]["access_token"]

        granted = client.post(
            f"/v1/auth/users/{member_id}/roles", json={"role": "moderator"}, headers=_bearer(token)
        )
        assert granted.status_code == 201
        assert granted.json()["data"]["role"] == "moderator"

        listed = client.get(f"/v1/auth/users/{member_id}/roles", headers=_bearer(token))
        assert listed.json()["data"]["roles"] == ["user", "moderator"]

        revoked = client.delete(
            f"/v1/auth/users/{member_id}/roles/moderator", headers=_bearer(token)
        )
        assert revoked.status_code == 200
        assert revoked.json()["data"]["is_active"] is False

    def test_admin_cannot_grant_admin(self, client):
        admin_id = _register(client).json()["data"]["id"]
        _make_admin(admin_id)
        member_id = _register(client, email="lee@example.com", username="lee").json()["data"]["id"]
        token = _login(client).json()["data"]["access_token"]

        response = client.post(
            f"/v1/auth/users/{member_id}/roles", json={"role": "admin"}, headers=_bearer(token)
        )
        assert response.status_code == 403

    def test_unknown_role_rejected(self, client):
        admin_id = _register(client).json()["data"]["id"]
        _make_admin(admin_id)
        token = _login(client).json()["data"]["access_token"]
        response = client.post(
            f"/v1/auth/users/{admin_id}/roles", json={"role": "superuser"}, headers=_bearer(token)
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "unknown_role"

    def test_deactivate_user(self, client):
        admin_id = _register(client).json()["data"]["id"]
        _make_admin(admin_id)
        member_id = _register(client, email="lee@example.com", username="lee").json()["data"]["id"]
        token = _login(client).json()["data"]["access_token"]

        response = client.post(f"/v1/auth/users/{member_id}/deactivate", headers=_bearer(token))
        assert response.status_code == 200
        assert response.json()["data"]["is_active"] is False

        login = _login(client, email="lee@example.com")
        assert login.status_code == 401
        assert login.json()["error"]["code"] == "invalid_credentials"

    def test_deactivated_login_matches_wrong_password(self, client):
        admin_id = _register(client).json()["data"]["id"]
        _make_admin(admin_id)
        _register(client, email="lee@example.com", username="lee")
        token = _login(client).json()["data"]["access_token"]
        wrong = _login(client, email="lee@example.com", password="WrongPass1!").json()

        member_id = get_runtime().credentials.store.get_user_by_email("lee@example.com").id
        client.post(f"/v1/auth/users/{member_id}/deactivate", headers=_bearer(token))
        inactive = _login(client, email="lee@example.com", password="WrongPass1!").json()

        assert inactive["error"] == wrong["error"]


class TestEnvelope:
    def test_error_response_shape(self):
        response = _error_response(404, "missing", {"id": "x"})
        assert response.status_code == 404
        assert b'"code":"not_found"' in response.body

    def test_status_mapping_covers_service_codes(self):
        assert _STATUS_TO_CODE[401] == "unauthorized"
        assert _STATUS_TO_CODE[503] == "unavailable"

    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json()["checks"]["store"]["status"] == "healthy"

    def test_request_id_is_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"

    def test_unknown_route_is_enveloped(self, client):
        response = client.get("/v1/auth/nothing-here")
        assert response.status_code == 404
        assert response.json()["status"] == "error"
        assert response.json()["error"]["code"] == "not_found"

    def test_wrong_method_is_enveloped(self, client):
        response = client.get("/v1/auth/login")
        assert response.status_code == 405
        assert response.json()["error"]["code"] == "method_not_allowed"
        assert "POST" in response.headers["Allow"]
