"""
tests/test_api_auth.py -- Integration tests for the /api/v1/auth endpoints.

Every request runs through the real ASGI stack (security gate, slowapi,
exception handlers) against a fresh shared-memory database.

Covers:
  - Lockout: five failures, the sixth (correct) attempt answers 429 with
    Retry-After, and login works again once the lockout lapses
  - TOTP login: requires2FA without a session, then verify-login
  - Session id regenerated on every establishment
  - Logout, password change, expired password and forced reset
  - TOTP enrollment through generate/verify/status/disable
  - User creation permissions and conflicts, trusted devices
"""

from __future__ import annotations

from datetime import timedelta

import pyotp
from conftest import ADMIN_PASSWORD, PASSWORD, login, totp_now

from auth.tokens import SESSION_COOKIE, decode_session_token
from core.db import now_utc, to_iso
from security.models import EventType


def _transport_id(client) -> str | None:
    token = client.cookies.get(SESSION_COOKIE)
    return decode_session_token(token) if token else None


class TestLogin:
    def test_login_sets_session_cookie(self, client):
        resp = login(client)
        assert resp.status_code == 200
        assert resp.json()["user"]["username"] == "alice"
        assert "twoFactorEnabled" in resp.json()["user"]
        assert resp.headers["cache-control"] == "no-store"
        assert client.get("/api/v1/auth/me").json()["email"] == "alice@example.com"

    def test_bad_credentials_generic_401(self, client):
        for username in ("alice", "nobody"):
            resp = login(client, username, "wrong-password")
            assert resp.status_code == 401
            assert resp.json()["error"]["message"] == "Invalid username or password."

    def test_missing_password_is_422(self, client):
        resp = client.post("/api/v1/auth/login", json={"username": "alice"})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"

    def test_lockout_then_lapse(self, client, clock):
        for _ in range(5):
            assert login(client, password="wrong-password").status_code == 401

        resp = login(client)
        assert resp.status_code == 429
        assert resp.headers["retry-after"] == "900"
        assert "15 minutes" in resp.json()["error"]["message"]

        # Another client IP is unaffected.
        assert login(client, ip="10.0.0.99").status_code == 200

        clock.advance(15 * 60)
        assert login(client).status_code == 200

    def test_session_id_regenerated_on_relogin(self, client):
        login(client)
        first = _transport_id(client)
        login(client)
        second = _transport_id(client)

        assert first != second
        sessions = client.app.state.session_store
        assert sessions.get_active(first) is None
        assert sessions.get_active(second) is not None

    def test_unauthenticated_me_is_401(self, client):
        resp = client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_bearer_token_accepted(self, client):
        login(client)
        token = client.cookies.get(SESSION_COOKIE)
        client.cookies.clear()
        resp = client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 200


class TestTwoFactorLogin:
    def test_pending_then_verify(self, client, clock):
        resp = login(client, "bob")
        assert resp.status_code == 200
        assert resp.json() == {"requires2FA": True, "hasBiometric": False}
        pending_id = _transport_id(client)
        assert client.get("/api/v1/auth/me").status_code == 401

        resp = client.post("/api/v1/auth/2fa/verify-login", json={"code": totp_now(clock)})
        assert resp.status_code == 200, resp.text
        assert resp.json()["user"]["username"] == "bob"
        assert _transport_id(client) != pending_id
        assert client.get("/api/v1/auth/me").status_code == 200

    def test_wrong_code_keeps_pending(self, client, clock):
        login(client, "bob")
        resp = client.post("/api/v1/auth/2fa/verify-login", json={"code": "000000"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "two_factor_invalid"

        resp = client.post("/api/v1/auth/2fa/verify-login", json={"code": totp_now(clock)})
        assert resp.status_code == 200

    def test_wrong_codes_do_not_lock_out_the_ip(self, client, clock):
        login(client, "bob")
        for _ in range(6):
            resp = client.post("/api/v1/auth/2fa/verify-login", json={"code": "000000"})
            assert resp.status_code == 400
        assert client.app.state.lockout.failed_attempts("10.0.0.5") == 0
        assert client.app.state.audit.count(EventType.TWO_FACTOR_FAILED) == 6

        resp = client.post("/api/v1/auth/2fa/verify-login", json={"code": totp_now(clock)})
        assert resp.status_code == 200
        client.cookies.clear()
        assert login(client).status_code == 200

    def test_verify_without_pending(self, client, clock):
        resp = client.post("/api/v1/auth/2fa/verify-login", json={"code": totp_now(clock)})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "session_error"


class TestLogout:
    def test_logout_ends_session(self, client):
        login(client)
        old = _transport_id(client)

        resp = client.post("/api/v1/auth/logout")
        assert resp.status_code == 200
        assert client.get("/api/v1/auth/me").status_code == 401
        assert client.app.state.session_store.get_active(old) is None
        assert client.app.state.audit.count(EventType.LOGOUT) == 1

    def test_logout_without_session_is_ok(self, client):
        assert client.post("/api/v1/auth/logout").status_code == 200


class TestPasswords:
    def test_change_password(self, client):
        login(client)
        resp = client.post(
            "/api/v1/auth/password", json={"currentPassword": "nope", "newPassword": "another-pass-1"}
        )
        assert resp.status_code == 400

        resp = client.post(
            "/api/v1/auth/password", json={"currentPassword": PASSWORD, "newPassword": PASSWORD}
        )
        assert resp.status_code == 400

        resp = client.post(
            "/api/v1/auth/password", json={"currentPassword": PASSWORD, "newPassword": "another-pass-1"}
        )
        assert resp.status_code == 200
        assert login(client, password="another-pass-1").status_code == 200

    def test_wrong_current_password_is_audited(self, client):
        login(client)
        resp = client.post(
            "/api/v1/auth/password", json={"currentPassword": "nope", "newPassword": "another-pass-1"}
        )
        assert resp.status_code == 400

        audit = client.app.state.audit
        entry = audit.recent(event_type=EventType.LOGIN_FAILED)[0]
        assert entry.user_id == client.account_ids["alice"]
        assert entry.request_path == "/api/v1/auth/password"
        assert entry.blocked
        assert audit.stats().failed_logins == 1
        assert audit.count(EventType.PASSWORD_CHANGED) == 0

    def test_new_password_too_short(self, client):
        login(client)
        resp = client.post("/api/v1/auth/password", json={"currentPassword": PASSWORD, "newPassword": "short"})
        assert resp.status_code == 422

    def test_expired_password_and_forced_reset(self, client):
        state = client.app.state
        state.security_store.update_settings(passwordExpiration=True)
        state.account_store.update_account(
            client.account_ids["alice"], password_updated_at=to_iso(now_utc() - timedelta(days=200))
        )

        resp = login(client)
        assert resp.status_code == 403
        body = resp.json()
        assert body["passwordExpired"] is True
        assert body["userId"] == client.account_ids["alice"]
        assert body["error"]["code"] == "password_expired"
        assert client.get("/api/v1/auth/me").status_code == 401

        resp = client.post(
            "/api/v1/auth/force-password-reset",
            json={"username": "alice", "currentPassword": PASSWORD, "newPassword": "fresh-pass-2"},
        )
        assert resp.status_code == 200
        assert login(client, password="fresh-pass-2").status_code == 200

    def test_forced_reset_needs_expired_single_factor_password(self, client):
        for username in ("alice", "bob"):
            resp = client.post(
                "/api/v1/auth/force-password-reset",
                json={"username": username, "currentPassword": PASSWORD, "newPassword": "fresh-pass-2"},
            )
            assert resp.status_code == 403
            assert resp.json()["error"]["code"] == "reset_not_allowed"
        assert login(client).status_code == 200


class TestTwoFactorEnrollment:
    def test_generate_verify_disable(self, client, clock):
        login(client)
        setup = client.post("/api/v1/auth/2fa/generate").json()
        assert setup["qrCode"].startswith("data:image/png;base64,")
        assert setup["otpauthUrl"].startswith("otpauth://totp/")

        assert client.get("/api/v1/auth/2fa/status").json() == {"enabled": False, "hasBiometric": False}
        assert client.post("/api/v1/auth/2fa/verify", json={"token": "000000"}).status_code == 400

        code = pyotp.TOTP(setup["secret"]).at(clock())
        assert client.post("/api/v1/auth/2fa/verify", json={"token": code}).status_code == 200
        assert client.get("/api/v1/auth/2fa/status").json()["enabled"] is True
        assert client.post("/api/v1/auth/2fa/generate").status_code == 400

        assert client.post("/api/v1/auth/2fa/disable", json={"token": code}).status_code == 200
        assert client.get("/api/v1/auth/2fa/status").json()["enabled"] is False


class TestUsers:
    def test_admin_creates_user(self, admin_client):
        resp = admin_client.post(
            "/api/v1/auth/users",
            json={"username": "carol", "email": "Carol@Example.com", "password": "carol-pass-1", "role": "Editor"},
        )
        assert resp.status_code == 201, resp.text
        assert resp.json()["email"] == "carol@example.com"
        assert resp.json()["role"] == "Editor"
        assert "hashedPassword" not in resp.json()
        assert login(admin_client, "carol", "carol-pass-1").status_code == 200

    def test_duplicate_user_is_409(self, admin_client):
        resp = admin_client.post(
            "/api/v1/auth/users",
            json={"username": "alice", "email": "new@example.com", "password": "whatever-1"},
        )
        assert resp.status_code == 409

    def test_non_admin_forbidden(self, client):
        login(client)
        resp = client.post(
            "/api/v1/auth/users", json={"username": "dave", "email": "d@example.com", "password": "dave-pass-1"}
        )
        assert resp.status_code == 403
        assert client.get("/api/v1/auth/users").status_code == 403

    def test_list_users(self, admin_client):
        names = [u["username"] for u in admin_client.get("/api/v1/auth/users").json()]
        assert names == ["alice", "bob", "root"]


class TestTrustedDevices:
    def test_add_list_remove(self, client):
        login(client)
        resp = client.post(
            "/api/v1/auth/trusted-devices", json={"deviceName": "Work laptop", "deviceFingerprint": "fp-12345678"}
        )
        assert resp.status_code == 201
        device_id = resp.json()["id"]
        assert resp.json()["ipAddress"] == "10.0.0.5"

        devices = client.get("/api/v1/auth/trusted-devices").json()
        assert [d["deviceName"] for d in devices] == ["Work laptop"]

        assert client.delete(f"/api/v1/auth/trusted-devices/{device_id}").status_code == 200
        assert client.delete(f"/api/v1/auth/trusted-devices/{device_id}").status_code == 404

    def test_cannot_remove_someone_elses_device(self, client):
        login(client, "root", ADMIN_PASSWORD)
        device_id = client.post(
            "/api/v1/auth/trusted-devices", json={"deviceName": "Root box", "deviceFingerprint": "fp-root-0001"}
        ).json()["id"]

        login(client)
        assert client.delete(f"/api/v1/auth/trusted-devices/{device_id}").status_code == 404
