"""
tests/test_webauthn.py -- WebAuthn registration and assertion with a software authenticator.

Covers:
  - Registration stores the attested credential; wrong origin is rejected
    and the challenge does not survive the failure
  - Assertion options require a pending 2FA login and registered credentials
  - A strictly increasing signature counter is required; replay is refused
  - A failed assertion consumes the challenge but keeps the pending login
  - The same flow end to end through the HTTP endpoints
"""

from __future__ import annotations

import pytest
from conftest import BOB_TOTP_SECRET, LoginHarness, login
from webauthn_helpers import SoftAuthenticator

from auth.exceptions import SessionError, WebAuthnVerificationFailed
from auth.login import LoginAttempt, LoginState
from security.models import EventType

IP = LoginHarness.ip


@pytest.fixture
def h(harness) -> LoginHarness:
    return harness


@pytest.fixture
def webauthn(h):
    return h.webauthn


def _register(h, webauthn, username: str = "bob", authenticator: SoftAuthenticator | None = None):
    authenticator = authenticator or SoftAuthenticator()
    account = h.stores.accounts.get_by_id(h.ids[username])
    options = webauthn.registration_options(account, "reg-transport")
    stored = webauthn.verify_registration(
        account, "reg-transport", authenticator.register(options), "YubiKey", IP, None
    )
    return authenticator, stored


def _attempt() -> LoginAttempt:
    return LoginAttempt(identifier="", password="", ip_address=IP)


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def test_registration_stores_credential(h, webauthn):
    authenticator, stored = _register(h, webauthn)

    assert stored.id is not None
    assert stored.credential_id == authenticator.encoded_id
    assert stored.counter == 0
    assert stored.device_name == "YubiKey"
    assert h.stores.accounts.count_credentials(h.ids["bob"]) == 1
    assert h.stores.audit.count(EventType.WEBAUTHN_REGISTERED) == 1


def test_registration_options_exclude_existing_credentials(h, webauthn):
    authenticator, _ = _register(h, webauthn)
    bob = h.stores.accounts.get_by_id(h.ids["bob"])
    options = webauthn.registration_options(bob, "reg-transport")

    excluded = [c["id"] for c in options["publicKey"]["excludeCredentials"]]
    assert excluded == [authenticator.encoded_id]
    assert options["publicKey"]["rp"]["id"] == "localhost"


def test_registration_wrong_origin_rejected_and_challenge_consumed(h, webauthn):
    bob = h.stores.accounts.get_by_id(h.ids["bob"])
    authenticator = SoftAuthenticator()
    options = webauthn.registration_options(bob, "reg-transport")
    response = authenticator.register(options, origin="https://evil.example")

    with pytest.raises(WebAuthnVerificationFailed):
        webauthn.verify_registration(bob, "reg-transport", response, None, IP, None)
    assert h.stores.audit.count(EventType.WEBAUTHN_REGISTRATION_FAILED) == 1
    assert h.stores.accounts.count_credentials(bob.id) == 0

    with pytest.raises(SessionError):
        webauthn.verify_registration(bob, "reg-transport", authenticator.register(options), None, IP, None)


def test_registration_without_options_rejected(h, webauthn):
    bob = h.stores.accounts.get_by_id(h.ids["bob"])
    with pytest.raises(SessionError):
        webauthn.verify_registration(bob, "nothing-issued", {}, None, IP, None)


# ---------------------------------------------------------------------------
# Assertion
# ---------------------------------------------------------------------------


def test_login_options_require_pending_login(h, webauthn):
    _register(h, webauthn)
    with pytest.raises(SessionError):
        webauthn.authentication_options("no-pending-login")


def test_login_options_require_credentials(h, webauthn):
    pending = h.login("bob")
    with pytest.raises(WebAuthnVerificationFailed):
        webauthn.authentication_options(pending.transport_id)


def test_login_options_email_must_match_pending_account(h, webauthn):
    _register(h, webauthn)
    pending = h.login("bob")
    with pytest.raises(SessionError):
        webauthn.authentication_options(pending.transport_id, email="alice@example.com")
    assert webauthn.authentication_options(pending.transport_id, email="BOB@example.com")


def test_assertion_establishes_session(h, webauthn):
    authenticator, _ = _register(h, webauthn)
    pending = h.login("bob")
    assert pending.has_biometric

    options = webauthn.authentication_options(pending.transport_id)
    outcome = h.machine.complete_webauthn(pending.transport_id, authenticator.assert_(options, counter=1), _attempt())

    assert outcome.state == LoginState.SESSION_ESTABLISHED
    assert outcome.account.id == h.ids["bob"]
    assert h.stores.accounts.get_credential(authenticator.encoded_id).counter == 1


def test_replayed_counter_rejected(h, webauthn):
    authenticator, _ = _register(h, webauthn)
    first = h.login("bob")
    options = webauthn.authentication_options(first.transport_id)
    h.machine.complete_webauthn(first.transport_id, authenticator.assert_(options, counter=5), _attempt())

    second = h.login("bob")
    for counter in (5, 3):
        options = webauthn.authentication_options(second.transport_id)
        with pytest.raises(WebAuthnVerificationFailed):
            h.machine.complete_webauthn(second.transport_id, authenticator.assert_(options, counter=counter), _attempt())
    assert h.stores.accounts.get_credential(authenticator.encoded_id).counter == 5

    options = webauthn.authentication_options(second.transport_id)
    outcome = h.machine.complete_webauthn(second.transport_id, authenticator.assert_(options, counter=6), _attempt())
    assert outcome.state == LoginState.SESSION_ESTABLISHED


def test_failed_assertion_consumes_challenge_keeps_pending(h, webauthn):
    authenticator, _ = _register(h, webauthn)
    pending = h.login("bob")
    options = webauthn.authentication_options(pending.transport_id)

    with pytest.raises(WebAuthnVerificationFailed):
        h.machine.complete_webauthn(
            pending.transport_id, authenticator.assert_(options, 1, origin="https://evil.example"), _attempt()
        )
    assert h.stores.audit.count(EventType.TWO_FACTOR_FAILED) == 1

    # Same options again: the challenge is gone.
    with pytest.raises(WebAuthnVerificationFailed):
        h.machine.complete_webauthn(pending.transport_id, authenticator.assert_(options, 1), _attempt())

    options = webauthn.authentication_options(pending.transport_id)
    outcome = h.machine.complete_webauthn(pending.transport_id, authenticator.assert_(options, 1), _attempt())
    assert outcome.state == LoginState.SESSION_ESTABLISHED


def test_assertion_without_challenge_is_audited(h, webauthn):
    _register(h, webauthn)
    pending = h.login("bob")

    with pytest.raises(WebAuthnVerificationFailed):
        h.machine.complete_webauthn(pending.transport_id, {"id": "AAAA", "rawId": "AAAA"}, _attempt())

    entries = h.stores.audit.recent(event_type=EventType.TWO_FACTOR_FAILED)
    assert len(entries) == 1
    assert entries[0].user_id == h.ids["bob"]
    assert entries[0].metadata["reason"] == "no challenge issued"
    assert h.stores.sessions.get_pending(pending.transport_id).awaiting_2fa


def test_unknown_authenticator_rejected(h, webauthn):
    _register(h, webauthn)
    pending = h.login("bob")
    options = webauthn.authentication_options(pending.transport_id)
    stranger = SoftAuthenticator()

    with pytest.raises(WebAuthnVerificationFailed):
        h.machine.complete_webauthn(pending.transport_id, stranger.assert_(options, 1), _attempt())


def test_remove_credential_checks_owner(h, webauthn):
    _, stored = _register(h, webauthn)
    alice = h.stores.accounts.get_by_id(h.ids["alice"])
    bob = h.stores.accounts.get_by_id(h.ids["bob"])

    assert not webauthn.remove_credential(alice, stored.id, IP, None)
    assert webauthn.remove_credential(bob, stored.id, IP, None)
    assert webauthn.list_credentials(bob) == []


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------


def test_webauthn_flow_over_http(client):
    authenticator = SoftAuthenticator()
    assert login(client).status_code == 200

    options = client.post("/api/v1/auth/webauthn/register/options").json()
    resp = client.post(
        "/api/v1/auth/webauthn/register/verify",
        json={"credential": authenticator.register(options), "deviceName": "Laptop"},
    )
    assert resp.status_code == 201, resp.text
    assert resp.json()["deviceName"] == "Laptop"
    assert len(client.get("/api/v1/auth/webauthn/credentials").json()) == 1

    client.app.state.account_store.update_account(
        client.account_ids["alice"], two_factor_secret=BOB_TOTP_SECRET, two_factor_enabled=True
    )
    client.post("/api/v1/auth/logout")

    pending = login(client)
    assert pending.json() == {"requires2FA": True, "hasBiometric": True}
    assert client.get("/api/v1/auth/me").status_code == 401

    options = client.post("/api/v1/auth/webauthn/login/options", json={}).json()
    resp = client.post(
        "/api/v1/auth/webauthn/login/verify", json={"credential": authenticator.assert_(options, counter=1)}
    )
    assert resp.status_code == 200, resp.text
    assert resp.json()["user"]["username"] == "alice"
    assert client.get("/api/v1/auth/me").status_code == 200


def test_webauthn_login_options_without_pending_login_over_http(client):
    resp = client.post("/api/v1/auth/webauthn/login/options", json={})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "session_error"


def test_remove_unknown_credential_is_404(client):
    assert login(client).status_code == 200
    assert client.delete("/api/v1/auth/webauthn/credentials/999").status_code == 404
