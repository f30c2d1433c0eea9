"""
auth/webauthn.py -- WebAuthn registration and assertion (fido2).

Registration (authenticated caller):
  registration_options() -> challenge bound to the caller's transport id.
  verify_registration()  -> checks attestation against that challenge, the
                            configured origin and RP id; stores the credential.
  The challenge is single-use: it is cleared whether verification passes or not.

Authentication (second factor, replaces the TOTP code):
  authentication_options() -> only with a pending 2FA login; the challenge
                              lists the pending account's credentials.
  verify_assertion()        -> signature, challenge, origin, RP id, then the
                              signature counter, which must be strictly
                              greater than the stored one. An equal or lower
                              counter means a cloned or replayed authenticator.

Credential ids and public keys are stored as websafe base64; the public key
is the CBOR-encoded COSE key from the attestation, rebuilt with
AttestedCredentialData.create() when verifying.

Server state handed back by fido2 (challenge + user verification level) is
kept as JSON in the pending auth row, never in the client.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from enum import Enum
from typing import Any

from cryptography.exceptions import InvalidSignature
from fido2 import cbor, features
from fido2.server import Fido2Server
from fido2.utils import websafe_decode, websafe_encode
from fido2.webauthn import (
    AttestedCredentialData,
    AuthenticationResponse,
    PublicKeyCredentialRpEntity,
    PublicKeyCredentialUserEntity,
    UserVerificationRequirement,
)
from sqlalchemy.exc import IntegrityError

from auth.exceptions import SessionError, WebAuthnVerificationFailed
from auth.models import Account, ChallengeKind, PendingAuthState, WebAuthnCredential
from auth.sessions import SessionManager
from auth.store import AccountStore
from core.config import Settings, get_settings
from security.audit import AuditLog
from security.models import EventType

logger = logging.getLogger("gatehouse.webauthn")

# Parse and emit the browser's JSON shape (binary fields as websafe base64).
features.webauthn_json_mapping.enabled = True

# Malformed client payloads surface from fido2's parsers as any of these.
_VERIFY_ERRORS = (ValueError, KeyError, TypeError, InvalidSignature)


def to_jsonable(value: Any) -> Any:
    """Convert fido2 option objects into plain JSON types (bytes -> websafe b64)."""
    if isinstance(value, bytes):
        return websafe_encode(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Mapping):
        return {k: to_jsonable(v) for k, v in value.items() if v is not None}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value


def normalize_credential_id(value: str) -> str:
    return websafe_encode(websafe_decode(value))


def _attested(credential: WebAuthnCredential) -> AttestedCredentialData:
    return AttestedCredentialData.create(
        b"\x00" * 16,
        websafe_decode(credential.credential_id),
        cbor.decode(websafe_decode(credential.public_key)),
    )


class WebAuthnManager:
    def __init__(
        self,
        accounts: AccountStore,
        sessions: SessionManager,
        audit: AuditLog,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._accounts = accounts
        self._sessions = sessions
        self._audit = audit
        self._origin = settings.webauthn_origin.rstrip("/")
        self._server = Fido2Server(
            PublicKeyCredentialRpEntity(name=settings.rp_name, id=settings.rp_id),
            verify_origin=self._verify_origin,
        )

    def _verify_origin(self, origin: str) -> bool:
        return origin.rstrip("/") == self._origin

    def _take_state(self, transport_id: str, kind: ChallengeKind) -> tuple[PendingAuthState | None, dict | None]:
        """Read and clear the challenge for transport_id. Single use either way."""
        pending = self._sessions.get_pending(transport_id)
        if pending is None or pending.challenge is None or pending.challenge_kind != kind:
            return pending, None
        self._sessions.clear_challenge(transport_id)
        return pending, json.loads(pending.challenge)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def registration_options(self, account: Account, transport_id: str) -> dict:
        existing = [_attested(c) for c in self._accounts.get_credentials(account.id)]
        options, state = self._server.register_begin(
            PublicKeyCredentialUserEntity(
                name=account.email,
                id=str(account.id).encode(),
                display_name=account.name or account.username,
            ),
            existing,
            user_verification=UserVerificationRequirement.PREFERRED,
        )
        self._sessions.set_challenge(transport_id, json.dumps(to_jsonable(state)), ChallengeKind.REGISTER)
        return to_jsonable(dict(options))

    def verify_registration(
        self,
        account: Account,
        transport_id: str,
        credential: dict,
        device_name: str | None,
        ip_address: str | None,
        user_agent: str | None,
    ) -> WebAuthnCredential:
        _, state = self._take_state(transport_id, ChallengeKind.REGISTER)
        if state is None:
            raise SessionError("No registration in progress.")
        try:
            auth_data = self._server.register_complete(state, credential)
        except _VERIFY_ERRORS as e:
            logger.info("WebAuthn registration rejected for user %s: %s", account.id, e)
            self._audit.log(
                EventType.WEBAUTHN_REGISTRATION_FAILED,
                "WebAuthn registration failed",
                ip_address=ip_address,
                user_agent=user_agent,
                user_id=account.id,
                user_name=account.username,
                metadata={"reason": str(e)},
            )
            raise WebAuthnVerificationFailed("Registration verification failed.")
        cred_data = auth_data.credential_data
        stored = WebAuthnCredential(
            user_id=account.id,
            credential_id=websafe_encode(cred_data.credential_id),
            public_key=websafe_encode(cbor.encode(cred_data.public_key)),
            counter=auth_data.counter,
            device_name=device_name or "Security key",
        )
        try:
            stored.id = self._accounts.add_credential(stored)
        except IntegrityError:
            raise WebAuthnVerificationFailed("Credential already registered.")
        self._audit.log(
            EventType.WEBAUTHN_REGISTERED,
            f"WebAuthn credential registered: {stored.device_name}",
            ip_address=ip_address,
            user_agent=user_agent,
            user_id=account.id,
            user_name=account.username,
        )
        return stored

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def _pending_login(self, transport_id: str | None) -> PendingAuthState:
        pending = self._sessions.get_pending(transport_id)
        if pending is None or not pending.awaiting_2fa or pending.pending_user_id is None:
            raise SessionError("No pending 2FA verification.")
        return pending

    def authentication_options(self, transport_id: str | None, email: str | None = None) -> dict:
        pending = self._pending_login(transport_id)
        account = self._accounts.get_by_id(pending.pending_user_id)
        if account is None or (email and email.lower() != account.email.lower()):
            raise SessionError("No pending 2FA verification.")
        credentials = self._accounts.get_credentials(account.id)
        if not credentials:
            raise WebAuthnVerificationFailed("No biometric credentials registered.")
        options, state = self._server.authenticate_begin(
            [_attested(c) for c in credentials],
            user_verification=UserVerificationRequirement.PREFERRED,
        )
        self._sessions.set_challenge(transport_id, json.dumps(to_jsonable(state)), ChallengeKind.LOGIN)
        return to_jsonable(dict(options))

    def verify_assertion(
        self, transport_id: str | None, credential: dict, ip_address: str | None, user_agent: str | None
    ) -> Account:
        """Verify an assertion for the pending login. Returns the account on success.

        The pending state survives a failure so the caller may retry, but the
        challenge does not -- a retry needs fresh options.
        """
        pending = self._pending_login(transport_id)
        account = self._accounts.get_by_id(pending.pending_user_id)
        if account is None:
            raise SessionError("No pending 2FA verification.")

        def fail(reason: str) -> WebAuthnVerificationFailed:
            self._audit.log(
                EventType.TWO_FACTOR_FAILED,
                "WebAuthn verification failed",
                ip_address=ip_address,
                user_agent=user_agent,
                user_id=account.id,
                user_name=account.username,
                metadata={"method": "webauthn", "reason": reason},
            )
            return WebAuthnVerificationFailed()

        _, state = self._take_state(transport_id, ChallengeKind.LOGIN)
        if state is None:
            raise fail("no challenge issued")

        try:
            raw_id = credential.get("rawId") or credential["id"]
            credential_id = normalize_credential_id(raw_id)
        except _VERIFY_ERRORS:
            raise fail("malformed credential")
        stored = self._accounts.get_credential(credential_id)
        if stored is None or stored.user_id != account.id:
            raise fail("unknown credential")
        try:
            self._server.authenticate_complete(state, [_attested(stored)], credential)
            new_counter = AuthenticationResponse.from_dict(credential).response.authenticator_data.counter
        except _VERIFY_ERRORS as e:
            raise fail(str(e))
        if new_counter <= stored.counter or not self._accounts.advance_counter(credential_id, new_counter):
            logger.warning(
                "WebAuthn counter did not advance for credential %s (stored=%d, got=%d)",
                stored.id,
                stored.counter,
                new_counter,
            )
            raise fail("signature counter did not increase")
        return account

    def list_credentials(self, account: Account) -> list[WebAuthnCredential]:
        return self._accounts.get_credentials(account.id)

    def remove_credential(
        self, account: Account, credential_pk: int, ip_address: str | None, user_agent: str | None
    ) -> bool:
        removed = self._accounts.delete_credential(credential_pk, account.id)
        if removed:
            self._audit.log(
                EventType.WEBAUTHN_REMOVED,
                "WebAuthn credential removed",
                ip_address=ip_address,
                user_agent=user_agent,
                user_id=account.id,
                user_name=account.username,
                metadata={"credentialPk": credential_pk},
            )
        return removed
