"""
tests/webauthn_helpers.py -- A software WebAuthn authenticator for tests.

Produces the same JSON a browser hands to the server (binary fields as
websafe base64): "none" attestation on registration, ES256 signatures on
assertion. The signature counter is set explicitly per assertion so tests
can replay or rewind it.
"""

from __future__ import annotations

import hashlib
import os

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from fido2.cose import ES256
from fido2.utils import websafe_decode, websafe_encode
from fido2.webauthn import (
    AttestationObject,
    AttestedCredentialData,
    AuthenticatorData,
    CollectedClientData,
)

RP_ID = "localhost"
ORIGIN = "http://localhost:5000"


def _challenge(options: dict) -> bytes:
    return websafe_decode(options["publicKey"]["challenge"])


class SoftAuthenticator:
    def __init__(self, rp_id: str = RP_ID, origin: str = ORIGIN) -> None:
        self.rp_id = rp_id
        self.origin = origin
        self.credential_id = os.urandom(32)
        self._private_key = ec.generate_private_key(ec.SECP256R1())
        self.public_key = ES256.from_cryptography_key(self._private_key.public_key())

    @property
    def rp_id_hash(self) -> bytes:
        return hashlib.sha256(self.rp_id.encode()).digest()

    @property
    def encoded_id(self) -> str:
        return websafe_encode(self.credential_id)

    def register(self, options: dict, origin: str | None = None) -> dict:
        """Answer registration options with a "none" attestation."""
        client_data = CollectedClientData.create(
            type=CollectedClientData.TYPE.CREATE,
            challenge=_challenge(options),
            origin=origin or self.origin,
        )
        auth_data = AuthenticatorData.create(
            self.rp_id_hash,
            AuthenticatorData.FLAG.UP | AuthenticatorData.FLAG.AT,
            0,
            AttestedCredentialData.create(b"\x00" * 16, self.credential_id, self.public_key),
        )
        attestation = AttestationObject.create("none", auth_data, {})
        return {
            "id": self.encoded_id,
            "rawId": self.encoded_id,
            "type": "public-key",
            "response": {
                "clientDataJSON": websafe_encode(bytes(client_data)),
                "attestationObject": websafe_encode(bytes(attestation)),
            },
        }

    def assert_(self, options: dict, counter: int, origin: str | None = None) -> dict:
        """Sign an assertion for options with the given signature counter."""
        client_data = CollectedClientData.create(
            type=CollectedClientData.TYPE.GET,
            challenge=_challenge(options),
            origin=origin or self.origin,
        )
        auth_data = AuthenticatorData.create(self.rp_id_hash, AuthenticatorData.FLAG.UP, counter)
        signature = self._private_key.sign(bytes(auth_data) + client_data.hash, ec.ECDSA(hashes.SHA256()))
        return {
            "id": self.encoded_id,
            "rawId": self.encoded_id,
            "type": "public-key",
            "response": {
                "clientDataJSON": websafe_encode(bytes(client_data)),
                "authenticatorData": websafe_encode(bytes(auth_data)),
                "signature": websafe_encode(signature),
            },
        }
