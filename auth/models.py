"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, almost zero logic). Stores and
services do the work; routes turn these into pydantic response models.

Role dispatch goes through the closed Role enum and the capability table
below. Never compare role strings in route code -- ask has_capability().

Layer rule: no imports from api/ or security/.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Role(str, Enum):
    SUPER_ADMIN = "Super Admin"
    ADMIN = "Admin"
    EDITOR = "Editor"
    MODERATOR = "Moderator"
    SUBSCRIBER = "Subscriber"


class Capability(str, Enum):
    MANAGE_SECURITY = "manage_security"
    MANAGE_USERS = "manage_users"
    VIEW_ALL_SESSIONS = "view_all_sessions"


_ROLE_CAPABILITIES: dict[Role, frozenset[Capability]] = {
    Role.SUPER_ADMIN: frozenset(Capability),
    Role.ADMIN: frozenset(Capability),
    Role.EDITOR: frozenset(),
    Role.MODERATOR: frozenset(),
    Role.SUBSCRIBER: frozenset(),
}


def has_capability(role: Role, capability: Capability) -> bool:
    return capability in _ROLE_CAPABILITIES.get(role, frozenset())


class AccountStatus(str, Enum):
    ACTIVE = "Active"
    SUSPENDED = "Suspended"


@dataclass
class Account:
    """A local identity with credential and second-factor material.

    two_factor_secret is the persisted TOTP secret. It is only set once
    enrollment is confirmed -- the in-flight secret lives on PendingAuthState.

    password_expires_at is an operator-set grace date. While it is in the
    future, an old password is not treated as expired.
    """

    username: str
    email: str
    id: int | None = None
    name: str | None = None
    hashed_password: str | None = None
    role: Role = Role.SUBSCRIBER
    status: AccountStatus = AccountStatus.ACTIVE
    two_factor_secret: str | None = None
    two_factor_enabled: bool = False
    password_updated_at: str | None = None
    password_expires_at: str | None = None
    created_at: str | None = None
    last_active: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE

    @property
    def is_admin(self) -> bool:
        return has_capability(self.role, Capability.MANAGE_SECURITY)


@dataclass
class WebAuthnCredential:
    """A registered authenticator. credential_id and public_key are websafe base64.

    public_key holds the CBOR-encoded COSE key exactly as attested.
    counter only ever moves forward -- see auth/webauthn.py.
    """

    user_id: int
    credential_id: str
    public_key: str
    counter: int = 0
    device_name: str | None = None
    id: int | None = None
    created_at: str | None = None
    last_used: str | None = None


@dataclass
class TrustedDevice:
    """Convenience allow-list entry. Not a credential; revoked by logout-all."""

    user_id: int
    device_name: str
    device_fingerprint: str
    ip_address: str | None = None
    user_agent: str | None = None
    trusted: bool = True
    id: int | None = None
    created_at: str | None = None
    last_used: str | None = None


@dataclass
class UserSession:
    """An authenticated session row, keyed by the transport session id."""

    session_id: str
    user_id: int
    expires_at: str
    ip_address: str | None = None
    user_agent: str | None = None
    device_info: str | None = None
    active: bool = True
    id: int | None = None
    created_at: str | None = None
    last_activity: str | None = None


class ChallengeKind(str, Enum):
    REGISTER = "register"
    LOGIN = "login"


@dataclass
class PendingAuthState:
    """Transient auth state keyed by an opaque transport id.

    One record per transport id, with a short TTL. It carries either a
    login waiting on its second factor (awaiting_2fa + pending_user_id),
    a WebAuthn challenge in flight, or a TOTP secret being enrolled.
    """

    transport_id: str
    expires_at: str
    pending_user_id: int | None = None
    awaiting_2fa: bool = False
    challenge: str | None = None
    challenge_kind: ChallengeKind | None = None
    temp_2fa_secret: str | None = None
    created_at: str | None = None
