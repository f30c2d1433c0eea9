"""
security/models.py -- Domain dataclasses for the security layer.

IP rules, audit entries, the effective security policy, and the result of
an IP access decision. Pure data; the stores and services do the work.

Layer rule: security/ imports only core/ and third-party libraries.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class IpRuleKind(str, Enum):
    WHITELIST = "whitelist"
    BLACKLIST = "blacklist"


@dataclass
class IpRule:
    """A single address or CIDR block. Blacklist always beats whitelist."""

    ip_address: str
    kind: IpRuleKind
    reason: str | None = None
    created_by: int | None = None
    id: int | None = None
    created_at: str | None = None


class EventType(str, Enum):
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILED = "login_failed"
    LOGIN_LOCKOUT = "login_lockout"
    TWO_FACTOR_REQUIRED = "two_factor_required"
    TWO_FACTOR_FAILED = "two_factor_failed"
    TWO_FACTOR_ENABLED = "two_factor_enabled"
    TWO_FACTOR_DISABLED = "two_factor_disabled"
    PASSWORD_EXPIRED = "password_expired"
    PASSWORD_CHANGED = "password_changed"
    IP_ALLOWED = "ip_allowed"
    IP_BLOCKED = "ip_blocked"
    IP_NOT_WHITELISTED = "ip_not_whitelisted"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    SESSION_TERMINATED = "session_terminated"
    SESSIONS_TERMINATED_ALL = "sessions_terminated_all"
    LOGOUT_ALL_DEVICES = "logout_all_devices"
    LOGOUT = "logout"
    IP_RULE_CREATED = "ip_rule_created"
    IP_RULE_DELETED = "ip_rule_deleted"
    WEBAUTHN_REGISTERED = "webauthn_registered"
    WEBAUTHN_REGISTRATION_FAILED = "webauthn_registration_failed"
    WEBAUTHN_REMOVED = "webauthn_removed"
    TRUSTED_DEVICE_ADDED = "trusted_device_added"
    TRUSTED_DEVICE_REMOVED = "trusted_device_removed"
    SECURITY_SETTING_UPDATED = "security_setting_updated"
    USER_CREATED = "user_created"


# Event types shown in the per-account "login history" view.
LOGIN_HISTORY_EVENTS = (
    EventType.LOGIN_SUCCESS,
    EventType.LOGIN_FAILED,
    EventType.TWO_FACTOR_FAILED,
    EventType.PASSWORD_EXPIRED,
)


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"


@dataclass
class SecurityLogEntry:
    """One immutable audit record."""

    event_type: EventType
    action: str
    ip_address: str | None = None
    user_agent: str | None = None
    user_id: int | None = None
    user_name: str | None = None
    request_path: str | None = None
    blocked: bool = False
    severity: Severity = Severity.INFO
    metadata: dict[str, Any] = field(default_factory=dict)
    id: int | None = None
    created_at: str | None = None


@dataclass(frozen=True)
class SecurityStats:
    total_blocked: int
    total_allowed: int
    failed_logins: int
    lockouts: int
    by_event_type: dict[str, int]


@dataclass(frozen=True)
class SecurityPolicy:
    """Effective settings for one request: config defaults plus stored overrides."""

    api_rate_limit: int
    login_attempts_limit: int
    lockout_duration_minutes: int
    password_expiration: bool
    captcha_type: str


@dataclass(frozen=True)
class IpDecision:
    """Outcome of IP Access Control. reason is None when allowed."""

    ip_address: str
    allowed: bool
    reason: str | None = None
    matched_rule: IpRule | None = None
