"""
API request and response models for the Gatehouse REST endpoints.

These Pydantic v2 models define the HTTP transport contract. They are
intentionally separate from the dataclasses in auth/models.py and
security/models.py, which own the internal domain representation. Route
handlers map between the two.

Wire format is camelCase (the browser client's convention); Python
attributes stay snake_case through alias_generator=to_camel. Responses are
serialized by alias -- FastAPI does this for response_model, and routes that
build a JSONResponse call model_dump(by_alias=True).

Account responses are built field by field from Account. Password hashes and
TOTP secrets have no field here, so they cannot leak through a response.
"""

from typing import Annotated, Any, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from auth.models import Role
from security.ip_access import parse_rule_address
from security.models import EventType, IpRuleKind


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class _FrozenWireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


def _check_bcrypt_length(value: str) -> str:
    # bcrypt only looks at the first 72 bytes; refuse rather than truncate.
    if len(value.encode("utf-8")) > 72:
        raise ValueError("Password must be at most 72 bytes.")
    return value


# New passwords only. Login accepts up to 255 so old or odd passwords still get a
# generic 401 instead of a validation error.
NewPassword = Annotated[str, Field(min_length=8, max_length=72), AfterValidator(_check_bcrypt_length)]


# ---------------------------------------------------------------------------
# Login and accounts
# ---------------------------------------------------------------------------


class LoginRequest(_WireModel):
    """Request body for POST /api/v1/auth/login.

    captchaType is accepted for client compatibility but ignored -- the
    server's configured captcha mode always decides.
    """

    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)
    captcha_token: Optional[str] = Field(default=None, max_length=4096)
    captcha_type: Optional[str] = Field(default=None, max_length=20)


class AccountResponse(_FrozenWireModel):
    id: int
    username: str
    email: str
    name: Optional[str]
    role: str
    status: str
    two_factor_enabled: bool
    password_updated_at: Optional[str]
    last_active: Optional[str]


class LoginResponse(_FrozenWireModel):
    user: AccountResponse


class TwoFactorRequiredResponse(_FrozenWireModel):
    requires_2fa: bool = Field(default=True, alias="requires2FA")
    has_biometric: bool = False


class MessageResponse(_FrozenWireModel):
    message: str
    success: bool = True


class PasswordChangeRequest(_WireModel):
    current_password: str = Field(min_length=1, max_length=255)
    new_password: NewPassword


class ForcePasswordResetRequest(_WireModel):
    """Request body for POST /api/v1/auth/force-password-reset (expired passwords)."""

    username: str = Field(min_length=1, max_length=255)
    current_password: str = Field(min_length=1, max_length=255)
    new_password: NewPassword


class UserCreate(_WireModel):
    """Request body for POST /api/v1/auth/users (admin only)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)

    username: str = Field(min_length=3, max_length=64, pattern=r"^[A-Za-z0-9_.-]+$")
    email: str = Field(min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")
    password: NewPassword
    name: Optional[str] = Field(default=None, max_length=255)
    role: Role = Role.SUBSCRIBER


# ---------------------------------------------------------------------------
# Two-factor (TOTP)
# ---------------------------------------------------------------------------


class TwoFactorSetupResponse(_FrozenWireModel):
    secret: str
    qr_code: str
    otpauth_url: str


class TwoFactorTokenRequest(_WireModel):
    """Body for /2fa/verify and /2fa/disable."""

    token: str = Field(min_length=6, max_length=10)


class TwoFactorLoginRequest(_WireModel):
    """Body for /2fa/verify-login."""

    code: str = Field(min_length=6, max_length=10)


class TwoFactorStatusResponse(_FrozenWireModel):
    enabled: bool
    has_biometric: bool


# ---------------------------------------------------------------------------
# WebAuthn
# ---------------------------------------------------------------------------


class WebAuthnRegisterVerifyRequest(_WireModel):
    credential: dict[str, Any]
    device_name: Optional[str] = Field(default=None, max_length=100)


class WebAuthnLoginOptionsRequest(_WireModel):
    email: Optional[str] = Field(default=None, max_length=255)


class WebAuthnLoginVerifyRequest(_WireModel):
    credential: dict[str, Any]


class WebAuthnCredentialResponse(_FrozenWireModel):
    id: int
    credential_id: str
    device_name: Optional[str]
    counter: int
    created_at: Optional[str]
    last_used: Optional[str]


# ---------------------------------------------------------------------------
# Trusted devices
# ---------------------------------------------------------------------------


class TrustedDeviceCreate(_WireModel):
    device_name: str = Field(min_length=1, max_length=255)
    device_fingerprint: str = Field(min_length=8, max_length=255)


class TrustedDeviceResponse(_FrozenWireModel):
    id: int
    device_name: str
    device_fingerprint: str
    ip_address: Optional[str]
    user_agent: Optional[str]
    trusted: bool
    created_at: Optional[str]
    last_used: Optional[str]


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class SessionResponse(_FrozenWireModel):
    id: int
    user_id: int
    ip_address: Optional[str]
    user_agent: Optional[str]
    device_info: Optional[str]
    created_at: Optional[str]
    expires_at: str
    last_activity: Optional[str]
    current: bool = False


class TerminatedResponse(_FrozenWireModel):
    message: str
    count: int


# ---------------------------------------------------------------------------
# IP rules, logs, stats, settings
# ---------------------------------------------------------------------------


class IpRuleCreate(_WireModel):
    """Request body for POST /api/v1/security/ip-rules. ipAddress may be a CIDR block."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)

    ip_address: str = Field(min_length=2, max_length=64)
    type: IpRuleKind
    reason: Optional[str] = Field(default=None, max_length=500)

    @field_validator("ip_address")
    @classmethod
    def validate_address(cls, value: str) -> str:
        try:
            parse_rule_address(value)
        except ValueError:
            raise ValueError("ipAddress must be an IP address or CIDR block.")
        return value


class IpRuleResponse(_FrozenWireModel):
    id: int
    ip_address: str
    type: IpRuleKind
    reason: Optional[str]
    created_by: Optional[int]
    created_at: Optional[str]


class SecurityLogResponse(_FrozenWireModel):
    id: int
    event_type: EventType
    action: str
    user_id: Optional[int]
    user_name: Optional[str]
    ip_address: Optional[str]
    user_agent: Optional[str]
    request_path: Optional[str]
    blocked: bool
    severity: str
    metadata: dict[str, Any]
    created_at: Optional[str]


class SecurityStatsResponse(_FrozenWireModel):
    total_blocked: int
    total_allowed: int
    failed_logins: int
    lockouts: int
    by_event_type: dict[str, int]


class SecuritySettingsResponse(_FrozenWireModel):
    api_rate_limit: int
    login_attempts_limit: int
    lockout_duration: int
    password_expiration: bool
    captcha_type: str


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
