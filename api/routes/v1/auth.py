"""
api/routes/v1/auth.py -- Login, logout, password, TOTP and account endpoints.

Endpoints:
  POST   /api/v1/auth/login                  Password login; may answer requires2FA
  POST   /api/v1/auth/logout                 End the transport session
  POST   /api/v1/auth/force-password-reset   Replace an expired password (no session)
  GET    /api/v1/auth/me                     Current account
  POST   /api/v1/auth/password               Change own password
  POST   /api/v1/auth/2fa/generate           Start TOTP enrollment
  POST   /api/v1/auth/2fa/verify             Finish TOTP enrollment
  POST   /api/v1/auth/2fa/disable            Turn TOTP off (needs a valid code)
  POST   /api/v1/auth/2fa/verify-login       Second step of a pending login
  GET    /api/v1/auth/2fa/status             {enabled, hasBiometric}
  POST   /api/v1/auth/users                  Create account (manage_users)
  GET    /api/v1/auth/users                  List accounts (manage_users)
  GET    /api/v1/auth/trusted-devices        Own trusted devices
  POST   /api/v1/auth/trusted-devices        Trust the current device
  DELETE /api/v1/auth/trusted-devices/{id}   Revoke one

Security notes:
  [C1] Login errors never say whether the account exists. The state machine
       runs bcrypt against a dummy hash for unknown identifiers.
  [H2] slowapi limits the endpoints that take a password or a code, on top of
       the per-IP lockout. Password routes use login_rate_limit; verify-login
       uses its own two_factor_rate_limit, so 2FA retries never spend the
       password routes' budget or the lockout. The decorator must sit ABOVE
       @router to preserve FastAPI introspection.
  [M5] Responses that set the session cookie carry Cache-Control: no-store.
  The session id is regenerated on every establishment (auth/sessions.py),
  so the cookie is always rewritten after login and verify-login.

Routes are plain def: the stores are synchronous, so FastAPI runs these in
its threadpool.
"""

from __future__ import annotations

from typing import Union

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from api.limiter import limiter
from api.models import (
    AccountResponse,
    ForcePasswordResetRequest,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    PasswordChangeRequest,
    TrustedDeviceCreate,
    TrustedDeviceResponse,
    TwoFactorLoginRequest,
    TwoFactorRequiredResponse,
    TwoFactorSetupResponse,
    TwoFactorStatusResponse,
    TwoFactorTokenRequest,
    UserCreate,
)
from api.request_info import client_ip, login_attempt, user_agent
from auth.dependencies import Principal, get_current_principal, get_transport_id, require_capability, try_get_principal
from auth.exceptions import AuthError
from auth.login import LoginOutcome
from auth.models import Account, Capability, TrustedDevice
from auth.tokens import (
    clear_session_cookie,
    create_session_token,
    hash_password,
    set_session_cookie,
)
from core.config import get_settings
from core.db import now_iso
from security.models import EventType

router = APIRouter(tags=["auth"])

_settings = get_settings()

require_user_admin = require_capability(Capability.MANAGE_USERS)


# ---------------------------------------------------------------------------
# Login and logout
# ---------------------------------------------------------------------------


def outcome_response(outcome: LoginOutcome) -> JSONResponse:
    """Build the login response and write the cookie for outcome.transport_id."""
    if outcome.requires_2fa:
        payload = TwoFactorRequiredResponse(has_biometric=outcome.has_biometric)
        ttl = _settings.pending_auth_ttl_seconds
    else:
        payload = LoginResponse(user=_account_to_response(outcome.account))
        ttl = _settings.session_ttl_hours * 3600
    resp = JSONResponse(content=payload.model_dump(by_alias=True))
    set_session_cookie(resp, create_session_token(outcome.transport_id, ttl), ttl)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@limiter.limit(_settings.login_rate_limit)  # [H2]
@router.post("/auth/login", response_model=Union[LoginResponse, TwoFactorRequiredResponse])
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Run the login state machine.

    200 {user} when a session was established, 200 {requires2FA, hasBiometric}
    when a second factor is needed. Rejections are raised as AuthError and
    rendered by the handler in api/main.py.
    """
    attempt = login_attempt(
        request,
        identifier=body.username,
        password=body.password,
        captcha_token=body.captcha_token,
        transport_id=get_transport_id(request),
    )
    outcome = request.app.state.login_machine.login(attempt)
    return outcome_response(outcome)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request) -> JSONResponse:
    """Deactivate the session, drop pending state, clear the cookie. Always 200."""
    principal = try_get_principal(request)
    request.app.state.session_manager.logout(
        get_transport_id(request),
        principal.account if principal else None,
        client_ip(request),
        user_agent(request),
    )
    resp = JSONResponse(content=MessageResponse(message="Logged out.").model_dump(by_alias=True))
    clear_session_cookie(resp)
    return resp


@limiter.limit(_settings.login_rate_limit)  # [H2]
@router.post("/auth/force-password-reset", response_model=MessageResponse)
def force_password_reset(request: Request, body: ForcePasswordResetRequest) -> MessageResponse:
    """Replace an expired password. The caller logs in normally afterwards."""
    attempt = login_attempt(request, identifier=body.username, password=body.current_password)
    request.app.state.login_machine.force_password_reset(attempt, body.new_password)
    return MessageResponse(message="Password updated. Please log in with your new password.")


# ---------------------------------------------------------------------------
# Current account
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=AccountResponse)
def me(principal: Principal = Depends(get_current_principal)) -> AccountResponse:
    return _account_to_response(principal.account)


@router.post("/auth/password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: PasswordChangeRequest,
    principal: Principal = Depends(get_current_principal),
) -> MessageResponse:
    request.app.state.login_machine.change_password(
        principal.account, body.current_password, body.new_password, login_attempt(request)
    )
    return MessageResponse(message="Password changed.")


# ---------------------------------------------------------------------------
# TOTP
# ---------------------------------------------------------------------------


@router.post("/auth/2fa/generate", response_model=TwoFactorSetupResponse)
def generate_two_factor(
    request: Request,
    principal: Principal = Depends(get_current_principal),
) -> TwoFactorSetupResponse:
    """Create a TOTP secret for the caller. Nothing is enabled until /2fa/verify."""
    if principal.account.two_factor_enabled:
        raise AuthError("Two-factor authentication is already enabled.")
    setup = request.app.state.totp.generate(principal.account, principal.transport_id)
    return TwoFactorSetupResponse(secret=setup.secret, qr_code=setup.qr_code, otpauth_url=setup.provisioning_uri)


@router.post("/auth/2fa/verify", response_model=MessageResponse)
def verify_two_factor(
    request: Request,
    body: TwoFactorTokenRequest,
    principal: Principal = Depends(get_current_principal),
) -> MessageResponse:
    request.app.state.totp.verify_and_enable(
        principal.account, principal.transport_id, body.token, client_ip(request), user_agent(request)
    )
    return MessageResponse(message="Two-factor authentication enabled.")


@router.post("/auth/2fa/disable", response_model=MessageResponse)
def disable_two_factor(
    request: Request,
    body: TwoFactorTokenRequest,
    principal: Principal = Depends(get_current_principal),
) -> MessageResponse:
    request.app.state.totp.disable(principal.account, body.token, client_ip(request), user_agent(request))
    return MessageResponse(message="Two-factor authentication disabled.")


@limiter.limit(_settings.two_factor_rate_limit)  # [H2]
@router.post("/auth/2fa/verify-login", response_model=LoginResponse)
def verify_two_factor_login(request: Request, body: TwoFactorLoginRequest) -> JSONResponse:
    """Finish a pending login with a TOTP code. A wrong code may be retried."""
    outcome = request.app.state.login_machine.complete_totp(
        get_transport_id(request), body.code, login_attempt(request)
    )
    return outcome_response(outcome)


@router.get("/auth/2fa/status", response_model=TwoFactorStatusResponse)
def two_factor_status(
    request: Request,
    principal: Principal = Depends(get_current_principal),
) -> TwoFactorStatusResponse:
    account = principal.account
    return TwoFactorStatusResponse(
        enabled=account.two_factor_enabled,
        has_biometric=request.app.state.account_store.count_credentials(account.id) > 0,
    )


# ---------------------------------------------------------------------------
# User management (manage_users)
# ---------------------------------------------------------------------------


@router.post("/auth/users", response_model=AccountResponse, status_code=201)
def create_user(
    request: Request,
    body: UserCreate,
    principal: Principal = Depends(require_user_admin),
) -> AccountResponse:
    """Create an account. Passwords start their max-age clock now."""
    account_store = request.app.state.account_store
    now = now_iso()
    new_account = Account(
        username=body.username,
        email=body.email.lower(),
        name=body.name,
        hashed_password=hash_password(body.password),
        role=body.role,
        password_updated_at=now,
    )
    try:
        user_id = account_store.create_account(new_account)
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "A user with that username or email already exists."},
        ) from exc

    request.app.state.audit.log(
        EventType.USER_CREATED,
        f"User created: {body.username}",
        ip_address=client_ip(request),
        user_agent=user_agent(request),
        user_id=principal.account.id,
        user_name=principal.account.username,
        request_path=request.url.path,
        metadata={"createdUserId": user_id, "role": body.role.value},
    )
    return _account_to_response(account_store.get_by_id(user_id))


@router.get("/auth/users", response_model=list[AccountResponse])
def list_users(
    request: Request,
    principal: Principal = Depends(require_user_admin),
) -> list[AccountResponse]:
    return [_account_to_response(a) for a in request.app.state.account_store.list_accounts()]


# ---------------------------------------------------------------------------
# Trusted devices
# ---------------------------------------------------------------------------


@router.get("/auth/trusted-devices", response_model=list[TrustedDeviceResponse])
def list_trusted_devices(
    request: Request,
    principal: Principal = Depends(get_current_principal),
) -> list[TrustedDeviceResponse]:
    devices = request.app.state.account_store.get_trusted_devices(principal.account.id)
    return [_device_to_response(d) for d in devices]


@router.post("/auth/trusted-devices", response_model=TrustedDeviceResponse, status_code=201)
def add_trusted_device(
    request: Request,
    body: TrustedDeviceCreate,
    principal: Principal = Depends(get_current_principal),
) -> TrustedDeviceResponse:
    account = principal.account
    account_store = request.app.state.account_store
    device = TrustedDevice(
        user_id=account.id,
        device_name=body.device_name,
        device_fingerprint=body.device_fingerprint,
        ip_address=client_ip(request),
        user_agent=user_agent(request),
    )
    device.id = account_store.add_trusted_device(device)
    request.app.state.audit.log(
        EventType.TRUSTED_DEVICE_ADDED,
        f"Trusted device added: {body.device_name}",
        ip_address=device.ip_address,
        user_agent=device.user_agent,
        user_id=account.id,
        user_name=account.username,
        request_path=request.url.path,
    )
    stored = next((d for d in account_store.get_trusted_devices(account.id) if d.id == device.id), device)
    return _device_to_response(stored)


@router.delete("/auth/trusted-devices/{device_id}", response_model=MessageResponse)
def remove_trusted_device(
    request: Request,
    device_id: int,
    principal: Principal = Depends(get_current_principal),
) -> MessageResponse:
    account = principal.account
    if not request.app.state.account_store.delete_trusted_device(device_id, account.id):
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Trusted device not found."},
        )
    request.app.state.audit.log(
        EventType.TRUSTED_DEVICE_REMOVED,
        "Trusted device removed",
        ip_address=client_ip(request),
        user_agent=user_agent(request),
        user_id=account.id,
        user_name=account.username,
        request_path=request.url.path,
        metadata={"deviceId": device_id},
    )
    return MessageResponse(message="Trusted device removed.")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _account_to_response(account: Account | None) -> AccountResponse:
    if account is None:
        raise HTTPException(
            status_code=500,
            detail={"code": "internal_error", "message": "User not found after write."},
        )
    return AccountResponse(
        id=account.id,
        username=account.username,
        email=account.email,
        name=account.name,
        role=account.role.value,
        status=account.status.value,
        two_factor_enabled=account.two_factor_enabled,
        password_updated_at=account.password_updated_at,
        last_active=account.last_active,
    )


def _device_to_response(device: TrustedDevice) -> TrustedDeviceResponse:
    return TrustedDeviceResponse(
        id=device.id,
        device_name=device.device_name,
        device_fingerprint=device.device_fingerprint,
        ip_address=device.ip_address,
        user_agent=device.user_agent,
        trusted=device.trusted,
        created_at=device.created_at,
        last_used=device.last_used,
    )
