"""
auth/login.py -- The login state machine.

    Start -> IpChecked -> CaptchaVerified -> CredentialsVerified
          -> Pending2FA                  (2FA enabled: second call required)
          -> PasswordExpiryChecked       (2FA disabled)
          -> SessionEstablished

Each step either advances or raises one of the auth.exceptions types; a
raised exception is the Rejected state. Order matters:

  1. IP access          -- AccessDenied. Reuses the decision the request gate
                           already made for this request, if any.
  2. Lockout            -- RateLimited with the remaining minutes. Checked
                           before credentials so a correct password cannot
                           be used to probe whether the lockout lapsed.
                           Records nothing new.
  3. Captcha            -- CaptchaFailed; counts as a failed login.
  4./5. Credentials     -- InvalidCredentials for unknown user, wrong password
                           and inactive account alike. bcrypt always runs [C1].
  6. Clear the lockout record for the IP.
  7. 2FA enabled        -- store PendingAuthState, no session. The caller only
                           learns the account has 2FA after the password check.
  8. Password expiry    -- PasswordExpired past max age unless a grace date
                           (password_expires_at) is still in the future.
  9. Establish session, log login_success.

Second step (complete_totp / complete_webauthn) requires the pending state
for the caller's transport id. Failures are logged as two_factor_failed and
leave the pending state in place; they never touch the lockout counters.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum

from auth.exceptions import (
    AccessDenied,
    AuthError,
    CaptchaFailed,
    InvalidCredentials,
    PasswordExpired,
    RateLimited,
    ResetNotAllowed,
    SessionError,
    TwoFactorInvalid,
)
from auth.models import Account, UserSession
from auth.sessions import SessionManager
from auth.store import AccountStore
from auth.tokens import check_password, hash_password, new_transport_id
from auth.totp import TwoFactorManager
from auth.webauthn import WebAuthnManager
from core.config import Settings, get_settings
from core.db import now_utc, parse_iso, to_iso
from security.audit import AuditLog
from security.captcha import CaptchaVerifier
from security.ip_access import IpAccessControl
from security.limiter import LockoutTracker
from security.models import EventType, IpDecision, SecurityPolicy
from security.store import SecurityStore

logger = logging.getLogger("gatehouse.login")


class LoginState(str, Enum):
    START = "start"
    IP_CHECKED = "ip_checked"
    CAPTCHA_VERIFIED = "captcha_verified"
    CREDENTIALS_VERIFIED = "credentials_verified"
    PENDING_2FA = "pending_2fa"
    PASSWORD_EXPIRY_CHECKED = "password_expiry_checked"
    SESSION_ESTABLISHED = "session_established"
    REJECTED = "rejected"


@dataclass
class LoginAttempt:
    identifier: str
    password: str
    ip_address: str
    user_agent: str | None = None
    transport_id: str | None = None
    captcha_token: str | None = None
    request_path: str | None = None
    ip_decision: IpDecision | None = None


@dataclass
class LoginOutcome:
    """Where a login attempt ended up.

    transport_id is the id the client must carry from now on: the new
    session's id after establishment, or the pending id while awaiting 2FA.
    """

    state: LoginState
    account: Account
    transport_id: str
    session: UserSession | None = None
    has_biometric: bool = False
    trail: list[LoginState] = field(default_factory=list)

    @property
    def requires_2fa(self) -> bool:
        return self.state == LoginState.PENDING_2FA


class LoginStateMachine:
    def __init__(
        self,
        *,
        accounts: AccountStore,
        sessions: SessionManager,
        audit: AuditLog,
        ip_access: IpAccessControl,
        lockout: LockoutTracker,
        captcha: CaptchaVerifier,
        security_store: SecurityStore,
        totp: TwoFactorManager,
        webauthn: WebAuthnManager,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._accounts = accounts
        self._sessions = sessions
        self._audit = audit
        self._ip_access = ip_access
        self._lockout = lockout
        self._captcha = captcha
        self._security_store = security_store
        self._totp = totp
        self._webauthn = webauthn

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------

    def _check_ip(self, attempt: LoginAttempt) -> None:
        decision = attempt.ip_decision
        if decision is None or decision.ip_address != attempt.ip_address:
            decision = self._ip_access.evaluate(
                attempt.ip_address, user_agent=attempt.user_agent, request_path=attempt.request_path
            )
        if not decision.allowed:
            raise AccessDenied()

    def _check_lockout(self, attempt: LoginAttempt) -> None:
        status = self._lockout.status(attempt.ip_address)
        if status.locked:
            self._audit.log(
                EventType.LOGIN_LOCKOUT,
                "Login attempt during lockout",
                ip_address=attempt.ip_address,
                user_agent=attempt.user_agent,
                request_path=attempt.request_path,
                blocked=True,
                metadata={"identifier": attempt.identifier, "remainingSeconds": status.retry_after},
            )
            raise RateLimited(
                f"Too many failed login attempts. Please try again in {status.remaining_minutes} minutes.",
                retry_after=status.retry_after,
            )

    def _record_failure(self, attempt: LoginAttempt, policy: SecurityPolicy) -> None:
        status = self._lockout.record_failure(
            attempt.ip_address, policy.login_attempts_limit, policy.lockout_duration_minutes * 60
        )
        if status.locked:
            self._audit.log(
                EventType.LOGIN_LOCKOUT,
                f"IP locked out after {status.failed_attempts} failed login attempts",
                ip_address=attempt.ip_address,
                user_agent=attempt.user_agent,
                request_path=attempt.request_path,
                blocked=True,
                metadata={"failedAttempts": status.failed_attempts, "durationMinutes": policy.lockout_duration_minutes},
            )

    def _verify_credentials(self, attempt: LoginAttempt, policy: SecurityPolicy) -> Account:
        account = self._accounts.get_by_username_or_email(attempt.identifier)
        password_ok = check_password(attempt.password, account.hashed_password if account else None)
        if account is None or not password_ok or not account.is_active:
            self._record_failure(attempt, policy)
            if account is None:
                action = "Failed login attempt - unknown account"
            elif not password_ok:
                action = "Failed login attempt - invalid password"
            else:
                action = "Failed login attempt - account inactive"
            self._audit.log(
                EventType.LOGIN_FAILED,
                action,
                ip_address=attempt.ip_address,
                user_agent=attempt.user_agent,
                request_path=attempt.request_path,
                user_id=account.id if account else None,
                user_name=attempt.identifier,
            )
            raise InvalidCredentials()
        return account

    def _password_expired(self, account: Account, policy: SecurityPolicy) -> bool:
        """Apply the expiry policy. Stamps accounts that have no baseline yet."""
        if not policy.password_expiration:
            return False
        now = now_utc()
        max_age = timedelta(days=self._settings.password_max_age_days)
        updated_at = parse_iso(account.password_updated_at)
        if updated_at is None:
            self._accounts.update_account(
                account.id, password_updated_at=to_iso(now), password_expires_at=to_iso(now + max_age)
            )
            return False
        grace = parse_iso(account.password_expires_at)
        if grace is not None and grace > now:
            return False
        return now - updated_at > max_age

    def _establish(self, account: Account, attempt: LoginAttempt, action: str, trail: list[LoginState]) -> LoginOutcome:
        session = self._sessions.establish(account, attempt.ip_address, attempt.user_agent, attempt.transport_id)
        self._audit.log(
            EventType.LOGIN_SUCCESS,
            action,
            ip_address=attempt.ip_address,
            user_agent=attempt.user_agent,
            request_path=attempt.request_path,
            user_id=account.id,
            user_name=account.username,
        )
        trail.append(LoginState.SESSION_ESTABLISHED)
        return LoginOutcome(
            state=LoginState.SESSION_ESTABLISHED,
            account=account,
            transport_id=session.session_id,
            session=session,
            trail=trail,
        )

    # ------------------------------------------------------------------
    # First step
    # ------------------------------------------------------------------

    def login(self, attempt: LoginAttempt) -> LoginOutcome:
        trail = [LoginState.START]
        try:
            return self._login(attempt, trail)
        except AuthError as e:
            trail.append(LoginState.REJECTED)
            logger.info("Login rejected for %s from %s: %s", attempt.identifier, attempt.ip_address, e.code)
            raise

    def _login(self, attempt: LoginAttempt, trail: list[LoginState]) -> LoginOutcome:
        self._check_ip(attempt)
        trail.append(LoginState.IP_CHECKED)

        self._check_lockout(attempt)
        policy = self._security_store.get_policy()

        result = self._captcha.verify(attempt.captcha_token, policy.captcha_type, attempt.ip_address)
        if not result.success:
            self._record_failure(attempt, policy)
            self._audit.log(
                EventType.LOGIN_FAILED,
                "Captcha verification failed",
                ip_address=attempt.ip_address,
                user_agent=attempt.user_agent,
                request_path=attempt.request_path,
                user_name=attempt.identifier,
                blocked=True,
                metadata={"captchaType": policy.captcha_type, "reason": result.reason},
            )
            raise CaptchaFailed()
        trail.append(LoginState.CAPTCHA_VERIFIED)

        account = self._verify_credentials(attempt, policy)
        self._lockout.clear(attempt.ip_address)
        trail.append(LoginState.CREDENTIALS_VERIFIED)

        if account.two_factor_enabled:
            transport_id = attempt.transport_id or new_transport_id()
            self._sessions.begin_second_factor(transport_id, account.id)
            has_biometric = self._accounts.count_credentials(account.id) > 0
            self._audit.log(
                EventType.TWO_FACTOR_REQUIRED,
                "Password verified, second factor required",
                ip_address=attempt.ip_address,
                user_agent=attempt.user_agent,
                request_path=attempt.request_path,
                user_id=account.id,
                user_name=account.username,
            )
            trail.append(LoginState.PENDING_2FA)
            return LoginOutcome(
                state=LoginState.PENDING_2FA,
                account=account,
                transport_id=transport_id,
                has_biometric=has_biometric,
                trail=trail,
            )

        if self._password_expired(account, policy):
            self._audit.log(
                EventType.PASSWORD_EXPIRED,
                "Login blocked - password expired",
                ip_address=attempt.ip_address,
                user_agent=attempt.user_agent,
                request_path=attempt.request_path,
                user_id=account.id,
                user_name=account.username,
                blocked=True,
            )
            raise PasswordExpired(account.id)
        trail.append(LoginState.PASSWORD_EXPIRY_CHECKED)

        return self._establish(account, attempt, "Successful login", trail)

    # ------------------------------------------------------------------
    # Second step
    # ------------------------------------------------------------------

    def _pending_account(self, transport_id: str | None) -> Account:
        pending = self._sessions.get_pending(transport_id)
        if pending is None or not pending.awaiting_2fa or pending.pending_user_id is None:
            raise SessionError("No pending 2FA verification.")
        account = self._accounts.get_by_id(pending.pending_user_id)
        if account is None or not account.is_active or not account.two_factor_enabled:
            raise SessionError("No pending 2FA verification.")
        return account

    def complete_totp(self, transport_id: str | None, code: str, attempt: LoginAttempt) -> LoginOutcome:
        account = self._pending_account(transport_id)
        if not self._totp.verify_login(account, code):
            self._audit.log(
                EventType.TWO_FACTOR_FAILED,
                "Invalid 2FA code during login",
                ip_address=attempt.ip_address,
                user_agent=attempt.user_agent,
                request_path=attempt.request_path,
                user_id=account.id,
                user_name=account.username,
                metadata={"method": "totp"},
            )
            raise TwoFactorInvalid()
        attempt.transport_id = transport_id
        return self._establish(account, attempt, "Successful 2FA login", [LoginState.PENDING_2FA])

    def complete_webauthn(self, transport_id: str | None, credential: dict, attempt: LoginAttempt) -> LoginOutcome:
        self._pending_account(transport_id)
        account = self._webauthn.verify_assertion(transport_id, credential, attempt.ip_address, attempt.user_agent)
        attempt.transport_id = transport_id
        return self._establish(account, attempt, "Successful biometric login", [LoginState.PENDING_2FA])

    # ------------------------------------------------------------------
    # Reset flow for expired passwords
    # ------------------------------------------------------------------

    def force_password_reset(self, attempt: LoginAttempt, new_password: str) -> Account:
        """Re-check the current credentials and replace the password. No session.

        Only for accounts login would refuse with PasswordExpired: the password
        is past its max age and there is no second factor. Anything else goes
        through login and /auth/password, so the password alone never rotates
        a 2FA account.
        """
        self._check_ip(attempt)
        self._check_lockout(attempt)
        policy = self._security_store.get_policy()
        account = self._verify_credentials(attempt, policy)
        if account.two_factor_enabled or not self._password_expired(account, policy):
            raise ResetNotAllowed()
        if check_password(new_password, account.hashed_password):
            raise AuthError("New password must be different from the current password.")
        self._lockout.clear(attempt.ip_address)
        self.set_password(account, new_password, attempt)
        return account

    def change_password(
        self, account: Account, current_password: str, new_password: str, attempt: LoginAttempt
    ) -> None:
        """Self-service change for a signed-in account. A wrong current password is audited."""
        if not check_password(current_password, account.hashed_password):
            self._audit.log(
                EventType.LOGIN_FAILED,
                "Password change refused - invalid current password",
                ip_address=attempt.ip_address,
                user_agent=attempt.user_agent,
                request_path=attempt.request_path,
                user_id=account.id,
                user_name=account.username,
                blocked=True,
            )
            raise AuthError("Current password is incorrect.")
        if new_password == current_password:
            raise AuthError("New password must be different from the current password.")
        self.set_password(account, new_password, attempt)

    def set_password(self, account: Account, new_password: str, attempt: LoginAttempt) -> None:
        now = now_utc()
        self._accounts.update_account(
            account.id,
            hashed_password=hash_password(new_password),
            password_updated_at=to_iso(now),
            password_expires_at=to_iso(now + timedelta(days=self._settings.password_max_age_days)),
        )
        self._audit.log(
            EventType.PASSWORD_CHANGED,
            "Password changed",
            ip_address=attempt.ip_address,
            user_agent=attempt.user_agent,
            request_path=attempt.request_path,
            user_id=account.id,
            user_name=account.username,
        )
