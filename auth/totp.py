"""
auth/totp.py -- TOTP two-factor enrollment and verification (pyotp).

Enrollment is two-step. generate() creates a secret and parks it on the
caller's pending auth state -- the account is untouched until
verify_and_enable() sees a valid code for that secret. Only then is the
secret persisted and two_factor_enabled flipped.

Codes are accepted within +/- valid_window 30-second steps of the clock
(default 2, i.e. about a minute of skew either way).

verify_login() checks a code against the persisted secret. auth/login.py
calls it and owns the pending-login bookkeeping around it.
"""

from __future__ import annotations

import base64
import io
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

import pyotp
import qrcode

from auth.exceptions import SessionError, TwoFactorInvalid
from auth.models import Account
from auth.sessions import SessionManager
from auth.store import AccountStore
from core.config import Settings, get_settings
from security.audit import AuditLog
from security.models import EventType, Severity

logger = logging.getLogger("gatehouse.totp")


@dataclass(frozen=True)
class TwoFactorSetup:
    secret: str
    provisioning_uri: str
    qr_code: str  # data:image/png;base64,...


def qr_data_url(data: str) -> str:
    qr = qrcode.QRCode(version=1, box_size=10, border=4)
    qr.add_data(data)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return f"data:image/png;base64,{base64.b64encode(buffer.getvalue()).decode()}"


class TwoFactorManager:
    def __init__(
        self,
        accounts: AccountStore,
        sessions: SessionManager,
        audit: AuditLog,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        settings = settings or get_settings()
        self._accounts = accounts
        self._sessions = sessions
        self._audit = audit
        self._issuer = settings.totp_issuer
        self.valid_window = settings.totp_valid_window
        self._clock = clock

    def verify_code(self, secret: str | None, code: str | None) -> bool:
        """True iff code matches secret within the configured step window."""
        if not secret or not code:
            return False
        code = code.strip().replace(" ", "")
        if not code.isdigit():
            return False
        return pyotp.TOTP(secret).verify(code, for_time=int(self._clock()), valid_window=self.valid_window)

    def verify_login(self, account: Account, code: str | None) -> bool:
        return account.two_factor_enabled and self.verify_code(account.two_factor_secret, code)

    def generate(self, account: Account, transport_id: str) -> TwoFactorSetup:
        secret = pyotp.random_base32()
        uri = pyotp.TOTP(secret).provisioning_uri(name=account.email, issuer_name=self._issuer)
        self._sessions.set_enrollment_secret(transport_id, secret)
        return TwoFactorSetup(secret=secret, provisioning_uri=uri, qr_code=qr_data_url(uri))

    def verify_and_enable(
        self, account: Account, transport_id: str, code: str, ip_address: str | None, user_agent: str | None
    ) -> None:
        pending = self._sessions.get_pending(transport_id)
        if pending is None or not pending.temp_2fa_secret:
            raise SessionError("No 2FA setup in progress.")
        if not self.verify_code(pending.temp_2fa_secret, code):
            self._audit.log(
                EventType.TWO_FACTOR_FAILED,
                "Invalid code while enabling 2FA",
                ip_address=ip_address,
                user_agent=user_agent,
                user_id=account.id,
                user_name=account.username,
            )
            raise TwoFactorInvalid()
        self._accounts.update_account(account.id, two_factor_secret=pending.temp_2fa_secret, two_factor_enabled=True)
        self._sessions.clear_enrollment_secret(transport_id)
        self._audit.log(
            EventType.TWO_FACTOR_ENABLED,
            "Two-factor authentication enabled",
            ip_address=ip_address,
            user_agent=user_agent,
            user_id=account.id,
            user_name=account.username,
        )

    def disable(self, account: Account, code: str, ip_address: str | None, user_agent: str | None) -> None:
        """Clear the persisted secret. Requires a valid code for it first."""
        if not account.two_factor_enabled:
            raise TwoFactorInvalid("Two-factor authentication is not enabled.")
        if not self.verify_code(account.two_factor_secret, code):
            self._audit.log(
                EventType.TWO_FACTOR_FAILED,
                "Invalid code while disabling 2FA",
                ip_address=ip_address,
                user_agent=user_agent,
                user_id=account.id,
                user_name=account.username,
            )
            raise TwoFactorInvalid()
        self._accounts.update_account(account.id, two_factor_secret=None, two_factor_enabled=False)
        self._audit.log(
            EventType.TWO_FACTOR_DISABLED,
            "Two-factor authentication disabled",
            ip_address=ip_address,
            user_agent=user_agent,
            user_id=account.id,
            user_name=account.username,
            severity=Severity.WARNING,
        )
