"""
auth/exceptions.py -- Error taxonomy for the login chain and second factors.

Every rejection the auth and security layers produce is one of these. The
API layer maps them onto the shared ErrorResponse envelope in api/main.py;
anything else that escapes a route becomes a generic 500.

Messages are client-facing. InvalidCredentials in particular must read the
same whether the account exists or not.
"""

from __future__ import annotations


class AuthError(Exception):
    status_code: int = 400
    code: str = "auth_error"
    message: str = "Authentication failed."

    def __init__(self, message: str | None = None, *, retry_after: int | None = None, detail: str | None = None):
        self.message = message or self.message
        self.retry_after = retry_after
        self.detail = detail
        super().__init__(self.message)


class AccessDenied(AuthError):
    status_code = 403
    code = "access_denied"
    message = "Access denied."


class RateLimited(AuthError):
    status_code = 429
    code = "rate_limited"
    message = "Too many requests. Please try again later."


class InvalidCredentials(AuthError):
    status_code = 401
    code = "invalid_credentials"
    message = "Invalid username or password."


class CaptchaFailed(AuthError):
    code = "captcha_failed"
    message = "Captcha verification failed."


class TwoFactorInvalid(AuthError):
    code = "two_factor_invalid"
    message = "Invalid verification code."


class PasswordExpired(AuthError):
    """Raised when the password is past its max age. Requires the reset flow."""

    status_code = 403
    code = "password_expired"
    message = "Your password has expired. Please reset your password."

    def __init__(self, user_id: int, message: str | None = None):
        super().__init__(message)
        self.user_id = user_id


class ResetNotAllowed(AuthError):
    """The forced reset flow only replaces an expired password on a single-factor account."""

    status_code = 403
    code = "reset_not_allowed"
    message = "Password reset is only available for expired passwords."


class WebAuthnVerificationFailed(AuthError):
    code = "webauthn_failed"
    message = "Biometric verification failed."


class SessionError(AuthError):
    code = "session_error"
    message = "No pending verification. Please log in again."
