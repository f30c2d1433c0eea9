"""
auth/tokens.py -- Password hashing and transport session tokens.

Security design decisions:
  Passwords: bcrypt used directly. Its cost factor makes brute-force
       expensive. The _DUMMY_HASH constant enables timing equalization in the
       login state machine so response time does not reveal whether a
       username exists [C1].

  Transport ids: secrets.token_urlsafe(32) -- 256 bits, opaque, never derived
       from user data. The id is what Session and PendingAuthState rows are
       keyed by; it is regenerated on every session establishment.

  Session token: python-jose HS256 JWT carrying only {"sid", "exp"}. It
       proves the id was issued by this server; whether the id is still
       authenticated is decided by the session store, so revoking a session
       server-side takes effect immediately.

Layer rule: no imports from api/ or security/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone

import bcrypt
from jose import JWTError, jwt

from core.config import get_settings

logger = logging.getLogger("gatehouse.auth")

_settings = get_settings()

_ALGORITHM = "HS256"

SESSION_COOKIE = "session_token"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    The API layer caps passwords at 72 characters (pydantic Field) so bcrypt
    never truncates silently.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Timing equalization dummy hash [C1]. Always run bcrypt, even when the
# account does not exist.
_DUMMY_HASH: str = hash_password("gatehouse_timing_dummy")


def check_password(plain: str, hashed: str | None) -> bool:
    """verify_password() that still spends a full bcrypt round when hashed is None."""
    if hashed is None:
        verify_password(plain, _DUMMY_HASH)
        return False
    return verify_password(plain, hashed)


# ---------------------------------------------------------------------------
# Transport session ids and tokens
# ---------------------------------------------------------------------------


def new_transport_id() -> str:
    return secrets.token_urlsafe(32)


def create_session_token(transport_id: str, expire_seconds: int = 0) -> str:
    """Encode a signed JWT that carries the transport session id."""
    duration = expire_seconds if expire_seconds > 0 else _settings.session_ttl_hours * 3600
    expire = datetime.now(timezone.utc) + timedelta(seconds=duration)
    return jwt.encode({"sid": transport_id, "exp": expire}, _settings.secret_key, algorithm=_ALGORITHM)


def decode_session_token(token: str) -> str | None:
    """Return the transport id from a session token, or None on any failure."""
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    sid = payload.get("sid")
    return sid if isinstance(sid, str) and sid else None


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_session_cookie(response, token: str, expire_seconds: int = 0) -> None:
    """Write the session token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST -- CSRF mitigation.
    secure: only sent over HTTPS when SECURE_COOKIES=true.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.session_ttl_hours * 3600
    response.set_cookie(
        SESSION_COOKIE,
        value=token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=duration,
    )


def clear_session_cookie(response) -> None:
    response.delete_cookie(SESSION_COOKIE, httponly=True, samesite="lax", secure=_settings.secure_cookies)
