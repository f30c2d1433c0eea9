"""
api/request_info.py -- Who is making this request.

client_ip() is the one place the service decides where a request comes from.
Every per-IP mechanism (IP rules, the API rate limiter, login lockout,
slowapi) keys on it, so they always agree. X-Forwarded-For is honoured only
when TRUST_FORWARDED_FOR is set -- otherwise a client could pick its own IP.
"""

from __future__ import annotations

from fastapi import Request

from auth.login import LoginAttempt
from core.config import get_settings

_settings = get_settings()


def client_ip(request: Request) -> str:
    if _settings.trust_forwarded_for:
        first = request.headers.get("X-Forwarded-For", "").split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else "unknown"


def user_agent(request: Request) -> str | None:
    return request.headers.get("User-Agent")


def login_attempt(
    request: Request,
    identifier: str = "",
    password: str = "",
    captcha_token: str | None = None,
    transport_id: str | None = None,
) -> LoginAttempt:
    """Build a LoginAttempt, reusing the IP decision the request gate already made."""
    return LoginAttempt(
        identifier=identifier,
        password=password,
        ip_address=client_ip(request),
        user_agent=user_agent(request),
        transport_id=transport_id,
        captcha_token=captcha_token,
        request_path=request.url.path,
        ip_decision=getattr(request.state, "ip_decision", None),
    )
