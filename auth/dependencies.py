"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

The transport session token is read from, in priority order:
  1. The "session_token" cookie -- set by the login endpoints.
  2. Authorization: Bearer <token> -- API clients carrying the same token.

A token only proves the transport id was issued here. The request is
authenticated when that id has an active, unexpired session row whose
account is active (auth/sessions.py). A transport id that only carries
pending 2FA state is NOT authenticated.

try_get_principal() is the soft variant (returns None on failure).
get_current_principal() raises HTTP 401. require_capability() builds a
dependency that additionally raises HTTP 403 when the role lacks it.

Layer rule: may import fastapi (this module is part of the dependency
injection system), core/ and security/; never api/.
"""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import HTTPException, Request

from auth.models import Account, Capability, UserSession, has_capability
from auth.tokens import SESSION_COOKIE, decode_session_token


@dataclass
class Principal:
    account: Account
    session: UserSession

    @property
    def transport_id(self) -> str:
        return self.session.session_id


def _candidate_tokens(request: Request) -> list[str]:
    tokens = []
    cookie = request.cookies.get(SESSION_COOKIE)
    if cookie:
        tokens.append(cookie)
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        tokens.append(auth_header[7:])
    return tokens


def get_transport_id(request: Request) -> str | None:
    """Return the first transport id carried by a valid token, authenticated or not.

    Used by the second-factor endpoints, which run before a session exists.
    """
    for token in _candidate_tokens(request):
        sid = decode_session_token(token)
        if sid:
            return sid
    return None


def try_get_principal(request: Request) -> Principal | None:
    """Authenticate the request. Never raises."""
    session_manager = request.app.state.session_manager
    for token in _candidate_tokens(request):
        sid = decode_session_token(token)
        if not sid:
            continue
        resolved = session_manager.authenticate(sid)
        if resolved is not None:
            session, account = resolved
            return Principal(account=account, session=session)
    return None


def get_current_principal(request: Request) -> Principal:
    """Require authentication. Raises HTTP 401 if the request is not authenticated."""
    principal = try_get_principal(request)
    if principal is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return principal


def require_capability(capability: Capability):
    """Dependency factory: 401 if unauthenticated, 403 if the role lacks capability.

    Use as:
        @router.get("/security/ip-rules")
        async def route(principal: Principal = Depends(require_capability(Capability.MANAGE_SECURITY))): ...
    """

    def dependency(request: Request) -> Principal:
        principal = get_current_principal(request)
        if not has_capability(principal.account.role, capability):
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": "Admin access required."},
            )
        return principal

    return dependency


require_admin = require_capability(Capability.MANAGE_SECURITY)
