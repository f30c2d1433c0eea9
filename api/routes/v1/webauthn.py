"""
api/routes/v1/webauthn.py -- WebAuthn (biometric / security key) endpoints.

Endpoints:
  POST   /api/v1/auth/webauthn/register/options    Registration challenge (authenticated)
  POST   /api/v1/auth/webauthn/register/verify     Store the attested credential
  POST   /api/v1/auth/webauthn/login/options       Assertion challenge (pending 2FA login)
  POST   /api/v1/auth/webauthn/login/verify        Finish the pending login
  GET    /api/v1/auth/webauthn/credentials         Own credentials
  DELETE /api/v1/auth/webauthn/credentials/{id}    Remove one of them

Options are returned as the plain JSON fido2 produces (binary fields as
websafe base64); the browser client decodes them before calling
navigator.credentials. Challenges live server-side in pending_auth.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    LoginResponse,
    MessageResponse,
    WebAuthnCredentialResponse,
    WebAuthnLoginOptionsRequest,
    WebAuthnLoginVerifyRequest,
    WebAuthnRegisterVerifyRequest,
)
from api.request_info import client_ip, login_attempt, user_agent
from api.routes.v1.auth import outcome_response
from auth.dependencies import Principal, get_current_principal, get_transport_id
from auth.models import WebAuthnCredential
from core.config import get_settings

router = APIRouter(tags=["webauthn"])

_settings = get_settings()


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


@router.post("/auth/webauthn/register/options")
def registration_options(
    request: Request,
    principal: Principal = Depends(get_current_principal),
) -> dict:
    return request.app.state.webauthn.registration_options(principal.account, principal.transport_id)


@router.post("/auth/webauthn/register/verify", response_model=WebAuthnCredentialResponse, status_code=201)
def registration_verify(
    request: Request,
    body: WebAuthnRegisterVerifyRequest,
    principal: Principal = Depends(get_current_principal),
) -> WebAuthnCredentialResponse:
    stored = request.app.state.webauthn.verify_registration(
        principal.account,
        principal.transport_id,
        body.credential,
        body.device_name,
        client_ip(request),
        user_agent(request),
    )
    return _credential_to_response(stored)


# ---------------------------------------------------------------------------
# Authentication (second factor)
# ---------------------------------------------------------------------------


@limiter.limit(_settings.two_factor_rate_limit)
@router.post("/auth/webauthn/login/options")
def login_options(request: Request, body: WebAuthnLoginOptionsRequest) -> dict:
    return request.app.state.webauthn.authentication_options(get_transport_id(request), body.email)


@limiter.limit(_settings.two_factor_rate_limit)
@router.post("/auth/webauthn/login/verify", response_model=LoginResponse)
def login_verify(request: Request, body: WebAuthnLoginVerifyRequest) -> JSONResponse:
    outcome = request.app.state.login_machine.complete_webauthn(
        get_transport_id(request), body.credential, login_attempt(request)
    )
    return outcome_response(outcome)


# ---------------------------------------------------------------------------
# Credential management
# ---------------------------------------------------------------------------


@router.get("/auth/webauthn/credentials", response_model=list[WebAuthnCredentialResponse])
def list_credentials(
    request: Request,
    principal: Principal = Depends(get_current_principal),
) -> list[WebAuthnCredentialResponse]:
    return [_credential_to_response(c) for c in request.app.state.webauthn.list_credentials(principal.account)]


@router.delete("/auth/webauthn/credentials/{credential_id}", response_model=MessageResponse)
def remove_credential(
    request: Request,
    credential_id: int,
    principal: Principal = Depends(get_current_principal),
) -> MessageResponse:
    removed = request.app.state.webauthn.remove_credential(
        principal.account, credential_id, client_ip(request), user_agent(request)
    )
    if not removed:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Credential not found."},
        )
    return MessageResponse(message="Credential removed.")


def _credential_to_response(credential: WebAuthnCredential) -> WebAuthnCredentialResponse:
    return WebAuthnCredentialResponse(
        id=credential.id,
        credential_id=credential.credential_id,
        device_name=credential.device_name,
        counter=credential.counter,
        created_at=credential.created_at,
        last_used=credential.last_used,
    )
