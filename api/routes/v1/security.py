"""
api/routes/v1/security.py -- Sessions, IP rules, audit log and security settings.

Endpoints:
  GET    /api/v1/security/sessions                       Active sessions (admins: all)
  POST   /api/v1/security/sessions/terminate/{id}        End one session (own, or admin)
  POST   /api/v1/security/sessions/terminate-all         End all but the caller's (admin)
  POST   /api/v1/security/sessions/logout-all-devices    End all of the caller's sessions
  GET    /api/v1/security/ip-rules                       List rules (admin)
  POST   /api/v1/security/ip-rules                       Add a rule (admin)
  DELETE /api/v1/security/ip-rules/{id}                  Remove a rule (admin)
  GET    /api/v1/security/logs                           Audit log, newest first (admin)
  GET    /api/v1/security/login-history                  Login events (admins: all)
  GET    /api/v1/security/stats                          Counts derived from the audit log (admin)
  GET    /api/v1/security/settings                       Effective policy (admin)
  POST   /api/v1/security/settings                       Override policy keys (admin)

Admin routes depend on require_admin (manage_security capability), never on
role strings. Terminating a session that does not exist, is already ended,
or belongs to someone else all answer 404.
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from api.models import (
    IpRuleCreate,
    IpRuleResponse,
    MessageResponse,
    SecurityLogResponse,
    SecuritySettingsResponse,
    SecurityStatsResponse,
    SessionResponse,
    TerminatedResponse,
)
from api.request_info import client_ip, user_agent
from auth.dependencies import Principal, get_current_principal, require_admin
from auth.models import UserSession
from auth.tokens import clear_session_cookie
from security.models import EventType, IpRule, IpRuleKind, SecurityLogEntry, SecurityPolicy, Severity

router = APIRouter(tags=["security"])


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@router.get("/security/sessions", response_model=list[SessionResponse])
def list_sessions(
    request: Request,
    principal: Principal = Depends(get_current_principal),
) -> list[SessionResponse]:
    sessions = request.app.state.session_manager.list_sessions(principal.account)
    return [_session_to_response(s, principal.transport_id) for s in sessions]


@router.post("/security/sessions/terminate/{session_id}", response_model=MessageResponse)
def terminate_session(
    request: Request,
    session_id: int,
    principal: Principal = Depends(get_current_principal),
) -> MessageResponse:
    ended = request.app.state.session_manager.terminate(
        session_id, principal.account, client_ip(request), user_agent(request)
    )
    if not ended:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Session not found."},
        )
    return MessageResponse(message="Session terminated.")


@router.post("/security/sessions/terminate-all", response_model=TerminatedResponse)
def terminate_all_sessions(
    request: Request,
    principal: Principal = Depends(require_admin),
) -> TerminatedResponse:
    count = request.app.state.session_manager.terminate_all(
        principal.account, principal.transport_id, client_ip(request), user_agent(request)
    )
    return TerminatedResponse(message="All other sessions terminated.", count=count)


@router.post("/security/sessions/logout-all-devices", response_model=TerminatedResponse)
def logout_all_devices(
    request: Request,
    principal: Principal = Depends(get_current_principal),
) -> JSONResponse:
    """End every session of the caller, this one included, and revoke trusted devices."""
    count = request.app.state.session_manager.terminate_all_for_user(
        principal.account, client_ip(request), user_agent(request)
    )
    resp = JSONResponse(
        content=TerminatedResponse(message="Logged out from all devices.", count=count).model_dump(by_alias=True)
    )
    clear_session_cookie(resp)
    return resp


# ---------------------------------------------------------------------------
# IP rules
# ---------------------------------------------------------------------------


@router.get("/security/ip-rules", response_model=list[IpRuleResponse])
def list_ip_rules(
    request: Request,
    principal: Principal = Depends(require_admin),
) -> list[IpRuleResponse]:
    return [_rule_to_response(r) for r in request.app.state.security_store.list_ip_rules()]


@router.post("/security/ip-rules", response_model=IpRuleResponse, status_code=201)
def create_ip_rule(
    request: Request,
    body: IpRuleCreate,
    principal: Principal = Depends(require_admin),
) -> IpRuleResponse:
    """Add a whitelist or blacklist rule. Takes effect on the next request."""
    store = request.app.state.security_store
    rule = IpRule(ip_address=body.ip_address, kind=body.type, reason=body.reason, created_by=principal.account.id)
    try:
        rule_id = store.create_ip_rule(rule)
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": f"{body.ip_address} is already {body.type.value}ed."},
        ) from exc

    request.app.state.audit.log(
        EventType.IP_RULE_CREATED,
        f"IP {body.type.value} rule added for {body.ip_address}",
        ip_address=client_ip(request),
        user_agent=user_agent(request),
        user_id=principal.account.id,
        user_name=principal.account.username,
        request_path=request.url.path,
        severity=Severity.WARNING if body.type == IpRuleKind.BLACKLIST else Severity.INFO,
        metadata={"ruleId": rule_id, "target": body.ip_address, "type": body.type.value},
    )
    return _rule_to_response(store.get_ip_rule(rule_id))


@router.delete("/security/ip-rules/{rule_id}", response_model=MessageResponse)
def delete_ip_rule(
    request: Request,
    rule_id: int,
    principal: Principal = Depends(require_admin),
) -> MessageResponse:
    store = request.app.state.security_store
    rule = store.get_ip_rule(rule_id)
    if rule is None or not store.delete_ip_rule(rule_id):
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "IP rule not found."},
        )
    request.app.state.audit.log(
        EventType.IP_RULE_DELETED,
        f"IP {rule.kind.value} rule removed for {rule.ip_address}",
        ip_address=client_ip(request),
        user_agent=user_agent(request),
        user_id=principal.account.id,
        user_name=principal.account.username,
        request_path=request.url.path,
        metadata={"ruleId": rule_id, "target": rule.ip_address, "type": rule.kind.value},
    )
    return MessageResponse(message="IP rule removed.")


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------


@router.get("/security/logs", response_model=list[SecurityLogResponse])
def list_logs(
    request: Request,
    limit: int = Query(default=100, ge=1, le=1000),
    event_type: Optional[EventType] = Query(default=None, alias="eventType"),
    principal: Principal = Depends(require_admin),
) -> list[SecurityLogResponse]:
    entries = request.app.state.audit.recent(limit=limit, event_type=event_type)
    return [_entry_to_response(e) for e in entries]


@router.get("/security/login-history", response_model=list[SecurityLogResponse])
def login_history(
    request: Request,
    limit: int = Query(default=100, ge=1, le=1000),
    principal: Principal = Depends(get_current_principal),
) -> list[SecurityLogResponse]:
    """Login events. Admins see everyone's; other accounts see their own."""
    user_id = None if principal.account.is_admin else principal.account.id
    entries = request.app.state.audit.login_history(limit=limit, user_id=user_id)
    return [_entry_to_response(e) for e in entries]


@router.get("/security/stats", response_model=SecurityStatsResponse)
def stats(
    request: Request,
    principal: Principal = Depends(require_admin),
) -> SecurityStatsResponse:
    result = request.app.state.audit.stats()
    return SecurityStatsResponse(
        total_blocked=result.total_blocked,
        total_allowed=result.total_allowed,
        failed_logins=result.failed_logins,
        lockouts=result.lockouts,
        by_event_type=result.by_event_type,
    )


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@router.get("/security/settings", response_model=SecuritySettingsResponse)
def get_security_settings(
    request: Request,
    principal: Principal = Depends(require_admin),
) -> SecuritySettingsResponse:
    return _policy_to_response(request.app.state.security_store.get_policy())


@router.post("/security/settings", response_model=SecuritySettingsResponse)
def update_security_settings(
    request: Request,
    body: dict[str, Any] = Body(...),
    principal: Principal = Depends(require_admin),
) -> SecuritySettingsResponse:
    """Override one or more policy keys. Unknown keys or bad values -> 400, nothing written."""
    store = request.app.state.security_store
    if not body:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No settings to update."},
        )
    try:
        store.update_settings(**body)
    except ValueError as exc:
        raise HTTPException(
            status_code=400,
            detail={"code": "invalid_setting", "message": str(exc)},
        ) from exc

    request.app.state.audit.log(
        EventType.SECURITY_SETTING_UPDATED,
        f"Security settings updated: {', '.join(sorted(body))}",
        ip_address=client_ip(request),
        user_agent=user_agent(request),
        user_id=principal.account.id,
        user_name=principal.account.username,
        request_path=request.url.path,
        severity=Severity.WARNING,
        metadata=body,
    )
    return _policy_to_response(store.get_policy())


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _session_to_response(session: UserSession, current_transport_id: str) -> SessionResponse:
    return SessionResponse(
        id=session.id,
        user_id=session.user_id,
        ip_address=session.ip_address,
        user_agent=session.user_agent,
        device_info=session.device_info,
        created_at=session.created_at,
        expires_at=session.expires_at,
        last_activity=session.last_activity,
        current=session.session_id == current_transport_id,
    )


def _rule_to_response(rule: IpRule | None) -> IpRuleResponse:
    if rule is None:
        raise HTTPException(
            status_code=500,
            detail={"code": "internal_error", "message": "IP rule not found after write."},
        )
    return IpRuleResponse(
        id=rule.id,
        ip_address=rule.ip_address,
        type=rule.kind,
        reason=rule.reason,
        created_by=rule.created_by,
        created_at=rule.created_at,
    )


def _entry_to_response(entry: SecurityLogEntry) -> SecurityLogResponse:
    return SecurityLogResponse(
        id=entry.id,
        event_type=entry.event_type,
        action=entry.action,
        user_id=entry.user_id,
        user_name=entry.user_name,
        ip_address=entry.ip_address,
        user_agent=entry.user_agent,
        request_path=entry.request_path,
        blocked=entry.blocked,
        severity=entry.severity.value,
        metadata=entry.metadata,
        created_at=entry.created_at,
    )


def _policy_to_response(policy: SecurityPolicy) -> SecuritySettingsResponse:
    return SecuritySettingsResponse(
        api_rate_limit=policy.api_rate_limit,
        login_attempts_limit=policy.login_attempts_limit,
        lockout_duration=policy.lockout_duration_minutes,
        password_expiration=policy.password_expiration,
        captcha_type=policy.captcha_type,
    )
