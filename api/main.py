"""
api/main.py -- FastAPI application entry point for Gatehouse.

Exposes the authentication and session security core over HTTP: login and
second factors, sessions, IP rules, the audit log and security settings.

Run with:  python main.py serve
           uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. log_requests          -- one access log line per request
  2. security_gate         -- IP access control, then the general API limiter
  3. SlowAPIMiddleware     -- per-route limits on the login endpoints
  4. CORSMiddleware        -- adds CORS headers for allowed browser origins
  5. TrustedHostMiddleware -- rejects requests with unexpected Host headers

Lifespan builds every store and service onto app.state (init_state), starts
the reaper task, and tears both down symmetrically on shutdown.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.request_info import client_ip, user_agent
from api.routes.v1.auth import router as auth_router
from api.routes.v1.security import router as security_router
from api.routes.v1.webauthn import router as webauthn_router
from auth.exceptions import AuthError, PasswordExpired
from auth.login import LoginStateMachine
from auth.sessions import SessionManager, SessionStore
from auth.store import AccountStore
from auth.totp import TwoFactorManager
from auth.webauthn import WebAuthnManager
from core.config import get_settings
from security.audit import AuditLog
from security.captcha import CaptchaVerifier
from security.ip_access import IpAccessControl
from security.limiter import ApiRateLimiter, LockoutTracker
from security.models import EventType
from security.store import SecurityStore

__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("gatehouse.api")

_settings = get_settings()

_HEALTH_PATH = "/api/v1/health"
# IP rules apply to these prefixes; the API limiter applies to all of /api/.
_IP_GATED_PREFIXES = ("/api/v1/auth/", "/api/v1/security/")


# ---------------------------------------------------------------------------
# Application state
# ---------------------------------------------------------------------------


def init_state(app: FastAPI, db_url: str | None = None, clock: Callable[[], float] = time.time) -> None:
    """Build every store and service and attach them to app.state.

    All stores share one database URL. clock drives the lockout and TOTP
    windows and the Retry-After arithmetic of the API limiter; tests pass a
    fake one.
    """
    db_url = db_url or _settings.database_url
    state = app.state
    state.account_store = AccountStore(db_url)
    state.session_store = SessionStore(db_url)
    state.security_store = SecurityStore(db_url, _settings)
    state.audit = AuditLog(db_url)

    state.api_limiter = ApiRateLimiter(window_seconds=_settings.api_rate_window_seconds, clock=clock)
    state.lockout = LockoutTracker(clock=clock)
    state.captcha = CaptchaVerifier(_settings)
    state.ip_access = IpAccessControl(state.security_store, state.audit)

    state.session_manager = SessionManager(state.session_store, state.account_store, state.audit, _settings)
    state.totp = TwoFactorManager(state.account_store, state.session_manager, state.audit, _settings, clock=clock)
    state.webauthn = WebAuthnManager(state.account_store, state.session_manager, state.audit, _settings)
    state.login_machine = LoginStateMachine(
        accounts=state.account_store,
        sessions=state.session_manager,
        audit=state.audit,
        ip_access=state.ip_access,
        lockout=state.lockout,
        captcha=state.captcha,
        security_store=state.security_store,
        totp=state.totp,
        webauthn=state.webauthn,
        settings=_settings,
    )


def close_state(app: FastAPI) -> None:
    for name in ("account_store", "session_store", "security_store", "audit"):
        store = getattr(app.state, name, None)
        if store is not None:
            store.close()


def reap_once(app: FastAPI) -> None:
    """Sweep lapsed lockouts, pending state and sessions.

    API rate windows expire inside the limits storage and need no sweep.
    """
    state = app.state
    lockouts = state.lockout.reap()
    sessions, pending = state.session_manager.purge_expired()
    if lockouts or sessions or pending:
        logger.info(
            "Reaper: %d lockouts, %d sessions, %d pending records",
            lockouts,
            sessions,
            pending,
        )


# ---------------------------------------------------------------------------
# Background reaper task
# ---------------------------------------------------------------------------


async def _reaper_loop(app: FastAPI) -> None:
    """Run reap_once() every reaper_interval_seconds.

    The DB sweeps are synchronous, so they run in the threadpool. A failed
    sweep is logged and retried next interval; CancelledError from
    task.cancel() during shutdown propagates out of asyncio.sleep.
    """
    while True:
        await asyncio.sleep(_settings.reaper_interval_seconds)
        try:
            await run_in_threadpool(reap_once, app)
        except Exception:
            logger.exception("Reaper sweep failed")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Startup: stores and services, then the reaper. Shutdown: the reverse."""
    logger.info("Gatehouse API starting up")
    init_state(app)
    app.state.reaper_task = asyncio.create_task(_reaper_loop(app))
    logger.info("Security core initialized (db=%s)", _settings.database_url)

    yield

    app.state.reaper_task.cancel()
    close_state(app)
    logger.info("Gatehouse API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Gatehouse API",
    description="Authentication and session security: login, 2FA, WebAuthn, IP rules, audit log.",
    version=__version__,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() and @app.middleware both insert at the outside of the
# stack, so the last one registered sees the request first.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=_settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


def _error(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


# ---------------------------------------------------------------------------
# Security gate middleware
#
# Runs before routing. Exceptions raised in middleware never reach the
# exception handlers below, so rejections are returned as responses here.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def security_gate(request: Request, call_next):
    """IP access control for auth/security paths, then the general API limiter.

    The IP decision is stored on request.state so the login state machine
    reuses it instead of evaluating (and logging) a second time.
    """
    path = request.url.path
    if not path.startswith("/api/") or path == _HEALTH_PATH:
        return await call_next(request)

    state = request.app.state
    ip = client_ip(request)
    ua = user_agent(request)

    if path.startswith(_IP_GATED_PREFIXES):
        decision = await run_in_threadpool(state.ip_access.evaluate, ip, user_agent=ua, request_path=path)
        request.state.ip_decision = decision
        if not decision.allowed:
            return _error(403, "access_denied", "Access denied.")

    policy = await run_in_threadpool(state.security_store.get_policy)
    result = state.api_limiter.hit(ip, path, policy.api_rate_limit)
    if not result.allowed:
        await run_in_threadpool(
            state.audit.log,
            EventType.RATE_LIMIT_EXCEEDED,
            "API rate limit exceeded",
            ip_address=ip,
            user_agent=ua,
            request_path=path,
            blocked=True,
            metadata={"count": result.count, "limit": result.limit},
        )
        response = _error(429, "rate_limited", "Too many requests. Please try again later.")
        response.headers["Retry-After"] = str(result.retry_after)
        return response

    return await call_next(request)


# ---------------------------------------------------------------------------
# Request logging middleware
#
# Pattern: Interceptor. Registered last, so it wraps everything above and
# reports gate rejections too.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        client_ip(request),
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(webauthn_router, prefix="/api/v1", tags=["WebAuthn"])
app.include_router(security_router, prefix="/api/v1", tags=["Security"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Map the auth/security error taxonomy onto HTTP.

    RateLimited carries retry_after, sent as Retry-After. PasswordExpired adds
    passwordExpired/userId so the client can switch to the reset flow.
    """
    content = ErrorResponse(error=ErrorDetail(code=exc.code, message=exc.message, detail=exc.detail)).model_dump()
    if isinstance(exc, PasswordExpired):
        content["passwordExpired"] = True
        content["userId"] = exc.user_id
    response = JSONResponse(status_code=exc.status_code, content=content)
    if exc.retry_after is not None:
        response.headers["Retry-After"] = str(exc.retry_after)
    response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(RateLimitExceeded)
def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 when a slowapi per-route limit is exceeded, and audit it.

    Plain def: SlowAPIMiddleware may call this directly for sync endpoints,
    and Starlette runs it in the threadpool otherwise.
    """
    request.app.state.audit.log(
        EventType.RATE_LIMIT_EXCEEDED,
        "Login endpoint rate limit exceeded",
        ip_address=client_ip(request),
        user_agent=user_agent(request),
        request_path=request.url.path,
        blocked=True,
        metadata={"limit": str(exc.detail)},
    )
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error(429, "rate_limited", "Too many requests.", str(exc.detail))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return _error(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with a {code, message} dict as detail.
    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=exc.headers,
        )
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors (store unavailable and the like).

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py and exempt from the security gate -- health
# checks from load balancers and monitoring systems must not be throttled.
# ---------------------------------------------------------------------------


@app.get(_HEALTH_PATH, include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version and database reachability."""
    try:
        with request.app.state.account_store.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        database = "ok"
    except Exception:
        logger.exception("Health check: database unreachable")
        database = "error"
    return HealthResponse(
        status="ok" if database == "ok" else "degraded",
        version=__version__,
        components={"app": "ok", "database": database},
    )
