"""
tests/conftest.py -- Shared test fixtures for Gatehouse.

This module provides:
  - FakeClock: a controllable clock for the limiter, lockout and TOTP windows;
    limits_clock also points the limits memory storage at it
  - make_db_url(): an isolated named shared-memory SQLite URL per test
  - stores: the four repositories on one fresh database
  - LoginHarness: the login state machine wired on the stores, no HTTP
  - client: TestClient against the real app with a patched lifespan and
    seeded accounts (alice, bob with TOTP, root as Super Admin)

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool and every store has
its own engine. The named URI format (file:name?mode=memory&cache=shared&uri=true)
shares one in-memory instance across all of those connections.

Environment variables must be set before any api/auth/core import:
  DEBUG=true               -- get_settings() auto-generates SECRET_KEY
  TRUST_FORWARDED_FOR=true -- tests pick their client IP via X-Forwarded-For
  LOGIN_RATE_LIMIT and TWO_FACTOR_RATE_LIMIT
                           -- high, so slowapi never interferes with lockout tests
"""

from __future__ import annotations

import asyncio
import os
import time
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from unittest.mock import MagicMock

# CRITICAL: Set before any auth/core import -- get_settings() is cached.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("TRUST_FORWARDED_FOR", "true")
os.environ.setdefault("LOGIN_RATE_LIMIT", "10000/minute")
os.environ.setdefault("TWO_FACTOR_RATE_LIMIT", "10000/minute")
os.environ.setdefault("DATABASE_URL", "sqlite:///file:gatehouse_default?mode=memory&cache=shared&uri=true")

import limits.storage.memory
import pyotp
import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, close_state, init_state
from auth.login import LoginAttempt, LoginOutcome, LoginStateMachine
from auth.models import Account, Role
from auth.sessions import SessionManager, SessionStore
from auth.store import AccountStore
from auth.tokens import hash_password
from auth.totp import TwoFactorManager
from auth.webauthn import WebAuthnManager
from core.db import now_iso
from security.audit import AuditLog
from security.captcha import CaptchaVerifier
from security.ip_access import IpAccessControl
from security.limiter import LockoutTracker
from security.store import SecurityStore

BOB_TOTP_SECRET = "JBSWY3DPEHPK3PXPJBSWY3DPEHPK3PXP"
PASSWORD = "correct horse 1"
ADMIN_PASSWORD = "admin-pass-123"


class FakeClock:
    """Callable clock. Starts at the current whole second so TOTP codes look ordinary."""

    def __init__(self, start: float | None = None) -> None:
        self.now = start if start is not None else float(int(time.time()))

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    # Lets the clock stand in for the time module inside limits.storage.memory.
    def time(self) -> float:
        return self.now


def make_db_url() -> str:
    return f"sqlite:///file:gatehouse_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


@dataclass
class Stores:
    db_url: str
    accounts: AccountStore
    sessions: SessionStore
    security: SecurityStore
    audit: AuditLog

    def close(self) -> None:
        for store in (self.accounts, self.sessions, self.security, self.audit):
            store.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def limits_clock(clock, monkeypatch) -> FakeClock:
    """Run the limits memory storage (API limiter and slowapi) on the fake clock."""
    monkeypatch.setattr(limits.storage.memory, "time", clock)
    return clock


@pytest.fixture
def stores() -> Generator[Stores, None, None]:
    url = make_db_url()
    s = Stores(url, AccountStore(url), SessionStore(url), SecurityStore(url), AuditLog(url))
    yield s
    s.close()


def seed_accounts(accounts: AccountStore) -> dict[str, int]:
    """Create the standard test accounts and return their ids by username."""
    now = now_iso()
    ids = {}
    ids["alice"] = accounts.create_account(
        Account(
            username="alice",
            email="alice@example.com",
            name="Alice",
            hashed_password=hash_password(PASSWORD),
            password_updated_at=now,
        )
    )
    ids["bob"] = accounts.create_account(
        Account(
            username="bob",
            email="bob@example.com",
            hashed_password=hash_password(PASSWORD),
            two_factor_secret=BOB_TOTP_SECRET,
            two_factor_enabled=True,
            password_updated_at=now,
        )
    )
    ids["root"] = accounts.create_account(
        Account(
            username="root",
            email="root@example.com",
            hashed_password=hash_password(ADMIN_PASSWORD),
            role=Role.SUPER_ADMIN,
            password_updated_at=now,
        )
    )
    return ids


def totp_now(clock: FakeClock, secret: str = BOB_TOTP_SECRET) -> str:
    return pyotp.TOTP(secret).at(clock())


class LoginHarness:
    """The login state machine wired by hand on a stores fixture, no HTTP."""

    ip = "10.0.0.5"

    def __init__(self, stores: Stores, clock: FakeClock) -> None:
        self.stores = stores
        self.clock = clock
        self.ids = seed_accounts(stores.accounts)
        self.lockout = LockoutTracker(clock=clock)
        self.sessions = SessionManager(stores.sessions, stores.accounts, stores.audit)
        self.webauthn = WebAuthnManager(stores.accounts, self.sessions, stores.audit)
        self.machine = LoginStateMachine(
            accounts=stores.accounts,
            sessions=self.sessions,
            audit=stores.audit,
            ip_access=IpAccessControl(stores.security, stores.audit),
            lockout=self.lockout,
            captcha=CaptchaVerifier(session=MagicMock()),
            security_store=stores.security,
            totp=TwoFactorManager(stores.accounts, self.sessions, stores.audit, clock=clock),
            webauthn=self.webauthn,
        )

    def attempt(self, identifier: str = "alice", password: str = PASSWORD, **kwargs) -> LoginAttempt:
        kwargs.setdefault("ip_address", self.ip)
        return LoginAttempt(identifier=identifier, password=password, **kwargs)

    def login(self, identifier: str = "alice", password: str = PASSWORD, **kwargs) -> LoginOutcome:
        return self.machine.login(self.attempt(identifier, password, **kwargs))


@pytest.fixture
def harness(stores, clock) -> LoginHarness:
    return LoginHarness(stores, clock)


def _patch_lifespan(db_url: str, clock: FakeClock):
    """Return a lifespan that builds real state on the test DB, with a parked reaper.

    The reaper_task is a long-sleeping coroutine so shutdown can cancel it
    exactly like the real one.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        init_state(app, db_url, clock=clock)
        app.state.reaper_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.reaper_task.cancel()
        close_state(app)

    return test_lifespan


@pytest.fixture
def client(limits_clock) -> Generator[TestClient, None, None]:
    """TestClient with fresh state per test. Requests come from 10.0.0.5 unless overridden."""
    limiter.reset()
    app.router.lifespan_context = _patch_lifespan(make_db_url(), limits_clock)
    with TestClient(app, raise_server_exceptions=True, headers={"X-Forwarded-For": "10.0.0.5"}) as c:
        c.account_ids = seed_accounts(app.state.account_store)
        yield c


def login(c: TestClient, username: str = "alice", password: str = PASSWORD, ip: str | None = None):
    headers = {"X-Forwarded-For": ip} if ip else None
    return c.post("/api/v1/auth/login", json={"username": username, "password": password}, headers=headers)


@pytest.fixture
def admin_client(client) -> TestClient:
    resp = login(client, "root", ADMIN_PASSWORD)
    assert resp.status_code == 200, resp.text
    return client
