"""
auth/sessions.py -- Session rows, pending auth state, and the session manager.

Two tables keyed by the opaque transport id (see auth/tokens.py):

  user_sessions  -- an authenticated session. A request is authenticated
                    only if its transport id has an active, unexpired row.
  pending_auth   -- transient state for one transport id: a login waiting
                    on its second factor, a WebAuthn challenge, or a TOTP
                    secret being enrolled. Short TTL; never authenticates.

SessionStore.replace() is the fixation-safe establishment step. In one
transaction it deactivates whatever session the old transport id carried,
deletes that id's pending state, and inserts the session under a freshly
generated id. The new id is only returned (and written to the cookie) after
the commit, so there is no moment where both ids are valid.

Layer rule: may import from core/ and security/; never from api/.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy import Boolean, Column, Integer, MetaData, String, Table, Text, and_
from sqlalchemy.engine import Engine

from auth.models import Account, ChallengeKind, PendingAuthState, UserSession
from auth.store import AccountStore
from auth.tokens import new_transport_id
from core.config import Settings, get_settings
from core.db import make_engine, now_iso, now_utc, to_iso
from security.audit import AuditLog
from security.models import EventType, Severity

logger = logging.getLogger("gatehouse.sessions")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_sessions = Table(
    "user_sessions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("session_id", String(128), nullable=False, unique=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("ip_address", String(64)),
    Column("user_agent", Text),
    Column("device_info", Text),
    Column("active", Boolean, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("last_activity", String(32)),
)

_pending = Table(
    "pending_auth",
    _metadata,
    Column("transport_id", String(128), primary_key=True),
    Column("pending_user_id", Integer),
    Column("awaiting_2fa", Boolean, nullable=False, server_default="0"),
    Column("challenge", Text),
    Column("challenge_kind", String(10)),
    Column("temp_2fa_secret", Text),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class SessionStore:
    """Repository for UserSession and PendingAuthState rows."""

    _PENDING_FIELDS: set = {"pending_user_id", "awaiting_2fa", "challenge", "challenge_kind", "temp_2fa_secret"}

    def __init__(self, db_url: str | None = None) -> None:
        self.engine: Engine = make_engine(db_url or get_settings().database_url)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def replace(self, old_transport_id: str | None, session: UserSession) -> int:
        """Invalidate old_transport_id's session and pending state, insert session.

        Returns the number of prior sessions deactivated (0 or 1).
        """
        with self.engine.begin() as conn:
            replaced = 0
            if old_transport_id:
                replaced = conn.execute(
                    _sessions.update()
                    .where(and_(_sessions.c.session_id == old_transport_id, _sessions.c.active.is_(True)))
                    .values(active=False)
                ).rowcount
                conn.execute(_pending.delete().where(_pending.c.transport_id == old_transport_id))
            conn.execute(
                _sessions.insert().values(
                    session_id=session.session_id,
                    user_id=session.user_id,
                    ip_address=session.ip_address,
                    user_agent=session.user_agent,
                    device_info=session.device_info,
                    active=True,
                    created_at=session.created_at or now_iso(),
                    expires_at=session.expires_at,
                    last_activity=now_iso(),
                )
            )
        return replaced

    def get(self, session_id: str) -> UserSession | None:
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.session_id == session_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    def get_by_pk(self, pk: int) -> UserSession | None:
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.id == pk)).fetchone()
        return _row_to_session(row) if row is not None else None

    def get_active(self, session_id: str) -> UserSession | None:
        """Return the session only if it is active and not expired."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _sessions.select().where(
                    and_(
                        _sessions.c.session_id == session_id,
                        _sessions.c.active.is_(True),
                        _sessions.c.expires_at > now_iso(),
                    )
                )
            ).fetchone()
        return _row_to_session(row) if row is not None else None

    def list_active(self, user_id: int | None = None) -> list[UserSession]:
        stmt = _sessions.select().where(and_(_sessions.c.active.is_(True), _sessions.c.expires_at > now_iso()))
        if user_id is not None:
            stmt = stmt.where(_sessions.c.user_id == user_id)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt.order_by(_sessions.c.last_activity.desc())).fetchall()
        return [_row_to_session(r) for r in rows]

    def count_active(self, session_id: str) -> int:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _sessions.select().where(and_(_sessions.c.session_id == session_id, _sessions.c.active.is_(True)))
            ).fetchall()
        return len(rows)

    def deactivate(self, session_id: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where(and_(_sessions.c.session_id == session_id, _sessions.c.active.is_(True)))
                .values(active=False)
            )
            conn.commit()
        return result.rowcount > 0

    def deactivate_all(self, user_id: int | None = None, keep_session_id: str | None = None) -> int:
        """Deactivate every active session (optionally one user's), except keep_session_id."""
        stmt = _sessions.update().where(_sessions.c.active.is_(True))
        if user_id is not None:
            stmt = stmt.where(_sessions.c.user_id == user_id)
        if keep_session_id is not None:
            stmt = stmt.where(_sessions.c.session_id != keep_session_id)
        with self.engine.connect() as conn:
            result = conn.execute(stmt.values(active=False))
            conn.commit()
        return result.rowcount

    def touch(self, session_id: str) -> None:
        with self.engine.connect() as conn:
            conn.execute(_sessions.update().where(_sessions.c.session_id == session_id).values(last_activity=now_iso()))
            conn.commit()

    def expire_sessions(self) -> int:
        """Mark sessions past expires_at inactive. Called by the reaper."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where(and_(_sessions.c.active.is_(True), _sessions.c.expires_at <= now_iso()))
                .values(active=False)
            )
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Pending auth state
    # ------------------------------------------------------------------

    def get_pending(self, transport_id: str) -> PendingAuthState | None:
        """Return unexpired pending state for transport_id, or None."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _pending.select().where(
                    and_(_pending.c.transport_id == transport_id, _pending.c.expires_at > now_iso())
                )
            ).fetchone()
        return _row_to_pending(row) if row is not None else None

    def save_pending(self, transport_id: str, expires_at: str, **fields) -> None:
        """Create or update the pending record for transport_id.

        Only the named fields change on an existing record; expires_at is
        always pushed forward to the given value.
        """
        unknown = set(fields) - self._PENDING_FIELDS
        if unknown:
            raise ValueError(f"Unknown pending auth fields: {unknown!r}")
        if "challenge_kind" in fields and fields["challenge_kind"] is not None:
            fields["challenge_kind"] = ChallengeKind(fields["challenge_kind"]).value
        with self.engine.begin() as conn:
            # An expired leftover is replaced wholesale, not merged into.
            conn.execute(
                _pending.delete().where(and_(_pending.c.transport_id == transport_id, _pending.c.expires_at <= now_iso()))
            )
            updated = conn.execute(
                _pending.update().where(_pending.c.transport_id == transport_id).values(expires_at=expires_at, **fields)
            )
            if updated.rowcount == 0:
                conn.execute(
                    _pending.insert().values(
                        transport_id=transport_id, created_at=now_iso(), expires_at=expires_at, **fields
                    )
                )

    def delete_pending(self, transport_id: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_pending.delete().where(_pending.c.transport_id == transport_id))
            conn.commit()
        return result.rowcount > 0

    def purge_expired_pending(self) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_pending.delete().where(_pending.c.expires_at <= now_iso()))
            conn.commit()
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Session manager
# ---------------------------------------------------------------------------


class SessionManager:
    """Creates, lists and terminates sessions; owns PendingAuthState lifecycle.

    Usage:
        manager = SessionManager(SessionStore(url), AccountStore(url), AuditLog(url))
        session = manager.establish(account, "10.0.0.5", "curl/8", old_transport_id)
        # set the cookie for session.session_id
    """

    def __init__(
        self,
        store: SessionStore,
        accounts: AccountStore,
        audit: AuditLog,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        self.store = store
        self._accounts = accounts
        self._audit = audit
        self.session_ttl = timedelta(hours=settings.session_ttl_hours)
        self.pending_ttl = timedelta(seconds=settings.pending_auth_ttl_seconds)

    # ------------------------------------------------------------------
    # Establishment and lookup
    # ------------------------------------------------------------------

    def establish(
        self,
        account: Account,
        ip_address: str | None,
        user_agent: str | None,
        transport_id: str | None,
    ) -> UserSession:
        """Regenerate the transport id and bind a new 24h session to it.

        The session previously carried by transport_id (if any) is
        deactivated, and its pending auth state dropped, in the same
        transaction as the insert.
        """
        now = now_utc()
        session = UserSession(
            session_id=new_transport_id(),
            user_id=account.id,
            ip_address=ip_address,
            user_agent=user_agent,
            device_info=_device_info(user_agent),
            created_at=to_iso(now),
            expires_at=to_iso(now + self.session_ttl),
        )
        replaced = self.store.replace(transport_id, session)
        if replaced:
            logger.info("Replaced session for user %s on re-login", account.id)
        self._accounts.touch(account.id)
        return session

    def authenticate(self, transport_id: str) -> tuple[UserSession, Account] | None:
        """Resolve a transport id to its live session and active account."""
        session = self.store.get_active(transport_id)
        if session is None:
            return None
        account = self._accounts.get_by_id(session.user_id)
        if account is None or not account.is_active:
            return None
        return session, account

    def list_sessions(self, account: Account) -> list[UserSession]:
        """Admins see every active session; everyone else sees their own."""
        if account.is_admin:
            return self.store.list_active()
        return self.store.list_active(user_id=account.id)

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    def terminate(self, session_pk: int, actor: Account, ip_address: str | None, user_agent: str | None) -> bool:
        """Deactivate one session. Non-admins may only end their own.

        Returns False when the session does not exist, is already inactive,
        or belongs to someone else and the actor is not an admin -- callers
        answer 404 in every case so session ids cannot be probed.
        """
        session = self.store.get_by_pk(session_pk)
        if session is None or not session.active:
            return False
        if session.user_id != actor.id and not actor.is_admin:
            return False
        if not self.store.deactivate(session.session_id):
            return False
        self._audit.log(
            EventType.SESSION_TERMINATED,
            f"Session {session_pk} terminated",
            ip_address=ip_address,
            user_agent=user_agent,
            user_id=actor.id,
            user_name=actor.username,
            severity=Severity.WARNING,
            metadata={"sessionPk": session_pk, "sessionUserId": session.user_id},
        )
        return True

    def terminate_all(
        self, actor: Account, keep_session_id: str | None, ip_address: str | None, user_agent: str | None
    ) -> int:
        """Admin operation: end every active session except the caller's own."""
        count = self.store.deactivate_all(keep_session_id=keep_session_id)
        self._audit.log(
            EventType.SESSIONS_TERMINATED_ALL,
            f"All sessions terminated ({count})",
            ip_address=ip_address,
            user_agent=user_agent,
            user_id=actor.id,
            user_name=actor.username,
            severity=Severity.WARNING,
            metadata={"count": count},
        )
        return count

    def terminate_all_for_user(self, account: Account, ip_address: str | None, user_agent: str | None) -> int:
        """Log the account out everywhere and revoke its trusted devices.

        WebAuthn credentials are deliberately left registered.
        """
        count = self.store.deactivate_all(user_id=account.id)
        devices = self._accounts.delete_trusted_devices_for_user(account.id)
        self._audit.log(
            EventType.LOGOUT_ALL_DEVICES,
            "Logged out from all devices",
            ip_address=ip_address,
            user_agent=user_agent,
            user_id=account.id,
            user_name=account.username,
            severity=Severity.WARNING,
            metadata={"sessions": count, "trustedDevices": devices},
        )
        return count

    def logout(
        self, transport_id: str | None, account: Account | None, ip_address: str | None, user_agent: str | None
    ) -> None:
        if not transport_id:
            return
        ended = self.store.deactivate(transport_id)
        self.store.delete_pending(transport_id)
        if ended:
            self._audit.log(
                EventType.LOGOUT,
                "User logged out",
                ip_address=ip_address,
                user_agent=user_agent,
                user_id=account.id if account else None,
                user_name=account.username if account else None,
            )

    # ------------------------------------------------------------------
    # Pending auth state
    # ------------------------------------------------------------------

    def _pending_expiry(self) -> str:
        return to_iso(now_utc() + self.pending_ttl)

    def get_pending(self, transport_id: str | None) -> PendingAuthState | None:
        if not transport_id:
            return None
        return self.store.get_pending(transport_id)

    def begin_second_factor(self, transport_id: str, user_id: int) -> None:
        """Record that transport_id passed the password check and awaits a second factor."""
        self.store.save_pending(
            transport_id,
            self._pending_expiry(),
            pending_user_id=user_id,
            awaiting_2fa=True,
            challenge=None,
            challenge_kind=None,
            temp_2fa_secret=None,
        )

    def set_challenge(self, transport_id: str, challenge: str, kind: ChallengeKind) -> None:
        self.store.save_pending(transport_id, self._pending_expiry(), challenge=challenge, challenge_kind=kind)

    def clear_challenge(self, transport_id: str) -> None:
        pending = self.store.get_pending(transport_id)
        if pending is not None:
            self.store.save_pending(transport_id, pending.expires_at, challenge=None, challenge_kind=None)

    def set_enrollment_secret(self, transport_id: str, secret: str) -> None:
        self.store.save_pending(transport_id, self._pending_expiry(), temp_2fa_secret=secret)

    def clear_enrollment_secret(self, transport_id: str) -> None:
        pending = self.store.get_pending(transport_id)
        if pending is not None:
            self.store.save_pending(transport_id, pending.expires_at, temp_2fa_secret=None)

    def purge_expired(self) -> tuple[int, int]:
        """Reaper hook: (expired sessions deactivated, pending rows deleted)."""
        return self.store.expire_sessions(), self.store.purge_expired_pending()


def _device_info(user_agent: str | None) -> str | None:
    if not user_agent:
        return None
    ua = user_agent.lower()
    if "ipad" in ua or "tablet" in ua:
        return "Tablet"
    if "iphone" in ua or "android" in ua or "mobile" in ua:
        return "Mobile"
    return "Desktop"


# ---------------------------------------------------------------------------
# Row mappers
# ---------------------------------------------------------------------------


def _row_to_session(row) -> UserSession:
    return UserSession(
        id=row.id,
        session_id=row.session_id,
        user_id=row.user_id,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        device_info=row.device_info,
        active=bool(row.active),
        created_at=row.created_at,
        expires_at=row.expires_at,
        last_activity=row.last_activity,
    )


def _row_to_pending(row) -> PendingAuthState:
    return PendingAuthState(
        transport_id=row.transport_id,
        pending_user_id=row.pending_user_id,
        awaiting_2fa=bool(row.awaiting_2fa),
        challenge=row.challenge,
        challenge_kind=ChallengeKind(row.challenge_kind) if row.challenge_kind else None,
        temp_2fa_secret=row.temp_2fa_secret,
        created_at=row.created_at,
        expires_at=row.expires_at,
    )
