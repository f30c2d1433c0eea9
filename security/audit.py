"""
security/audit.py -- Append-only security audit log.

Every security decision in the service writes exactly one row here: IP
allow/deny, login success and failure, lockouts, 2FA results, session
terminations, IP-rule and setting changes. AuditLog has no update or delete
methods -- rows are never mutated once written.

Operator statistics (blocked count, failed logins, lockouts, per-type counts)
are computed by filtering this table. There are no side counters to keep in
sync.

Each entry is mirrored to the "gatehouse.audit" logger so the stream also
shows up in the process log.

Layer rule: no imports from api/ or auth/.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from sqlalchemy import Boolean, Column, Integer, MetaData, String, Table, Text, func, select
from sqlalchemy.engine import Engine

from core.config import get_settings
from core.db import make_engine, now_iso
from security.models import LOGIN_HISTORY_EVENTS, EventType, SecurityLogEntry, SecurityStats, Severity

logger = logging.getLogger("gatehouse.audit")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_logs = Table(
    "security_logs",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("event_type", String(50), nullable=False, index=True),
    Column("action", Text, nullable=False),
    Column("user_id", Integer, index=True),
    Column("user_name", String(255)),
    Column("ip_address", String(64)),
    Column("user_agent", Text),
    Column("request_path", Text),
    Column("blocked", Boolean, nullable=False, server_default="0"),
    Column("severity", String(10), nullable=False, server_default=Severity.INFO.value),
    Column("metadata_json", Text),
    Column("created_at", String(32), nullable=False, index=True),
)


class AuditLog:
    """Write-mostly repository for SecurityLogEntry rows.

    Usage:
        audit = AuditLog("sqlite:///:memory:")
        audit.log(EventType.IP_BLOCKED, "IP address is blacklisted", ip_address="1.2.3.4", blocked=True)
        audit.stats().total_blocked  # -> 1
    """

    def __init__(self, db_url: str | None = None) -> None:
        self.engine: Engine = make_engine(db_url or get_settings().database_url)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def record(self, entry: SecurityLogEntry) -> int:
        """Append one entry and return its ID."""
        created_at = entry.created_at or now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(
                _logs.insert().values(
                    event_type=EventType(entry.event_type).value,
                    action=entry.action,
                    user_id=entry.user_id,
                    user_name=entry.user_name,
                    ip_address=entry.ip_address,
                    user_agent=entry.user_agent,
                    request_path=entry.request_path,
                    blocked=entry.blocked,
                    severity=Severity(entry.severity).value,
                    metadata_json=json.dumps(entry.metadata) if entry.metadata else None,
                    created_at=created_at,
                )
            )
            conn.commit()
            entry_id = result.inserted_primary_key[0]
        level = logging.WARNING if entry.blocked or entry.severity == Severity.WARNING else logging.INFO
        logger.log(
            level,
            "%s ip=%s user=%s blocked=%s: %s",
            EventType(entry.event_type).value,
            entry.ip_address or "-",
            entry.user_name or entry.user_id or "-",
            entry.blocked,
            entry.action,
        )
        return entry_id

    def log(
        self,
        event_type: EventType,
        action: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
        user_id: int | None = None,
        user_name: str | None = None,
        request_path: str | None = None,
        blocked: bool = False,
        severity: Severity = Severity.INFO,
        metadata: dict[str, Any] | None = None,
    ) -> int:
        """Keyword-argument shorthand for record()."""
        return self.record(
            SecurityLogEntry(
                event_type=event_type,
                action=action,
                ip_address=ip_address,
                user_agent=user_agent,
                user_id=user_id,
                user_name=user_name,
                request_path=request_path,
                blocked=blocked,
                severity=severity,
                metadata=metadata or {},
            )
        )

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def recent(self, limit: int = 100, event_type: EventType | None = None) -> list[SecurityLogEntry]:
        """Return the newest entries first, optionally filtered to one event type."""
        stmt = _logs.select()
        if event_type is not None:
            stmt = stmt.where(_logs.c.event_type == EventType(event_type).value)
        stmt = stmt.order_by(_logs.c.id.desc()).limit(limit)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_entry(r) for r in rows]

    def login_history(self, limit: int = 100, user_id: int | None = None) -> list[SecurityLogEntry]:
        stmt = _logs.select().where(_logs.c.event_type.in_([e.value for e in LOGIN_HISTORY_EVENTS]))
        if user_id is not None:
            stmt = stmt.where(_logs.c.user_id == user_id)
        stmt = stmt.order_by(_logs.c.id.desc()).limit(limit)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_entry(r) for r in rows]

    def count(self, event_type: EventType | None = None, blocked: bool | None = None) -> int:
        stmt = select(func.count()).select_from(_logs)
        if event_type is not None:
            stmt = stmt.where(_logs.c.event_type == EventType(event_type).value)
        if blocked is not None:
            stmt = stmt.where(_logs.c.blocked == blocked)
        with self.engine.connect() as conn:
            return conn.execute(stmt).scalar() or 0

    def stats(self) -> SecurityStats:
        """Aggregate counts for the operator dashboard, derived from the log alone."""
        with self.engine.connect() as conn:
            blocked_rows = conn.execute(
                select(_logs.c.blocked, func.count()).group_by(_logs.c.blocked)
            ).fetchall()
            type_rows = conn.execute(
                select(_logs.c.event_type, func.count()).group_by(_logs.c.event_type)
            ).fetchall()
        by_blocked = {bool(row[0]): row[1] for row in blocked_rows}
        by_type = {row[0]: row[1] for row in type_rows}
        return SecurityStats(
            total_blocked=by_blocked.get(True, 0),
            total_allowed=by_blocked.get(False, 0),
            failed_logins=by_type.get(EventType.LOGIN_FAILED.value, 0),
            lockouts=by_type.get(EventType.LOGIN_LOCKOUT.value, 0),
            by_event_type=by_type,
        )

    def close(self) -> None:
        self.engine.dispose()


def _row_to_entry(row) -> SecurityLogEntry:
    return SecurityLogEntry(
        id=row.id,
        event_type=EventType(row.event_type),
        action=row.action,
        user_id=row.user_id,
        user_name=row.user_name,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        request_path=row.request_path,
        blocked=bool(row.blocked),
        severity=Severity(row.severity),
        metadata=json.loads(row.metadata_json) if row.metadata_json else {},
        created_at=row.created_at,
    )
