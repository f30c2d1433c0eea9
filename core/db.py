"""
core/db.py -- Engine construction and timestamp helpers shared by every store.

Every repository (auth/store.py, auth/sessions.py, security/store.py,
security/audit.py) owns its own Engine built here, so SQLite tuning lives
in one place.

Layer rule: core/ is the kernel. No imports from api/, auth/, or security/.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.close()


def make_engine(db_url: str) -> Engine:
    """Create an Engine for db_url with the SQLite settings the stores rely on.

    Plain sqlite:///:memory: gets a StaticPool so every thread sees the same
    database. Named shared-cache URIs (mode=memory&cache=shared) already do.
    """
    if not db_url.startswith("sqlite"):
        return create_engine(db_url)
    kwargs: dict = {"connect_args": {"check_same_thread": False}}
    in_memory = db_url.endswith(":memory:") or "mode=memory" in db_url
    if db_url.endswith(":memory:"):
        kwargs["poolclass"] = StaticPool
    engine = create_engine(db_url, **kwargs)
    if not in_memory:
        event.listen(engine, "connect", _set_wal_mode)
    return engine


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def now_iso() -> str:
    return to_iso(now_utc())


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
