"""
security/store.py -- Persistence for IP rules and operator-editable security settings.

Pattern: Repository + Data Mapper, same as auth/store.py.

security_settings is a key/value table (value stored as JSON). Only keys in
_SETTINGS_KEYS are accepted, each with a type check, so a bad admin request
fails fast instead of persisting a value the limiter cannot use. get_policy()
merges stored values over the config defaults.

Layer rule: no imports from api/ or auth/.
"""

from __future__ import annotations

import json
from typing import Any

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, UniqueConstraint
from sqlalchemy.engine import Engine

from core.config import CAPTCHA_MODES, Settings, get_settings
from core.db import make_engine, now_iso
from security.models import IpRule, IpRuleKind, SecurityPolicy

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_ip_rules = Table(
    "ip_rules",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("ip_address", String(64), nullable=False),  # single address or CIDR
    Column("type", String(10), nullable=False),  # "whitelist" | "blacklist"
    Column("reason", Text),
    Column("created_by", Integer),
    Column("created_at", String(32), nullable=False),
    UniqueConstraint("ip_address", "type", name="uq_ip_rules_address_type"),
)

_settings_table = Table(
    "security_settings",
    _metadata,
    Column("key", String(50), primary_key=True),
    Column("value", Text, nullable=False),  # JSON
    Column("updated_at", String(32), nullable=False),
)


def _positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


class SecurityStore:
    """Repository for IpRule rows and security_settings overrides."""

    # key -> validator. Keys use the wire names the admin UI sends.
    _SETTINGS_KEYS: dict = {
        "apiRateLimit": _positive_int,
        "loginAttemptsLimit": _positive_int,
        "lockoutDuration": _positive_int,
        "passwordExpiration": lambda v: isinstance(v, bool),
        "captchaType": lambda v: v in CAPTCHA_MODES,
    }

    def __init__(self, db_url: str | None = None, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self.engine: Engine = make_engine(db_url or self._settings.database_url)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # IP rules
    # ------------------------------------------------------------------

    def create_ip_rule(self, rule: IpRule) -> int:
        """Insert a rule and return its ID.

        Raises sqlalchemy.exc.IntegrityError if the same address already has
        a rule of the same kind.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _ip_rules.insert().values(
                    ip_address=rule.ip_address,
                    type=IpRuleKind(rule.kind).value,
                    reason=rule.reason,
                    created_by=rule.created_by,
                    created_at=now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_ip_rule(self, rule_id: int) -> IpRule | None:
        with self.engine.connect() as conn:
            row = conn.execute(_ip_rules.select().where(_ip_rules.c.id == rule_id)).fetchone()
        return _row_to_rule(row) if row is not None else None

    def list_ip_rules(self, kind: IpRuleKind | None = None) -> list[IpRule]:
        stmt = _ip_rules.select()
        if kind is not None:
            stmt = stmt.where(_ip_rules.c.type == IpRuleKind(kind).value)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt.order_by(_ip_rules.c.id)).fetchall()
        return [_row_to_rule(r) for r in rows]

    def delete_ip_rule(self, rule_id: int) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_ip_rules.delete().where(_ip_rules.c.id == rule_id))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def get_settings(self) -> dict[str, Any]:
        """Return the stored overrides only (no defaults)."""
        with self.engine.connect() as conn:
            rows = conn.execute(_settings_table.select()).fetchall()
        return {row.key: json.loads(row.value) for row in rows}

    def update_settings(self, **values) -> None:
        """Upsert one or more overrides.

        Unknown keys or badly typed values raise ValueError before anything
        is written.
        """
        unknown = set(values) - set(self._SETTINGS_KEYS)
        if unknown:
            raise ValueError(f"Unknown security settings: {sorted(unknown)!r}")
        for key, value in values.items():
            if not self._SETTINGS_KEYS[key](value):
                raise ValueError(f"Invalid value for {key}: {value!r}")
        with self.engine.begin() as conn:
            for key, value in values.items():
                updated = conn.execute(
                    _settings_table.update()
                    .where(_settings_table.c.key == key)
                    .values(value=json.dumps(value), updated_at=now_iso())
                )
                if updated.rowcount == 0:
                    conn.execute(_settings_table.insert().values(key=key, value=json.dumps(value), updated_at=now_iso()))

    def get_policy(self) -> SecurityPolicy:
        stored = self.get_settings()
        return SecurityPolicy(
            api_rate_limit=stored.get("apiRateLimit", self._settings.api_rate_limit),
            login_attempts_limit=stored.get("loginAttemptsLimit", self._settings.login_attempts_limit),
            lockout_duration_minutes=stored.get("lockoutDuration", self._settings.lockout_duration_minutes),
            password_expiration=stored.get("passwordExpiration", self._settings.password_expiration_enabled),
            captcha_type=stored.get("captchaType", self._settings.captcha_type),
        )

    def close(self) -> None:
        self.engine.dispose()


def _row_to_rule(row) -> IpRule:
    return IpRule(
        id=row.id,
        ip_address=row.ip_address,
        kind=IpRuleKind(row.type),
        reason=row.reason,
        created_by=row.created_by,
        created_at=row.created_at,
    )
