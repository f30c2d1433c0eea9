"""
auth/store.py -- SQLAlchemy Core persistence layer for accounts and their credentials.

Pattern: Repository + Data Mapper.
AccountStore is the repository; _row_to_account / _row_to_credential /
_row_to_device are the mappers. Route and service code never touches SQL.

Tables:
  users                 -- identity, password hash, 2FA state, role.
  webauthn_credentials  -- registered authenticators (credential_id unique).
  trusted_devices       -- convenience allow-list, revoked by logout-all.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Mappers never strip secrets -- the API layer builds sanitized responses
  from Account and must not serialize the dataclass directly.

Layer rule: no imports from api/ or security/.
"""

from __future__ import annotations

from sqlalchemy import Boolean, Column, Integer, MetaData, String, Table, Text, func, or_, select
from sqlalchemy.engine import Engine

from auth.models import Account, AccountStatus, Role, TrustedDevice, WebAuthnCredential
from core.config import get_settings
from core.db import make_engine, now_iso

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("name", String(255)),
    Column("hashed_password", Text),
    Column("role", String(30), nullable=False, server_default=Role.SUBSCRIBER.value),
    Column("status", String(30), nullable=False, server_default=AccountStatus.ACTIVE.value),
    Column("two_factor_secret", Text),
    Column("two_factor_enabled", Boolean, nullable=False, server_default="0"),
    Column("password_updated_at", String(32)),
    Column("password_expires_at", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("last_active", String(32)),
)

_credentials = Table(
    "webauthn_credentials",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("credential_id", Text, nullable=False, unique=True),  # websafe b64
    Column("public_key", Text, nullable=False),  # websafe b64 of the CBOR COSE key
    Column("counter", Integer, nullable=False, server_default="0"),
    Column("device_name", String(255)),
    Column("created_at", String(32), nullable=False),
    Column("last_used", String(32)),
)

_devices = Table(
    "trusted_devices",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("device_name", String(255), nullable=False),
    Column("device_fingerprint", String(255), nullable=False),
    Column("ip_address", String(64)),
    Column("user_agent", Text),
    Column("trusted", Boolean, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("last_used", String(32)),
)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AccountStore:
    """Repository for Account, WebAuthnCredential and TrustedDevice entities.

    Usage:
        store = AccountStore("sqlite:///:memory:")
        store.create_account(Account(username="alice", email="alice@example.com",
                                     hashed_password=hash_password("secret")))
        account = store.get_by_username_or_email("alice")
        store.close()
    """

    # Fields update_account() accepts. Anything else is a programming error.
    _MUTABLE_FIELDS: set = {
        "name",
        "hashed_password",
        "role",
        "status",
        "two_factor_secret",
        "two_factor_enabled",
        "password_updated_at",
        "password_expires_at",
        "last_active",
    }

    def __init__(self, db_url: str | None = None) -> None:
        self.engine: Engine = make_engine(db_url or get_settings().database_url)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def create_account(self, account: Account) -> int:
        """Insert a new account and return its assigned ID.

        Raises sqlalchemy.exc.IntegrityError if the username or email is taken.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    username=account.username,
                    email=account.email,
                    name=account.name,
                    hashed_password=account.hashed_password,
                    role=Role(account.role).value,
                    status=AccountStatus(account.status).value,
                    two_factor_secret=account.two_factor_secret,
                    two_factor_enabled=account.two_factor_enabled,
                    password_updated_at=account.password_updated_at,
                    password_expires_at=account.password_expires_at,
                    created_at=now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_id(self, user_id: int) -> Account | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_by_username_or_email(self, identifier: str) -> Account | None:
        """Look up an account by exact username, or by email case-insensitively."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where(
                    or_(_users.c.username == identifier, func.lower(_users.c.email) == identifier.lower())
                )
            ).fetchone()
        return _row_to_account(row) if row is not None else None

    def list_accounts(self) -> list[Account]:
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.username)).fetchall()
        return [_row_to_account(r) for r in rows]

    def update_account(self, user_id: int, **fields) -> bool:
        """Update mutable fields on an account. Returns False if user_id was not found."""
        unknown = set(fields) - self._MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown account fields: {unknown!r}")
        if "role" in fields:
            fields["role"] = Role(fields["role"]).value
        if "status" in fields:
            fields["status"] = AccountStatus(fields["status"]).value
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def touch(self, user_id: int) -> None:
        self.update_account(user_id, last_active=now_iso())

    # ------------------------------------------------------------------
    # WebAuthn credentials
    # ------------------------------------------------------------------

    def add_credential(self, credential: WebAuthnCredential) -> int:
        """Raises IntegrityError when the credential_id is already registered."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _credentials.insert().values(
                    user_id=credential.user_id,
                    credential_id=credential.credential_id,
                    public_key=credential.public_key,
                    counter=credential.counter,
                    device_name=credential.device_name,
                    created_at=now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_credentials(self, user_id: int) -> list[WebAuthnCredential]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _credentials.select().where(_credentials.c.user_id == user_id).order_by(_credentials.c.id)
            ).fetchall()
        return [_row_to_credential(r) for r in rows]

    def get_credential(self, credential_id: str) -> WebAuthnCredential | None:
        with self.engine.connect() as conn:
            row = conn.execute(_credentials.select().where(_credentials.c.credential_id == credential_id)).fetchone()
        return _row_to_credential(row) if row is not None else None

    def count_credentials(self, user_id: int) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count()).select_from(_credentials).where(_credentials.c.user_id == user_id)
            ).scalar()
        return result or 0

    def advance_counter(self, credential_id: str, new_counter: int) -> bool:
        """Store new_counter only if it is strictly greater than the stored one.

        The comparison happens inside the UPDATE so two concurrent assertions
        carrying the same counter cannot both succeed. Returns False when the
        stored counter was not lower.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _credentials.update()
                .where((_credentials.c.credential_id == credential_id) & (_credentials.c.counter < new_counter))
                .values(counter=new_counter, last_used=now_iso())
            )
            conn.commit()
        return result.rowcount > 0

    def delete_credential(self, credential_pk: int, user_id: int) -> bool:
        """Delete one of the user's own credentials. user_id is checked to prevent IDOR."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _credentials.delete().where((_credentials.c.id == credential_pk) & (_credentials.c.user_id == user_id))
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Trusted devices
    # ------------------------------------------------------------------

    def add_trusted_device(self, device: TrustedDevice) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _devices.insert().values(
                    user_id=device.user_id,
                    device_name=device.device_name,
                    device_fingerprint=device.device_fingerprint,
                    ip_address=device.ip_address,
                    user_agent=device.user_agent,
                    trusted=device.trusted,
                    created_at=now_iso(),
                    last_used=now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_trusted_devices(self, user_id: int) -> list[TrustedDevice]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _devices.select().where(_devices.c.user_id == user_id).order_by(_devices.c.id)
            ).fetchall()
        return [_row_to_device(r) for r in rows]

    def delete_trusted_device(self, device_id: int, user_id: int) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _devices.delete().where((_devices.c.id == device_id) & (_devices.c.user_id == user_id))
            )
            conn.commit()
        return result.rowcount > 0

    def delete_trusted_devices_for_user(self, user_id: int) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_devices.delete().where(_devices.c.user_id == user_id))
            conn.commit()
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        username=row.username,
        email=row.email,
        name=row.name,
        hashed_password=row.hashed_password,
        role=Role(row.role),
        status=AccountStatus(row.status),
        two_factor_secret=row.two_factor_secret,
        two_factor_enabled=bool(row.two_factor_enabled),
        password_updated_at=row.password_updated_at,
        password_expires_at=row.password_expires_at,
        created_at=row.created_at,
        last_active=row.last_active,
    )


def _row_to_credential(row) -> WebAuthnCredential:
    return WebAuthnCredential(
        id=row.id,
        user_id=row.user_id,
        credential_id=row.credential_id,
        public_key=row.public_key,
        counter=row.counter,
        device_name=row.device_name,
        created_at=row.created_at,
        last_used=row.last_used,
    )


def _row_to_device(row) -> TrustedDevice:
    return TrustedDevice(
        id=row.id,
        user_id=row.user_id,
        device_name=row.device_name,
        device_fingerprint=row.device_fingerprint,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        trusted=bool(row.trusted),
        created_at=row.created_at,
        last_used=row.last_used,
    )
