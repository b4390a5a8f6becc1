"""
auth/store.py -- SQLAlchemy Core persistence layer for accounts.

Pattern: Repository + Data Mapper. AccountStore is the repository;
_row_to_account is the mapper. The login path never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  find_by_identifier() selects an explicit column projection -- only what
  the login path needs. Profile data and other PII stay in the table.

  record_failure() is a single UPDATE that increments the counter and
  computes the lockout in SQL. Two connections hammering the same account
  cannot lose an increment the way a read-then-write from Python would.
  The read-back happens in the same transaction.

Timestamps are stored as epoch seconds (REAL) and mapped to aware UTC
datetimes on the way out, so lockout comparisons never depend on string
formatting or the database's timezone handling.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Protocol

from sqlalchemy import (
    Boolean,
    Column,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    case,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import CredentialStoreError
from auth.models import Account

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

accounts = Table(
    "accounts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("name", String(255)),
    Column("password_hash", Text),  # NULL = no local password set
    Column("role", String(30), nullable=False, server_default="USER"),
    Column("is_active", Boolean, nullable=False, server_default="1"),
    Column("failed_attempts", Integer, nullable=False, server_default="0"),
    Column("lockout_until", Float),  # epoch seconds, NULL = not locked
    Column("two_factor_enabled", Boolean, nullable=False, server_default="0"),
    Column("two_factor_secret", Text),  # enc_v1 envelope
    Column("permission_tickets", Text, nullable=False, server_default="[]"),  # JSON list
    Column("created_at", Float, nullable=False),
)

# Login projection. Anything not listed here never reaches the orchestrator.
_LOGIN_COLUMNS = (
    accounts.c.id,
    accounts.c.email,
    accounts.c.name,
    accounts.c.password_hash,
    accounts.c.role,
    accounts.c.is_active,
    accounts.c.failed_attempts,
    accounts.c.lockout_until,
    accounts.c.two_factor_enabled,
    accounts.c.two_factor_secret,
    accounts.c.permission_tickets,
)


class CredentialStore(Protocol):
    """What the login path needs from an account repository."""

    def find_by_identifier(self, identifier: str) -> Account | None: ...

    def record_failure(self, account_id: int, threshold: int, lockout_until: datetime) -> Account: ...

    def reset_counters(self, account_id: int) -> None: ...

    def get_permission_tickets(self, account_id: int) -> list[str] | None: ...


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block on the counter writes.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _to_epoch(value: datetime | None) -> float | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def _from_epoch(value: float | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def normalize_identifier(identifier: str) -> str:
    return (identifier or "").strip().lower()


def driver_timeouts(db_url: str, timeout: float) -> dict:
    """connect_args that bound a single store call at the driver level.

    SQLite: how long to wait on a locked database before raising.
    PostgreSQL: connect timeout plus a server-side statement_timeout, so a
    hung query is cancelled instead of holding the login thread.
    Other dialects get no extra arguments.
    """
    if db_url.startswith("sqlite"):
        return {"check_same_thread": False, "timeout": timeout}
    if db_url.startswith("postgresql"):
        return {
            "connect_timeout": max(1, int(timeout)),
            "options": f"-c statement_timeout={int(timeout * 1000)}",
        }
    return {}


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AccountStore:
    """Repository for Account records.

    Usage:
        store = AccountStore("sqlite:///gatehouse.db")
        account_id = store.create_account("ana@example.com", hash_password("secret"))
        account = store.find_by_identifier("ana@example.com")
        store.close()
    """

    def __init__(self, db_url: str, timeout: float = 5.0) -> None:
        engine_args: dict = {}
        if not db_url.startswith("sqlite"):
            # SQLite in-memory URLs get SingletonThreadPool, which has no pool_timeout.
            engine_args["pool_timeout"] = timeout
        self.engine: Engine = create_engine(db_url, connect_args=driver_timeouts(db_url, timeout), **engine_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        metadata.create_all(self.engine)

    @contextmanager
    def _guard(self, passthrough: tuple[type[Exception], ...] = ()) -> Iterator[None]:
        """Translate driver/pool failures into CredentialStoreError.

        Exception types in passthrough propagate unchanged.
        """
        try:
            yield
        except passthrough:
            raise
        except SQLAlchemyError as exc:
            raise CredentialStoreError(f"credential store unavailable: {exc.__class__.__name__}") from exc

    # ------------------------------------------------------------------
    # Login path
    # ------------------------------------------------------------------

    def find_by_identifier(self, identifier: str) -> Account | None:
        """Look up an account by email (trimmed, case-insensitive).

        Returns None if not found -- absence is a normal outcome, not an error.
        """
        email = normalize_identifier(identifier)
        if not email:
            return None
        with self._guard(), self.engine.connect() as conn:
            row = conn.execute(select(*_LOGIN_COLUMNS).where(func.lower(accounts.c.email) == email)).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_by_id(self, account_id: int) -> Account | None:
        with self._guard(), self.engine.connect() as conn:
            row = conn.execute(select(*_LOGIN_COLUMNS).where(accounts.c.id == account_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    def record_failure(self, account_id: int, threshold: int, lockout_until: datetime) -> Account:
        """Atomically increment failed_attempts and apply the lockout rule.

        In a single UPDATE:
          failed_attempts = failed_attempts + 1
          lockout_until   = max(existing, lockout_until) when the new count
                            reaches threshold, otherwise unchanged

        Both SET expressions see the pre-update row (standard SQL semantics),
        so the threshold check uses the same incremented value that is
        written. An existing later lockout is never pulled earlier.

        Returns the account as it stands after the update.
        """
        until = _to_epoch(lockout_until)
        new_count = accounts.c.failed_attempts + 1
        lock_expr = case(
            (
                new_count >= threshold,
                case((accounts.c.lockout_until > until, accounts.c.lockout_until), else_=until),
            ),
            else_=accounts.c.lockout_until,
        )
        with self._guard(), self.engine.begin() as conn:
            result = conn.execute(
                accounts.update()
                .where(accounts.c.id == account_id)
                .values(failed_attempts=new_count, lockout_until=lock_expr)
            )
            if result.rowcount == 0:
                raise CredentialStoreError(f"account {account_id} vanished during update")
            row = conn.execute(select(*_LOGIN_COLUMNS).where(accounts.c.id == account_id)).fetchone()
        return _row_to_account(row)

    def update_counters(self, account_id: int, failed_attempts: int, lockout_until: datetime | None) -> bool:
        """Set counters explicitly. Administrative path, not used for failures."""
        with self._guard(), self.engine.begin() as conn:
            result = conn.execute(
                accounts.update()
                .where(accounts.c.id == account_id)
                .values(failed_attempts=failed_attempts, lockout_until=_to_epoch(lockout_until))
            )
        return result.rowcount > 0

    def reset_counters(self, account_id: int) -> None:
        """Zero the failure counter and clear any lockout after a full success."""
        with self._guard(), self.engine.begin() as conn:
            conn.execute(
                accounts.update().where(accounts.c.id == account_id).values(failed_attempts=0, lockout_until=None)
            )

    def get_permission_tickets(self, account_id: int) -> list[str] | None:
        """Return the current capability list, or None if the account is gone."""
        with self._guard(), self.engine.connect() as conn:
            row = conn.execute(select(accounts.c.permission_tickets).where(accounts.c.id == account_id)).fetchone()
        if row is None:
            return None
        return _load_tickets(row.permission_tickets)

    # ------------------------------------------------------------------
    # Provisioning (admin flows and tests)
    # ------------------------------------------------------------------

    def create_account(
        self,
        email: str,
        password_hash: str | None,
        role: str = "USER",
        name: str | None = None,
        is_active: bool = True,
        two_factor_secret: str | None = None,
        permission_tickets: list[str] | None = None,
    ) -> int:
        """Insert a new account and return its ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists --
        callers provisioning accounts treat that as a conflict, not an outage.
        Any other driver failure raises CredentialStoreError.
        """
        with self._guard(passthrough=(IntegrityError,)), self.engine.begin() as conn:
            result = conn.execute(
                accounts.insert().values(
                    email=normalize_identifier(email),
                    name=name,
                    password_hash=password_hash,
                    role=role,
                    is_active=is_active,
                    two_factor_enabled=two_factor_secret is not None,
                    two_factor_secret=two_factor_secret,
                    permission_tickets=json.dumps(permission_tickets or []),
                    created_at=datetime.now(timezone.utc).timestamp(),
                )
            )
            return result.inserted_primary_key[0]

    def set_active(self, account_id: int, is_active: bool) -> bool:
        with self._guard(), self.engine.begin() as conn:
            result = conn.execute(accounts.update().where(accounts.c.id == account_id).values(is_active=is_active))
        return result.rowcount > 0

    def set_permission_tickets(self, account_id: int, tickets: list[str]) -> bool:
        with self._guard(), self.engine.begin() as conn:
            result = conn.execute(
                accounts.update().where(accounts.c.id == account_id).values(permission_tickets=json.dumps(tickets))
            )
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _load_tickets(raw: str | None) -> list[str]:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except ValueError:
        return []
    return [str(t) for t in value] if isinstance(value, list) else []


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        email=row.email,
        name=row.name,
        password_hash=row.password_hash,
        role=row.role,
        is_active=bool(row.is_active),
        failed_attempts=row.failed_attempts or 0,
        lockout_until=_from_epoch(row.lockout_until),
        two_factor_enabled=bool(row.two_factor_enabled),
        two_factor_secret=row.two_factor_secret,
        permission_tickets=_load_tickets(row.permission_tickets),
    )
