"""
auth/events.py -- Security event logging for the login path.

Every branch of the login orchestrator produces one SecurityEvent. The
SecurityEventLogger writes it to the "gatehouse.security" logger and then
hands it to any number of sinks (the SQL audit table in production, a list
in tests).

Logging is fire-and-forget from the caller's point of view: a sink that
raises is reported on the application log and otherwise ignored. A broken
audit table must never turn a valid login into a 500.

Before anything is written:
  - emails in the subject are masked (a***e@example.com)
  - detail keys that look like secrets are replaced with [REDACTED]
  - long strings are truncated (500 chars, user agents 200)
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any, Protocol

from sqlalchemy import Column, Float, Integer, MetaData, String, Table, Text, create_engine, event, select
from sqlalchemy.engine import Engine

from auth.models import EventOutcome, EventSeverity, EventType, SecurityEvent

logger = logging.getLogger("gatehouse.security")
_app_logger = logging.getLogger("gatehouse.auth")

_SENSITIVE_KEYS = ("password", "secret", "token", "key", "credential", "otp")
_MAX_DETAIL_CHARS = 500
_MAX_USER_AGENT_CHARS = 200

_LEVELS = {
    EventSeverity.INFO: logging.INFO,
    EventSeverity.LOW: logging.INFO,
    EventSeverity.MEDIUM: logging.WARNING,
    EventSeverity.HIGH: logging.WARNING,
    EventSeverity.CRITICAL: logging.ERROR,
}


class SecurityEventSink(Protocol):
    def log(self, event: SecurityEvent) -> None: ...


# ---------------------------------------------------------------------------
# Sanitizers
# ---------------------------------------------------------------------------


def mask_email(value: str | None) -> str | None:
    """Mask the local part of an email, keeping first and last character."""
    if not value or "@" not in value:
        return value
    local, _, domain = value.partition("@")
    if len(local) > 2:
        local = local[0] + "*" * (len(local) - 2) + local[-1]
    return f"{local}@{domain}"


def sanitize_details(details: dict[str, Any] | None) -> dict[str, Any]:
    if not details:
        return {}
    clean: dict[str, Any] = {}
    for key, value in details.items():
        lowered = key.lower()
        if any(s in lowered for s in _SENSITIVE_KEYS):
            clean[key] = "[REDACTED]"
        elif isinstance(value, str):
            limit = _MAX_USER_AGENT_CHARS if lowered == "user_agent" else _MAX_DETAIL_CHARS
            clean[key] = value if len(value) <= limit else value[:limit] + "...[TRUNCATED]"
        else:
            clean[key] = value
    return clean


def sanitize_event(event: SecurityEvent) -> SecurityEvent:
    return SecurityEvent(
        type=event.type,
        severity=event.severity,
        outcome=event.outcome,
        subject=mask_email(event.subject),
        ip=event.ip,
        details=sanitize_details(event.details),
        timestamp=event.timestamp,
    )


# ---------------------------------------------------------------------------
# Logger
# ---------------------------------------------------------------------------


class SecurityEventLogger:
    """Front door for security events. Never raises."""

    def __init__(self, sinks: Iterable[SecurityEventSink] = ()) -> None:
        self._sinks = list(sinks)

    def add_sink(self, sink: SecurityEventSink) -> None:
        self._sinks.append(sink)

    def log(self, event: SecurityEvent) -> None:
        clean = sanitize_event(event)
        logger.log(
            _LEVELS.get(clean.severity, logging.INFO),
            "[%s] %s %s subject=%s ip=%s details=%s",
            clean.severity.value,
            clean.type.value,
            clean.outcome.value,
            clean.subject or "anonymous",
            clean.ip or "unknown",
            clean.details,
        )
        for sink in self._sinks:
            try:
                sink.log(clean)
            except Exception:
                _app_logger.exception("Security event sink %s failed", type(sink).__name__)

    def emit(
        self,
        event_type: EventType,
        severity: EventSeverity,
        outcome: EventOutcome,
        subject: str | None = None,
        ip: str | None = None,
        **details: Any,
    ) -> None:
        self.log(
            SecurityEvent(
                type=event_type,
                severity=severity,
                outcome=outcome,
                subject=subject,
                ip=ip,
                details=details,
            )
        )


# ---------------------------------------------------------------------------
# SQL sink
# ---------------------------------------------------------------------------

_metadata = MetaData()

security_events = Table(
    "security_events",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("type", String(40), nullable=False),
    Column("severity", String(10), nullable=False),
    Column("outcome", String(10), nullable=False),
    Column("subject", String(255)),
    Column("ip", String(45)),
    Column("details", Text, nullable=False, server_default="{}"),  # JSON object
    Column("created_at", Float, nullable=False),  # epoch seconds
)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


class SecurityEventStore:
    """Append-only audit table. Rows are inserted, never updated or deleted."""

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def log(self, event: SecurityEvent) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                security_events.insert().values(
                    type=event.type.value,
                    severity=event.severity.value,
                    outcome=event.outcome.value,
                    subject=event.subject,
                    ip=event.ip,
                    details=json.dumps(event.details, default=str),
                    created_at=event.timestamp.timestamp(),
                )
            )

    def recent(self, limit: int = 100) -> list[SecurityEvent]:
        """Return the newest events first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(security_events).order_by(security_events.c.id.desc()).limit(limit)
            ).fetchall()
        return [_row_to_event(r) for r in rows]

    def close(self) -> None:
        self.engine.dispose()


def _row_to_event(row) -> SecurityEvent:
    return SecurityEvent(
        type=EventType(row.type),
        severity=EventSeverity(row.severity),
        outcome=EventOutcome(row.outcome),
        subject=row.subject,
        ip=row.ip,
        details=json.loads(row.details or "{}"),
        timestamp=datetime.fromtimestamp(row.created_at, tz=timezone.utc),
    )
