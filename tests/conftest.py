"""
tests/conftest.py -- Shared test fixtures for Gatehouse.

This module provides:
  - FakeClock: a settable, advanceable clock injected everywhere "now" is read
  - ScriptedScorer: an anomaly scorer that returns queued assessments
  - RecordingSink: a security event sink that keeps events in a list
  - CountingStore: wraps a CredentialStore and counts calls per method
  - account_store / auth_env: isolated in-memory stores and a wired service
  - api_env: TestClient over the real app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

Environment variables must be set before any auth/core import:
  DEBUG=true         get_settings() auto-generates SECRET_KEY
  BCRYPT_ROUNDS=4    keeps hashing fast; the cost factor is not under test
  LOGIN_RATE_LIMIT   high enough that the slowapi limit never trips mid-suite
  APP_BASE_URL       fixed base URL so cookie names are deterministic
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections import Counter
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

# CRITICAL: Set env before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("APP_BASE_URL", "http://localhost:3000")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.events import SecurityEventLogger, SecurityEventStore
from auth.models import LoginAttempt, LoginOutcome, RiskAssessment, SecurityEvent
from auth.risk import InMemoryBlockList, risk_level_for
from auth.service import AuthService, build_auth_service
from auth.store import AccountStore
from auth.tokens import hash_password
from core.config import get_settings

START = datetime(2026, 3, 10, 14, 0, tzinfo=timezone.utc)
PASSWORD = "correct horse battery"


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeClock:
    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now


class ScriptedScorer:
    """Returns queued assessments in order, then `default` forever."""

    def __init__(self, default: RiskAssessment | None = None) -> None:
        self.default = default or RiskAssessment()
        self.queue: list[RiskAssessment] = []
        self.calls: list[tuple[int | None, str, bool]] = []

    def push(self, score: int, anomalies: list[str] | None = None) -> None:
        self.queue.append(
            RiskAssessment(
                score=score,
                level=risk_level_for(score),
                is_anomaly=score > 0,
                anomalies=anomalies or [],
            )
        )

    def assess(self, account_id: int | None, ip: str, success: bool, context: dict[str, Any]) -> RiskAssessment:
        self.calls.append((account_id, ip, success))
        if self.queue:
            return self.queue.pop(0)
        return self.default

    def prune(self, now: datetime) -> int:
        return 0


class RecordingSink:
    def __init__(self) -> None:
        self.events: list[SecurityEvent] = []

    def log(self, event: SecurityEvent) -> None:
        self.events.append(event)

    def types(self) -> list[str]:
        return [e.type.value for e in self.events]

    def clear(self) -> None:
        self.events.clear()


class CountingStore:
    """Delegates to a real store and counts every call by method name."""

    def __init__(self, inner: AccountStore) -> None:
        self.inner = inner
        self.calls: Counter[str] = Counter()

    def __getattr__(self, name: str):
        target = getattr(self.inner, name)
        if not callable(target):
            return target

        def wrapper(*args, **kwargs):
            self.calls[name] += 1
            return target(*args, **kwargs)

        return wrapper


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def memory_db_url(prefix: str) -> str:
    return f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


@pytest.fixture
def account_store() -> Generator[AccountStore, None, None]:
    store = AccountStore(memory_db_url("test_accounts"))
    yield store
    store.close()


@pytest.fixture(scope="session")
def password_hash() -> str:
    return hash_password(PASSWORD)


# ---------------------------------------------------------------------------
# Wired auth service
# ---------------------------------------------------------------------------


@dataclass
class AuthEnv:
    store: CountingStore
    clock: FakeClock
    scorer: ScriptedScorer
    sink: RecordingSink
    block_list: InMemoryBlockList
    service: AuthService
    password_hash: str
    codes: dict[str, str] = field(default_factory=dict)

    def add_account(self, email: str = "ana@example.com", **kwargs: Any) -> int:
        kwargs.setdefault("password_hash", self.password_hash)
        return self.store.inner.create_account(email, **kwargs)

    def attempt(
        self,
        email: str = "ana@example.com",
        password: str = PASSWORD,
        otp: str | None = None,
        ip: str = "203.0.113.7",
    ) -> LoginOutcome:
        return self.service.orchestrator.authenticate(
            LoginAttempt(identifier=email, password=password, otp=otp, ip=ip, user_agent="pytest")
        )


@pytest.fixture
def auth_env(account_store: AccountStore, password_hash: str) -> Generator[AuthEnv, None, None]:
    """A fully wired AuthService over an isolated store with injected doubles.

    One-time codes are checked against env.codes (secret -> expected code)
    instead of real TOTP, so tests control exactly which code is valid.
    """
    clock = FakeClock()
    scorer = ScriptedScorer()
    sink = RecordingSink()
    block_list = InMemoryBlockList()
    codes: dict[str, str] = {}
    store = CountingStore(account_store)
    service = build_auth_service(
        get_settings(),
        store,
        SecurityEventLogger([sink]),
        block_list=block_list,
        scorer=scorer,
        clock=clock,
        verify_code=lambda secret, code: codes.get(secret) == code,
    )
    yield AuthEnv(store, clock, scorer, sink, block_list, service, password_hash, codes)
    service.close()


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------


@dataclass
class ApiEnv:
    client: TestClient
    store: AccountStore
    events: SecurityEventStore
    scorer: ScriptedScorer
    block_list: InMemoryBlockList


def _patch_lifespan(store: AccountStore, events: SecurityEventStore, service: AuthService):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.account_store = store
        app.state.event_store = events
        app.state.auth_service = service
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_env(password_hash: str) -> Generator[ApiEnv, None, None]:
    """Yield an ApiEnv whose TestClient runs the real app over test stores.

    The scorer is scripted (LOW by default) so the number of failed logins a
    module makes from the single "testclient" address never trips a block
    unless a test asks for one.
    """
    url = memory_db_url("test_api")
    store = AccountStore(url)
    events = SecurityEventStore(url)
    scorer = ScriptedScorer()
    block_list = InMemoryBlockList()
    service = build_auth_service(
        get_settings(),
        store,
        SecurityEventLogger([events]),
        block_list=block_list,
        scorer=scorer,
    )
    store.create_account("ana@example.com", password_hash, name="Ana", permission_tickets=["reports:read"])

    app.router.lifespan_context = _patch_lifespan(store, events, service)
    with TestClient(app, raise_server_exceptions=True) as client:
        yield ApiEnv(client, store, events, scorer, block_list)

    service.close()
    events.close()
    store.close()
