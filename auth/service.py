"""
auth/service.py -- The authentication entry point the rest of the app calls.

AuthService wires the pieces together and exposes the two produced
operations:

    authenticate(identifier, password, otp, client_context) -> LoginResult
    refresh_session(claims, trigger)                         -> SessionClaims

LoginResult carries either SessionClaims or a FailureReason, never both.

build_auth_service() assembles the default graph from Settings. Tests pass
their own block-list, scorer, clock and verifier through the same function.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from auth.crypto import SecretBox
from auth.events import SecurityEventLogger
from auth.lockout import LockoutPolicy
from auth.login import LoginOrchestrator
from auth.models import (
    FailureReason,
    LoginAttempt,
    LoginSuccess,
    RiskAssessment,
    SessionClaims,
    utcnow,
)
from auth.risk import AnomalyScorer, BlockList, Clock, InMemoryAnomalyScorer, InMemoryBlockList, IPRiskGate
from auth.session import SessionIssuer
from auth.store import CredentialStore
from auth.totp import CodeVerifier, SecondFactorVerifier, verify_one_time_code
from core.config import Settings

logger = logging.getLogger("gatehouse.auth")


@dataclass
class ClientContext:
    ip: str
    user_agent: str | None = None


@dataclass
class LoginResult:
    claims: SessionClaims | None = None
    reason: FailureReason | None = None
    retry_after_seconds: int | None = None
    risk: RiskAssessment | None = None

    @property
    def ok(self) -> bool:
        return self.claims is not None


class AuthService:
    def __init__(self, orchestrator: LoginOrchestrator, issuer: SessionIssuer, gate: IPRiskGate) -> None:
        self.orchestrator = orchestrator
        self.issuer = issuer
        self.gate = gate

    def authenticate(
        self,
        identifier: str,
        password: str,
        otp: str | None,
        client_context: ClientContext,
    ) -> LoginResult:
        attempt = LoginAttempt(
            identifier=identifier,
            password=password,
            otp=otp,
            ip=client_context.ip,
            user_agent=client_context.user_agent,
        )
        outcome = self.orchestrator.authenticate(attempt)
        if isinstance(outcome, LoginSuccess):
            return LoginResult(claims=self.issuer.issue(outcome.principal), risk=outcome.risk)
        return LoginResult(reason=outcome.reason, retry_after_seconds=outcome.retry_after_seconds)

    def refresh_session(self, claims: SessionClaims, trigger: str | None) -> SessionClaims:
        return self.issuer.refresh(claims, trigger)

    def purge_expired_blocks(self) -> int:
        return self.gate.purge_expired()

    def close(self) -> None:
        self.gate.shutdown()


def build_auth_service(
    settings: Settings,
    store: CredentialStore,
    events: SecurityEventLogger,
    *,
    block_list: BlockList | None = None,
    scorer: AnomalyScorer | None = None,
    clock: Clock = utcnow,
    verify_code: CodeVerifier = verify_one_time_code,
    **gate_options: Any,
) -> AuthService:
    gate = IPRiskGate(
        block_list if block_list is not None else InMemoryBlockList(),
        scorer if scorer is not None else InMemoryAnomalyScorer(clock=clock),
        events,
        clock=clock,
        high_block=timedelta(minutes=settings.high_block_minutes),
        critical_block=timedelta(minutes=settings.critical_block_minutes),
        timeout_seconds=settings.risk_timeout_seconds,
        **gate_options,
    )
    orchestrator = LoginOrchestrator(
        store,
        gate,
        LockoutPolicy.from_settings(settings),
        SecondFactorVerifier(SecretBox.from_settings(settings), verify_code=verify_code),
        events,
        clock=clock,
    )
    issuer = SessionIssuer(store, events, ttl=timedelta(seconds=settings.token_expire_seconds), clock=clock)
    logger.info(
        "Auth service ready (lockout %d/%dm, risk timeout %.1fs)",
        settings.lockout_threshold,
        settings.lockout_minutes,
        settings.risk_timeout_seconds,
    )
    return AuthService(orchestrator, issuer, gate)
