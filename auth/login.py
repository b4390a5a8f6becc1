"""
auth/login.py -- The login state machine.

    START -> IP_CHECK -> ACCOUNT_LOOKUP -> ACTIVE_CHECK -> LOCKOUT_CHECK
          -> PASSWORD_CHECK -> SECOND_FACTOR_CHECK -> SUCCESS

Every state can exit to FAILURE(reason). The first failing check wins and no
check is skipped. Each exit writes one security event.

Ordering constraints worth knowing before editing this file:
  - IP_CHECK runs before the account lookup. A blocked IP must not cause a
    store read.
  - An unknown email still runs a dummy bcrypt check and is still scored by
    the risk gate, then reports INVALID_CREDENTIALS -- the same reason a
    wrong password gets.
  - SECOND_FACTOR_REQUIRED is only reachable after the password matched.
    It does not touch the failure counter.
  - A wrong one-time code takes the same counter/lockout path as a wrong
    password.
  - Counter increments go through AccountStore.record_failure(), which does
    the read-modify-write in SQL. Never compute the new count here and
    write it back.

Expected failures are returned as LoginFailure values. The only exception
handled here is CredentialStoreError, which becomes SERVICE_UNAVAILABLE.
"""

from __future__ import annotations

import logging
from typing import Any

from auth.errors import CredentialStoreError
from auth.events import SecurityEventLogger
from auth.lockout import LockoutPolicy
from auth.models import (
    Account,
    EventOutcome,
    EventSeverity,
    EventType,
    FailureReason,
    LoginAttempt,
    LoginFailure,
    LoginOutcome,
    LoginStage,
    LoginSuccess,
    Principal,
    RiskAssessment,
    RiskLevel,
    utcnow,
)
from auth.risk import Clock, IPRiskGate
from auth.store import CredentialStore
from auth.tokens import equalize_timing, verify_password
from auth.totp import SecondFactorVerifier, normalize_code

logger = logging.getLogger("gatehouse.auth")

_ANOMALY_SEVERITY = {
    RiskLevel.MEDIUM: EventSeverity.MEDIUM,
    RiskLevel.HIGH: EventSeverity.HIGH,
    RiskLevel.CRITICAL: EventSeverity.CRITICAL,
}


def _risk_details(risk: RiskAssessment) -> dict[str, Any]:
    return {
        "risk_score": risk.score,
        "risk_level": risk.level.value,
        "anomaly_tags": list(risk.anomalies),
        "risk_degraded": risk.degraded,
    }


class LoginOrchestrator:
    def __init__(
        self,
        store: CredentialStore,
        gate: IPRiskGate,
        lockout: LockoutPolicy,
        second_factor: SecondFactorVerifier,
        events: SecurityEventLogger,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._gate = gate
        self._lockout = lockout
        self._second_factor = second_factor
        self._events = events
        self._clock = clock

    def authenticate(self, attempt: LoginAttempt) -> LoginOutcome:
        ip = attempt.ip
        context = {"email": attempt.identifier, "user_agent": attempt.user_agent}

        # IP_CHECK
        if self._gate.check_blocked(ip):
            self._events.emit(
                EventType.IP_BLOCKED,
                EventSeverity.HIGH,
                EventOutcome.BLOCKED,
                subject=attempt.identifier,
                ip=ip,
                reason="ip_blocked",
                user_agent=attempt.user_agent,
            )
            return LoginFailure(FailureReason.IP_BLOCKED, LoginStage.IP_CHECK)

        # ACCOUNT_LOOKUP
        try:
            account = self._store.find_by_identifier(attempt.identifier)
        except CredentialStoreError as exc:
            return self._unavailable(attempt, LoginStage.ACCOUNT_LOOKUP, exc)
        if account is None or not account.password_hash:
            equalize_timing(attempt.password)
            risk = self._gate.record_outcome(None, ip, False, context)
            self._events.emit(
                EventType.AUTH_LOGIN_FAILURE,
                EventSeverity.LOW,
                EventOutcome.FAILURE,
                subject=attempt.identifier,
                ip=ip,
                reason="unknown_account" if account is None else "no_password_set",
                user_agent=attempt.user_agent,
                **_risk_details(risk),
            )
            return LoginFailure(FailureReason.INVALID_CREDENTIALS, LoginStage.ACCOUNT_LOOKUP)

        # ACTIVE_CHECK -- runs before the password check (see DESIGN.md).
        if not account.is_active:
            self._events.emit(
                EventType.ACCOUNT_DISABLED,
                EventSeverity.MEDIUM,
                EventOutcome.BLOCKED,
                subject=account.email,
                ip=ip,
                reason="account_disabled",
                account_id=account.id,
            )
            return LoginFailure(FailureReason.ACCOUNT_DISABLED, LoginStage.ACTIVE_CHECK)

        # LOCKOUT_CHECK
        now = self._clock()
        status = self._lockout.evaluate(account, now)
        if status.locked:
            self._events.emit(
                EventType.ACCOUNT_LOCKED,
                EventSeverity.MEDIUM,
                EventOutcome.BLOCKED,
                subject=account.email,
                ip=ip,
                reason="account_locked",
                account_id=account.id,
                failed_attempts=account.failed_attempts,
                remaining_seconds=status.remaining_seconds,
            )
            return LoginFailure(
                FailureReason.ACCOUNT_LOCKED,
                LoginStage.LOCKOUT_CHECK,
                retry_after_seconds=status.remaining_seconds,
            )

        # PASSWORD_CHECK
        if not verify_password(attempt.password, account.password_hash):
            return self._credential_failure(
                account,
                attempt,
                LoginStage.PASSWORD_CHECK,
                EventType.AUTH_LOGIN_FAILURE,
                EventSeverity.LOW,
                reason="invalid_password",
            )

        # SECOND_FACTOR_CHECK
        if self._second_factor.required(account):
            code = normalize_code(attempt.otp)
            if not code:
                self._events.emit(
                    EventType.AUTH_2FA_REQUIRED,
                    EventSeverity.INFO,
                    EventOutcome.FAILURE,
                    subject=account.email,
                    ip=ip,
                    reason="second_factor_required",
                    account_id=account.id,
                )
                return LoginFailure(FailureReason.SECOND_FACTOR_REQUIRED, LoginStage.SECOND_FACTOR_CHECK)
            if not self._second_factor.verify(account.two_factor_secret, code):
                return self._credential_failure(
                    account,
                    attempt,
                    LoginStage.SECOND_FACTOR_CHECK,
                    EventType.AUTH_2FA_FAILURE,
                    EventSeverity.MEDIUM,
                    reason="invalid_second_factor",
                )
            self._events.emit(
                EventType.AUTH_2FA_SUCCESS,
                EventSeverity.INFO,
                EventOutcome.SUCCESS,
                subject=account.email,
                ip=ip,
                account_id=account.id,
            )

        return self._succeed(account, attempt, context)

    # ------------------------------------------------------------------
    # Exits
    # ------------------------------------------------------------------

    def _credential_failure(
        self,
        account: Account,
        attempt: LoginAttempt,
        stage: LoginStage,
        event_type: EventType,
        severity: EventSeverity,
        reason: str,
    ) -> LoginFailure:
        now = self._clock()
        try:
            updated = self._store.record_failure(
                account.id, self._lockout.threshold, self._lockout.deadline(now)
            )
        except CredentialStoreError as exc:
            return self._unavailable(attempt, stage, exc)

        risk = self._gate.record_outcome(
            account.id, attempt.ip, False, {"email": account.email, "user_agent": attempt.user_agent}
        )
        locked_now = self._lockout.should_lock(updated.failed_attempts)
        self._events.emit(
            EventType.ACCOUNT_LOCKOUT if locked_now else event_type,
            EventSeverity.MEDIUM if locked_now else severity,
            EventOutcome.BLOCKED if locked_now else EventOutcome.FAILURE,
            subject=account.email,
            ip=attempt.ip,
            reason=reason,
            account_id=account.id,
            failed_attempts=updated.failed_attempts,
            threshold=self._lockout.threshold,
            lockout_until=updated.lockout_until.isoformat() if updated.lockout_until else None,
            **_risk_details(risk),
        )
        return LoginFailure(FailureReason.INVALID_CREDENTIALS, stage)

    def _succeed(self, account: Account, attempt: LoginAttempt, context: dict[str, Any]) -> LoginOutcome:
        if account.failed_attempts or account.lockout_until is not None:
            try:
                self._store.reset_counters(account.id)
            except CredentialStoreError as exc:
                return self._unavailable(attempt, LoginStage.SUCCESS, exc)

        risk = self._gate.record_outcome(account.id, attempt.ip, True, context)
        self._events.emit(
            EventType.AUTH_LOGIN_SUCCESS,
            EventSeverity.INFO,
            EventOutcome.SUCCESS,
            subject=account.email,
            ip=attempt.ip,
            account_id=account.id,
            previous_failed_attempts=account.failed_attempts,
            second_factor=account.two_factor_enabled,
            **_risk_details(risk),
        )
        if risk.level is not RiskLevel.LOW:
            self._events.emit(
                EventType.AUTH_LOGIN_ANOMALY,
                _ANOMALY_SEVERITY[risk.level],
                EventOutcome.WARNING,
                subject=account.email,
                ip=attempt.ip,
                account_id=account.id,
                recommendations=list(risk.recommendations),
                **_risk_details(risk),
            )

        principal = Principal(
            user_id=str(account.id),
            email=account.email,
            name=account.name,
            role=account.role,
            permission_tickets=list(account.permission_tickets),
        )
        return LoginSuccess(principal=principal, risk=risk)

    def _unavailable(self, attempt: LoginAttempt, stage: LoginStage, exc: CredentialStoreError) -> LoginFailure:
        logger.error("Login aborted at %s: %s", stage.value, exc)
        self._events.emit(
            EventType.AUTH_SERVICE_ERROR,
            EventSeverity.HIGH,
            EventOutcome.FAILURE,
            subject=attempt.identifier,
            ip=attempt.ip,
            reason="credential_store_unavailable",
            stage=stage.value,
        )
        return LoginFailure(FailureReason.SERVICE_UNAVAILABLE, stage)
