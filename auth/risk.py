"""
auth/risk.py -- IP risk gate, block-list, and the default anomaly scorer.

IPRiskGate is consulted twice per attempt:
  1. check_blocked(ip) before any account lookup. A blocked IP never causes a
     store read, so lockout timing cannot be used to enumerate accounts.
  2. record_outcome(...) after the attempt resolves. Failures are scored and
     HIGH/CRITICAL risk auto-blocks the IP. Successes are scored but never
     blocked -- a correct password plus second factor is not overridden by
     a heuristic.

Risk scoring is advisory. The scorer runs on a small thread pool with a
request-scoped timeout; a timeout or scorer error degrades to a LOW
assessment and a WARNING event instead of failing the login.

The block-list and scorer are injected. The in-memory versions below are
safe for a single process; a multi-instance deployment swaps in a shared
cache behind the same BlockList interface.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Protocol

from auth.events import SecurityEventLogger
from auth.models import EventOutcome, EventSeverity, EventType, RiskAssessment, RiskLevel, utcnow

logger = logging.getLogger("gatehouse.auth")

Clock = Callable[[], datetime]


# ---------------------------------------------------------------------------
# Block-list
# ---------------------------------------------------------------------------


class BlockList(Protocol):
    def is_blocked(self, ip: str, now: datetime) -> bool: ...

    def block(self, ip: str, until: datetime) -> datetime: ...

    def unblock(self, ip: str) -> None: ...

    def purge_expired(self, now: datetime) -> int: ...


class InMemoryBlockList:
    """Process-wide IP -> expiry map behind a lock.

    The lock is only held for dict operations, never across I/O, so readers
    cannot be starved by writers. Expiry is evaluated lazily on read: an
    entry stays blocking while now <= expiry.
    """

    def __init__(self) -> None:
        self._entries: dict[str, datetime] = {}
        self._lock = threading.Lock()

    def is_blocked(self, ip: str, now: datetime) -> bool:
        with self._lock:
            until = self._entries.get(ip)
            if until is None:
                return False
            if now > until:
                del self._entries[ip]
                return False
            return True

    def block(self, ip: str, until: datetime) -> datetime:
        """Block ip until the given instant. An existing later expiry wins."""
        with self._lock:
            current = self._entries.get(ip)
            if current is None or until > current:
                self._entries[ip] = until
            return self._entries[ip]

    def unblock(self, ip: str) -> None:
        with self._lock:
            self._entries.pop(ip, None)

    def expires_at(self, ip: str) -> datetime | None:
        with self._lock:
            return self._entries.get(ip)

    def purge_expired(self, now: datetime) -> int:
        with self._lock:
            stale = [ip for ip, until in self._entries.items() if now > until]
            for ip in stale:
                del self._entries[ip]
            return len(stale)


# ---------------------------------------------------------------------------
# Anomaly scorer
# ---------------------------------------------------------------------------


class AnomalyScorer(Protocol):
    def assess(
        self, account_id: int | None, ip: str, success: bool, context: dict[str, Any]
    ) -> RiskAssessment: ...

    def prune(self, now: datetime) -> int: ...


# Severity weights and level cut-offs for the default scorer.
_SEVERITY_POINTS = {"LOW": 10, "MEDIUM": 25, "HIGH": 45, "CRITICAL": 70}
_LEVEL_CUTOFFS = ((95, RiskLevel.CRITICAL), (80, RiskLevel.HIGH), (60, RiskLevel.MEDIUM))

_WINDOW = timedelta(hours=1)
_MAX_FAILED_PER_ACCOUNT = 10
_MAX_UNIQUE_IPS = 10
_SHARED_IP_ACCOUNTS = 5
_STUFFING_FAILURES = 10
_IP_BRUTE_FORCE_FAILURES = 20
_QUIET_HOURS = (0, 5)

_RECOMMENDATIONS = {
    "BRUTE_FORCE_ATTEMPT": ["Consider implementing account lockout", "Enable 2FA for affected accounts"],
    "IP_BRUTE_FORCE": ["Consider implementing account lockout", "Enable 2FA for affected accounts"],
    "CREDENTIAL_STUFFING": ["Block the source IP", "Check affected accounts against breach corpora"],
    "UNUSUAL_TIME_ACCESS": ["Verify if access is expected"],
    "NEW_IP_LOGIN": ["Notify the account owner of the new sign-in location"],
}


def risk_level_for(score: int) -> RiskLevel:
    for cutoff, level in _LEVEL_CUTOFFS:
        if score >= cutoff:
            return level
    return RiskLevel.LOW


@dataclass
class _AccountHistory:
    attempts: list[tuple[datetime, bool, str]] = field(default_factory=list)

    def trim(self, cutoff: datetime) -> None:
        if self.attempts and self.attempts[0][0] <= cutoff:
            self.attempts = [a for a in self.attempts if a[0] > cutoff]


@dataclass
class _IPHistory:
    failures: list[datetime] = field(default_factory=list)
    # account id -> last attempt seen from this IP
    accounts: dict[int, datetime] = field(default_factory=dict)

    def trim(self, cutoff: datetime) -> None:
        if self.failures and self.failures[0] <= cutoff:
            self.failures = [t for t in self.failures if t > cutoff]
        stale = [a for a, seen in self.accounts.items() if seen <= cutoff]
        for account_id in stale:
            del self.accounts[account_id]

    def empty(self) -> bool:
        return not self.failures and not self.accounts


class InMemoryAnomalyScorer:
    """Login-pattern heuristics over the last hour of attempts.

    Per IP: failed-login count (credential stuffing, IP brute force) and the
    set of accounts seen. Per account: failure velocity, new-IP logins, and
    unique IP count. Plus a quiet-hours check on the attempt time.

    assess() only trims the histories it reads, so its cost does not grow
    with the number of tracked IPs. prune() sweeps everything and is run
    from the periodic purge task.
    """

    def __init__(self, clock: Clock = utcnow, flag_quiet_hours: bool = True) -> None:
        self._clock = clock
        self._flag_quiet_hours = flag_quiet_hours
        self._accounts: dict[int, _AccountHistory] = {}
        self._ips: dict[str, _IPHistory] = {}
        self._lock = threading.Lock()

    def assess(
        self, account_id: int | None, ip: str, success: bool, context: dict[str, Any]
    ) -> RiskAssessment:
        now = self._clock()
        cutoff = now - _WINDOW
        with self._lock:
            ip_hist = self._ips.setdefault(ip, _IPHistory())
            ip_hist.trim(cutoff)
            # Known IPs are computed before this attempt is recorded.
            known_ips: set[str] = set()
            if account_id is not None:
                acct = self._accounts.setdefault(account_id, _AccountHistory())
                acct.trim(cutoff)
                known_ips = {a[2] for a in acct.attempts}
                acct.attempts.append((now, success, ip))
                ip_hist.accounts[account_id] = now
            if not success:
                ip_hist.failures.append(now)

            anomalies: list[tuple[str, str]] = []
            ip_failures = len(ip_hist.failures)
            if len(ip_hist.accounts) > _SHARED_IP_ACCOUNTS:
                anomalies.append(("SHARED_IP_ANOMALY", "LOW"))
            if ip_failures > _IP_BRUTE_FORCE_FAILURES:
                anomalies.append(("IP_BRUTE_FORCE", "CRITICAL"))
            if not success and ip_failures > _STUFFING_FAILURES:
                anomalies.append(("CREDENTIAL_STUFFING", "HIGH"))
            if account_id is not None:
                attempts = self._accounts[account_id].attempts
                failed = sum(1 for _, ok, _ in attempts if not ok)
                if failed > _MAX_FAILED_PER_ACCOUNT:
                    anomalies.append(("BRUTE_FORCE_ATTEMPT", "HIGH"))
                if known_ips and ip not in known_ips:
                    anomalies.append(("NEW_IP_LOGIN", "LOW"))
                if len(known_ips | {ip}) > _MAX_UNIQUE_IPS:
                    anomalies.append(("MULTIPLE_IP_ANOMALY", "MEDIUM"))

        if self._flag_quiet_hours:
            local = now.astimezone()
            if _QUIET_HOURS[0] <= local.hour < _QUIET_HOURS[1]:
                anomalies.append(("UNUSUAL_TIME_ACCESS", "MEDIUM" if local.weekday() >= 5 else "LOW"))

        score = min(100, sum(_SEVERITY_POINTS[sev] for _, sev in anomalies))
        tags = [tag for tag, _ in anomalies]
        recommendations: list[str] = []
        for tag in tags:
            for rec in _RECOMMENDATIONS.get(tag, []):
                if rec not in recommendations:
                    recommendations.append(rec)
        return RiskAssessment(
            score=score,
            level=risk_level_for(score),
            is_anomaly=bool(anomalies),
            anomalies=tags,
            recommendations=recommendations,
        )

    def prune(self, now: datetime | None = None) -> int:
        """Drop histories with nothing left inside the window. Returns how many."""
        cutoff = (now or self._clock()) - _WINDOW
        removed = 0
        with self._lock:
            for account_id in list(self._accounts):
                hist = self._accounts[account_id]
                hist.trim(cutoff)
                if not hist.attempts:
                    del self._accounts[account_id]
                    removed += 1
            for ip in list(self._ips):
                hist = self._ips[ip]
                hist.trim(cutoff)
                if hist.empty():
                    del self._ips[ip]
                    removed += 1
        return removed


# ---------------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------------


class IPRiskGate:
    """Block-list front plus scorer-driven escalation."""

    def __init__(
        self,
        block_list: BlockList,
        scorer: AnomalyScorer,
        events: SecurityEventLogger,
        clock: Clock = utcnow,
        high_block: timedelta = timedelta(minutes=15),
        critical_block: timedelta = timedelta(minutes=60),
        timeout_seconds: float = 2.0,
        executor: ThreadPoolExecutor | None = None,
    ) -> None:
        self._block_list = block_list
        self._scorer = scorer
        self._events = events
        self._clock = clock
        self._durations = {RiskLevel.HIGH: high_block, RiskLevel.CRITICAL: critical_block}
        self._timeout = timeout_seconds
        self._executor = executor or ThreadPoolExecutor(max_workers=4, thread_name_prefix="risk-scorer")

    def check_blocked(self, ip: str) -> bool:
        return self._block_list.is_blocked(ip, self._clock())

    def block(self, ip: str, duration: timedelta) -> datetime:
        return self._block_list.block(ip, self._clock() + duration)

    def unblock(self, ip: str) -> None:
        self._block_list.unblock(ip)

    def purge_expired(self) -> int:
        """Drop expired blocks and stale scorer history. Returns blocks dropped."""
        now = self._clock()
        self._scorer.prune(now)
        return self._block_list.purge_expired(now)

    def block_duration(self, level: RiskLevel) -> timedelta | None:
        """Auto-block length for a risk level; None means log only."""
        return self._durations.get(level)

    def record_outcome(
        self,
        account_id: int | None,
        ip: str,
        success: bool,
        context: dict[str, Any] | None = None,
    ) -> RiskAssessment:
        context = context or {}
        assessment = self._assess(account_id, ip, success, context)
        if success:
            return assessment

        duration = self.block_duration(assessment.level)
        if duration is not None:
            until = self.block(ip, duration)
            severity = EventSeverity.CRITICAL if assessment.level is RiskLevel.CRITICAL else EventSeverity.HIGH
            self._events.emit(
                EventType.IP_AUTO_BLOCKED,
                severity,
                EventOutcome.BLOCKED,
                subject=context.get("email"),
                ip=ip,
                risk_score=assessment.score,
                risk_level=assessment.level.value,
                anomaly_tags=assessment.anomalies,
                blocked_until=until.isoformat(),
                block_minutes=int(duration.total_seconds() // 60),
            )
        return assessment

    def _assess(self, account_id: int | None, ip: str, success: bool, context: dict[str, Any]) -> RiskAssessment:
        future = self._executor.submit(self._scorer.assess, account_id, ip, success, context)
        try:
            return future.result(timeout=self._timeout)
        except FutureTimeout:
            future.cancel()
            reason = "timeout"
        except Exception:
            logger.exception("Anomaly scorer failed for ip=%s", ip)
            reason = "error"
        self._events.emit(
            EventType.RISK_SCORER_DEGRADED,
            EventSeverity.MEDIUM,
            EventOutcome.WARNING,
            subject=context.get("email"),
            ip=ip,
            reason=reason,
            timeout_seconds=self._timeout,
        )
        return RiskAssessment(degraded=True)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
