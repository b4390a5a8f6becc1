"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores, the login
orchestrator and routes do the work; these types only carry shape.

LoginOutcome is a tagged union (LoginSuccess | LoginFailure). Expected
failures of a login attempt are values, not exceptions -- callers match on
the type instead of catching.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class FailureReason(str, Enum):
    IP_BLOCKED = "IP_BLOCKED"
    ACCOUNT_DISABLED = "ACCOUNT_DISABLED"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    SECOND_FACTOR_REQUIRED = "SECOND_FACTOR_REQUIRED"
    # Credential store unreachable. Distinct in logs, generic to the user.
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"


class LoginStage(str, Enum):
    START = "START"
    IP_CHECK = "IP_CHECK"
    ACCOUNT_LOOKUP = "ACCOUNT_LOOKUP"
    ACTIVE_CHECK = "ACTIVE_CHECK"
    LOCKOUT_CHECK = "LOCKOUT_CHECK"
    PASSWORD_CHECK = "PASSWORD_CHECK"
    SECOND_FACTOR_CHECK = "SECOND_FACTOR_CHECK"
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"


class EventSeverity(str, Enum):
    INFO = "INFO"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class EventOutcome(str, Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    BLOCKED = "BLOCKED"
    WARNING = "WARNING"


class EventType(str, Enum):
    AUTH_LOGIN_SUCCESS = "AUTH_LOGIN_SUCCESS"
    AUTH_LOGIN_FAILURE = "AUTH_LOGIN_FAILURE"
    AUTH_LOGIN_ANOMALY = "AUTH_LOGIN_ANOMALY"
    AUTH_2FA_SUCCESS = "AUTH_2FA_SUCCESS"
    AUTH_2FA_FAILURE = "AUTH_2FA_FAILURE"
    AUTH_2FA_REQUIRED = "AUTH_2FA_REQUIRED"
    AUTH_SESSION_REFRESHED = "AUTH_SESSION_REFRESHED"
    AUTH_SERVICE_ERROR = "AUTH_SERVICE_ERROR"
    ACCOUNT_DISABLED = "ACCOUNT_DISABLED"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    ACCOUNT_LOCKOUT = "ACCOUNT_LOCKOUT"
    IP_BLOCKED = "IP_BLOCKED"
    IP_AUTO_BLOCKED = "IP_AUTO_BLOCKED"
    RISK_SCORER_DEGRADED = "RISK_SCORER_DEGRADED"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Account:
    """Identity record as seen by the login path.

    Only the fields the orchestrator needs -- AccountStore.find_by_identifier()
    selects exactly these columns. two_factor_secret is the encrypted
    envelope as stored; it is decrypted only inside SecondFactorVerifier.
    """

    id: int
    email: str
    role: str
    name: str | None = None
    password_hash: str | None = None
    is_active: bool = True
    failed_attempts: int = 0
    lockout_until: datetime | None = None
    two_factor_enabled: bool = False
    two_factor_secret: str | None = None
    permission_tickets: list[str] = field(default_factory=list)


@dataclass
class LoginAttempt:
    """One submitted credential set. Built per request and discarded."""

    identifier: str
    password: str
    ip: str
    otp: str | None = None
    user_agent: str | None = None
    requested_at: datetime = field(default_factory=utcnow)


@dataclass
class RiskAssessment:
    score: int = 0
    level: RiskLevel = RiskLevel.LOW
    is_anomaly: bool = False
    anomalies: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    degraded: bool = False  # True when produced by the timeout/error fallback


@dataclass(frozen=True)
class SecurityEvent:
    """Immutable append-only audit record."""

    type: EventType
    severity: EventSeverity
    outcome: EventOutcome
    subject: str | None = None
    ip: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class Principal:
    """Verified identity produced by a successful login."""

    user_id: str
    email: str
    role: str
    name: str | None = None
    permission_tickets: list[str] = field(default_factory=list)


@dataclass
class SessionClaims:
    """Fixed claim set carried in the session token.

    user_id falls back to sub when a decoded token lacks an explicit id.
    """

    sub: str
    role: str | None = None
    user_id: str | None = None
    email: str | None = None
    name: str | None = None
    permission_tickets: list[str] = field(default_factory=list)
    issued_at: datetime | None = None
    expires_at: datetime | None = None

    def __post_init__(self) -> None:
        if not self.user_id:
            self.user_id = self.sub


@dataclass
class LoginSuccess:
    principal: Principal
    risk: RiskAssessment = field(default_factory=RiskAssessment)


@dataclass
class LoginFailure:
    reason: FailureReason
    stage: LoginStage = LoginStage.FAILURE
    retry_after_seconds: int | None = None


LoginOutcome = Union[LoginSuccess, LoginFailure]
