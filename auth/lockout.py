"""
auth/lockout.py -- Account lockout decisions.

Pure logic over Account.failed_attempts and Account.lockout_until. The
policy holds configuration only; all mutable state lives on the account row
and is written by AccountStore.record_failure().

Boundary: an account is locked while lockout_until >= now. A lockout that
expires at exactly the current instant still blocks that attempt; one that
expired a millisecond earlier does not.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from auth.models import Account

DEFAULT_THRESHOLD = 5
DEFAULT_DURATION = timedelta(minutes=15)


@dataclass(frozen=True)
class LockoutStatus:
    locked: bool
    remaining: timedelta = timedelta(0)

    @property
    def remaining_seconds(self) -> int:
        # Round up so a client never retries a fraction of a second too early.
        seconds = self.remaining.total_seconds()
        whole = int(seconds)
        return whole + 1 if seconds > whole else whole


@dataclass(frozen=True)
class LockoutPolicy:
    threshold: int = DEFAULT_THRESHOLD
    duration: timedelta = DEFAULT_DURATION

    @classmethod
    def from_settings(cls, settings) -> LockoutPolicy:
        return cls(threshold=settings.lockout_threshold, duration=timedelta(minutes=settings.lockout_minutes))

    def evaluate(self, account: Account, now: datetime) -> LockoutStatus:
        until = account.lockout_until
        if until is None or until < now:
            return LockoutStatus(locked=False)
        return LockoutStatus(locked=True, remaining=until - now)

    def should_lock(self, failed_attempts: int) -> bool:
        """True when a counter value (already incremented) reaches the threshold."""
        return failed_attempts >= self.threshold

    def deadline(self, now: datetime) -> datetime:
        """Lockout expiry handed to record_failure(), applied only if the new count locks."""
        return now + self.duration
