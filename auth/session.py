"""
auth/session.py -- Turn a verified principal into session claims.

issue() copies identity, role and permission tickets from the Principal the
login orchestrator produced -- never from request input.

refresh() exists so a permission change can reach a live session without a
new login. Only an explicit "update" trigger does anything, and it only
replaces permission_tickets (re-read from the store). Role, identity and
expiry stay as issued.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import timedelta

from auth.errors import CredentialStoreError
from auth.events import SecurityEventLogger
from auth.models import EventOutcome, EventSeverity, EventType, Principal, SessionClaims, utcnow
from auth.risk import Clock
from auth.store import CredentialStore

logger = logging.getLogger("gatehouse.auth")

UPDATE_TRIGGER = "update"


class SessionIssuer:
    def __init__(
        self,
        store: CredentialStore,
        events: SecurityEventLogger,
        ttl: timedelta = timedelta(hours=8),
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._events = events
        self._ttl = ttl
        self._clock = clock

    def issue(self, principal: Principal) -> SessionClaims:
        now = self._clock()
        return SessionClaims(
            sub=principal.user_id,
            user_id=principal.user_id,
            role=principal.role,
            email=principal.email,
            name=principal.name,
            permission_tickets=list(principal.permission_tickets),
            issued_at=now,
            expires_at=now + self._ttl,
        )

    def refresh(self, claims: SessionClaims, trigger: str | None) -> SessionClaims:
        """Return claims with permission tickets re-read when trigger == "update".

        Any other trigger returns the claims untouched. If the store cannot
        be reached or the account no longer exists, the current tickets are
        kept -- the session's own expiry still bounds them.
        """
        user_id = claims.user_id or claims.sub
        if trigger != UPDATE_TRIGGER:
            return claims
        try:
            tickets = self._store.get_permission_tickets(int(user_id))
        except ValueError:
            logger.warning("Session refresh skipped: non-numeric subject %r", user_id)
            return claims
        except CredentialStoreError:
            logger.warning("Session refresh skipped: credential store unavailable")
            return claims
        if tickets is None:
            return claims

        refreshed = replace(claims, user_id=user_id, permission_tickets=tickets)
        self._events.emit(
            EventType.AUTH_SESSION_REFRESHED,
            EventSeverity.INFO,
            EventOutcome.SUCCESS,
            subject=claims.email or user_id,
            trigger=trigger,
            ticket_count=len(tickets),
            tickets_changed=sorted(tickets) != sorted(claims.permission_tickets),
        )
        return refreshed
