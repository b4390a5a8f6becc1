"""
auth/tokens.py -- Password hashing and session token encoding.

Security design decisions:
  Passwords: bcrypt directly (no passlib wrapper). The cost factor comes from
       BCRYPT_ROUNDS (default 12). _DUMMY_HASH lets the login path burn the
       same bcrypt work for an unknown email as for a wrong password, so
       response time does not reveal whether an account exists.

  Session tokens: python-jose with HS256, signed with SECRET_KEY. The token
       payload is a fixed claim set; decode_session_token() validates its
       shape with a pydantic model and returns None on any failure -- the
       route layer turns that into a 401. Nothing downstream ever sees an
       untyped payload dict.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

import bcrypt
from jose import JWTError, jwt
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from auth.models import SessionClaims
from core.config import get_settings

logger = logging.getLogger("gatehouse.auth")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt only looks at the first 72 bytes. The API layer caps password
    length well below that (pydantic max_length).
    """
    salt = bcrypt.gensalt(rounds=_settings.bcrypt_rounds)
    return bcrypt.hashpw(plain.encode("utf-8"), salt).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed hash in the database -- never a match.
        return False


# Computed once at module load so the first login attempt is not measurably
# slower than later ones.
_DUMMY_HASH: str = hash_password("gatehouse_timing_dummy")


def equalize_timing(plain: str) -> None:
    """Spend one bcrypt check's worth of time without a real hash."""
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# Session tokens
# ---------------------------------------------------------------------------


class _ClaimsPayload(BaseModel):
    """Shape check for a decoded token. Unknown claims are ignored."""

    model_config = ConfigDict(extra="ignore")

    sub: str = Field(min_length=1)
    user_id: str | None = None
    role: str | None = None
    email: str | None = None
    name: str | None = None
    permission_tickets: list[str] = Field(default_factory=list)
    iat: int | None = None
    exp: int


def create_session_token(claims: SessionClaims, expire_seconds: int = 0) -> str:
    """Encode SessionClaims as a signed JWT.

    issued_at/expires_at on the claims win when set; otherwise the token is
    stamped now with Settings.token_expire_seconds (or expire_seconds).
    """
    now = datetime.now(timezone.utc)
    duration = expire_seconds if expire_seconds > 0 else _settings.token_expire_seconds
    issued = claims.issued_at or now
    expires = claims.expires_at or issued + timedelta(seconds=duration)
    payload = {
        "sub": claims.sub,
        "user_id": claims.user_id,
        "role": claims.role,
        "email": claims.email,
        "name": claims.name,
        "permission_tickets": list(claims.permission_tickets),
        "iat": int(issued.timestamp()),
        "exp": int(expires.timestamp()),
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_session_token(token: str) -> SessionClaims | None:
    """Verify and decode a session token. Returns None on any failure."""
    try:
        raw = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
        payload = _ClaimsPayload.model_validate(raw)
    except (JWTError, ValidationError):
        return None
    return SessionClaims(
        sub=payload.sub,
        user_id=payload.user_id,
        role=payload.role,
        email=payload.email,
        name=payload.name,
        permission_tickets=payload.permission_tickets,
        issued_at=datetime.fromtimestamp(payload.iat, tz=timezone.utc) if payload.iat is not None else None,
        expires_at=datetime.fromtimestamp(payload.exp, tz=timezone.utc),
    )
