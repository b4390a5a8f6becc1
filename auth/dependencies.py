"""
auth/dependencies.py -- FastAPI Depends() helpers for sessions.

Two token sources are checked in priority order:
  1. Session cookie -- name depends on the cookie policy for the resolved
     base URL ("__Host-gatehouse.session-token" on https without a Domain,
     "gatehouse.session-token" on plain http).
  2. Authorization: Bearer <token> header -- API clients.

Both converge on SessionClaims after decode_session_token() validates the
signature, expiry and payload shape.

try_get_current_claims() is the soft variant (returns None on failure).
get_current_claims() wraps it and raises HTTP 401 if unauthenticated.

Layer rule: no imports from api/. This module may import from fastapi
because it is part of the dependency injection system, and from core/ for
settings and base URL resolution.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.cookies import CookiePolicy, resolve_cookie_policy
from auth.models import SessionClaims
from auth.tokens import decode_session_token
from core.base_url import resolve_base_url
from core.config import get_settings


def get_base_url(request: Request) -> str:
    return resolve_base_url(get_settings(), request.headers)


def get_cookie_policy(request: Request) -> CookiePolicy:
    return resolve_cookie_policy(get_base_url(request))


def try_get_current_claims(request: Request) -> SessionClaims | None:
    """Return the session claims for this request, or None.

    Never raises -- callers that need a hard 401 should use get_current_claims().
    """
    # 1. Cookie (browser)
    token: str | None = request.cookies.get(get_cookie_policy(request).cookie_name())

    # 2. Authorization: Bearer header (API clients)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]

    if not token:
        return None
    return decode_session_token(token)


def get_current_claims(request: Request) -> SessionClaims:
    """Require a valid session. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(claims: SessionClaims = Depends(get_current_claims)): ...
    """
    claims = try_get_current_claims(request)
    if claims is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return claims
