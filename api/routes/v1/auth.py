"""
api/routes/v1/auth.py -- Login, logout and session REST endpoints.

Routes:
  POST /api/v1/auth/login             -- credential login; sets session cookie
  POST /api/v1/auth/logout            -- clears the session cookie
  GET  /api/v1/auth/me                -- current session claims (requires auth)
  POST /api/v1/auth/session/refresh   -- re-read permission tickets (requires auth)
  GET  /api/v1/auth/redirect          -- sanitize a post-login redirect target

Security:
  POST /login is rate-limited per IP (LOGIN_RATE_LIMIT, default 10/minute).
  Per-account lockout and risk-based IP blocks are enforced by AuthService.
  Unknown email and wrong password produce the same invalid_credentials
  error -- never branch on the internal stage here.
  Cache-Control: no-store on every login and session response.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from slowapi.util import get_remote_address

from api.limiter import limiter, login_rate_limit
from api.models import (
    ErrorDetail,
    ErrorResponse,
    LoginRequest,
    LoginResponse,
    MeResponse,
    RedirectTargetResponse,
    RefreshRequest,
)
from auth.cookies import clear_session_cookie, set_session_cookie
from auth.dependencies import get_base_url, get_cookie_policy, get_current_claims
from auth.models import FailureReason, SessionClaims, utcnow
from auth.redirects import sanitize_redirect
from auth.service import AuthService, ClientContext
from auth.tokens import create_session_token
from core.config import get_settings

# Auth policy:
# - POST /api/v1/auth/login:            public -- login endpoint must be unauthenticated
# - POST /api/v1/auth/logout:           public -- clearing a cookie needs no prior auth
# - GET  /api/v1/auth/redirect:         public -- pure function of the target and base URL
# - GET  /api/v1/auth/me:               requires auth (get_current_claims)
# - POST /api/v1/auth/session/refresh:  requires auth (get_current_claims)
router = APIRouter()

# FailureReason -> (HTTP status, error code, client message)
_FAILURES: dict[FailureReason, tuple[int, str, str]] = {
    FailureReason.INVALID_CREDENTIALS: (401, "invalid_credentials", "Invalid email or password."),
    FailureReason.SECOND_FACTOR_REQUIRED: (401, "second_factor_required", "A one-time code is required."),
    FailureReason.ACCOUNT_LOCKED: (423, "account_locked", "Account temporarily locked. Try again later."),
    FailureReason.ACCOUNT_DISABLED: (403, "account_disabled", "This account has been disabled."),
    FailureReason.IP_BLOCKED: (403, "ip_blocked", "Too many suspicious attempts. Try again later."),
    FailureReason.SERVICE_UNAVAILABLE: (503, "service_unavailable", "Sign-in is temporarily unavailable."),
}


def _no_store(resp: JSONResponse) -> JSONResponse:
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _claims_response(claims: SessionClaims) -> MeResponse:
    return MeResponse(
        user_id=claims.user_id or claims.sub,
        email=claims.email,
        name=claims.name,
        role=claims.role,
        permission_tickets=claims.permission_tickets,
        expires_at=claims.expires_at.isoformat() if claims.expires_at else None,
    )


def _remaining_seconds(claims: SessionClaims) -> int:
    if claims.expires_at is None:
        return get_settings().token_expire_seconds
    return max(0, int((claims.expires_at - utcnow()).total_seconds()))


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email, password and (when enabled) a one-time code.

    On success the session token is written to an httpOnly cookie whose name
    and attributes follow the cookie policy for the resolved base URL, and
    the body carries the principal plus the sanitized redirect target.
    """
    service: AuthService = request.app.state.auth_service
    result = service.authenticate(
        body.email,
        body.password,
        body.otp,
        ClientContext(ip=get_remote_address(request), user_agent=request.headers.get("user-agent")),
    )

    if not result.ok:
        status, code, message = _FAILURES[result.reason]
        resp = JSONResponse(
            status_code=status,
            content=ErrorResponse(error=ErrorDetail(code=code, message=message)).model_dump(),
        )
        if result.retry_after_seconds is not None:
            resp.headers["Retry-After"] = str(max(1, result.retry_after_seconds))
        return _no_store(resp)

    claims = result.claims
    settings = get_settings()
    base_url = get_base_url(request)
    expires_in = int((claims.expires_at - claims.issued_at).total_seconds())
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            user_id=claims.user_id or claims.sub,
            email=claims.email,
            name=claims.name,
            role=claims.role,
            permission_tickets=claims.permission_tickets,
            redirect_to=sanitize_redirect(body.callback_url, base_url, default=settings.default_redirect),
            expires_in=expires_in,
        ).model_dump(),
    )
    set_session_cookie(resp, create_session_token(claims), get_cookie_policy(request), max_age=expires_in)
    return _no_store(resp)


@router.post("/auth/logout")
def logout(request: Request) -> JSONResponse:
    """Clear the session cookie and end the session."""
    resp = JSONResponse(content={"message": "Logged out."})
    clear_session_cookie(resp, get_cookie_policy(request))
    return _no_store(resp)


@router.get("/auth/redirect", response_model=RedirectTargetResponse)
def redirect_target(request: Request, target: str | None = None) -> RedirectTargetResponse:
    """Return the post-login target the client should navigate to."""
    return RedirectTargetResponse(
        redirect_to=sanitize_redirect(target, get_base_url(request), default=get_settings().default_redirect)
    )


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
def me(claims: SessionClaims = Depends(get_current_claims)) -> MeResponse:
    """Return the claims carried by the current session."""
    return _claims_response(claims)


@router.post("/auth/session/refresh", response_model=MeResponse)
def refresh_session(
    request: Request,
    body: RefreshRequest,
    claims: SessionClaims = Depends(get_current_claims),
) -> JSONResponse:
    """Re-read permission tickets for the current session.

    Only trigger == "update" changes anything. The re-issued token keeps the
    original expiry, so refreshing never extends a session.
    """
    service: AuthService = request.app.state.auth_service
    refreshed = service.refresh_session(claims, body.trigger)
    resp = JSONResponse(status_code=200, content=_claims_response(refreshed).model_dump())
    if refreshed is not claims:
        set_session_cookie(
            resp,
            create_session_token(refreshed),
            get_cookie_policy(request),
            max_age=_remaining_seconds(refreshed),
        )
    return _no_store(resp)
