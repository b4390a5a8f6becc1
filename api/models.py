"""
API request and response models for the Gatehouse REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# ---------------------------------------------------------------------------
# Auth -- requests
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    password is capped at 72 characters: bcrypt ignores everything past 72
    bytes, and newer bcrypt releases reject longer input outright.
    """

    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=72)
    otp: Optional[str] = Field(default=None, max_length=16)
    callback_url: Optional[str] = Field(default=None, max_length=2048)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        """Trim and lowercase -- account lookup is case-insensitive."""
        return value.strip().lower()


class RefreshRequest(BaseModel):
    """Request body for POST /api/v1/auth/session/refresh."""

    trigger: Optional[str] = Field(default=None, max_length=32)


# ---------------------------------------------------------------------------
# Auth -- responses
# ---------------------------------------------------------------------------


class LoginResponse(BaseModel):
    """Response for a successful POST /api/v1/auth/login.

    The session token itself travels only in the httpOnly cookie.
    """

    model_config = ConfigDict(frozen=True)

    user_id: str
    email: Optional[str]
    name: Optional[str] = None
    role: Optional[str]
    permission_tickets: list[str] = Field(default_factory=list)
    redirect_to: str
    expires_in: int


class MeResponse(BaseModel):
    """Response for GET /api/v1/auth/me and POST /api/v1/auth/session/refresh."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    role: Optional[str] = None
    permission_tickets: list[str] = Field(default_factory=list)
    expires_at: Optional[str] = None


class RedirectTargetResponse(BaseModel):
    """Response for GET /api/v1/auth/redirect."""

    model_config = ConfigDict(frozen=True)

    redirect_to: str


# ---------------------------------------------------------------------------
# Shared
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
