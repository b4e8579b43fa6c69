"""
API request and response models for the Haven auth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

password_hash never appears in any response model.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import AuthSession, Principal, PrincipalPage, Role

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Deliberately loose: one "@", no whitespace, a dot in the domain. Deliverability
# is proven by the reset flow, not by a regex.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
USERNAME_PATTERN = r"^[A-Za-z0-9_.-]+$"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    email: str = Field(max_length=100, pattern=EMAIL_PATTERN)
    # Strength rules are checked by the service so every violation is reported
    # at once; here we only bound the size.
    password: str = Field(min_length=1, max_length=255)
    username: Optional[str] = Field(default=None, min_length=3, max_length=50, pattern=USERNAME_PATTERN)
    full_name: Optional[str] = Field(default=None, max_length=100)


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    email: str = Field(min_length=1, max_length=100)
    password: str = Field(min_length=1, max_length=255)


class RefreshRequest(BaseModel):
    """Request body for POST /api/v1/auth/refresh."""

    refresh_token: str = Field(min_length=1, max_length=4096)


class LogoutRequest(BaseModel):
    """Request body for POST /api/v1/auth/logout. A missing token is still acknowledged."""

    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class PasswordResetRequest(BaseModel):
    """Request body for POST /api/v1/auth/password-reset."""

    token: str = Field(min_length=1, max_length=128)
    new_password: str = Field(min_length=1, max_length=255)


class PrincipalPatch(BaseModel):
    """Request body for PATCH /api/v1/auth/users/{id}. At least one field required."""

    role: Optional[Role] = None
    is_active: Optional[bool] = None


class ProfileUpdate(BaseModel):
    """Request body for PATCH /api/v1/auth/me. Email and role are not self-editable."""

    username: Optional[str] = Field(default=None, min_length=3, max_length=50, pattern=USERNAME_PATTERN)
    full_name: Optional[str] = Field(default=None, max_length=100)


class PasswordChangeRequest(BaseModel):
    """Request body for POST /api/v1/auth/change-password.

    refresh_token, when given, is the caller's own session and survives the
    change; every other refresh token is revoked.
    """

    current_password: str = Field(min_length=1, max_length=255)
    new_password: str = Field(min_length=1, max_length=255)
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class PrincipalResponse(BaseModel):
    """Public view of a principal."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    username: str
    full_name: Optional[str]
    role: Role
    is_verified: bool
    is_active: bool
    last_login: Optional[str]
    created_at: str

    @classmethod
    def from_principal(cls, principal: Principal) -> "PrincipalResponse":
        """Factory Method -- the domain-to-transport mapping lives beside the model."""
        return cls(
            id=principal.id,
            email=principal.email,
            username=principal.username,
            full_name=principal.full_name,
            role=principal.role,
            is_verified=principal.is_verified,
            is_active=principal.is_active,
            last_login=principal.last_login,
            created_at=principal.created_at or "",
        )


class PaginationInfo(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class PrincipalListResponse(BaseModel):
    """Response for GET /api/v1/auth/users."""

    users: list[PrincipalResponse]
    pagination: PaginationInfo

    @classmethod
    def from_page(cls, page: PrincipalPage) -> "PrincipalListResponse":
        return cls(
            users=[PrincipalResponse.from_principal(p) for p in page.principals],
            pagination=PaginationInfo(
                page=page.page,
                limit=page.limit,
                total=page.total,
                total_pages=page.total_pages,
            ),
        )


class SessionResponse(BaseModel):
    """Response for register and login.

    refresh_revocable=False means the refresh token could not be stored
    server-side; clients should log in again once the access token expires.
    """

    model_config = ConfigDict(frozen=True)

    user: PrincipalResponse
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    refresh_revocable: bool = True

    @classmethod
    def from_session(cls, session: AuthSession, expires_in: int) -> "SessionResponse":
        return cls(
            user=PrincipalResponse.from_principal(session.principal),
            access_token=session.access_token,
            refresh_token=session.refresh_token,
            expires_in=expires_in,
            refresh_revocable=session.refresh_revocable,
        )


class RefreshResponse(BaseModel):
    """Response for POST /api/v1/auth/refresh. refresh_token only when rotation is on.

    refresh_revocable=False means the rotated refresh token could not be stored
    and will not be accepted; clients should log in again later.
    """

    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_in: int
    refresh_token: Optional[str] = None
    refresh_revocable: bool = True


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str | list[str]] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
