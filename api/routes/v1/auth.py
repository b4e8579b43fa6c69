"""
api/routes/v1/auth.py -- Authentication and principal management REST endpoints.

Routes:
  POST  /api/v1/auth/register         -- create account; returns tokens (201)
  POST  /api/v1/auth/login            -- password login; returns tokens
  POST  /api/v1/auth/refresh          -- refresh token -> new access token
  POST  /api/v1/auth/logout           -- revoke a refresh token; always 200
  POST  /api/v1/auth/password-reset   -- redeem a one-time reset token
  GET   /api/v1/auth/me               -- current principal (requires auth)
  PATCH /api/v1/auth/me               -- update own username / full name
  POST  /api/v1/auth/change-password  -- change own password (requires auth)
  GET   /api/v1/auth/users            -- paginated, searchable listing (moderator+)
  GET   /api/v1/auth/users/{id}       -- one principal (self, or moderator+)
  PATCH /api/v1/auth/users/{id}       -- change role / active flag (admin)

Security:
  [H2] register, login, password-reset and change-password are rate-limited
       per IP (LOGIN_RATE_LIMIT, default 10/minute).
  [C1] AuthService.login() provides timing equalization and a single
       CredentialsInvalid for every failure -- never inline the lookup here.
  [M4] PATCH /users/{id} blocks self-deactivation and removing the last admin.
  [M5] Cache-Control: no-store on every response that carries a token.

Handlers are plain ``def``: bcrypt and the SQLAlchemy calls block, so FastAPI
runs them in its threadpool.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_rate_limit
from api.models import (
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    PasswordChangeRequest,
    PasswordResetRequest,
    PrincipalListResponse,
    PrincipalPatch,
    PrincipalResponse,
    ProfileUpdate,
    RefreshRequest,
    RefreshResponse,
    RegisterRequest,
    SessionResponse,
)
from auth.dependencies import get_current_principal, require_role
from auth.errors import Forbidden
from auth.models import Principal, Role
from auth.service import AuthService

# Auth policy:
# - POST  /auth/register, /auth/login, /auth/refresh, /auth/logout,
#         /auth/password-reset:   public -- they establish or end a session
# - GET   /auth/me, PATCH /auth/me,
#   POST  /auth/change-password:  requires auth (get_current_principal)
# - GET   /auth/users:            requires moderator (require_role)
# - GET   /auth/users/{id}:       self, or moderator for anyone else
# - PATCH /auth/users/{id}:       requires admin (require_role)
router = APIRouter()


def _service(request: Request) -> AuthService:
    return request.app.state.auth_service


def _no_store(content: dict, status_code: int = 200) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content=content)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/register", response_model=SessionResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create a principal with role ``user`` and return an access/refresh pair.

    WeakPassword (400) lists every violated rule; DuplicateIdentity (409)
    covers both a taken email and a taken username.
    """
    service = _service(request)
    session = service.register(body.email, body.password, username=body.username, full_name=body.full_name)
    payload = SessionResponse.from_session(session, expires_in=service.issuer.access_ttl)
    return _no_store(payload.model_dump(mode="json"), status_code=201)


@limiter.limit(login_rate_limit)  # [H2]
@router.post("/auth/login", response_model=SessionResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password.

    Returns the same "bad_credentials" error for an unknown email, a wrong
    password and a deactivated account.
    """
    service = _service(request)
    session = service.login(body.email, body.password)
    payload = SessionResponse.from_session(session, expires_in=service.issuer.access_ttl)
    return _no_store(payload.model_dump(mode="json"))


@router.post("/auth/refresh", response_model=RefreshResponse)
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Exchange a stored, unexpired refresh token for a new access token."""
    service = _service(request)
    tokens = service.refresh(body.refresh_token)
    payload = RefreshResponse(
        access_token=tokens.access_token,
        expires_in=service.issuer.access_ttl,
        refresh_token=tokens.refresh_token,
        refresh_revocable=tokens.refresh_revocable,
    )
    return _no_store(payload.model_dump(mode="json"))


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, body: LogoutRequest) -> MessageResponse:
    """Revoke the presented refresh token. Acknowledged even if it was unknown."""
    _service(request).logout(body.refresh_token)
    return MessageResponse(message="Logged out.")


@limiter.limit(login_rate_limit)  # [H2]
@router.post("/auth/password-reset", response_model=MessageResponse)
def password_reset(request: Request, body: PasswordResetRequest) -> MessageResponse:
    """Set a new password using a one-time reset token. Signs out every device."""
    _service(request).reset_password(body.token, body.new_password)
    return MessageResponse(message="Password updated.")


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=PrincipalResponse)
def me(current: Principal = Depends(get_current_principal)) -> PrincipalResponse:
    """Return the live record of the authenticated principal."""
    return PrincipalResponse.from_principal(current)


@router.patch("/auth/me", response_model=PrincipalResponse)
def update_me(
    request: Request,
    body: ProfileUpdate,
    current: Principal = Depends(get_current_principal),
) -> PrincipalResponse:
    """Update the caller's own username and/or full name.

    A username held by another principal is rejected with 409; keeping one's
    own username is not a conflict.
    """
    if body.username is None and body.full_name is None:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )
    updated = _service(request).update_profile(current.id, username=body.username, full_name=body.full_name)
    return PrincipalResponse.from_principal(updated)


@limiter.limit(login_rate_limit)  # [H2]
@router.post("/auth/change-password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: PasswordChangeRequest,
    current: Principal = Depends(get_current_principal),
) -> MessageResponse:
    """Change the caller's password. Every other device is signed out.

    The current password must be re-entered; a stolen access token alone is
    not enough to take over the account.
    """
    _service(request).change_password(
        current.id,
        body.current_password,
        body.new_password,
        keep_refresh_token=body.refresh_token,
    )
    return MessageResponse(message="Password updated.")


# ---------------------------------------------------------------------------
# Principal management
# ---------------------------------------------------------------------------


@router.get("/auth/users", response_model=PrincipalListResponse)
def list_users(
    request: Request,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    search: str | None = Query(default=None, max_length=100),
    role: Role | None = None,
    active_only: bool = False,
    current: Principal = Depends(require_role(Role.MODERATOR)),
) -> PrincipalListResponse:
    """List principals a page at a time. Moderator or admin.

    search matches username, email and full name (case-insensitive substring).
    Deactivated accounts are included unless active_only is set.
    """
    result = _service(request).list_principals(
        page=page,
        limit=limit,
        search=search,
        role=role,
        active_only=active_only,
    )
    return PrincipalListResponse.from_page(result)


@router.get("/auth/users/{user_id}", response_model=PrincipalResponse)
def get_user(
    request: Request,
    user_id: int,
    current: Principal = Depends(get_current_principal),
) -> PrincipalResponse:
    """Return one principal. Anyone may read their own record; others need moderator."""
    if user_id != current.id and not current.role.at_least(Role.MODERATOR):
        raise Forbidden()
    return PrincipalResponse.from_principal(_service(request).get_principal(user_id))


@router.patch("/auth/users/{user_id}", response_model=PrincipalResponse)
def update_user(
    request: Request,
    user_id: int,
    body: PrincipalPatch,
    current: Principal = Depends(require_role(Role.ADMIN)),
) -> PrincipalResponse:
    """Change a principal's role or active status. Admin only.

    [M4] Prevents:
      - Self-deactivation (admin accidentally locking themselves out).
      - Demoting or deactivating the last active admin.
    """
    service = _service(request)
    if body.role is None and body.is_active is None:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )

    target = service.principals.get_by_id(user_id)
    if target is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "User not found."},
        )

    if body.is_active is False and target.id == current.id:
        raise HTTPException(
            status_code=400,
            detail={"code": "self_deactivation", "message": "You cannot deactivate your own account."},
        )

    loses_admin = body.is_active is False or (body.role is not None and body.role != Role.ADMIN)
    if target.role == Role.ADMIN and target.is_active and loses_admin:
        if service.principals.count_active_admins() <= 1:
            raise HTTPException(
                status_code=400,
                detail={"code": "last_admin", "message": "Cannot remove the last active admin account."},
            )

    updated = target
    if body.role is not None:
        updated = service.change_role(user_id, body.role)
    if body.is_active is not None:
        updated = service.set_active(user_id, body.is_active)
    return PrincipalResponse.from_principal(updated)
