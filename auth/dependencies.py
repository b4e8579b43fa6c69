"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Token sources, in priority order:
  1. Authorization: Bearer <token> header.
  2. ?token=<token> query parameter -- only on GET/HEAD and only when
     ALLOW_QUERY_TOKEN=true. Query strings land in access logs, proxies and
     browser history, so this path is off by default.

get_current_principal() raises Unauthenticated.
require_role(Role.X) builds a dependency that raises Forbidden below X.

Errors are the domain errors from auth/errors.py; api/main.py renders them.

Layer rule: no imports from api/.
  auth/dependencies.py may import from fastapi (for Request) because this
  module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Request

from auth.gate import AuthorizationGate
from auth.models import Principal, Role
from core.config import get_settings

_SAFE_METHODS = ("GET", "HEAD")


def extract_bearer_token(request: Request) -> str | None:
    """Return the raw token presented with the request, or None."""
    auth_header = request.headers.get("Authorization", "")
    scheme, _, credentials = auth_header.partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()

    if get_settings().allow_query_token and request.method in _SAFE_METHODS:
        return request.query_params.get("token") or None
    return None


def _gate(request: Request) -> AuthorizationGate:
    return request.app.state.auth_service.gate


def get_current_principal(request: Request) -> Principal:
    """Require authentication.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(principal: Principal = Depends(get_current_principal)): ...
    """
    return _gate(request).authenticate(extract_bearer_token(request))


def require_role(minimum: Role) -> Callable[[Request], Principal]:
    """Build a dependency that admits principals whose live role is at least ``minimum``.

    Use as a FastAPI dependency:
        @router.post("/admin-only")
        async def route(principal: Principal = Depends(require_role(Role.ADMIN))): ...
    """

    def dependency(request: Request) -> Principal:
        return _gate(request).require_role(extract_bearer_token(request), minimum)

    return dependency
