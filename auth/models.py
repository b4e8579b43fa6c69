"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Stores and the
service do the work; these classes own the domain shape.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum


class Role(str, Enum):
    """Principal roles, declared lowest privilege first.

    Declaration order IS the hierarchy. ``user`` carries no elevated level;
    ``admin`` satisfies every ``moderator`` requirement.
    """

    USER = "user"
    MODERATOR = "moderator"
    ADMIN = "admin"

    @property
    def level(self) -> int:
        return list(type(self)).index(self)

    def at_least(self, minimum: Role) -> bool:
        """Return True if this role meets or exceeds ``minimum``."""
        return self.level >= minimum.level


@dataclass
class Principal:
    """An authenticated identity.

    email and username are unique across all stored principals. username is
    derived from the email local part at registration when not supplied.
    Principals are never physically deleted by the auth core; deactivation
    flips is_active.
    """

    email: str
    username: str
    id: int | None = None
    password_hash: str | None = None
    full_name: str | None = None
    role: Role = Role.USER
    is_verified: bool = False
    is_active: bool = True
    last_login: str | None = None
    created_at: str | None = None


@dataclass
class RefreshTokenRecord:
    """A persisted refresh token. Valid while expires_at > now (Unix seconds)."""

    principal_id: int
    token: str
    expires_at: int
    created_at: int
    id: int | None = None


@dataclass
class PasswordResetRecord:
    """A one-time password reset grant.

    token_hash is HMAC-SHA256(SECRET_KEY, raw_token); the raw token is handed
    to the caller once and never persisted.
    """

    principal_id: int
    token_hash: str
    expires_at: int
    created_at: int
    used: bool = False
    id: int | None = None


@dataclass
class StrengthResult:
    """Outcome of a password strength check. errors lists every violated rule."""

    valid: bool
    errors: list[str] = field(default_factory=list)


@dataclass
class AuthSession:
    """Result of a successful register or login.

    refresh_revocable is False when the refresh token could not be persisted
    (storage outage). Such a token still validates structurally but the
    refresh endpoint will reject it as revoked, and logout cannot revoke it.
    """

    principal: Principal
    access_token: str
    refresh_token: str
    refresh_revocable: bool = True


@dataclass
class RefreshedTokens:
    """Result of a refresh. refresh_token is set only when rotation is enabled.

    refresh_revocable has the same meaning as on AuthSession and is False only
    when a rotated refresh token could not be persisted.
    """

    access_token: str
    refresh_token: str | None = None
    refresh_revocable: bool = True


@dataclass
class PrincipalPage:
    """One page of a principal listing. page is 1-based; total counts every match."""

    principals: list[Principal]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0
