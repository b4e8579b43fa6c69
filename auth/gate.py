"""
auth/gate.py -- Bearer-token authentication and role enforcement.

The gate never trusts the role (or email) embedded in an access token. After
the token validates, the principal is re-read from storage by id and every
decision uses that live record. A user demoted after their token was issued
loses the privilege immediately; a user promoted out of band gains it on the
next request even with an old token.

Layer rule: no imports from api/. Transport concerns (where the bearer token
comes from) live in auth/dependencies.py.
"""

from __future__ import annotations

import logging
from typing import Protocol

from auth.errors import Forbidden, Unauthenticated
from auth.models import Principal, Role
from auth.tokens import ACCESS, TokenValidator

logger = logging.getLogger("haven.auth.gate")


class PrincipalLookup(Protocol):
    def get_by_id(self, principal_id: int) -> Principal | None: ...


class AuthorizationGate:
    """Resolves bearer tokens to live principals and enforces minimum roles."""

    def __init__(self, validator: TokenValidator, principals: PrincipalLookup) -> None:
        self.validator = validator
        self.principals = principals

    def current_principal(self, token: str | None) -> Principal | None:
        """Return the active principal behind an access token, or None.

        None covers every failure: missing token, any validation error,
        unknown subject, inactive account.
        """
        if not token:
            return None
        claims = self.validator.try_validate(token, expected_type=ACCESS)
        if claims is None:
            return None
        principal = self.principals.get_by_id(claims["sub"])
        if principal is None or not principal.is_active:
            logger.debug("Token subject %s is unknown or inactive", claims["sub"])
            return None
        return principal

    def authenticate(self, token: str | None) -> Principal:
        """Like current_principal() but raises Unauthenticated instead of returning None."""
        principal = self.current_principal(token)
        if principal is None:
            raise Unauthenticated()
        return principal

    def require_role(self, token: str | None, minimum: Role | str) -> Principal:
        """Return the principal if its live role is at least ``minimum``.

        Raises:
            Unauthenticated: no valid token or no active principal behind it.
            Forbidden:       authenticated, but the live role ranks below minimum.
        """
        minimum = Role(minimum)
        principal = self.authenticate(token)
        if not principal.role.at_least(minimum):
            logger.info(
                "Principal %s with role %s denied; %s required",
                principal.id,
                principal.role.value,
                minimum.value,
            )
            raise Forbidden(f"Role '{minimum.value}' required.")
        return principal
