"""
auth/tokens.py -- Access/refresh token issuance and validation.

Claims:
  access:  {sub, email, role, type="access",  iat, exp, iss}
  refresh: {sub, type="refresh", iat, exp, iss, jti}

  exp is always iat + the configured TTL. jti is a random nonce that keeps
  two refresh tokens minted for the same principal in the same second from
  being byte-identical, so each device's session is revoked independently.

  role/email inside an access token are a snapshot taken at issue time.
  Authorization decisions never read them -- AuthorizationGate re-fetches the
  live principal (see auth/gate.py).

Time: both classes take a clock callable returning Unix seconds so tests can
move time past expiry without sleeping.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import secrets
import time
from collections.abc import Callable
from typing import Any

from auth.codec import TokenCodec
from auth.errors import MalformedToken, TokenError, TokenExpired, UnknownIssuer, WrongTokenType
from auth.models import Role

logger = logging.getLogger("haven.auth.tokens")

Clock = Callable[[], int]

ACCESS = "access"
REFRESH = "refresh"

DEFAULT_ACCESS_TTL = 3600
DEFAULT_REFRESH_TTL = 604800

# claim name -> accepted JSON types
_REQUIRED_CLAIMS: dict[str, tuple[type, ...]] = {
    "sub": (int,),
    "type": (str,),
    "iat": (int,),
    "exp": (int,),
    "iss": (str,),
}
_ACCESS_CLAIMS: dict[str, tuple[type, ...]] = {
    "email": (str,),
    "role": (str,),
}


def utc_now() -> int:
    """Current Unix time in whole seconds."""
    return int(time.time())


class TokenIssuer:
    """Builds and signs access and refresh tokens."""

    def __init__(
        self,
        codec: TokenCodec,
        issuer: str,
        access_ttl: int = DEFAULT_ACCESS_TTL,
        refresh_ttl: int = DEFAULT_REFRESH_TTL,
        clock: Clock = utc_now,
    ) -> None:
        self.codec = codec
        self.issuer = issuer
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self._clock = clock

    def issue_access_token(self, principal_id: int, email: str, role: Role | str) -> str:
        now = self._clock()
        return self.codec.encode(
            {
                "sub": principal_id,
                "email": email,
                "role": Role(role).value,
                "type": ACCESS,
                "iat": now,
                "exp": now + self.access_ttl,
                "iss": self.issuer,
            }
        )

    def issue_refresh_token(self, principal_id: int) -> str:
        now = self._clock()
        return self.codec.encode(
            {
                "sub": principal_id,
                "type": REFRESH,
                "iat": now,
                "exp": now + self.refresh_ttl,
                "iss": self.issuer,
                "jti": secrets.token_urlsafe(16),
            }
        )


class TokenValidator:
    """Verifies signature, claim shape, expiry, issuer, and token type."""

    def __init__(self, codec: TokenCodec, issuer: str, clock: Clock = utc_now) -> None:
        self.codec = codec
        self.issuer = issuer
        self._clock = clock

    def validate(self, token: str, expected_type: str | None = None) -> dict[str, Any]:
        """Return the claim mapping of a valid token.

        Checks run in a fixed order so a token failing several checks always
        reports the same error:
          1. decode           -> MalformedToken / InvalidSignature
          2. required claims  -> MalformedToken
          3. exp < now        -> TokenExpired
          4. iss mismatch     -> UnknownIssuer
          5. type mismatch    -> WrongTokenType (only when expected_type given)
          6. access claims    -> MalformedToken (email and role on access tokens)
        """
        claims = self.codec.decode(token)
        _require_claims(claims, _REQUIRED_CLAIMS)
        if claims["exp"] < self._clock():
            raise TokenExpired()
        if claims["iss"] != self.issuer:
            raise UnknownIssuer()
        if expected_type is not None and claims["type"] != expected_type:
            raise WrongTokenType(f"Expected a {expected_type} token.")
        if claims["type"] == ACCESS:
            _require_claims(claims, _ACCESS_CLAIMS)
        return claims

    def try_validate(self, token: str, expected_type: str | None = None) -> dict[str, Any] | None:
        """Soft variant of validate(): returns None on any token failure."""
        try:
            return self.validate(token, expected_type)
        except TokenError as exc:
            logger.debug("Token rejected: %s", exc.code)
            return None


def _require_claims(claims: dict[str, Any], required: dict[str, tuple[type, ...]]) -> None:
    for name, types in required.items():
        value = claims.get(name)
        # bool is an int subclass; a boolean sub/exp is never legitimate
        if value is None or isinstance(value, bool) or not isinstance(value, types):
            raise MalformedToken(f"Token claim {name!r} is missing or invalid.")
