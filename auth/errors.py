"""
auth/errors.py -- Error taxonomy for the authentication core.

Every condition here is recoverable and surfaced to the caller; none is fatal
to the process. Each class carries a stable machine-readable ``code`` and the
HTTP status the API layer renders it with, so api/main.py needs a single
exception handler for the whole family.

Layer rule: no imports from api/.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for all authentication and authorization failures."""

    code: str = "auth_error"
    http_status: int = 401
    default_message: str = "Authentication failed."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


# ---------------------------------------------------------------------------
# Token failures
# ---------------------------------------------------------------------------


class TokenError(AuthError):
    """A presented token could not be accepted."""

    code = "invalid_token"
    default_message = "Invalid token."


class MalformedToken(TokenError):
    code = "malformed_token"
    default_message = "Token is malformed."


class InvalidSignature(TokenError):
    code = "invalid_signature"
    default_message = "Token signature is invalid."


class TokenExpired(TokenError):
    code = "token_expired"
    default_message = "Token has expired."


class UnknownIssuer(TokenError):
    code = "unknown_issuer"
    default_message = "Token was not issued by this service."


class WrongTokenType(TokenError):
    code = "wrong_token_type"
    default_message = "Token type is not accepted here."


class RevokedToken(TokenError):
    code = "revoked_token"
    default_message = "Refresh token has been revoked."


# ---------------------------------------------------------------------------
# Principal / authorization failures
# ---------------------------------------------------------------------------


class Unauthenticated(AuthError):
    code = "unauthorized"
    default_message = "Authentication required."


class Forbidden(AuthError):
    code = "forbidden"
    http_status = 403
    default_message = "Insufficient role."


class CredentialsInvalid(AuthError):
    """Login failure. Deliberately identical for unknown email and wrong password."""

    code = "bad_credentials"
    default_message = "Invalid email or password."


class WeakPassword(AuthError):
    """Password strength policy violation, carrying every violated rule."""

    code = "weak_password"
    http_status = 400
    default_message = "Password is too weak."

    def __init__(self, errors: list[str], message: str | None = None) -> None:
        self.errors = list(errors)
        super().__init__(message)


class DuplicateIdentity(AuthError):
    code = "conflict"
    http_status = 409
    default_message = "Email or username already registered."


class InvalidResetToken(AuthError):
    code = "invalid_reset_token"
    http_status = 400
    default_message = "Reset token is invalid or has expired."


class PrincipalNotFound(AuthError):
    """Raised by administrative operations only -- never by login."""

    code = "not_found"
    http_status = 404
    default_message = "User not found."
