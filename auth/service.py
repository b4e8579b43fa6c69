"""
auth/service.py -- Caller-facing authentication operations.

AuthService ties the pieces together:

    register / login  -> PasswordManager -> TokenIssuer -> RefreshTokenStore
    refresh           -> TokenValidator -> RefreshTokenStore -> TokenIssuer
    logout            -> TokenValidator -> RefreshTokenStore.remove
    me                -> AuthorizationGate
    update_profile    -> PrincipalStore (username uniqueness rechecked)
    change_password   -> PasswordManager -> RefreshTokenStore.remove_all

Security design decisions:
  Non-enumerable login [C1]: unknown email, wrong password, and inactive
       account all raise the same CredentialsInvalid. bcrypt runs on every
       path (PasswordManager.burn() for unknown emails) so response time does
       not leak which emails exist.

  Availability over strict consistency: if the refresh token cannot be
       persisted (storage outage), issuance still succeeds. The failure is
       logged at ERROR and the session is flagged refresh_revocable=False.
       Such a refresh token can never be redeemed -- the refresh path treats
       a missing row as revoked -- but the access token works until it expires.

  Reset tokens are stored as HMAC-SHA256(SECRET_KEY, raw_token). A leaked
       database alone cannot be replayed against /password-reset.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.codec import TokenCodec
from auth.errors import (
    CredentialsInvalid,
    DuplicateIdentity,
    InvalidResetToken,
    PrincipalNotFound,
    RevokedToken,
    Unauthenticated,
    WeakPassword,
)
from auth.gate import AuthorizationGate
from auth.models import AuthSession, Principal, PrincipalPage, RefreshedTokens, Role
from auth.passwords import PasswordManager
from auth.store import PasswordResetStore, PrincipalStore, RefreshTokenStore
from auth.tokens import REFRESH, Clock, TokenIssuer, TokenValidator, utc_now
from core.config import Settings

logger = logging.getLogger("haven.auth")

_USERNAME_MAX = 50


def normalize_email(email: str) -> str:
    return email.strip().lower()


class AuthService:
    """Registration, login, refresh, logout, and account administration."""

    def __init__(
        self,
        principals: PrincipalStore,
        refresh_tokens: RefreshTokenStore,
        resets: PasswordResetStore,
        passwords: PasswordManager,
        issuer: TokenIssuer,
        validator: TokenValidator,
        gate: AuthorizationGate,
        secret_key: str,
        reset_ttl: int = 3600,
        rotate_refresh_tokens: bool = False,
    ) -> None:
        self.principals = principals
        self.refresh_tokens = refresh_tokens
        self.resets = resets
        self.passwords = passwords
        self.issuer = issuer
        self.validator = validator
        self.gate = gate
        self.reset_ttl = reset_ttl
        self.rotate_refresh_tokens = rotate_refresh_tokens
        self._secret_key = secret_key.encode("utf-8")

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def register(
        self,
        email: str,
        password: str,
        username: str | None = None,
        full_name: str | None = None,
    ) -> AuthSession:
        """Create a principal with role ``user`` and open a session for it.

        Raises:
            WeakPassword:      with every violated strength rule.
            DuplicateIdentity: email or explicitly requested username taken.
        """
        email = normalize_email(email)
        strength = self.passwords.validate_strength(password)
        if not strength.valid:
            raise WeakPassword(strength.errors)
        if self.principals.email_exists(email):
            raise DuplicateIdentity("Email already registered.")
        if username:
            if self.principals.username_exists(username):
                raise DuplicateIdentity("Username already taken.")
        else:
            username = self._derive_username(email)

        candidate = Principal(
            email=email,
            username=username,
            password_hash=self.passwords.hash(password),
            full_name=full_name,
            role=Role.USER,
            is_verified=False,
            is_active=True,
        )
        try:
            principal_id = self.principals.create(candidate)
        except IntegrityError as exc:
            # Lost a race with a concurrent registration for the same identity
            raise DuplicateIdentity() from exc

        principal = self.principals.get_by_id(principal_id) or candidate
        logger.info("Registered principal %s", principal_id)
        return self._open_session(principal)

    def login(self, email: str, password: str) -> AuthSession:
        """Verify credentials and open a session.

        Raises CredentialsInvalid for every failure -- the caller cannot tell
        an unknown email from a wrong password or a deactivated account.
        """
        principal = self.principals.get_by_email(normalize_email(email))
        if principal is None or not principal.password_hash:
            # Equalize timing -- do NOT return early before running bcrypt [C1]
            self.passwords.burn(password)
            raise CredentialsInvalid()
        if not self.passwords.verify(password, principal.password_hash):
            raise CredentialsInvalid()
        if not principal.is_active:
            logger.info("Login refused for inactive principal %s", principal.id)
            raise CredentialsInvalid()

        if self.passwords.needs_rehash(principal.password_hash):
            principal.password_hash = self.passwords.hash(password)
            self.principals.update_password_hash(principal.id, principal.password_hash)
            logger.info("Upgraded password hash for principal %s", principal.id)

        self.principals.update_last_login(principal.id)
        return self._open_session(principal)

    def refresh(self, refresh_token: str) -> RefreshedTokens:
        """Exchange a refresh token for a new access token.

        The access token is built from the principal's current record, so a
        role change since login is reflected in the new token's snapshot.

        Raises:
            TokenError subclasses from the validator (expired, forged, ...).
            RevokedToken:    structurally valid but absent from the store.
            Unauthenticated: the principal no longer exists or is inactive.
        """
        claims = self.validator.validate(refresh_token, expected_type=REFRESH)
        principal_id = claims["sub"]
        if not self.refresh_tokens.is_valid(principal_id, refresh_token):
            raise RevokedToken()

        principal = self.principals.get_by_id(principal_id)
        if principal is None or not principal.is_active:
            raise Unauthenticated("User not found or inactive.")

        access_token = self.issuer.issue_access_token(principal.id, principal.email, principal.role)
        if not self.rotate_refresh_tokens:
            return RefreshedTokens(access_token=access_token)

        # Rotation: the presented token is single-use. If another request
        # removed it first, this one loses.
        if not self.refresh_tokens.remove(principal_id, refresh_token):
            raise RevokedToken()
        new_refresh = self.issuer.issue_refresh_token(principal.id)
        revocable = self._persist_refresh(principal.id, new_refresh)
        return RefreshedTokens(access_token=access_token, refresh_token=new_refresh, refresh_revocable=revocable)

    def logout(self, refresh_token: str | None) -> None:
        """Revoke a refresh token. Always succeeds; unknown or invalid tokens are ignored."""
        if not refresh_token:
            return
        claims = self.validator.try_validate(refresh_token, expected_type=REFRESH)
        if claims is None:
            return
        if self.refresh_tokens.remove(claims["sub"], refresh_token):
            logger.info("Revoked refresh token for principal %s", claims["sub"])

    def me(self, access_token: str | None) -> Principal:
        """Return the live principal behind an access token or raise Unauthenticated."""
        return self.gate.authenticate(access_token)

    # ------------------------------------------------------------------
    # Self-service
    # ------------------------------------------------------------------

    def update_profile(
        self,
        principal_id: int,
        username: str | None = None,
        full_name: str | None = None,
    ) -> Principal:
        """Change a principal's own username and/or full name.

        Email, role and active flag are not profile fields. Fields left as
        None are unchanged.

        Raises:
            DuplicateIdentity: the username belongs to another principal.
            PrincipalNotFound: no such principal.
        """
        fields: dict[str, str] = {}
        if username is not None:
            if self.principals.username_exists(username, exclude_id=principal_id):
                raise DuplicateIdentity("Username already taken.")
            fields["username"] = username
        if full_name is not None:
            fields["full_name"] = full_name
        if not fields:
            return self.get_principal(principal_id)

        try:
            updated = self.principals.update_profile(principal_id, **fields)
        except IntegrityError as exc:
            raise DuplicateIdentity("Username already taken.") from exc
        if not updated:
            raise PrincipalNotFound()
        logger.info("Principal %s updated profile fields: %s", principal_id, ", ".join(sorted(fields)))
        return self.get_principal(principal_id)

    def change_password(
        self,
        principal_id: int,
        current_password: str,
        new_password: str,
        keep_refresh_token: str | None = None,
    ) -> int:
        """Replace the password after re-checking the current one.

        Every refresh token the principal holds is revoked except
        ``keep_refresh_token``, so the device making the change stays signed
        in. Returns the number of refresh tokens revoked.

        Raises:
            CredentialsInvalid: current_password does not match.
            WeakPassword:       the new password violates the strength policy.
            PrincipalNotFound:  no such principal.
        """
        principal = self.get_principal(principal_id)
        if not principal.password_hash or not self.passwords.verify(current_password, principal.password_hash):
            raise CredentialsInvalid("Current password is incorrect.")
        strength = self.passwords.validate_strength(new_password)
        if not strength.valid:
            raise WeakPassword(strength.errors)

        self.principals.update_password_hash(principal_id, self.passwords.hash(new_password))
        revoked = self.refresh_tokens.remove_all(principal_id, except_token=keep_refresh_token)
        logger.info("Password changed for principal %s; revoked %d refresh token(s)", principal_id, revoked)
        return revoked

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def get_principal(self, principal_id: int) -> Principal:
        principal = self.principals.get_by_id(principal_id)
        if principal is None:
            raise PrincipalNotFound()
        return principal

    def list_principals(
        self,
        page: int = 1,
        limit: int = 20,
        search: str | None = None,
        role: Role | str | None = None,
        active_only: bool = False,
    ) -> PrincipalPage:
        """Return one page of principals ordered by id, plus the total match count."""
        if page < 1 or limit < 1:
            raise ValueError("page and limit must be positive")
        role = Role(role) if role is not None else None
        search = search.strip() if search else None
        principals = self.principals.list_principals(
            role=role,
            active_only=active_only,
            search=search,
            limit=limit,
            offset=(page - 1) * limit,
        )
        total = self.principals.count_principals(role=role, active_only=active_only, search=search)
        return PrincipalPage(principals=principals, total=total, page=page, limit=limit)

    def change_role(self, principal_id: int, role: Role | str) -> Principal:
        """Set a principal's role. Takes effect on the next request via the gate."""
        role = Role(role)
        if not self.principals.update_role(principal_id, role):
            raise PrincipalNotFound()
        logger.info("Principal %s role set to %s", principal_id, role.value)
        return self.principals.get_by_id(principal_id)

    def set_active(self, principal_id: int, active: bool) -> Principal:
        """Activate or deactivate a principal. Deactivation revokes all refresh tokens."""
        if not self.principals.set_active(principal_id, active):
            raise PrincipalNotFound()
        if not active:
            revoked = self.refresh_tokens.remove_all(principal_id)
            logger.info("Deactivated principal %s; revoked %d refresh token(s)", principal_id, revoked)
        return self.principals.get_by_id(principal_id)

    def request_password_reset(self, email: str) -> str | None:
        """Create a one-time reset grant and return the raw token.

        Returns None when no active principal has this email. Delivering the
        token (email, support desk) is the caller's job; HTTP callers must
        respond identically in both cases to avoid user enumeration.
        """
        principal = self.principals.get_by_email(normalize_email(email))
        if principal is None or not principal.is_active:
            return None
        raw_token = self.passwords.generate_reset_token()
        self.resets.create(principal.id, self._hash_reset_token(raw_token), self.reset_ttl)
        logger.info("Password reset requested for principal %s", principal.id)
        return raw_token

    def reset_password(self, reset_token: str, new_password: str) -> None:
        """Consume a reset grant, set the new password, and sign out every device.

        Strength is checked before the grant is consumed, so a rejected
        password does not burn the token.
        """
        strength = self.passwords.validate_strength(new_password)
        if not strength.valid:
            raise WeakPassword(strength.errors)
        principal_id = self.resets.consume(self._hash_reset_token(reset_token))
        if principal_id is None:
            raise InvalidResetToken()
        self.principals.update_password_hash(principal_id, self.passwords.hash(new_password))
        revoked = self.refresh_tokens.remove_all(principal_id)
        logger.info("Password reset for principal %s; revoked %d refresh token(s)", principal_id, revoked)

    def prune_expired_tokens(self) -> int:
        """Delete expired refresh tokens and spent reset grants. Returns rows removed."""
        return self.refresh_tokens.prune_expired() + self.resets.prune_expired()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _open_session(self, principal: Principal) -> AuthSession:
        access_token = self.issuer.issue_access_token(principal.id, principal.email, principal.role)
        refresh_token = self.issuer.issue_refresh_token(principal.id)
        revocable = self._persist_refresh(principal.id, refresh_token)
        return AuthSession(
            principal=principal,
            access_token=access_token,
            refresh_token=refresh_token,
            refresh_revocable=revocable,
        )

    def _persist_refresh(self, principal_id: int, refresh_token: str) -> bool:
        try:
            self.refresh_tokens.store(principal_id, refresh_token, self.issuer.refresh_ttl)
        except SQLAlchemyError as exc:
            logger.error(
                "Refresh token for principal %s issued but not persisted (%s); it cannot be redeemed or revoked",
                principal_id,
                type(exc).__name__,
            )
            return False
        return True

    def _derive_username(self, email: str) -> str:
        """Use the email local part, suffixed with a counter if already taken."""
        base = email.split("@", 1)[0][:_USERNAME_MAX] or "user"
        candidate = base
        suffix = 1
        while self.principals.username_exists(candidate):
            suffix += 1
            tail = str(suffix)
            candidate = f"{base[: _USERNAME_MAX - len(tail)]}{tail}"
        return candidate

    def _hash_reset_token(self, raw_token: str) -> str:
        return hmac.new(self._secret_key, raw_token.encode("utf-8"), hashlib.sha256).hexdigest()


def build_auth_service(settings: Settings, engine: Engine, clock: Clock = utc_now) -> AuthService:
    """Assemble the auth core from settings and a storage handle."""
    codec = TokenCodec(settings.secret_key)
    issuer = TokenIssuer(
        codec,
        issuer=settings.token_issuer,
        access_ttl=settings.access_token_ttl,
        refresh_ttl=settings.refresh_token_ttl,
        clock=clock,
    )
    validator = TokenValidator(codec, issuer=settings.token_issuer, clock=clock)
    principals = PrincipalStore(engine)
    return AuthService(
        principals=principals,
        refresh_tokens=RefreshTokenStore(engine, clock=clock),
        resets=PasswordResetStore(engine, clock=clock),
        passwords=PasswordManager(rounds=settings.bcrypt_rounds),
        issuer=issuer,
        validator=validator,
        gate=AuthorizationGate(validator, principals),
        secret_key=settings.secret_key,
        reset_ttl=settings.password_reset_ttl,
        rotate_refresh_tokens=settings.rotate_refresh_tokens,
    )
