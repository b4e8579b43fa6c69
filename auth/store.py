"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper.
PrincipalStore, RefreshTokenStore and PasswordResetStore are the repositories;
_row_to_* functions are the mappers. Service and gate code never touch SQL.

Storage handle: create_db_engine() builds one Engine per process. It is
passed into each repository explicitly -- there is no module-level connection.
Every method opens a connection with ``with engine.connect()`` and releases it
before returning, so concurrent requests touching different rows never share
a connection or a lock held across calls. A remove() is committed before it
returns, so any later is_valid() on the same database observes it.

Security:
  All queries use bound parameters. No f-strings in SQL.

Schema notes:
  refresh_tokens.user_id and password_resets.user_id reference users.id with
  ON DELETE CASCADE. SQLite enforces this only with PRAGMA foreign_keys=ON,
  which _set_sqlite_pragmas() turns on for every pooled connection.

  Expiry columns are INTEGER Unix seconds so comparisons use the injected
  clock rather than the database server's NOW().

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    and_,
    or_,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Engine

from auth.models import PasswordResetRecord, Principal, RefreshTokenRecord, Role
from auth.tokens import Clock, utc_now

logger = logging.getLogger("haven.auth.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(100), nullable=False, unique=True),
    Column("username", String(50), nullable=False, unique=True),
    Column("password_hash", String(255), nullable=False),
    Column("full_name", String(100)),
    Column("role", String(20), nullable=False, server_default=Role.USER.value),
    Column("is_verified", Integer, nullable=False, server_default="0"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("last_login", String(32)),  # ISO 8601 timestamp of last successful login
    Column("created_at", String(32), nullable=False),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("token", Text, nullable=False),
    Column("expires_at", Integer, nullable=False),  # Unix seconds
    Column("created_at", Integer, nullable=False),
    Index("idx_refresh_tokens_user_id", "user_id"),
)

_password_resets = Table(
    "password_resets",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("expires_at", Integer, nullable=False),
    Column("used", Integer, nullable=False, server_default="0"),
    Column("created_at", Integer, nullable=False),
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign-key enforcement.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_db_engine(db_url: str) -> Engine:
    """Build the process-wide Engine and create any missing tables.

    Idempotent: create_all() skips tables that already exist.
    """
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_sqlite_pragmas)
    _metadata.create_all(engine)
    return engine


_PROFILE_FIELDS = {"username", "full_name"}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Principals
# ---------------------------------------------------------------------------


class PrincipalStore:
    """Repository for Principal records -- also the gate's live-lookup collaborator.

    Usage:
        principals = PrincipalStore(engine)
        uid = principals.create(Principal(email="a@b.com", username="a", password_hash=h))
        principal = principals.get_by_id(uid)
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create(self, principal: Principal) -> int:
        """Insert a new principal and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email or username already
        exists. The service translates that into DuplicateIdentity; the
        pre-insert existence checks alone cannot close the race between two
        concurrent registrations.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=principal.email,
                    username=principal.username,
                    password_hash=principal.password_hash,
                    full_name=principal.full_name,
                    role=Role(principal.role).value,
                    is_verified=1 if principal.is_verified else 0,
                    is_active=1 if principal.is_active else 0,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_id(self, principal_id: int) -> Principal | None:
        """Look up a principal by primary key. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == principal_id)).fetchone()
        return _row_to_principal(row) if row is not None else None

    def get_by_email(self, email: str) -> Principal | None:
        """Look up a principal by exact email. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
        return _row_to_principal(row) if row is not None else None

    def email_exists(self, email: str) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(select(_users.c.id).where(_users.c.email == email).limit(1)).fetchone()
        return row is not None

    def username_exists(self, username: str, exclude_id: int | None = None) -> bool:
        """True if another principal holds ``username``. ``exclude_id`` skips the caller's own row."""
        query = select(_users.c.id).where(_users.c.username == username)
        if exclude_id is not None:
            query = query.where(_users.c.id != exclude_id)
        with self.engine.connect() as conn:
            row = conn.execute(query.limit(1)).fetchone()
        return row is not None

    def list_principals(
        self,
        role: Role | None = None,
        active_only: bool = False,
        search: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Principal]:
        """Return principals ordered by id.

        search is a case-insensitive substring match on username, email and
        full name. LIKE wildcards in it are escaped, so "%" matches a literal %.
        """
        query = _filter_principals(_users.select(), role, active_only, search).order_by(_users.c.id)
        if limit is not None:
            query = query.limit(limit).offset(offset)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_principal(r) for r in rows]

    def count_principals(self, role: Role | None = None, active_only: bool = False, search: str | None = None) -> int:
        """Count the principals list_principals() would return without a limit."""
        query = _filter_principals(select(func.count()).select_from(_users), role, active_only, search)
        with self.engine.connect() as conn:
            return conn.execute(query).scalar() or 0

    def update_role(self, principal_id: int, role: Role) -> bool:
        """Change a principal's role. Returns False if principal_id was not found."""
        return self._update(principal_id, role=Role(role).value)

    def set_active(self, principal_id: int, active: bool) -> bool:
        return self._update(principal_id, is_active=1 if active else 0)

    def update_password_hash(self, principal_id: int, password_hash: str) -> bool:
        return self._update(principal_id, password_hash=password_hash)

    def update_profile(self, principal_id: int, **fields) -> bool:
        """Update self-service profile fields (username, full_name).

        Raises sqlalchemy.exc.IntegrityError if the new username is taken.
        """
        unknown = set(fields) - _PROFILE_FIELDS
        if unknown:
            raise ValueError(f"Not a profile field: {', '.join(sorted(unknown))}")
        return self._update(principal_id, **fields)

    def update_last_login(self, principal_id: int) -> None:
        """Stamp the current UTC timestamp as last_login."""
        self._update(principal_id, last_login=_now_iso())

    def count_active_admins(self) -> int:
        """Return the number of active admin principals.

        Used by PATCH /users/{id} to keep at least one admin reachable [M4].
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_users)
                .where(and_(_users.c.role == Role.ADMIN.value, _users.c.is_active == 1))
            ).scalar()
        return result or 0

    def _update(self, principal_id: int, **fields) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == principal_id).values(**fields))
            conn.commit()
        return result.rowcount > 0


def _filter_principals(query, role: Role | None, active_only: bool, search: str | None):
    if role is not None:
        query = query.where(_users.c.role == Role(role).value)
    if active_only:
        query = query.where(_users.c.is_active == 1)
    if search:
        query = query.where(
            or_(
                _users.c.username.icontains(search, autoescape=True),
                _users.c.email.icontains(search, autoescape=True),
                _users.c.full_name.icontains(search, autoescape=True),
            )
        )
    return query


# ---------------------------------------------------------------------------
# Refresh tokens
# ---------------------------------------------------------------------------


class RefreshTokenStore:
    """Server-side record of issued refresh tokens -- the revocation authority.

    A refresh token whose signature and embedded exp are fine is still
    rejected unless a matching, unexpired row exists here. Expired rows are
    ignored by is_valid() and deleted lazily by prune_expired().
    """

    def __init__(self, engine: Engine, clock: Clock = utc_now) -> None:
        self.engine = engine
        self._clock = clock

    def store(self, principal_id: int, token: str, ttl_seconds: int) -> None:
        """Persist a refresh token. Several tokens per principal may coexist."""
        now = self._clock()
        with self.engine.connect() as conn:
            conn.execute(
                _refresh_tokens.insert().values(
                    user_id=principal_id,
                    token=token,
                    expires_at=now + ttl_seconds,
                    created_at=now,
                )
            )
            conn.commit()

    def is_valid(self, principal_id: int, token: str) -> bool:
        """True iff a record matches both fields and has not expired."""
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_refresh_tokens.c.id)
                .where(
                    and_(
                        _refresh_tokens.c.user_id == principal_id,
                        _refresh_tokens.c.token == token,
                        _refresh_tokens.c.expires_at > self._clock(),
                    )
                )
                .limit(1)
            ).fetchone()
        return row is not None

    def get(self, principal_id: int, token: str) -> RefreshTokenRecord | None:
        """Return the stored record regardless of expiry, or None."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _refresh_tokens.select().where(
                    and_(_refresh_tokens.c.user_id == principal_id, _refresh_tokens.c.token == token)
                )
            ).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def remove(self, principal_id: int, token: str) -> bool:
        """Delete the matching record. Returns False (not an error) if none existed."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.delete().where(
                    and_(_refresh_tokens.c.user_id == principal_id, _refresh_tokens.c.token == token)
                )
            )
            conn.commit()
        return result.rowcount > 0

    def remove_all(self, principal_id: int, except_token: str | None = None) -> int:
        """Delete every refresh token a principal holds, optionally sparing one.

        Returns the count removed.
        """
        query = _refresh_tokens.delete().where(_refresh_tokens.c.user_id == principal_id)
        if except_token is not None:
            query = query.where(_refresh_tokens.c.token != except_token)
        with self.engine.connect() as conn:
            result = conn.execute(query)
            conn.commit()
        return result.rowcount

    def prune_expired(self) -> int:
        """Delete rows whose expires_at has passed. Returns the count removed."""
        with self.engine.connect() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.expires_at <= self._clock()))
            conn.commit()
        return result.rowcount


# ---------------------------------------------------------------------------
# Password resets
# ---------------------------------------------------------------------------


class PasswordResetStore:
    """One-time password reset grants, looked up by token hash."""

    def __init__(self, engine: Engine, clock: Clock = utc_now) -> None:
        self.engine = engine
        self._clock = clock

    def create(self, principal_id: int, token_hash: str, ttl_seconds: int) -> int:
        now = self._clock()
        with self.engine.connect() as conn:
            result = conn.execute(
                _password_resets.insert().values(
                    user_id=principal_id,
                    token_hash=token_hash,
                    expires_at=now + ttl_seconds,
                    created_at=now,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def consume(self, token_hash: str) -> int | None:
        """Mark an unused, unexpired grant as used and return its principal id.

        The UPDATE re-checks used = 0, so two concurrent consumers of the same
        token cannot both succeed. Returns None when there is nothing to consume.
        """
        with self.engine.begin() as conn:
            row = conn.execute(
                _password_resets.select().where(
                    and_(
                        _password_resets.c.token_hash == token_hash,
                        _password_resets.c.used == 0,
                        _password_resets.c.expires_at > self._clock(),
                    )
                )
            ).fetchone()
            if row is None:
                return None
            result = conn.execute(
                _password_resets.update()
                .where(and_(_password_resets.c.id == row.id, _password_resets.c.used == 0))
                .values(used=1)
            )
            if result.rowcount != 1:
                return None
            return row.user_id

    def get(self, token_hash: str) -> PasswordResetRecord | None:
        with self.engine.connect() as conn:
            row = conn.execute(_password_resets.select().where(_password_resets.c.token_hash == token_hash)).fetchone()
        return _row_to_password_reset(row) if row is not None else None

    def prune_expired(self) -> int:
        """Delete used grants and grants past their expiry."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _password_resets.delete().where(
                    (_password_resets.c.used == 1) | (_password_resets.c.expires_at <= self._clock())
                )
            )
            conn.commit()
        return result.rowcount


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_principal(row) -> Principal:
    return Principal(
        id=row.id,
        email=row.email,
        username=row.username,
        password_hash=row.password_hash,
        full_name=row.full_name,
        role=Role(row.role),
        is_verified=bool(row.is_verified),
        is_active=bool(row.is_active),
        last_login=row.last_login,
        created_at=row.created_at,
    )


def _row_to_refresh_token(row) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        id=row.id,
        principal_id=row.user_id,
        token=row.token,
        expires_at=row.expires_at,
        created_at=row.created_at,
    )


def _row_to_password_reset(row) -> PasswordResetRecord:
    return PasswordResetRecord(
        id=row.id,
        principal_id=row.user_id,
        token_hash=row.token_hash,
        expires_at=row.expires_at,
        created_at=row.created_at,
        used=bool(row.used),
    )
