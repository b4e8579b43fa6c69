"""
tests/conftest.py -- Shared test fixtures for Haven auth tests.

This module provides:
  - FrozenClock / clock: an injectable Unix-seconds clock tests can advance
  - settings, engine, service: unit-test wiring on in-memory SQLite
  - api_client: TestClient over the real app with a patched lifespan

Design: the API fixture uses a named shared-memory SQLite URI (not plain
:memory:) because TestClient runs sync route handlers in a thread pool. Plain
:memory: DBs are per-connection and would present a blank schema to each
worker thread. Unit tests stay on one thread, so plain :memory: is fine there.

Environment variables must be set before any api/auth/core import:
  DEBUG=true          -- get_settings() auto-generates SECRET_KEY
  BCRYPT_ROUNDS=4     -- bcrypt's minimum cost; keeps the suite fast
  LOGIN_RATE_LIMIT    -- high enough that the suite never trips [H2]
  ALLOWED_HOSTS       -- TestClient sends Host: testserver
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: set before any project import so get_settings() sees them.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.models import Role
from auth.service import AuthService, build_auth_service
from auth.store import create_db_engine
from core.config import Settings, get_settings

TEST_SECRET = "unit-test-secret-key-0123456789-abcdef"
START_TIME = 1_700_000_000

ADMIN_EMAIL = "admin@haven.test"
ADMIN_PASSWORD = "Adm1n!Passw0rd"
USER_EMAIL = "member@haven.test"
USER_PASSWORD = "Memb3r!Pass"


class FrozenClock:
    """Callable clock returning a fixed Unix time until advanced."""

    def __init__(self, now: int = START_TIME) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


# ---------------------------------------------------------------------------
# Unit-test wiring
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        secret_key=TEST_SECRET,
        bcrypt_rounds=4,
        token_issuer="haven_test",
        access_token_ttl=3600,
        refresh_token_ttl=604800,
    )


@pytest.fixture
def engine():
    eng = create_db_engine("sqlite:///:memory:")
    yield eng
    eng.dispose()


@pytest.fixture
def service(settings: Settings, engine, clock: FrozenClock) -> AuthService:
    return build_auth_service(settings, engine, clock=clock)


# ---------------------------------------------------------------------------
# API integration wiring
# ---------------------------------------------------------------------------


def _patch_lifespan(engine, service: AuthService):
    """Return an async context manager that replaces the real lifespan.

    Wires the pre-built test service into app.state so TestClient routes see
    the isolated test DB. The prune task is a long sleep so shutdown has a
    real asyncio.Task to cancel.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.engine = engine
        app.state.auth_service = service
        app.state.prune_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.prune_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, AuthService], None, None]:
    """Yield (client, service) for API integration tests.

    Seeds one admin (ADMIN_EMAIL) and one plain user (USER_EMAIL). Each test
    module gets its own database, named after the module.
    """
    db_name = request.module.__name__.rsplit(".", 1)[-1]
    engine = create_db_engine(f"sqlite:///file:{db_name}?mode=memory&cache=shared&uri=true")
    service = build_auth_service(get_settings(), engine)

    admin = service.register(ADMIN_EMAIL, ADMIN_PASSWORD, username="admin")
    service.change_role(admin.principal.id, Role.ADMIN)
    service.register(USER_EMAIL, USER_PASSWORD, username="member")

    app.router.lifespan_context = _patch_lifespan(engine, service)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, service

    engine.dispose()


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}
