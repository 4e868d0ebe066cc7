"""
tests/conftest.py -- Shared test fixtures for QC Guard unit and integration tests.

This module provides:
  - FakeClock: a controllable clock injected into every service
  - store / services: an isolated in-memory IdentityStore with all services built on it
  - make_account(): direct account insertion for arranging test state
  - api_client: TestClient with a logged-in administrator for API integration tests
  - fresh_client: TestClient over an empty store (first-run setup tests)
  - shared_store: a named shared-memory store for tests that use worker threads

Design: Named shared-memory SQLite URIs (not plain :memory:) are used for the
API clients so the fixture thread and the TestClient event-loop thread see
one database. Unit-test stores use plain :memory:, which SQLAlchemy serves
from a single-connection pool per thread.

The environment must be prepared before any project import:
  DEBUG=true             -- get_settings() auto-generates SECRET_KEY
  PASSWORD_ROUNDS=4      -- the minimum bcrypt cost keeps hashing fast
  LOGIN_RATE_LIMIT       -- raised so the suite's many logins are not throttled
"""

from __future__ import annotations

import asyncio
import itertools
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

# CRITICAL: set before any auth/core import so get_settings() sees them.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("PASSWORD_ROUNDS", "4")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app, init_services
from auth.accounts import AccountService
from auth.codes import CodeRegistry
from auth.credentials import hash_password
from auth.models import Account, Role
from auth.notifications import NotificationCenter
from auth.registration import RegistrationWorkflow
from auth.sessions import SessionManager
from auth.store import IdentityStore
from core.clock import to_iso

ADMIN_PASSWORD = "Admin1234"
STRONG_PASSWORD = "Secret123"

_db_counter = itertools.count()


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock that only moves when a test says so."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# Store and services
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> Generator[IdentityStore, None, None]:
    s = IdentityStore(db_url="sqlite:///:memory:")
    yield s
    s.close()


@dataclass
class Services:
    store: IdentityStore
    clock: FakeClock
    notifications: NotificationCenter
    codes: CodeRegistry
    registration: RegistrationWorkflow
    sessions: SessionManager
    accounts: AccountService


@pytest.fixture
def services(store: IdentityStore, clock: FakeClock) -> Services:
    notifications = NotificationCenter(store, clock)
    codes = CodeRegistry(store, clock)
    sessions = SessionManager(store, inactivity_seconds=1800, poll_seconds=60, clock=clock)
    return Services(
        store=store,
        clock=clock,
        notifications=notifications,
        codes=codes,
        registration=RegistrationWorkflow(store, codes, notifications, clock),
        sessions=sessions,
        accounts=AccountService(store, sessions, clock),
    )


def make_account(
    store: IdentityStore,
    username: str,
    role: str = Role.QUALITY_CONTROL.value,
    password: str | None = STRONG_PASSWORD,
    unit_id: int | None = None,
    status: str = "active",
) -> Account:
    """Insert an account directly, bypassing registration."""
    account = Account(
        username=username,
        role=role,
        password_hash=hash_password(password) if password else None,
        unit_id=unit_id,
        status=status,
        created_at=to_iso(datetime.now(timezone.utc)),
    )
    account.id = store.create_account(account)
    return account


@pytest.fixture
def admin(store: IdentityStore) -> Account:
    return make_account(store, "admin", Role.ADMINISTRATOR.value, ADMIN_PASSWORD)


# ---------------------------------------------------------------------------
# API clients
# ---------------------------------------------------------------------------


def _make_api_store(name: str) -> IdentityStore:
    """Named shared-memory store; a fresh name per fixture keeps modules isolated."""
    return IdentityStore(db_url=f"sqlite:///file:test_identity_{name}_{next(_db_counter)}?mode=memory&cache=shared&uri=true")


@pytest.fixture
def shared_store() -> Generator[IdentityStore, None, None]:
    """Store visible from every thread, for tests that hop onto worker threads."""
    s = _make_api_store("threads")
    yield s
    s.close()


def _patch_lifespan(store: IdentityStore):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store through the same init_services() as production. The
    purge_task is a long-sleeping coroutine standing in for the real loop.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        init_services(app, store)
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()
        app.state.unsubscribe_session_log()
        app.state.session_manager.close()

    return test_lifespan


def login(client: TestClient, username: str, password: str | None = None, **extra) -> str:
    """POST /auth/login and return the access token.

    The cookie the route sets is cleared again so that every later request in
    the test authenticates only through the headers it passes explicitly.
    """
    body = {"username": username, "password": password, **extra}
    resp = client.post("/api/v1/auth/login", json=body)
    assert resp.status_code == 200, resp.text
    client.cookies.clear()
    return resp.json()["access_token"]


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, str, int], None, None]:
    """Yield (client, token, admin_id) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so tests
    hit real route handlers but use an isolated in-memory store. The token is
    obtained through the real login route, so it points at a live session.
    """
    store = _make_api_store("api")
    admin_id = make_account(store, "testadmin", Role.ADMINISTRATOR.value, ADMIN_PASSWORD).id

    app.router.lifespan_context = _patch_lifespan(store)

    with TestClient(app, raise_server_exceptions=True) as client:
        token = login(client, "testadmin", ADMIN_PASSWORD)
        yield client, token, admin_id

    store.close()


@pytest.fixture
def fresh_client() -> Generator[TestClient, None, None]:
    """TestClient over an empty store: the app starts in setup_required mode."""
    store = _make_api_store("fresh")
    app.router.lifespan_context = _patch_lifespan(store)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client

    store.close()
