"""
tests/conftest.py -- Shared test fixtures for DoorPro auth tests.

This module provides:
  - FakeClock: injectable clock so expiry boundaries are exact, not sleep-based
  - token_store: parametrized over the memory, file and SQL backings
  - user_store / service: an AuthService over isolated SQLite files
  - RecordingNotifier: captures reset / verification tokens instead of mailing
  - api_client: TestClient over the real FastAPI app with a patched lifespan

Design: SQLite files under tmp_path (not :memory:) because several tests hit a
store from many threads at once and TestClient runs sync routes in a thread
pool. A plain :memory: DB is per-connection and would present a blank schema to
each worker thread.

DEBUG, BCRYPT_ROUNDS and ALLOWED_HOSTS must be set before any auth/core import:
get_settings() is cached at first call and auth.passwords computes its timing
dummy hash at import.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager, suppress
from datetime import datetime, timedelta, timezone

# CRITICAL: Set env before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("TOKEN_BACKEND", "memory")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth.service import AuthService
from auth.store import SqlTokenStore, UserStore
from auth.token_store import FileTokenStore, MemoryTokenStore, TokenStore

SECRET = "test-secret-key-0123456789abcdef-0123456789abcdef"

ADMIN_USERNAME = "testadmin"
ADMIN_PASSWORD = "testpass123"
REP_USERNAME = "fieldrep"
REP_PASSWORD = "doorknock42"


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock that only moves when a test moves it."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 15, 9, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# Notifier
# ---------------------------------------------------------------------------


class RecordingNotifier:
    """Keeps every token the service tried to deliver, newest last."""

    def __init__(self) -> None:
        self.resets: list[tuple[int, str]] = []
        self.verifications: list[tuple[int, str]] = []

    def send_password_reset(self, user, token, expires_at) -> None:
        self.resets.append((user.id, token))

    def send_email_verification(self, user, token, expires_at) -> None:
        self.verifications.append((user.id, token))


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


def _make_token_store(backend: str, tmp_path, batch_size: int = 500) -> TokenStore:
    if backend == "memory":
        return MemoryTokenStore(batch_size=batch_size)
    if backend == "file":
        return FileTokenStore(tmp_path / "tokens.json", batch_size=batch_size)
    return SqlTokenStore(db_url=f"sqlite:///{tmp_path / 'tokens.db'}", batch_size=batch_size)


@pytest.fixture
def make_token_store(tmp_path) -> Generator:
    """Factory for stores with non-default options; closes what it built."""
    built: list[TokenStore] = []

    def factory(backend: str, batch_size: int = 500) -> TokenStore:
        store = _make_token_store(backend, tmp_path, batch_size)
        built.append(store)
        return store

    yield factory
    for store in built:
        store.close()


@pytest.fixture(params=["memory", "file", "sql"])
def token_store(request, tmp_path) -> Generator[TokenStore, None, None]:
    """Each test using this fixture runs once per backing."""
    store = _make_token_store(request.param, tmp_path)
    yield store
    store.close()


@pytest.fixture
def user_store(tmp_path) -> Generator[UserStore, None, None]:
    store = UserStore(db_url=f"sqlite:///{tmp_path / 'users.db'}")
    yield store
    store.close()


@pytest.fixture
def service(user_store, clock, notifier) -> Generator[AuthService, None, None]:
    """AuthService over a SQLite user directory and an in-memory token store."""
    svc = AuthService(
        users=user_store,
        tokens=MemoryTokenStore(),
        secret_key=SECRET,
        bcrypt_rounds=4,
        sweep_grace=timedelta(hours=1),
        notifier=notifier,
        clock=clock,
    )
    yield svc
    svc.tokens.close()


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------


def _patch_lifespan(service: AuthService):
    """Return an async context manager that replaces the real lifespan.

    Wires the pre-built test service into app.state so TestClient routes see
    isolated stores rather than the configured ones. The sweep_task is a
    long-sleeping coroutine so shutdown's .cancel() has a real Task to cancel.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.auth_service = service
        app.state.sweep_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.sweep_task.cancel()
        with suppress(asyncio.CancelledError):
            await app.state.sweep_task

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(tmp_path_factory) -> Generator[tuple[TestClient, AuthService, RecordingNotifier], None, None]:
    """Yield (client, service, notifier) for HTTP integration tests.

    The admin ("testadmin"/"testpass123") is bootstrapped and one regular
    user ("fieldrep"/"doorknock42") registered before the client starts.
    The rate limiter is disabled so tests can log in freely; the rate-limit
    test turns it back on explicitly.
    """
    db_dir = tmp_path_factory.mktemp("api")
    notifier = RecordingNotifier()
    svc = AuthService(
        users=UserStore(db_url=f"sqlite:///{db_dir / 'auth.db'}"),
        tokens=MemoryTokenStore(),
        secret_key=SECRET,
        bcrypt_rounds=4,
        notifier=notifier,
    )
    svc.bootstrap_admin(ADMIN_USERNAME, "admin@doorpro.test", ADMIN_PASSWORD, "Admin User")
    svc.register_user(REP_USERNAME, "rep@doorpro.test", REP_PASSWORD, "Field Rep")

    app.router.lifespan_context = _patch_lifespan(svc)
    limiter.enabled = False

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, svc, notifier

    limiter.enabled = True
    svc.close()
