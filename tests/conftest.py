"""
tests/conftest.py -- Shared test fixtures for LoginGuard.

This module provides:
  - FakeClock: a controllable UTC clock injected into AuthService
  - RecordingNotifier: a login alert transport that records instead of sending
  - make_store(): isolated named shared-memory SQLite UserStore
  - add_user(): insert an account directly, bypassing the HTTP surface
  - store / clock / service: unit-level fixtures
  - fast_hashing: low bcrypt cost for password-rotation tests
  - api: TestClient over the real app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because the service pushes store calls to a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.

DEBUG must be set before any auth/core import so get_settings() can
auto-generate SECRET_KEY. The login rate limit is raised so lockout scenarios
are not cut short by the per-IP limiter.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

# CRITICAL: set before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.lockout import LockoutPolicy
from auth.models import ROLE_ADMIN, ROLE_USER, User
from auth.notify import LoginAlert, NotificationDispatcher
from auth.password_policy import PasswordPolicy
from auth.service import AuthService
from auth.store import UserStore
from auth.tokens import hash_password

STRONG_PASSWORD = "Correct-Horse-42"
ADMIN_PASSWORD = "Admin-Passw0rd!x"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(timezone.utc).replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingNotifier:
    is_configured = True

    def __init__(self) -> None:
        self.sent: list[LoginAlert] = []

    def send(self, alert: LoginAlert) -> bool:
        self.sent.append(alert)
        return True


def make_store() -> UserStore:
    """Create an isolated named shared-memory SQLite store."""
    return UserStore(db_url=f"sqlite:///file:test_auth_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true")


def add_user(
    store: UserStore,
    username: str = "alice",
    password: str = STRONG_PASSWORD,
    role: str = ROLE_USER,
    **overrides,
) -> User:
    """Insert an account with a seeded history and return the stored record."""
    password_hash = hash_password(password)
    user = User(
        username=username,
        hashed_password=password_hash,
        role=role,
        password_changed_at=overrides.pop("password_changed_at", datetime.now(timezone.utc)),
        password_history=PasswordPolicy().empty_history().record(password_hash),
        **overrides,
    )
    uid = store.create_user(user)
    return store.get_by_id(uid)


def run(coro):
    return asyncio.run(coro)


# ---------------------------------------------------------------------------
# Unit-level fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> Generator[UserStore, None, None]:
    s = make_store()
    yield s
    s.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fast_hashing(monkeypatch: pytest.MonkeyPatch) -> None:
    """Drop the bcrypt cost for tests that hash many passwords."""
    monkeypatch.setattr("auth.tokens._BCRYPT_ROUNDS", 4)


@pytest.fixture
def service(store: UserStore, clock: FakeClock) -> AuthService:
    return AuthService(store, PasswordPolicy(), LockoutPolicy(), None, clock=clock)


# ---------------------------------------------------------------------------
# API fixture
# ---------------------------------------------------------------------------


@dataclass
class ApiHarness:
    client: TestClient
    store: UserStore
    service: AuthService
    clock: FakeClock
    notifier: RecordingNotifier
    admin: User
    extra: dict = field(default_factory=dict)

    def login(self, username: str, password: str):
        return self.client.post("/api/auth/login", json={"username": username, "password": password})

    def token_for(self, username: str, password: str) -> str:
        resp = self.login(username, password)
        assert resp.status_code == 200, resp.text
        return resp.json()["token"]

    @staticmethod
    def bearer(token: str) -> dict:
        return {"Authorization": f"Bearer {token}"}


def _patch_lifespan(store: UserStore, service: AuthService, dispatcher: NotificationDispatcher):
    """Replace the real lifespan so routes see the isolated store and fake clock."""

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = store
        app.state.dispatcher = dispatcher
        app.state.auth_service = service
        yield
        await dispatcher.aclose()

    return test_lifespan


@pytest.fixture
def api() -> Generator[ApiHarness, None, None]:
    """Yield an ApiHarness around a TestClient with one admin account."""
    store = make_store()
    clock = FakeClock()
    notifier = RecordingNotifier()
    dispatcher = NotificationDispatcher(notifier, store, max_attempts=1, backoff_seconds=0)
    service = AuthService(store, PasswordPolicy(), LockoutPolicy(), dispatcher, clock=clock)
    admin = add_user(store, "root_admin", ADMIN_PASSWORD, role=ROLE_ADMIN, password_changed_at=clock.now)

    app.router.lifespan_context = _patch_lifespan(store, service, dispatcher)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield ApiHarness(
            client=client,
            store=store,
            service=service,
            clock=clock,
            notifier=notifier,
            admin=admin,
        )

    store.close()
