"""
tests/conftest.py -- Shared test fixtures for tillgate unit and integration tests.

This module provides:
  - make_settings(): explicit Settings with strong secrets (no .env, no environ mutation)
  - FakeClock: injectable epoch-seconds clock for expiry, revocation and window tests
  - wall_clock: the same FakeClock patched over time.time() for rate-limit windows
  - user_store / team_store / codec: isolated in-memory persistence and email codec
  - services: the full container from api.services.build_services()
  - client: TestClient over the real app with a patched lifespan (development runtime)
  - prod_client: the same over https with production limits and __Host- cookies

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
Each fixture gets a uuid-suffixed name so tests never share rows.

DEBUG must be set before api.main is imported: the module reads get_settings()
once to configure TrustedHost and CORS middleware.
"""

from __future__ import annotations

import base64
import os
import time
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: Set DEBUG before any api import so module-level middleware config
# sees a development runtime.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from api.services import Services, build_services
from auth.email_codec import EmailCodec
from auth.models import User, UserRole
from auth.passwords import hash_password
from auth.store import TeamStore, UserStore
from core.config import Settings
from ratelimit.backends import MemoryRateLimiter

SESSION_SECRET = "Kq7vR2mX9pL4tZ8wN3bF6hJ1sD5gY0cV"
CSRF_SECRET = "Wm4nB8vC2xZ6lK0jH3gF7dS1aQ9pO5iU"
HMAC_SECRET = "Hn5tR9yE-wQ7uI4oP1aS8dF3gJ6kL0zX"
CRYPTO_KEY = base64.b64encode(bytes(range(32))).decode("ascii")

DEFAULT_PASSWORD = "Correct-Horse-42"


def make_settings(**overrides) -> Settings:
    values = {
        "debug": True,
        "session_secret": SESSION_SECRET,
        "csrf_secret": CSRF_SECRET,
        "hmac_secret": HMAC_SECRET,
        "crypto_key": CRYPTO_KEY,
        "database_url": "sqlite://",
        "rate_limit_backend": "memory",
        "app_base_url": "http://localhost:3000",
    }
    values.update(overrides)
    return Settings(**values)


def memory_db_url() -> str:
    return f"sqlite:///file:tillgate_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


class FakeClock:
    """Callable epoch-seconds clock. advance() moves it forward."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class Outbox:
    """Captures (email, url) pairs handed to the link notifier."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    def __call__(self, email: str, url: str) -> None:
        self.sent.append((email, url))


def create_user(
    services_or_store,
    codec: EmailCodec | None = None,
    *,
    email: str = "ana@example.com",
    password: str = DEFAULT_PASSWORD,
    name: str = "Ana",
    role: str = UserRole.USER.value,
    is_active: bool = True,
) -> User:
    """Insert a user directly through the store and return it with its id set."""
    if isinstance(services_or_store, Services):
        store, codec = services_or_store.user_store, services_or_store.codec
    else:
        store = services_or_store
    user = User(
        display_name=name,
        email_digest=codec.digest(email),
        email_enc=codec.encrypt(email),
        password_hash=hash_password(password),
        role=role,
        is_active=is_active,
    )
    user.id = store.create_user(user)
    return user


# ---------------------------------------------------------------------------
# Unit fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def wall_clock(clock: FakeClock, monkeypatch: pytest.MonkeyPatch) -> FakeClock:
    """Drive time.time() from the FakeClock. The limits storages read the wall clock directly."""
    monkeypatch.setattr(time, "time", clock)
    return clock


@pytest.fixture
def user_store() -> Generator[UserStore, None, None]:
    store = UserStore(db_url=memory_db_url())
    yield store
    store.close()


@pytest.fixture
def team_store(user_store: UserStore) -> TeamStore:
    return TeamStore(user_store.engine)


@pytest.fixture
def codec() -> EmailCodec:
    return EmailCodec(HMAC_SECRET.encode("utf-8"), bytes(range(32)))


# ---------------------------------------------------------------------------
# Integration fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(services: Services):
    """Return an async context manager that replaces the real lifespan.

    Wires the pre-built test container into app.state so routes see isolated
    in-memory stores and the injected clock and limiter.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.services = services
        yield

    return test_lifespan


def _build_test_services(settings: Settings, clock: FakeClock, outbox: Outbox) -> Services:
    return build_services(
        settings,
        user_store=UserStore(db_url=memory_db_url()),
        rate_limiter=MemoryRateLimiter(),
        link_notifier=outbox,
        clock=clock,
    )


@pytest.fixture
def outbox() -> Outbox:
    return Outbox()


@pytest.fixture
def services(clock: FakeClock, outbox: Outbox) -> Generator[Services, None, None]:
    svc = _build_test_services(make_settings(), clock, outbox)
    yield svc
    svc.close()


@pytest.fixture
def client(services: Services) -> Generator[TestClient, None, None]:
    """TestClient over the real app, development runtime (cookie "session", dev rate limits)."""
    app.router.lifespan_context = _patch_lifespan(services)
    with TestClient(app, raise_server_exceptions=True) as c:
        yield c


@pytest.fixture
def prod_services(clock: FakeClock, outbox: Outbox) -> Generator[Services, None, None]:
    svc = _build_test_services(make_settings(debug=False), clock, outbox)
    yield svc
    svc.close()


@pytest.fixture
def prod_client(prod_services: Services) -> Generator[TestClient, None, None]:
    """Production runtime: production rate limits, Secure __Host-session cookie, so https base URL."""
    app.router.lifespan_context = _patch_lifespan(prod_services)
    with TestClient(app, base_url="https://testserver", raise_server_exceptions=True) as c:
        yield c


# ---------------------------------------------------------------------------
# Flow helpers
# ---------------------------------------------------------------------------


def login(client: TestClient, email: str = "ana@example.com", password: str = DEFAULT_PASSWORD):
    return client.post("/api/v1/auth/login", json={"email": email, "password": password})


def csrf_headers(client: TestClient) -> dict[str, str]:
    resp = client.get("/api/v1/auth/csrf-token")
    assert resp.status_code == 200, resp.text
    return {"X-CSRF-Token": resp.json()["csrf_token"]}
