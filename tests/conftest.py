"""
tests/conftest.py -- Shared test fixtures for IDecs integration tests.

This module provides:
  - _make_test_stores(): creates isolated in-memory DBs for users + nav
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - sign_headers(): timestamp / api-key headers for a request path
  - make_user: factory fixture that inserts a user with a hashed password
  - app_env: one TestClient per test module (follow_redirects=False) plus the
    stores and an admin session token
  - env: app_env with the client's cookie jar emptied before each test

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

Environment variables must be set before any accounts/core import: settings
are read once and cached by get_settings().
"""

from __future__ import annotations

import asyncio
import os
import time
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass

# CRITICAL: set before any app import so get_settings() sees them.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("OTP_TEST_CODE", "888888")
os.environ.setdefault("SSO_ALLOWED_SERVICES", '["https://app.example.com/"]')
os.environ.setdefault("API_SIGNATURE_ENABLED", "true")

import pytest
from fastapi.testclient import TestClient

from accounts.models import User
from accounts.store import UserStore
from accounts.tokens import create_access_token
from asgi import app
from core.crypto import generate_api_key, hash_password
from nav.store import NavStore

OTP_TEST_CODE = "888888"
ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "Admin#Pass1"
SERVICE = "https://app.example.com/callback"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def sign_headers(path: str, timestamp: int | None = None) -> dict[str, str]:
    """Return the request signature headers for path."""
    ts = timestamp if timestamp is not None else int(time.time() * 1000)
    return {"timestamp": str(ts), "api-key": generate_api_key(ts, path)}


def _make_test_stores(db_suffix: str) -> tuple[UserStore, NavStore]:
    """Create isolated named shared-memory SQLite stores for test isolation.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state.
    """
    user_url = f"sqlite:///file:test_users_{db_suffix}?mode=memory&cache=shared&uri=true"
    nav_url = f"sqlite:///file:test_nav_{db_suffix}?mode=memory&cache=shared&uri=true"
    return UserStore(db_url=user_url), NavStore(db_url=nav_url)


def _patch_lifespan(user_store: UserStore, nav_store: NavStore, setup_required: bool = False):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine (a real asyncio.Task is
    required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = user_store
        app.state.nav_store = nav_store
        app.state.setup_required = setup_required
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


def _insert_user(
    store: UserStore,
    email: str | None = None,
    phone: str | None = None,
    password: str = "User#Pass1",
    role: str = "user",
    username: str | None = None,
    is_active: bool = True,
) -> User:
    user_id = store.create_user(
        User(
            username=username,
            email=email,
            phone=phone,
            password=hash_password(password),
            role=role,
            is_active=is_active,
        )
    )
    return store.get_by_id(user_id)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@dataclass
class AppEnv:
    client: TestClient
    user_store: UserStore
    nav_store: NavStore
    admin: User
    admin_token: str

    def auth(self, token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}"}

    def api(self, method: str, path: str, token: str | None = None, **kwargs):
        """Signed API call. path may carry a query string; only the path is signed."""
        headers = sign_headers(path.split("?", 1)[0])
        if token:
            headers.update(self.auth(token))
        headers.update(kwargs.pop("headers", {}))
        return self.client.request(method, path, headers=headers, **kwargs)


@pytest.fixture(scope="module")
def app_env(request) -> Generator[AppEnv, None, None]:
    """Yield an AppEnv bound to fresh stores for the requesting test module.

    The admin user is created before the client starts. follow_redirects is
    off so web and SSO tests can assert on Location headers.
    """
    suffix = request.module.__name__.rsplit(".", 1)[-1]
    user_store, nav_store = _make_test_stores(suffix)
    admin = _insert_user(user_store, email=ADMIN_EMAIL, password=ADMIN_PASSWORD, role="admin", username="admin")
    admin_token = create_access_token(admin.id, admin.role, expire_seconds=3600)

    app.router.lifespan_context = _patch_lifespan(user_store, nav_store)

    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield AppEnv(client, user_store, nav_store, admin, admin_token)

    nav_store.close()
    user_store.close()


@pytest.fixture
def env(app_env: AppEnv) -> AppEnv:
    """app_env with an empty cookie jar, so no session leaks between tests."""
    app_env.client.cookies.clear()
    return app_env


@pytest.fixture
def make_user(app_env: AppEnv) -> Callable[..., User]:
    """Factory: make_user(email=..., phone=..., password=..., role=...) -> User."""

    def _factory(**kwargs) -> User:
        return _insert_user(app_env.user_store, **kwargs)

    return _factory
