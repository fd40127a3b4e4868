"""
tests/conftest.py -- Shared test fixtures for the storefront integration tests.

This module provides:
  - _make_test_stores(): creates isolated in-memory DBs for the four stores
  - _patch_lifespan(): wires test stores and hubs into app.state, bypassing real startup
  - api_client: TestClient with an admin JWT for simple API tests
  - make_env(): a TestClient plus one user (and token) per role, for the
    permission-heavy route modules

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

The DEBUG env var must be set before any auth module import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.

The slowapi limiter keeps one in-memory counter store for the whole session;
every fixture resets it so a module never inherits another module's hits.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth.constants import RoleCodes
from auth.models import User
from auth.store import UserStore
from auth.tokens import create_access_token, hash_password
from content.store import ContentStore
from realtime.hub import Hub
from shop.store import ShopStore
from support.store import SupportStore

TEST_PASSWORD = "testpass123"

# name -> (role codes, support priority level)
ROLE_USERS: dict[str, tuple[list[str], int]] = {
    "admin": ([RoleCodes.ADMIN], 0),
    "care": ([RoleCodes.CUSTOMER_CARE], 0),
    "care2": ([RoleCodes.CUSTOMER_CARE], 0),
    "customer": ([RoleCodes.CUSTOMER], 0),
    "customer2": ([RoleCodes.CUSTOMER], 2),
    "creator": ([RoleCodes.CONTENT_CREATOR], 0),
}

# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


@dataclass
class TestStores:
    users: UserStore
    shop: ShopStore
    support: SupportStore
    content: ContentStore

    def close(self) -> None:
        self.content.close()
        self.support.close()
        self.shop.close()
        self.users.close()


def _make_test_stores(db_suffix: str) -> TestStores:
    """Create isolated named shared-memory SQLite stores for test isolation.

    Args:
        db_suffix: Unique string appended to the DB names so test modules
                   don't share state (e.g. 'api', 'tickets').
    """

    def url(name: str) -> str:
        return f"sqlite:///file:test_{name}_{db_suffix}?mode=memory&cache=shared&uri=true"

    stores = TestStores(
        users=UserStore(db_url=url("auth")),
        shop=ShopStore(db_url=url("shop")),
        support=SupportStore(db_url=url("support")),
        content=ContentStore(db_url=url("content")),
    )
    stores.users.seed_defaults()
    stores.shop.seed_defaults()
    stores.support.seed_defaults()
    return stores


def _patch_lifespan(stores: TestStores):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-created test stores into app.state so TestClient routes see
    isolated test DBs rather than the production databases. Hubs are created
    inside the lifespan so their locks belong to the TestClient event loop.

    The sweep_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = stores.users
        app.state.shop = stores.shop
        app.state.support = stores.support
        app.state.content = stores.content
        app.state.notification_hub = Hub("notifications")
        app.state.support_hub = Hub("support-chat")
        app.state.ticket_hub = Hub("tickets")
        app.state.sweep_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.sweep_task.cancel()

    return test_lifespan


def create_test_user(
    user_store: UserStore,
    username: str,
    roles: list[str],
    support_priority_level: int = 0,
    is_active: bool = True,
) -> tuple[int, str]:
    """Create a user with the shared test password and return (user_id, token)."""
    uid = user_store.create_user(
        User(
            username=username,
            email=f"{username}@example.com",
            full_name=username.title(),
            hashed_password=hash_password(TEST_PASSWORD),
            support_priority_level=support_priority_level,
            is_active=is_active,
        ),
        role_codes=roles,
    )
    token = create_access_token(user_id=uid, username=username, roles=roles, expire_seconds=3600)
    return uid, token


def auth(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


# ---------------------------------------------------------------------------
# Role environment
# ---------------------------------------------------------------------------


@dataclass
class TestEnv:
    """A running TestClient with one user per entry of ROLE_USERS."""

    client: TestClient
    stores: TestStores
    ids: dict[str, int] = field(default_factory=dict)
    tokens: dict[str, str] = field(default_factory=dict)

    def headers(self, name: str) -> dict[str, str]:
        return auth(self.tokens[name])


def make_env(db_suffix: str) -> Generator[TestEnv, None, None]:
    """Build stores and role users, start the TestClient and yield a TestEnv.

    Route modules wrap this in their own module-scoped fixture with a unique
    suffix:

        @pytest.fixture(scope="module")
        def env():
            yield from make_env("tickets")
    """
    stores = _make_test_stores(db_suffix)
    env_ids: dict[str, int] = {}
    env_tokens: dict[str, str] = {}
    for name, (roles, level) in ROLE_USERS.items():
        uid, token = create_test_user(stores.users, name, roles, support_priority_level=level)
        env_ids[name] = uid
        env_tokens[name] = token

    limiter.reset()
    app.router.lifespan_context = _patch_lifespan(stores)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield TestEnv(client=client, stores=stores, ids=env_ids, tokens=env_tokens)

    stores.close()


# ---------------------------------------------------------------------------
# Module-scoped fixtures -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, str, int], None, None]:
    """Yield (client, token, user_id) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit real route handlers but use isolated in-memory stores.
    The admin user is created before the client starts and the JWT is
    generated for use in Authorization headers.
    """
    stores = _make_test_stores("api")
    uid, token = create_test_user(stores.users, "testadmin", [RoleCodes.ADMIN])

    limiter.reset()
    app.router.lifespan_context = _patch_lifespan(stores)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, token, uid

    stores.close()
