"""
tests/conftest.py -- Shared test fixtures for RouteGuard.

This module provides:
  - db_url: a fresh named shared-memory SQLite URL per test
  - start_client(): TestClient over the real app with a patched lifespan
  - api_client: module-scoped ApiContext (client + super admin token + helpers)
  - a small business router mounted under /api/v1 (posts, fitness, an
    unmapped path) so the guard can be exercised end to end

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers and the guard's store lookups in a
thread pool. Plain :memory: DBs are per-connection and would present a blank
schema to each worker thread. The named URI format
(file:name?mode=memory&cache=shared&uri=true) shares one in-memory instance
across all connections in the same process.

DEBUG must be set before any core/auth import so get_settings() can
auto-generate SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator, Iterator
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass, field

# CRITICAL: Set env before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi import APIRouter, Depends
from fastapi.testclient import TestClient

from api.main import app, close_state, configure_state
from auth.dependencies import require_permission
from auth.models import User
from auth.permissions import FITNESS_READ_ALL
from auth.tokens import hash_password
from core.config import get_settings

# ---------------------------------------------------------------------------
# Business router stand-in
#
# Policies for these paths live in guard/route_map.py; the handlers only
# prove whether the request got through.
# ---------------------------------------------------------------------------

business_router = APIRouter()


@business_router.get("/posts")
async def list_posts():
    return {"posts": []}


@business_router.post("/posts", status_code=201)
async def create_post():
    return {"created": True}


@business_router.put("/posts/{post_id}")
async def update_post(post_id: str):
    return {"updated": post_id}


@business_router.get("/posts/private/posts")
async def private_posts():
    return {"posts": ["private"]}


@business_router.get("/fitness/records")
async def fitness_records():
    return {"records": []}


@business_router.get("/fitness/stats", dependencies=[Depends(require_permission(FITNESS_READ_ALL))])
async def fitness_stats():
    return {"stats": {}}


@business_router.get("/unmapped/ping")
async def unmapped_ping():
    return {"pong": True}


if not any(getattr(route, "path", "") == "/api/v1/unmapped/ping" for route in app.routes):
    app.include_router(business_router, prefix="/api/v1", tags=["Test business routes"])


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def memory_url(name: str) -> str:
    """Unique named shared-memory SQLite URL."""
    return f"sqlite:///file:{name}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


@pytest.fixture
def db_url() -> str:
    return memory_url("unit")


def _patch_lifespan(settings, db_url: str):
    """Return an async context manager that replaces the real lifespan.

    Wires every service onto app.state against the test database. The
    purge_task is a long-sleeping coroutine (a real asyncio.Task is required;
    MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        configure_state(app, settings, db_url=db_url)
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()
        close_state(app)

    return test_lifespan


# ---------------------------------------------------------------------------
# API context
# ---------------------------------------------------------------------------


@dataclass
class ApiContext:
    client: TestClient
    admin_id: int
    admin_token: str
    _counter: list[int] = field(default_factory=lambda: [0])

    @property
    def state(self):
        return self.client.app.state

    def headers(self, token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}"}

    @property
    def admin_headers(self) -> dict[str, str]:
        return self.headers(self.admin_token)

    def make_user(self, role: str = "user", extra: tuple[str, ...] = (), password: str = "password123") -> tuple[int, str]:
        """Create a user directly in the store and issue a token. Returns (id, token)."""
        self._counter[0] += 1
        username = f"{role}_{self._counter[0]}_{uuid.uuid4().hex[:6]}"
        user_id = self.state.user_store.create_user(
            User(username=username, role=role, hashed_password=hash_password(password), extra_permissions=list(extra))
        )
        user = self.state.user_store.get_by_id(user_id)
        return user_id, self.state.token_service.issue(user).token


@contextmanager
def start_client(name: str, **overrides) -> Iterator[ApiContext]:
    """Run the app against a fresh database with optional settings overrides."""
    settings = get_settings().model_copy(update=overrides)
    app.router.lifespan_context = _patch_lifespan(settings, memory_url(name))

    with TestClient(app, raise_server_exceptions=True) as client:
        store = app.state.user_store
        admin_id = store.create_user(
            User(username="rootadmin", role="super_admin", hashed_password=hash_password("rootpass123"))
        )
        admin_token = app.state.token_service.issue(store.get_by_id(admin_id)).token
        yield ApiContext(client=client, admin_id=admin_id, admin_token=admin_token)


@pytest.fixture(scope="module")
def api_client() -> Generator[ApiContext, None, None]:
    """Yield an ApiContext with the default (relaxed) session policy."""
    with start_client("api") as ctx:
        yield ctx
