"""
tests/conftest.py -- Shared test fixtures for Lattice integration tests.

This module provides:
  - memory_url(): a named shared-memory SQLite URL unique to the caller
  - _make_test_stores(): isolated in-memory user, CMDB and audit stores
  - make_service(): a CMDBService wired to in-memory stores and a real graph index
  - _patch_lifespan(): wires a test service into app.state, bypassing real startup
  - api_client: TestClient with admin JWT for API integration tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool, and the dashboard
fans its counts out over worker threads. Plain :memory: DBs are
per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

The DEBUG env var must be set before any auth/core import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from typing import Optional

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from audit.store import AuditStore
from auth.models import User
from auth.store import UserStore
from auth.tokens import create_access_token
from cache.store import CICache
from cmdb.models import AttributeDefinition, AttributeValidation, CITypeDefinition, Principal
from cmdb.service import CMDBService
from cmdb.store import CMDBStore
from core.config import get_settings
from graph.index import NetworkXGraphIndex
from graph.sync import GraphSync

# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def memory_url(prefix: str) -> str:
    """Return a shared-memory SQLite URL no other test will reuse."""
    return f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


def _make_test_stores(db_suffix: str) -> tuple[UserStore, CMDBStore, AuditStore]:
    """Create isolated named shared-memory SQLite stores for test isolation."""
    user_store = UserStore(db_url=memory_url(f"test_auth_{db_suffix}"))
    cmdb = CMDBStore(db_url=memory_url(f"test_cmdb_{db_suffix}"))
    audit = AuditStore(db_url=memory_url(f"test_audit_{db_suffix}"))
    return user_store, cmdb, audit


def make_service(db_suffix: str, cache=None, audit=None, graph=None, **kwargs) -> CMDBService:
    """Build a CMDBService over fresh in-memory stores.

    base_delay_seconds=0 makes outbox rows whose mirror failed due again
    immediately, so drain() can be exercised without sleeping.
    """
    users, store, real_audit = _make_test_stores(db_suffix)
    graph = graph or NetworkXGraphIndex()
    sync = GraphSync(store, graph, base_delay_seconds=0, max_attempts=kwargs.pop("max_attempts", 3))
    return CMDBService(
        store,
        graph,
        cache if cache is not None else CICache(":memory:"),
        audit if audit is not None else real_audit,
        users,
        sync=sync,
        store_timeout=kwargs.pop("store_timeout", 5.0),
        **kwargs,
    )


def server_type(name: str = "Server") -> CITypeDefinition:
    """A CI type with one required and three optional attributes, used across tests."""
    return CITypeDefinition(
        name=name,
        description="Physical or virtual host",
        required_attributes=[
            AttributeDefinition(
                name="hostname",
                type="string",
                validation=AttributeValidation(min_length=1, max_length=63),
            ),
        ],
        optional_attributes=[
            AttributeDefinition(name="cpu_cores", type="integer", validation=AttributeValidation(min=1, max=256)),
            AttributeDefinition(name="ip", type="string", validation=AttributeValidation(format="ipv4")),
            AttributeDefinition(
                name="environment",
                type="string",
                validation=AttributeValidation(enum=["production", "staging", "dev"]),
            ),
        ],
    )


ACTOR = Principal(id="7", ip_address="10.0.0.9", user_agent="pytest")


@pytest.fixture
def service() -> Generator[CMDBService, None, None]:
    svc = make_service("svc")
    yield svc
    svc.close()


@pytest.fixture
def service_factory():
    """Build services with substituted collaborators; all are closed at teardown.

    Usage:
        svc = service_factory(cache=MagicMock(), store_timeout=0.05)
    """
    created: list[CMDBService] = []

    def _make(**kwargs) -> CMDBService:
        svc = make_service(f"factory{len(created)}", **kwargs)
        created.append(svc)
        return svc

    yield _make
    for svc in created:
        svc.close()


@pytest.fixture
def server_definition() -> CITypeDefinition:
    return server_type()


@pytest.fixture
def actor() -> Principal:
    return ACTOR


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------


def _patch_lifespan(service: CMDBService):
    """Return an async context manager that replaces the real lifespan.

    Wires the pre-built test service into app.state so TestClient routes see
    isolated test DBs rather than the production databases.

    The drain_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.settings = get_settings()
        app.state.service = service
        app.state.user_store = service.users
        app.state.audit_store = service.audit
        app.state.cache = service.cache
        app.state.drain_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.drain_task.cancel()

    return test_lifespan


def issue_token(service: CMDBService, username: str, role: str) -> tuple[str, int]:
    uid = service.users.create_user(User(username=username, role=role))
    return create_access_token(user_id=uid, username=username, role=role, expire_seconds=3600), uid


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, str, int], None, None]:
    """Yield (client, token, user_id) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit real route handlers but use isolated in-memory stores.
    Rate limiting is switched off: the suite issues far more requests per
    minute from one client address than the production limits allow.
    """
    svc = make_service("api")
    token, uid = issue_token(svc, "testadmin", "admin")

    app.router.lifespan_context = _patch_lifespan(svc)
    limiter.enabled = False

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, token, uid

    limiter.enabled = True
    svc.close()


def auth_headers(token: Optional[str]) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"} if token else {}
