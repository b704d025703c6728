"""Shared fixtures for sync API tests.

Every test gets its own SQLite database under ``tmp_path`` wired into the
application's global engine, a tenant factory, a mutation dispatcher and an
async httpx client bound to the ASGI app with a valid bearer token.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Awaitable, Callable
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from pydantic import SecretStr
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sync_api.config import PlatformEnv, SyncSettings
from sync_api.dependencies import dispose_engine, get_session_factory, init_engine
from sync_api.main import create_app
from sync_api.security import sign_token
from sync_api.services.event_bus import EventBus, EventPayload
from sync_api.services.mutation_dispatcher import MutationDispatcher
from sync_api.services.scope import ServiceScope, tenant_scope
from sync_core.models.mutation import Mutation
from sync_core.state.repository import TenantRepository
from sync_core.state.sqlite_adapter import create_local_tables

TENANT = "tenant-a"
OTHER_TENANT = "tenant-b"

_TEST_SECRET = "test-secret-for-gst-sync"


def _auth_headers(tenant_id: str = TENANT, sub: str = "test-user") -> dict[str, str]:
    return {"Authorization": f"Bearer {sign_token(_TEST_SECRET, tenant_id, sub)}"}


@pytest.fixture()
def auth_headers() -> Callable[..., dict[str, str]]:
    """Return a builder for ``Authorization`` headers signed with the test secret."""
    return _auth_headers


@pytest.fixture()
def auth_secret() -> str:
    return _TEST_SECRET


# ---------------------------------------------------------------------------
# Settings and database
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_settings(tmp_path: Path) -> SyncSettings:
    """Return a settings object pointing at a per-test SQLite file."""
    return SyncSettings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'sync.db'}",
        platform_env=PlatformEnv.DEV,
        auth_secret=SecretStr(_TEST_SECRET),
        cors_origins=["http://localhost:3000"],
        full_sync_invoice_limit=2,
        full_sync_customer_limit=2,
        full_sync_product_limit=2,
        delta_overlap_seconds=0,
    )


@pytest_asyncio.fixture()
async def session_factory(test_settings: SyncSettings) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Initialise the global engine on the test database and create tables."""
    engine = init_engine(test_settings)
    await create_local_tables(engine)
    yield get_session_factory()
    await dispose_engine()


TenantFactory = Callable[..., Awaitable[None]]


@pytest.fixture()
def make_tenant(session_factory: async_sessionmaker[AsyncSession]) -> TenantFactory:
    """Return an async callable provisioning a tenant row.

    Keyword arguments are passed to :meth:`TenantRepository.create`.
    """

    async def _make(tenant_id: str = TENANT, **fields: Any) -> None:
        fields.setdefault("name", f"Tenant {tenant_id}")
        fields.setdefault("state_code", "29")
        async with session_factory() as session:
            await TenantRepository(session, tenant_id).create(**fields)
            await session.commit()

    return _make


@pytest_asyncio.fixture()
async def tenant(make_tenant: TenantFactory) -> str:
    """Provision the default tenant (free plan, status workflow on)."""
    await make_tenant(TENANT)
    return TENANT


# ---------------------------------------------------------------------------
# Events and dispatcher
# ---------------------------------------------------------------------------


@pytest.fixture()
def recorded_events() -> list[EventPayload]:
    return []


@pytest.fixture()
def event_bus(recorded_events: list[EventPayload]) -> EventBus:
    """An event bus that records every published event."""
    bus = EventBus()

    async def _record(payload: EventPayload) -> None:
        recorded_events.append(payload)

    bus.subscribe(_record)
    return bus


@pytest.fixture()
def dispatcher(
    session_factory: async_sessionmaker[AsyncSession],
    test_settings: SyncSettings,
    event_bus: EventBus,
) -> MutationDispatcher:
    return MutationDispatcher(session_factory, test_settings, event_bus)


@pytest.fixture()
def run(
    session_factory: async_sessionmaker[AsyncSession],
    test_settings: SyncSettings,
    event_bus: EventBus,
) -> Callable[..., Awaitable[Any]]:
    """Return ``run(fn, tenant_id=TENANT)`` awaiting ``fn(scope)`` in a committed tenant transaction."""

    async def _run(fn: Callable[[ServiceScope], Awaitable[Any]], tenant_id: str = TENANT) -> Any:
        async with tenant_scope(session_factory, tenant_id, test_settings, event_bus) as scope:
            return await fn(scope)

    return _run


@pytest.fixture()
def mutation() -> Callable[..., Mutation]:
    """Return a builder for client mutations."""
    counter = {"n": 0}

    def _build(mutation_type: str, data: dict[str, Any], *, key: str | None = None) -> Mutation:
        counter["n"] += 1
        return Mutation(
            client_id=f"m{counter['n']}",
            type=mutation_type,
            idempotency_key=key,
            data=data,
        )

    return _build


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------


@pytest.fixture()
def app(test_settings: SyncSettings, session_factory: async_sessionmaker[AsyncSession]):
    """Create the FastAPI app bound to the test settings and database."""
    return create_app(test_settings)


@pytest_asyncio.fixture()
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Yield an async httpx client authenticated as :data:`TENANT`.

    Uses ASGITransport so requests go directly to the ASGI app without
    opening a real TCP socket.  The app lifespan does not run; the
    ``session_factory`` fixture has already initialised the engine.
    """
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test", headers=_auth_headers()) as ac:
        yield ac
