"""FastAPI dependency injection for settings, database sessions and services."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator, Callable
from contextlib import AbstractAsyncContextManager
from typing import Annotated

from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sync_core.state.database import get_engine

from sync_api.config import SyncSettings, load_sync_settings
from sync_api.services.event_bus import EventBus, get_event_bus
from sync_api.services.mutation_dispatcher import MutationDispatcher
from sync_api.services.scope import ServiceScope, tenant_scope

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: SyncSettings | None = None


def get_settings() -> SyncSettings:
    """Return the cached :class:`SyncSettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_sync_settings()
    return _settings_cache


SettingsDep = Annotated[SyncSettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: SyncSettings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(
        settings.database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
    )
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory."""
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


SessionFactoryDep = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` **without** tenant context.

    Only for the health and readiness probes.  Tenant-scoped work goes
    through :data:`ScopeDep`, which opens its own transaction per operation.
    """
    session = get_session_factory()()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


PublicSessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# ---------------------------------------------------------------------------
# Tenant / user identity (populated by AuthenticationMiddleware)
# ---------------------------------------------------------------------------


def get_tenant_id(request: Request) -> str:
    """Extract tenant_id from authenticated request state."""
    tenant_id = getattr(request.state, "tenant_id", None)
    if tenant_id is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return tenant_id


TenantDep = Annotated[str, Depends(get_tenant_id)]


def get_user_identity(request: Request) -> str:
    """Extract user identity from authenticated request state."""
    return getattr(request.state, "sub", "anonymous")


UserDep = Annotated[str, Depends(get_user_identity)]

# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------

EventBusDep = Annotated[EventBus, Depends(get_event_bus)]

ScopeFactory = Callable[[], AbstractAsyncContextManager[ServiceScope]]


def get_scope_factory(
    session_factory: SessionFactoryDep,
    tenant_id: TenantDep,
    settings: SettingsDep,
    event_bus: EventBusDep,
) -> ScopeFactory:
    """Return a callable opening a committed-on-exit transaction for the caller's tenant.

    Usage::

        async with scope() as services:
            return await services.invoices.issue(invoice_id)
    """

    def _open() -> AbstractAsyncContextManager[ServiceScope]:
        return tenant_scope(session_factory, tenant_id, settings, event_bus)

    return _open


ScopeDep = Annotated[ScopeFactory, Depends(get_scope_factory)]


def get_dispatcher(
    session_factory: SessionFactoryDep,
    settings: SettingsDep,
    event_bus: EventBusDep,
) -> MutationDispatcher:
    return MutationDispatcher(session_factory, settings, event_bus)


DispatcherDep = Annotated[MutationDispatcher, Depends(get_dispatcher)]
