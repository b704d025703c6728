"""Fixtures for sync_core unit tests: a throwaway SQLite store per test."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from pathlib import Path

import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sync_core.state.repository import TenantRepository
from sync_core.state.sqlite_adapter import create_local_tables, get_local_engine

TENANT = "tenant-a"
OTHER_TENANT = "tenant-b"


@pytest_asyncio.fixture()
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    eng = get_local_engine(tmp_path / "state.db")
    await create_local_tables(eng)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture()
async def session(engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """A session with both tenants provisioned and committed."""
    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as sess:
        await TenantRepository(sess, TENANT).create(name="Tenant A", state_code="29")
        await TenantRepository(sess, OTHER_TENANT).create(name="Tenant B", state_code="27")
        await sess.commit()
        yield sess
        await sess.rollback()
