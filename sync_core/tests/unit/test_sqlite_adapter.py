"""Tests for the SQLite adapter used in local and test mode."""

from __future__ import annotations

from pathlib import Path

import pytest
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from sync_core.state.database import get_engine, get_session, is_valid_tenant_id, set_tenant_context
from sync_core.state.sqlite_adapter import create_local_tables, get_local_engine

# ---------------------------------------------------------------------------
# Engine creation
# ---------------------------------------------------------------------------


class TestGetLocalEngine:
    def test_creates_in_memory_engine(self) -> None:
        engine = get_local_engine(":memory:")
        assert "sqlite" in str(engine.url)

    def test_creates_parent_directories(self, tmp_path: Path) -> None:
        db_path = tmp_path / "nested" / "deep" / "test.db"
        engine = get_local_engine(db_path)
        assert db_path.parent.exists()
        assert "test.db" in str(engine.url)

    def test_get_engine_dispatches_sqlite_urls(self, tmp_path: Path) -> None:
        engine = get_engine(f"sqlite+aiosqlite:///{tmp_path / 'via-url.db'}")
        assert engine.dialect.name == "sqlite"
        assert "via-url.db" in str(engine.url)


# ---------------------------------------------------------------------------
# Table creation and connection setup
# ---------------------------------------------------------------------------


class TestCreateLocalTables:
    @pytest.mark.asyncio
    async def test_creates_all_tables(self, tmp_path: Path) -> None:
        engine = get_local_engine(tmp_path / "tables.db")
        await create_local_tables(engine)

        async with engine.connect() as conn:
            rows = await conn.execute(text("SELECT name FROM sqlite_master WHERE type='table'"))
            names = {row[0] for row in rows}
        await engine.dispose()

        assert {
            "tenants",
            "customers",
            "products",
            "invoices",
            "invoice_line_items",
            "idempotency_keys",
            "usage_counters",
            "document_sequences",
        } <= names

    @pytest.mark.asyncio
    async def test_idempotent_creation(self, tmp_path: Path) -> None:
        engine = get_local_engine(tmp_path / "idem.db")
        await create_local_tables(engine)
        await create_local_tables(engine)
        await engine.dispose()

    @pytest.mark.asyncio
    async def test_file_database_uses_wal_and_foreign_keys(self, tmp_path: Path) -> None:
        engine = get_local_engine(tmp_path / "pragmas.db")
        async with engine.connect() as conn:
            journal = (await conn.execute(text("PRAGMA journal_mode"))).scalar()
            fks = (await conn.execute(text("PRAGMA foreign_keys"))).scalar()
        await engine.dispose()

        assert str(journal).lower() == "wal"
        assert fks == 1


# ---------------------------------------------------------------------------
# Sessions and tenant context
# ---------------------------------------------------------------------------


class TestSessions:
    @pytest.mark.asyncio
    async def test_session_commit_on_success(self, tmp_path: Path) -> None:
        engine = get_local_engine(tmp_path / "s.db")
        await create_local_tables(engine)

        async with get_session(engine) as session:
            assert (await session.execute(text("SELECT 1"))).scalar() == 1

        await engine.dispose()

    @pytest.mark.asyncio
    async def test_session_rollback_on_error(self, tmp_path: Path) -> None:
        engine = get_local_engine(tmp_path / "r.db")
        await create_local_tables(engine)

        with pytest.raises(ValueError, match="test error"):
            async with get_session(engine) as _session:
                raise ValueError("test error")

        await engine.dispose()

    @pytest.mark.asyncio
    async def test_tenant_context_is_noop_on_sqlite(self, tmp_path: Path) -> None:
        engine = get_local_engine(tmp_path / "t.db")
        async with get_session(engine) as session:
            assert isinstance(session, AsyncSession)
            await set_tenant_context(session, "tenant-a")
        await engine.dispose()

    @pytest.mark.asyncio
    async def test_tenant_context_rejects_invalid_id(self, tmp_path: Path) -> None:
        engine = get_local_engine(tmp_path / "bad.db")
        async with get_session(engine) as session:
            with pytest.raises(ValueError, match="Invalid tenant_id"):
                await set_tenant_context(session, "bad tenant; DROP TABLE")
        await engine.dispose()


class TestTenantIdValidation:
    @pytest.mark.parametrize("tenant_id", ["acme", "tenant-1", "A_B_9", "x" * 64])
    def test_valid(self, tenant_id: str) -> None:
        assert is_valid_tenant_id(tenant_id)

    @pytest.mark.parametrize("tenant_id", ["", "x" * 65, "has space", "semi;colon", "quote'"])
    def test_invalid(self, tenant_id: str) -> None:
        assert not is_valid_tenant_id(tenant_id)
