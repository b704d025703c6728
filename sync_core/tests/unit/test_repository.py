"""Unit tests for the tenant-scoped repositories.

These tests run against a real SQLite database (aiosqlite) in ``tmp_path``
so the dialect-aware upserts and ``UPDATE ... RETURNING`` counters are
exercised end to end.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession
from sync_core.state.repository import (
    CustomerRepository,
    DocumentSequenceRepository,
    IdempotencyRepository,
    InvoiceRepository,
    ProductRepository,
    TenantRepository,
    UsageCounterRepository,
    _escape_like,
)
from sync_core.state.tables import InvoiceTable, LineItemTable

TENANT = "tenant-a"
OTHER_TENANT = "tenant-b"


def _invoice(invoice_id: str, number: str, *, status: str = "DRAFT", issued_at: datetime | None = None) -> InvoiceTable:
    return InvoiceTable(
        invoice_id=invoice_id,
        invoice_number=number,
        status=status,
        issued_at=issued_at,
        line_items=[
            LineItemTable(line_item_id=f"{invoice_id}-l1", name="Widget", quantity=2, rate=10.0, line_total=20.0),
        ],
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestEscapeLike:
    def test_escapes_wildcards(self) -> None:
        assert _escape_like("INV_%") == "INV\\_\\%"

    def test_escapes_backslash_first(self) -> None:
        assert _escape_like("a\\b") == "a\\\\b"


# ---------------------------------------------------------------------------
# TenantRepository
# ---------------------------------------------------------------------------


class TestTenantRepository:
    @pytest.mark.asyncio
    async def test_get_returns_own_row(self, session: AsyncSession) -> None:
        tenant = await TenantRepository(session, TENANT).get()
        assert tenant is not None
        assert tenant.name == "Tenant A"
        assert tenant.invoice_prefix == "INV-"
        assert tenant.next_invoice_number == 1

    @pytest.mark.asyncio
    async def test_get_missing_tenant(self, session: AsyncSession) -> None:
        assert await TenantRepository(session, "nobody").get() is None

    @pytest.mark.asyncio
    async def test_advance_invoice_counter_returns_pre_increment_value(self, session: AsyncSession) -> None:
        repo = TenantRepository(session, TENANT)
        assert await repo.advance_invoice_counter() == ("INV-", 1)
        assert await repo.advance_invoice_counter() == ("INV-", 2)

        tenant = await repo.get()
        assert tenant is not None
        await session.refresh(tenant)
        assert tenant.next_invoice_number == 3

    @pytest.mark.asyncio
    async def test_advance_invoice_counter_missing_tenant(self, session: AsyncSession) -> None:
        assert await TenantRepository(session, "nobody").advance_invoice_counter() is None

    @pytest.mark.asyncio
    async def test_set_invoice_counter(self, session: AsyncSession) -> None:
        repo = TenantRepository(session, TENANT)
        await repo.set_invoice_counter(42)
        assert await repo.advance_invoice_counter() == ("INV-", 42)


# ---------------------------------------------------------------------------
# Catalog repositories
# ---------------------------------------------------------------------------


class TestCustomerRepository:
    @pytest.mark.asyncio
    async def test_create_and_get(self, session: AsyncSession) -> None:
        repo = CustomerRepository(session, TENANT)
        await repo.create(customer_id="c1", name="Asha", state_code="29")

        row = await repo.get("c1")
        assert row is not None
        assert row.name == "Asha"
        assert row.tenant_id == TENANT

    @pytest.mark.asyncio
    async def test_get_is_tenant_scoped(self, session: AsyncSession) -> None:
        await CustomerRepository(session, TENANT).create(customer_id="c1", name="Asha")

        other = CustomerRepository(session, OTHER_TENANT)
        assert await other.get("c1") is None
        assert await other.find_owner("c1") == TENANT
        assert await other.find_owner("missing") is None

    @pytest.mark.asyncio
    async def test_update_fields_bumps_updated_at(self, session: AsyncSession) -> None:
        repo = CustomerRepository(session, TENANT)
        row = await repo.create(customer_id="c1", name="Asha")
        before = row.updated_at

        await repo.update_fields(row, {"phone": "98450"})

        assert row.phone == "98450"
        assert row.updated_at > before

    @pytest.mark.asyncio
    async def test_list_changed_since_oldest_first(self, session: AsyncSession) -> None:
        repo = CustomerRepository(session, TENANT)
        first = await repo.create(customer_id="c1", name="One")
        second = await repo.create(customer_id="c2", name="Two")
        await repo.update_fields(first, {"name": "One again"})

        rows = await repo.list_changed_since(second.updated_at - timedelta(microseconds=1))

        assert [r.customer_id for r in rows] == ["c2", "c1"]

    @pytest.mark.asyncio
    async def test_list_recent_paginates_newest_first(self, session: AsyncSession) -> None:
        repo = CustomerRepository(session, TENANT)
        for i in range(5):
            await repo.create(customer_id=f"c{i}", name=f"C{i}")

        page_one = await repo.list_recent(2)
        page_two = await repo.list_recent(2, offset=2)

        assert [r.customer_id for r in page_one] == ["c4", "c3"]
        assert [r.customer_id for r in page_two] == ["c2", "c1"]
        assert await repo.count() == 5

    @staticmethod
    async def _stamped(session: AsyncSession, stamp: datetime) -> CustomerRepository:
        repo = CustomerRepository(session, TENANT)
        # c1 and c2 share a timestamp so the id breaks the tie.
        for i, seconds in enumerate([0, 1, 1, 2]):
            row = await repo.create(customer_id=f"c{i}", name=f"C{i}")
            row.updated_at = stamp + timedelta(seconds=seconds)
        await session.flush()
        return repo

    @pytest.mark.asyncio
    async def test_list_recent_resumes_after_position(self, session: AsyncSession) -> None:
        stamp = datetime(2025, 3, 1, 12, 0, tzinfo=UTC)
        repo = await self._stamped(session, stamp)

        rows = await repo.list_recent(10, before=(stamp + timedelta(seconds=1), "c2"))

        assert [r.customer_id for r in rows] == ["c1", "c0"]

    @pytest.mark.asyncio
    async def test_list_recent_until_excludes_later_changes(self, session: AsyncSession) -> None:
        stamp = datetime(2025, 3, 1, 12, 0, tzinfo=UTC)
        repo = await self._stamped(session, stamp)

        rows = await repo.list_recent(10, until=stamp + timedelta(seconds=1))

        assert [r.customer_id for r in rows] == ["c2", "c1", "c0"]


class TestProductRepository:
    @pytest.mark.asyncio
    async def test_missing_ids(self, session: AsyncSession) -> None:
        await ProductRepository(session, TENANT).create(product_id="p1", name="Widget", default_rate=10.0)
        await ProductRepository(session, OTHER_TENANT).create(product_id="p2", name="Foreign")

        missing = await ProductRepository(session, TENANT).missing_ids({"p1", "p2", "p3"})

        assert missing == {"p2", "p3"}

    @pytest.mark.asyncio
    async def test_missing_ids_empty_input(self, session: AsyncSession) -> None:
        assert await ProductRepository(session, TENANT).missing_ids(set()) == set()


# ---------------------------------------------------------------------------
# InvoiceRepository
# ---------------------------------------------------------------------------


class TestInvoiceRepository:
    @pytest.mark.asyncio
    async def test_create_with_line_items(self, session: AsyncSession) -> None:
        repo = InvoiceRepository(session, TENANT)
        await repo.create(_invoice("i1", "INV-0001"))

        row = await repo.get("i1")
        assert row is not None
        assert row.tenant_id == TENANT
        assert [li.name for li in row.line_items] == ["Widget"]

    @pytest.mark.asyncio
    async def test_get_is_tenant_scoped(self, session: AsyncSession) -> None:
        await InvoiceRepository(session, TENANT).create(_invoice("i1", "INV-0001"))

        other = InvoiceRepository(session, OTHER_TENANT)
        assert await other.get("i1") is None
        assert await other.find_owner("i1") == TENANT

    @pytest.mark.asyncio
    async def test_number_exists_is_tenant_scoped(self, session: AsyncSession) -> None:
        await InvoiceRepository(session, TENANT).create(_invoice("i1", "INV-0001"))

        assert await InvoiceRepository(session, TENANT).number_exists("INV-0001")
        assert not await InvoiceRepository(session, OTHER_TENANT).number_exists("INV-0001")

    @pytest.mark.asyncio
    async def test_max_numeric_suffix_ignores_non_numeric(self, session: AsyncSession) -> None:
        repo = InvoiceRepository(session, TENANT)
        await repo.create(_invoice("i1", "INV-0007"))
        await repo.create(_invoice("i2", "INV-0012"))
        await repo.create(_invoice("i3", "INV-12A"))
        await repo.create(_invoice("i4", "EST-0099"))

        assert await repo.max_numeric_suffix("INV-") == 12
        assert await repo.max_numeric_suffix("CN-") == 0

    @pytest.mark.asyncio
    async def test_max_numeric_suffix_treats_underscore_literally(self, session: AsyncSession) -> None:
        repo = InvoiceRepository(session, TENANT)
        await repo.create(_invoice("i1", "INVX0050"))
        await repo.create(_invoice("i2", "INV_0003"))

        assert await repo.max_numeric_suffix("INV_") == 3

    @pytest.mark.asyncio
    async def test_replace_line_items(self, session: AsyncSession) -> None:
        repo = InvoiceRepository(session, TENANT)
        row = await repo.create(_invoice("i1", "INV-0001"))

        await repo.replace_line_items(
            row,
            [
                LineItemTable(line_item_id="i1-l1", name="Reused id", quantity=1, rate=5.0, line_total=5.0, position=0),
                LineItemTable(line_item_id="i1-l2", name="New", quantity=3, rate=1.0, line_total=3.0, position=1),
            ],
        )

        reloaded = await repo.get("i1")
        assert reloaded is not None
        assert [li.name for li in reloaded.line_items] == ["Reused id", "New"]

    @pytest.mark.asyncio
    async def test_delete_is_tenant_scoped(self, session: AsyncSession) -> None:
        await InvoiceRepository(session, TENANT).create(_invoice("i1", "INV-0001"))

        assert not await InvoiceRepository(session, OTHER_TENANT).delete("i1")
        assert await InvoiceRepository(session, TENANT).delete("i1")
        assert await InvoiceRepository(session, TENANT).find_owner("i1") is None

    @pytest.mark.asyncio
    async def test_count_issued_between(self, session: AsyncSession) -> None:
        repo = InvoiceRepository(session, TENANT)
        start = datetime(2025, 3, 1, tzinfo=UTC)
        end = datetime(2025, 4, 1, tzinfo=UTC)
        await repo.create(_invoice("i1", "INV-0001", status="ISSUED", issued_at=datetime(2025, 3, 5, tzinfo=UTC)))
        await repo.create(_invoice("i2", "INV-0002", status="PAID", issued_at=datetime(2025, 3, 31, 23, tzinfo=UTC)))
        await repo.create(_invoice("i3", "INV-0003", status="ISSUED", issued_at=datetime(2025, 4, 1, tzinfo=UTC)))
        await repo.create(_invoice("i4", "INV-0004"))

        assert await repo.count_issued_between(start, end) == 2


# ---------------------------------------------------------------------------
# IdempotencyRepository
# ---------------------------------------------------------------------------


class TestIdempotencyRepository:
    @pytest.mark.asyncio
    async def test_upsert_and_get(self, session: AsyncSession) -> None:
        repo = IdempotencyRepository(session, TENANT)
        await repo.upsert("k1", {"id": "i1"}, "hash-1")

        record = await repo.get("k1")
        assert record is not None
        assert record.response_json == {"id": "i1"}
        assert record.payload_hash == "hash-1"

    @pytest.mark.asyncio
    async def test_upsert_overwrites(self, session: AsyncSession) -> None:
        repo = IdempotencyRepository(session, TENANT)
        await repo.upsert("k1", {"v": 1}, "h1")
        await repo.upsert("k1", {"v": 2}, "h2")
        session.expunge_all()

        record = await repo.get("k1")
        assert record is not None
        assert record.response_json == {"v": 2}

    @pytest.mark.asyncio
    async def test_keys_are_scoped_per_tenant(self, session: AsyncSession) -> None:
        await IdempotencyRepository(session, TENANT).upsert("shared", {"t": "a"}, None)
        await IdempotencyRepository(session, OTHER_TENANT).upsert("shared", {"t": "b"}, None)

        a = await IdempotencyRepository(session, TENANT).get("shared")
        b = await IdempotencyRepository(session, OTHER_TENANT).get("shared")
        assert a is not None and a.response_json == {"t": "a"}
        assert b is not None and b.response_json == {"t": "b"}

    @pytest.mark.asyncio
    async def test_purge_older_than(self, session: AsyncSession) -> None:
        repo = IdempotencyRepository(session, TENANT)
        await repo.upsert("old", {}, None)
        await repo.upsert("new", {}, None)
        old = await repo.get("old")
        assert old is not None
        old.created_at = datetime.now(UTC) - timedelta(hours=48)
        await session.flush()

        removed = await repo.purge_older_than(datetime.now(UTC) - timedelta(hours=24))

        assert removed == 1
        assert await repo.get("new") is not None


# ---------------------------------------------------------------------------
# Counters
# ---------------------------------------------------------------------------


class TestUsageCounterRepository:
    @pytest.mark.asyncio
    async def test_missing_counter_is_none(self, session: AsyncSession) -> None:
        assert await UsageCounterRepository(session, TENANT).get("2025-03") is None

    @pytest.mark.asyncio
    async def test_increment_seeds_then_adds_one(self, session: AsyncSession) -> None:
        repo = UsageCounterRepository(session, TENANT)
        assert await repo.increment("2025-03", seed=4) == 4
        assert await repo.increment("2025-03") == 5
        assert await repo.increment("2025-04") == 1
        assert await UsageCounterRepository(session, OTHER_TENANT).get("2025-03") is None


class TestDocumentSequenceRepository:
    @pytest.mark.asyncio
    async def test_advance_missing_sequence(self, session: AsyncSession) -> None:
        assert await DocumentSequenceRepository(session, TENANT).advance("estimate") is None

    @pytest.mark.asyncio
    async def test_seed_and_advance(self, session: AsyncSession) -> None:
        repo = DocumentSequenceRepository(session, TENANT)
        await repo.seed("estimate", "EST-", 10)

        assert await repo.advance("estimate") == ("EST-", 10)
        assert await repo.advance("estimate") == ("EST-", 11)

    @pytest.mark.asyncio
    async def test_seed_does_not_overwrite(self, session: AsyncSession) -> None:
        repo = DocumentSequenceRepository(session, TENANT)
        await repo.seed("estimate", "EST-", 10)
        await repo.seed("estimate", "XYZ-", 99)

        row = await repo.get("estimate")
        assert row is not None
        assert (row.prefix, row.next_number) == ("EST-", 10)

    @pytest.mark.asyncio
    async def test_reset(self, session: AsyncSession) -> None:
        repo = DocumentSequenceRepository(session, TENANT)
        await repo.seed("estimate", "EST-", 10)
        await repo.reset("estimate", "E-", 3)

        assert await repo.advance("estimate") == ("E-", 3)
