"""Repository classes providing tenant-scoped access to the sync store.

Each repository takes an ``AsyncSession`` and a ``tenant_id`` at construction
time and operates within the caller's transaction boundary.  All writes call
``session.flush()`` so that generated defaults are populated; the caller is
responsible for calling ``session.commit()`` (or relying on the
``get_session`` context manager).

Every query filters on ``tenant_id``.  The few lookups that deliberately do
not (``find_owner``) exist only so that callers can tell "unknown id" apart
from "id owned by another tenant".
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from sync_core.state.database import is_postgres
from sync_core.state.tables import (
    CustomerTable,
    DocumentSequenceTable,
    IdempotencyKeyTable,
    InvoiceTable,
    LineItemTable,
    ProductTable,
    TenantTable,
    UsageCounterTable,
)

logger = logging.getLogger(__name__)


def _escape_like(value: str) -> str:
    """Escape SQL LIKE metacharacters so they are treated as literal characters.

    Handles the backslash escape character itself first, then the ``%`` and
    ``_`` wildcards.  The escaped string is safe to interpolate into a LIKE
    pattern that uses ``\\`` as its escape character.
    """
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


async def _dialect_upsert(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
    update_columns: list[str] | None = None,
    update_expressions: dict[str, Any] | None = None,
) -> Any:
    """Dialect-aware upsert: PostgreSQL ``ON CONFLICT DO UPDATE`` or SQLite equivalent.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to upsert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Column names forming the unique constraint for conflict detection.
    update_columns:
        Column names overwritten with the incoming values on conflict.
    update_expressions:
        Column name to SQL expression mapping applied on conflict, evaluated
        against the existing row (e.g. ``counter + 1``).

    Returns
    -------
    The execution result from ``session.execute()``.
    """
    stmt: Any
    if is_postgres(session):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
        set_ = {col: getattr(stmt.excluded, col) for col in update_columns or []}
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
        set_ = {col: values[col] for col in update_columns or []}
    set_.update(update_expressions or {})
    stmt = stmt.on_conflict_do_update(index_elements=index_elements, set_=set_)
    return await session.execute(stmt)


async def _dialect_upsert_nothing(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
) -> Any:
    """Dialect-aware insert with ``ON CONFLICT DO NOTHING``."""
    stmt: Any
    if is_postgres(session):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
    stmt = stmt.on_conflict_do_nothing(index_elements=index_elements)
    return await session.execute(stmt)


def _recent_window(
    stmt: Any,
    updated_at: Any,
    pk: Any,
    until: datetime | None,
    before: tuple[datetime, str] | None,
) -> Any:
    """Restrict a newest-first listing to a snapshot and a keyset position.

    *until* drops rows changed after the snapshot.  *before* keeps only rows
    that sort after ``(updated_at, id)`` in ``updated_at DESC, id DESC``
    order, i.e. the rows not yet returned by the previous page.
    """
    if until is not None:
        stmt = stmt.where(updated_at <= until)
    if before is not None:
        changed_at, row_id = before
        stmt = stmt.where(or_(updated_at < changed_at, and_(updated_at == changed_at, pk < row_id)))
    return stmt


# ---------------------------------------------------------------------------
# TenantRepository
# ---------------------------------------------------------------------------


class TenantRepository:
    """CRUD operations for the ``tenants`` table."""

    def __init__(self, session: AsyncSession, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def get(self) -> TenantTable | None:
        """Fetch this tenant's row. Returns None if it does not exist."""
        stmt = select(TenantTable).where(TenantTable.tenant_id == self._tenant_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(
        self,
        *,
        name: str,
        state_code: str | None = None,
        invoice_prefix: str = "INV-",
        next_invoice_number: int = 1,
        document_type_config: dict[str, Any] | None = None,
        enable_status_workflow: bool = True,
        plan_tier: str = "free",
        monthly_invoice_limit: int | None = None,
        default_terms: str | None = None,
    ) -> TenantTable:
        """Provision a tenant row."""
        row = TenantTable(
            tenant_id=self._tenant_id,
            name=name,
            state_code=state_code,
            invoice_prefix=invoice_prefix,
            next_invoice_number=next_invoice_number,
            document_type_config=document_type_config,
            enable_status_workflow=enable_status_workflow,
            plan_tier=plan_tier,
            monthly_invoice_limit=monthly_invoice_limit,
            default_terms=default_terms,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def advance_invoice_counter(self) -> tuple[str, int] | None:
        """Atomically consume the legacy invoice counter.

        Returns ``(prefix, allocated_number)`` where ``allocated_number`` is
        the value *before* the increment, or ``None`` if the tenant row is
        missing.
        """
        stmt = (
            update(TenantTable)
            .where(TenantTable.tenant_id == self._tenant_id)
            .values(
                next_invoice_number=TenantTable.next_invoice_number + 1,
                updated_at=datetime.now(UTC),
            )
            .returning(TenantTable.invoice_prefix, TenantTable.next_invoice_number)
        )
        row = (await self._session.execute(stmt)).one_or_none()
        if row is None:
            return None
        return row.invoice_prefix, int(row.next_invoice_number) - 1

    async def set_invoice_counter(self, next_number: int) -> None:
        """Overwrite the legacy counter (used only by sequence repair)."""
        await self._session.execute(
            update(TenantTable)
            .where(TenantTable.tenant_id == self._tenant_id)
            .values(next_invoice_number=next_number, updated_at=datetime.now(UTC))
        )
        await self._session.flush()


# ---------------------------------------------------------------------------
# Customer / product repositories
# ---------------------------------------------------------------------------


class _CatalogRepository:
    """Shared query shapes for the flat per-tenant entity tables."""

    _table: Any
    _id_column: str

    def __init__(self, session: AsyncSession, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    @property
    def _pk(self) -> Any:
        return getattr(self._table, self._id_column)

    async def get(self, entity_id: str) -> Any | None:
        """Fetch a row by id for this tenant."""
        stmt = select(self._table).where(
            self._table.tenant_id == self._tenant_id,
            self._pk == entity_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_owner(self, entity_id: str) -> str | None:
        """Return the tenant owning *entity_id* (**cross-tenant** lookup)."""
        stmt = select(self._table.tenant_id).where(self._pk == entity_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_changed_since(self, since: datetime) -> list[Any]:
        """Rows with ``updated_at > since``, oldest change first."""
        stmt = (
            select(self._table)
            .where(
                self._table.tenant_id == self._tenant_id,
                self._table.updated_at > since,
            )
            .order_by(self._table.updated_at.asc(), self._pk.asc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_recent(
        self,
        limit: int,
        offset: int = 0,
        *,
        until: datetime | None = None,
        before: tuple[datetime, str] | None = None,
    ) -> list[Any]:
        """Most recently changed rows first (see :func:`_recent_window`)."""
        stmt = select(self._table).where(self._table.tenant_id == self._tenant_id)
        stmt = (
            _recent_window(stmt, self._table.updated_at, self._pk, until, before)
            .order_by(self._table.updated_at.desc(), self._pk.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def count(self) -> int:
        stmt = select(func.count()).select_from(self._table).where(self._table.tenant_id == self._tenant_id)
        return int((await self._session.execute(stmt)).scalar_one())

    async def update_fields(self, row: Any, fields: dict[str, Any]) -> Any:
        """Apply a partial update to *row* and bump ``updated_at``."""
        for name, value in fields.items():
            setattr(row, name, value)
        row.updated_at = datetime.now(UTC)
        await self._session.flush()
        return row


class CustomerRepository(_CatalogRepository):
    """CRUD operations for the ``customers`` table."""

    _table = CustomerTable
    _id_column = "customer_id"

    async def create(self, *, customer_id: str, name: str, **fields: Any) -> CustomerTable:
        row = CustomerTable(customer_id=customer_id, tenant_id=self._tenant_id, name=name, **fields)
        self._session.add(row)
        await self._session.flush()
        return row


class ProductRepository(_CatalogRepository):
    """CRUD operations for the ``products`` table."""

    _table = ProductTable
    _id_column = "product_id"

    async def create(self, *, product_id: str, name: str, **fields: Any) -> ProductTable:
        row = ProductTable(product_id=product_id, tenant_id=self._tenant_id, name=name, **fields)
        self._session.add(row)
        await self._session.flush()
        return row

    async def missing_ids(self, product_ids: set[str]) -> set[str]:
        """Return the subset of *product_ids* that this tenant does not own."""
        if not product_ids:
            return set()
        stmt = select(ProductTable.product_id).where(
            ProductTable.tenant_id == self._tenant_id,
            ProductTable.product_id.in_(product_ids),
        )
        found = set((await self._session.execute(stmt)).scalars().all())
        return product_ids - found


# ---------------------------------------------------------------------------
# InvoiceRepository
# ---------------------------------------------------------------------------


class InvoiceRepository:
    """CRUD operations for the ``invoices`` and ``invoice_line_items`` tables.

    Invoices are always loaded with their line items and customer so they
    can be serialised without further I/O.
    """

    def __init__(self, session: AsyncSession, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def get(self, invoice_id: str) -> InvoiceTable | None:
        """Fetch a single invoice by ID for this tenant, refreshing relationships."""
        stmt = (
            select(InvoiceTable)
            .where(
                InvoiceTable.tenant_id == self._tenant_id,
                InvoiceTable.invoice_id == invoice_id,
            )
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_owner(self, invoice_id: str) -> str | None:
        """Return the tenant owning *invoice_id* (**cross-tenant** lookup)."""
        stmt = select(InvoiceTable.tenant_id).where(InvoiceTable.invoice_id == invoice_id)
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def number_exists(self, invoice_number: str) -> bool:
        stmt = select(func.count()).select_from(InvoiceTable).where(
            InvoiceTable.tenant_id == self._tenant_id,
            InvoiceTable.invoice_number == invoice_number,
        )
        return int((await self._session.execute(stmt)).scalar_one()) > 0

    async def max_numeric_suffix(self, prefix: str) -> int:
        """Largest integer suffix among this tenant's numbers starting with *prefix*.

        Numbers whose remainder is not purely numeric are ignored.  Returns 0
        when nothing matches.
        """
        stmt = select(InvoiceTable.invoice_number).where(
            InvoiceTable.tenant_id == self._tenant_id,
            InvoiceTable.invoice_number.like(f"{_escape_like(prefix)}%", escape="\\"),
        )
        highest = 0
        for number in (await self._session.execute(stmt)).scalars():
            suffix = number[len(prefix) :]
            if suffix.isdigit():
                highest = max(highest, int(suffix))
        return highest

    async def create(self, row: InvoiceTable) -> InvoiceTable:
        """Insert an invoice together with its line items."""
        row.tenant_id = self._tenant_id
        self._session.add(row)
        await self._session.flush()
        return row

    async def replace_line_items(self, row: InvoiceTable, items: list[LineItemTable]) -> None:
        """Delete every existing line of *row* and attach *items* instead.

        The old lines are flushed away first so replacements may reuse
        their ids.
        """
        row.line_items.clear()
        await self._session.flush()
        row.line_items.extend(items)
        await self._session.flush()

    async def touch(self, row: InvoiceTable, **fields: Any) -> InvoiceTable:
        """Apply *fields* to *row* and bump ``updated_at``."""
        for name, value in fields.items():
            setattr(row, name, value)
        row.updated_at = datetime.now(UTC)
        await self._session.flush()
        return row

    async def delete(self, invoice_id: str) -> bool:
        """Delete an invoice (line items cascade).  Returns True if a row went."""
        stmt = delete(InvoiceTable).where(
            InvoiceTable.tenant_id == self._tenant_id,
            InvoiceTable.invoice_id == invoice_id,
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def list_changed_since(self, since: datetime) -> list[InvoiceTable]:
        """Invoices with ``updated_at > since``, oldest change first."""
        stmt = (
            select(InvoiceTable)
            .where(
                InvoiceTable.tenant_id == self._tenant_id,
                InvoiceTable.updated_at > since,
            )
            .order_by(InvoiceTable.updated_at.asc(), InvoiceTable.invoice_id.asc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_recent(
        self,
        limit: int,
        offset: int = 0,
        *,
        until: datetime | None = None,
        before: tuple[datetime, str] | None = None,
    ) -> list[InvoiceTable]:
        """Most recently changed invoices first (see :func:`_recent_window`)."""
        stmt = select(InvoiceTable).where(InvoiceTable.tenant_id == self._tenant_id)
        stmt = (
            _recent_window(stmt, InvoiceTable.updated_at, InvoiceTable.invoice_id, until, before)
            .order_by(InvoiceTable.updated_at.desc(), InvoiceTable.invoice_id.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def count(self) -> int:
        stmt = select(func.count()).select_from(InvoiceTable).where(InvoiceTable.tenant_id == self._tenant_id)
        return int((await self._session.execute(stmt)).scalar_one())

    async def count_issued_between(self, start: datetime, end: datetime) -> int:
        """Count non-draft invoices whose ``issued_at`` falls in ``[start, end)``."""
        stmt = select(func.count()).select_from(InvoiceTable).where(
            InvoiceTable.tenant_id == self._tenant_id,
            InvoiceTable.status != "DRAFT",
            InvoiceTable.issued_at >= start,
            InvoiceTable.issued_at < end,
        )
        return int((await self._session.execute(stmt)).scalar_one())


# ---------------------------------------------------------------------------
# IdempotencyRepository
# ---------------------------------------------------------------------------


class IdempotencyRepository:
    """Storage for cached mutation responses in ``idempotency_keys``."""

    def __init__(self, session: AsyncSession, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def get(self, key: str) -> IdempotencyKeyTable | None:
        stmt = select(IdempotencyKeyTable).where(
            IdempotencyKeyTable.key == key,
            IdempotencyKeyTable.tenant_id == self._tenant_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def delete(self, key: str) -> None:
        await self._session.execute(
            delete(IdempotencyKeyTable).where(
                IdempotencyKeyTable.key == key,
                IdempotencyKeyTable.tenant_id == self._tenant_id,
            )
        )
        await self._session.flush()

    async def upsert(self, key: str, response: dict[str, Any], payload_hash: str | None) -> None:
        """Store *response* under *key*, overwriting any existing record and resetting its age."""
        values = {
            "key": key,
            "tenant_id": self._tenant_id,
            "response_json": response,
            "payload_hash": payload_hash,
            "created_at": datetime.now(UTC),
        }
        await _dialect_upsert(
            self._session,
            IdempotencyKeyTable,
            values=values,
            index_elements=["key", "tenant_id"],
            update_columns=["response_json", "payload_hash", "created_at"],
        )
        await self._session.flush()

    async def purge_older_than(self, cutoff: datetime) -> int:
        """Delete this tenant's records created before *cutoff*.  Returns the count."""
        result = await self._session.execute(
            delete(IdempotencyKeyTable).where(
                IdempotencyKeyTable.tenant_id == self._tenant_id,
                IdempotencyKeyTable.created_at < cutoff,
            ).execution_options(synchronize_session=False)
        )
        await self._session.flush()
        return int(result.rowcount or 0)  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# UsageCounterRepository
# ---------------------------------------------------------------------------


class UsageCounterRepository:
    """Monthly issuance counters in ``usage_counters``."""

    def __init__(self, session: AsyncSession, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def get(self, month_key: str) -> int | None:
        """Documents issued in *month_key*, or None if no counter row exists."""
        stmt = select(UsageCounterTable.documents_issued).where(
            UsageCounterTable.tenant_id == self._tenant_id,
            UsageCounterTable.month_key == month_key,
        )
        value = (await self._session.execute(stmt)).scalar_one_or_none()
        return None if value is None else int(value)

    async def increment(self, month_key: str, seed: int = 1) -> int:
        """Add one to the month's counter, creating it with *seed* if absent.

        A single ``INSERT ... ON CONFLICT DO UPDATE`` statement, so concurrent
        increments never lose an update.  Returns the new value.
        """
        await _dialect_upsert(
            self._session,
            UsageCounterTable,
            values={
                "tenant_id": self._tenant_id,
                "month_key": month_key,
                "documents_issued": seed,
                "updated_at": datetime.now(UTC),
            },
            index_elements=["tenant_id", "month_key"],
            update_expressions={
                "documents_issued": UsageCounterTable.documents_issued + 1,
                "updated_at": datetime.now(UTC),
            },
        )
        await self._session.flush()
        return await self.get(month_key) or 0


# ---------------------------------------------------------------------------
# DocumentSequenceRepository
# ---------------------------------------------------------------------------


class DocumentSequenceRepository:
    """Per-document-type numbering counters in ``document_sequences``."""

    def __init__(self, session: AsyncSession, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def get(self, document_type: str) -> DocumentSequenceTable | None:
        stmt = (
            select(DocumentSequenceTable)
            .where(
                DocumentSequenceTable.tenant_id == self._tenant_id,
                DocumentSequenceTable.document_type == document_type,
            )
            .execution_options(populate_existing=True)
        )
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def seed(self, document_type: str, prefix: str, next_number: int) -> None:
        """Create the sequence row unless a concurrent writer already did."""
        await _dialect_upsert_nothing(
            self._session,
            DocumentSequenceTable,
            values={
                "tenant_id": self._tenant_id,
                "document_type": document_type,
                "prefix": prefix,
                "next_number": next_number,
                "updated_at": datetime.now(UTC),
            },
            index_elements=["tenant_id", "document_type"],
        )
        await self._session.flush()

    async def reset(self, document_type: str, prefix: str, next_number: int) -> None:
        """Overwrite prefix and counter (repair path only)."""
        await self._session.execute(
            update(DocumentSequenceTable)
            .where(
                DocumentSequenceTable.tenant_id == self._tenant_id,
                DocumentSequenceTable.document_type == document_type,
            )
            .values(prefix=prefix, next_number=next_number, updated_at=datetime.now(UTC))
        )
        await self._session.flush()

    async def advance(self, document_type: str) -> tuple[str, int] | None:
        """Atomically consume one number.

        Returns ``(prefix, allocated_number)`` or ``None`` if the row does not
        exist.
        """
        stmt = (
            update(DocumentSequenceTable)
            .where(
                DocumentSequenceTable.tenant_id == self._tenant_id,
                DocumentSequenceTable.document_type == document_type,
            )
            .values(
                next_number=DocumentSequenceTable.next_number + 1,
                updated_at=datetime.now(UTC),
            )
            .returning(DocumentSequenceTable.prefix, DocumentSequenceTable.next_number)
        )
        row = (await self._session.execute(stmt)).one_or_none()
        if row is None:
            return None
        return row.prefix, int(row.next_number) - 1
