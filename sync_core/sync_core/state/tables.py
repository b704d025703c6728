"""SQLAlchemy 2.0 ORM table definitions for the invoice sync store.

All tables use the modern ``Mapped`` / ``mapped_column`` declaration style
introduced in SQLAlchemy 2.0.  The ``Base`` declarative base is exported for
use by migrations and the repository layer.

Every business row carries ``tenant_id``; every repository query filters on
it.  Client-generated ids are primary keys so offline clients can reference
rows before the server has seen them.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    PrimaryKeyConstraint,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# Cross-dialect JSON type: uses JSONB on PostgreSQL, falls back to plain JSON
# (stored as TEXT) on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")

# Money columns come back as floats on both dialects.
_Money = Numeric(14, 2, asdecimal=False)


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all sync tables."""


# ---------------------------------------------------------------------------
# Tenants
# ---------------------------------------------------------------------------


class TenantTable(Base):
    """A business account: jurisdiction, numbering and plan configuration.

    ``invoice_prefix`` / ``next_invoice_number`` form the legacy numbering
    counter used when ``document_type_config`` has no entry for a document
    type.  ``monthly_invoice_limit`` overrides the plan-tier default.
    """

    __tablename__ = "tenants"

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    state_code: Mapped[str | None] = mapped_column(String(8), nullable=True)
    invoice_prefix: Mapped[str] = mapped_column(String(32), nullable=False, default="INV-")
    next_invoice_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    document_type_config: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    enable_status_workflow: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    plan_tier: Mapped[str] = mapped_column(String(32), nullable=False, default="free")
    monthly_invoice_limit: Mapped[int | None] = mapped_column(Integer, nullable=True, default=None)
    default_terms: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )


# ---------------------------------------------------------------------------
# Customers & products
# ---------------------------------------------------------------------------


class CustomerTable(Base):
    """Invoice recipients.  ``state_code`` drives the default place of supply."""

    __tablename__ = "customers"

    customer_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("tenants.tenant_id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    email: Mapped[str | None] = mapped_column(String(256), nullable=True)
    gstin: Mapped[str | None] = mapped_column(String(32), nullable=True)
    state_code: Mapped[str | None] = mapped_column(String(8), nullable=True)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (Index("ix_customers_tenant_updated", "tenant_id", "updated_at"),)


class ProductTable(Base):
    """Catalogue of products and services that line items may reference."""

    __tablename__ = "products"

    product_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("tenants.tenant_id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    default_rate: Mapped[float | None] = mapped_column(_Money, nullable=True)
    unit: Mapped[str | None] = mapped_column(String(32), nullable=True)
    hsn_code: Mapped[str | None] = mapped_column(String(16), nullable=True)
    tax_rate: Mapped[float | None] = mapped_column(_Money, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (Index("ix_products_tenant_updated", "tenant_id", "updated_at"),)


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------


class InvoiceTable(Base):
    """Tax invoices and other numbered documents.

    ``(tenant_id, invoice_number)`` is unique; it is the final guard against
    duplicate numbers under concurrent creation.  Totals are denormalised and
    recomputed from the line items on every content write.
    """

    __tablename__ = "invoices"

    invoice_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("tenants.tenant_id", ondelete="CASCADE"), nullable=False
    )
    customer_id: Mapped[str | None] = mapped_column(
        String(64), ForeignKey("customers.customer_id", ondelete="SET NULL"), nullable=True
    )
    document_type: Mapped[str] = mapped_column(String(32), nullable=False, default="invoice")
    invoice_number: Mapped[str] = mapped_column(String(64), nullable=False)
    date: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    due_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="DRAFT")
    subtotal: Mapped[float] = mapped_column(_Money, nullable=False, default=0.0)
    discount_total: Mapped[float] = mapped_column(_Money, nullable=False, default=0.0)
    tax_rate: Mapped[float | None] = mapped_column(_Money, nullable=True)
    tax_total: Mapped[float] = mapped_column(_Money, nullable=False, default=0.0)
    tax_mode: Mapped[str] = mapped_column(String(16), nullable=False, default="NONE")
    tax_breakup: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    place_of_supply_state_code: Mapped[str | None] = mapped_column(String(8), nullable=True)
    total: Mapped[float] = mapped_column(_Money, nullable=False, default=0.0)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    terms: Mapped[str | None] = mapped_column(Text, nullable=True)
    issued_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    line_items: Mapped[list[LineItemTable]] = relationship(
        back_populates="invoice",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="LineItemTable.position",
        lazy="selectin",
    )
    customer: Mapped[CustomerTable | None] = relationship(lazy="selectin")

    __table_args__ = (
        CheckConstraint(
            "status IN ('DRAFT','ISSUED','PAID','CANCELLED','VOID')",
            name="ck_invoices_status",
        ),
        CheckConstraint(
            "tax_mode IN ('NONE','CGST_SGST','IGST')",
            name="ck_invoices_tax_mode",
        ),
        UniqueConstraint("tenant_id", "invoice_number", name="uq_invoices_tenant_number"),
        Index("ix_invoices_tenant_updated", "tenant_id", "updated_at"),
        Index("ix_invoices_tenant_issued", "tenant_id", "issued_at"),
    )


class LineItemTable(Base):
    """Invoice lines.  Replaced wholesale whenever the invoice content changes."""

    __tablename__ = "invoice_line_items"

    line_item_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    invoice_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("invoices.invoice_id", ondelete="CASCADE"), nullable=False
    )
    product_id: Mapped[str | None] = mapped_column(
        String(64), ForeignKey("products.product_id", ondelete="SET NULL"), nullable=True
    )
    name: Mapped[str] = mapped_column(String(512), nullable=False)
    quantity: Mapped[float] = mapped_column(Numeric(14, 3, asdecimal=False), nullable=False)
    rate: Mapped[float] = mapped_column(_Money, nullable=False)
    line_total: Mapped[float] = mapped_column(_Money, nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    invoice: Mapped[InvoiceTable] = relationship(back_populates="line_items")

    __table_args__ = (Index("ix_invoice_line_items_invoice", "invoice_id"),)


# ---------------------------------------------------------------------------
# Idempotency keys
# ---------------------------------------------------------------------------


class IdempotencyKeyTable(Base):
    """Cached mutation responses keyed by client idempotency key.

    Rows older than the expiry window are treated as absent and deleted on
    the next lookup.  ``payload_hash`` is the SHA-256 of the canonical JSON
    payload the key was first used with.
    """

    __tablename__ = "idempotency_keys"

    key: Mapped[str] = mapped_column(String(256), nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    response_json: Mapped[dict[str, Any]] = mapped_column(_JsonType, nullable=False)
    payload_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        PrimaryKeyConstraint("key", "tenant_id"),
        Index("ix_idempotency_keys_created", "created_at"),
    )


# ---------------------------------------------------------------------------
# Usage counters
# ---------------------------------------------------------------------------


class UsageCounterTable(Base):
    """Documents issued per tenant per calendar month (``YYYY-MM``, UTC).

    Only ever incremented.  Deleting or voiding an invoice does not give
    quota back.
    """

    __tablename__ = "usage_counters"

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    month_key: Mapped[str] = mapped_column(String(7), nullable=False)
    documents_issued: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        PrimaryKeyConstraint("tenant_id", "month_key"),
        CheckConstraint("documents_issued >= 0", name="ck_usage_counters_non_negative"),
    )


# ---------------------------------------------------------------------------
# Document sequences
# ---------------------------------------------------------------------------


class DocumentSequenceTable(Base):
    """Per-tenant, per-document-type numbering counter.

    Seeded from ``TenantTable.document_type_config`` on first use and then
    advanced only through a single ``UPDATE ... RETURNING`` statement.
    """

    __tablename__ = "document_sequences"

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    document_type: Mapped[str] = mapped_column(String(32), nullable=False)
    prefix: Mapped[str] = mapped_column(String(32), nullable=False)
    next_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (PrimaryKeyConstraint("tenant_id", "document_type"),)
