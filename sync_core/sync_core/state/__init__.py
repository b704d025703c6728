"""State persistence layer (PostgreSQL in production, SQLite locally)."""

from sync_core.state.database import get_engine, get_session, get_session_factory, set_tenant_context
from sync_core.state.repository import (
    CustomerRepository,
    DocumentSequenceRepository,
    IdempotencyRepository,
    InvoiceRepository,
    ProductRepository,
    TenantRepository,
    UsageCounterRepository,
)

__all__ = [
    "CustomerRepository",
    "DocumentSequenceRepository",
    "IdempotencyRepository",
    "InvoiceRepository",
    "ProductRepository",
    "TenantRepository",
    "UsageCounterRepository",
    "get_engine",
    "get_session",
    "get_session_factory",
    "set_tenant_context",
]
