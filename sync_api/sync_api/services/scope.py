"""One tenant transaction and the services bound to it.

Every mutation, whether it arrives in a sync batch or on a REST endpoint,
runs inside :func:`tenant_scope`: a fresh session with the tenant context
set, committed on clean exit and rolled back on any exception.  Events the
services record are published only after the commit succeeds.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sync_core.state.database import set_tenant_context

from sync_api.config import SyncSettings
from sync_api.services.catalog_service import CustomerService, ProductService
from sync_api.services.event_bus import EventBus, PendingEvent
from sync_api.services.idempotency_service import IdempotencyStore
from sync_api.services.invoice_service import InvoiceService
from sync_api.services.numbering_service import SequenceAllocator
from sync_api.services.sync_service import SyncService
from sync_api.services.usage_service import UsageService

logger = logging.getLogger(__name__)


class ServiceScope:
    """Services sharing one session and one pending-event list."""

    def __init__(self, session: AsyncSession, tenant_id: str, settings: SyncSettings) -> None:
        self.session = session
        self.tenant_id = tenant_id
        self.events: list[PendingEvent] = []
        self.idempotency = IdempotencyStore(
            session,
            tenant_id,
            expiry_hours=settings.idempotency_expiry_hours,
            reject_payload_mismatch=settings.idempotency_reject_payload_mismatch,
        )
        self.usage = UsageService(
            session,
            tenant_id,
            near_limit_ratio=settings.usage_near_limit_ratio,
            events=self.events,
        )
        self.numbering = SequenceAllocator(session, tenant_id)
        self.invoices = InvoiceService(
            session,
            tenant_id,
            usage=self.usage,
            numbering=self.numbering,
            events=self.events,
        )
        self.customers = CustomerService(session, tenant_id)
        self.products = ProductService(session, tenant_id)
        self.sync = SyncService(session, tenant_id, settings)


@asynccontextmanager
async def tenant_scope(
    session_factory: async_sessionmaker[AsyncSession],
    tenant_id: str,
    settings: SyncSettings,
    event_bus: EventBus | None = None,
) -> AsyncGenerator[ServiceScope, None]:
    """Yield a :class:`ServiceScope` inside its own transaction."""
    session = session_factory()
    try:
        await set_tenant_context(session, tenant_id)
        scope = ServiceScope(session, tenant_id, settings)
        yield scope
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()

    if event_bus is not None and scope.events:
        await event_bus.publish(tenant_id, scope.events)
