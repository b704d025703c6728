"""Post-commit notifications for issued invoices and quota pressure.

Services never talk to the bus directly.  While a mutation's transaction is
open they append :class:`PendingEvent` entries to their scope; once the
transaction commits, :func:`~sync_api.services.scope.tenant_scope` hands
the list to :meth:`EventBus.publish`.  A rolled-back mutation therefore
announces nothing, and a failing subscriber can never undo a commit.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable, Iterable
from datetime import UTC, datetime
from enum import Enum
from typing import Any, NamedTuple

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    INVOICE_ISSUED = "invoice.issued"
    USAGE_NEAR_LIMIT = "usage.near_limit"


class PendingEvent(NamedTuple):
    """An event recorded inside a transaction, published after commit."""

    event_type: EventType
    data: dict[str, Any]


class EventPayload(BaseModel):
    """What subscribers receive for one published event."""

    event_type: EventType
    tenant_id: str
    published_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    batch_id: str
    sequence: int
    data: dict[str, Any] = Field(default_factory=dict)


Subscriber = Callable[[EventPayload], Awaitable[None]]


class EventBus:
    """In-process fan-out of committed events to subscribers.

    A subscriber registered without event types receives every event.
    Subscribers of one event run concurrently; events of one publish call
    are delivered in the order they were recorded.
    """

    def __init__(self) -> None:
        self._subscribers: list[tuple[frozenset[EventType], Subscriber]] = []

    def subscribe(self, subscriber: Subscriber, *event_types: EventType) -> None:
        self._subscribers.append((frozenset(event_types), subscriber))
        logger.debug(
            "Subscribed %s to %s",
            subscriber.__name__,
            ", ".join(sorted(t.value for t in event_types)) or "all events",
        )

    def subscribers_for(self, event_type: EventType) -> list[Subscriber]:
        return [fn for types, fn in self._subscribers if not types or event_type in types]

    async def publish(self, tenant_id: str, events: Iterable[PendingEvent]) -> None:
        """Deliver *events* committed by one mutation.

        Every payload of the call shares a ``batch_id`` and carries its
        position as ``sequence``.  Subscriber errors are logged, never raised.
        """
        batch_id = uuid.uuid4().hex
        for sequence, event in enumerate(events):
            subscribers = self.subscribers_for(event.event_type)
            if not subscribers:
                continue
            payload = EventPayload(
                event_type=event.event_type,
                tenant_id=tenant_id,
                batch_id=batch_id,
                sequence=sequence,
                data=event.data,
            )
            logger.info(
                "Publishing %s tenant=%s batch=%s to %d subscriber(s)",
                event.event_type.value,
                tenant_id,
                batch_id[:8],
                len(subscribers),
            )
            await asyncio.gather(*[self._deliver(fn, payload) for fn in subscribers])

    @staticmethod
    async def _deliver(subscriber: Subscriber, payload: EventPayload) -> None:
        try:
            await subscriber(payload)
        except Exception:
            logger.exception(
                "Subscriber %s failed for %s tenant=%s",
                subscriber.__name__,
                payload.event_type.value,
                payload.tenant_id,
            )


async def audit_log_subscriber(payload: EventPayload) -> None:
    logger.info(
        "AUDIT: %s tenant=%s batch=%s",
        payload.event_type.value,
        payload.tenant_id,
        payload.batch_id[:8],
        extra={"event": {"type": payload.event_type.value, "tenant_id": payload.tenant_id, "data": payload.data}},
    )


async def usage_alert_subscriber(payload: EventPayload) -> None:
    """Warn when a tenant approaches its monthly issuance limit.

    The notification channel (push, email) lives outside this service; the
    warning line is what it consumes.
    """
    logger.warning(
        "Tenant %s is near its monthly limit: used=%s limit=%s plan=%s",
        payload.tenant_id,
        payload.data.get("used"),
        payload.data.get("limit"),
        payload.data.get("planTier"),
    )


_event_bus: EventBus | None = None


def init_event_bus() -> EventBus:
    """Create the process-wide bus with the audit and usage-alert subscribers."""
    global _event_bus  # noqa: PLW0603
    _event_bus = EventBus()
    _event_bus.subscribe(audit_log_subscriber)
    _event_bus.subscribe(usage_alert_subscriber, EventType.USAGE_NEAR_LIMIT)
    return _event_bus


def get_event_bus() -> EventBus:
    if _event_bus is None:
        return init_event_bus()
    return _event_bus
