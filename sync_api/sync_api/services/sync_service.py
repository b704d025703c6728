"""Delta and full sync reads for offline clients.

``get_delta`` returns everything changed after the client's last sync
point, oldest change first.  ``updated_at`` is stamped by the writer before
its transaction commits, so a row can become visible only after a read
snapshot later than its timestamp has been taken.  The returned
``syncedAt`` therefore lags the snapshot by ``delta_overlap_seconds``:
such a row is re-read by the next delta as long as its transaction
committed within that window.  Clients apply rows as full replaces keyed
by id, so rows sent twice are harmless.

``get_full_sync`` bootstraps a fresh device with the most recent rows of
each entity type, paginated with per-entity ``hasMore`` flags.  Each page
carries a ``nextCursor`` pinning the page-0 snapshot and the last row
returned per entity; rows changed after the snapshot are left to the
following delta instead of shifting the remaining pages.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy.ext.asyncio import AsyncSession
from sync_core.errors import NotFoundError, ValidationError
from sync_core.state.repository import CustomerRepository, InvoiceRepository, ProductRepository, TenantRepository

from sync_api.services.serializers import (
    customer_to_dict,
    invoice_to_dict,
    isoformat,
    product_to_dict,
    tenant_to_dict,
)

if TYPE_CHECKING:
    from sync_api.config import SyncSettings

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)

_ENTITIES = ("invoices", "customers", "products")

# Per-entity cursor position: ``(updated_at, id)`` of the last row sent, or
# ``None`` once the entity is exhausted.
Position = tuple[datetime, str] | None


def _normalise_since(since: datetime | None) -> datetime:
    if since is None:
        return EPOCH
    if since.tzinfo is None:
        return since.replace(tzinfo=UTC)
    return since.astimezone(UTC)


def _parse_timestamp(value: str) -> datetime:
    return _normalise_since(datetime.fromisoformat(value.replace("Z", "+00:00")))


def encode_cursor(snapshot: datetime, page: int, positions: dict[str, Position]) -> str:
    payload = {
        "snapshot": isoformat(snapshot),
        "page": page,
        "positions": {
            name: None if position is None else [isoformat(position[0]), position[1]]
            for name, position in positions.items()
        },
    }
    return base64.urlsafe_b64encode(json.dumps(payload, separators=(",", ":")).encode("utf-8")).decode("ascii")


def decode_cursor(cursor: str) -> tuple[datetime, int, dict[str, Position]]:
    """Inverse of :func:`encode_cursor`.

    Raises
    ------
    ValidationError
        ``INVALID_CURSOR`` for anything that was not produced by
        :func:`encode_cursor`.
    """
    try:
        payload = json.loads(base64.urlsafe_b64decode(cursor.encode("ascii")))
        snapshot = _parse_timestamp(payload["snapshot"])
        page = int(payload["page"])
        positions: dict[str, Position] = {}
        for name in _ENTITIES:
            raw = payload["positions"][name]
            positions[name] = None if raw is None else (_parse_timestamp(raw[0]), str(raw[1]))
    except (ValueError, TypeError, KeyError, IndexError, binascii.Error, UnicodeError) as exc:
        raise ValidationError("Invalid full sync cursor", code="INVALID_CURSOR") from exc
    if page < 1:
        raise ValidationError("Invalid full sync cursor", code="INVALID_CURSOR")
    return snapshot, page, positions


def _row_position(row: Any, id_attr: str) -> tuple[datetime, str]:
    return _normalise_since(row.updated_at), getattr(row, id_attr)


class SyncService:
    """Read side of the offline sync protocol for one tenant."""

    def __init__(self, session: AsyncSession, tenant_id: str, settings: SyncSettings) -> None:
        self._tenant_id = tenant_id
        self._settings = settings
        self._tenants = TenantRepository(session, tenant_id)
        self._invoices = InvoiceRepository(session, tenant_id)
        self._customers = CustomerRepository(session, tenant_id)
        self._products = ProductRepository(session, tenant_id)

    def _synced_at(self, snapshot: datetime) -> str | None:
        return isoformat(snapshot - timedelta(seconds=self._settings.delta_overlap_seconds))

    async def get_delta(self, since: datetime | None = None) -> dict[str, Any]:
        snapshot = datetime.now(UTC)
        since = _normalise_since(since)

        invoices = await self._invoices.list_changed_since(since)
        customers = await self._customers.list_changed_since(since)
        products = await self._products.list_changed_since(since)

        logger.info(
            "Delta sync tenant=%s since=%s invoices=%d customers=%d products=%d",
            self._tenant_id,
            isoformat(since),
            len(invoices),
            len(customers),
            len(products),
        )
        return {
            "invoices": [invoice_to_dict(row) for row in invoices],
            "customers": [customer_to_dict(row) for row in customers],
            "products": [product_to_dict(row) for row in products],
            "syncedAt": self._synced_at(snapshot),
        }

    async def get_full_sync(self, page: int = 0, cursor: str | None = None) -> dict[str, Any]:
        """Return one page of every entity type plus the tenant profile.

        Without *cursor*, *page* (0-based) is an offset into the current
        data.  With the ``nextCursor`` of the previous page, the page number
        comes from the cursor and rows are resumed after the last one sent,
        bounded by the page-0 snapshot.
        """
        tenant = await self._tenants.get()
        if tenant is None:
            raise NotFoundError("Tenant not found", code="TENANT_NOT_FOUND")

        repos = {
            "invoices": (self._invoices, self._settings.full_sync_invoice_limit, "invoice_id"),
            "customers": (self._customers, self._settings.full_sync_customer_limit, "customer_id"),
            "products": (self._products, self._settings.full_sync_product_limit, "product_id"),
        }

        rows: dict[str, list[Any]] = {}
        has_more: dict[str, bool] = {}
        if cursor is not None:
            snapshot, page, positions = decode_cursor(cursor)
            for name, (repo, limit, _) in repos.items():
                if positions[name] is None:
                    rows[name], has_more[name] = [], False
                    continue
                # Fetch one extra row to learn whether another page exists.
                fetched = await repo.list_recent(limit + 1, until=snapshot, before=positions[name])
                rows[name], has_more[name] = fetched[:limit], len(fetched) > limit
        else:
            page = max(page, 0)
            snapshot = datetime.now(UTC)
            # Offset pages are bounded by this request's snapshot only.
            for name, (repo, limit, _) in repos.items():
                fetched = await repo.list_recent(limit + 1, offset=page * limit, until=snapshot)
                rows[name], has_more[name] = fetched[:limit], len(fetched) > limit

        next_cursor = None
        if any(has_more.values()):
            next_cursor = encode_cursor(
                snapshot,
                page + 1,
                {
                    name: _row_position(rows[name][-1], id_attr) if has_more[name] else None
                    for name, (_, _, id_attr) in repos.items()
                },
            )

        logger.info(
            "Full sync tenant=%s page=%d cursor=%s has_more=%s",
            self._tenant_id,
            page,
            cursor is not None,
            has_more,
        )
        return {
            "invoices": [invoice_to_dict(row) for row in rows["invoices"]],
            "customers": [customer_to_dict(row) for row in rows["customers"]],
            "products": [product_to_dict(row) for row in rows["products"]],
            "tenant": tenant_to_dict(tenant),
            "syncedAt": self._synced_at(snapshot),
            "page": page,
            "hasMore": has_more,
            "nextCursor": next_cursor,
        }
