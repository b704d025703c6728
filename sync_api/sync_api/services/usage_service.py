"""Monthly issuance quota for tenants.

Each tenant may issue a limited number of documents per calendar month
(UTC).  The limit comes from the tenant's ``monthly_invoice_limit``
override, then the plan-tier default, with ``None`` meaning unlimited.

Tier defaults::

    free:       10
    starter:    100
    business:   1_000
    enterprise: unlimited

Usage is read from the ``usage_counters`` row for the month; when none
exists yet it is derived from the invoices issued in that month.  The gate
and the increment run inside the same transaction as the entity write, with
the increment after the write.  Counters are never decremented.
"""

from __future__ import annotations

import logging
import zlib
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from sync_core.errors import NotFoundError, QuotaExceededError
from sync_core.state.database import is_postgres
from sync_core.state.repository import InvoiceRepository, TenantRepository, UsageCounterRepository
from sync_core.state.tables import TenantTable

from sync_api.services.event_bus import EventType, PendingEvent

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Tier defaults
# ---------------------------------------------------------------------------

_TIER_DEFAULTS: dict[str, int | None] = {
    "free": 10,
    "starter": 100,
    "business": 1_000,
    "enterprise": None,
}

_DEFAULT_TIER = "free"


def month_key(now: datetime | None = None) -> str:
    """``YYYY-MM`` for *now* (UTC)."""
    now = now or datetime.now(UTC)
    return now.astimezone(UTC).strftime("%Y-%m")


def month_bounds(now: datetime | None = None) -> tuple[datetime, datetime]:
    """Return ``[start, end)`` of the UTC calendar month containing *now*."""
    now = (now or datetime.now(UTC)).astimezone(UTC)
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start, end


def resolve_limit(tenant: TenantTable) -> int | None:
    """Effective monthly limit: explicit override > tier default > free tier."""
    if tenant.monthly_invoice_limit is not None:
        return tenant.monthly_invoice_limit
    tier = tenant.plan_tier or _DEFAULT_TIER
    if tier not in _TIER_DEFAULTS:
        logger.warning("Unknown plan tier %r for tenant=%s, using %s", tier, tenant.tenant_id, _DEFAULT_TIER)
        tier = _DEFAULT_TIER
    return _TIER_DEFAULTS[tier]


class UsageService:
    """Quota gate and usage counter for one tenant.

    Parameters
    ----------
    session:
        Session of the surrounding transaction.
    tenant_id:
        The tenant being metered.
    near_limit_ratio:
        Fraction of the limit at which a ``usage.near_limit`` event is
        recorded after an increment.
    events:
        List that collects events to emit once the transaction commits.
    """

    def __init__(
        self,
        session: AsyncSession,
        tenant_id: str,
        *,
        near_limit_ratio: float = 0.8,
        events: list[PendingEvent] | None = None,
    ) -> None:
        self._session = session
        self._tenant_id = tenant_id
        self._near_limit_ratio = near_limit_ratio
        self._events = events if events is not None else []
        self._tenants = TenantRepository(session, tenant_id)
        self._counters = UsageCounterRepository(session, tenant_id)
        self._invoices = InvoiceRepository(session, tenant_id)

    async def _acquire_advisory_lock(self) -> None:
        """Serialise gate checks for this tenant (PostgreSQL only).

        Uses a transaction-scoped advisory lock keyed on a stable hash of
        the tenant id.  SQLite writers are already serialised by
        ``BEGIN IMMEDIATE``.
        """
        if is_postgres(self._session):
            lock_id = zlib.crc32(f"usage_{self._tenant_id}".encode()) & 0x7FFFFFFF
            await self._session.execute(
                text("SELECT pg_advisory_xact_lock(:id)"),
                {"id": lock_id},
            )

    async def _get_tenant(self) -> TenantTable:
        tenant = await self._tenants.get()
        if tenant is None:
            raise NotFoundError("Tenant not found", code="TENANT_NOT_FOUND")
        return tenant

    async def _current_usage(self, now: datetime) -> int:
        counted = await self._counters.get(month_key(now))
        if counted is not None:
            return counted
        start, end = month_bounds(now)
        return await self._invoices.count_issued_between(start, end)

    async def get_usage_snapshot(self) -> dict[str, Any]:
        """Return ``{limit, used, remaining, monthKey, planTier, canIssue}``.

        ``limit`` and ``remaining`` are ``None`` for unlimited plans.
        """
        tenant = await self._get_tenant()
        now = datetime.now(UTC)
        limit = resolve_limit(tenant)
        used = await self._current_usage(now)
        return {
            "limit": limit,
            "used": used,
            "remaining": None if limit is None else max(0, limit - used),
            "monthKey": month_key(now),
            "planTier": tenant.plan_tier,
            "canIssue": limit is None or used < limit,
        }

    async def can_issue(self) -> bool:
        snapshot = await self.get_usage_snapshot()
        return bool(snapshot["canIssue"])

    async def check_can_issue(self) -> dict[str, Any]:
        """Gate one issuance.

        Returns the usage snapshot when allowed.

        Raises
        ------
        QuotaExceededError
            Carrying the snapshot when the month's limit is used up.
        """
        await self._acquire_advisory_lock()
        snapshot = await self.get_usage_snapshot()
        if not snapshot["canIssue"]:
            logger.warning(
                "Quota exceeded: tenant=%s issued=%d/%s plan=%s",
                self._tenant_id,
                snapshot["used"],
                snapshot["limit"],
                snapshot["planTier"],
            )
            raise QuotaExceededError(self._tenant_id, snapshot)
        return snapshot

    async def increment(self) -> int:
        """Count one issued document for the current month.

        Call only after the issuing write has succeeded in the same
        transaction.  Returns the new monthly total.
        """
        now = datetime.now(UTC)
        key = month_key(now)
        seed = 1
        if await self._counters.get(key) is None:
            # First counted issuance this month: the live count already
            # includes the document just written.
            start, end = month_bounds(now)
            seed = max(1, await self._invoices.count_issued_between(start, end))
        used = await self._counters.increment(key, seed=seed)

        tenant = await self._get_tenant()
        limit = resolve_limit(tenant)
        logger.debug("Usage incremented tenant=%s month=%s used=%d limit=%s", self._tenant_id, key, used, limit)
        if limit and used >= limit * self._near_limit_ratio:
            self._events.append(
                PendingEvent(
                    EventType.USAGE_NEAR_LIMIT,
                    {
                        "used": used,
                        "limit": limit,
                        "remaining": max(0, limit - used),
                        "monthKey": key,
                        "planTier": tenant.plan_tier,
                    },
                )
            )
        return used
