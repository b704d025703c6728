"""Idempotency store for replayed offline mutations.

A client attaches an idempotency key to every queued write.  The first
successful execution stores its response under ``(key, tenant)``; any retry
within the expiry window gets that stored response back instead of running
the mutation again.

Records older than the window are deleted on lookup so the key can be used
again.  An empty or missing key disables caching for that mutation.
"""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession
from sync_core.errors import ConflictError
from sync_core.state.repository import IdempotencyRepository

logger = logging.getLogger(__name__)

DEFAULT_EXPIRY_HOURS = 24


def payload_fingerprint(payload: Any) -> str:
    """SHA-256 of the canonical JSON form of *payload* (sorted keys, no spaces)."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


class IdempotencyStore:
    """Check-and-save access to cached mutation responses for one tenant.

    Parameters
    ----------
    session:
        Session of the mutation's transaction.
    tenant_id:
        Owning tenant; keys are scoped per tenant.
    expiry_hours:
        Age after which a record is treated as absent.
    reject_payload_mismatch:
        When ``True`` a live key presented with a different payload raises
        :class:`ConflictError` instead of returning the cached response.
    """

    def __init__(
        self,
        session: AsyncSession,
        tenant_id: str,
        *,
        expiry_hours: int = DEFAULT_EXPIRY_HOURS,
        reject_payload_mismatch: bool = True,
    ) -> None:
        self._tenant_id = tenant_id
        self._repo = IdempotencyRepository(session, tenant_id)
        self._expiry = timedelta(hours=expiry_hours)
        self._reject_mismatch = reject_payload_mismatch

    async def check(self, key: str | None, payload: Any = None) -> dict[str, Any] | None:
        """Return the cached response for *key*, or ``None``.

        Raises
        ------
        ConflictError
            If the key is live, was stored with a payload hash, and
            *payload* hashes differently (only when mismatch rejection is on).
        """
        if not key:
            return None

        record = await self._repo.get(key)
        if record is None:
            return None

        age = datetime.now(UTC) - _as_utc(record.created_at)
        if age > self._expiry:
            logger.info("Idempotency key expired tenant=%s key=%s age=%s", self._tenant_id, key, age)
            await self._repo.delete(key)
            return None

        if self._reject_mismatch and payload is not None and record.payload_hash:
            if record.payload_hash != payload_fingerprint(payload):
                logger.warning("Idempotency key reused with a different payload tenant=%s key=%s", self._tenant_id, key)
                raise ConflictError(
                    "Idempotency key was already used for a different request",
                    code="IDEMPOTENCY_KEY_REUSED",
                    details={"idempotencyKey": key},
                )

        return record.response_json

    async def save(self, key: str | None, result: dict[str, Any], payload: Any = None) -> None:
        """Store *result* under *key*, overwriting any previous record."""
        if not key:
            return
        fingerprint = payload_fingerprint(payload) if payload is not None else None
        await self._repo.upsert(key, result, fingerprint)

    async def purge_expired(self) -> int:
        """Delete this tenant's expired records.  Returns the number removed."""
        removed = await self._repo.purge_older_than(datetime.now(UTC) - self._expiry)
        if removed:
            logger.info("Purged %d expired idempotency key(s) for tenant=%s", removed, self._tenant_id)
        return removed
