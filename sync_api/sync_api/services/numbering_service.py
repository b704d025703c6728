"""Per-tenant document number allocation.

Numbers are formatted ``{prefix}{n:04d}`` (``INV-0001``).  Two counters
exist:

* a dedicated ``document_sequences`` row for document types that have an
  entry (``prefix`` and/or ``nextNumber``) in the tenant's
  ``document_type_config``, seeded from that entry on first use;
* the tenant's legacy ``invoice_prefix`` / ``next_invoice_number`` columns
  for everything else.

Both are advanced with a single ``UPDATE ... RETURNING`` statement inside
the caller's transaction, so concurrent allocations never hand out the same
value and a rolled-back mutation gives its number back.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession
from sync_core.errors import NotFoundError, ValidationError
from sync_core.state.repository import DocumentSequenceRepository, InvoiceRepository, TenantRepository
from sync_core.state.tables import TenantTable

logger = logging.getLogger(__name__)

DEFAULT_DOCUMENT_TYPE = "invoice"

# A collision reseeds the counter past the highest used number; give up
# after this many reseeds within one allocation.
_MAX_RESEEDS = 3


def format_document_number(prefix: str, number: int) -> str:
    return f"{prefix}{number:04d}"


def _positive_int(value: Any) -> int | None:
    """Coerce *value* to a positive int, or ``None`` if that is impossible."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = int(str(value).strip())
    except ValueError:
        return None
    return number if number > 0 else None


class SequenceAllocator:
    """Hands out gap-free document numbers for one tenant."""

    def __init__(self, session: AsyncSession, tenant_id: str) -> None:
        self._tenant_id = tenant_id
        self._tenants = TenantRepository(session, tenant_id)
        self._sequences = DocumentSequenceRepository(session, tenant_id)
        self._invoices = InvoiceRepository(session, tenant_id)

    async def allocate(self, tenant: TenantTable, document_type: str = DEFAULT_DOCUMENT_TYPE) -> str:
        """Consume and return the next number for *document_type*.

        Client-supplied numbers never advance the counter.  When it lands on
        a number that is already taken, it is moved to one past the highest
        number in use for the prefix and allocation continues from there.

        Raises
        ------
        ValidationError
            ``DUPLICATE_DOCUMENT_NUMBER`` if numbers are still taken after
            reseeding, which only concurrent client-numbered inserts can cause.
        """
        for _ in range(_MAX_RESEEDS + 1):
            prefix, number = await self._advance(tenant, document_type)
            candidate = format_document_number(prefix, number)
            if not await self._invoices.number_exists(candidate):
                return candidate
            seed = await self._repair_seed(prefix, reason=f"{candidate} already used")
            await self._reseed(tenant, document_type, prefix, max(seed, number + 1))
        raise ValidationError(
            "Could not allocate a free document number",
            code="DUPLICATE_DOCUMENT_NUMBER",
            details={"documentType": document_type},
        )

    async def ensure_number_available(self, invoice_number: str) -> None:
        """Raise ``DUPLICATE_DOCUMENT_NUMBER`` if *invoice_number* is already used."""
        if await self._invoices.number_exists(invoice_number):
            raise ValidationError(
                "Invoice number already exists",
                code="DUPLICATE_DOCUMENT_NUMBER",
                details={"invoiceNumber": invoice_number},
            )

    # -- counters ------------------------------------------------------------

    async def _advance(self, tenant: TenantTable, document_type: str) -> tuple[str, int]:
        config = self._type_config(tenant, document_type)
        if config is None:
            return await self._advance_legacy()
        return await self._advance_configured(tenant, document_type, config)

    @staticmethod
    def _type_config(tenant: TenantTable, document_type: str) -> dict[str, Any] | None:
        entry = (tenant.document_type_config or {}).get(document_type)
        if isinstance(entry, dict) and ("prefix" in entry or "nextNumber" in entry):
            return entry
        return None

    async def _advance_legacy(self) -> tuple[str, int]:
        advanced = await self._tenants.advance_invoice_counter()
        if advanced is None:
            raise NotFoundError("Tenant not found", code="TENANT_NOT_FOUND")
        prefix, number = advanced
        if number < 1:
            number = await self._repair_seed(prefix, reason=f"stored counter {number}")
            await self._tenants.set_invoice_counter(number + 1)
        return prefix, number

    async def _advance_configured(
        self,
        tenant: TenantTable,
        document_type: str,
        config: dict[str, Any],
    ) -> tuple[str, int]:
        prefix = str(config.get("prefix") or tenant.invoice_prefix)
        configured_seed = _positive_int(config.get("nextNumber"))

        row = await self._sequences.get(document_type)
        if row is None:
            if configured_seed is not None:
                seed = configured_seed
            elif config.get("nextNumber") is not None:
                seed = await self._repair_seed(prefix, reason=f"configured nextNumber {config.get('nextNumber')!r}")
            else:
                seed = await self._invoices.max_numeric_suffix(prefix) + 1
            await self._sequences.seed(document_type, prefix, seed)
        elif row.prefix != prefix or row.next_number < 1:
            seed = await self._repair_seed(prefix, reason=f"sequence {row.prefix!r}/{row.next_number}")
            await self._sequences.reset(document_type, prefix, max(seed, configured_seed or 1))

        advanced = await self._sequences.advance(document_type)
        if advanced is None:
            raise NotFoundError("Document sequence not found", code="SEQUENCE_NOT_FOUND")
        return advanced

    async def _reseed(self, tenant: TenantTable, document_type: str, prefix: str, next_number: int) -> None:
        if self._type_config(tenant, document_type) is None:
            await self._tenants.set_invoice_counter(next_number)
        else:
            await self._sequences.reset(document_type, prefix, next_number)

    async def _repair_seed(self, prefix: str, *, reason: str) -> int:
        """Next safe value for *prefix*: one past the highest number already used."""
        seed = await self._invoices.max_numeric_suffix(prefix) + 1
        logger.warning(
            "Reseeding document counter tenant=%s prefix=%s from %d (%s)",
            self._tenant_id,
            prefix,
            seed,
            reason,
        )
        return seed
