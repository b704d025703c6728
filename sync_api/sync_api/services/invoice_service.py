"""Invoice creation, editing and lifecycle transitions.

All writes run inside the caller's transaction.  Numbering, quota checks
and usage increments happen in that same transaction, so either the whole
operation lands or none of it does.

Lifecycle::

    DRAFT ──issue──▶ ISSUED ──▶ PAID
      │                 ├─────▶ CANCELLED
      │                 └─────▶ VOID
      └──(no-workflow tenants)──▶ PAID

Only drafts can be edited or deleted.  Leaving DRAFT counts as one issued
document against the monthly quota.
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sync_core.errors import ForbiddenError, NotFoundError, ValidationError
from sync_core.models.payloads import CreateInvoicePayload, LineItemPayload, UpdateInvoicePayload
from sync_core.state.repository import CustomerRepository, InvoiceRepository, ProductRepository, TenantRepository
from sync_core.state.tables import CustomerTable, InvoiceTable, LineItemTable, TenantTable
from sync_core.tax import compute_totals, line_total

from sync_api.services.event_bus import EventType, PendingEvent
from sync_api.services.numbering_service import SequenceAllocator
from sync_api.services.serializers import invoice_to_dict
from sync_api.services.usage_service import UsageService

logger = logging.getLogger(__name__)

VALID_STATUSES = ("DRAFT", "ISSUED", "PAID", "CANCELLED", "VOID")

_TRANSITIONS: dict[str, frozenset[str]] = {
    "DRAFT": frozenset({"ISSUED", "PAID"}),
    "ISSUED": frozenset({"PAID", "CANCELLED", "VOID"}),
    "PAID": frozenset(),
    "CANCELLED": frozenset(),
    "VOID": frozenset(),
}

# Fields whose change forces a totals recomputation.
_TOTALS_FIELDS = frozenset({"line_items", "discount_total", "tax_rate", "customer_state_code", "customer_id"})


def _is_number_conflict(exc: IntegrityError) -> bool:
    message = str(exc.orig)
    return "uq_invoices_tenant_number" in message or "invoices.invoice_number" in message


class InvoiceService:
    """Per-tenant invoice handler."""

    def __init__(
        self,
        session: AsyncSession,
        tenant_id: str,
        *,
        usage: UsageService,
        numbering: SequenceAllocator,
        events: list[PendingEvent] | None = None,
    ) -> None:
        self._tenant_id = tenant_id
        self._usage = usage
        self._numbering = numbering
        self._events = events if events is not None else []
        self._tenants = TenantRepository(session, tenant_id)
        self._invoices = InvoiceRepository(session, tenant_id)
        self._customers = CustomerRepository(session, tenant_id)
        self._products = ProductRepository(session, tenant_id)

    # -- lookups -------------------------------------------------------------

    async def _get_tenant(self) -> TenantTable:
        tenant = await self._tenants.get()
        if tenant is None:
            raise NotFoundError("Tenant not found", code="TENANT_NOT_FOUND")
        return tenant

    async def _load_owned(self, invoice_id: str) -> InvoiceTable:
        row = await self._invoices.get(invoice_id)
        if row is not None:
            return row
        if await self._invoices.find_owner(invoice_id) is not None:
            raise ForbiddenError("Access denied")
        raise NotFoundError("Invoice not found", code="INVOICE_NOT_FOUND", details={"invoiceId": invoice_id})

    async def _owned_customer(self, customer_id: str) -> CustomerTable:
        customer = await self._customers.get(customer_id)
        if customer is None:
            raise NotFoundError("Customer not found", code="CUSTOMER_NOT_FOUND", details={"customerId": customer_id})
        return customer

    async def _check_products(self, items: list[LineItemPayload]) -> None:
        referenced = {item.product_service_id for item in items if item.product_service_id}
        missing = await self._products.missing_ids(referenced)
        if missing:
            raise NotFoundError(
                "Product not found",
                code="PRODUCT_NOT_FOUND",
                details={"productIds": sorted(missing)},
            )

    @staticmethod
    def _build_line_items(items: list[LineItemPayload]) -> list[LineItemTable]:
        return [
            LineItemTable(
                line_item_id=item.id or uuid.uuid4().hex,
                name=item.name,
                quantity=item.quantity,
                rate=item.rate,
                line_total=line_total(item.quantity, item.rate),
                product_id=item.product_service_id,
                position=position,
            )
            for position, item in enumerate(items)
        ]

    async def get(self, invoice_id: str) -> dict[str, Any]:
        return invoice_to_dict(await self._load_owned(invoice_id))

    # -- create / update -----------------------------------------------------

    async def create(self, payload: CreateInvoicePayload) -> dict[str, Any]:
        """Create an invoice from a client payload.

        Replaying a create for an id this tenant already owns returns the
        stored invoice unchanged.
        """
        tenant = await self._get_tenant()

        owner = await self._invoices.find_owner(payload.id)
        if owner is not None:
            if owner != self._tenant_id:
                raise ForbiddenError("Access denied")
            logger.info("Invoice %s already exists for tenant=%s, returning stored copy", payload.id, self._tenant_id)
            return await self.get(payload.id)

        customer = await self._owned_customer(payload.customer_id) if payload.customer_id else None
        await self._check_products(payload.line_items)

        if payload.invoice_number and payload.invoice_number.strip():
            invoice_number = payload.invoice_number.strip()
            await self._numbering.ensure_number_available(invoice_number)
        else:
            invoice_number = await self._numbering.allocate(tenant, payload.document_type)

        place_of_supply = payload.customer_state_code or (customer.state_code if customer else None)
        totals = compute_totals(
            payload.line_items,
            discount_total=payload.discount_total,
            tax_rate=payload.tax_rate,
            tenant_state_code=tenant.state_code,
            place_of_supply=place_of_supply,
        )

        # Tenants without a status workflow issue straight to PAID.
        issue_now = not tenant.enable_status_workflow
        if issue_now:
            await self._usage.check_can_issue()

        now = datetime.now(UTC)
        row = InvoiceTable(
            invoice_id=payload.id,
            customer_id=payload.customer_id,
            document_type=payload.document_type,
            invoice_number=invoice_number,
            date=payload.date or now,
            due_date=payload.due_date,
            status="PAID" if issue_now else "DRAFT",
            subtotal=totals.subtotal,
            discount_total=totals.discount_total,
            tax_rate=totals.tax_rate or None,
            tax_total=totals.tax_total,
            tax_mode=totals.tax_mode.value,
            tax_breakup=totals.tax_breakup,
            place_of_supply_state_code=place_of_supply,
            total=totals.total,
            notes=payload.notes,
            terms=payload.terms or tenant.default_terms,
            issued_at=now if issue_now else None,
            created_at=now,
            updated_at=now,
            line_items=self._build_line_items(payload.line_items),
        )
        try:
            await self._invoices.create(row)
        except IntegrityError as exc:
            if _is_number_conflict(exc):
                raise ValidationError(
                    "Invoice number already exists",
                    code="DUPLICATE_DOCUMENT_NUMBER",
                    details={"invoiceNumber": invoice_number},
                ) from exc
            raise

        if issue_now:
            await self._record_issuance(row)

        logger.info(
            "Created invoice %s number=%s tenant=%s status=%s",
            row.invoice_id,
            invoice_number,
            self._tenant_id,
            row.status,
        )
        return await self.get(row.invoice_id)

    async def update(self, payload: UpdateInvoicePayload) -> dict[str, Any]:
        """Apply a partial update to a draft invoice.

        Supplied ``lineItems`` replace the existing lines wholesale.  Totals
        are recomputed from scratch whenever anything they depend on changes.
        """
        row = await self._load_owned(payload.id)
        if row.status != "DRAFT":
            raise ForbiddenError(
                "Cannot edit issued invoice",
                code="INVOICE_NOT_EDITABLE",
                details={"status": row.status},
            )

        supplied = payload.model_fields_set
        changes: dict[str, Any] = {}
        customer: CustomerTable | None = row.customer

        if "customer_id" in supplied:
            customer = await self._owned_customer(payload.customer_id) if payload.customer_id else None
            changes["customer_id"] = payload.customer_id
        if "date" in supplied and payload.date is not None:
            changes["date"] = payload.date
        for name in ("due_date", "notes", "terms"):
            if name in supplied:
                changes[name] = getattr(payload, name)

        new_items: list[LineItemTable] | None = None
        if supplied & _TOTALS_FIELDS:
            tenant = await self._get_tenant()
            if "line_items" in supplied and payload.line_items is not None:
                await self._check_products(payload.line_items)
                new_items = self._build_line_items(payload.line_items)
                items_for_totals: list[Any] = list(payload.line_items)
            else:
                items_for_totals = list(row.line_items)

            discount = payload.discount_total if "discount_total" in supplied else row.discount_total
            tax_rate = payload.tax_rate if "tax_rate" in supplied else row.tax_rate
            if "customer_state_code" in supplied and payload.customer_state_code:
                place_of_supply = payload.customer_state_code
            elif supplied & {"customer_state_code", "customer_id"}:
                place_of_supply = customer.state_code if customer is not None else None
            else:
                place_of_supply = row.place_of_supply_state_code

            totals = compute_totals(
                items_for_totals,
                discount_total=discount,
                tax_rate=tax_rate,
                tenant_state_code=tenant.state_code,
                place_of_supply=place_of_supply,
            )
            changes.update(
                subtotal=totals.subtotal,
                discount_total=totals.discount_total,
                tax_rate=totals.tax_rate or None,
                tax_total=totals.tax_total,
                tax_mode=totals.tax_mode.value,
                tax_breakup=totals.tax_breakup,
                place_of_supply_state_code=place_of_supply,
                total=totals.total,
            )

        if new_items is not None:
            await self._invoices.replace_line_items(row, new_items)
        await self._invoices.touch(row, **changes)

        logger.info("Updated invoice %s tenant=%s fields=%s", row.invoice_id, self._tenant_id, sorted(supplied - {"id"}))
        return await self.get(row.invoice_id)

    # -- lifecycle -----------------------------------------------------------

    async def _record_issuance(self, row: InvoiceTable) -> None:
        await self._usage.increment()
        self._events.append(
            PendingEvent(
                EventType.INVOICE_ISSUED,
                {"invoiceId": row.invoice_id, "invoiceNumber": row.invoice_number, "status": row.status},
            )
        )

    async def issue(self, invoice_id: str) -> dict[str, Any]:
        """Move a draft to ISSUED, subject to the monthly quota."""
        row = await self._load_owned(invoice_id)
        if row.status != "DRAFT":
            raise ValidationError(
                "Invoice already issued",
                code="INVALID_STATUS_TRANSITION",
                details={"status": row.status},
            )
        await self._usage.check_can_issue()
        await self._invoices.touch(row, status="ISSUED", issued_at=datetime.now(UTC))
        await self._record_issuance(row)
        logger.info("Issued invoice %s tenant=%s", invoice_id, self._tenant_id)
        return await self.get(invoice_id)

    async def change_status(self, invoice_id: str, status: str) -> dict[str, Any]:
        """Apply an explicit status transition.

        Raises
        ------
        ValidationError
            For unknown statuses and transitions the lifecycle does not allow.
        QuotaExceededError
            When leaving DRAFT would exceed the monthly quota.
        """
        target = status.strip().upper()
        if target not in VALID_STATUSES:
            raise ValidationError("Invalid status", code="INVALID_STATUS", details={"status": status})

        row = await self._load_owned(invoice_id)
        if row.status == target:
            return invoice_to_dict(row)
        if target == "ISSUED":
            return await self.issue(invoice_id)
        if target not in _TRANSITIONS[row.status]:
            raise ValidationError(
                f"Cannot change status from {row.status} to {target}",
                code="INVALID_STATUS_TRANSITION",
                details={"from": row.status, "to": target},
            )

        if row.status == "DRAFT":
            tenant = await self._get_tenant()
            if tenant.enable_status_workflow:
                raise ValidationError(
                    "Invoice must be issued before it can be marked paid",
                    code="INVALID_STATUS_TRANSITION",
                    details={"from": row.status, "to": target},
                )
            await self._usage.check_can_issue()
            await self._invoices.touch(row, status=target, issued_at=datetime.now(UTC))
            await self._record_issuance(row)
        else:
            await self._invoices.touch(row, status=target)

        logger.info("Invoice %s status -> %s tenant=%s", invoice_id, target, self._tenant_id)
        return await self.get(invoice_id)

    async def delete(self, invoice_id: str) -> dict[str, Any]:
        row = await self._load_owned(invoice_id)
        if row.status != "DRAFT":
            raise ForbiddenError(
                "Cannot delete issued invoice",
                code="INVOICE_NOT_EDITABLE",
                details={"status": row.status},
            )
        await self._invoices.delete(invoice_id)
        logger.info("Deleted draft invoice %s tenant=%s", invoice_id, self._tenant_id)
        return {"id": invoice_id, "deleted": True}
