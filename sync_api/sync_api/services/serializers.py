"""Row → camelCase JSON dict conversion for API and sync responses."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sync_core.state.tables import CustomerTable, InvoiceTable, LineItemTable, ProductTable, TenantTable


def isoformat(value: datetime | None) -> str | None:
    """ISO-8601 UTC with a ``Z`` suffix.  Naive values are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


def customer_to_dict(row: CustomerTable) -> dict[str, Any]:
    return {
        "id": row.customer_id,
        "tenantId": row.tenant_id,
        "name": row.name,
        "phone": row.phone,
        "email": row.email,
        "gstin": row.gstin,
        "stateCode": row.state_code,
        "address": row.address,
        "createdAt": isoformat(row.created_at),
        "updatedAt": isoformat(row.updated_at),
    }


def product_to_dict(row: ProductTable) -> dict[str, Any]:
    return {
        "id": row.product_id,
        "tenantId": row.tenant_id,
        "name": row.name,
        "defaultRate": row.default_rate,
        "unit": row.unit,
        "hsnCode": row.hsn_code,
        "taxRate": row.tax_rate,
        "createdAt": isoformat(row.created_at),
        "updatedAt": isoformat(row.updated_at),
    }


def line_item_to_dict(row: LineItemTable) -> dict[str, Any]:
    return {
        "id": row.line_item_id,
        "invoiceId": row.invoice_id,
        "name": row.name,
        "quantity": row.quantity,
        "rate": row.rate,
        "lineTotal": row.line_total,
        "productServiceId": row.product_id,
        "position": row.position,
    }


def invoice_to_dict(row: InvoiceTable) -> dict[str, Any]:
    """Serialise an invoice with its line items and customer.

    The row must have been loaded through ``InvoiceRepository`` so both
    relationships are already populated.
    """
    return {
        "id": row.invoice_id,
        "tenantId": row.tenant_id,
        "customerId": row.customer_id,
        "documentType": row.document_type,
        "invoiceNumber": row.invoice_number,
        "date": isoformat(row.date),
        "dueDate": isoformat(row.due_date),
        "status": row.status,
        "subtotal": row.subtotal,
        "discountTotal": row.discount_total,
        "taxRate": row.tax_rate,
        "taxTotal": row.tax_total,
        "taxMode": row.tax_mode,
        "taxBreakup": row.tax_breakup,
        "placeOfSupplyStateCode": row.place_of_supply_state_code,
        "total": row.total,
        "notes": row.notes,
        "terms": row.terms,
        "issuedAt": isoformat(row.issued_at),
        "createdAt": isoformat(row.created_at),
        "updatedAt": isoformat(row.updated_at),
        "lineItems": [line_item_to_dict(item) for item in row.line_items],
        "customer": customer_to_dict(row.customer) if row.customer is not None else None,
    }


def tenant_to_dict(row: TenantTable) -> dict[str, Any]:
    return {
        "id": row.tenant_id,
        "name": row.name,
        "stateCode": row.state_code,
        "invoicePrefix": row.invoice_prefix,
        "nextInvoiceNumber": row.next_invoice_number,
        "documentTypeConfig": row.document_type_config,
        "enableStatusWorkflow": row.enable_status_workflow,
        "planTier": row.plan_tier,
        "monthlyInvoiceLimit": row.monthly_invoice_limit,
        "defaultTerms": row.default_terms,
        "updatedAt": isoformat(row.updated_at),
    }
