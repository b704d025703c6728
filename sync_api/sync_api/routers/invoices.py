"""Invoice status endpoints.

Creation and edits travel through ``/sync/batch``; these endpoints cover the
online-only actions (issue, status change, delete) plus a single-invoice read.
Each request runs in its own tenant transaction.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter

from sync_api.dependencies import ScopeDep, UserDep
from sync_api.schemas import StatusChangeRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/invoices", tags=["invoices"])


@router.get("/{invoice_id}")
async def get_invoice(invoice_id: str, scope: ScopeDep) -> dict[str, Any]:
    async with scope() as services:
        return await services.invoices.get(invoice_id)


@router.post("/{invoice_id}/issue")
async def issue_invoice(invoice_id: str, scope: ScopeDep, user: UserDep) -> dict[str, Any]:
    """Move a DRAFT invoice to ISSUED, consuming one unit of monthly quota."""
    async with scope() as services:
        result = await services.invoices.issue(invoice_id)
    logger.info("Invoice %s issued by %s", invoice_id, user)
    return result


@router.patch("/{invoice_id}/status")
async def change_invoice_status(
    invoice_id: str,
    body: StatusChangeRequest,
    scope: ScopeDep,
    user: UserDep,
) -> dict[str, Any]:
    async with scope() as services:
        result = await services.invoices.change_status(invoice_id, body.status)
    logger.info("Invoice %s status set to %s by %s", invoice_id, result.get("status"), user)
    return result


@router.delete("/{invoice_id}")
async def delete_invoice(invoice_id: str, scope: ScopeDep, user: UserDep) -> dict[str, Any]:
    """Delete a DRAFT invoice."""
    async with scope() as services:
        result = await services.invoices.delete(invoice_id)
    logger.info("Invoice %s deleted by %s", invoice_id, user)
    return result
