"""Offline sync endpoints: delta pull, full bootstrap and mutation batches."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import JSONResponse

from sync_api.dependencies import DispatcherDep, ScopeDep, SettingsDep, TenantDep
from sync_api.schemas import BatchRequest, BatchResponse, DeltaResponse, FullSyncResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])


@router.get("/delta", response_model=DeltaResponse)
async def get_delta(
    scope: ScopeDep,
    last_sync_at: datetime | None = Query(
        default=None,
        alias="lastSyncAt",
        description="ISO-8601 timestamp returned as syncedAt by the previous sync.",
    ),
) -> dict[str, Any]:
    """Return invoices, customers and products changed after ``lastSyncAt``."""
    async with scope() as services:
        return await services.sync.get_delta(last_sync_at)


@router.get("/full", response_model=FullSyncResponse)
async def get_full_sync(
    scope: ScopeDep,
    page: int = Query(default=0, ge=0, description="0-based page index."),
    cursor: str | None = Query(
        default=None,
        min_length=1,
        description="nextCursor of the previous page; takes precedence over page.",
    ),
) -> dict[str, Any]:
    """Return one page of the most recent rows of every entity type."""
    async with scope() as services:
        return await services.sync.get_full_sync(page, cursor)


@router.post("/batch", response_model=BatchResponse)
async def process_batch(
    body: BatchRequest,
    tenant_id: TenantDep,
    dispatcher: DispatcherDep,
    settings: SettingsDep,
) -> JSONResponse:
    """Apply queued client mutations in order.

    Always answers 200 with one result per mutation; individual failures are
    reported in their result entries.  Entity payloads are returned as
    stored, including null fields.
    """
    if len(body.mutations) > settings.max_batch_size:
        raise HTTPException(
            status_code=413,
            detail=f"Batch exceeds maximum of {settings.max_batch_size} mutations",
        )
    results = await dispatcher.process(tenant_id, body.mutations)
    return JSONResponse(content={"data": [result.to_response() for result in results]})
