"""Shared Pydantic request/response models for API endpoints.

These schemas ensure that request bodies and endpoint responses are
validated and documented in the OpenAPI specification.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field
from sync_core.models.mutation import Mutation

# ---------------------------------------------------------------------------
# Sync schemas
# ---------------------------------------------------------------------------


class BatchRequest(BaseModel):
    """Body of ``POST /sync/batch``."""

    mutations: list[Mutation] = Field(..., description="Queued client writes, processed in order.")


class MutationResultResponse(BaseModel):
    """Outcome of one mutation."""

    id: str
    status: str
    data: dict[str, Any] | None = None
    error: str | None = None
    code: str | None = None
    cached: bool | None = None


class BatchResponse(BaseModel):
    data: list[MutationResultResponse]


class HasMore(BaseModel):
    invoices: bool
    customers: bool
    products: bool


class DeltaResponse(BaseModel):
    """Changes since the client's last sync point."""

    invoices: list[dict[str, Any]]
    customers: list[dict[str, Any]]
    products: list[dict[str, Any]]
    syncedAt: str  # noqa: N815


class FullSyncResponse(DeltaResponse):
    """One page of the full bootstrap dataset."""

    tenant: dict[str, Any]
    page: int
    hasMore: HasMore  # noqa: N815
    nextCursor: str | None = None  # noqa: N815


# ---------------------------------------------------------------------------
# Invoice schemas
# ---------------------------------------------------------------------------


class StatusChangeRequest(BaseModel):
    """Body of ``PATCH /invoices/{id}/status``."""

    status: str = Field(..., min_length=1, description="Target status, e.g. PAID or VOID.")


# ---------------------------------------------------------------------------
# Usage schemas
# ---------------------------------------------------------------------------


class UsageResponse(BaseModel):
    """Current-month issuance usage for the caller's tenant."""

    limit: int | None
    used: int
    remaining: int | None
    monthKey: str  # noqa: N815
    planTier: str  # noqa: N815
    canIssue: bool  # noqa: N815
