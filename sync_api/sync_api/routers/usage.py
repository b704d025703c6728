"""Plan usage endpoint.

Reports how many documents the caller's tenant has issued this calendar
month (UTC) against its plan limit.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter

from sync_api.dependencies import ScopeDep
from sync_api.schemas import UsageResponse

router = APIRouter(prefix="/usage", tags=["usage"])


@router.get("", response_model=UsageResponse)
async def get_usage(scope: ScopeDep) -> dict[str, Any]:
    async with scope() as services:
        return await services.usage.get_usage_snapshot()
