"""Batch mutation dispatcher for offline sync.

Mutations are processed strictly in order, one at a time, each in its own
transaction::

    idempotency check ─▶ dispatch by type ─▶ save under key ─▶ commit

A failure rolls back that mutation only and is reported as data in its
:class:`MutationResult`; the rest of the batch carries on.  The result list
always has the same length and order as the input.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sync_core.errors import SyncError, ValidationError
from sync_core.models.mutation import Mutation, MutationResult, MutationType
from sync_core.models.payloads import (
    CreateInvoicePayload,
    CustomerPayload,
    ProductPayload,
    UpdateInvoicePayload,
)

from sync_api.config import SyncSettings
from sync_api.services.event_bus import EventBus
from sync_api.services.scope import ServiceScope, tenant_scope

logger = logging.getLogger(__name__)

_Handler = Callable[[ServiceScope, Any], Awaitable[dict[str, Any]]]

# mutation type -> (payload model, handler)
_ROUTES: dict[MutationType, tuple[type[BaseModel], _Handler]] = {
    MutationType.CREATE_INVOICE: (CreateInvoicePayload, lambda s, p: s.invoices.create(p)),
    MutationType.UPDATE_INVOICE: (UpdateInvoicePayload, lambda s, p: s.invoices.update(p)),
    MutationType.CREATE_CUSTOMER: (CustomerPayload, lambda s, p: s.customers.create(p)),
    MutationType.UPDATE_CUSTOMER: (CustomerPayload, lambda s, p: s.customers.update(p)),
    MutationType.CREATE_PRODUCT: (ProductPayload, lambda s, p: s.products.create(p)),
    MutationType.UPDATE_PRODUCT: (ProductPayload, lambda s, p: s.products.update(p)),
}


def _describe_validation_error(exc: PydanticValidationError) -> str:
    parts = []
    for err in exc.errors():
        location = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{location}: {err.get('msg')}" if location else str(err.get("msg")))
    return "Invalid payload: " + "; ".join(parts)


class MutationDispatcher:
    """Executes client mutation batches for a tenant.

    Parameters
    ----------
    session_factory:
        Factory for the per-mutation sessions.
    settings:
        Application settings (idempotency window, quota ratios).
    event_bus:
        Receives events recorded by committed mutations.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: SyncSettings,
        event_bus: EventBus | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings
        self._event_bus = event_bus

    async def process(self, tenant_id: str, mutations: list[Mutation]) -> list[MutationResult]:
        """Run *mutations* in order and return one result per mutation."""
        await self._purge_expired_keys(tenant_id)

        results: list[MutationResult] = []
        for mutation in mutations:
            results.append(await self._process_one(tenant_id, mutation))

        failed = sum(1 for r in results if r.error is not None)
        logger.info(
            "Processed batch tenant=%s mutations=%d failed=%d cached=%d",
            tenant_id,
            len(results),
            failed,
            sum(1 for r in results if r.cached),
        )
        return results

    async def _purge_expired_keys(self, tenant_id: str) -> None:
        try:
            async with tenant_scope(self._session_factory, tenant_id, self._settings) as scope:
                await scope.idempotency.purge_expired()
        except SQLAlchemyError:
            # Stale keys are also dropped lazily on lookup.
            logger.warning("Idempotency purge failed for tenant=%s", tenant_id, exc_info=True)

    async def _process_one(self, tenant_id: str, mutation: Mutation) -> MutationResult:
        key = mutation.idempotency_key or None
        try:
            async with tenant_scope(self._session_factory, tenant_id, self._settings, self._event_bus) as scope:
                cached = await scope.idempotency.check(key, mutation.data)
                if cached is not None:
                    logger.debug("Idempotency hit tenant=%s key=%s", tenant_id, key)
                    return MutationResult.success(mutation.client_id, cached, cached=True)

                data = await self._dispatch(scope, mutation)
                await scope.idempotency.save(key, data, mutation.data)
        except SyncError as exc:
            logger.info(
                "Mutation %s (%s) rejected tenant=%s code=%s: %s",
                mutation.client_id,
                mutation.type,
                tenant_id,
                exc.code,
                exc.message,
            )
            return MutationResult.failure(mutation.client_id, exc.message, exc.code)
        except Exception:
            logger.exception("Mutation %s (%s) failed tenant=%s", mutation.client_id, mutation.type, tenant_id)
            return MutationResult.failure(mutation.client_id, "Internal error", "INTERNAL_ERROR")

        return MutationResult.success(mutation.client_id, data)

    async def _dispatch(self, scope: ServiceScope, mutation: Mutation) -> dict[str, Any]:
        try:
            mutation_type = MutationType(mutation.type)
        except ValueError:
            raise ValidationError(
                f"Unknown mutation type: {mutation.type}",
                code="UNKNOWN_MUTATION_TYPE",
            ) from None

        payload_model, handler = _ROUTES[mutation_type]
        try:
            payload = payload_model.model_validate(mutation.data)
        except PydanticValidationError as exc:
            raise ValidationError(_describe_validation_error(exc), code="VALIDATION_ERROR") from exc
        return await handler(scope, payload)
