"""Customer and product handlers.

Creates are idempotent on the client-generated id: replaying a create for
an id this tenant already owns returns the stored row.  Updates apply only
the fields present in the payload.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession
from sync_core.errors import ForbiddenError, NotFoundError, ValidationError
from sync_core.models.payloads import CustomerPayload, ProductPayload
from sync_core.state.repository import CustomerRepository, ProductRepository

from sync_api.services.serializers import customer_to_dict, product_to_dict

logger = logging.getLogger(__name__)


class _CatalogService:
    _entity: str
    _serialize: Callable[[Any], dict[str, Any]]

    def __init__(self, repo: CustomerRepository | ProductRepository, tenant_id: str) -> None:
        self._repo = repo
        self._tenant_id = tenant_id

    async def _load_owned(self, entity_id: str) -> Any:
        row = await self._repo.get(entity_id)
        if row is not None:
            return row
        if await self._repo.find_owner(entity_id) is not None:
            raise ForbiddenError("Access denied")
        raise NotFoundError(
            f"{self._entity.title()} not found",
            code=f"{self._entity.upper()}_NOT_FOUND",
            details={"id": entity_id},
        )

    async def _existing(self, entity_id: str) -> Any | None:
        """Return this tenant's row for a replayed create; refuse foreign ids."""
        owner = await self._repo.find_owner(entity_id)
        if owner is None:
            return None
        if owner != self._tenant_id:
            raise ForbiddenError("Access denied")
        return await self._repo.get(entity_id)

    async def _create(self, payload: CustomerPayload | ProductPayload, **id_kwarg: str) -> dict[str, Any]:
        existing = await self._existing(payload.id)
        if existing is not None:
            logger.info("%s %s already exists for tenant=%s", self._entity.title(), payload.id, self._tenant_id)
            return self._serialize(existing)
        if not payload.name:
            raise ValidationError(f"{self._entity.title()} name is required", code="VALIDATION_ERROR")

        fields = payload.model_dump(exclude={"id", "name"})
        row = await self._repo.create(name=payload.name, **id_kwarg, **fields)  # type: ignore[arg-type]
        logger.info("Created %s %s tenant=%s", self._entity, payload.id, self._tenant_id)
        return self._serialize(row)

    async def update(self, payload: CustomerPayload | ProductPayload) -> dict[str, Any]:
        row = await self._load_owned(payload.id)
        changes = {name: getattr(payload, name) for name in payload.model_fields_set - {"id"}}
        if "name" in changes and not changes["name"]:
            raise ValidationError(f"{self._entity.title()} name cannot be empty", code="VALIDATION_ERROR")
        await self._repo.update_fields(row, changes)
        logger.info("Updated %s %s tenant=%s fields=%s", self._entity, payload.id, self._tenant_id, sorted(changes))
        return self._serialize(row)

    async def get(self, entity_id: str) -> dict[str, Any]:
        return self._serialize(await self._load_owned(entity_id))


class CustomerService(_CatalogService):
    """Per-tenant customer handler."""

    _entity = "customer"
    _serialize = staticmethod(customer_to_dict)

    def __init__(self, session: AsyncSession, tenant_id: str) -> None:
        super().__init__(CustomerRepository(session, tenant_id), tenant_id)

    async def create(self, payload: CustomerPayload) -> dict[str, Any]:
        return await self._create(payload, customer_id=payload.id)


class ProductService(_CatalogService):
    """Per-tenant product/service catalogue handler."""

    _entity = "product"
    _serialize = staticmethod(product_to_dict)

    def __init__(self, session: AsyncSession, tenant_id: str) -> None:
        super().__init__(ProductRepository(session, tenant_id), tenant_id)

    async def create(self, payload: ProductPayload) -> dict[str, Any]:
        return await self._create(payload, product_id=payload.id)
