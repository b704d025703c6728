"""Transient mutation DTOs exchanged by the batch sync endpoint.

A :class:`Mutation` is one queued offline write replayed by a client; a
:class:`MutationResult` is its per-mutation outcome.  Neither is persisted
except as the cached body of an idempotency record.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class MutationType(str, Enum):
    """Mutation kinds understood by the dispatcher."""

    CREATE_INVOICE = "CREATE_INVOICE"
    UPDATE_INVOICE = "UPDATE_INVOICE"
    CREATE_CUSTOMER = "CREATE_CUSTOMER"
    UPDATE_CUSTOMER = "UPDATE_CUSTOMER"
    CREATE_PRODUCT = "CREATE_PRODUCT"
    UPDATE_PRODUCT = "UPDATE_PRODUCT"


class MutationStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


class Mutation(BaseModel):
    """One client-queued write.

    ``type`` is kept as a free string so that an unknown kind fails only its
    own mutation instead of rejecting the whole batch.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    client_id: str = Field(..., alias="id", min_length=1, description="Client-side mutation id echoed in the result.")
    type: str = Field(..., min_length=1)
    idempotency_key: str | None = Field(default=None, description="Replay key; empty or missing disables caching.")
    data: dict[str, Any] = Field(default_factory=dict)


class MutationResult(BaseModel):
    """Outcome of a single mutation, returned in batch order."""

    client_id: str
    status: MutationStatus
    data: dict[str, Any] | None = None
    error: str | None = None
    code: str | None = None
    cached: bool = False

    @classmethod
    def success(cls, client_id: str, data: dict[str, Any], *, cached: bool = False) -> MutationResult:
        return cls(client_id=client_id, status=MutationStatus.SUCCESS, data=data, cached=cached)

    @classmethod
    def failure(cls, client_id: str, error: str, code: str) -> MutationResult:
        return cls(client_id=client_id, status=MutationStatus.ERROR, error=error, code=code)

    def to_response(self) -> dict[str, Any]:
        """Render the wire shape ``{id, status, data?|error?, code?, cached?}``."""
        body: dict[str, Any] = {"id": self.client_id, "status": self.status.value}
        if self.status is MutationStatus.SUCCESS:
            body["data"] = self.data
            if self.cached:
                body["cached"] = True
        else:
            body["error"] = self.error
            body["code"] = self.code
        return body
