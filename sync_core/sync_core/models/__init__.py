"""Transient DTOs for the sync engine."""

from sync_core.models.mutation import Mutation, MutationResult, MutationStatus, MutationType
from sync_core.models.payloads import (
    CreateInvoicePayload,
    CustomerPayload,
    LineItemPayload,
    ProductPayload,
    StatusChangePayload,
    UpdateInvoicePayload,
)

__all__ = [
    "CreateInvoicePayload",
    "CustomerPayload",
    "LineItemPayload",
    "Mutation",
    "MutationResult",
    "MutationStatus",
    "MutationType",
    "ProductPayload",
    "StatusChangePayload",
    "UpdateInvoicePayload",
]
