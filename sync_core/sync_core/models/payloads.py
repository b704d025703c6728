"""Validated payload models for entity mutations.

Clients send camelCase JSON; fields are exposed here in snake_case.  Update
payloads are partial: only keys present in the request are applied, which is
read back through ``model_fields_set``.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class LineItemPayload(_CamelModel):
    id: str | None = None
    name: str = Field(..., min_length=1)
    quantity: float = Field(..., ge=0)
    rate: float = Field(..., ge=0)
    product_service_id: str | None = None


class CreateInvoicePayload(_CamelModel):
    id: str = Field(..., min_length=1, description="Client-generated invoice id.")
    customer_id: str | None = None
    document_type: str = "invoice"
    invoice_number: str | None = Field(default=None, description="Trusted verbatim when supplied.")
    date: datetime | None = None
    due_date: datetime | None = None
    line_items: list[LineItemPayload] = Field(default_factory=list)
    discount_total: float | None = Field(default=0.0, ge=0)
    tax_rate: float | None = Field(default=0.0, ge=0, le=100)
    customer_state_code: str | None = None
    notes: str | None = None
    terms: str | None = None


class UpdateInvoicePayload(_CamelModel):
    id: str = Field(..., min_length=1)
    customer_id: str | None = None
    date: datetime | None = None
    due_date: datetime | None = None
    line_items: list[LineItemPayload] | None = None
    discount_total: float | None = Field(default=None, ge=0)
    tax_rate: float | None = Field(default=None, ge=0, le=100)
    customer_state_code: str | None = None
    notes: str | None = None
    terms: str | None = None


class CustomerPayload(_CamelModel):
    id: str = Field(..., min_length=1)
    name: str | None = Field(default=None, min_length=1)
    phone: str | None = None
    email: str | None = None
    gstin: str | None = None
    state_code: str | None = None
    address: str | None = None


class ProductPayload(_CamelModel):
    id: str = Field(..., min_length=1)
    name: str | None = Field(default=None, min_length=1)
    default_rate: float | None = Field(default=None, ge=0)
    unit: str | None = None
    hsn_code: str | None = None
    tax_rate: float | None = Field(default=None, ge=0, le=100)


class StatusChangePayload(_CamelModel):
    status: str = Field(..., min_length=1)
