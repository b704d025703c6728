"""GST invoice totals.

Pure arithmetic over line items: no I/O, no database access.  Both the
create and the update paths call :func:`compute_totals` from scratch so the
stored totals always match the current line items.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class TaxMode(str, Enum):
    """How GST is split on an invoice."""

    NONE = "NONE"
    CGST_SGST = "CGST_SGST"
    IGST = "IGST"


def round_money(value: float) -> float:
    """Round a monetary amount to two decimal places."""
    return round(float(value), 2)


@dataclass(frozen=True)
class InvoiceTotals:
    """Result of a totals computation."""

    subtotal: float
    discount_total: float
    tax_rate: float
    tax_total: float
    total: float
    tax_mode: TaxMode = TaxMode.NONE
    tax_breakup: dict[str, float] | None = field(default=None)


def line_total(quantity: float, rate: float) -> float:
    return round_money(float(quantity) * float(rate))


def resolve_tax_mode(tenant_state_code: str | None, place_of_supply: str | None) -> TaxMode:
    """Intra-state supplies split CGST/SGST; inter-state supplies use IGST.

    When either state code is unknown the mode is ``NONE`` (tax may still be
    charged, it just carries no breakup).
    """
    if not tenant_state_code or not place_of_supply:
        return TaxMode.NONE
    if tenant_state_code.strip() == place_of_supply.strip():
        return TaxMode.CGST_SGST
    return TaxMode.IGST


def compute_totals(
    line_items: Iterable[Any],
    *,
    discount_total: float | None = 0.0,
    tax_rate: float | None = 0.0,
    tenant_state_code: str | None = None,
    place_of_supply: str | None = None,
) -> InvoiceTotals:
    """Compute subtotal, tax and total for a set of line items.

    Each line item may be a mapping with ``quantity``/``rate`` keys or any
    object exposing those attributes.

    * ``subtotal = sum(quantity * rate)``
    * ``tax = (subtotal - discount) * rate / 100`` when ``rate > 0``
    * ``total = subtotal - discount + tax``
    """
    subtotal = 0.0
    for item in line_items:
        if isinstance(item, dict):
            quantity, rate = item.get("quantity", 0), item.get("rate", 0)
        else:
            quantity, rate = item.quantity, item.rate
        subtotal += float(quantity or 0) * float(rate or 0)

    discount = float(discount_total or 0)
    rate_pct = float(tax_rate or 0)

    tax_total = 0.0
    mode = TaxMode.NONE
    breakup: dict[str, float] | None = None

    if rate_pct > 0:
        tax_total = (subtotal - discount) * rate_pct / 100
        mode = resolve_tax_mode(tenant_state_code, place_of_supply)
        if mode is TaxMode.CGST_SGST:
            breakup = {
                "cgst": rate_pct / 2,
                "sgst": rate_pct / 2,
                "cgstAmount": round_money(tax_total / 2),
                "sgstAmount": round_money(tax_total / 2),
            }
        elif mode is TaxMode.IGST:
            breakup = {"igst": rate_pct, "igstAmount": round_money(tax_total)}

    return InvoiceTotals(
        subtotal=round_money(subtotal),
        discount_total=round_money(discount),
        tax_rate=rate_pct,
        tax_total=round_money(tax_total),
        total=round_money(subtotal - discount + tax_total),
        tax_mode=mode,
        tax_breakup=breakup,
    )
