from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

from erp_engine.domain.money import ZERO, compute_line, money_str, quantize
from erp_engine.errors import ValidationError


@dataclass(frozen=True)
class DocumentTotals:
    subtotal: Decimal
    total_discount: Decimal
    total_tax: Decimal
    total: Decimal

    def as_dict(self) -> dict:
        return {
            "subtotal": money_str(self.subtotal),
            "total_discount": money_str(self.total_discount),
            "total_tax": money_str(self.total_tax),
            "total": money_str(self.total),
        }


def _non_negative(value, field: str) -> Decimal:
    resolved = quantize(value if value is not None else ZERO)
    if resolved < 0:
        raise ValidationError(message_key="validation_error", details=f"{field} cannot be negative")
    return resolved


def aggregate(lines: Iterable, shipping_charges=ZERO, document_discount=ZERO) -> DocumentTotals:
    """Sum line amounts, then add shipping and subtract the document level discount.

    Documents without a document level discount (purchase orders) pass zero. The
    total is not clamped: a discount larger than the lines yields a negative total
    and the caller decides what to do with it.
    """
    shipping = _non_negative(shipping_charges, "shipping_charges")
    doc_discount = _non_negative(document_discount, "document_discount")

    subtotal = ZERO
    line_discount = ZERO
    tax = ZERO
    line_totals = ZERO
    for line in lines:
        amounts = compute_line(line.quantity, line.unit_price, line.discount_pct, line.tax_rate_pct)
        subtotal += amounts.subtotal
        line_discount += amounts.discount_amount
        tax += amounts.tax_amount
        line_totals += amounts.line_total

    return DocumentTotals(
        subtotal=subtotal,
        total_discount=line_discount + doc_discount,
        total_tax=tax,
        total=line_totals + shipping - doc_discount,
    )


def aggregate_declared(subtotal, tax_amount=ZERO, shipping_charges=ZERO, document_discount=ZERO) -> DocumentTotals:
    """Totals for documents that carry declared figures instead of line items."""
    declared_subtotal = _non_negative(subtotal, "subtotal")
    declared_tax = _non_negative(tax_amount, "tax_amount")
    shipping = _non_negative(shipping_charges, "shipping_charges")
    doc_discount = _non_negative(document_discount, "document_discount")
    return DocumentTotals(
        subtotal=declared_subtotal,
        total_discount=doc_discount,
        total_tax=declared_tax,
        total=declared_subtotal + declared_tax + shipping - doc_discount,
    )
