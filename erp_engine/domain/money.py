"""Line level money arithmetic.

Every amount is a :class:`~decimal.Decimal` quantized to two places with
ROUND_HALF_UP. Each component of a line is rounded on its own, so the rounded
parts always add up: ``line_total == subtotal - discount_amount + tax_amount``.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from erp_engine.errors import ValidationError


CENT = Decimal("0.01")
ZERO = Decimal("0.00")
HUNDRED = Decimal("100")


def to_decimal(value: Any, *, field: str = "amount") -> Decimal:
    if isinstance(value, Decimal):
        resolved = value
    elif isinstance(value, bool) or value is None:
        raise ValidationError(message_key="amount_invalid", details=f"{field} is not a number")
    elif isinstance(value, float):
        # Route floats through repr so 0.1 becomes Decimal("0.1") and not its binary expansion.
        resolved = Decimal(repr(value))
    else:
        try:
            resolved = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            raise ValidationError(message_key="amount_invalid", details=f"{field} is not a number") from None
    if not resolved.is_finite():
        raise ValidationError(message_key="amount_invalid", details=f"{field} is not finite")
    return resolved


def quantize(value: Any) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def money_str(value: Decimal) -> str:
    return str(quantize(value))


@dataclass(frozen=True)
class LineAmounts:
    subtotal: Decimal
    discount_amount: Decimal
    taxable_base: Decimal
    tax_amount: Decimal
    line_total: Decimal

    def as_dict(self) -> dict:
        return {
            "subtotal": money_str(self.subtotal),
            "discount_amount": money_str(self.discount_amount),
            "taxable_base": money_str(self.taxable_base),
            "tax_amount": money_str(self.tax_amount),
            "line_total": money_str(self.line_total),
        }


def validate_line_inputs(quantity, unit_price, discount_pct, tax_rate_pct) -> tuple[Decimal, Decimal, Decimal, Decimal]:
    qty = to_decimal(quantity, field="quantity")
    price = to_decimal(unit_price, field="unit_price")
    discount = to_decimal(discount_pct, field="discount_pct")
    tax = to_decimal(tax_rate_pct, field="tax_rate_pct")
    if qty <= 0:
        raise ValidationError(message_key="quantity_not_positive", details=f"quantity={qty}")
    if price < 0:
        raise ValidationError(message_key="unit_price_negative", details=f"unit_price={price}")
    if discount < 0 or discount > HUNDRED:
        raise ValidationError(message_key="discount_out_of_range", details=f"discount_pct={discount}")
    if tax < 0:
        raise ValidationError(message_key="tax_rate_negative", details=f"tax_rate_pct={tax}")
    return qty, price, discount, tax


def compute_line(quantity, unit_price, discount_pct=0, tax_rate_pct=0) -> LineAmounts:
    qty, price, discount, tax = validate_line_inputs(quantity, unit_price, discount_pct, tax_rate_pct)

    subtotal = quantize(qty * price)
    discount_amount = quantize(subtotal * discount / HUNDRED)
    taxable_base = subtotal - discount_amount
    tax_amount = quantize(taxable_base * tax / HUNDRED)
    return LineAmounts(
        subtotal=subtotal,
        discount_amount=discount_amount,
        taxable_base=taxable_base,
        tax_amount=tax_amount,
        line_total=taxable_base + tax_amount,
    )
