# pharmapos/services/billing_math.py
from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Dict, Optional

from pharmapos.services.errors import ValidationError

HUNDRED = Decimal("100")
# Largest value a Numeric(14, 2) money column holds.
MONEY_MAX = Decimal("999999999999.99")


def D(x) -> Decimal:
    if isinstance(x, Decimal):
        return x
    try:
        return Decimal(str(x if x is not None else 0))
    except (InvalidOperation, ValueError):
        return Decimal("0")


def money2(x) -> Decimal:
    return D(x).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def price4(x) -> Decimal:
    return D(x).quantize(Decimal("0.0001"), rounding=ROUND_HALF_UP)


def parse_money(value, field: str, *, maximum: Decimal = MONEY_MAX) -> Optional[Decimal]:
    """
    Strict reader for caller-supplied amounts (discounts, payments, refunds).

    Unlike D() nothing is coerced: blanks, junk, NaN / Infinity, negatives and
    values above ``maximum`` raise ValidationError. None passes through.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number", **{field: value})
    try:
        dec = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"{field} must be a number", **{field: str(value)}) from None

    if not dec.is_finite():
        raise ValidationError(f"{field} must be a finite number", **{field: str(value)})
    if dec < 0:
        raise ValidationError(f"{field} cannot be negative", **{field: str(value)})
    if dec > maximum:
        raise ValidationError(f"{field} cannot exceed {maximum}", **{field: str(value)})
    return dec


def weighted_unit_price(parts) -> Decimal:
    """
    Quantity-weighted average of (qty, unit_price) pairs.
    (5 @ 10) + (3 @ 12) -> 86 / 8 = 10.75
    """
    qty = sum((D(q) for q, _ in parts), Decimal("0"))
    if qty <= 0:
        return Decimal("0")
    amount = sum((D(q) * D(p) for q, p in parts), Decimal("0"))
    return price4(amount / qty)


def compute_invoice_amounts(
    subtotal,
    *,
    tax_rate,
    discount_amount=None,
    discount_percentage=None,
    amount_paid=None,
) -> Dict[str, Decimal]:
    """
    discount  = discount_amount if given, else subtotal * pct / 100
    tax       = (subtotal - discount) * tax_rate / 100
    total     = subtotal - discount + tax
    amount_due = total - amount_paid  (amount_paid defaults to total)
    """
    subtotal = money2(subtotal)
    pct = D(discount_percentage)

    if discount_amount is not None:
        discount = money2(discount_amount)
    else:
        discount = money2(subtotal * pct / HUNDRED)

    taxable = subtotal - discount
    tax_amount = money2(taxable * D(tax_rate) / HUNDRED)
    total = money2(taxable + tax_amount)

    paid = total if amount_paid is None else money2(amount_paid)

    return {
        "subtotal": subtotal,
        "discount": discount,
        "discount_percentage": money2(pct),
        "tax_rate": money2(tax_rate),
        "tax_amount": tax_amount,
        "total_amount": total,
        "amount_paid": paid,
        "amount_due": money2(total - paid),
    }
