from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP

MONEY_Q = Decimal("0.01")
QTY_Q = Decimal("0.01")
PRICE_Q = Decimal("0.001")
PCT_Q = Decimal("0.01")


def d(v) -> Decimal:
    return Decimal(str(v or 0))


def q_money(v: Decimal) -> Decimal:
    return (v or Decimal("0")).quantize(MONEY_Q, rounding=ROUND_HALF_UP)


def q_qty(v: Decimal) -> Decimal:
    return (v or Decimal("0")).quantize(QTY_Q, rounding=ROUND_HALF_UP)


def q_price(v: Decimal) -> Decimal:
    return (v or Decimal("0")).quantize(PRICE_Q, rounding=ROUND_HALF_UP)


def q_pct(v: Decimal) -> Decimal:
    return (v or Decimal("0")).quantize(PCT_Q, rounding=ROUND_HALF_UP)


def split_vat(base: Decimal, vat_percentage: Decimal) -> tuple[Decimal, Decimal, Decimal]:
    """
    Return (subtotal, vat_amount, total) for a pre-VAT base.
    Each component is rounded once so that total == subtotal + vat_amount exactly.
    """
    subtotal = q_money(base)
    vat_amount = q_money(subtotal * q_pct(vat_percentage) / Decimal("100"))
    return subtotal, vat_amount, subtotal + vat_amount
