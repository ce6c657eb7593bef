from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional

from .ledger_errors import conflict, invalid
from .money import d, q_money, q_price, q_qty, split_vat

# Average cost keeps more precision than a per-gallon price so COGS on large
# quantities does not drift by whole currency units.
WAC_Q = Decimal("0.000001")


def q_wac(v: Decimal) -> Decimal:
    return (v or Decimal("0")).quantize(WAC_Q, rounding=ROUND_HALF_UP)


def _as_date(v) -> Optional[date]:
    if isinstance(v, datetime):
        return v.date()
    return v


def compute_lot_amounts(quantity, unit_cost, vat_percentage) -> dict:
    qty = q_qty(d(quantity))
    cost = q_price(d(unit_cost))
    vat = d(vat_percentage)
    if qty <= 0:
        raise invalid("invalid_quantity", "quantity must be > 0")
    if cost <= 0:
        raise invalid("invalid_amount", "unit cost must be > 0")
    if vat < 0 or vat > 100:
        raise invalid("invalid_vat_percentage", "vat percentage must be between 0 and 100")
    _subtotal, vat_amount, total = split_vat(qty * cost, vat)
    return {
        "quantity_gallons": qty,
        "unit_cost": cost,
        "vat_percentage": vat,
        "vat_amount": vat_amount,
        "total_cost": total,
    }


def weighted_average_cost(lots: Iterable[dict]) -> Decimal:
    total_qty = Decimal("0")
    total_value = Decimal("0")
    for lot in lots:
        qty = d(lot.get("quantity_gallons"))
        total_qty += qty
        total_value += qty * d(lot.get("unit_cost"))
    if total_qty <= 0:
        return Decimal("0")
    return q_wac(total_value / total_qty)


def weighted_average_as_of(lots: Iterable[dict], as_of) -> Decimal:
    cutoff = _as_date(as_of)
    return weighted_average_cost(l for l in lots if _as_date(l.get("purchase_date")) <= cutoff)


def stock_level(total_purchased, total_sold) -> Decimal:
    return q_qty(d(total_purchased) - d(total_sold))


def assert_inventory_covers(total_purchased, total_sold, *, action: str):
    """
    Fail closed when the hypothetical stock level after `action` is negative.
    Callers pass the totals as they would be after the change.
    """
    level = stock_level(total_purchased, total_sold)
    if level < 0:
        raise conflict(
            "would_underflow_inventory",
            f"cannot {action}: stock level would become {level} gallons",
        )


def assert_stock_available(total_purchased, total_sold, quantity):
    available = stock_level(total_purchased, total_sold)
    if d(quantity) > available:
        raise conflict(
            "insufficient_stock",
            f"cannot sell {q_qty(d(quantity))} gallons; only {available} gallons in stock",
        )


def cogs_for_sales(lots: Iterable[dict], sales: Iterable[dict]) -> tuple[Decimal, dict]:
    """
    Cost of goods sold using the weighted-average cost of the lots purchased on or
    before each sale date. A sale with no earlier lot falls back to its
    purchase-price snapshot.

    Returns (total_cogs, {sale_id: cogs}).
    """
    ordered_lots = sorted(lots, key=lambda l: _as_date(l.get("purchase_date")))
    ordered_sales = sorted(sales, key=lambda s: _as_date(s.get("sale_date")))
    per_sale: dict = {}
    total = Decimal("0")
    qty_acc = Decimal("0")
    value_acc = Decimal("0")
    i = 0
    for s in ordered_sales:
        sale_day = _as_date(s.get("sale_date"))
        while i < len(ordered_lots) and _as_date(ordered_lots[i].get("purchase_date")) <= sale_day:
            lq = d(ordered_lots[i].get("quantity_gallons"))
            qty_acc += lq
            value_acc += lq * d(ordered_lots[i].get("unit_cost"))
            i += 1
        if qty_acc > 0:
            wac = q_wac(value_acc / qty_acc)
        else:
            wac = d(s.get("purchase_price_per_gallon"))
        cogs = q_money(d(s.get("quantity_gallons")) * wac)
        per_sale[s.get("id")] = cogs
        total += cogs
    return q_money(total), per_sale
