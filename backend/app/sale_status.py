from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from .ledger_errors import conflict, invalid
from .money import d, q_money, q_price, q_qty, split_vat
from .validation import AllocationStatus

PENDING_LPO = "pending_lpo"
LPO_RECEIVED = "lpo_received"
INVOICED = "invoiced"
PAID = "paid"

# Allowed manual and engine-driven moves. `invoiced -> lpo_received` only happens when an
# unpaid invoice is voided; `paid -> invoiced` only when an allocation is removed.
SALE_TRANSITIONS: dict[str, set[str]] = {
    PENDING_LPO: {LPO_RECEIVED},
    LPO_RECEIVED: {INVOICED},
    INVOICED: {PAID, LPO_RECEIVED},
    PAID: {INVOICED},
}

# Sales that still count as pending business (no invoice yet).
PRE_INVOICE_STATUSES = (PENDING_LPO, LPO_RECEIVED)


def initial_sale_status(lpo_number: Optional[str]) -> str:
    return LPO_RECEIVED if (lpo_number or "").strip() else PENDING_LPO


def assert_transition(current: str, target: str):
    if target not in SALE_TRANSITIONS.get(current, set()):
        raise conflict(
            "invalid_status_transition",
            f"sale cannot move from {current} to {target}",
        )


def compute_sale_amounts(quantity, unit_price, vat_percentage) -> dict:
    qty = q_qty(d(quantity))
    price = q_price(d(unit_price))
    vat = d(vat_percentage)
    if qty <= 0:
        raise invalid("invalid_quantity", "quantity must be > 0")
    if price <= 0:
        raise invalid("invalid_amount", "unit price must be > 0")
    if vat < 0 or vat > 100:
        raise invalid("invalid_vat_percentage", "vat percentage must be between 0 and 100")
    subtotal, vat_amount, total = split_vat(qty * price, vat)
    return {
        "quantity_gallons": qty,
        "unit_price": price,
        "vat_percentage": vat,
        "subtotal": subtotal,
        "vat_amount": vat_amount,
        "total_amount": total,
    }


def pending_amount(total_amount, allocated) -> Decimal:
    pending = q_money(d(total_amount) - d(allocated))
    return pending if pending > 0 else Decimal("0.00")


def allocation_status(total_amount, allocated) -> AllocationStatus:
    total = q_money(d(total_amount))
    alloc = q_money(d(allocated))
    if alloc <= 0:
        return "not_allocated"
    if alloc >= total:
        return "fully_allocated"
    return "partially_allocated"


def status_after_balance_change(current: str, pending: Decimal) -> str:
    if current == INVOICED and pending == 0:
        return PAID
    if current == PAID and pending > 0:
        return INVOICED
    return current


def invoice_status_after_balance_change(current: str, sent_at, total_amount, allocated) -> str:
    if current == "void":
        return current
    if allocation_status(total_amount, allocated) == "fully_allocated":
        return "paid"
    if current == "paid":
        return "sent" if sent_at else "generated"
    return current


def _as_date(v) -> Optional[date]:
    if v is None:
        return None
    if isinstance(v, datetime):
        return v.date()
    return v


def sale_delay(status: str, lpo_due_date, lpo_received_date, invoice_date, today: date) -> dict:
    """Days a sale has been waiting in its current state, for the follow-up list."""
    due = _as_date(lpo_due_date)
    received = _as_date(lpo_received_date)
    invoiced_on = _as_date(invoice_date)
    if status == PENDING_LPO and due:
        days = (today - due).days
        reason = f"LPO overdue by {days} days" if days > 0 else f"LPO due in {abs(days)} days"
        return {"delay_days": days, "delay_reason": reason}
    if status == LPO_RECEIVED and received:
        days = (today - received).days
        return {"delay_days": days, "delay_reason": f"Invoice pending for {days} days"}
    if status == INVOICED and invoiced_on:
        days = (today - invoiced_on).days
        return {"delay_days": days, "delay_reason": f"Payment pending for {days} days"}
    return {"delay_days": 0, "delay_reason": ""}
