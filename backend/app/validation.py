from __future__ import annotations

from typing import Annotated, Literal, Optional

from pydantic import BeforeValidator, StringConstraints


def _to_lower_str(v):
    if v is None:
        return v
    return str(v).strip().lower()


def _to_code(v):
    # "Supplier Payment" / "supplier-payment" / "SUPPLIER_PAYMENT" -> "supplier_payment"
    if v is None:
        return v
    return "_".join(str(v).strip().lower().replace("-", " ").split())


# Canonical codes mirror Postgres CHECK constraints in `backend/db/migrations/001_init.sql`.
SaleStatus = Annotated[Literal["pending_lpo", "lpo_received", "invoiced", "paid"], BeforeValidator(_to_code)]
InvoiceStatus = Annotated[Literal["generated", "sent", "paid", "void"], BeforeValidator(_to_code)]
AllocationStatus = Literal["not_allocated", "partially_allocated", "fully_allocated"]
AccountHeadType = Annotated[Literal["client", "supplier", "expense", "revenue", "other"], BeforeValidator(_to_code)]
ProjectStatus = Annotated[Literal["active", "completed", "on_hold"], BeforeValidator(_to_code)]
CashDirection = Annotated[Literal["inflow", "outflow"], BeforeValidator(_to_lower_str)]

CashbookKind = Annotated[
    Literal["invoice", "investment", "supplier_payment", "expense", "withdrawal", "other"],
    BeforeValidator(_to_code),
]

# Each cashbook kind carries its direction. `None` means the caller must state it explicitly.
CASHBOOK_KIND_DIRECTION: dict[str, Optional[str]] = {
    "invoice": "inflow",
    "investment": "inflow",
    "supplier_payment": "outflow",
    "expense": "outflow",
    "withdrawal": "outflow",
    "other": None,
}


# Payment methods are free-form identifiers (cash, cheque, bank_transfer, card, ...).
# Keep a tight, safe character set so methods are stable identifiers.
PaymentMethod = Annotated[
    str,
    BeforeValidator(_to_code),
    StringConstraints(min_length=1, max_length=32, pattern=r"^[a-z0-9][a-z0-9_-]*$"),
]
