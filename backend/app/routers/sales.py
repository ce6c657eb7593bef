from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from typing import Optional
from datetime import date
from decimal import Decimal

from ..audit import write_audit
from ..config import settings
from ..db import get_conn, set_lock_timeout, lock_stock_ledger
from ..deps import get_current_user, require_permission
from ..ledger_errors import conflict, invalid, not_found
from ..logs import json_log
from ..money import d, q_money
from ..sale_status import (
    LPO_RECEIVED,
    PENDING_LPO,
    PRE_INVOICE_STATUSES,
    assert_transition,
    compute_sale_amounts,
    initial_sale_status,
    sale_delay,
)
from ..stock_costing import assert_stock_available, weighted_average_as_of, weighted_average_cost
from ..validation import PaymentMethod, SaleStatus
from .allocations import apply_payment_batch
from .stock import load_lot_costs, stock_totals

router = APIRouter(prefix="/sales", tags=["sales"])

# Pending amount is derived from allocations on the sale's live invoice; nothing stores it.
SALE_BALANCE_SQL = """
    SELECT s.id, s.client_id, c.name AS client_name, s.project_id, p.name AS project_name,
           s.sale_date, s.quantity_gallons, s.unit_price, s.purchase_price_per_gallon,
           s.vat_percentage, s.subtotal, s.vat_amount, s.total_amount,
           s.lpo_number, s.lpo_received_date, s.lpo_due_date, s.invoice_date,
           s.sale_status, s.notes, s.voided_at, s.created_at,
           i.id AS invoice_id, i.invoice_number, i.status AS invoice_status,
           COALESCE(a.allocated, 0) AS allocated_amount,
           GREATEST(s.total_amount - COALESCE(a.allocated, 0), 0) AS pending_amount
    FROM sales s
    JOIN clients c ON c.id = s.client_id
    LEFT JOIN projects p ON p.id = s.project_id
    LEFT JOIN invoices i ON i.sale_id = s.id AND i.status <> 'void'
    LEFT JOIN (
      SELECT invoice_id, SUM(amount) AS allocated
      FROM payment_allocations
      GROUP BY invoice_id
    ) a ON a.invoice_id = i.id
"""

AMOUNT_FIELDS = ("quantity_gallons", "unit_price", "vat_percentage")


class SaleIn(BaseModel):
    client_id: str
    project_id: str
    sale_date: date
    quantity_gallons: Decimal
    unit_price: Decimal
    vat_percentage: Optional[Decimal] = None
    lpo_number: Optional[str] = None
    lpo_received_date: Optional[date] = None
    lpo_due_date: Optional[date] = None
    notes: Optional[str] = None


class SaleUpdate(BaseModel):
    project_id: Optional[str] = None
    sale_date: Optional[date] = None
    quantity_gallons: Optional[Decimal] = None
    unit_price: Optional[Decimal] = None
    vat_percentage: Optional[Decimal] = None
    lpo_number: Optional[str] = None
    lpo_due_date: Optional[date] = None
    notes: Optional[str] = None


class LpoIn(BaseModel):
    lpo_number: str
    lpo_received_date: Optional[date] = None
    lpo_due_date: Optional[date] = None


class SalePaymentIn(BaseModel):
    amount: Decimal
    payment_date: date
    payment_method: Optional[PaymentMethod] = None
    notes: Optional[str] = None


def sale_allocated(cur, sale_id: str) -> Decimal:
    cur.execute(
        """
        SELECT COALESCE(SUM(pa.amount), 0) AS allocated
        FROM payment_allocations pa
        JOIN invoices i ON i.id = pa.invoice_id
        WHERE i.sale_id = %s AND i.status <> 'void'
        """,
        (sale_id,),
    )
    return d((cur.fetchone() or {}).get("allocated"))


def _cost_snapshot(cur, sale_date: date) -> Decimal:
    lots = load_lot_costs(cur)
    wac = weighted_average_as_of(lots, sale_date)
    if wac <= 0:
        # Back-dated sale: no lot on or before the sale date, use the overall average.
        wac = weighted_average_cost(lots)
    return wac


def _assert_project_of_client(cur, project_id: str, client_id: str):
    cur.execute("SELECT client_id FROM projects WHERE id = %s", (project_id,))
    row = cur.fetchone()
    if not row:
        raise not_found("project_not_found", "project not found")
    if str(row["client_id"]) != str(client_id):
        raise invalid("project_client_mismatch", "project does not belong to this client")


@router.get("", dependencies=[Depends(require_permission("sales:read"))])
def list_sales(
    status: Optional[SaleStatus] = Query(None, description="pending_lpo|lpo_received|invoiced|paid"),
    client_id: str = Query("", description="Filter by client id"),
    include_void: bool = Query(False),
    limit: int = Query(500, ge=1, le=2000),
):
    sql = SALE_BALANCE_SQL + " WHERE 1=1"
    params: list = []
    if not include_void:
        sql += " AND s.voided_at IS NULL"
    if status:
        sql += " AND s.sale_status = %s"
        params.append(status)
    if (client_id or "").strip():
        sql += " AND s.client_id = %s"
        params.append(client_id.strip())
    sql += " ORDER BY s.sale_date DESC, s.created_at DESC LIMIT %s"
    params.append(limit)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(sql, params)
            return {"sales": cur.fetchall()}


@router.get("/delays", dependencies=[Depends(require_permission("sales:read"))])
def sales_with_delays():
    today = date.today()
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                SALE_BALANCE_SQL
                + " WHERE s.voided_at IS NULL AND s.sale_status <> 'paid' ORDER BY s.sale_date ASC"
            )
            rows = cur.fetchall() or []
    out = []
    for r in rows:
        delay = sale_delay(r["sale_status"], r.get("lpo_due_date"), r.get("lpo_received_date"), r.get("invoice_date"), today)
        out.append({**r, **delay})
    out.sort(key=lambda r: r["delay_days"], reverse=True)
    return {"sales": out}


@router.get("/{sale_id}", dependencies=[Depends(require_permission("sales:read"))])
def get_sale(sale_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(SALE_BALANCE_SQL + " WHERE s.id = %s", (sale_id,))
            sale = cur.fetchone()
            if not sale:
                raise not_found("sale_not_found", "sale not found")
            allocations = []
            if sale.get("invoice_id"):
                cur.execute(
                    """
                    SELECT pa.id, pa.cashbook_entry_id, pa.amount, pa.created_at,
                           e.transaction_date, e.payment_method, e.counterparty
                    FROM payment_allocations pa
                    JOIN cashbook_entries e ON e.id = pa.cashbook_entry_id
                    WHERE pa.invoice_id = %s
                    ORDER BY pa.created_at ASC
                    """,
                    (sale["invoice_id"],),
                )
                allocations = cur.fetchall() or []
            return {"sale": sale, "allocations": allocations}


@router.post("", dependencies=[Depends(require_permission("sales:write"))])
def create_sale(data: SaleIn, user=Depends(get_current_user)):
    vat = data.vat_percentage if data.vat_percentage is not None else settings.default_vat_percentage
    amounts = compute_sale_amounts(data.quantity_gallons, data.unit_price, vat)
    lpo_number = (data.lpo_number or "").strip() or None
    status = initial_sale_status(lpo_number)
    lpo_received_date = (data.lpo_received_date or date.today()) if lpo_number else None

    with get_conn() as conn:
        set_lock_timeout(conn)
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT 1 FROM clients WHERE id = %s", (data.client_id,))
                if not cur.fetchone():
                    raise not_found("client_not_found", "client not found")
                _assert_project_of_client(cur, data.project_id, data.client_id)

                lock_stock_ledger(cur)
                purchased, sold = stock_totals(cur)
                assert_stock_available(purchased, sold, amounts["quantity_gallons"])
                snapshot = _cost_snapshot(cur, data.sale_date)

                cur.execute(
                    """
                    INSERT INTO sales
                      (id, client_id, project_id, sale_date, quantity_gallons, unit_price, purchase_price_per_gallon,
                       vat_percentage, subtotal, vat_amount, total_amount, lpo_number, lpo_received_date, lpo_due_date,
                       sale_status, notes)
                    VALUES
                      (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        data.client_id,
                        data.project_id,
                        data.sale_date,
                        amounts["quantity_gallons"],
                        amounts["unit_price"],
                        snapshot,
                        amounts["vat_percentage"],
                        amounts["subtotal"],
                        amounts["vat_amount"],
                        amounts["total_amount"],
                        lpo_number,
                        lpo_received_date,
                        data.lpo_due_date,
                        status,
                        data.notes,
                    ),
                )
                sale = cur.fetchone()
                write_audit(cur, user["user_id"], "sale_create", "sale", sale["id"], amounts)
                return {"sale": {**sale, "allocated_amount": Decimal("0.00"), "pending_amount": sale["total_amount"]}}


@router.post("/{sale_id}/lpo", dependencies=[Depends(require_permission("sales:write"))])
def record_lpo(sale_id: str, data: LpoIn, user=Depends(get_current_user)):
    lpo_number = (data.lpo_number or "").strip()
    if not lpo_number:
        raise invalid("missing_field", "lpo_number is required")

    with get_conn() as conn:
        set_lock_timeout(conn)
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT id, sale_status, voided_at FROM sales WHERE id = %s FOR UPDATE", (sale_id,))
                sale = cur.fetchone()
                if not sale:
                    raise not_found("sale_not_found", "sale not found")
                if sale.get("voided_at"):
                    raise conflict("sale_voided", "sale is voided")
                assert_transition(sale["sale_status"], LPO_RECEIVED)
                cur.execute(
                    """
                    UPDATE sales
                    SET lpo_number = %s, lpo_received_date = %s, lpo_due_date = COALESCE(%s, lpo_due_date),
                        sale_status = %s, updated_at = now()
                    WHERE id = %s
                    RETURNING *
                    """,
                    (lpo_number, data.lpo_received_date or date.today(), data.lpo_due_date, LPO_RECEIVED, sale_id),
                )
                updated = cur.fetchone()
                write_audit(cur, user["user_id"], "sale_lpo_received", "sale", sale_id, {"lpo_number": lpo_number})
                json_log("info", "ledger.sale.status_changed", sale_id=sale_id, old=sale["sale_status"], new=LPO_RECEIVED)
                return {"sale": updated}


@router.patch("/{sale_id}", dependencies=[Depends(require_permission("sales:write"))])
def update_sale(sale_id: str, data: SaleUpdate, user=Depends(get_current_user)):
    patch = data.model_dump(exclude_none=True)
    if not patch:
        return {"ok": True}
    touches_amounts = any(k in patch for k in AMOUNT_FIELDS)

    with get_conn() as conn:
        set_lock_timeout(conn)
        with conn.transaction():
            with conn.cursor() as cur:
                if touches_amounts:
                    # Stock lock first, same order as create_sale.
                    lock_stock_ledger(cur)
                cur.execute("SELECT * FROM sales WHERE id = %s FOR UPDATE", (sale_id,))
                sale = cur.fetchone()
                if not sale:
                    raise not_found("sale_not_found", "sale not found")
                if sale.get("voided_at"):
                    raise conflict("sale_voided", "sale is voided")

                amounts = compute_sale_amounts(
                    patch.get("quantity_gallons", sale["quantity_gallons"]),
                    patch.get("unit_price", sale["unit_price"]),
                    patch.get("vat_percentage", sale["vat_percentage"]),
                )
                amounts_changed = any(d(amounts[k]) != d(sale[k]) for k in AMOUNT_FIELDS)
                if amounts_changed:
                    if sale_allocated(cur, sale_id) > 0:
                        raise conflict(
                            "sale_has_allocations",
                            "cannot change quantity, price or VAT after a payment has been allocated; remove the allocations first",
                        )
                    if sale["sale_status"] not in PRE_INVOICE_STATUSES:
                        raise conflict(
                            "sale_invoiced",
                            "cannot change quantity, price or VAT of an invoiced sale; void the invoice first",
                        )
                    new_qty = amounts["quantity_gallons"]
                    old_qty = d(sale["quantity_gallons"])
                    if new_qty > old_qty:
                        purchased, sold = stock_totals(cur)
                        assert_stock_available(purchased, sold - old_qty, new_qty)

                if "lpo_number" in patch and sale["sale_status"] == PENDING_LPO:
                    raise invalid("lpo_requires_record", "record the LPO through the LPO endpoint")

                project_id = patch.get("project_id", sale["project_id"])
                if "project_id" in patch:
                    _assert_project_of_client(cur, project_id, sale["client_id"])

                sale_date = patch.get("sale_date", sale["sale_date"])
                snapshot = sale["purchase_price_per_gallon"]
                if "sale_date" in patch and sale_date != sale["sale_date"]:
                    snapshot = _cost_snapshot(cur, sale_date)

                cur.execute(
                    """
                    UPDATE sales
                    SET project_id = %s, sale_date = %s, quantity_gallons = %s, unit_price = %s,
                        purchase_price_per_gallon = %s, vat_percentage = %s, subtotal = %s, vat_amount = %s,
                        total_amount = %s, lpo_number = %s, lpo_due_date = %s, notes = %s, updated_at = now()
                    WHERE id = %s
                    RETURNING *
                    """,
                    (
                        project_id,
                        sale_date,
                        amounts["quantity_gallons"],
                        amounts["unit_price"],
                        snapshot,
                        amounts["vat_percentage"],
                        amounts["subtotal"],
                        amounts["vat_amount"],
                        amounts["total_amount"],
                        patch.get("lpo_number", sale.get("lpo_number")),
                        patch.get("lpo_due_date", sale.get("lpo_due_date")),
                        patch.get("notes", sale.get("notes")),
                        sale_id,
                    ),
                )
                updated = cur.fetchone()
                write_audit(cur, user["user_id"], "sale_update", "sale", sale_id, patch)
                return {"sale": updated}


@router.post("/{sale_id}/void", dependencies=[Depends(require_permission("sales:write"))])
def void_sale(sale_id: str, user=Depends(get_current_user)):
    with get_conn() as conn:
        set_lock_timeout(conn)
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT id, voided_at FROM sales WHERE id = %s FOR UPDATE", (sale_id,))
                sale = cur.fetchone()
                if not sale:
                    raise not_found("sale_not_found", "sale not found")
                if sale.get("voided_at"):
                    return {"ok": True}
                cur.execute("SELECT invoice_number FROM invoices WHERE sale_id = %s AND status <> 'void'", (sale_id,))
                inv = cur.fetchone()
                if inv:
                    raise conflict(
                        "sale_has_invoice",
                        f"void invoice {inv['invoice_number']} before voiding the sale",
                    )
                cur.execute("UPDATE sales SET voided_at = now(), updated_at = now() WHERE id = %s", (sale_id,))
                write_audit(cur, user["user_id"], "sale_void", "sale", sale_id, {})
                return {"ok": True}


@router.get("/{sale_id}/payments", dependencies=[Depends(require_permission("sales:read"))])
def list_sale_payments(sale_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT pa.id, pa.amount, pa.created_at, pa.cashbook_entry_id, pa.invoice_id,
                       i.invoice_number, e.transaction_date, e.payment_method, e.reference_type
                FROM payment_allocations pa
                JOIN invoices i ON i.id = pa.invoice_id
                JOIN cashbook_entries e ON e.id = pa.cashbook_entry_id
                WHERE i.sale_id = %s AND i.status <> 'void'
                ORDER BY e.transaction_date, pa.created_at
                """,
                (sale_id,),
            )
            return {"payments": cur.fetchall()}


@router.post("/{sale_id}/payments", dependencies=[Depends(require_permission("cashbook:write"))])
def record_sale_payment(sale_id: str, data: SalePaymentIn, user=Depends(get_current_user)):
    """
    Book a client payment for one sale: an inflow cashbook entry on the client's
    account head, allocated in full to the sale's live invoice. Either both rows
    land or neither does.
    """
    amount = q_money(d(data.amount))
    if amount <= 0:
        raise invalid("invalid_amount", "amount must be > 0")
    with get_conn() as conn:
        set_lock_timeout(conn)
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT s.id, s.voided_at, c.name AS client_name, c.account_head_id,
                           i.id AS invoice_id, i.invoice_number
                    FROM sales s
                    JOIN clients c ON c.id = s.client_id
                    LEFT JOIN invoices i ON i.sale_id = s.id AND i.status <> 'void'
                    WHERE s.id = %s
                    """,
                    (sale_id,),
                )
                sale = cur.fetchone()
                if not sale:
                    raise not_found("sale_not_found", "sale not found")
                if sale.get("voided_at"):
                    raise conflict("sale_voided", "sale is voided")
                if not sale.get("invoice_id"):
                    raise conflict("sale_not_invoiced", "generate an invoice before recording a payment")
                if not sale.get("account_head_id"):
                    raise conflict(
                        "client_has_no_account_head",
                        f"client {sale['client_name']} has no account head to book the payment against",
                    )

                cur.execute(
                    """
                    INSERT INTO cashbook_entries
                      (id, transaction_date, transaction_type, direction, amount, account_head_id, category,
                       description, counterparty, payment_method, reference_type, reference_id, is_pending, notes,
                       created_by_user_id)
                    VALUES
                      (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        data.payment_date,
                        "invoice",
                        "inflow",
                        amount,
                        sale["account_head_id"],
                        None,
                        f"Payment for invoice {sale['invoice_number']}",
                        sale["client_name"],
                        data.payment_method,
                        "payment",
                        sale_id,
                        False,
                        data.notes,
                        user["user_id"],
                    ),
                )
                entry = cur.fetchone()
                write_audit(
                    cur, user["user_id"], "cashbook_entry_create", "cashbook_entry", entry["id"],
                    {"transaction_type": "invoice", "direction": "inflow", "amount": amount, "sale_id": sale_id},
                )
                out = apply_payment_batch(cur, entry["id"], [(str(sale["invoice_id"]), amount)], user["user_id"])
                return {"entry": entry, **out}
