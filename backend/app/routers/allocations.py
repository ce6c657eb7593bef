from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from typing import List, Optional
from decimal import Decimal

from ..audit import write_audit
from ..db import get_conn, set_lock_timeout
from ..deps import get_current_user, require_permission
from ..ledger_errors import not_found
from ..logs import json_log
from ..money import d, q_money
from ..payment_guards import assert_entry_direction, assert_entry_settled, check_batch, normalize_batch
from ..sale_status import (
    allocation_status,
    invoice_status_after_balance_change,
    pending_amount,
    status_after_balance_change,
)

router = APIRouter(prefix="/cashbook", tags=["cashbook"])


class AllocationLine(BaseModel):
    invoice_id: str
    amount: Decimal


class AllocationBatchIn(BaseModel):
    allocations: List[AllocationLine]


def lock_entry(cur, entry_id: str) -> dict:
    cur.execute(
        """
        SELECT id, direction, amount, account_head_id, transaction_type, is_pending
        FROM cashbook_entries
        WHERE id = %s
        FOR UPDATE
        """,
        (entry_id,),
    )
    entry = cur.fetchone()
    if not entry:
        raise not_found("entry_not_found", "cashbook entry not found")
    return entry


def entry_allocated(cur, entry_id: str) -> Decimal:
    cur.execute(
        """
        SELECT
          (SELECT COALESCE(SUM(amount), 0) FROM payment_allocations WHERE cashbook_entry_id = %s)
          + (SELECT COALESCE(SUM(amount), 0) FROM supplier_advance_allocations WHERE cashbook_entry_id = %s)
          AS allocated
        """,
        (entry_id, entry_id),
    )
    return d((cur.fetchone() or {}).get("allocated"))


def _lock_invoices(cur, invoice_ids: list[str]) -> list[dict]:
    # Id order keeps concurrent batches touching the same invoices from deadlocking.
    cur.execute(
        """
        SELECT i.id, i.invoice_number, i.status, i.sent_at, i.total_amount,
               s.id AS sale_id, s.sale_status, s.total_amount AS sale_total
        FROM invoices i
        JOIN sales s ON s.id = i.sale_id
        WHERE i.id = ANY(%s::uuid[])
        ORDER BY i.id
        FOR UPDATE
        """,
        (invoice_ids,),
    )
    return cur.fetchall() or []


def _invoice_allocated(cur, invoice_ids: list[str]) -> dict:
    cur.execute(
        """
        SELECT invoice_id, COALESCE(SUM(amount), 0) AS allocated
        FROM payment_allocations
        WHERE invoice_id = ANY(%s::uuid[])
        GROUP BY invoice_id
        """,
        (invoice_ids,),
    )
    return {str(r["invoice_id"]): d(r["allocated"]) for r in (cur.fetchall() or [])}


def invoice_balance(inv: dict, allocated) -> Decimal:
    """Remaining allocatable amount: the smaller of sale pending and invoice remaining."""
    sale_pending = pending_amount(inv["sale_total"], allocated)
    invoice_remaining = pending_amount(inv["total_amount"], allocated)
    return min(sale_pending, invoice_remaining)


def refresh_balances(cur, invoices: list[dict]):
    """
    Re-derive invoice and sale status from the allocation sums after a change.
    This is the only place that moves a sale into or out of `paid`.
    """
    sums = _invoice_allocated(cur, [str(inv["id"]) for inv in invoices])
    for inv in invoices:
        allocated = sums.get(str(inv["id"]), Decimal("0"))
        new_inv_status = invoice_status_after_balance_change(
            inv["status"], inv.get("sent_at"), inv["total_amount"], allocated
        )
        if new_inv_status != inv["status"]:
            cur.execute("UPDATE invoices SET status = %s WHERE id = %s", (new_inv_status, inv["id"]))
        new_sale_status = status_after_balance_change(inv["sale_status"], pending_amount(inv["sale_total"], allocated))
        if new_sale_status != inv["sale_status"]:
            cur.execute(
                "UPDATE sales SET sale_status = %s, updated_at = now() WHERE id = %s",
                (new_sale_status, inv["sale_id"]),
            )
            json_log(
                "info", "ledger.sale.status_changed",
                sale_id=inv["sale_id"], old=inv["sale_status"], new=new_sale_status,
            )


def remove_payment_allocation(cur, allocation: dict, user_id) -> dict:
    """
    Delete one allocation and reverse its effect. Caller holds the entry lock.
    """
    invoices = _lock_invoices(cur, [str(allocation["invoice_id"])])
    cur.execute("DELETE FROM payment_allocations WHERE id = %s", (allocation["id"],))
    refresh_balances(cur, invoices)
    write_audit(
        cur, user_id, "payment_allocation_delete", "payment_allocation", allocation["id"],
        {
            "cashbook_entry_id": allocation["cashbook_entry_id"],
            "invoice_id": allocation["invoice_id"],
            "amount": allocation["amount"],
        },
    )
    json_log(
        "info", "ledger.allocation.deleted",
        allocation_id=allocation["id"], entry_id=allocation["cashbook_entry_id"],
        invoice_id=allocation["invoice_id"], amount=str(allocation["amount"]),
    )
    return invoices[0] if invoices else {}


def apply_payment_batch(cur, entry_id: str, batch: list[tuple[str, Decimal]], user_id) -> dict:
    """
    Allocate a normalized batch of an inflow entry to invoices. Runs inside the
    caller's transaction: entry lock, invoice locks in id order, sums re-read,
    every line validated, then all rows inserted and statuses refreshed.
    """
    invoice_ids = [invoice_id for invoice_id, _ in batch]
    entry = lock_entry(cur, entry_id)
    assert_entry_direction(entry, "inflow")
    assert_entry_settled(entry)
    invoices = [inv for inv in _lock_invoices(cur, invoice_ids) if inv["status"] != "void"]

    # Balances are re-read after the locks are held.
    used = entry_allocated(cur, entry_id)
    sums = _invoice_allocated(cur, invoice_ids)
    balances = {
        str(inv["id"]): invoice_balance(inv, sums.get(str(inv["id"]), Decimal("0")))
        for inv in invoices
    }
    labels = {str(inv["id"]): f"invoice {inv['invoice_number']}" for inv in invoices}
    total = check_batch(
        entry=entry,
        entry_allocated=used,
        batch=batch,
        balances=balances,
        labels=labels,
        missing_code="invoice_not_found",
        balance_code="amount_exceeds_invoice_balance",
    )

    created = []
    for invoice_id, amount in batch:
        cur.execute(
            """
            INSERT INTO payment_allocations (id, cashbook_entry_id, invoice_id, amount, created_by_user_id)
            VALUES (gen_random_uuid(), %s, %s, %s, %s)
            RETURNING id, cashbook_entry_id, invoice_id, amount, created_at
            """,
            (entry_id, invoice_id, amount, user_id),
        )
        created.append(cur.fetchone())

    refresh_balances(cur, invoices)
    write_audit(
        cur, user_id, "payment_allocation_create", "cashbook_entry", entry_id,
        {"total": total, "lines": [{"invoice_id": i, "amount": a} for i, a in batch]},
    )
    for row in created:
        json_log(
            "info", "ledger.allocation.created",
            allocation_id=row["id"], entry_id=entry_id,
            invoice_id=row["invoice_id"], amount=str(row["amount"]),
        )
    return {
        "allocations": created,
        "total_allocated": total,
        "entry_remaining": q_money(d(entry["amount"]) - used - total),
    }


@router.post("/entries/{entry_id}/allocations", dependencies=[Depends(require_permission("cashbook:write"))])
def allocate_payment(entry_id: str, data: AllocationBatchIn, user=Depends(get_current_user)):
    batch = normalize_batch(
        [ln.model_dump() for ln in data.allocations],
        target_key="invoice_id",
        duplicate_code="duplicate_invoice_in_batch",
    )
    with get_conn() as conn:
        set_lock_timeout(conn)
        with conn.transaction():
            with conn.cursor() as cur:
                return apply_payment_batch(cur, entry_id, batch, user["user_id"])


@router.get("/entries/{entry_id}/allocations", dependencies=[Depends(require_permission("cashbook:read"))])
def list_entry_allocations(entry_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT id, amount FROM cashbook_entries WHERE id = %s", (entry_id,))
            entry = cur.fetchone()
            if not entry:
                raise not_found("entry_not_found", "cashbook entry not found")
            cur.execute(
                """
                SELECT pa.id, pa.invoice_id, i.invoice_number, s.id AS sale_id, c.name AS client_name,
                       pa.amount, pa.created_at
                FROM payment_allocations pa
                JOIN invoices i ON i.id = pa.invoice_id
                JOIN sales s ON s.id = i.sale_id
                JOIN clients c ON c.id = s.client_id
                WHERE pa.cashbook_entry_id = %s
                ORDER BY pa.created_at ASC
                """,
                (entry_id,),
            )
            rows = cur.fetchall() or []
            allocated = q_money(sum((d(r["amount"]) for r in rows), Decimal("0")))
            return {
                "allocations": rows,
                "allocated_amount": allocated,
                "allocation_status": allocation_status(entry["amount"], allocated),
            }


@router.delete("/allocations/{allocation_id}", dependencies=[Depends(require_permission("cashbook:write"))])
def delete_allocation(allocation_id: str, user=Depends(get_current_user)):
    with get_conn() as conn:
        set_lock_timeout(conn)
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT id, cashbook_entry_id, invoice_id, amount FROM payment_allocations WHERE id = %s",
                    (allocation_id,),
                )
                allocation = cur.fetchone()
                if not allocation:
                    raise not_found("allocation_not_found", "allocation not found")
                lock_entry(cur, allocation["cashbook_entry_id"])
                remove_payment_allocation(cur, allocation, user["user_id"])
                return {"ok": True}


@router.get("/pending-invoices", dependencies=[Depends(require_permission("cashbook:read"))])
def list_pending_invoices(account_head_id: Optional[str] = Query(None, description="Only invoices of the client linked to this head")):
    sql = """
        SELECT i.id, i.invoice_number, i.invoice_date, i.total_amount, i.status,
               s.id AS sale_id, s.total_amount AS sale_total, s.sale_status,
               c.id AS client_id, c.name AS client_name,
               COALESCE(a.allocated, 0) AS allocated_amount
        FROM invoices i
        JOIN sales s ON s.id = i.sale_id
        JOIN clients c ON c.id = s.client_id
        LEFT JOIN (
          SELECT invoice_id, SUM(amount) AS allocated
          FROM payment_allocations
          GROUP BY invoice_id
        ) a ON a.invoice_id = i.id
        WHERE i.status <> 'void'
    """
    params: list = []
    if account_head_id:
        sql += " AND c.account_head_id = %s"
        params.append(account_head_id)
    sql += " ORDER BY i.invoice_date ASC, i.invoice_number ASC"
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(sql, params)
            rows = cur.fetchall() or []
    out = []
    for r in rows:
        balance = invoice_balance(r, r["allocated_amount"])
        if balance > 0:
            out.append({**r, "pending_amount": balance})
    return {"invoices": out}
