from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from typing import List, Optional
from decimal import Decimal

from ..audit import write_audit
from ..db import get_conn, set_lock_timeout
from ..deps import get_current_user, require_permission
from ..ledger_errors import conflict, not_found
from ..logs import json_log
from ..money import d, q_money
from ..payment_guards import assert_entry_direction, assert_entry_settled, check_batch, normalize_batch
from .allocations import entry_allocated, lock_entry

router = APIRouter(prefix="/cashbook", tags=["cashbook"])


class AdvanceLine(BaseModel):
    stock_lot_id: str
    amount: Decimal


class AdvanceBatchIn(BaseModel):
    allocations: List[AdvanceLine]


def _lock_lots(cur, lot_ids: list[str]) -> list[dict]:
    cur.execute(
        """
        SELECT id, purchase_date, total_cost, supplier_account_head_id
        FROM stock_lots
        WHERE id = ANY(%s::uuid[])
        ORDER BY id
        FOR UPDATE
        """,
        (lot_ids,),
    )
    return cur.fetchall() or []


def _lot_applied(cur, lot_ids: list[str]) -> dict:
    cur.execute(
        """
        SELECT stock_lot_id, COALESCE(SUM(amount), 0) AS applied
        FROM supplier_advance_allocations
        WHERE stock_lot_id = ANY(%s::uuid[])
        GROUP BY stock_lot_id
        """,
        (lot_ids,),
    )
    return {str(r["stock_lot_id"]): d(r["applied"]) for r in (cur.fetchall() or [])}


def remove_advance_allocation(cur, allocation: dict, user_id):
    cur.execute("DELETE FROM supplier_advance_allocations WHERE id = %s", (allocation["id"],))
    write_audit(
        cur, user_id, "supplier_advance_allocation_delete", "supplier_advance_allocation", allocation["id"],
        {
            "cashbook_entry_id": allocation["cashbook_entry_id"],
            "stock_lot_id": allocation["stock_lot_id"],
            "amount": allocation["amount"],
        },
    )
    json_log(
        "info", "ledger.allocation.deleted",
        allocation_id=allocation["id"], entry_id=allocation["cashbook_entry_id"],
        stock_lot_id=allocation["stock_lot_id"], amount=str(allocation["amount"]),
    )


@router.post(
    "/entries/{entry_id}/supplier-advance-allocations",
    dependencies=[Depends(require_permission("cashbook:write"))],
)
def allocate_supplier_advance(entry_id: str, data: AdvanceBatchIn, user=Depends(get_current_user)):
    batch = normalize_batch(
        [ln.model_dump() for ln in data.allocations],
        target_key="stock_lot_id",
        duplicate_code="duplicate_stock_lot_in_batch",
    )
    lot_ids = [lot_id for lot_id, _ in batch]

    with get_conn() as conn:
        set_lock_timeout(conn)
        with conn.transaction():
            with conn.cursor() as cur:
                entry = lock_entry(cur, entry_id)
                assert_entry_direction(entry, "outflow")
                assert_entry_settled(entry)
                cur.execute("SELECT type FROM account_heads WHERE id = %s", (entry["account_head_id"],))
                payee = cur.fetchone()
                if not payee or payee["type"] != "supplier":
                    raise conflict(
                        "entry_not_supplier_payment",
                        "only payments booked against a supplier account head can fund a stock lot",
                    )
                lots = _lock_lots(cur, lot_ids)

                for lot in lots:
                    head = lot.get("supplier_account_head_id")
                    if head and str(head) != str(entry["account_head_id"]):
                        raise conflict(
                            "supplier_mismatch",
                            f"stock lot {lot['id']} belongs to a different supplier than this payment",
                        )

                used = entry_allocated(cur, entry_id)
                applied = _lot_applied(cur, lot_ids)
                balances = {
                    str(lot["id"]): q_money(d(lot["total_cost"]) - applied.get(str(lot["id"]), Decimal("0")))
                    for lot in lots
                }
                labels = {str(lot["id"]): f"stock lot of {lot['purchase_date']}" for lot in lots}
                total = check_batch(
                    entry=entry,
                    entry_allocated=used,
                    batch=batch,
                    balances=balances,
                    labels=labels,
                    missing_code="stock_lot_not_found",
                    balance_code="amount_exceeds_lot_balance",
                )

                created = []
                for lot_id, amount in batch:
                    cur.execute(
                        """
                        INSERT INTO supplier_advance_allocations
                          (id, cashbook_entry_id, stock_lot_id, amount, created_by_user_id)
                        VALUES (gen_random_uuid(), %s, %s, %s, %s)
                        RETURNING id, cashbook_entry_id, stock_lot_id, amount, created_at
                        """,
                        (entry_id, lot_id, amount, user["user_id"]),
                    )
                    created.append(cur.fetchone())

                write_audit(
                    cur, user["user_id"], "supplier_advance_allocation_create", "cashbook_entry", entry_id,
                    {"total": total, "lines": [{"stock_lot_id": i, "amount": a} for i, a in batch]},
                )
                for row in created:
                    json_log(
                        "info", "ledger.allocation.created",
                        allocation_id=row["id"], entry_id=entry_id,
                        stock_lot_id=row["stock_lot_id"], amount=str(row["amount"]),
                    )
                return {
                    "allocations": created,
                    "total_allocated": total,
                    "entry_remaining": q_money(d(entry["amount"]) - used - total),
                }


@router.get("/supplier-advances", dependencies=[Depends(require_permission("cashbook:read"))])
def list_supplier_advances(account_head_id: Optional[str] = Query(None)):
    sql = """
        SELECT e.id, e.transaction_date, e.amount, e.account_head_id, h.name AS supplier_name,
               e.description, e.payment_method,
               COALESCE(a.applied, 0) AS applied_amount,
               (e.amount - COALESCE(a.applied, 0)) AS remaining_amount
        FROM cashbook_entries e
        JOIN account_heads h ON h.id = e.account_head_id
        LEFT JOIN (
          SELECT cashbook_entry_id, SUM(amount) AS applied
          FROM supplier_advance_allocations
          GROUP BY cashbook_entry_id
        ) a ON a.cashbook_entry_id = e.id
        WHERE e.direction = 'outflow' AND h.type = 'supplier'
    """
    params: list = []
    if account_head_id:
        sql += " AND e.account_head_id = %s"
        params.append(account_head_id)
    sql += " ORDER BY e.transaction_date ASC, e.created_at ASC"
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(sql, params)
            return {"advances": cur.fetchall()}


@router.get(
    "/entries/{entry_id}/supplier-advance-allocations",
    dependencies=[Depends(require_permission("cashbook:read"))],
)
def list_entry_advance_allocations(entry_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT sa.id, sa.stock_lot_id, l.purchase_date, l.total_cost, sa.amount, sa.created_at
                FROM supplier_advance_allocations sa
                JOIN stock_lots l ON l.id = sa.stock_lot_id
                WHERE sa.cashbook_entry_id = %s
                ORDER BY sa.created_at ASC
                """,
                (entry_id,),
            )
            return {"allocations": cur.fetchall()}


@router.delete(
    "/supplier-advance-allocations/{allocation_id}",
    dependencies=[Depends(require_permission("cashbook:write"))],
)
def delete_supplier_advance_allocation(allocation_id: str, user=Depends(get_current_user)):
    with get_conn() as conn:
        set_lock_timeout(conn)
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT id, cashbook_entry_id, stock_lot_id, amount
                    FROM supplier_advance_allocations
                    WHERE id = %s
                    """,
                    (allocation_id,),
                )
                allocation = cur.fetchone()
                if not allocation:
                    raise not_found("allocation_not_found", "allocation not found")
                lock_entry(cur, allocation["cashbook_entry_id"])
                remove_advance_allocation(cur, allocation, user["user_id"])
                return {"ok": True}
