from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from typing import Optional
from datetime import date
from decimal import Decimal

from ..audit import write_audit
from ..db import get_conn, set_lock_timeout
from ..deps import get_current_user, require_permission
from ..ledger_errors import conflict, invalid, not_found
from ..money import d, q_money
from ..sale_status import allocation_status
from ..validation import AccountHeadType, CASHBOOK_KIND_DIRECTION, CashDirection, CashbookKind, PaymentMethod
from .allocations import entry_allocated, lock_entry, remove_payment_allocation
from .supplier_advances import remove_advance_allocation

router = APIRouter(prefix="/cashbook", tags=["cashbook"])

# Entries that count toward cash totals: settled debt memos are replaced by their settlement entry.
COUNTED_ENTRY_SQL = "is_pending = false AND reference_type IS DISTINCT FROM 'settled_debt'"


class AccountHeadIn(BaseModel):
    name: str
    type: AccountHeadType


class CashbookEntryIn(BaseModel):
    transaction_date: date
    transaction_type: CashbookKind
    direction: Optional[CashDirection] = None
    amount: Decimal
    account_head_id: str
    category: Optional[str] = None
    description: str = ""
    counterparty: Optional[str] = None
    payment_method: Optional[PaymentMethod] = None
    reference_type: Optional[str] = None
    reference_id: Optional[str] = None
    is_pending: bool = False
    notes: Optional[str] = None


class CashbookEntryUpdate(BaseModel):
    transaction_date: Optional[date] = None
    transaction_type: Optional[CashbookKind] = None
    direction: Optional[CashDirection] = None
    amount: Optional[Decimal] = None
    account_head_id: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    counterparty: Optional[str] = None
    payment_method: Optional[PaymentMethod] = None
    notes: Optional[str] = None


class DebtPaymentIn(BaseModel):
    amount: Decimal
    payment_method: PaymentMethod
    payment_date: Optional[date] = None


def resolve_direction(kind: str, direction: Optional[str]) -> str:
    fixed = CASHBOOK_KIND_DIRECTION[kind]
    if fixed is None:
        if not direction:
            raise invalid("missing_direction", "direction is required for transaction type 'other'")
        return direction
    if direction and direction != fixed:
        raise invalid("direction_mismatch", f"{kind} entries are always {fixed}")
    return fixed


def _positive_amount(v) -> Decimal:
    amount = q_money(d(v))
    if amount <= 0:
        raise invalid("invalid_amount", "amount must be > 0")
    return amount


def _assert_head(cur, head_id: str) -> dict:
    cur.execute("SELECT id, name, type FROM account_heads WHERE id = %s", (head_id,))
    head = cur.fetchone()
    if not head:
        raise not_found("account_head_not_found", "account head not found")
    return head


@router.get("/account-heads", dependencies=[Depends(require_permission("cashbook:read"))])
def list_account_heads(type: Optional[AccountHeadType] = Query(None)):
    sql = "SELECT id, name, type, created_at FROM account_heads"
    params: list = []
    if type:
        sql += " WHERE type = %s"
        params.append(type)
    sql += " ORDER BY name"
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(sql, params)
            return {"account_heads": cur.fetchall()}


@router.post("/account-heads", dependencies=[Depends(require_permission("cashbook:write"))])
def create_account_head(data: AccountHeadIn, user=Depends(get_current_user)):
    name = (data.name or "").strip()
    if not name:
        raise invalid("missing_field", "name is required")
    with get_conn() as conn:
        set_lock_timeout(conn)
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT 1 FROM account_heads WHERE name = %s", (name,))
                if cur.fetchone():
                    raise conflict("account_head_conflict", f"account head {name!r} already exists")
                cur.execute(
                    "INSERT INTO account_heads (id, name, type) VALUES (gen_random_uuid(), %s, %s) RETURNING *",
                    (name, data.type),
                )
                head = cur.fetchone()
                write_audit(cur, user["user_id"], "account_head_create", "account_head", head["id"], {"name": name, "type": data.type})
                return {"account_head": head}


@router.get("/account-heads/{head_id}/balance", dependencies=[Depends(require_permission("cashbook:read"))])
def account_head_balance(head_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            head = _assert_head(cur, head_id)
            cur.execute(
                f"""
                SELECT
                  COALESCE(SUM(amount) FILTER (WHERE direction = 'inflow' AND {COUNTED_ENTRY_SQL}), 0) AS total_inflow,
                  COALESCE(SUM(amount) FILTER (WHERE direction = 'outflow' AND {COUNTED_ENTRY_SQL}), 0) AS total_outflow,
                  COALESCE(SUM(amount) FILTER (WHERE is_pending = true), 0) AS pending_debts
                FROM cashbook_entries
                WHERE account_head_id = %s
                """,
                (head_id,),
            )
            totals = cur.fetchone() or {}
            # Client heads also carry what their invoices still owe.
            cur.execute(
                """
                SELECT COALESCE(SUM(GREATEST(i.total_amount - COALESCE(a.allocated, 0), 0)), 0) AS receivable
                FROM invoices i
                JOIN sales s ON s.id = i.sale_id
                JOIN clients c ON c.id = s.client_id
                LEFT JOIN (
                  SELECT invoice_id, SUM(amount) AS allocated
                  FROM payment_allocations
                  GROUP BY invoice_id
                ) a ON a.invoice_id = i.id
                WHERE c.account_head_id = %s AND i.status <> 'void'
                """,
                (head_id,),
            )
            receivable = d((cur.fetchone() or {}).get("receivable"))
            return {
                "account_head": head,
                "total_inflow": q_money(d(totals.get("total_inflow"))),
                "total_outflow": q_money(d(totals.get("total_outflow"))),
                "pending_debts": q_money(d(totals.get("pending_debts"))),
                "invoice_receivable": q_money(receivable),
                "outstanding_balance": q_money(d(totals.get("pending_debts")) + receivable),
            }


@router.get("/entries", dependencies=[Depends(require_permission("cashbook:read"))])
def list_entries(
    direction: Optional[CashDirection] = Query(None),
    account_head_id: Optional[str] = Query(None),
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    limit: int = Query(500, ge=1, le=2000),
):
    sql = """
        SELECT e.*, h.name AS account_head_name, h.type AS account_head_type,
               COALESCE(pa.allocated, 0) + COALESCE(sa.allocated, 0) AS allocated_amount
        FROM cashbook_entries e
        JOIN account_heads h ON h.id = e.account_head_id
        LEFT JOIN (
          SELECT cashbook_entry_id, SUM(amount) AS allocated FROM payment_allocations GROUP BY cashbook_entry_id
        ) pa ON pa.cashbook_entry_id = e.id
        LEFT JOIN (
          SELECT cashbook_entry_id, SUM(amount) AS allocated FROM supplier_advance_allocations GROUP BY cashbook_entry_id
        ) sa ON sa.cashbook_entry_id = e.id
        WHERE 1=1
    """
    params: list = []
    if direction:
        sql += " AND e.direction = %s"
        params.append(direction)
    if account_head_id:
        sql += " AND e.account_head_id = %s"
        params.append(account_head_id)
    if start_date:
        sql += " AND e.transaction_date >= %s"
        params.append(start_date)
    if end_date:
        sql += " AND e.transaction_date <= %s"
        params.append(end_date)
    sql += " ORDER BY e.transaction_date DESC, e.created_at DESC LIMIT %s"
    params.append(limit)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(sql, params)
            rows = cur.fetchall() or []
    return {
        "entries": [
            {
                **r,
                "unallocated_amount": q_money(d(r["amount"]) - d(r["allocated_amount"])),
                "allocation_status": allocation_status(r["amount"], r["allocated_amount"]),
            }
            for r in rows
        ]
    }


@router.get("/summary", dependencies=[Depends(require_permission("cashbook:read"))])
def cash_summary():
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT
                  COALESCE(SUM(amount) FILTER (WHERE direction = 'inflow' AND {COUNTED_ENTRY_SQL}), 0) AS total_inflow,
                  COALESCE(SUM(amount) FILTER (WHERE direction = 'outflow' AND {COUNTED_ENTRY_SQL}), 0) AS total_outflow,
                  COALESCE(SUM(amount) FILTER (WHERE is_pending = true), 0) AS pending_debts
                FROM cashbook_entries
                """
            )
            row = cur.fetchone() or {}
    inflow = q_money(d(row.get("total_inflow")))
    outflow = q_money(d(row.get("total_outflow")))
    return {
        "total_inflow": inflow,
        "total_outflow": outflow,
        "pending_debts": q_money(d(row.get("pending_debts"))),
        "available_balance": inflow - outflow,
    }


@router.get("/pending-debts", dependencies=[Depends(require_permission("cashbook:read"))])
def list_pending_debts():
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT e.*, h.name AS account_head_name
                FROM cashbook_entries e
                JOIN account_heads h ON h.id = e.account_head_id
                WHERE e.is_pending = true
                ORDER BY e.transaction_date DESC
                """
            )
            return {"debts": cur.fetchall()}


@router.post("/entries", dependencies=[Depends(require_permission("cashbook:write"))])
def create_entry(data: CashbookEntryIn, user=Depends(get_current_user)):
    direction = resolve_direction(data.transaction_type, data.direction)
    amount = _positive_amount(data.amount)
    with get_conn() as conn:
        set_lock_timeout(conn)
        with conn.transaction():
            with conn.cursor() as cur:
                _assert_head(cur, data.account_head_id)
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
                        data.transaction_date,
                        data.transaction_type,
                        direction,
                        amount,
                        data.account_head_id,
                        data.category,
                        data.description,
                        data.counterparty,
                        data.payment_method,
                        data.reference_type,
                        data.reference_id,
                        data.is_pending,
                        data.notes,
                        user["user_id"],
                    ),
                )
                entry = cur.fetchone()
                write_audit(
                    cur, user["user_id"], "cashbook_entry_create", "cashbook_entry", entry["id"],
                    {"transaction_type": data.transaction_type, "direction": direction, "amount": amount},
                )
                return {"entry": entry}


@router.patch("/entries/{entry_id}", dependencies=[Depends(require_permission("cashbook:write"))])
def update_entry(entry_id: str, data: CashbookEntryUpdate, user=Depends(get_current_user)):
    patch = data.model_dump(exclude_none=True)
    if not patch:
        return {"ok": True}
    with get_conn() as conn:
        set_lock_timeout(conn)
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT * FROM cashbook_entries WHERE id = %s FOR UPDATE", (entry_id,))
                entry = cur.fetchone()
                if not entry:
                    raise not_found("entry_not_found", "cashbook entry not found")

                kind = patch.get("transaction_type", entry["transaction_type"])
                if "transaction_type" in patch or "direction" in patch:
                    requested = patch.get("direction")
                    if requested is None and CASHBOOK_KIND_DIRECTION[kind] is None:
                        requested = entry["direction"]
                    direction = resolve_direction(kind, requested)
                else:
                    direction = entry["direction"]
                amount = _positive_amount(patch["amount"]) if "amount" in patch else d(entry["amount"])

                allocated = entry_allocated(cur, entry_id)
                if allocated > 0:
                    if kind != entry["transaction_type"] or direction != entry["direction"]:
                        raise conflict(
                            "entry_has_allocations",
                            "cannot change the type or direction of an entry with allocations",
                        )
                    if str(patch.get("account_head_id", entry["account_head_id"])) != str(entry["account_head_id"]):
                        raise conflict(
                            "entry_has_allocations",
                            "cannot change the account head of an entry with allocations",
                        )
                    if amount < allocated:
                        raise conflict(
                            "entry_has_allocations",
                            f"amount cannot drop below the {q_money(allocated)} already allocated",
                        )
                if "account_head_id" in patch:
                    _assert_head(cur, patch["account_head_id"])

                cur.execute(
                    """
                    UPDATE cashbook_entries
                    SET transaction_date = %s, transaction_type = %s, direction = %s, amount = %s,
                        account_head_id = %s, category = %s, description = %s, counterparty = %s,
                        payment_method = %s, notes = %s, updated_at = now()
                    WHERE id = %s
                    RETURNING *
                    """,
                    (
                        patch.get("transaction_date", entry["transaction_date"]),
                        kind,
                        direction,
                        amount,
                        patch.get("account_head_id", entry["account_head_id"]),
                        patch.get("category", entry.get("category")),
                        patch.get("description", entry.get("description")),
                        patch.get("counterparty", entry.get("counterparty")),
                        patch.get("payment_method", entry.get("payment_method")),
                        patch.get("notes", entry.get("notes")),
                        entry_id,
                    ),
                )
                updated = cur.fetchone()
                write_audit(cur, user["user_id"], "cashbook_entry_update", "cashbook_entry", entry_id, patch)
                return {"entry": updated}


@router.delete("/entries/{entry_id}", dependencies=[Depends(require_permission("cashbook:write"))])
def delete_entry(entry_id: str, cascade: bool = Query(False), user=Depends(get_current_user)):
    with get_conn() as conn:
        set_lock_timeout(conn)
        with conn.transaction():
            with conn.cursor() as cur:
                lock_entry(cur, entry_id)
                cur.execute(
                    """
                    SELECT id, cashbook_entry_id, invoice_id, amount
                    FROM payment_allocations
                    WHERE cashbook_entry_id = %s
                    ORDER BY invoice_id
                    """,
                    (entry_id,),
                )
                payments = cur.fetchall() or []
                cur.execute(
                    """
                    SELECT id, cashbook_entry_id, stock_lot_id, amount
                    FROM supplier_advance_allocations
                    WHERE cashbook_entry_id = %s
                    """,
                    (entry_id,),
                )
                advances = cur.fetchall() or []
                if (payments or advances) and not cascade:
                    raise conflict(
                        "entry_has_allocations",
                        "entry has allocations; remove them first or delete with cascade=true",
                    )
                for allocation in payments:
                    remove_payment_allocation(cur, allocation, user["user_id"])
                for allocation in advances:
                    remove_advance_allocation(cur, allocation, user["user_id"])
                cur.execute("DELETE FROM cashbook_entries WHERE id = %s", (entry_id,))
                write_audit(
                    cur, user["user_id"], "cashbook_entry_delete", "cashbook_entry", entry_id,
                    {"cascade": cascade, "allocations_removed": len(payments) + len(advances)},
                )
                return {"ok": True}


@router.post("/entries/{entry_id}/mark-paid", dependencies=[Depends(require_permission("cashbook:write"))])
def mark_debt_paid(entry_id: str, data: DebtPaymentIn, user=Depends(get_current_user)):
    amount = _positive_amount(data.amount)
    with get_conn() as conn:
        set_lock_timeout(conn)
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT * FROM cashbook_entries WHERE id = %s FOR UPDATE", (entry_id,))
                debt = cur.fetchone()
                if not debt:
                    raise not_found("entry_not_found", "cashbook entry not found")
                if not debt["is_pending"]:
                    raise conflict("entry_not_pending", "entry is not a pending debt")
                cur.execute(
                    """
                    INSERT INTO cashbook_entries
                      (id, transaction_date, transaction_type, direction, amount, account_head_id, category,
                       description, counterparty, payment_method, reference_type, reference_id, is_pending, notes,
                       created_by_user_id)
                    VALUES
                      (gen_random_uuid(), %s, 'supplier_payment', 'outflow', %s, %s, 'Debt Settlement',
                       %s, %s, %s, 'debt_payment', %s, false, %s, %s)
                    RETURNING *
                    """,
                    (
                        data.payment_date or date.today(),
                        amount,
                        debt["account_head_id"],
                        f"Debt payment for {debt.get('counterparty') or debt.get('description') or ''}".strip(),
                        debt.get("counterparty"),
                        data.payment_method,
                        entry_id,
                        f"Payment for debt: {debt.get('description') or ''}".strip(),
                        user["user_id"],
                    ),
                )
                payment = cur.fetchone()
                cur.execute(
                    """
                    UPDATE cashbook_entries
                    SET is_pending = false, reference_type = 'settled_debt', reference_id = %s, updated_at = now()
                    WHERE id = %s
                    """,
                    (payment["id"], entry_id),
                )
                write_audit(
                    cur, user["user_id"], "cashbook_debt_paid", "cashbook_entry", entry_id,
                    {"payment_entry_id": payment["id"], "amount": amount},
                )
                return {"entry": payment}
