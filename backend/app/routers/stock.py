from fastapi import APIRouter, Depends
from pydantic import BaseModel
from typing import Optional
from decimal import Decimal
from datetime import date

from ..audit import write_audit
from ..config import settings
from ..db import get_conn, set_lock_timeout, lock_stock_ledger
from ..deps import get_current_user, require_permission
from ..ledger_errors import conflict, invalid, not_found
from ..money import d, q_money
from ..stock_costing import assert_inventory_covers, compute_lot_amounts, stock_level, weighted_average_cost

router = APIRouter(prefix="/stock", tags=["stock"])


class StockLotIn(BaseModel):
    purchase_date: date
    quantity_gallons: Decimal
    unit_cost: Decimal
    vat_percentage: Optional[Decimal] = None
    supplier_account_head_id: Optional[str] = None
    notes: Optional[str] = None


class StockLotUpdate(BaseModel):
    purchase_date: Optional[date] = None
    quantity_gallons: Optional[Decimal] = None
    unit_cost: Optional[Decimal] = None
    vat_percentage: Optional[Decimal] = None
    supplier_account_head_id: Optional[str] = None
    notes: Optional[str] = None


def stock_totals(cur) -> tuple[Decimal, Decimal]:
    """Gallons purchased across all lots and gallons sold on live (non-void) sales."""
    cur.execute(
        """
        SELECT
          (SELECT COALESCE(SUM(quantity_gallons), 0) FROM stock_lots) AS purchased,
          (SELECT COALESCE(SUM(quantity_gallons), 0) FROM sales WHERE voided_at IS NULL) AS sold
        """
    )
    row = cur.fetchone() or {}
    return d(row.get("purchased")), d(row.get("sold"))


def load_lot_costs(cur) -> list[dict]:
    cur.execute(
        """
        SELECT id, purchase_date, quantity_gallons, unit_cost
        FROM stock_lots
        ORDER BY purchase_date ASC, created_at ASC
        """
    )
    return cur.fetchall() or []


def _pick(patch: dict, row: dict, key: str):
    v = patch.get(key)
    return row[key] if v is None else v


def _assert_supplier_head(cur, head_id: Optional[str]):
    if not head_id:
        return
    cur.execute("SELECT type FROM account_heads WHERE id = %s", (head_id,))
    row = cur.fetchone()
    if not row:
        raise not_found("account_head_not_found", "supplier account head not found")
    if row["type"] != "supplier":
        raise invalid("invalid_account_head", "stock lots can only reference a supplier account head")


@router.get("", dependencies=[Depends(require_permission("stock:read"))])
def list_stock_lots():
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT l.id, l.purchase_date, l.quantity_gallons, l.unit_cost, l.vat_percentage,
                       l.vat_amount, l.total_cost, l.supplier_account_head_id, h.name AS supplier_name,
                       l.notes, l.created_at,
                       COALESCE(a.advances_applied, 0) AS advances_applied,
                       (l.total_cost - COALESCE(a.advances_applied, 0)) AS unpaid_cost
                FROM stock_lots l
                LEFT JOIN account_heads h ON h.id = l.supplier_account_head_id
                LEFT JOIN (
                  SELECT stock_lot_id, SUM(amount) AS advances_applied
                  FROM supplier_advance_allocations
                  GROUP BY stock_lot_id
                ) a ON a.stock_lot_id = l.id
                ORDER BY l.purchase_date DESC, l.created_at DESC
                """
            )
            return {"lots": cur.fetchall()}


@router.get("/summary", dependencies=[Depends(require_permission("stock:read"))])
def stock_summary():
    with get_conn() as conn:
        with conn.cursor() as cur:
            purchased, sold = stock_totals(cur)
            wac = weighted_average_cost(load_lot_costs(cur))
            level = stock_level(purchased, sold)
            return {
                "current_stock": level,
                "total_purchased": purchased,
                "total_sold": sold,
                "weighted_average_cost": wac,
                "inventory_value": q_money(level * wac),
            }


@router.post("", dependencies=[Depends(require_permission("stock:write"))])
def create_stock_lot(data: StockLotIn, user=Depends(get_current_user)):
    vat = data.vat_percentage if data.vat_percentage is not None else settings.default_vat_percentage
    amounts = compute_lot_amounts(data.quantity_gallons, data.unit_cost, vat)
    head_id = (data.supplier_account_head_id or "").strip() or None

    with get_conn() as conn:
        set_lock_timeout(conn)
        with conn.transaction():
            with conn.cursor() as cur:
                _assert_supplier_head(cur, head_id)
                cur.execute(
                    """
                    INSERT INTO stock_lots
                      (id, purchase_date, quantity_gallons, unit_cost, vat_percentage, vat_amount, total_cost,
                       supplier_account_head_id, notes)
                    VALUES
                      (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        data.purchase_date,
                        amounts["quantity_gallons"],
                        amounts["unit_cost"],
                        amounts["vat_percentage"],
                        amounts["vat_amount"],
                        amounts["total_cost"],
                        head_id,
                        data.notes,
                    ),
                )
                lot = cur.fetchone()
                write_audit(cur, user["user_id"], "stock_lot_create", "stock_lot", lot["id"], amounts)
                return {"lot": lot}


@router.patch("/{lot_id}", dependencies=[Depends(require_permission("stock:write"))])
def update_stock_lot(lot_id: str, data: StockLotUpdate, user=Depends(get_current_user)):
    patch = data.model_dump(exclude_unset=True)
    if not patch:
        return {"ok": True}

    with get_conn() as conn:
        set_lock_timeout(conn)
        with conn.transaction():
            with conn.cursor() as cur:
                lock_stock_ledger(cur)
                cur.execute("SELECT * FROM stock_lots WHERE id = %s FOR UPDATE", (lot_id,))
                lot = cur.fetchone()
                if not lot:
                    raise not_found("stock_lot_not_found", "stock lot not found")

                amounts = compute_lot_amounts(
                    _pick(patch, lot, "quantity_gallons"),
                    _pick(patch, lot, "unit_cost"),
                    _pick(patch, lot, "vat_percentage"),
                )

                old_qty = d(lot["quantity_gallons"])
                if amounts["quantity_gallons"] != old_qty:
                    purchased, sold = stock_totals(cur)
                    assert_inventory_covers(
                        purchased - old_qty + amounts["quantity_gallons"],
                        sold,
                        action="edit stock lot",
                    )

                cur.execute(
                    "SELECT COALESCE(SUM(amount), 0) AS applied FROM supplier_advance_allocations WHERE stock_lot_id = %s",
                    (lot_id,),
                )
                applied = d((cur.fetchone() or {}).get("applied"))
                if amounts["total_cost"] < applied:
                    raise conflict(
                        "amount_exceeds_lot_balance",
                        f"total cost {amounts['total_cost']} would be below advances already applied ({q_money(applied)})",
                    )

                head_id = lot["supplier_account_head_id"]
                if "supplier_account_head_id" in patch:
                    new_head = (patch["supplier_account_head_id"] or "").strip() or None
                    if str(new_head or "") != str(head_id or ""):
                        if applied > 0:
                            raise conflict(
                                "stock_lot_has_allocations",
                                "cannot change the supplier of a lot with applied advances",
                            )
                        _assert_supplier_head(cur, new_head)
                        head_id = new_head

                cur.execute(
                    """
                    UPDATE stock_lots
                    SET purchase_date = %s, quantity_gallons = %s, unit_cost = %s, vat_percentage = %s,
                        vat_amount = %s, total_cost = %s, supplier_account_head_id = %s, notes = %s,
                        updated_at = now()
                    WHERE id = %s
                    RETURNING *
                    """,
                    (
                        patch.get("purchase_date") or lot["purchase_date"],
                        amounts["quantity_gallons"],
                        amounts["unit_cost"],
                        amounts["vat_percentage"],
                        amounts["vat_amount"],
                        amounts["total_cost"],
                        head_id,
                        patch["notes"] if "notes" in patch else lot.get("notes"),
                        lot_id,
                    ),
                )
                updated = cur.fetchone()
                write_audit(cur, user["user_id"], "stock_lot_update", "stock_lot", lot_id, patch)
                return {"lot": updated}


@router.delete("/{lot_id}", dependencies=[Depends(require_permission("stock:write"))])
def delete_stock_lot(lot_id: str, user=Depends(get_current_user)):
    with get_conn() as conn:
        set_lock_timeout(conn)
        with conn.transaction():
            with conn.cursor() as cur:
                lock_stock_ledger(cur)
                cur.execute("SELECT id, quantity_gallons FROM stock_lots WHERE id = %s FOR UPDATE", (lot_id,))
                lot = cur.fetchone()
                if not lot:
                    raise not_found("stock_lot_not_found", "stock lot not found")

                cur.execute("SELECT 1 FROM supplier_advance_allocations WHERE stock_lot_id = %s LIMIT 1", (lot_id,))
                if cur.fetchone():
                    raise conflict(
                        "stock_lot_has_allocations",
                        "cannot delete a stock lot with applied supplier advances; remove the allocations first",
                    )

                purchased, sold = stock_totals(cur)
                assert_inventory_covers(purchased - d(lot["quantity_gallons"]), sold, action="delete stock lot")

                cur.execute("DELETE FROM stock_lots WHERE id = %s", (lot_id,))
                write_audit(
                    cur, user["user_id"], "stock_lot_delete", "stock_lot", lot_id,
                    {"quantity_gallons": lot["quantity_gallons"]},
                )
                return {"ok": True}
