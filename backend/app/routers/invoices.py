from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from typing import Optional
from datetime import date

from ..audit import write_audit
from ..db import get_conn, set_lock_timeout
from ..deps import get_current_user, require_permission
from ..ledger_errors import conflict, invalid, not_found
from ..logs import json_log
from ..sale_status import INVOICED, LPO_RECEIVED, allocation_status, assert_transition, pending_amount
from ..validation import InvoiceStatus
from .settings import load_business_settings

router = APIRouter(prefix="/invoices", tags=["invoices"])

INVOICE_BALANCE_SQL = """
    SELECT i.id, i.sale_id, i.invoice_number, i.invoice_date, i.total_amount, i.vat_amount,
           i.status, i.sent_at, i.voided_at, i.created_at,
           s.client_id, c.name AS client_name, s.project_id, p.name AS project_name,
           s.lpo_number, s.sale_status,
           COALESCE(a.allocated, 0) AS allocated_amount
    FROM invoices i
    JOIN sales s ON s.id = i.sale_id
    JOIN clients c ON c.id = s.client_id
    LEFT JOIN projects p ON p.id = s.project_id
    LEFT JOIN (
      SELECT invoice_id, SUM(amount) AS allocated
      FROM payment_allocations
      GROUP BY invoice_id
    ) a ON a.invoice_id = i.id
"""


class InvoiceGenerateIn(BaseModel):
    sale_id: str
    invoice_date: Optional[date] = None


class InvoiceUpdate(BaseModel):
    invoice_number: Optional[str] = None
    invoice_date: Optional[date] = None


def next_invoice_no(cur, prefix: str) -> str:
    """
    Allocate the next number for `prefix` inside the caller's transaction.
    The upsert row-locks the sequence, so concurrent generators serialize here.
    """
    cur.execute(
        """
        INSERT INTO document_sequences (prefix, next_no)
        VALUES (%s, 2)
        ON CONFLICT (prefix) DO UPDATE SET next_no = document_sequences.next_no + 1
        RETURNING next_no - 1 AS no
        """,
        (prefix,),
    )
    n = int(cur.fetchone()["no"])
    return f"{prefix}-{n:05d}"


def _with_balance(row: dict) -> dict:
    allocated = row.get("allocated_amount") or 0
    return {
        **row,
        "pending_amount": pending_amount(row["total_amount"], allocated),
        "allocation_status": allocation_status(row["total_amount"], allocated),
    }


@router.get("", dependencies=[Depends(require_permission("sales:read"))])
def list_invoices(
    status: Optional[InvoiceStatus] = Query(None, description="generated|sent|paid|void"),
    client_id: str = Query("", description="Filter by client id"),
    limit: int = Query(500, ge=1, le=2000),
):
    sql = INVOICE_BALANCE_SQL + " WHERE 1=1"
    params: list = []
    if status:
        sql += " AND i.status = %s"
        params.append(status)
    if (client_id or "").strip():
        sql += " AND s.client_id = %s"
        params.append(client_id.strip())
    sql += " ORDER BY i.invoice_date DESC, i.created_at DESC LIMIT %s"
    params.append(limit)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(sql, params)
            return {"invoices": [_with_balance(r) for r in (cur.fetchall() or [])]}


@router.get("/{invoice_id}/document", dependencies=[Depends(require_permission("sales:read"))])
def invoice_document(invoice_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(INVOICE_BALANCE_SQL + " WHERE i.id = %s", (invoice_id,))
            inv = cur.fetchone()
            if not inv:
                raise not_found("invoice_not_found", "invoice not found")
            cur.execute(
                """
                SELECT id, sale_date, quantity_gallons, unit_price, vat_percentage, subtotal, vat_amount,
                       total_amount, lpo_number, lpo_received_date, notes
                FROM sales
                WHERE id = %s
                """,
                (inv["sale_id"],),
            )
            sale = cur.fetchone()
            cur.execute(
                "SELECT id, name, contact_person, phone_number, email, address FROM clients WHERE id = %s",
                (inv["client_id"],),
            )
            client = cur.fetchone()
            business = load_business_settings(cur)
            return {"invoice": _with_balance(inv), "sale": sale, "client": client, "business": business}


@router.post("", dependencies=[Depends(require_permission("sales:write"))])
def generate_invoice(data: InvoiceGenerateIn, user=Depends(get_current_user)):
    with get_conn() as conn:
        set_lock_timeout(conn)
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT id, sale_status, total_amount, vat_amount, voided_at FROM sales WHERE id = %s FOR UPDATE",
                    (data.sale_id,),
                )
                sale = cur.fetchone()
                if not sale:
                    raise not_found("sale_not_found", "sale not found")
                if sale.get("voided_at"):
                    raise conflict("sale_voided", "sale is voided")

                cur.execute(
                    "SELECT invoice_number FROM invoices WHERE sale_id = %s AND status <> 'void'",
                    (data.sale_id,),
                )
                existing = cur.fetchone()
                if existing:
                    raise conflict("already_invoiced", f"sale already has invoice {existing['invoice_number']}")
                if sale["sale_status"] != LPO_RECEIVED:
                    raise conflict(
                        "wrong_state",
                        f"an invoice can only be generated once the LPO is received (sale is {sale['sale_status']})",
                    )

                prefix = load_business_settings(cur)["invoice_prefix"]
                invoice_no = next_invoice_no(cur, prefix)
                invoice_date = data.invoice_date or date.today()
                cur.execute(
                    """
                    INSERT INTO invoices
                      (id, sale_id, invoice_number, invoice_date, total_amount, vat_amount, status, created_by_user_id)
                    VALUES
                      (gen_random_uuid(), %s, %s, %s, %s, %s, 'generated', %s)
                    RETURNING *
                    """,
                    (data.sale_id, invoice_no, invoice_date, sale["total_amount"], sale["vat_amount"], user["user_id"]),
                )
                invoice = cur.fetchone()
                cur.execute(
                    "UPDATE sales SET sale_status = %s, invoice_date = %s, updated_at = now() WHERE id = %s",
                    (INVOICED, invoice_date, data.sale_id),
                )
                write_audit(
                    cur, user["user_id"], "invoice_generate", "invoice", invoice["id"],
                    {"sale_id": data.sale_id, "invoice_number": invoice_no},
                )
                json_log("info", "ledger.invoice.generated", invoice_id=invoice["id"], sale_id=data.sale_id, invoice_number=invoice_no)
                json_log("info", "ledger.sale.status_changed", sale_id=data.sale_id, old=LPO_RECEIVED, new=INVOICED)
                return {"invoice": invoice}


@router.patch("/{invoice_id}", dependencies=[Depends(require_permission("sales:write"))])
def update_invoice(invoice_id: str, data: InvoiceUpdate, user=Depends(get_current_user)):
    patch = data.model_dump(exclude_none=True)
    if not patch:
        return {"ok": True}
    if "invoice_number" in patch:
        patch["invoice_number"] = patch["invoice_number"].strip()
        if not patch["invoice_number"]:
            raise invalid("missing_field", "invoice_number cannot be empty")

    with get_conn() as conn:
        set_lock_timeout(conn)
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT id, sale_id, status FROM invoices WHERE id = %s FOR UPDATE", (invoice_id,))
                inv = cur.fetchone()
                if not inv:
                    raise not_found("invoice_not_found", "invoice not found")
                if inv["status"] == "void":
                    raise conflict("invoice_voided", "invoice is voided")
                if "invoice_number" in patch:
                    cur.execute(
                        "SELECT 1 FROM invoices WHERE invoice_number = %s AND id <> %s",
                        (patch["invoice_number"], invoice_id),
                    )
                    if cur.fetchone():
                        raise conflict("duplicate_invoice_number", f"invoice number {patch['invoice_number']} is taken")
                cur.execute(
                    """
                    UPDATE invoices
                    SET invoice_number = COALESCE(%s, invoice_number), invoice_date = COALESCE(%s, invoice_date)
                    WHERE id = %s
                    RETURNING *
                    """,
                    (patch.get("invoice_number"), patch.get("invoice_date"), invoice_id),
                )
                updated = cur.fetchone()
                if "invoice_date" in patch:
                    cur.execute(
                        "UPDATE sales SET invoice_date = %s, updated_at = now() WHERE id = %s",
                        (patch["invoice_date"], inv["sale_id"]),
                    )
                write_audit(cur, user["user_id"], "invoice_update", "invoice", invoice_id, patch)
                return {"invoice": updated}


@router.post("/{invoice_id}/send", dependencies=[Depends(require_permission("sales:write"))])
def send_invoice(invoice_id: str, user=Depends(get_current_user)):
    with get_conn() as conn:
        set_lock_timeout(conn)
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT id, status, sent_at FROM invoices WHERE id = %s FOR UPDATE", (invoice_id,))
                inv = cur.fetchone()
                if not inv:
                    raise not_found("invoice_not_found", "invoice not found")
                if inv["status"] == "void":
                    raise conflict("invoice_voided", "invoice is voided")
                if inv.get("sent_at"):
                    return {"ok": True}
                # A paid invoice keeps its status; only the sent timestamp is recorded.
                cur.execute(
                    """
                    UPDATE invoices
                    SET sent_at = now(), status = CASE WHEN status = 'generated' THEN 'sent' ELSE status END
                    WHERE id = %s
                    """,
                    (invoice_id,),
                )
                write_audit(cur, user["user_id"], "invoice_send", "invoice", invoice_id, {})
                return {"ok": True}


@router.post("/{invoice_id}/void", dependencies=[Depends(require_permission("sales:write"))])
def void_invoice(invoice_id: str, user=Depends(get_current_user)):
    with get_conn() as conn:
        set_lock_timeout(conn)
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT i.id, i.sale_id, i.invoice_number, i.status, s.sale_status
                    FROM invoices i
                    JOIN sales s ON s.id = i.sale_id
                    WHERE i.id = %s
                    FOR UPDATE
                    """,
                    (invoice_id,),
                )
                inv = cur.fetchone()
                if not inv:
                    raise not_found("invoice_not_found", "invoice not found")
                if inv["status"] == "void":
                    return {"ok": True}
                cur.execute("SELECT 1 FROM payment_allocations WHERE invoice_id = %s LIMIT 1", (invoice_id,))
                if cur.fetchone():
                    raise conflict(
                        "invoice_has_allocations",
                        f"invoice {inv['invoice_number']} has payment allocations; remove them first",
                    )
                assert_transition(inv["sale_status"], LPO_RECEIVED)
                cur.execute(
                    "UPDATE invoices SET status = 'void', voided_at = now() WHERE id = %s",
                    (invoice_id,),
                )
                cur.execute(
                    "UPDATE sales SET sale_status = %s, invoice_date = NULL, updated_at = now() WHERE id = %s",
                    (LPO_RECEIVED, inv["sale_id"]),
                )
                write_audit(
                    cur, user["user_id"], "invoice_void", "invoice", invoice_id,
                    {"invoice_number": inv["invoice_number"], "sale_id": inv["sale_id"]},
                )
                json_log("info", "ledger.sale.status_changed", sale_id=inv["sale_id"], old=inv["sale_status"], new=LPO_RECEIVED)
                return {"ok": True}
