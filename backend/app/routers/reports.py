from fastapi import APIRouter, Depends, Query, Response
from datetime import date, datetime
from typing import Iterable, Optional
from decimal import Decimal
import csv
import io

from ..db import get_conn
from ..deps import require_permission
from ..money import d, q_money, q_pct
from ..sale_status import PRE_INVOICE_STATUSES
from ..stock_costing import cogs_for_sales, stock_level
from .allocations import invoice_balance
from .settings import load_business_settings
from .stock import load_lot_costs, stock_totals

router = APIRouter(prefix="/reports", tags=["reports"])


def _as_date(v):
    if isinstance(v, datetime):
        return v.date()
    return v


def summarize_overview(sales: Iterable[dict], lots: Iterable[dict], purchased, sold) -> dict:
    """
    Headline figures for the dashboard. `sales` must already exclude voided sales.
    COGS is costed at the average as of each sale date so new purchases never
    restate past margin.
    """
    sales = list(sales)
    revenue = q_money(sum((d(s["total_amount"]) for s in sales), Decimal("0")))
    cogs, _per_sale = cogs_for_sales(lots, sales)
    profit = revenue - cogs
    margin = q_pct(profit / revenue * Decimal("100")) if revenue != 0 else Decimal("0.00")
    pending = [s for s in sales if s["sale_status"] in PRE_INVOICE_STATUSES]
    return {
        "total_revenue": revenue,
        "total_cogs": cogs,
        "gross_profit": profit,
        "gross_margin": margin,
        "current_stock": stock_level(purchased, sold),
        "pending_lpo_count": len(pending),
        "pending_lpo_value": q_money(sum((d(s["subtotal"]) for s in pending), Decimal("0"))),
    }


def group_overdue(invoices: Iterable[dict], days: int, today: date) -> list[dict]:
    """
    Clients whose invoices are older than `days` and still carry a balance,
    largest total pending first.
    """
    by_client: dict = {}
    for inv in invoices:
        invoice_date = _as_date(inv["invoice_date"])
        age = (today - invoice_date).days
        if age <= days:
            continue
        pending = invoice_balance(inv, inv.get("allocated_amount") or 0)
        if pending <= 0:
            continue
        key = str(inv["client_id"])
        bucket = by_client.setdefault(
            key,
            {
                "client_id": inv["client_id"],
                "client_name": inv.get("client_name"),
                "total_pending": Decimal("0.00"),
                "invoices": [],
            },
        )
        bucket["invoices"].append(
            {
                "invoice_id": inv["id"],
                "invoice_number": inv["invoice_number"],
                "invoice_date": invoice_date,
                "total_amount": inv["total_amount"],
                "pending_amount": pending,
                "days_overdue": age - days,
            }
        )
        bucket["total_pending"] = q_money(bucket["total_pending"] + pending)
    out = list(by_client.values())
    for c in out:
        c["invoices"].sort(key=lambda i: i["invoice_date"])
    out.sort(key=lambda c: c["total_pending"], reverse=True)
    return out


@router.get("/overview", dependencies=[Depends(require_permission("reports:read"))])
def overview():
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, sale_date, quantity_gallons, purchase_price_per_gallon, subtotal, total_amount, sale_status
                FROM sales
                WHERE voided_at IS NULL
                """
            )
            sales = cur.fetchall() or []
            lots = load_lot_costs(cur)
            purchased, sold = stock_totals(cur)
    return summarize_overview(sales, lots, purchased, sold)


@router.get("/overdue-clients", dependencies=[Depends(require_permission("reports:read"))])
def overdue_clients(days: Optional[int] = Query(None, description="Days after the invoice date; defaults to the business setting")):
    with get_conn() as conn:
        with conn.cursor() as cur:
            if days is None:
                days = int(load_business_settings(cur)["overdue_threshold_days"])
            days = max(1, days)
            cur.execute(
                """
                SELECT i.id, i.invoice_number, i.invoice_date, i.total_amount,
                       s.total_amount AS sale_total, s.client_id, c.name AS client_name,
                       COALESCE(a.allocated, 0) AS allocated_amount
                FROM invoices i
                JOIN sales s ON s.id = i.sale_id
                JOIN clients c ON c.id = s.client_id
                LEFT JOIN (
                  SELECT invoice_id, SUM(amount) AS allocated
                  FROM payment_allocations
                  GROUP BY invoice_id
                ) a ON a.invoice_id = i.id
                WHERE i.status <> 'void' AND s.voided_at IS NULL
                  AND i.invoice_date + %s::int < CURRENT_DATE
                """,
                (days,),
            )
            rows = cur.fetchall() or []
    clients = group_overdue(rows, days, date.today())
    return {"days": days, "clients": clients, "total_pending": q_money(sum((c["total_pending"] for c in clients), Decimal("0")))}


@router.get("/pending-business", dependencies=[Depends(require_permission("reports:read"))])
def pending_business(
    client_id: Optional[str] = Query(None),
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
):
    sql = """
        SELECT s.id, s.sale_date, s.client_id, c.name AS client_name, p.name AS project_name,
               s.quantity_gallons, s.unit_price, s.subtotal, s.vat_amount, s.total_amount,
               s.lpo_number, s.lpo_due_date, s.sale_status
        FROM sales s
        JOIN clients c ON c.id = s.client_id
        LEFT JOIN projects p ON p.id = s.project_id
        WHERE s.voided_at IS NULL AND s.sale_status = ANY(%s)
    """
    params: list = [list(PRE_INVOICE_STATUSES)]
    if client_id:
        sql += " AND s.client_id = %s"
        params.append(client_id)
    if start_date:
        sql += " AND s.sale_date >= %s"
        params.append(start_date)
    if end_date:
        sql += " AND s.sale_date <= %s"
        params.append(end_date)
    sql += " ORDER BY s.sale_date ASC"
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(sql, params)
            rows = cur.fetchall() or []
    return {
        "sales": rows,
        "count": len(rows),
        "total_value": q_money(sum((d(r["subtotal"]) for r in rows), Decimal("0"))),
    }


@router.get("/vat", dependencies=[Depends(require_permission("reports:read"))])
def vat_report(
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    format: Optional[str] = None,
):
    """
    Output VAT on sales against input VAT on stock purchases, per month.
    """
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                WITH output_vat AS (
                  SELECT date_trunc('month', sale_date)::date AS period,
                         SUM(subtotal) AS sales_base, SUM(vat_amount) AS output_vat
                  FROM sales
                  WHERE voided_at IS NULL
                    AND (%s::date IS NULL OR sale_date >= %s::date)
                    AND (%s::date IS NULL OR sale_date <= %s::date)
                  GROUP BY 1
                ), input_vat AS (
                  SELECT date_trunc('month', purchase_date)::date AS period,
                         SUM(total_cost - vat_amount) AS purchase_base, SUM(vat_amount) AS input_vat
                  FROM stock_lots
                  WHERE (%s::date IS NULL OR purchase_date >= %s::date)
                    AND (%s::date IS NULL OR purchase_date <= %s::date)
                  GROUP BY 1
                )
                SELECT COALESCE(o.period, i.period) AS period,
                       COALESCE(o.sales_base, 0) AS sales_base,
                       COALESCE(o.output_vat, 0) AS output_vat,
                       COALESCE(i.purchase_base, 0) AS purchase_base,
                       COALESCE(i.input_vat, 0) AS input_vat,
                       COALESCE(o.output_vat, 0) - COALESCE(i.input_vat, 0) AS net_vat
                FROM output_vat o
                FULL OUTER JOIN input_vat i ON i.period = o.period
                ORDER BY 1 DESC
                """,
                (start_date, start_date, end_date, end_date, start_date, start_date, end_date, end_date),
            )
            rows = cur.fetchall() or []
    if format == "csv":
        output = io.StringIO()
        writer = csv.writer(output)
        cols = ["period", "sales_base", "output_vat", "purchase_base", "input_vat", "net_vat"]
        writer.writerow(cols)
        for r in rows:
            writer.writerow([r[c] for c in cols])
        return Response(content=output.getvalue(), media_type="text/csv")
    totals = {
        k: q_money(sum((d(r[k]) for r in rows), Decimal("0")))
        for k in ("output_vat", "input_vat", "net_vat")
    }
    return {"vat": rows, "totals": totals}
