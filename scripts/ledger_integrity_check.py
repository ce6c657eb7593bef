#!/usr/bin/env python3
"""
Read-only ledger integrity checks.

Verifies the invariants the API enforces, so drift from manual SQL or a bad
migration shows up before it reaches a report:
- sale totals == subtotal + VAT, subtotal == quantity x price
- allocations never exceed an invoice total, a cashbook entry or a lot cost
- sale status agrees with its pending amount
- stock level is not negative

Safe to run against production DBs.
"""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from decimal import Decimal


# Allow running from repo root without installing as a package.
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

from backend.app.db import get_conn  # noqa: E402
from backend.app.money import d, q_money  # noqa: E402


EPS = Decimal("0.01")


@dataclass
class Finding:
    kind: str
    id: str
    ref: str
    message: str


def _parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser()
    p.add_argument("--limit", type=int, default=200, help="Rows per check (default: 200)")
    return p.parse_args()


def check_sale_totals(cur, limit: int) -> list[Finding]:
    cur.execute(
        """
        SELECT id, sale_date, quantity_gallons, unit_price, subtotal, vat_amount, total_amount
        FROM sales
        WHERE voided_at IS NULL
        ORDER BY sale_date DESC
        LIMIT %s
        """,
        (limit,),
    )
    findings: list[Finding] = []
    for r in cur.fetchall():
        expected_subtotal = q_money(d(r["quantity_gallons"]) * d(r["unit_price"]))
        if d(r["total_amount"]) != d(r["subtotal"]) + d(r["vat_amount"]):
            findings.append(
                Finding(
                    kind="sale_total_mismatch",
                    id=str(r["id"]),
                    ref=str(r["sale_date"]),
                    message=f"total {r['total_amount']} != subtotal {r['subtotal']} + vat {r['vat_amount']}",
                )
            )
        elif abs(expected_subtotal - d(r["subtotal"])) >= EPS:
            findings.append(
                Finding(
                    kind="sale_subtotal_mismatch",
                    id=str(r["id"]),
                    ref=str(r["sale_date"]),
                    message=f"subtotal {r['subtotal']} != quantity x price {expected_subtotal}",
                )
            )
    return findings


def check_over_allocation(cur, limit: int) -> list[Finding]:
    findings: list[Finding] = []
    cur.execute(
        """
        SELECT i.id, i.invoice_number, i.total_amount, SUM(pa.amount) AS allocated
        FROM invoices i
        JOIN payment_allocations pa ON pa.invoice_id = i.id
        GROUP BY i.id, i.invoice_number, i.total_amount
        HAVING SUM(pa.amount) > i.total_amount
        LIMIT %s
        """,
        (limit,),
    )
    for r in cur.fetchall():
        findings.append(
            Finding(
                kind="invoice_over_allocated",
                id=str(r["id"]),
                ref=str(r["invoice_number"]),
                message=f"allocated {r['allocated']} > total {r['total_amount']}",
            )
        )

    cur.execute(
        """
        SELECT e.id, e.transaction_date, e.amount,
               COALESCE(pa.allocated, 0) + COALESCE(sa.allocated, 0) AS allocated
        FROM cashbook_entries e
        LEFT JOIN (
          SELECT cashbook_entry_id, SUM(amount) AS allocated FROM payment_allocations GROUP BY cashbook_entry_id
        ) pa ON pa.cashbook_entry_id = e.id
        LEFT JOIN (
          SELECT cashbook_entry_id, SUM(amount) AS allocated FROM supplier_advance_allocations GROUP BY cashbook_entry_id
        ) sa ON sa.cashbook_entry_id = e.id
        WHERE COALESCE(pa.allocated, 0) + COALESCE(sa.allocated, 0) > e.amount
        LIMIT %s
        """,
        (limit,),
    )
    for r in cur.fetchall():
        findings.append(
            Finding(
                kind="entry_over_allocated",
                id=str(r["id"]),
                ref=str(r["transaction_date"]),
                message=f"allocated {r['allocated']} > amount {r['amount']}",
            )
        )

    cur.execute(
        """
        SELECT l.id, l.purchase_date, l.total_cost, SUM(sa.amount) AS applied
        FROM stock_lots l
        JOIN supplier_advance_allocations sa ON sa.stock_lot_id = l.id
        GROUP BY l.id, l.purchase_date, l.total_cost
        HAVING SUM(sa.amount) > l.total_cost
        LIMIT %s
        """,
        (limit,),
    )
    for r in cur.fetchall():
        findings.append(
            Finding(
                kind="lot_over_applied",
                id=str(r["id"]),
                ref=str(r["purchase_date"]),
                message=f"advances {r['applied']} > total cost {r['total_cost']}",
            )
        )
    return findings


def check_sale_status(cur, limit: int) -> list[Finding]:
    cur.execute(
        """
        SELECT s.id, s.sale_status, s.total_amount, i.invoice_number,
               COALESCE(SUM(pa.amount), 0) AS allocated
        FROM sales s
        LEFT JOIN invoices i ON i.sale_id = s.id AND i.status <> 'void'
        LEFT JOIN payment_allocations pa ON pa.invoice_id = i.id
        WHERE s.voided_at IS NULL
        GROUP BY s.id, s.sale_status, s.total_amount, i.invoice_number
        LIMIT %s
        """,
        (limit,),
    )
    findings: list[Finding] = []
    for r in cur.fetchall():
        pending = d(r["total_amount"]) - d(r["allocated"])
        status = r["sale_status"]
        problem = None
        if status == "paid" and pending > 0:
            problem = f"status paid with pending {q_money(pending)}"
        elif status == "invoiced" and pending <= 0:
            problem = "status invoiced with nothing pending"
        elif status in {"invoiced", "paid"} and not r["invoice_number"]:
            problem = f"status {status} without a live invoice"
        elif status in {"pending_lpo", "lpo_received"} and r["invoice_number"]:
            problem = f"status {status} with live invoice {r['invoice_number']}"
        if problem:
            findings.append(
                Finding(kind="sale_status_mismatch", id=str(r["id"]), ref=str(r["invoice_number"] or r["id"]), message=problem)
            )
    return findings


def check_stock_level(cur) -> list[Finding]:
    cur.execute(
        """
        SELECT
          (SELECT COALESCE(SUM(quantity_gallons), 0) FROM stock_lots) AS purchased,
          (SELECT COALESCE(SUM(quantity_gallons), 0) FROM sales WHERE voided_at IS NULL) AS sold
        """
    )
    r = cur.fetchone()
    level = d(r["purchased"]) - d(r["sold"])
    if level < 0:
        return [Finding(kind="negative_stock", id="-", ref="stock", message=f"stock level {level} gallons")]
    return []


def main() -> int:
    args = _parse_args()
    limit = max(1, min(int(args.limit or 200), 5000))

    findings: list[Finding] = []
    with get_conn() as conn:
        with conn.cursor() as cur:
            findings.extend(check_sale_totals(cur, limit))
            findings.extend(check_over_allocation(cur, limit))
            findings.extend(check_sale_status(cur, limit))
            findings.extend(check_stock_level(cur))

    if not findings:
        print("OK: no integrity issues found.")
        return 0

    print(f"Found {len(findings)} issue(s):")
    for f in findings[:200]:
        print(f"- {f.kind}: {f.ref} ({f.id}) -> {f.message}")
    if len(findings) > 200:
        print(f"... plus {len(findings) - 200} more")
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
