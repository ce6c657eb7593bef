from datetime import date, timedelta
from decimal import Decimal

from fastapi import Response

from backend.app.routers import reports as reports_router
from backend.tests.ledger_fakes import FakeDb


LOTS = [
    {"id": "lot-1", "purchase_date": date(2026, 1, 1), "quantity_gallons": Decimal("10000"), "unit_cost": Decimal("2.000")},
    {"id": "lot-2", "purchase_date": date(2026, 2, 1), "quantity_gallons": Decimal("5000"), "unit_cost": Decimal("2.300")},
]

SALES = [
    {
        "id": "sale-1",
        "sale_date": date(2026, 1, 15),
        "quantity_gallons": Decimal("4000"),
        "purchase_price_per_gallon": Decimal("2.000000"),
        "subtotal": Decimal("10000.00"),
        "total_amount": Decimal("10500.00"),
        "sale_status": "invoiced",
    },
    {
        "id": "sale-2",
        "sale_date": date(2026, 2, 10),
        "quantity_gallons": Decimal("2000"),
        "purchase_price_per_gallon": Decimal("2.100000"),
        "subtotal": Decimal("5000.00"),
        "total_amount": Decimal("5250.00"),
        "sale_status": "pending_lpo",
    },
]


def test_overview_costs_each_sale_at_its_own_average():
    out = reports_router.summarize_overview(SALES, LOTS, Decimal("15000"), Decimal("6000"))
    # sale-1 at 2.00 (only lot-1 existed), sale-2 at (20000 + 11500) / 15000 = 2.10
    assert out["total_cogs"] == Decimal("12200.00")
    assert out["total_revenue"] == Decimal("15750.00")
    assert out["gross_profit"] == Decimal("3550.00")
    assert out["gross_margin"] == Decimal("22.54")
    assert out["current_stock"] == Decimal("9000.00")
    assert out["pending_lpo_count"] == 1
    assert out["pending_lpo_value"] == Decimal("5000.00")


def test_overview_without_sales_has_zero_margin():
    out = reports_router.summarize_overview([], LOTS, Decimal("15000"), Decimal("0"))
    assert out["total_revenue"] == Decimal("0.00")
    assert out["gross_margin"] == Decimal("0")
    assert out["pending_lpo_count"] == 0


def _inv(inv_id, client_id, invoice_date, total, allocated="0", sale_total=None):
    return {
        "id": inv_id,
        "invoice_number": inv_id.upper(),
        "invoice_date": invoice_date,
        "total_amount": Decimal(total),
        "sale_total": Decimal(sale_total or total),
        "client_id": client_id,
        "client_name": client_id.title(),
        "allocated_amount": Decimal(allocated),
    }


def test_group_overdue_sorts_by_pending_and_skips_settled():
    today = date(2026, 3, 31)
    rows = [
        _inv("inv-a", "c1", date(2026, 2, 1), "1000.00", allocated="400.00"),
        _inv("inv-b", "c1", date(2026, 3, 1), "900.00"),
        _inv("inv-c", "c2", date(2026, 1, 10), "2000.00"),
        _inv("inv-d", "c2", date(2026, 2, 15), "500.00", allocated="500.00"),
        _inv("inv-e", "c1", date(2026, 1, 20), "300.00", sale_total="250.00"),
    ]
    out = reports_router.group_overdue(rows, 30, today)
    assert [c["client_id"] for c in out] == ["c2", "c1"]
    c2, c1 = out
    assert c2["total_pending"] == Decimal("2000.00")
    assert [i["invoice_id"] for i in c2["invoices"]] == ["inv-c"]
    assert c1["total_pending"] == Decimal("850.00")
    assert [i["invoice_id"] for i in c1["invoices"]] == ["inv-e", "inv-a"]
    assert c1["invoices"][1]["days_overdue"] == 28


def test_overview_endpoint_excludes_voided_sales(monkeypatch):
    db = FakeDb(
        [
            ("AS purchased", {"purchased": Decimal("15000"), "sold": Decimal("6000")}),
            ("FROM sales WHERE voided_at IS NULL", SALES),
            ("FROM stock_lots ORDER BY purchase_date ASC", LOTS),
        ]
    ).patch(monkeypatch, reports_router)
    out = reports_router.overview()
    assert out["total_revenue"] == Decimal("15750.00")
    sql, _ = db.executed[0]
    assert "voided_at IS NULL" in sql


def test_overdue_clients_defaults_to_business_setting(monkeypatch):
    today = date.today()
    db = FakeDb(
        [
            ("FROM business_settings", {"overdue_threshold_days": 45}),
            ("FROM invoices i", [_inv("inv-a", "c1", today - timedelta(days=60), "100.00")]),
        ]
    ).patch(monkeypatch, reports_router)
    out = reports_router.overdue_clients(days=None)
    assert out["days"] == 45
    assert out["total_pending"] == Decimal("100.00")
    assert out["clients"][0]["invoices"][0]["days_overdue"] == 15
    _sql, params = db.executed[-1]
    assert params == (45,)


def test_overdue_threshold_has_a_floor_of_one_day(monkeypatch):
    db = FakeDb([("FROM invoices i", [])]).patch(monkeypatch, reports_router)
    out = reports_router.overdue_clients(days=0)
    assert out == {"days": 1, "clients": [], "total_pending": Decimal("0.00")}
    _sql, params = db.executed[-1]
    assert params == (1,)


def test_vat_report_csv(monkeypatch):
    rows = [
        {
            "period": date(2026, 2, 1),
            "sales_base": Decimal("5000.00"),
            "output_vat": Decimal("250.00"),
            "purchase_base": Decimal("11500.00"),
            "input_vat": Decimal("575.00"),
            "net_vat": Decimal("-325.00"),
        }
    ]
    FakeDb([("FULL OUTER JOIN input_vat", rows)]).patch(monkeypatch, reports_router)
    resp = reports_router.vat_report(start_date=None, end_date=None, format="csv")
    assert isinstance(resp, Response)
    lines = resp.body.decode().strip().splitlines()
    assert lines[0] == "period,sales_base,output_vat,purchase_base,input_vat,net_vat"
    assert lines[1] == "2026-02-01,5000.00,250.00,11500.00,575.00,-325.00"

    out = reports_router.vat_report(start_date=None, end_date=None, format=None)
    assert out["totals"]["net_vat"] == Decimal("-325.00")
