from datetime import date
from decimal import Decimal

import pytest
from fastapi import HTTPException

from backend.app.routers import sales as sales_router
from backend.tests.ledger_fakes import USER, FakeDb


SALE = {
    "id": "sale-1",
    "client_id": "client-1",
    "project_id": "project-1",
    "sale_date": date(2026, 3, 5),
    "quantity_gallons": Decimal("4000.00"),
    "unit_price": Decimal("2.500"),
    "purchase_price_per_gallon": Decimal("2.000000"),
    "vat_percentage": Decimal("5.00"),
    "subtotal": Decimal("10000.00"),
    "vat_amount": Decimal("500.00"),
    "total_amount": Decimal("10500.00"),
    "lpo_number": None,
    "lpo_due_date": None,
    "sale_status": "pending_lpo",
    "notes": None,
    "voided_at": None,
}


def _db(*, sale=None, purchased="10000.00", sold="4000.00", allocated="0", live_invoice=None):
    sale = {**SALE, **(sale or {})}
    return FakeDb(
        [
            ("SELECT 1 FROM clients WHERE id = %s", {"one": 1}),
            ("SELECT client_id FROM projects WHERE id = %s", lambda p: {"client_id": "client-1"} if p[0] != "project-x" else {"client_id": "client-2"}),
            ("FROM sales WHERE id = %s FOR UPDATE", sale),
            ("AS purchased", {"purchased": Decimal(purchased), "sold": Decimal(sold)}),
            ("FROM stock_lots ORDER BY purchase_date ASC", [
                {"id": "lot-1", "purchase_date": date(2026, 1, 1), "quantity_gallons": Decimal(purchased), "unit_cost": Decimal("2.000")}
            ]),
            ("FROM payment_allocations pa JOIN invoices i", {"allocated": Decimal(allocated)}),
            ("FROM invoices WHERE sale_id = %s AND status <> 'void'", live_invoice),
            ("INSERT INTO sales", lambda p: {"id": "sale-new", "quantity_gallons": p[3], "total_amount": p[9], "sale_status": p[13]}),
            ("UPDATE sales SET lpo_number", lambda p: {**sale, "lpo_number": p[0], "sale_status": p[3]}),
            ("UPDATE sales SET voided_at", None),
            ("UPDATE sales SET project_id", lambda p: {**sale, "quantity_gallons": p[2], "total_amount": p[8]}),
        ]
    )


def _sale_in(**kw):
    base = dict(
        client_id="client-1",
        project_id="project-1",
        sale_date=date(2026, 3, 5),
        quantity_gallons=Decimal("4000"),
        unit_price=Decimal("2.5"),
        vat_percentage=Decimal("5"),
    )
    base.update(kw)
    return sales_router.SaleIn(**base)


def test_create_sale_without_lpo_is_pending(monkeypatch):
    _db(sold="0").patch(monkeypatch, sales_router)
    out = sales_router.create_sale(_sale_in(), user=USER)
    assert out["sale"]["sale_status"] == "pending_lpo"


def test_create_sale_beyond_stock_is_rejected(monkeypatch):
    db = _db(sold="6000.00").patch(monkeypatch, sales_router)
    with pytest.raises(HTTPException) as exc_info:
        sales_router.create_sale(_sale_in(quantity_gallons=Decimal("4000.01")), user=USER)
    assert exc_info.value.detail["code"] == "insufficient_stock"
    assert db.writes("sales") == []


def test_create_sale_rejects_project_of_other_client(monkeypatch):
    _db(sold="0").patch(monkeypatch, sales_router)
    with pytest.raises(HTTPException) as exc_info:
        sales_router.create_sale(_sale_in(project_id="project-x"), user=USER)
    assert exc_info.value.detail["code"] == "project_client_mismatch"


def test_record_lpo_moves_to_lpo_received(monkeypatch):
    db = _db().patch(monkeypatch, sales_router)
    sales_router.record_lpo("sale-1", sales_router.LpoIn(lpo_number="LPO-9"), user=USER)
    (sql, params), = db.writes("sales")
    assert params[0] == "LPO-9"
    assert params[3] == "lpo_received"


def test_record_lpo_twice_is_an_invalid_transition(monkeypatch):
    db = _db(sale={"sale_status": "lpo_received"}).patch(monkeypatch, sales_router)
    with pytest.raises(HTTPException) as exc_info:
        sales_router.record_lpo("sale-1", sales_router.LpoIn(lpo_number="LPO-9"), user=USER)
    assert exc_info.value.detail["code"] == "invalid_status_transition"
    assert db.writes("sales") == []


def test_edit_amounts_after_allocation_is_rejected(monkeypatch):
    db = _db(sale={"sale_status": "invoiced"}, allocated="100.00").patch(monkeypatch, sales_router)
    with pytest.raises(HTTPException) as exc_info:
        sales_router.update_sale("sale-1", sales_router.SaleUpdate(unit_price=Decimal("2.6")), user=USER)
    assert exc_info.value.status_code == 409
    assert exc_info.value.detail["code"] == "sale_has_allocations"
    assert db.writes("sales") == []


def test_edit_notes_after_allocation_is_allowed(monkeypatch):
    db = _db(sale={"sale_status": "invoiced"}, allocated="100.00").patch(monkeypatch, sales_router)
    sales_router.update_sale("sale-1", sales_router.SaleUpdate(notes="delivered to site B"), user=USER)
    assert len(db.writes("sales")) == 1


def test_edit_quantity_up_checks_stock(monkeypatch):
    # 10000 purchased, this sale holds 4000 of the 9000 sold: it can grow to 5000.
    db = _db(purchased="10000.00", sold="9000.00").patch(monkeypatch, sales_router)
    with pytest.raises(HTTPException) as exc_info:
        sales_router.update_sale("sale-1", sales_router.SaleUpdate(quantity_gallons=Decimal("5000.01")), user=USER)
    assert exc_info.value.detail["code"] == "insufficient_stock"

    db = _db(purchased="10000.00", sold="9000.00").patch(monkeypatch, sales_router)
    out = sales_router.update_sale("sale-1", sales_router.SaleUpdate(quantity_gallons=Decimal("5000")), user=USER)
    assert out["sale"]["total_amount"] == Decimal("13125.00")
    assert db.index_of("pg_advisory_xact_lock") < db.index_of("FROM sales WHERE id = %s FOR UPDATE")


def test_void_sale_with_live_invoice_is_rejected(monkeypatch):
    db = _db(live_invoice={"invoice_number": "INV-00001"}).patch(monkeypatch, sales_router)
    with pytest.raises(HTTPException) as exc_info:
        sales_router.void_sale("sale-1", user=USER)
    assert exc_info.value.detail["code"] == "sale_has_invoice"
    assert db.writes("sales") == []


def test_void_sale(monkeypatch):
    db = _db().patch(monkeypatch, sales_router)
    assert sales_router.void_sale("sale-1", user=USER) == {"ok": True}
    (sql, _), = db.writes("sales")
    assert "voided_at = now()" in sql


@pytest.mark.parametrize("status", ["invoiced", "paid"])
def test_edit_amounts_of_invoiced_sale_is_rejected(monkeypatch, status):
    # The invoice froze the old total; the sale must not drift away from it.
    db = _db(sale={"sale_status": status}).patch(monkeypatch, sales_router)
    with pytest.raises(HTTPException) as exc_info:
        sales_router.update_sale("sale-1", sales_router.SaleUpdate(quantity_gallons=Decimal("4800")), user=USER)
    assert exc_info.value.status_code == 409
    assert exc_info.value.detail["code"] == "sale_invoiced"
    assert db.writes("sales") == []


def test_edit_amounts_before_invoice_is_allowed(monkeypatch):
    db = _db(sale={"sale_status": "lpo_received"}).patch(monkeypatch, sales_router)
    out = sales_router.update_sale("sale-1", sales_router.SaleUpdate(unit_price=Decimal("2.6")), user=USER)
    assert out["sale"]["total_amount"] == Decimal("10920.00")
    assert len(db.writes("sales")) == 1


def test_record_lpo_returns_updated_sale(monkeypatch):
    _db().patch(monkeypatch, sales_router)
    out = sales_router.record_lpo("sale-1", sales_router.LpoIn(lpo_number="LPO-9"), user=USER)
    assert out["sale"]["sale_status"] == "lpo_received"
    assert out["sale"]["lpo_number"] == "LPO-9"
