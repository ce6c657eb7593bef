from datetime import date
from decimal import Decimal

import pytest
from fastapi import HTTPException

from backend.app.routers import allocations as allocations_router
from backend.app.routers import sales as sales_router
from backend.tests.ledger_fakes import USER, FakeDb, LedgerStore


@pytest.fixture
def ledger(monkeypatch):
    store = LedgerStore()
    store.add_head("head-client", "Gulf Build LLC", "client")
    store.add_sale("sale-1", total="10500.00", vat="500.00", status="invoiced")
    store.add_sale("sale-2", total="2000.00", status="lpo_received")
    store.invoices["inv-1"] = {
        "id": "inv-1",
        "sale_id": "sale-1",
        "invoice_number": "INV-00001",
        "total_amount": Decimal("10500.00"),
        "status": "generated",
        "sent_at": None,
    }

    def _sale_with_client(p):
        sale = store.sales.get(p[0])
        if not sale:
            return None
        inv = store.live_invoice(p[0])
        return {
            "id": sale["id"],
            "voided_at": sale["voided_at"],
            "client_name": "Gulf Build LLC",
            "account_head_id": "head-client",
            "invoice_id": inv["id"] if inv else None,
            "invoice_number": inv["invoice_number"] if inv else None,
        }

    store.db.on("c.account_head_id, i.id AS invoice_id", _sale_with_client)
    store.db.patch(monkeypatch, sales_router, allocations_router)
    return store


def _pay(sale_id, amount, **kw):
    data = sales_router.SalePaymentIn(amount=Decimal(amount), payment_date=date(2026, 4, 2), **kw)
    return sales_router.record_sale_payment(sale_id, data, user=USER)


def test_full_payment_settles_sale_and_invoice(ledger):
    out = _pay("sale-1", "10500", payment_method="bank_transfer")
    assert out["entry"]["direction"] == "inflow"
    assert out["entry"]["transaction_type"] == "invoice"
    assert out["total_allocated"] == Decimal("10500.00")
    assert out["entry_remaining"] == Decimal("0.00")
    assert ledger.sales["sale-1"]["sale_status"] == "paid"
    assert ledger.invoices["inv-1"]["status"] == "paid"
    assert ledger.pending("sale-1") == Decimal("0.00")


def test_payment_entry_points_back_at_the_sale(ledger):
    _pay("sale-1", "4000")
    ((_, params),) = ledger.db.writes("cashbook_entries")
    assert params[4] == "head-client"
    assert params[9:11] == ("payment", "sale-1")
    assert params[11] is False


def test_partial_payment_leaves_sale_invoiced(ledger):
    out = _pay("sale-1", "4000")
    assert out["allocations"][0]["invoice_id"] == "inv-1"
    assert ledger.pending("sale-1") == Decimal("6500.00")
    assert ledger.sales["sale-1"]["sale_status"] == "invoiced"


def test_entry_is_written_before_it_is_allocated(ledger):
    _pay("sale-1", "100")
    db = ledger.db
    assert db.index_of("INSERT INTO cashbook_entries") < db.index_of("FROM cashbook_entries WHERE id = %s FOR UPDATE")
    assert db.index_of("FOR UPDATE") < db.index_of("INSERT INTO payment_allocations")


def test_overpayment_is_rejected(ledger):
    with pytest.raises(HTTPException) as exc_info:
        _pay("sale-1", "10500.01")
    assert exc_info.value.detail["code"] == "amount_exceeds_invoice_balance"
    assert ledger.allocations == {}
    assert ledger.sales["sale-1"]["sale_status"] == "invoiced"


@pytest.mark.parametrize(
    "sale_id,amount,expected",
    [
        ("sale-2", "100", (409, "sale_not_invoiced")),
        ("sale-404", "100", (404, "sale_not_found")),
        ("sale-1", "0", (400, "invalid_amount")),
    ],
)
def test_payment_rejections_write_nothing(ledger, sale_id, amount, expected):
    with pytest.raises(HTTPException) as exc_info:
        _pay(sale_id, amount)
    assert (exc_info.value.status_code, exc_info.value.detail["code"]) == expected
    assert ledger.db.writes("cashbook_entries") == []
    assert ledger.db.writes("payment_allocations") == []


def test_voided_sale_takes_no_payment(ledger):
    ledger.sales["sale-1"]["voided_at"] = date(2026, 4, 1)
    with pytest.raises(HTTPException) as exc_info:
        _pay("sale-1", "100")
    assert exc_info.value.detail["code"] == "sale_voided"


def test_list_sale_payments_reads_live_invoice_only(monkeypatch):
    rows = [{"id": "pa-1", "amount": Decimal("4000.00"), "invoice_number": "INV-00001"}]
    db = FakeDb([("FROM payment_allocations pa JOIN invoices i", rows)]).patch(monkeypatch, sales_router)
    out = sales_router.list_sale_payments("sale-1")
    assert out == {"payments": rows}
    sql, params = db.executed[0]
    assert "i.status <> 'void'" in sql
    assert params == ("sale-1",)
