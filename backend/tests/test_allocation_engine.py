from decimal import Decimal

import pytest
from fastapi import HTTPException

from backend.app.routers import allocations as allocations_router
from backend.app.routers import supplier_advances as advances_router
from backend.tests.ledger_fakes import USER, FakeDb, LedgerStore


def _lines(*pairs):
    return allocations_router.AllocationBatchIn(
        allocations=[allocations_router.AllocationLine(invoice_id=i, amount=Decimal(a)) for i, a in pairs]
    )


@pytest.fixture
def ledger(monkeypatch):
    store = LedgerStore()
    store.add_sale("sale-1", total="1000.00", status="invoiced")
    store.add_sale("sale-2", total="500.00", status="invoiced")
    store.add_sale("sale-3", total="300.00", status="lpo_received")
    for n, sale_id in enumerate(("sale-1", "sale-2"), start=1):
        store.invoices[f"inv-{n}"] = {
            "id": f"inv-{n}",
            "sale_id": sale_id,
            "invoice_number": f"INV-0000{n}",
            "total_amount": store.sales[sale_id]["total_amount"],
            "status": "sent",
            "sent_at": "2026-01-02T00:00:00Z",
        }
    store.invoices["inv-9"] = {
        "id": "inv-9",
        "sale_id": "sale-3",
        "invoice_number": "INV-00009",
        "total_amount": Decimal("300.00"),
        "status": "void",
        "sent_at": None,
    }
    store.add_entry("entry-in", amount="1200.00")
    store.add_entry("entry-out", amount="1200.00", direction="outflow", head_id="head-supplier")
    store.db.patch(monkeypatch, allocations_router)
    return store


def _rejects(ledger, entry_id, batch, expected):
    with pytest.raises(HTTPException) as exc_info:
        allocations_router.allocate_payment(entry_id, batch, user=USER)
    assert (exc_info.value.status_code, exc_info.value.detail["code"]) == expected
    assert ledger.db.writes("payment_allocations") == []
    assert ledger.db.writes("sales") == []
    assert ledger.db.writes("invoices") == []


def test_split_payment_across_invoices(ledger):
    out = allocations_router.allocate_payment(
        "entry-in", _lines(("inv-2", "500.00"), ("inv-1", "700.00")), user=USER
    )
    assert out["total_allocated"] == Decimal("1200.00")
    assert out["entry_remaining"] == Decimal("0.00")
    assert ledger.sales["sale-2"]["sale_status"] == "paid"
    assert ledger.invoices["inv-2"]["status"] == "paid"
    assert ledger.sales["sale-1"]["sale_status"] == "invoiced"
    assert ledger.pending("sale-1") == Decimal("300.00")


def test_locks_entry_then_invoices_then_rereads_balances(ledger):
    allocations_router.allocate_payment("entry-in", _lines(("inv-2", "10.00"), ("inv-1", "10.00")), user=USER)
    db = ledger.db
    entry_lock = db.index_of("FROM cashbook_entries WHERE id = %s FOR UPDATE")
    invoice_lock = db.index_of("ORDER BY i.id FOR UPDATE")
    entry_sum = db.index_of("FROM supplier_advance_allocations WHERE cashbook_entry_id")
    invoice_sum = db.index_of("WHERE invoice_id = ANY(%s::uuid[]) GROUP BY invoice_id")
    first_insert = db.index_of("INSERT INTO payment_allocations")
    assert 0 <= entry_lock < invoice_lock < entry_sum < first_insert
    assert invoice_lock < invoice_sum < first_insert


def test_missing_entry(ledger):
    _rejects(ledger, "entry-ghost", _lines(("inv-1", "10.00")), (404, "entry_not_found"))


def test_outflow_entry_cannot_pay_invoices(ledger):
    _rejects(ledger, "entry-out", _lines(("inv-1", "10.00")), (409, "entry_not_inflow"))


def test_pending_inflow_cannot_pay_invoices(ledger):
    ledger.add_entry("entry-debt", amount="1000.00", pending=True)
    _rejects(ledger, "entry-debt", _lines(("inv-1", "10.00")), (409, "entry_pending"))


def test_void_or_missing_invoice_is_not_found(ledger):
    _rejects(ledger, "entry-in", _lines(("inv-1", "10.00"), ("inv-9", "10.00")), (404, "invoice_not_found"))
    _rejects(ledger, "entry-in", _lines(("inv-404", "10.00")), (404, "invoice_not_found"))


def test_duplicate_invoice_in_batch(ledger):
    _rejects(ledger, "entry-in", _lines(("inv-1", "10.00"), ("inv-1", "20.00")), (400, "duplicate_invoice_in_batch"))


def test_one_bad_line_rejects_whole_batch(ledger):
    _rejects(
        ledger,
        "entry-in",
        _lines(("inv-1", "100.00"), ("inv-2", "500.01")),
        (409, "amount_exceeds_invoice_balance"),
    )


def test_batch_over_entry_capacity(ledger):
    _rejects(
        ledger,
        "entry-in",
        _lines(("inv-1", "1000.00"), ("inv-2", "300.00")),
        (409, "amount_exceeds_entry_capacity"),
    )


def test_balance_is_min_of_sale_pending_and_invoice_remaining(ledger):
    # Sale total edited below the frozen invoice total: the sale side bounds the allocation.
    ledger.sales["sale-1"]["total_amount"] = Decimal("800.00")
    _rejects(ledger, "entry-in", _lines(("inv-1", "800.01")), (409, "amount_exceeds_invoice_balance"))


def test_delete_missing_allocation(ledger):
    with pytest.raises(HTTPException) as exc_info:
        allocations_router.delete_allocation("nope", user=USER)
    assert exc_info.value.detail["code"] == "allocation_not_found"


def test_reversal_keeps_sent_invoice_sent(ledger):
    out = allocations_router.allocate_payment("entry-in", _lines(("inv-2", "500.00")), user=USER)
    assert ledger.invoices["inv-2"]["status"] == "paid"
    allocations_router.delete_allocation(out["allocations"][0]["id"], user=USER)
    assert ledger.invoices["inv-2"]["status"] == "sent"
    assert ledger.sales["sale-2"]["sale_status"] == "invoiced"


# Supplier advances -------------------------------------------------------


def _advance_db(lots, applied=None, entry=None, used="0", head_type="supplier"):
    entry = entry or {
        "id": "entry-out",
        "direction": "outflow",
        "amount": Decimal("5000.00"),
        "account_head_id": "head-supplier",
        "transaction_type": "supplier_payment",
    }
    applied = applied or {}
    return FakeDb(
        [
            ("FROM cashbook_entries WHERE id = %s FOR UPDATE", entry),
            ("SELECT type FROM account_heads WHERE id = %s", {"type": head_type}),
            ("FROM stock_lots WHERE id = ANY(%s::uuid[]) ORDER BY id FOR UPDATE", lambda p: [l for l in lots if l["id"] in p[0]]),
            ("+ (SELECT COALESCE(SUM(amount), 0) FROM supplier_advance_allocations", {"allocated": Decimal(used)}),
            (
                "FROM supplier_advance_allocations WHERE stock_lot_id = ANY",
                lambda p: [{"stock_lot_id": k, "applied": v} for k, v in applied.items()],
            ),
            (
                "INSERT INTO supplier_advance_allocations",
                lambda p: {"id": "adv-1", "cashbook_entry_id": p[0], "stock_lot_id": p[1], "amount": p[2]},
            ),
        ]
    )


LOT = {"id": "lot-1", "purchase_date": "2026-01-01", "total_cost": Decimal("21000.00"), "supplier_account_head_id": "head-supplier"}


def _advance(entry_id, *pairs):
    return advances_router.AdvanceBatchIn(
        allocations=[advances_router.AdvanceLine(stock_lot_id=i, amount=Decimal(a)) for i, a in pairs]
    )


def test_supplier_advance_applies_to_lot(monkeypatch):
    db = _advance_db([LOT]).patch(monkeypatch, advances_router)
    out = advances_router.allocate_supplier_advance("entry-out", _advance("entry-out", ("lot-1", "5000.00")), user=USER)
    assert out["total_allocated"] == Decimal("5000.00")
    assert len(db.writes("supplier_advance_allocations")) == 1
    # No status transitions on the purchase side.
    assert db.writes("stock_lots") == []


@pytest.mark.parametrize(
    "lots,applied,batch,expected",
    [
        ([LOT], {}, [("lot-2", "10.00")], (404, "stock_lot_not_found")),
        ([LOT], {"lot-1": Decimal("20000.00")}, [("lot-1", "1000.01")], (409, "amount_exceeds_lot_balance")),
        ([LOT], {}, [("lot-1", "5000.01")], (409, "amount_exceeds_entry_capacity")),
        ([{**LOT, "supplier_account_head_id": "head-other"}], {}, [("lot-1", "10.00")], (409, "supplier_mismatch")),
        ([LOT], {}, [("lot-1", "10.00"), ("lot-1", "10.00")], (400, "duplicate_stock_lot_in_batch")),
    ],
)
def test_supplier_advance_rejections(monkeypatch, lots, applied, batch, expected):
    db = _advance_db(lots, applied).patch(monkeypatch, advances_router)
    with pytest.raises(HTTPException) as exc_info:
        advances_router.allocate_supplier_advance("entry-out", _advance("entry-out", *batch), user=USER)
    assert (exc_info.value.status_code, exc_info.value.detail["code"]) == expected
    assert db.writes("supplier_advance_allocations") == []


def test_inflow_entry_cannot_fund_supplier_advance(monkeypatch):
    inflow = {"id": "entry-in", "direction": "inflow", "amount": Decimal("10"), "account_head_id": "h", "transaction_type": "invoice"}
    _advance_db([LOT], entry=inflow).patch(monkeypatch, advances_router)
    with pytest.raises(HTTPException) as exc_info:
        advances_router.allocate_supplier_advance("entry-in", _advance("entry-in", ("lot-1", "1.00")), user=USER)
    assert exc_info.value.detail["code"] == "entry_not_outflow"


def test_lot_without_supplier_accepts_any_supplier_payment(monkeypatch):
    _advance_db([{**LOT, "supplier_account_head_id": None}]).patch(monkeypatch, advances_router)
    out = advances_router.allocate_supplier_advance("entry-out", _advance("entry-out", ("lot-1", "100.00")), user=USER)
    assert out["total_allocated"] == Decimal("100.00")


def test_pending_outflow_cannot_fund_supplier_advance(monkeypatch):
    debt = {
        "id": "entry-debt",
        "direction": "outflow",
        "amount": Decimal("5000.00"),
        "account_head_id": "head-supplier",
        "transaction_type": "supplier_payment",
        "is_pending": True,
    }
    db = _advance_db([LOT], entry=debt).patch(monkeypatch, advances_router)
    with pytest.raises(HTTPException) as exc_info:
        advances_router.allocate_supplier_advance("entry-debt", _advance("entry-debt", ("lot-1", "100.00")), user=USER)
    assert exc_info.value.detail["code"] == "entry_pending"
    assert db.writes("supplier_advance_allocations") == []


@pytest.mark.parametrize("head_type", ["expense", "other", "client"])
def test_only_supplier_payments_fund_lots(monkeypatch, head_type):
    expense = {
        "id": "entry-rent",
        "direction": "outflow",
        "amount": Decimal("5000.00"),
        "account_head_id": "head-rent",
        "transaction_type": "expense",
    }
    db = _advance_db([{**LOT, "supplier_account_head_id": None}], entry=expense, head_type=head_type)
    db.patch(monkeypatch, advances_router)
    with pytest.raises(HTTPException) as exc_info:
        advances_router.allocate_supplier_advance("entry-rent", _advance("entry-rent", ("lot-1", "100.00")), user=USER)
    assert (exc_info.value.status_code, exc_info.value.detail["code"]) == (409, "entry_not_supplier_payment")
    assert db.writes("supplier_advance_allocations") == []
