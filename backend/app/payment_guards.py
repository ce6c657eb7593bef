from decimal import Decimal
from typing import Iterable

from .ledger_errors import conflict, invalid, not_found
from .money import d, q_money


def assert_entry_direction(entry: dict, required: str):
    if entry.get("direction") != required:
        raise conflict(
            f"entry_not_{required}",
            f"cashbook entry must be an {required} to be allocated here",
        )


def assert_entry_settled(entry: dict):
    # A pending entry is an unpaid debt, not cash that can settle anything.
    if entry.get("is_pending"):
        raise conflict("entry_pending", "a pending cashbook entry cannot be allocated")


def normalize_batch(lines: Iterable, *, target_key: str, duplicate_code: str) -> list[tuple[str, Decimal]]:
    """
    Validate the shape of an allocation batch before touching the ledger:
    every amount positive, no target listed twice. Returns [(target_id, amount)].
    """
    out: list[tuple[str, Decimal]] = []
    seen: set[str] = set()
    for ln in lines:
        target_id = str(ln.get(target_key) or "").strip()
        if not target_id:
            raise invalid("missing_target", f"{target_key} is required")
        amount = q_money(d(ln.get("amount")))
        if amount <= 0:
            raise invalid("invalid_amount", "allocation amount must be > 0")
        if target_id in seen:
            raise invalid(duplicate_code, f"{target_id} appears more than once in this batch")
        seen.add(target_id)
        out.append((target_id, amount))
    if not out:
        raise invalid("empty_batch", "at least one allocation is required")
    return out


def entry_remaining(entry_amount, entry_allocated) -> Decimal:
    return q_money(d(entry_amount) - d(entry_allocated))


def assert_within_entry_capacity(entry_amount, entry_allocated, batch_total):
    remaining = entry_remaining(entry_amount, entry_allocated)
    if q_money(d(batch_total)) > remaining:
        raise conflict(
            "amount_exceeds_entry_capacity",
            f"cannot allocate {q_money(d(batch_total))}; only {remaining} remains unallocated in this cashbook entry",
        )


def assert_within_balance(balance, amount, *, code: str, label: str):
    bal = q_money(d(balance))
    if q_money(d(amount)) > bal:
        raise conflict(
            code,
            f"cannot allocate {q_money(d(amount))} to {label}; pending amount is only {bal}",
        )


def check_batch(
    *,
    entry: dict,
    entry_allocated,
    batch: list[tuple[str, Decimal]],
    balances: dict,
    labels: dict,
    missing_code: str,
    balance_code: str,
) -> Decimal:
    """
    Check a whole batch against balances re-read under lock. Nothing is written
    unless every line passes; returns the batch total.

    `balances` maps target id -> remaining balance for every target that exists.
    """
    total = Decimal("0")
    for target_id, amount in batch:
        if target_id not in balances:
            raise not_found(missing_code, f"{target_id} not found")
        assert_within_balance(
            balances[target_id],
            amount,
            code=balance_code,
            label=labels.get(target_id) or target_id,
        )
        total += amount
    assert_within_entry_capacity(entry.get("amount"), entry_allocated, total)
    return q_money(total)
