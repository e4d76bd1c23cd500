from decimal import Decimal

import pytest

from pilgrim_pay import models
from pilgrim_pay.errors import ValidationFailure
from pilgrim_pay.ledger import WalletLedger


def test_balance_is_deposits_minus_deductions(db, seed):
    ledger = WalletLedger(db)
    ledger.credit(1, Decimal("500000"), "otp-1", "Admin wallet top-up", commit=True)
    ledger.credit(1, Decimal("250000.50"), "otp-2", "Admin wallet top-up", commit=True)
    ledger.debit(1, Decimal("100000.25"), "RT-0002", "Booking payment", commit=True)

    assert ledger.balance(1) == Decimal("650000.25")
    assert ledger.cached_balance(1) == Decimal("650000.25")
    assert [t.type for t in ledger.history(1)] == ["deduction", "deposit", "deposit"]


@pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-5"), None, "abc"])
def test_non_positive_or_malformed_amounts_are_rejected(db, seed, amount):
    ledger = WalletLedger(db)
    with pytest.raises(ValidationFailure):
        ledger.credit(1, amount, "ref", "bad")
    with pytest.raises(ValidationFailure):
        ledger.debit(1, amount, "ref", "bad")
    assert db.query(models.WalletTransaction).count() == 0


def test_debit_may_take_balance_negative(db, seed):
    # Overdraft policy belongs to the caller; the ledger records the deduction as asked.
    ledger = WalletLedger(db)
    ledger.credit(1, Decimal("1000"), "otp-1", "top-up", commit=True)
    ledger.debit(1, Decimal("1500"), "RT-0002", "Booking payment", commit=True)
    assert ledger.balance(1) == Decimal("-500.00")


def test_uncommitted_append_is_rolled_back_with_caller_transaction(db, seed):
    ledger = WalletLedger(db)
    ledger.credit(1, Decimal("1000"), "otp-1", "top-up")
    db.rollback()
    assert db.query(models.WalletTransaction).count() == 0
    assert ledger.balance(1) == Decimal("0.00")


def test_projection_drift_is_rebuilt_from_the_ledger(db, seed):
    ledger = WalletLedger(db)
    ledger.credit(1, Decimal("1000"), "otp-1", "top-up", commit=True)
    db.query(models.AgentWallet).filter(models.AgentWallet.agent_id == 1).update({models.AgentWallet.balance: Decimal("999999")})
    db.commit()

    assert ledger.balance(1) == Decimal("1000.00")
    assert ledger.rebuild_projection(1) == Decimal("1000.00")
    assert ledger.cached_balance(1) == Decimal("1000.00")


def test_ledger_rows_sum_to_reported_balance(db, seed):
    ledger = WalletLedger(db)
    for amount in ("10.10", "20.20", "30.30"):
        ledger.credit(1, Decimal(amount), None, None, commit=True)
    ledger.debit(1, Decimal("5.05"), None, None, commit=True)

    rows = db.query(models.WalletTransaction).filter(models.WalletTransaction.agent_id == 1).all()
    total = sum(
        (Decimal(str(r.amount)) if r.type == "deposit" else -Decimal(str(r.amount)) for r in rows),
        Decimal("0"),
    )
    assert total == ledger.balance(1) == Decimal("55.55")
