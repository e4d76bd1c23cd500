from decimal import Decimal

from pilgrim_pay import models, security
from pilgrim_pay.commands.reconcile import reconcile
from pilgrim_pay.ledger import WalletLedger
from pilgrim_pay.reconciliation import (
    generate_settlement_reconciliation_csv,
    generate_wallet_reconciliation_csv,
    wallet_drift,
)


def test_no_drift_after_ledger_appends(db, seed):
    ledger = WalletLedger(db)
    ledger.credit(1, Decimal("1000"), "otp-1", "top-up", commit=True)
    ledger.debit(1, Decimal("250"), "RT-0002", "Booking payment", commit=True)

    csv_text, mismatch_count = generate_wallet_reconciliation_csv(db)

    assert mismatch_count == 0
    assert csv_text.strip() == "agentId,ledgerBalance,cachedBalance,hasWallet"


def test_drift_and_missing_wallet_are_reported(db, seed):
    db.add(models.Agent(id=2, full_name="No Wallet Travel", commission_rate=Decimal("0")))
    db.add(models.WalletTransaction(agent_id=2, type="deposit", amount=Decimal("40")))
    ledger = WalletLedger(db)
    ledger.credit(1, Decimal("100"), "otp-1", "top-up", commit=True)
    db.query(models.AgentWallet).filter(models.AgentWallet.agent_id == 1).update({models.AgentWallet.balance: Decimal("90")})
    db.commit()

    drift = wallet_drift(db)

    assert drift == [(1, Decimal("100.00"), Decimal("90.00"), True), (2, Decimal("40.00"), None, False)]


def test_reconcile_command_writes_csv_and_rebuilds(db, seed, tmp_path):
    ledger = WalletLedger(db)
    ledger.credit(1, Decimal("100"), "otp-1", "top-up", commit=True)
    db.query(models.AgentWallet).filter(models.AgentWallet.agent_id == 1).update({models.AgentWallet.balance: Decimal("1")})
    db.commit()
    output = tmp_path / "wallets.csv"

    assert reconcile(db, str(output)) == 1
    assert "1,100.00,1.00,True" in output.read_text()

    assert reconcile(db, str(output), rebuild=True) == 1
    assert ledger.cached_balance(1) == Decimal("100.00")
    assert reconcile(db, str(output)) == 0


def test_settlement_report_lists_verified_payments_on_unconfirmed_bookings(db, seed):
    db.get(models.Booking, 1).status = "confirmed"
    db.get(models.Booking, 2).status = "cancelled"
    db.add(models.Payment(booking_id=1, method="gateway", amount=Decimal("2500000"), status="verified", external_reference="A"))
    db.add(models.Payment(booking_id=2, method="gateway", amount=Decimal("2375000"), status="verified", external_reference="B"))
    db.add(models.Payment(booking_id=2, method="bank_transfer", amount=Decimal("500000"), status="pending"))
    db.commit()

    csv_text, mismatch_count = generate_settlement_reconciliation_csv(db)

    assert mismatch_count == 1
    lines = csv_text.strip().splitlines()
    assert lines[0] == "paymentId,bookingId,bookingReference,method,externalReference,bookingStatus"
    assert lines[1].endswith(",2,RT-0002,gateway,B,cancelled")


def test_reconciliation_endpoints_require_ops_token_when_configured(client, monkeypatch):
    monkeypatch.setattr(security.settings, "ops_bearer_token", "ops-token")

    assert client.get("/reconciliation/wallets").status_code == 401
    assert client.get("/reconciliation/wallets", headers={"Authorization": "Bearer wrong"}).status_code == 401
    ok = client.get("/reconciliation/settlements", headers={"Authorization": "Bearer ops-token"})
    assert ok.status_code == 200
    assert ok.headers["X-Mismatch-Count"] == "0"
