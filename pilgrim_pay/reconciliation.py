import csv
from decimal import Decimal
from io import StringIO
from typing import List, Tuple

from sqlalchemy.orm import Session

from pilgrim_pay import models
from pilgrim_pay.config import BookingStatus, PaymentStatus
from pilgrim_pay.helpers import quantize_money
from pilgrim_pay.ledger import WalletLedger
from pilgrim_pay.logging_config import get_logger


logger = get_logger(__name__)


def _to_csv(header: List[str], rows: List[tuple]) -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(header)
    for row in rows:
        writer.writerow(row)
    return output.getvalue()


def wallet_drift(db: Session) -> List[tuple]:
    """
    Agents whose cached wallet balance differs from the sum of their ledger.
    """
    ledger = WalletLedger(db)
    ledger_agents = {row[0] for row in db.query(models.WalletTransaction.agent_id).distinct().all()}
    cached = {w.agent_id: quantize_money(Decimal(str(w.balance))) for w in db.query(models.AgentWallet).all()}

    mismatches: List[tuple] = []
    for agent_id in sorted(ledger_agents | cached.keys()):
        ledger_balance = ledger.balance(agent_id)
        cached_balance = cached.get(agent_id)
        if cached_balance is None or cached_balance != ledger_balance:
            mismatches.append((agent_id, ledger_balance, cached_balance, agent_id in cached))
    return mismatches


def generate_wallet_reconciliation_csv(db: Session) -> Tuple[str, int]:
    mismatches = wallet_drift(db)
    logger.info("Wallet reconciliation complete with %s mismatches", len(mismatches))
    csv_text = _to_csv(["agentId", "ledgerBalance", "cachedBalance", "hasWallet"], mismatches)
    return csv_text, len(mismatches)


def generate_settlement_reconciliation_csv(db: Session) -> Tuple[str, int]:
    """
    Verified payments whose booking was not promoted to confirmed.
    """
    rows = (
        db.query(models.Payment, models.Booking)
        .join(models.Booking, models.Booking.id == models.Payment.booking_id)
        .filter(models.Payment.status == PaymentStatus.VERIFIED.value)
        .filter(models.Booking.status != BookingStatus.CONFIRMED.value)
        .order_by(models.Payment.id)
        .all()
    )
    mismatches = [
        (payment.id, booking.id, booking.reference, payment.method, payment.external_reference, booking.status)
        for payment, booking in rows
    ]
    logger.info("Settlement reconciliation complete with %s mismatches", len(mismatches))
    csv_text = _to_csv(["paymentId", "bookingId", "bookingReference", "method", "externalReference", "bookingStatus"], mismatches)
    return csv_text, len(mismatches)
