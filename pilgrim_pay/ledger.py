"""
Append-only agent wallet ledger.

The balance is always derived from ``wallet_transactions``. ``agent_wallets``
is a cached projection updated in the same transaction as each append and can
be rebuilt from the log at any time.

``debit`` does not refuse to take a balance below zero. Whether a deduction is
allowed is decided by the caller (e.g. a pay-by-wallet flow checks
``balance()`` first); the ledger only records what happened.
"""
from decimal import Decimal
from typing import List

from sqlalchemy.orm import Session

from pilgrim_pay import models
from pilgrim_pay.config import WalletTransactionType, ledger_sign_map
from pilgrim_pay.helpers import quantize_money, require_positive
from pilgrim_pay.logging_config import get_logger

logger = get_logger(__name__)


class WalletLedger:
    def __init__(self, db: Session):
        self.db = db

    def credit(self, agent_id: int, amount, reference: str | None, description: str | None, commit: bool = False) -> models.WalletTransaction:
        return self._append(agent_id, WalletTransactionType.DEPOSIT, amount, reference, description, commit)

    def debit(self, agent_id: int, amount, reference: str | None, description: str | None, commit: bool = False) -> models.WalletTransaction:
        return self._append(agent_id, WalletTransactionType.DEDUCTION, amount, reference, description, commit)

    def balance(self, agent_id: int) -> Decimal:
        rows = (
            self.db.query(models.WalletTransaction.type, models.WalletTransaction.amount)
            .filter(models.WalletTransaction.agent_id == agent_id)
            .all()
        )
        total = Decimal("0")
        for txn_type, amount in rows:
            total += ledger_sign_map[WalletTransactionType(txn_type)] * Decimal(str(amount))
        return quantize_money(total)

    def history(self, agent_id: int, limit: int = 100) -> List[models.WalletTransaction]:
        return (
            self.db.query(models.WalletTransaction)
            .filter(models.WalletTransaction.agent_id == agent_id)
            .order_by(models.WalletTransaction.id.desc())
            .limit(limit)
            .all()
        )

    def rebuild_projection(self, agent_id: int, commit: bool = True) -> Decimal:
        """
        Overwrite the cached wallet balance with the sum of the ledger.
        """
        balance = self.balance(agent_id)
        self._wallet(agent_id)
        self.db.query(models.AgentWallet).filter(models.AgentWallet.agent_id == agent_id).update(
            {models.AgentWallet.balance: balance},
            synchronize_session=False,
        )
        if commit:
            self.db.commit()
        logger.info("Rebuilt wallet projection agentId=%s balance=%s", agent_id, balance)
        return balance

    def cached_balance(self, agent_id: int) -> Decimal:
        stored = (
            self.db.query(models.AgentWallet.balance)
            .filter(models.AgentWallet.agent_id == agent_id)
            .scalar()
        )
        return quantize_money(Decimal(str(stored))) if stored is not None else Decimal("0.00")

    def _wallet(self, agent_id: int) -> models.AgentWallet:
        wallet = self.db.get(models.AgentWallet, agent_id)
        if wallet is None:
            wallet = models.AgentWallet(agent_id=agent_id, balance=Decimal("0"))
            self.db.add(wallet)
            self.db.flush()
        return wallet

    def _append(
        self,
        agent_id: int,
        txn_type: WalletTransactionType,
        amount,
        reference: str | None,
        description: str | None,
        commit: bool,
    ) -> models.WalletTransaction:
        value = require_positive(amount)
        record = models.WalletTransaction(
            agent_id=agent_id,
            type=txn_type.value,
            amount=value,
            reference=reference,
            description=description,
        )
        self.db.add(record)
        self._wallet(agent_id)
        self.db.flush()
        self.db.query(models.AgentWallet).filter(models.AgentWallet.agent_id == agent_id).update(
            {models.AgentWallet.balance: models.AgentWallet.balance + ledger_sign_map[txn_type] * value},
            synchronize_session=False,
        )
        if commit:
            self.db.commit()
        logger.info(
            "Appended wallet transaction agentId=%s type=%s amount=%s reference=%s",
            agent_id,
            txn_type.value,
            value,
            reference,
        )
        return record
