"""
OTP-confirmed wallet top-ups.

An admin asks to credit an agent's wallet; the code goes to the admin's own
email, never to the agent, so controlling the agent's inbox is not enough to
approve a credit. Codes are stored as salted HMAC-SHA-256 digests.

Consuming the request and appending the ledger deposit happen in one database
transaction: if the credit fails the request stays unconsumed and can be
verified again.
"""
import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal

from sqlalchemy.orm import Session

from pilgrim_pay import models
from pilgrim_pay.collaborators import Authorizer, Notifier, Principal
from pilgrim_pay.config import Settings
from pilgrim_pay.errors import (
    AuthorizationFailure,
    CodeMismatch,
    EmailDispatchFailed,
    Expired,
    NotFound,
    OtpAlreadyConsumed,
    OtpNotFound,
    PilgrimPayError,
    ValidationFailure,
)
from pilgrim_pay.helpers import as_utc, require_positive, utcnow
from pilgrim_pay.ledger import WalletLedger
from pilgrim_pay.logging_config import get_logger
from pilgrim_pay.notifications import otp_email, run_post_commit, topup_receipt_email

logger = get_logger(__name__)

OTP_LENGTH = 6


def generate_code() -> str:
    return str(secrets.randbelow(9 * 10 ** (OTP_LENGTH - 1)) + 10 ** (OTP_LENGTH - 1))


def hash_code(code: str, salt: str) -> str:
    return hmac.new(salt.encode(), code.encode(), hashlib.sha256).hexdigest()


@dataclass(frozen=True)
class TopUpResult:
    agent_id: int
    amount: Decimal
    new_balance: Decimal
    transaction_id: int


class OtpChallengeService:
    def __init__(self, db: Session, config: Settings, authorizer: Authorizer, notifier: Notifier):
        self.db = db
        self.config = config
        self.authorizer = authorizer
        self.notifier = notifier
        self.ledger = WalletLedger(db)

    async def request_topup(self, admin: Principal, agent_id: int, amount) -> models.OTPRequest:
        self._require_admin(admin)
        value = require_positive(amount)
        if not admin.email:
            raise ValidationFailure("admin account has no verified email")
        if self.db.get(models.Agent, agent_id) is None:
            raise NotFound(f"agent {agent_id} not found")

        code = generate_code()
        salt = secrets.token_hex(16)
        request = models.OTPRequest(
            admin_id=admin.user_id,
            agent_id=agent_id,
            amount=value,
            code_hash=hash_code(code, salt),
            code_salt=salt,
            expires_at=utcnow() + timedelta(minutes=self.config.otp_ttl_minutes),
        )
        self.db.add(request)
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(request)
        logger.info(
            "Top-up OTP issued requestId=%s adminId=%s agentId=%s amount=%s",
            request.id,
            admin.user_id,
            agent_id,
            value,
        )

        subject, html = otp_email(value, code, self.config.otp_ttl_minutes, self.config.currency)
        try:
            await self.notifier.send_email([admin.email], subject, html)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Top-up OTP email failed requestId=%s error=%s", request.id, exc)
            raise EmailDispatchFailed("failed to send verification code") from exc
        return request

    async def verify_topup(self, admin: Principal, agent_id: int, code: str) -> TopUpResult:
        self._require_admin(admin)
        submitted = (code or "").strip()
        if not submitted:
            raise ValidationFailure("code is required")

        request = (
            self.db.query(models.OTPRequest)
            .filter(models.OTPRequest.admin_id == admin.user_id)
            .filter(models.OTPRequest.agent_id == agent_id)
            .filter(models.OTPRequest.consumed_at.is_(None))
            .order_by(models.OTPRequest.created_at.desc(), models.OTPRequest.id.desc())
            .first()
        )
        if request is None:
            raise OtpNotFound("no pending top-up request")
        now = utcnow()
        if as_utc(request.expires_at) <= now:
            raise Expired("verification code expired")
        if not hmac.compare_digest(hash_code(submitted, request.code_salt), request.code_hash):
            logger.warning("Top-up OTP mismatch requestId=%s adminId=%s agentId=%s", request.id, admin.user_id, agent_id)
            raise CodeMismatch("invalid verification code")

        request_id, amount = request.id, Decimal(str(request.amount))
        try:
            consumed = (
                self.db.query(models.OTPRequest)
                .filter(models.OTPRequest.id == request_id)
                .filter(models.OTPRequest.consumed_at.is_(None))
                .update({models.OTPRequest.consumed_at: now}, synchronize_session=False)
            )
            if consumed == 0:
                raise OtpAlreadyConsumed("verification code already used")
            txn = self.ledger.credit(agent_id, amount, reference=f"otp-{request_id}", description="Admin wallet top-up")
            self.db.commit()
        except PilgrimPayError:
            self.db.rollback()
            raise
        except Exception:
            self.db.rollback()
            logger.error("Top-up credit failed; OTP left unconsumed requestId=%s", request_id)
            raise

        new_balance = self.ledger.balance(agent_id)
        logger.info(
            "Wallet topped up requestId=%s agentId=%s amount=%s newBalance=%s",
            request_id,
            agent_id,
            amount,
            new_balance,
        )
        result = TopUpResult(agent_id=agent_id, amount=amount, new_balance=new_balance, transaction_id=txn.id)
        await run_post_commit("topup_receipt", lambda: self._send_receipt(admin, result, request_id))
        return result

    def _require_admin(self, admin: Principal):
        if not self.authorizer.is_admin(admin.user_id):
            raise AuthorizationFailure("only admins can top up wallets")

    async def _send_receipt(self, admin: Principal, result: TopUpResult, request_id: int):
        agent = self.db.get(models.Agent, result.agent_id)
        agent_name = (agent.full_name if agent else None) or "Agent"
        subject, html = topup_receipt_email(
            agent_name,
            result.amount,
            result.new_balance,
            admin.email or admin.user_id,
            f"otp-{request_id}",
            self.config.currency,
        )
        await self.notifier.send_email([admin.email, agent.email if agent else None], subject, html)
