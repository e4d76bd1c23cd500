"""
Settlement of gateway payments against bookings.

Per (booking, method) a payment moves ``pending -> verified | rejected``. A
completion signal is applied at most once: an early check short-circuits
already-settled bookings, the ``pending -> verified`` transition is a
compare-and-set, and a partial unique index allows one verified payment per
booking and method. Redelivered or out-of-order signals therefore end up as
``already_settled`` no matter where they lose the race.

Receipts and activity records run after the commit and never undo a settlement.
"""
import json
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from pilgrim_pay import models
from pilgrim_pay.checkout import load_pricing_inputs
from pilgrim_pay.clients.gateway_client import GatewayClient
from pilgrim_pay.collaborators import ActivityRecorder, Notifier, Principal
from pilgrim_pay.config import (
    CHARGE_SUCCESS_EVENT,
    BookingStatus,
    PaymentMethod,
    PaymentStatus,
    SettlementOutcome,
    Settings,
)
from pilgrim_pay.contracts.contracts import GatewayTransactionData
from pilgrim_pay.errors import (
    AmountMismatch,
    InvalidPrice,
    NotFound,
    PaymentNotSuccessful,
    SettlementFailure,
    StateConflict,
    ValidationFailure,
)
from pilgrim_pay.helpers import from_minor_units, utcnow
from pilgrim_pay.logging_config import get_fraud_logger, get_logger
from pilgrim_pay.notifications import payment_receipt_email, run_post_commit
from pilgrim_pay.pricing import resolve_price
from pilgrim_pay.security import validate_signature

logger = get_logger(__name__)
fraud_logger = get_fraud_logger()

GATEWAY_SUCCESS_STATUS = "success"


@dataclass(frozen=True)
class SettlementResult:
    outcome: SettlementOutcome
    booking_id: Optional[int] = None
    payment_id: Optional[int] = None
    amount: Optional[Decimal] = None


class SettlementReconciler:
    def __init__(
        self,
        db: Session,
        config: Settings,
        notifier: Notifier,
        activity: ActivityRecorder,
        gateway: Optional[GatewayClient] = None,
    ):
        self.db = db
        self.config = config
        self.notifier = notifier
        self.activity = activity
        self.gateway = gateway

    async def handle_webhook(self, raw_body: bytes, signature: str | None) -> SettlementResult:
        validate_signature(raw_body, signature, self.config.gateway_secret_key)
        try:
            event = json.loads(raw_body)
        except ValueError as exc:
            raise ValidationFailure("malformed event body") from exc
        if not isinstance(event, dict):
            raise ValidationFailure("malformed event body")

        event_type = event.get("event")
        if event_type != CHARGE_SUCCESS_EVENT:
            logger.info("Ignoring gateway event=%s", event_type)
            return SettlementResult(outcome=SettlementOutcome.IGNORED)

        data = event.get("data") or {}
        metadata = data.get("metadata") if isinstance(data, dict) else None
        if not isinstance(metadata, dict) or metadata.get("booking_id") in (None, ""):
            logger.error("Gateway event without booking id reference=%s", data.get("reference") if isinstance(data, dict) else None)
            raise ValidationFailure("missing booking id")
        try:
            charge = GatewayTransactionData(**data)
        except (TypeError, ValidationError) as exc:
            raise ValidationFailure("malformed charge data") from exc
        if charge.booking_id is None:
            raise ValidationFailure("missing booking id")

        logger.info(
            "Received gateway event=%s reference=%s bookingId=%s amountMinor=%s",
            event_type,
            charge.reference,
            charge.booking_id,
            charge.amount,
        )
        try:
            return await self.settle(charge.booking_id, charge.amount, charge.reference, PaymentMethod.GATEWAY)
        except (NotFound, InvalidPrice) as exc:
            logger.error("Booking verification failed bookingId=%s reference=%s error=%s", charge.booking_id, charge.reference, exc)
            raise SettlementFailure("booking verification failed") from exc

    async def verify_reference(self, reference: str) -> SettlementResult:
        """
        Settle from the payer's return redirect by asking the gateway for the transaction.
        """
        if self.gateway is None:
            raise RuntimeError("gateway client required for reference verification")
        charge = await self.gateway.verify_transaction(reference)
        if charge.status != GATEWAY_SUCCESS_STATUS:
            logger.info("Gateway transaction not successful reference=%s status=%s", reference, charge.status)
            raise PaymentNotSuccessful("payment not verified")
        if charge.booking_id is None:
            raise ValidationFailure("missing booking id")
        return await self.settle(charge.booking_id, charge.amount, charge.reference, PaymentMethod.GATEWAY)

    async def settle(self, booking_id: int, paid_minor: int, reference: str, method: PaymentMethod) -> SettlementResult:
        result = self._apply(booking_id, paid_minor, reference, method)
        if result.outcome == SettlementOutcome.SETTLED:
            await self._after_settlement(result, reference, method)
        return result

    def _apply(self, booking_id: int, paid_minor: int, reference: str, method: PaymentMethod) -> SettlementResult:
        if self._verified_payment(booking_id, method) is not None:
            logger.info("Booking already settled bookingId=%s method=%s reference=%s", booking_id, method.value, reference)
            return SettlementResult(outcome=SettlementOutcome.ALREADY_SETTLED, booking_id=booking_id)

        booking = self.db.get(models.Booking, booking_id)
        if booking is None:
            raise NotFound(f"booking {booking_id} not found")
        package, agent = load_pricing_inputs(self.db, booking)
        expected_full = resolve_price(package, agent)
        expected_deposit = None
        if package.deposit_allowed and package.minimum_deposit is not None:
            expected_deposit = Decimal(str(package.minimum_deposit))

        paid = from_minor_units(paid_minor)
        if not self._amount_matches(paid, expected_full, expected_deposit):
            fraud_logger.error(
                "Amount mismatch bookingId=%s reference=%s paid=%s expectedFull=%s expectedDeposit=%s",
                booking_id,
                reference,
                paid,
                expected_full,
                expected_deposit,
            )
            raise AmountMismatch("amount mismatch")

        try:
            payment = self._pending_payment(booking_id, method)
            if payment is None:
                payment = models.Payment(
                    booking_id=booking_id,
                    method=method.value,
                    amount=paid,
                    status=PaymentStatus.PENDING.value,
                    external_reference=reference,
                )
                self.db.add(payment)
                self.db.flush()
            payment_id = payment.id

            updated = self._transition(
                payment_id,
                PaymentStatus.PENDING,
                {
                    models.Payment.status: PaymentStatus.VERIFIED.value,
                    models.Payment.amount: paid,
                    models.Payment.external_reference: reference,
                    models.Payment.verified_at: utcnow(),
                },
            )
            if updated == 0:
                self.db.rollback()
                logger.info("Payment no longer pending paymentId=%s bookingId=%s", payment_id, booking_id)
                return SettlementResult(outcome=SettlementOutcome.ALREADY_SETTLED, booking_id=booking_id)

            self._promote_booking(booking_id)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.info("Concurrent settlement detected bookingId=%s method=%s", booking_id, method.value)
            return SettlementResult(outcome=SettlementOutcome.ALREADY_SETTLED, booking_id=booking_id)
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            "Payment settled bookingId=%s paymentId=%s reference=%s amount=%s",
            booking_id,
            payment_id,
            reference,
            paid,
        )
        return SettlementResult(outcome=SettlementOutcome.SETTLED, booking_id=booking_id, payment_id=payment_id, amount=paid)

    async def verify_manual_payment(self, payment_id: int, admin: Principal) -> SettlementResult:
        """
        Admin approval of a pending payment (e.g. a bank transfer checked by hand).
        """
        payment = self.db.get(models.Payment, payment_id)
        if payment is None:
            raise NotFound(f"payment {payment_id} not found")
        booking_id, method, reference = payment.booking_id, PaymentMethod(payment.method), payment.external_reference
        try:
            updated = self._transition(
                payment_id,
                PaymentStatus.PENDING,
                {models.Payment.status: PaymentStatus.VERIFIED.value, models.Payment.verified_at: utcnow()},
            )
            if updated == 0:
                self.db.rollback()
                return self._resolve_lost_transition(payment_id, booking_id)
            self._promote_booking(booking_id)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise StateConflict("booking already has a verified payment for this method")
        except Exception:
            self.db.rollback()
            raise

        payment = self.db.get(models.Payment, payment_id)
        logger.info("Payment manually verified paymentId=%s bookingId=%s adminId=%s", payment_id, booking_id, admin.user_id)
        result = SettlementResult(
            outcome=SettlementOutcome.SETTLED,
            booking_id=booking_id,
            payment_id=payment_id,
            amount=Decimal(str(payment.amount)),
        )
        await self._after_settlement(result, reference or f"payment-{payment_id}", method)
        return result

    def reject_payment(self, payment_id: int, admin: Principal) -> SettlementResult:
        payment = self.db.get(models.Payment, payment_id)
        if payment is None:
            raise NotFound(f"payment {payment_id} not found")
        booking_id = payment.booking_id
        updated = self._transition(payment_id, PaymentStatus.PENDING, {models.Payment.status: PaymentStatus.REJECTED.value})
        if updated == 0:
            self.db.rollback()
            current = self.db.get(models.Payment, payment_id)
            raise StateConflict(f"payment {payment_id} is {current.status}")
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        logger.info("Payment rejected paymentId=%s bookingId=%s adminId=%s", payment_id, booking_id, admin.user_id)
        return SettlementResult(outcome=SettlementOutcome.REJECTED, booking_id=booking_id, payment_id=payment_id)

    def _resolve_lost_transition(self, payment_id: int, booking_id: int) -> SettlementResult:
        current = self.db.get(models.Payment, payment_id)
        self.db.refresh(current)
        if current.status == PaymentStatus.VERIFIED.value:
            return SettlementResult(outcome=SettlementOutcome.ALREADY_SETTLED, booking_id=booking_id, payment_id=payment_id)
        raise StateConflict(f"payment {payment_id} is {current.status}")

    def _amount_matches(self, paid: Decimal, expected_full: Decimal, expected_deposit: Optional[Decimal]) -> bool:
        tolerance = self.config.amount_tolerance
        if abs(paid - expected_full) < tolerance:
            return True
        return expected_deposit is not None and abs(paid - expected_deposit) < tolerance

    def _verified_payment(self, booking_id: int, method: PaymentMethod) -> Optional[models.Payment]:
        return (
            self.db.query(models.Payment)
            .filter(models.Payment.booking_id == booking_id)
            .filter(models.Payment.method == method.value)
            .filter(models.Payment.status == PaymentStatus.VERIFIED.value)
            .first()
        )

    def _pending_payment(self, booking_id: int, method: PaymentMethod) -> Optional[models.Payment]:
        return (
            self.db.query(models.Payment)
            .filter(models.Payment.booking_id == booking_id)
            .filter(models.Payment.method == method.value)
            .filter(models.Payment.status == PaymentStatus.PENDING.value)
            .order_by(models.Payment.id.desc())
            .first()
        )

    def _transition(self, payment_id: int, expected: PaymentStatus, values: dict) -> int:
        return (
            self.db.query(models.Payment)
            .filter(models.Payment.id == payment_id)
            .filter(models.Payment.status == expected.value)
            .update(values, synchronize_session=False)
        )

    def _promote_booking(self, booking_id: int):
        promoted = (
            self.db.query(models.Booking)
            .filter(models.Booking.id == booking_id)
            .filter(models.Booking.status == BookingStatus.PENDING.value)
            .update({models.Booking.status: BookingStatus.CONFIRMED.value}, synchronize_session=False)
        )
        if promoted == 0:
            current = self.db.query(models.Booking.status).filter(models.Booking.id == booking_id).scalar()
            if current != BookingStatus.CONFIRMED.value:
                logger.warning("Payment verified but booking not promoted bookingId=%s status=%s", booking_id, current)

    async def _after_settlement(self, result: SettlementResult, reference: str, method: PaymentMethod):
        booking = self.db.get(models.Booking, result.booking_id)
        self.db.refresh(booking)
        package = self.db.get(models.Package, booking.package_id)

        async def record_activity():
            self.activity.record_event(
                booking.user_id,
                "payment_verified",
                {
                    "booking_id": booking.id,
                    "package_id": booking.package_id,
                    "method": method.value,
                    "reference": reference,
                    "amount": str(result.amount),
                },
            )

        async def send_receipt():
            if not booking.contact_email:
                logger.info("No contact email for receipt bookingId=%s", booking.id)
                return
            subject, html = payment_receipt_email(
                booking.reference, package.name if package else "", result.amount, reference, self.config.currency
            )
            await self.notifier.send_email([booking.contact_email], subject, html)

        await run_post_commit("activity", record_activity)
        await run_post_commit("payment_receipt", send_receipt)
