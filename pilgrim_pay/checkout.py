import time
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy.orm import Session

from pilgrim_pay import models
from pilgrim_pay.clients.gateway_client import GatewayClient
from pilgrim_pay.config import BookingStatus, Settings
from pilgrim_pay.contracts.contracts import GatewayInitializeRequest
from pilgrim_pay.errors import InvalidPackage, NotFound, NotPayable
from pilgrim_pay.helpers import to_minor_units, validate_email
from pilgrim_pay.logging_config import get_logger
from pilgrim_pay.pricing import resolve_price

logger = get_logger(__name__)


@dataclass(frozen=True)
class CheckoutResult:
    redirect_url: str
    gateway_reference: str
    amount: Decimal


def checkout_reference(booking_reference: str) -> str:
    # Microsecond suffix keeps repeated attempts for one booking distinct at the gateway.
    return f"{booking_reference}-{time.time_ns() // 1000}"


def load_pricing_inputs(db: Session, booking: models.Booking):
    package = db.get(models.Package, booking.package_id) if booking.package_id is not None else None
    if package is None:
        raise InvalidPackage(f"package for booking {booking.id} not found")
    agent = db.get(models.Agent, booking.agent_id) if booking.agent_id is not None else None
    return package, agent


class CheckoutInitiator:
    def __init__(self, db: Session, gateway: GatewayClient, config: Settings):
        self.db = db
        self.gateway = gateway
        self.config = config

    async def initiate(self, booking_id: int, payer_email: str) -> CheckoutResult:
        email = validate_email(payer_email)
        booking = self.db.get(models.Booking, booking_id)
        if booking is None:
            raise NotFound(f"booking {booking_id} not found")
        if booking.status in (BookingStatus.CONFIRMED.value, BookingStatus.CANCELLED.value):
            raise NotPayable(f"booking {booking_id} is {booking.status}")

        package, agent = load_pricing_inputs(self.db, booking)
        amount = resolve_price(package, agent)
        reference = checkout_reference(booking.reference)
        request = GatewayInitializeRequest.for_booking(
            email=email,
            amount_minor=to_minor_units(amount),
            reference=reference,
            booking_id=booking.id,
            cancel_action=self.config.checkout_cancel_url,
            currency=self.config.currency,
            callback_url=str(self.config.checkout_callback_url) if self.config.checkout_callback_url else None,
        )
        data = await self.gateway.initialize_transaction(request)
        logger.info(
            "Checkout initiated bookingId=%s reference=%s amount=%s agentId=%s",
            booking.id,
            data.reference,
            amount,
            booking.agent_id,
        )
        return CheckoutResult(redirect_url=data.authorization_url, gateway_reference=data.reference, amount=amount)
