from typing import Any, Optional

from pydantic import BaseModel, Field


class GatewayInitializeRequest(BaseModel):
    email: str
    amount: int  # minor units
    reference: str
    currency: str
    callback_url: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def for_booking(
        cls,
        email: str,
        amount_minor: int,
        reference: str,
        booking_id: int,
        cancel_action: str,
        currency: str,
        callback_url: Optional[str] = None,
    ) -> "GatewayInitializeRequest":
        return cls(
            email=email,
            amount=amount_minor,
            reference=reference,
            currency=currency,
            callback_url=callback_url,
            metadata={"booking_id": booking_id, "cancel_action": cancel_action},
        )


class GatewayInitializeData(BaseModel):
    authorization_url: str
    access_code: Optional[str] = None
    reference: str


class GatewayTransactionData(BaseModel):
    reference: str
    amount: int  # minor units
    # Webhook payloads may omit it; verify responses always carry it.
    status: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None

    @property
    def booking_id(self) -> Optional[int]:
        raw = (self.metadata or {}).get("booking_id")
        try:
            return int(raw)
        except (TypeError, ValueError):
            return None


class GatewayEnvelope(BaseModel):
    status: bool
    message: Optional[str] = None
    data: Optional[dict[str, Any]] = None


class MailMessage(BaseModel):
    sender: str = Field(..., serialization_alias="from")
    to: list[str]
    subject: str
    html: str
