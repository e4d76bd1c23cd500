from decimal import Decimal
from pydantic import BaseModel, Field
from typing import Optional

class CheckoutRequest(BaseModel):
    bookingId: int
    payerEmail: str

class CheckoutResponse(BaseModel):
    redirectUrl: str
    gatewayReference: str
    amount: Decimal

class VerifyReferenceRequest(BaseModel):
    reference: str = Field(..., min_length=1)

class SettlementResponse(BaseModel):
    status: str
    bookingId: Optional[int] = None

class TopUpRequest(BaseModel):
    agentId: int
    amount: Decimal

class TopUpVerifyRequest(BaseModel):
    agentId: int
    code: str

class MessageResponse(BaseModel):
    message: str

class TopUpVerifyResponse(BaseModel):
    message: str
    newBalance: Decimal

class WalletTransactionView(BaseModel):
    id: int
    agentId: int
    type: str
    amount: Decimal
    reference: Optional[str] = None
    description: Optional[str] = None
    createdAt: Optional[str] = None

class WalletView(BaseModel):
    agentId: int
    balance: Decimal
    transactions: list[WalletTransactionView]
