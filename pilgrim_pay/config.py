from decimal import Decimal
from enum import Enum
from pydantic import AnyHttpUrl
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    db_url: str = "sqlite:///./pilgrim_pay.db"

    gateway_base_url: AnyHttpUrl = "http://mock-gateway:8001"
    gateway_secret_key: str = "change_secret"
    gateway_timeout_seconds: float = 10.0
    checkout_callback_url: Optional[AnyHttpUrl] = None
    checkout_cancel_url: str = "https://example.com/dashboard/payments"

    mail_base_url: AnyHttpUrl = "http://mock-mailer:8002"
    mail_api_key: Optional[str] = None
    mail_from: str = "Pilgrim Pay <payments@example.com>"
    mail_timeout_seconds: float = 10.0

    ops_bearer_token: Optional[str] = None

    max_retries: int = 2
    retry_backoff_seconds: float = 0.5

    otp_ttl_minutes: int = 15
    amount_tolerance: Decimal = Decimal("1")
    currency: str = "NGN"

settings = Settings()


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    GATEWAY = "gateway"
    BANK_TRANSFER = "bank_transfer"
    WALLET = "wallet"


class CommissionType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class WalletTransactionType(str, Enum):
    DEPOSIT = "deposit"
    DEDUCTION = "deduction"


class SettlementOutcome(str, Enum):
    SETTLED = "settled"
    ALREADY_SETTLED = "already_settled"
    IGNORED = "ignored"
    REJECTED = "rejected"


ADMIN_ROLES = {"admin", "super_admin"}

CHARGE_SUCCESS_EVENT = "charge.success"

ledger_sign_map = {
    WalletTransactionType.DEPOSIT: 1,
    WalletTransactionType.DEDUCTION: -1,
}
