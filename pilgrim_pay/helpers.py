import asyncio
import re
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

import httpx

from pilgrim_pay.config import settings
from pilgrim_pay.errors import UpstreamFailure, ValidationFailure
from pilgrim_pay.logging_config import get_logger
from pilgrim_pay.models import WalletTransaction

logger = get_logger(__name__)

CENT = Decimal("0.01")
MINOR_UNITS_PER_MAJOR = 100

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def to_decimal(value) -> Decimal:
    if value is None:
        raise ValidationFailure("amount is required")
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationFailure(f"invalid amount: {value!r}") from exc


def quantize_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal) -> int:
    """
    Convert a major-unit amount to integer minor units (kobo), rounding half up.
    """
    return int((to_decimal(amount) * MINOR_UNITS_PER_MAJOR).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount_minor: int) -> Decimal:
    return quantize_money(Decimal(int(amount_minor)) / MINOR_UNITS_PER_MAJOR)


def require_positive(amount, field: str = "amount") -> Decimal:
    value = to_decimal(amount)
    if not value.is_finite() or value <= 0:
        raise ValidationFailure(f"{field} must be greater than zero")
    return quantize_money(value)


def validate_email(email: str) -> str:
    if not email or not _EMAIL_RE.match(email.strip()):
        raise ValidationFailure("invalid email address")
    return email.strip()


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def serialize_wallet_transaction(record: WalletTransaction) -> dict:
    return {
        "id": record.id,
        "agentId": record.agent_id,
        "type": record.type,
        "amount": str(record.amount),
        "reference": record.reference,
        "description": record.description,
        "createdAt": record.created_at.isoformat() if record.created_at else None,
    }


class IntegrationClient:
    """
    Base for outbound HTTP integrations: bounded timeout, bounded retries on 429/5xx.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float,
        headers: dict | None = None,
        max_retries: int | None = None,
        retry_backoff_seconds: float | None = None,
    ):
        self.client = httpx.AsyncClient(base_url=base_url, timeout=timeout, headers=headers or {})
        self.max_retries = max_retries if max_retries is not None else settings.max_retries
        self.retry_backoff_seconds = retry_backoff_seconds if retry_backoff_seconds is not None else settings.retry_backoff_seconds

    async def aclose(self):
        await self.client.aclose()

    async def _request_with_retry(self, method: str, url: str, json: dict | None = None) -> httpx.Response:
        retries = 0
        backoff = self.retry_backoff_seconds
        while True:
            try:
                response = await self.client.request(method, url, json=json)
            except httpx.RequestError as exc:
                # Timeouts and network/DNS errors surface as a retryable upstream failure.
                logger.warning("Upstream request failed method=%s url=%s error=%s", method, url, exc)
                raise UpstreamFailure(f"upstream request error: {exc}") from exc
            if response.status_code == 429 or response.status_code >= 500:
                if retries >= self.max_retries:
                    return response
                retry_after = response.headers.get("Retry-After")
                wait = float(retry_after) if retry_after and response.status_code == 429 else backoff
                logger.info(
                    "Retrying upstream request method=%s url=%s status=%s attempt=%s wait=%s",
                    method,
                    url,
                    response.status_code,
                    retries + 1,
                    wait,
                )
                await asyncio.sleep(wait)
                retries += 1
                backoff *= 2
                continue
            return response
