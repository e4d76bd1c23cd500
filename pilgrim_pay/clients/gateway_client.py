from pydantic import ValidationError

from pilgrim_pay.config import Settings
from pilgrim_pay.contracts.contracts import (
    GatewayEnvelope,
    GatewayInitializeData,
    GatewayInitializeRequest,
    GatewayTransactionData,
)
from pilgrim_pay.errors import NotFound, UpstreamFailure
from pilgrim_pay.helpers import IntegrationClient
from pilgrim_pay.logging_config import get_logger

logger = get_logger(__name__)


class GatewayClient(IntegrationClient):
    """
    Client for the payment gateway's checkout contract (initialize + verify).
    """

    def __init__(self, config: Settings, **kwargs):
        kwargs.setdefault("max_retries", config.max_retries)
        kwargs.setdefault("retry_backoff_seconds", config.retry_backoff_seconds)
        super().__init__(
            base_url=str(config.gateway_base_url),
            timeout=config.gateway_timeout_seconds,
            headers={"Authorization": f"Bearer {config.gateway_secret_key}"},
            **kwargs,
        )

    async def initialize_transaction(self, request: GatewayInitializeRequest) -> GatewayInitializeData:
        resp = await self._request_with_retry(
            "POST", "/transaction/initialize", json=request.model_dump(exclude_none=True)
        )
        envelope = self._envelope(resp, "initialize")
        logger.info("Gateway transaction initialized reference=%s amount=%s", request.reference, request.amount)
        return self._parse(GatewayInitializeData, envelope, "initialize")

    async def verify_transaction(self, reference: str) -> GatewayTransactionData:
        resp = await self._request_with_retry("GET", f"/transaction/verify/{reference}")
        envelope = self._envelope(resp, "verify")
        return self._parse(GatewayTransactionData, envelope, "verify")

    def _envelope(self, resp, operation: str) -> GatewayEnvelope:
        if resp.status_code >= 500 or resp.status_code == 429:
            raise UpstreamFailure(f"gateway {operation} failed with status {resp.status_code}")
        try:
            envelope = GatewayEnvelope(**resp.json())
        except (ValueError, ValidationError) as exc:
            raise UpstreamFailure(f"gateway {operation} returned an unreadable response") from exc
        if resp.status_code == 404:
            raise NotFound(envelope.message or "gateway transaction not found")
        if resp.status_code >= 400 or not envelope.status or envelope.data is None:
            logger.warning(
                "Gateway %s rejected status=%s message=%s", operation, resp.status_code, envelope.message
            )
            raise UpstreamFailure(envelope.message or f"gateway {operation} request failed")
        return envelope

    @staticmethod
    def _parse(model, envelope: GatewayEnvelope, operation: str):
        try:
            return model(**envelope.data)
        except ValidationError as exc:
            raise UpstreamFailure(f"gateway {operation} returned an incomplete response") from exc
