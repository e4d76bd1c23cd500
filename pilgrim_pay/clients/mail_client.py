from pilgrim_pay.config import Settings
from pilgrim_pay.contracts.contracts import MailMessage
from pilgrim_pay.errors import UpstreamFailure
from pilgrim_pay.helpers import IntegrationClient
from pilgrim_pay.logging_config import get_logger

logger = get_logger(__name__)


class MailClient(IntegrationClient):
    """
    Transactional email over an HTTP mail API (``POST /emails``).

    Without an API key configured, sends are logged and skipped so local
    environments work without a mail provider.
    """

    def __init__(self, config: Settings, **kwargs):
        self.api_key = config.mail_api_key
        self.sender = config.mail_from
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        kwargs.setdefault("max_retries", config.max_retries)
        kwargs.setdefault("retry_backoff_seconds", config.retry_backoff_seconds)
        super().__init__(
            base_url=str(config.mail_base_url),
            timeout=config.mail_timeout_seconds,
            headers=headers,
            **kwargs,
        )

    async def send_email(self, to: list[str], subject: str, html: str) -> None:
        recipients = sorted({address for address in to if address})
        if not recipients:
            raise UpstreamFailure("no email recipients")
        if not self.api_key:
            logger.warning("Mail API key not configured; simulating send subject=%r to=%s", subject, recipients)
            return
        message = MailMessage(sender=self.sender, to=recipients, subject=subject, html=html)
        resp = await self._request_with_retry("POST", "/emails", json=message.model_dump(by_alias=True))
        if resp.status_code >= 300:
            logger.warning("Mail dispatch failed status=%s subject=%r", resp.status_code, subject)
            raise UpstreamFailure(f"mail dispatch failed with status {resp.status_code}")
        logger.info("Mail dispatched subject=%r recipients=%s", subject, len(recipients))
