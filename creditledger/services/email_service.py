"""
Email Service

Best-effort delivery of rendered receipts through the email provider's HTTP API.
send() never raises: it reports success or failure and logs the detail.
"""
import httpx

from creditledger.config import settings
from creditledger.logging_config import get_logger


logger = get_logger(component="email")


class EmailSender:
    """Sends HTML email through a JSON HTTP API with a bounded timeout."""

    def __init__(
        self,
        api_url: str | None = None,
        api_key: str | None = None,
        sender: str | None = None,
        timeout: float = settings.EMAIL_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_url = api_url or settings.EMAIL_API_URL
        self.api_key = api_key or settings.EMAIL_API_KEY
        self.sender = sender or settings.EMAIL_FROM
        self.timeout = timeout
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.api_url)

    async def send(
        self,
        html: str,
        recipient: str,
        subject: str,
        tags: list[str] | None = None,
    ) -> bool:
        """
        Send one HTML email.

        Returns True if the provider accepted it, False otherwise.
        """
        if not self.configured:
            logger.warning("email_not_configured", subject=subject)
            return False

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        payload = {
            "from": self.sender,
            "to": [recipient],
            "subject": subject,
            "html": html,
            "tags": tags or [],
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.api_url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            logger.error("email_send_failed", subject=subject, error=str(e))
            return False

        if 200 <= response.status_code < 300:
            logger.info("email_sent", subject=subject, status_code=response.status_code)
            return True

        logger.error(
            "email_send_rejected",
            subject=subject,
            status_code=response.status_code,
        )
        return False


# Default sender instance
email_sender = EmailSender()
