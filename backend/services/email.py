"""
Outbound email.

SendGridEmailSender posts to the SendGrid v3 Mail Send API with httpx.
LoggingEmailSender is used when no API key is configured: it records the
message in the structured log (and in memory, for tests) instead of sending.
"""

from abc import ABC, abstractmethod
from typing import Optional

import httpx
import structlog
from pydantic import BaseModel

logger = structlog.get_logger().bind(component="email")


SENDGRID_SEND_URL = "https://api.sendgrid.com/v3/mail/send"


class EmailMessage(BaseModel):
    to: str
    subject: str
    html: str
    text: Optional[str] = None


class EmailDeliveryError(Exception):
    pass


class IEmailSender(ABC):

    @abstractmethod
    async def send(self, message: EmailMessage) -> Optional[str]:
        """Send one message; returns the provider message id when known"""
        pass

    async def close(self) -> None:
        pass


class SendGridEmailSender(IEmailSender):

    def __init__(self, api_key: str, from_email: str, timeout: float = 10.0):
        self.from_email = from_email
        self._client = httpx.AsyncClient(
            timeout=timeout,
            headers={"Authorization": f"Bearer {api_key}"},
        )

    async def send(self, message: EmailMessage) -> Optional[str]:
        content = [{"type": "text/html", "value": message.html}]
        if message.text:
            content.insert(0, {"type": "text/plain", "value": message.text})
        try:
            response = await self._client.post(SENDGRID_SEND_URL, json={
                "personalizations": [{"to": [{"email": message.to}]}],
                "from": {"email": self.from_email},
                "subject": message.subject,
                "content": content,
            })
        except httpx.HTTPError as e:
            raise EmailDeliveryError(f"SendGrid request failed: {e}")
        if response.status_code >= 400:
            raise EmailDeliveryError(f"SendGrid rejected message: {response.status_code} {response.text[:200]}")
        message_id = response.headers.get("X-Message-Id")
        logger.info("email_sent", to=message.to, subject=message.subject, message_id=message_id)
        return message_id

    async def close(self) -> None:
        await self._client.aclose()


class LoggingEmailSender(IEmailSender):

    def __init__(self):
        self.outbox: list[EmailMessage] = []

    async def send(self, message: EmailMessage) -> Optional[str]:
        self.outbox.append(message)
        logger.info("email_logged", to=message.to, subject=message.subject)
        return None


def create_email_sender(api_key: Optional[str], from_email: str) -> IEmailSender:
    if api_key:
        return SendGridEmailSender(api_key, from_email)
    logger.warning("email_sender_selected", sender="logging", reason="sendgrid_not_configured")
    return LoggingEmailSender()
