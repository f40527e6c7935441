"""Outbound mail transports for alert notifications."""

import asyncio
import logging
import smtplib
from email.message import EmailMessage
from typing import Protocol

from pydantic import BaseModel

from ..core.config import SmtpConfig
from ..core.errors import DeliveryFailure

logger = logging.getLogger(__name__)


class OutboundMessage(BaseModel):
    """One notification addressed to one recipient."""

    to: str
    subject: str
    text: str
    html: str | None = None


class MailTransport(Protocol):
    """Delivers one message. Raises DeliveryFailure when it cannot."""

    async def send(self, message: OutboundMessage) -> None: ...


class LogTransport:
    """Transport used when no mail relay is configured: logs the alert."""

    async def send(self, message: OutboundMessage) -> None:
        logger.warning("ALERT for %s: %s", message.to, message.subject)


class SmtpTransport:
    """Send through an SMTP relay; each send is bounded by a timeout."""

    def __init__(self, config: SmtpConfig):
        self.config = config

    def _build(self, message: OutboundMessage) -> EmailMessage:
        email = EmailMessage()
        email["From"] = self.config.sender
        email["To"] = message.to
        email["Subject"] = message.subject
        email.set_content(message.text)
        if message.html:
            email.add_alternative(message.html, subtype="html")
        return email

    def _send_sync(self, email: EmailMessage):
        with smtplib.SMTP(
            self.config.host, self.config.port, timeout=self.config.timeout_seconds
        ) as server:
            if self.config.starttls:
                server.starttls()
            if self.config.username and self.config.password:
                server.login(
                    self.config.username, self.config.password.get_secret_value()
                )
            server.send_message(email)

    async def send(self, message: OutboundMessage) -> None:
        email = self._build(message)
        try:
            await asyncio.wait_for(
                asyncio.to_thread(self._send_sync, email),
                timeout=self.config.timeout_seconds,
            )
        except TimeoutError as e:
            raise DeliveryFailure(f"SMTP send to {message.to} timed out") from e
        except (smtplib.SMTPException, OSError) as e:
            raise DeliveryFailure(f"SMTP send to {message.to} failed: {e}") from e
        logger.info("Alert e-mail sent to %s", message.to)
