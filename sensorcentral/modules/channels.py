"""Delivery channels for notifications: Pushover and email."""

import asyncio
import logging
import smtplib
from email.message import EmailMessage
from email.utils import formataddr

import aiohttp

from sensorcentral.config import SmtpConfig
from sensorcentral.hub.models import Notifier

logger = logging.getLogger(__name__)


class PushoverChannel:
    """Sends a message through the Pushover messages API."""

    def __init__(self, api_url: str):
        self.api_url = api_url

    async def send(self, notifier: Notifier, title: str, message: str):
        if not notifier.pushover_user_key or not notifier.pushover_app_token:
            raise ValueError(f"Notifier {notifier.id} has no Pushover user key/app token")
        payload = {
            "token": notifier.pushover_app_token,
            "user": notifier.pushover_user_key,
            "title": title,
            "message": message,
        }
        try:
            async with (
                aiohttp.ClientSession() as session,
                session.post(self.api_url, data=payload, timeout=aiohttp.ClientTimeout(total=10)) as resp,
            ):
                if resp.status != 200:
                    body = await resp.text()
                    raise RuntimeError(f"Pushover API returned {resp.status}: {body[:200]}")
        except aiohttp.ClientError as e:
            raise RuntimeError(f"Pushover request failed: {e}") from e
        logger.debug("Pushover message sent for notifier %s", notifier.id)


class EmailChannel:
    """Sends plain-text email over SMTP. The blocking send runs in a worker thread."""

    def __init__(self, smtp: SmtpConfig, app_name: str, override: str | None = None):
        self.smtp = smtp
        self.app_name = app_name
        self.override = override

    def recipient(self, notifier: Notifier) -> str | None:
        return self.override or notifier.email

    async def send(self, notifier: Notifier, title: str, message: str):
        to = self.recipient(notifier)
        if not to:
            raise ValueError(f"Notifier {notifier.id} has no email address")
        if self.override:
            logger.warning("NOTIFICATIONS_EMAIL_OVERRIDE is set, sending to %s", self.override)
        msg = EmailMessage()
        msg["Subject"] = title
        msg["From"] = formataddr((self.app_name, self.smtp.sender))
        msg["To"] = to
        msg.set_content(message)
        await asyncio.to_thread(self._deliver, msg)
        logger.debug("Email sent to %s for notifier %s", to, notifier.id)

    def _deliver(self, msg: EmailMessage):
        with smtplib.SMTP(self.smtp.host, self.smtp.port, timeout=10) as client:
            if self.smtp.use_tls:
                client.starttls()
            if self.smtp.username:
                client.login(self.smtp.username, self.smtp.password)
            client.send_message(msg)
