"""Notification senders for OTP mail."""
from __future__ import annotations

import logging
from typing import Protocol

import httpx

from ..config import Settings

logger = logging.getLogger(__name__)


class NotificationSender(Protocol):
    async def send(self, recipient: str, subject: str, body: str) -> bool: ...

    async def aclose(self) -> None: ...


class SendGridNotifier:
    """Thin wrapper around the SendGrid v3 mail API."""

    def __init__(self, settings: Settings, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.settings = settings
        self._client = httpx.AsyncClient(
            base_url=self.settings.sendgrid_api_url,
            timeout=15.0,
            headers={"Authorization": f"Bearer {self.settings.sendgrid_api_key}"},
            transport=transport,
        )

    async def send(self, recipient: str, subject: str, body: str) -> bool:
        payload = {
            "personalizations": [{"to": [{"email": recipient}]}],
            "from": {"email": self.settings.from_email},
            "subject": subject,
            "content": [{"type": "text/plain", "value": body}],
        }
        try:
            response = await self._client.post("/v3/mail/send", json=payload)
            response.raise_for_status()
            logger.info("notifier.send: mail accepted for %s", recipient)
            return True
        except httpx.TimeoutException:
            logger.error("notifier.send: request timeout")
            return False
        except httpx.NetworkError as e:
            logger.error("notifier.send: network error - %s", e)
            return False
        except httpx.HTTPStatusError as e:
            logger.error("notifier.send: HTTP %d - %s", e.response.status_code, e.response.text)
            return False

    async def aclose(self) -> None:
        try:
            await self._client.aclose()
        except Exception as e:
            logger.warning("Error closing HTTP client: %s", e)


class LogNotifier:
    """Development sender: writes the message to the log instead of mailing it."""

    async def send(self, recipient: str, subject: str, body: str) -> bool:
        logger.warning("notifier.send (log only) to=%s subject=%r body=%r", recipient, subject, body)
        return True

    async def aclose(self) -> None:
        return None


def build_notifier(settings: Settings) -> NotificationSender:
    if settings.sendgrid_api_key:
        return SendGridNotifier(settings)
    logger.warning("SENDGRID_API_KEY not set - OTP codes will only be logged")
    return LogNotifier()


__all__ = ["LogNotifier", "NotificationSender", "SendGridNotifier", "build_notifier"]
