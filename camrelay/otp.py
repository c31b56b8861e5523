"""Email OTP challenge that ends in a device-scoped session credential."""
from __future__ import annotations

import hmac
import logging
import secrets
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from .backend.directory import DirectoryKeys, DirectoryStore
from .backend.notifier import NotificationSender
from .backend.tokens import TokenService
from .config import AuthSettings
from .errors import OtpExpired, OtpMismatch, OtpMissing, RelayError

logger = logging.getLogger(__name__)

GrantHandler = Callable[[str], Awaitable[bool]]


class OtpService:
    """Register devices, mail OTP codes and exchange them for sessions."""

    def __init__(
        self,
        directory: DirectoryStore,
        notifier: NotificationSender,
        tokens: TokenService,
        settings: AuthSettings,
        *,
        on_grant: Optional[GrantHandler] = None,
    ) -> None:
        self._directory = directory
        self._notifier = notifier
        self._tokens = tokens
        self._settings = settings
        self._on_grant = on_grant

    def set_grant_handler(self, handler: Optional[GrantHandler]) -> None:
        self._on_grant = handler

    async def register_device(self, device_id: str, email: str, ssid: Optional[str] = None) -> None:
        await self._directory.update(
            DirectoryKeys.device_config(device_id),
            {"email": email, "ssid": ssid, "registeredAt": time.time()},
        )
        logger.info("Registered device %s for %s", device_id, email)

    async def request_otp(self, device_id: str, email: str) -> bool:
        code = self._generate_code()
        expires_at = time.time() + self._settings.otp_ttl_seconds
        await self._directory.set(
            DirectoryKeys.otp(device_id),
            {"code": code, "email": email, "expiresAt": expires_at, "status": "processing"},
        )
        minutes = max(1, self._settings.otp_ttl_seconds // 60)
        sent = await self._notifier.send(
            email,
            f"Your OTP for device {device_id}",
            f"Your OTP code is {code}. It is valid for {minutes} minutes.",
        )
        await self._directory.update(DirectoryKeys.otp(device_id), {"status": "sent" if sent else "error"})
        if not sent:
            logger.error("Failed to send OTP to %s for %s", email, device_id)
            raise RelayError("failed to send otp")
        logger.info("Sent OTP to %s for %s", email, device_id)
        return True

    async def verify_otp(self, device_id: str, email: str, code: str) -> Dict[str, Any]:
        """Check ``code`` and issue a session; returns the session record incl. token."""
        record = await self._directory.get(DirectoryKeys.otp(device_id))
        if not isinstance(record, dict) or not record.get("code") or record.get("email") != email:
            raise OtpMissing(OtpMissing.reason)
        if time.time() > float(record.get("expiresAt", 0)):
            await self._directory.delete(DirectoryKeys.otp(device_id))
            raise OtpExpired(OtpExpired.reason)
        if not hmac.compare_digest(str(code), str(record["code"])):
            raise OtpMismatch(OtpMismatch.reason)

        ttl = self._settings.session_ttl_seconds
        token = self._tokens.sign({"sub": device_id, "email": email}, ttl)
        session = {"token": token, "email": email, "expiresAt": time.time() + ttl}
        await self._directory.set(DirectoryKeys.session(device_id), session)
        await self._directory.set(DirectoryKeys.verified(device_id), True)
        await self._directory.delete(DirectoryKeys.otp(device_id))
        logger.info("Session created for %s (%s)", device_id, email)

        if self._on_grant is not None:
            try:
                pushed = await self._on_grant(device_id)
            except Exception as e:
                logger.warning("Could not push auth grant to %s: %s", device_id, e)
                pushed = False
            if not pushed:
                logger.info("Camera %s not connected; session stored for later", device_id)
        return session

    def _generate_code(self) -> str:
        digits = self._settings.otp_digits
        low = 10 ** (digits - 1)
        return str(low + secrets.randbelow(9 * low))


__all__ = ["GrantHandler", "OtpService"]
