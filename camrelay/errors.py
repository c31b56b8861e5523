"""Exception taxonomy shared by the relay core and its front door."""
from __future__ import annotations

from typing import Optional


class RelayError(RuntimeError):
    """Base class for relay failures surfaced to callers."""

    def __init__(self, user_message: str, *, log_message: Optional[str] = None) -> None:
        super().__init__(log_message or user_message)
        self.user_message = user_message


class DeviceOffline(RelayError):
    """No registered connection for the device."""

    def __init__(self, device_id: str) -> None:
        super().__init__("camera not connected", log_message=f"device {device_id} is offline")
        self.device_id = device_id


class CommandTimeout(RelayError):
    """A command deadline elapsed before the device answered."""


class TransportFailure(RelayError):
    """The device connection dropped while a command was in flight."""


class UnknownCommand(RelayError, LookupError):
    """No pending or retained command matches the correlation token."""


class SessionNotFound(RelayError, LookupError):
    """No unexpired session is stored for the device."""

    def __init__(self, device_id: str) -> None:
        super().__init__("no session stored", log_message=f"no active session for {device_id}")
        self.device_id = device_id


class SinkClosed(RelayError):
    """A viewer sink can no longer accept writes."""


class AccessDenied(RelayError):
    """Base class for credential failures; subclasses are never collapsed."""

    reason: str = "access_denied"


class Unauthenticated(AccessDenied):
    reason = "unauthenticated"


class InvalidCredential(AccessDenied):
    reason = "invalid_credential"


class CredentialExpired(AccessDenied):
    reason = "expired"


class CredentialRevoked(AccessDenied):
    reason = "revoked"


class Forbidden(AccessDenied):
    """Valid session, but for a different device."""

    reason = "forbidden"


class OtpError(RelayError):
    """Base class for OTP challenge failures."""

    reason: str = "otp_error"


class OtpMissing(OtpError):
    reason = "no expected otp"


class OtpExpired(OtpError):
    reason = "otp expired"


class OtpMismatch(OtpError):
    reason = "invalid otp"


__all__ = [
    "AccessDenied",
    "CommandTimeout",
    "CredentialExpired",
    "CredentialRevoked",
    "DeviceOffline",
    "Forbidden",
    "InvalidCredential",
    "OtpError",
    "OtpExpired",
    "OtpMismatch",
    "OtpMissing",
    "RelayError",
    "SessionNotFound",
    "SinkClosed",
    "TransportFailure",
    "Unauthenticated",
    "UnknownCommand",
]
