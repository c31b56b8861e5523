"""Shared relay state definitions."""
from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Dict, Optional, Protocol


class DeviceRole(str, enum.Enum):
    """Roles a WebSocket peer announces in its ``hello``."""

    CAMERA = "camera"
    VIEWER = "viewer"


class CommandState(str, enum.Enum):
    """
    Lifecycle of a pending command:

    CREATED   -> FULFILLED  device answered in time
              -> EXPIRED    deadline elapsed first
              -> FAILED     transport torn down or send failed

    Terminal states are final; only the first transition is applied.
    """
    CREATED = "created"
    FULFILLED = "fulfilled"
    EXPIRED = "expired"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self is not CommandState.CREATED


class DeviceTransport(Protocol):
    """Bidirectional device connection as seen by the core."""

    def send_json(self, message: Dict[str, Any]) -> Awaitable[None]: ...

    def close(self) -> Awaitable[None]: ...


class Sink(Protocol):
    """One viewer's sequential byte destination."""

    def write(self, payload: bytes) -> Awaitable[None]: ...

    def close(self) -> Awaitable[None]: ...


@dataclass(frozen=True)
class MediaFrame:
    """Single media unit pushed by a camera."""

    device_id: str
    payload: bytes
    sequence: int
    received_at: float = field(default_factory=time.time)

    def __len__(self) -> int:
        return len(self.payload)


@dataclass(frozen=True)
class Session:
    """Validated viewer session."""

    subject: str
    issued_at: float
    expires_at: float
    token_id: str
    email: Optional[str] = None

    @property
    def ttl(self) -> float:
        return max(0.0, self.expires_at - time.time())


__all__ = [
    "CommandState",
    "DeviceRole",
    "DeviceTransport",
    "MediaFrame",
    "Session",
    "Sink",
]
