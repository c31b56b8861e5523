"""Shared pytest configuration and fixtures for the relay test suite."""

import asyncio
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pytest

# Ensure the project root is in the path for imports
PROJECT_ROOT = Path(__file__).parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from camrelay.backend.directory import InMemoryDirectory  # noqa: E402
from camrelay.backend.tokens import TokenService  # noqa: E402
from camrelay.config import AuthSettings, RelayTimings, Settings  # noqa: E402
from camrelay.errors import SinkClosed  # noqa: E402
from camrelay.relay_manager import RelayManager  # noqa: E402

TEST_SECRET = "test-secret-with-enough-length-for-hs256"


# =============================================================================
# Test doubles
# =============================================================================

class FakeTransport:
    """Camera transport that records what the relay sends."""

    def __init__(self, *, fail_send: bool = False, close_delay: float = 0.0) -> None:
        self.sent: List[Dict[str, Any]] = []
        self.close_calls = 0
        self.fail_send = fail_send
        self.close_delay = close_delay

    async def send_json(self, message: Dict[str, Any]) -> None:
        if self.fail_send:
            raise ConnectionError("transport gone")
        self.sent.append(message)

    async def close(self) -> None:
        self.close_calls += 1
        if self.close_delay:
            await asyncio.sleep(self.close_delay)

    def commands(self, name: Optional[str] = None) -> List[Dict[str, Any]]:
        return [m for m in self.sent if m.get("type") == "cmd" and (name is None or m.get("cmd") == name)]

    def of_type(self, message_type: str) -> List[Dict[str, Any]]:
        return [m for m in self.sent if m.get("type") == message_type]


class FakeSink:
    """Viewer sink; can be told to fail or stall."""

    def __init__(self, *, fail: bool = False, delay: float = 0.0) -> None:
        self.frames: List[bytes] = []
        self.write_attempts = 0
        self.close_calls = 0
        self.fail = fail
        self.delay = delay

    async def write(self, payload: bytes) -> None:
        self.write_attempts += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail or self.close_calls:
            raise SinkClosed("viewer gone")
        self.frames.append(payload)

    async def close(self) -> None:
        self.close_calls += 1


class RecordingNotifier:
    """Notification sender that keeps messages instead of mailing them."""

    def __init__(self, *, succeed: bool = True) -> None:
        self.messages: List[Tuple[str, str, str]] = []
        self.succeed = succeed

    async def send(self, recipient: str, subject: str, body: str) -> bool:
        self.messages.append((recipient, subject, body))
        return self.succeed

    async def aclose(self) -> None:
        return None

    def last_code(self) -> str:
        body = self.messages[-1][2]
        return body.split("code is ", 1)[1].split(".", 1)[0]


# =============================================================================
# Shared Fixtures
# =============================================================================

@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        jwt_secret=TEST_SECRET,
        log_directory=tmp_path / "logs",
        timings=RelayTimings(
            heartbeat_interval=30.0,
            capture_timeout=1.0,
            command_timeout=1.0,
            subscriber_write_timeout=0.05,
            result_retention=5.0,
            close_timeout=0.1,
        ),
        auth=AuthSettings(session_ttl_seconds=60, otp_ttl_seconds=300),
    )


@pytest.fixture
def directory() -> InMemoryDirectory:
    return InMemoryDirectory()


@pytest.fixture
def tokens() -> TokenService:
    return TokenService(TEST_SECRET)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def manager(settings, directory, tokens, notifier) -> RelayManager:
    return RelayManager(settings=settings, directory=directory, notifier=notifier, tokens=tokens)


@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return PROJECT_ROOT
