"""Tests for the reference camera client's message handling."""

import base64
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from camrelay.device_client import DeviceClient

FRAME = b"\xff\xd8jpeg"


def _client(*, correlation=True, frame=FRAME, command_handler=None):
    client = DeviceClient(
        "ws://relay.test/ws",
        "cam1",
        AsyncMock(return_value=frame),
        correlation=correlation,
        command_handler=command_handler,
    )
    conn = MagicMock()
    conn.send = AsyncMock()
    client._conn = conn
    return client, conn


def _sent_json(conn):
    return [json.loads(call.args[0]) for call in conn.send.await_args_list if isinstance(call.args[0], str)]


class TestHandshake:

    def test_hello_announces_correlation(self):
        client, _ = _client()

        assert client._hello() == {"type": "hello", "deviceId": "cam1", "role": "camera", "features": ["correlation"]}

    def test_legacy_hello(self):
        client, _ = _client(correlation=False)

        assert "features" not in client._hello()


class TestHandleMessage:

    @pytest.mark.asyncio
    async def test_ping_answered(self):
        client, conn = _client()

        await client.handle_message({"type": "ping"})

        assert _sent_json(conn) == [{"type": "pong"}]

    @pytest.mark.asyncio
    async def test_tokenized_capture(self):
        client, conn = _client()

        await client.handle_message({"type": "cmd", "cmd": "capture", "id": "7-ab"})

        (response,) = _sent_json(conn)
        assert response["id"] == "7-ab"
        assert base64.b64decode(response["data"]) == FRAME

    @pytest.mark.asyncio
    async def test_capture_without_frame_reports_error(self):
        client, conn = _client(frame=None)

        await client.handle_message({"type": "cmd", "cmd": "capture", "id": "7-ab"})

        assert _sent_json(conn) == [{"type": "response", "id": "7-ab", "error": "no frame"}]

    @pytest.mark.asyncio
    async def test_degraded_capture_sends_binary(self):
        client, conn = _client(correlation=False)

        await client.handle_message({"type": "cmd", "cmd": "capture"})

        conn.send.assert_awaited_once_with(FRAME)

    @pytest.mark.asyncio
    async def test_auth_grant_stored_and_acknowledged(self):
        client, conn = _client()
        grant = {"type": "auth_grant", "deviceId": "cam1", "token": "t", "ttl_ms": 1000}

        await client.handle_message(grant)

        assert client.auth_grant == grant
        assert _sent_json(conn) == [{"type": "auth_grant", "status": "ok"}]

    @pytest.mark.asyncio
    async def test_other_commands_go_to_handler(self):
        handler = AsyncMock()
        client, _ = _client(command_handler=handler)

        await client.handle_message({"type": "cmd", "cmd": "start"})

        handler.assert_awaited_once_with({"type": "cmd", "cmd": "start"})
