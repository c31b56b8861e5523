"""Reference camera client that speaks the relay's device protocol."""
from __future__ import annotations

import asyncio
import base64
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Optional

import websockets

logger = logging.getLogger(__name__)

FrameSupplier = Callable[[], Awaitable[Optional[bytes]]]
CommandHandler = Callable[[dict[str, Any]], Awaitable[None]]


class DeviceClient:
    """Maintains the camera's single websocket connection to the relay."""

    def __init__(
        self,
        relay_url: str,
        device_id: str,
        frame_supplier: FrameSupplier,
        *,
        correlation: bool = True,
        command_handler: Optional[CommandHandler] = None,
    ) -> None:
        self.relay_url = relay_url
        self.device_id = device_id
        self._frame_supplier = frame_supplier
        self._correlation = correlation
        self._command_handler = command_handler
        self._conn: Optional[Any] = None
        self._listener_task: Optional[asyncio.Task[None]] = None
        self._stop_event = asyncio.Event()
        self.streaming = False
        self.auth_grant: Optional[dict[str, Any]] = None

    @property
    def connected(self) -> bool:
        return self._conn is not None

    async def connect(self) -> None:
        try:
            await self.disconnect()
            logger.info("Connecting to relay websocket %s", self.relay_url)
            self._stop_event.clear()
            self._conn = await websockets.connect(self.relay_url, ping_interval=None, ping_timeout=None)
            await self.send(self._hello())
            self._listener_task = asyncio.create_task(self._listen(), name="relay-device-listener")
        except Exception as e:
            logger.error("Failed to connect to relay websocket: %s", e)
            raise

    async def disconnect(self) -> None:
        self._stop_event.set()
        if self._listener_task:
            self._listener_task.cancel()
            try:
                await self._listener_task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning("Error during listener task cleanup: %s", e)
        self._listener_task = None
        if self._conn:
            try:
                await self._conn.close()
            except Exception as e:
                logger.warning("Error closing websocket connection: %s", e)
            self._conn = None

    async def wait_closed(self) -> None:
        await self._stop_event.wait()

    async def send(self, message: dict[str, Any]) -> None:
        if not self._conn:
            logger.warning("Cannot send message - relay websocket not connected")
            return
        try:
            await self._conn.send(json.dumps(message))
        except websockets.ConnectionClosed:
            logger.warning("Cannot send message - websocket connection closed")

    async def send_frame(self, frame: bytes) -> bool:
        if not self._conn:
            return False
        try:
            await self._conn.send(frame)
            return True
        except websockets.ConnectionClosed:
            logger.warning("Cannot send frame - websocket connection closed")
            return False

    async def stream(self, fps: float) -> None:
        """Push frames at ``fps`` until disconnected."""
        period = 1.0 / max(fps, 0.1)
        self.streaming = True
        while not self._stop_event.is_set():
            frame = await self._frame_supplier()
            if frame and not await self.send_frame(frame):
                break
            await asyncio.sleep(period)
        self.streaming = False

    async def handle_message(self, payload: dict[str, Any]) -> None:
        message_type = payload.get("type")
        if message_type == "ping":
            await self.send({"type": "pong"})
            return

        if message_type == "auth_grant":
            self.auth_grant = payload
            logger.info("Received auth_grant (ttl=%sms)", payload.get("ttl_ms"))
            await self.send({"type": "auth_grant", "status": "ok"})
            return

        if message_type == "cmd":
            await self._handle_command(payload)
            return

        logger.debug("Ignoring relay message %r", message_type)

    async def _handle_command(self, payload: dict[str, Any]) -> None:
        command = payload.get("cmd")
        if command == "capture":
            frame = await self._frame_supplier()
            token = payload.get("id")
            if token and self._correlation:
                if frame is None:
                    await self.send({"type": "response", "id": token, "error": "no frame"})
                else:
                    await self.send({"type": "response", "id": token, "data": base64.b64encode(frame).decode("ascii")})
            elif frame is not None:
                await self.send_frame(frame)
            return

        if self._command_handler:
            try:
                await self._command_handler(payload)
            except Exception as e:
                logger.exception("Error in command handler: %s", e)
        else:
            logger.info("Unhandled command %r", command)

    def _hello(self) -> dict[str, Any]:
        hello: dict[str, Any] = {"type": "hello", "deviceId": self.device_id, "role": "camera"}
        if self._correlation:
            hello["features"] = ["correlation"]
        return hello

    async def _listen(self) -> None:
        assert self._conn is not None
        try:
            async for message in self._conn:
                if isinstance(message, bytes):
                    continue
                try:
                    payload = json.loads(message)
                except json.JSONDecodeError:
                    logger.warning("Invalid JSON from relay: %s", message)
                    continue
                try:
                    await self.handle_message(payload)
                except Exception as e:
                    logger.exception("Error in websocket message handler: %s", e)
        except asyncio.CancelledError:  # cooperative cancel
            raise
        except websockets.ConnectionClosedOK:
            logger.info("Relay websocket closed cleanly")
        except websockets.ConnectionClosedError as exc:
            logger.warning("Relay websocket closed: %s", exc)
        finally:
            self._stop_event.set()
            self._listener_task = None
            if self._conn:
                await self._conn.close()
                self._conn = None


__all__ = ["CommandHandler", "DeviceClient", "FrameSupplier"]
