"""Adapters between Starlette WebSockets / HTTP streams and the relay core."""
from __future__ import annotations

import asyncio
import json
import logging
from asyncio import QueueEmpty
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import WebSocket
from starlette.websockets import WebSocketState

from .errors import SinkClosed

logger = logging.getLogger(__name__)


class WebSocketTransport:
    """Camera connection over a FastAPI WebSocket."""

    def __init__(self, ws: WebSocket) -> None:
        self._ws = ws
        self._send_lock = asyncio.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed or self._ws.application_state == WebSocketState.DISCONNECTED

    async def send_json(self, message: Dict[str, Any]) -> None:
        if self.closed:
            raise ConnectionError("websocket closed")
        async with self._send_lock:
            await self._ws.send_text(json.dumps(message))

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._ws.application_state != WebSocketState.DISCONNECTED:
            try:
                await self._ws.close()
            except Exception as e:
                logger.debug("Error closing camera websocket: %s", e)


class WebSocketSink:
    """Viewer receiving raw frames as binary WebSocket messages."""

    def __init__(self, ws: WebSocket) -> None:
        self._ws = ws
        self._closed = False

    async def write(self, payload: bytes) -> None:
        if self._closed:
            raise SinkClosed("viewer gone")
        try:
            await self._ws.send_bytes(payload)
        except Exception as e:
            self._closed = True
            raise SinkClosed("viewer gone", log_message=str(e)) from e

    async def close(self) -> None:
        self._closed = True


class QueueSink:
    """
    Viewer backed by a small queue, drained by an HTTP streaming response.

    When the reader falls behind the oldest frame is dropped, so ``write``
    never waits on the network.
    """

    def __init__(self, maxsize: int = 2) -> None:
        self._queue: asyncio.Queue[Optional[bytes]] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def write(self, payload: bytes) -> None:
        if self._closed:
            raise SinkClosed("viewer gone")
        self._put(payload)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._put(None)

    async def frames(self, idle_timeout: Optional[float] = None) -> AsyncIterator[bytes]:
        """Yield frames until closed; stops after ``idle_timeout`` seconds without one."""
        while True:
            try:
                if idle_timeout is None:
                    item = await self._queue.get()
                else:
                    item = await asyncio.wait_for(self._queue.get(), timeout=idle_timeout)
            except asyncio.TimeoutError:
                logger.debug("Viewer stream idle for %.1fs, ending", idle_timeout)
                return
            if item is None:
                return
            yield item

    def _put(self, item: Optional[bytes]) -> None:
        if self._queue.full():
            try:
                self._queue.get_nowait()
            except QueueEmpty:
                pass
        self._queue.put_nowait(item)


__all__ = ["QueueSink", "WebSocketSink", "WebSocketTransport"]
