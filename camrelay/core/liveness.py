"""Heartbeat supervision of registered camera connections."""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from .registry import ConnectionRegistry, DeviceConnection

logger = logging.getLogger(__name__)

EvictHandler = Callable[[DeviceConnection, str], Awaitable[None]]


class LivenessSupervisor:
    """Probes every connection each period and evicts the ones that never answered."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        on_evict: EvictHandler,
        *,
        interval: float = 30.0,
        probe_timeout: float = 2.0,
    ) -> None:
        self._registry = registry
        self._on_evict = on_evict
        self._interval = interval
        self._probe_timeout = probe_timeout
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def mark_alive(self, identity: str) -> bool:
        return self._registry.mark_ack(identity)

    async def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="relay-liveness")
        logger.info("Liveness supervisor started (interval=%.1fs)", self._interval)

    async def stop(self) -> None:
        if not self._task:
            return
        if not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning("Error stopping liveness task: %s", e)
        self._task = None

    async def tick(self) -> int:
        """Run one probe cycle; returns the number of evicted connections."""
        evicted = 0
        for connection in self._registry.connections():
            if not connection.alive:
                await self._evict(connection, "heartbeat timeout")
                evicted += 1
                continue

            connection.alive = False
            try:
                await asyncio.wait_for(connection.transport.send_json({"type": "ping"}), timeout=self._probe_timeout)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("Heartbeat probe to %s failed: %s", connection.identity, e)
                await self._evict(connection, "probe failed")
                evicted += 1
        return evicted

    async def _evict(self, connection: DeviceConnection, reason: str) -> None:
        logger.warning("Evicting %s (connection #%d): %s", connection.identity, connection.connection_id, reason)
        try:
            await self._on_evict(connection, reason)
        except Exception as e:
            logger.exception("Eviction of %s failed: %s", connection.identity, e)

    async def _loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(self._interval)
                try:
                    await self.tick()
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    logger.exception("Liveness tick error: %s", exc)
        except asyncio.CancelledError:
            logger.info("Liveness supervisor cancelled")
            raise


__all__ = ["EvictHandler", "LivenessSupervisor"]
