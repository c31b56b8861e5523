"""Connection registry: at most one live transport per device identity."""
from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ..state import DeviceTransport

logger = logging.getLogger(__name__)

_connection_ids = itertools.count(1)


@dataclass(eq=False)
class DeviceConnection:
    """Registered camera connection. Compared by identity, never by value."""

    identity: str
    transport: DeviceTransport
    connection_id: int = field(default_factory=lambda: next(_connection_ids))
    registered_at: float = field(default_factory=time.time)
    last_ack_at: float = field(default_factory=time.time)
    alive: bool = True
    supports_tokens: bool = True

    def acknowledge(self) -> None:
        self.alive = True
        self.last_ack_at = time.time()


class ConnectionRegistry:
    """Maps device identity to its single active connection ("latest wins")."""

    def __init__(self, *, close_timeout: float = 2.0) -> None:
        self._connections: Dict[str, DeviceConnection] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._close_timeout = close_timeout

    async def register(self, identity: str, transport: DeviceTransport, *, supports_tokens: bool = True) -> DeviceConnection:
        """Store ``transport`` for ``identity``, tearing down any previous one."""
        async with self._locks[identity]:
            previous = self._connections.get(identity)
            connection = DeviceConnection(identity=identity, transport=transport, supports_tokens=supports_tokens)
            self._connections[identity] = connection
            logger.info("Camera registered: %s (connection #%d)", identity, connection.connection_id)

        if previous is not None and previous.transport is not transport:
            logger.info(
                "Replacing connection #%d for %s with #%d",
                previous.connection_id,
                identity,
                connection.connection_id,
            )
            await self._close_transport(previous)
        return connection

    def lookup(self, identity: str) -> Optional[DeviceConnection]:
        return self._connections.get(identity)

    async def unregister(self, identity: str, connection: DeviceConnection) -> bool:
        """Remove the mapping only if ``connection`` is still the current one."""
        async with self._locks[identity]:
            current = self._connections.get(identity)
            if current is not connection:
                logger.debug(
                    "Ignoring stale unregister for %s (connection #%d)", identity, connection.connection_id
                )
                return False
            del self._connections[identity]
        logger.info("Camera disconnected: %s (connection #%d)", identity, connection.connection_id)
        return True

    def mark_ack(self, identity: str) -> bool:
        connection = self._connections.get(identity)
        if connection is None:
            return False
        connection.acknowledge()
        return True

    def identities(self) -> set[str]:
        return set(self._connections)

    def connections(self) -> List[DeviceConnection]:
        return list(self._connections.values())

    def __contains__(self, identity: object) -> bool:
        return identity in self._connections

    def __len__(self) -> int:
        return len(self._connections)

    async def _close_transport(self, connection: DeviceConnection) -> None:
        try:
            await asyncio.wait_for(connection.transport.close(), timeout=self._close_timeout)
        except asyncio.TimeoutError:
            logger.warning("Timed out closing replaced connection #%d", connection.connection_id)
        except Exception as e:
            logger.warning("Error closing replaced connection #%d: %s", connection.connection_id, e)


__all__ = ["ConnectionRegistry", "DeviceConnection"]
