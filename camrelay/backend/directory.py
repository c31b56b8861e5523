"""Key-value directory used for device, session and revocation records."""
from __future__ import annotations

import asyncio
import copy
import logging
from asyncio import QueueEmpty
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol

logger = logging.getLogger(__name__)


class DirectoryKeys:
    """The complete set of keys the relay reads or writes."""

    DEVICES = "devices"
    REVOKED = "revoked"

    @staticmethod
    def device_config(device_id: str) -> str:
        return f"devices/{device_id}/config"

    @staticmethod
    def last_seen(device_id: str) -> str:
        return f"devices/{device_id}/live/last_seen"

    @staticmethod
    def pending_start(device_id: str) -> str:
        return f"devices/{device_id}/live/pending_start"

    @staticmethod
    def verified(device_id: str) -> str:
        return f"devices/{device_id}/live/verified"

    @staticmethod
    def otp(device_id: str) -> str:
        return f"devices/{device_id}/live/otp"

    @staticmethod
    def session(device_id: str) -> str:
        return f"devices/{device_id}/live/session"

    @staticmethod
    def revoked(token_id: str) -> str:
        return f"revoked/{token_id}"


class DirectoryStore(Protocol):
    async def get(self, key: str) -> Any: ...

    async def set(self, key: str, value: Any) -> None: ...

    async def update(self, key: str, partial: Dict[str, Any]) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def children(self, prefix: str) -> List[str]: ...

    def watch_children(self, prefix: str) -> AsyncIterator[str]: ...


class InMemoryDirectory:
    """
    Slash-separated key space kept in a dict.

    ``watch_children(prefix)`` yields existing children first, then every new
    direct child that appears under ``prefix``.
    """

    def __init__(self, *, watch_queue_size: int = 256) -> None:
        self._data: Dict[str, Any] = {}
        self._lock = asyncio.Lock()
        self._watchers: List[tuple[str, asyncio.Queue[str]]] = []
        self._watch_queue_size = watch_queue_size

    async def get(self, key: str) -> Any:
        value = self._data.get(self._norm(key))
        return copy.deepcopy(value)

    async def set(self, key: str, value: Any) -> None:
        key = self._norm(key)
        async with self._lock:
            self._data[key] = copy.deepcopy(value)
        self._notify(key)

    async def update(self, key: str, partial: Dict[str, Any]) -> None:
        key = self._norm(key)
        async with self._lock:
            current = self._data.get(key)
            merged = dict(current) if isinstance(current, dict) else {}
            merged.update(copy.deepcopy(partial))
            self._data[key] = merged
        self._notify(key)

    async def delete(self, key: str) -> None:
        key = self._norm(key)
        async with self._lock:
            for existing in [k for k in self._data if k == key or k.startswith(key + "/")]:
                del self._data[existing]

    async def children(self, prefix: str) -> List[str]:
        prefix = self._norm(prefix)
        found: Dict[str, None] = {}
        for key in list(self._data):
            child = self._child_of(prefix, key)
            if child is not None:
                found.setdefault(child, None)
        return list(found)

    async def watch_children(self, prefix: str) -> AsyncIterator[str]:
        prefix = self._norm(prefix)
        queue: asyncio.Queue[str] = asyncio.Queue(maxsize=self._watch_queue_size)
        seen = set(await self.children(prefix))
        self._watchers.append((prefix, queue))
        try:
            for child in list(seen):
                yield child
            while True:
                child = await queue.get()
                if child in seen:
                    continue
                seen.add(child)
                yield child
        finally:
            self._watchers = [(p, q) for p, q in self._watchers if q is not queue]

    def _notify(self, key: str) -> None:
        for prefix, queue in list(self._watchers):
            child = self._child_of(prefix, key)
            if child is None:
                continue
            if queue.full():
                try:
                    queue.get_nowait()
                except QueueEmpty:
                    pass
            queue.put_nowait(child)

    @staticmethod
    def _child_of(prefix: str, key: str) -> Optional[str]:
        if not key.startswith(prefix + "/"):
            return None
        remainder = key[len(prefix) + 1:]
        return remainder.split("/", 1)[0] or None

    @staticmethod
    def _norm(key: str) -> str:
        return key.strip("/")


__all__ = ["DirectoryKeys", "DirectoryStore", "InMemoryDirectory"]
