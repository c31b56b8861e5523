"""Single-slot cache of the most recent frame per device."""
from __future__ import annotations

import time
from typing import Dict, Iterable, Optional

from ..state import MediaFrame


class FrameCache:
    """Last-write-wins store; reads and writes are plain dict operations."""

    def __init__(self) -> None:
        self._frames: Dict[str, MediaFrame] = {}

    def put(self, identity: str, frame: MediaFrame) -> None:
        self._frames[identity] = frame

    def get(self, identity: str) -> Optional[MediaFrame]:
        return self._frames.get(identity)

    def forget(self, identity: str) -> bool:
        return self._frames.pop(identity, None) is not None

    def evict_idle(self, max_age: float, *, keep: Iterable[str] = ()) -> list[str]:
        """Drop frames older than ``max_age`` seconds, except for ``keep`` identities."""
        cutoff = time.time() - max_age
        protected = set(keep)
        stale = [
            identity
            for identity, frame in list(self._frames.items())
            if identity not in protected and frame.received_at < cutoff
        ]
        for identity in stale:
            self._frames.pop(identity, None)
        return stale

    def __contains__(self, identity: object) -> bool:
        return identity in self._frames

    def __len__(self) -> int:
        return len(self._frames)


__all__ = ["FrameCache"]
