"""Fan-out of device frames to any number of viewer sinks."""
from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

from ..errors import SinkClosed
from ..state import MediaFrame, Sink
from .frame_cache import FrameCache

logger = logging.getLogger(__name__)

CaptureHook = Callable[[str], Awaitable[Any]]

_subscription_ids = itertools.count(1)


@dataclass(eq=False)
class Subscription:
    """Handle returned to a viewer; pass it back to ``unsubscribe``."""

    device_id: str
    sink: Sink
    subscription_id: int = field(default_factory=lambda: next(_subscription_ids))
    created_at: float = field(default_factory=time.time)
    delivered: int = 0
    active: bool = True


class Broadcaster:
    """
    Writes every published frame to each subscriber of the device.

    Each sink write is isolated and bounded by ``write_timeout``; a sink that
    fails or stalls is dropped and closed without affecting the others. A
    per-device lock keeps replay and publish ordered for every subscriber.
    """

    def __init__(
        self,
        frame_cache: FrameCache,
        *,
        write_timeout: float = 0.5,
        capture_hook: Optional[CaptureHook] = None,
    ) -> None:
        self._cache = frame_cache
        self._write_timeout = write_timeout
        self._capture_hook = capture_hook
        self._subscribers: Dict[str, Dict[int, Subscription]] = defaultdict(dict)
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._background: set[asyncio.Task[Any]] = set()

    def set_capture_hook(self, hook: Optional[CaptureHook]) -> None:
        self._capture_hook = hook

    async def subscribe(self, identity: str, sink: Sink) -> Subscription:
        subscription = Subscription(device_id=identity, sink=sink)
        async with self._locks[identity]:
            self._subscribers[identity][subscription.subscription_id] = subscription
            cached = self._cache.get(identity)
            if cached is not None:
                await self._deliver(subscription, cached)

        logger.info(
            "Viewer #%d subscribed to %s (%d active)",
            subscription.subscription_id,
            identity,
            self.subscriber_count(identity),
        )
        if cached is None:
            self._request_capture(identity)
        return subscription

    async def publish(self, identity: str, frame: MediaFrame) -> int:
        """Cache ``frame`` and deliver it to all current subscribers; never raises on sink failure."""
        async with self._locks[identity]:
            # Cached under the lock so a concurrent subscribe replays it or receives it, not both.
            self._cache.put(identity, frame)
            subscribers = list(self._subscribers.get(identity, {}).values())
            if not subscribers:
                return 0
            results = await asyncio.gather(
                *(self._deliver(subscription, frame) for subscription in subscribers),
                return_exceptions=True,
            )
        delivered = 0
        for subscription, result in zip(subscribers, results):
            if result is True:
                delivered += 1
            elif isinstance(result, BaseException):
                logger.error("Unexpected delivery error for viewer #%d: %s", subscription.subscription_id, result)
        return delivered

    async def unsubscribe(self, subscription: Subscription) -> None:
        removed = self._remove(subscription)
        await self._close_sink(subscription)
        if removed:
            logger.info("Viewer #%d unsubscribed from %s", subscription.subscription_id, subscription.device_id)

    def subscriber_count(self, identity: str) -> int:
        return len(self._subscribers.get(identity, {}))

    def devices_with_viewers(self) -> set[str]:
        return {identity for identity, subs in self._subscribers.items() if subs}

    async def close_all(self) -> None:
        for identity in list(self._subscribers):
            for subscription in list(self._subscribers[identity].values()):
                await self.unsubscribe(subscription)
        for task in list(self._background):
            task.cancel()

    async def _deliver(self, subscription: Subscription, frame: MediaFrame) -> bool:
        if not subscription.active:
            return False
        try:
            await asyncio.wait_for(subscription.sink.write(frame.payload), timeout=self._write_timeout)
        except asyncio.TimeoutError:
            logger.warning("Viewer #%d too slow, dropping it", subscription.subscription_id)
        except SinkClosed:
            logger.debug("Viewer #%d sink closed", subscription.subscription_id)
        except Exception as e:
            logger.warning("Viewer #%d write failed: %s", subscription.subscription_id, e)
        else:
            subscription.delivered += 1
            return True

        self._remove(subscription)
        await self._close_sink(subscription)
        return False

    def _remove(self, subscription: Subscription) -> bool:
        subscription.active = False
        subscribers = self._subscribers.get(subscription.device_id)
        if not subscribers or subscribers.pop(subscription.subscription_id, None) is None:
            return False
        if not subscribers:
            self._subscribers.pop(subscription.device_id, None)
        return True

    async def _close_sink(self, subscription: Subscription) -> None:
        try:
            await asyncio.wait_for(subscription.sink.close(), timeout=self._write_timeout)
        except Exception as e:
            logger.debug("Error closing viewer #%d sink: %s", subscription.subscription_id, e)

    def _request_capture(self, identity: str) -> None:
        if self._capture_hook is None:
            return
        task = asyncio.create_task(self._run_capture_hook(identity), name=f"capture-now-{identity}")
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _run_capture_hook(self, identity: str) -> None:
        assert self._capture_hook is not None
        try:
            await self._capture_hook(identity)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug("Capture-now for %s skipped: %s", identity, e)


__all__ = ["Broadcaster", "CaptureHook", "Subscription"]
