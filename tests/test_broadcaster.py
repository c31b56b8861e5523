"""Tests for the fan-out broadcaster."""

import asyncio

import pytest

from camrelay.core.broadcaster import Broadcaster
from camrelay.core.frame_cache import FrameCache
from camrelay.errors import DeviceOffline
from camrelay.state import MediaFrame

from conftest import FakeSink


def _frame(payload: bytes, sequence: int = 1) -> MediaFrame:
    return MediaFrame(device_id="cam1", payload=payload, sequence=sequence)


async def _publish(broadcaster: Broadcaster, frame: MediaFrame) -> int:
    return await broadcaster.publish(frame.device_id, frame)


class TestPublish:

    @pytest.mark.asyncio
    async def test_frames_arrive_in_order(self):
        cache = FrameCache()
        broadcaster = Broadcaster(cache)
        sink = FakeSink()
        await broadcaster.subscribe("cam1", sink)

        await _publish(broadcaster, _frame(b"f1", 1))
        await _publish(broadcaster, _frame(b"f2", 2))

        assert sink.frames == [b"f1", b"f2"]
        assert cache.get("cam1").payload == b"f2"

    @pytest.mark.asyncio
    async def test_every_subscriber_receives_frame(self):
        cache = FrameCache()
        broadcaster = Broadcaster(cache)
        sinks = [FakeSink() for _ in range(3)]
        for sink in sinks:
            await broadcaster.subscribe("cam1", sink)

        delivered = await _publish(broadcaster, _frame(b"jpeg"))

        assert delivered == 3
        assert all(sink.frames == [b"jpeg"] for sink in sinks)

    @pytest.mark.asyncio
    async def test_failing_sink_is_removed_without_error(self):
        cache = FrameCache()
        broadcaster = Broadcaster(cache)
        good, bad = FakeSink(), FakeSink(fail=True)
        await broadcaster.subscribe("cam1", good)
        bad_sub = await broadcaster.subscribe("cam1", bad)

        delivered = await _publish(broadcaster, _frame(b"f1", 1))
        await _publish(broadcaster, _frame(b"f2", 2))

        assert delivered == 1
        assert good.frames == [b"f1", b"f2"]
        assert bad.write_attempts == 1
        assert bad.close_calls == 1
        assert bad_sub.active is False
        assert broadcaster.subscriber_count("cam1") == 1

    @pytest.mark.asyncio
    async def test_slow_sink_is_dropped(self):
        cache = FrameCache()
        broadcaster = Broadcaster(cache, write_timeout=0.05)
        fast, slow = FakeSink(), FakeSink(delay=1.0)
        await broadcaster.subscribe("cam1", fast)
        await broadcaster.subscribe("cam1", slow)

        loop = asyncio.get_running_loop()
        started = loop.time()
        await _publish(broadcaster, _frame(b"f1"))

        assert loop.time() - started < 0.5
        assert fast.frames == [b"f1"]
        assert slow.frames == []
        assert broadcaster.subscriber_count("cam1") == 1

    @pytest.mark.asyncio
    async def test_publish_without_subscribers(self):
        cache = FrameCache()
        broadcaster = Broadcaster(cache)

        assert await _publish(broadcaster, _frame(b"f1")) == 0

    @pytest.mark.asyncio
    async def test_other_devices_are_not_affected(self):
        cache = FrameCache()
        broadcaster = Broadcaster(cache)
        sink = FakeSink()
        await broadcaster.subscribe("cam2", sink)

        await _publish(broadcaster, _frame(b"cam1-frame"))

        assert sink.frames == []


class TestSubscribe:

    @pytest.mark.asyncio
    async def test_late_joiner_gets_cached_frame(self):
        cache = FrameCache()
        broadcaster = Broadcaster(cache)
        await _publish(broadcaster, _frame(b"f1", 1))
        await _publish(broadcaster, _frame(b"f2", 2))

        sink = FakeSink()
        await broadcaster.subscribe("cam1", sink)

        assert sink.frames == [b"f2"]

    @pytest.mark.asyncio
    async def test_joiner_during_publish_gets_each_frame_once(self):
        cache = FrameCache()
        broadcaster = Broadcaster(cache, write_timeout=1.0)
        await broadcaster.subscribe("cam1", FakeSink(delay=0.05))
        late = FakeSink()

        first = asyncio.create_task(broadcaster.publish("cam1", _frame(b"f1", 1)))
        await asyncio.sleep(0)
        joining = asyncio.create_task(broadcaster.subscribe("cam1", late))
        await asyncio.sleep(0)
        second = asyncio.create_task(broadcaster.publish("cam1", _frame(b"f2", 2)))
        await asyncio.gather(first, joining, second)

        assert late.frames == [b"f1", b"f2"]
        assert cache.get("cam1").payload == b"f2"

    @pytest.mark.asyncio
    async def test_capture_requested_when_nothing_cached(self):
        requested = []

        async def hook(identity):
            requested.append(identity)

        broadcaster = Broadcaster(FrameCache(), capture_hook=hook)
        await broadcaster.subscribe("cam1", FakeSink())
        await asyncio.sleep(0)

        assert requested == ["cam1"]

    @pytest.mark.asyncio
    async def test_capture_hook_failure_is_ignored(self):
        async def hook(identity):
            raise DeviceOffline(identity)

        broadcaster = Broadcaster(FrameCache(), capture_hook=hook)
        subscription = await broadcaster.subscribe("cam1", FakeSink())
        await asyncio.sleep(0.01)

        assert subscription.active is True
        assert broadcaster.subscriber_count("cam1") == 1

    @pytest.mark.asyncio
    async def test_no_capture_when_frame_cached(self):
        requested = []

        async def hook(identity):
            requested.append(identity)

        cache = FrameCache()
        cache.put("cam1", _frame(b"cached"))
        broadcaster = Broadcaster(cache, capture_hook=hook)
        await broadcaster.subscribe("cam1", FakeSink())
        await asyncio.sleep(0)

        assert requested == []


class TestUnsubscribe:

    @pytest.mark.asyncio
    async def test_unsubscribe_releases_sink(self):
        cache = FrameCache()
        broadcaster = Broadcaster(cache)
        sink = FakeSink()
        subscription = await broadcaster.subscribe("cam1", sink)

        await broadcaster.unsubscribe(subscription)
        await _publish(broadcaster, _frame(b"after"))

        assert sink.close_calls == 1
        assert sink.frames == []
        assert broadcaster.subscriber_count("cam1") == 0

    @pytest.mark.asyncio
    async def test_unsubscribe_twice_is_harmless(self):
        broadcaster = Broadcaster(FrameCache())
        subscription = await broadcaster.subscribe("cam1", FakeSink())

        await broadcaster.unsubscribe(subscription)
        await broadcaster.unsubscribe(subscription)

        assert broadcaster.devices_with_viewers() == set()
