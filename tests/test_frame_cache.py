"""Tests for the single-slot frame cache."""

import time

from camrelay.core.frame_cache import FrameCache
from camrelay.state import MediaFrame


def _frame(device_id: str, payload: bytes, sequence: int = 1, received_at=None) -> MediaFrame:
    if received_at is None:
        return MediaFrame(device_id=device_id, payload=payload, sequence=sequence)
    return MediaFrame(device_id=device_id, payload=payload, sequence=sequence, received_at=received_at)


def test_last_write_wins():
    cache = FrameCache()
    f1, f2 = _frame("cam1", b"one", 1), _frame("cam1", b"two", 2)

    cache.put("cam1", f1)
    cache.put("cam1", f2)

    assert cache.get("cam1") is f2
    assert len(cache) == 1


def test_missing_identity_returns_none():
    assert FrameCache().get("cam9") is None


def test_forget():
    cache = FrameCache()
    cache.put("cam1", _frame("cam1", b"x"))

    assert cache.forget("cam1") is True
    assert cache.forget("cam1") is False
    assert "cam1" not in cache


def test_evict_idle_respects_keep():
    cache = FrameCache()
    old = time.time() - 1000
    cache.put("gone", _frame("gone", b"a", received_at=old))
    cache.put("online", _frame("online", b"b", received_at=old))
    cache.put("fresh", _frame("fresh", b"c"))

    dropped = cache.evict_idle(60.0, keep={"online"})

    assert dropped == ["gone"]
    assert cache.get("online") is not None
    assert cache.get("fresh") is not None
    assert cache.get("gone") is None
