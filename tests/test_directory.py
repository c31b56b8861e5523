"""Tests for the in-memory directory store."""

import asyncio

import pytest

from camrelay.backend.directory import DirectoryKeys, InMemoryDirectory


class TestKeyValue:

    @pytest.mark.asyncio
    async def test_set_get_update_delete(self):
        directory = InMemoryDirectory()
        key = DirectoryKeys.device_config("cam1")

        await directory.set(key, {"email": "a@b.c"})
        await directory.update(key, {"ssid": "home"})

        assert await directory.get(key) == {"email": "a@b.c", "ssid": "home"}

        await directory.delete(key)
        assert await directory.get(key) is None

    @pytest.mark.asyncio
    async def test_values_are_copied(self):
        directory = InMemoryDirectory()
        value = {"nested": {"n": 1}}
        await directory.set("a/b", value)

        value["nested"]["n"] = 2
        fetched = await directory.get("a/b")
        fetched["nested"]["n"] = 3

        assert (await directory.get("a/b"))["nested"]["n"] == 1

    @pytest.mark.asyncio
    async def test_delete_removes_subtree(self):
        directory = InMemoryDirectory()
        await directory.set(DirectoryKeys.otp("cam1"), {"code": "1"})
        await directory.set(DirectoryKeys.session("cam1"), {"token": "t"})

        await directory.delete("devices/cam1/live")

        assert await directory.get(DirectoryKeys.otp("cam1")) is None
        assert await directory.get(DirectoryKeys.session("cam1")) is None

    @pytest.mark.asyncio
    async def test_children(self):
        directory = InMemoryDirectory()
        await directory.set(DirectoryKeys.last_seen("cam1"), 1.0)
        await directory.set(DirectoryKeys.device_config("cam1"), {})
        await directory.set(DirectoryKeys.last_seen("cam2"), 2.0)

        assert sorted(await directory.children(DirectoryKeys.DEVICES)) == ["cam1", "cam2"]


class TestWatchChildren:

    @pytest.mark.asyncio
    async def test_existing_then_new_children(self):
        directory = InMemoryDirectory()
        await directory.set(DirectoryKeys.last_seen("cam1"), 1.0)
        seen = []

        async def watch():
            async for child in directory.watch_children(DirectoryKeys.DEVICES):
                seen.append(child)
                if len(seen) == 2:
                    return

        watcher = asyncio.create_task(watch())
        await asyncio.sleep(0)
        await directory.set(DirectoryKeys.last_seen("cam1"), 2.0)
        await directory.set(DirectoryKeys.device_config("cam2"), {"email": "x@y.z"})
        await asyncio.wait_for(watcher, timeout=1.0)

        assert seen == ["cam1", "cam2"]
