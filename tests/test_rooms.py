from __future__ import annotations

import asyncio
import gc
from pathlib import Path

import pytest

from journal_server.errors import StorageUnavailable
from journal_server.rooms import Role, RoomActor, RoomRegistry, TranscriptEntry
from journal_server.storage import DiskStore, MemoryStore


class FlakyStore(MemoryStore):
    """Memory store whose loads or saves can be switched to fail."""
    def __init__(self):
        super().__init__()
        self.fail_load = False
        self.fail_save = False

    def load(self, room_id):
        if self.fail_load:
            raise OSError("disk gone")
        return super().load(room_id)

    def save(self, room_id, entries):
        if self.fail_save:
            raise OSError("disk full")
        super().save(room_id, entries)


def ticking(values):
    it = iter(values)
    return lambda: next(it)


def test_appends_read_back_in_order_with_nondecreasing_timestamps():
    # Clock goes backwards mid-way; timestamps must still never decrease.
    room = RoomActor("r", MemoryStore(), clock=ticking([1000, 900, 900, 1200]))

    async def scenario():
        for i in range(4):
            await room.append(Role.USER if i % 2 == 0 else Role.ASSISTANT, f"m{i}")
        return await room.read()

    entries = asyncio.run(scenario())
    assert [e.content for e in entries] == ["m0", "m1", "m2", "m3"]
    assert [e.role for e in entries] == [Role.USER, Role.ASSISTANT, Role.USER, Role.ASSISTANT]
    assert [e.timestamp for e in entries] == [1000, 1000, 1000, 1200]


def test_append_then_read_round_trips_all_fields(tmp_data_dir: Path):
    room = RoomActor("journal", DiskStore(str(tmp_data_dir)), clock=lambda: 1700000000123)

    async def scenario():
        appended = await room.append("user", "dear diary")
        return appended, await room.read()

    appended, entries = asyncio.run(scenario())
    assert appended == TranscriptEntry(Role.USER, "dear diary", 1700000000123)
    assert entries == [appended]


def test_rooms_are_isolated():
    registry = RoomRegistry(MemoryStore())

    async def scenario():
        await registry.resolve("a").append(Role.USER, "only in a")
        return await registry.resolve("a").read(), await registry.resolve("b").read()

    a, b = asyncio.run(scenario())
    assert [e.content for e in a] == ["only in a"]
    assert b == []


def test_registry_returns_same_actor_per_identifier():
    registry = RoomRegistry(MemoryStore())
    x, y, n = registry.resolve("x"), registry.resolve("y"), registry.resolve(42)
    assert registry.resolve("x") is x
    assert registry.resolve("42") is n
    assert x is not y
    assert registry.room_ids() == ["42", "x", "y"]


def test_registry_drops_idle_actors():
    registry = RoomRegistry(MemoryStore())

    async def scenario():
        for i in range(200):
            await registry.resolve(f"r{i}").read()

    asyncio.run(scenario())
    gc.collect()
    assert registry.room_ids() == []


def test_concurrent_callers_share_one_actor_until_idle():
    registry = RoomRegistry(MemoryStore())
    seen = []

    async def caller(i):
        room = registry.resolve("shared")
        seen.append(room)
        await room.append(Role.USER, f"c{i}")
        return await room.read()

    async def scenario():
        await asyncio.gather(*(caller(i) for i in range(10)))

    asyncio.run(scenario())
    assert all(room is seen[0] for room in seen)
    seen.clear()
    gc.collect()
    assert registry.room_ids() == []

    # A fresh actor sees everything the evicted one wrote.
    entries = asyncio.run(registry.resolve("shared").read())
    assert sorted(e.content for e in entries) == sorted(f"c{i}" for i in range(10))


def test_concurrent_appends_are_never_lost(tmp_data_dir: Path):
    registry = RoomRegistry(DiskStore(str(tmp_data_dir)))

    async def scenario():
        room = registry.resolve("busy")
        await asyncio.gather(*(room.append(Role.USER, f"n{i}") for i in range(25)))
        return await room.read()

    entries = asyncio.run(scenario())
    assert len(entries) == 25
    assert sorted(e.content for e in entries) == sorted(f"n{i}" for i in range(25))
    stamps = [e.timestamp for e in entries]
    assert stamps == sorted(stamps)


def test_failed_write_leaves_transcript_unchanged():
    store = FlakyStore()
    room = RoomActor("r", store)

    async def scenario():
        await room.append(Role.USER, "kept")
        store.fail_save = True
        with pytest.raises(StorageUnavailable):
            await room.append(Role.ASSISTANT, "lost")
        store.fail_save = False
        return await room.read()

    entries = asyncio.run(scenario())
    assert [e.content for e in entries] == ["kept"]


def test_failed_read_raises_storage_unavailable():
    store = FlakyStore()
    store.fail_load = True
    room = RoomActor("r", store)
    with pytest.raises(StorageUnavailable):
        asyncio.run(room.read())


def test_corrupt_record_is_reported_not_discarded(tmp_data_dir: Path):
    store = DiskStore(str(tmp_data_dir))
    path = store.path_for("broken")
    path.write_text("{not json", encoding="utf-8")
    room = RoomActor("broken", store)

    with pytest.raises(StorageUnavailable):
        asyncio.run(room.append(Role.USER, "hello"))
    # The unreadable record is left in place for inspection.
    assert path.read_text(encoding="utf-8") == "{not json"


def test_append_rejects_empty_content_and_unknown_role():
    room = RoomActor("r", MemoryStore())
    with pytest.raises(ValueError):
        asyncio.run(room.append(Role.USER, ""))
    with pytest.raises(ValueError):
        asyncio.run(room.append("system", "not persisted"))
    assert asyncio.run(room.read()) == []


def test_legacy_entry_without_content_is_storage_failure(tmp_data_dir: Path):
    store = DiskStore(str(tmp_data_dir))
    store.path_for("old").write_text('[{"role": "user", "ts": 3}]', encoding="utf-8")
    room = RoomActor("old", store)

    with pytest.raises(StorageUnavailable):
        asyncio.run(room.read())
