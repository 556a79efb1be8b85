"""Per-room conversation actors and the registry that hands them out.

A :class:`RoomActor` is the only code path that reads or writes a room's
transcript. Operations on one actor run strictly one at a time; actors for
different rooms share nothing and proceed concurrently.

Typical usage
-------------
registry = RoomRegistry(DiskStore("data/rooms"))
room = registry.resolve("demo")
await room.append(Role.USER, "hello")
entries = await room.read()
"""
from __future__ import annotations

import asyncio
import logging
import threading
import time
import weakref
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .errors import StorageUnavailable
from .storage import TranscriptStore

logger = logging.getLogger(__name__)

Clock = Callable[[], int]


def _now_ms() -> int:
    return int(time.time() * 1000)


# -----------------------------
# Data model
# -----------------------------
class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class TranscriptEntry:
    """One turn of a room's conversation.

    Fields:
        role: Who authored the turn.
        content: Non-empty message text.
        timestamp: Epoch milliseconds assigned by the actor at append time.
    """
    role: Role
    content: str
    timestamp: int

    def to_dict(self) -> Dict[str, Any]:
        return {"role": self.role.value, "content": self.content, "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TranscriptEntry":
        content = data["content"]
        if not isinstance(content, str) or not content:
            raise ValueError("entry content must be a non-empty string")
        return cls(
            role=Role(data["role"]),
            content=content,
            timestamp=int(data["timestamp"]),
        )


# -----------------------------
# Actor
# -----------------------------
class RoomActor:
    """Serialized append/read access to one room's transcript."""

    def __init__(self, room_id: str, store: TranscriptStore, *, clock: Optional[Clock] = None) -> None:
        self.room_id = room_id
        self._store = store
        self._clock = clock or _now_ms
        # The asyncio lock queues callers in arrival order; the thread lock
        # keeps a load+save pair whole even if the awaiting task is cancelled
        # while the worker thread is still running.
        self._lock = asyncio.Lock()
        self._io_lock = threading.Lock()

    async def append(self, role: Role | str, content: str) -> TranscriptEntry:
        """Persist a new last entry and return it with its assigned timestamp.

        Raises :class:`StorageUnavailable` if the record cannot be loaded or
        written; in that case the transcript is unchanged.
        """
        role = Role(role)
        if not isinstance(content, str) or not content:
            raise ValueError("entry content must be a non-empty string")
        async with self._lock:
            entry = await asyncio.to_thread(self._append_sync, role, content)
        logger.debug("room %r: appended %s entry at %d", self.room_id, entry.role.value, entry.timestamp)
        return entry

    async def read(self) -> List[TranscriptEntry]:
        """Return the complete transcript in append order."""
        async with self._lock:
            return await asyncio.to_thread(self._read_sync)

    # --------- internals ----------
    def _load_entries(self) -> List[TranscriptEntry]:
        try:
            return [TranscriptEntry.from_dict(item) for item in self._store.load(self.room_id)]
        except StorageUnavailable:
            raise
        except Exception as e:
            logger.exception("room %r: failed to load transcript", self.room_id)
            raise StorageUnavailable() from e

    def _append_sync(self, role: Role, content: str) -> TranscriptEntry:
        with self._io_lock:
            entries = self._load_entries()
            floor = entries[-1].timestamp if entries else 0
            entry = TranscriptEntry(role=role, content=content, timestamp=max(self._clock(), floor))
            try:
                self._store.save(self.room_id, [e.to_dict() for e in entries] + [entry.to_dict()])
            except StorageUnavailable:
                raise
            except Exception as e:
                logger.exception("room %r: failed to persist transcript", self.room_id)
                raise StorageUnavailable() from e
            return entry

    def _read_sync(self) -> List[TranscriptEntry]:
        with self._io_lock:
            return self._load_entries()


# -----------------------------
# Registry
# -----------------------------
class RoomRegistry:
    """Maps room identifiers to their single :class:`RoomActor`.

    Actors are created lazily on first resolution and held only weakly: while
    any caller still references a room's actor, every resolution of that
    identifier returns the same instance, and once nobody does the entry is
    dropped. An unreferenced actor has no operation in flight (a running
    storage call keeps its actor alive), so a fresh one can take over safely.
    """

    def __init__(self, store: TranscriptStore, *, clock: Optional[Clock] = None) -> None:
        self.store = store
        self._clock = clock
        self._actors: "weakref.WeakValueDictionary[str, RoomActor]" = weakref.WeakValueDictionary()
        self._lock = threading.Lock()

    def resolve(self, room_id: Any) -> RoomActor:
        key = str(room_id)
        with self._lock:
            actor = self._actors.get(key)
            if actor is None:
                actor = RoomActor(key, self.store, clock=self._clock)
                self._actors[key] = actor
                logger.debug("created actor for room %r", key)
            return actor

    def room_ids(self) -> List[str]:
        """Identifiers whose actor is currently in use."""
        with self._lock:
            return sorted(self._actors.keys())
