"""Durable transcript stores keyed by room identifier (thread-safe, atomic).

A store only knows how to load and save the whole entry list of one room.
Ordering, timestamps and serialization belong to :mod:`journal_server.rooms`,
which is the only caller.
"""
from __future__ import annotations

import copy
import hashlib
import json
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, List

SCHEMA_VERSION = 1


# -----------------------------
# Helpers
# -----------------------------
def _safe_room(room_id: str) -> str:
    # Readable prefix plus a digest of the exact identifier, so "a/b" and
    # "a_b" (or "" and "default") never share a file.
    prefix = re.sub(r"[^\w.\-@]+", "_", room_id.strip())[:64] or "room"
    digest = hashlib.sha256(room_id.encode("utf-8")).hexdigest()[:16]
    return f"{prefix}-{digest}"


def _atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile("w", encoding="utf-8", delete=False, dir=str(path.parent)) as tmp:
        tmp_name = tmp.name
        try:
            tmp.write(text)
            tmp.flush()
            os.fsync(tmp.fileno())
        except BaseException:
            try:
                tmp.close()
            finally:
                Path(tmp_name).unlink(missing_ok=True)
            raise
    try:
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def encode_record(entries: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {"version": SCHEMA_VERSION, "entries": entries}


def decode_record(raw: Any) -> List[Dict[str, Any]]:
    """Return the entry list from a persisted record.

    Accepts the versioned layout and the legacy bare list whose entries used
    ``ts`` for the timestamp. Raises ``ValueError`` on anything else.
    """
    if isinstance(raw, list):
        entries = raw
    elif isinstance(raw, dict) and isinstance(raw.get("entries"), list):
        version = raw.get("version", SCHEMA_VERSION)
        if version != SCHEMA_VERSION:
            raise ValueError(f"unsupported transcript version: {version!r}")
        entries = raw["entries"]
    else:
        raise ValueError("transcript record must be a list or a versioned object")

    out: List[Dict[str, Any]] = []
    for item in entries:
        if not isinstance(item, dict):
            raise ValueError("transcript entries must be objects")
        role, content = item.get("role"), item.get("content")
        timestamp = item.get("timestamp", item.get("ts", 0))
        if not isinstance(role, str):
            raise ValueError("transcript entry has no role")
        if not isinstance(content, str) or not content:
            raise ValueError("transcript entry has no content")
        if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
            raise ValueError("transcript entry timestamp must be a number")
        out.append({"role": role, "content": content, "timestamp": int(timestamp)})
    return out


# -----------------------------
# Stores
# -----------------------------
class TranscriptStore:
    """Persistence client interface: one record per room identifier."""

    def load(self, room_id: str) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def save(self, room_id: str, entries: List[Dict[str, Any]]) -> None:
        raise NotImplementedError


class DiskStore(TranscriptStore):
    """JSON-file-per-room store.

    Layout:
        data_dir/
          <safe room>-<digest>.json   # {"version": 1, "entries": [...]}

    Writes go to a temp file in the same directory and are swapped in with
    ``os.replace``, so a record is either the old list or the new one.
    """

    def __init__(self, data_dir: str) -> None:
        self.root = Path(data_dir)
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()

    def path_for(self, room_id: str) -> Path:
        return self.root / f"{_safe_room(room_id)}.json"

    def load(self, room_id: str) -> List[Dict[str, Any]]:
        path = self.path_for(room_id)
        if not path.exists():
            return []
        with path.open("r", encoding="utf-8") as f:
            return decode_record(json.load(f))

    def save(self, room_id: str, entries: List[Dict[str, Any]]) -> None:
        text = json.dumps(encode_record(entries), ensure_ascii=False, indent=2)
        with self._lock:
            _atomic_write_text(self.path_for(room_id), text)


class MemoryStore(TranscriptStore):
    """In-process store; contents vanish with the process."""

    def __init__(self) -> None:
        self._records: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.RLock()

    def load(self, room_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            record = self._records.get(room_id)
            if record is None:
                return []
            return decode_record(copy.deepcopy(record))

    def save(self, room_id: str, entries: List[Dict[str, Any]]) -> None:
        with self._lock:
            self._records[room_id] = encode_record(copy.deepcopy(entries))


def create_store(cfg: Dict[str, Any]) -> TranscriptStore:
    """Create a store from the ``storage`` config section."""
    store_cfg = (cfg or {}).get("storage", {}) if isinstance(cfg, dict) else {}
    backend = str(store_cfg.get("backend", "disk")).lower()
    if backend == "memory":
        return MemoryStore()
    if backend == "disk":
        return DiskStore(str(store_cfg.get("data_dir") or "data/rooms"))
    raise ValueError(f"Unknown storage backend: {backend!r}")
