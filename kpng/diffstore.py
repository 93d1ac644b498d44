"""A key/value store that tracks which entries changed or disappeared between rounds."""

from __future__ import annotations

import bisect
import itertools
from dataclasses import dataclass
from enum import IntEnum
from typing import Any


class ItemState(IntEnum):
    DELETED = 0
    CHANGED = 1
    UNCHANGED = 2


@dataclass
class KV:
    key: bytes
    value: Any


@dataclass
class _Entry:
    hash: int
    value: Any
    state: ItemState


def _as_key(key: bytes | str) -> bytes:
    return key.encode() if isinstance(key, str) else bytes(key)


class DiffStore:
    """Tracks changes of values by key, using a hash to detect changes."""

    def __init__(self) -> None:
        self._keys: list[bytes] = []
        self._entries: dict[bytes, _Entry] = {}

    def __len__(self) -> int:
        return len(self._keys)

    def reset(self, state: ItemState) -> None:
        """Start a new round: drop deleted entries and mark the others with ``state``."""
        kept = []
        for key in self._keys:
            entry = self._entries[key]
            if entry.state == ItemState.DELETED:
                del self._entries[key]
            else:
                entry.state = state
                entry.value = None
                kept.append(key)
        self._keys = kept

    def set(self, key: bytes | str, hash: int, value: Any) -> None:
        key = _as_key(key)
        entry = self._entries.get(key)
        if entry is None:
            bisect.insort(self._keys, key)
            self._entries[key] = _Entry(hash, value, ItemState.CHANGED)
            return
        if entry.hash == hash:
            if entry.state == ItemState.DELETED:
                entry.value = value
                entry.state = ItemState.UNCHANGED
            return
        entry.hash = hash
        entry.value = value
        entry.state = ItemState.CHANGED

    def delete_by_prefix(self, prefix: bytes | str) -> None:
        prefix = _as_key(prefix)
        start = bisect.bisect_left(self._keys, prefix)
        for key in itertools.islice(self._keys, start, None):
            if not key.startswith(prefix):
                break
            self._entries[key].state = ItemState.DELETED

    def updated(self) -> list[KV]:
        """Changed entries, in ascending key order."""
        return [
            KV(key, entry.value)
            for key in self._keys
            if (entry := self._entries[key]).state == ItemState.CHANGED
        ]

    def deleted(self) -> list[KV]:
        """Deleted entries, in descending key order."""
        return [
            KV(key, entry.value)
            for key in reversed(self._keys)
            if (entry := self._entries[key]).state == ItemState.DELETED
        ]