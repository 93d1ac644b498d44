"""Streaming of diff-store changes as operations to a sink."""

from __future__ import annotations

from typing import Iterable, Protocol

from .diffstore import DiffStore, ItemState
from .localnet import OpItem, OpKind, Ref, Set, encode_message


class OpSink(Protocol):
    """Receives operations; raises to signal a failure."""

    def send(self, op: OpItem) -> None: ...


class LocalSink(OpSink, Protocol):
    """An operation sink that also drives the request cycle for a node."""

    def wait_request(self) -> str:
        """Wait for the next diff request and return the requested node name."""
        ...

    def reset(self) -> None:
        """Reset the sink state, e.g. after a reconnection."""
        ...


class WatchAborted(Exception):
    """Sending to the sink failed; the watch cannot go on."""


class WatchState:
    """One diff store per watched set, and the sending of their changes."""

    def __init__(self, res: OpSink | None, sets: Iterable[Set]) -> None:
        self.res = res
        self.sets = list(sets)
        self._diffs = {s: DiffStore() for s in self.sets}
        self.err: WatchAborted | None = None

    def store_for(self, set: Set) -> DiffStore:
        try:
            return self._diffs[set]
        except KeyError:
            raise ValueError(f"not watching set {set!r}") from None

    def send_updates(self, set: Set) -> int:
        if self.err is not None:
            return 0
        updated = self.store_for(set).updated()
        for kv in updated:
            self._send(OpItem(OpKind.SET, Ref(set, kv.key.decode()), encode_message(kv.value)))
        return len(updated)

    def send_deletes(self, set: Set) -> int:
        if self.err is not None:
            return 0
        deleted = self.store_for(set).deleted()
        for kv in deleted:
            self._send(OpItem(OpKind.DELETE, Ref(set, kv.key.decode())))
        return len(deleted)

    def reset(self, state: ItemState) -> None:
        for store in self._diffs.values():
            store.reset(state)

    def send_sync(self) -> None:
        self._send(OpItem(OpKind.SYNC))

    def send_reset(self) -> None:
        self._send(OpItem(OpKind.RESET))

    def _send(self, item: OpItem) -> None:
        if self.err is not None:
            return
        try:
            self.res.send(item)
        except Exception as exc:  # any sink failure aborts the watch
            self.err = WatchAborted(f"send error: {exc}")