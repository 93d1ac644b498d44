"""Jobs that turn the global store into streams of diff operations."""

from __future__ import annotations

import socket
import threading
from dataclasses import dataclass, field
from typing import Protocol

from . import proxystore
from .diffstore import ItemState
from .endpoints import for_node
from .localnet import OpItem, Set
from .proxystore import Store, Tx
from .watchstate import LocalSink, OpSink, WatchState


class DiffSink(OpSink, Protocol):
    """Drives a diff job: waits for requests, fills the diff stores and sends diffs."""

    def wait(self) -> None:
        """Block until the next diff is requested; raise to end the job."""
        ...

    def update(self, tx: Tx, w: WatchState) -> None:
        """Load the current state of the store into the watch state."""
        ...

    def send_diff(self, w: WatchState) -> bool:
        """Send the pending changes, returning whether anything was sent."""
        ...


class _WaitSink(OpSink, Protocol):
    def wait(self) -> None: ...


def _stopped(stop: threading.Event | None) -> bool:
    return stop is not None and stop.is_set()


@dataclass
class DiffJob:
    """Sends a diff of the watched sets to the sink each time it asks for one."""

    store: Store
    sets: list[Set]
    sink: DiffSink

    def run(self, stop: threading.Event | None = None) -> None:
        """Serve diff requests until stopped or the store is closed.

        Raises WatchAborted when sending to the sink fails.
        """
        w = WatchState(self.sink, self.sets)
        rev = 0

        while not _stopped(stop):
            self.sink.wait()

            if rev == 0:
                w.send_reset()

            updated = False
            while not updated:
                rev, closed = self.store.view(rev, lambda tx: self.sink.update(tx, w))
                if closed:
                    return
                if w.err is not None:
                    raise w.err
                updated = self.sink.send_diff(w)

            w.send_sync()
            if w.err is not None:
                raise w.err


GLOBAL_SETS = (
    Set.GLOBAL_NODE_INFOS,
    Set.GLOBAL_SERVICE_INFOS,
    Set.GLOBAL_ENDPOINT_INFOS,
)


@dataclass
class GlobalDiffJob:
    """Streams the whole global state (nodes, services and endpoints)."""

    store: Store
    sink: _WaitSink

    def run(self, stop: threading.Event | None = None) -> None:
        DiffJob(self.store, list(GLOBAL_SETS), self).run(stop)

    def wait(self) -> None:
        self.sink.wait()

    def update(self, tx: Tx, w: WatchState) -> None:
        if not tx.all_synced():
            return
        for set_ in GLOBAL_SETS:
            diff = w.store_for(set_)
            for kv in tx.each(set_):
                diff.set(kv.path(), kv.value.hash, kv.value)

    def send_diff(self, w: WatchState) -> bool:
        count = 0
        count += w.send_updates(Set.GLOBAL_SERVICE_INFOS)
        count += w.send_updates(Set.GLOBAL_NODE_INFOS)
        count += w.send_updates(Set.GLOBAL_ENDPOINT_INFOS)
        count += w.send_deletes(Set.GLOBAL_ENDPOINT_INFOS)
        count += w.send_deletes(Set.GLOBAL_NODE_INFOS)
        count += w.send_deletes(Set.GLOBAL_SERVICE_INFOS)
        w.reset(ItemState.DELETED)
        return count != 0

    def send(self, op: OpItem) -> None:
        self.sink.send(op)


@dataclass
class LocalDiffConfig:
    """Settings of a node-local diff; the node name defaults to the host name."""

    node_name: str = field(default_factory=socket.gethostname)


class LocalDiffRun:
    """Per-connection state of a local diff: the node the sink asked for."""

    def __init__(self, sink: LocalSink) -> None:
        self.sink = sink
        self.node_name = ""

    def wait(self) -> None:
        self.node_name = self.sink.wait_request()

    def update(self, tx: Tx, w: WatchState) -> None:
        if not tx.all_synced():
            return

        svcs = w.store_for(Set.SERVICES_SET)
        seps = w.store_for(Set.ENDPOINTS_SET)

        for kv in tx.each(proxystore.SERVICES):
            key = f"{kv.namespace}/{kv.name}"
            svcs.set(key, kv.service.hash, kv.service.service)

            for info in for_node(tx, kv.service, self.node_name):
                seps.set(f"{key}/{info.hash:x}", info.hash, info.endpoint)

    def send_diff(self, w: WatchState) -> bool:
        count = 0
        count += w.send_updates(Set.SERVICES_SET)
        count += w.send_updates(Set.ENDPOINTS_SET)
        count += w.send_deletes(Set.ENDPOINTS_SET)
        count += w.send_deletes(Set.SERVICES_SET)
        w.reset(ItemState.DELETED)
        return count != 0

    def send(self, op: OpItem) -> None:
        self.sink.send(op)


@dataclass
class LocalDiffJob:
    """Streams the services and endpoints a node should use."""

    store: Store
    sink: LocalSink

    def run(self, stop: threading.Event | None = None) -> None:
        job = DiffJob(
            self.store,
            [Set.SERVICES_SET, Set.ENDPOINTS_SET],
            LocalDiffRun(self.sink),
        )
        job.run(stop)