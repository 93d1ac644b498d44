"""The global state store: services, endpoints and nodes, versioned by revision."""

from __future__ import annotations

import bisect
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Iterator

from .localnet import (
    EndpointInfo,
    Node,
    NodeInfo,
    Service,
    ServiceInfo,
    Set,
    message_hash,
)

log = logging.getLogger(__name__)

SERVICES = Set.GLOBAL_SERVICE_INFOS
ENDPOINTS = Set.GLOBAL_ENDPOINT_INFOS
NODES = Set.GLOBAL_NODE_INFOS

ALL_SETS = (SERVICES, ENDPOINTS, NODES)


class ReadOnlyError(RuntimeError):
    """A write was attempted in a read-only transaction."""


@dataclass
class StoreKV:
    """One entry of the store, ordered by set, namespace, name, source and key."""

    set: Set
    namespace: str = ""
    name: str = ""
    source: str = ""
    key: str = ""
    value: Any = None
    service: ServiceInfo | None = None
    endpoint: EndpointInfo | None = None
    node: NodeInfo | None = None
    sync: bool | None = None

    @property
    def _sort_key(self) -> tuple:
        return (int(self.set), self.namespace, self.name, self.source, self.key)

    def path(self) -> str:
        return "|".join((self.namespace, self.name, self.source, self.key))

    def set_path(self, path: str) -> None:
        parts = path.split("|")
        if len(parts) < 4:
            raise ValueError(f"invalid path: {path!r}")
        self.namespace, self.name, self.source, self.key = parts[:4]


def _hash_key(h: int) -> str:
    return format(h, "x")


def _endpoint_hash(info: EndpointInfo) -> int:
    return message_hash(
        EndpointInfo(
            endpoint=info.endpoint,
            conditions=info.conditions,
            topology=info.topology,
        )
    )


class Store:
    """An ordered, revisioned store whose readers can wait for new revisions."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.RLock())
        self._rev = 0
        self._closed = False
        self._keys: list[tuple] = []
        self._items: dict[tuple, StoreKV] = {}
        self._sync: dict[Set, bool] = {}

    @property
    def rev(self) -> int:
        return self._rev

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Mark the store closed and wake up every waiting reader."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def update(self, update: Callable[[Tx], None]) -> None:
        """Run ``update`` in a write transaction; bump the revision if anything changed."""
        with self._cond:
            tx = Tx(self)
            update(tx)
            if tx.changes == 0:
                return
            self._rev += 1
            self._cond.notify_all()
            if log.isEnabledFor(logging.DEBUG):
                log.debug("store updated to rev %d with %d entries", self._rev, len(self._keys))
                for kv in self._items.values():
                    log.debug(
                        "- entry: %s/%s: %s/%s/%s/%s",
                        kv.sync, kv.set, kv.namespace, kv.name, kv.source, kv.key,
                    )

    def view(self, after_rev: int, view: Callable[[Tx], None]) -> tuple[int, bool]:
        """Wait for a revision newer than ``after_rev``, then run ``view`` read-only.

        Returns the revision seen and whether the store is closed.
        """
        with self._cond:
            self._cond.wait_for(lambda: self._rev > after_rev or self._closed)
            if self._closed:
                return 0, True
            view(Tx(self, read_only=True))
            return self._rev, False

    # ordered index helpers

    def _get(self, key: tuple) -> StoreKV | None:
        return self._items.get(key)

    def _put(self, kv: StoreKV) -> None:
        key = kv._sort_key
        if key not in self._items:
            bisect.insort(self._keys, key)
        self._items[key] = kv

    def _remove(self, key: tuple) -> bool:
        if self._items.pop(key, None) is None:
            return False
        idx = bisect.bisect_left(self._keys, key)
        del self._keys[idx]
        return True

    def _scan(self, start: tuple, keep: Callable[[StoreKV], bool]) -> list[StoreKV]:
        """Entries from ``start`` onwards, up to the first one ``keep`` rejects."""
        found = []
        for key in self._keys[bisect.bisect_left(self._keys, start):]:
            kv = self._items[key]
            if not keep(kv):
                break
            found.append(kv)
        return found


class Tx:
    """A transaction on a store; read-only transactions refuse writes."""

    def __init__(self, store: Store, read_only: bool = False) -> None:
        self._store = store
        self.read_only = read_only
        self.changes = 0

    def _check_writable(self) -> None:
        if self.read_only:
            raise ReadOnlyError("read-only!")

    def _set(self, kv: StoreKV) -> None:
        self._check_writable()
        prev = self._store._get(kv._sort_key)
        if prev is not None and prev.value.hash == kv.value.hash:
            return
        self._store._put(kv)
        self.changes += 1

    def _del(self, kv: StoreKV) -> None:
        self._check_writable()
        if self._store._remove(kv._sort_key):
            self.changes += 1

    def each(self, set: Set) -> Iterator[StoreKV]:
        """Every entry of ``set``, in order."""
        yield from self._store._scan((int(set),), lambda kv: kv.set == set)

    # sync

    def all_synced(self) -> bool:
        return all(self.is_synced(s) for s in ALL_SETS)

    def is_synced(self, set: Set) -> bool:
        return self._store._sync.get(set, False)

    def set_sync(self, set: Set) -> None:
        self._check_writable()
        if not self._store._sync.get(set, False):
            self._store._sync[set] = True
            self.changes += 1

    # services

    def set_service(self, service: Service, topology_keys: list[str]) -> None:
        info = ServiceInfo(
            service=service,
            topology_keys=topology_keys,
            hash=message_hash(ServiceInfo(service=service, topology_keys=topology_keys)),
        )
        self._set(
            StoreKV(
                set=SERVICES,
                namespace=service.namespace,
                name=service.name,
                value=info,
                service=info,
            )
        )

    def del_service(self, namespace: str, name: str) -> None:
        self._del(StoreKV(set=SERVICES, namespace=namespace, name=name))

    # endpoints

    def each_endpoint_of_service(self, namespace: str, service_name: str) -> Iterator[EndpointInfo]:
        found = self._store._scan(
            (int(ENDPOINTS), namespace, service_name),
            lambda kv: kv.set == ENDPOINTS
            and kv.namespace == namespace
            and kv.name == service_name,
        )
        for kv in found:
            yield kv.endpoint

    def set_endpoints_of_source(
        self, namespace: str, source_name: str, infos: list[EndpointInfo]
    ) -> None:
        """Replace all endpoints of one source: add new, keep existing, delete removed."""
        self._check_writable()

        seen: set[int] = set()
        for info in infos:
            if info.namespace != namespace:
                raise ValueError(f"inconsistent namespace: {namespace} != {info.namespace}")
            if info.source_name != source_name:
                raise ValueError(f"inconsistent source: {source_name} != {info.source_name}")
            info.hash = _endpoint_hash(info)
            seen.add(info.hash)

        existing = self._store._scan(
            (int(ENDPOINTS), namespace, "", source_name),
            lambda kv: kv.set == ENDPOINTS
            and kv.namespace == namespace
            and kv.source == source_name,
        )
        to_delete: list[StoreKV] = []
        for kv in existing:
            if kv.endpoint.hash in seen:
                continue
            ei = kv.endpoint
            to_delete.append(kv)
            to_delete.append(
                StoreKV(
                    set=ENDPOINTS,
                    namespace=ei.namespace,
                    name=ei.service_name,
                    source=ei.source_name,
                    key=kv.key,
                )
            )
        for kv in to_delete:
            self._del(kv)

        for info in infos:
            key = _hash_key(info.hash)
            kv = StoreKV(
                set=ENDPOINTS,
                namespace=info.namespace,
                name=info.service_name,
                source=info.source_name,
                key=key,
                value=info,
                endpoint=info,
            )
            if self._store._get(kv._sort_key) is not None:
                continue
            self._set(kv)
            self._set(
                StoreKV(
                    set=ENDPOINTS,
                    namespace=info.namespace,
                    source=info.source_name,
                    key=key,
                    value=info,
                    endpoint=info,
                )
            )

    def del_endpoints_of_source(self, namespace: str, source_name: str) -> None:
        self._check_writable()
        found = self._store._scan(
            (int(ENDPOINTS), namespace, "", source_name),
            lambda kv: kv.set == ENDPOINTS
            and kv.namespace == namespace
            and kv.name == ""
            and kv.source == source_name,
        )
        to_delete: list[StoreKV] = []
        for kv in found:
            to_delete.append(kv)
            to_delete.append(
                StoreKV(
                    set=ENDPOINTS,
                    namespace=namespace,
                    name=kv.endpoint.service_name,
                    source=source_name,
                    key=kv.key,
                )
            )
        for kv in to_delete:
            self._del(kv)

    def set_endpoint(self, info: EndpointInfo) -> None:
        """Re-index one endpoint whose content may have changed."""
        self._check_writable()
        new_hash = _endpoint_hash(info)
        if info.hash == new_hash:
            return

        prev_key = _hash_key(info.hash)
        self._del(
            StoreKV(
                set=ENDPOINTS,
                namespace=info.namespace,
                name=info.service_name,
                source=info.source_name,
                key=prev_key,
            )
        )
        self._del(
            StoreKV(
                set=ENDPOINTS,
                namespace=info.namespace,
                source=info.source_name,
                key=prev_key,
            )
        )

        info.hash = new_hash
        key = _hash_key(new_hash)
        self._set(
            StoreKV(
                set=ENDPOINTS,
                namespace=info.namespace,
                name=info.service_name,
                source=info.source_name,
                key=key,
                value=info,
                endpoint=info,
            )
        )
        self._set(
            StoreKV(
                set=ENDPOINTS,
                namespace=info.namespace,
                source=info.source_name,
                key=key,
                value=info,
                endpoint=info,
            )
        )

    # nodes

    def get_node(self, name: str) -> Node | None:
        kv = self._store._get(StoreKV(set=NODES, name=name)._sort_key)
        if kv is None:
            return None
        return kv.node.node

    def set_node(self, node: Node) -> None:
        info = NodeInfo(node=node, hash=message_hash(node))
        self._set(StoreKV(set=NODES, name=node.name, node=info, value=info))

    def del_node(self, name: str) -> None:
        self._del(StoreKV(set=NODES, name=name))