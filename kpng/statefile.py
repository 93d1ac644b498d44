"""Global state as a YAML document: dumping the store to a file and loading a file into it."""

from __future__ import annotations

import json
import logging
import os
import posixpath
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from . import proxystore
from .diffstore import ItemState
from .localnet import (
    EndpointConditions,
    EndpointInfo,
    Node,
    Service,
    ServiceInfo,
    decode_message,
    encode_message,
    message_hash,
    xxhash64,
)
from .proxystore import Store, Tx
from .watchstate import WatchState

log = logging.getLogger(__name__)


@dataclass
class ServiceAndEndpoints:
    service: Service
    topology_keys: list[str] = field(default_factory=list)
    endpoints: list[EndpointInfo] = field(default_factory=list)


@dataclass
class GlobalState:
    nodes: list[Node] = field(default_factory=list)
    services: list[ServiceAndEndpoints] = field(default_factory=list)


# ---------------------------------------------------------------------------
# YAML encoding


def _expect_mapping(raw: Any, what: str) -> dict:
    if not isinstance(raw, dict):
        raise ValueError(f"{what}: expected a mapping")
    return raw


def _expect_list(raw: Any, what: str) -> list:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValueError(f"{what}: expected a list")
    return raw


def _check_keys(raw: dict, allowed: set[str], what: str) -> None:
    unknown = set(raw) - allowed
    if unknown:
        raise ValueError(f"{what}: unknown fields {sorted(map(str, unknown))}")


def _decode(cls: type, raw: Any):
    try:
        return decode_message(cls, json.dumps(raw))
    except (TypeError, KeyError, AttributeError) as exc:
        raise ValueError(f"invalid {cls.__name__}: {exc}") from exc


def _plain(message: Any) -> Any:
    return json.loads(encode_message(message))


def load_global_state(text: str | bytes) -> GlobalState:
    """Parse a global state document, rejecting unknown fields."""
    raw = yaml.safe_load(text)
    if raw is None:
        return GlobalState()
    _expect_mapping(raw, "global state")
    _check_keys(raw, {"nodes", "services"}, "global state")

    nodes = [_decode(Node, n) for n in _expect_list(raw.get("nodes"), "nodes")]

    services = []
    for item in _expect_list(raw.get("services"), "services"):
        _expect_mapping(item, "service entry")
        _check_keys(item, {"service", "topology_keys", "endpoints"}, "service entry")
        if item.get("service") is None:
            raise ValueError("service entry without a service")
        services.append(
            ServiceAndEndpoints(
                service=_decode(Service, item["service"]),
                topology_keys=[
                    str(k) for k in _expect_list(item.get("topology_keys"), "topology_keys")
                ],
                endpoints=[
                    _decode(EndpointInfo, e)
                    for e in _expect_list(item.get("endpoints"), "endpoints")
                ],
            )
        )

    return GlobalState(nodes=nodes, services=services)


def dump_global_state(state: GlobalState) -> str:
    """Render a global state as a YAML document."""
    doc = {
        "nodes": [_plain(n) for n in state.nodes],
        "services": [
            {
                "service": _plain(se.service),
                "topology_keys": list(se.topology_keys),
                "endpoints": [_plain(e) for e in se.endpoints],
            }
            for se in state.services
        ],
    }
    return yaml.safe_dump(doc, sort_keys=False)


# ---------------------------------------------------------------------------
# jobs


def _stopped(stop: threading.Event | None) -> bool:
    return stop is not None and stop.is_set()


@dataclass
class StoreToFileJob:
    """Writes the global state to a file each time the store changes."""

    store: Store
    file_path: str | os.PathLike = "global-state.yaml"

    def run(self, stop: threading.Event | None = None) -> None:
        """Write the state on each new revision until stopped or the store is closed."""
        rev = 0
        closed = False

        while not closed and not _stopped(stop):
            state = GlobalState()
            done = False

            def collect(tx: Tx) -> None:
                nonlocal done
                if not tx.all_synced():
                    return
                for kv in tx.each(proxystore.NODES):
                    state.nodes.append(kv.node.node)
                for kv in tx.each(proxystore.SERVICES):
                    state.services.append(
                        ServiceAndEndpoints(
                            service=kv.service.service,
                            topology_keys=kv.service.topology_keys,
                            endpoints=list(tx.each_endpoint_of_service(kv.namespace, kv.name)),
                        )
                    )
                done = True

            rev, closed = self.store.view(rev, collect)
            if not done:
                continue

            Path(self.file_path).write_text(dump_global_state(state))
            log.info("wrote global state")


class FileToStoreJob:
    """Loads a global state file into the store whenever the file changes."""

    def __init__(self, file_path: str | os.PathLike, store: Store) -> None:
        self.file_path = file_path
        self.store = store
        self._watch = WatchState(None, proxystore.ALL_SETS)
        self._mtime = 0

    def apply(self, state: GlobalState) -> None:
        """Bring the store in line with ``state``, deleting what it no longer holds."""
        diff_nodes = self._watch.store_for(proxystore.NODES)
        diff_svcs = self._watch.store_for(proxystore.SERVICES)
        diff_eps = self._watch.store_for(proxystore.ENDPOINTS)

        for node in state.nodes:
            diff_nodes.set(node.name, message_hash(node), node)

        for se in state.services:
            svc = se.service
            if svc.namespace == "":
                svc.namespace = "default"

            info = ServiceInfo(service=svc, topology_keys=se.topology_keys)
            full_name = f"{svc.namespace}/{svc.name}"
            diff_svcs.set(full_name, message_hash(info), info)

            if se.endpoints:
                for ep in se.endpoints:
                    ep.namespace = svc.namespace
                    ep.source_name = svc.name
                    ep.service_name = svc.name
                    if ep.conditions is None:
                        ep.conditions = EndpointConditions(ready=True)
                h = xxhash64(b"".join(encode_message(ep) for ep in se.endpoints))
                diff_eps.set(full_name, h, se.endpoints)

        def update(tx: Tx) -> None:
            for kv in diff_nodes.updated():
                log.info("U node %s", kv.key.decode())
                tx.set_node(kv.value)
            for kv in diff_svcs.updated():
                log.info("U service %s", kv.key.decode())
                tx.set_service(kv.value.service, kv.value.topology_keys)
            for kv in diff_eps.updated():
                key = kv.key.decode()
                log.info("U endpoints %s", key)
                tx.set_endpoints_of_source(
                    posixpath.dirname(key), posixpath.basename(key), kv.value
                )

            for kv in diff_eps.deleted():
                key = kv.key.decode()
                log.info("D endpoints %s", key)
                tx.del_endpoints_of_source(posixpath.dirname(key), posixpath.basename(key))
            for kv in diff_svcs.deleted():
                key = kv.key.decode()
                log.info("D service %s", key)
                tx.del_service(posixpath.dirname(key), posixpath.basename(key))
            for kv in diff_nodes.deleted():
                key = kv.key.decode()
                log.info("D node %s", key)
                tx.del_node(key)

            for set_ in proxystore.ALL_SETS:
                tx.set_sync(set_)

        self.store.update(update)

        for set_ in proxystore.ALL_SETS:
            self._watch.store_for(set_).reset(ItemState.DELETED)

    def poll(self) -> bool:
        """Load the file if it changed since the last load; return whether it was applied."""
        try:
            mtime = os.stat(self.file_path).st_mtime_ns
        except OSError as exc:
            log.warning("failed to stat config: %s", exc)
            return False

        if mtime <= self._mtime:
            return False
        self._mtime = mtime

        try:
            text = Path(self.file_path).read_text()
        except OSError as exc:
            log.warning("failed to read config: %s", exc)
            return False

        try:
            state = load_global_state(text)
        except (yaml.YAMLError, ValueError) as exc:
            log.warning("failed to parse config: %s", exc)
            return False

        self.apply(state)
        return True

    def run(self, stop: threading.Event | None = None, interval: float = 1.0) -> None:
        """Poll the file every ``interval`` seconds until ``stop`` is set."""
        stop = stop if stop is not None else threading.Event()
        while not stop.wait(interval):
            self.poll()