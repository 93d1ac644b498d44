"""Selection of the endpoints a node should use for a service."""

from __future__ import annotations

from .localnet import EndpointInfo, ServiceInfo
from .proxystore import Tx


def for_node(tx: Tx, service_info: ServiceInfo, node_name: str) -> list[EndpointInfo]:
    """Ready endpoints of the service, filtered by the first topology key that matches any."""
    node = tx.get_node(node_name)
    labels = node.labels if node is not None and node.labels else {}

    topology_keys = service_info.topology_keys or ["*"]

    svc = service_info.service
    infos = list(tx.each_endpoint_of_service(svc.namespace, svc.name))

    selection: list[EndpointInfo] = []
    for topo_key in topology_keys:
        ref = ""
        if topo_key != "*":
            ref = labels.get(topo_key, "")
            if ref == "":
                continue

        for info in infos:
            if info.conditions is None or not info.conditions.ready:
                continue
            if topo_key != "*" and (not info.topology or info.topology.get(topo_key) != ref):
                continue
            selection.append(info)

        if selection:
            return selection

    return selection