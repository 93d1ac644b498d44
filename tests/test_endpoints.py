from kpng.endpoints import for_node
from kpng.localnet import (
    Endpoint,
    EndpointConditions,
    EndpointInfo,
    IPSet,
    Node,
    Service,
    ServiceInfo,
)
from kpng.proxystore import Store

HOST = "kubernetes.io/hostname"


def make_store(node_labels, eps):
    store = Store()
    infos = [
        EndpointInfo(
            namespace="ns",
            source_name="src",
            service_name="web",
            topology=topology,
            endpoint=Endpoint(ips=IPSet(v4=[ip])),
            conditions=EndpointConditions(ready=ready),
        )
        for ip, ready, topology in eps
    ]

    def update(tx):
        if node_labels is not None:
            tx.set_node(Node(name="n1", labels=node_labels))
        tx.set_endpoints_of_source("ns", "src", infos)

    store.update(update)
    return store


def select(store, topology_keys, node_name="n1"):
    info = ServiceInfo(service=Service(namespace="ns", name="web"), topology_keys=topology_keys)
    out = []
    store.view(0, lambda tx: out.extend(for_node(tx, info, node_name)))
    return sorted(i.endpoint.ips.v4[0] for i in out)


EPS = [
    ("10.1.0.1", True, {HOST: "n1"}),
    ("10.1.0.2", True, {HOST: "n2"}),
    ("10.1.0.3", False, {HOST: "n1"}),
    ("10.1.0.4", True, {}),
]


def test_default_keys_select_all_ready():
    store = make_store({HOST: "n1"}, EPS)
    assert select(store, []) == ["10.1.0.1", "10.1.0.2", "10.1.0.4"]


def test_topology_key_selects_local_ready_endpoints():
    store = make_store({HOST: "n1"}, EPS)
    assert select(store, [HOST, "*"]) == ["10.1.0.1"]


def test_falls_back_to_wildcard_when_no_match():
    eps = [(ip, ready, topo) for ip, ready, topo in EPS if topo.get(HOST) != "n1"]
    store = make_store({HOST: "n1"}, eps)
    assert select(store, [HOST, "*"]) == ["10.1.0.2", "10.1.0.4"]


def test_key_missing_on_node_is_skipped():
    store = make_store({}, EPS)
    assert select(store, [HOST]) == []
    assert select(store, [HOST, "*"]) == ["10.1.0.1", "10.1.0.2", "10.1.0.4"]


def test_unknown_node_has_no_labels():
    store = make_store(None, EPS)
    assert select(store, [HOST], node_name="ghost") == []
    assert select(store, ["*"], node_name="ghost") == ["10.1.0.1", "10.1.0.2", "10.1.0.4"]


def test_no_ready_endpoints_selects_nothing():
    eps = [(ip, False, topo) for ip, _, topo in EPS]
    store = make_store({HOST: "n1"}, eps)
    assert select(store, ["*"]) == []