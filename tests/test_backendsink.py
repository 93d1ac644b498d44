import pytest

from kpng.backendsink import (
    BackendSink,
    ServiceEndpoints,
    array_backend,
    path_less,
    to_array_callback,
)
from kpng.localnet import (
    Endpoint,
    IPSet,
    OpItem,
    OpKind,
    Ref,
    Service,
    Set,
    encode_message,
)
from kpng.store2diff import LocalDiffConfig

SYNC = OpItem(OpKind.SYNC)


def set_op(set_, path, value):
    return OpItem(OpKind.SET, Ref(set_, path), encode_message(value))


def recording_sink(config=None):
    received = []
    sink = BackendSink(config)
    sink.callback = to_array_callback(received.append)
    return sink, received


def test_add_remove_service():
    sink, received = recording_sink()
    svc_ref = Ref(Set.SERVICES_SET, "test/nginx")

    sink.send(OpItem(OpKind.SET, svc_ref, encode_message(Service(namespace="test", name="nginx"))))
    sink.send(SYNC)
    assert len(received[-1]) == 1
    assert received[-1][0].service == Service(namespace="test", name="nginx")

    sink.send(OpItem(OpKind.DELETE, svc_ref))
    sink.send(SYNC)
    assert len(received[-1]) == 0


PATHS = ["ns/aaa", "ns/aaa/0", "ns/aaa-udp", "ns/aaa-udp/0", "ns/bbb", "ns/ccc/0"]


@pytest.mark.parametrize("i", range(1, len(PATHS)))
def test_less(i):
    assert path_less(PATHS[i - 1], PATHS[i])
    assert not path_less(PATHS[i], PATHS[i - 1])


def test_equal():
    assert not path_less("ns/aaa", "ns/aaa")


def test_endpoints_grouped_under_their_service():
    sink, received = recording_sink()
    ep1 = Endpoint(ips=IPSet(v4=["10.0.0.1"]))
    ep2 = Endpoint(ips=IPSet(v4=["10.0.0.2"]))
    sink.send(set_op(Set.SERVICES_SET, "ns/aaa-udp", Service(namespace="ns", name="aaa-udp")))
    sink.send(set_op(Set.ENDPOINTS_SET, "ns/aaa-udp/0", ep2))
    sink.send(set_op(Set.SERVICES_SET, "ns/aaa", Service(namespace="ns", name="aaa")))
    sink.send(set_op(Set.ENDPOINTS_SET, "ns/aaa/0", ep1))
    sink.send(SYNC)

    assert received[-1] == [
        ServiceEndpoints(Service(namespace="ns", name="aaa"), [ep1]),
        ServiceEndpoints(Service(namespace="ns", name="aaa-udp"), [ep2]),
    ]


def test_set_replaces_value_at_same_path():
    sink, received = recording_sink()
    sink.send(set_op(Set.SERVICES_SET, "ns/a", Service(namespace="ns", name="a", type="ClusterIP")))
    sink.send(set_op(Set.SERVICES_SET, "ns/a", Service(namespace="ns", name="a", type="LoadBalancer")))
    sink.send(SYNC)
    assert [se.service.type for se in received[-1]] == ["LoadBalancer"]


def test_other_sets_are_ignored():
    sink, received = recording_sink()
    sink.send(set_op(Set.GLOBAL_NODE_INFOS, "x", Service(name="x")))
    sink.send(SYNC)
    assert received[-1] == []


def test_endpoint_without_service_raises():
    sink, _ = recording_sink()
    sink.send(set_op(Set.ENDPOINTS_SET, "ns/a/0", Endpoint(ips=IPSet(v4=["10.0.0.1"]))))
    with pytest.raises(ValueError):
        sink.send(SYNC)


def test_invalid_data_raises():
    sink, _ = recording_sink()
    with pytest.raises(ValueError):
        sink.send(OpItem(OpKind.SET, Ref(Set.SERVICES_SET, "ns/a"), b"not json"))


def test_reset_clears_state():
    sink, received = recording_sink()
    sink.send(set_op(Set.SERVICES_SET, "ns/a", Service(namespace="ns", name="a")))
    sink.reset()
    sink.send(SYNC)
    assert received[-1] == []


def test_sync_without_callback_raises():
    sink = BackendSink(None)
    with pytest.raises(ValueError):
        sink.send(SYNC)


def test_wait_request_returns_config_node_name():
    sink = BackendSink(LocalDiffConfig(node_name="node-7"))
    assert sink.wait_request() == "node-7"


def test_array_backend_calls_every_handler():
    first, second = [], []
    sink = BackendSink(None, array_backend(first.append, second.append))
    sink.send(set_op(Set.SERVICES_SET, "ns/a", Service(namespace="ns", name="a")))
    sink.send(SYNC)
    assert first == second
    assert [se.service.name for se in first[0]] == ["a"]