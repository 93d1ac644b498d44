import pytest

from kpng.localnet import (
    Endpoint,
    EndpointConditions,
    EndpointInfo,
    IPSet,
    PortMapping,
    Protocol,
    Service,
    ServiceIPs,
    ServiceInfo,
    decode_message,
    encode_message,
    insert_sorted,
    message_hash,
    parse_protocol,
    xxhash64,
)


def test_insert_sorted():
    a = []
    insert_sorted(a, "b")
    assert a == ["b"]
    insert_sorted(a, "d")
    assert a == ["b", "d"]
    insert_sorted(a, "a")
    assert a == ["a", "b", "d"]
    insert_sorted(a, "c")
    assert a == ["a", "b", "c", "d"]


def test_insert_sorted_ignores_duplicates():
    a = ["a", "b"]
    insert_sorted(a, "b")
    assert a == ["a", "b"]


def test_ipset_add_example():
    s = IPSet()
    for ip in ["1.1.1.2", "1.1.1.4", "1.1.1.3", "1.1.1.1", "1.1.1.2"]:
        s.add(ip)
    for ip in ["::2", "::4", "::3", "::1", "::2"]:
        s.add(ip)
    assert s.v4 == ["1.1.1.1", "1.1.1.2", "1.1.1.3", "1.1.1.4"]
    assert s.v6 == ["::1", "::2", "::3", "::4"]


def test_ipset_add_invalid_returns_none():
    s = IPSet()
    assert s.add("not-an-ip") is None
    assert s.v4 == [] and s.v6 == []


def test_ipset_add_returns_parsed_ip():
    s = IPSet()
    ip = s.add("10.0.0.1")
    assert str(ip) == "10.0.0.1"


def test_ipset_mapped_v4_goes_to_v4():
    s = IPSet()
    s.add("::ffff:10.0.0.1")
    assert s.v4 == ["::ffff:10.0.0.1"]
    assert s.v6 == []


def test_ipset_from_ips_and_add_set():
    a = IPSet.from_ips(["10.0.0.2", "fd00::1", "10.0.0.1"])
    b = IPSet.from_ips(["10.0.0.3", "10.0.0.1"])
    a.add_set(b)
    a.add_set(None)
    assert a.v4 == ["10.0.0.1", "10.0.0.2", "10.0.0.3"]
    assert a.v6 == ["fd00::1"]


def test_endpoint_add_address_creates_set():
    ep = Endpoint()
    ep.add_address("10.1.2.3")
    ep.add_address("fd00::5")
    assert ep.ips == IPSet(v4=["10.1.2.3"], v6=["fd00::5"])


@pytest.mark.parametrize(
    "name,expected",
    [("TCP", Protocol.TCP), ("UDP", Protocol.UDP), ("SCTP", Protocol.SCTP), ("ICMP", Protocol.UNKNOWN_PROTOCOL)],
)
def test_parse_protocol(name, expected):
    assert parse_protocol(name) == expected


def test_encode_omits_defaults():
    assert encode_message(Service()) == b"{}"


def test_encode_decode_round_trip():
    info = EndpointInfo(
        namespace="default",
        source_name="svc0",
        service_name="svc0",
        topology={"zone": "a"},
        endpoint=Endpoint(ips=IPSet(v4=["10.0.0.1"]), hostname="h"),
        conditions=EndpointConditions(ready=True),
        hash=42,
    )
    assert decode_message(EndpointInfo, encode_message(info)) == info


def test_round_trip_service_with_ports():
    svc = Service(
        namespace="ns",
        name="web",
        type="ClusterIP",
        ips=ServiceIPs(cluster_ip="10.0.0.1", external_ips=IPSet()),
        ports=[PortMapping(protocol=Protocol.TCP, port=80, target_port=8080)],
    )
    decoded = decode_message(Service, encode_message(svc))
    assert decoded == svc
    assert decoded.ports[0].protocol is Protocol.TCP


def test_decode_rejects_unknown_field():
    with pytest.raises(ValueError):
        decode_message(Service, b'{"bogus": 1}')


def test_xxhash64_known_values():
    assert xxhash64(b"") == 0xEF46DB3751D8E999
    assert xxhash64(b"abc") == 0x44BC2CF5AD770999
    assert xxhash64(b"Nobody inspects the spammish repetition") == 0xFBCEA83C8A378BF1
    assert xxhash64(b"Nobody inspects the spammish repetition", 20141025) == 0xB559B98D844E0635


def test_xxhash64_accepts_str():
    assert xxhash64("abc") == xxhash64(b"abc")


def test_message_hash_tracks_content():
    a = ServiceInfo(service=Service(namespace="ns", name="a"), topology_keys=["*"])
    b = ServiceInfo(service=Service(namespace="ns", name="a"), topology_keys=["*"])
    c = ServiceInfo(service=Service(namespace="ns", name="b"), topology_keys=["*"])
    assert message_hash(a) == message_hash(b)
    assert message_hash(a) != message_hash(c)