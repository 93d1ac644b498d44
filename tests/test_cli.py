import io
import ipaddress

import pytest

from kpng.backendsink import ServiceEndpoints
from kpng.cli import IPPort, Uniq, build_parser, main, print_state
from kpng.localnet import Service


def test_ipport_to_json():
    ipp = IPPort(ip=ipaddress.ip_address("10.0.0.1"), port=80)
    assert ipp.to_json() == '"10.0.0.1:80"'


def test_ipport_round_trip():
    ipp = IPPort(ip=ipaddress.ip_address("192.168.1.20"), port=12090)
    assert IPPort.from_json(ipp.to_json()) == ipp


def test_ipport_bracketed_ipv6():
    ipp = IPPort.from_json('"[::1]:443"')
    assert ipp.ip == ipaddress.ip_address("::1")
    assert ipp.port == 443


def test_ipport_unparsable_host_gives_none():
    ipp = IPPort.from_json('"localhost:8080"')
    assert ipp.ip is None
    assert ipp.port == 8080


@pytest.mark.parametrize("text", ['"10.0.0.1"', '"1.2.3.4:abc"', "5", '"::1:80"'])
def test_ipport_errors(text):
    with pytest.raises(ValueError):
        IPPort.from_json(text)


def test_uniq_keeps_first_occurrence():
    u = Uniq()
    for v in ["b", "a", "b", "c", "a"]:
        u.add(v)
    assert u == ["b", "a", "c"]


def test_print_state():
    items = [
        ServiceEndpoints(service=Service(namespace="default", name="web")),
        ServiceEndpoints(service=Service(namespace="kube-system", name="dns")),
    ]
    out = io.StringIO()
    print_state(items, out)
    lines = out.getvalue().splitlines()
    assert lines[0] == "# " + "-" * 72
    assert lines[1].startswith("# ")
    assert lines[2] == "#"
    assert lines[3:] == [str(items[0]), str(items[1])]


def test_parser_defaults():
    args = build_parser().parse_args(["file", "to-file"])
    assert args.input == "global-state.yaml"
    assert args.output == "global-state.yaml"
    assert args.cpuprofile == ""


def test_parser_short_flags():
    args = build_parser().parse_args(["file", "-i", "in.yaml", "to-file", "-o", "out.yaml"])
    assert (args.input, args.output) == ("in.yaml", "out.yaml")


def test_parser_nft_flags():
    args = build_parser().parse_args(
        ["file", "to-local", "--node-name", "node-a", "to-nft",
         "--dry-run", "--maps-count", "16", "--split-bits", "16"]
    )
    assert args.node_name == "node-a"
    assert args.backend == "to-nft"
    assert args.dry_run is True
    assert args.maps_count == 16
    assert args.split_bits == 16
    assert args.split_bits6 == 120
    assert args.hook_priority == 0


def test_parser_requires_command():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_parser_requires_backend():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["file", "to-local"])


@pytest.mark.parametrize("backend", ["to-iptables", "to-ipvs"])
def test_main_unimplemented(backend, capsys):
    assert main(["file", "to-local", backend]) == 1
    assert "not implemented" in capsys.readouterr().err


def test_main_rejects_bad_nft_settings(capsys):
    assert main(["file", "to-local", "to-nft", "--split-bits", "40"]) == 1
    assert "split-bits" in capsys.readouterr().err