"""Local network model: services, endpoints, nodes and the operations streamed about them."""

import bisect
import ipaddress
import json
import struct
import types
from dataclasses import dataclass, field, fields, is_dataclass
from enum import Enum, IntEnum
from functools import lru_cache
from typing import Any, TypeVar, Union, get_args, get_origin

T = TypeVar("T")


class Protocol(IntEnum):
    """Transport protocol of a port mapping."""

    UNKNOWN_PROTOCOL = 0
    TCP = 1
    UDP = 2
    SCTP = 3


class Set(IntEnum):
    """The data sets that can be watched."""

    GLOBAL_NODE_INFOS = 0
    GLOBAL_SERVICE_INFOS = 1
    GLOBAL_ENDPOINT_INFOS = 2
    SERVICES_SET = 3
    ENDPOINTS_SET = 4


def parse_protocol(s: str) -> Protocol:
    """Return the protocol named ``s``, or UNKNOWN_PROTOCOL."""
    return Protocol.__members__.get(s, Protocol.UNKNOWN_PROTOCOL)


def insert_sorted(items: list[str], value: str) -> None:
    """Insert ``value`` into the sorted list ``items`` unless it is already there."""
    idx = bisect.bisect_left(items, value)
    if idx != len(items) and items[idx] == value:
        return
    items.insert(idx, value)


def _parse_ip(s: str) -> "ipaddress.IPv4Address | ipaddress.IPv6Address | None":
    if "%" in s:
        return None
    try:
        return ipaddress.ip_address(s)
    except ValueError:
        return None


@dataclass
class IPSet:
    """Sorted, de-duplicated IPv4 and IPv6 address strings."""

    v4: list[str] = field(default_factory=list)
    v6: list[str] = field(default_factory=list)

    @classmethod
    def from_ips(cls, ips) -> "IPSet":
        ip_set = cls()
        ip_set.add_all(ips)
        return ip_set

    def add(self, s: str):
        """Add an address, returning the parsed IP or None if it could not be parsed."""
        ip = _parse_ip(s)
        if ip is None:
            return None
        is_v4 = ip.version == 4 or (ip.version == 6 and ip.ipv4_mapped is not None)
        insert_sorted(self.v4 if is_v4 else self.v6, s)
        return ip

    def add_all(self, ips) -> None:
        for ip in ips:
            self.add(ip)

    def add_set(self, other: "IPSet | None") -> None:
        if other is None:
            return
        for ip in other.v4:
            insert_sorted(self.v4, ip)
        for ip in other.v6:
            insert_sorted(self.v6, ip)


@dataclass
class Endpoint:
    ips: IPSet | None = None
    hostname: str = ""

    def add_address(self, s: str):
        """Add an address, returning the parsed IP or None if it could not be parsed."""
        if self.ips is None:
            self.ips = IPSet()
        return self.ips.add(s)


@dataclass
class EndpointConditions:
    ready: bool = False


@dataclass
class PortMapping:
    name: str = ""
    protocol: Protocol = Protocol.UNKNOWN_PROTOCOL
    port: int = 0
    node_port: int = 0
    target_port: int = 0
    target_port_name: str = ""


@dataclass
class ServiceIPs:
    cluster_ip: str = ""
    external_ips: IPSet | None = None


@dataclass
class Service:
    namespace: str = ""
    name: str = ""
    type: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    map_ip: bool = False
    ips: ServiceIPs | None = None
    ports: list[PortMapping] = field(default_factory=list)
    external_traffic_to_local: bool = False


@dataclass
class Node:
    name: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)


@dataclass
class EndpointInfo:
    namespace: str = ""
    source_name: str = ""
    service_name: str = ""
    node_name: str = ""
    topology: dict[str, str] = field(default_factory=dict)
    endpoint: Endpoint | None = None
    conditions: EndpointConditions | None = None
    hash: int = 0


@dataclass
class ServiceInfo:
    service: Service | None = None
    topology_keys: list[str] = field(default_factory=list)
    hash: int = 0


@dataclass
class NodeInfo:
    node: Node | None = None
    hash: int = 0


@dataclass
class Ref:
    set: Set = Set.GLOBAL_NODE_INFOS
    path: str = ""


class OpKind(Enum):
    SET = "set"
    DELETE = "delete"
    SYNC = "sync"
    RESET = "reset"


@dataclass
class OpItem:
    """One operation of a watch stream; ``data`` holds the encoded value of a SET."""

    kind: OpKind
    ref: Ref | None = None
    data: bytes = b""


# ---------------------------------------------------------------------------
# message encoding


def _to_plain(value: Any) -> Any:
    if is_dataclass(value) and not isinstance(value, type):
        out = {}
        for f in fields(value):
            v = getattr(value, f.name)
            if v is None or (not is_dataclass(v) and not v):
                continue
            out[f.name] = _to_plain(v)
        return out
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, list):
        return [_to_plain(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _to_plain(v) for k, v in value.items()}
    if isinstance(value, (bytes, bytearray)):
        return value.decode("latin-1")
    return value


@lru_cache(maxsize=None)
def _hints(cls: type) -> dict[str, Any]:
    return {f.name: f.type for f in fields(cls)}


def _from_plain(tp: Any, raw: Any) -> Any:
    origin = get_origin(tp)
    if origin in (Union, types.UnionType):
        if raw is None:
            return None
        inner = [a for a in get_args(tp) if a is not type(None)]
        return _from_plain(inner[0], raw)
    if origin is list:
        (item_type,) = get_args(tp)
        return [_from_plain(item_type, v) for v in raw]
    if origin is dict:
        _, value_type = get_args(tp)
        return {k: _from_plain(value_type, v) for k, v in raw.items()}
    if is_dataclass(tp):
        if not isinstance(raw, dict):
            raise ValueError(f"expected an object for {tp.__name__}")
        hints = _hints(tp)
        unknown = set(raw) - set(hints)
        if unknown:
            raise ValueError(f"unknown fields for {tp.__name__}: {sorted(unknown)}")
        return tp(**{name: _from_plain(hints[name], v) for name, v in raw.items()})
    if isinstance(tp, type) and issubclass(tp, Enum):
        return tp(raw)
    if tp is bytes:
        return raw.encode("latin-1")
    return raw


def encode_message(message: Any) -> bytes:
    """Encode a message deterministically, omitting default values."""
    return json.dumps(_to_plain(message), sort_keys=True, separators=(",", ":")).encode()


def decode_message(cls: type[T], data: bytes | str) -> T:
    """Decode bytes produced by :func:`encode_message` into an instance of ``cls``."""
    return _from_plain(cls, json.loads(data))


# ---------------------------------------------------------------------------
# XXH64

_MASK = (1 << 64) - 1
_P1 = 0x9E3779B185EBCA87
_P2 = 0xC2B2AE3D27D4EB4F
_P3 = 0x165667B19E3779F9
_P4 = 0x85EBCA77C2B2CA63
_P5 = 0x27D4EB2F165667C5


def _rotl(x: int, r: int) -> int:
    return ((x << r) | (x >> (64 - r))) & _MASK


def _round(acc: int, lane: int) -> int:
    acc = (acc + lane * _P2) & _MASK
    return (_rotl(acc, 31) * _P1) & _MASK


def _merge(acc: int, val: int) -> int:
    acc ^= _round(0, val)
    return (acc * _P1 + _P4) & _MASK


def xxhash64(data: bytes | str, seed: int = 0) -> int:
    """The 64-bit xxHash of ``data``."""
    if isinstance(data, str):
        data = data.encode()
    length = len(data)
    pos = 0
    if length >= 32:
        v1 = (seed + _P1 + _P2) & _MASK
        v2 = (seed + _P2) & _MASK
        v3 = seed & _MASK
        v4 = (seed - _P1) & _MASK
        for a, b, c, d in struct.iter_unpack("<4Q", data[: length - length % 32]):
            v1, v2, v3, v4 = _round(v1, a), _round(v2, b), _round(v3, c), _round(v4, d)
        pos = length - length % 32
        h = (_rotl(v1, 1) + _rotl(v2, 7) + _rotl(v3, 12) + _rotl(v4, 18)) & _MASK
        for v in (v1, v2, v3, v4):
            h = _merge(h, v)
    else:
        h = (seed + _P5) & _MASK
    h = (h + length) & _MASK

    while pos + 8 <= length:
        (lane,) = struct.unpack_from("<Q", data, pos)
        h ^= _round(0, lane)
        h = (_rotl(h, 27) * _P1 + _P4) & _MASK
        pos += 8
    if pos + 4 <= length:
        (lane,) = struct.unpack_from("<I", data, pos)
        h ^= (lane * _P1) & _MASK
        h = (_rotl(h, 23) * _P2 + _P3) & _MASK
        pos += 4
    for byte in data[pos:]:
        h ^= (byte * _P5) & _MASK
        h = (_rotl(h, 11) * _P1) & _MASK

    h ^= h >> 33
    h = (h * _P2) & _MASK
    h ^= h >> 29
    h = (h * _P3) & _MASK
    h ^= h >> 32
    return h


def message_hash(message: Any) -> int:
    """The xxHash of a message's encoding."""
    return xxhash64(encode_message(message))