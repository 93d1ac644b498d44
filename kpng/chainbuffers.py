"""Named rule buffers that remember a hash of their content across rounds."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, TextIO

from .localnet import PortMapping, Protocol, xxhash64

log = logging.getLogger(__name__)


class ChainBuffer:
    """A buffer of nftables text for one chain or map, tracking its changes."""

    def __init__(self, kind: str, name: str) -> None:
        self.kind = kind
        self.name = name
        self.previous_hash = 0
        self._written: bytearray | None = None
        self._pos = 0
        self._deferred: list[Callable[[ChainBuffer], None]] = []

    def __repr__(self) -> str:
        return f"ChainBuffer(kind={self.kind!r}, name={self.name!r})"

    def write(self, data: str | bytes) -> int:
        """Append ``data`` and return the number of bytes written."""
        if isinstance(data, str):
            data = data.encode()
        if self._written is None:
            self._written = bytearray()
        self._written += data
        return len(data)

    def read(self) -> bytes:
        """Return and consume everything not read yet."""
        if self._written is None:
            return b""
        data = bytes(self._written[self._pos:])
        self._pos = len(self._written)
        return data

    def __len__(self) -> int:
        if self._written is None:
            return 0
        return len(self._written) - self._pos

    def _current_hash(self) -> int | None:
        if self._written is None:
            return None
        return xxhash64(bytes(self._written))

    def changed(self) -> bool:
        current = self._current_hash()
        if current is None:
            return self.previous_hash != 0
        return current != self.previous_hash

    def created(self) -> bool:
        return self.previous_hash == 0 and self._written is not None

    def defer(self, action: Callable[[ChainBuffer], None]) -> None:
        self._deferred.append(action)

    def run_deferred(self) -> None:
        for action in self._deferred:
            action(self)

    def _reset(self) -> None:
        self._deferred.clear()
        current = self._current_hash()
        self.previous_hash = 0 if current is None else current
        self._written = None
        self._pos = 0


class ChainBufferSet:
    """Chain buffers by name, kept across rounds to detect what changed."""

    def __init__(self) -> None:
        self._buffers: dict[str, ChainBuffer] = {}

    def _ordered(self) -> list[ChainBuffer]:
        return [self._buffers[name] for name in sorted(self._buffers)]

    def reset(self) -> None:
        """Start a new round, remembering the content hash of each buffer."""
        for cb in self._ordered():
            cb._reset()

    def get(self, kind: str, name: str) -> ChainBuffer:
        """The buffer named ``name``, created with ``kind`` if needed."""
        cb = self._buffers.get(name)
        if cb is None:
            if kind == "":
                raise ValueError("can't create without kind")
            cb = ChainBuffer(kind, name)
            self._buffers[name] = cb
        if kind != "" and kind != cb.kind:
            raise ValueError(f"wrong kind for {name}: {kind} (got {cb.kind})")
        return cb

    def list(self) -> list[str]:
        """Names of the buffers written this round, in order."""
        return [cb.name for cb in self._ordered() if cb._written is not None]

    def deleted(self) -> list[ChainBuffer]:
        """Buffers written last round but not this one."""
        return [cb for cb in self._ordered() if cb.previous_hash != 0 and cb._written is None]

    def changed(self) -> bool:
        return any(cb.changed() for cb in self._ordered())

    def run_deferred(self) -> None:
        for cb in self._ordered():
            cb.run_deferred()


def vmap_add(chain: ChainBuffer, match: str, kv: str) -> None:
    """Add an element to the verdict map of ``chain``, opening the map if needed."""
    if len(chain) == 0:
        chain.write(f"  {match} vmap {{ ")
        chain.defer(lambda c: c.write("}\n"))
    else:
        chain.write(", ")
    chain.write(kv)


_PROTO_MATCH = {
    Protocol.TCP: "tcp dport",
    Protocol.UDP: "udp dport",
    Protocol.SCTP: "sctp dport",
}


@dataclass
class DnatRule:
    """The DNAT (or reject) rules of one service for one protocol."""

    namespace: str
    name: str
    protocol: Protocol
    ports: list[PortMapping] = field(default_factory=list)
    endpoint_ips: list[str] = field(default_factory=list)

    def write_to(self, out: TextIO, endpoints_map: str, endpoints_offset: int) -> None:
        """Write one rule per port of this protocol to ``out``."""
        proto_match = _PROTO_MATCH.get(self.protocol)
        if proto_match is None:
            log.error("unknown protocol: %s", self.protocol)
            return

        for port in (p for p in self.ports if p.protocol == self.protocol):
            parts = ["  ", proto_match, " ", str(port.port)]

            if not self.endpoint_ips:
                parts.append(" counter reject\n")
                out.write("".join(parts))
                continue

            if len(self.endpoint_ips) == 1:
                parts += [" counter dnat to ", self.endpoint_ips[0]]
            else:
                parts += [
                    " counter dnat to numgen random mod ",
                    str(len(self.endpoint_ips)),
                    " offset ",
                    str(endpoints_offset),
                    " map @",
                    endpoints_map,
                ]

            if port.port != port.target_port:
                parts += [":", str(port.target_port)]

            parts.append("\n")
            out.write("".join(parts))