"""The proxy command: feed the global state from a file and serve it to a target."""

from __future__ import annotations

import argparse
import datetime
import ipaddress
import json
import logging
import os
import re
import signal
import socket
import sys
import threading
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Iterable, TextIO

from .backendsink import BackendSink, ServiceEndpoints
from .nft import NftBackend, NftConfig
from .proxystore import Store
from .statefile import FileToStoreJob, StoreToFileJob
from .store2diff import LocalDiffConfig, LocalDiffJob
from .watchstate import WatchAborted

log = logging.getLogger(__name__)

_UNIMPLEMENTED = ("to-iptables", "to-ipvs")
_PORT_RE = re.compile(r"[+-]?\d+")


@dataclass
class IPPort:
    """An IP address and a port, written as ``ip:port`` in JSON."""

    ip: ipaddress.IPv4Address | ipaddress.IPv6Address | None
    port: int

    def to_json(self) -> str:
        return json.dumps(f"{self.ip}:{self.port}")

    @classmethod
    def from_json(cls, text: str | bytes) -> IPPort:
        """Parse a JSON string holding ``host:port``; an unparsable host gives ip None."""
        value = json.loads(text)
        if not isinstance(value, str):
            raise ValueError("expected a JSON string")
        host, port = _split_host_port(value)
        if not _PORT_RE.fullmatch(port):
            raise ValueError(f"invalid port: {port!r}")
        try:
            ip = ipaddress.ip_address(host)
        except ValueError:
            ip = None
        return cls(ip=ip, port=int(port))


def _split_host_port(s: str) -> tuple[str, str]:
    if s.startswith("["):
        end = s.find("]")
        if end < 0:
            raise ValueError(f"missing ']' in address: {s!r}")
        if end + 1 >= len(s) or s[end + 1] != ":":
            raise ValueError(f"missing port in address: {s!r}")
        return s[1:end], s[end + 2:]
    host, sep, port = s.rpartition(":")
    if not sep:
        raise ValueError(f"missing port in address: {s!r}")
    if ":" in host:
        raise ValueError(f"too many colons in address: {s!r}")
    return host, port


class Uniq(list):
    """A list that keeps each value once, in insertion order."""

    def add(self, value: str) -> None:
        if value not in self:
            self.append(value)


def print_state(items: Iterable[ServiceEndpoints], out: TextIO | None = None) -> None:
    """Print a timestamped dump of the services and their endpoints."""
    out = out if out is not None else sys.stdout
    print("# " + "-" * 72, file=out)
    print("#", datetime.datetime.now().astimezone(), file=out)
    print("#", file=out)
    for item in items:
        print(item, file=out)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="proxy")
    parser.add_argument("--cpuprofile", default="", help="write cpu profile to file")
    parser.add_argument(
        "-v", "--v", dest="verbosity", type=int, default=0, help="log level for V logs"
    )

    sources = parser.add_subparsers(dest="source", required=True, metavar="command")
    file_cmd = sources.add_parser("file", help="poll a file to the global state")
    file_cmd.add_argument(
        "-i", "--input", default="global-state.yaml", help="Input file for the global-state"
    )

    targets = file_cmd.add_subparsers(dest="target", required=True, metavar="target")

    to_file = targets.add_parser("to-file", help="dump global state to a yaml db file")
    to_file.add_argument(
        "-o", "--output", default="global-state.yaml", help="Output file for the global state"
    )

    to_local = targets.add_parser("to-local", help="compute the local state of a node")
    to_local.add_argument(
        "--node-name", default=socket.gethostname(), help="Node name override"
    )
    backends = to_local.add_subparsers(dest="backend", required=True, metavar="backend")
    for name in _UNIMPLEMENTED:
        backends.add_parser(name)

    to_nft = backends.add_parser("to-nft", help="apply the local state with nftables")
    to_nft.add_argument("--dry-run", action="store_true", help="dry run (do not apply rules)")
    to_nft.add_argument("--hook-priority", type=int, default=0, help="nftable hooks priority")
    to_nft.add_argument("--skip-comments", action="store_true", help="don't comment rules")
    to_nft.add_argument(
        "--split-bits", type=int, default=24,
        help="dispatch services in multiple chains, spliting at the nth bit",
    )
    to_nft.add_argument(
        "--split-bits6", type=int, default=120,
        help="dispatch services in multiple chains, spliting at the nth bit (for IPv6)",
    )
    to_nft.add_argument(
        "--maps-count", type=int, default=0xFF, help="number of endpoints maps to use"
    )

    return parser


def _run_profiled(run: Callable[[], None], path: str) -> None:
    """Run ``run`` while timing every call in this thread; write a summary to ``path``."""
    stats: dict[str, list] = defaultdict(lambda: [0, 0.0])
    stack: list[tuple[str, float]] = []

    def label(frame, event, arg) -> str:
        if event.startswith("c_"):
            return f"<builtin> {getattr(arg, '__qualname__', repr(arg))}"
        code = frame.f_code
        return f"{code.co_filename}:{code.co_firstlineno}({code.co_name})"

    def tracer(frame, event, arg) -> None:
        if event in ("call", "c_call"):
            stack.append((label(frame, event, arg), time.process_time()))
        elif event in ("return", "c_return", "c_exception") and stack:
            name, start = stack.pop()
            entry = stats[name]
            entry[0] += 1
            entry[1] += time.process_time() - start

    sys.setprofile(tracer)
    try:
        run()
    finally:
        sys.setprofile(None)
        rows = sorted(stats.items(), key=lambda item: item[1][1], reverse=True)
        with open(path, "w", encoding="utf-8") as out:
            out.write(f"{'calls':>10} {'cumtime':>12}  function\n")
            for name, (calls, cumulative) in rows:
                out.write(f"{calls:>10} {cumulative:>12.6f}  {name}\n")


def _install_signal_handlers(stop: threading.Event, store: Store) -> None:
    received = 0

    def handle(signum, _frame) -> None:
        nonlocal received
        received += 1
        if received == 1:
            log.info("got signal %s, stopping", signum)
            stop.set()
            store.close()
        else:
            log.critical("forced exit after second term signal")
            os._exit(1)

    for name in ("SIGINT", "SIGTERM", "SIGHUP"):
        signum = getattr(signal, name, None)
        if signum is not None:
            signal.signal(signum, handle)


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbosity >= 1 else logging.INFO)

    backend = getattr(args, "backend", None)
    if backend in _UNIMPLEMENTED:
        print("Error: not implemented", file=sys.stderr)
        return 1

    nft_config = None
    if backend == "to-nft":
        try:
            nft_config = NftConfig(
                dry_run=args.dry_run,
                hook_priority=args.hook_priority,
                skip_comments=args.skip_comments,
                split_bits=args.split_bits,
                split_bits6=args.split_bits6,
                maps_count=args.maps_count,
            )
        except ValueError as exc:
            print(f"Error: {exc}", file=sys.stderr)
            return 1

    stop = threading.Event()
    store = Store()
    _install_signal_handlers(stop, store)

    feeder = FileToStoreJob(args.input, store)
    threading.Thread(target=feeder.run, args=(stop,), daemon=True).start()

    def run() -> None:
        if args.target == "to-file":
            StoreToFileJob(store, args.output).run(stop)
            return
        nft = NftBackend(nft_config)
        nft.pre_run()
        sink = BackendSink(LocalDiffConfig(node_name=args.node_name), nft.callback)
        LocalDiffJob(store, sink).run(stop)

    try:
        if args.cpuprofile:
            _run_profiled(run, args.cpuprofile)
        else:
            run()
    except (OSError, WatchAborted) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())