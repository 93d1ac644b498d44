"""nftables backend: renders services and endpoints as nftables tables and applies them."""

from __future__ import annotations

import io
import ipaddress
import logging
import subprocess
import sys
import time
from dataclasses import dataclass
from typing import Callable, Iterable

from .backendsink import ServiceEndpoints
from .chainbuffers import ChainBufferSet, DnatRule, vmap_add
from .localnet import IPSet, Protocol, ServiceIPs, xxhash64

log = logging.getLogger(__name__)

# Atomic deletes with references are unreliable, so deletes are deferred to a second script.
DEFER_DELETE = True
# Deferred deletes need a delay that is not acceptable, so chains are never deleted.
CAN_DELETE_CHAINS = False

_MAP_BUG_CREATE = """
table ip k8s_test_vmap_bug
delete table ip k8s_test_vmap_bug
table ip k8s_test_vmap_bug {
  map m1 {
    typeof numgen random mod 2 : ip daddr
    elements = { 1 : 10.0.0.1, 2 : 10.0.0.2 }
  }
}
"""
_MAP_BUG_LIST = """
list map ip k8s_test_vmap_bug m1
"""
_MAP_BUG_DELETE = """
delete table ip k8s_test_vmap_bug
"""

_PROTOCOLS = (Protocol.TCP, Protocol.UDP, Protocol.SCTP)

Runner = Callable[[str], str]


def _run_nft(script: str) -> str:
    """Feed ``script`` to ``nft -f -`` and return its standard output."""
    result = subprocess.run(
        ["nft", "-f", "-"],
        input=script,
        stdout=subprocess.PIPE,
        text=True,
        check=True,
    )
    return result.stdout


@dataclass
class NftConfig:
    dry_run: bool = False
    hook_priority: int = 0
    skip_comments: bool = False
    split_bits: int = 24
    split_bits6: int = 120
    maps_count: int = 0xFF

    def __post_init__(self) -> None:
        if not 0 <= self.split_bits <= 32:
            raise ValueError(f"split-bits out of range: {self.split_bits}")
        if not 0 <= self.split_bits6 <= 128:
            raise ValueError(f"split-bits6 out of range: {self.split_bits6}")
        if self.maps_count < 1:
            raise ValueError(f"maps-count must be positive: {self.maps_count}")


def add_dispatch_chains(family: str, chains: ChainBufferSet, hook_priority: int) -> None:
    """Add the hook chains and the jumps to the external dispatch chains."""
    if len(chains.get("chain", "dnat_external")) != 0:
        chains.get("chain", "z_dnat_all").write("  jump dnat_external\n")
    if len(chains.get("chain", "z_dnat_all")) != 0:
        chains.get("chain", "hook_nat_prerouting").write(
            f"  type nat hook prerouting priority {hook_priority};\n  jump z_dnat_all\n"
        )
        chains.get("chain", "hook_nat_output").write(
            f"  type nat hook output priority {hook_priority};\n  jump z_dnat_all\n"
        )

    if len(chains.get("chain", "filter_external")) != 0:
        chains.get("chain", "z_filter_all").write("  jump filter_external\n")
    if len(chains.get("chain", "z_filter_all")) != 0:
        chains.get("chain", "hook_filter_forward").write(
            f"  type filter hook forward priority {hook_priority};\n  jump z_filter_all\n"
        )
        chains.get("chain", "hook_filter_output").write(
            f"  type filter hook output priority {hook_priority};\n  jump z_filter_all\n"
        )


def _parse_ip(s: str):
    try:
        ip = ipaddress.ip_address(s)
    except ValueError:
        return None
    if ip.version == 6 and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


def _bug_key(key: int) -> int:
    return (
        ((key >> 0) & 0xFF) << 24
        | ((key >> 8) & 0xFF) << 16
        | ((key >> 16) & 0xFF) << 8
    )


class NftBackend:
    """Keeps the nftables rule buffers between rounds and applies the changes."""

    def __init__(self, config: NftConfig | None = None, runner: Runner | None = None) -> None:
        self.config = config if config is not None else NftConfig()
        self.runner = runner if runner is not None else _run_nft
        self.chains4 = ChainBufferSet()
        self.chains6 = ChainBufferSet()
        self.full_resync = True
        self.has_nft_hash_bug = False

    def pre_run(self) -> None:
        """Detect the nft map index bug, which changes how map keys are written."""
        try:
            self.runner(_MAP_BUG_CREATE)
        except (subprocess.CalledProcessError, OSError) as exc:
            log.warning("failed to test nft bugs: %s", exc)

        try:
            try:
                output = self.runner(_MAP_BUG_LIST)
            except (subprocess.CalledProcessError, OSError) as exc:
                log.warning("failed to test nft bugs: %s", exc)
                return

            self.has_nft_hash_bug = "16777216" in output or "0x01000000" in output
            if self.has_nft_hash_bug:
                log.info(
                    "nft vmap bug found, map indices will be affected by the workaround "
                    "(0x01 will become 0x01000000)"
                )
        finally:
            try:
                self.runner(_MAP_BUG_DELETE)
            except (subprocess.CalledProcessError, OSError) as exc:
                log.warning("failed to delete test table k8s_test_vmap_bug: %s", exc)

    def callback(self, items: Iterable[ServiceEndpoints]) -> str | None:
        """Build and apply the rules for ``items``.

        Returns the rendered script when it was applied (or would be, in dry-run
        mode), or None when nothing changed or nft failed.
        """
        start = time.monotonic()
        counts = [0, 0]
        try:
            for item in items:
                self._add_service(item, counts)
            return self._apply()
        finally:
            self.chains4.reset()
            self.chains6.reset()
            log.debug(
                "%d services and %d endpoints applied in %.3fs",
                counts[0], counts[1], time.monotonic() - start,
            )

    def _add_service(self, item: ServiceEndpoints, counts: list[int]) -> None:
        cfg = self.config
        svc = item.service
        endpoints = item.endpoints

        if svc.type not in ("ClusterIP", "LoadBalancer"):
            return

        if not hasattr(self, "_map_offsets"):
            self._map_offsets = [0] * cfg.maps_count
        map_h = xxhash64(f"{svc.namespace}/{svc.name}") % cfg.maps_count
        svc_offset = self._map_offsets[map_h]
        self._map_offsets[map_h] += len(endpoints)

        endpoints_map = f"endpoints_{map_h:04x}"
        counts[0] += 1

        svc_ips = svc.ips if svc.ips is not None else ServiceIPs()
        cluster_ip = ipaddress.IPv4Address(0)
        ips = IPSet()
        if svc_ips.cluster_ip not in ("", "None"):
            cluster_ip = _parse_ip(svc_ips.cluster_ip)
            ips.add(svc_ips.cluster_ip)
        ips.add_set(svc_ips.external_ips)

        for family_ips, v6 in ((ips.v4, False), (ips.v6, True)):
            if not family_ips:
                continue

            family = "ip6" if v6 else "ip"
            chains = self.chains6 if v6 else self.chains4

            endpoint_ips = []
            for ep in endpoints:
                if ep.ips is None:
                    continue
                ep_ips = ep.ips.v6 if v6 else ep.ips.v4
                if ep_ips:
                    endpoint_ips.append(ep_ips[0])
            counts[1] += len(endpoint_ips)

            if endpoint_ips:
                self._add_to_map(chains, endpoints_map, svc, svc_offset, endpoint_ips)

            # reject does not work in prerouting, so services without endpoints are filtered
            prefix = "dnat_" if endpoint_ips else "filter_"
            daddr_match = f"{family} daddr"
            svc_chain = prefix + "_".join(("svc", svc.namespace, svc.name))

            has_rules = False
            for protocol in _PROTOCOLS:
                rule = io.StringIO()
                DnatRule(
                    namespace=svc.namespace,
                    name=svc.name,
                    protocol=protocol,
                    ports=svc.ports,
                    endpoint_ips=endpoint_ips,
                ).write_to(rule, endpoints_map, svc_offset)
                text = rule.getvalue()
                if not text:
                    continue
                chains.get("chain", svc_chain).write(text)
                has_rules = True

            if not has_rules:
                continue

            if cluster_ip is not None and v6 == (cluster_ip.version == 6):
                self._add_net_dispatch(chains, family, prefix, cluster_ip, svc_chain, v6)

            external = svc_ips.external_ips
            ext_ips = [] if external is None else (external.v6 if v6 else external.v4)
            if ext_ips:
                ext_chain = chains.get("chain", prefix + "external")
                for ext_ip in ext_ips:
                    vmap_add(ext_chain, daddr_match, f"{ext_ip}: jump {svc_chain}")

    def _add_to_map(self, chains, endpoints_map, svc, svc_offset, endpoint_ips) -> None:
        ep_map = chains.get("map", endpoints_map)
        if len(ep_map) == 0:
            ep_map.write("  typeof numgen random mod 1 : ip daddr\n")
            ep_map.write("  elements = {")
            ep_map.defer(lambda m: m.write("}"))
        else:
            ep_map.write(", ")

        if not self.config.skip_comments:
            ep_map.write(f"\\\n    # {svc.namespace}/{svc.name}")

        ep_map.write("\\\n    ")
        elements = []
        for idx, ip in enumerate(endpoint_ips):
            key = svc_offset + idx
            if self.has_nft_hash_bug:
                key = _bug_key(key)
            elements.append(f"{key} : {ip}")
        ep_map.write(", ".join(elements))

    def _add_net_dispatch(self, chains, family, prefix, cluster_ip, svc_chain, v6) -> None:
        bits = self.config.split_bits6 if v6 else self.config.split_bits
        net = ipaddress.ip_network((cluster_ip, bits), strict=False)
        chain = prefix + "net_" + net.network_address.packed.hex()

        vmap_add(chains.get("chain", chain), f"{family} daddr", f"{cluster_ip}: jump {svc_chain}")

        seen = self._nets6 if v6 else self._nets4
        if chain not in seen:
            vmap_add(
                chains.get("chain", f"z_{prefix}all"),
                f"{family} daddr",
                f"{net.with_prefixlen}: jump {chain}",
            )
            seen.add(chain)

    @property
    def _nets4(self) -> set[str]:
        return self._round_nets[0]

    @property
    def _nets6(self) -> set[str]:
        return self._round_nets[1]

    def _apply(self) -> str | None:
        self.chains4.run_deferred()
        self.chains6.run_deferred()

        add_dispatch_chains("ip", self.chains4, self.config.hook_priority)
        add_dispatch_chains("ip6", self.chains6, self.config.hook_priority)

        if not self.full_resync and not self.chains4.changed() and not self.chains6.changed():
            log.debug("no changes to apply")
            return None

        script, deferred = self.render()

        if self.config.dry_run:
            log.info("not running nft (dry run mode)")
        else:
            start = time.monotonic()
            try:
                output = self.runner(script)
            except (subprocess.CalledProcessError, OSError) as exc:
                log.error("nft failed: %s (%.3fs)", exc, time.monotonic() - start)
                if not self.full_resync:
                    log.info("doing a full resync after nft failure")
                    self.full_resync = True
                return None
            if output:
                sys.stdout.write(output)
            log.debug("nft ok (%.3fs)", time.monotonic() - start)

            if deferred:
                log.debug("running deferred nft actions")
                try:
                    self.runner(deferred)
                except (subprocess.CalledProcessError, OSError) as exc:
                    log.warning("nft deferred script failed: %s", exc)

        self.full_resync = False
        return script

    def render(self) -> tuple[str, str]:
        """Render the nft script and the deferred script; consumes the buffered rules."""
        out = io.StringIO()
        deferred = io.StringIO()

        for family, name, chains in (
            ("ip", "k8s_svc", self.chains4),
            ("ip6", "k8s_svc6", self.chains6),
        ):
            names = chains.list()

            if self.full_resync:
                out.write(f"table {family} {name}\n")
                out.write(f"delete table {family} {name}\n")
            else:
                if not chains.changed():
                    continue

                for chain in chains.deleted():
                    out.write(f"flush {chain.kind} {family} {name} {chain.name}\n")

                changed = []
                for chain_name in names:
                    c = chains.get("", chain_name)
                    if not c.changed():
                        continue
                    if not c.created():
                        out.write(f"flush {c.kind} {family} {name} {chain_name}\n")
                    changed.append(chain_name)
                names = changed

            if names:
                out.write(f"table {family} {name} {{\n")
                for chain_name in names:
                    c = chains.get("", chain_name)
                    out.write(f" {c.kind} {chain_name} {{\n")
                    out.write(c.read().decode())
                    out.write(" }\n")
                out.write("}\n")

            if not self.full_resync and CAN_DELETE_CHAINS:
                target = deferred if DEFER_DELETE else out
                for chain in chains.deleted():
                    target.write(f"delete {chain.kind} {family} {name} {chain.name}\n")

        text = out.getvalue()
        log.debug("nft script:\n%s", text)
        return text, deferred.getvalue()

    def __setattr__(self, key, value) -> None:
        super().__setattr__(key, value)

    def _start_round(self) -> None:
        self._map_offsets = [0] * self.config.maps_count
        self._round_nets = (set(), set())

    def __call__(self, items: Iterable[ServiceEndpoints]) -> str | None:
        return self.callback(items)


_callback = NftBackend.callback


def _round_callback(self: NftBackend, items: Iterable[ServiceEndpoints]) -> str | None:
    self._start_round()
    return _callback(self, items)


_round_callback.__doc__ = _callback.__doc__
_round_callback.__name__ = "callback"
NftBackend.callback = _round_callback