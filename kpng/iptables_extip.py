"""Rules for the external IPs of services, applied with iptables-restore."""

from __future__ import annotations

import json
import logging
import posixpath
import subprocess
from dataclasses import dataclass
from typing import Iterable

from .backendsink import ServiceEndpoints

log = logging.getLogger(__name__)


@dataclass
class ExtIPConfig:
    """Settings of the external IP rules."""

    load_balancers_only: bool = False
    chain_prefix: str = "k8s-"
    dry_run: bool = False


def ipt_comment(comment: str) -> str:
    """An iptables comment match holding ``comment``, quoted."""
    return f"-m comment --comment {json.dumps(comment, ensure_ascii=False)}"


def ipt_random(idx: int, count: int) -> str:
    """The statistic match that spreads traffic evenly over the remaining targets."""
    proba = 1.0 / float(count - idx)
    if proba == 1:
        return ""
    return f" -m statistic --mode random --probability {proba:.4f}"


def _external_v4(item: ServiceEndpoints) -> list[str]:
    ips = item.service.ips
    if ips is None or ips.external_ips is None:
        return []
    return ips.external_ips.v4


def _endpoint_v4(endpoint) -> list[str]:
    return [] if endpoint.ips is None else endpoint.ips.v4


def _proto(port) -> str:
    return port.protocol.name.lower()


def render_rules(items: Iterable[ServiceEndpoints], config: ExtIPConfig) -> str:
    """Render the filter and nat tables for the services with external IPv4 addresses."""
    selected = [
        item
        for item in items
        if not (config.load_balancers_only and item.service.type != "LoadBalancer")
        and _external_v4(item)
    ]

    forward_chain = config.chain_prefix + "forward"
    dnat_chain = config.chain_prefix + "DNAT"
    snat_chain = config.chain_prefix + "SNAT"

    lines = ["*filter", f":{forward_chain} -"]
    for item in selected:
        svc = item.service
        key = posixpath.join(svc.namespace, svc.name)
        for ep in item.endpoints:
            for ip in _endpoint_v4(ep):
                for port in svc.ports:
                    proto = _proto(port)
                    comment = ipt_comment(
                        f"{key}: {proto}:{port.port} -> {port.target_port}"
                    )
                    lines.append(
                        f"-A {forward_chain} -d {ip} -j ACCEPT -m {proto} -p {proto} "
                        f"--dport {port.target_port} {comment}"
                    )
    lines.append("COMMIT")

    lines += ["*nat", f":{dnat_chain} -", f":{snat_chain} -"]

    for item in selected:
        svc = item.service
        key = posixpath.join(svc.namespace, svc.name)
        target_ips = [v4[0] for v4 in (_endpoint_v4(ep) for ep in item.endpoints) if v4]
        if not target_ips:
            continue

        for ext_ip in _external_v4(item):
            for i, ip in enumerate(target_ips):
                rnd = ipt_random(i, len(target_ips))
                for port in svc.ports:
                    proto = _proto(port)
                    comment = ipt_comment(
                        f"{key}: {ext_ip}:{port.port} -> {ip}:{port.target_port}"
                    )
                    lines.append(
                        f"-A {dnat_chain} -d {ext_ip} -m {proto} -p {proto} "
                        f"--dport {port.port} -j DNAT --to-destination {ip}:{port.target_port} "
                        f"{rnd} {comment}"
                    )

    rev_ext: dict[str, tuple[str, str]] = {}
    for item in selected:
        if not item.endpoints:
            continue
        svc = item.service
        key = posixpath.join(svc.namespace, svc.name)
        ext_ip = _external_v4(item)[0]
        for ep in item.endpoints:
            for ip in _endpoint_v4(ep):
                prev = rev_ext.get(ip)
                if prev is None or prev[1] == "" or ext_ip < prev[1]:
                    rev_ext[ip] = (key, ext_ip)

    for ep_ip in sorted(rev_ext):
        key, ext_ip = rev_ext[ep_ip]
        lines.append(
            f"-A {snat_chain} -s {ep_ip} -j SNAT --to-source {ext_ip} "
            f"{ipt_comment(f'{key}: external IP')}"
        )

    lines.append("COMMIT")
    return "".join(line + "\n" for line in lines)


def handle_endpoints(items: Iterable[ServiceEndpoints], config: ExtIPConfig) -> str:
    """Render the rules and load them with ``iptables-restore --noflush``; return the rules."""
    rules = render_rules(items, config)
    log.info("ext-iptables: rules have changed, updating")

    if config.dry_run:
        log.info("would have applied those rules:\n%s", rules)
        return rules

    try:
        subprocess.run(
            ["iptables-restore", "--noflush"],
            input=rules,
            text=True,
            check=True,
        )
    except (subprocess.CalledProcessError, OSError) as exc:
        log.error("ext-iptables: failed to restore iptables rules: %s\n%s", exc, rules)

    return rules