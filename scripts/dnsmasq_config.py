#!/usr/bin/env python3
"""
dnsmasq hook generation.

dnsmasq resolves names and, through ``ipset=/domain/set`` lines, adds the
resulting addresses to the policy sets. Output layout:

    cname=config-md5.keen-pbr.internal,<md5>.value.keen-pbr.internal,1
    server=/corp.example/192.168.41.15         # upstreams from the router
    server=127.0.0.1#40500
    ipset=/example.com/vpn_sites,backup_sites
    server=/example.com/1.1.1.1#53             # policy dns_override
    ipset=/chat.example/kpbr_work               # tproxy rule
    server=/chat.example/127.0.0.42#53          # rule dns_servers via the proxy

The CNAME record lets the self-check find out whether dnsmasq runs with the
configuration that is currently loaded.
"""

import logging
import os
import re
from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, List, Optional

from list_parser import sanitize_domain
from list_registry import ListRegistry
from pbr_config import PBRConfig, Rule, config_hash
from pbr_errors import CancelToken, OperationCancelled, PBRError, TransientNetworkError, check_cancelled

logger = logging.getLogger(__name__)

CONFIG_HASH_DOMAIN = "config-md5.keen-pbr.internal"
CNAME_PATTERN = re.compile(
    r"^cname=" + re.escape(CONFIG_HASH_DOMAIN) + r",([0-9a-f]{32}|unknown)\.value\.keen-pbr\.internal,1$"
)


def hash_record(digest: str) -> str:
    return f"cname={CONFIG_HASH_DOMAIN},{digest}.value.keen-pbr.internal,1"


def upstream_lines(router_client) -> List[str]:
    """``server=`` lines for the router's own DNS upstreams (empty on API failure)."""
    if router_client is None:
        return []
    try:
        servers = router_client.get_dns_servers()
    except TransientNetworkError as e:
        logger.warning(f"Could not read DNS servers from the router: {e.message}")
        return []

    lines = []
    for server in servers:
        row = "server="
        if server.domain:
            row += f"/{server.domain}/"
        row += server.proxy
        if server.port:
            row += f"#{server.port}"
        lines.append(row)
    return lines


@dataclass
class DomainTargets:
    """Sets a domain's addresses go into, and where dnsmasq forwards its queries"""
    sets: List[str] = field(default_factory=list)
    servers: List[str] = field(default_factory=list)


def rule_dns_target(cfg: PBRConfig, rule: Rule) -> Optional[str]:
    """dnsmasq upstream for the domains of ``rule``, or None without dns_servers.

    A plain UDP server that is not bound to the outbound is queried directly;
    every other server is only reachable through the proxy's DNS inbound.
    """
    if not rule.dns_servers:
        return None
    first = rule.dns_servers[0]
    if first.type == "udp" and not first.through_outbound:
        return f"{first.server}#{first.port}"
    return f"{cfg.tproxy.dns_listen_addr}#{cfg.tproxy.dns_listen_port}"


def collect_domain_sets(
    cfg: PBRConfig,
    registry: ListRegistry,
    cancel: Optional[CancelToken] = None,
) -> "OrderedDict[str, DomainTargets]":
    """Map each sanitized domain to its target sets, policies first, then enabled tproxy rules."""
    owners = [(f"ipset {p.ipset_name}", p.ipset_name, p.lists, p.routing.dns_override) for p in cfg.ipsets]
    if cfg.tproxy.enabled:
        owners.extend(
            (f"rule {r.id}", r.ipset_name, r.lists, rule_dns_target(cfg, r))
            for r in cfg.rules if r.enabled
        )

    domains: "OrderedDict[str, DomainTargets]" = OrderedDict()
    for owner, set_name, list_names, server in owners:
        for list_name in list_names:
            check_cancelled(cancel, "dnsmasq config generation")
            try:
                entries = registry.resolve(list_name, cancel=cancel)
            except OperationCancelled:
                raise
            except PBRError as e:
                logger.error(
                    f"[list {list_name}] [{owner}] failed to process: {e.message}. "
                    f"Skipping this list in dnsmasq config."
                )
                continue
            for entry in entries:
                if entry.is_ip:
                    continue
                targets = domains.setdefault(sanitize_domain(entry.value), DomainTargets())
                if set_name not in targets.sets:
                    targets.sets.append(set_name)
                if server and server not in targets.servers:
                    targets.servers.append(server)
    return domains



def generate_dnsmasq_config(
    cfg: PBRConfig,
    registry: ListRegistry,
    router_client=None,
    cancel: Optional[CancelToken] = None,
) -> Iterator[str]:
    """Yield dnsmasq configuration lines for the given configuration."""
    digest = config_hash(cfg)
    yield hash_record(digest)
    logger.info(f"Dnsmasq config hash: {digest}")

    if cfg.general.use_keenetic_api:
        for line in upstream_lines(router_client):
            yield line

    domains = collect_domain_sets(cfg, registry, cancel)
    for domain, targets in domains.items():
        yield "ipset=/{}/{}".format(domain, ",".join(targets.sets))
        if targets.servers:
            # dnsmasq uses the first server line per domain
            yield f"server=/{domain}/{targets.servers[0]}"

    logger.info(f"Produced dnsmasq config for {len(domains)} domains")


def write_dnsmasq_config(
    path: Path,
    cfg: PBRConfig,
    registry: ListRegistry,
    router_client=None,
    cancel: Optional[CancelToken] = None,
) -> int:
    """Write the hook file atomically; returns the number of lines."""
    lines = list(generate_dnsmasq_config(cfg, registry, router_client, cancel))
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    tmp_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    os.replace(tmp_path, path)
    logger.info(f"Wrote {len(lines)} dnsmasq lines to {path}")
    return len(lines)


def read_config_hash(path: Path) -> Optional[str]:
    """Return the config digest recorded in an existing hook file."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            first = f.readline().strip()
    except FileNotFoundError:
        return None
    match = CNAME_PATTERN.match(first)
    return match.group(1) if match else None
