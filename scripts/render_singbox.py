#!/usr/bin/env python3
"""
sing-box routing config for the transparent proxy.

TPROXY hands every matched connection to a single inbound, so the proxy
needs to know which outbound each rule selected:

    inbounds:  tproxy-in (tproxy.listen_addr:listen_port)
               dns-in    (tproxy.dns_listen_addr:dns_listen_port, dnsmasq forwards rule domains here)
    outbounds: direct-out, then one per configured outbound
    route:     sniff, hijack-dns, rule_set kpbr_<id> -> selected outbound, final direct-out
    dns:       rule servers (detoured through the selected outbound), final dns-local

A rule without a selected outbound is left out, so its traffic goes direct.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import unquote, urlparse

from list_parser import sanitize_domain
from pbr_config import DNSServer, InterfaceOutbound, PBRConfig, ProxyOutbound, Rule
from pbr_errors import PBRError, ValidationError

logger = logging.getLogger(__name__)

TPROXY_INBOUND = "tproxy-in"
DNS_INBOUND = "dns-in"
DIRECT_OUTBOUND = "direct-out"
LOCAL_DNS = "dns-local"


@dataclass
class RuleRoute:
    """Destinations of one rule and the outbound selected for them"""
    rule: Rule
    outbound: Optional[str]
    networks: List[str] = field(default_factory=list)
    domains: List[str] = field(default_factory=list)


def create_outbound(outbound) -> Dict[str, Any]:
    """Convert a configured outbound into a sing-box outbound."""
    if isinstance(outbound, InterfaceOutbound):
        return {"type": "direct", "tag": outbound.tag, "bind_interface": outbound.ifname}

    if isinstance(outbound, ProxyOutbound):
        parsed = urlparse(outbound.url)
        try:
            port = parsed.port
        except ValueError:
            raise ValidationError(f"outbound {outbound.tag}: invalid port in {outbound.url!r}",
                                  {"outbound": outbound.tag})
        if parsed.scheme in ("socks5", "socks5h"):
            result = {"type": "socks", "tag": outbound.tag, "server": parsed.hostname,
                      "server_port": port or 1080, "version": "5"}
        else:
            default_port = 443 if parsed.scheme == "https" else 80
            result = {"type": "http", "tag": outbound.tag, "server": parsed.hostname,
                      "server_port": port or default_port}
            if parsed.scheme == "https":
                result["tls"] = {"enabled": True, "server_name": parsed.hostname}
        if parsed.username:
            result["username"] = unquote(parsed.username)
            if parsed.password:
                result["password"] = unquote(parsed.password)
        return result

    raise TypeError(f"unsupported outbound: {type(outbound).__name__}")


def dns_server_tag(rule: Rule, index: int) -> str:
    return f"{rule.ipset_name}-dns-{index}"


def create_dns_server(tag: str, server: DNSServer, detour: Optional[str]) -> Dict[str, Any]:
    result = {"type": server.type, "tag": tag, "server": server.server, "server_port": server.port}
    if server.type == "https" and server.path:
        result["path"] = server.path
    if detour and server.through_outbound:
        result["detour"] = detour
    return result


def _rule_set(route: RuleRoute) -> Optional[Dict[str, Any]]:
    rules = []
    if route.domains:
        rules.append({"domain_suffix": [sanitize_domain(d) for d in route.domains]})
    if route.networks:
        rules.append({"ip_cidr": list(route.networks)})
    if not rules:
        return None
    return {"tag": route.rule.ipset_name, "type": "inline", "rules": rules}


def render_proxy_config(cfg: PBRConfig, routes: List[RuleRoute]) -> Dict[str, Any]:
    """Build the sing-box configuration for the given rule routes."""
    tp = cfg.tproxy
    outbounds = [{"type": "direct", "tag": DIRECT_OUTBOUND}]
    outbounds.extend(create_outbound(o) for o in cfg.outbounds)

    dns_servers: List[Dict[str, Any]] = [{"type": "local", "tag": LOCAL_DNS}]
    dns_rules: List[Dict[str, Any]] = []
    route_rules: List[Dict[str, Any]] = [
        {"action": "sniff", "inbound": [TPROXY_INBOUND, DNS_INBOUND]},
        {"action": "hijack-dns", "protocol": "dns"},
    ]
    rule_sets: List[Dict[str, Any]] = []

    for route in routes:
        rule = route.rule
        if route.outbound is None:
            logger.warning(f"[rule {rule.id}] no outbound selected, traffic goes direct")
            continue
        rule_set = _rule_set(route)
        if rule_set is None:
            continue
        rule_sets.append(rule_set)
        route_rules.append({
            "inbound": [TPROXY_INBOUND],
            "rule_set": [rule_set["tag"]],
            "outbound": route.outbound,
        })
        for index, server in enumerate(rule.dns_servers):
            dns_servers.append(create_dns_server(dns_server_tag(rule, index), server, route.outbound))
        if rule.dns_servers:
            # sing-box routes a rule set to a single server
            dns_rules.append({"rule_set": [rule_set["tag"]], "server": dns_server_tag(rule, 0)})

    return {
        "log": {"level": "warn", "timestamp": False},
        "dns": {"servers": dns_servers, "rules": dns_rules, "final": LOCAL_DNS},
        "inbounds": [
            {"type": "tproxy", "tag": TPROXY_INBOUND, "listen": tp.listen_addr, "listen_port": tp.listen_port},
            {"type": "direct", "tag": DNS_INBOUND, "listen": tp.dns_listen_addr, "listen_port": tp.dns_listen_port},
        ],
        "outbounds": outbounds,
        "route": {"rules": route_rules, "rule_set": rule_sets, "final": DIRECT_OUTBOUND},
    }


def write_proxy_config(path: Path, config: Dict[str, Any]) -> bool:
    """Write ``config`` atomically; returns False when the file already matched."""
    path = Path(path)
    text = json.dumps(config, indent=2) + "\n"
    tmp_path = path.with_name(path.name + ".tmp")
    try:
        if path.exists() and path.read_text(encoding="utf-8") == text:
            return False
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path.write_text(text, encoding="utf-8")
        os.replace(tmp_path, path)
    except OSError as e:
        raise PBRError(f"cannot write proxy config {path}: {e.strerror or e}", {"path": str(path)})
    logger.info(f"Wrote proxy config with {len(config['route']['rule_set'])} rule sets to {path}")
    return True
