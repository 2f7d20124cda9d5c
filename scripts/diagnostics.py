#!/usr/bin/env python3
"""
Diagnostics: routing check, streaming self-check and live probes.

Nothing here changes kernel state. Results stream as generators so an HTTP
collaborator can forward each item as soon as it is available; closing a
probe generator kills the underlying process.
"""

import ipaddress
import logging
import socket
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple

import dns.exception
import dns.resolver

from command_runner import CommandRunner
from dnsmasq_config import read_config_hash
from list_parser import best_domain_match, ip_in_entries, is_dns_name, match_domain
from list_registry import ListRegistry, PolicyEntries
from pbr_config import ConfigStore, PBRConfig, config_hash, parse_config
from pbr_errors import (
    CancelToken,
    ExternalToolError,
    NotFoundError,
    OperationCancelled,
    PBRError,
    TransientNetworkError,
    ValidationError,
    check_cancelled,
)
from pbr_manager import PBRManager

logger = logging.getLogger(__name__)

DEFAULT_RESOLVE_TIMEOUT = 5.0
PROBE_EXIT_TIMEOUT = 5.0
CANCEL_POLL_INTERVAL = 0.2

PROBE_COMMANDS = {
    "ping": ["ping", "-c", "4", "-W", "2"],
    "traceroute": ["traceroute", "-m", "30", "-w", "2"],
}


def validate_host(host: str) -> str:
    """Accept a hostname or IP literal; anything else (options included) is rejected."""
    value = (host or "").strip().rstrip(".").lower()
    if not value or value.startswith("-"):
        raise ValidationError(f"invalid host: {host!r}", {"host": host})
    try:
        return str(ipaddress.ip_address(value))
    except ValueError:
        pass
    if value.startswith("*.") or not is_dns_name(value):
        raise ValidationError(f"invalid host: {host!r}", {"host": host})
    return value


def parse_dns_server(value: str) -> Tuple[str, int]:
    """Split ``ip``, ``ip#port`` or ``[v6]#port`` into address and port."""
    addr, sep, port = value.rpartition("#")
    if not sep:
        addr, port = value, "53"
    return addr.strip("[]"), int(port)


@dataclass
class CheckResult:
    name: str
    passed: bool
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "passed": self.passed, "message": self.message}


@dataclass
class SelfCheckReport:
    healthy: bool
    results: List[CheckResult] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"healthy": self.healthy, "results": [r.to_dict() for r in self.results]}


@dataclass
class PolicyRoutingCheck:
    ipset_name: str
    ip: str
    present_in_ipset: Optional[bool]
    should_be_present: bool
    matched_by: Optional[str] = None
    error: Optional[str] = None

    @property
    def mismatch(self) -> bool:
        return self.present_in_ipset is not None and self.present_in_ipset != self.should_be_present

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ipset_name": self.ipset_name,
            "ip": self.ip,
            "present_in_ipset": self.present_in_ipset,
            "should_be_present": self.should_be_present,
            "matched_by": self.matched_by,
            "mismatch": self.mismatch,
            "error": self.error,
        }


@dataclass
class RoutingCheckResult:
    host: str
    resolved_ips: List[str] = field(default_factory=list)
    domain_matches: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    checks: List[PolicyRoutingCheck] = field(default_factory=list)
    resolver: str = "system"

    @property
    def mismatch(self) -> bool:
        return any(c.mismatch for c in self.checks)

    def get(self, ipset_name: str, ip: str) -> Optional[PolicyRoutingCheck]:
        for check in self.checks:
            if check.ipset_name == ipset_name and check.ip == ip:
                return check
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "host": self.host,
            "resolved_ips": self.resolved_ips,
            "resolver": self.resolver,
            "domain_matches": self.domain_matches,
            "checks": [c.to_dict() for c in self.checks],
            "mismatch": self.mismatch,
        }


class Diagnostics:
    """Read-only inspection of configuration, lists and kernel state"""

    def __init__(
        self,
        store: ConfigStore,
        registry: ListRegistry,
        manager: PBRManager,
        router_client=None,
        tproxy=None,
        runner: Optional[CommandRunner] = None,
        resolve_timeout: float = DEFAULT_RESOLVE_TIMEOUT,
    ):
        self.store = store
        self.registry = registry
        self.manager = manager
        self.router_client = router_client
        self.tproxy = tproxy
        self.runner = runner or CommandRunner()
        self.resolve_timeout = resolve_timeout
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="pbr-dns")

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def _timeout(self, cancel: Optional[CancelToken]) -> float:
        if cancel is None:
            return self.resolve_timeout
        return cancel.remaining(self.resolve_timeout)

    def resolve_system(self, host: str, cancel: Optional[CancelToken] = None) -> List[str]:
        future = self._executor.submit(socket.getaddrinfo, host, None, 0, socket.SOCK_STREAM)
        try:
            infos = future.result(timeout=self._timeout(cancel))
        except FutureTimeoutError:
            if cancel is not None and cancel.cancelled:
                raise OperationCancelled(f"resolving {host} cancelled")
            raise TransientNetworkError(f"timeout resolving {host}", {"host": host})
        except socket.gaierror as e:
            raise NotFoundError(f"cannot resolve {host}: {e}", {"host": host})

        addresses: List[str] = []
        for info in infos:
            addr = info[4][0]
            if addr not in addresses:
                addresses.append(addr)
        return addresses

    def resolve_with(self, host: str, server: str, cancel: Optional[CancelToken] = None) -> List[str]:
        """Resolve A and AAAA records through one specific DNS server."""
        address, port = parse_dns_server(server)
        resolver = dns.resolver.Resolver(configure=False)
        # port first: nameserver objects capture it when assigned
        resolver.port = port
        resolver.nameservers = [address]
        resolver.lifetime = self._timeout(cancel)

        addresses: List[str] = []
        for rdtype in ("A", "AAAA"):
            check_cancelled(cancel, f"resolving {host}")
            try:
                answers = resolver.resolve(host, rdtype)
            except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer):
                continue
            except dns.exception.DNSException as e:
                raise TransientNetworkError(f"DNS query to {server} failed: {e}", {"host": host, "server": server})
            addresses.extend(str(rdata) for rdata in answers)
        if not addresses:
            raise NotFoundError(f"cannot resolve {host} via {server}", {"host": host, "server": server})
        return addresses

    # ------------------------------------------------------------------
    # Routing check
    # ------------------------------------------------------------------

    def check_routing(self, host: str, cancel: Optional[CancelToken] = None) -> RoutingCheckResult:
        """Compare list membership of ``host`` with live ipset contents.

        Raises:
            ValidationError: ``host`` is not a hostname or IP address
            NotFoundError: The host does not resolve
        """
        host = validate_host(host)
        cfg = self.store.snapshot()
        result = RoutingCheckResult(host=host)

        entries: Dict[str, PolicyEntries] = {}
        for policy in cfg.ipsets:
            check_cancelled(cancel, "routing check")
            entries[policy.ipset_name] = self.registry.entries_for_policy(policy, cancel)

        literal = _is_ip(host)
        if not literal:
            for policy in cfg.ipsets:
                entry = best_domain_match(host, entries[policy.ipset_name].domains)
                if entry is not None:
                    result.domain_matches[policy.ipset_name] = {
                        "pattern": entry.value,
                        "specificity": match_domain(host, entry.value),
                    }

        if literal:
            result.resolved_ips = [host]
            result.resolver = "literal"
        else:
            override = self._dns_override_for(cfg, result.domain_matches)
            if override:
                result.resolver = override
                result.resolved_ips = self.resolve_with(host, override, cancel)
            else:
                result.resolved_ips = self.resolve_system(host, cancel)

        for policy in cfg.ipsets:
            name = policy.ipset_name
            for ip in result.resolved_ips:
                if ipaddress.ip_address(ip).version != policy.ip_version:
                    continue
                check_cancelled(cancel, "routing check")
                result.checks.append(self._check_policy_ip(policy.ipset_name, ip, entries[name],
                                                           result.domain_matches.get(name), cancel))
        if result.mismatch:
            logger.warning(f"Routing check for {host}: kernel state differs from lists")
        return result

    @staticmethod
    def _dns_override_for(cfg: PBRConfig, matches: Dict[str, Dict[str, Any]]) -> Optional[str]:
        best, best_specificity = None, -1
        for policy in cfg.ipsets:
            match = matches.get(policy.ipset_name)
            if match and policy.routing.dns_override and match["specificity"] > best_specificity:
                best, best_specificity = policy.routing.dns_override, match["specificity"]
        return best

    def _check_policy_ip(self, name: str, ip: str, entries: PolicyEntries,
                         domain_match: Optional[Dict[str, Any]],
                         cancel: Optional[CancelToken]) -> PolicyRoutingCheck:
        matched_by = None
        if domain_match is not None:
            matched_by = f"domain {domain_match['pattern']}"
        else:
            network = ip_in_entries(ip, entries.networks)
            if network is not None:
                matched_by = f"network {network.canonical()}"

        check = PolicyRoutingCheck(ipset_name=name, ip=ip, present_in_ipset=None,
                                   should_be_present=matched_by is not None, matched_by=matched_by)
        try:
            check.present_in_ipset = self.manager.ipset.test(name, ip, cancel)
        except ExternalToolError as e:
            check.error = e.message
        return check

    # ------------------------------------------------------------------
    # Self-check
    # ------------------------------------------------------------------

    def self_check(self, cancel: Optional[CancelToken] = None) -> Iterator[CheckResult]:
        """Yield each check result as soon as it is known."""
        cfg = self.store.snapshot()
        yield self._check_config(cfg)

        for lst in cfg.lists:
            check_cancelled(cancel, "self-check")
            yield self._check_list(lst.list_name)

        if cfg.general.use_keenetic_api and self.router_client is not None:
            check_cancelled(cancel, "self-check")
            yield self._check_router_api()

        interfaces: List[str] = []
        for policy in cfg.ipsets:
            interfaces.extend(i for i in policy.routing.interfaces if i not in interfaces)
        if cfg.tproxy.enabled:
            interfaces.extend(i for i in cfg.tproxy.interfaces if i not in interfaces)
        for name in interfaces:
            check_cancelled(cancel, "self-check")
            yield self._check_interface(name, cancel)

        for policy in cfg.ipsets:
            check_cancelled(cancel, "self-check")
            try:
                targets = self.manager.self_check_targets(policy, cancel)
            except OperationCancelled:
                raise
            except PBRError as e:
                yield CheckResult(f"ipset {policy.ipset_name}", False, e.message)
                continue
            for target in targets:
                yield _target_result(target)

        if cfg.tproxy.enabled and self.tproxy is not None:
            check_cancelled(cancel, "self-check")
            try:
                for target in self.tproxy.self_check_targets(cancel):
                    yield _target_result(target)
            except OperationCancelled:
                raise
            except PBRError as e:
                yield CheckResult("tproxy", False, e.message)

        if cfg.general.dnsmasq_config_path:
            yield self._check_dnsmasq(cfg)

    def run_self_check(self, cancel: Optional[CancelToken] = None) -> SelfCheckReport:
        results = list(self.self_check(cancel))
        report = SelfCheckReport(healthy=all(r.passed for r in results), results=results)
        failed = [r.name for r in results if not r.passed]
        if failed:
            logger.warning(f"Self-check failed: {', '.join(failed)}")
        else:
            logger.info(f"Self-check passed ({len(results)} checks)")
        return report

    def _check_config(self, cfg: PBRConfig) -> CheckResult:
        """The file on disk must parse and match the configuration in use."""
        if self.store.path is None:
            try:
                parse_config(cfg.dump())
            except PBRError as e:
                return CheckResult("config", False, e.message)
            return CheckResult("config", True, "in-memory configuration is valid")
        try:
            on_disk = self.store.read_file()
        except PBRError as e:
            return CheckResult("config", False, e.message)
        if config_hash(on_disk) != config_hash(cfg):
            return CheckResult("config", False, f"{self.store.path} differs from the running configuration; reload it")
        return CheckResult("config", True, f"{self.store.path} is valid")

    def _check_list(self, name: str) -> CheckResult:
        try:
            stats = self.registry.stats(name)
        except PBRError as e:
            return CheckResult(f"list {name}", False, e.message)
        if stats.fetch_error:
            return CheckResult(f"list {name}", False, f"last download failed: {stats.fetch_error}")
        if stats.type == "url" and not stats.downloaded:
            return CheckResult(f"list {name}", False, "list has not been downloaded yet")
        return CheckResult(f"list {name}", True, f"{stats.total_hosts} entries")

    def _check_router_api(self) -> CheckResult:
        try:
            names = self.router_client.list_interfaces(force_refresh=True)
        except PBRError as e:
            return CheckResult("router_api", False, e.message)
        return CheckResult("router_api", True, f"router API reachable, {len(names)} interfaces")

    def _check_interface(self, name: str, cancel: Optional[CancelToken]) -> CheckResult:
        try:
            status = self.manager.selector.status(name, force_refresh=True, cancel=cancel)
        except OperationCancelled:
            raise
        except PBRError as e:
            return CheckResult(f"interface {name}", False, e.message)
        if not status.exists:
            return CheckResult(f"interface {name}", False, "interface does not exist")
        message = f"up={status.admin_up} link={status.link_up} connected={status.connected}"
        if status.router_error:
            message += f" (router: {status.router_error})"
        return CheckResult(f"interface {name}", True, message)

    def _check_dnsmasq(self, cfg: PBRConfig) -> CheckResult:
        path = self.store.abs_path(cfg.general.dnsmasq_config_path)
        recorded = read_config_hash(path)
        if recorded is None:
            return CheckResult("dnsmasq", False, f"{path} is missing or has no config hash")
        expected = config_hash(cfg)
        if recorded != expected:
            return CheckResult("dnsmasq", False, f"{path} is stale (hash {recorded}, expected {expected})")
        return CheckResult("dnsmasq", True, f"{path} is up to date")

    # ------------------------------------------------------------------
    # Probes
    # ------------------------------------------------------------------

    def probe(self, kind: str, host: str, cancel: Optional[CancelToken] = None) -> Iterator[str]:
        """Stream the output of ping/traceroute line by line.

        The process is killed when the generator is closed, when ``cancel``
        fires, or when its deadline expires.
        """
        if kind not in PROBE_COMMANDS:
            raise ValidationError(f"unknown probe {kind!r}", {"probe": kind, "allowed": sorted(PROBE_COMMANDS)})
        host = validate_host(host)
        check_cancelled(cancel, f"{kind} {host}")

        proc = self.runner.popen(PROBE_COMMANDS[kind] + [host])
        done = threading.Event()
        if cancel is not None:
            threading.Thread(
                target=_kill_on_cancel, args=(proc, cancel, done), name=f"probe-{kind}", daemon=True
            ).start()
        try:
            for line in proc.stdout:
                check_cancelled(cancel, f"{kind} {host}")
                yield line.rstrip("\n")
            proc.wait(timeout=PROBE_EXIT_TIMEOUT)
            check_cancelled(cancel, f"{kind} {host}")
        finally:
            done.set()
            if proc.poll() is None:
                proc.kill()
                proc.wait()
                logger.debug(f"{kind} {host} killed")
            proc.stdout.close()


def _kill_on_cancel(proc, cancel: CancelToken, done: threading.Event) -> None:
    while not done.is_set():
        if cancel.wait(CANCEL_POLL_INTERVAL):
            if proc.poll() is None:
                proc.kill()
            return


def _is_ip(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


def _target_result(target) -> CheckResult:
    state = "present" if target.exists else "absent"
    expected = "present" if target.should_exist else "absent"
    return CheckResult(
        f"{target.name}/{target.kind}",
        target.passed,
        f"{target.description}: {state}, expected {expected}",
    )
