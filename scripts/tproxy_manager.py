#!/usr/bin/env python3
"""
Transparent-proxy backend for the outbound/rule model.

Traffic from LAN interfaces to addresses in a rule's set is redirected with
TPROXY to the local proxy listener, which forwards it through the outbound
chosen for the rule. Kernel objects, in creation order:

    modprobe xt_TPROXY
    ip route add local 0.0.0.0/0 dev lo table 105
    ip -4 rule add fwmark 0x105 table 105 priority 105
    ipset kpbr_localv4 (private ranges) + mangle PREROUTING -j RETURN
    ipset kpbr_<rule id> per enabled rule
    mangle PREROUTING -i <lan> -p tcp|udp -m set ... -j TPROXY
    nat KEEN_PBR_DNS chain (optional DNS redirect)

The outbound chosen for each rule reaches the proxy through the rendered
sing-box config (see render_singbox). urltest rules are re-checked every
``interval_seconds`` by reselect(); a changed choice rewrites the config and
runs ``tproxy.reload_command``.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

import requests

from command_runner import CommandRunner
from iproute_manager import IPRouteManager
from ipset_manager import IPSetManager
from iptables_manager import IPTablesManager, describe_rule
from list_registry import ListRegistry
from pbr_config import (
    ConfigStore,
    InterfaceOutbound,
    PBRConfig,
    ProxyOutbound,
    Rule,
    StaticOutboundTable,
    URLTestOutboundTable,
)
from pbr_errors import (
    CancelToken,
    ExternalToolError,
    OperationCancelled,
    PBRError,
    TeardownError,
    check_cancelled,
)
from pbr_manager import ApplyReport, KernelObjectCheck, PolicyResult
from render_singbox import RuleRoute, render_proxy_config, write_proxy_config

logger = logging.getLogger(__name__)

TPROXY_MODULE = "xt_TPROXY"
DNS_REDIRECT_CHAIN = "KEEN_PBR_DNS"
MARK_MASK = "0xffffffff"
DEFAULT_CHECK_TIMEOUT = 5

LOCAL_BYPASS_NETWORKS = [
    "0.0.0.0/8",
    "10.0.0.0/8",
    "100.64.0.0/10",
    "127.0.0.0/8",
    "169.254.0.0/16",
    "172.16.0.0/12",
    "192.0.0.0/24",
    "192.168.0.0/16",
    "198.18.0.0/15",
    "224.0.0.0/4",
    "240.0.0.0/4",
]

# (table, chain, rule)
RuleSpec = Tuple[str, str, List[str]]


@dataclass
class OutboundCheck:
    tag: str
    ok: bool
    detail: str = ""


class TProxyManager:
    """Reconciles TPROXY redirection for enabled rules"""

    def __init__(
        self,
        store: ConfigStore,
        registry: ListRegistry,
        ipset: Optional[IPSetManager] = None,
        iptables: Optional[IPTablesManager] = None,
        iproute: Optional[IPRouteManager] = None,
        runner: Optional[CommandRunner] = None,
        session_factory: Callable[[], requests.Session] = requests.Session,
        check_timeout: float = DEFAULT_CHECK_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.registry = registry
        self.runner = runner or CommandRunner()
        self.ipset = ipset or IPSetManager(self.runner)
        self.iptables = iptables or IPTablesManager(self.runner)
        self.iproute = iproute or IPRouteManager(self.runner)
        self.session_factory = session_factory
        self.check_timeout = check_timeout
        self._clock = clock
        self._lock = threading.Lock()
        self._selected: Dict[str, Optional[str]] = {}
        self._checked_at: Dict[str, float] = {}

    # ------------------------------------------------------------------
    # Rule layout
    # ------------------------------------------------------------------

    @staticmethod
    def bypass_rules(cfg: PBRConfig) -> List[RuleSpec]:
        tp = cfg.tproxy
        return [
            ("mangle", "PREROUTING",
             ["-i", iface, "-m", "set", "--match-set", tp.bypass_ipset, "dst", "-j", "RETURN"])
            for iface in tp.interfaces
        ]

    @staticmethod
    def redirect_rules(cfg: PBRConfig, rule: Rule) -> List[RuleSpec]:
        tp = cfg.tproxy
        specs = []
        for iface in tp.interfaces:
            for proto in ("tcp", "udp"):
                specs.append(("mangle", "PREROUTING", [
                    "-i", iface, "-p", proto,
                    "-m", "set", "--match-set", rule.ipset_name, "dst",
                    "-j", "TPROXY",
                    "--on-ip", tp.listen_addr,
                    "--on-port", str(tp.listen_port),
                    "--tproxy-mark", f"{tp.fwmark:#x}/{MARK_MASK}",
                ]))
        return specs

    @staticmethod
    def dns_redirect_rules(cfg: PBRConfig) -> List[RuleSpec]:
        redirect = cfg.general.dns_redirect
        specs: List[RuleSpec] = []
        for iface in redirect.interfaces:
            specs.append(("nat", "PREROUTING", ["-i", iface, "-j", DNS_REDIRECT_CHAIN]))
        for proto in ("udp", "tcp"):
            specs.append(("nat", DNS_REDIRECT_CHAIN, [
                "-p", proto, "--dport", "53", "-j", "REDIRECT", "--to-ports", str(redirect.listen_port),
            ]))
        return specs

    @staticmethod
    def enabled_rules(cfg: PBRConfig) -> List[Rule]:
        return [rule for rule in cfg.rules if rule.enabled]

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    def ensure_module(self, cancel: Optional[CancelToken] = None) -> None:
        """Load xt_TPROXY unless lsmod already lists it."""
        result = self.runner.run(["lsmod"], cancel=cancel, log_failure=False)
        if result.ok and TPROXY_MODULE.lower() in result.stdout.lower():
            return
        logger.info(f"Loading kernel module: {TPROXY_MODULE}")
        load = self.runner.run(["modprobe", TPROXY_MODULE], cancel=cancel, log_failure=False)
        if not load.ok:
            # Built into the kernel on some firmware
            logger.warning(f"modprobe {TPROXY_MODULE} failed, assuming built-in: {load.error}")

    def apply(self, cancel: Optional[CancelToken] = None) -> ApplyReport:
        cfg = self.store.snapshot()
        report = ApplyReport()
        if not cfg.tproxy.enabled:
            logger.debug("Transparent proxy disabled")
            return report

        tp = cfg.tproxy
        base = PolicyResult(name="tproxy")
        try:
            self.ensure_module(cancel)
            check_cancelled(cancel, "tproxy apply")
            self.iproute.add_local_route(tp.table, cancel)
            self.iproute.add_rule(tp.fwmark, tp.table, tp.priority, 4, cancel)
            check_cancelled(cancel, "tproxy apply")
            self.ipset.create(tp.bypass_ipset, "inet", cancel=cancel)
            base.entries = self.ipset.populate(tp.bypass_ipset, LOCAL_BYPASS_NETWORKS, cancel)
            for table, chain, rule in self.bypass_rules(cfg):
                self.iptables.ensure_rule(table, chain, rule, insert=True, cancel=cancel)
            base.route = f"local table {tp.table}"
        except OperationCancelled as e:
            base.ok, base.error = False, e.to_dict()
            report.results.append(base)
            return report
        except PBRError as e:
            logger.error(f"[tproxy] base setup failed: {e.message}")
            base.ok, base.error = False, e.to_dict()
            report.results.append(base)
            return report
        report.results.append(base)

        routes: List[RuleRoute] = []
        for rule in self.enabled_rules(cfg):
            report.results.append(self._apply_rule(cfg, rule, routes, cancel))
        report.results.append(self._apply_proxy_config(cfg, routes, cancel))

        if cfg.general.dns_redirect.enabled:
            report.results.append(self._apply_dns_redirect(cfg, cancel))
        return report

    def _apply_rule(
        self,
        cfg: PBRConfig,
        rule: Rule,
        routes: List[RuleRoute],
        cancel: Optional[CancelToken],
    ) -> PolicyResult:
        result = PolicyResult(name=f"rule {rule.id}")
        try:
            check_cancelled(cancel, f"apply of rule {rule.id}")
            entries = self.registry.entries_for_lists(rule.lists, 4, cancel)
            result.list_errors = entries.errors
            created = self.ipset.create(rule.ipset_name, "inet", cancel=cancel)
            if not created:
                self.ipset.flush(rule.ipset_name, cancel)
            networks = [e.canonical() for e in entries.networks]
            result.entries = self.ipset.populate(rule.ipset_name, networks, cancel)
            check_cancelled(cancel, f"apply of rule {rule.id}")
            for table, chain, spec in self.redirect_rules(cfg, rule):
                self.iptables.ensure_rule(table, chain, spec, cancel=cancel)
            result.route = self._select(rule, cfg)
            routes.append(RuleRoute(rule, result.route, networks, [e.value for e in entries.domains]))
        except OperationCancelled as e:
            logger.info(f"[rule {rule.id}] apply cancelled")
            result.ok, result.error = False, e.to_dict()
        except PBRError as e:
            logger.error(f"[rule {rule.id}] apply failed: {e.message}")
            result.ok, result.error = False, e.to_dict()
        return result

    def _apply_proxy_config(
        self,
        cfg: PBRConfig,
        routes: List[RuleRoute],
        cancel: Optional[CancelToken],
    ) -> PolicyResult:
        result = PolicyResult(name="proxy_config")
        try:
            path = self.store.abs_path(cfg.tproxy.proxy_config_path)
            changed = write_proxy_config(path, render_proxy_config(cfg, routes))
            result.route = str(path)
            result.entries = sum(1 for r in routes if r.outbound is not None)
            if changed:
                self.reload_proxy(cfg, cancel)
        except OperationCancelled as e:
            result.ok, result.error = False, e.to_dict()
        except PBRError as e:
            logger.error(f"[tproxy] proxy config failed: {e.message}")
            result.ok, result.error = False, e.to_dict()
        return result

    def reload_proxy(self, cfg: PBRConfig, cancel: Optional[CancelToken] = None) -> None:
        """Run ``tproxy.reload_command`` so the proxy picks up a rewritten config.

        Raises:
            ExternalToolError: The command exited non-zero
        """
        command = list(cfg.tproxy.reload_command)
        if not command:
            return
        result = self.runner.run(command, cancel=cancel)
        if not result.ok:
            raise ExternalToolError(f"proxy reload failed: {result.error}", command,
                                    result.returncode, result.stderr)
        logger.info("[tproxy] proxy reloaded")

    def _apply_dns_redirect(self, cfg: PBRConfig, cancel: Optional[CancelToken]) -> PolicyResult:
        result = PolicyResult(name="dns_redirect")
        try:
            self.iptables.ensure_chain("nat", DNS_REDIRECT_CHAIN, cancel=cancel)
            for table, chain, spec in self.dns_redirect_rules(cfg):
                self.iptables.ensure_rule(table, chain, spec, cancel=cancel)
            result.route = f"port {cfg.general.dns_redirect.listen_port}"
        except PBRError as e:
            logger.error(f"[dns redirect] apply failed: {e.message}")
            result.ok, result.error = False, e.to_dict()
        return result

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def teardown(self, cfg: Optional[PBRConfig] = None) -> None:
        """Reverse of apply(); every step is attempted.

        Raises:
            TeardownError: Some steps failed
        """
        cfg = cfg or self.store.snapshot()
        tp = cfg.tproxy
        steps: List[Tuple[str, Callable[[], object]]] = []

        for table, chain, spec in self.dns_redirect_rules(cfg):
            if chain != DNS_REDIRECT_CHAIN:
                steps.append((f"rule {describe_rule(table, chain, spec)}",
                              lambda t=table, c=chain, s=spec: self.iptables.delete_rule(t, c, s)))
        steps.append((f"chain nat/{DNS_REDIRECT_CHAIN}",
                      lambda: self.iptables.delete_chain("nat", DNS_REDIRECT_CHAIN)))

        for rule in cfg.rules:
            for table, chain, spec in self.redirect_rules(cfg, rule):
                steps.append((f"rule {describe_rule(table, chain, spec)}",
                              lambda t=table, c=chain, s=spec: self.iptables.delete_rule(t, c, s)))
        for table, chain, spec in self.bypass_rules(cfg):
            steps.append((f"rule {describe_rule(table, chain, spec)}",
                          lambda t=table, c=chain, s=spec: self.iptables.delete_rule(t, c, s)))

        steps.append((f"ip rule fwmark {tp.fwmark:#x}",
                      lambda: self.iproute.delete_rule(tp.fwmark, tp.table, tp.priority, 4)))
        steps.append((f"local route table {tp.table}", lambda: self.iproute.delete_local_route(tp.table)))

        for rule in cfg.rules:
            steps.append((f"ipset {rule.ipset_name}", lambda n=rule.ipset_name: self.ipset.destroy(n)))
        steps.append((f"ipset {tp.bypass_ipset}", lambda: self.ipset.destroy(tp.bypass_ipset)))

        errors: List[PBRError] = []
        for description, step in steps:
            try:
                step()
            except PBRError as e:
                logger.error(f"[tproxy] failed to remove {description}: {e.message}")
                e.details.setdefault("object", description)
                errors.append(e)
        if errors:
            raise TeardownError(f"tproxy teardown finished with {len(errors)} errors", errors)
        logger.info("[tproxy] torn down")

    # ------------------------------------------------------------------
    # Self-check
    # ------------------------------------------------------------------

    def self_check_targets(self, cancel: Optional[CancelToken] = None) -> List[KernelObjectCheck]:
        cfg = self.store.snapshot()
        tp = cfg.tproxy
        checks = [
            KernelObjectCheck("ip_route", "tproxy", f"local route in table {tp.table}",
                              self.iproute.has_local_route(tp.table, cancel)),
            KernelObjectCheck("ip_rule", "tproxy", f"ip rule fwmark {tp.fwmark:#x} table {tp.table}",
                              self.iproute.rule_exists(tp.fwmark, tp.table, tp.priority, 4, cancel)),
            KernelObjectCheck("ipset", "tproxy", f"ipset {tp.bypass_ipset}",
                              self.ipset.exists(tp.bypass_ipset, cancel)),
        ]
        for table, chain, spec in self.bypass_rules(cfg):
            checks.append(KernelObjectCheck("iptables", "tproxy", f"iptables {describe_rule(table, chain, spec)}",
                                            self.iptables.rule_exists(table, chain, spec, cancel=cancel)))
        for rule in cfg.rules:
            checks.append(KernelObjectCheck("ipset", f"rule {rule.id}", f"ipset {rule.ipset_name}",
                                            self.ipset.exists(rule.ipset_name, cancel),
                                            should_exist=rule.enabled))
            for table, chain, spec in self.redirect_rules(cfg, rule):
                checks.append(KernelObjectCheck(
                    "iptables", f"rule {rule.id}", f"iptables {describe_rule(table, chain, spec)}",
                    self.iptables.rule_exists(table, chain, spec, cancel=cancel),
                    should_exist=rule.enabled,
                ))
        if cfg.general.dns_redirect.enabled:
            checks.append(KernelObjectCheck("iptables", "dns_redirect", f"chain nat/{DNS_REDIRECT_CHAIN}",
                                            self.iptables.chain_exists("nat", DNS_REDIRECT_CHAIN, cancel=cancel)))
        return checks

    # ------------------------------------------------------------------
    # Outbound selection
    # ------------------------------------------------------------------

    def selected(self) -> Dict[str, Optional[str]]:
        """Outbound currently chosen for each rule, by rule id."""
        with self._lock:
            return dict(self._selected)

    def _select(self, rule: Rule, cfg: PBRConfig) -> Optional[str]:
        tag = self.select_outbound(rule, cfg)
        with self._lock:
            self._selected[rule.id] = tag
            self._checked_at[rule.id] = self._clock()
        return tag

    def reselect_interval(self, cfg: Optional[PBRConfig] = None) -> Optional[float]:
        """Shortest urltest interval among enabled rules, or None if there is nothing to re-check."""
        cfg = cfg or self.store.snapshot()
        if not cfg.tproxy.enabled:
            return None
        intervals = [
            rule.outbound_table.interval_seconds for rule in self.enabled_rules(cfg)
            if isinstance(rule.outbound_table, URLTestOutboundTable)
        ]
        return float(min(intervals)) if intervals else None

    def reselect(self, cancel: Optional[CancelToken] = None) -> Dict[str, Optional[str]]:
        """Re-run urltest selection for rules whose interval elapsed.

        Returns the rules whose outbound changed. On a change the proxy
        config is rewritten and the proxy reloaded.

        Raises:
            PBRError: The proxy config cannot be written or the reload failed
        """
        cfg = self.store.snapshot()
        if not cfg.tproxy.enabled:
            return {}

        changed: Dict[str, Optional[str]] = {}
        for rule in self.enabled_rules(cfg):
            table = rule.outbound_table
            if not isinstance(table, URLTestOutboundTable):
                continue
            with self._lock:
                previous = self._selected.get(rule.id)
                checked_at = self._checked_at.get(rule.id)
            if checked_at is not None and self._clock() - checked_at < table.interval_seconds:
                continue
            check_cancelled(cancel, "urltest re-selection")
            tag = self._select(rule, cfg)
            if checked_at is None or tag != previous:
                changed[rule.id] = tag
        if not changed:
            return changed

        logger.info(f"[tproxy] outbound changed: {', '.join(f'{k}={v}' for k, v in changed.items())}")
        routes = []
        selected = self.selected()
        for rule in self.enabled_rules(cfg):
            tag = selected[rule.id] if rule.id in selected else self._select(rule, cfg)
            entries = self.registry.entries_for_lists(rule.lists, 4, cancel)
            routes.append(RuleRoute(rule, tag,
                                    [e.canonical() for e in entries.networks],
                                    [e.value for e in entries.domains]))
        path = self.store.abs_path(cfg.tproxy.proxy_config_path)
        if write_proxy_config(path, render_proxy_config(cfg, routes)):
            self.reload_proxy(cfg, cancel)
        return changed

    def select_outbound(self, rule: Rule, cfg: Optional[PBRConfig] = None) -> Optional[str]:
        """Tag of the outbound the rule's traffic should use, or None."""
        cfg = cfg or self.store.snapshot()
        table = rule.outbound_table
        if isinstance(table, StaticOutboundTable):
            return table.outbound if cfg.get_outbound(table.outbound) is not None else None
        if isinstance(table, URLTestOutboundTable):
            for tag in table.outbounds:
                outbound = cfg.get_outbound(tag)
                if outbound is None:
                    continue
                check = self.check_outbound(outbound, table.test_url)
                if check.ok:
                    logger.info(f"[rule {rule.id}] urltest selected {tag}")
                    return tag
                logger.info(f"[rule {rule.id}] urltest: {tag} failed ({check.detail})")
            logger.warning(f"[rule {rule.id}] urltest: no outbound passed")
            return None
        raise TypeError(f"unsupported outbound table: {type(table).__name__}")

    def check_outbound(self, outbound, url: str) -> OutboundCheck:
        if isinstance(outbound, InterfaceOutbound):
            try:
                result = self.runner.run(
                    ["curl", "-s", "-o", "/dev/null", "-m", str(int(self.check_timeout)),
                     "--interface", outbound.ifname, url],
                    log_failure=False,
                )
            except ExternalToolError as e:
                return OutboundCheck(outbound.tag, False, e.message)
            return OutboundCheck(outbound.tag, result.ok, "" if result.ok else result.error)

        if isinstance(outbound, ProxyOutbound):
            session = self.session_factory()
            try:
                response = session.get(
                    url,
                    proxies={"http": outbound.url, "https": outbound.url},
                    timeout=self.check_timeout,
                )
            except requests.RequestException as e:
                return OutboundCheck(outbound.tag, False, str(e))
            finally:
                session.close()
            ok = response.status_code < 500
            return OutboundCheck(outbound.tag, ok, f"HTTP {response.status_code}")

        raise TypeError(f"unsupported outbound: {type(outbound).__name__}")
