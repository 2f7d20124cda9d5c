#!/usr/bin/env python3
"""
Policy routing reconciler (ipset backend).

Per policy the kernel objects are, in creation order:

    ipset <name> hash:net family inet|inet6        populated from the lists
    iptables -t mangle -A PREROUTING ... -j MARK   one per mark rule template
    ip route replace default dev <iface> table T   or blackhole / via gateway
    ip rule add fwmark M table T priority P

Teardown removes them in reverse order. Each step checks the kernel first,
so apply() can be repeated any number of times; cancellation is checked
between objects only, never inside one object's sub-steps.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from interface_selector import InterfaceSelector
from iproute_manager import ROUTE_BLACKHOLE, ROUTE_DEV, ROUTE_VIA, IPRouteManager, RouteTarget
from ipset_manager import IPSetManager
from iptables_manager import IPTablesManager, describe_rule
from list_registry import ListRegistry
from pbr_config import ConfigStore, IPSetPolicy
from pbr_errors import (
    CancelToken,
    NotFoundError,
    OperationCancelled,
    PBRError,
    TeardownError,
    check_cancelled,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 4


@dataclass
class KernelObjectCheck:
    """Expected vs. actual presence of one kernel object"""
    kind: str
    name: str
    description: str
    exists: bool
    should_exist: bool = True

    @property
    def passed(self) -> bool:
        return self.exists == self.should_exist

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "name": self.name,
            "description": self.description,
            "exists": self.exists,
            "should_exist": self.should_exist,
            "passed": self.passed,
        }


@dataclass
class PolicyResult:
    name: str
    ok: bool = True
    route: Optional[str] = None
    entries: int = 0
    list_errors: List[str] = field(default_factory=list)
    error: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "ok": self.ok,
            "route": self.route,
            "entries": self.entries,
            "list_errors": self.list_errors,
            "error": self.error,
        }


@dataclass
class ApplyReport:
    results: List[PolicyResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(r.ok for r in self.results)

    @property
    def failed(self) -> List[str]:
        return [r.name for r in self.results if not r.ok]

    def get(self, name: str) -> Optional[PolicyResult]:
        for result in self.results:
            if result.name == name:
                return result
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": self.ok, "results": [r.to_dict() for r in self.results]}


class PBRManager:
    """Reconciles ipset policies with the kernel"""

    def __init__(
        self,
        store: ConfigStore,
        registry: ListRegistry,
        selector: Optional[InterfaceSelector] = None,
        ipset: Optional[IPSetManager] = None,
        iptables: Optional[IPTablesManager] = None,
        iproute: Optional[IPRouteManager] = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
    ):
        self.store = store
        self.registry = registry
        self.iproute = iproute or IPRouteManager()
        self.selector = selector or InterfaceSelector(self.iproute)
        self.ipset = ipset or IPSetManager()
        self.iptables = iptables or IPTablesManager()
        self.max_workers = max(1, max_workers)
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _policy_lock(self, name: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(name)
            if lock is None:
                lock = threading.Lock()
                self._locks[name] = lock
            return lock

    def _policies(self, names: Optional[List[str]] = None) -> List[IPSetPolicy]:
        cfg = self.store.snapshot()
        if names is None:
            return list(cfg.ipsets)
        policies = []
        for name in names:
            policy = cfg.get_policy(name)
            if policy is None:
                raise NotFoundError(f"ipset policy {name!r} not found", {"ipset": name})
            policies.append(policy)
        return policies

    # ------------------------------------------------------------------
    # Route selection
    # ------------------------------------------------------------------

    def desired_route(self, policy: IPSetPolicy, force_refresh: bool = False,
                      cancel: Optional[CancelToken] = None) -> Optional[RouteTarget]:
        """Default route the policy table should have; None means no route at all."""
        routing = policy.routing
        interface = self.selector.choose_best(routing.interfaces, force_refresh, cancel)
        if interface is not None:
            return RouteTarget(ROUTE_DEV, interface=interface)
        if routing.kill_switch:
            return RouteTarget(ROUTE_BLACKHOLE)
        if routing.default_gateway:
            return RouteTarget(ROUTE_VIA, gateway=routing.default_gateway.strip("[]"))
        return None

    def _install_route(self, policy: IPSetPolicy, target: Optional[RouteTarget],
                       cancel: Optional[CancelToken]) -> None:
        routing = policy.routing
        prefix = f"[ipset {policy.ipset_name}]"
        if target is not None:
            if self.iproute.set_default_route(routing.table, target, policy.ip_version, cancel):
                logger.info(f"{prefix} routing via {target.describe()}")
            return

        # No eligible interface and no kill switch: marked traffic falls back
        # to the main table until an interface comes back.
        logger.warning(f"{prefix} no usable interface, kill switch off; routing disabled")
        self.iproute.delete_default_route(routing.table, policy.ip_version, cancel)
        self._remove_marking(policy, cancel)

    def _install_marking(self, policy: IPSetPolicy, cancel: Optional[CancelToken]) -> None:
        variables = policy.template_variables()
        for template in policy.mark_rules():
            check_cancelled(cancel, f"apply of {policy.ipset_name}")
            self.iptables.ensure_rule(
                template.table, template.chain, template.render(variables), policy.ip_version, cancel=cancel
            )

    def _install_ip_rule(self, policy: IPSetPolicy, cancel: Optional[CancelToken]) -> None:
        routing = policy.routing
        self.iproute.add_rule(routing.fwmark, routing.table, routing.priority, policy.ip_version, cancel)

    def _remove_marking(self, policy: IPSetPolicy, cancel: Optional[CancelToken]) -> None:
        routing = policy.routing
        variables = policy.template_variables()
        for template in policy.mark_rules():
            self.iptables.delete_rule(
                template.table, template.chain, template.render(variables), policy.ip_version, cancel=cancel
            )
        self.iproute.delete_rule(routing.fwmark, routing.table, routing.priority, policy.ip_version, cancel)

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    def apply(self, cancel: Optional[CancelToken] = None, names: Optional[List[str]] = None) -> ApplyReport:
        """Apply every policy (or the named ones).

        A failing policy is recorded in the report and does not stop the
        others. Independent policies run on up to ``max_workers`` threads.
        """
        policies = self._policies(names)
        report = ApplyReport()
        if not policies:
            return report

        if self.max_workers == 1 or len(policies) == 1:
            report.results = [self._apply_guarded(p, cancel) for p in policies]
        else:
            with ThreadPoolExecutor(max_workers=min(self.max_workers, len(policies)),
                                    thread_name_prefix="pbr-apply") as pool:
                futures = [pool.submit(self._apply_guarded, p, cancel) for p in policies]
                report.results = [f.result() for f in futures]

        if report.ok:
            logger.info(f"Applied {len(report.results)} policies")
        else:
            logger.error(f"Apply finished with failed policies: {', '.join(report.failed)}")
        return report

    def _apply_guarded(self, policy: IPSetPolicy, cancel: Optional[CancelToken]) -> PolicyResult:
        try:
            return self.apply_policy(policy, cancel)
        except OperationCancelled as e:
            logger.info(f"[ipset {policy.ipset_name}] apply cancelled")
            return PolicyResult(name=policy.ipset_name, ok=False, error=e.to_dict())
        except PBRError as e:
            logger.error(f"[ipset {policy.ipset_name}] apply failed: {e.message}")
            return PolicyResult(name=policy.ipset_name, ok=False, error=e.to_dict())

    def apply_policy(self, policy: IPSetPolicy, cancel: Optional[CancelToken] = None) -> PolicyResult:
        """Bring one policy to the Configured state.

        Raises:
            ExternalToolError: A kernel tool failed; earlier steps are kept
            OperationCancelled: Cancelled between two objects
        """
        name = policy.ipset_name
        result = PolicyResult(name=name)
        with self._policy_lock(name):
            check_cancelled(cancel, f"apply of {name}")
            entries = self.registry.entries_for_policy(policy, cancel)
            result.list_errors = entries.errors

            check_cancelled(cancel, f"apply of {name}")
            created = self.ipset.create(name, policy.family, cancel=cancel)
            if not created and policy.flush_before_applying:
                self.ipset.flush(name, cancel)
            result.entries = self.ipset.populate(name, [e.canonical() for e in entries.networks], cancel)

            check_cancelled(cancel, f"apply of {name}")
            target = self.desired_route(policy, cancel=cancel)
            if target is None:
                self._install_route(policy, None, cancel)
                return result

            self._install_marking(policy, cancel)
            check_cancelled(cancel, f"apply of {name}")
            self._install_route(policy, target, cancel)
            check_cancelled(cancel, f"apply of {name}")
            self._install_ip_rule(policy, cancel)
            result.route = target.describe()
        return result

    # ------------------------------------------------------------------
    # Failover
    # ------------------------------------------------------------------

    def refresh_routes(self, cancel: Optional[CancelToken] = None,
                       force_refresh: bool = False) -> Dict[str, Optional[str]]:
        """Re-evaluate interfaces and rewrite only the policy tables' default routes.

        Returns:
            ipset name -> route description (None when routing is disabled)
        """
        routes: Dict[str, Optional[str]] = {}
        for policy in self._policies():
            check_cancelled(cancel, "route refresh")
            name = policy.ipset_name
            try:
                with self._policy_lock(name):
                    target = self.desired_route(policy, force_refresh, cancel)
                    if target is not None and not self.iproute.rule_exists(
                        policy.routing.fwmark, policy.routing.table, policy.routing.priority,
                        policy.ip_version, cancel,
                    ):
                        # Routing was disabled while no interface was usable
                        self._install_marking(policy, cancel)
                        self._install_route(policy, target, cancel)
                        self._install_ip_rule(policy, cancel)
                    else:
                        self._install_route(policy, target, cancel)
                    routes[name] = target.describe() if target is not None else None
            except OperationCancelled:
                raise
            except PBRError as e:
                logger.error(f"[ipset {name}] route refresh failed: {e.message}")
                routes[name] = None
        return routes

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def teardown(self, name: Optional[str] = None) -> List[str]:
        """Remove the kernel objects of one policy (or all of them).

        Every step is attempted; failures are collected.

        Returns:
            Names of the policies torn down

        Raises:
            TeardownError: At least one step failed (``errors`` lists them all)
        """
        policies = self._policies([name] if name is not None else None)
        errors: List[PBRError] = []
        for policy in policies:
            errors.extend(self._teardown_policy(policy))
        if errors:
            raise TeardownError(f"teardown finished with {len(errors)} errors", errors)
        return [p.ipset_name for p in policies]

    def _teardown_policy(self, policy: IPSetPolicy) -> List[PBRError]:
        name = policy.ipset_name
        routing = policy.routing
        variables = policy.template_variables()
        errors: List[PBRError] = []

        steps = [
            (f"mark rule {describe_rule(t.table, t.chain, t.render(variables))}",
             lambda t=t: self.iptables.delete_rule(t.table, t.chain, t.render(variables), policy.ip_version))
            for t in policy.mark_rules()
        ]
        steps.append((f"ip rule fwmark {routing.fwmark}",
                      lambda: self.iproute.delete_rule(routing.fwmark, routing.table, routing.priority,
                                                       policy.ip_version)))
        steps.append((f"routes of table {routing.table}",
                      lambda: self.iproute.flush_table(routing.table, policy.ip_version)))
        steps.append((f"ipset {name}", lambda: self.ipset.destroy(name)))

        with self._policy_lock(name):
            for description, step in steps:
                try:
                    step()
                except PBRError as e:
                    logger.error(f"[ipset {name}] failed to remove {description}: {e.message}")
                    e.details.setdefault("object", description)
                    errors.append(e)
        if not errors:
            logger.info(f"[ipset {name}] torn down")
        return errors

    def undo_all(self) -> None:
        """Remove everything this process manages, logging failures."""
        try:
            self.teardown()
        except TeardownError as e:
            for error in e.errors:
                logger.error(f"Undo: {error.message}")
            raise

    # ------------------------------------------------------------------
    # Self-check
    # ------------------------------------------------------------------

    def self_check_targets(self, policy: IPSetPolicy,
                           cancel: Optional[CancelToken] = None) -> List[KernelObjectCheck]:
        """Describe the kernel objects the policy should have and whether they exist."""
        name = policy.ipset_name
        routing = policy.routing
        target = self.desired_route(policy, force_refresh=True, cancel=cancel)
        routed = target is not None
        checks = [
            KernelObjectCheck("ipset", name, f"ipset {name} ({policy.family})",
                              self.ipset.exists(name, cancel)),
        ]

        variables = policy.template_variables()
        for template in policy.mark_rules():
            rule = template.render(variables)
            checks.append(KernelObjectCheck(
                "iptables", name, f"iptables {describe_rule(template.table, template.chain, rule)}",
                self.iptables.rule_exists(template.table, template.chain, rule, policy.ip_version, cancel),
                should_exist=routed,
            ))

        checks.append(KernelObjectCheck(
            "ip_rule", name,
            f"ip rule fwmark {routing.fwmark:#x} table {routing.table} priority {routing.priority}",
            self.iproute.rule_exists(routing.fwmark, routing.table, routing.priority, policy.ip_version, cancel),
            should_exist=routed,
        ))

        if target is not None:
            checks.append(KernelObjectCheck(
                "ip_route", name, f"default route {target.describe()} in table {routing.table}",
                self.iproute.has_default_route(routing.table, target, policy.ip_version, cancel),
            ))
        else:
            checks.append(KernelObjectCheck(
                "ip_route", name, f"no default route in table {routing.table}",
                self.iproute.default_route(routing.table, policy.ip_version, cancel) is not None,
                should_exist=False,
            ))
        return checks
