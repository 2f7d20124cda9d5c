"""
Unit tests for the ipset / iptables / iproute2 wrappers and interface selection.

All commands go to the in-memory FakeKernel from conftest.
"""

import pytest

from interface_selector import InterfaceSelector
from iproute_manager import (
    ROUTE_BLACKHOLE,
    ROUTE_DEV,
    ROUTE_VIA,
    IPRouteManager,
    RouteTarget,
    parse_link_line,
)
from ipset_manager import IPSetManager
from iptables_manager import IPTablesManager
from pbr_errors import CancelToken, ExternalToolError, OperationCancelled
from router_status_client import InterfaceNotFoundError, InterfaceState, RouterUnreachableError

MARK_RULE = ["-m", "set", "--match-set", "p1", "dst,src", "-j", "MARK", "--set-mark", "100"]


class StubRouter:
    def __init__(self, states=None, error=None):
        self.states = states or {}
        self.error = error
        self.calls = []

    def interface_state(self, name, force_refresh=False):
        self.calls.append((name, force_refresh))
        if self.error:
            raise self.error
        if name not in self.states:
            raise InterfaceNotFoundError(f"router has no interface {name!r}")
        return self.states[name]


class TestIPSetManager:
    """Tests for ipset operations."""

    def test_create_is_idempotent(self, kernel):
        ipset = IPSetManager(kernel)
        assert ipset.create("p1", "inet") is True
        assert ipset.create("p1", "inet") is False
        assert kernel.count("ipset", "create") == 1

    def test_populate_and_test(self, kernel):
        ipset = IPSetManager(kernel)
        ipset.create("p1")
        assert ipset.populate("p1", ["10.0.0.0/8", "192.0.2.1/32"]) == 2
        assert ipset.test("p1", "10.1.2.3") is True
        assert ipset.test("p1", "198.51.100.1") is False
        assert sorted(ipset.members("p1")) == ["10.0.0.0/8", "192.0.2.1/32"]

    def test_populate_nothing_runs_nothing(self, kernel):
        assert IPSetManager(kernel).populate("p1", []) == 0
        assert kernel.calls == []

    def test_populate_uses_single_restore(self, kernel):
        ipset = IPSetManager(kernel)
        ipset.create("p1")
        ipset.populate("p1", [f"10.0.{i}.0/24" for i in range(50)])
        assert kernel.count("ipset", "restore", "-exist") == 1

    def test_test_missing_set_raises(self, kernel):
        with pytest.raises(ExternalToolError):
            IPSetManager(kernel).test("missing", "10.0.0.1")

    def test_destroy(self, kernel):
        ipset = IPSetManager(kernel)
        ipset.create("p1")
        assert ipset.destroy("p1") is True
        assert ipset.destroy("p1") is False
        assert "p1" not in kernel.sets

    def test_create_failure_raises(self, kernel):
        kernel.fail(["ipset", "create"], "ipset v7.19: Kernel error received: Operation not permitted")
        with pytest.raises(ExternalToolError):
            IPSetManager(kernel).create("p1")


class TestIPTablesManager:
    """Tests for check-before-change iptables handling."""

    def test_ensure_rule_once(self, kernel):
        iptables = IPTablesManager(kernel)
        assert iptables.ensure_rule("mangle", "PREROUTING", MARK_RULE) is True
        assert iptables.ensure_rule("mangle", "PREROUTING", MARK_RULE) is False
        assert kernel.rules[("iptables", "mangle", "PREROUTING")] == [tuple(MARK_RULE)]

    def test_insert_goes_first(self, kernel):
        iptables = IPTablesManager(kernel)
        iptables.ensure_rule("mangle", "PREROUTING", MARK_RULE)
        bypass = ["-i", "br0", "-m", "set", "--match-set", "kpbr_localv4", "dst", "-j", "RETURN"]
        iptables.ensure_rule("mangle", "PREROUTING", bypass, insert=True)
        assert kernel.rules[("iptables", "mangle", "PREROUTING")][0] == tuple(bypass)

    def test_ipv6_uses_ip6tables(self, kernel):
        IPTablesManager(kernel).ensure_rule("mangle", "PREROUTING", MARK_RULE, ip_version=6)
        assert ("ip6tables", "mangle", "PREROUTING") in kernel.rules
        assert all(call[1] == "-w" for call in kernel.calls)

    def test_delete_removes_duplicates(self, kernel):
        iptables = IPTablesManager(kernel)
        kernel.rules[("iptables", "mangle", "PREROUTING")] = [tuple(MARK_RULE), tuple(MARK_RULE)]
        assert iptables.delete_rule("mangle", "PREROUTING", MARK_RULE) is True
        assert iptables.delete_rule("mangle", "PREROUTING", MARK_RULE) is False
        assert kernel.rules[("iptables", "mangle", "PREROUTING")] == []

    def test_chain_lifecycle(self, kernel):
        iptables = IPTablesManager(kernel)
        assert iptables.ensure_chain("nat", "KEEN_PBR_DNS") is True
        assert iptables.ensure_chain("nat", "KEEN_PBR_DNS") is False
        iptables.ensure_rule("nat", "KEEN_PBR_DNS", ["-p", "udp", "--dport", "53", "-j", "REDIRECT"])
        assert iptables.delete_chain("nat", "KEEN_PBR_DNS") is True
        assert iptables.delete_chain("nat", "KEEN_PBR_DNS") is False
        assert not iptables.chain_exists("nat", "KEEN_PBR_DNS")

    def test_append_failure_raises(self, kernel):
        kernel.fail(["iptables", "-w", "-t", "mangle", "-A"], "iptables: Permission denied")
        with pytest.raises(ExternalToolError):
            IPTablesManager(kernel).ensure_rule("mangle", "PREROUTING", MARK_RULE)


class TestIPRouteManager:
    """Tests for ip rule / ip route handling."""

    def test_rule_add_is_idempotent(self, kernel):
        iproute = IPRouteManager(kernel)
        assert iproute.add_rule(100, 100, 100) is True
        assert iproute.add_rule(100, 100, 100) is False
        assert kernel.ip_rules == [(4, 100, 100, 100)]
        assert iproute.rule_exists(100, 100, 100)
        assert not iproute.rule_exists(100, 100, 200)

    @pytest.mark.parametrize("line", [
        "100:\tfrom all fwmark 0x64 lookup 100",
        "100:\tfrom all fwmark 100 lookup 100",
        "100:\tfrom all fwmark 0x64/0xffffffff lookup 100",
    ])
    def test_rule_exists_accepts_hex_and_decimal(self, kernel, line):
        from command_runner import CommandResult
        kernel.respond(["ip", "-4", "rule", "show"], CommandResult(["ip"], 0, line + "\n", ""))
        assert IPRouteManager(kernel).rule_exists(100, 100, 100)

    def test_rule_exists_does_not_confuse_tables(self, kernel):
        from command_runner import CommandResult
        kernel.respond(["ip", "-4", "rule", "show"],
                       CommandResult(["ip"], 0, "100:\tfrom all fwmark 0x64 lookup 1000\n", ""))
        assert not IPRouteManager(kernel).rule_exists(100, 100, 100)

    def test_delete_rule(self, kernel):
        iproute = IPRouteManager(kernel)
        iproute.add_rule(100, 100, 100)
        assert iproute.delete_rule(100, 100, 100) is True
        assert iproute.delete_rule(100, 100, 100) is False
        assert kernel.ip_rules == []

    def test_default_route_switches(self, kernel):
        iproute = IPRouteManager(kernel)
        dev = RouteTarget(ROUTE_DEV, interface="eth0")
        blackhole = RouteTarget(ROUTE_BLACKHOLE)

        assert iproute.set_default_route(100, dev) is True
        assert iproute.set_default_route(100, dev) is False
        assert iproute.has_default_route(100, dev)

        assert iproute.set_default_route(100, blackhole) is True
        assert kernel.routes[(4, 100)] == ["blackhole default"]

        assert iproute.set_default_route(100, dev) is True
        assert kernel.routes[(4, 100)] == ["default dev eth0 scope link"]

    def test_via_gateway(self, kernel):
        iproute = IPRouteManager(kernel)
        via = RouteTarget(ROUTE_VIA, gateway="192.168.1.1")
        iproute.set_default_route(100, via)
        assert iproute.default_route(100) == "default via 192.168.1.1"
        assert iproute.has_default_route(100, via)
        assert not iproute.has_default_route(100, RouteTarget(ROUTE_DEV, interface="eth0"))

    def test_delete_and_flush(self, kernel):
        iproute = IPRouteManager(kernel)
        assert iproute.delete_default_route(100) is False
        assert iproute.flush_table(100) is False
        iproute.set_default_route(100, RouteTarget(ROUTE_BLACKHOLE))
        assert iproute.delete_default_route(100) is True
        iproute.set_default_route(100, RouteTarget(ROUTE_DEV, interface="eth0"))
        assert iproute.flush_table(100) is True
        assert iproute.table_routes(100) == []

    def test_local_route(self, kernel):
        iproute = IPRouteManager(kernel)
        assert iproute.add_local_route(105) is True
        assert iproute.add_local_route(105) is False
        assert iproute.has_local_route(105)
        assert iproute.delete_local_route(105) is True
        assert not iproute.has_local_route(105)

    def test_links(self, kernel):
        links = IPRouteManager(kernel).links()
        assert links["eth0"].admin_up and links["eth0"].link_up
        assert not links["eth1"].admin_up
        assert IPRouteManager(kernel).link("wg9") is None

    @pytest.mark.parametrize("line,name,admin,carrier", [
        ("2: eth0: <BROADCAST,MULTICAST,UP,LOWER_UP> mtu 1500 state UP", "eth0", True, True),
        ("7: nwg0: <POINTOPOINT,NOARP,UP> mtu 1420 state UNKNOWN", "nwg0", True, False),
        ("9: eth2.100@eth2: <BROADCAST,MULTICAST> mtu 1500 state DOWN", "eth2.100", False, False),
    ])
    def test_parse_link_line(self, line, name, admin, carrier):
        info = parse_link_line(line)
        assert (info.name, info.admin_up, info.link_up) == (name, admin, carrier)

    def test_cancelled_token_stops_commands(self, kernel):
        token = CancelToken()
        token.cancel()
        with pytest.raises(OperationCancelled):
            IPRouteManager(kernel).add_rule(100, 100, 100, cancel=token)
        assert kernel.calls == []


class TestInterfaceSelector:
    """Tests for choosing the policy output interface."""

    def test_first_admin_up_wins(self, kernel):
        selector = InterfaceSelector(IPRouteManager(kernel))
        assert selector.choose_best(["eth1", "eth0"]) == "eth0"
        assert selector.choose_best(["missing", "eth1"]) is None

    def test_router_disconnected_is_skipped(self, kernel):
        kernel.add_link("nwg0", up=True)
        router = StubRouter({"nwg0": InterfaceState("nwg0", True, True, False),
                             "eth0": InterfaceState("eth0", True, True, True)})
        selector = InterfaceSelector(IPRouteManager(kernel), router)
        assert selector.choose_best(["nwg0", "eth0"]) == "eth0"

    def test_unknown_to_router_uses_link_state(self, kernel):
        kernel.add_link("tun0", up=True)
        selector = InterfaceSelector(IPRouteManager(kernel), StubRouter())
        status = selector.status("tun0")
        assert status.eligible
        assert status.connected is None
        assert status.router_error is None

    def test_router_unreachable_degrades(self, kernel):
        selector = InterfaceSelector(IPRouteManager(kernel), StubRouter(error=RouterUnreachableError("timeout")))
        status = selector.status("eth0")
        assert status.eligible
        assert status.router_error == "timeout"

    def test_router_not_asked_for_down_links(self, kernel):
        router = StubRouter()
        InterfaceSelector(IPRouteManager(kernel), router).status("eth1")
        assert router.calls == []

    def test_force_refresh_is_passed(self, kernel):
        router = StubRouter({"eth0": InterfaceState("eth0", True, True, True)})
        InterfaceSelector(IPRouteManager(kernel), router).status("eth0", force_refresh=True)
        assert router.calls == [("eth0", True)]
