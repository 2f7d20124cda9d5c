"""
Unit tests for the routing check, self-check and probes.
"""

import dns.exception
import dns.resolver
import pytest

from command_runner import CommandRunner
from diagnostics import Diagnostics, parse_dns_server, validate_host
from dnsmasq_config import write_dnsmasq_config
from pbr_config import ConfigStore
from pbr_errors import CancelToken, NotFoundError, OperationCancelled, TransientNetworkError, ValidationError
from router_status_client import RouterUnreachableError
from test_pbr_manager import build_manager


class ShellRunner(CommandRunner):
    """Runs a fixed shell script in place of the probe command."""

    def __init__(self, script):
        super().__init__()
        self.script = script
        self.commands = []
        self.procs = []

    def popen(self, cmd):
        self.commands.append(cmd)
        proc = super().popen(["sh", "-c", self.script])
        self.procs.append(proc)
        return proc


class StubRouter:
    def __init__(self, error=None):
        self.error = error

    def list_interfaces(self, force_refresh=False):
        if self.error:
            raise self.error
        return ["eth0", "eth1"]


def make_diagnostics(store, kernel, session, router=None, runner=None):
    manager = build_manager(store, kernel, session)
    return Diagnostics(store, manager.registry, manager, router_client=router, runner=runner or kernel)


@pytest.fixture
def diag(store, kernel, session):
    store.save()
    diagnostics = make_diagnostics(store, kernel, session)
    yield diagnostics
    diagnostics.close()


@pytest.fixture
def two_diag(temp_dir, two_policy_config, kernel, session):
    store = ConfigStore.from_dict(two_policy_config, path=temp_dir / "keen-pbr.yaml")
    store.save()
    diagnostics = make_diagnostics(store, kernel, session)
    yield diagnostics
    diagnostics.close()


class TestValidation:
    """Tests for host and DNS server input handling."""

    @pytest.mark.parametrize("host,expected", [
        ("Example.COM.", "example.com"),
        ("10.0.0.1", "10.0.0.1"),
        ("2001:DB8::1", "2001:db8::1"),
    ])
    def test_valid_hosts(self, host, expected):
        assert validate_host(host) == expected

    @pytest.mark.parametrize("host", ["", "-c", "--help", "*.example.com", "exa mple.com", "a;rm -rf /"])
    def test_invalid_hosts(self, host):
        with pytest.raises(ValidationError):
            validate_host(host)

    @pytest.mark.parametrize("value,expected", [
        ("1.1.1.1", ("1.1.1.1", 53)),
        ("1.1.1.1#5353", ("1.1.1.1", 5353)),
        ("[2001:db8::1]#53", ("2001:db8::1", 53)),
    ])
    def test_parse_dns_server(self, value, expected):
        assert parse_dns_server(value) == expected


class TestRoutingCheck:
    """Tests for comparing list membership with ipset contents."""

    def test_network_match_present(self, diag, monkeypatch):
        """Applied p1 routes a host inside 10.0.0.0/8: present and expected, no mismatch."""
        diag.manager.apply()
        monkeypatch.setattr(diag, "resolve_system", lambda host, cancel=None: ["10.1.2.3"])

        result = diag.check_routing("intranet.corp")

        check = result.get("p1", "10.1.2.3")
        assert check.present_in_ipset is True
        assert check.should_be_present is True
        assert check.matched_by == "network 10.0.0.0/8"
        assert not result.mismatch

    def test_domain_match_missing_from_set(self, diag, kernel, monkeypatch):
        diag.manager.apply()
        monkeypatch.setattr(diag, "resolve_system", lambda host, cancel=None: ["93.184.216.34"])

        result = diag.check_routing("www.example.com")

        assert result.domain_matches["p1"] == {"pattern": "example.com", "specificity": 2}
        assert result.get("p1", "93.184.216.34").mismatch

        kernel.sets["p1"]["members"].add("93.184.216.34/32")
        assert not diag.check_routing("www.example.com").mismatch

    def test_unlisted_address_present_is_mismatch(self, diag, kernel, monkeypatch):
        diag.manager.apply()
        kernel.sets["p1"]["members"].add("198.51.100.0/24")
        monkeypatch.setattr(diag, "resolve_system", lambda host, cancel=None: ["198.51.100.7"])
        check = diag.check_routing("other.example").get("p1", "198.51.100.7")
        assert check.present_in_ipset is True
        assert check.should_be_present is False
        assert check.mismatch

    def test_ip_literal_skips_resolution(self, diag, monkeypatch):
        diag.manager.apply()

        def fail(*args, **kwargs):
            raise AssertionError("resolver must not be used")

        monkeypatch.setattr(diag, "resolve_system", fail)
        result = diag.check_routing("10.9.9.9")
        assert result.resolver == "literal"
        assert result.resolved_ips == ["10.9.9.9"]
        assert result.get("p1", "10.9.9.9").present_in_ipset is True

    def test_missing_set_is_reported_not_raised(self, diag, monkeypatch):
        monkeypatch.setattr(diag, "resolve_system", lambda host, cancel=None: ["10.1.2.3"])
        check = diag.check_routing("host.example").get("p1", "10.1.2.3")
        assert check.present_in_ipset is None
        assert check.error
        assert not check.mismatch

    def test_dns_override_is_used(self, two_diag, monkeypatch):
        two_diag.manager.apply()
        calls = []

        def resolve_with(host, server, cancel=None):
            calls.append((host, server))
            return ["192.0.2.10"]

        monkeypatch.setattr(two_diag, "resolve_with", resolve_with)
        result = two_diag.check_routing("www.corp.example")

        assert calls == [("www.corp.example", "192.0.2.53#5353")]
        assert result.resolver == "192.0.2.53#5353"
        assert result.get("p2", "192.0.2.10").present_in_ipset is True
        assert result.get("p1", "192.0.2.10").should_be_present is False

    def test_ipv6_addresses_skip_ipv4_policies(self, diag, monkeypatch):
        diag.manager.apply()
        monkeypatch.setattr(diag, "resolve_system", lambda host, cancel=None: ["2001:db8::1", "10.0.0.5"])
        result = diag.check_routing("dual.example")
        assert [c.ip for c in result.checks] == ["10.0.0.5"]

    def test_invalid_host(self, diag):
        with pytest.raises(ValidationError):
            diag.check_routing("-oProxyCommand=x")


class TestResolveWith:
    """Tests for resolution through a specific DNS server."""

    def test_queries_given_server(self, diag, monkeypatch):
        seen = {}

        def fake_resolve(resolver, host, rdtype):
            seen["nameservers"] = [str(ns).split("@")[0] for ns in resolver.nameservers]
            seen["port"] = resolver.port
            if rdtype == "AAAA":
                raise dns.resolver.NoAnswer()
            return ["192.0.2.10"]

        monkeypatch.setattr(dns.resolver.Resolver, "resolve", fake_resolve)
        assert diag.resolve_with("www.corp.example", "192.0.2.53#5353") == ["192.0.2.10"]
        assert seen == {"nameservers": ["192.0.2.53"], "port": 5353}

    def test_nxdomain(self, diag, monkeypatch):
        def fake_resolve(resolver, host, rdtype):
            raise dns.resolver.NXDOMAIN()

        monkeypatch.setattr(dns.resolver.Resolver, "resolve", fake_resolve)
        with pytest.raises(NotFoundError):
            diag.resolve_with("nope.example", "192.0.2.53")

    def test_timeout(self, diag, monkeypatch):
        def fake_resolve(resolver, host, rdtype):
            raise dns.exception.Timeout()

        monkeypatch.setattr(dns.resolver.Resolver, "resolve", fake_resolve)
        with pytest.raises(TransientNetworkError):
            diag.resolve_with("slow.example", "192.0.2.53")


class TestSelfCheck:
    """Tests for the streaming self-check."""

    def test_healthy_after_apply(self, diag):
        diag.manager.apply()
        report = diag.run_self_check()

        names = [r.name for r in report.results]
        assert names[:4] == ["config", "list l1", "interface eth1", "interface eth0"]
        assert "p1/ip_rule" in names
        assert report.healthy

    def test_results_stream(self, diag):
        checks = diag.self_check()
        first = next(checks)
        assert first.name == "config"
        checks.close()

    def test_kernel_drift_is_reported(self, diag, kernel):
        diag.manager.apply()
        kernel.ip_rules.clear()
        report = diag.run_self_check()
        assert not report.healthy
        assert [r.name for r in report.results if not r.passed] == ["p1/ip_rule"]

    def test_missing_interface(self, store, kernel, session):
        del kernel.links["eth1"]
        diag = make_diagnostics(store, kernel, session)
        result = {r.name: r for r in diag.self_check()}["interface eth1"]
        assert not result.passed
        diag.close()

    def test_router_api_check(self, store, kernel, session):
        def enable_api(cfg):
            cfg.general.use_keenetic_api = True

        store.update(enable_api)
        diag = make_diagnostics(store, kernel, session, router=StubRouter(RouterUnreachableError("timeout")))
        result = {r.name: r for r in diag.self_check()}["router_api"]
        assert not result.passed
        assert result.message == "timeout"
        diag.close()

    def test_dnsmasq_hash(self, store, diag):
        def set_path(cfg):
            cfg.general.dnsmasq_config_path = "dnsmasq.d/keen-pbr.conf"

        store.update(set_path)
        path = store.abs_path("dnsmasq.d/keen-pbr.conf")
        assert {r.name: r for r in diag.self_check()}["dnsmasq"].passed is False

        write_dnsmasq_config(path, store.snapshot(), diag.registry)
        assert {r.name: r for r in diag.self_check()}["dnsmasq"].passed is True

        def change(cfg):
            cfg.general.interface_monitoring_interval_seconds = 60

        store.update(change)
        stale = {r.name: r for r in diag.self_check()}["dnsmasq"]
        assert not stale.passed
        assert "stale" in stale.message

    def test_cancelled(self, diag):
        token = CancelToken()
        token.cancel()
        with pytest.raises(OperationCancelled):
            list(diag.self_check(token))

    def test_broken_config_file_fails(self, store, diag):
        store.path.write_text("ipsets: [unclosed")
        result = next(diag.self_check())
        assert result.name == "config"
        assert not result.passed
        assert "YAML" in result.message

    def test_edited_config_file_fails(self, store, diag):
        text = store.path.read_text().replace("priority: 100", "priority: 150")
        store.path.write_text(text)
        result = next(diag.self_check())
        assert not result.passed
        assert "differs" in result.message

    def test_missing_config_file_fails(self, store, diag):
        store.path.unlink()
        result = next(diag.self_check())
        assert not result.passed
        assert "not found" in result.message

    def test_invalid_config_file_fails(self, store, diag):
        text = store.path.read_text().replace("priority: 100", "priority: -1")
        store.path.write_text(text)
        result = next(diag.self_check())
        assert not result.passed


class TestProbe:
    """Tests for streamed ping/traceroute probes."""

    def test_streams_lines(self, store, kernel, session):
        runner = ShellRunner("echo one; echo two")
        diag = make_diagnostics(store, kernel, session, runner=runner)
        assert list(diag.probe("ping", "example.com")) == ["one", "two"]
        assert runner.commands == [["ping", "-c", "4", "-W", "2", "example.com"]]
        diag.close()

    def test_close_kills_process(self, store, kernel, session):
        runner = ShellRunner("echo start; exec sleep 30")
        diag = make_diagnostics(store, kernel, session, runner=runner)
        lines = diag.probe("traceroute", "example.com")
        assert next(lines) == "start"
        lines.close()
        assert runner.procs[0].poll() is not None
        diag.close()

    def test_cancel_kills_process(self, store, kernel, session):
        runner = ShellRunner("echo start; exec sleep 30")
        diag = make_diagnostics(store, kernel, session, runner=runner)
        token = CancelToken()
        lines = diag.probe("ping", "example.com", token)
        assert next(lines) == "start"
        token.cancel()
        with pytest.raises(OperationCancelled):
            next(lines)
        assert runner.procs[0].poll() is not None
        diag.close()

    @pytest.mark.parametrize("kind,host", [("nmap", "example.com"), ("ping", "-f")])
    def test_rejected_input(self, diag, kind, host):
        with pytest.raises(ValidationError):
            list(diag.probe(kind, host))
