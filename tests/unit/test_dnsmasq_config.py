"""
Unit tests for dnsmasq hook generation.
"""

import pytest

from dnsmasq_config import (
    generate_dnsmasq_config,
    hash_record,
    read_config_hash,
    upstream_lines,
    write_dnsmasq_config,
)
from list_fetcher import ListFetcher, RemoteFetcher
from list_registry import ListRegistry
from pbr_config import ConfigStore, config_hash
from pbr_errors import CancelToken, OperationCancelled
from router_status_client import DNSServerInfo, RouterUnreachableError


class StubRouter:
    def __init__(self, servers=None, error=None):
        self.servers = servers or []
        self.error = error

    def get_dns_servers(self):
        if self.error:
            raise self.error
        return self.servers


@pytest.fixture
def shared_store(temp_dir, two_policy_config):
    two_policy_config["lists"][1]["hosts"].append("*.example.com")
    return ConfigStore.from_dict(two_policy_config, path=temp_dir / "keen-pbr.yaml")


@pytest.fixture
def shared_registry(shared_store, session):
    return ListRegistry(shared_store, ListFetcher(remote=RemoteFetcher(session=session)))


class TestGenerate:
    """Tests for the generated dnsmasq lines."""

    def test_lines(self, shared_store, shared_registry):
        cfg = shared_store.snapshot()
        lines = list(generate_dnsmasq_config(cfg, shared_registry))

        assert lines[0] == hash_record(config_hash(cfg))
        assert lines[1:] == [
            "ipset=/example.com/p1,p2",
            "server=/example.com/192.0.2.53#5353",
            "ipset=/corp.example/p2",
            "server=/corp.example/192.0.2.53#5353",
        ]

    def test_ip_entries_are_not_emitted(self, store, registry):
        lines = list(generate_dnsmasq_config(store.snapshot(), registry))
        assert not any("10.0.0.0" in line for line in lines)

    def test_upstreams_only_with_router_api(self, shared_store, shared_registry):
        router = StubRouter([DNSServerInfo("IP4", "192.168.41.15", "192.168.41.15", "", "corp.example"),
                             DNSServerInfo("DoT", "127.0.0.1", "p0.freedns.example", "40500")])
        cfg = shared_store.snapshot()
        assert not any(line.startswith("server=127") for line in generate_dnsmasq_config(cfg, shared_registry, router))

        cfg.general.use_keenetic_api = True
        lines = list(generate_dnsmasq_config(cfg, shared_registry, router))
        assert lines[1:3] == ["server=/corp.example/192.168.41.15", "server=127.0.0.1#40500"]

    def test_router_failure_drops_upstreams(self):
        assert upstream_lines(StubRouter(error=RouterUnreachableError("timeout"))) == []
        assert upstream_lines(None) == []

    def test_cancelled(self, store, registry):
        token = CancelToken()
        token.cancel()
        with pytest.raises(OperationCancelled):
            list(generate_dnsmasq_config(store.snapshot(), registry, cancel=token))


class TestWrite:
    """Tests for writing and reading back the hook file."""

    def test_write_and_read_hash(self, temp_dir, store, registry):
        path = temp_dir / "dnsmasq.d" / "keen-pbr.conf"
        cfg = store.snapshot()
        count = write_dnsmasq_config(path, cfg, registry)

        assert count == len(path.read_text().splitlines())
        assert read_config_hash(path) == config_hash(cfg)

    def test_read_hash_of_missing_or_foreign_file(self, temp_dir):
        assert read_config_hash(temp_dir / "none.conf") is None
        foreign = temp_dir / "foreign.conf"
        foreign.write_text("server=8.8.8.8\n")
        assert read_config_hash(foreign) is None


@pytest.fixture
def rule_config(sample_config):
    sample_config["lists"].append({"list_name": "chat", "hosts": ["chat.example", "example.com", "198.51.100.0/24"]})
    sample_config["outbounds"] = [{"type": "interface", "tag": "wan", "ifname": "eth0"}]
    sample_config["rules"] = [
        {"id": "work", "lists": ["chat"], "outbound_table": {"type": "static", "outbound": "wan"},
         "dns_servers": [{"type": "https", "server": "dns.example", "port": 443, "path": "/dns-query"}]},
        {"id": "plain", "lists": ["chat"], "outbound_table": {"type": "static", "outbound": "wan"},
         "dns_servers": [{"server": "192.0.2.53", "port": 5353, "throughOutbound": False}]},
        {"id": "off", "enabled": False, "lists": ["chat"],
         "outbound_table": {"type": "static", "outbound": "wan"}},
    ]
    sample_config["tproxy"] = {"enabled": True}
    return sample_config


def _lines(temp_dir, config, session):
    store = ConfigStore.from_dict(config, path=temp_dir / "keen-pbr.yaml")
    registry = ListRegistry(store, ListFetcher(remote=RemoteFetcher(session=session)))
    return list(generate_dnsmasq_config(store.snapshot(), registry))[1:]


class TestTProxyRules:
    """Tests for domains of transparent-proxy rules."""

    def test_rule_domains_and_dns_servers(self, temp_dir, rule_config, session):
        assert _lines(temp_dir, rule_config, session) == [
            "ipset=/example.com/p1,kpbr_work,kpbr_plain",
            "server=/example.com/127.0.0.42#53",
            "ipset=/chat.example/kpbr_work,kpbr_plain",
            "server=/chat.example/127.0.0.42#53",
        ]

    def test_direct_udp_server(self, temp_dir, rule_config, session):
        del rule_config["rules"][0]
        assert _lines(temp_dir, rule_config, session)[-2:] == [
            "ipset=/chat.example/kpbr_plain",
            "server=/chat.example/192.0.2.53#5353",
        ]

    def test_rules_ignored_while_tproxy_disabled(self, temp_dir, rule_config, session):
        rule_config["tproxy"]["enabled"] = False
        assert _lines(temp_dir, rule_config, session) == ["ipset=/example.com/p1"]


class TestListFailures:
    """Tests for lists that cannot be read."""

    def test_unreadable_list_is_skipped(self, temp_dir, two_policy_config, session):
        (temp_dir / "baddir").mkdir()
        two_policy_config["lists"].append({"list_name": "bad", "file": "baddir"})
        two_policy_config["ipsets"][0]["lists"].append("bad")

        lines = _lines(temp_dir, two_policy_config, session)

        assert "ipset=/corp.example/p2" in lines
        assert "ipset=/example.com/p1" in lines
