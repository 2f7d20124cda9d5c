"""
Pytest configuration and fixtures for keen-pbr tests.

No test needs root or network access: kernel tools are served by
FakeKernel (an in-memory ipset/iptables/iproute2 simulation behind the
CommandRunner interface) and HTTP by FakeSession.
"""

import ipaddress
import sys
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, Generator, List, Optional, Tuple, Union

import pytest
import requests

# Add scripts directory to path for imports
SCRIPTS_DIR = Path(__file__).parent.parent / "scripts"
sys.path.insert(0, str(SCRIPTS_DIR))

from command_runner import CommandResult, CommandRunner  # noqa: E402
from pbr_errors import ExternalToolError, check_cancelled  # noqa: E402

BUILTIN_CHAINS = {"PREROUTING", "INPUT", "FORWARD", "OUTPUT", "POSTROUTING"}


def _ok(cmd: List[str], stdout: str = "") -> CommandResult:
    return CommandResult(cmd, 0, stdout, "")


def _fail(cmd: List[str], stderr: str, returncode: int = 1) -> CommandResult:
    return CommandResult(cmd, returncode, "", stderr)


class FakeKernel(CommandRunner):
    """In-memory network state answering ipset / iptables / ip / lsmod calls."""

    def __init__(self):
        super().__init__(timeout=1)
        self.sets: Dict[str, Dict[str, Any]] = {}
        self.rules: Dict[Tuple[str, str, str], List[Tuple[str, ...]]] = {}
        self.chains: set = set()
        self.ip_rules: List[Tuple[int, int, int, int]] = []  # (family, priority, fwmark, table)
        self.routes: Dict[Tuple[int, int], List[str]] = {}
        self.links: Dict[str, Tuple[bool, bool]] = {}
        self.addresses: List[str] = []
        self.modules: List[str] = []
        self.calls: List[List[str]] = []
        self.overrides: List[Tuple[Tuple[str, ...], Union[CommandResult, Callable]]] = []

    # -- helpers for tests ------------------------------------------------

    def add_link(self, name: str, up: bool = True, carrier: bool = True) -> None:
        self.links[name] = (up, carrier)

    def fail(self, prefix: List[str], stderr: str = "simulated failure", returncode: int = 1) -> None:
        """Make every command starting with ``prefix`` fail."""
        self.overrides.append((tuple(prefix), _fail(list(prefix), stderr, returncode)))

    def respond(self, prefix: List[str], result: Union[CommandResult, Callable]) -> None:
        self.overrides.append((tuple(prefix), result))

    def state(self) -> Dict[str, Any]:
        """Comparable snapshot of every managed kernel object."""
        return {
            "sets": {name: (s["family"], sorted(s["members"])) for name, s in self.sets.items()},
            "rules": {key: list(value) for key, value in self.rules.items() if value},
            "chains": sorted(self.chains),
            "ip_rules": sorted(self.ip_rules),
            "routes": {key: list(value) for key, value in self.routes.items() if value},
        }

    def count(self, *prefix: str) -> int:
        return sum(1 for call in self.calls if tuple(call[:len(prefix)]) == prefix)

    # -- CommandRunner interface -----------------------------------------

    def run(self, cmd, input=None, check=False, cancel=None, log_failure=True):
        check_cancelled(cancel, cmd[0])
        self.calls.append(list(cmd))
        result = None
        for prefix, response in self.overrides:
            if tuple(cmd[:len(prefix)]) == prefix:
                result = response(cmd, input) if callable(response) else CommandResult(
                    list(cmd), response.returncode, response.stdout, response.stderr)
                break
        if result is None:
            result = self._dispatch(list(cmd), input)
        if check and not result.ok:
            raise ExternalToolError(f"{' '.join(cmd)} failed: {result.error}", cmd,
                                    result.returncode, result.stderr)
        return result

    def popen(self, cmd):
        raise AssertionError("popen is not simulated by FakeKernel")

    def _dispatch(self, cmd: List[str], input: Optional[str]) -> CommandResult:
        tool = cmd[0]
        if tool == "ipset":
            return self._ipset(cmd, input)
        if tool in ("iptables", "ip6tables"):
            return self._iptables(cmd)
        if tool == "ip":
            return self._ip(cmd)
        if tool == "lsmod":
            return _ok(cmd, "Module Size Used by\n" + "".join(f"{m} 16384 0\n" for m in self.modules))
        if tool == "modprobe":
            self.modules.append(cmd[1])
            return _ok(cmd)
        return _fail(cmd, f"{tool}: command not simulated", 127)

    # -- ipset ---------------------------------------------------------------

    def _ipset(self, cmd: List[str], input: Optional[str]) -> CommandResult:
        action = cmd[1]
        missing = "ipset v7.19: The set with the given name does not exist"
        if action == "list" and cmd[2] == "-n":
            return _ok(cmd, cmd[3] + "\n") if cmd[3] in self.sets else _fail(cmd, missing)
        if action == "list":
            s = self.sets.get(cmd[2])
            if s is None:
                return _fail(cmd, missing)
            body = f"Name: {cmd[2]}\nType: hash:net\nMembers:\n" + "".join(f"{m}\n" for m in sorted(s["members"]))
            return _ok(cmd, body)
        if action == "create":
            self.sets.setdefault(cmd[2], {"family": cmd[5], "members": set()})
            return _ok(cmd)
        if action == "flush":
            if cmd[2] not in self.sets:
                return _fail(cmd, missing)
            self.sets[cmd[2]]["members"].clear()
            return _ok(cmd)
        if action == "restore":
            for line in (input or "").splitlines():
                _, name, network = line.split()
                if name not in self.sets:
                    return _fail(cmd, f"ipset v7.19: Error in line 1: {missing}")
                self.sets[name]["members"].add(str(ipaddress.ip_network(network, strict=False)))
            return _ok(cmd)
        if action == "test":
            s = self.sets.get(cmd[2])
            if s is None:
                return _fail(cmd, missing)
            addr = ipaddress.ip_address(cmd[3])
            for member in s["members"]:
                net = ipaddress.ip_network(member)
                if net.version == addr.version and addr in net:
                    return _ok(cmd, f"Warning: {cmd[3]} is in set {cmd[2]}.")
            return _fail(cmd, f"ipset v7.19: {cmd[3]} is NOT in set {cmd[2]}.")
        if action == "destroy":
            if self.sets.pop(cmd[2], None) is None:
                return _fail(cmd, missing)
            return _ok(cmd)
        return _fail(cmd, f"unsupported ipset action {action}")

    # -- iptables ------------------------------------------------------------

    def _iptables(self, cmd: List[str]) -> CommandResult:
        args = [a for a in cmd[1:] if a != "-w"]
        table = "filter"
        if args[0] == "-t":
            table, args = args[1], args[2:]
        op, chain, rule = args[0], args[1], tuple(args[2:])
        key = (cmd[0], table, chain)
        chain_known = chain in BUILTIN_CHAINS or key in self.chains
        no_chain = "iptables: No chain/target/match by that name."
        rules = self.rules.setdefault(key, [])

        if op == "-C":
            if rule in rules:
                return _ok(cmd)
            return _fail(cmd, "iptables: Bad rule (does a matching rule exist in that chain?).")
        if op in ("-A", "-I"):
            if not chain_known:
                return _fail(cmd, no_chain)
            if op == "-A":
                rules.append(rule)
            else:
                rules.insert(0, rule)
            return _ok(cmd)
        if op == "-D":
            if rule not in rules:
                return _fail(cmd, "iptables: Bad rule (does a matching rule exist in that chain?).")
            rules.remove(rule)
            return _ok(cmd)
        if op == "-S":
            return _ok(cmd, f"-N {chain}\n") if chain_known else _fail(cmd, no_chain)
        if op == "-N":
            if chain_known:
                return _fail(cmd, "iptables: Chain already exists.")
            self.chains.add(key)
            return _ok(cmd)
        if op == "-F":
            if not chain_known:
                return _fail(cmd, no_chain)
            rules.clear()
            return _ok(cmd)
        if op == "-X":
            if key not in self.chains:
                return _fail(cmd, no_chain)
            self.chains.discard(key)
            self.rules.pop(key, None)
            return _ok(cmd)
        return _fail(cmd, f"unsupported iptables op {op}")

    # -- ip --------------------------------------------------------------------

    def _ip(self, cmd: List[str]) -> CommandResult:
        if cmd[1] == "-o":
            return self._ip_show(cmd)
        family = 6 if cmd[1] == "-6" else 4
        obj, action, rest = cmd[2], cmd[3], cmd[4:]
        if obj == "rule":
            return self._ip_rule(cmd, family, action, rest)
        if obj == "route":
            return self._ip_route(cmd, family, action, rest)
        return _fail(cmd, f"unsupported ip object {obj}")

    def _ip_show(self, cmd: List[str]) -> CommandResult:
        if cmd[2] == "addr":
            return _ok(cmd, "\n".join(self.addresses) + "\n")
        names = list(self.links)
        if "dev" in cmd:
            name = cmd[cmd.index("dev") + 1]
            if name not in self.links:
                return _fail(cmd, f'Device "{name}" does not exist.')
            names = [name]
        lines = []
        for idx, name in enumerate(names, start=2):
            up, carrier = self.links[name]
            flags = ["BROADCAST", "MULTICAST"] + (["UP"] if up else []) + (["LOWER_UP"] if carrier else [])
            state = "UP" if up and carrier else "DOWN"
            lines.append(f"{idx}: {name}: <{','.join(flags)}> mtu 1500 qdisc fq state {state} mode DEFAULT")
        return _ok(cmd, "\n".join(lines) + "\n")

    @staticmethod
    def _opt(rest: List[str], key: str) -> Optional[str]:
        return rest[rest.index(key) + 1] if key in rest else None

    def _ip_rule(self, cmd, family, action, rest) -> CommandResult:
        if action == "show":
            lines = ["0:\tfrom all lookup local"]
            for fam, prio, mark, table in sorted(self.ip_rules, key=lambda r: r[1]):
                if fam == family:
                    lines.append(f"{prio}:\tfrom all fwmark {mark:#x} lookup {table}")
            lines.append("32766:\tfrom all lookup main")
            return _ok(cmd, "\n".join(lines) + "\n")
        entry = (family, int(self._opt(rest, "priority")), int(self._opt(rest, "fwmark")),
                 int(self._opt(rest, "table")))
        if action == "add":
            if entry in self.ip_rules:
                return _fail(cmd, "RTNETLINK answers: File exists", 2)
            self.ip_rules.append(entry)
            return _ok(cmd)
        if action == "del":
            if entry not in self.ip_rules:
                return _fail(cmd, "RTNETLINK answers: No such file or directory", 2)
            self.ip_rules.remove(entry)
            return _ok(cmd)
        return _fail(cmd, f"unsupported ip rule action {action}")

    def _ip_route(self, cmd, family, action, rest) -> CommandResult:
        table = int(self._opt(rest, "table"))
        routes = self.routes.setdefault((family, table), [])
        spec = rest[:rest.index("table")]
        if action == "show":
            return _ok(cmd, "".join(f"{line}\n" for line in routes))
        if action == "flush":
            routes.clear()
            return _ok(cmd)
        if spec[0] == "local":
            line = "local default dev lo scope host"
            if action == "add":
                if line in routes:
                    return _fail(cmd, "RTNETLINK answers: File exists", 2)
                routes.append(line)
                return _ok(cmd)
            if line not in routes:
                return _fail(cmd, "RTNETLINK answers: No such process", 2)
            routes.remove(line)
            return _ok(cmd)

        blackhole = spec[0] == "blackhole"
        if action == "replace":
            if blackhole:
                line = "blackhole default"
            elif "via" in spec:
                line = f"default via {self._opt(spec, 'via')}"
                if "dev" in spec:
                    line += f" dev {self._opt(spec, 'dev')}"
            else:
                line = f"default dev {self._opt(spec, 'dev')} scope link"
            prefix = "blackhole default" if blackhole else "default"
            routes[:] = [r for r in routes if not r.startswith(prefix)]
            routes.insert(0, line)
            return _ok(cmd)
        if action == "del":
            prefix = "blackhole default" if blackhole else "default"
            for route in routes:
                if route.startswith(prefix):
                    routes.remove(route)
                    return _ok(cmd)
            return _fail(cmd, "RTNETLINK answers: No such process", 2)
        return _fail(cmd, f"unsupported ip route action {action}")


def make_response(
    status: int = 200,
    body: Union[bytes, str, dict, list, None] = b"",
    headers: Optional[Dict[str, str]] = None,
    url: str = "http://test.invalid/",
) -> requests.Response:
    """Build a real requests.Response with the body already in memory."""
    import json

    response = requests.Response()
    response.status_code = status
    response.url = url
    response.reason = "OK" if status < 400 else "Error"
    if isinstance(body, (dict, list)):
        body = json.dumps(body)
    if isinstance(body, str):
        body = body.encode("utf-8")
    response._content = body or b""
    response._content_consumed = True
    response.encoding = "utf-8"
    response.headers.update(headers or {})
    return response


class FakeSession:
    """Minimal requests.Session stand-in; responses are queued per (method, url)."""

    def __init__(self):
        self.routes: Dict[Tuple[str, str], List[Any]] = {}
        self.calls: List[Dict[str, Any]] = []
        self.headers: Dict[str, str] = {}

    def add(self, method: str, url: str, *responses: Any) -> None:
        """Queue responses; the last one repeats. An exception instance is raised."""
        self.routes.setdefault((method.upper(), url), []).extend(responses)

    def _serve(self, method: str, url: str, **kwargs) -> requests.Response:
        self.calls.append({"method": method, "url": url, **kwargs})
        queue = self.routes.get((method, url))
        if not queue:
            raise requests.exceptions.ConnectionError(f"no fake route for {method} {url}")
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(item) and not isinstance(item, requests.Response):
            item = item(**kwargs)
        if isinstance(item, BaseException):
            raise item
        item.url = url
        return item

    def get(self, url, **kwargs):
        return self._serve("GET", url, **kwargs)

    def post(self, url, **kwargs):
        return self._serve("POST", url, **kwargs)

    def close(self):
        pass

    def count(self, method: str, url: str) -> int:
        return sum(1 for c in self.calls if c["method"] == method and c["url"] == url)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def kernel() -> FakeKernel:
    k = FakeKernel()
    k.add_link("eth0", up=True)
    k.add_link("eth1", up=False, carrier=False)
    k.add_link("br0", up=True)
    return k


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def sample_config() -> dict:
    """Policy p1: fwmark/table/priority 100 over [eth1, eth0] with inline list l1."""
    return {
        "general": {"use_keenetic_api": False, "lists_output_dir": "lists.d"},
        "lists": [
            {"list_name": "l1", "hosts": ["example.com", "10.0.0.0/8", "not a domain!!"]},
        ],
        "ipsets": [
            {
                "ipset_name": "p1",
                "ip_version": 4,
                "lists": ["l1"],
                "routing": {
                    "interfaces": ["eth1", "eth0"],
                    "kill_switch": True,
                    "fwmark": 100,
                    "table": 100,
                    "priority": 100,
                },
            }
        ],
    }


@pytest.fixture
def two_policy_config(sample_config) -> dict:
    config = dict(sample_config)
    config["lists"] = sample_config["lists"] + [
        {"list_name": "l2", "hosts": ["192.0.2.0/24", "corp.example"]},
    ]
    config["ipsets"] = sample_config["ipsets"] + [
        {
            "ipset_name": "p2",
            "lists": ["l2"],
            "routing": {
                "interfaces": ["eth0"],
                "kill_switch": False,
                "fwmark": 200,
                "table": 200,
                "priority": 200,
                "dns_override": "192.0.2.53#5353",
            },
        }
    ]
    return config


@pytest.fixture
def store(temp_dir: Path, sample_config: dict):
    from pbr_config import ConfigStore

    return ConfigStore.from_dict(sample_config, path=temp_dir / "keen-pbr.yaml")


@pytest.fixture
def registry(store, session):
    from list_fetcher import ListFetcher, RemoteFetcher
    from list_registry import ListRegistry

    return ListRegistry(store, ListFetcher(remote=RemoteFetcher(session=session)))
