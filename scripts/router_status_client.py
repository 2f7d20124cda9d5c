#!/usr/bin/env python3
"""
Keenetic RCI client (read-only).

Answers "is this Linux interface usable?" from the router's management
API. Responses are cached for a few seconds so that interface selection
and diagnostics do not flood the router's control plane; the self-check
path passes force_refresh=True.

Endpoints used:
  GET  /show/interface/          id -> {type, description, link, connected, state, address, ...}
  GET  /show/version/            {"release": "4.03.C.6.3-9", ...}
  POST /                         {"show": {"interface": [{"system-name": {"name": id}}, ...]}}
  GET  /show/dns-proxy           {"proxy-status": [{"proxy-name", "proxy-config"}]}
"""

import json
import logging
import re
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests

from command_runner import CommandRunner
from pbr_errors import ExternalToolError, NotFoundError, TransientNetworkError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://127.0.0.1:79/rci"
DEFAULT_CACHE_TTL = 3.0
DEFAULT_TIMEOUT = 5.0
DEFAULT_CONNECT_TIMEOUT = 2.0

# /show/interface/system-name exists since KeeneticOS 4.03
SYSTEM_NAME_MIN_VERSION = (4, 3)

CONNECTED_YES = "yes"
CONNECTED_NO = "no"
LINK_UP = "up"
STATE_UP = "up"

DNS_SERVER_PREFIX = "dns_server = "
DNS_LOCALHOST_PREFIX = "127.0.0.1:"


class RouterUnreachableError(TransientNetworkError):
    """The router management API did not answer or answered garbage"""


class InterfaceNotFoundError(NotFoundError):
    """The router does not know the requested interface"""


@dataclass
class RouterInterface:
    id: str
    type: str = ""
    description: str = ""
    link: str = ""
    connected: str = ""
    state: str = ""
    address: str = ""
    ipv6_addresses: List[str] = field(default_factory=list)
    system_name: str = ""

    @classmethod
    def from_api(cls, iface_id: str, data: Dict[str, Any]) -> "RouterInterface":
        ipv6 = data.get("ipv6") or {}
        return cls(
            id=data.get("id") or iface_id,
            type=data.get("type", ""),
            description=data.get("description", ""),
            link=data.get("link", ""),
            connected=data.get("connected", ""),
            state=data.get("state", ""),
            address=data.get("address", ""),
            ipv6_addresses=[a.get("address", "") for a in ipv6.get("addresses", []) if isinstance(a, dict)],
        )

    @property
    def is_child(self) -> bool:
        return "/" in self.id


@dataclass
class InterfaceState:
    """Router view of an interface; ``connected`` is None when unknown"""
    name: str
    admin_up: bool
    link_up: bool
    connected: Optional[bool]

    @property
    def usable(self) -> bool:
        # Only an explicit connected=no disqualifies an interface
        return self.admin_up and self.connected is not False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "admin_up": self.admin_up,
            "link_up": self.link_up,
            "connected": self.connected,
        }


@dataclass
class RouterVersion:
    release: str
    major: int
    minor: int

    @property
    def supports_system_name(self) -> bool:
        return (self.major, self.minor) >= SYSTEM_NAME_MIN_VERSION


@dataclass
class DNSServerInfo:
    type: str  # "IP4", "IP6", "DoT", "DoH"
    proxy: str
    endpoint: str
    port: str = ""
    domain: Optional[str] = None


def parse_version(release: str) -> RouterVersion:
    parts = release.split(".")
    if len(parts) < 2 or not parts[0].isdigit() or not parts[1].isdigit():
        raise RouterUnreachableError(f"invalid router version: {release!r}")
    return RouterVersion(release=release, major=int(parts[0]), minor=int(parts[1]))


def _split_port(addr: str) -> Tuple[str, str]:
    host, sep, port = addr.rpartition(":")
    if sep and host and port:
        return host, port
    return addr, ""


def parse_dns_proxy_config(config: str) -> List[DNSServerInfo]:
    """Parse ``dns_server = ...`` lines of the router's DNS proxy config.

    Examples:
        dns_server = 192.168.41.15 corp.example          plain, domain-scoped
        dns_server = 127.0.0.1:40500 . # p0.freedns.com   DoT via local proxy
        dns_server = 127.0.0.1:40501 . # https://x/y@dnsm DoH via local proxy
    """
    servers = []
    for line in config.splitlines():
        line = line.strip()
        if not line.startswith(DNS_SERVER_PREFIX):
            continue
        value = line[len(DNS_SERVER_PREFIX):]
        comment = ""
        if "#" in value:
            value, comment = value.split("#", 1)
            comment = comment.strip()
        parts = value.split()
        if not parts:
            logger.error(f"Malformed dns_server line: {line!r}")
            continue

        addr = parts[0]
        domain = parts[1] if len(parts) > 1 and parts[1] != "." else None

        if addr.startswith(DNS_LOCALHOST_PREFIX) and comment.startswith("https://"):
            proxy, port = _split_port(addr)
            server = DNSServerInfo("DoH", proxy, comment.split("@", 1)[0], port)
        elif addr.startswith(DNS_LOCALHOST_PREFIX) and comment:
            proxy, port = _split_port(addr)
            server = DNSServerInfo("DoT", proxy, comment, port)
        elif addr.startswith(DNS_LOCALHOST_PREFIX):
            server = DNSServerInfo("IP4", addr, addr)
        elif "." in addr:
            proxy, port = _split_port(addr)
            server = DNSServerInfo("IP4", proxy, proxy, port)
        else:
            server = DNSServerInfo("IP6", addr, addr)
        server.domain = domain
        servers.append(server)
    return servers


class RouterStatusClient:
    """Cached reader of interface state from the router API"""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        cache_ttl: float = DEFAULT_CACHE_TTL,
        timeout: float = DEFAULT_TIMEOUT,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        session: Optional[requests.Session] = None,
        runner: Optional[CommandRunner] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.base_url = base_url.rstrip("/")
        self.cache_ttl = cache_ttl
        self.timeout = timeout
        self.connect_timeout = connect_timeout
        self.session = session or requests.Session()
        self.runner = runner or CommandRunner()
        self._clock = clock
        self._lock = threading.Lock()
        self._cache: Dict[str, Tuple[float, Any]] = {}
        self._version: Optional[RouterVersion] = None

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self.base_url}{path}"
        timeout = (self.connect_timeout, self.timeout)
        try:
            logger.debug(f"[rci] {method} {url}")
            if method == "POST":
                response = self.session.post(url, json=payload, timeout=timeout)
            else:
                response = self.session.get(url, timeout=timeout)
        except requests.exceptions.Timeout:
            raise RouterUnreachableError(f"router API timeout: {url}", {"url": url})
        except requests.exceptions.RequestException as e:
            raise RouterUnreachableError(f"router API unreachable: {e}", {"url": url})

        if response.status_code != 200:
            raise RouterUnreachableError(
                f"router API returned {response.status_code} for {path}",
                {"url": url, "status": response.status_code, "body": (response.text or "")[:200]},
            )
        try:
            return response.json()
        except (json.JSONDecodeError, ValueError) as e:
            raise RouterUnreachableError(f"router API returned invalid JSON for {path}: {e}", {"url": url})

    def _cached(self, key: str, loader: Callable[[], Any], force_refresh: bool) -> Any:
        now = self._clock()
        if not force_refresh:
            with self._lock:
                hit = self._cache.get(key)
            if hit is not None and now - hit[0] < self.cache_ttl:
                return hit[1]
        value = loader()
        with self._lock:
            self._cache[key] = (self._clock(), value)
        return value

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()
            self._version = None

    # ------------------------------------------------------------------
    # Version / interfaces
    # ------------------------------------------------------------------

    def get_version(self) -> RouterVersion:
        """Firmware version; cached for the lifetime of the client."""
        with self._lock:
            if self._version is not None:
                return self._version
        data = self._request("GET", "/show/version/")
        release = data.get("release") if isinstance(data, dict) else None
        if not release:
            raise RouterUnreachableError("router API returned no release version")
        version = parse_version(str(release))
        with self._lock:
            self._version = version
        return version

    def is_available(self) -> bool:
        try:
            self._request("GET", "/show/version/")
        except RouterUnreachableError as e:
            logger.debug(f"[rci] router API not available: {e.message}")
            return False
        return True

    def get_interfaces(self, force_refresh: bool = False) -> Dict[str, RouterInterface]:
        """Router interfaces keyed by Linux interface name."""
        return self._cached("interfaces", self._fetch_interfaces, force_refresh)

    def _fetch_interfaces(self) -> Dict[str, RouterInterface]:
        raw = self._request("GET", "/show/interface/")
        if not isinstance(raw, dict):
            raise RouterUnreachableError("unexpected /show/interface/ response")
        interfaces = {
            iface_id: RouterInterface.from_api(iface_id, data)
            for iface_id, data in raw.items()
            if isinstance(data, dict)
        }
        if self.get_version().supports_system_name:
            names = self._system_names_bulk(list(interfaces))
        else:
            names = self._system_names_by_address(interfaces)
        return self._index_by_system_name(interfaces, names)

    def _system_names_bulk(self, ids: List[str]) -> Dict[str, str]:
        if not ids:
            return {}
        payload = {"show": {"interface": [{"system-name": {"name": i}} for i in ids]}}
        data = self._request("POST", "/", payload)
        results = ((data or {}).get("show") or {}).get("interface") or []

        names = {}
        for iface_id, item in zip(ids, results):
            value = item.get("system-name") if isinstance(item, dict) else None
            if isinstance(value, str) and value:
                names[iface_id] = value
            else:
                logger.debug(f"[rci] no system name for interface {iface_id}: {value!r}")
        return names

    def _system_names_by_address(self, interfaces: Dict[str, RouterInterface]) -> Dict[str, str]:
        """Firmware before 4.03: match router interfaces to Linux ones by address."""
        try:
            result = self.runner.run(["ip", "-o", "addr", "show"], log_failure=False)
        except ExternalToolError as e:
            logger.warning(f"Cannot list system addresses: {e.message}")
            return {}
        if not result.ok:
            return {}

        by_address: Dict[str, str] = {}
        for line in result.stdout.splitlines():
            match = re.match(r"^\d+:\s+(\S+)\s+inet6?\s+([^/\s]+)", line)
            if match:
                by_address[match.group(2)] = match.group(1).split("@")[0]

        names = {}
        for iface_id, iface in interfaces.items():
            for addr in [iface.address] + iface.ipv6_addresses:
                if addr and addr in by_address:
                    names[iface_id] = by_address[addr]
                    break
        return names

    @staticmethod
    def _index_by_system_name(
        interfaces: Dict[str, RouterInterface],
        names: Dict[str, str],
    ) -> Dict[str, RouterInterface]:
        """Several ids may share a Linux name; prefer the parent, then the richer record."""
        result: Dict[str, RouterInterface] = {}
        for iface_id in sorted(names):
            iface = interfaces[iface_id]
            iface.system_name = names[iface_id]
            existing = result.get(iface.system_name)
            if existing is None:
                result[iface.system_name] = iface
                continue
            if existing.is_child != iface.is_child:
                if existing.is_child:
                    result[iface.system_name] = iface
                continue
            if iface.connected and not existing.connected:
                result[iface.system_name] = iface
            elif iface.description and not existing.description:
                result[iface.system_name] = iface
        return result

    def list_interfaces(self, force_refresh: bool = False) -> List[str]:
        return sorted(self.get_interfaces(force_refresh))

    def interface_state(self, name: str, force_refresh: bool = False) -> InterfaceState:
        """Administrative/link/connectivity state of Linux interface ``name``.

        Raises:
            RouterUnreachableError: The API call failed
            InterfaceNotFoundError: The router has no interface with that system name
        """
        iface = self.get_interfaces(force_refresh).get(name)
        if iface is None:
            raise InterfaceNotFoundError(f"router has no interface {name!r}", {"interface": name})
        connected = None
        if iface.connected == CONNECTED_YES:
            connected = True
        elif iface.connected == CONNECTED_NO:
            connected = False
        return InterfaceState(
            name=name,
            admin_up=iface.state == STATE_UP if iface.state else True,
            link_up=iface.link == LINK_UP,
            connected=connected,
        )

    # ------------------------------------------------------------------
    # DNS
    # ------------------------------------------------------------------

    def get_dns_servers(self) -> List[DNSServerInfo]:
        return self._cached("dns", self._fetch_dns_servers, False)

    def _fetch_dns_servers(self) -> List[DNSServerInfo]:
        data = self._request("GET", "/show/dns-proxy")
        if isinstance(data, str):
            return parse_dns_proxy_config(data)
        profiles = (data or {}).get("proxy-status") or []
        for profile in profiles:
            if profile.get("proxy-name") == "System":
                return parse_dns_proxy_config(profile.get("proxy-config", ""))
        if profiles:
            return parse_dns_proxy_config(profiles[0].get("proxy-config", ""))
        return []
