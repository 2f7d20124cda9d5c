#!/usr/bin/env python3
"""
iproute2 wrapper: fwmark rules, per-table default routes and link state.

`ip rule` prints fwmarks in hex (``fwmark 0x64``) on most builds and in
decimal on some; both forms are recognised.
"""

import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional

from command_runner import CommandRunner
from pbr_errors import CancelToken, ExternalToolError

logger = logging.getLogger(__name__)

ROUTE_DEV = "dev"
ROUTE_VIA = "via"
ROUTE_BLACKHOLE = "blackhole"

_EXISTS_MARKER = "File exists"
_ABSENT_MARKERS = ("No such file or directory", "No such process", "Cannot find device")


@dataclass(frozen=True)
class RouteTarget:
    """Desired default route of a policy table"""
    kind: str
    interface: Optional[str] = None
    gateway: Optional[str] = None

    def describe(self) -> str:
        if self.kind == ROUTE_BLACKHOLE:
            return "blackhole"
        if self.kind == ROUTE_VIA:
            return f"via {self.gateway}"
        return f"dev {self.interface}"

    def route_args(self) -> List[str]:
        if self.kind == ROUTE_BLACKHOLE:
            return ["blackhole", "default"]
        if self.kind == ROUTE_VIA:
            args = ["default", "via", self.gateway]
            if self.interface:
                args += ["dev", self.interface]
            return args
        return ["default", "dev", self.interface]

    def matches(self, line: str) -> bool:
        """Compare with one line of ``ip route show table N``."""
        tokens = line.split()
        if not tokens:
            return False
        if self.kind == ROUTE_BLACKHOLE:
            return tokens[:2] == ["blackhole", "default"]
        if tokens[0] != "default":
            return False
        fields = _route_fields(tokens)
        if self.kind == ROUTE_VIA:
            if fields.get("via") != self.gateway:
                return False
            return self.interface is None or fields.get("dev") == self.interface
        return fields.get("dev") == self.interface and "via" not in fields


@dataclass
class LinkInfo:
    name: str
    admin_up: bool
    link_up: bool


def _route_fields(tokens: List[str]) -> Dict[str, str]:
    fields = {}
    for key in ("dev", "via", "proto", "metric"):
        if key in tokens:
            idx = tokens.index(key)
            if idx + 1 < len(tokens):
                fields[key] = tokens[idx + 1]
    return fields


def parse_link_line(line: str) -> Optional[LinkInfo]:
    """Parse one line of ``ip -o link show``.

    Example:
        2: eth0: <BROADCAST,MULTICAST,UP,LOWER_UP> mtu 1500 qdisc fq state UP ...
    """
    match = re.match(r"^\d+:\s+([^:@\s]+)(?:@[^:\s]+)?:\s+<([^>]*)>", line)
    if not match:
        return None
    flags = set(match.group(2).split(","))
    return LinkInfo(name=match.group(1), admin_up="UP" in flags, link_up="LOWER_UP" in flags)


class IPRouteManager:
    """ip rule / ip route / ip link operations"""

    def __init__(self, runner: Optional[CommandRunner] = None):
        self.runner = runner or CommandRunner()

    def _ip(self, args: List[str], ip_version: int = 4, check: bool = False,
            cancel: Optional[CancelToken] = None, log_failure: bool = True):
        family = ["-6"] if ip_version == 6 else ["-4"]
        return self.runner.run(["ip"] + family + args, check=check, cancel=cancel,
                               log_failure=log_failure)

    @staticmethod
    def _raise(what: str, result) -> None:
        raise ExternalToolError(
            f"{what}: {result.error}",
            result.command,
            result.returncode,
            result.stderr.strip(),
        )

    # ------------------------------------------------------------------
    # ip rule
    # ------------------------------------------------------------------

    def rule_exists(self, fwmark: int, table: int, priority: Optional[int] = None,
                    ip_version: int = 4, cancel: Optional[CancelToken] = None) -> bool:
        """Check for ``fwmark -> table`` (optionally at ``priority``) in ``ip rule show``."""
        result = self._ip(["rule", "show"], ip_version, cancel=cancel)
        if not result.ok:
            return False
        mark = rf"(?:0x{fwmark:x}|{fwmark})(?:/0x[0-9a-f]+)?"
        prio = rf"{priority}:" if priority is not None else r"\d+:"
        pattern = re.compile(rf"^{prio}\s.*\bfwmark\s+{mark}\s.*\blookup\s+{table}\b", re.IGNORECASE)
        return any(pattern.search(line.strip()) for line in result.stdout.splitlines())

    def add_rule(self, fwmark: int, table: int, priority: int, ip_version: int = 4,
                 cancel: Optional[CancelToken] = None) -> bool:
        if self.rule_exists(fwmark, table, priority, ip_version, cancel):
            logger.debug(f"IP rule fwmark {fwmark:#x} -> table {table} already exists")
            return False
        result = self._ip(
            ["rule", "add", "fwmark", str(fwmark), "table", str(table), "priority", str(priority)],
            ip_version, cancel=cancel, log_failure=False,
        )
        if not result.ok:
            if _EXISTS_MARKER in result.error:
                return False
            self._raise(f"failed to add ip rule fwmark {fwmark} table {table}", result)
        logger.info(f"IP rule added: fwmark {fwmark:#x} -> table {table} (priority {priority})")
        return True

    def delete_rule(self, fwmark: int, table: int, priority: int, ip_version: int = 4,
                    cancel: Optional[CancelToken] = None) -> bool:
        removed = False
        while self.rule_exists(fwmark, table, priority, ip_version, cancel):
            result = self._ip(
                ["rule", "del", "fwmark", str(fwmark), "table", str(table), "priority", str(priority)],
                ip_version, cancel=cancel, log_failure=False,
            )
            if not result.ok:
                if any(marker in result.error for marker in _ABSENT_MARKERS):
                    break
                self._raise(f"failed to delete ip rule fwmark {fwmark} table {table}", result)
            removed = True
        if removed:
            logger.info(f"IP rule removed: fwmark {fwmark:#x} -> table {table}")
        return removed

    # ------------------------------------------------------------------
    # ip route
    # ------------------------------------------------------------------

    def table_routes(self, table: int, ip_version: int = 4,
                     cancel: Optional[CancelToken] = None) -> List[str]:
        result = self._ip(["route", "show", "table", str(table)], ip_version,
                          cancel=cancel, log_failure=False)
        if not result.ok:
            return []
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def default_route(self, table: int, ip_version: int = 4,
                      cancel: Optional[CancelToken] = None) -> Optional[str]:
        for line in self.table_routes(table, ip_version, cancel):
            tokens = line.split()
            if tokens[0] == "default" or tokens[:2] == ["blackhole", "default"]:
                return line
        return None

    def has_default_route(self, table: int, target: RouteTarget, ip_version: int = 4,
                          cancel: Optional[CancelToken] = None) -> bool:
        current = self.default_route(table, ip_version, cancel)
        return current is not None and target.matches(current)

    def set_default_route(self, table: int, target: RouteTarget, ip_version: int = 4,
                          cancel: Optional[CancelToken] = None) -> bool:
        """Make ``target`` the table's only default route.

        Returns:
            True if the route changed
        """
        current = self.default_route(table, ip_version, cancel)
        if current is not None and target.matches(current):
            logger.debug(f"Table {table} default route already {target.describe()}")
            return False

        if current is not None and current.split()[0] != target.route_args()[0]:
            # blackhole and unicast routes do not replace each other
            self.delete_default_route(table, ip_version, cancel)

        self._ip(["route", "replace"] + target.route_args() + ["table", str(table)],
                 ip_version, check=True, cancel=cancel)
        logger.info(f"Table {table} default route set to {target.describe()}")
        return True

    def delete_default_route(self, table: int, ip_version: int = 4,
                             cancel: Optional[CancelToken] = None) -> bool:
        removed = False
        current = self.default_route(table, ip_version, cancel)
        while current is not None:
            args = ["blackhole", "default"] if current.startswith("blackhole") else ["default"]
            result = self._ip(["route", "del"] + args + ["table", str(table)], ip_version,
                              cancel=cancel, log_failure=False)
            if not result.ok:
                if any(marker in result.error for marker in _ABSENT_MARKERS):
                    break
                self._raise(f"failed to delete default route of table {table}", result)
            removed = True
            current = self.default_route(table, ip_version, cancel)
        if removed:
            logger.info(f"Table {table} default route removed")
        return removed

    def flush_table(self, table: int, ip_version: int = 4,
                    cancel: Optional[CancelToken] = None) -> bool:
        if not self.table_routes(table, ip_version, cancel):
            return False
        result = self._ip(["route", "flush", "table", str(table)], ip_version,
                          cancel=cancel, log_failure=False)
        if not result.ok and not any(marker in result.error for marker in _ABSENT_MARKERS):
            self._raise(f"failed to flush table {table}", result)
        logger.info(f"Table {table} flushed")
        return True

    def has_local_route(self, table: int, cancel: Optional[CancelToken] = None) -> bool:
        for line in self.table_routes(table, 4, cancel):
            tokens = line.split()
            if tokens[:2] in (["local", "default"], ["local", "0.0.0.0/0"]) and "lo" in tokens:
                return True
        return False

    def add_local_route(self, table: int, cancel: Optional[CancelToken] = None) -> bool:
        """``ip route add local 0.0.0.0/0 dev lo table N`` for TPROXY delivery."""
        if self.has_local_route(table, cancel):
            return False
        result = self._ip(["route", "add", "local", "0.0.0.0/0", "dev", "lo", "table", str(table)],
                          cancel=cancel, log_failure=False)
        if not result.ok:
            if _EXISTS_MARKER in result.error:
                return False
            self._raise(f"failed to add local route to table {table}", result)
        logger.info(f"Local route added to table {table}")
        return True

    def delete_local_route(self, table: int, cancel: Optional[CancelToken] = None) -> bool:
        if not self.has_local_route(table, cancel):
            return False
        result = self._ip(["route", "del", "local", "0.0.0.0/0", "dev", "lo", "table", str(table)],
                          cancel=cancel, log_failure=False)
        if not result.ok:
            if any(marker in result.error for marker in _ABSENT_MARKERS):
                return False
            self._raise(f"failed to delete local route from table {table}", result)
        logger.info(f"Local route removed from table {table}")
        return True

    # ------------------------------------------------------------------
    # ip link
    # ------------------------------------------------------------------

    def links(self, cancel: Optional[CancelToken] = None) -> Dict[str, LinkInfo]:
        result = self.runner.run(["ip", "-o", "link", "show"], check=True, cancel=cancel)
        links = {}
        for line in result.stdout.splitlines():
            info = parse_link_line(line)
            if info is not None:
                links[info.name] = info
        return links

    def link(self, name: str, cancel: Optional[CancelToken] = None) -> Optional[LinkInfo]:
        result = self.runner.run(["ip", "-o", "link", "show", "dev", name], cancel=cancel,
                                 log_failure=False)
        if not result.ok:
            return None
        for line in result.stdout.splitlines():
            info = parse_link_line(line)
            if info is not None:
                return info
        return None
