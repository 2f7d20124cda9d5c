#!/usr/bin/env python3
"""iptables / ip6tables wrapper with check-before-change semantics."""

import logging
from typing import List, Optional

from command_runner import CommandRunner
from pbr_errors import CancelToken, ExternalToolError

logger = logging.getLogger(__name__)

_MISSING_RULE_MARKERS = ("does a matching rule exist", "Bad rule")
_MISSING_CHAIN_MARKERS = ("No chain/target/match by that name", "No such file or directory")
_CHAIN_EXISTS_MARKER = "Chain already exists"


def _binary(ip_version: int) -> str:
    return "ip6tables" if ip_version == 6 else "iptables"


def describe_rule(table: str, chain: str, rule: List[str]) -> str:
    return f"-t {table} {chain} {' '.join(rule)}"


class IPTablesManager:
    """Rule and chain operations; every change is preceded by an existence check"""

    def __init__(self, runner: Optional[CommandRunner] = None):
        self.runner = runner or CommandRunner()

    def _iptables(self, args: List[str], ip_version: int = 4, check: bool = False,
                  cancel: Optional[CancelToken] = None, log_failure: bool = True):
        return self.runner.run([_binary(ip_version), "-w"] + args, check=check,
                               cancel=cancel, log_failure=log_failure)

    def rule_exists(self, table: str, chain: str, rule: List[str], ip_version: int = 4,
                    cancel: Optional[CancelToken] = None) -> bool:
        result = self._iptables(["-t", table, "-C", chain] + rule, ip_version,
                                cancel=cancel, log_failure=False)
        return result.ok

    def ensure_rule(self, table: str, chain: str, rule: List[str], ip_version: int = 4,
                    insert: bool = False, cancel: Optional[CancelToken] = None) -> bool:
        """Append (or insert at the top) unless an identical rule exists.

        Returns:
            True if a rule was added
        """
        if self.rule_exists(table, chain, rule, ip_version, cancel):
            logger.debug(f"Rule already exists: {describe_rule(table, chain, rule)}")
            return False
        action = "-I" if insert else "-A"
        self._iptables(["-t", table, action, chain] + rule, ip_version, check=True, cancel=cancel)
        logger.info(f"Added rule: {describe_rule(table, chain, rule)}")
        return True

    def delete_rule(self, table: str, chain: str, rule: List[str], ip_version: int = 4,
                    cancel: Optional[CancelToken] = None) -> bool:
        """Delete every copy of the rule; returns False when none was present."""
        removed = False
        while self.rule_exists(table, chain, rule, ip_version, cancel):
            result = self._iptables(["-t", table, "-D", chain] + rule, ip_version,
                                    cancel=cancel, log_failure=False)
            if not result.ok:
                if any(marker in result.error for marker in _MISSING_RULE_MARKERS):
                    break
                raise ExternalToolError(
                    f"failed to delete rule {describe_rule(table, chain, rule)}: {result.error}",
                    result.command,
                    result.returncode,
                    result.stderr.strip(),
                )
            removed = True
        if removed:
            logger.info(f"Deleted rule: {describe_rule(table, chain, rule)}")
        return removed

    def chain_exists(self, table: str, chain: str, ip_version: int = 4,
                     cancel: Optional[CancelToken] = None) -> bool:
        result = self._iptables(["-t", table, "-S", chain], ip_version,
                                cancel=cancel, log_failure=False)
        return result.ok

    def ensure_chain(self, table: str, chain: str, ip_version: int = 4,
                     cancel: Optional[CancelToken] = None) -> bool:
        if self.chain_exists(table, chain, ip_version, cancel):
            return False
        result = self._iptables(["-t", table, "-N", chain], ip_version,
                                cancel=cancel, log_failure=False)
        if not result.ok and _CHAIN_EXISTS_MARKER not in result.error:
            raise ExternalToolError(
                f"failed to create chain {chain} in {table}: {result.error}",
                result.command,
                result.returncode,
                result.stderr.strip(),
            )
        logger.info(f"Created chain {table}/{chain}")
        return result.ok

    def flush_chain(self, table: str, chain: str, ip_version: int = 4,
                    cancel: Optional[CancelToken] = None) -> None:
        self._iptables(["-t", table, "-F", chain], ip_version, check=True, cancel=cancel)

    def delete_chain(self, table: str, chain: str, ip_version: int = 4,
                     cancel: Optional[CancelToken] = None) -> bool:
        """Flush and delete a chain; a missing chain is not an error."""
        if not self.chain_exists(table, chain, ip_version, cancel):
            return False
        self.flush_chain(table, chain, ip_version, cancel)
        result = self._iptables(["-t", table, "-X", chain], ip_version,
                                cancel=cancel, log_failure=False)
        if not result.ok:
            if any(marker in result.error for marker in _MISSING_CHAIN_MARKERS):
                return False
            raise ExternalToolError(
                f"failed to delete chain {chain} in {table}: {result.error}",
                result.command,
                result.returncode,
                result.stderr.strip(),
            )
        logger.info(f"Deleted chain {table}/{chain}")
        return True
