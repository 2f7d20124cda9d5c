#!/usr/bin/env python3
"""ipset wrapper: hash:net sets that hold the networks of one policy."""

import logging
from typing import Iterable, List, Optional

from command_runner import CommandRunner
from pbr_errors import CancelToken, ExternalToolError

logger = logging.getLogger(__name__)

DEFAULT_SET_TYPE = "hash:net"

# Messages that mean the kernel is already in the requested state
_ABSENT_MARKERS = ("does not exist", "The set with the given name does not exist")


class IPSetManager:
    """Idempotent ipset operations"""

    def __init__(self, runner: Optional[CommandRunner] = None):
        self.runner = runner or CommandRunner()

    def exists(self, name: str, cancel: Optional[CancelToken] = None) -> bool:
        result = self.runner.run(["ipset", "list", "-n", name], cancel=cancel, log_failure=False)
        return result.ok

    def create(
        self,
        name: str,
        family: str = "inet",
        set_type: str = DEFAULT_SET_TYPE,
        cancel: Optional[CancelToken] = None,
    ) -> bool:
        """Create the set unless it exists; returns True when it was created."""
        if self.exists(name, cancel):
            logger.debug(f"[ipset {name}] already exists")
            return False
        self.runner.run(
            ["ipset", "create", name, set_type, "family", family, "-exist"],
            check=True,
            cancel=cancel,
        )
        logger.info(f"[ipset {name}] created ({set_type}, {family})")
        return True

    def flush(self, name: str, cancel: Optional[CancelToken] = None) -> None:
        self.runner.run(["ipset", "flush", name], check=True, cancel=cancel)
        logger.debug(f"[ipset {name}] flushed")

    def populate(self, name: str, networks: Iterable[str], cancel: Optional[CancelToken] = None) -> int:
        """Add ``networks`` through one ``ipset restore`` call.

        Entries already in the set are accepted (-exist); the call is one
        kernel transaction so a half-filled set is never observed.
        """
        lines = [f"add {name} {network}" for network in networks]
        if not lines:
            logger.debug(f"[ipset {name}] nothing to add")
            return 0
        self.runner.run(
            ["ipset", "restore", "-exist"],
            input="\n".join(lines) + "\n",
            check=True,
            cancel=cancel,
        )
        logger.info(f"[ipset {name}] loaded {len(lines)} networks")
        return len(lines)

    def test(self, name: str, address: str, cancel: Optional[CancelToken] = None) -> bool:
        """Whether ``address`` is matched by set ``name``.

        Raises:
            ExternalToolError: The set does not exist or ipset failed otherwise
        """
        result = self.runner.run(["ipset", "test", name, address], cancel=cancel, log_failure=False)
        if result.ok:
            return True
        if "is NOT in set" in result.error:
            return False
        raise ExternalToolError(
            f"ipset test {name} {address} failed: {result.error}",
            result.command,
            result.returncode,
            result.stderr.strip(),
        )

    def members(self, name: str, cancel: Optional[CancelToken] = None) -> List[str]:
        result = self.runner.run(["ipset", "list", name], check=True, cancel=cancel)
        members: List[str] = []
        in_members = False
        for line in result.stdout.splitlines():
            if line.startswith("Members:"):
                in_members = True
                continue
            if in_members and line.strip():
                members.append(line.split()[0])
        return members

    def destroy(self, name: str, cancel: Optional[CancelToken] = None) -> bool:
        """Destroy the set; returns False when it was already gone."""
        if not self.exists(name, cancel):
            return False
        result = self.runner.run(["ipset", "destroy", name], cancel=cancel, log_failure=False)
        if result.ok:
            logger.info(f"[ipset {name}] destroyed")
            return True
        if any(marker in result.error for marker in _ABSENT_MARKERS):
            return False
        raise ExternalToolError(
            f"ipset destroy {name} failed: {result.error}",
            result.command,
            result.returncode,
            result.stderr.strip(),
        )
