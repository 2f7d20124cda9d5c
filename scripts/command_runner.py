#!/usr/bin/env python3
"""
External command execution for ipset / iptables / ip and probe tools.

All kernel changes go through CommandRunner.run() so that timeouts,
cancellation and failure logging behave the same everywhere, and so tests
can replace the runner with a scripted fake.
"""

import logging
import subprocess
from dataclasses import dataclass
from typing import List, Optional

from pbr_errors import CancelToken, ExternalToolError, OperationCancelled, check_cancelled

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT = 30


@dataclass
class CommandResult:
    command: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def error(self) -> str:
        return self.stderr.strip() or self.stdout.strip() or f"exit code {self.returncode}"


class CommandRunner:
    """Runs commands with a timeout clamped to the caller's deadline"""

    def __init__(self, timeout: float = DEFAULT_COMMAND_TIMEOUT):
        self.timeout = timeout

    def run(
        self,
        cmd: List[str],
        input: Optional[str] = None,
        check: bool = False,
        cancel: Optional[CancelToken] = None,
        log_failure: bool = True,
    ) -> CommandResult:
        """Execute ``cmd`` and capture its output.

        Args:
            cmd: Command and arguments
            input: Text fed to stdin (ipset restore)
            check: Raise ExternalToolError on a non-zero exit code
            cancel: Cancellation token; its deadline bounds the timeout
            log_failure: Log non-zero exits at WARNING (off for existence checks like iptables -C)

        Returns:
            CommandResult

        Raises:
            ExternalToolError: Tool missing, timed out, or failed with check=True
            OperationCancelled: Cancelled before start or deadline hit while running
        """
        check_cancelled(cancel, cmd[0])
        timeout = cancel.remaining(self.timeout) if cancel is not None else self.timeout
        try:
            proc = subprocess.run(
                cmd,
                input=input,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            if cancel is not None and cancel.cancelled:
                raise OperationCancelled(f"{' '.join(cmd)} cancelled")
            logger.error(f"Command timeout: {' '.join(cmd)}")
            raise ExternalToolError(f"{cmd[0]} timed out after {timeout}s", cmd)
        except FileNotFoundError:
            raise ExternalToolError(f"{cmd[0]} is not installed", cmd, returncode=127)

        result = CommandResult(cmd, proc.returncode, proc.stdout or "", proc.stderr or "")
        if not result.ok:
            if log_failure:
                logger.warning(f"Command failed: {' '.join(cmd)}: {result.error}")
            if check:
                raise ExternalToolError(
                    f"{' '.join(cmd)} failed: {result.error}",
                    cmd,
                    result.returncode,
                    result.stderr.strip(),
                )
        return result

    def popen(self, cmd: List[str]) -> subprocess.Popen:
        """Start a long-running process whose merged output is read line by line."""
        try:
            return subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                bufsize=1,
            )
        except FileNotFoundError:
            raise ExternalToolError(f"{cmd[0]} is not installed", cmd, returncode=127)
