#!/usr/bin/env python3
"""
Error taxonomy for keen-pbr.

Every failure that crosses a component boundary is a PBRError subclass with
a stable ``code``. The HTTP collaborator renders them with error_envelope():

    {"error": {"code": "conflict", "message": "...", "details": {...}}}

Cancellation is expressed with OperationCancelled and a CancelToken that is
passed down to every suspension point (network fetch, subprocess, DNS).
"""

import threading
import time
from typing import Any, Dict, List, Optional


class PBRError(Exception):
    """Base class for all keen-pbr errors"""

    code = "internal"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(PBRError):
    """Malformed or contradictory configuration, rejected before any kernel change"""

    code = "validation"


class NotFoundError(PBRError):
    """Referenced list, policy, outbound or interface does not exist"""

    code = "not_found"


class ConflictError(PBRError):
    """Duplicate name, fwmark/table/priority collision or delete-while-referenced"""

    code = "conflict"


class ExternalToolError(PBRError):
    """ipset / iptables / ip invocation failed"""

    code = "external_tool"

    def __init__(
        self,
        message: str,
        command: Optional[List[str]] = None,
        returncode: Optional[int] = None,
        stderr: str = "",
        details: Optional[Dict[str, Any]] = None,
    ):
        self.command = list(command or [])
        self.returncode = returncode
        self.stderr = stderr
        merged = {
            "command": " ".join(self.command),
            "returncode": returncode,
            "stderr": stderr,
        }
        merged.update(details or {})
        super().__init__(message, merged)


class TransientNetworkError(PBRError):
    """List download or router API failure; callers degrade to cached data"""

    code = "transient_network"


class OperationCancelled(PBRError):
    """The caller cancelled the operation or its deadline expired"""

    code = "cancelled"


class TeardownError(PBRError):
    """Aggregate of every step that failed during a teardown"""

    code = "external_tool"

    def __init__(self, message: str, errors: List[PBRError]):
        self.errors = list(errors)
        super().__init__(message, {"errors": [e.to_dict() for e in self.errors]})


def error_envelope(exc: BaseException) -> Dict[str, Any]:
    """Wrap any exception into the transport error envelope."""
    if isinstance(exc, PBRError):
        return {"error": exc.to_dict()}
    return {"error": {"code": "internal", "message": str(exc), "details": {}}}


def data_envelope(data: Any) -> Dict[str, Any]:
    return {"data": data}


class CancelToken:
    """Cooperative cancellation signal with an optional deadline.

    The owner calls cancel(); workers call raise_if_cancelled() between
    steps and use remaining() to clamp their own timeouts.
    """

    def __init__(self, timeout: Optional[float] = None):
        self._event = threading.Event()
        self._deadline = time.monotonic() + timeout if timeout is not None else None

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._deadline is not None and time.monotonic() >= self._deadline

    def remaining(self, default: Optional[float] = None) -> Optional[float]:
        """Seconds left before the deadline, capped by ``default``."""
        if self._deadline is None:
            return default
        left = max(0.0, self._deadline - time.monotonic())
        return left if default is None else min(left, default)

    def raise_if_cancelled(self, what: str = "operation") -> None:
        if self.cancelled:
            raise OperationCancelled(f"{what} cancelled")

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return True if cancelled meanwhile."""
        if self._event.wait(self.remaining(seconds)):
            return True
        return self.cancelled


def check_cancelled(cancel: Optional[CancelToken], what: str = "operation") -> None:
    if cancel is not None:
        cancel.raise_if_cancelled(what)
