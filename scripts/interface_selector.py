#!/usr/bin/env python3
"""
Pick the output interface of a policy.

An interface is eligible when the kernel reports it administratively up
and, with the router API enabled, the router does not report it as
disconnected. Candidates are tried in configured order.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from iproute_manager import IPRouteManager
from pbr_errors import CancelToken, NotFoundError, TransientNetworkError

logger = logging.getLogger(__name__)


@dataclass
class InterfaceStatus:
    name: str
    exists: bool
    admin_up: bool = False
    link_up: bool = False
    connected: Optional[bool] = None
    router_error: Optional[str] = None

    @property
    def eligible(self) -> bool:
        return self.exists and self.admin_up and self.connected is not False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "exists": self.exists,
            "admin_up": self.admin_up,
            "link_up": self.link_up,
            "connected": self.connected,
            "router_error": self.router_error,
            "eligible": self.eligible,
        }


class InterfaceSelector:
    """Combines ``ip link`` state with the router's view of each interface"""

    def __init__(self, iproute: Optional[IPRouteManager] = None, router_client=None):
        self.iproute = iproute or IPRouteManager()
        self.router_client = router_client

    def status(self, name: str, force_refresh: bool = False,
               cancel: Optional[CancelToken] = None) -> InterfaceStatus:
        link = self.iproute.link(name, cancel)
        if link is None:
            return InterfaceStatus(name=name, exists=False)

        status = InterfaceStatus(name=name, exists=True, admin_up=link.admin_up, link_up=link.link_up)
        if self.router_client is None or not link.admin_up:
            return status

        try:
            state = self.router_client.interface_state(name, force_refresh=force_refresh)
        except NotFoundError:
            # Not managed by the router (tun devices of third-party software)
            logger.debug(f"Interface {name} is unknown to the router, using link state only")
        except TransientNetworkError as e:
            logger.warning(f"Router API unavailable, using link state for {name}: {e.message}")
            status.router_error = e.message
        else:
            status.connected = state.connected
        return status

    def choose_best(self, interfaces: List[str], force_refresh: bool = False,
                    cancel: Optional[CancelToken] = None) -> Optional[str]:
        """Return the first eligible interface, or None."""
        for name in interfaces:
            status = self.status(name, force_refresh, cancel)
            if status.eligible:
                return name
            logger.debug(
                f"Interface {name} not eligible (exists={status.exists}, "
                f"up={status.admin_up}, connected={status.connected})"
            )
        return None
