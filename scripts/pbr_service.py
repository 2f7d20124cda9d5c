#!/usr/bin/env python3
"""
keen-pbr service: wires the components together and runs the background loops.

    service = PBRService("/opt/etc/keen-pbr/keen-pbr.yaml")
    service.load()
    service.apply_cycle()
    service.start()       # interface monitor, list auto-update and urltest threads
    ...
    service.stop()

Every component receives its collaborators here; nothing reaches for a
module-level singleton.
"""

import logging
import os
import signal
import sys
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import requests

from command_runner import CommandRunner
from diagnostics import Diagnostics, SelfCheckReport
from dnsmasq_config import write_dnsmasq_config
from interface_selector import InterfaceSelector
from iproute_manager import IPRouteManager
from ipset_manager import IPSetManager
from iptables_manager import IPTablesManager
from list_fetcher import ListFetcher, RemoteFetcher
from list_registry import ListRegistry
from log_config import setup_logging
from pbr_config import DEFAULT_CONFIG_PATH, ConfigStore, PBRConfig
from pbr_errors import CancelToken, OperationCancelled, PBRError, TeardownError
from pbr_manager import ApplyReport, PBRManager
from router_status_client import RouterStatusClient
from tproxy_manager import TProxyManager

logger = logging.getLogger(__name__)

AUTO_UPDATE_POLL_SECONDS = 600
ERROR_BACKOFF_SECONDS = 10


@dataclass
class CycleReport:
    downloaded: Dict[str, bool] = field(default_factory=dict)
    purged: List[str] = field(default_factory=list)
    dnsmasq_lines: Optional[int] = None
    ipsets: ApplyReport = field(default_factory=ApplyReport)
    tproxy: ApplyReport = field(default_factory=ApplyReport)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors and self.ipsets.ok and self.tproxy.ok

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "downloaded": self.downloaded,
            "purged": self.purged,
            "dnsmasq_lines": self.dnsmasq_lines,
            "ipsets": self.ipsets.to_dict(),
            "tproxy": self.tproxy.to_dict(),
            "errors": self.errors,
        }


class PBRService:
    """Owns the configuration store and every component built on it"""

    def __init__(
        self,
        config_path: Optional[Union[str, Path]] = None,
        store: Optional[ConfigStore] = None,
        runner: Optional[CommandRunner] = None,
        session: Optional[requests.Session] = None,
        router_client: Optional[RouterStatusClient] = None,
    ):
        self.store = store or ConfigStore(config_path or DEFAULT_CONFIG_PATH)
        self.runner = runner or CommandRunner()
        self.fetcher = ListFetcher(remote=RemoteFetcher(session=session))
        self.registry = ListRegistry(self.store, self.fetcher)

        cfg = self.store.snapshot()
        self._own_router_client = router_client is None
        self.router_client = router_client or RouterStatusClient(cfg.general.keenetic_url, runner=self.runner)

        self.ipset = IPSetManager(self.runner)
        self.iptables = IPTablesManager(self.runner)
        self.iproute = IPRouteManager(self.runner)
        self.selector = InterfaceSelector(self.iproute, self.router_client)
        self.manager = PBRManager(
            self.store, self.registry, self.selector,
            ipset=self.ipset, iptables=self.iptables, iproute=self.iproute,
        )
        self.tproxy = TProxyManager(
            self.store, self.registry,
            ipset=self.ipset, iptables=self.iptables, iproute=self.iproute, runner=self.runner,
        )
        self.diagnostics = Diagnostics(
            self.store, self.registry, self.manager,
            router_client=self.router_client, tproxy=self.tproxy, runner=self.runner,
        )
        self._configure_router_client(cfg)

        self._shutdown = CancelToken()
        self._threads: List[threading.Thread] = []
        self._cycle_lock = threading.Lock()

    def load(self) -> PBRConfig:
        cfg = self.store.load()
        self.registry.invalidate()
        self._configure_router_client(cfg)
        return cfg

    def _configure_router_client(self, cfg: PBRConfig) -> None:
        if self._own_router_client:
            self.router_client.base_url = cfg.general.keenetic_url.rstrip("/")
        self.router_client.clear_cache()
        # Interface selection consults the router only when the API is enabled
        self.selector.router_client = self.router_client if cfg.general.use_keenetic_api else None

    # ------------------------------------------------------------------
    # Apply cycle
    # ------------------------------------------------------------------

    def apply_cycle(self, cancel: Optional[CancelToken] = None) -> CycleReport:
        """Download stale lists, purge unused ones, write the dnsmasq hook, reconcile."""
        with self._cycle_lock:
            return self._apply_cycle(cancel)

    def _apply_cycle(self, cancel: Optional[CancelToken]) -> CycleReport:
        cfg = self.store.snapshot()
        report = CycleReport()

        # Only lists that were never downloaded (or are due) hit the network
        auto = cfg.general.auto_update_lists
        max_age = auto.interval_hours * 3600 if auto.enabled else float("inf")
        report.downloaded = self.registry.download_all(max_age=max_age, cancel=cancel)
        report.purged = [str(p) for p in self.registry.purge_unreferenced()]

        if cfg.general.dnsmasq_config_path:
            try:
                report.dnsmasq_lines = write_dnsmasq_config(
                    self.store.abs_path(cfg.general.dnsmasq_config_path),
                    cfg, self.registry, self.router_client, cancel,
                )
            except OperationCancelled:
                raise
            except (PBRError, OSError) as e:
                logger.error(f"Failed to write dnsmasq config: {e}")
                report.errors.append({"step": "dnsmasq", "message": str(e)})

        report.ipsets = self.manager.apply(cancel)
        report.tproxy = self.tproxy.apply(cancel)
        logger.info(f"Apply cycle finished (ok={report.ok})")
        return report

    def self_check(self, repair: bool = False, cancel: Optional[CancelToken] = None) -> SelfCheckReport:
        """Run the self-check; with ``repair``, re-apply policies whose kernel objects drifted."""
        report = self.diagnostics.run_self_check(cancel)
        if report.healthy or not repair:
            return report

        policies = {p.ipset_name for p in self.store.snapshot().ipsets}
        drifted = sorted({
            r.name.split("/", 1)[0] for r in report.results
            if not r.passed and "/" in r.name
        } & policies)
        if not drifted:
            return report

        logger.warning(f"Self-check found drift in {', '.join(drifted)}; re-applying")
        with self._cycle_lock:
            self.manager.apply(cancel, names=drifted)
        return self.diagnostics.run_self_check(cancel)

    def undo_routing(self) -> None:
        """Remove all managed kernel state (ipset and tproxy backends)."""
        errors: List[PBRError] = []
        for teardown in (self.tproxy.teardown, self.manager.undo_all):
            try:
                teardown()
            except TeardownError as e:
                errors.extend(e.errors)
        if errors:
            raise TeardownError(f"undo finished with {len(errors)} errors", errors)

    # ------------------------------------------------------------------
    # Background loops
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._threads:
            return
        if self._shutdown.cancelled:
            self._shutdown = CancelToken()
        loops = (
            ("pbr-monitor", self._monitor_loop),
            ("pbr-lists", self._auto_update_loop),
            ("pbr-urltest", self._urltest_loop),
        )
        for name, target in loops:
            thread = threading.Thread(target=target, name=name, daemon=True)
            thread.start()
            self._threads.append(thread)
        logger.info("keen-pbr service started")

    def stop(self, timeout: float = 10.0) -> None:
        self._shutdown.cancel()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        logger.info("keen-pbr service stopped")

    def close(self) -> None:
        self.stop()
        self.diagnostics.close()

    def _monitor_loop(self) -> None:
        logger.info("Interface monitor started")
        while not self._shutdown.cancelled:
            interval = self.store.snapshot().general.interface_monitoring_interval_seconds
            if interval <= 0:
                # Disabled; re-read the setting now and then
                self._shutdown.wait(AUTO_UPDATE_POLL_SECONDS)
                continue
            if self._shutdown.wait(interval):
                break
            try:
                self.manager.refresh_routes(cancel=self._shutdown)
            except OperationCancelled:
                break
            except Exception as e:
                logger.error(f"Error in interface monitor: {e}")
                self._shutdown.wait(ERROR_BACKOFF_SECONDS)
        logger.info("Interface monitor stopped")

    def _auto_update_loop(self) -> None:
        logger.info("List auto-update started")
        while not self._shutdown.wait(AUTO_UPDATE_POLL_SECONDS):
            auto = self.store.snapshot().general.auto_update_lists
            if not auto.enabled:
                continue
            try:
                changed = self.registry.download_all(max_age=auto.interval_hours * 3600, cancel=self._shutdown)
                if any(changed.values()):
                    names = [name for name, was_changed in changed.items() if was_changed]
                    logger.info(f"Lists changed: {', '.join(names)}; re-applying")
                    self.apply_cycle(cancel=self._shutdown)
            except OperationCancelled:
                break
            except Exception as e:
                logger.error(f"Error in list auto-update: {e}")
                self._shutdown.wait(ERROR_BACKOFF_SECONDS)
        logger.info("List auto-update stopped")

    def _urltest_loop(self) -> None:
        logger.info("Outbound re-selection started")
        while True:
            interval = self.tproxy.reselect_interval()
            if self._shutdown.wait(interval if interval is not None else AUTO_UPDATE_POLL_SECONDS):
                break
            if interval is None:
                continue
            try:
                with self._cycle_lock:
                    self.tproxy.reselect(cancel=self._shutdown)
            except OperationCancelled:
                break
            except Exception as e:
                logger.error(f"Error in outbound re-selection: {e}")
                self._shutdown.wait(ERROR_BACKOFF_SECONDS)
        logger.info("Outbound re-selection stopped")

    def run(self, undo_on_exit: bool = True) -> None:
        """Apply, start the loops and block until SIGTERM/SIGINT."""
        def handle_signal(signum, frame):
            logger.info(f"Received signal {signum}, shutting down...")
            self._shutdown.cancel()

        signal.signal(signal.SIGTERM, handle_signal)
        signal.signal(signal.SIGINT, handle_signal)

        self.apply_cycle(cancel=self._shutdown)
        if not self._shutdown.cancelled:
            self.start()
            while not self._shutdown.wait(1.0):
                pass
        self.close()
        if undo_on_exit:
            try:
                self.undo_routing()
            except TeardownError as e:
                logger.error(f"Undo routing on exit: {e.message}")


def main() -> int:
    setup_logging()
    service = PBRService()
    try:
        service.load()
    except PBRError as e:
        logger.error(f"Cannot start: {e.message}")
        return 1
    undo = os.environ.get("KEEN_PBR_UNDO_ON_EXIT", "1").lower() not in ("0", "false", "no")
    service.run(undo_on_exit=undo)
    return 0


if __name__ == "__main__":
    sys.exit(main())
