#!/usr/bin/env python3
"""
List registry: name -> {source, parsed entries, stats}.

- resolve() fetches a list only when it is stale and parses it once;
  concurrent resolvers of the same name share one fetch (single-flight)
- stats() is served from a cache that expires after STATS_TTL_SECONDS or as
  soon as the underlying file changes
- create/update/delete persist through the ConfigStore and refuse to delete
  a list that an ipset policy or rule still references
- purge_unreferenced() removes downloaded files of lists that left the
  configuration
"""

import logging
import threading
import time
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from list_fetcher import LIST_FILE_SUFFIX, META_FILE_SUFFIX, ListFetcher, cache_path_for, meta_path_for
from list_parser import KIND_DOMAIN, KIND_IPV4, KIND_IPV6, Entry, ParseResult, parse_lines
from pbr_config import (
    ConfigStore,
    IPSetPolicy,
    InlineListSource,
    LocalListSource,
    PBRConfig,
    RemoteListSource,
    parse_list_source,
)
from pbr_errors import (
    CancelToken,
    ConflictError,
    NotFoundError,
    OperationCancelled,
    PBRError,
    check_cancelled,
)

logger = logging.getLogger(__name__)

STATS_TTL_SECONDS = 300
JOIN_POLL_SECONDS = 0.2


@dataclass
class ListStats:
    list_name: str
    type: str
    total_hosts: int = 0
    domains: int = 0
    ipv4_subnets: int = 0
    ipv6_subnets: int = 0
    skipped: int = 0
    downloaded: bool = False
    last_modified: Optional[str] = None
    fetch_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PolicyEntries:
    """Everything a policy needs from its lists"""
    networks: List[Entry] = field(default_factory=list)
    domains: List[Entry] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


@dataclass
class _CachedList:
    result: ParseResult
    source_key: Tuple[str, ...]
    mtime: Optional[float]
    changed: bool
    fetch_error: Optional[str]
    timestamp: Optional[float]


@dataclass
class _CachedStats:
    stats: ListStats
    source_key: Tuple[str, ...]
    mtime: Optional[float]
    created: float


def _source_key(source) -> Tuple[str, ...]:
    if isinstance(source, InlineListSource):
        return ("inline",) + tuple(source.hosts)
    if isinstance(source, LocalListSource):
        return ("file", source.file)
    return ("url", source.url)


def _iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


class ListRegistry:
    """Owns list caches; safe to share between threads."""

    def __init__(
        self,
        store: ConfigStore,
        fetcher: Optional[ListFetcher] = None,
        stats_ttl: float = STATS_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.fetcher = fetcher or ListFetcher()
        self.stats_ttl = stats_ttl
        self._clock = clock
        self._cache_lock = threading.RLock()
        self._entries: Dict[str, _CachedList] = {}
        self._stats: Dict[str, _CachedStats] = {}
        self._inflight: Dict[str, Future] = {}
        self._inflight_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Lookup helpers
    # ------------------------------------------------------------------

    def _lookup(self, name: str):
        with self.store.read() as cfg:
            source = cfg.get_list(name)
            lists_dir = self.store.abs_lists_dir(cfg)
        if source is None:
            raise NotFoundError(f"list {name!r} not found", {"list": name})
        return source, lists_dir, self.store.config_dir

    def _path_mtime(self, source, lists_dir: Path, config_dir: Path) -> Optional[float]:
        path = self.fetcher.source_path(source, lists_dir, config_dir)
        if path is None:
            return None
        try:
            return path.stat().st_mtime
        except OSError:
            return None

    def _is_fresh(self, source, cached: _CachedList, lists_dir: Path, config_dir: Path) -> bool:
        if cached.source_key != _source_key(source):
            return False
        if isinstance(source, InlineListSource):
            return True
        mtime = self._path_mtime(source, lists_dir, config_dir)
        return mtime is not None and mtime == cached.mtime

    def _fresh_entry(self, name: str, source, lists_dir: Path, config_dir: Path) -> Optional[_CachedList]:
        with self._cache_lock:
            cached = self._entries.get(name)
        if cached is not None and self._is_fresh(source, cached, lists_dir, config_dir):
            return cached
        return None

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve(self, name: str, force: bool = False, cancel: Optional[CancelToken] = None) -> List[Entry]:
        """Return the classified entries of list ``name``.

        Args:
            name: List name
            force: Re-download url lists and re-read files even if fresh
            cancel: Cancellation token for the fetch

        Raises:
            NotFoundError: Unknown list, or a local file that does not exist
            TransientNetworkError: url list never downloaded and download failed
            PBRError: The list file cannot be read or its cache cannot be written
        """
        return self._resolve(name, force, cancel).result.entries

    def _resolve(self, name: str, force: bool, cancel: Optional[CancelToken]) -> _CachedList:
        source, lists_dir, config_dir = self._lookup(name)
        if not force:
            cached = self._fresh_entry(name, source, lists_dir, config_dir)
            if cached is not None:
                return cached

        with self._inflight_lock:
            future = self._inflight.get(name)
            owner = future is None
            if owner:
                future = Future()
                self._inflight[name] = future

        if not owner:
            return self._join(name, future, force, cancel)

        try:
            # A previous owner may have finished between the check above and the claim
            loaded = None if force else self._fresh_entry(name, source, lists_dir, config_dir)
            if loaded is None:
                loaded = self._load(name, source, lists_dir, config_dir, force, cancel)
        except BaseException as e:
            future.set_exception(e)
            raise
        else:
            future.set_result(loaded)
            return loaded
        finally:
            with self._inflight_lock:
                self._inflight.pop(name, None)

    def _join(self, name: str, future: Future, force: bool, cancel: Optional[CancelToken]) -> _CachedList:
        logger.debug(f"[list {name}] waiting for in-flight fetch")
        try:
            while True:
                check_cancelled(cancel, f"waiting for list {name}")
                try:
                    return future.result(timeout=JOIN_POLL_SECONDS if cancel is not None else None)
                except FutureTimeoutError:
                    continue
        except OperationCancelled:
            # The owner was cancelled, not us
            if cancel is not None and cancel.cancelled:
                raise
            return self._resolve(name, force, cancel)

    def _load(self, name, source, lists_dir, config_dir, force, cancel) -> _CachedList:
        result = self.fetcher.fetch(source, lists_dir, config_dir, download=force, cancel=cancel)
        parsed = parse_lines(result.lines, source=name)
        cached = _CachedList(
            result=parsed,
            source_key=_source_key(source),
            mtime=result.mtime,
            changed=result.changed,
            fetch_error=result.error,
            timestamp=result.downloaded_at or result.mtime,
        )
        with self._cache_lock:
            self._entries[name] = cached
            self._stats.pop(name, None)
        logger.debug(
            f"[list {name}] {len(parsed.entries)} entries "
            f"({parsed.count(KIND_DOMAIN)} domains, {parsed.count(KIND_IPV4)} ipv4, "
            f"{parsed.count(KIND_IPV6)} ipv6, {parsed.skipped} skipped)"
        )
        return cached

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def stats(self, name: str) -> ListStats:
        source, lists_dir, config_dir = self._lookup(name)
        key = _source_key(source)
        mtime = self._path_mtime(source, lists_dir, config_dir)

        with self._cache_lock:
            cached_stats = self._stats.get(name)
        if (
            cached_stats is not None
            and self._clock() - cached_stats.created < self.stats_ttl
            and cached_stats.mtime == mtime
            and cached_stats.source_key == key
        ):
            return cached_stats.stats

        stats = self._compute_stats(name, source, mtime)
        with self._cache_lock:
            self._stats[name] = _CachedStats(stats=stats, source_key=key, mtime=mtime, created=self._clock())
        return stats

    def _compute_stats(self, name: str, source, mtime: Optional[float]) -> ListStats:
        stats = ListStats(list_name=name, type=source.type)
        if isinstance(source, RemoteListSource) and mtime is None:
            # Never downloaded; stats must not trigger a download
            return stats
        try:
            cached = self._resolve(name, False, None)
        except PBRError as e:
            stats.fetch_error = e.message
            return stats

        parsed = cached.result
        stats.domains = parsed.count(KIND_DOMAIN)
        stats.ipv4_subnets = parsed.count(KIND_IPV4)
        stats.ipv6_subnets = parsed.count(KIND_IPV6)
        stats.total_hosts = len(parsed.entries)
        stats.skipped = parsed.skipped
        stats.downloaded = not isinstance(source, RemoteListSource) or mtime is not None
        stats.last_modified = _iso(cached.timestamp)
        stats.fetch_error = cached.fetch_error
        return stats

    def all_stats(self) -> List[ListStats]:
        with self.store.read() as cfg:
            names = [lst.list_name for lst in cfg.lists]
        return [self.stats(name) for name in names]

    # ------------------------------------------------------------------
    # Invalidation / housekeeping
    # ------------------------------------------------------------------

    def invalidate(self, name: Optional[str] = None) -> None:
        """Drop cached entries and stats for ``name`` (or all lists)."""
        with self._cache_lock:
            if name is None:
                self._entries.clear()
                self._stats.clear()
                self.fetcher.local.forget_all()
            else:
                self._entries.pop(name, None)
                self._stats.pop(name, None)
                self.fetcher.local.forget(name)

    def purge_unreferenced(self) -> List[Path]:
        """Delete downloaded files whose list is no longer a url list in the config.

        Only files carrying the download metadata sidecar are considered;
        files backing a configured local list are never touched.
        """
        with self.store.read() as cfg:
            keep = {lst.list_name for lst in cfg.lists if isinstance(lst, RemoteListSource)}
            known = {lst.list_name for lst in cfg.lists}
            lists_dir = self.store.abs_lists_dir(cfg)
            local_files = {
                self.fetcher.source_path(lst, lists_dir, self.store.config_dir).resolve()
                for lst in cfg.lists if isinstance(lst, LocalListSource)
            }

        with self._cache_lock:
            for name in list(self._entries):
                if name not in known:
                    self._entries.pop(name, None)
                    self._stats.pop(name, None)

        removed: List[Path] = []
        if not lists_dir.is_dir():
            return removed
        for path in sorted(lists_dir.glob(f"*{LIST_FILE_SUFFIX}")):
            name = path.name[: -len(LIST_FILE_SUFFIX)]
            if name in keep or path.resolve() in local_files or not meta_path_for(path).exists():
                continue
            removed.extend(self._remove_cache_files(path))
        for meta in sorted(lists_dir.glob(f"*{LIST_FILE_SUFFIX}{META_FILE_SUFFIX}")):
            name = meta.name[: -len(LIST_FILE_SUFFIX + META_FILE_SUFFIX)]
            if name not in keep and meta.exists():
                meta.unlink()
                removed.append(meta)
        if removed:
            logger.info(f"Purged {len(removed)} unreferenced list file(s) from {lists_dir}")
        return removed

    @staticmethod
    def _remove_cache_files(path: Path) -> List[Path]:
        removed = []
        for candidate in (path, meta_path_for(path)):
            try:
                candidate.unlink()
                removed.append(candidate)
            except FileNotFoundError:
                pass
        return removed

    def download_all(
        self,
        max_age: Optional[float] = None,
        cancel: Optional[CancelToken] = None,
    ) -> Dict[str, bool]:
        """Refresh every url list; returns name -> whether its content changed.

        Args:
            max_age: Skip lists downloaded less than this many seconds ago
            cancel: Cancellation token, checked between lists
        """
        with self.store.read() as cfg:
            remote = [lst for lst in cfg.lists if isinstance(lst, RemoteListSource)]
            lists_dir = self.store.abs_lists_dir(cfg)

        results: Dict[str, bool] = {}
        for source in remote:
            if cancel is not None:
                cancel.raise_if_cancelled("list download")
            if max_age is not None and not self._due(source, lists_dir, max_age):
                results[source.list_name] = False
                continue
            try:
                cached = self._resolve(source.list_name, True, cancel)
            except OperationCancelled:
                raise
            except PBRError as e:
                logger.error(f"[list {source.list_name}] {e.message}")
                results[source.list_name] = False
                continue
            results[source.list_name] = cached.changed and cached.fetch_error is None
        return results

    def _due(self, source: RemoteListSource, lists_dir: Path, max_age: float) -> bool:
        cached = self.fetcher.remote.cached(cache_path_for(lists_dir, source.list_name))
        if cached is None or cached.downloaded_at is None:
            return True
        return time.time() - float(cached.downloaded_at) >= max_age

    # ------------------------------------------------------------------
    # Policy helpers
    # ------------------------------------------------------------------

    def entries_for_policy(self, policy: IPSetPolicy, cancel: Optional[CancelToken] = None) -> PolicyEntries:
        """Union of a policy's lists: networks of its IP version plus all domains.

        A list that cannot be resolved is skipped and reported in ``errors``.
        """
        return self.entries_for_lists(policy.lists, policy.ip_version, cancel)

    def entries_for_lists(
        self,
        names: List[str],
        ip_version: int = 4,
        cancel: Optional[CancelToken] = None,
    ) -> PolicyEntries:
        wanted = KIND_IPV6 if ip_version == 6 else KIND_IPV4
        collected = PolicyEntries()
        seen = set()
        for name in names:
            try:
                entries = self.resolve(name, cancel=cancel)
            except OperationCancelled:
                raise
            except PBRError as e:
                logger.error(f"[list {name}] skipped: {e.message}")
                collected.errors.append(f"{name}: {e.message}")
                continue
            for entry in entries:
                key = entry.canonical()
                if key in seen:
                    continue
                if entry.kind == KIND_DOMAIN:
                    collected.domains.append(entry)
                elif entry.kind == wanted:
                    collected.networks.append(entry)
                else:
                    continue
                seen.add(key)
        return collected

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def create(self, data: Any):
        """Add a list definition; ConflictError if the name is taken."""
        source = parse_list_source(data)

        def _add(cfg: PBRConfig) -> None:
            if cfg.get_list(source.list_name) is not None:
                raise ConflictError(f"list {source.list_name!r} already exists", {"list": source.list_name})
            cfg.lists.append(source)

        self.store.update(_add)
        self.invalidate(source.list_name)
        logger.info(f"[list {source.list_name}] created ({source.type})")
        return source

    def update(self, name: str, data: Any):
        """Replace list ``name``; a rename rewrites references in policies and rules."""
        source = parse_list_source(data)
        new_name = source.list_name
        replaced = []

        def _replace(cfg: PBRConfig) -> None:
            for idx, lst in enumerate(cfg.lists):
                if lst.list_name == name:
                    break
            else:
                raise NotFoundError(f"list {name!r} not found", {"list": name})
            if new_name != name and cfg.get_list(new_name) is not None:
                raise ConflictError(f"list {new_name!r} already exists", {"list": new_name})
            replaced.append(cfg.lists[idx])
            cfg.lists[idx] = source
            if new_name != name:
                for policy in cfg.ipsets:
                    policy.lists = [new_name if n == name else n for n in policy.lists]
                for rule in cfg.rules:
                    rule.lists = [new_name if n == name else n for n in rule.lists]

        self.store.update(_replace)
        self.invalidate(name)
        self.invalidate(new_name)
        if new_name != name and isinstance(replaced[-1], RemoteListSource):
            self._remove_cache_files(cache_path_for(self.store.abs_lists_dir(), name))
        logger.info(f"[list {name}] updated")
        return source

    def delete(self, name: str) -> None:
        """Remove list ``name``; ConflictError while a policy or rule uses it."""
        removed_sources = []

        def _remove(cfg: PBRConfig) -> None:
            source = cfg.get_list(name)
            if source is None:
                raise NotFoundError(f"list {name!r} not found", {"list": name})
            refs = cfg.list_references(name)
            if refs:
                raise ConflictError(
                    f"list {name!r} is used by {', '.join(refs)}",
                    {"list": name, "referenced_by": refs},
                )
            cfg.lists = [lst for lst in cfg.lists if lst.list_name != name]
            removed_sources.append(source)

        self.store.update(_remove)
        self.invalidate(name)
        if isinstance(removed_sources[-1], RemoteListSource):
            self._remove_cache_files(cache_path_for(self.store.abs_lists_dir(), name))
        logger.info(f"[list {name}] deleted")
