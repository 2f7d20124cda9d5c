#!/usr/bin/env python3
"""
List source fetchers.

- inline: lines come straight from the configuration
- file:   read from disk, reported as changed only when the mtime moves
- url:    conditional HTTP GET (ETag / Last-Modified) into
          <lists_dir>/<name>.lst, replaced atomically (tmp + rename);
          validators live in <name>.lst.meta.json

A failed download keeps the last good copy and reports the error in the
result; only a list that was never downloaded raises TransientNetworkError.
"""

import json
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from pbr_config import InlineListSource, LocalListSource, RemoteListSource
from pbr_errors import (
    CancelToken,
    NotFoundError,
    OperationCancelled,
    PBRError,
    TransientNetworkError,
    ValidationError,
    check_cancelled,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30
DEFAULT_CONNECT_TIMEOUT = 10
MAX_RETRIES = 3
RETRY_BACKOFF = 1.0
RETRY_STATUS_CODES = [429, 500, 502, 503, 504]
USER_AGENT = "keen-pbr/1.0"

MAX_LIST_SIZE = 64 * 1024 * 1024
CHUNK_SIZE = 64 * 1024

LIST_FILE_SUFFIX = ".lst"
META_FILE_SUFFIX = ".meta.json"


class ListTooLargeError(Exception):
    pass


@dataclass
class FetchResult:
    """Raw lines of a list plus freshness metadata"""
    lines: List[str]
    changed: bool
    path: Optional[Path] = None
    error: Optional[str] = None
    downloaded_at: Optional[float] = None
    mtime: Optional[float] = None


def cache_path_for(lists_dir: Path, name: str) -> Path:
    return Path(lists_dir) / f"{name}{LIST_FILE_SUFFIX}"


def meta_path_for(path: Path) -> Path:
    return path.with_name(path.name + META_FILE_SUFFIX)


def read_lines(path: Path) -> List[str]:
    try:
        return path.read_text(encoding="utf-8", errors="replace").splitlines()
    except FileNotFoundError:
        raise NotFoundError(f"list file does not exist: {path}", {"path": str(path)})
    except OSError as e:
        raise PBRError(f"cannot read list file {path}: {e.strerror or e}", {"path": str(path)})


def load_meta(path: Path) -> Dict[str, object]:
    meta_path = meta_path_for(path)
    try:
        return json.loads(meta_path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return {}
    except (OSError, ValueError) as e:
        logger.warning(f"Ignoring unreadable list metadata {meta_path}: {e}")
        return {}


def _write_atomic(path: Path, data: bytes) -> None:
    tmp_path = path.with_name(path.name + ".tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path.write_bytes(data)
        os.replace(tmp_path, path)
    except OSError as e:
        raise PBRError(f"cannot write list cache {path}: {e.strerror or e}", {"path": str(path)})


class LocalFileFetcher:
    """Reads local list files and remembers their last seen mtime"""

    def __init__(self):
        self._mtimes: Dict[str, float] = {}

    def mtime(self, path: Path) -> Optional[float]:
        try:
            return path.stat().st_mtime
        except FileNotFoundError:
            return None

    def fetch(self, name: str, path: Path) -> FetchResult:
        mtime = self.mtime(path)
        if mtime is None:
            raise NotFoundError(f"list {name} file does not exist: {path}", {"list": name, "path": str(path)})
        changed = self._mtimes.get(name) != mtime
        lines = read_lines(path)
        self._mtimes[name] = mtime
        return FetchResult(lines=lines, changed=changed, path=path, mtime=mtime)

    def forget(self, name: str) -> None:
        self._mtimes.pop(name, None)

    def forget_all(self) -> None:
        self._mtimes.clear()


class RemoteFetcher:
    """Conditional downloader for url lists"""

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        timeout: float = DEFAULT_TIMEOUT,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        max_size: int = MAX_LIST_SIZE,
    ):
        self.session = session or self._create_session()
        self.timeout = timeout
        self.connect_timeout = connect_timeout
        self.max_size = max_size

    @staticmethod
    def _create_session() -> requests.Session:
        session = requests.Session()
        retry = Retry(
            total=MAX_RETRIES,
            backoff_factor=RETRY_BACKOFF,
            status_forcelist=RETRY_STATUS_CODES,
            allowed_methods=["GET"],
        )
        adapter = HTTPAdapter(max_retries=retry)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        session.headers["User-Agent"] = USER_AGENT
        return session

    def cached(self, path: Path) -> Optional[FetchResult]:
        """Return the on-disk copy without touching the network."""
        if not path.exists():
            return None
        meta = load_meta(path)
        return FetchResult(
            lines=read_lines(path),
            changed=False,
            path=path,
            downloaded_at=meta.get("downloaded_at"),
            mtime=path.stat().st_mtime,
        )

    def fetch(self, name: str, url: str, path: Path, cancel: Optional[CancelToken] = None) -> FetchResult:
        """Download ``url`` into ``path`` unless the server says it is unchanged.

        Raises:
            TransientNetworkError: Download failed and no cached copy exists
            OperationCancelled: Cancelled before or during the download
        """
        check_cancelled(cancel, f"download of list {name}")

        meta = load_meta(path) if path.exists() else {}
        headers = {}
        if meta.get("url") == url:
            if meta.get("etag"):
                headers["If-None-Match"] = str(meta["etag"])
            if meta.get("last_modified"):
                headers["If-Modified-Since"] = str(meta["last_modified"])

        read_timeout = self.timeout if cancel is None else cancel.remaining(self.timeout)
        try:
            logger.debug(f"[list {name}] GET {url} (conditional={bool(headers)})")
            with self.session.get(
                url,
                headers=headers,
                timeout=(self.connect_timeout, read_timeout),
                stream=True,
            ) as response:
                if response.status_code == 304:
                    logger.info(f"[list {name}] not modified")
                    result = self.cached(path)
                    if result is not None:
                        return result
                    raise TransientNetworkError(f"list {name}: 304 without a cached copy")

                response.raise_for_status()
                body = self._read_body(response, cancel, name)
                new_meta = {
                    "url": url,
                    "etag": response.headers.get("ETag"),
                    "last_modified": response.headers.get("Last-Modified"),
                    "downloaded_at": time.time(),
                }
        except OperationCancelled:
            raise
        except (requests.RequestException, ListTooLargeError, TransientNetworkError) as e:
            return self._fallback(name, url, path, str(e))

        _write_atomic(path, body)
        _write_atomic(meta_path_for(path), json.dumps(new_meta).encode("utf-8"))
        logger.info(f"[list {name}] downloaded {len(body)} bytes")
        return FetchResult(
            lines=body.decode("utf-8", errors="replace").splitlines(),
            changed=True,
            path=path,
            downloaded_at=new_meta["downloaded_at"],
            mtime=path.stat().st_mtime,
        )

    def _read_body(self, response: requests.Response, cancel: Optional[CancelToken], name: str) -> bytes:
        chunks = []
        size = 0
        for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
            check_cancelled(cancel, f"download of list {name}")
            size += len(chunk)
            if size > self.max_size:
                raise ListTooLargeError(f"list exceeds {self.max_size} bytes")
            chunks.append(chunk)
        return b"".join(chunks)

    def _fallback(self, name: str, url: str, path: Path, reason: str) -> FetchResult:
        cached = self.cached(path)
        if cached is None:
            logger.error(f"[list {name}] download failed and no cached copy exists: {reason}")
            raise TransientNetworkError(
                f"failed to download list {name}: {reason}",
                {"list": name, "url": url},
            )
        logger.warning(f"[list {name}] download failed, using cached copy: {reason}")
        cached.error = reason
        return cached


class ListFetcher:
    """Single entry point that dispatches on the list kind"""

    def __init__(self, remote: Optional[RemoteFetcher] = None, local: Optional[LocalFileFetcher] = None):
        self.remote = remote or RemoteFetcher()
        self.local = local or LocalFileFetcher()

    def source_path(self, source, lists_dir: Path, config_dir: Path) -> Optional[Path]:
        if isinstance(source, RemoteListSource):
            return cache_path_for(lists_dir, source.list_name)
        if isinstance(source, LocalListSource):
            path = Path(source.file)
            return path if path.is_absolute() else Path(config_dir) / path
        return None

    def fetch(
        self,
        source,
        lists_dir: Path,
        config_dir: Path,
        download: bool = True,
        cancel: Optional[CancelToken] = None,
    ) -> FetchResult:
        """Produce raw lines for any list kind.

        Args:
            source: InlineListSource, LocalListSource or RemoteListSource
            lists_dir: Directory holding downloaded lists
            config_dir: Base for relative local file paths
            download: For url lists, False serves the cached copy when one exists
            cancel: Cancellation token
        """
        if isinstance(source, InlineListSource):
            return FetchResult(lines=list(source.hosts), changed=False)

        path = self.source_path(source, lists_dir, config_dir)
        if isinstance(source, LocalListSource):
            return self.local.fetch(source.list_name, path)

        if isinstance(source, RemoteListSource):
            if not download:
                cached = self.remote.cached(path)
                if cached is not None:
                    return cached
            return self.remote.fetch(source.list_name, source.url, path, cancel)

        raise ValidationError(f"unsupported list source: {type(source).__name__}")
