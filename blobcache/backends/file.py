from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, BinaryIO, Iterator, Optional

from ..exceptions import CacheIOError, KeyExpiredError, KeyNotFoundError
from ..metadata import METADATA_EXTENSION, is_metadata_key, metadata_key, pack_metadata, unpack_metadata
from ..paths import cache_path, decode_segment, normalize_extension
from ..patterns import KeyMatcher
from ..streams import Payload, as_stream, iter_chunks
from .base import CacheBackend

logger = logging.getLogger(__name__)


def is_stale(mtime: float, ttl: float, now: Optional[float] = None) -> bool:
    """Staleness rule shared by lazy eviction on read and the periodic sweep."""
    if now is None:
        now = time.time()
    return now - mtime > ttl


def remove_empty_directories(root: Path) -> int:
    """Remove empty directories below ``root``, innermost first.

    ``root`` itself is never removed.

    Returns:
        Number of directories removed
    """
    removed = 0
    for dirpath, _, _ in os.walk(root, topdown=False):
        if Path(dirpath) == root:
            continue
        try:
            os.rmdir(dirpath)
            removed += 1
        except OSError:
            # Not empty, or already removed by a concurrent flush/sweep
            continue
    return removed


@dataclass
class FileCacheBackend(CacheBackend):
    """
    Filesystem cache backend with lazy TTL checks and a periodic sweep.

    Each key is stored as one file whose mtime is its last-modified time.
    With ``directory_chunk_size`` set, keys are sharded into nested
    directories (see ``blobcache.paths.cache_path``). Metadata documents
    live in sidecar files under the derived metadata key.

    Example:
        backend = FileCacheBackend(path="./cache", extension="json", directory_chunk_size=4)
        backend.set("1073ab6cda4b", b"data", metadata={"type": "image/png"})
        with backend.get("1073ab6cda4b") as stream:
            data = stream.read()
    """

    path: str = "cache"
    extension: str = ""
    directory_chunk_size: int = 0
    ttl: int = 3600
    auto_flush: bool = False
    auto_flush_interval: float = 300
    directory: Path = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if self.directory_chunk_size < 0:
            raise ValueError(f"directory_chunk_size must be >= 0, got {self.directory_chunk_size}")
        if self.auto_flush_interval <= 0:
            raise ValueError(f"auto_flush_interval must be > 0, got {self.auto_flush_interval}")

        self.directory = Path(self.path).resolve()
        self.extension = normalize_extension(self.extension)
        self._timer: Optional[threading.Timer] = None
        self._timer_lock = threading.Lock()

        if not self.directory.exists():
            self.directory.mkdir(parents=True, exist_ok=True)
            logger.info(f"Created cache directory {self.directory}")

        if self.auto_flush:
            self.enable_auto_flush()

    def _path(self, key: str, create: bool = False) -> Path:
        return cache_path(key, self.directory, self.directory_chunk_size, self.extension, create=create)

    def _metadata_path(self, key: str, create: bool = False) -> Path:
        return cache_path(
            metadata_key(key), self.directory, self.directory_chunk_size, METADATA_EXTENSION, create=create
        )

    def _key_for(self, path: Path) -> Optional[str]:
        """Recover the cache key of a primary entry file, None for sidecars."""
        name = path.name
        if name.endswith(METADATA_EXTENSION) and is_metadata_key(name[: -len(METADATA_EXTENSION)]):
            return None
        if self.extension:
            if not name.endswith(self.extension):
                return None
            name = name[: -len(self.extension)]
        return decode_segment(name)

    def _iter_files(self) -> Iterator[Path]:
        for dirpath, _, filenames in os.walk(self.directory):
            for filename in filenames:
                yield Path(dirpath, filename)

    def get(self, key: str, ttl: Optional[int] = None) -> BinaryIO:
        """
        Open the cached file for ``key``.

        Any stat failure counts as a miss; permission errors are not
        distinguished from absence. Stale files are removed before raising.
        """
        logger.debug(f"GET {key}")
        path = self._path(key)

        try:
            stat = path.stat()
        except OSError:
            raise KeyNotFoundError(key) from None

        if is_stale(stat.st_mtime, self.ttl if ttl is None else ttl):
            self._evict(key, path)
            raise KeyExpiredError(key)

        try:
            return open(path, "rb")
        except OSError:
            # Removed between stat and open
            raise KeyNotFoundError(key) from None

    def set(
        self,
        key: str,
        data: Payload,
        ttl: Optional[int] = None,
        metadata: Any = None,
    ) -> None:
        """
        Write ``data`` to the file for ``key``, truncating any previous content.

        ``ttl`` has no effect here: freshness is judged from the file mtime
        at read time. Writing without metadata drops any previous metadata.
        """
        logger.debug(f"SET {key}")
        packed = pack_metadata(metadata) if metadata is not None else None
        stream = as_stream(data)
        path = self._path(key, create=True)

        try:
            try:
                handle = open(path, "wb")
            except FileNotFoundError:
                # A concurrent flush removed the freshly created directories
                path = self._path(key, create=True)
                handle = open(path, "wb")
            with handle:
                for chunk in iter_chunks(stream):
                    handle.write(chunk)
        except OSError as e:
            logger.error(f"Error writing cache file for key {key}: {e}")
            raise CacheIOError(f"Failed to write key {key!r}: {e}") from e

        meta_path = self._metadata_path(key, create=packed is not None)
        try:
            if packed is None:
                meta_path.unlink(missing_ok=True)
            else:
                meta_path.write_bytes(packed)
        except OSError as e:
            logger.error(f"Error writing metadata for key {key}: {e}")
            raise CacheIOError(f"Failed to write metadata for key {key!r}: {e}") from e

    def get_metadata(self, key: str) -> Any:
        try:
            data = self._metadata_path(key).read_bytes()
        except OSError:
            return None
        return unpack_metadata(key, data)

    def flush(self, pattern: Optional[str] = None) -> int:
        """
        Remove cache entries whose path relative to the cache directory matches
        ``pattern``, then remove the directories left empty.

        Only primary entries are matched; a metadata sidecar goes with the
        entry that owns it. Flushing everything also clears stray files.

        Args:
            pattern: Regular expression, None to remove everything

        Returns:
            Number of cache entries removed
        """
        matcher = KeyMatcher(pattern)
        removed = 0

        for path in list(self._iter_files()):
            key = self._key_for(path)
            if key is None:
                if matcher.regex is None:
                    self._unlink(path)
                continue

            if not matcher.matches(decode_segment(path.relative_to(self.directory).as_posix())):
                continue

            self._unlink(path)
            self._unlink(self._metadata_path(key))
            removed += 1

        remove_empty_directories(self.directory)
        logger.info(f"Flushed {removed} cache entries matching {pattern!r} from {self.directory}")
        return removed

    def sweep(self) -> int:
        """
        Remove every file older than the default TTL, then empty directories.

        Files that disappear while the sweep runs are treated as removed
        already.

        Returns:
            Number of files removed
        """
        now = time.time()
        removed = 0

        for path in list(self._iter_files()):
            try:
                stat = path.stat()
            except FileNotFoundError:
                continue

            if not is_stale(stat.st_mtime, self.ttl, now):
                continue

            if self._discard(path):
                removed += 1
            key = self._key_for(path)
            if key is not None and self._discard(self._metadata_path(key)):
                removed += 1

        remove_empty_directories(self.directory)
        if removed:
            logger.info(f"Swept {removed} expired files from {self.directory}")
        return removed

    def _unlink(self, path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.error(f"Error deleting cache file {path}: {e}")
            raise CacheIOError(f"Failed to delete {path}: {e}") from e

    def _discard(self, path: Path) -> bool:
        """Best-effort unlink used by eviction paths. Returns True if a file was removed."""
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning(f"Could not remove expired cache file {path}: {e}")
            return False

    def _evict(self, key: str, path: Path) -> None:
        self._discard(path)
        self._discard(self._metadata_path(key))

    def enable_auto_flush(self) -> None:
        """Start sweeping expired files every ``auto_flush_interval`` seconds."""
        with self._timer_lock:
            self.auto_flush = True
            self._schedule_sweep()

    def disable_auto_flush(self) -> None:
        """Stop the sweep timer. A sweep already running completes but is not rescheduled."""
        with self._timer_lock:
            self.auto_flush = False
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def _schedule_sweep(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        self._timer = threading.Timer(self.auto_flush_interval, self._run_sweep)
        self._timer.daemon = True
        self._timer.start()

    def _run_sweep(self) -> None:
        with self._timer_lock:
            if not self.auto_flush:
                return

        try:
            self.sweep()
        except Exception as e:
            logger.error(f"Cache sweep of {self.directory} failed: {e}")

        with self._timer_lock:
            if self.auto_flush:
                self._schedule_sweep()

    def close(self) -> None:
        self.disable_auto_flush()
