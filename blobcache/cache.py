from __future__ import annotations

import logging
import threading
import time
from typing import Any, BinaryIO, Callable, Dict, Mapping, Optional, Union

from .backends.base import CacheBackend
from .backends.file import FileCacheBackend
from .backends.redis import RedisCacheBackend
from .config import CacheConfig
from .events import FailedOperation, Observable
from .exceptions import CacheError, ConnectionUnavailableError, KeyExpiredError, KeyNotFoundError, MetadataCorruptError
from .metrics import CacheMetrics
from .stats import CacheStats
from .streams import Payload

logger = logging.getLogger(__name__)

DIRECTORY = "directory"
REDIS = "redis"


class Cache(Observable):
    """
    Blob cache over a filesystem or Redis backend with transparent failover.

    The backend is picked from configuration: Redis when enabled, otherwise
    the filesystem. While Redis is the primary backend, its lifecycle
    signals drive the active backend:

    - fail: switch to the filesystem backend (created on first use and
      kept for the life of the process) and replay the failed operation
      against it once
    - ready: switch back to Redis

    Calls already running against the previous backend complete there;
    only calls issued after a switch see the new backend.

    Example:
        cache = Cache({
            "ttl": 3600,
            "directory": {"enabled": False, "path": "./cache/", "extension": "json"},
            "redis": {"enabled": True, "host": "127.0.0.1", "port": 6379},
        })
        cache.set("key1", b"data", metadata={"type": "text/plain"})
        with cache.get("key1") as stream:
            data = stream.read()
    """

    def __init__(
        self,
        config: Union[CacheConfig, Mapping[str, Any], None] = None,
        *,
        backend: Optional[CacheBackend] = None,
        redis_client_factory: Optional[Callable[..., Any]] = None,
    ) -> None:
        Observable.__init__(self)
        if not isinstance(config, CacheConfig):
            config = CacheConfig.from_dict(config)
        self.config = config
        self.stats = CacheStats()
        self.metrics = CacheMetrics(namespace=self.config.namespace)

        self._redis_client_factory = redis_client_factory
        self._backends: Dict[str, CacheBackend] = {}
        self._lock = threading.Lock()

        if backend is not None:
            # Anything that publishes lifecycle signals is supervised like Redis
            self.type = REDIS if hasattr(backend, "subscribe") else DIRECTORY
            self._backends[self.type] = backend
            self._active: CacheBackend = backend
            if self.type == REDIS:
                self._watch(backend)
                if getattr(backend, "is_ready", False):
                    self._on_ready()
        elif self.config.redis.enabled:
            self.type = REDIS
            remote = self._create_redis_backend()
            self._active = remote
            self._watch(remote)
            if remote.is_ready:
                # Connected before the handlers were attached
                self._on_ready()
        else:
            # Directory when enabled, and the default when nothing is
            self.type = DIRECTORY
            self._active = self._create_file_backend()

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    @property
    def backend(self) -> CacheBackend:
        """The backend currently serving requests."""
        return self._active

    @property
    def backend_kind(self) -> str:
        return self._kind_of(self._active)

    @property
    def backends(self) -> Dict[str, CacheBackend]:
        """Backends created so far, keyed by kind."""
        with self._lock:
            return dict(self._backends)

    def _kind_of(self, backend: CacheBackend) -> str:
        for kind, candidate in list(self._backends.items()):
            if candidate is backend:
                return kind
        return "unknown"

    def _create_file_backend(self) -> FileCacheBackend:
        options = self.config.directory
        handler = FileCacheBackend(
            path=options.path,
            extension=options.extension,
            directory_chunk_size=options.directory_chunk_size,
            ttl=self.config.directory_ttl(),
            auto_flush=options.auto_flush,
            auto_flush_interval=options.auto_flush_interval,
        )
        self._backends[DIRECTORY] = handler
        return handler

    def _create_redis_backend(self) -> RedisCacheBackend:
        handler = RedisCacheBackend(
            self.config.redis,
            ttl=self.config.redis_ttl(),
            client_factory=self._redis_client_factory,
        )
        self._backends[REDIS] = handler
        return handler

    def _watch(self, backend: Any) -> None:
        backend.subscribe("ready", self._on_ready)
        backend.subscribe("fail", self._on_fail)
        backend.subscribe("reconnecting", self._on_reconnecting)
        backend.subscribe("node_added", self._on_node_added)
        backend.subscribe("node_removed", self._on_node_removed)
        backend.subscribe("end", self._on_end)

    # Lifecycle handlers

    def _on_ready(self) -> None:
        with self._lock:
            remote = self._backends.get(REDIS)
            switched = remote is not None and self._active is not remote
            if switched:
                self._active = remote  # type: ignore[assignment]

        if switched:
            logger.info("Redis connection restored; switching back from filesystem caching")
            self.stats.increment_failback()
            self.metrics.record_switch("failback")
            self.emit("failback")

        logger.info("Redis connected")
        self.emit("message", "Redis connected")
        self.emit("ready")

    def _on_fail(self, operation: Optional[FailedOperation] = None) -> None:
        with self._lock:
            fallback = self._backends.get(DIRECTORY)
            if fallback is None:
                fallback = self._create_file_backend()
            switched = self._active is not fallback
            self._active = fallback

        if switched:
            location = getattr(fallback, "directory", self.config.directory.path)
            logger.warning(f"Redis connection failed. Falling back to filesystem caching at {location}")
            self.stats.increment_failover()
            self.metrics.record_switch("failover")
            self.emit("message", f"Redis connection failed. Falling back to filesystem caching at {location}")
            self.emit("failover")

        if operation is not None:
            # Against the fallback directly: never re-enters the facade
            operation.replay(fallback)

    def _on_reconnecting(self, attempt: int) -> None:
        self.emit("message", f"Redis reconnecting, attempt #{attempt}")
        self.emit("reconnecting", attempt)

    def _on_node_added(self, name: str) -> None:
        self.emit("message", f"Node {name} connected")

    def _on_node_removed(self, name: str) -> None:
        self.emit("message", f"Node {name} disconnected")

    def _on_end(self) -> None:
        with self._lock:
            self._backends.pop(REDIS, None)
        self.emit("message", "Redis disconnected")

    # Operations

    def _dispatch(self, name: str, *args: Any, **kwargs: Any) -> Any:
        backend = self._active
        try:
            return getattr(backend, name)(*args, **kwargs)
        except ConnectionUnavailableError as e:
            if e.operation is not None and e.operation.replayed:
                return e.operation.result()
            raise

    def get(self, key: str, ttl: Optional[int] = None) -> BinaryIO:
        """
        Get an item from the cache.

        Args:
            key: The key used to reference the item
            ttl: Maximum age in seconds for this read, overriding the default

        Returns:
            Readable binary stream; close it when done

        Raises:
            KeyNotFoundError: The key does not exist
            KeyExpiredError: The key exists but is older than its TTL
        """
        start_time = time.time()
        try:
            stream = self._dispatch("get", key, ttl=ttl)
        except KeyExpiredError:
            self.stats.increment_miss(expired=True)
            self.metrics.record_miss(self.backend_kind, "expired")
            if self.config.enable_logging:
                logger.debug(f"Cache EXPIRED: {key}")
            raise
        except KeyNotFoundError:
            self.stats.increment_miss()
            self.metrics.record_miss(self.backend_kind, "not_found")
            if self.config.enable_logging:
                logger.debug(f"Cache MISS: {key}")
            raise

        self.stats.increment_hit()
        self.metrics.record_hit(self.backend_kind)
        self.metrics.observe_latency("get", time.time() - start_time)
        if self.config.enable_logging:
            logger.info(
                "cache_hit",
                extra={"event": "cache_hit", "key": key, "backend": self.backend_kind, "namespace": self.config.namespace},
            )
        return stream

    def set(
        self,
        key: str,
        data: Payload,
        ttl: Optional[int] = None,
        metadata: Any = None,
    ) -> None:
        """
        Add an item to the cache.

        Args:
            key: The key used to reference the item
            data: bytes, str, a binary stream, or an iterable of byte chunks
            ttl: Expiry in seconds for backends with native expiry
            metadata: Optional document stored alongside the item
        """
        start_time = time.time()
        try:
            self._dispatch("set", key, data, ttl=ttl, metadata=metadata)
        except CacheError as e:
            self.stats.increment_error()
            self.metrics.record_error("write_failed")
            if self.config.enable_logging:
                logger.error(f"Failed to cache {key}: {e}")
            raise

        self.stats.increment_write()
        self.metrics.record_write(self.backend_kind)
        self.metrics.observe_latency("set", time.time() - start_time)
        if self.config.enable_logging:
            logger.debug(f"Cached {key} in {self.backend_kind} (metadata={metadata is not None})")

    def flush(self, pattern: Optional[str] = None) -> int:
        """
        Remove items whose key matches ``pattern`` from the active backend.

        Backends that are not active are left untouched.

        Args:
            pattern: Regular expression, None to remove everything

        Returns:
            Number of items removed
        """
        try:
            removed = self._dispatch("flush", pattern)
        except CacheError:
            self.stats.increment_error()
            self.metrics.record_error("flush_failed")
            raise

        self.stats.increment_flush(removed)
        self.metrics.record_flush(self.backend_kind, removed)
        if self.config.enable_logging:
            logger.info(f"Flushed {removed} items matching {pattern!r} from {self.backend_kind}")
        return removed

    def get_metadata(self, key: str) -> Any:
        """
        Get the metadata stored for ``key``.

        Returns:
            The stored document, or None if there is none

        Raises:
            MetadataCorruptError: The stored document cannot be decoded
        """
        try:
            return self._dispatch("get_metadata", key)
        except MetadataCorruptError:
            self.stats.increment_error()
            self.metrics.record_error("metadata_corrupt")
            raise

    def get_stats(self) -> CacheStats:
        """Get cache statistics."""
        return self.stats

    def close(self) -> None:
        """Close every backend created by this cache."""
        for backend in list(self.backends.values()):
            backend.close()

    def __enter__(self) -> "Cache":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # type: ignore[no-untyped-def]
        self.close()
