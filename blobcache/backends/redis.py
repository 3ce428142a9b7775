from __future__ import annotations

import io
import logging
import threading
import uuid
from enum import Enum
from typing import Any, BinaryIO, Callable, Dict, Optional, Set

import redis
from redis.backoff import NoBackoff
from redis.cluster import ClusterNode, RedisCluster
from redis.exceptions import ClusterDownError, RedisClusterException, RedisError
from redis.retry import Retry

from ..circuit_breaker import CircuitBreaker
from ..config import RedisConfig
from ..events import FailedOperation, Observable
from ..exceptions import CacheIOError, ConnectionUnavailableError, KeyNotFoundError
from ..metadata import is_metadata_key, metadata_key, pack_metadata, unpack_metadata
from ..patterns import KeyMatcher
from ..streams import Payload, as_stream, iter_chunks, read_all
from .base import CacheBackend

logger = logging.getLogger(__name__)

REDIS_ERRORS = (RedisError, RedisClusterException)
CONNECTION_ERRORS = (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError, ClusterDownError)

# Partially written payloads expire on their own if the writer dies
TEMP_KEY_TTL = 300


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    READY = "ready"
    RECONNECTING = "reconnecting"
    FAILED = "failed"
    ENDED = "ended"


def create_client(config: RedisConfig) -> Any:
    """Build a redis-py client for ``config``.

    Reconnection is driven by RedisCacheBackend, so the client's own
    retries are disabled.
    """
    if config.cluster:
        return RedisCluster(
            startup_nodes=[ClusterNode(node["host"], node["port"]) for node in config.startup_nodes()],
            read_from_replicas=config.scale_reads in {"slave", "replica", "all"},
            socket_connect_timeout=config.socket_connect_timeout,
            retry=Retry(NoBackoff(), 0),
        )
    return redis.Redis(
        host=config.host,
        port=config.port,
        socket_connect_timeout=config.socket_connect_timeout,
        retry=Retry(NoBackoff(), 0),
        decode_responses=False,
    )


class RedisReadStream(io.RawIOBase):
    """Lazily reads a Redis string value in GETRANGE-sized chunks."""

    def __init__(self, client: Any, key: str, chunk_size: int) -> None:
        self._client = client
        self._key = key
        self._chunk_size = chunk_size
        self._offset = 0
        self._pending = b""
        self._eof = False

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:  # type: ignore[no-untyped-def]
        if not self._pending and not self._eof:
            end = self._offset + self._chunk_size - 1
            try:
                chunk = self._client.getrange(self._key, self._offset, end) or b""
            except REDIS_ERRORS as e:
                raise OSError(f"Failed to read key {self._key!r} from Redis: {e}") from e
            self._offset += len(chunk)
            self._eof = len(chunk) < self._chunk_size
            self._pending = chunk

        size = min(len(buffer), len(self._pending))
        buffer[:size] = self._pending[:size]
        self._pending = self._pending[size:]
        return size


class RedisCacheBackend(Observable, CacheBackend):
    """
    Redis cache backend with a supervised connection.

    Connection states:
    - CONNECTING: First attempt of a connection cycle
    - READY: Commands are served
    - RECONNECTING: Transport dropped, retrying with linear backoff
    - FAILED: Circuit breaker tripped, waiting for the cooldown
    - ENDED: Closed by the caller (terminal)

    Signals (see ``Observable.subscribe``):
    - ready(): Connection established or resumed
    - reconnecting(attempt): A reconnection attempt was scheduled
    - fail(operation): An operation ran while not READY, or the breaker
      tripped. ``operation`` is a FailedOperation or None.
    - node_added(name) / node_removed(name): Cluster topology changes
    - end(): Closed by the caller

    Operations never no-op while the connection is down: they emit ``fail``
    and raise ConnectionUnavailableError.
    """

    def __init__(
        self,
        config: Optional[RedisConfig] = None,
        ttl: Optional[int] = None,
        client_factory: Optional[Callable[[RedisConfig], Any]] = None,
        lazy_connect: bool = False,
    ) -> None:
        Observable.__init__(self)
        self.config = config or RedisConfig()
        if ttl is not None:
            self.ttl = ttl
        else:
            self.ttl = self.config.ttl if self.config.ttl is not None else 3600
        self.is_clustered = self.config.cluster
        self.breaker = CircuitBreaker(self.config.retry_policy())

        self._client_factory = client_factory or create_client
        self._client: Any = None
        self._state = ConnectionState.CONNECTING
        self._state_lock = threading.RLock()
        self._timer: Optional[threading.Timer] = None
        self._nodes: Set[str] = set()

        if lazy_connect:
            with self._state_lock:
                self._schedule(0, self._connect)
        else:
            self._connect()

    @property
    def state(self) -> ConnectionState:
        with self._state_lock:
            return self._state

    @property
    def is_ready(self) -> bool:
        return self.state is ConnectionState.READY

    @property
    def address(self) -> str:
        return ",".join(f"{n['host']}:{n['port']}" for n in self.config.startup_nodes())

    # Connection lifecycle

    def _schedule(self, delay: float, target: Callable[[], None]) -> None:
        """Arm the single lifecycle timer. Caller holds the state lock."""
        if self._timer is not None:
            self._timer.cancel()
        self._timer = threading.Timer(delay, target)
        self._timer.daemon = True
        self._timer.start()

    def _connect(self) -> None:
        """Start a fresh connection cycle with a new client."""
        with self._state_lock:
            if self._state is ConnectionState.ENDED:
                return
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            stale, self._client = self._client, None
            self._state = ConnectionState.CONNECTING
            self.breaker.reset()

        if stale is not None:
            self._close_client(stale)

        logger.info(f"Connecting to Redis at {self.address}")
        self._attempt()

    def _reconnect(self) -> None:
        with self._state_lock:
            if self._state is not ConnectionState.RECONNECTING:
                return
            self._timer = None
        self._attempt()

    def _attempt(self) -> None:
        try:
            client = self._client
            if client is None:
                client = self._client_factory(self.config)
                with self._state_lock:
                    ended = self._state is ConnectionState.ENDED
                    if not ended:
                        self._client = client
                if ended:
                    # Closed while the client was being built
                    self._close_client(client)
                    return
            client.ping()
        except REDIS_ERRORS + (OSError,) as e:
            logger.warning(f"Redis connection attempt to {self.address} failed: {e}")
            self._connection_lost(e)
            return

        with self._state_lock:
            if self._state is ConnectionState.ENDED:
                return
            self._state = ConnectionState.READY
            self.breaker.reset()

        logger.info(f"Connected to Redis at {self.address}")
        self.emit("ready")

        if self.is_clustered:
            self.refresh_nodes()

    def _connection_lost(self, error: BaseException) -> None:
        """Move to RECONNECTING, or trip the breaker into FAILED."""
        with self._state_lock:
            if self._state in (ConnectionState.ENDED, ConnectionState.FAILED):
                return
            if self._state is ConnectionState.RECONNECTING and self._timer is not None:
                # Another caller already scheduled the next attempt
                return

            delay = self.breaker.next_delay()
            if delay is None:
                self._state = ConnectionState.FAILED
                self._schedule(self.breaker.policy.cooldown, self._connect)
            else:
                self._state = ConnectionState.RECONNECTING
                self._schedule(delay, self._reconnect)
            attempt = self.breaker.attempts

        if delay is None:
            logger.error(
                f"Redis at {self.address} appears unavailable after {attempt} attempts ({error}); "
                f"next connection cycle in {self.breaker.policy.cooldown:.0f}s"
            )
            self.emit("fail", None)
        else:
            logger.warning(f"Redis reconnect attempt #{attempt} in {delay:.1f}s")
            self.emit("reconnecting", attempt)

    def refresh_nodes(self) -> None:
        """Diff the cluster node list and signal joins and departures."""
        client = self._client
        if not self.is_clustered or client is None:
            return

        try:
            current = {node.name for node in client.get_nodes()}
        except REDIS_ERRORS as e:
            logger.warning(f"Could not list Redis cluster nodes: {e}")
            return

        with self._state_lock:
            added = current - self._nodes
            removed = self._nodes - current
            self._nodes = current

        for name in sorted(added):
            self.emit("node_added", name)
        for name in sorted(removed):
            self.emit("node_removed", name)

    def close(self) -> None:
        """Disconnect and stop every timer. The backend cannot be reused."""
        with self._state_lock:
            if self._state is ConnectionState.ENDED:
                return
            self._state = ConnectionState.ENDED
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            client, self._client = self._client, None

        if client is not None:
            self._close_client(client)
        logger.info(f"Redis connection to {self.address} closed")
        self.emit("end")

    def _close_client(self, client: Any) -> None:
        try:
            client.close()
        except REDIS_ERRORS + (OSError,) as e:
            logger.error(f"Error closing Redis connection: {e}")

    # Operations

    def _require_ready(self, name: str, *args: Any, **kwargs: Any) -> Any:
        with self._state_lock:
            state = self._state
            client = self._client

        if state is ConnectionState.READY and client is not None:
            return client

        operation = FailedOperation(name, args, kwargs)
        logger.warning(f"Redis {name.upper()} issued while connection is {state.value}")
        self.emit("fail", operation)
        raise ConnectionUnavailableError(f"Redis is not ready (state: {state.value})", operation=operation)

    def _command_failed(
        self,
        operation: FailedOperation,
        error: BaseException,
        replayable: bool = True,
    ) -> Exception:
        """Translate a Redis error; connection errors also raise the ``fail`` signal."""
        if isinstance(error, CONNECTION_ERRORS):
            self._connection_lost(error)
            carried = operation if replayable else None
            self.emit("fail", carried)
            return ConnectionUnavailableError(
                f"Redis connection lost during {operation.name.upper()}: {error}", operation=carried
            )

        logger.error(f"Redis {operation.name.upper()} error: {error}")
        return CacheIOError(f"Redis {operation.name.upper()} failed: {error}")

    def get(self, key: str, ttl: Optional[int] = None) -> BinaryIO:
        """
        Open a stream over the value stored for ``key``.

        ``ttl`` is accepted for interface parity; expiry is enforced by Redis.
        """
        client = self._require_ready("get", key, ttl=ttl)

        try:
            if not client.exists(key):
                raise KeyNotFoundError(key)

            if self.is_clustered:
                value = client.get(key)
                if value is None:
                    raise KeyNotFoundError(key)
                return io.BytesIO(value)
        except REDIS_ERRORS as e:
            raise self._command_failed(FailedOperation("get", (key,), {"ttl": ttl}), e) from e

        chunk_size = self.config.read_chunk_size
        return io.BufferedReader(RedisReadStream(client, key, chunk_size), buffer_size=chunk_size)  # type: ignore[return-value]

    def set(
        self,
        key: str,
        data: Payload,
        ttl: Optional[int] = None,
        metadata: Any = None,
    ) -> None:
        """
        Store ``data`` under ``key`` with a native expiry.

        The metadata entry, when given, gets the same expiry as the payload.
        Writing without metadata drops any previous metadata.
        """
        client = self._require_ready("set", key, data, ttl=ttl, metadata=metadata)
        expiry = self.ttl if ttl is None else ttl
        packed = pack_metadata(metadata) if metadata is not None else None
        stream = as_stream(data)
        seekable = getattr(stream, "seekable", lambda: False)()
        start = stream.tell() if seekable else 0

        try:
            if self.is_clustered:
                client.set(key, read_all(stream), ex=expiry or None)
            else:
                self._write_stream(client, key, stream, expiry)

            if packed is None:
                client.delete(metadata_key(key))
            else:
                client.set(metadata_key(key), packed, ex=expiry or None)
        except REDIS_ERRORS as e:
            # Rewind so a replay elsewhere sees the whole payload
            if seekable:
                stream.seek(start)
            operation = FailedOperation("set", (key, stream), {"ttl": ttl, "metadata": metadata})
            raise self._command_failed(operation, e, replayable=seekable) from e

    def _write_stream(self, client: Any, key: str, stream: BinaryIO, expiry: int) -> None:
        """Append chunks to a temporary key, then swap it in atomically."""
        temp_key = f"{key}.{uuid.uuid4().hex}.tmp"
        written = 0

        try:
            for chunk in iter_chunks(stream, self.config.read_chunk_size):
                client.append(temp_key, chunk)
                if not written:
                    client.expire(temp_key, TEMP_KEY_TTL)
                written += len(chunk)

            if not written:
                client.set(key, b"", ex=expiry or None)
                return

            pipe = client.pipeline(transaction=True)
            pipe.rename(temp_key, key)
            if expiry:
                pipe.expire(key, expiry)
            else:
                pipe.persist(key)
            pipe.execute()
        except REDIS_ERRORS:
            if written:
                self._discard_temp_key(client, temp_key)
            raise

    def _discard_temp_key(self, client: Any, temp_key: str) -> None:
        try:
            client.delete(temp_key)
        except REDIS_ERRORS as e:
            logger.warning(f"Could not remove temporary key {temp_key}; it expires in {TEMP_KEY_TTL}s: {e}")

    def flush(self, pattern: Optional[str] = None) -> int:
        """
        Delete every key matching ``pattern`` along with its metadata entry.

        Metadata entries are never matched on their own name.

        Keys are enumerated with SCAN so large key spaces do not block the
        server. Deletion starts once enumeration completes.

        Args:
            pattern: Regular expression, None to remove everything

        Returns:
            Number of cache entries removed
        """
        client = self._require_ready("flush", pattern)
        matcher = KeyMatcher(pattern)
        batch: Dict[Any, None] = {}
        primaries: Set[str] = set()

        try:
            for raw in client.scan_iter(match=matcher.scan_glob(), count=self.config.scan_count):
                key = raw.decode("utf-8", "replace") if isinstance(raw, bytes) else raw
                if is_metadata_key(key):
                    # Removed through the entry that owns it, or as a stray when flushing everything
                    if matcher.regex is None:
                        batch[raw] = None
                    continue
                if not matcher.matches(key):
                    continue
                batch[raw] = None
                primaries.add(key)
                batch[metadata_key(key)] = None

            keys = list(batch)
            size = self.config.scan_count
            for i in range(0, len(keys), size):
                client.delete(*keys[i:i + size])
        except REDIS_ERRORS as e:
            raise self._command_failed(FailedOperation("flush", (pattern,)), e) from e

        logger.info(f"Flushed {len(primaries)} Redis keys matching {pattern!r}")
        return len(primaries)

    def get_metadata(self, key: str) -> Any:
        client = self._require_ready("get_metadata", key)

        try:
            raw = client.get(metadata_key(key))
        except REDIS_ERRORS as e:
            raise self._command_failed(FailedOperation("get_metadata", (key,)), e) from e

        if raw is None:
            return None
        return unpack_metadata(key, raw)
