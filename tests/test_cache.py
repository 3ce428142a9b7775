from __future__ import annotations

import os
import time
from pathlib import Path
from typing import Any, List

import pytest

from blobcache import (
    Cache,
    CacheConfig,
    ConnectionUnavailableError,
    DirectoryConfig,
    FileCacheBackend,
    KeyExpiredError,
    KeyNotFoundError,
    RedisCacheBackend,
    RedisConfig,
)


@pytest.fixture
def file_cache(tmp_path: Path) -> Cache:
    cache = Cache({"ttl": 60, "directory": {"enabled": True, "path": str(tmp_path), "extension": "json"}})
    yield cache
    cache.close()


@pytest.fixture
def redis_cache(tmp_path: Path, fake_redis, redis_config: RedisConfig) -> Cache:
    config = CacheConfig(directory=DirectoryConfig(path=str(tmp_path / "fallback")), redis=redis_config)
    cache = Cache(config, redis_client_factory=lambda c: fake_redis)
    yield cache
    cache.close()


def _messages(cache: Cache) -> List[Any]:
    messages: List[Any] = []
    cache.subscribe("message", messages.append)
    return messages


def test_directory_selected(file_cache: Cache) -> None:
    assert file_cache.enabled
    assert file_cache.type == "directory"
    assert isinstance(file_cache.backend, FileCacheBackend)
    assert file_cache.backend.extension == ".json"


def test_disabled_defaults_to_directory(tmp_path: Path) -> None:
    cache = Cache({"directory": {"path": str(tmp_path)}})
    assert not cache.enabled
    assert cache.type == "directory"


def test_redis_takes_priority(tmp_path: Path, fake_redis) -> None:
    cache = Cache(
        {
            "directory": {"enabled": True, "path": str(tmp_path)},
            "redis": {"enabled": True, "host": "127.0.0.1", "port": 6379},
        },
        redis_client_factory=lambda c: fake_redis,
    )
    try:
        assert cache.type == "redis"
        assert isinstance(cache.backend, RedisCacheBackend)
        assert "directory" not in cache.backends
    finally:
        cache.close()


def test_set_get_and_metadata(file_cache: Cache) -> None:
    file_cache.set("key1", b"data", metadata={"type": "text/plain"})

    with file_cache.get("key1") as stream:
        assert stream.read() == b"data"
    assert file_cache.get_metadata("key1") == {"type": "text/plain"}

    stats = file_cache.get_stats()
    assert stats.writes == 1
    assert stats.hits == 1


def test_misses_are_counted(file_cache: Cache, tmp_path: Path) -> None:
    with pytest.raises(KeyNotFoundError):
        file_cache.get("nope")

    file_cache.set("old", b"data")
    past = time.time() - 120
    os.utime(tmp_path / "old.json", (past, past))
    with pytest.raises(KeyExpiredError):
        file_cache.get("old")

    stats = file_cache.get_stats()
    assert stats.misses == 2
    assert stats.expired == 1
    assert stats.hit_rate == 0.0


def test_flush(file_cache: Cache) -> None:
    for key in ("key1", "keytwo", "keythree"):
        file_cache.set(key, b"x")

    assert file_cache.flush("two") == 1
    assert file_cache.flush() == 2
    assert file_cache.get_stats().flushed_keys == 3


def test_redis_roundtrip(redis_cache: Cache, fake_redis) -> None:
    redis_cache.set("key1", b"data", metadata={"v": 1})

    with redis_cache.get("key1") as stream:
        assert stream.read() == b"data"
    assert redis_cache.get_metadata("key1") == {"v": 1}
    assert fake_redis.store["key1"] == b"data"


def test_failover_replays_set(tmp_path: Path, fake_redis, redis_config: RedisConfig) -> None:
    fake_redis.fail = True
    config = CacheConfig(directory=DirectoryConfig(path=str(tmp_path)), redis=redis_config)
    cache = Cache(config, redis_client_factory=lambda c: fake_redis)
    messages = _messages(cache)
    failovers: List[bool] = []
    cache.subscribe("failover", lambda: failovers.append(True))

    try:
        assert cache.backend_kind == "redis"
        cache.set("key1", b"data")

        assert cache.backend_kind == "directory"
        assert (tmp_path / "key1").read_bytes() == b"data"
        with cache.get("key1") as stream:
            assert stream.read() == b"data"

        assert failovers == [True]
        assert messages[0].startswith("Redis connection failed. Falling back to filesystem caching at")
        assert cache.get_stats().failovers == 1
        assert cache.get_stats().writes == 1
    finally:
        cache.close()


def test_failover_replay_miss_propagates(tmp_path: Path, fake_redis, redis_config: RedisConfig) -> None:
    fake_redis.fail = True
    config = CacheConfig(directory=DirectoryConfig(path=str(tmp_path)), redis=redis_config)
    cache = Cache(config, redis_client_factory=lambda c: fake_redis)

    try:
        with pytest.raises(KeyNotFoundError):
            cache.get("missing")
        assert cache.get_stats().misses == 1
    finally:
        cache.close()


def test_failback_and_replayed_get(redis_cache: Cache, fake_redis) -> None:
    remote = redis_cache.backends["redis"]
    fake_redis.fail = True
    redis_cache.set("key1", b"local")
    assert redis_cache.backend_kind == "directory"

    failbacks: List[bool] = []
    redis_cache.subscribe("failback", lambda: failbacks.append(True))
    fake_redis.fail = False
    remote._connect()

    assert redis_cache.backend_kind == "redis"
    assert failbacks == [True]

    # Connection drops during the read: served from the fallback store
    fake_redis.fail = True
    with redis_cache.get("key1") as stream:
        assert stream.read() == b"local"
    assert redis_cache.backend_kind == "directory"

    stats = redis_cache.get_stats()
    assert (stats.failovers, stats.failbacks) == (2, 1)


def test_unreplayable_write_raises(redis_cache: Cache, fake_redis) -> None:
    fake_redis.fail = True

    with pytest.raises(ConnectionUnavailableError):
        redis_cache.set("key1", iter([b"da", b"ta"]))

    assert redis_cache.backend_kind == "directory"
    assert redis_cache.get_stats().errors == 1


def test_flush_only_touches_active_backend(redis_cache: Cache, fake_redis) -> None:
    redis_cache.set("remote", b"x")
    fake_redis.fail = True
    redis_cache.set("local", b"y")
    assert redis_cache.backend_kind == "directory"

    fake_redis.fail = False
    assert redis_cache.flush() == 1
    assert "remote" in fake_redis.store


def test_injected_backend(tmp_path: Path) -> None:
    backend = FileCacheBackend(path=str(tmp_path))
    cache = Cache(backend=backend)

    assert cache.type == "directory"
    assert cache.backend is backend
    cache.set("key1", "value")
    with cache.get("key1") as stream:
        assert stream.read() == b"value"


def test_close_ends_redis(tmp_path: Path, fake_redis, redis_config: RedisConfig) -> None:
    config = CacheConfig(directory=DirectoryConfig(path=str(tmp_path)), redis=redis_config)
    with Cache(config, redis_client_factory=lambda c: fake_redis) as cache:
        messages = _messages(cache)

    assert messages == ["Redis disconnected"]
    assert "redis" not in cache.backends
    assert fake_redis.closed == 1


class RecordingCache(Cache):
    """Records every signal, including the ones emitted while constructing."""

    def emit(self, event: str, *args: Any) -> None:
        self.__dict__.setdefault("signals", []).append((event,) + args)
        super().emit(event, *args)


def test_initial_connection_is_announced(tmp_path: Path, fake_redis, redis_config: RedisConfig) -> None:
    config = CacheConfig(directory=DirectoryConfig(path=str(tmp_path)), redis=redis_config)
    cache = RecordingCache(config, redis_client_factory=lambda c: fake_redis)
    try:
        assert cache.signals == [("message", "Redis connected"), ("ready",)]
        assert cache.get_stats().failbacks == 0
    finally:
        cache.close()


def test_initial_connection_failure_is_not_announced(tmp_path: Path, fake_redis, redis_config: RedisConfig) -> None:
    fake_redis.fail = True
    config = CacheConfig(directory=DirectoryConfig(path=str(tmp_path)), redis=redis_config)
    cache = RecordingCache(config, redis_client_factory=lambda c: fake_redis)
    try:
        assert "signals" not in cache.__dict__
    finally:
        cache.close()
