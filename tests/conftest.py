from __future__ import annotations

import fnmatch
from typing import Any, Dict, List, Optional, Tuple

import pytest
import redis

from blobcache import RedisConfig


def _key(key: Any) -> str:
    return key.decode("utf-8") if isinstance(key, bytes) else key


class DummyNode:
    def __init__(self, name: str) -> None:
        self.name = name


class DummyPipeline:
    def __init__(self, client: "FakeRedis") -> None:
        self.client = client
        self.commands: List[Tuple[str, tuple]] = []

    def rename(self, src: str, dst: str) -> None:
        self.commands.append(("rename", (src, dst)))

    def expire(self, key: str, seconds: int) -> None:
        self.commands.append(("expire", (key, seconds)))

    def persist(self, key: str) -> None:
        self.commands.append(("persist", (key,)))

    def execute(self) -> List[Any]:
        return [getattr(self.client, name)(*args) for name, args in self.commands]


class FakeRedis:
    """In-memory stand-in for the subset of redis-py used by the cache."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.store: Dict[str, bytes] = {}
        self.ttls: Dict[str, int] = {}
        self.nodes: List[str] = ["127.0.0.1:7000", "127.0.0.1:7001"]
        self.pings = 0
        self.closed = 0

    def _check(self) -> None:
        if self.fail:
            raise redis.exceptions.ConnectionError("Connection refused")

    def ping(self) -> bool:
        self.pings += 1
        self._check()
        return True

    def exists(self, key: str) -> int:
        self._check()
        return int(_key(key) in self.store)

    def get(self, key: str) -> Optional[bytes]:
        self._check()
        return self.store.get(_key(key))

    def getrange(self, key: str, start: int, end: int) -> bytes:
        self._check()
        return self.store.get(_key(key), b"")[start:end + 1]

    def append(self, key: str, value: bytes) -> int:
        self._check()
        key = _key(key)
        self.store[key] = self.store.get(key, b"") + value
        return len(self.store[key])

    def set(self, key: str, value: bytes, ex: Optional[int] = None) -> bool:
        self._check()
        key = _key(key)
        self.store[key] = bytes(value)
        if ex:
            self.ttls[key] = ex
        else:
            self.ttls.pop(key, None)
        return True

    def expire(self, key: str, seconds: int) -> bool:
        self._check()
        self.ttls[_key(key)] = seconds
        return True

    def persist(self, key: str) -> bool:
        self._check()
        return self.ttls.pop(_key(key), None) is not None

    def rename(self, src: str, dst: str) -> bool:
        self._check()
        src, dst = _key(src), _key(dst)
        if src not in self.store:
            raise redis.exceptions.ResponseError("no such key")
        self.store[dst] = self.store.pop(src)
        self.ttls.pop(dst, None)
        if src in self.ttls:
            self.ttls[dst] = self.ttls.pop(src)
        return True

    def delete(self, *keys: Any) -> int:
        self._check()
        removed = 0
        for key in map(_key, keys):
            if self.store.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    def scan_iter(self, match: str = "*", count: int = 10):
        self._check()
        for key in list(self.store):
            if fnmatch.fnmatchcase(key, match):
                yield key.encode("utf-8")

    def pipeline(self, transaction: bool = True) -> DummyPipeline:
        return DummyPipeline(self)

    def get_nodes(self) -> List[DummyNode]:
        self._check()
        return [DummyNode(name) for name in self.nodes]

    def close(self) -> None:
        self.closed += 1


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def redis_config() -> RedisConfig:
    # Slow retries keep reconnection timers out of the way unless a test waits for them
    return RedisConfig(
        enabled=True,
        base_retry_delay=5.0,
        max_retry_delay=10.0,
        max_retry_attempts=10,
        failure_cooldown=60.0,
    )
