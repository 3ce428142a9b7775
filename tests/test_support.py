from __future__ import annotations

import io
from pathlib import Path
from typing import Any, List

import pytest
from prometheus_client import REGISTRY

from blobcache import Cache, CacheMetrics, FailedOperation, KeyMatcher, MetadataCorruptError, Observable
from blobcache.metadata import is_metadata_key, metadata_key, pack_metadata, unpack_metadata
from blobcache.streams import as_stream, iter_chunks, read_all


class DummyTarget:
    def __init__(self) -> None:
        self.calls: List[Any] = []

    def get(self, key: str, ttl: Any = None) -> str:
        self.calls.append((key, ttl))
        return f"value-{key}"

    def flush(self, pattern: Any = None) -> int:
        raise ValueError("boom")


def test_failed_operation_replays_once() -> None:
    target = DummyTarget()
    operation = FailedOperation("get", ("key1",), {"ttl": 5})

    operation.replay(target)
    operation.replay(target)

    assert operation.replayed
    assert operation.result() == "value-key1"
    assert target.calls == [("key1", 5)]


def test_failed_operation_keeps_error() -> None:
    operation = FailedOperation("flush", ("two",))
    operation.replay(DummyTarget())

    with pytest.raises(ValueError, match="boom"):
        operation.result()


def test_observable_isolates_subscribers() -> None:
    source = Observable()
    received: List[Any] = []

    def broken(*args: Any) -> None:
        raise RuntimeError("subscriber failure")

    source.subscribe("ready", broken)
    source.subscribe("ready", lambda *args: received.append(args))
    source.emit("ready", 1, 2)
    source.emit("other")

    assert received == [(1, 2)]

    source.unsubscribe("ready", broken)
    source.unsubscribe("ready", broken)
    source.emit("ready")
    assert received == [(1, 2), ()]


def test_key_matcher() -> None:
    assert KeyMatcher().matches("anything")
    assert KeyMatcher("").matches("anything")
    assert KeyMatcher("two").matches("keytwo")
    assert not KeyMatcher("^two").matches("keytwo")


def test_key_matcher_scan_glob() -> None:
    assert KeyMatcher().scan_glob() == "*"
    assert KeyMatcher("two").scan_glob() == "*two*"
    assert KeyMatcher("key[0-9]").scan_glob() == "*"


def test_as_stream_variants() -> None:
    assert as_stream("é").read() == "é".encode("utf-8")
    assert as_stream(bytearray(b"ab")).read() == b"ab"
    source = io.BytesIO(b"s")
    assert as_stream(source) is source
    assert as_stream([b"a", b"b"]).read() == b"ab"

    with pytest.raises(TypeError):
        as_stream(42)  # type: ignore[arg-type]


def test_iter_chunks_and_read_all() -> None:
    assert list(iter_chunks(io.BytesIO(b"abcde"), 2)) == [b"ab", b"cd", b"e"]
    assert list(iter_chunks(io.StringIO("hi"), 8)) == [b"hi"]
    assert read_all(memoryview(b"xyz")) == b"xyz"
    assert read_all(iter([b"1", b"2"])) == b"12"


def test_metadata_keys_and_codec() -> None:
    assert metadata_key("key1") == "___key1___"
    assert is_metadata_key("___key1___")
    assert not is_metadata_key("key1")
    assert not is_metadata_key("______")

    document = {"type": "image/png", "raw": b"\x00\x01", "n": [1, 2]}
    assert unpack_metadata("key1", pack_metadata(document)) == document

    with pytest.raises(MetadataCorruptError):
        unpack_metadata("key1", b"\xc1")


def test_metrics_recorded(tmp_path: Path) -> None:
    cache = Cache({"namespace": "metrics-test", "directory": {"enabled": True, "path": str(tmp_path)}})
    cache.set("key1", b"x")
    with cache.get("key1") as stream:
        stream.read()

    labels = {"namespace": "metrics-test", "backend": "directory"}
    assert REGISTRY.get_sample_value("blobcache_hits_total", labels) == 1.0
    assert REGISTRY.get_sample_value("blobcache_writes_total", labels) == 1.0

    # Collectors are shared between instances
    assert CacheMetrics("other").hits is cache.metrics.hits
