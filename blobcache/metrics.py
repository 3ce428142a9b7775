from __future__ import annotations

import threading
from typing import Any, Dict

from prometheus_client import Counter, Histogram


class CacheMetrics:
    """Prometheus metrics for cache operations."""

    # Collectors register once per process; instances share them by label
    _collectors: Dict[str, Any] = {}
    _collectors_lock = threading.Lock()

    def __init__(self, namespace: str = "default"):
        self.namespace = namespace

        with self._collectors_lock:
            if not self._collectors:
                self._collectors.update(self._create_collectors())

        self.hits = self._collectors['hits']
        self.misses = self._collectors['misses']
        self.writes = self._collectors['writes']
        self.flushes = self._collectors['flushes']
        self.switches = self._collectors['switches']
        self.errors = self._collectors['errors']
        self.latency = self._collectors['latency']

    @staticmethod
    def _create_collectors() -> Dict[str, Any]:
        return {
            'hits': Counter(
                'blobcache_hits_total',
                'Total cache hits',
                ['namespace', 'backend']
            ),
            'misses': Counter(
                'blobcache_misses_total',
                'Total cache misses',
                ['namespace', 'backend', 'reason']
            ),
            'writes': Counter(
                'blobcache_writes_total',
                'Total cache writes',
                ['namespace', 'backend']
            ),
            'flushes': Counter(
                'blobcache_flushed_keys_total',
                'Total keys removed by flush',
                ['namespace', 'backend']
            ),
            'switches': Counter(
                'blobcache_backend_switches_total',
                'Total active backend switches',
                ['namespace', 'direction']
            ),
            'errors': Counter(
                'blobcache_errors_total',
                'Total cache errors',
                ['namespace', 'type']
            ),
            'latency': Histogram(
                'blobcache_latency_seconds',
                'Cache operation latency',
                ['namespace', 'operation']
            ),
        }

    def record_hit(self, backend: str) -> None:
        self.hits.labels(namespace=self.namespace, backend=backend).inc()

    def record_miss(self, backend: str, reason: str) -> None:
        self.misses.labels(namespace=self.namespace, backend=backend, reason=reason).inc()

    def record_write(self, backend: str) -> None:
        self.writes.labels(namespace=self.namespace, backend=backend).inc()

    def record_flush(self, backend: str, removed: int) -> None:
        self.flushes.labels(namespace=self.namespace, backend=backend).inc(removed)

    def record_switch(self, direction: str) -> None:
        self.switches.labels(namespace=self.namespace, direction=direction).inc()

    def record_error(self, error_type: str) -> None:
        self.errors.labels(namespace=self.namespace, type=error_type).inc()

    def observe_latency(self, operation: str, seconds: float) -> None:
        self.latency.labels(namespace=self.namespace, operation=operation).observe(seconds)
