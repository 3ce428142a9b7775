from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field


@dataclass
class CacheStats:
    """Thread-safe cache statistics."""

    hits: int = 0
    misses: int = 0
    expired: int = 0
    errors: int = 0
    writes: int = 0
    flushes: int = 0
    flushed_keys: int = 0
    failovers: int = 0
    failbacks: int = 0
    start_time: float = field(default_factory=time.time)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def increment_hit(self) -> None:
        """Increment hit counter (thread-safe)."""
        with self._lock:
            self.hits += 1

    def increment_miss(self, expired: bool = False) -> None:
        """Increment miss counter; expired entries also count as misses."""
        with self._lock:
            self.misses += 1
            if expired:
                self.expired += 1

    def increment_error(self) -> None:
        with self._lock:
            self.errors += 1

    def increment_write(self) -> None:
        with self._lock:
            self.writes += 1

    def increment_flush(self, removed: int = 0) -> None:
        with self._lock:
            self.flushes += 1
            self.flushed_keys += removed

    def increment_failover(self) -> None:
        with self._lock:
            self.failovers += 1

    def increment_failback(self) -> None:
        with self._lock:
            self.failbacks += 1

    @property
    def total_reads(self) -> int:
        with self._lock:
            return self.hits + self.misses

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate."""
        with self._lock:
            total = self.hits + self.misses
            return self.hits / total if total > 0 else 0.0

    @property
    def uptime_seconds(self) -> float:
        """Get uptime in seconds."""
        return time.time() - self.start_time

    def reset(self) -> None:
        """Reset all statistics."""
        with self._lock:
            self.hits = 0
            self.misses = 0
            self.expired = 0
            self.errors = 0
            self.writes = 0
            self.flushes = 0
            self.flushed_keys = 0
            self.failovers = 0
            self.failbacks = 0
            self.start_time = time.time()

    def to_dict(self) -> dict:
        """Export statistics as dictionary."""
        with self._lock:
            total = self.hits + self.misses
            return {
                "hits": self.hits,
                "misses": self.misses,
                "expired": self.expired,
                "errors": self.errors,
                "writes": self.writes,
                "flushes": self.flushes,
                "flushed_keys": self.flushed_keys,
                "failovers": self.failovers,
                "failbacks": self.failbacks,
                "hit_rate": self.hits / total if total > 0 else 0.0,
                "uptime_seconds": self.uptime_seconds,
            }
