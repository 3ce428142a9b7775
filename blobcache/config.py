from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Mapping, Optional

from .circuit_breaker import RetryPolicy

# Accepted spellings of option names used by existing configuration files
_ALIASES = {
    "directoryChunkSize": "directory_chunk_size",
    "autoFlush": "auto_flush",
    "autoFlushInterval": "auto_flush_interval",
    "scaleReads": "scale_reads",
    "socketConnectTimeout": "socket_connect_timeout",
    "enableLogging": "enable_logging",
}

_SCALE_READS = {"master", "slave", "replica", "all"}


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() == "true"


@dataclass
class DirectoryConfig:
    enabled: bool = _env_bool("BLOBCACHE_DIRECTORY_ENABLED", "false")
    path: str = os.environ.get("BLOBCACHE_DIRECTORY_PATH", "cache")
    extension: str = os.environ.get("BLOBCACHE_DIRECTORY_EXTENSION", "")
    directory_chunk_size: int = int(os.environ.get("BLOBCACHE_DIRECTORY_CHUNK_SIZE", "0"))
    ttl: Optional[int] = None
    auto_flush: bool = _env_bool("BLOBCACHE_AUTO_FLUSH", "false")
    auto_flush_interval: int = int(os.environ.get("BLOBCACHE_AUTO_FLUSH_INTERVAL", "300"))

    def __post_init__(self) -> None:
        if not self.path:
            raise ValueError("directory path must not be empty")

        if self.directory_chunk_size < 0:
            raise ValueError(f"directory_chunk_size must be >= 0, got {self.directory_chunk_size}")

        if self.ttl is not None and self.ttl <= 0:
            # 0 would expire every file as soon as it is written
            raise ValueError(f"directory ttl must be > 0, got {self.ttl}")

        if self.auto_flush_interval <= 0:
            raise ValueError(f"auto_flush_interval must be > 0, got {self.auto_flush_interval}")


@dataclass
class RedisConfig:
    enabled: bool = _env_bool("BLOBCACHE_REDIS_ENABLED", "false")
    host: str = os.environ.get("BLOBCACHE_REDIS_HOST", "127.0.0.1")
    port: int = int(os.environ.get("BLOBCACHE_REDIS_PORT", "6379"))
    cluster: bool = _env_bool("BLOBCACHE_REDIS_CLUSTER", "false")
    hosts: List[Dict[str, Any]] = field(default_factory=list)
    scale_reads: str = "master"
    ttl: Optional[int] = None
    socket_connect_timeout: float = 1.0

    # Reconnection backoff and circuit breaker
    base_retry_delay: float = 1.0
    max_retry_delay: float = 10.0
    max_retry_attempts: int = 10
    failure_cooldown: float = 60.0

    scan_count: int = 100
    read_chunk_size: int = 16 * 1024

    def __post_init__(self) -> None:
        if not 0 < self.port < 65536:
            raise ValueError(f"port must be between 1 and 65535, got {self.port}")

        if self.scale_reads not in _SCALE_READS:
            valid = ", ".join(sorted(_SCALE_READS))
            raise ValueError(f"Invalid scale_reads '{self.scale_reads}'. Valid options: {valid}")

        if self.ttl is not None and self.ttl < 0:
            raise ValueError(f"ttl must be >= 0, got {self.ttl}")

        if self.scan_count < 1:
            raise ValueError(f"scan_count must be >= 1")

        if self.read_chunk_size < 1:
            raise ValueError(f"read_chunk_size must be >= 1")

        # Fails fast on inconsistent backoff settings
        self.retry_policy()

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            base_delay=self.base_retry_delay,
            max_delay=self.max_retry_delay,
            max_attempts=self.max_retry_attempts,
            cooldown=self.failure_cooldown,
        )

    def startup_nodes(self) -> List[Dict[str, Any]]:
        """Cluster seed nodes, defaulting to the single host/port pair."""
        if self.hosts:
            return [{"host": h["host"], "port": int(h["port"])} for h in self.hosts]
        return [{"host": self.host, "port": self.port}]


@dataclass
class CacheConfig:
    """
    Cache configuration.

    ``ttl`` is the default for both backends unless a section sets its own.
    The two backends read it differently:

    - directory: maximum file age checked at read time; must be > 0
    - redis: native expiry set on write; 0 means the entry never expires

    A top-level ``ttl`` of 0 needs a positive directory ``ttl``, as the
    filesystem backend also serves as the Redis fallback.
    """

    ttl: int = int(os.environ.get("BLOBCACHE_TTL", "3600"))
    directory: DirectoryConfig = field(default_factory=DirectoryConfig)
    redis: RedisConfig = field(default_factory=RedisConfig)
    namespace: str = os.environ.get("BLOBCACHE_NAMESPACE", "default")
    enable_logging: bool = _env_bool("BLOBCACHE_LOGGING", "false")

    def __post_init__(self) -> None:
        if self.ttl < 0:
            raise ValueError(f"ttl must be >= 0, got {self.ttl}")

        if self.directory_ttl() == 0:
            raise ValueError("ttl 0 disables expiry on Redis only; set a positive directory ttl")

    @property
    def enabled(self) -> bool:
        return self.directory.enabled or self.redis.enabled

    def directory_ttl(self) -> int:
        return self.directory.ttl if self.directory.ttl is not None else self.ttl

    def redis_ttl(self) -> int:
        return self.redis.ttl if self.redis.ttl is not None else self.ttl

    @classmethod
    def from_dict(cls, options: Optional[Mapping[str, Any]] = None) -> "CacheConfig":
        """
        Build a configuration from a nested options mapping.

        Example:
            CacheConfig.from_dict({
                "ttl": 3600,
                "directory": {"enabled": False, "path": "./cache/", "extension": "json"},
                "redis": {"enabled": True, "host": "127.0.0.1", "port": 6379},
            })

        Unknown and None-valued options are ignored; camelCase option names
        are accepted alongside snake_case.
        """
        options = _normalize(options or {})
        directory = _build(DirectoryConfig, options.pop("directory", None) or {})
        redis = _build(RedisConfig, options.pop("redis", None) or {})
        return _build(cls, options, directory=directory, redis=redis)


def _normalize(options: Mapping[str, Any]) -> Dict[str, Any]:
    return {_ALIASES.get(k, k): v for k, v in options.items() if v is not None}


def _build(config_cls: Any, options: Mapping[str, Any], **extra: Any) -> Any:
    names = {f.name for f in fields(config_cls)}
    kwargs = {k: v for k, v in _normalize(options).items() if k in names}
    kwargs.update(extra)
    return config_cls(**kwargs)
