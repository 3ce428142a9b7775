from .backends.base import CacheBackend
from .backends.file import FileCacheBackend
from .backends.redis import ConnectionState, RedisCacheBackend
from .cache import Cache
from .circuit_breaker import CircuitBreaker, RetryPolicy
from .config import CacheConfig, DirectoryConfig, RedisConfig
from .events import FailedOperation, Observable
from .exceptions import (
    CacheError,
    CacheIOError,
    CacheMissError,
    ConnectionUnavailableError,
    KeyExpiredError,
    KeyNotFoundError,
    MetadataCorruptError,
)
from .metrics import CacheMetrics
from .paths import cache_path
from .patterns import KeyMatcher
from .stats import CacheStats

__all__ = [
    "Cache",
    "CacheBackend",
    "FileCacheBackend",
    "RedisCacheBackend",
    "ConnectionState",
    "CacheConfig",
    "DirectoryConfig",
    "RedisConfig",
    "CacheStats",
    "CacheMetrics",
    "KeyMatcher",
    "CircuitBreaker",
    "RetryPolicy",
    "FailedOperation",
    "Observable",
    "cache_path",
    "CacheError",
    "CacheMissError",
    "KeyNotFoundError",
    "KeyExpiredError",
    "ConnectionUnavailableError",
    "CacheIOError",
    "MetadataCorruptError",
]

__version__ = "1.0.0"
