"""Backend initialization."""
from .base import CacheBackend
from .file import FileCacheBackend
from .redis import RedisCacheBackend

__all__ = [
    "CacheBackend",
    "FileCacheBackend",
    "RedisCacheBackend",
]
