from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .events import FailedOperation


class CacheError(Exception):
    """Base class for all cache errors."""
    pass


class CacheMissError(CacheError):
    """Raised when a key cannot be served from the cache."""

    def __init__(self, key: str, message: str) -> None:
        super().__init__(message)
        self.key = key


class KeyNotFoundError(CacheMissError):
    """Raised when a key is absent or unreadable."""

    def __init__(self, key: str) -> None:
        super().__init__(key, "The specified key does not exist")


class KeyExpiredError(CacheMissError):
    """Raised when a key exists but is older than its TTL."""

    def __init__(self, key: str) -> None:
        super().__init__(key, "The specified key has expired")


class ConnectionUnavailableError(CacheError):
    """Raised when the remote backend is not ready to serve commands."""

    def __init__(self, message: str, operation: Optional["FailedOperation"] = None) -> None:
        super().__init__(message)
        self.operation = operation


class CacheIOError(CacheError):
    """Raised when an underlying write or delete fails."""
    pass


class MetadataCorruptError(CacheError):
    """Raised when a stored metadata document cannot be decoded."""

    def __init__(self, key: str, cause: Exception) -> None:
        super().__init__(f"Metadata for key {key!r} is corrupt: {cause}")
        self.key = key
