from __future__ import annotations

from typing import Any, BinaryIO, Optional, Protocol

from ..streams import Payload


class CacheBackend(Protocol):
    """Interface for cache backends."""

    def get(self, key: str, ttl: Optional[int] = None) -> BinaryIO:
        """Open a readable stream over the payload stored for ``key``.

        Raises KeyNotFoundError when absent and KeyExpiredError when stale.
        """
        ...

    def set(
        self,
        key: str,
        data: Payload,
        ttl: Optional[int] = None,
        metadata: Any = None,
    ) -> None:
        """Store ``data`` under ``key``, replacing any previous payload."""
        ...

    def flush(self, pattern: Optional[str] = None) -> int:
        """Remove every key matching ``pattern`` and its metadata."""
        ...

    def get_metadata(self, key: str) -> Any:
        """Return the metadata document for ``key``, or None."""
        ...

    def close(self) -> None:
        """Release timers and connections held by the backend."""
        ...
