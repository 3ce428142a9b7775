from __future__ import annotations

import logging
from typing import Any

import msgpack

from .exceptions import MetadataCorruptError

logger = logging.getLogger(__name__)

METADATA_SENTINEL = "___"
METADATA_EXTENSION = ".meta"


def metadata_key(key: str) -> str:
    """Derive the side-table key holding the metadata for ``key``."""
    return f"{METADATA_SENTINEL}{key}{METADATA_SENTINEL}"


def is_metadata_key(name: str) -> bool:
    return (
        len(name) > 2 * len(METADATA_SENTINEL)
        and name.startswith(METADATA_SENTINEL)
        and name.endswith(METADATA_SENTINEL)
    )


def pack_metadata(document: Any) -> bytes:
    """Serialize a metadata document into a compact binary blob."""
    return msgpack.packb(document, use_bin_type=True)


def unpack_metadata(key: str, data: bytes) -> Any:
    """Reconstruct a metadata document stored for ``key``.

    Raises:
        MetadataCorruptError: If the blob cannot be decoded. Corruption is
            never reported as absence.
    """
    try:
        return msgpack.unpackb(data, raw=False)
    except Exception as e:
        logger.error(f"Corrupt metadata for key {key}: {e}")
        raise MetadataCorruptError(key, e) from e
