from __future__ import annotations

import os
from pathlib import Path
from typing import List, Optional, Union
from urllib.parse import quote, unquote

PathLike = Union[str, "os.PathLike[str]"]


def encode_segment(segment: str) -> str:
    """Percent-encode ``segment`` so it is a single, harmless path component.

    Separators and other reserved characters are escaped, and the ``.`` and
    ``..`` components are spelled out so they never address a parent.
    """
    encoded = quote(segment, safe="")
    if encoded in (".", ".."):
        encoded = encoded.replace(".", "%2E")
    return encoded


def decode_segment(segment: str) -> str:
    return unquote(segment)


def normalize_extension(extension: Optional[str]) -> str:
    """Return ``extension`` with a leading dot, or an empty string."""
    if not extension:
        return ""
    return extension if extension.startswith(".") else f".{extension}"


def key_chunks(key: str, chunk_size: int) -> List[str]:
    """Split ``key`` into consecutive pieces of ``chunk_size`` characters.

    The final piece may be shorter. A chunk size of 0 yields no pieces.
    """
    if chunk_size < 0:
        raise ValueError(f"chunk_size must be >= 0, got {chunk_size}")
    if chunk_size == 0:
        return []
    return [key[i:i + chunk_size] for i in range(0, len(key), chunk_size)]


def cache_path(
    key: str,
    directory: PathLike,
    chunk_size: int = 0,
    extension: Optional[str] = "",
    create: bool = False,
) -> Path:
    """Map a cache key onto a file path below ``directory``.

    With ``chunk_size > 0`` every chunk of the key becomes one directory
    level, so a directory never holds more than ``alphabet ** chunk_size``
    entries. The file name is always the full key plus ``extension``.
    Every component is percent-encoded (see ``encode_segment``), so keys may
    contain separators or ``..`` without leaving ``directory``.

    Example:
        >>> cache_path("1073ab6c", "/tmp/cache", chunk_size=4, extension="json")
        PosixPath('/tmp/cache/1073/ab6c/1073ab6c.json')

    Args:
        key: Cache key
        directory: Base directory of the store
        chunk_size: Length of each directory level, 0 for a flat layout
        extension: File extension, with or without the leading dot
        create: Create the parent directories if they are missing

    Returns:
        Absolute path of the cache file
    """
    folder = Path(directory, *map(encode_segment, key_chunks(key, chunk_size))).resolve()

    if create:
        # exist_ok covers concurrent writers creating the same levels
        folder.mkdir(parents=True, exist_ok=True)

    return folder / f"{encode_segment(key)}{normalize_extension(extension)}"
