from __future__ import annotations

import io
from collections import abc
from typing import BinaryIO, Iterable, Iterator, Union

Payload = Union[bytes, bytearray, memoryview, str, BinaryIO, Iterable[bytes]]

CHUNK_SIZE = 64 * 1024


class _IterStream(io.RawIOBase):
    """Readable raw stream over an iterable of byte chunks."""

    def __init__(self, chunks: Iterable[bytes]) -> None:
        self._chunks: Iterator[bytes] = iter(chunks)
        self._pending = b""

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:  # type: ignore[no-untyped-def]
        while not self._pending:
            try:
                self._pending = bytes(next(self._chunks))
            except StopIteration:
                return 0
        size = min(len(buffer), len(self._pending))
        buffer[:size] = self._pending[:size]
        self._pending = self._pending[size:]
        return size


def as_stream(data: Payload) -> BinaryIO:
    """Adapt an in-memory blob or a stream into a readable binary stream.

    Strings are encoded as UTF-8. Objects with a ``read`` method are returned
    unchanged, anything else iterable is treated as a sequence of byte chunks.
    """
    if isinstance(data, str):
        return io.BytesIO(data.encode("utf-8"))
    if isinstance(data, (bytes, bytearray, memoryview)):
        return io.BytesIO(bytes(data))
    if hasattr(data, "read"):
        return data  # type: ignore[return-value]
    if isinstance(data, abc.Iterable):
        return io.BufferedReader(_IterStream(data))  # type: ignore[return-value]
    raise TypeError(f"Unsupported payload type: {type(data).__name__}")


def iter_chunks(stream: BinaryIO, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
    """Yield successive non-empty chunks read from ``stream``."""
    while True:
        chunk = stream.read(chunk_size)
        if not chunk:
            return
        if isinstance(chunk, str):
            chunk = chunk.encode("utf-8")
        yield chunk


def read_all(data: Payload) -> bytes:
    """Buffer a whole payload into memory."""
    if isinstance(data, (bytes, bytearray, memoryview)):
        return bytes(data)
    return b"".join(iter_chunks(as_stream(data)))
