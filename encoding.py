"""Content-encoding negotiation and streaming compressors."""

from __future__ import annotations

import zlib
from collections.abc import Iterator
from typing import BinaryIO

from config import READ_CHUNK_SIZE

COMPRESSION_LEVEL: int = 6

# gzip uses the gzip container, deflate the zlib container browsers expect.
_WBITS: dict[str, int] = {
    "gzip": zlib.MAX_WBITS | 16,
    "deflate": zlib.MAX_WBITS,
}


def parse_accept_encoding(header_value: str | None) -> set[str]:
    """Return the lowercase codings a client advertises, ignoring q=0 entries."""
    accepted: set[str] = set()
    for item in (header_value or "").split(","):
        token, _sep, params = item.partition(";")
        coding = token.strip().lower()
        if not coding:
            continue
        if _has_zero_quality(params):
            continue
        accepted.add(coding)
    return accepted


def _has_zero_quality(params: str) -> bool:
    for param in params.split(";"):
        name, _sep, value = param.partition("=")
        if name.strip().lower() != "q":
            continue
        try:
            return float(value.strip()) == 0
        except ValueError:
            return False
    return False


def negotiate_encoding(client_header: str | None, server_encoding: str | None) -> str | None:
    """Pick the server's coding only when the client advertises that exact coding."""
    if not server_encoding or server_encoding not in _WBITS:
        return None
    if server_encoding in parse_accept_encoding(client_header):
        return server_encoding
    return None


class CompressedFileStream:
    """Iterator compressing an open file lazily, one read chunk at a time.

    Nothing is read until the consumer asks for the next piece, so a slow
    socket holds back file reads. ``close()`` releases the file at any point.
    """

    def __init__(
        self,
        file_obj: BinaryIO,
        encoding: str,
        *,
        chunk_size: int = READ_CHUNK_SIZE,
    ) -> None:
        self._file_obj = file_obj
        self._chunk_size = chunk_size
        self._compressor = zlib.compressobj(COMPRESSION_LEVEL, zlib.DEFLATED, _WBITS[encoding])
        self._finished = False

    def __iter__(self) -> Iterator[bytes]:
        return self

    def __next__(self) -> bytes:
        if self._finished:
            raise StopIteration

        while True:
            chunk = self._file_obj.read(self._chunk_size)
            if not chunk:
                self._finished = True
                tail = self._compressor.flush()
                self.close()
                if tail:
                    return tail
                raise StopIteration

            compressed = self._compressor.compress(chunk)
            if compressed:
                return compressed

    def close(self) -> None:
        self._finished = True
        self._file_obj.close()
