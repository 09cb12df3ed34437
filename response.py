"""HTTP response model and head serializer."""

from __future__ import annotations

import os
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from email.utils import formatdate
from typing import BinaryIO

from config import SERVER_NAME

REASON_PHRASES: dict[int, str] = {
    200: "OK",
    400: "Bad Request",
    403: "Forbidden",
    404: "Not Found",
    405: "Method Not Allowed",
    413: "Payload Too Large",
    414: "URI Too Long",
    431: "Request Header Fields Too Large",
    500: "Internal Server Error",
    501: "Not Implemented",
    505: "HTTP Version Not Supported",
}


@dataclass(slots=True)
class PreparedResponse:
    head: bytes
    body: bytes | None = None
    stream: Iterator[bytes] | None = None
    file_obj: BinaryIO | None = None
    file_size: int = 0


@dataclass(slots=True)
class HTTPResponse:
    status_code: int
    reason_phrase: str | None = None
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes | str = b""
    stream: Iterable[bytes] | None = None
    file_obj: BinaryIO | None = None
    content_length_override: int | None = None
    head_only: bool = False

    def __post_init__(self) -> None:
        if isinstance(self.body, str):
            self.body = self.body.encode("utf-8")
        if self.stream is not None and self.file_obj is not None:
            raise ValueError("Response cannot set both stream and file_obj")
        if (self.stream is not None or self.file_obj is not None) and self.body:
            raise ValueError("Response cannot combine a body with stream or file_obj")

    def close(self) -> None:
        """Release the open file or stream backing this response, if any."""
        if self.file_obj is not None:
            self.file_obj.close()
        close_stream = getattr(self.stream, "close", None)
        if close_stream is not None:
            close_stream()


def prepare_response(response: HTTPResponse) -> PreparedResponse:
    reason = response.reason_phrase or REASON_PHRASES.get(response.status_code, "Unknown")
    normalized_headers = dict(response.headers)
    normalized_headers.setdefault(
        "Date",
        formatdate(timeval=None, localtime=False, usegmt=True),
    )
    normalized_headers.setdefault("Server", SERVER_NAME)
    if response.body:
        normalized_headers.setdefault("Content-Type", "text/plain; charset=utf-8")

    body: bytes | None = None
    stream: Iterator[bytes] | None = None
    file_obj: BinaryIO | None = None
    file_size = 0
    if response.stream is not None:
        normalized_headers.pop("Content-Length", None)
        normalized_headers["Transfer-Encoding"] = "chunked"
        stream = iter(response.stream)
    elif response.file_obj is not None:
        file_obj = response.file_obj
        file_size = os.fstat(file_obj.fileno()).st_size
        content_length = response.content_length_override
        if content_length is None:
            content_length = file_size
        normalized_headers["Content-Length"] = str(content_length)
    else:
        body = response.body
        content_length = response.content_length_override
        if content_length is None:
            content_length = len(body)
        normalized_headers["Content-Length"] = str(content_length)

    header_lines = [f"HTTP/1.1 {response.status_code} {reason}"]
    header_lines.extend(
        f"{key}: {_strip_line_breaks(str(value))}" for key, value in normalized_headers.items()
    )
    head = "\r\n".join(header_lines).encode("iso-8859-1", errors="replace") + b"\r\n\r\n"
    if response.head_only:
        response.close()
        return PreparedResponse(head=head)
    return PreparedResponse(head=head, body=body, stream=stream, file_obj=file_obj, file_size=file_size)


def _strip_line_breaks(value: str) -> str:
    # Decoded request paths end up in X-Error; keep them on one header line.
    return value.replace("\r", " ").replace("\n", " ")


def iter_chunked_encoded(chunks: Iterable[bytes]) -> Iterator[bytes]:
    for chunk in chunks:
        if not chunk:
            continue
        yield f"{len(chunk):X}\r\n".encode("ascii")
        yield chunk
        yield b"\r\n"
    yield b"0\r\n\r\n"
