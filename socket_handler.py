"""Request framing over buffered socket bytes."""

from __future__ import annotations

from dataclasses import dataclass

from config import MAX_BODY_BYTES, MAX_HEADER_BYTES, MAX_REQUEST_BYTES


class HTTPReadError(Exception):
    """Raised when a client request cannot be safely read from the socket."""


class MalformedRequestError(HTTPReadError):
    """Raised when socket bytes do not form a valid HTTP request."""


class HeaderTooLargeError(HTTPReadError):
    """Raised when HTTP headers exceed configured maximum size."""


class PayloadTooLargeError(HTTPReadError):
    """Raised when request body exceeds configured maximum size."""


@dataclass(slots=True)
class RequestHeadInfo:
    header_end_index: int
    expected_body_length: int
    uses_chunked_transfer: bool


def _framing_headers(header_bytes: bytes) -> dict[str, str]:
    framing: dict[str, str] = {}
    for line in header_bytes.decode("iso-8859-1").split("\r\n")[1:]:
        if not line:
            continue
        if ":" not in line:
            raise MalformedRequestError("Malformed header while reading request")
        name, value = line.split(":", 1)
        key = name.strip().lower()
        if key in {"content-length", "transfer-encoding"}:
            framing[key] = value.strip().lower()
    return framing


def _chunked_body_complete_length(encoded_body: bytes) -> int | None:
    position = 0
    decoded_size = 0
    while True:
        line_end = encoded_body.find(b"\r\n", position)
        if line_end == -1:
            return None
        size_token = encoded_body[position:line_end].split(b";", 1)[0].strip()
        try:
            chunk_size = int(size_token, 16)
        except ValueError as exc:
            raise MalformedRequestError("Malformed chunk size") from exc
        position = line_end + 2

        if chunk_size == 0:
            while True:
                trailer_end = encoded_body.find(b"\r\n", position)
                if trailer_end == -1:
                    return None
                if trailer_end == position:
                    return trailer_end + 2
                position = trailer_end + 2

        if len(encoded_body) < position + chunk_size + 2:
            return None
        decoded_size += chunk_size
        if decoded_size > MAX_BODY_BYTES:
            raise PayloadTooLargeError("Decoded chunked body exceeded MAX_BODY_BYTES")
        if encoded_body[position + chunk_size : position + chunk_size + 2] != b"\r\n":
            raise MalformedRequestError("Chunk missing CRLF terminator")
        position += chunk_size + 2


def inspect_http_request_head(buffer: bytes) -> RequestHeadInfo | None:
    """Inspect request headers from an in-memory buffer, if complete."""
    if len(buffer) > MAX_REQUEST_BYTES:
        raise PayloadTooLargeError("Request exceeded MAX_REQUEST_BYTES")

    header_end_index = buffer.find(b"\r\n\r\n")
    if header_end_index == -1:
        if len(buffer) > MAX_HEADER_BYTES:
            raise HeaderTooLargeError("Headers exceeded MAX_HEADER_BYTES")
        return None

    if header_end_index + 4 > MAX_HEADER_BYTES:
        raise HeaderTooLargeError("Headers exceeded MAX_HEADER_BYTES")

    framing = _framing_headers(bytes(buffer[:header_end_index]))
    uses_chunked_transfer = "chunked" in framing.get("transfer-encoding", "")
    if uses_chunked_transfer and "content-length" in framing:
        raise MalformedRequestError("Content-Length cannot be combined with chunked transfer")

    expected_body_length = 0
    if not uses_chunked_transfer and "content-length" in framing:
        try:
            expected_body_length = int(framing["content-length"])
        except ValueError as exc:
            raise MalformedRequestError("Invalid Content-Length header") from exc
        if expected_body_length < 0:
            raise MalformedRequestError("Negative Content-Length header")
        if expected_body_length > MAX_BODY_BYTES:
            raise PayloadTooLargeError("Body exceeded MAX_BODY_BYTES")

    return RequestHeadInfo(
        header_end_index=header_end_index,
        expected_body_length=expected_body_length,
        uses_chunked_transfer=uses_chunked_transfer,
    )


def extract_http_request_message(buffer: bytes) -> tuple[bytes, bytes] | None:
    """Split one complete request off the front of a buffer.

    Returns ``(request_bytes, leftover)`` or ``None`` while more bytes are needed.
    """
    head_info = inspect_http_request_head(buffer)
    if head_info is None:
        return None

    body_start = head_info.header_end_index + 4
    if head_info.uses_chunked_transfer:
        complete_body_length = _chunked_body_complete_length(buffer[body_start:])
        if complete_body_length is None:
            return None
        request_length = body_start + complete_body_length
    else:
        request_length = body_start + head_info.expected_body_length
        if len(buffer) < request_length:
            return None

    return buffer[:request_length], buffer[request_length:]
