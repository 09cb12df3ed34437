"""Unit tests for request framing over buffered bytes."""

import pytest

from config import MAX_BODY_BYTES, MAX_HEADER_BYTES
from socket_handler import (
    HeaderTooLargeError,
    MalformedRequestError,
    PayloadTooLargeError,
    extract_http_request_message,
)


def test_incomplete_head_needs_more_bytes() -> None:
    assert extract_http_request_message(b"GET / HTTP/1.1\r\nHost: local") is None


def test_pipelined_requests_are_split_in_order() -> None:
    first = b"GET /app.js HTTP/1.1\r\nHost: localhost\r\n\r\n"
    second = b"GET / HTTP/1.1\r\nHost: localhost\r\n\r\n"

    extracted = extract_http_request_message(first + second)

    assert extracted == (first, second)


def test_content_length_body_is_framed() -> None:
    raw = b"POST / HTTP/1.1\r\nHost: localhost\r\nContent-Length: 5\r\n\r\nhello"

    assert extract_http_request_message(raw[:-2]) is None
    assert extract_http_request_message(raw + b"GET") == (raw, b"GET")


def test_chunked_body_is_framed() -> None:
    raw = (
        b"POST / HTTP/1.1\r\nHost: localhost\r\nTransfer-Encoding: chunked\r\n\r\n"
        b"5\r\nhello\r\n0\r\n\r\n"
    )

    assert extract_http_request_message(raw) == (raw, b"")


def test_oversized_headers_are_rejected() -> None:
    raw = b"GET / HTTP/1.1\r\nX-Pad: " + b"a" * MAX_HEADER_BYTES

    with pytest.raises(HeaderTooLargeError):
        extract_http_request_message(raw)


def test_oversized_body_is_rejected() -> None:
    raw = (
        b"POST / HTTP/1.1\r\nHost: localhost\r\n"
        + f"Content-Length: {MAX_BODY_BYTES + 1}\r\n\r\n".encode("ascii")
    )

    with pytest.raises(PayloadTooLargeError):
        extract_http_request_message(raw)


def test_conflicting_framing_headers_are_rejected() -> None:
    raw = (
        b"POST / HTTP/1.1\r\nHost: localhost\r\n"
        b"Content-Length: 5\r\nTransfer-Encoding: chunked\r\n\r\n"
    )

    with pytest.raises(MalformedRequestError):
        extract_http_request_message(raw)
