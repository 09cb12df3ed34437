"""HTTP request model and parser."""

from __future__ import annotations

from dataclasses import dataclass, field
from urllib.parse import urlsplit

from config import MAX_TARGET_LENGTH

ALLOWED_HTTP_VERSIONS = {"HTTP/1.1", "HTTP/1.0"}
KNOWN_METHODS = {
    "GET",
    "HEAD",
    "POST",
    "PUT",
    "DELETE",
    "OPTIONS",
    "PATCH",
    "TRACE",
    "CONNECT",
}


class HTTPRequestParseError(ValueError):
    """Request parse error carrying an HTTP status code."""

    def __init__(self, message: str, *, status_code: int = 400) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(slots=True)
class HTTPRequest:
    method: str
    http_version: str
    raw_target: str = "/"
    headers: dict[str, str] = field(default_factory=dict)
    keep_alive: bool = False

    @classmethod
    def from_bytes(cls, raw: bytes) -> "HTTPRequest":
        """Parse one framed HTTP request into a structured request object."""
        try:
            header_bytes, _body = raw.split(b"\r\n\r\n", 1)
        except ValueError as exc:
            raise HTTPRequestParseError("Missing CRLF CRLF request separator") from exc

        lines = header_bytes.decode("iso-8859-1").split("\r\n")
        if not lines or not lines[0]:
            raise HTTPRequestParseError("Missing request line")

        first_line_parts = lines[0].split(" ")
        if len(first_line_parts) != 3:
            raise HTTPRequestParseError("Invalid request line")

        method, target, http_version = first_line_parts
        if not method or not target or not http_version:
            raise HTTPRequestParseError("Request line contains empty tokens")

        normalized_method = method.upper()
        if normalized_method not in KNOWN_METHODS:
            raise HTTPRequestParseError("Method not implemented", status_code=501)

        if http_version not in ALLOWED_HTTP_VERSIONS:
            raise HTTPRequestParseError("Unsupported HTTP version", status_code=505)

        if len(target) > MAX_TARGET_LENGTH:
            raise HTTPRequestParseError("Request target too long", status_code=414)

        # Absolute-form targets ("http://host/app.js") are reduced to origin-form.
        if not target.startswith("/"):
            parsed_target = urlsplit(target)
            if not parsed_target.scheme:
                raise HTTPRequestParseError("Request target must be origin-form")
            target = parsed_target.path or "/"
            if parsed_target.query:
                target = f"{target}?{parsed_target.query}"

        headers: dict[str, str] = {}
        for line in lines[1:]:
            if not line:
                continue
            if ":" not in line:
                raise HTTPRequestParseError("Malformed header line")
            name, value = line.split(":", 1)
            header_name = name.strip().lower()
            if not header_name:
                raise HTTPRequestParseError("Header name cannot be empty")
            if header_name in headers and header_name == "accept-encoding":
                headers[header_name] = f"{headers[header_name]}, {value.strip()}"
                continue
            headers[header_name] = value.strip()

        if http_version == "HTTP/1.1" and "host" not in headers:
            raise HTTPRequestParseError("Host header required for HTTP/1.1")

        return cls(
            method=normalized_method,
            raw_target=target,
            http_version=http_version,
            headers=headers,
            keep_alive=_is_keep_alive(http_version, headers.get("connection", "")),
        )


def _is_keep_alive(http_version: str, connection_header: str) -> bool:
    token = connection_header.lower()
    if http_version == "HTTP/1.1":
        return "close" not in token
    if http_version == "HTTP/1.0":
        return "keep-alive" in token
    return False
