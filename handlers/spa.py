"""Single-page application static file handler."""

from __future__ import annotations

import logging
import os
import stat
from pathlib import Path

from config import ServerConfig
from encoding import CompressedFileStream, negotiate_encoding
from request import HTTPRequest
from resolver import PathTraversalError, resolve_target
from response import HTTPResponse

logger = logging.getLogger(__name__)


def serve_spa(request: HTTPRequest, config: ServerConfig) -> HTTPResponse:
    """Resolve, classify and stream one static asset for a GET or HEAD request."""
    try:
        resolved = resolve_target(request.raw_target, config)
    except PathTraversalError as exc:
        logger.info("FORBIDDEN: %r resolves outside %s", exc.raw_target, config.static_root)
        return HTTPResponse(
            status_code=403,
            headers={"X-Error": f'FORBIDDEN: "{exc.raw_target}"'},
        )

    if config.debug_logging:
        logger.debug(
            "target=%s route=%s ext=%r secondary=%r content_type=%s file=%s",
            resolved.raw_target,
            config.index_file if resolved.is_index else resolved.query_stripped_target,
            resolved.file_extension,
            resolved.secondary_extension,
            resolved.content_type,
            resolved.filesystem_path,
        )

    file_path = resolved.filesystem_path
    try:
        file_obj = file_path.open("rb")
    except OSError:
        return _not_found(file_path)

    file_stat = os.fstat(file_obj.fileno())
    if not stat.S_ISREG(file_stat.st_mode):
        file_obj.close()
        return _not_found(file_path)

    headers = dict(config.extra_headers)
    headers["Content-Type"] = resolved.content_type

    chosen_encoding = negotiate_encoding(
        request.headers.get("accept-encoding", ""),
        config.accept_encoding,
    )
    if chosen_encoding is not None:
        headers["Content-Encoding"] = chosen_encoding

    if request.method == "HEAD":
        file_obj.close()
        if chosen_encoding is not None:
            return HTTPResponse(status_code=200, headers=headers, stream=(), head_only=True)
        return HTTPResponse(
            status_code=200,
            headers=headers,
            content_length_override=file_stat.st_size,
            head_only=True,
        )

    if chosen_encoding is None:
        return HTTPResponse(status_code=200, headers=headers, file_obj=file_obj)
    return HTTPResponse(
        status_code=200,
        headers=headers,
        stream=CompressedFileStream(file_obj, chosen_encoding),
    )


def _not_found(file_path: Path) -> HTTPResponse:
    message = f'NOT FOUND: "{file_path}"'
    logger.info("%s", message)
    return HTTPResponse(status_code=404, headers={"X-Error": message})
