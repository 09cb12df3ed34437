"""Map request targets onto files inside the configured static directory."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import unquote

from config import ServerConfig
from content_types import classify

_EXTENSION_RE = re.compile(r"\.([^./]+)$")
_SOURCE_MAP_RE = re.compile(r"\.([^./]+)\.map$")


class PathTraversalError(ValueError):
    """Raised when a request target resolves outside the static root."""

    def __init__(self, raw_target: str, candidate: Path) -> None:
        super().__init__(f"Request target escapes static root: {raw_target}")
        self.raw_target = raw_target
        self.candidate = candidate


@dataclass(frozen=True, slots=True)
class ResolvedRequest:
    raw_target: str
    query_stripped_target: str
    file_extension: str
    secondary_extension: str
    content_type: str
    filesystem_path: Path
    is_index: bool


def strip_query(target: str) -> str:
    """Drop the query string (and any fragment) from a request target."""
    for separator in ("?", "#"):
        target = target.split(separator, 1)[0]
    return target


def detect_extensions(target: str) -> tuple[str, str]:
    """Return (extension, secondary_extension) for a query-stripped target.

    The secondary extension is only filled for source maps, e.g.
    ``/app.js.map`` gives ``("map", "js")``.
    """
    matched = _EXTENSION_RE.search(target)
    if matched is None:
        return "", ""

    extension = matched.group(1)
    if extension != "map":
        return extension, ""

    source_matched = _SOURCE_MAP_RE.search(target)
    return extension, source_matched.group(1) if source_matched else ""


def resolve_target(raw_target: str, config: ServerConfig) -> ResolvedRequest:
    stripped = unquote(strip_query(raw_target))
    extension, secondary = detect_extensions(stripped)

    is_index = not extension
    route = config.index_file if is_index else stripped
    route = route.lstrip("/")

    static_root = config.static_root
    if "\x00" in route:
        raise PathTraversalError(raw_target, static_root)

    candidate = _resolve_candidate(static_root / route)
    try:
        candidate.relative_to(static_root)
    except ValueError as exc:
        raise PathTraversalError(raw_target, candidate) from exc

    return ResolvedRequest(
        raw_target=raw_target,
        query_stripped_target=stripped,
        file_extension=extension,
        secondary_extension=secondary,
        content_type=classify(extension, secondary),
        filesystem_path=candidate,
        is_index=is_index,
    )


def _resolve_candidate(path: Path) -> Path:
    """Resolve symlinks; fall back to a lexical normalization when that fails.

    Symlink loops and over-long names cannot be resolved. The lexical path still
    gets the containment check, and opening it later fails with ``OSError``.
    """
    try:
        return path.resolve()
    except (OSError, RuntimeError):
        return Path(os.path.normpath(path))
