"""Configuration constants and the immutable server configuration."""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any

HOST: str = "127.0.0.1"
SERVER_NAME: str = "spa-server/1.0"
LOG_FORMAT: str = "plain"

READ_CHUNK_SIZE: int = 8192
WRITE_CHUNK_SIZE: int = 65_536
MAX_REQUEST_BYTES: int = 1_048_576
MAX_HEADER_BYTES: int = 16_384
MAX_BODY_BYTES: int = 524_288
MAX_TARGET_LENGTH: int = 8192
MAX_KEEPALIVE_REQUESTS: int = 100
LISTEN_BACKLOG: int = 128

SELECT_TIMEOUT_SECS: float = 0.2
IDLE_SWEEP_INTERVAL_SECS: float = 0.5

DEFAULT_TIMEOUT_MILLIS: int = 5 * 60 * 1000
DEFAULT_INDEX_FILE: str = "index.html"
DEFAULT_GRACE_PERIOD_MILLIS: int = 2100
SUPPORTED_ENCODINGS: tuple[str, ...] = ("gzip", "deflate")

_OPTION_ALIASES: dict[str, str] = {
    "port": "port",
    "staticDir": "static_dir",
    "timeoutMillis": "timeout_millis",
    "timeout": "timeout_millis",
    "indexFile": "index_file",
    "acceptEncoding": "accept_encoding",
    "extraHeaders": "extra_headers",
    "headers": "extra_headers",
    "debugLogging": "debug_logging",
    "debug": "debug_logging",
    "gracePeriodMillis": "grace_period_millis",
}


class ConfigurationError(ValueError):
    """Raised when server options are missing or invalid."""


@dataclass(frozen=True, slots=True)
class ServerConfig:
    port: int | None
    static_dir: str | None
    timeout_millis: int = DEFAULT_TIMEOUT_MILLIS
    index_file: str = DEFAULT_INDEX_FILE
    accept_encoding: str | None = ""
    extra_headers: Mapping[str, str] = field(default_factory=dict)
    debug_logging: bool = False
    grace_period_millis: int = DEFAULT_GRACE_PERIOD_MILLIS
    static_root: Path = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if isinstance(self.port, bool) or not isinstance(self.port, int) or not self.port:
            raise ConfigurationError("The server port is not defined.")
        if self.port < 0 or self.port > 65_535:
            raise ConfigurationError(f"Invalid server port: {self.port}")
        if not self.static_dir:
            raise ConfigurationError('Parameter "staticDir" is not defined.')

        _require_non_negative_int("timeout_millis", self.timeout_millis)
        _require_non_negative_int("grace_period_millis", self.grace_period_millis)

        if not isinstance(self.index_file, str) or not self.index_file:
            raise ConfigurationError("index_file must be a non-empty string")

        accept_encoding = (self.accept_encoding or "").strip().lower()
        if accept_encoding and accept_encoding not in SUPPORTED_ENCODINGS:
            raise ConfigurationError(
                f"accept_encoding must be one of {', '.join(SUPPORTED_ENCODINGS)} or empty"
            )

        headers = dict(self.extra_headers or {})
        for name, value in headers.items():
            _validate_header(name, value)

        object.__setattr__(self, "accept_encoding", accept_encoding)
        object.__setattr__(self, "extra_headers", MappingProxyType(headers))
        object.__setattr__(self, "debug_logging", bool(self.debug_logging))
        object.__setattr__(self, "static_root", (Path.cwd() / self.static_dir).resolve())

    @property
    def timeout_secs(self) -> float:
        return self.timeout_millis / 1000

    @property
    def grace_period_secs(self) -> float:
        return self.grace_period_millis / 1000

    @classmethod
    def from_mapping(cls, options: Mapping[str, Any] | None) -> "ServerConfig":
        """Build a config from camelCase (or snake_case) option keys."""
        if not options:
            raise ConfigurationError("HTTP options are not defined.")

        kwargs = normalize_options(options)
        kwargs.setdefault("port", None)
        kwargs.setdefault("static_dir", None)
        return cls(**kwargs)

    @classmethod
    def from_file(cls, path: str | Path) -> "ServerConfig":
        return cls.from_mapping(load_options_file(path))


def normalize_options(options: Mapping[str, Any]) -> dict[str, Any]:
    """Map option keys onto ``ServerConfig`` field names, dropping ``None`` values."""
    normalized: dict[str, Any] = {}
    for key, value in options.items():
        field_name = _OPTION_ALIASES.get(key)
        if field_name is None and key in _OPTION_ALIASES.values():
            field_name = key
        if field_name is None:
            raise ConfigurationError(f"Unknown server option: {key}")
        if value is None:
            continue
        normalized[field_name] = value
    return normalized


def load_options_file(path: str | Path) -> dict[str, Any]:
    try:
        options = json.loads(Path(path).read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigurationError(f"Cannot read config file {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Config file {path} is not valid JSON: {exc}") from exc

    if not isinstance(options, dict):
        raise ConfigurationError(f"Config file {path} must contain a JSON object")
    return options


def _require_non_negative_int(name: str, value: object) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ConfigurationError(f"{name} must be a non-negative integer")


def _validate_header(name: object, value: object) -> None:
    if not isinstance(name, str) or not name.strip():
        raise ConfigurationError("extra header names must be non-empty strings")
    if ":" in name or any(ch in name for ch in "\r\n"):
        raise ConfigurationError(f"Invalid extra header name: {name!r}")
    if not isinstance(value, str) or any(ch in value for ch in "\r\n"):
        raise ConfigurationError(f"Invalid value for extra header {name!r}")
