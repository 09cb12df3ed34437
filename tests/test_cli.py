"""Command-line entry point tests."""

import json
import socket
from pathlib import Path

import pytest

from server import _parse_args, build_config, main


def test_parse_args_collects_repeated_headers() -> None:
    args = _parse_args(
        ["--port", "3500", "--header", "X-Frame-Options: DENY", "--header", "X-A:b"]
    )

    assert args.port == 3500
    assert args.header == [("X-Frame-Options", "DENY"), ("X-A", "b")]
    assert args.debug is None


def test_parse_args_rejects_header_without_colon() -> None:
    with pytest.raises(SystemExit):
        _parse_args(["--header", "not-a-header"])


def test_build_config_merges_file_and_overrides(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)
    options_file = tmp_path / "spa.json"
    options_file.write_text(
        json.dumps(
            {
                "port": 3500,
                "staticDir": "dist",
                "acceptEncoding": "gzip",
                "extraHeaders": {"X-Served-By": "spa"},
            }
        ),
        encoding="utf-8",
    )

    config = build_config(
        _parse_args(
            [
                "--config",
                str(options_file),
                "--port",
                "4000",
                "--header",
                "Cache-Control: no-cache",
            ]
        )
    )

    assert config.port == 4000
    assert config.static_root == (tmp_path / "dist").resolve()
    assert config.accept_encoding == "gzip"
    assert dict(config.extra_headers) == {"X-Served-By": "spa", "Cache-Control": "no-cache"}


def test_main_without_options_exits_with_configuration_error() -> None:
    assert main([]) == 2


def test_main_without_port_exits_with_configuration_error() -> None:
    assert main(["--static-dir", "dist"]) == 2


def test_main_reports_port_in_use(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    (tmp_path / "dist").mkdir()

    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as blocker:
        blocker.bind(("127.0.0.1", 0))
        blocker.listen()
        port = blocker.getsockname()[1]

        exit_code = main(["--host", "127.0.0.1", "--port", str(port), "--static-dir", "dist"])

    assert exit_code == 1
