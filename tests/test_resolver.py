"""Unit tests for request target to filesystem path resolution."""

from pathlib import Path

import pytest

from config import ServerConfig
from resolver import PathTraversalError, detect_extensions, resolve_target, strip_query


def _config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, **overrides: object) -> ServerConfig:
    monkeypatch.chdir(tmp_path)
    (tmp_path / "dist").mkdir(exist_ok=True)
    options: dict[str, object] = {"port": 3500, "static_dir": "dist"}
    options.update(overrides)
    return ServerConfig(**options)  # type: ignore[arg-type]


def test_strip_query_drops_everything_after_question_mark() -> None:
    assert strip_query("/app.js?v=4.7.0") == "/app.js"
    assert strip_query("/app.js?a=1?b=2") == "/app.js"
    assert strip_query("/") == "/"


def test_detect_extensions_for_plain_and_source_map_files() -> None:
    assert detect_extensions("/app.js") == ("js", "")
    assert detect_extensions("/static/app.js.map") == ("map", "js")
    assert detect_extensions("/style.css.map") == ("map", "css")
    assert detect_extensions("/bundle.min.js") == ("js", "")


def test_detect_extensions_ignores_dots_in_directories() -> None:
    assert detect_extensions("/v1.2/route") == ("", "")
    assert detect_extensions("/some/route/") == ("", "")
    assert detect_extensions("/") == ("", "")


@pytest.mark.parametrize("target", ["/", "/some/route/", "/users/42", "/settings?tab=profile"])
def test_extensionless_targets_resolve_to_index(
    target: str, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    config = _config(tmp_path, monkeypatch, index_file="page.html")

    resolved = resolve_target(target, config)

    assert resolved.is_index is True
    assert resolved.filesystem_path == (tmp_path / "dist" / "page.html").resolve()
    assert resolved.content_type == "text/html"


def test_query_string_does_not_change_resolution(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    config = _config(tmp_path, monkeypatch)

    plain = resolve_target("/app.js", config)
    versioned = resolve_target("/app.js?v=1.2.3", config)

    assert versioned.filesystem_path == plain.filesystem_path
    assert versioned.file_extension == plain.file_extension == "js"
    assert versioned.content_type == plain.content_type == "application/javascript"
    assert versioned.query_stripped_target == "/app.js"
    assert versioned.raw_target == "/app.js?v=1.2.3"


def test_nested_asset_resolves_under_static_root(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    config = _config(tmp_path, monkeypatch)

    resolved = resolve_target("/assets/fonts/icons.woff2", config)

    assert resolved.is_index is False
    assert resolved.filesystem_path == (tmp_path / "dist" / "assets" / "fonts" / "icons.woff2").resolve()
    assert resolved.content_type == "font/woff2"


def test_source_maps_carry_secondary_extension(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    config = _config(tmp_path, monkeypatch)

    css_map = resolve_target("/style.css.map", config)
    js_map = resolve_target("/app.js.map?v=2", config)

    assert (css_map.file_extension, css_map.secondary_extension) == ("map", "css")
    assert css_map.content_type == "application/json"
    assert (js_map.file_extension, js_map.secondary_extension) == ("map", "js")
    assert js_map.content_type == "application/octet-stream"


def test_percent_encoded_names_are_decoded(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    config = _config(tmp_path, monkeypatch)

    resolved = resolve_target("/my%20logo.png", config)

    assert resolved.filesystem_path.name == "my logo.png"


@pytest.mark.parametrize(
    "target",
    ["/../secret.txt", "/assets/../../secret.txt", "/%2e%2e/secret.txt", "/..%2fsecret.txt"],
)
def test_traversal_outside_static_root_is_rejected(
    target: str, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    config = _config(tmp_path, monkeypatch)
    (tmp_path / "secret.txt").write_text("top secret", encoding="utf-8")

    with pytest.raises(PathTraversalError):
        resolve_target(target, config)


def test_dot_segments_inside_root_are_allowed(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    config = _config(tmp_path, monkeypatch)

    resolved = resolve_target("/assets/../app.js", config)

    assert resolved.filesystem_path == (tmp_path / "dist" / "app.js").resolve()


def test_symlink_escaping_root_is_rejected(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    config = _config(tmp_path, monkeypatch)
    outside = tmp_path / "outside.js"
    outside.write_text("alert(1)", encoding="utf-8")
    (tmp_path / "dist" / "linked.js").symlink_to(outside)

    with pytest.raises(PathTraversalError):
        resolve_target("/linked.js", config)


def test_encoded_question_mark_stays_part_of_the_file_name(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    config = _config(tmp_path, monkeypatch)

    resolved = resolve_target("/a%3Fb.js?v=2", config)

    assert resolved.content_type == "application/javascript"
    assert resolved.filesystem_path.name == "a?b.js"


def test_symlink_loop_resolves_to_a_path_inside_root(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    config = _config(tmp_path, monkeypatch)
    (tmp_path / "dist" / "loop.js").symlink_to("loop.js")

    resolved = resolve_target("/loop.js", config)

    assert resolved.filesystem_path == config.static_root / "loop.js"
