from __future__ import annotations

from pathlib import Path

import pytest

from x4build.config import (
    DEFAULT_PORT,
    ConfigurationError,
    load_manifest,
    resolve_settings,
)


def test_missing_manifest_is_a_configuration_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError, match="cannot find package.json"):
        resolve_settings(tmp_path)


def test_unparsable_manifest_is_a_configuration_error(tmp_path: Path) -> None:
    (tmp_path / "package.json").write_text("{not json", encoding="utf-8")

    with pytest.raises(ConfigurationError, match="could not read"):
        resolve_settings(tmp_path)


def test_manifest_without_section_uses_defaults(tmp_path: Path) -> None:
    (tmp_path / "package.json").write_text('{"name": "demo"}', encoding="utf-8")

    data = load_manifest(tmp_path)

    assert data["entryPoints"] == ["src/main.ts"]
    assert data["outdir"] == "./bin"
    assert data["copy"] == []


def test_settings_resolve_paths_against_project_root(project: Path) -> None:
    settings = resolve_settings(project)

    assert settings.project_root == project.resolve()
    assert settings.outdir == project.resolve() / "bin"
    assert settings.entry_points == ("src/main.ts",)
    assert settings.staging_dir == project.resolve() / ".bin.staging"


def test_outdir_override_wins_over_manifest(project: Path) -> None:
    settings = resolve_settings(project, outdir="dist")

    assert settings.outdir == project.resolve() / "dist"


def test_hmr_port_is_ten_above_serving_port(project: Path) -> None:
    assert resolve_settings(project).hmr_port == DEFAULT_PORT + 10
    assert resolve_settings(project, port=8000).hmr_port == 8010


def test_copy_rules_are_resolved(make_settings) -> None:
    settings = make_settings({"copy": [{"from": "static", "to": "assets/static"}]})

    (rule,) = settings.copy_rules
    assert rule.source == settings.project_root / "static"
    assert rule.destination == "assets/static"
    assert settings.copy_destination(rule) == settings.outdir / "assets" / "static"


def test_copy_destination_escaping_outdir_is_rejected(make_settings) -> None:
    with pytest.raises(ConfigurationError, match="escapes the output directory"):
        make_settings({"copy": [{"from": "static", "to": "../elsewhere"}]})


def test_copy_rule_without_source_is_rejected(make_settings) -> None:
    with pytest.raises(ConfigurationError, match=r"copy\[0\]\.from"):
        make_settings({"copy": [{"to": "assets"}]})


def test_entry_points_must_be_strings(make_settings) -> None:
    with pytest.raises(ConfigurationError, match="entryPoints"):
        make_settings({"entryPoints": [1, 2]})


def test_external_modules_become_a_set(make_settings) -> None:
    settings = make_settings({"external": ["fs", "path", "fs"]})

    assert settings.external == frozenset({"fs", "path"})


def test_https_requires_cert(project: Path) -> None:
    with pytest.raises(ConfigurationError, match="--cert"):
        resolve_settings(project, http_mode="https")


def test_https_requires_existing_cert_files(project: Path) -> None:
    (project / "dev.crt").write_text("cert", encoding="utf-8")

    with pytest.raises(ConfigurationError, match=r"dev\.key"):
        resolve_settings(project, http_mode="https", cert_path="dev")


def test_https_settings_expose_cert_and_key(project: Path) -> None:
    (project / "dev.crt").write_text("cert", encoding="utf-8")
    (project / "dev.key").write_text("key", encoding="utf-8")

    settings = resolve_settings(project, http_mode="https", cert_path="dev")

    assert settings.secure
    assert settings.ws_scheme == "wss"
    assert settings.cert_file == project.resolve() / "dev.crt"
    assert settings.key_file == project.resolve() / "dev.key"


def test_settings_are_immutable(project: Path) -> None:
    settings = resolve_settings(project)

    with pytest.raises(AttributeError):
        settings.release = True  # type: ignore[misc]
