"""Configuration for X4Build.

Reads the ``x4build`` section of the project's ``package.json``, merges
it over the defaults and freezes it, together with the command-line
options, into a single immutable :class:`Settings` object that every
component receives at construction.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

MANIFEST_NAME = "package.json"
MANIFEST_SECTION = "x4build"

# Serving modes
HTTP_MODE_HTTP = "http"
HTTP_MODE_HTTPS = "https"

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 3000
HMR_PORT_OFFSET = 10

# Directories that never feed a build
DEPENDENCY_CACHE_DIRS = ("node_modules",)

DEFAULT_SETTINGS: dict[str, Any] = {
    "entryPoints": ["src/main.ts"],
    "outdir": "./bin",
    "copy": [],  # [{"from": "static", "to": "assets/static"}, ...]
    "external": [],
}


class ConfigurationError(Exception):
    """Raised when the project cannot be started safely."""


@dataclass(frozen=True)
class CopyRule:
    """Static content mirrored verbatim into the output directory."""

    source: Path
    destination: str

    def describe(self) -> str:
        return f"{self.source.name} -> {self.destination}"


@dataclass(frozen=True)
class Settings:
    """Resolved project settings. Paths are absolute."""

    project_root: Path
    entry_points: tuple[str, ...]
    outdir: Path
    copy_rules: tuple[CopyRule, ...] = ()
    external: frozenset[str] = frozenset()
    release: bool = False
    cjs: bool = False
    hmr: bool = False
    watch: bool = False
    serve: bool = False
    http_mode: str = HTTP_MODE_HTTP
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    cert_path: Path | None = None

    @property
    def manifest_path(self) -> Path:
        return self.project_root / MANIFEST_NAME

    @property
    def hmr_port(self) -> int:
        """Port of the live-reload socket."""
        return self.port + HMR_PORT_OFFSET

    @property
    def staging_dir(self) -> Path:
        """Sibling of the output directory where builds are assembled."""
        return self.outdir.parent / f".{self.outdir.name}.staging"

    @property
    def secure(self) -> bool:
        return self.http_mode == HTTP_MODE_HTTPS

    @property
    def ws_scheme(self) -> str:
        return "wss" if self.secure else "ws"

    @property
    def cert_file(self) -> Path | None:
        if self.cert_path is None:
            return None
        return self.cert_path.with_name(self.cert_path.name + ".crt")

    @property
    def key_file(self) -> Path | None:
        if self.cert_path is None:
            return None
        return self.cert_path.with_name(self.cert_path.name + ".key")

    def copy_destination(self, rule: CopyRule, root: Path | None = None) -> Path:
        """Return where *rule* lands under *root* (the output directory by default)."""
        return (root or self.outdir) / rule.destination


# ---- manifest ----


def load_manifest(project_root: Path) -> dict[str, Any]:
    """Return the ``x4build`` section of ``package.json`` merged over defaults."""
    path = project_root / MANIFEST_NAME
    if not path.is_file():
        raise ConfigurationError(f"cannot find {MANIFEST_NAME} in {project_root}")
    try:
        with open(path, encoding="utf-8") as fh:
            package = json.load(fh)
    except (json.JSONDecodeError, OSError) as exc:
        raise ConfigurationError(f"could not read {path}: {exc}") from exc

    if not isinstance(package, dict):
        raise ConfigurationError(f"{path} must contain a JSON object")
    section = package.get(MANIFEST_SECTION, {})
    if not isinstance(section, dict):
        raise ConfigurationError(f"'{MANIFEST_SECTION}' in {path} must be an object")

    logger.debug("Manifest loaded from %s", path)
    return {**DEFAULT_SETTINGS, **section}


def _string_list(data: dict[str, Any], key: str) -> list[str]:
    value = data.get(key)
    if not isinstance(value, list) or not all(
        isinstance(item, str) and item for item in value
    ):
        raise ConfigurationError(f"'{key}' must be a list of non-empty strings")
    return value


def _copy_rules(data: dict[str, Any], root: Path, outdir: Path) -> tuple[CopyRule, ...]:
    entries = data.get("copy")
    if not isinstance(entries, list):
        raise ConfigurationError("'copy' must be a list of {from, to} objects")

    rules = []
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise ConfigurationError(f"copy[{index}] must be an object")
        source = entry.get("from")
        destination = entry.get("to")
        if not isinstance(source, str) or not source:
            raise ConfigurationError(f"copy[{index}].from must be a non-empty string")
        if not isinstance(destination, str):
            raise ConfigurationError(f"copy[{index}].to must be a string")

        target = (outdir / destination).resolve()
        if not target.is_relative_to(outdir):
            raise ConfigurationError(
                f"copy[{index}].to '{destination}' escapes the output directory"
            )
        rules.append(
            CopyRule(
                source=(root / source).resolve(),
                destination=target.relative_to(outdir).as_posix(),
            )
        )
    return tuple(rules)


def resolve_settings(
    project_root: Path,
    *,
    outdir: str | None = None,
    release: bool = False,
    cjs: bool = False,
    hmr: bool = False,
    watch: bool = False,
    serve: bool = False,
    http_mode: str | None = None,
    host: str = DEFAULT_HOST,
    port: int = DEFAULT_PORT,
    cert_path: str | None = None,
) -> Settings:
    """Load the manifest, apply command-line overrides and validate the result."""
    root = Path(project_root).resolve()
    data = load_manifest(root)
    if outdir:
        data["outdir"] = outdir

    raw_outdir = data.get("outdir")
    if not isinstance(raw_outdir, str) or not raw_outdir:
        raise ConfigurationError("'outdir' must be a non-empty string")
    resolved_outdir = (root / raw_outdir).resolve()
    if resolved_outdir == root:
        raise ConfigurationError("'outdir' cannot be the project root")

    entry_points = _string_list(data, "entryPoints")
    if not entry_points:
        raise ConfigurationError("'entryPoints' must name at least one file")

    mode = http_mode or HTTP_MODE_HTTP
    if mode not in (HTTP_MODE_HTTP, HTTP_MODE_HTTPS):
        raise ConfigurationError(f"unknown http mode '{mode}'")

    cert = None
    if mode == HTTP_MODE_HTTPS:
        if not cert_path:
            raise ConfigurationError("you must provide --cert for https")
        cert = (root / cert_path).resolve()

    if not 0 < port < 65536 - HMR_PORT_OFFSET:
        raise ConfigurationError(f"port {port} is out of range")

    settings = Settings(
        project_root=root,
        entry_points=tuple(entry_points),
        outdir=resolved_outdir,
        copy_rules=_copy_rules(data, root, resolved_outdir),
        external=frozenset(_string_list(data, "external")),
        release=release,
        cjs=cjs,
        hmr=hmr,
        watch=watch,
        serve=serve,
        http_mode=mode,
        host=host,
        port=port,
        cert_path=cert,
    )

    for path in (settings.cert_file, settings.key_file):
        if path is not None and not path.is_file():
            raise ConfigurationError(f"certificate file not found: {path}")

    return settings
