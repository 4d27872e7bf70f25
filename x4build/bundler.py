"""Bundler collaborator for X4Build.

Derives the esbuild configuration from :class:`~x4build.config.Settings`
and runs the esbuild command-line tool.  Compilation failures come back
as data in :class:`BundleResult`; nothing here raises on a bad build.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Protocol

from x4build.config import Settings

logger = logging.getLogger(__name__)

TARGET = "node12"
PLATFORM = "node"
ASSET_NAMES = "assets/[name]-[hash]"
JSX_FACTORY = "x4_react.create_element"

LOADERS: dict[str, str] = {
    ".svg": "dataurl",
    ".jpg": "file",
    ".png": "file",
    ".woff": "file",
    ".woff2": "file",
    ".ts": "tsx",
    ".js": "jsx",
}

# Browser-side live-reload client, injected as a banner when HMR is on.
# {scheme} and {port} are filled in from the settings.
HMR_CLIENT_TEMPLATE = """\
// X4 Hot Module Replacement v1.2
{{
\tsetTimeout( () => {{
\t\tconst ws = new WebSocket( `{scheme}://${{window.location.hostname}}:{port}`, "hmr" );
\t\tws.onmessage = ( ev ) => {{
\t\t\tif( ev.data=="reload-css" ) {{
\t\t\t\tconst gen_id = Date.now( );
\t\t\t\tdocument.querySelectorAll( "link[rel=stylesheet]").forEach( link => {{
\t\t\t\t\tlink.href = link.href.replace(/\\?.*|$/, "?" + gen_id)
\t\t\t\t}} );
\t\t\t}}
\t\t\telse {{
\t\t\t\tlocation.reload();
\t\t\t}}
\t\t}}
\t}}, 1000 );
}}"""


def hmr_client_snippet(settings: Settings) -> str:
    """Return the live-reload client for the configured socket endpoint."""
    return HMR_CLIENT_TEMPLATE.format(scheme=settings.ws_scheme, port=settings.hmr_port)


@dataclass(frozen=True)
class BundlerOptions:
    """Everything the bundler needs for one run."""

    entry_points: tuple[str, ...]
    outdir: Path
    target: str = TARGET
    platform: str = PLATFORM
    format: str = "iife"
    minify: bool = False
    sourcemap: str | None = "inline"
    loaders: dict[str, str] = field(default_factory=lambda: dict(LOADERS))
    define: dict[str, str] = field(default_factory=dict)
    external: tuple[str, ...] = ()
    banner_js: str | None = None
    asset_names: str = ASSET_NAMES
    jsx_factory: str = JSX_FACTORY
    keep_names: bool = True
    charset: str = "utf8"

    def with_outdir(self, outdir: Path) -> BundlerOptions:
        return replace(self, outdir=outdir)


def derive_options(settings: Settings) -> BundlerOptions:
    """Translate project settings into a bundler configuration."""
    return BundlerOptions(
        entry_points=settings.entry_points,
        outdir=settings.outdir,
        format="cjs" if settings.cjs else "iife",
        minify=settings.release,
        sourcemap=None if settings.release else "inline",
        define={"DEBUG_MODE": "false" if settings.release else "true"},
        external=tuple(sorted(settings.external)),
        banner_js=hmr_client_snippet(settings) if settings.hmr else None,
    )


@dataclass
class BundleResult:
    """Outcome of one bundler run; *errors* is empty on success."""

    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


class Bundler(Protocol):
    """Anything that can compile a project into an output directory."""

    def build(self, options: BundlerOptions) -> BundleResult:
        """Compile the entry points into ``options.outdir``."""
        ...


class EsbuildBundler:
    """Runs the esbuild CLI in the project root.

    Parameters
    ----------
    project_root : Path
        Working directory for esbuild; entry points are relative to it.
    executable : str, optional
        esbuild binary. Defaults to ``node_modules/.bin/esbuild`` when the
        project has one, else ``esbuild`` from ``PATH``.
    """

    def __init__(self, project_root: Path, executable: str | None = None):
        self.project_root = Path(project_root)
        self.executable = executable or self._find_executable()

    def _find_executable(self) -> str:
        local = self.project_root / "node_modules" / ".bin" / "esbuild"
        if local.exists():
            return str(local)
        return shutil.which("esbuild") or "esbuild"

    def command(self, options: BundlerOptions) -> list[str]:
        """Return the esbuild argument vector for *options*."""
        args = [
            self.executable,
            *options.entry_points,
            "--bundle",
            f"--outdir={options.outdir}",
            f"--target={options.target}",
            f"--platform={options.platform}",
            f"--format={options.format}",
            f"--charset={options.charset}",
            f"--asset-names={options.asset_names}",
            f"--jsx-factory={options.jsx_factory}",
            "--log-level=error",
        ]
        if options.keep_names:
            args.append("--keep-names")
        if options.minify:
            args.append("--minify")
        if options.sourcemap:
            args.append(f"--sourcemap={options.sourcemap}")
        for ext, loader in options.loaders.items():
            args.append(f"--loader:{ext}={loader}")
        for name, value in options.define.items():
            args.append(f"--define:{name}={value}")
        for module in options.external:
            args.append(f"--external:{module}")
        if options.banner_js:
            args.append(f"--banner:js={options.banner_js}")
        return args

    def build(self, options: BundlerOptions) -> BundleResult:
        """Run esbuild once and collect its error messages."""
        args = self.command(options)
        logger.debug("Running %s", " ".join(args[:2]))
        try:
            proc = subprocess.run(
                args,
                cwd=str(self.project_root),
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except OSError as exc:
            return BundleResult(errors=[f"could not run {self.executable}: {exc}"])

        if proc.returncode == 0:
            return BundleResult()
        return BundleResult(errors=parse_errors(proc.stderr, proc.returncode))


def parse_errors(stderr: str, returncode: int) -> list[str]:
    """Extract error messages from esbuild's stderr."""
    errors = [
        line.split("[ERROR]", 1)[1].strip()
        for line in stderr.splitlines()
        if "[ERROR]" in line
    ]
    if errors:
        return errors
    text = stderr.strip()
    return [text or f"esbuild exited with status {returncode}"]
