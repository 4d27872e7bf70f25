"""Entry point for X4Build.

Usage:
    python -m x4build                      Build once
    python -m x4build --watch --hmr        Rebuild on change, live-reload browsers
    python -m x4build --serve --https --cert=certs/dev
                                           Also serve the output directory
"""

import argparse
import logging
import re
import sys
from pathlib import Path

from x4build import __app_name__, __version__
from x4build.config import (
    DEFAULT_HOST,
    DEFAULT_PORT,
    HTTP_MODE_HTTP,
    HTTP_MODE_HTTPS,
    ConfigurationError,
    resolve_settings,
)

logger = logging.getLogger(__name__)

_IP_RE = re.compile(r"^(\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3})(?::(\d+))?$")


def parse_address(value: str) -> tuple[str, int]:
    """Parse ``A.B.C.D[:PORT]``; the port defaults to 3000."""
    m = _IP_RE.match(value)
    if not m or any(int(octet) > 255 for octet in m.group(1).split(".")):
        raise argparse.ArgumentTypeError(f"invalid address '{value}'")
    port = int(m.group(2)) if m.group(2) else DEFAULT_PORT
    return m.group(1), port


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="x4build",
        description=f"{__app_name__} {__version__}: esbuild watch, live reload and dev server",
    )
    parser.add_argument("--release", action="store_true", help="release mode (minified, no source maps)")
    parser.add_argument("--hmr", action="store_true", help="include live-reload client code")
    parser.add_argument("--watch", action="store_true", help="watch for source modification")
    parser.add_argument("--serve", action="store_true", help="serve the output directory")
    parser.add_argument("--cjs", action="store_true", help="cjs output format")
    parser.add_argument("--outdir", help="force output dir")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--http", dest="http_mode", action="store_const", const=HTTP_MODE_HTTP,
        help="http mode (default)",
    )
    mode.add_argument(
        "--https", dest="http_mode", action="store_const", const=HTTP_MODE_HTTPS,
        help="https mode, requires --cert",
    )
    parser.add_argument(
        "--cert",
        help="certificate path without extension; <cert>.crt and <cert>.key must exist",
    )
    parser.add_argument(
        "--ip", type=parse_address, default=(DEFAULT_HOST, DEFAULT_PORT),
        metavar="A.B.C.D[:PORT]", help=f"listen address (default {DEFAULT_HOST}:{DEFAULT_PORT})",
    )
    parser.add_argument("--project", type=Path, default=Path.cwd(), help="project root (default: cwd)")
    parser.add_argument("--log-level", default="INFO", help="logging level (default INFO)")
    parser.add_argument("--log-file", type=Path, help="also log to this rotating file")
    return parser


def main(argv: list[str] | None = None) -> None:
    """Parse the command line, resolve settings and run the app."""
    from x4build.app import App, setup_logging

    args = build_parser().parse_args(argv)
    setup_logging(args.log_level, args.log_file)

    host, port = args.ip
    try:
        settings = resolve_settings(
            args.project,
            outdir=args.outdir,
            release=args.release,
            cjs=args.cjs,
            hmr=args.hmr,
            watch=args.watch,
            serve=args.serve,
            http_mode=args.http_mode,
            host=host,
            port=port,
            cert_path=args.cert,
        )
        status = App(settings).run()
    except ConfigurationError as exc:
        logger.error("%s", exc)
        sys.exit(1)

    sys.exit(status)


if __name__ == "__main__":
    main()
