"""
Main application controller for X4Build.

Ties together the settings, the build orchestrator, the watch
dispatcher, the live-reload server and the static file server, and
runs them in the foreground until SIGINT/SIGTERM.
"""

import logging
import logging.handlers
import signal
import sys
import threading
from pathlib import Path

from x4build import __app_name__, __version__
from x4build.builder import BuildOrchestrator
from x4build.bundler import Bundler, EsbuildBundler
from x4build.config import Settings
from x4build.hmr import HmrServer
from x4build.server import StaticFileServer, build_ssl_context
from x4build.watcher import ProjectWatcher, WatchDispatcher

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
_MAX_LOG_BYTES = 10 * 1024 * 1024
_LOG_BACKUP_COUNT = 3


def setup_logging(level: str = "INFO", log_file: Path | None = None) -> None:
    """Configure the stderr handler and, optionally, a rotating log file."""
    numeric = getattr(logging, level.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(numeric)

    fmt = logging.Formatter(LOG_FORMAT)

    sh = logging.StreamHandler(sys.stderr)
    sh.setLevel(numeric)
    sh.setFormatter(fmt)
    root_logger.addHandler(sh)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.handlers.RotatingFileHandler(
            str(log_file),
            maxBytes=_MAX_LOG_BYTES,
            backupCount=_LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
        fh.setLevel(numeric)
        fh.setFormatter(fmt)
        root_logger.addHandler(fh)


def log_settings(settings: Settings) -> None:
    """Log the startup summary."""
    rows = [
        ("release mode", settings.release),
        ("hmr", settings.hmr),
        ("watching", settings.watch),
        ("serve files", settings.serve),
        ("output dir", settings.outdir),
        ("entry point", "[ " + ", ".join(settings.entry_points) + " ]"),
        ("externals", "[ " + ", ".join(sorted(settings.external)) + " ]"),
        ("copying", "[ " + ", ".join(r.describe() for r in settings.copy_rules) + " ]"),
        ("http mode", settings.http_mode),
        ("cert path", settings.cert_path),
    ]
    for label, value in rows:
        logger.info("    %s %s", f"{label} ".ljust(17, "."), value)


class App:
    """
    Central orchestrator.

    Every component is built from the same immutable Settings.  The first
    build always completes before the static server starts listening.
    """

    def __init__(self, settings: Settings, bundler: Bundler | None = None) -> None:
        self.settings = settings
        self.builder = BuildOrchestrator(
            settings, bundler or EsbuildBundler(settings.project_root)
        )
        self.hmr: HmrServer | None = None
        self.dispatcher: WatchDispatcher | None = None
        self.watcher: ProjectWatcher | None = None
        self.server: StaticFileServer | None = None
        self._stop = threading.Event()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def long_running(self) -> bool:
        return self.settings.watch or self.settings.serve

    def start(self) -> bool:
        """Run the first build, then start the configured services.

        Returns whether the first build succeeded.
        """
        logger.info("-- %s %s -------------------", __app_name__, __version__)
        log_settings(self.settings)

        ssl_context = build_ssl_context(self.settings) if self.long_running else None

        first = self.builder.trigger()
        if not self.long_running:
            return first.success

        if self.settings.watch:
            if self.settings.hmr:
                self.hmr = HmrServer(
                    self.settings.host, self.settings.hmr_port, ssl_context=ssl_context
                )
                self.hmr.start()
            self.dispatcher = WatchDispatcher(self.settings, self.builder, self.hmr)
            self.dispatcher.start()
            self.watcher = ProjectWatcher(
                self.settings.project_root,
                self.dispatcher.submit,
                self.dispatcher.is_ignored,
            )
            self.watcher.start()

        if self.settings.serve:
            self.settings.outdir.mkdir(parents=True, exist_ok=True)
            self.server = StaticFileServer(
                self.settings.outdir,
                self.settings.host,
                self.settings.port,
                ssl_context=ssl_context,
            )
            self.server.start()

        return first.success

    def stop(self) -> None:
        """Stop every running component, watcher first."""
        logger.info("Shutting down…")
        if self.watcher:
            self.watcher.stop()
            self.watcher = None
        if self.dispatcher:
            self.dispatcher.stop()
            self.dispatcher = None
        if self.server:
            self.server.stop()
            self.server = None
        if self.hmr:
            self.hmr.stop()
            self.hmr = None
        self._stop.set()

    def request_stop(self) -> None:
        self._stop.set()

    def run(self) -> int:
        """Start, block until a stop signal, then shut down. Returns an exit status."""
        ok = self.start()
        if not self.long_running:
            return 0 if ok else 1

        def _handler(sig, frame):
            self.request_stop()

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)

        try:
            while not self._stop.wait(timeout=1):
                pass
        finally:
            self.stop()
        return 0
