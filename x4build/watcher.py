"""File system watcher for X4Build.

Uses the watchdog library to observe the project tree.  The observer
thread only enqueues :class:`WatchEvent` objects; a single dispatcher
thread consumes them in arrival order, decides whether a rebuild is
needed and tells connected live-reload clients what to refresh.
"""

from __future__ import annotations

import enum
import logging
import os
import queue
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from watchdog.events import (
    DirMovedEvent,
    FileSystemEvent,
    FileSystemEventHandler,
    FileSystemMovedEvent,
)
from watchdog.observers import Observer

from x4build.config import DEPENDENCY_CACHE_DIRS, Settings

logger = logging.getLogger(__name__)

# Path of the running tool; a change to it stops the process.
SELF_PATH = Path(__file__).resolve()

RELOAD_CSS = "reload-css"
RELOAD_JS = "reload-js"

STYLE_EXTENSIONS = frozenset({".css", ".scss", ".svg"})
CODE_EXTENSIONS = frozenset({".html", ".js", ".jsx", ".ts", ".tsx"})

_BUILD_ONLY = "build"
_EXIT = "exit"
_RANK = {_BUILD_ONLY: 0, RELOAD_CSS: 1, RELOAD_JS: 2}


class EventKind(str, enum.Enum):
    ADDED = "added"
    CHANGED = "changed"
    REMOVED = "removed"


@dataclass(frozen=True)
class WatchEvent:
    kind: EventKind
    path: Path


class BuildTrigger(Protocol):
    def trigger(self) -> Any: ...


class Broadcaster(Protocol):
    def broadcast(self, message: str) -> int: ...


def _exit_process() -> None:
    logger.warning("x4build itself was modified, exiting.")
    logging.shutdown()
    os._exit(0)


class WatchDispatcher:
    """Turns watch events into build and reload decisions.

    ``on_event`` handles one event synchronously.  ``submit`` is the
    thread-safe producer side used by the observer; ``start`` runs the
    consumer thread; it hands every event already waiting in the queue
    to ``on_events`` as one batch.
    """

    def __init__(
        self,
        settings: Settings,
        builder: BuildTrigger,
        broadcaster: Broadcaster | None = None,
        self_path: Path | None = SELF_PATH,
        on_self_change: Callable[[], None] = _exit_process,
    ):
        self.settings = settings
        self._builder = builder
        self._broadcaster = broadcaster
        self._self_path = self_path
        self._on_self_change = on_self_change
        self._ignored_roots = (settings.outdir, settings.staging_dir)
        self._queue: queue.Queue[WatchEvent | None] = queue.Queue()
        self._thread: threading.Thread | None = None

    # ---- filtering ----

    def is_ignored(self, path: str | Path) -> bool:
        """True for build output and dependency caches."""
        target = Path(path)
        if not target.is_absolute():
            target = self.settings.project_root / target
        if any(target.is_relative_to(root) for root in self._ignored_roots):
            return True
        try:
            rel = target.relative_to(self.settings.project_root)
        except ValueError:
            return False
        return any(part in DEPENDENCY_CACHE_DIRS for part in rel.parts)

    def _matches_copy_rule(self, path: Path) -> bool:
        return any(path.is_relative_to(rule.source) for rule in self.settings.copy_rules)

    # ---- dispatch ----

    def on_event(self, event: WatchEvent) -> None:
        """Process one event: rebuild and/or broadcast as its path requires."""
        self.on_events([event])

    def on_events(self, events: Iterable[WatchEvent]) -> None:
        """Process *events* in order, then build once and broadcast at most once.

        The broadcast carries the strongest reload any event asked for,
        so a burst mixing styles and code ends in a single ``reload-js``.
        """
        outcome: str | None = None
        for event in events:
            action = self._classify(event)
            if action == _EXIT:
                self._on_self_change()
                return
            if action is not None and (outcome is None or _RANK[action] > _RANK[outcome]):
                outcome = action

        if outcome is None:
            return
        self._builder.trigger()
        if outcome != _BUILD_ONLY and self._broadcaster is not None:
            count = self._broadcaster.broadcast(outcome)
            logger.debug("Sent %s to %d clients", outcome, count)

    def _classify(self, event: WatchEvent) -> str | None:
        path = event.path
        if self.is_ignored(path):
            return None

        if self._self_path is not None and path == self._self_path:
            return _EXIT

        if event.kind is EventKind.REMOVED:
            # Deletions do not trigger builds; stale output stays until overwritten.
            logger.debug("Removed: %s", path)
            return None

        if self._matches_copy_rule(path):
            logger.info("Copy source changed: %s", path)
            return _BUILD_ONLY

        ext = path.suffix.lower()
        if ext in STYLE_EXTENSIONS:
            logger.info("Changed: %s", path)
            return RELOAD_CSS
        if ext in CODE_EXTENSIONS:
            logger.info("Changed: %s", path)
            return RELOAD_JS
        if path == self.settings.manifest_path:
            logger.info("Manifest changed: %s", path)
            return _BUILD_ONLY
        return None

    # ---- queue ----

    def submit(self, event: WatchEvent) -> None:
        """Queue *event* for the dispatcher thread."""
        self._queue.put(event)

    def start(self) -> None:
        self._thread = threading.Thread(
            target=self._consume, daemon=True, name="WatchDispatcher"
        )
        self._thread.start()

    def stop(self, timeout: float | None = 5) -> None:
        if self._thread is None:
            return
        self._queue.put(None)
        self._thread.join(timeout=timeout)
        self._thread = None

    def _drain(self, first: WatchEvent) -> tuple[list[WatchEvent], bool]:
        """Collect *first* plus every event already queued behind it."""
        batch = [first]
        while True:
            try:
                event = self._queue.get_nowait()
            except queue.Empty:
                return batch, False
            if event is None:
                return batch, True
            batch.append(event)

    def _consume(self) -> None:
        while True:
            event = self._queue.get()
            if event is None:
                return
            batch, stopping = self._drain(event)
            try:
                self.on_events(batch)
            except Exception:
                logger.exception("Error handling %d watch events", len(batch))
            if stopping:
                return


class ProjectEventHandler(FileSystemEventHandler):
    """Watchdog handler that converts file events into WatchEvents."""

    def __init__(
        self,
        on_event: Callable[[WatchEvent], None],
        ignore: Callable[[Path], bool] | None = None,
    ):
        """Initialise the handler with an optional ignore predicate."""
        super().__init__()
        self._on_event = on_event
        self._ignore = ignore

    def _emit(self, kind: EventKind, raw_path: str | bytes) -> None:
        path = Path(os.fsdecode(raw_path))
        if self._ignore is not None and self._ignore(path):
            return
        self._on_event(WatchEvent(kind, path))

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._emit(EventKind.ADDED, event.src_path)

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._emit(EventKind.CHANGED, event.src_path)

    def on_deleted(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._emit(EventKind.REMOVED, event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        if event.is_directory or isinstance(event, DirMovedEvent):
            return
        if isinstance(event, FileSystemMovedEvent):
            self._emit(EventKind.REMOVED, event.src_path)
            self._emit(EventKind.ADDED, event.dest_path)


class ProjectWatcher:
    """Recursive watchdog observer over the project root.

    Usage:
        watcher = ProjectWatcher(root, dispatcher.submit, dispatcher.is_ignored)
        watcher.start()
        ...
        watcher.stop()
    """

    def __init__(
        self,
        root: Path,
        on_event: Callable[[WatchEvent], None],
        ignore: Callable[[Path], bool] | None = None,
    ):
        self.root = Path(root)
        self._handler = ProjectEventHandler(on_event, ignore)
        self._observer: Any | None = None

    def start(self) -> None:
        """Start watching the project root."""
        if not self.root.is_dir():
            logger.error("Project root does not exist: %s", self.root)
            raise FileNotFoundError(f"Project root does not exist: {self.root}")

        observer = Observer()
        self._observer = observer
        observer.schedule(self._handler, str(self.root), recursive=True)
        observer.start()
        logger.info("Watching '%s'", self.root)

    def stop(self) -> None:
        """Stop watching and release resources."""
        if self._observer:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None
        logger.info("Watcher stopped.")