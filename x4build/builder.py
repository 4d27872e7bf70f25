"""
Build orchestrator for X4Build.

Single point of truth for "a build is happening".  Runs the bundler
into a staging directory, applies the copy rules there and, on
success, publishes every staged file into the output directory with
an atomic rename, so the static server never sees a half-written file.
Concurrent trigger requests are serialized: callers that arrive while
a build is in flight are coalesced into one follow-up build.
"""

from __future__ import annotations

import logging
import os
import shutil
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from x4build.bundler import Bundler, BundlerOptions, derive_options
from x4build.config import Settings

logger = logging.getLogger(__name__)

_HISTORY_LIMIT = 200


@dataclass
class BuildRecord:
    """Record of a single bundler run."""
    number: int
    started: float = 0.0
    finished: float = 0.0
    success: bool = False
    errors: list[str] = field(default_factory=list)
    copied: list[str] = field(default_factory=list)
    published_files: int = 0


@dataclass
class BuildStats:
    """Aggregated build statistics."""
    total_builds: int = 0
    total_failed: int = 0
    last_record: BuildRecord | None = None
    history: list[BuildRecord] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def record(self, rec: BuildRecord) -> None:
        with self._lock:
            self.history.append(rec)
            self.total_builds += 1
            if not rec.success:
                self.total_failed += 1
            self.last_record = rec
            if len(self.history) > _HISTORY_LIMIT:
                self.history = self.history[-_HISTORY_LIMIT:]


class BuildOrchestrator:
    """
    Serializes bundler runs and publishes their output.

    Parameters
    ----------
    settings : Settings
        Resolved project settings.
    bundler : Bundler
        Collaborator that compiles the entry points.
    on_build_complete : callable, optional
        Invoked with the BuildRecord after every bundler run.
    initial_count : int
        Starting value of the trigger counter.
    """

    def __init__(
        self,
        settings: Settings,
        bundler: Bundler,
        on_build_complete: Callable[[BuildRecord], None] | None = None,
        initial_count: int = 0,
    ):
        self.settings = settings
        self._bundler = bundler
        self._options: BundlerOptions = derive_options(settings)
        self._on_build_complete = on_build_complete
        self.stats = BuildStats()

        self._cond = threading.Condition()
        self._counter = initial_count
        self._in_flight = False
        # Highest trigger number whose changes are already in a finished build
        self._covered = initial_count
        self._last_record: BuildRecord | None = None

    @property
    def options(self) -> BundlerOptions:
        return self._options

    @property
    def counter(self) -> int:
        """Number of trigger calls so far (plus the initial count)."""
        with self._cond:
            return self._counter

    @property
    def in_flight(self) -> bool:
        with self._cond:
            return self._in_flight

    def trigger(self) -> BuildRecord:
        """Request a build and block until one that covers the request finishes."""
        with self._cond:
            self._counter += 1
            ticket = self._counter
            while self._in_flight:
                self._cond.wait()
            if self._covered >= ticket and self._last_record is not None:
                logger.debug("Trigger %d coalesced into a finished build", ticket)
                return self._last_record
            self._in_flight = True
            covers = self._counter

        rec = BuildRecord(number=covers)
        try:
            self._run(rec)
        finally:
            with self._cond:
                self._in_flight = False
                self._covered = covers
                self._last_record = rec
                self._cond.notify_all()

        self.stats.record(rec)
        if self._on_build_complete:
            try:
                self._on_build_complete(rec)
            except Exception:
                logger.exception("Error in on_build_complete callback")
        return rec

    # ---- one build ----

    def _run(self, rec: BuildRecord) -> None:
        logger.info("building (%d)...", rec.number)
        rec.started = time.time()
        staging = self.settings.staging_dir
        try:
            self._reset_staging(staging)
            result = self._bundler.build(self._options.with_outdir(staging))
            if not result.ok:
                rec.errors = list(result.errors)
                logger.error("build ended with %d errors", len(result.errors))
                for message in result.errors:
                    logger.error("  %s", message)
                logger.error("build failure, waiting for correction")
                return

            rec.copied = self._apply_copy_rules(staging)
            rec.published_files = self._publish(staging, self.settings.outdir)
            rec.success = True
            logger.info(
                "Build %d complete in %.2fs (%d files)",
                rec.number, time.time() - rec.started, rec.published_files,
            )
        except Exception as exc:
            rec.errors.append(str(exc))
            logger.exception("Unexpected error during build %d", rec.number)
        finally:
            rec.finished = time.time()
            shutil.rmtree(staging, ignore_errors=True)

    @staticmethod
    def _reset_staging(staging: Path) -> None:
        if staging.exists():
            shutil.rmtree(staging)
        staging.mkdir(parents=True)

    def _apply_copy_rules(self, root: Path) -> list[str]:
        """Mirror every existing copy-rule source under *root*."""
        copied = []
        for rule in self.settings.copy_rules:
            if not rule.source.exists():
                logger.debug("Copy source missing, skipped: %s", rule.source)
                continue
            dest = self.settings.copy_destination(rule, root)
            if rule.source.is_dir():
                shutil.copytree(rule.source, dest, dirs_exist_ok=True)
            else:
                dest.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(rule.source, dest)
            logger.info("Copied %s", rule.describe())
            copied.append(rule.destination)
        return copied

    @staticmethod
    def _publish(staging: Path, outdir: Path) -> int:
        """Move every staged file into *outdir*, one atomic rename per file."""
        count = 0
        outdir.mkdir(parents=True, exist_ok=True)
        for dirpath, _dirnames, filenames in os.walk(staging):
            rel = Path(dirpath).relative_to(staging)
            target_dir = outdir / rel
            if target_dir.exists() and not target_dir.is_dir():
                target_dir.unlink()
            target_dir.mkdir(parents=True, exist_ok=True)
            for name in filenames:
                target = target_dir / name
                if target.is_dir():
                    shutil.rmtree(target)
                os.replace(Path(dirpath) / name, target)
                count += 1
        return count
