from __future__ import annotations

import json
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from x4build.bundler import BundleResult, BundlerOptions
from x4build.config import Settings, resolve_settings


class FakeBundler:
    """Writes a tiny bundle into the requested outdir and records every call."""

    def __init__(self) -> None:
        self.calls: list[BundlerOptions] = []
        self.errors: list[str] = []
        self.fail_pattern: list[bool] = []
        self.gate: threading.Event | None = None
        self.started = threading.Event()
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def build(self, options: BundlerOptions) -> BundleResult:
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            self.calls.append(options)
            number = len(self.calls)
        try:
            self.started.set()
            if self.gate is not None:
                self.gate.wait(timeout=5)
            fail = self.fail_pattern.pop(0) if self.fail_pattern else bool(self.errors)
            if fail:
                return BundleResult(errors=list(self.errors) or ["boom"])
            options.outdir.mkdir(parents=True, exist_ok=True)
            (options.outdir / "app.js").write_text(f"// build {number}\n", encoding="utf-8")
            return BundleResult()
        finally:
            with self._lock:
                self.active -= 1


def write_manifest(root: Path, section: dict[str, Any] | None = None) -> Path:
    path = root / "package.json"
    package: dict[str, Any] = {"name": "demo", "version": "1.0.0"}
    if section is not None:
        package["x4build"] = section
    path.write_text(json.dumps(package), encoding="utf-8")
    return path


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def project(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    (root / "src").mkdir(parents=True)
    (root / "src" / "main.ts").write_text("console.log('hi')\n", encoding="utf-8")
    write_manifest(root, {"entryPoints": ["src/main.ts"], "outdir": "bin"})
    return root


@pytest.fixture
def make_settings(project: Path) -> Callable[..., Settings]:
    def _make(section: dict[str, Any] | None = None, **options: Any) -> Settings:
        if section is not None:
            write_manifest(project, {"entryPoints": ["src/main.ts"], "outdir": "bin", **section})
        return resolve_settings(project, **options)

    return _make


@pytest.fixture
def settings(make_settings: Callable[..., Settings]) -> Settings:
    return make_settings()


@pytest.fixture
def fake_bundler() -> FakeBundler:
    return FakeBundler()


@pytest.fixture
def wait() -> Callable[..., bool]:
    return wait_until
