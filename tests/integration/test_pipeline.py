from __future__ import annotations

from dataclasses import replace

import pytest

from x4build.app import App
from x4build.builder import BuildOrchestrator
from x4build.hmr import HmrServer
from x4build.server import StaticFileServer
from x4build.watcher import EventKind, WatchDispatcher, WatchEvent


class Client:
    def __init__(self) -> None:
        self.sent: list[str] = []

    def send(self, message: str) -> None:
        self.sent.append(message)


class OrderedBundler:
    """Fake bundler that records, in a shared log, when it ran."""

    def __init__(self, log: list[str], fake) -> None:
        self._log = log
        self._fake = fake

    def build(self, options):
        self._log.append("bundle")
        return self._fake.build(options)


@pytest.fixture
def pipeline(make_settings, fake_bundler):
    def _build(section=None):
        settings = make_settings(section or {})
        log: list[str] = []
        builder = BuildOrchestrator(settings, OrderedBundler(log, fake_bundler))
        hmr = HmrServer("127.0.0.1", 0)
        clients = [Client(), Client()]
        for c in clients:
            hmr.registry.add(c)
        dispatcher = WatchDispatcher(settings, builder, hmr, self_path=None)
        return settings, builder, dispatcher, clients, log

    return _build


def test_scss_change_rebuilds_and_reloads_css_on_all_clients(pipeline) -> None:
    settings, builder, dispatcher, clients, log = pipeline()

    dispatcher.on_event(WatchEvent(EventKind.CHANGED, settings.project_root / "styles" / "app.scss"))

    assert log == ["bundle"]
    assert builder.counter == 1
    assert [c.sent for c in clients] == [["reload-css"], ["reload-css"]]
    assert (settings.outdir / "app.js").exists()


def test_tsx_change_rebuilds_and_reloads_js(pipeline) -> None:
    settings, builder, dispatcher, clients, log = pipeline()

    dispatcher.on_event(WatchEvent(EventKind.CHANGED, settings.project_root / "src" / "app.tsx"))

    assert log == ["bundle"]
    assert [c.sent for c in clients] == [["reload-js"], ["reload-js"]]


def test_copy_rule_change_copies_whole_tree_once(pipeline) -> None:
    settings, builder, dispatcher, clients, log = pipeline(
        {"copy": [{"from": "static", "to": "assets/static"}]}
    )
    static = settings.project_root / "static"
    (static / "fonts").mkdir(parents=True)
    (static / "fonts" / "a.woff2").write_bytes(b"font")
    (static / "about.html").write_text("about", encoding="utf-8")

    dispatcher.on_event(WatchEvent(EventKind.CHANGED, static / "about.html"))

    target = settings.outdir / "assets" / "static"
    assert log == ["bundle"]
    assert (target / "fonts" / "a.woff2").read_bytes() == b"font"
    assert (target / "about.html").read_text(encoding="utf-8") == "about"
    assert [c.sent for c in clients] == [[], []]


def test_failed_build_still_broadcasts_and_counts(pipeline, fake_bundler) -> None:
    settings, builder, dispatcher, clients, log = pipeline()
    fake_bundler.errors = ["syntax error"]

    dispatcher.on_event(WatchEvent(EventKind.CHANGED, settings.project_root / "src" / "main.ts"))

    assert builder.counter == 1
    assert builder.stats.total_failed == 1
    assert [c.sent for c in clients] == [["reload-js"], ["reload-js"]]


def test_build_output_is_served(pipeline) -> None:
    settings, builder, dispatcher, clients, log = pipeline()
    builder.trigger()

    response = StaticFileServer(settings.outdir).handle_request("GET", "/app.js")

    assert response.status == 200
    assert response.body == b"// build 1\n"


def test_one_shot_app_exit_status(settings, fake_bundler) -> None:
    assert App(settings, bundler=fake_bundler).run() == 0
    assert (settings.outdir / "app.js").exists()

    fake_bundler.errors = ["nope"]
    assert App(settings, bundler=fake_bundler).run() == 1


def test_serving_app_builds_before_listening(make_settings, fake_bundler) -> None:
    settings = replace(make_settings(serve=True), port=0)
    app = App(settings, bundler=fake_bundler)
    try:
        assert app.start()
        assert app.server is not None
        assert app.server.root == settings.outdir
        assert (settings.outdir / "app.js").exists()
    finally:
        app.stop()
