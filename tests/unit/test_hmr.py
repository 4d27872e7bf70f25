from __future__ import annotations

from x4build.hmr import ConnectionRegistry, HmrServer


class FakeConnection:
    def __init__(self, fail: bool = False) -> None:
        self.sent: list[str] = []
        self.fail = fail

    def send(self, message: str) -> None:
        if self.fail:
            raise OSError("broken pipe")
        self.sent.append(message)


def test_registry_add_and_remove() -> None:
    registry = ConnectionRegistry()
    conn = FakeConnection()

    registry.add(conn)
    assert conn in registry
    assert len(registry) == 1

    registry.remove(conn)
    registry.remove(conn)
    assert conn not in registry
    assert len(registry) == 0


def test_broadcast_reaches_every_client() -> None:
    hmr = HmrServer("127.0.0.1", 0)
    clients = [FakeConnection(), FakeConnection()]
    for c in clients:
        hmr.registry.add(c)

    assert hmr.broadcast("reload-css") == 2
    assert [c.sent for c in clients] == [["reload-css"], ["reload-css"]]


def test_send_failure_is_isolated_and_drops_the_client() -> None:
    hmr = HmrServer("127.0.0.1", 0)
    good, bad = FakeConnection(), FakeConnection(fail=True)
    hmr.registry.add(good)
    hmr.registry.add(bad)

    assert hmr.broadcast("reload-js") == 1
    assert good.sent == ["reload-js"]
    assert bad not in hmr.registry

    bad.fail = False
    assert hmr.broadcast("reload-js") == 1
    assert bad.sent == []


def test_broadcast_without_clients_is_a_no_op() -> None:
    assert HmrServer("127.0.0.1", 0).broadcast("reload-css") == 0
