"""Live-reload (HMR) broadcast server for X4Build.

Browsers running the injected client connect over a websocket that
negotiates the ``hmr`` sub-protocol.  After every build the dispatcher
broadcasts ``reload-css`` or ``reload-js`` to all registered clients.
"""

from __future__ import annotations

import logging
import ssl
import threading
from typing import Any, Protocol

from websockets.exceptions import ConnectionClosed, ConnectionClosedError
from websockets.sync.server import Server, ServerConnection, serve

logger = logging.getLogger(__name__)

SUBPROTOCOL = "hmr"

# Close code sent to clients that did not negotiate the sub-protocol
_CLOSE_PROTOCOL_ERROR = 1002


class Connection(Protocol):
    """The part of a websocket connection the registry relies on."""

    def send(self, message: str) -> Any: ...


class ConnectionRegistry:
    """Thread-safe set of live-reload connections."""

    def __init__(self) -> None:
        self._connections: set[Connection] = set()
        self._lock = threading.Lock()

    def add(self, connection: Connection) -> None:
        with self._lock:
            self._connections.add(connection)

    def remove(self, connection: Connection) -> None:
        with self._lock:
            self._connections.discard(connection)

    def snapshot(self) -> list[Connection]:
        with self._lock:
            return list(self._connections)

    def __contains__(self, connection: object) -> bool:
        with self._lock:
            return connection in self._connections

    def __len__(self) -> int:
        with self._lock:
            return len(self._connections)


class HmrServer:
    """
    Websocket server that fans reload messages out to browsers.

    Parameters
    ----------
    host : str
        Interface to bind.
    port : int
        Port to bind (the serving port + 10 in normal use; 0 picks a free one).
    ssl_context : ssl.SSLContext, optional
        Enables ``wss:`` when the static server runs in https mode.
    """

    def __init__(
        self,
        host: str,
        port: int,
        ssl_context: ssl.SSLContext | None = None,
        registry: ConnectionRegistry | None = None,
    ):
        self.host = host
        self.port = port
        self._ssl_context = ssl_context
        self.registry = registry or ConnectionRegistry()
        self._server: Server | None = None
        self._thread: threading.Thread | None = None

    # ---- lifecycle ----

    def start(self) -> None:
        """Bind the socket and serve connections on a background thread."""
        server = serve(
            self._handle,
            self.host,
            self.port,
            subprotocols=[SUBPROTOCOL],
            ssl=self._ssl_context,
        )
        self._server = server
        self.port = server.socket.getsockname()[1]
        self._thread = threading.Thread(
            target=server.serve_forever, daemon=True, name="HmrServer"
        )
        self._thread.start()
        logger.info("hmr server is running on port %d", self.port)

    def stop(self) -> None:
        if self._server is not None:
            self._server.shutdown()
            self._server = None
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
        logger.info("hmr server stopped.")

    @property
    def client_count(self) -> int:
        return len(self.registry)

    # ---- connections ----

    def _handle(self, connection: ServerConnection) -> None:
        if connection.subprotocol != SUBPROTOCOL:
            logger.debug("Rejected connection without the '%s' sub-protocol", SUBPROTOCOL)
            connection.close(_CLOSE_PROTOCOL_ERROR, "hmr sub-protocol required")
            return

        self.registry.add(connection)
        logger.debug("Client connected from %s", connection.remote_address)
        try:
            for message in connection:
                logger.info("received: %s", message)
        except ConnectionClosedError as exc:
            logger.debug("Client connection error: %s", exc)
        finally:
            self.registry.remove(connection)
            logger.debug("Client disconnected from %s", connection.remote_address)

    # ---- broadcast ----

    def broadcast(self, message: str) -> int:
        """Send *message* to every registered client; return how many got it."""
        delivered = 0
        for connection in self.registry.snapshot():
            try:
                connection.send(message)
                delivered += 1
            except (ConnectionClosed, OSError, RuntimeError) as exc:
                logger.warning("Dropping live-reload client after send failure: %s", exc)
                self.registry.remove(connection)
        return delivered
