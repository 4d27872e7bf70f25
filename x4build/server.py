"""Static file server for X4Build.

Serves the output directory to browsers during development.  Request
handling is split in two: :meth:`StaticFileServer.handle_request`
turns a method and URL into a :class:`Response`, and a small
``http.server`` handler writes that response to the socket.  No
caching headers are sent, so browsers always get fresh output.
"""

from __future__ import annotations

import logging
import posixpath
import ssl
import threading
from dataclasses import dataclass, field
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from urllib.parse import unquote, urlsplit

from x4build.config import ConfigurationError, Settings

logger = logging.getLogger(__name__)

INDEX_FILE = "index.html"
DEFAULT_MIME_TYPE = "text/plain"

MIME_TYPES: dict[str, str] = {
    ".ico": "image/x-icon",
    ".html": "text/html",
    ".js": "text/javascript",
    ".json": "application/json",
    ".css": "text/css",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".wav": "audio/wav",
    ".mp3": "audio/mpeg",
    ".svg": "image/svg+xml",
    ".pdf": "application/pdf",
    ".zip": "application/zip",
    ".doc": "application/msword",
    ".eot": "application/vnd.ms-fontobject",
    ".ttf": "application/x-font-ttf",
}

ALLOWED_METHODS = ("GET", "HEAD")


@dataclass
class Response:
    status: int = HTTPStatus.OK
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""


def content_type_for(path: Path) -> str:
    return MIME_TYPES.get(path.suffix.lower(), DEFAULT_MIME_TYPE)


def request_path(url: str) -> str:
    """Return the path component of a request target, without query or fragment."""
    if url.startswith("/"):
        return url.split("?", 1)[0].split("#", 1)[0]
    return urlsplit(url).path


def sanitize_url_path(url: str) -> str:
    """Return the URL's path as a relative, traversal-free POSIX path.

    ``/../../etc/hosts`` becomes ``etc/hosts``: normalizing against ``/``
    leaves no ``..`` segment that could climb above the served root.
    """
    path = unquote(request_path(url)).replace("\\", "/")
    return posixpath.normpath("/" + path).lstrip("/")


def build_ssl_context(settings: Settings) -> ssl.SSLContext | None:
    """Return a server TLS context in https mode, else None."""
    if not settings.secure:
        return None
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    try:
        context.load_cert_chain(certfile=str(settings.cert_file), keyfile=str(settings.key_file))
    except (ssl.SSLError, OSError) as exc:
        raise ConfigurationError(f"could not load certificate {settings.cert_path}: {exc}") from exc
    return context


class StaticFileServer:
    """
    Serves files below *root* over HTTP or HTTPS.

    Parameters
    ----------
    root : Path
        Directory to serve (the build output directory).
    host, port :
        Address to listen on.  Port 0 picks a free port.
    ssl_context : ssl.SSLContext, optional
        Wraps the listening socket for https.
    """

    def __init__(
        self,
        root: Path,
        host: str = "127.0.0.1",
        port: int = 3000,
        ssl_context: ssl.SSLContext | None = None,
    ):
        self.root = Path(root).resolve()
        self.host = host
        self.port = port
        self._ssl_context = ssl_context
        self._httpd: ThreadingHTTPServer | None = None
        self._thread: threading.Thread | None = None

    # ---- request handling ----

    def resolve(self, url: str) -> Path | None:
        """Map *url* to a file path under the root, or None if it would escape."""
        rel = sanitize_url_path(url)
        if "\x00" in rel:
            return None
        candidate = self.root / rel if rel and rel != "." else self.root
        try:
            if candidate.is_dir():
                candidate = candidate / INDEX_FILE
            real = candidate.resolve()
        except (OSError, RuntimeError):
            return None
        if not real.is_relative_to(self.root):
            logger.warning("Blocked request outside the served root: %s", url)
            return None
        return candidate

    def handle_request(self, method: str, url: str) -> Response:
        """Return the response for *method* on *url*."""
        if method.upper() not in ALLOWED_METHODS:
            return Response(
                status=HTTPStatus.METHOD_NOT_ALLOWED,
                headers={"Allow": ", ".join(ALLOWED_METHODS), "Content-Type": DEFAULT_MIME_TYPE},
                body=f"Method {method} not allowed.".encode(),
            )

        path = self.resolve(url)
        try:
            found = path is not None and path.exists()
        except OSError as exc:
            return self._error_response(path, exc)
        if not found:
            return Response(
                status=HTTPStatus.NOT_FOUND,
                headers={"Content-Type": DEFAULT_MIME_TYPE},
                body=f"File {request_path(url)} not found!".encode(),
            )

        try:
            data = path.read_bytes()
        except OSError as exc:
            return self._error_response(path, exc)

        return Response(
            headers={
                "Content-Type": content_type_for(path),
                "Content-Length": str(len(data)),
            },
            body=data,
        )

    @staticmethod
    def _error_response(path: Path, exc: OSError) -> Response:
        logger.warning("Could not read %s: %s", path, exc)
        return Response(
            status=HTTPStatus.INTERNAL_SERVER_ERROR,
            headers={"Content-Type": DEFAULT_MIME_TYPE},
            body=f"Error getting the file: {exc}.".encode(),
        )

    # ---- lifecycle ----

    def start(self) -> None:
        """Bind and serve on a background thread."""
        httpd = ThreadingHTTPServer((self.host, self.port), self._handler_class())
        httpd.daemon_threads = True
        if self._ssl_context is not None:
            httpd.socket = self._ssl_context.wrap_socket(httpd.socket, server_side=True)
        self._httpd = httpd
        self.port = httpd.server_address[1]
        self._thread = threading.Thread(
            target=httpd.serve_forever, daemon=True, name="StaticFileServer"
        )
        self._thread.start()
        scheme = "https" if self._ssl_context is not None else "http"
        logger.info("listening on %s://%s:%d", scheme, self.host, self.port)

    def stop(self) -> None:
        if self._httpd is not None:
            self._httpd.shutdown()
            self._httpd.server_close()
            self._httpd = None
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
        logger.info("Static server stopped.")

    def _handler_class(self) -> type[BaseHTTPRequestHandler]:
        server = self

        class _Handler(BaseHTTPRequestHandler):
            def _respond(self, head_only: bool = False) -> None:
                logger.info("> %s %s", self.command, self.path)
                response = server.handle_request(self.command, self.path)
                self.send_response(response.status)
                headers = dict(response.headers)
                headers.setdefault("Content-Length", str(len(response.body)))
                for name, value in headers.items():
                    self.send_header(name, value)
                self.end_headers()
                if not head_only:
                    self.wfile.write(response.body)

            def do_GET(self) -> None:
                self._respond()

            def do_HEAD(self) -> None:
                self._respond(head_only=True)

            def do_POST(self) -> None:
                self._respond()

            def do_PUT(self) -> None:
                self._respond()

            def do_DELETE(self) -> None:
                self._respond()

            def log_message(self, format: str, *args: object) -> None:
                logger.debug("%s - %s", self.address_string(), format % args)

        return _Handler
