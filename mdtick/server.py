"""Loopback HTTP endpoint that receives checkbox toggles from the preview."""

from __future__ import annotations

import base64
import logging
import threading
from enum import Enum
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import parse_qs, urlparse

from mdtick.documents import DocumentWorkspace
from mdtick.marking import MarkStatus, handle_mark_query
from mdtick.session import CheckboxSession

logger = logging.getLogger(__name__)

MARK_PATH = "/checkbox/mark"
# 1x1 transparent PNG; the preview loads it through an <img> beacon.
TRANSPARENT_PIXEL_PNG = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAQAAAC1HAwCAAAAC0lEQVR42mNkYAAAAAYAAjCB0C8AAAAASUVORK5CYII="
)

_REJECTION_BODIES = {
    MarkStatus.FORBIDDEN: b"Forbidden",
    MarkStatus.BAD_REQUEST: b"Bad request",
}


class ServerState(Enum):
    UNINITIALIZED = "uninitialized"
    LISTENING = "listening"
    DISPOSED = "disposed"


class _CheckboxHTTPServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, address: tuple[str, int], owner: CheckboxServer) -> None:
        self.owner = owner
        super().__init__(address, _CheckboxRequestHandler)


class _CheckboxRequestHandler(BaseHTTPRequestHandler):
    server_version = "mdtick/1.0"
    server: _CheckboxHTTPServer

    def log_message(self, fmt: str, *args: object) -> None:
        logger.debug("%s - %s", self.address_string(), fmt % args)

    def do_GET(self) -> None:  # noqa: N802 - BaseHTTPRequestHandler
        try:
            parsed = urlparse(self.path)
        except Exception:
            self._send_text(400, b"Bad request")
            return

        if parsed.path != MARK_PATH:
            self._send_text(404, b"Not found")
            return

        query = parse_qs(parsed.query, keep_blank_values=True)
        owner = self.server.owner
        outcome = handle_mark_query(query, owner.documents, owner.session)
        if outcome.reported:
            self._send_text(outcome.http_status, _REJECTION_BODIES.get(outcome.status, b""))
            return

        # Answer with the pixel whatever happened to the edit: the caller
        # only needs the image request to complete.
        self.send_response(200)
        self.send_header("Content-Type", "image/png")
        self.send_header("Cache-Control", "no-store")
        self.send_header("Content-Length", str(len(TRANSPARENT_PIXEL_PNG)))
        self.end_headers()
        self._write_body(TRANSPARENT_PIXEL_PNG)

    def _send_text(self, status: int, body: bytes) -> None:
        self.send_response(status)
        self.send_header("Content-Type", "text/plain; charset=utf-8")
        self.send_header("Cache-Control", "no-store")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self._write_body(body)

    def _write_body(self, body: bytes) -> None:
        try:
            self.wfile.write(body)
        except OSError:
            # Preview page may have been torn down before the response arrived.
            logger.debug("client went away before the response was written")


class CheckboxServer:
    """One loopback endpoint per session: uninitialized, listening, disposed."""

    def __init__(
        self,
        session: CheckboxSession,
        documents: DocumentWorkspace,
        host: str = "127.0.0.1",
        port: int = 0,
    ) -> None:
        self.session = session
        self.documents = documents
        self.host = host
        self._requested_port = port
        self._state = ServerState.UNINITIALIZED
        self._httpd: _CheckboxHTTPServer | None = None
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()

    @property
    def state(self) -> ServerState:
        return self._state

    @property
    def is_listening(self) -> bool:
        return self._state is ServerState.LISTENING

    @property
    def nonce(self) -> str:
        return self.session.token

    @property
    def port(self) -> int | None:
        if self._httpd is None or not self.is_listening:
            return None
        return int(self._httpd.server_port)

    @property
    def base_url(self) -> str | None:
        port = self.port
        if port is None:
            return None
        return f"http://{self.host}:{port}"

    def start(self) -> int:
        """Bind (port 0 lets the OS choose) and serve on a daemon thread."""
        with self._lock:
            if self._state is not ServerState.UNINITIALIZED:
                raise RuntimeError(f"checkbox server cannot start from state {self._state.value}")
            httpd = _CheckboxHTTPServer((self.host, self._requested_port), self)
            thread = threading.Thread(target=httpd.serve_forever, name="mdtick-checkbox-server", daemon=True)
            self._httpd = httpd
            self._thread = thread
            self._state = ServerState.LISTENING
            thread.start()
        logger.info("Checkbox endpoint listening on %s:%d", self.host, self.port)
        return int(httpd.server_port)

    def dispose(self) -> None:
        """Stop serving and release the socket; calling it again is a no-op."""
        with self._lock:
            if self._state is ServerState.DISPOSED:
                return
            previous = self._state
            self._state = ServerState.DISPOSED
            httpd, thread = self._httpd, self._thread
            self._httpd = None
            self._thread = None
        if previous is not ServerState.LISTENING or httpd is None:
            return
        try:
            httpd.shutdown()
        finally:
            httpd.server_close()
        if thread is not None:
            thread.join(timeout=2.0)
        logger.info("Checkbox endpoint disposed")

    def __enter__(self) -> CheckboxServer:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.dispose()
