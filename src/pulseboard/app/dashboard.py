"""Read-only dashboard HTTP server: JSON snapshot APIs and a server-sent-event stream.

Routes:
    GET  /health          liveness payload
    GET  /api/status      current dashboard snapshot
    GET  /api/metrics     latency averages and recent samples
    GET  /api/stream      ``text/event-stream`` of ``full_sync`` envelopes
    POST /api/refresh     rebuild the snapshot immediately
"""

from __future__ import annotations

import json
import queue
import threading
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any
from urllib.parse import urlparse

from pulseboard.app.api import (
    Runtime,
    api_health,
    api_metrics,
    api_refresh,
    api_status,
)
from pulseboard.app.publisher import Envelope
from pulseboard.config.logging import logger

STREAM_QUEUE_SIZE = 16
KEEPALIVE_SECONDS = 15.0
STREAM_EVENT = "status_update"
READ_ONLY_MESSAGE = "Dashboard is read-only."

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
}


def format_sse(event: str, data: Any) -> bytes:
    """Encode one server-sent event frame."""
    body = json.dumps(data, ensure_ascii=True, default=str)
    return f"event: {event}\ndata: {body}\n\n".encode("utf-8")


def format_sse_comment(text: str) -> bytes:
    """Encode an SSE comment line, used as a keep-alive."""
    return f": {text}\n\n".encode("utf-8")


class DashboardServer(ThreadingHTTPServer):
    """Threading HTTP server bound to one pipeline ``Runtime``."""

    daemon_threads = True

    def __init__(self, address: tuple[str, int], runtime: Runtime) -> None:
        self.runtime = runtime
        self.stopping = threading.Event()
        super().__init__(address, DashboardHandler)

    def shutdown(self) -> None:
        """Release open streams, then stop the serve loop."""
        self.stopping.set()
        super().shutdown()


class DashboardHandler(BaseHTTPRequestHandler):
    """HTTP handler for dashboard JSON APIs and the event stream."""

    server_version = "Pulseboard/0.1"
    server: DashboardServer

    def log_message(self, fmt: str, *args: object) -> None:  # noqa: A003
        """Route request logs through project logger."""
        logger.debug("http access: " + fmt, *args)

    def _cors(self) -> None:
        for name, value in CORS_HEADERS.items():
            self.send_header(name, value)

    def _json(self, payload: dict | list, status: int = HTTPStatus.OK) -> None:
        """Write JSON response with status code."""
        body = json.dumps(payload, ensure_ascii=True, default=str).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self._cors()
        self.end_headers()
        self.wfile.write(body)

    def _error(self, status: int, message: str) -> None:
        """Write standard JSON error payload."""
        self._json({"error": message}, status=status)

    def _write(self, chunk: bytes) -> bool:
        """Write and flush; return False once the client is gone."""
        try:
            self.wfile.write(chunk)
            self.wfile.flush()
        except (BrokenPipeError, ConnectionResetError, OSError):
            return False
        return True

    def _api_stream(self) -> None:
        """Push every published envelope to this client until it disconnects."""
        publisher = self.server.runtime.publisher
        inbox: queue.Queue[Envelope] = queue.Queue(maxsize=STREAM_QUEUE_SIZE)

        self.send_response(HTTPStatus.OK)
        self.send_header("Content-Type", "text/event-stream")
        self.send_header("Cache-Control", "no-cache")
        self.send_header("Connection", "keep-alive")
        self._cors()
        self.end_headers()

        # A full queue raises queue.Full, which makes the publisher drop us.
        subscription = publisher.subscribe(inbox.put_nowait)
        try:
            while subscription.active and not self.server.stopping.is_set():
                try:
                    envelope = inbox.get(timeout=KEEPALIVE_SECONDS)
                except queue.Empty:
                    if not self._write(format_sse_comment("keep-alive")):
                        break
                    continue
                if not self._write(format_sse(STREAM_EVENT, envelope)):
                    break
        finally:
            publisher.unsubscribe(subscription)
        self.close_connection = True

    def _handle_api_get(self, path: str) -> None:
        """Dispatch GET API routes to the matching handler."""
        runtime = self.server.runtime
        handlers = {
            "/health": lambda: self._json(api_health()),
            "/api/health": lambda: self._json(api_health()),
            "/api/status": lambda: self._json(api_status(runtime)),
            "/api/metrics": lambda: self._json(api_metrics(runtime)),
            "/api/stream": self._api_stream,
        }
        handler = handlers.get(path)
        if handler is None:
            self._error(HTTPStatus.NOT_FOUND, "Not found")
            return
        handler()

    def do_OPTIONS(self) -> None:  # noqa: N802
        """Answer CORS preflight requests."""
        self.send_response(HTTPStatus.NO_CONTENT)
        self._cors()
        self.send_header("Content-Length", "0")
        self.end_headers()

    def do_GET(self) -> None:  # noqa: N802
        """Serve API routes for GET requests."""
        path = urlparse(self.path).path.rstrip("/") or "/"
        self._handle_api_get(path)

    def do_POST(self) -> None:  # noqa: N802
        """Only the refresh endpoint accepts POST."""
        path = urlparse(self.path).path.rstrip("/") or "/"
        if path == "/api/refresh":
            self._json(api_refresh(self.server.runtime))
            return
        self._error(HTTPStatus.METHOD_NOT_ALLOWED, "Method not allowed")

    def do_PUT(self) -> None:  # noqa: N802
        """Reject mutating PUT requests."""
        self._error(HTTPStatus.METHOD_NOT_ALLOWED, READ_ONLY_MESSAGE)

    def do_PATCH(self) -> None:  # noqa: N802
        """Reject mutating PATCH requests."""
        self._error(HTTPStatus.METHOD_NOT_ALLOWED, READ_ONLY_MESSAGE)

    def do_DELETE(self) -> None:  # noqa: N802
        """Reject mutating DELETE requests."""
        self._error(HTTPStatus.METHOD_NOT_ALLOWED, READ_ONLY_MESSAGE)


def create_dashboard_server(
    runtime: Runtime, host: str | None = None, port: int | None = None
) -> DashboardServer:
    """Bind the dashboard server; the caller runs ``serve_forever``.

    Raises ``OSError`` when the address cannot be bound.
    """
    bind_host = host or runtime.config.server_host or "127.0.0.1"
    bind_port = int(port or runtime.config.server_port or 3034)
    httpd = DashboardServer((bind_host, bind_port), runtime)
    logger.info("Pulseboard dashboard running at http://{}:{}/", bind_host, bind_port)
    return httpd
