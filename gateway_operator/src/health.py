from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import generate_latest


class _HealthHandler(BaseHTTPRequestHandler):
    """HTTP handler serving liveness, readiness, and Prometheus metrics endpoints."""

    ready_event: threading.Event
    queue_depth: Callable[[], int]

    def _respond(
        self, status: int, body: bytes = b"", content_type: str | None = None
    ) -> None:
        """Send an HTTP response with optional body and content type."""
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.end_headers()
        if body:
            self.wfile.write(body)

    def do_GET(self) -> None:
        if self.path == "/healthz":
            self._respond(200, b"ok")
        elif self.path == "/readyz":
            depth = self.queue_depth()
            if self.ready_event.is_set():
                self._respond(200, f"ready=true queue_depth={depth}".encode())
            else:
                self._respond(503, f"ready=false queue_depth={depth}".encode())
        elif self.path == "/metrics":
            self._respond(200, generate_latest(), "text/plain; version=0.0.4; charset=utf-8")
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("gateway_operator.health").debug(fmt, *args)


def make_health_handler(
    ready: threading.Event, queue_depth: Callable[[], int] = lambda: 0
) -> type[_HealthHandler]:
    """Return a handler class bound to the given readiness event and queue-depth probe.

    Uses class-level attribute binding so the stdlib HTTPServer can
    instantiate handlers without constructor arguments.
    """

    depth_probe = queue_depth

    class _BoundHealthHandler(_HealthHandler):
        ready_event = ready
        queue_depth = staticmethod(depth_probe)

    return _BoundHealthHandler


def start_health_server(
    ready: threading.Event, port: int, queue_depth: Callable[[], int] = lambda: 0
) -> ThreadingHTTPServer:
    """Start the health/metrics HTTP server in a daemon thread and return it."""
    handler_class = make_health_handler(ready, queue_depth)
    server = ThreadingHTTPServer(("0.0.0.0", port), handler_class)  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, daemon=True).start()
    logging.getLogger(__name__).info("Health server listening on :%d", port)
    return server
