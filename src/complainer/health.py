"""HTTP health check endpoint reporting the monitor's last cluster error."""

from __future__ import annotations

import logging
import os
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Optional, Tuple


logger = logging.getLogger(__name__)

HEALTHY_BODY = "I am mostly okay, thanks.\n"


def health_status(monitor) -> Tuple[int, str]:
    """Get the HTTP status and body describing the monitor's health."""
    error = monitor.error
    if error is None:
        return 200, HEALTHY_BODY
    return 500, f"Something is fishy: {error}\n"


def parse_listen_address(listen: str) -> Tuple[str, int]:
    """
    Parse a ``host:port`` listen address.

    Example:
        >>> parse_listen_address(":8080")
        ('', 8080)
    """
    host, sep, port = listen.rpartition(":")
    if not sep:
        host, port = "", listen
    try:
        return host, int(port)
    except ValueError as exc:
        raise ValueError(f"Invalid listen address {listen!r}") from exc


def resolve_listen_address(listen: Optional[str]) -> Optional[str]:
    """Use the configured address, falling back to ``:$PORT``."""
    if listen:
        return listen
    port = os.environ.get("PORT")
    if port:
        return f":{port}"
    return None


class HealthServer:
    """Serves GET /health from a daemon thread."""

    def __init__(self, monitor, listen: str):
        self.monitor = monitor
        self.address = parse_listen_address(listen)
        self._server: Optional[ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    def _handler_class(self):
        monitor = self.monitor

        class HealthCheckHandler(BaseHTTPRequestHandler):
            def do_GET(self):
                if self.path.split("?", 1)[0] != "/health":
                    self.send_error(404)
                    return
                status, body = health_status(monitor)
                payload = body.encode("utf-8")
                self.send_response(status)
                self.send_header("Content-Type", "text/plain; charset=utf-8")
                self.send_header("Content-Length", str(len(payload)))
                self.end_headers()
                self.wfile.write(payload)

            def log_message(self, format, *args):
                logger.debug("health: " + format, *args)

        return HealthCheckHandler

    @property
    def port(self) -> int:
        """Bound port, useful when listening on port 0."""
        if self._server is None:
            return self.address[1]
        return self._server.server_address[1]

    def start(self) -> None:
        self._server = ThreadingHTTPServer(self.address, self._handler_class())
        self._thread = threading.Thread(
            target=self._server.serve_forever,
            daemon=True,
            name="HealthCheckServer",
        )
        self._thread.start()
        logger.info("Serving http on %s:%d", self.address[0] or "0.0.0.0", self.port)

    def stop(self) -> None:
        if self._server is not None:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
