from __future__ import annotations

import json
import logging
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any
from urllib.parse import unquote

from prometheus_client import generate_latest

from metacollector.src.broker import Broker

SUBSCRIBE_PREFIX = "/subscribe/"


class _CollectorHandler(BaseHTTPRequestHandler):
    """HTTP handler serving probes, Prometheus metrics and node subscriber streams.

    ``GET /subscribe/<node>`` registers a stream for ``<node>``, asks every
    collector to replay its cache to it, then writes one JSON event per line
    until the client disconnects or the server shuts down. Idle streams get
    an empty line every ``heartbeat_seconds`` so dead peers are noticed;
    clients skip blank lines.
    """

    ready_event: threading.Event
    stop_event: threading.Event
    broker: Broker
    poll_seconds: float = 1.0
    heartbeat_seconds: float = 15.0

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
            if self.ready_event.is_set():
                self._respond(200, b"ready=true")
            else:
                self._respond(503, b"ready=false")
        elif self.path == "/metrics":
            self._respond(200, generate_latest(), "text/plain; version=0.0.4; charset=utf-8")
        elif self.path.startswith(SUBSCRIBE_PREFIX):
            node = unquote(self.path[len(SUBSCRIBE_PREFIX) :]).strip("/")
            if not node or "/" in node:
                self._respond(400, b"node name required")
                return
            self._stream(node)
        else:
            self._respond(404)

    def _stream(self, node: str) -> None:
        logger = logging.getLogger("metacollector.server")
        stream = self.broker.register_stream(node)
        try:
            self.send_response(200)
            self.send_header("Content-Type", "application/x-ndjson")
            self.send_header("Cache-Control", "no-cache")
            self.end_headers()
            self.wfile.flush()
            logger.info("Node %s subscribed from %s", node, self.client_address[0])
            self.broker.on_subscriber_join(node)

            last_write = time.monotonic()
            while not self.stop_event.is_set() and not stream.closed:
                event = stream.get(timeout=self.poll_seconds)
                if event is not None:
                    self.wfile.write(json.dumps(event.to_dict()).encode() + b"\n")
                elif time.monotonic() - last_write >= self.heartbeat_seconds:
                    self.wfile.write(b"\n")
                else:
                    continue
                self.wfile.flush()
                last_write = time.monotonic()
        except (BrokenPipeError, ConnectionResetError):
            logger.info("Node %s disconnected", node)
        finally:
            self.broker.unregister_stream(node, stream)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("metacollector.server").debug(fmt, *args)


def make_handler(
    ready: threading.Event, broker: Broker, stop: threading.Event
) -> type[_CollectorHandler]:
    """Return a handler class bound to the given readiness event, broker and stop signal.

    Uses class-level attribute binding so the stdlib HTTPServer can
    instantiate handlers without constructor arguments.
    """

    class _BoundCollectorHandler(_CollectorHandler):
        ready_event = ready
        stop_event = stop

    _BoundCollectorHandler.broker = broker
    return _BoundCollectorHandler


def start_server(
    ready: threading.Event, broker: Broker, port: int, stop: threading.Event
) -> ThreadingHTTPServer:
    """Start the collector HTTP server in a daemon thread and return it."""
    handler_class = make_handler(ready, broker, stop)
    server = ThreadingHTTPServer(("0.0.0.0", port), handler_class)  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, daemon=True).start()
    logging.getLogger(__name__).info("Collector server listening on :%d", port)
    return server
