from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from metacollector.src.broker import Broker
from metacollector.src.config import CollectorConfig, load_config
from metacollector.src.kube import KubeSource, build_clients, load_kube_configuration
from metacollector.src.manager import CollectorManager
from metacollector.src.metrics import METRICS
from metacollector.src.server import start_server

RUNTIME_VERSION = "0.1.0"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging(level: str) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logging.root.handlers.clear()
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, level, logging.INFO))
    # The watch stream logs every chunk at DEBUG; keep it quiet unless asked.
    logging.getLogger("urllib3").setLevel(max(logging.root.level, logging.INFO))


def build_manager(config: CollectorConfig, broker: Broker) -> CollectorManager:
    load_kube_configuration()
    core_api, apps_api = build_clients()
    return CollectorManager(
        source=KubeSource(core_api=core_api, apps_api=apps_api),
        broker=broker,
        kinds=config.kinds,
        workers_per_collector=config.workers_per_collector,
        watch_timeout_seconds=config.watch_timeout_seconds,
    )


def main() -> None:
    """Collector entrypoint: configure logging, start the server, and run every collector."""
    config = load_config()
    configure_logging(config.log_level)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    broker = Broker(queue_size=config.subscriber_queue_size)
    manager = build_manager(config, broker)

    shutdown_event = threading.Event()
    server = start_server(
        ready=manager.ready,
        broker=broker,
        port=config.server_port,
        stop=shutdown_event,
    )

    def _handle_signal(signum: int, frame: object) -> None:
        logging.getLogger(__name__).info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    try:
        manager.run(shutdown_event)
    finally:
        server.shutdown()
    logging.getLogger(__name__).info("Collector stopped")


if __name__ == "__main__":
    main()
