from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from metacollector.src.resources import ALL_KINDS, normalize_kind


class ConfigError(RuntimeError):
    """Raised when the collector configuration is invalid."""


@dataclass(frozen=True)
class CollectorConfig:
    """Immutable collector configuration loaded at startup.

    Attributes:
        kinds:                  Resource kinds to collect (``COLLECTORS``).
        server_port:            Port of the health/metrics/subscribe server.
        workers_per_collector:  Reconcile worker threads per kind.
        subscriber_queue_size:  Events buffered per subscriber before drops.
        watch_timeout_seconds:  Server-side timeout of each watch request.
        log_level:              Root logger level name.
    """

    kinds: tuple[str, ...] = ALL_KINDS
    server_port: int = 8080
    workers_per_collector: int = 2
    subscriber_queue_size: int = 1000
    watch_timeout_seconds: int = 300
    log_level: str = "INFO"


def env_int(
    values: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = values.get(name)
    if raw is None or not raw.strip():
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def parse_kinds(raw: str | None) -> tuple[str, ...]:
    """Parse ``COLLECTORS`` (``deployment,pod``) into canonical kind names, preserving order."""
    if raw is None or not raw.strip():
        return ALL_KINDS
    kinds: list[str] = []
    for part in raw.split(","):
        if not part.strip():
            continue
        try:
            kind = normalize_kind(part)
        except ValueError as exc:
            raise ConfigError(str(exc)) from exc
        if kind not in kinds:
            kinds.append(kind)
    if not kinds:
        raise ConfigError("COLLECTORS must name at least one resource kind")
    return tuple(kinds)


def load_config(env: Mapping[str, str] | None = None) -> CollectorConfig:
    """Load collector config from the environment.

    Environment variables (with defaults):
        ``COLLECTORS``:             comma-separated kinds (all kinds).
        ``SERVER_PORT``:            HTTP server port (``8080``).
        ``WORKERS_PER_COLLECTOR``:  reconcile workers per kind (``2``).
        ``SUBSCRIBER_QUEUE_SIZE``:  per-node buffered events (``1000``).
        ``WATCH_TIMEOUT_SECONDS``:  watch request timeout (``300``).
        ``LOG_LEVEL``:              logging level (``INFO``).
    """
    values = env if env is not None else os.environ

    return CollectorConfig(
        kinds=parse_kinds(values.get("COLLECTORS")),
        server_port=env_int(values, "SERVER_PORT", 8080, minimum=0, maximum=65535),
        workers_per_collector=env_int(values, "WORKERS_PER_COLLECTOR", 2, minimum=1),
        subscriber_queue_size=env_int(values, "SUBSCRIBER_QUEUE_SIZE", 1000, minimum=1),
        watch_timeout_seconds=env_int(values, "WATCH_TIMEOUT_SECONDS", 300, minimum=1),
        log_level=(values.get("LOG_LEVEL") or "INFO").strip().upper(),
    )
