from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException

from metacollector.src.metrics import METRICS


class ResourceWatcher:
    """List-then-watch loop for one resource kind.

    The watcher does not interpret objects; it hands every listing to
    ``on_list`` and every watch event to ``on_event``. Collectors use these
    callbacks to enqueue reconcile keys, the pod watcher uses them to keep
    the pod index current.

    Loop behaviour:

    1. Retries the initial list with jittered exponential backoff so
       transient API startup failures do not crash-loop the process.
    2. Opens a streaming watch from the list's ``resourceVersion``.
    3. On ``410 Gone`` (etcd compaction), re-lists and resumes.
    4. On transient errors, backs off with jitter, capped at 30 s.
    5. ``401`` / ``403`` are configuration errors (RBAC) and end the loop
       immediately with a clear log message.
    """

    def __init__(
        self,
        name: str,
        list_fn: Callable[..., Any],
        on_list: Callable[[list[Any]], None],
        on_event: Callable[[str, Any], None],
        timeout_seconds: int = 300,
        logger: logging.Logger | None = None,
    ) -> None:
        self.name = name
        self.list_fn = list_fn
        self.on_list = on_list
        self.on_event = on_event
        self.timeout_seconds = timeout_seconds
        self.logger = logger or logging.getLogger(f"{__name__}.{name}")

        self.ready = threading.Event()
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _list(self) -> str | None:
        """List every object, hand them to ``on_list`` and return the list resourceVersion."""
        listing = self.list_fn()
        items = list(getattr(listing, "items", None) or [])
        self.on_list(items)
        return getattr(getattr(listing, "metadata", None), "resource_version", None)

    def _access_denied(self, exc: ApiException, phase: str) -> bool:
        if exc.status not in {401, 403}:
            return False
        self.logger.error(
            "Kubernetes API access denied during %s of %s (status=%s). "
            "Check RBAC and service account permissions.",
            phase,
            self.name,
            exc.status,
        )
        self.ready.clear()
        return True

    def _backoff(self, stop: threading.Event, backoff_seconds: int) -> int:
        jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
        stop.wait(timeout=jittered)
        return min(backoff_seconds * 2, 30)

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()

        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                resource_version = self._list()
                self.ready.set()
                self.logger.info(
                    "Starting %s watch from resourceVersion %s", self.name, resource_version
                )
                break
            except ApiException as exc:
                if self._access_denied(exc, "initial list"):
                    return
                self.logger.exception("Initial %s list failed", self.name)
                METRICS.watch_errors_total.labels(collector=self.name).inc()
            except Exception:
                self.logger.exception("Unexpected error during initial %s list", self.name)
                METRICS.watch_errors_total.labels(collector=self.name).inc()
            startup_backoff_seconds = self._backoff(stop, startup_backoff_seconds)

        if self._should_stop(stop):
            self.ready.clear()
            return

        backoff_seconds = 1
        watch_stream_count = 0

        while not self._should_stop(stop):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.labels(collector=self.name).inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self.list_fn,
                    resource_version=resource_version,
                    timeout_seconds=self.timeout_seconds,
                )

                for event in stream:
                    if self._should_stop(stop):
                        break

                    obj = event.get("object")
                    if obj is None:
                        continue

                    metadata = getattr(obj, "metadata", None)
                    if metadata and metadata.resource_version:
                        resource_version = metadata.resource_version

                    event_type = str(event.get("type", ""))
                    METRICS.received_events_total.labels(
                        collector=self.name, type=event_type
                    ).inc()
                    self.on_event(event_type, obj)

                backoff_seconds = 1
            except ApiException as exc:
                # 410 Gone: the resourceVersion was compacted away. Re-list to
                # catch up on anything missed and resume from the new version.
                if exc.status == 410:
                    self.logger.warning("%s watch resource version expired, re-listing", self.name)
                    try:
                        resource_version = self._list()
                    except ApiException as relist_exc:
                        if self._access_denied(relist_exc, "410 re-list"):
                            return
                        self.logger.exception("Failed to re-list %s after 410", self.name)
                        METRICS.watch_errors_total.labels(collector=self.name).inc()
                        resource_version = None
                    except Exception:
                        self.logger.exception("Unexpected error re-listing %s after 410", self.name)
                        METRICS.watch_errors_total.labels(collector=self.name).inc()
                        resource_version = None
                    continue

                if self._access_denied(exc, "watch"):
                    METRICS.watch_errors_total.labels(collector=self.name).inc()
                    return

                self.logger.exception("Kubernetes API watch error for %s", self.name)
                METRICS.watch_errors_total.labels(collector=self.name).inc()
                backoff_seconds = self._backoff(stop, backoff_seconds)
            except Exception:
                self.logger.exception("Unexpected %s watch error", self.name)
                METRICS.watch_errors_total.labels(collector=self.name).inc()
                backoff_seconds = self._backoff(stop, backoff_seconds)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        self.ready.clear()
