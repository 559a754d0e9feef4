from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from typing import Any

from metacollector.src.broker import Broker
from metacollector.src.collector import MetaCollector
from metacollector.src.kube import KubeSource
from metacollector.src.podindex import PodIndex, PodRecord
from metacollector.src.resolver import ServiceResolver, resolver_for
from metacollector.src.resources import POD, ResourceKey
from metacollector.src.watcher import ResourceWatcher
from metacollector.src.workqueue import WorkQueue, run_worker

LOGGER = logging.getLogger(__name__)

RECONCILE_EVENT_TYPES = frozenset({"ADDED", "MODIFIED", "DELETED"})


class CollectorManager:
    """Wires watchers, work queues and collectors together and runs them as threads.

    * One pod watcher keeps the :class:`PodIndex` current and translates pod
      changes into reconcile keys for every collector (a new pod on a node
      must reach that node's namespace, deployment, services, ...).
    * One watcher per non-pod kind enqueues the keys of changed objects.
    * Each collector gets its own work queue, ``workers_per_collector``
      worker threads and a replay-loop thread.

    Workers only start once the pod index finished its first listing, so
    early reconciles do not fail on an unsynced index.
    """

    def __init__(
        self,
        source: KubeSource,
        broker: Broker,
        kinds: Iterable[str],
        pod_index: PodIndex | None = None,
        workers_per_collector: int = 2,
        watch_timeout_seconds: int = 300,
        join_timeout_seconds: float = 10.0,
    ) -> None:
        self.source = source
        self.broker = broker
        self.pod_index = pod_index if pod_index is not None else PodIndex()
        self.workers_per_collector = workers_per_collector
        self.join_timeout_seconds = join_timeout_seconds
        self.ready = threading.Event()

        self.collectors: dict[str, MetaCollector] = {}
        self.queues: dict[str, WorkQueue] = {}
        for kind in kinds:
            collector = MetaCollector(
                kind=kind,
                source=source,
                resolver=resolver_for(kind, self.pod_index),
                broker=broker,
            )
            self.collectors[kind] = collector
            self.queues[kind] = WorkQueue(collector.name)

        self.watchers: list[ResourceWatcher] = [
            ResourceWatcher(
                name="pod-index",
                list_fn=source.list_function(POD),
                on_list=self.sync_pods,
                on_event=self.handle_pod_event,
                timeout_seconds=watch_timeout_seconds,
            )
        ]
        for kind, collector in self.collectors.items():
            if kind == POD:
                continue
            self.watchers.append(
                ResourceWatcher(
                    name=collector.name,
                    list_fn=source.list_function(kind),
                    on_list=self._list_handler(kind),
                    on_event=self._event_handler(kind),
                    timeout_seconds=watch_timeout_seconds,
                )
            )

    def enqueue(self, kind: str, key: ResourceKey) -> None:
        work_queue = self.queues.get(kind)
        if work_queue is not None:
            work_queue.add(key)

    def _list_handler(self, kind: str) -> Callable[[list[Any]], None]:
        def on_list(items: list[Any]) -> None:
            service_resolver = self._service_resolver(kind)
            if service_resolver is not None:
                service_resolver.replace(items)
            # Cached keys missing from the listing were deleted while the
            # watch was down; reconciling them emits their Deleted events.
            keys = set(self.collectors[kind].cache.keys())
            for obj in items:
                key = ResourceKey.for_object(obj)
                if key is not None:
                    keys.add(key)
            for key in keys:
                self.enqueue(kind, key)
            LOGGER.info("Queued %d %s key(s) after listing", len(keys), kind)

        return on_list

    def _event_handler(self, kind: str) -> Callable[[str, Any], None]:
        def on_event(event_type: str, obj: Any) -> None:
            if event_type not in RECONCILE_EVENT_TYPES:
                return
            key = ResourceKey.for_object(obj)
            if key is None:
                return
            service_resolver = self._service_resolver(kind)
            if service_resolver is not None:
                if event_type == "DELETED":
                    service_resolver.forget(key)
                else:
                    service_resolver.observe(obj)
            self.enqueue(kind, key)

        return on_event

    def _service_resolver(self, kind: str) -> ServiceResolver | None:
        resolver = self.collectors[kind].resolver
        return resolver if isinstance(resolver, ServiceResolver) else None

    def _trigger(self, records: Iterable[PodRecord | None]) -> None:
        for record in records:
            if record is None:
                continue
            for kind, collector in self.collectors.items():
                for key in collector.keys_for_pod(record):
                    self.enqueue(kind, key)

    def sync_pods(self, pods: list[Any]) -> None:
        records = [record for record in map(PodRecord.from_pod, pods) if record is not None]
        changed = self.pod_index.replace(records)
        LOGGER.info("Pod index synced with %d pod(s), %d changed", len(records), len(changed))
        self._trigger(changed)

    def handle_pod_event(self, event_type: str, pod: Any) -> None:
        if event_type not in RECONCILE_EVENT_TYPES:
            return
        record = PodRecord.from_pod(pod)
        if record is None:
            return

        # The pod's own metadata may change without touching anything the
        # index tracks, so the pod collector always reconciles it.
        self.enqueue(POD, record.key)

        if event_type == "DELETED":
            previous = self.pod_index.delete(record.key)
            self._trigger([previous or record])
            return

        previous = self.pod_index.upsert(record)
        if previous != record:
            self._trigger([previous, record])

    def _refresh_ready(self) -> None:
        if self.pod_index.synced.is_set() and all(w.ready.is_set() for w in self.watchers):
            self.ready.set()
        else:
            self.ready.clear()

    def _spawn(self, threads: list[threading.Thread], name: str, target: Any, *args: Any) -> None:
        thread = threading.Thread(target=target, args=args, name=name, daemon=True)
        thread.start()
        threads.append(thread)

    def run(self, stop_event: threading.Event) -> None:
        """Run every watcher, replay loop and worker until *stop_event* is set."""
        threads: list[threading.Thread] = []
        for watcher in self.watchers:
            self._spawn(threads, f"watch-{watcher.name}", watcher.run_forever, stop_event)
        for collector in self.collectors.values():
            self._spawn(threads, f"replay-{collector.name}", collector.start, stop_event)

        LOGGER.info("Waiting for the pod index to sync before starting workers")
        while not stop_event.is_set() and not self.pod_index.synced.wait(timeout=1):
            pass

        if not stop_event.is_set():
            for kind, collector in self.collectors.items():
                for index in range(self.workers_per_collector):
                    self._spawn(
                        threads,
                        f"worker-{collector.name}-{index}",
                        run_worker,
                        self.queues[kind],
                        collector.reconcile,
                        stop_event,
                    )
            LOGGER.info(
                "Started %d collector(s): %s",
                len(self.collectors),
                ", ".join(c.name for c in self.collectors.values()),
            )

        while not stop_event.is_set():
            self._refresh_ready()
            stop_event.wait(timeout=1)

        self.stop()
        for thread in threads:
            thread.join(timeout=self.join_timeout_seconds)
            if thread.is_alive():
                LOGGER.warning(
                    "Thread %s did not stop within %ss", thread.name, self.join_timeout_seconds
                )

    def stop(self) -> None:
        self.ready.clear()
        for watcher in self.watchers:
            watcher.request_stop()
        for collector in self.collectors.values():
            collector.request_stop()
        for work_queue in self.queues.values():
            work_queue.shutdown()
