from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any, Protocol

from metacollector.src.broker import Broker
from metacollector.src.cache import AssociationCache
from metacollector.src.events import Event, EventType, ResourceEntry, diff_nodes
from metacollector.src.fields import serialize_metadata
from metacollector.src.metrics import METRICS
from metacollector.src.podindex import PodRecord
from metacollector.src.resolver import NodeResolver
from metacollector.src.resources import ResourceKey


class Source(Protocol):
    def get(self, kind: str, key: ResourceKey) -> Any | None: ...


class KeyedLock:
    """One mutex per key, created on demand and dropped once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._locks: dict[ResourceKey, tuple[threading.Lock, int]] = {}

    @contextmanager
    def hold(self, key: ResourceKey) -> Iterator[None]:
        with self._lock:
            lock, users = self._locks.get(key, (None, 0))
            if lock is None:
                lock = threading.Lock()
            self._locks[key] = (lock, users + 1)
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._lock:
                _, users = self._locks[key]
                if users == 1:
                    del self._locks[key]
                else:
                    self._locks[key] = (lock, users - 1)

    def __len__(self) -> int:
        with self._lock:
            return len(self._locks)


class MetaCollector:
    """Keeps subscribers informed about one resource kind.

    Each call to :meth:`reconcile` runs one cycle for one key:

    1. fetch the object; a missing object that is cached is a deletion,
       a missing object that is not cached is ignored;
    2. serialize its metadata and resolve the nodes it is relevant to;
    3. diff the new node set against the cached entry;
    4. commit the new entry (insert, update, or remove);
    5. push the resulting events to the broker and count them.

    Fetch, serialization and resolve errors propagate before anything is
    committed, leaving the cached entry at its last good state. Cycles for
    the same key are serialized by a keyed lock; the replay loop takes the
    same lock per key, so a joining subscriber never receives a replayed
    state older than a live event it already got for that resource.

    :meth:`start` runs the replay loop, answering join notifications from
    the broker with one ``Added`` event per cached resource associated with
    the joining node.
    """

    def __init__(
        self,
        kind: str,
        source: Source,
        resolver: NodeResolver,
        broker: Broker,
        cache: AssociationCache | None = None,
        logger: logging.Logger | None = None,
        serialize: Callable[[Any], str] = serialize_metadata,
        join_poll_seconds: float = 1.0,
    ) -> None:
        self.kind = kind
        self.name = kind.lower()
        self.source = source
        self.resolver = resolver
        self.broker = broker
        self.cache = cache if cache is not None else AssociationCache(self.name)
        self.logger = logger or logging.getLogger(f"{__name__}.{self.name}")
        self.serialize = serialize
        self.join_poll_seconds = join_poll_seconds

        self._key_locks = KeyedLock()
        self._join_channel = broker.subscribe(self.name)
        self._external_stop = threading.Event()
        self._stop_event: threading.Event | None = None

    def request_stop(self) -> None:
        self._external_stop.set()

    def _should_stop(self) -> bool:
        stop_event = self._stop_event
        return self._external_stop.is_set() or (stop_event is not None and stop_event.is_set())

    def reconcile(self, key: ResourceKey) -> list[Event]:
        """Run one reconciliation cycle for *key* and return the events it produced."""
        with self._key_locks.hold(key):
            events = self._reconcile(key)
            for event in events:
                METRICS.events_total.labels(collector=self.name, type=event.event_type.value).inc()
                self.broker.push(event)
        return events

    def _reconcile(self, key: ResourceKey) -> list[Event]:
        obj = self.source.get(self.kind, key)
        cached = self.cache.get(key)

        if obj is None:
            if cached is None:
                self.logger.debug("%s %s not found and not tracked; nothing to do", self.kind, key)
                return []
            self.logger.info(
                "%s %s was deleted; notifying %d node(s)",
                self.kind,
                key,
                len(cached.associated_nodes),
            )
            diff = diff_nodes(cached.associated_nodes, frozenset(), fields_changed=False)
            entry = cached.with_state(cached.serialized_fields, diff.nodes)
        else:
            fields = self.serialize(obj)
            nodes = self.resolver.resolve(obj)
            if cached is None:
                self.logger.debug("First sighting of %s %s", self.kind, key)
                base = ResourceEntry(kind=self.kind, uid=getattr(obj.metadata, "uid", None) or "")
                fields_changed = True
            else:
                base = cached
                fields_changed = fields != cached.serialized_fields
            diff = diff_nodes(base.associated_nodes, nodes, fields_changed)
            entry = base.with_state(fields, diff.nodes)

        if not diff:
            return []

        if self._should_stop():
            self.logger.info(
                "Stop requested; abandoning reconcile of %s %s before commit", self.kind, key
            )
            return []

        self._commit(key, cached, entry)
        return diff.to_events(key, entry)

    def _commit(
        self, key: ResourceKey, cached: ResourceEntry | None, entry: ResourceEntry
    ) -> None:
        if cached is None:
            self.cache.insert(key, entry)
        elif not entry.associated_nodes:
            self.cache.remove(key)
            self.logger.debug("Removed %s %s from cache", self.kind, key)
        else:
            self.cache.update(key, entry)

    def replay(self, node: str) -> int:
        """Push an ``Added`` event for every cached resource associated with *node*."""
        replayed = 0
        for key, _ in self.cache.snapshot():
            with self._key_locks.hold(key):
                entry = self.cache.get(key)
                if entry is None or node not in entry.associated_nodes:
                    continue
                self.broker.push(
                    Event(
                        event_type=EventType.ADDED,
                        key=key,
                        kind=entry.kind,
                        uid=entry.uid,
                        node=node,
                        meta=entry.serialized_fields,
                    )
                )
                replayed += 1
        METRICS.replayed_events_total.labels(collector=self.name).inc(replayed)
        return replayed

    def start(self, stop_event: threading.Event) -> None:
        """Serve join notifications until *stop_event* is set or a stop is requested."""
        self._stop_event = stop_event
        self.logger.info("Starting replay loop for %s collector", self.name)
        while not self._should_stop():
            try:
                node = self._join_channel.get(timeout=self.join_poll_seconds)
            except queue.Empty:
                continue
            replayed = self.replay(node)
            self.logger.info("Replayed %d %s event(s) to node %s", replayed, self.kind, node)
        self.logger.info("Replay loop for %s collector stopped", self.name)

    def keys_for_pod(self, pod: PodRecord) -> set[ResourceKey]:
        """Keys of this kind that must be reconciled because *pod* changed."""
        return self.resolver.trigger_keys(pod, self.cache.keys())
