from __future__ import annotations

import threading

from metacollector.src.events import ResourceEntry
from metacollector.src.metrics import METRICS
from metacollector.src.resources import ResourceKey


class AssociationCache:
    """Thread-safe map from :class:`ResourceKey` to the committed :class:`ResourceEntry`.

    The cache stores only durable state (fields and associated nodes). The
    per-cycle diff lives in a separate :class:`~metacollector.src.events.NodeDiff`
    value, so an entry read back after any mutation never carries pending
    event bookkeeping.

    A single lock guards the map. Entries are immutable, so ``snapshot``
    can hand out references without copying and still never expose a torn
    entry to the replay loop. Callers must not hold the lock across I/O;
    no method here blocks on anything but the lock itself.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._lock = threading.Lock()
        self._entries: dict[ResourceKey, ResourceEntry] = {}
        METRICS.cache_entries.labels(collector=name).set(0)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    def _publish_size(self) -> None:
        METRICS.cache_entries.labels(collector=self.name).set(len(self._entries))

    def get(self, key: ResourceKey) -> ResourceEntry | None:
        with self._lock:
            return self._entries.get(key)

    def insert(self, key: ResourceKey, entry: ResourceEntry) -> None:
        """Store the entry of a first-seen resource."""
        with self._lock:
            if key in self._entries:
                raise ValueError(f"{self.name} cache already tracks {key}")
            self._entries[key] = entry
            self._publish_size()

    def update(self, key: ResourceKey, entry: ResourceEntry) -> None:
        """Replace the entry of an already tracked resource."""
        with self._lock:
            if key not in self._entries:
                raise KeyError(f"{self.name} cache does not track {key}")
            self._entries[key] = entry
            self._publish_size()

    def remove(self, key: ResourceKey) -> ResourceEntry | None:
        with self._lock:
            removed = self._entries.pop(key, None)
            self._publish_size()
            return removed

    def keys(self) -> list[ResourceKey]:
        with self._lock:
            return list(self._entries)

    def snapshot(self) -> list[tuple[ResourceKey, ResourceEntry]]:
        """Return a point-in-time copy of every ``(key, entry)`` pair."""
        with self._lock:
            return list(self._entries.items())
