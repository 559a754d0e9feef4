from __future__ import annotations

import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from metacollector.src.errors import ResolveError
from metacollector.src.resources import ResourceKey

INDEX_NAMESPACE = "namespace"
INDEX_CONTROLLER_UID = "controller-uid"
INDEX_DEPLOYMENT = "deployment"

POD_TEMPLATE_HASH_LABEL = "pod-template-hash"


@dataclass(frozen=True)
class OwnerRef:
    kind: str
    name: str
    uid: str


@dataclass(frozen=True)
class PodRecord:
    """The subset of a pod the resolvers need: where it runs and who owns it."""

    key: ResourceKey
    uid: str
    node_name: str
    labels: Mapping[str, str] = field(default_factory=dict)
    controller: OwnerRef | None = None

    @property
    def scheduled(self) -> bool:
        return bool(self.node_name)

    @property
    def deployment(self) -> str | None:
        """Name of the Deployment owning this pod through its ReplicaSet, if any.

        A Deployment names its ReplicaSets ``<deployment>-<pod-template-hash>``
        and stamps the same hash on their pods, so the owner can be derived
        without reading the ReplicaSet.
        """
        if self.controller is None or self.controller.kind != "ReplicaSet":
            return None
        template_hash = self.labels.get(POD_TEMPLATE_HASH_LABEL)
        suffix = f"-{template_hash}"
        if not template_hash or not self.controller.name.endswith(suffix):
            return None
        return self.controller.name[: -len(suffix)] or None

    def index_values(self) -> dict[str, str]:
        values = {INDEX_NAMESPACE: self.key.namespace}
        if self.controller is not None and self.controller.uid:
            values[INDEX_CONTROLLER_UID] = self.controller.uid
        deployment = self.deployment
        if deployment is not None:
            values[INDEX_DEPLOYMENT] = f"{self.key.namespace}/{deployment}"
        return values

    @classmethod
    def from_pod(cls, pod: Any) -> PodRecord | None:
        key = ResourceKey.for_object(pod)
        if key is None:
            return None
        metadata = pod.metadata
        spec = getattr(pod, "spec", None)

        controller = None
        for ref in getattr(metadata, "owner_references", None) or []:
            if getattr(ref, "controller", False):
                controller = OwnerRef(kind=ref.kind or "", name=ref.name or "", uid=ref.uid or "")
                break

        return cls(
            key=key,
            uid=getattr(metadata, "uid", None) or "",
            node_name=getattr(spec, "node_name", None) or "",
            labels=dict(getattr(metadata, "labels", None) or {}),
            controller=controller,
        )


class PodIndex:
    """In-memory pod store indexed by namespace, controller UID and owning Deployment.

    Fed by the pod watch loop. Resolvers look pods up by index value instead
    of listing a whole namespace from the API server on every reconcile.

    ``synced`` is set after the first full listing has been loaded; lookups
    before that raise :class:`ResolveError` so the caller retries instead of
    committing an empty node set.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pods: dict[ResourceKey, PodRecord] = {}
        self._indexes: dict[str, dict[str, set[ResourceKey]]] = {
            INDEX_NAMESPACE: {},
            INDEX_CONTROLLER_UID: {},
            INDEX_DEPLOYMENT: {},
        }
        self.synced = threading.Event()

    def __len__(self) -> int:
        with self._lock:
            return len(self._pods)

    def _unindex(self, record: PodRecord) -> None:
        for index, value in record.index_values().items():
            bucket = self._indexes[index].get(value)
            if bucket is None:
                continue
            bucket.discard(record.key)
            if not bucket:
                del self._indexes[index][value]

    def _index(self, record: PodRecord) -> None:
        for index, value in record.index_values().items():
            self._indexes[index].setdefault(value, set()).add(record.key)

    def upsert(self, record: PodRecord) -> PodRecord | None:
        """Store *record* and return the record it replaced, if any."""
        with self._lock:
            previous = self._pods.get(record.key)
            if previous is not None:
                self._unindex(previous)
            self._pods[record.key] = record
            self._index(record)
            return previous

    def delete(self, key: ResourceKey) -> PodRecord | None:
        with self._lock:
            previous = self._pods.pop(key, None)
            if previous is not None:
                self._unindex(previous)
            return previous

    def replace(self, records: Iterable[PodRecord]) -> list[PodRecord]:
        """Swap the whole store for a fresh listing and mark the index synced.

        Returns every record that was added, removed, or changed so callers
        can trigger reconciliation for their owners.
        """
        fresh = {record.key: record for record in records}
        with self._lock:
            changed = [
                record for key, record in self._pods.items() if fresh.get(key) != record
            ]
            changed.extend(
                record for key, record in fresh.items() if self._pods.get(key) != record
            )
            self._pods = {}
            for index in self._indexes.values():
                index.clear()
            for record in fresh.values():
                self._pods[record.key] = record
                self._index(record)
        self.synced.set()
        return changed

    def by_index(self, index: str, value: str) -> list[PodRecord]:
        if not self.synced.is_set():
            raise ResolveError("pod index has not completed its initial sync")
        with self._lock:
            try:
                keys = self._indexes[index].get(value, ())
            except KeyError:
                raise ResolveError(f"unknown pod index {index!r}") from None
            return [self._pods[key] for key in keys]
