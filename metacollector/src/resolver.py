from __future__ import annotations

import threading
from collections.abc import Iterable, Mapping
from typing import Any, Protocol

from metacollector.src.errors import ResolveError
from metacollector.src.podindex import (
    INDEX_CONTROLLER_UID,
    INDEX_DEPLOYMENT,
    INDEX_NAMESPACE,
    PodIndex,
    PodRecord,
)
from metacollector.src.resources import (
    DEPLOYMENT,
    NAMESPACE,
    POD,
    REPLICASET,
    REPLICATION_CONTROLLER,
    SERVICE,
    ResourceKey,
)


class NodeResolver(Protocol):
    def resolve(self, obj: Any) -> frozenset[str]:
        """Return the names of the nodes *obj* is currently relevant to."""

    def trigger_keys(
        self, pod: PodRecord, tracked: Iterable[ResourceKey]
    ) -> set[ResourceKey]:
        """Return the keys whose node set may change when *pod* changes."""


def scheduled_nodes(pods: Iterable[PodRecord]) -> frozenset[str]:
    return frozenset(pod.node_name for pod in pods if pod.scheduled)


def selector_matches(selector: Mapping[str, str], labels: Mapping[str, str]) -> bool:
    """Equality-based selector match; an empty selector matches nothing."""
    if not selector:
        return False
    return all(labels.get(k) == v for k, v in selector.items())


class NamespaceResolver:
    """A namespace is relevant to every node running one of its pods."""

    def __init__(self, pod_index: PodIndex) -> None:
        self.pod_index = pod_index

    def resolve(self, obj: Any) -> frozenset[str]:
        name = obj.metadata.name
        return scheduled_nodes(self.pod_index.by_index(INDEX_NAMESPACE, name))

    def trigger_keys(
        self, pod: PodRecord, tracked: Iterable[ResourceKey]
    ) -> set[ResourceKey]:
        return {ResourceKey(namespace="", name=pod.key.namespace)}


class DeploymentResolver:
    def __init__(self, pod_index: PodIndex) -> None:
        self.pod_index = pod_index

    def resolve(self, obj: Any) -> frozenset[str]:
        value = f"{obj.metadata.namespace}/{obj.metadata.name}"
        return scheduled_nodes(self.pod_index.by_index(INDEX_DEPLOYMENT, value))

    def trigger_keys(
        self, pod: PodRecord, tracked: Iterable[ResourceKey]
    ) -> set[ResourceKey]:
        deployment = pod.deployment
        if deployment is None:
            return set()
        return {ResourceKey(namespace=pod.key.namespace, name=deployment)}


class ControllerResolver:
    """Resolves ReplicaSets and ReplicationControllers through their pods' controller UID."""

    def __init__(self, pod_index: PodIndex, owner_kind: str) -> None:
        self.pod_index = pod_index
        self.owner_kind = owner_kind

    def resolve(self, obj: Any) -> frozenset[str]:
        uid = getattr(obj.metadata, "uid", None)
        if not uid:
            raise ResolveError(f"{self.owner_kind} {obj.metadata.name} has no uid")
        return scheduled_nodes(self.pod_index.by_index(INDEX_CONTROLLER_UID, uid))

    def trigger_keys(
        self, pod: PodRecord, tracked: Iterable[ResourceKey]
    ) -> set[ResourceKey]:
        owner = pod.controller
        if owner is None or owner.kind != self.owner_kind or not owner.name:
            return set()
        return {ResourceKey(namespace=pod.key.namespace, name=owner.name)}


class ServiceResolver:
    """A service is relevant to the nodes running pods its selector matches.

    Services without a selector (manually managed endpoints) resolve to no
    nodes. The service watcher feeds :meth:`observe`, :meth:`forget` and
    :meth:`replace` so pod changes can find services that are not cached
    yet because they had no scheduled pods when last reconciled.
    """

    def __init__(self, pod_index: PodIndex) -> None:
        self.pod_index = pod_index
        self._lock = threading.Lock()
        self._selectors: dict[ResourceKey, dict[str, str]] = {}

    def resolve(self, obj: Any) -> frozenset[str]:
        selector = _service_selector(obj)
        pods = self.pod_index.by_index(INDEX_NAMESPACE, obj.metadata.namespace)
        return scheduled_nodes(pod for pod in pods if selector_matches(selector, pod.labels))

    def observe(self, obj: Any) -> None:
        key = ResourceKey.for_object(obj)
        if key is None:
            return
        with self._lock:
            self._selectors[key] = _service_selector(obj)

    def forget(self, key: ResourceKey) -> None:
        with self._lock:
            self._selectors.pop(key, None)

    def replace(self, objs: Iterable[Any]) -> None:
        selectors = {}
        for obj in objs:
            key = ResourceKey.for_object(obj)
            if key is not None:
                selectors[key] = _service_selector(obj)
        with self._lock:
            self._selectors = selectors

    def trigger_keys(
        self, pod: PodRecord, tracked: Iterable[ResourceKey]
    ) -> set[ResourceKey]:
        # Cached services in the namespace may lose the pod; known services
        # whose selector matches may gain it.
        keys = {key for key in tracked if key.namespace == pod.key.namespace}
        with self._lock:
            keys.update(
                key
                for key, selector in self._selectors.items()
                if key.namespace == pod.key.namespace and selector_matches(selector, pod.labels)
            )
        return keys


def _service_selector(obj: Any) -> dict[str, str]:
    return dict(getattr(getattr(obj, "spec", None), "selector", None) or {})


class PodResolver:
    """A pod is relevant only to the node it is scheduled on."""

    def resolve(self, obj: Any) -> frozenset[str]:
        node_name = getattr(getattr(obj, "spec", None), "node_name", None)
        if not node_name:
            return frozenset()
        return frozenset({node_name})

    def trigger_keys(
        self, pod: PodRecord, tracked: Iterable[ResourceKey]
    ) -> set[ResourceKey]:
        return {pod.key}


def resolver_for(kind: str, pod_index: PodIndex) -> NodeResolver:
    if kind == NAMESPACE:
        return NamespaceResolver(pod_index)
    if kind == DEPLOYMENT:
        return DeploymentResolver(pod_index)
    if kind in {REPLICASET, REPLICATION_CONTROLLER}:
        return ControllerResolver(pod_index, owner_kind=kind)
    if kind == SERVICE:
        return ServiceResolver(pod_index)
    if kind == POD:
        return PodResolver()
    raise ValueError(f"No node resolver for kind {kind!r}")
