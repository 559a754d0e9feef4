from __future__ import annotations

import threading
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock

from kubernetes.client import (
    V1Container,
    V1ObjectMeta,
    V1OwnerReference,
    V1Pod,
    V1PodSpec,
    V1Service,
    V1ServiceSpec,
)

from metacollector.src.broker import Broker
from metacollector.src.events import EventType, ResourceEntry
from metacollector.src.manager import CollectorManager
from metacollector.src.resources import (
    DEPLOYMENT,
    NAMESPACE,
    POD,
    REPLICASET,
    SERVICE,
    ResourceKey,
)


def make_pod(name: str = "web-h1-x", namespace: str = "shop", node: str | None = "node-a") -> V1Pod:
    return V1Pod(
        metadata=V1ObjectMeta(
            name=name,
            namespace=namespace,
            uid=f"uid-{name}",
            labels={"app": "web", "pod-template-hash": "h1"},
            owner_references=[
                V1OwnerReference(
                    api_version="apps/v1",
                    kind="ReplicaSet",
                    name="web-h1",
                    uid="rs-uid",
                    controller=True,
                )
            ],
        ),
        spec=V1PodSpec(node_name=node, containers=[V1Container(name="main")]),
    )


def make_service(name: str = "frontend", selector: dict[str, str] | None = None) -> V1Service:
    return V1Service(
        metadata=V1ObjectMeta(name=name, namespace="shop", uid=f"uid-{name}"),
        spec=V1ServiceSpec(selector=selector if selector is not None else {"app": "web"}),
    )


def _make_manager(
    kinds: tuple[str, ...] = (POD, NAMESPACE, DEPLOYMENT, REPLICASET, SERVICE),
) -> CollectorManager:
    return CollectorManager(source=MagicMock(), broker=Broker(), kinds=kinds)


def _drain(manager: CollectorManager, kind: str) -> set[Any]:
    keys = set()
    work_queue = manager.queues[kind]
    while (key := work_queue.get(timeout=0)) is not None:
        keys.add(key)
        work_queue.done(key)
    return keys


def test_builds_pod_index_watcher_and_one_watcher_per_other_kind() -> None:
    manager = _make_manager()

    names = [watcher.name for watcher in manager.watchers]

    assert names == ["pod-index", "namespace", "deployment", "replicaset", "service"]
    assert set(manager.collectors) == set(manager.queues)


def test_new_pod_triggers_every_related_collector() -> None:
    manager = _make_manager()
    manager.sync_pods([])
    manager._event_handler(SERVICE)("ADDED", make_service())
    _drain(manager, SERVICE)

    manager.handle_pod_event("ADDED", make_pod())

    assert _drain(manager, POD) == {ResourceKey("shop", "web-h1-x")}
    assert _drain(manager, NAMESPACE) == {ResourceKey("", "shop")}
    assert _drain(manager, DEPLOYMENT) == {ResourceKey("shop", "web")}
    assert _drain(manager, REPLICASET) == {ResourceKey("shop", "web-h1")}
    assert _drain(manager, SERVICE) == {ResourceKey("shop", "frontend")}
    assert len(manager.pod_index) == 1


def test_service_created_before_its_pods_is_announced_once_they_schedule() -> None:
    source = MagicMock()
    service = make_service()
    source.get.return_value = service
    manager = CollectorManager(source=source, broker=Broker(), kinds=(SERVICE,))
    collector = manager.collectors[SERVICE]
    key = ResourceKey("shop", "frontend")

    manager._event_handler(SERVICE)("ADDED", service)
    assert _drain(manager, SERVICE) == {key}
    assert collector.reconcile(key) == []
    assert collector.cache.get(key) is None

    manager.handle_pod_event("ADDED", make_pod())
    assert _drain(manager, SERVICE) == {key}

    events = collector.reconcile(key)
    assert [(event.event_type, event.node) for event in events] == [
        (EventType.ADDED, "node-a")
    ]
    assert collector.cache.get(key).associated_nodes == frozenset({"node-a"})


def test_pod_change_skips_uncached_services_with_other_selectors() -> None:
    manager = _make_manager(kinds=(SERVICE,))
    manager._list_handler(SERVICE)(
        [make_service("frontend"), make_service("db", selector={"app": "db"})]
    )
    _drain(manager, SERVICE)

    manager.handle_pod_event("ADDED", make_pod())

    assert _drain(manager, SERVICE) == {ResourceKey("shop", "frontend")}


def test_deleted_service_is_no_longer_triggered_by_pods() -> None:
    manager = _make_manager(kinds=(SERVICE,))
    handler = manager._event_handler(SERVICE)
    handler("ADDED", make_service())
    handler("DELETED", make_service())
    _drain(manager, SERVICE)

    manager.handle_pod_event("ADDED", make_pod())

    assert _drain(manager, SERVICE) == set()


def test_service_listing_replaces_known_selectors() -> None:
    manager = _make_manager(kinds=(SERVICE,))
    manager._event_handler(SERVICE)("ADDED", make_service("stale"))
    manager._list_handler(SERVICE)([make_service("frontend")])
    _drain(manager, SERVICE)

    manager.handle_pod_event("ADDED", make_pod())

    assert _drain(manager, SERVICE) == {ResourceKey("shop", "frontend")}


def test_unchanged_pod_update_only_reconciles_the_pod() -> None:
    manager = _make_manager()
    manager.sync_pods([make_pod()])
    for kind in manager.queues:
        _drain(manager, kind)

    manager.handle_pod_event("MODIFIED", make_pod())

    assert _drain(manager, POD) == {ResourceKey("shop", "web-h1-x")}
    assert _drain(manager, NAMESPACE) == set()
    assert _drain(manager, DEPLOYMENT) == set()


def test_rescheduled_pod_triggers_owners() -> None:
    manager = _make_manager()
    manager.sync_pods([make_pod(node=None)])
    for kind in manager.queues:
        _drain(manager, kind)

    manager.handle_pod_event("MODIFIED", make_pod(node="node-b"))

    assert _drain(manager, DEPLOYMENT) == {ResourceKey("shop", "web")}
    assert [r.node_name for r in manager.pod_index.by_index("namespace", "shop")] == ["node-b"]


def test_deleted_pod_is_removed_and_triggers_owners() -> None:
    manager = _make_manager()
    manager.sync_pods([make_pod()])
    for kind in manager.queues:
        _drain(manager, kind)

    manager.handle_pod_event("DELETED", make_pod())

    assert len(manager.pod_index) == 0
    assert _drain(manager, REPLICASET) == {ResourceKey("shop", "web-h1")}
    assert _drain(manager, POD) == {ResourceKey("shop", "web-h1-x")}


def test_bookmark_and_nameless_pods_are_ignored() -> None:
    manager = _make_manager()
    manager.sync_pods([])

    manager.handle_pod_event("BOOKMARK", make_pod())
    manager.handle_pod_event("ADDED", SimpleNamespace(metadata=None, spec=None))

    assert len(manager.pod_index) == 0
    assert _drain(manager, POD) == set()


def test_sync_pods_marks_index_synced_and_triggers_changes() -> None:
    manager = _make_manager()

    manager.sync_pods([make_pod()])

    assert manager.pod_index.synced.is_set()
    assert _drain(manager, DEPLOYMENT) == {ResourceKey("shop", "web")}


def test_list_handler_enqueues_listed_and_cached_keys() -> None:
    manager = _make_manager()
    stale = ResourceKey("shop", "gone")
    manager.collectors[DEPLOYMENT].cache.insert(
        stale, ResourceEntry(kind=DEPLOYMENT, uid="x", associated_nodes=frozenset({"node-a"}))
    )
    listed = SimpleNamespace(metadata=SimpleNamespace(name="web", namespace="shop"))

    manager._list_handler(DEPLOYMENT)([listed])

    assert _drain(manager, DEPLOYMENT) == {stale, ResourceKey("shop", "web")}


def test_event_handler_skips_non_reconcile_events() -> None:
    manager = _make_manager()
    obj = SimpleNamespace(metadata=SimpleNamespace(name="web", namespace="shop"))
    handler = manager._event_handler(DEPLOYMENT)

    handler("BOOKMARK", obj)
    assert _drain(manager, DEPLOYMENT) == set()

    handler("MODIFIED", obj)
    assert _drain(manager, DEPLOYMENT) == {ResourceKey("shop", "web")}


def test_enqueue_ignores_kinds_without_collector() -> None:
    manager = _make_manager(kinds=(DEPLOYMENT,))

    manager.enqueue(SERVICE, ResourceKey("shop", "frontend"))

    assert set(manager.queues) == {DEPLOYMENT}


def test_ready_requires_pod_index_and_every_watcher() -> None:
    manager = _make_manager(kinds=(DEPLOYMENT,))
    manager.sync_pods([])
    manager._refresh_ready()
    assert not manager.ready.is_set()

    for watcher in manager.watchers:
        watcher.ready.set()
    manager._refresh_ready()

    assert manager.ready.is_set()


def test_run_returns_and_shuts_down_queues_once_stopped() -> None:
    manager = _make_manager(kinds=(DEPLOYMENT,))
    stop_event = threading.Event()
    stop_event.set()

    manager.run(stop_event)

    manager.enqueue(DEPLOYMENT, ResourceKey("shop", "web"))
    assert len(manager.queues[DEPLOYMENT]) == 0
    assert not manager.ready.is_set()
