from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from metacollector.src.resources import ResourceKey


class EventType(str, Enum):
    ADDED = "Added"
    MODIFIED = "Modified"
    DELETED = "Deleted"


@dataclass(frozen=True)
class Event:
    """One metadata notification addressed to a single node.

    ``meta`` carries the serialized metadata for ``Added`` and ``Modified``
    events and is ``None`` for ``Deleted``.
    """

    event_type: EventType
    key: ResourceKey
    kind: str
    uid: str
    node: str
    meta: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.event_type.value,
            "kind": self.kind,
            "uid": self.uid,
            "namespace": self.key.namespace,
            "name": self.key.name,
            "node": self.node,
            "meta": self.meta,
        }


@dataclass(frozen=True)
class ResourceEntry:
    """Durable state kept in the cache for one tracked object.

    Entries are immutable: every reconciliation builds a new entry and
    commits it in one step, so readers never observe a half-applied update.
    """

    kind: str
    uid: str
    serialized_fields: str = ""
    associated_nodes: frozenset[str] = field(default_factory=frozenset)

    def with_state(self, serialized_fields: str, nodes: frozenset[str]) -> ResourceEntry:
        return replace(self, serialized_fields=serialized_fields, associated_nodes=nodes)


@dataclass(frozen=True)
class NodeDiff:
    """Per-node event types computed for one reconciliation cycle.

    ``pending`` holds at most one event type per node; ``nodes`` is the
    association set to commit.
    """

    pending: Mapping[str, EventType]
    nodes: frozenset[str]

    def __bool__(self) -> bool:
        return bool(self.pending)

    def to_events(self, key: ResourceKey, entry: ResourceEntry) -> list[Event]:
        """Expand the diff into events for *entry*. Node order is unspecified."""
        events = []
        for node, event_type in self.pending.items():
            meta = None if event_type is EventType.DELETED else entry.serialized_fields
            events.append(
                Event(
                    event_type=event_type,
                    key=key,
                    kind=entry.kind,
                    uid=entry.uid,
                    node=node,
                    meta=meta,
                )
            )
        return events


def diff_nodes(
    old_nodes: frozenset[str],
    new_nodes: frozenset[str],
    fields_changed: bool,
) -> NodeDiff:
    """Compute the events needed to move subscribers from *old_nodes* to *new_nodes*.

    Nodes only in *new_nodes* get ``Added``, nodes only in *old_nodes* get
    ``Deleted``. Nodes in both get ``Modified`` only when the serialized
    fields changed; otherwise they are left out. A deleted object is
    expressed as an empty *new_nodes*.
    """
    pending: dict[str, EventType] = {}
    for node in new_nodes - old_nodes:
        pending[node] = EventType.ADDED
    if fields_changed:
        for node in new_nodes & old_nodes:
            pending[node] = EventType.MODIFIED
    for node in old_nodes - new_nodes:
        pending[node] = EventType.DELETED
    return NodeDiff(pending=pending, nodes=frozenset(new_nodes))
