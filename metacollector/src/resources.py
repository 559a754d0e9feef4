from __future__ import annotations

from dataclasses import dataclass
from typing import Any

POD = "Pod"
NAMESPACE = "Namespace"
DEPLOYMENT = "Deployment"
REPLICASET = "ReplicaSet"
SERVICE = "Service"
REPLICATION_CONTROLLER = "ReplicationController"

ALL_KINDS: tuple[str, ...] = (
    POD,
    NAMESPACE,
    DEPLOYMENT,
    REPLICASET,
    SERVICE,
    REPLICATION_CONTROLLER,
)

CLUSTER_SCOPED_KINDS = frozenset({NAMESPACE})


@dataclass(frozen=True, order=True)
class ResourceKey:
    """Namespaced name identifying one tracked object within a kind.

    Cluster-scoped objects use an empty namespace.
    """

    namespace: str
    name: str

    def __str__(self) -> str:
        if not self.namespace:
            return self.name
        return f"{self.namespace}/{self.name}"

    @classmethod
    def parse(cls, value: str) -> ResourceKey:
        namespace, separator, name = value.partition("/")
        if not separator:
            return cls(namespace="", name=namespace)
        return cls(namespace=namespace, name=name)

    @classmethod
    def for_object(cls, obj: Any) -> ResourceKey | None:
        """Build the key of a Kubernetes object, or ``None`` when it has no name."""
        metadata = getattr(obj, "metadata", None)
        name = getattr(metadata, "name", None)
        if not name:
            return None
        return cls(namespace=getattr(metadata, "namespace", None) or "", name=name)


def normalize_kind(value: str) -> str:
    """Map a case-insensitive kind name (``deployment``) to its canonical form."""
    lookup = {kind.lower(): kind for kind in ALL_KINDS}
    try:
        return lookup[value.strip().lower()]
    except KeyError:
        raise ValueError(
            f"Unknown resource kind {value!r}; expected one of {', '.join(ALL_KINDS)}"
        ) from None
