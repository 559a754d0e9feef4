from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from kubernetes import client, config
from kubernetes.client import ApiException, AppsV1Api, CoreV1Api
from kubernetes.config.config_exception import ConfigException

from metacollector.src.errors import FetchError
from metacollector.src.resources import (
    DEPLOYMENT,
    NAMESPACE,
    POD,
    REPLICASET,
    REPLICATION_CONTROLLER,
    SERVICE,
    ResourceKey,
)

LOGGER = logging.getLogger(__name__)


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CoreV1Api, AppsV1Api]:
    """Return CoreV1 and AppsV1 API clients using the active kube configuration."""
    return client.CoreV1Api(), client.AppsV1Api()


class KubeSource:
    """Fetch and list access to the tracked kinds through the Kubernetes API.

    ``get`` is what reconciliation uses; ``list_function`` feeds the
    list-then-watch loops.
    """

    def __init__(self, core_api: CoreV1Api, apps_api: AppsV1Api) -> None:
        self.core_api = core_api
        self.apps_api = apps_api

    def _reader(self, kind: str) -> Callable[[ResourceKey], Any]:
        if kind == NAMESPACE:
            return lambda key: self.core_api.read_namespace(name=key.name)
        readers: dict[str, Callable[..., Any]] = {
            POD: self.core_api.read_namespaced_pod,
            SERVICE: self.core_api.read_namespaced_service,
            REPLICATION_CONTROLLER: self.core_api.read_namespaced_replication_controller,
            DEPLOYMENT: self.apps_api.read_namespaced_deployment,
            REPLICASET: self.apps_api.read_namespaced_replica_set,
        }
        try:
            read = readers[kind]
        except KeyError:
            raise ValueError(f"Unsupported resource kind {kind!r}") from None
        return lambda key: read(name=key.name, namespace=key.namespace)

    def get(self, kind: str, key: ResourceKey) -> Any | None:
        """Return the current object, or ``None`` when it no longer exists.

        Any other API failure is raised as :class:`FetchError`.
        """
        read = self._reader(kind)
        try:
            return read(key)
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise FetchError(f"unable to get {kind} {key}: {exc.status} {exc.reason}") from exc
        except Exception as exc:
            raise FetchError(f"unable to get {kind} {key}: {exc}") from exc

    def list_function(self, kind: str) -> Callable[..., Any]:
        """Return the cluster-wide list call for *kind*, usable with ``watch.Watch().stream``."""
        functions: dict[str, Callable[..., Any]] = {
            NAMESPACE: self.core_api.list_namespace,
            POD: self.core_api.list_pod_for_all_namespaces,
            SERVICE: self.core_api.list_service_for_all_namespaces,
            REPLICATION_CONTROLLER: self.core_api.list_replication_controller_for_all_namespaces,
            DEPLOYMENT: self.apps_api.list_deployment_for_all_namespaces,
            REPLICASET: self.apps_api.list_replica_set_for_all_namespaces,
        }
        try:
            return functions[kind]
        except KeyError:
            raise ValueError(f"Unsupported resource kind {kind!r}") from None
