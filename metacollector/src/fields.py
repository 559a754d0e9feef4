from __future__ import annotations

import json
from typing import Any

from kubernetes.client import ApiClient

from metacollector.src.errors import SerializationError

# Metadata that changes without the object meaning anything different to a
# node agent. Keeping these would turn every status update into a Modified.
VOLATILE_METADATA_FIELDS: tuple[str, ...] = (
    "resourceVersion",
    "creationTimestamp",
    "deletionTimestamp",
    "ownerReferences",
    "finalizers",
    "generateName",
    "deletionGracePeriodSeconds",
    "managedFields",
)

_api_client: ApiClient | None = None


def _sanitizer() -> ApiClient:
    global _api_client
    if _api_client is None:
        _api_client = ApiClient()
    return _api_client


def metadata_to_dict(metadata: Any) -> dict[str, Any]:
    """Convert object metadata (a client model or a plain dict) into its JSON form.

    Client models are converted with the API client's serializer so keys use
    the API's camelCase names, matching what ``kubectl get -o json`` shows.
    """
    if isinstance(metadata, dict):
        return dict(metadata)
    try:
        converted = _sanitizer().sanitize_for_serialization(metadata)
    except (AttributeError, TypeError, ValueError) as exc:
        raise SerializationError(f"unable to convert metadata: {exc}") from exc
    if not isinstance(converted, dict):
        raise SerializationError(
            f"metadata converted to {type(converted).__name__}, expected an object"
        )
    return converted


def serialize_metadata(obj: Any) -> str:
    """Return the stable JSON payload subscribers receive for *obj*.

    Volatile fields are stripped and keys sorted so that two reads of an
    unchanged object serialize identically.
    """
    metadata = getattr(obj, "metadata", None)
    if metadata is None:
        raise SerializationError("object has no metadata")

    meta = metadata_to_dict(metadata)
    for key in VOLATILE_METADATA_FIELDS:
        meta.pop(key, None)

    try:
        return json.dumps(meta, sort_keys=True, separators=(",", ":"))
    except (TypeError, ValueError) as exc:
        raise SerializationError(f"unable to encode metadata: {exc}") from exc
