"""
Load a point-in-time snapshot of cluster objects from JSON.

The document is an object keyed by resource kind; each value is a list of
objects whose ``metadata`` carries name, namespace, labels and annotations
and whose remaining keys are the fields of the matching resource type::

    {
      "namespaces": [{"metadata": {"name": "istio-system"}}],
      "services": [{"metadata": {"name": "web", "namespace": "default"},
                    "cluster_ip": "10.0.0.1", "selector": {"app": "web"},
                    "ports": [{"port": 80, "name": "http", "target_port": 8080}]}],
      "pods": [...], "nodes": [...], "endpoints": [...], "endpoint_slices": [...],
      "service_exports": [...], "service_imports": [...], "crds": [...]
    }

Objects are validated with pydantic against the resource dataclasses.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from pathlib import Path
from typing import Any, TypeVar

from loguru import logger
from pydantic import TypeAdapter

from meshreg.errors import RegistryError
from meshreg.kube.client import InMemoryObjectCache
from meshreg.kube.resources import (
    CustomResourceDefinition,
    Endpoints,
    EndpointSlice,
    KubeObject,
    KubeService,
    Namespace,
    Node,
    Pod,
    ServiceExport,
    ServiceImport,
)
from meshreg.kube.wellknown import (
    KIND_CRDS,
    KIND_ENDPOINT_SLICES,
    KIND_ENDPOINTS,
    KIND_NAMESPACES,
    KIND_NODES,
    KIND_PODS,
    KIND_SERVICE_EXPORTS,
    KIND_SERVICE_IMPORTS,
    KIND_SERVICES,
)

# document key -> (cache kind, resource type)
SNAPSHOT_KINDS: dict[str, tuple[str, type[KubeObject]]] = {
    "namespaces": (KIND_NAMESPACES, Namespace),
    "services": (KIND_SERVICES, KubeService),
    "pods": (KIND_PODS, Pod),
    "nodes": (KIND_NODES, Node),
    "endpoints": (KIND_ENDPOINTS, Endpoints),
    "endpoint_slices": (KIND_ENDPOINT_SLICES, EndpointSlice),
    "service_exports": (KIND_SERVICE_EXPORTS, ServiceExport),
    "service_imports": (KIND_SERVICE_IMPORTS, ServiceImport),
    "crds": (KIND_CRDS, CustomResourceDefinition),
}


class SnapshotError(RegistryError):
    """Raised when a snapshot document cannot be read or validated."""

    pass


T = TypeVar("T", bound=KubeObject)


def parse_object(resource_type: type[T], raw: Mapping[str, Any]) -> T:
    """Validate one raw object into ``resource_type``."""
    fields = dict(raw)
    meta = fields.pop("metadata", None)
    if meta is None:
        meta = fields.pop("meta", None) or {}
    fields["meta"] = meta
    return TypeAdapter(resource_type).validate_python(fields)


def load_snapshot_data(
    document: Mapping[str, Any],
) -> dict[str, InMemoryObjectCache[Any]]:
    """Build one synced cache per document key; absent kinds stay absent."""
    unknown = set(document) - set(SNAPSHOT_KINDS)
    if unknown:
        logger.warning(f"ignoring unknown snapshot keys: {', '.join(sorted(unknown))}")

    caches: dict[str, InMemoryObjectCache[Any]] = {}
    for key, (kind, resource_type) in SNAPSHOT_KINDS.items():
        if key not in document:
            continue
        raw_objects = document[key] or []
        try:
            objects = [parse_object(resource_type, raw) for raw in raw_objects]
        except (TypeError, ValueError) as e:
            raise SnapshotError(f"invalid {key} in snapshot: {e}") from e
        cache: InMemoryObjectCache[Any] = InMemoryObjectCache(kind)
        cache.load(objects)
        caches[key] = cache
        logger.debug(f"loaded {len(objects)} {kind} from snapshot")
    return caches


def load_snapshot(path: str | Path) -> dict[str, InMemoryObjectCache[Any]]:
    try:
        document = json.loads(Path(path).read_text())
    except (OSError, json.JSONDecodeError) as e:
        raise SnapshotError(f"failed to read snapshot {path}: {e}") from e
    if not isinstance(document, dict):
        raise SnapshotError(f"snapshot {path} must be a JSON object")
    return load_snapshot_data(document)
