"""
meshreg - service registry reconciliation for mesh control planes.

Watches a cluster's namespaces, services, pods, nodes and endpoints and
reconciles them into a registry of services and service instances, pushing
incremental endpoint updates downstream.

## Architecture

- **controller**: the reconciling controller and its per-kind handlers
- **kube**: raw cluster object types, watch caches and conversion
- **core**: registry model, push interface, metrics and logging
- **datastructures**: shared type aliases and label helpers

## Quick Start

```python
from meshreg import ClusterCaches, Controller, ControllerSettings

controller = Controller(ControllerSettings(cluster_id="c1"), updater, ClusterCaches.in_memory())
await controller.run(stop)
```
"""

from .config import ControllerSettings, EndpointMode, MeshNetworks
from .controller import ClusterCaches, Controller
from .errors import ClusterMismatchError, RegistryError, SyncError

__version__ = "0.1.0"

__all__ = [
    "ClusterCaches",
    "ClusterMismatchError",
    "Controller",
    "ControllerSettings",
    "EndpointMode",
    "MeshNetworks",
    "RegistryError",
    "SyncError",
]
