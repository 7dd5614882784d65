"""
Registry controller components.

The ``Controller`` composes the per-kind pieces defined here: the event
queue and sync state machine, pod and endpoint handling, network topology,
workload instances, namespace discovery and multi-cluster federation.
"""

from .controller import ClusterCaches, Controller, NodeRecord
from .endpoints import EndpointsController, EndpointSource
from .endpointslice import EndpointSliceController
from .network import NetworksWatcher, NetworkTopologyResolver
from .queue import EventQueue
from .sync_state import SyncPhase, SyncState

__all__ = [
    "ClusterCaches",
    "Controller",
    "EndpointSliceController",
    "EndpointSource",
    "EndpointsController",
    "EventQueue",
    "NetworkTopologyResolver",
    "NetworksWatcher",
    "NodeRecord",
    "SyncPhase",
    "SyncState",
]
