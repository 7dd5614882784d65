"""
The registry controller.

``Controller`` owns every cache derived from the watched cluster: the
service model, node records, node-selector index, ExternalName instances,
gateways and network state, all guarded by one reader/writer lock. Watch
callbacks are turned into tasks on a single serialized queue; readers on
any thread see either the state before or after a task, never in between.

Typical use::

    controller = Controller(settings, xds_updater, ClusterCaches.in_memory())
    stop = asyncio.Event()
    runner = asyncio.create_task(controller.run(stop))
    ...
    stop.set()
    await runner
    await controller.cleanup()
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from typing import Any, TypeAlias

from loguru import logger

from meshreg.config import ControllerSettings, EndpointMode, MeshNetworks
from meshreg.controller.endpoint_builder import EndpointBuilder, augment_labels
from meshreg.controller.endpoints import EndpointsController, EndpointSource
from meshreg.controller.endpointslice import EndpointSliceController
from meshreg.controller.federation import ServiceExportCache, ServiceImportCache
from meshreg.controller.handlers import (
    ControllerHandlers,
    EventRegistrar,
    ResourceHandler,
    ServiceHandler,
    WorkloadHandler,
)
from meshreg.controller.namespaces import (
    DiscoveryNamespacesFilter,
    NamespaceDiscoveryHandler,
)
from meshreg.controller.network import (
    GatewayHandler,
    NetworksWatcher,
    NetworkTopologyResolver,
)
from meshreg.controller.pods import PodCache, pod_locality
from meshreg.controller.queue import EventQueue
from meshreg.controller.rwlock import RWLock
from meshreg.controller.sync_state import SyncPhase, SyncState
from meshreg.controller.workloads import (
    WorkloadInstanceIndex,
    get_instance_for_proxy,
    service_instance_from_workload_instance,
)
from meshreg.core.model import (
    KUBERNETES_REGISTRY,
    EndpointDiscoverability,
    Event,
    HealthStatus,
    IstioEndpoint,
    MCSServiceInfo,
    NamespacedName,
    NetworkGateway,
    Port,
    PortProtocol,
    Proxy,
    Resolution,
    Service,
    ServiceInstance,
    WorkloadInstance,
    WorkloadKind,
)
from meshreg.core.push import ShardKey, TriggerReason, XDSUpdater, full_push
from meshreg.core.statistics import RegistryMetrics
from meshreg.core.task_manager import TaskManager
from meshreg.datastructures.labels import subset_of
from meshreg.datastructures.type_aliases import (
    ClusterId,
    Hostname,
    IPAddress,
    LabelKey,
    LabelMap,
    LabelValue,
    LocalityString,
    NamespaceName,
    NetworkId,
    NodeName,
    PortNumber,
)
from meshreg.errors import (
    ClusterMismatchError,
    RegistryError,
    ServicePortNotFoundError,
    SyncError,
    TargetPortNotFoundError,
    combine_errors,
)
from meshreg.kube.client import (
    EventHandler,
    FilteredObjectCache,
    InMemoryObjectCache,
    ObjectCache,
)
from meshreg.kube.conversion import (
    clusterset_local_hostname,
    convert_service,
    external_name_service_instances,
    find_port,
    find_port_from_metadata,
    find_service_target_port,
    get_node_selectors_for_service,
    get_pod_services,
    is_node_port_gateway_service,
    service_hostname,
)
from meshreg.kube.resources import (
    NODE_EXTERNAL_IP,
    CustomResourceDefinition,
    Endpoints,
    EndpointSlice,
    KubeService,
    Namespace,
    Node,
    Pod,
    ServiceExport,
    ServiceImport,
    ServicePort,
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
    SERVICE_EXPORT_CRD,
    SERVICE_IMPORT_CRD,
    TOPOLOGY_NETWORK_LABEL,
)

CrdHandler: TypeAlias = Callable[[str], None]


@dataclass(slots=True)
class ClusterCaches:
    """The watch caches a controller reads from, one per resource kind."""

    namespaces: ObjectCache[Namespace]
    services: ObjectCache[KubeService]
    pods: ObjectCache[Pod]
    nodes: ObjectCache[Node]
    endpoints: ObjectCache[Endpoints]
    endpoint_slices: ObjectCache[EndpointSlice]
    service_exports: ObjectCache[ServiceExport] | None = None
    service_imports: ObjectCache[ServiceImport] | None = None
    crds: ObjectCache[CustomResourceDefinition] | None = None

    @classmethod
    def in_memory(cls, *, synced: bool = True, multicluster: bool = False) -> ClusterCaches:
        def cache(kind: str) -> InMemoryObjectCache:
            return InMemoryObjectCache(kind, synced=synced)

        return cls(
            namespaces=cache(KIND_NAMESPACES),
            services=cache(KIND_SERVICES),
            pods=cache(KIND_PODS),
            nodes=cache(KIND_NODES),
            endpoints=cache(KIND_ENDPOINTS),
            endpoint_slices=cache(KIND_ENDPOINT_SLICES),
            service_exports=cache(KIND_SERVICE_EXPORTS) if multicluster else None,
            service_imports=cache(KIND_SERVICE_IMPORTS) if multicluster else None,
            crds=cache(KIND_CRDS) if multicluster else None,
        )

    @classmethod
    def from_snapshot(cls, caches: Mapping[str, ObjectCache[Any]]) -> ClusterCaches:
        """Fill in the kinds a snapshot provides; the rest start empty."""
        return replace(cls.in_memory(), **caches)


@dataclass(frozen=True, slots=True)
class NodeRecord:
    """What the controller keeps of a node: its external address and labels."""

    address: IPAddress
    labels: dict[LabelKey, LabelValue] = field(default_factory=dict)


def pod_port_map(pod: Pod) -> dict[str, PortNumber]:
    return {
        port.name: port.container_port for port in pod.container_ports if port.name
    }


class Controller:
    """Service registry for one cluster."""

    def __init__(
        self,
        settings: ControllerSettings,
        xds_updater: XDSUpdater,
        caches: ClusterCaches,
        *,
        mesh_networks: MeshNetworks | None = None,
        networks_watcher: NetworksWatcher | None = None,
        metrics: RegistryMetrics | None = None,
    ) -> None:
        self.settings = settings
        self.trust_domain = settings.trust_domain
        self.xds_updater = xds_updater
        self.shard = ShardKey(cluster=settings.cluster_id, provider=KUBERNETES_REGISTRY)
        self.metrics = metrics if metrics is not None else RegistryMetrics()
        self.caches = caches
        self._networks_watcher = networks_watcher

        self.queue = EventQueue(settings.cluster_id)
        self.sync_state = SyncState()
        self.registrar = EventRegistrar(self.queue, self.sync_state, self.metrics)
        self.handlers = ControllerHandlers()
        self._namespace_discovery_handlers: list[NamespaceDiscoveryHandler] = []
        self._crd_handlers: list[CrdHandler] = []

        self._lock = RWLock()
        self._services: dict[Hostname, Service] = {}
        # hostname -> node labels a NodePort gateway service selects
        self._node_selectors: dict[Hostname, dict[str, str]] = {}
        # only nodes with an external address are kept
        self._nodes: dict[NodeName, NodeRecord] = {}
        self._external_name_instances: dict[Hostname, list[ServiceInstance]] = {}

        self.workload_instances = WorkloadInstanceIndex()
        self.networks = NetworkTopologyResolver(settings.cluster_id, self._lock)
        if networks_watcher is not None:
            networks_watcher.add_networks_handler(self.reload_network_lookup)
            mesh_networks = networks_watcher.networks()
        if mesh_networks is not None:
            self.networks.reload_mesh_networks(mesh_networks)

        self.discovery_filter = DiscoveryNamespacesFilter(
            caches.namespaces, settings.discovery_selectors
        )
        self.namespaces = caches.namespaces
        self.nodes = caches.nodes
        self.kube_services: ObjectCache[KubeService] = FilteredObjectCache(
            caches.services, self.discovery_filter.filter
        )
        pods_view: ObjectCache[Pod] = FilteredObjectCache(
            caches.pods, self.discovery_filter.filter
        )
        self.pods = PodCache(
            pods_view,
            self.metrics,
            queue_endpoint_event=self._queue_endpoint_resync,
            on_ip_indexed=self._proxy_update,
            notify_workload=self._notify_pod_workload,
        )

        self.endpoints: EndpointSource
        if settings.endpoint_mode is EndpointMode.ENDPOINT_SLICE_ONLY:
            self.endpoints = EndpointSliceController(
                self,
                FilteredObjectCache(caches.endpoint_slices, self.discovery_filter.filter),
                caches.endpoint_slices,
            )
        else:
            self.endpoints = EndpointsController(
                self,
                FilteredObjectCache(caches.endpoints, self.discovery_filter.filter),
                caches.endpoints,
            )

        self.exports = ServiceExportCache(
            self,
            caches.service_exports if settings.enable_mcs_service_discovery else None,
        )
        self.imports = ServiceImportCache(
            self, caches.service_imports if settings.enable_mcs_host else None
        )

        self._register_handlers()

    def _register_handlers(self) -> None:
        if self.settings.system_namespace:
            self.registrar.register(
                self.namespaces,
                ResourceHandler(kind=KIND_NAMESPACES, handle=self._on_namespace_event),
            )
        self._register_discovery_handlers()
        self.registrar.register(
            self.kube_services,
            ResourceHandler(kind=KIND_SERVICES, handle=self.on_service_event),
        )
        self.registrar.register(self.endpoints.cache, self.endpoints.resource_handler())
        self.registrar.register(
            self.nodes, ResourceHandler(kind=KIND_NODES, handle=self.on_node_event)
        )
        self.registrar.register(
            self.pods.pods,
            ResourceHandler(
                kind=KIND_PODS,
                handle=self.pods.on_event,
                skip_update=self.pods.label_filter,
            ),
        )
        if self.caches.crds is not None:
            self.caches.crds.add_event_handler(
                EventHandler(on_add=self._on_crd_added)
            )
        if self.imports.enabled:
            self.handlers.append_service_handler(self.imports.on_service_event)
        self.exports.register()
        self.imports.register()

    def _register_discovery_handlers(self) -> None:
        discovery = self.discovery_filter

        def on_add(ns: Namespace) -> None:
            if discovery.namespace_created(ns):
                self.queue.push(lambda: self.handle_selected_namespace(ns.name))

        def on_update(old: Namespace, cur: Namespace) -> None:
            changed, selected = discovery.namespace_updated(old, cur)
            if not changed:
                return
            if selected:
                self.queue.push(lambda: self.handle_selected_namespace(cur.name))
            else:
                self.queue.push(lambda: self.handle_deselected_namespace(cur.name))

        # objects in a deleted namespace delete themselves
        def on_delete(ns: Namespace) -> None:
            discovery.namespace_deleted(ns)

        self.namespaces.add_event_handler(
            EventHandler(on_add=on_add, on_update=on_update, on_delete=on_delete)
        )

    # identity

    def cluster(self) -> ClusterId:
        return self.settings.cluster_id

    def provider(self) -> str:
        return KUBERNETES_REGISTRY

    def network(self, endpoint_ip: IPAddress, labels: LabelMap | None) -> NetworkId:
        return self.networks.network(endpoint_ip, labels)

    def has_synced(self) -> bool:
        return self.sync_state.synced()

    # service events

    def on_service_event(
        self, _old: KubeService | None, curr: KubeService, event: Event
    ) -> None:
        logger.debug(
            f"[{self.cluster()}] handle event {event.value} for service "
            f"{curr.name} in namespace {curr.namespace}"
        )
        converted = convert_service(curr, self.settings.domain_suffix, self.cluster())
        if event is Event.DELETE:
            self.delete_service(converted)
        else:
            self.add_or_update_service(curr, converted, event, False)

    def delete_service(self, svc: Service) -> None:
        with self._lock.write():
            self._services.pop(svc.hostname, None)
            self._node_selectors.pop(svc.hostname, None)
            self._external_name_instances.pop(svc.hostname, None)
            was_gateway = self.networks.remove_gateways_locked(svc.hostname)

        if was_gateway:
            self.networks.notify_gateway_handlers()
            self.xds_updater.config_update(full_push(TriggerReason.NETWORKS))

        self.xds_updater.svc_update(self.shard, svc.hostname, svc.namespace, Event.DELETE)
        self.handlers.notify_service_handlers(None, svc, Event.DELETE)

    def add_or_update_service(
        self,
        k8s_svc: KubeService | None,
        svc: Service,
        event: Event,
        update_eds_cache: bool,
    ) -> None:
        needs_full_push = False
        node_port_gateway = False
        if svc.attributes.has_external_addresses():
            needs_full_push = self._extract_gateways(svc)
        elif k8s_svc is not None and is_node_port_gateway_service(k8s_svc):
            node_port_gateway = True
            selector = get_node_selectors_for_service(k8s_svc) or {}
            with self._lock.write():
                self._node_selectors[svc.hostname] = selector
                previous = self._services.get(svc.hostname)
                nodes = tuple(self._nodes.values())
            addresses = self._node_port_addresses(selector, nodes)
            old_addresses = (
                previous.attributes.external_addresses_for(self.cluster())
                if previous is not None
                else ()
            )
            svc = svc.with_external_addresses(self.cluster(), addresses)
            gateways_changed = self._extract_gateways(svc)
            needs_full_push = addresses != old_addresses or gateways_changed

        instances: list[ServiceInstance] = []
        if k8s_svc is not None:
            instances = external_name_service_instances(
                k8s_svc, svc, self.exports.endpoint_discoverability_policy(svc)
            )
        with self._lock.write():
            previous = self._services.get(svc.hostname)
            self._services[svc.hostname] = svc
            if not node_port_gateway:
                self._node_selectors.pop(svc.hostname, None)
            if instances:
                self._external_name_instances[svc.hostname] = instances
            else:
                self._external_name_instances.pop(svc.hostname, None)

        if needs_full_push:
            # gateway addresses changed, every endpoint's network view may differ
            self.xds_updater.config_update(full_push(TriggerReason.NETWORKS))

        if update_eds_cache or self.settings.enable_k8s_service_select_workload_entries:
            endpoints = self.build_endpoints_for_service(svc, update_eds_cache)
            if endpoints:
                self.xds_updater.eds_cache_update(
                    self.shard, svc.hostname, svc.namespace, endpoints
                )

        self.xds_updater.svc_update(self.shard, svc.hostname, svc.namespace, event)
        self.handlers.notify_service_handlers(previous, svc, event)

    def _extract_gateways(self, svc: Service) -> bool:
        changed = self.networks.extract_gateways_from_service(svc)
        if changed:
            self.networks.notify_gateway_handlers()
        return changed

    def build_endpoints_for_service(
        self, svc: Service, update_cache: bool = False
    ) -> list[IstioEndpoint]:
        endpoints = self.endpoints.build_istio_endpoints_with_service(
            svc.name, svc.namespace, svc.hostname, update_cache
        )
        if self.settings.enable_k8s_service_select_workload_entries:
            endpoints.extend(self.collect_workload_instance_endpoints(svc))
        return endpoints

    # node events

    @staticmethod
    def _node_port_addresses(
        selector: LabelMap, nodes: tuple[NodeRecord, ...]
    ) -> tuple[IPAddress, ...]:
        return tuple(
            sorted(node.address for node in nodes if subset_of(selector, node.labels))
        )

    def on_node_event(self, _old: Node | None, node: Node, event: Event) -> None:
        update_needed = False
        if event is Event.DELETE:
            update_needed = True
            with self._lock.write():
                self._nodes.pop(node.name, None)
        else:
            address = next(
                (
                    a.address
                    for a in node.addresses
                    if a.type == NODE_EXTERNAL_IP and a.address
                ),
                "",
            )
            with self._lock.write():
                if not address:
                    # a node that lost its external address is no longer tracked
                    update_needed = self._nodes.pop(node.name, None) is not None
                else:
                    record = NodeRecord(address=address, labels=dict(node.labels))
                    if self._nodes.get(node.name) != record:
                        self._nodes[node.name] = record
                        update_needed = True

        if update_needed and self.update_service_node_port_addresses():
            self.xds_updater.config_update(full_push(TriggerReason.SERVICE_UPDATE))

    def update_service_node_port_addresses(self) -> bool:
        """Recompute node addresses of every NodePort gateway service.

        Returns True when any service's address set changed.
        """
        with self._lock.read():
            targets = [
                (self._services[hostname], selector)
                for hostname, selector in self._node_selectors.items()
                if hostname in self._services
            ]
            nodes = tuple(self._nodes.values())
        if not targets:
            return False

        changed = False
        for svc, selector in targets:
            addresses = self._node_port_addresses(selector, nodes)
            if addresses == svc.attributes.external_addresses_for(self.cluster()):
                continue
            changed = True
            updated = svc.with_external_addresses(self.cluster(), addresses)
            with self._lock.write():
                if self._services.get(svc.hostname) is svc:
                    self._services[svc.hostname] = updated
            self._extract_gateways(updated)
        return changed

    def node_port_addresses(self, hostname: Hostname) -> tuple[IPAddress, ...]:
        svc = self.get_service(hostname)
        if svc is None:
            return ()
        return svc.attributes.external_addresses_for(self.cluster())

    # namespaces and networks

    def _on_namespace_event(
        self, old: Namespace | None, ns: Namespace, event: Event
    ) -> None:
        if ns.name == self.settings.system_namespace:
            self.on_system_namespace_event(old, ns, event)

    def on_system_namespace_event(
        self, _old: Namespace | None, ns: Namespace, event: Event
    ) -> None:
        if event is Event.DELETE:
            return
        if self.networks.set_system_network(ns.labels.get(TOPOLOGY_NETWORK_LABEL, "")):
            self.on_default_network_change()

    def on_default_network_change(self) -> None:
        """Recompute everything that captured the old default network."""
        error = combine_errors(
            [self._sync_pods(), self.endpoints.sync("", "", Event.ADD, True)]
        )
        if error is not None:
            logger.error(f"[{self.cluster()}] errors re-syncing after network change: {error}")
        self.reload_network_gateways()
        self.xds_updater.config_update(full_push(TriggerReason.NETWORKS))

    def reload_network_gateways(self) -> bool:
        changed = False
        for svc in self.services():
            if self.networks.extract_gateways_from_service(svc):
                changed = True
        if changed:
            self.networks.notify_gateway_handlers()
        return changed

    def reload_network_lookup(self) -> None:
        """Handler for mesh networks changes; the work runs on the queue."""

        def reload() -> None:
            if self._networks_watcher is not None:
                self.networks.reload_mesh_networks(self._networks_watcher.networks())
            self.on_default_network_change()

        self.queue.push(reload)

    def handle_selected_namespace(self, namespace: NamespaceName) -> None:
        errors: list[BaseException | None] = []
        for svc in self.kube_services.list(namespace):
            errors.append(self._call(self.on_service_event, None, svc, Event.ADD))
        for pod in self.pods.pods.list(namespace):
            errors.append(self._call(self.pods.on_event, None, pod, Event.ADD))
        errors.append(self.endpoints.sync("", namespace, Event.ADD, False))
        for handler in tuple(self._namespace_discovery_handlers):
            handler(namespace, Event.ADD)
        error = combine_errors(errors)
        if error is not None:
            logger.error(f"[{self.cluster()}] errors syncing namespace {namespace}: {error}")

    def handle_deselected_namespace(self, namespace: NamespaceName) -> None:
        errors: list[BaseException | None] = []
        # the filtered views no longer show this namespace
        for svc in self.caches.services.list(namespace):
            errors.append(self._call(self.on_service_event, None, svc, Event.DELETE))
        for pod in self.caches.pods.list(namespace):
            errors.append(self._call(self.pods.on_event, None, pod, Event.DELETE))
        errors.append(self.endpoints.sync("", namespace, Event.DELETE, False))
        for handler in tuple(self._namespace_discovery_handlers):
            handler(namespace, Event.DELETE)
        error = combine_errors(errors)
        if error is not None:
            logger.error(f"[{self.cluster()}] errors removing namespace {namespace}: {error}")

    def update_discovery_selectors(self, selectors: list[dict[str, str]]) -> None:
        """Replace the discovery selectors at runtime.

        Namespaces that enter or leave the selection are synced or removed on
        the queue, the same way a namespace label change is handled.
        """
        selected, deselected = self.discovery_filter.update_selectors(selectors)
        logger.info(
            f"[{self.cluster()}] discovery selectors updated: "
            f"{len(selected)} namespaces selected, {len(deselected)} deselected"
        )
        for namespace in sorted(selected):
            self.queue.push(lambda ns=namespace: self.handle_selected_namespace(ns))
        for namespace in sorted(deselected):
            self.queue.push(lambda ns=namespace: self.handle_deselected_namespace(ns))

    def _on_crd_added(self, crd: CustomResourceDefinition) -> None:
        def notify() -> None:
            for handler in tuple(self._crd_handlers):
                handler(crd.name)

        self.queue.push(notify)

    # workload hooks

    def _proxy_update(self, ip: IPAddress) -> None:
        self.xds_updater.proxy_update(self.cluster(), ip)

    def _queue_endpoint_resync(self, key: str) -> None:
        if not self.registrar.should_enqueue(KIND_PODS):
            return
        namespace, _, name = key.partition("/")

        def resync() -> None:
            error = self.endpoints.sync(name, namespace, Event.ADD, True)
            if error is not None:
                raise error

        self.queue.push(resync)

    def _notify_pod_workload(self, pod: Pod, event: Event) -> None:
        if not self.handlers.workload_handlers:
            return
        endpoint = EndpointBuilder.from_pod(self, pod).build_istio_endpoint(
            pod.pod_ip,
            0,
            "",
            EndpointDiscoverability.ALL_CLUSTERS,
            HealthStatus.HEALTHY,
        )
        instance = WorkloadInstance(
            name=pod.name,
            namespace=pod.namespace,
            endpoint=endpoint,
            port_map=pod_port_map(pod),
            kind=WorkloadKind.POD,
        )
        self.handlers.notify_workload_handlers(instance, event)

    def get_pod_locality(self, pod: Pod) -> LocalityString:
        return pod_locality(pod, self.nodes)

    # initial synchronization

    def informers_synced(self) -> bool:
        caches = (
            self.namespaces,
            self.kube_services,
            self.endpoints.cache,
            self.pods.pods,
            self.nodes,
        )
        if not all(cache.has_synced() for cache in caches):
            return False
        crds = self.caches.crds
        if crds is None:
            return True
        if not crds.has_synced():
            return False
        # federation caches are only waited on when their CRD is installed
        if crds.get(SERVICE_IMPORT_CRD) is not None and not self.imports.has_synced():
            return False
        if crds.get(SERVICE_EXPORT_CRD) is not None and not self.exports.has_synced():
            return False
        return True

    @staticmethod
    def _call(fn: Callable[..., None], *args: object) -> BaseException | None:
        try:
            fn(*args)
        except Exception as e:
            return e
        return None

    def _sync_discovery_namespaces(self) -> SyncError | None:
        return combine_errors([self._call(self.discovery_filter.sync_namespaces)])

    def _sync_system_namespace(self) -> SyncError | None:
        ns = self.namespaces.get(self.settings.system_namespace)
        if ns is None:
            return None
        return combine_errors([self._call(self.on_system_namespace_event, None, ns, Event.ADD)])

    def _sync_nodes(self) -> SyncError | None:
        nodes = self.nodes.list()
        logger.debug(f"[{self.cluster()}] initializing {len(nodes)} nodes")
        return combine_errors(
            [self._call(self.on_node_event, None, node, Event.ADD) for node in nodes]
        )

    def _sync_services(self) -> SyncError | None:
        services = self.kube_services.list()
        logger.debug(f"[{self.cluster()}] initializing {len(services)} services")
        return combine_errors(
            [self._call(self.on_service_event, None, svc, Event.ADD) for svc in services]
        )

    def _sync_pods(self) -> SyncError | None:
        pods = self.pods.pods.list()
        logger.debug(f"[{self.cluster()}] initializing {len(pods)} pods")
        return combine_errors(
            [self._call(self.pods.on_event, None, pod, Event.ADD) for pod in pods]
        )

    def sync_all(self) -> SyncError | None:
        """Process every cached object once: namespaces, nodes, services, pods, endpoints."""
        self.sync_state.advance(SyncPhase.FULL_LISTING)
        return combine_errors(
            [
                self._sync_discovery_namespaces(),
                self._sync_system_namespace(),
                self._sync_nodes(),
                self._sync_services(),
                self._sync_pods(),
                self.endpoints.sync("", "", Event.ADD, True),
            ]
        )

    def _on_sync_timeout(self) -> None:
        if not self.sync_state.synced():
            logger.warning(f"kube controller for {self.cluster()} initial sync timed out")
            self.sync_state.advance(SyncPhase.STEADY_STATE)

    async def _wait_for_cache_sync(self, stop: asyncio.Event) -> bool:
        while not self.informers_synced():
            try:
                await asyncio.wait_for(
                    stop.wait(), timeout=self.settings.cache_sync_poll_interval
                )
            except TimeoutError:
                continue
            return False
        return True

    async def run(self, stop: asyncio.Event) -> None:
        """Sync, then process events until ``stop`` is set."""
        loop = asyncio.get_running_loop()
        timer: asyncio.TimerHandle | None = None
        if self.settings.sync_timeout:
            timer = loop.call_later(self.settings.sync_timeout, self._on_sync_timeout)
        started = time.monotonic()

        tasks = TaskManager(f"{self.cluster()}-federation")
        tasks.create_task(self.imports.run(stop), name=f"{self.cluster()}-imports")
        tasks.create_task(self.exports.run(stop), name=f"{self.cluster()}-exports")
        try:
            if not await self._wait_for_cache_sync(stop):
                return
            error = self.sync_all()
            if error is not None:
                logger.error(f"one or more errors force-syncing resources: {error}")
            self.sync_state.advance(SyncPhase.STEADY_STATE)
            logger.info(
                f"kube controller for {self.cluster()} synced after "
                f"{time.monotonic() - started:.3f}s"
            )
            await self.queue.run(stop)
        finally:
            if timer is not None:
                timer.cancel()
            await tasks.shutdown()
        logger.info(f"[{self.cluster()}] controller terminated")

    async def cleanup(self) -> None:
        """Drain the queue within the grace period, then drop this shard."""
        if not await self.queue.close(self.settings.queue_close_timeout):
            logger.warning(
                f"queue for removed kube registry {self.cluster()!r} may not be done processing"
            )
        self.xds_updater.remove_shard(self.shard)

    # queries

    def services(self) -> list[Service]:
        with self._lock.read():
            out = list(self._services.values())
        return sorted(out, key=lambda svc: svc.hostname)

    def get_service(self, hostname: Hostname) -> Service | None:
        with self._lock.read():
            return self._services.get(hostname)

    def hostnames_for_namespaced_name(self, name: NamespacedName) -> list[Hostname]:
        hostnames = [service_hostname(name.name, name.namespace, self.settings.domain_suffix)]
        if self.settings.enable_mcs_host:
            hostnames.append(clusterset_local_hostname(name))
        return hostnames

    def services_for_namespaced_name(self, name: NamespacedName) -> list[Service]:
        hostnames = self.hostnames_for_namespaced_name(name)
        with self._lock.read():
            return [self._services[h] for h in hostnames if h in self._services]

    def instances_by_port(self, svc: Service, port: PortNumber) -> list[ServiceInstance]:
        out = self.endpoints.instances_by_port(svc, port)
        out.extend(self.service_instances_from_workload_instances(svc, port))
        if out:
            return out

        # nothing selected; ExternalName services answer with their synthetic instances
        with self._lock.read():
            external = self._external_name_instances.get(svc.hostname)
        if not external:
            return []
        return [
            instance
            for instance in external
            if instance.service.namespace == svc.namespace
            and instance.service_port.port == port
        ]

    def service_instances_from_workload_instances(
        self, svc: Service, port: PortNumber
    ) -> list[ServiceInstance]:
        if self.workload_instances.empty():
            return []
        with self._lock.read():
            in_registry = svc.hostname in self._services
        # only cluster services that load balance client side select workloads
        if (
            not in_registry
            or svc.attributes.service_registry != KUBERNETES_REGISTRY
            or svc.mesh_external
            or svc.resolution is not Resolution.CLIENT_SIDE_LB
            or svc.attributes.label_selectors is None
        ):
            return []

        k8s_svc = self.kube_services.get(svc.name, svc.namespace)
        if k8s_svc is None:
            logger.info(
                f"workload instances for {svc.name}.{svc.namespace}: "
                f"failed to get the cluster service"
            )
            return []
        service_port = svc.port_by_number(port)
        if service_port is None:
            return []

        target = find_service_target_port(service_port, k8s_svc)
        if target.num == 0:
            target = replace(target, num=service_port.port)

        selector = svc.attributes.label_selectors
        out: list[ServiceInstance] = []

        def select(instance: WorkloadInstance) -> None:
            if instance.namespace != svc.namespace:
                return
            if not subset_of(selector, instance.endpoint.labels):
                return
            matched = service_instance_from_workload_instance(
                svc, service_port, target, instance, self.metrics
            )
            if matched is not None:
                out.append(matched)

        self.workload_instances.for_each(select)
        return out

    def collect_workload_instance_endpoints(self, svc: Service) -> list[IstioEndpoint]:
        if (
            self.workload_instances.empty()
            or svc.resolution is not Resolution.CLIENT_SIDE_LB
            or not svc.ports
        ):
            return []
        return [
            instance.endpoint
            for port in svc.ports
            for instance in self.service_instances_from_workload_instances(svc, port.port)
        ]

    def _is_controller_for_proxy(self, proxy: Proxy) -> bool:
        return proxy.metadata.cluster_id in ("", self.cluster())

    def get_proxy_service_instances(self, proxy: Proxy) -> list[ServiceInstance]:
        """Service instances co-located with ``proxy``.

        Raises ``ClusterMismatchError`` when the proxy claims another cluster.
        """
        if not proxy.ip_addresses:
            logger.info(f"empty list of services for proxy {proxy.id}")
            return []

        workload = get_instance_for_proxy(
            self.workload_instances, proxy, proxy.ip_addresses[0]
        )
        if workload is not None:
            return self.service_instances_from_workload_instance(workload)

        pod = self.pods.get_pod_by_proxy(proxy)
        if pod is not None and not proxy.is_vm():
            if not self._is_controller_for_proxy(proxy):
                raise ClusterMismatchError(proxy.metadata.cluster_id, self.cluster())
            services = get_pod_services(self.kube_services.list(pod.namespace), pod.labels)
            if services:
                out: list[ServiceInstance] = []
                for k8s_svc in services:
                    out.extend(self._proxy_service_instances_by_pod(pod, k8s_svc, proxy))
                return out
            # a headless service without selector lists the pod directly
            return self.endpoints.get_proxy_service_instances(proxy)

        # the pod is not visible yet; answer from what the proxy reports
        try:
            return self._proxy_service_instances_from_metadata(proxy)
        except ClusterMismatchError:
            raise
        except RegistryError as e:
            logger.warning(f"service instances from metadata for {proxy.id} failed: {e}")
            return []

    def _dedupe_target_ports(
        self,
        k8s_svc: KubeService,
        svc: Service,
        resolve: Callable[[ServicePort], PortNumber | None],
        *,
        strict: bool,
    ) -> list[tuple[PortNumber, Port]]:
        # several service ports may share one target; keep the first per (port, protocol)
        seen: set[tuple[PortNumber, PortProtocol]] = set()
        out: list[tuple[PortNumber, Port]] = []
        for raw_port in k8s_svc.ports:
            svc_port = svc.port_by_name(raw_port.name)
            if svc_port is None:
                if strict:
                    raise ServicePortNotFoundError(
                        f"failed to get service port for {raw_port.name!r}"
                    )
                continue
            number = resolve(raw_port)
            if number is None or (number, svc_port.protocol) in seen:
                continue
            seen.add((number, svc_port.protocol))
            out.append((number, svc_port))
        return out

    def _instances_for_proxy(
        self,
        k8s_svc: KubeService,
        builder: EndpointBuilder,
        proxy: Proxy,
        resolve: Callable[[ServicePort], PortNumber | None],
        *,
        strict: bool,
    ) -> list[ServiceInstance]:
        out: list[ServiceInstance] = []
        name = NamespacedName(namespace=k8s_svc.namespace, name=k8s_svc.name)
        for svc in self.services_for_namespaced_name(name):
            discoverability = self.exports.endpoint_discoverability_policy(svc)
            ports = self._dedupe_target_ports(k8s_svc, svc, resolve, strict=strict)
            for number, svc_port in ports:
                for ip in proxy.ip_addresses:
                    out.append(
                        ServiceInstance(
                            service=svc,
                            service_port=svc_port,
                            endpoint=builder.build_istio_endpoint(
                                ip, number, svc_port.name, discoverability
                            ),
                        )
                    )
        return out

    def _proxy_service_instances_by_pod(
        self, pod: Pod, k8s_svc: KubeService, proxy: Proxy
    ) -> list[ServiceInstance]:
        def resolve(raw_port: ServicePort) -> PortNumber | None:
            try:
                return find_port(pod, raw_port)
            except TargetPortNotFoundError as e:
                logger.warning(
                    f"failed to find port for service {k8s_svc.namespace}/{k8s_svc.name}: {e}"
                )
                return None

        builder = EndpointBuilder.from_pod(self, pod)
        return self._instances_for_proxy(k8s_svc, builder, proxy, resolve, strict=False)

    def _proxy_service_instances_from_metadata(self, proxy: Proxy) -> list[ServiceInstance]:
        if not proxy.labels:
            return []
        if not self._is_controller_for_proxy(proxy):
            raise ClusterMismatchError(proxy.metadata.cluster_id, self.cluster())

        services = get_pod_services(
            self.kube_services.list(proxy.config_namespace), proxy.labels
        )
        if not services:
            raise RegistryError(f"no instances found for {proxy.id}")

        def resolve(raw_port: ServicePort) -> PortNumber:
            return find_port_from_metadata(raw_port, proxy.metadata.pod_ports)

        builder = EndpointBuilder.from_metadata(self, proxy)
        out: list[ServiceInstance] = []
        for k8s_svc in services:
            hostname = service_hostname(
                k8s_svc.name, k8s_svc.namespace, self.settings.domain_suffix
            )
            if self.get_service(hostname) is None:
                raise RegistryError(f"failed to find model service for {hostname}")
            out.extend(
                self._instances_for_proxy(k8s_svc, builder, proxy, resolve, strict=True)
            )
        return out

    def service_instances_from_workload_instance(
        self, instance: WorkloadInstance
    ) -> list[ServiceInstance]:
        out: list[ServiceInstance] = []
        for k8s_svc, svc in self._selecting_services(instance):
            for service_port in svc.ports:
                if service_port.protocol is PortProtocol.UDP:
                    continue
                target = find_service_target_port(service_port, k8s_svc)
                if target.num == 0:
                    target = replace(target, num=service_port.port)
                matched = service_instance_from_workload_instance(
                    svc, service_port, target, instance, self.metrics
                )
                if matched is not None:
                    out.append(matched)
        return out

    def _selecting_services(
        self, instance: WorkloadInstance
    ) -> list[tuple[KubeService, Service]]:
        """Client-side load balanced services whose selector picks ``instance``."""
        out: list[tuple[KubeService, Service]] = []
        for k8s_svc in get_pod_services(
            self.kube_services.list(instance.namespace), instance.endpoint.labels
        ):
            svc = self.get_service(
                service_hostname(k8s_svc.name, k8s_svc.namespace, self.settings.domain_suffix)
            )
            # headless services cannot select workload instances
            if svc is None or svc.resolution is not Resolution.CLIENT_SIDE_LB:
                continue
            out.append((k8s_svc, svc))
        return out

    def workload_instance_handler(self, instance: WorkloadInstance, event: Event) -> None:
        """Index a workload registered elsewhere and push EDS for services selecting it."""
        # nothing can select an unlabelled or unnamespaced instance
        if not instance.namespace or not instance.endpoint.labels:
            return

        if event is Event.DELETE:
            self.workload_instances.delete(instance)
        else:
            self.workload_instances.insert(instance)

        for _, svc in self._selecting_services(instance):
            endpoints: list[IstioEndpoint] = []
            for port in svc.ports:
                if port.protocol is PortProtocol.UDP:
                    continue
                endpoints.extend(i.endpoint for i in self.instances_by_port(svc, port.port))
            self.xds_updater.eds_update(self.shard, svc.hostname, svc.namespace, endpoints)

    def get_proxy_workload_labels(self, proxy: Proxy) -> dict[LabelKey, LabelValue] | None:
        pod = self.pods.get_pod_by_proxy(proxy)
        if pod is None:
            return None
        locality = self.get_pod_locality(pod)
        # older proxies do not report their node
        node_name = pod.node_name if not proxy.metadata.node_name else ""
        if not locality and not node_name:
            return dict(pod.labels)
        return augment_labels(
            pod.labels,
            self.cluster(),
            locality,
            node_name,
            self.network(pod.pod_ip, pod.labels),
        )

    def mcs_services(self) -> list[MCSServiceInfo]:
        """Merged export and import view, sorted by namespace then name."""
        exported = {e.namespaced_name: e for e in self.exports.exported_services()}
        imported = {i.namespaced_name: i for i in self.imports.imported_services()}
        out: list[MCSServiceInfo] = []
        names = sorted(exported.keys() | imported.keys(), key=lambda n: (n.namespace, n.name))
        for name in names:
            export = exported.get(name)
            service_import = imported.get(name)
            out.append(
                MCSServiceInfo(
                    cluster=self.cluster(),
                    name=name.name,
                    namespace=name.namespace,
                    exported=export is not None,
                    imported=service_import is not None,
                    discoverability=dict(export.discoverability) if export else {},
                    cluster_set_vips=(
                        service_import.cluster_set_vips if service_import else ()
                    ),
                )
            )
        return out

    def network_gateways(self) -> list[NetworkGateway]:
        return self.networks.network_gateways()

    # handler registration

    def append_service_handler(self, handler: ServiceHandler) -> None:
        self.handlers.append_service_handler(handler)

    def append_workload_handler(self, handler: WorkloadHandler) -> None:
        self.handlers.append_workload_handler(handler)

    def append_namespace_discovery_handler(self, handler: NamespaceDiscoveryHandler) -> None:
        self._namespace_discovery_handlers.append(handler)

    def append_crd_handler(self, handler: CrdHandler) -> None:
        self._crd_handlers.append(handler)

    def append_network_gateway_handler(self, handler: GatewayHandler) -> None:
        self.networks.append_gateway_handler(handler)
