"""
Endpoint assembly.

Two interchangeable strategies turn raw endpoint objects into registry
endpoints: ``EndpointsController`` reads one legacy Endpoints object per
service, ``EndpointSliceController`` (in ``endpointslice``) merges the many
slices of a service. Both share the EDS push and the headless-service full
push implemented on ``EndpointSource``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Generic, TypeVar

from loguru import logger

from meshreg.controller.endpoint_builder import EndpointBuilder
from meshreg.controller.handlers import ResourceHandler
from meshreg.core.model import (
    EndpointDiscoverability,
    Event,
    HealthStatus,
    IstioEndpoint,
    NamespacedName,
    Proxy,
    Service,
    ServiceInstance,
)
from meshreg.core.push import PushRequest, TriggerReason
from meshreg.datastructures.type_aliases import (
    Hostname,
    IPAddress,
    NamespaceName,
    PortNumber,
    ResourceName,
)
from meshreg.errors import SyncError, combine_errors
from meshreg.kube.client import ObjectCache
from meshreg.kube.resources import (
    CLUSTER_IP_NONE,
    EndpointAddress,
    Endpoints,
    EndpointSubset,
    KubeObject,
    ObjectReference,
    Pod,
)
from meshreg.kube.wellknown import KIND_ENDPOINTS

if TYPE_CHECKING:
    from meshreg.controller.controller import Controller

E = TypeVar("E", bound=KubeObject)

# export_to value that keeps a service private to its namespace
EXPORT_PRIVATE = "~"


class EndpointSource(ABC, Generic[E]):
    """Strategy interface over one endpoint resource kind."""

    kind: str

    def __init__(
        self,
        controller: Controller,
        cache: ObjectCache[E],
        unfiltered: ObjectCache[E] | None = None,
    ) -> None:
        self.c = controller
        # cache is the discovery-filtered view, unfiltered sees every namespace
        self.cache = cache
        self.unfiltered = unfiltered if unfiltered is not None else cache

    def has_synced(self) -> bool:
        return self.cache.has_synced()

    def resource_handler(self) -> ResourceHandler[E]:
        return ResourceHandler(
            kind=self.kind, handle=self.on_event, skip_update=lambda old, cur: old == cur
        )

    @abstractmethod
    def service_namespaced_name(self, obj: E) -> NamespacedName: ...

    @abstractmethod
    def build_istio_endpoints(self, obj: E, hostname: Hostname) -> list[IstioEndpoint]:
        """Endpoints of ``obj`` as seen under ``hostname``."""

    @abstractmethod
    def build_istio_endpoints_with_service(
        self,
        name: ResourceName,
        namespace: NamespaceName,
        hostname: Hostname,
        update_cache: bool = False,
    ) -> list[IstioEndpoint]: ...

    @abstractmethod
    def forget_endpoint(self, obj: E) -> dict[Hostname, list[IstioEndpoint]]:
        """Drop ``obj`` and return what remains for each affected hostname."""

    @abstractmethod
    def instances_by_port(self, svc: Service, port: PortNumber) -> list[ServiceInstance]: ...

    @abstractmethod
    def get_proxy_service_instances(self, proxy: Proxy) -> list[ServiceInstance]: ...

    @abstractmethod
    def sync(
        self,
        name: ResourceName,
        namespace: NamespaceName,
        event: Event,
        filtered: bool = True,
    ) -> SyncError | None:
        """Re-process one service's endpoints, or all of them when ``name`` is empty."""

    def on_event(self, _old: E | None, obj: E, event: Event) -> None:
        self.update_eds(obj, event)
        self.push_headless(self.service_namespaced_name(obj))

    def _sync_objects(self, objects: list[E], event: Event) -> SyncError | None:
        errors: list[BaseException] = []
        for obj in objects:
            try:
                self.on_event(None, obj, event)
            except Exception as e:
                errors.append(e)
        return combine_errors(errors)

    def update_eds(self, obj: E, event: Event) -> None:
        name = self.service_namespaced_name(obj)
        logger.debug(
            f"[{self.c.cluster()}] handle EDS endpoint {name.name} {event.value} "
            f"in namespace {name.namespace}"
        )
        forgotten: dict[Hostname, list[IstioEndpoint]] | None = None
        if event is Event.DELETE:
            forgotten = self.forget_endpoint(obj)

        for hostname in self.c.hostnames_for_namespaced_name(name):
            if forgotten is not None:
                endpoints = list(forgotten.get(hostname, []))
            else:
                endpoints = self.build_istio_endpoints(obj, hostname)
            if self.c.settings.enable_k8s_service_select_workload_entries:
                svc = self.c.get_service(hostname)
                if svc is not None:
                    endpoints.extend(self.c.collect_workload_instance_endpoints(svc))
            self.c.xds_updater.eds_update(self.c.shard, hostname, name.namespace, endpoints)

    def push_headless(self, name: NamespacedName) -> None:
        """Full push for headless services, whose listeners track endpoints."""
        k8s_svc = self.c.kube_services.get(name.name, name.namespace)
        if k8s_svc is None or k8s_svc.cluster_ip != CLUSTER_IP_NONE:
            return
        for svc in self.c.services_for_namespaced_name(name):
            if EXPORT_PRIVATE in svc.attributes.export_to:
                continue
            self.c.xds_updater.config_update(
                PushRequest(
                    full=True,
                    reasons=frozenset({TriggerReason.HEADLESS_ENDPOINT_UPDATE}),
                )
            )
            return

    def get_pod(
        self,
        ip: IPAddress,
        owner: NamespacedName,
        target_ref: ObjectReference | None,
        hostname: Hostname,
    ) -> tuple[Pod | None, bool]:
        """Look up the pod behind an endpoint address.

        Returns ``(pod, expected)``; ``expected`` is True when the address
        names a pod, in which case a missing pod is registered for resync.
        """
        if target_ref is not None and target_ref.kind == "Pod":
            namespace = target_ref.namespace or owner.namespace
            pod = self.c.pods.get_pod_by_key(f"{namespace}/{target_ref.name}")
            if pod is None:
                self._register_endpoint_resync(owner, ip, hostname)
            return pod, True
        return self.c.pods.get_pod_by_ip(ip), False

    def _register_endpoint_resync(
        self, owner: NamespacedName, ip: IPAddress, hostname: Hostname
    ) -> None:
        logger.warning(
            f"[{self.c.cluster()}] endpoint {ip} of {hostname} references a pod "
            f"that is not visible yet; resyncing when it arrives"
        )
        self.c.metrics.endpoint_without_pod()
        self.c.pods.queue_endpoint_event_on_pod_arrival(str(owner), ip)

    def discoverability_for(self, hostname: Hostname) -> EndpointDiscoverability:
        return self.c.exports.endpoint_discoverability_policy(self.c.get_service(hostname))


def _has_proxy_ip(addresses: tuple[EndpointAddress, ...], ip: IPAddress) -> bool:
    return any(address.ip == ip for address in addresses)


class EndpointsController(EndpointSource[Endpoints]):
    """Legacy strategy: one Endpoints object per service."""

    kind = KIND_ENDPOINTS

    def service_namespaced_name(self, obj: Endpoints) -> NamespacedName:
        return NamespacedName(namespace=obj.namespace, name=obj.name)

    def _addresses(
        self, subset: EndpointSubset
    ) -> list[tuple[tuple[EndpointAddress, ...], HealthStatus]]:
        groups = [(subset.addresses, HealthStatus.HEALTHY)]
        if self.c.settings.send_unhealthy_endpoints:
            groups.append((subset.not_ready_addresses, HealthStatus.UNHEALTHY))
        return groups

    def build_istio_endpoints(
        self, obj: Endpoints, hostname: Hostname
    ) -> list[IstioEndpoint]:
        discoverability = self.discoverability_for(hostname)
        owner = self.service_namespaced_name(obj)
        out: list[IstioEndpoint] = []
        for subset in obj.subsets:
            for addresses, health in self._addresses(subset):
                for address in addresses:
                    pod, expected = self.get_pod(
                        address.ip, owner, address.target_ref, hostname
                    )
                    if pod is None and expected:
                        continue
                    builder = EndpointBuilder.from_pod(self.c, pod)
                    # endpoint ports carry the service port name
                    for port in subset.ports:
                        out.append(
                            builder.build_istio_endpoint(
                                address.ip, port.port, port.name, discoverability, health
                            )
                        )
        return out

    def build_istio_endpoints_with_service(
        self,
        name: ResourceName,
        namespace: NamespaceName,
        hostname: Hostname,
        update_cache: bool = False,
    ) -> list[IstioEndpoint]:
        obj = self.cache.get(name, namespace)
        if obj is None:
            logger.debug(f"endpoints({hostname}) not found")
            return []
        return self.build_istio_endpoints(obj, hostname)

    def forget_endpoint(self, obj: Endpoints) -> dict[Hostname, list[IstioEndpoint]]:
        key = str(self.service_namespaced_name(obj))
        for subset in obj.subsets:
            for address in subset.addresses + subset.not_ready_addresses:
                self.c.pods.endpoint_deleted(key, address.ip)
        return {}

    def instances_by_port(self, svc: Service, port: PortNumber) -> list[ServiceInstance]:
        obj = self.cache.get(svc.name, svc.namespace)
        if obj is None:
            return []
        svc_port = svc.port_by_number(port)
        if svc_port is None:
            return []
        discoverability = self.c.exports.endpoint_discoverability_policy(svc)
        owner = self.service_namespaced_name(obj)

        out: list[ServiceInstance] = []
        for subset in obj.subsets:
            for addresses, health in self._addresses(subset):
                for address in addresses:
                    pod, expected = self.get_pod(
                        address.ip, owner, address.target_ref, svc.hostname
                    )
                    if pod is None and expected:
                        continue
                    builder = EndpointBuilder.from_pod(self.c, pod)
                    for endpoint_port in subset.ports:
                        # the name is optional when a single port is defined
                        if endpoint_port.name and endpoint_port.name != svc_port.name:
                            continue
                        out.append(
                            ServiceInstance(
                                service=svc,
                                service_port=svc_port,
                                endpoint=builder.build_istio_endpoint(
                                    address.ip,
                                    endpoint_port.port,
                                    svc_port.name,
                                    discoverability,
                                    health,
                                ),
                            )
                        )
        return out

    def get_proxy_service_instances(self, proxy: Proxy) -> list[ServiceInstance]:
        out: list[ServiceInstance] = []
        pod = self.c.pods.get_pod_by_proxy(proxy)
        for obj in self.cache.list(proxy.config_namespace):
            for svc in self.c.services_for_namespaced_name(self.service_namespaced_name(obj)):
                builder = EndpointBuilder.from_pod(self.c, pod)
                discoverability = self.c.exports.endpoint_discoverability_policy(svc)
                for subset in obj.subsets:
                    for endpoint_port in subset.ports:
                        svc_port = svc.port_by_name(endpoint_port.name)
                        if svc_port is None:
                            continue
                        for ip in proxy.ip_addresses:
                            if not (
                                _has_proxy_ip(subset.addresses, ip)
                                or _has_proxy_ip(subset.not_ready_addresses, ip)
                            ):
                                continue
                            out.append(
                                ServiceInstance(
                                    service=svc,
                                    service_port=svc_port,
                                    endpoint=builder.build_istio_endpoint(
                                        ip, endpoint_port.port, svc_port.name, discoverability
                                    ),
                                )
                            )
        return out

    def sync(
        self,
        name: ResourceName,
        namespace: NamespaceName,
        event: Event,
        filtered: bool = True,
    ) -> SyncError | None:
        if name:
            obj = self.cache.get(name, namespace)
            if obj is None:
                return None
            return self._sync_objects([obj], event)
        source = self.cache if filtered else self.unfiltered
        objects = source.list(namespace)
        logger.debug(f"[{self.c.cluster()}] initializing {len(objects)} endpoints")
        return self._sync_objects(objects, event)
