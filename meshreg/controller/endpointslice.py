"""EndpointSlice strategy: many slices per service, merged per hostname."""

from __future__ import annotations

from threading import RLock
from typing import TYPE_CHECKING

from loguru import logger

from meshreg.controller.endpoint_builder import EndpointBuilder
from meshreg.controller.endpoints import EndpointSource
from meshreg.core.model import (
    Event,
    HealthStatus,
    IstioEndpoint,
    NamespacedName,
    Proxy,
    Service,
    ServiceInstance,
)
from meshreg.datastructures.type_aliases import (
    Hostname,
    NamespaceName,
    PortNumber,
    ResourceName,
)
from meshreg.errors import SyncError
from meshreg.kube.client import ObjectCache
from meshreg.kube.resources import ADDRESS_TYPE_FQDN, EndpointSlice, SliceEndpoint
from meshreg.kube.wellknown import KIND_ENDPOINT_SLICES, SERVICE_NAME_LABEL

if TYPE_CHECKING:
    from meshreg.controller.controller import Controller


def service_name_for_slice(slice_: EndpointSlice) -> ResourceName:
    return slice_.labels.get(SERVICE_NAME_LABEL, "")


def endpoint_health(endpoint: SliceEndpoint) -> HealthStatus:
    # an absent ready condition means ready
    if endpoint.conditions.ready is None or endpoint.conditions.ready:
        return HealthStatus.HEALTHY
    return HealthStatus.UNHEALTHY


class EndpointSliceCache:
    """hostname -> slice name -> endpoints built from that slice."""

    def __init__(self) -> None:
        self._lock = RLock()
        self._by_host: dict[Hostname, dict[ResourceName, list[IstioEndpoint]]] = {}

    def update(
        self, hostname: Hostname, slice_name: ResourceName, endpoints: list[IstioEndpoint]
    ) -> None:
        with self._lock:
            if not endpoints:
                self._delete_locked(hostname, slice_name)
                return
            self._by_host.setdefault(hostname, {})[slice_name] = list(endpoints)

    def delete(self, hostname: Hostname, slice_name: ResourceName) -> None:
        with self._lock:
            self._delete_locked(hostname, slice_name)

    def _delete_locked(self, hostname: Hostname, slice_name: ResourceName) -> None:
        slices = self._by_host.get(hostname)
        if slices is None:
            return
        slices.pop(slice_name, None)
        if not slices:
            del self._by_host[hostname]

    def get(self, hostname: Hostname) -> list[IstioEndpoint]:
        """All endpoints of ``hostname``, in slice-name order."""
        with self._lock:
            slices = self._by_host.get(hostname, {})
            return [
                endpoint for name in sorted(slices) for endpoint in slices[name]
            ]

    def has(self, hostname: Hostname) -> bool:
        with self._lock:
            return hostname in self._by_host


class EndpointSliceController(EndpointSource[EndpointSlice]):
    kind = KIND_ENDPOINT_SLICES

    def __init__(
        self,
        controller: Controller,
        cache: ObjectCache[EndpointSlice],
        unfiltered: ObjectCache[EndpointSlice] | None = None,
    ) -> None:
        super().__init__(controller, cache, unfiltered)
        self.endpoint_cache = EndpointSliceCache()

    def service_namespaced_name(self, obj: EndpointSlice) -> NamespacedName:
        return NamespacedName(namespace=obj.namespace, name=service_name_for_slice(obj))

    def on_event(self, _old: EndpointSlice | None, obj: EndpointSlice, event: Event) -> None:
        # slices not owned by a service are not ours to publish
        if not service_name_for_slice(obj):
            return
        if event is not Event.DELETE:
            self._update_slice(obj)
        super().on_event(_old, obj, event)

    def _update_slice(self, obj: EndpointSlice) -> None:
        for hostname in self.c.hostnames_for_namespaced_name(self.service_namespaced_name(obj)):
            self.endpoint_cache.update(
                hostname, obj.name, self._build_from_slice(obj, hostname)
            )

    def _build_from_slice(self, obj: EndpointSlice, hostname: Hostname) -> list[IstioEndpoint]:
        if obj.address_type == ADDRESS_TYPE_FQDN:
            return []
        discoverability = self.discoverability_for(hostname)
        owner = self.service_namespaced_name(obj)
        out: list[IstioEndpoint] = []
        for endpoint in obj.endpoints:
            health = endpoint_health(endpoint)
            if health is HealthStatus.UNHEALTHY and not self.c.settings.send_unhealthy_endpoints:
                continue
            for address in endpoint.addresses:
                pod, expected = self.get_pod(address, owner, endpoint.target_ref, hostname)
                if pod is None and expected:
                    continue
                builder = EndpointBuilder.from_pod(self.c, pod)
                for port in obj.ports:
                    out.append(
                        builder.build_istio_endpoint(
                            address, port.port, port.name, discoverability, health
                        )
                    )
        return out

    def build_istio_endpoints(
        self, obj: EndpointSlice, hostname: Hostname
    ) -> list[IstioEndpoint]:
        # every event is answered with the merged view of all slices
        return self.endpoint_cache.get(hostname)

    def build_istio_endpoints_with_service(
        self,
        name: ResourceName,
        namespace: NamespaceName,
        hostname: Hostname,
        update_cache: bool = False,
    ) -> list[IstioEndpoint]:
        slices = self.cache.list(namespace, {SERVICE_NAME_LABEL: name})
        if not slices:
            logger.debug(f"endpoint slices of ({hostname}, {namespace}) not found")
            return []
        if update_cache or not self.endpoint_cache.has(hostname):
            for obj in slices:
                self.endpoint_cache.update(
                    hostname, obj.name, self._build_from_slice(obj, hostname)
                )
        return self.endpoint_cache.get(hostname)

    def forget_endpoint(self, obj: EndpointSlice) -> dict[Hostname, list[IstioEndpoint]]:
        owner = self.service_namespaced_name(obj)
        for endpoint in obj.endpoints:
            for address in endpoint.addresses:
                self.c.pods.endpoint_deleted(str(owner), address)
        remaining: dict[Hostname, list[IstioEndpoint]] = {}
        for hostname in self.c.hostnames_for_namespaced_name(owner):
            self.endpoint_cache.delete(hostname, obj.name)
            remaining[hostname] = self.endpoint_cache.get(hostname)
        return remaining

    def instances_by_port(self, svc: Service, port: PortNumber) -> list[ServiceInstance]:
        svc_port = svc.port_by_number(port)
        if svc_port is None:
            return []
        return [
            ServiceInstance(service=svc, service_port=svc_port, endpoint=endpoint)
            for endpoint in self.endpoint_cache.get(svc.hostname)
            if endpoint.service_port_name == svc_port.name
        ]

    def get_proxy_service_instances(self, proxy: Proxy) -> list[ServiceInstance]:
        out: list[ServiceInstance] = []
        pod = self.c.pods.get_pod_by_proxy(proxy)
        builder = EndpointBuilder.from_pod(self.c, pod)
        for obj in self.cache.list(proxy.config_namespace):
            if obj.address_type == ADDRESS_TYPE_FQDN or not service_name_for_slice(obj):
                continue
            addresses = {a for endpoint in obj.endpoints for a in endpoint.addresses}
            for svc in self.c.services_for_namespaced_name(self.service_namespaced_name(obj)):
                discoverability = self.c.exports.endpoint_discoverability_policy(svc)
                for port in obj.ports:
                    svc_port = svc.port_by_name(port.name)
                    if svc_port is None:
                        continue
                    for ip in proxy.ip_addresses:
                        if ip not in addresses:
                            continue
                        out.append(
                            ServiceInstance(
                                service=svc,
                                service_port=svc_port,
                                endpoint=builder.build_istio_endpoint(
                                    ip, port.port, svc_port.name, discoverability
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
        source = self.cache if filtered else self.unfiltered
        selector = {SERVICE_NAME_LABEL: name} if name else None
        slices = source.list(namespace, selector)
        if not name:
            logger.debug(f"[{self.c.cluster()}] initializing {len(slices)} endpoint slices")
        return self._sync_objects(slices, event)
