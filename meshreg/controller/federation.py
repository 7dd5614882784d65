"""
Multi-cluster service export and import tracking.

Exports decide whether a service's endpoints may be discovered from other
clusters. Imports carry the cluster-set VIPs used to publish the
``clusterset.local`` hostname of a service. Each cache drains its own event
queue alongside the controller's main queue.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING

from loguru import logger

from meshreg.controller.handlers import EventRegistrar, ResourceHandler
from meshreg.controller.queue import EventQueue
from meshreg.core.model import (
    EndpointDiscoverability,
    Event,
    NamespacedName,
    Service,
)
from meshreg.core.push import TriggerReason, full_push
from meshreg.datastructures.type_aliases import Hostname, IPAddress
from meshreg.kube.client import ObjectCache
from meshreg.kube.conversion import clusterset_local_hostname, service_hostname
from meshreg.kube.resources import ServiceExport, ServiceImport
from meshreg.kube.wellknown import CLUSTERSET_DOMAIN, KIND_SERVICE_EXPORTS, KIND_SERVICE_IMPORTS

if TYPE_CHECKING:
    from meshreg.controller.controller import Controller


def namespaced_name_for_service(svc: Service) -> NamespacedName:
    return NamespacedName(namespace=svc.namespace, name=svc.name)


def is_clusterset_hostname(hostname: Hostname) -> bool:
    return hostname.endswith(f".svc.{CLUSTERSET_DOMAIN}")


@dataclass(frozen=True, slots=True)
class ExportedService:
    namespaced_name: NamespacedName
    discoverability: dict[Hostname, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ImportedService:
    namespaced_name: NamespacedName
    cluster_set_vips: tuple[IPAddress, ...] = ()


class _FederationCache(ABC):
    kind: str

    def __init__(self, controller: Controller, cache: ObjectCache | None) -> None:
        self.c = controller
        self.cache = cache
        self.queue = EventQueue(f"{controller.cluster()}-{self.kind}")

    @property
    def enabled(self) -> bool:
        return self.cache is not None

    def register(self) -> None:
        if self.cache is None:
            return
        registrar = EventRegistrar(self.queue, None, self.c.metrics)
        registrar.register(self.cache, ResourceHandler(kind=self.kind, handle=self.on_event))

    def has_synced(self) -> bool:
        return self.cache is None or self.cache.has_synced()

    async def run(self, stop: asyncio.Event) -> None:
        if self.cache is None:
            return
        logger.debug(f"[{self.c.cluster()}] starting {self.kind} consumer")
        await self.queue.run(stop)

    @abstractmethod
    def on_event(self, _old, obj, event: Event) -> None: ...


class ServiceExportCache(_FederationCache):
    """Tracks ServiceExports and the discoverability they confer."""

    kind = KIND_SERVICE_EXPORTS

    def is_exported(self, name: NamespacedName) -> bool:
        if self.cache is None:
            return False
        return self.cache.get(name.name, name.namespace) is not None

    def on_event(self, _old: ServiceExport | None, obj: ServiceExport, event: Event) -> None:
        # updates do not change exported-ness
        if event is Event.UPDATE:
            return
        self.update_xds(NamespacedName(namespace=obj.namespace, name=obj.name))

    def update_xds(self, name: NamespacedName) -> None:
        """Rebuild and push the endpoints of ``name`` under the new policy."""
        for svc in self.c.services_for_namespaced_name(name):
            endpoints = self.c.build_endpoints_for_service(svc, True)
            self.c.xds_updater.eds_update(self.c.shard, svc.hostname, name.namespace, endpoints)

    def endpoint_discoverability_policy(
        self, svc: Service | None
    ) -> EndpointDiscoverability:
        if svc is None or not self.enabled:
            return EndpointDiscoverability.ALL_CLUSTERS
        if (
            self.c.settings.enable_mcs_cluster_local
            and not is_clusterset_hostname(svc.hostname)
            and not self.is_exported(namespaced_name_for_service(svc))
        ):
            return EndpointDiscoverability.CLUSTER_LOCAL
        return EndpointDiscoverability.ALL_CLUSTERS

    def exported_services(self) -> list[ExportedService]:
        if self.cache is None:
            return []
        out: list[ExportedService] = []
        for export in self.cache.list():
            name = NamespacedName(namespace=export.namespace, name=export.name)
            discoverability: dict[Hostname, str] = {}
            for hostname in (
                service_hostname(name.name, name.namespace, self.c.settings.domain_suffix),
                clusterset_local_hostname(name),
            ):
                svc = self.c.get_service(hostname)
                if svc is not None:
                    discoverability[hostname] = self.endpoint_discoverability_policy(
                        svc
                    ).value
            out.append(ExportedService(namespaced_name=name, discoverability=discoverability))
        return out


class ServiceImportCache(_FederationCache):
    """Tracks ServiceImports and maintains ``clusterset.local`` services."""

    kind = KIND_SERVICE_IMPORTS

    def cluster_set_ips(self, name: NamespacedName) -> tuple[IPAddress, ...]:
        if self.cache is None:
            return ()
        record = self.cache.get(name.name, name.namespace)
        if record is None:
            return ()
        return tuple(ip for ip in record.ips if ip)

    def imported_services(self) -> list[ImportedService]:
        if self.cache is None:
            return []
        return [
            ImportedService(
                namespaced_name=NamespacedName(namespace=si.namespace, name=si.name),
                cluster_set_vips=tuple(ip for ip in si.ips if ip),
            )
            for si in self.cache.list()
        ]

    def _gen_mcs_service(
        self, real: Service, hostname: Hostname, vips: tuple[IPAddress, ...]
    ) -> Service:
        cluster_vips = dict(real.attributes.cluster_vips)
        cluster_vips[self.c.cluster()] = vips
        return replace(
            real,
            hostname=hostname,
            default_address=vips[0],
            attributes=replace(real.attributes, cluster_vips=cluster_vips),
        )

    def on_service_event(self, _prev: Service | None, svc: Service, event: Event) -> None:
        """Mirror a cluster.local service change onto its clusterset.local twin."""
        if not self.enabled or is_clusterset_hostname(svc.hostname):
            return
        # the service handler runs on the main queue; serialize on ours
        self.queue.push(lambda: self._sync_mcs_service(svc, event))

    def _sync_mcs_service(self, svc: Service, event: Event) -> None:
        name = namespaced_name_for_service(svc)
        mcs_host = clusterset_local_hostname(name)
        previous = self.c.get_service(mcs_host)
        vips = self.cluster_set_ips(name)
        if not vips or (event is Event.DELETE and self.c.get_service(svc.hostname) is None):
            if previous is not None:
                self.c.delete_service(previous)
            return
        event = Event.UPDATE if previous is not None else Event.ADD
        self.c.add_or_update_service(
            None, self._gen_mcs_service(svc, mcs_host, vips), event, False
        )

    def on_event(self, _old: ServiceImport | None, obj: ServiceImport, event: Event) -> None:
        name = NamespacedName(namespace=obj.namespace, name=obj.name)
        mcs_host = clusterset_local_hostname(name)
        mcs_service = self.c.get_service(mcs_host)
        ips = tuple(ip for ip in obj.ips if ip)
        needs_full_push = False

        if mcs_service is None:
            if event is Event.DELETE or not ips:
                return
            real = self.c.get_service(
                service_hostname(name.name, name.namespace, self.c.settings.domain_suffix)
            )
            if real is None:
                logger.warning(
                    f"failed processing {event.value} event for ServiceImport "
                    f"{name} in cluster {self.c.cluster()}: no matching service found"
                )
                return
            event = Event.ADD
            mcs_service = self._gen_mcs_service(real, mcs_host, ips)
        else:
            if event is Event.DELETE or not ips:
                self.c.delete_service(mcs_service)
                return
            event = Event.UPDATE
            if mcs_service.attributes.cluster_vips.get(self.c.cluster(), ()) != ips:
                mcs_service = self._gen_mcs_service(mcs_service, mcs_host, ips)
                needs_full_push = True

        # the import may change discoverability, so the EDS cache is rebuilt
        self.c.add_or_update_service(None, mcs_service, event, True)
        if needs_full_push:
            self.c.xds_updater.config_update(full_push(TriggerReason.SERVICE_UPDATE))
