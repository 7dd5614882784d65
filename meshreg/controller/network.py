"""
Network topology resolution and cross-network gateways.

An endpoint's network is decided, in order, by the workload's own network
label, the network label on the system namespace, and finally the mesh
networks configuration (registry membership, then CIDR ranges).
"""

from __future__ import annotations

import ipaddress
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol, TypeAlias

from loguru import logger

from meshreg.config import DEFAULT_NETWORK_GATEWAY_PORT, MeshNetworks
from meshreg.controller.rwlock import RWLock
from meshreg.core.model import NetworkGateway, Service
from meshreg.datastructures.type_aliases import (
    ClusterId,
    Hostname,
    IPAddress,
    LabelMap,
    NetworkId,
    PortNumber,
)
from meshreg.kube.wellknown import GATEWAY_PORT_LABEL, TOPOLOGY_NETWORK_LABEL

GatewayHandler: TypeAlias = Callable[[], None]


class NetworksWatcher(Protocol):
    """Source of the mesh networks configuration."""

    def networks(self) -> MeshNetworks: ...

    def add_networks_handler(self, handler: Callable[[], None]) -> None: ...


@dataclass(frozen=True, slots=True)
class _CidrEntry:
    network: NetworkId
    cidr: ipaddress.IPv4Network | ipaddress.IPv6Network


@dataclass(frozen=True, slots=True)
class _RegistryGateway:
    network: NetworkId
    port: PortNumber


class NetworkTopologyResolver:
    """Network state of one cluster, guarded by the controller's lock."""

    def __init__(self, cluster_id: ClusterId, lock: RWLock) -> None:
        self.cluster_id = cluster_id
        self._lock = lock
        self._system_network: NetworkId = ""
        self._network_for_registry: NetworkId = ""
        self._cidrs: list[_CidrEntry] = []
        self._registry_gateways: dict[Hostname, _RegistryGateway] = {}
        self._gateways_by_service: dict[Hostname, tuple[NetworkGateway, ...]] = {}
        self._gateway_handlers: list[GatewayHandler] = []

    def network(self, endpoint_ip: IPAddress, labels: LabelMap | None) -> NetworkId:
        if labels:
            labelled = labels.get(TOPOLOGY_NETWORK_LABEL, "")
            if labelled:
                return labelled
        system = self.system_network()
        if system:
            return system
        return self.network_from_mesh_networks(endpoint_ip)

    def system_network(self) -> NetworkId:
        with self._lock.read():
            return self._system_network

    def set_system_network(self, network: NetworkId) -> bool:
        """Record the system namespace network; True when it changed."""
        with self._lock.write():
            previous = self._system_network
            self._system_network = network
        if previous != network:
            logger.info(
                f"[{self.cluster_id}] default network changed from "
                f"{previous or '<none>'} to {network or '<none>'}"
            )
            return True
        return False

    def network_from_mesh_networks(self, endpoint_ip: IPAddress) -> NetworkId:
        with self._lock.read():
            if self._network_for_registry:
                return self._network_for_registry
            cidrs = tuple(self._cidrs)
        if not cidrs:
            return ""
        try:
            ip = ipaddress.ip_address(endpoint_ip)
        except ValueError:
            return ""
        matches = [entry.network for entry in cidrs if ip in entry.cidr]
        if len(matches) > 1:
            logger.warning(
                f"found multiple network CIDRs matching the endpoint IP {endpoint_ip}; "
                f"using the first match"
            )
        return matches[0] if matches else ""

    def reload_mesh_networks(self, mesh_networks: MeshNetworks | None) -> None:
        network_for_registry: NetworkId = ""
        cidrs: list[_CidrEntry] = []
        registry_gateways: dict[Hostname, _RegistryGateway] = {}
        networks = mesh_networks.networks if mesh_networks is not None else {}
        for name, network in networks.items():
            for endpoint in network.endpoints:
                if endpoint.from_registry == self.cluster_id:
                    network_for_registry = name
                if endpoint.from_cidr:
                    try:
                        cidr = ipaddress.ip_network(endpoint.from_cidr, strict=False)
                    except ValueError as e:
                        logger.warning(f"ignoring invalid CIDR {endpoint.from_cidr}: {e}")
                        continue
                    cidrs.append(_CidrEntry(network=name, cidr=cidr))
            for gateway in network.gateways:
                if gateway.registry_service_name:
                    registry_gateways[gateway.registry_service_name] = _RegistryGateway(
                        network=name, port=gateway.port
                    )
        with self._lock.write():
            self._network_for_registry = network_for_registry
            self._cidrs = cidrs
            self._registry_gateways = registry_gateways
        logger.debug(
            f"[{self.cluster_id}] loaded mesh networks: {len(cidrs)} CIDR range(s), "
            f"{len(registry_gateways)} registry gateway(s)"
        )

    def _gateway_details(self, svc: Service) -> tuple[PortNumber, NetworkId]:
        network = svc.attributes.labels.get(TOPOLOGY_NETWORK_LABEL, "")
        if network:
            raw_port = svc.attributes.labels.get(GATEWAY_PORT_LABEL, "")
            if raw_port:
                try:
                    return int(raw_port), network
                except ValueError:
                    logger.warning(
                        f"could not parse {raw_port!r} for {GATEWAY_PORT_LABEL} on "
                        f"{svc.namespace}/{svc.name}; defaulting to "
                        f"{DEFAULT_NETWORK_GATEWAY_PORT}"
                    )
            return DEFAULT_NETWORK_GATEWAY_PORT, network
        registry_gateway = self._registry_gateways.get(svc.hostname)
        if registry_gateway is not None:
            return registry_gateway.port, registry_gateway.network
        return 0, ""

    def extract_gateways_from_service(self, svc: Service) -> bool:
        """Re-derive the gateways ``svc`` publishes; True when they changed."""
        with self._lock.write():
            port, network = self._gateway_details(svc)
            gateways: tuple[NetworkGateway, ...] = ()
            if port and network:
                gateways = tuple(
                    NetworkGateway(
                        network=network, address=address, port=port, cluster=self.cluster_id
                    )
                    for address in svc.attributes.external_addresses_for(self.cluster_id)
                )
            existing = self._gateways_by_service.get(svc.hostname, ())
            if set(gateways) == set(existing):
                return False
            if gateways:
                self._gateways_by_service[svc.hostname] = gateways
            else:
                del self._gateways_by_service[svc.hostname]
            return True

    def remove_gateways_locked(self, hostname: Hostname) -> bool:
        """Forget the gateways of a deleted service; the caller holds the write lock."""
        return self._gateways_by_service.pop(hostname, None) is not None

    def network_gateways(self) -> list[NetworkGateway]:
        with self._lock.read():
            unique = {
                gateway
                for gateways in self._gateways_by_service.values()
                for gateway in gateways
            }
        return sorted(unique, key=lambda g: (g.network, g.address, g.port, g.cluster))

    def append_gateway_handler(self, handler: GatewayHandler) -> None:
        with self._lock.write():
            self._gateway_handlers.append(handler)

    def notify_gateway_handlers(self) -> None:
        with self._lock.read():
            handlers = tuple(self._gateway_handlers)
        for handler in handlers:
            handler()
