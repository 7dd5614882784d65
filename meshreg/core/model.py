"""
Registry model for meshreg.

These are the records the controller produces and serves: services, the
ports they expose, the endpoints that back them and the (service, port,
endpoint) triples handed to routing. Every record is a frozen dataclass so a
caller holding a reference can never observe a later mutation of the cache.
"""

from __future__ import annotations

import time
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import TypeVar

from meshreg.datastructures.type_aliases import (
    ClusterId,
    Hostname,
    IPAddress,
    JsonDict,
    LabelKey,
    LabelValue,
    NamespaceName,
    NetworkId,
    PortName,
    PortNumber,
    ProxyId,
    ResourceName,
    Timestamp,
)

KUBERNETES_REGISTRY = "Kubernetes"
UNSPECIFIED_IP = "0.0.0.0"


K = TypeVar("K")
V = TypeVar("V")


def frozen_map(value: Mapping[K, V] | None) -> Mapping[K, V]:
    """A read-only copy of ``value``."""
    return MappingProxyType(dict(value or {}))


class Event(Enum):
    """Kinds of change delivered to handlers and to the downstream pusher."""

    ADD = "add"
    UPDATE = "update"
    DELETE = "delete"


class Resolution(Enum):
    """How a caller resolves a service to concrete addresses."""

    CLIENT_SIDE_LB = "client_side_lb"
    DNS_LB = "dns_lb"
    PASSTHROUGH = "passthrough"


class HealthStatus(Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class EndpointDiscoverability(Enum):
    """Whether an endpoint may be seen by proxies in other clusters."""

    ALL_CLUSTERS = "all_clusters"
    CLUSTER_LOCAL = "cluster_local"


class PortProtocol(Enum):
    TCP = "TCP"
    UDP = "UDP"
    HTTP = "HTTP"
    HTTP2 = "HTTP2"
    HTTPS = "HTTPS"
    GRPC = "GRPC"
    GRPC_WEB = "GRPC-Web"
    TLS = "TLS"
    MONGO = "Mongo"
    REDIS = "Redis"
    MYSQL = "MySQL"


class WorkloadKind(Enum):
    POD = "Pod"
    WORKLOAD_ENTRY = "WorkloadEntry"


TLS_MODE_ISTIO = "istio"
TLS_MODE_DISABLED = "disabled"


@dataclass(frozen=True, slots=True)
class NamespacedName:
    namespace: NamespaceName
    name: ResourceName

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True, slots=True)
class Port:
    """A port exposed by a service."""

    name: PortName
    port: PortNumber
    protocol: PortProtocol = PortProtocol.TCP


@dataclass(frozen=True, slots=True)
class Locality:
    label: str = ""
    cluster_id: ClusterId = ""


@dataclass(frozen=True, slots=True)
class IstioEndpoint:
    """One routable instance of a workload."""

    address: IPAddress
    endpoint_port: PortNumber
    service_port_name: PortName = ""
    labels: Mapping[LabelKey, LabelValue] = field(default_factory=dict)
    locality: Locality = field(default_factory=Locality)
    network: NetworkId = ""
    health_status: HealthStatus = HealthStatus.HEALTHY
    service_account: str = ""
    tls_mode: str = TLS_MODE_DISABLED
    namespace: NamespaceName = ""
    workload_name: str = ""
    node_name: str = ""
    hostname: str = ""
    sub_domain: str = ""
    discoverability: EndpointDiscoverability = EndpointDiscoverability.ALL_CLUSTERS

    def __post_init__(self) -> None:
        object.__setattr__(self, "labels", frozen_map(self.labels))

    def to_dict(self) -> JsonDict:
        return {
            "address": self.address,
            "endpoint_port": self.endpoint_port,
            "service_port_name": self.service_port_name,
            "labels": dict(self.labels),
            "locality": self.locality.label,
            "cluster_id": self.locality.cluster_id,
            "network": self.network,
            "health_status": self.health_status.value,
            "service_account": self.service_account,
            "tls_mode": self.tls_mode,
            "namespace": self.namespace,
            "workload_name": self.workload_name,
            "node_name": self.node_name,
        }


@dataclass(frozen=True, slots=True)
class ServiceAttributes:
    """Registry-specific attributes of a service."""

    name: ResourceName
    namespace: NamespaceName
    service_registry: str = KUBERNETES_REGISTRY
    labels: Mapping[LabelKey, LabelValue] = field(default_factory=dict)
    label_selectors: Mapping[LabelKey, LabelValue] | None = None
    export_to: frozenset[str] = field(default_factory=frozenset)
    external_name: str = ""
    node_local: bool = False
    service_type: str = "ClusterIP"
    # cluster id -> addresses reachable from outside that cluster
    cluster_external_addresses: Mapping[ClusterId, tuple[IPAddress, ...]] = field(
        default_factory=dict
    )
    # cluster id -> service port -> node port
    cluster_external_ports: Mapping[ClusterId, Mapping[PortNumber, PortNumber]] = field(
        default_factory=dict
    )
    cluster_vips: Mapping[ClusterId, tuple[IPAddress, ...]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "labels", frozen_map(self.labels))
        if self.label_selectors is not None:
            object.__setattr__(self, "label_selectors", frozen_map(self.label_selectors))
        object.__setattr__(
            self, "cluster_external_addresses", frozen_map(self.cluster_external_addresses)
        )
        object.__setattr__(
            self,
            "cluster_external_ports",
            frozen_map(
                {c: frozen_map(ports) for c, ports in self.cluster_external_ports.items()}
            ),
        )
        object.__setattr__(self, "cluster_vips", frozen_map(self.cluster_vips))

    def external_addresses_for(self, cluster_id: ClusterId) -> tuple[IPAddress, ...]:
        return self.cluster_external_addresses.get(cluster_id, ())

    def has_external_addresses(self) -> bool:
        return any(self.cluster_external_addresses.values())


@dataclass(frozen=True, slots=True)
class Service:
    """A registry-visible service, keyed by hostname."""

    hostname: Hostname
    attributes: ServiceAttributes
    ports: tuple[Port, ...] = ()
    resolution: Resolution = Resolution.CLIENT_SIDE_LB
    mesh_external: bool = False
    default_address: IPAddress = UNSPECIFIED_IP
    creation_time: Timestamp = field(default_factory=time.time)

    @property
    def name(self) -> ResourceName:
        return self.attributes.name

    @property
    def namespace(self) -> NamespaceName:
        return self.attributes.namespace

    def port_by_name(self, name: PortName) -> Port | None:
        for port in self.ports:
            if port.name == name:
                return port
        return None

    def port_by_number(self, number: PortNumber) -> Port | None:
        for port in self.ports:
            if port.port == number:
                return port
        return None

    def with_external_addresses(
        self, cluster_id: ClusterId, addresses: tuple[IPAddress, ...]
    ) -> Service:
        current = dict(self.attributes.cluster_external_addresses)
        current[cluster_id] = addresses
        return replace(
            self,
            attributes=replace(self.attributes, cluster_external_addresses=current),
        )

    def to_dict(self) -> JsonDict:
        return {
            "hostname": self.hostname,
            "name": self.name,
            "namespace": self.namespace,
            "resolution": self.resolution.value,
            "mesh_external": self.mesh_external,
            "default_address": self.default_address,
            "ports": [
                {"name": p.name, "port": p.port, "protocol": p.protocol.value}
                for p in self.ports
            ],
            "cluster_external_addresses": {
                cluster: list(addresses)
                for cluster, addresses in self.attributes.cluster_external_addresses.items()
            },
        }


@dataclass(frozen=True, slots=True)
class ServiceInstance:
    """A (service, port, endpoint) triple."""

    service: Service
    service_port: Port
    endpoint: IstioEndpoint


@dataclass(frozen=True, slots=True)
class WorkloadInstance:
    """A workload registered outside the cluster's native pod machinery."""

    name: ResourceName
    namespace: NamespaceName
    endpoint: IstioEndpoint
    port_map: Mapping[PortName, PortNumber] = field(default_factory=dict)
    kind: WorkloadKind = WorkloadKind.WORKLOAD_ENTRY

    def __post_init__(self) -> None:
        object.__setattr__(self, "port_map", frozen_map(self.port_map))

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True, slots=True)
class PodPort:
    name: PortName
    container_port: PortNumber
    protocol: str = "TCP"


@dataclass(frozen=True, slots=True)
class ProxyMetadata:
    cluster_id: ClusterId = ""
    pod_ports: tuple[PodPort, ...] = ()
    node_name: str = ""
    network: NetworkId = ""
    is_vm: bool = False


@dataclass(frozen=True, slots=True)
class Proxy:
    """A connected data-plane proxy asking about its own workload."""

    id: ProxyId
    ip_addresses: tuple[IPAddress, ...] = ()
    labels: Mapping[LabelKey, LabelValue] = field(default_factory=dict)
    config_namespace: NamespaceName = ""
    metadata: ProxyMetadata = field(default_factory=ProxyMetadata)

    def __post_init__(self) -> None:
        object.__setattr__(self, "labels", frozen_map(self.labels))

    def is_vm(self) -> bool:
        return self.metadata.is_vm


@dataclass(frozen=True, slots=True)
class MCSServiceInfo:
    """Merged multi-cluster export/import view of one namespaced name."""

    cluster: ClusterId
    name: ResourceName
    namespace: NamespaceName
    exported: bool = False
    imported: bool = False
    discoverability: Mapping[Hostname, str] = field(default_factory=dict)
    cluster_set_vips: tuple[IPAddress, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "discoverability", frozen_map(self.discoverability))


@dataclass(frozen=True, slots=True)
class NetworkGateway:
    network: NetworkId
    address: str
    port: PortNumber
    cluster: ClusterId = ""
