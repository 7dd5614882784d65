"""
Cluster resource shapes.

Only the fields the controller actually reads are modelled. Objects are
frozen: a watch cache replaces an object on update, it never edits one.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from meshreg.datastructures.type_aliases import (
    IPAddress,
    LabelKey,
    LabelValue,
    NamespaceName,
    PortName,
    PortNumber,
    ResourceName,
    Timestamp,
)

SERVICE_TYPE_CLUSTER_IP = "ClusterIP"
SERVICE_TYPE_NODE_PORT = "NodePort"
SERVICE_TYPE_LOAD_BALANCER = "LoadBalancer"
SERVICE_TYPE_EXTERNAL_NAME = "ExternalName"
CLUSTER_IP_NONE = "None"

NODE_EXTERNAL_IP = "ExternalIP"
NODE_INTERNAL_IP = "InternalIP"

POD_RUNNING = "Running"
POD_SUCCEEDED = "Succeeded"
POD_FAILED = "Failed"

ADDRESS_TYPE_IPV4 = "IPv4"
ADDRESS_TYPE_IPV6 = "IPv6"
ADDRESS_TYPE_FQDN = "FQDN"


@dataclass(frozen=True, slots=True)
class ObjectMeta:
    name: ResourceName
    namespace: NamespaceName = ""
    labels: dict[LabelKey, LabelValue] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    creation_timestamp: Timestamp = 0.0
    deletion_timestamp: Timestamp | None = None


@dataclass(frozen=True, slots=True)
class KubeObject:
    meta: ObjectMeta

    @property
    def name(self) -> ResourceName:
        return self.meta.name

    @property
    def namespace(self) -> NamespaceName:
        return self.meta.namespace

    @property
    def labels(self) -> dict[LabelKey, LabelValue]:
        return self.meta.labels

    @property
    def annotations(self) -> dict[str, str]:
        return self.meta.annotations

    @property
    def key(self) -> str:
        if self.meta.namespace:
            return f"{self.meta.namespace}/{self.meta.name}"
        return self.meta.name


@dataclass(frozen=True, slots=True)
class Namespace(KubeObject):
    pass


@dataclass(frozen=True, slots=True)
class ServicePort:
    port: PortNumber
    name: PortName = ""
    protocol: str = "TCP"
    # int, str (named container port) or None when unset
    target_port: int | str | None = None
    node_port: PortNumber | None = None
    app_protocol: str | None = None


@dataclass(frozen=True, slots=True)
class LoadBalancerIngress:
    ip: IPAddress = ""
    hostname: str = ""


@dataclass(frozen=True, slots=True)
class KubeService(KubeObject):
    type: str = SERVICE_TYPE_CLUSTER_IP
    cluster_ip: str = ""
    selector: dict[LabelKey, LabelValue] = field(default_factory=dict)
    ports: tuple[ServicePort, ...] = ()
    external_ips: tuple[IPAddress, ...] = ()
    external_name: str = ""
    load_balancer_ingress: tuple[LoadBalancerIngress, ...] = ()
    internal_traffic_policy: str = "Cluster"


@dataclass(frozen=True, slots=True)
class ContainerPort:
    container_port: PortNumber
    name: PortName = ""
    protocol: str = "TCP"


@dataclass(frozen=True, slots=True)
class Pod(KubeObject):
    node_name: str = ""
    service_account: str = ""
    pod_ip: IPAddress = ""
    phase: str = POD_RUNNING
    ready: bool = True
    container_ports: tuple[ContainerPort, ...] = ()
    hostname: str = ""
    subdomain: str = ""


@dataclass(frozen=True, slots=True)
class NodeAddress:
    type: str
    address: str


@dataclass(frozen=True, slots=True)
class Node(KubeObject):
    addresses: tuple[NodeAddress, ...] = ()


@dataclass(frozen=True, slots=True)
class ObjectReference:
    kind: str
    name: ResourceName
    namespace: NamespaceName = ""


@dataclass(frozen=True, slots=True)
class EndpointAddress:
    ip: IPAddress
    target_ref: ObjectReference | None = None
    node_name: str = ""
    hostname: str = ""


@dataclass(frozen=True, slots=True)
class EndpointPort:
    port: PortNumber
    name: PortName = ""
    protocol: str = "TCP"


@dataclass(frozen=True, slots=True)
class EndpointSubset:
    addresses: tuple[EndpointAddress, ...] = ()
    not_ready_addresses: tuple[EndpointAddress, ...] = ()
    ports: tuple[EndpointPort, ...] = ()


@dataclass(frozen=True, slots=True)
class Endpoints(KubeObject):
    subsets: tuple[EndpointSubset, ...] = ()


@dataclass(frozen=True, slots=True)
class EndpointConditions:
    # None means "unknown", which consumers treat as ready
    ready: bool | None = None
    serving: bool | None = None
    terminating: bool | None = None


@dataclass(frozen=True, slots=True)
class SliceEndpoint:
    addresses: tuple[IPAddress, ...]
    conditions: EndpointConditions = field(default_factory=EndpointConditions)
    target_ref: ObjectReference | None = None
    node_name: str = ""
    hostname: str = ""


@dataclass(frozen=True, slots=True)
class EndpointSlice(KubeObject):
    address_type: str = ADDRESS_TYPE_IPV4
    endpoints: tuple[SliceEndpoint, ...] = ()
    ports: tuple[EndpointPort, ...] = ()


@dataclass(frozen=True, slots=True)
class ServiceExport(KubeObject):
    pass


@dataclass(frozen=True, slots=True)
class ServiceImport(KubeObject):
    ips: tuple[IPAddress, ...] = ()
    type: str = "ClusterSetIP"


@dataclass(frozen=True, slots=True)
class CustomResourceDefinition(KubeObject):
    pass
