"""
Per-workload endpoint metadata.

An ``EndpointBuilder`` captures everything about a workload that does not
depend on the address/port pair (labels, locality, identity, TLS mode) so
that a pod with many ports is inspected once.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

from meshreg.core.model import (
    TLS_MODE_DISABLED,
    TLS_MODE_ISTIO,
    EndpointDiscoverability,
    HealthStatus,
    IstioEndpoint,
    Locality,
    Proxy,
)
from meshreg.datastructures.type_aliases import (
    ClusterId,
    IPAddress,
    LabelKey,
    LabelMap,
    LabelValue,
    LocalityString,
    NetworkId,
    PortName,
    PortNumber,
)
from meshreg.kube.resources import Pod
from meshreg.kube.wellknown import (
    LOCALITY_LABEL,
    NODE_HOSTNAME_LABEL,
    NODE_REGION_LABEL_GA,
    NODE_ZONE_LABEL_GA,
    SIDECAR_STATUS_ANNOTATION,
    TLS_MODE_LABEL,
    TOPOLOGY_CLUSTER_LABEL,
    TOPOLOGY_NETWORK_LABEL,
    TOPOLOGY_SUBZONE_LABEL,
)


class EndpointContext(Protocol):
    """What the builder needs from the owning controller."""

    trust_domain: str

    def cluster(self) -> ClusterId: ...

    def network(self, endpoint_ip: IPAddress, labels: LabelMap) -> NetworkId: ...

    def get_pod_locality(self, pod: Pod) -> LocalityString: ...


def augment_labels(
    labels: LabelMap,
    cluster_id: ClusterId,
    locality: LocalityString,
    node_name: str,
    network: NetworkId,
) -> dict[LabelKey, LabelValue]:
    """Copy ``labels`` and add topology labels derived from placement."""
    out = dict(labels)
    region, zone, subzone = (locality.split("/") + ["", "", ""])[:3]
    if region:
        out[NODE_REGION_LABEL_GA] = region
    if zone:
        out[NODE_ZONE_LABEL_GA] = zone
    if subzone:
        out[TOPOLOGY_SUBZONE_LABEL] = subzone
    if cluster_id:
        out[TOPOLOGY_CLUSTER_LABEL] = cluster_id
    if node_name:
        out[NODE_HOSTNAME_LABEL] = node_name
    if network:
        out[TOPOLOGY_NETWORK_LABEL] = network
    return out


def spiffe_identity(trust_domain: str, namespace: str, service_account: str) -> str:
    if not service_account:
        return ""
    return f"spiffe://{trust_domain}/ns/{namespace}/sa/{service_account}"


def pod_tls_mode(pod: Pod) -> str:
    explicit = pod.labels.get(TLS_MODE_LABEL, "")
    if explicit:
        return explicit
    if SIDECAR_STATUS_ANNOTATION in pod.annotations:
        return TLS_MODE_ISTIO
    return TLS_MODE_DISABLED


@dataclass(slots=True)
class EndpointBuilder:
    controller: EndpointContext
    labels: dict[LabelKey, LabelValue] = field(default_factory=dict)
    locality: LocalityString = ""
    network: NetworkId = ""
    service_account: str = ""
    tls_mode: str = TLS_MODE_DISABLED
    namespace: str = ""
    workload_name: str = ""
    node_name: str = ""
    hostname: str = ""
    sub_domain: str = ""

    @classmethod
    def from_pod(cls, controller: EndpointContext, pod: Pod | None) -> EndpointBuilder:
        if pod is None:
            # endpoints without a backing pod still get the cluster identity
            return cls(controller=controller)
        locality = controller.get_pod_locality(pod)
        return cls(
            controller=controller,
            labels=dict(pod.labels),
            locality=locality,
            service_account=spiffe_identity(
                controller.trust_domain, pod.namespace, pod.service_account
            ),
            tls_mode=pod_tls_mode(pod),
            namespace=pod.namespace,
            workload_name=pod.name,
            node_name=pod.node_name,
            hostname=pod.hostname,
            sub_domain=pod.subdomain,
        )

    @classmethod
    def from_metadata(cls, controller: EndpointContext, proxy: Proxy) -> EndpointBuilder:
        """Build from what a proxy reports about itself, before its pod is seen."""
        return cls(
            controller=controller,
            labels=dict(proxy.labels),
            locality=proxy.labels.get(LOCALITY_LABEL, ""),
            network=proxy.metadata.network,
            tls_mode=proxy.labels.get(TLS_MODE_LABEL, TLS_MODE_DISABLED),
            namespace=proxy.config_namespace,
            node_name=proxy.metadata.node_name,
        )

    def build_istio_endpoint(
        self,
        address: IPAddress,
        port: PortNumber,
        service_port_name: PortName,
        discoverability: EndpointDiscoverability = EndpointDiscoverability.ALL_CLUSTERS,
        health: HealthStatus = HealthStatus.HEALTHY,
    ) -> IstioEndpoint:
        network = self.network or self.controller.network(address, self.labels)
        cluster_id = self.controller.cluster()
        return IstioEndpoint(
            address=address,
            endpoint_port=port,
            service_port_name=service_port_name,
            labels=augment_labels(
                self.labels, cluster_id, self.locality, self.node_name, network
            ),
            locality=Locality(label=self.locality, cluster_id=cluster_id),
            network=network,
            health_status=health,
            service_account=self.service_account,
            tls_mode=self.tls_mode,
            namespace=self.namespace,
            workload_name=self.workload_name,
            node_name=self.node_name,
            hostname=self.hostname,
            sub_domain=self.sub_domain,
            discoverability=discoverability,
        )
