"""Conversion from raw cluster objects to registry model records."""

from __future__ import annotations

import json
from collections.abc import Iterable
from dataclasses import dataclass

from loguru import logger

from meshreg.core.model import (
    UNSPECIFIED_IP,
    EndpointDiscoverability,
    IstioEndpoint,
    NamespacedName,
    PodPort,
    Port,
    PortProtocol,
    Resolution,
    Service,
    ServiceAttributes,
    ServiceInstance,
)
from meshreg.datastructures.labels import selects
from meshreg.datastructures.type_aliases import (
    ClusterId,
    Hostname,
    LabelMap,
    NamespaceName,
    PortNumber,
    ResourceName,
)
from meshreg.errors import TargetPortNotFoundError
from meshreg.kube.resources import (
    CLUSTER_IP_NONE,
    SERVICE_TYPE_EXTERNAL_NAME,
    SERVICE_TYPE_LOAD_BALANCER,
    SERVICE_TYPE_NODE_PORT,
    KubeService,
    Pod,
    ServicePort,
)
from meshreg.kube.wellknown import (
    CLUSTERSET_DOMAIN,
    EXPORT_TO_ANNOTATION,
    NODE_SELECTOR_ANNOTATION,
)

_PROTOCOL_NAMES: dict[str, PortProtocol] = {
    "tcp": PortProtocol.TCP,
    "udp": PortProtocol.UDP,
    "http": PortProtocol.HTTP,
    "http2": PortProtocol.HTTP2,
    "https": PortProtocol.HTTPS,
    "grpc": PortProtocol.GRPC,
    "grpc-web": PortProtocol.GRPC_WEB,
    "tls": PortProtocol.TLS,
    "mongo": PortProtocol.MONGO,
    "redis": PortProtocol.REDIS,
    "mysql": PortProtocol.MYSQL,
}


def service_hostname(
    name: ResourceName, namespace: NamespaceName, domain_suffix: str
) -> Hostname:
    return f"{name}.{namespace}.svc.{domain_suffix}"


def clusterset_local_hostname(name: NamespacedName) -> Hostname:
    return f"{name.name}.{name.namespace}.svc.{CLUSTERSET_DOMAIN}"


def _parse_protocol(value: str) -> PortProtocol | None:
    lowered = value.lower()
    if lowered in _PROTOCOL_NAMES:
        return _PROTOCOL_NAMES[lowered]
    # grpc-web must win over the "grpc" prefix
    if lowered.startswith("grpc-web"):
        return PortProtocol.GRPC_WEB
    prefix = lowered.split("-", 1)[0]
    return _PROTOCOL_NAMES.get(prefix)


def convert_protocol(port: ServicePort) -> PortProtocol:
    """Detect the application protocol of a service port.

    UDP is taken as-is, then ``app_protocol``, then the port name prefix
    (``http-web`` is HTTP). Anything unrecognised is treated as plain TCP.
    """
    if port.protocol.upper() == "UDP":
        return PortProtocol.UDP
    if port.app_protocol:
        detected = _parse_protocol(port.app_protocol)
        if detected is not None:
            return detected
    if port.name:
        detected = _parse_protocol(port.name)
        if detected is not None:
            return detected
    return PortProtocol.TCP


def convert_port(port: ServicePort) -> Port:
    return Port(name=port.name, port=port.port, protocol=convert_protocol(port))


def _parse_export_to(value: str | None) -> frozenset[str]:
    if not value:
        return frozenset()
    return frozenset(item.strip() for item in value.split(",") if item.strip())


def convert_service(
    svc: KubeService, domain_suffix: str, cluster_id: ClusterId
) -> Service:
    """Convert a raw service into the registry model."""
    address = UNSPECIFIED_IP
    resolution = Resolution.CLIENT_SIDE_LB
    mesh_external = False

    if svc.type == SERVICE_TYPE_EXTERNAL_NAME and svc.external_name:
        resolution = Resolution.DNS_LB
        mesh_external = True

    if svc.cluster_ip == CLUSTER_IP_NONE:
        resolution = Resolution.PASSTHROUGH
    elif svc.cluster_ip:
        address = svc.cluster_ip

    external_addresses: list[str] = []
    external_ports: dict[ClusterId, dict[PortNumber, PortNumber]] = {}
    if svc.type == SERVICE_TYPE_NODE_PORT:
        # only node-selector gateways publish node ports; addresses come from nodes
        if NODE_SELECTOR_ANNOTATION in svc.annotations:
            external_ports[cluster_id] = {
                port.port: port.node_port or 0 for port in svc.ports
            }
    elif svc.type == SERVICE_TYPE_LOAD_BALANCER:
        for ingress in svc.load_balancer_ingress:
            if ingress.ip:
                external_addresses.append(ingress.ip)
            elif ingress.hostname:
                external_addresses.append(ingress.hostname)
    external_addresses.extend(svc.external_ips)

    attributes = ServiceAttributes(
        name=svc.name,
        namespace=svc.namespace,
        labels=dict(svc.labels),
        label_selectors=dict(svc.selector) if svc.selector else None,
        export_to=_parse_export_to(svc.annotations.get(EXPORT_TO_ANNOTATION)),
        external_name=svc.external_name,
        node_local=svc.internal_traffic_policy == "Local",
        service_type=svc.type,
        cluster_external_addresses=(
            {cluster_id: tuple(external_addresses)} if external_addresses else {}
        ),
        cluster_external_ports=external_ports,
        cluster_vips={cluster_id: (address,)},
    )
    return Service(
        hostname=service_hostname(svc.name, svc.namespace, domain_suffix),
        attributes=attributes,
        ports=tuple(convert_port(port) for port in svc.ports),
        resolution=resolution,
        mesh_external=mesh_external,
        default_address=address,
        creation_time=svc.meta.creation_timestamp,
    )


def external_name_service_instances(
    k8s_svc: KubeService,
    svc: Service,
    discoverability: EndpointDiscoverability = EndpointDiscoverability.ALL_CLUSTERS,
) -> list[ServiceInstance]:
    """Synthesize one instance per port for an ExternalName service."""
    if k8s_svc.type != SERVICE_TYPE_EXTERNAL_NAME or not k8s_svc.external_name:
        return []
    return [
        ServiceInstance(
            service=svc,
            service_port=port,
            endpoint=IstioEndpoint(
                address=k8s_svc.external_name,
                endpoint_port=port.port,
                service_port_name=port.name,
                labels=dict(k8s_svc.labels),
                namespace=k8s_svc.namespace,
                discoverability=discoverability,
            ),
        )
        for port in svc.ports
    ]


def is_node_port_gateway_service(svc: KubeService) -> bool:
    return svc.type == SERVICE_TYPE_NODE_PORT and NODE_SELECTOR_ANNOTATION in svc.annotations


def get_node_selectors_for_service(svc: KubeService) -> dict[str, str] | None:
    raw = svc.annotations.get(NODE_SELECTOR_ANNOTATION, "")
    if not raw:
        return None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.debug(
            f"failed to parse node selector annotation for service "
            f"{svc.name}.{svc.namespace}: {e}"
        )
        return None
    if not isinstance(parsed, dict):
        return None
    return {str(key): str(value) for key, value in parsed.items()}


@dataclass(frozen=True, slots=True)
class ServiceTargetPort:
    """Where a service port lands on its workloads.

    ``num`` is the numeric target (0 when unknown). ``name`` is the port name
    to look up on the workload; ``explicit_name`` is set when the service
    itself declared a named target port.
    """

    num: PortNumber = 0
    name: str = ""
    explicit_name: bool = False


def find_service_target_port(service_port: Port, k8s_svc: KubeService) -> ServiceTargetPort:
    for port in k8s_svc.ports:
        if port.name == service_port.name or port.port == service_port.port:
            if isinstance(port.target_port, int) and port.target_port > 0:
                return ServiceTargetPort(
                    num=port.target_port, name=port.name, explicit_name=False
                )
            if isinstance(port.target_port, str) and port.target_port:
                return ServiceTargetPort(
                    num=0, name=port.target_port, explicit_name=True
                )
            return ServiceTargetPort(name=port.name)
    logger.debug(
        f"did not find matching target port for {service_port} on service {k8s_svc.name}"
    )
    return ServiceTargetPort(name=service_port.name)


def find_port(pod: Pod, svc_port: ServicePort) -> PortNumber:
    """Resolve a raw service port to the container port on ``pod``."""
    target = svc_port.target_port
    if isinstance(target, str) and target:
        for container_port in pod.container_ports:
            if (
                container_port.name == target
                and container_port.protocol == svc_port.protocol
            ):
                return container_port.container_port
        raise TargetPortNotFoundError(
            f"no container port named {target} on pod {pod.namespace}/{pod.name}"
        )
    if isinstance(target, int) and target > 0:
        return target
    return svc_port.port


def find_port_from_metadata(
    svc_port: ServicePort, pod_ports: Iterable[PodPort]
) -> PortNumber:
    """Resolve a raw service port using ports reported by a proxy."""
    target = svc_port.target_port
    if isinstance(target, str) and target:
        for pod_port in pod_ports:
            if pod_port.name == target and pod_port.protocol == svc_port.protocol:
                return pod_port.container_port
        raise TargetPortNotFoundError(f"no matching port found for {svc_port}")
    if isinstance(target, int) and target > 0:
        return target
    return svc_port.port


def get_pod_services(services: Iterable[KubeService], labels: LabelMap) -> list[KubeService]:
    """Services whose non-empty selector selects ``labels``."""
    return [svc for svc in services if selects(svc.selector, labels)]
