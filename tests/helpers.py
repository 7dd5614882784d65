"""Fakes and object builders shared by the controller tests."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from meshreg.config import ControllerSettings, MeshNetworks
from meshreg.controller import ClusterCaches, Controller
from meshreg.controller.queue import EventQueue
from meshreg.controller.sync_state import SyncPhase
from meshreg.core.model import Event, IstioEndpoint, Service
from meshreg.core.push import PushRequest, ShardKey, TriggerReason
from meshreg.kube.conversion import convert_service
from meshreg.kube.resources import (
    NODE_EXTERNAL_IP,
    NODE_INTERNAL_IP,
    ContainerPort,
    EndpointAddress,
    EndpointConditions,
    EndpointPort,
    Endpoints,
    EndpointSlice,
    EndpointSubset,
    KubeService,
    LoadBalancerIngress,
    Namespace,
    Node,
    NodeAddress,
    ObjectMeta,
    ObjectReference,
    Pod,
    ServiceExport,
    ServiceImport,
    ServicePort,
    SliceEndpoint,
)
from meshreg.kube.wellknown import NODE_SELECTOR_ANNOTATION, SERVICE_NAME_LABEL


@dataclass
class RecordingXDSUpdater:
    """Records every call the controller makes downstream."""

    svc_updates: list[tuple[str, str, Event]] = field(default_factory=list)
    eds_updates: list[tuple[str, str, list[IstioEndpoint]]] = field(default_factory=list)
    eds_cache_updates: list[tuple[str, str, list[IstioEndpoint]]] = field(
        default_factory=list
    )
    config_updates: list[PushRequest] = field(default_factory=list)
    proxy_updates: list[tuple[str, str]] = field(default_factory=list)
    removed_shards: list[ShardKey] = field(default_factory=list)

    def svc_update(self, shard, hostname, namespace, event) -> None:
        self.svc_updates.append((hostname, namespace, event))

    def eds_update(self, shard, hostname, namespace, endpoints) -> None:
        self.eds_updates.append((hostname, namespace, list(endpoints)))

    def eds_cache_update(self, shard, hostname, namespace, endpoints) -> None:
        self.eds_cache_updates.append((hostname, namespace, list(endpoints)))

    def config_update(self, request: PushRequest) -> None:
        self.config_updates.append(request)

    def proxy_update(self, cluster, ip) -> None:
        self.proxy_updates.append((cluster, ip))

    def remove_shard(self, shard: ShardKey) -> None:
        self.removed_shards.append(shard)

    def full_pushes(self, reason: TriggerReason) -> list[PushRequest]:
        return [r for r in self.config_updates if r.full and reason in r.reasons]

    def last_eds(self, hostname: str) -> list[IstioEndpoint] | None:
        for updated_host, _, endpoints in reversed(self.eds_updates):
            if updated_host == hostname:
                return endpoints
        return None

    def clear(self) -> None:
        self.svc_updates.clear()
        self.eds_updates.clear()
        self.eds_cache_updates.clear()
        self.config_updates.clear()
        self.proxy_updates.clear()


def meta(name: str, namespace: str = "", labels=None, annotations=None, **kwargs) -> ObjectMeta:
    return ObjectMeta(
        name=name,
        namespace=namespace,
        labels=dict(labels or {}),
        annotations=dict(annotations or {}),
        **kwargs,
    )


def make_namespace(name: str, labels=None) -> Namespace:
    return Namespace(meta=meta(name, labels=labels))


def make_service(
    name: str,
    namespace: str = "default",
    *,
    cluster_ip: str = "10.0.0.1",
    selector=None,
    ports=(ServicePort(port=80, name="http", target_port=8080),),
    labels=None,
    annotations=None,
    **kwargs,
) -> KubeService:
    return KubeService(
        meta=meta(name, namespace, labels, annotations),
        cluster_ip=cluster_ip,
        selector=dict(selector if selector is not None else {"app": name}),
        ports=tuple(ports),
        **kwargs,
    )


def make_node_port_gateway(
    name: str = "gateway",
    namespace: str = "istio-system",
    node_selector: dict[str, str] | None = None,
    labels=None,
) -> KubeService:
    return make_service(
        name,
        namespace,
        type="NodePort",
        labels=labels,
        annotations={NODE_SELECTOR_ANNOTATION: json.dumps(node_selector or {})},
        ports=(ServicePort(port=15443, name="tls", target_port=15443, node_port=32443),),
    )


def make_load_balancer(name: str, namespace: str, ip: str, labels=None) -> KubeService:
    return make_service(
        name,
        namespace,
        type="LoadBalancer",
        labels=labels,
        load_balancer_ingress=(LoadBalancerIngress(ip=ip),),
        ports=(ServicePort(port=15443, name="tls", target_port=15443),),
    )


def make_pod(
    name: str,
    namespace: str = "default",
    *,
    ip: str = "10.1.0.1",
    labels=None,
    annotations=None,
    node_name: str = "",
    service_account: str = "default",
    container_ports=(ContainerPort(container_port=8080, name="http"),),
    **kwargs,
) -> Pod:
    return Pod(
        meta=meta(name, namespace, labels if labels is not None else {"app": name}, annotations),
        pod_ip=ip,
        node_name=node_name,
        service_account=service_account,
        container_ports=tuple(container_ports),
        **kwargs,
    )


def make_node(name: str, external_ip: str = "", labels=None, internal_ip: str = "") -> Node:
    addresses = []
    if internal_ip:
        addresses.append(NodeAddress(type=NODE_INTERNAL_IP, address=internal_ip))
    if external_ip:
        addresses.append(NodeAddress(type=NODE_EXTERNAL_IP, address=external_ip))
    return Node(meta=meta(name, labels=labels), addresses=tuple(addresses))


def pod_ref(name: str, namespace: str = "default") -> ObjectReference:
    return ObjectReference(kind="Pod", name=name, namespace=namespace)


def make_endpoints(
    name: str,
    namespace: str = "default",
    *,
    addresses=(),
    not_ready=(),
    ports=(EndpointPort(port=8080, name="http"),),
) -> Endpoints:
    """``addresses`` items are ``(ip, pod_name or None)``."""

    def to_address(item) -> EndpointAddress:
        ip, pod_name = item
        ref = pod_ref(pod_name, namespace) if pod_name else None
        return EndpointAddress(ip=ip, target_ref=ref)

    subset = EndpointSubset(
        addresses=tuple(to_address(a) for a in addresses),
        not_ready_addresses=tuple(to_address(a) for a in not_ready),
        ports=tuple(ports),
    )
    return Endpoints(meta=meta(name, namespace), subsets=(subset,))


def make_slice(
    name: str,
    service: str,
    namespace: str = "default",
    *,
    endpoints=(),
    ports=(EndpointPort(port=8080, name="http"),),
    address_type: str = "IPv4",
) -> EndpointSlice:
    """``endpoints`` items are ``(ip, pod_name or None, ready)``."""
    return EndpointSlice(
        meta=meta(name, namespace, labels={SERVICE_NAME_LABEL: service}),
        address_type=address_type,
        endpoints=tuple(
            SliceEndpoint(
                addresses=(ip,),
                conditions=EndpointConditions(ready=ready),
                target_ref=pod_ref(pod_name, namespace) if pod_name else None,
            )
            for ip, pod_name, ready in endpoints
        ),
        ports=tuple(ports),
    )


def make_service_export(name: str, namespace: str = "default") -> ServiceExport:
    return ServiceExport(meta=meta(name, namespace))


def make_service_import(name: str, namespace: str = "default", ips=()) -> ServiceImport:
    return ServiceImport(meta=meta(name, namespace), ips=tuple(ips))


def convert(svc: KubeService, cluster_id: str = "cluster-1") -> Service:
    return convert_service(svc, "cluster.local", cluster_id)


def new_controller(
    *,
    multicluster: bool = False,
    synced: bool = True,
    mesh_networks: MeshNetworks | None = None,
    **settings: Any,
) -> tuple[Controller, ClusterCaches, RecordingXDSUpdater]:
    settings.setdefault("cluster_id", "cluster-1")
    caches = ClusterCaches.in_memory(synced=synced, multicluster=multicluster)
    updater = RecordingXDSUpdater()
    controller = Controller(
        ControllerSettings(**settings), updater, caches, mesh_networks=mesh_networks
    )
    return controller, caches, updater


def drain(queue: EventQueue) -> int:
    """Run queued tasks on the calling thread until the queue is empty."""
    ran = 0
    while (task := queue._pop()) is not None:
        queue._execute(task)
        ran += 1
    return ran


def sync_and_drain(controller: Controller) -> None:
    """Full sync, enter steady state, then process whatever was queued."""
    error = controller.sync_all()
    assert error is None, error
    controller.sync_state.advance(SyncPhase.STEADY_STATE)
    drain(controller.queue)


def settle(controller: Controller) -> None:
    drain(controller.queue)
    drain(controller.imports.queue)
    drain(controller.exports.queue)
    drain(controller.queue)


async def wait_for(condition: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)
