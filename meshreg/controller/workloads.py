"""
Index of externally registered workload instances.

Workloads registered by other registries (virtual machines and the like)
are kept here so cluster services can select them alongside pods.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import replace
from threading import RLock

from loguru import logger

from meshreg.core.model import Port, Proxy, Service, ServiceInstance, WorkloadInstance
from meshreg.core.statistics import RegistryMetrics
from meshreg.datastructures.type_aliases import IPAddress
from meshreg.kube.conversion import ServiceTargetPort


class WorkloadInstanceIndex:
    """Workload instances by ``namespace/name`` and by IP."""

    def __init__(self) -> None:
        self._lock = RLock()
        self._by_key: dict[str, WorkloadInstance] = {}
        self._by_ip: dict[IPAddress, dict[str, WorkloadInstance]] = {}

    def insert(self, instance: WorkloadInstance) -> WorkloadInstance | None:
        """Store ``instance``, returning the one it replaced."""
        with self._lock:
            key = instance.key
            previous = self._by_key.get(key)
            if previous is not None:
                self._drop_ip(previous)
            self._by_key[key] = instance
            self._by_ip.setdefault(instance.endpoint.address, {})[key] = instance
            return previous

    def delete(self, instance: WorkloadInstance) -> WorkloadInstance | None:
        with self._lock:
            previous = self._by_key.pop(instance.key, None)
            if previous is not None:
                self._drop_ip(previous)
            return previous

    def _drop_ip(self, instance: WorkloadInstance) -> None:
        at_ip = self._by_ip.get(instance.endpoint.address)
        if at_ip is None:
            return
        at_ip.pop(instance.key, None)
        if not at_ip:
            del self._by_ip[instance.endpoint.address]

    def get_by_ip(self, ip: IPAddress) -> list[WorkloadInstance]:
        with self._lock:
            return list(self._by_ip.get(ip, {}).values())

    def for_each(self, fn: Callable[[WorkloadInstance], None]) -> None:
        with self._lock:
            instances = tuple(self._by_key.values())
        for instance in instances:
            fn(instance)

    def empty(self) -> bool:
        with self._lock:
            return not self._by_key

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_key)


def get_instance_for_proxy(
    index: WorkloadInstanceIndex, proxy: Proxy, proxy_ip: IPAddress
) -> WorkloadInstance | None:
    """Pick the workload instance a proxy at ``proxy_ip`` belongs to."""
    instances = index.get_by_ip(proxy_ip)
    if not instances:
        return None
    if len(instances) == 1:
        return instances[0]
    # proxy ids are "name.namespace"
    for instance in instances:
        if f"{instance.name}.{instance.namespace}" == proxy.id:
            return instance
    return min(instances, key=lambda wi: (wi.namespace, wi.name))


def service_instance_from_workload_instance(
    svc: Service,
    service_port: Port,
    target_port: ServiceTargetPort,
    instance: WorkloadInstance,
    metrics: RegistryMetrics | None = None,
) -> ServiceInstance | None:
    """Project a workload instance onto one port of ``svc``.

    Named target ports are resolved through the instance's port map. An
    explicitly named target port the instance does not declare excludes the
    instance.
    """
    endpoint_port = target_port.num
    if target_port.name:
        matched = instance.port_map.get(target_port.name, 0)
        if matched:
            endpoint_port = matched
        elif target_port.explicit_name:
            logger.debug(
                f"workload {instance.key} has no port named {target_port.name!r} "
                f"for {svc.hostname}:{service_port.port}; excluding it"
            )
            if metrics is not None:
                metrics.workload_port_miss()
            return None

    return ServiceInstance(
        service=svc,
        service_port=service_port,
        endpoint=replace(
            instance.endpoint,
            endpoint_port=endpoint_port,
            service_port_name=service_port.name,
        ),
    )
