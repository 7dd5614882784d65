"""
Pod index and locality derivation.

The index answers "which pod owns this endpoint address" in O(1) for
endpoint assembly, and remembers endpoints that referenced a pod before the
pod was visible so they can be re-synced the moment the pod's IP arrives.
"""

from __future__ import annotations

from collections.abc import Callable
from threading import RLock

from loguru import logger

from meshreg.core.model import Event, Proxy
from meshreg.core.statistics import RegistryMetrics
from meshreg.datastructures.labels import labels_equal
from meshreg.datastructures.type_aliases import IPAddress, LocalityString, ObjectKey
from meshreg.kube.client import ObjectCache
from meshreg.kube.resources import POD_FAILED, POD_SUCCEEDED, Node, Pod
from meshreg.kube.wellknown import (
    LOCALITY_LABEL,
    NODE_REGION_LABEL,
    NODE_REGION_LABEL_GA,
    NODE_ZONE_LABEL,
    NODE_ZONE_LABEL_GA,
    TOPOLOGY_SUBZONE_LABEL,
)


def _label_value(node: Node, key: str, fallback_key: str = "") -> str:
    value = node.labels.get(key, "")
    if not value and fallback_key:
        value = node.labels.get(fallback_key, "")
    return value


def node_locality(node: Node) -> LocalityString:
    region = _label_value(node, NODE_REGION_LABEL_GA, NODE_REGION_LABEL)
    zone = _label_value(node, NODE_ZONE_LABEL_GA, NODE_ZONE_LABEL)
    subzone = _label_value(node, TOPOLOGY_SUBZONE_LABEL)
    if not region and not zone and not subzone:
        return ""
    return f"{region}/{zone}/{subzone}"


def pod_locality(pod: Pod, nodes: ObjectCache[Node]) -> LocalityString:
    """Locality of ``pod``: its explicit label, else its node's topology."""
    explicit = pod.labels.get(LOCALITY_LABEL, "")
    if explicit:
        return explicit

    # node name is filled in by the scheduler after creation
    if not pod.node_name:
        return ""
    node = nodes.get(pod.node_name)
    if node is None:
        logger.warning(
            f"unable to get node {pod.node_name!r} for pod {pod.namespace}/{pod.name}"
        )
        return ""
    return node_locality(node)


def is_pod_ready(pod: Pod) -> bool:
    return pod.ready


def should_pod_be_in_endpoints(pod: Pod) -> bool:
    return pod.phase not in (POD_FAILED, POD_SUCCEEDED)


def pod_key_from_proxy(proxy: Proxy) -> ObjectKey | None:
    parts = proxy.id.split(".")
    if len(parts) == 2 and proxy.config_namespace == parts[1]:
        return f"{parts[1]}/{parts[0]}"
    return None


class PodCache:
    """Pods indexed by IP, with pending-endpoint bookkeeping."""

    def __init__(
        self,
        pods: ObjectCache[Pod],
        metrics: RegistryMetrics,
        *,
        queue_endpoint_event: Callable[[ObjectKey], None],
        on_ip_indexed: Callable[[IPAddress], None] | None = None,
        notify_workload: Callable[[Pod, Event], None] | None = None,
    ) -> None:
        self.pods = pods
        self._metrics = metrics
        self._queue_endpoint_event = queue_endpoint_event
        self._on_ip_indexed = on_ip_indexed
        self._notify_workload = notify_workload
        self._lock = RLock()
        self._pods_by_ip: dict[IPAddress, ObjectKey] = {}
        self._ip_by_pods: dict[ObjectKey, IPAddress] = {}
        # ip -> endpoint object keys waiting for that pod
        self._need_resync: dict[IPAddress, set[ObjectKey]] = {}

    def on_event(self, _old: Pod | None, pod: Pod, event: Event) -> None:
        ip = pod.pod_ip
        # the IP is assigned after creation
        if not ip:
            return
        key = pod.key
        terminating = pod.meta.deletion_timestamp is not None or not is_pod_ready(pod)

        if event is Event.ADD:
            if terminating or not should_pod_be_in_endpoints(pod):
                return
            self._update(ip, key)
        elif event is Event.UPDATE:
            if terminating:
                if not self._delete_ip(ip, key):
                    return
                event = Event.DELETE
            elif should_pod_be_in_endpoints(pod):
                self._update(ip, key)
            else:
                return
        else:
            # usually already removed by the update carrying a deletion timestamp
            if not self._delete_ip(ip, key):
                return

        if self._notify_workload is not None:
            self._notify_workload(pod, event)

    def label_filter(self, old: Pod, cur: Pod) -> bool:
        """Never suppresses pod updates; relabels only refresh the proxy."""
        if cur.pod_ip and (
            not labels_equal(old.labels, cur.labels)
            or not labels_equal(old.annotations, cur.annotations)
        ):
            if self._on_ip_indexed is not None:
                self._on_ip_indexed(cur.pod_ip)
        return False

    def _update(self, ip: IPAddress, key: ObjectKey) -> None:
        with self._lock:
            if self._pods_by_ip.get(ip) == key:
                return
            previous_ip = self._ip_by_pods.get(key)
            if previous_ip is not None:
                self._pods_by_ip.pop(previous_ip, None)
            self._pods_by_ip[ip] = key
            self._ip_by_pods[key] = ip

            waiting = self._need_resync.pop(ip, None)
            pending = len(self._need_resync)
        if waiting:
            for endpoint_key in sorted(waiting):
                self._queue_endpoint_event(endpoint_key)
            self._metrics.set_pending_pods(pending)
        if self._on_ip_indexed is not None:
            self._on_ip_indexed(ip)

    def _delete_ip(self, ip: IPAddress, key: ObjectKey) -> bool:
        with self._lock:
            if self._pods_by_ip.get(ip) != key:
                return False
            del self._pods_by_ip[ip]
            self._ip_by_pods.pop(key, None)
            return True

    def queue_endpoint_event_on_pod_arrival(self, key: ObjectKey, ip: IPAddress) -> None:
        with self._lock:
            self._need_resync.setdefault(ip, set()).add(key)
            pending = len(self._need_resync)
        self._metrics.set_pending_pods(pending)

    def endpoint_deleted(self, key: ObjectKey, ip: IPAddress) -> None:
        with self._lock:
            waiting = self._need_resync.get(ip)
            if waiting is not None:
                waiting.discard(key)
                if not waiting:
                    del self._need_resync[ip]
            pending = len(self._need_resync)
        self._metrics.set_pending_pods(pending)

    def pending_count(self) -> int:
        with self._lock:
            return len(self._need_resync)

    def get_pod_by_key(self, key: ObjectKey) -> Pod | None:
        namespace, _, name = key.partition("/")
        return self.pods.get(name, namespace)

    def get_pod_by_ip(self, ip: IPAddress) -> Pod | None:
        with self._lock:
            key = self._pods_by_ip.get(ip)
        if key is None:
            return None
        return self.get_pod_by_key(key)

    def get_pod_by_proxy(self, proxy: Proxy) -> Pod | None:
        key = pod_key_from_proxy(proxy)
        if key is not None:
            pod = self.get_pod_by_key(key)
            if pod is not None:
                return pod
        if not proxy.ip_addresses:
            return None
        return self.get_pod_by_ip(proxy.ip_addresses[0])
