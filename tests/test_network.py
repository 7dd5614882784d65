"""Tests for network resolution, gateways and default network changes."""

from meshreg.config import (
    ControllerSettings,
    MeshNetworks,
    Network,
    NetworkEndpoint,
    NetworkGatewaySpec,
)
from meshreg.controller import ClusterCaches, Controller
from meshreg.controller.network import NetworkTopologyResolver
from meshreg.controller.rwlock import RWLock
from meshreg.core.model import NetworkGateway
from meshreg.core.push import TriggerReason
from meshreg.kube.wellknown import GATEWAY_PORT_LABEL, TOPOLOGY_NETWORK_LABEL
from tests.helpers import (
    RecordingXDSUpdater,
    convert,
    drain,
    make_endpoints,
    make_load_balancer,
    make_namespace,
    make_pod,
    make_service,
    new_controller,
    sync_and_drain,
)

WEB_HOST = "web.default.svc.cluster.local"
LB_HOST = "lb.istio-system.svc.cluster.local"


def cidr_networks() -> MeshNetworks:
    return MeshNetworks(
        networks={
            "nw-a": Network(endpoints=[NetworkEndpoint(from_cidr="10.1.0.0/16")]),
            "nw-b": Network(endpoints=[NetworkEndpoint(from_cidr="10.0.0.0/8")]),
        }
    )


class TestNetworkResolution:
    def test_label_wins_over_everything(self):
        resolver = NetworkTopologyResolver("c1", RWLock())
        resolver.reload_mesh_networks(cidr_networks())
        resolver.set_system_network("nw-sys")
        assert resolver.network("10.1.2.3", {TOPOLOGY_NETWORK_LABEL: "nw-pod"}) == "nw-pod"

    def test_system_network_before_mesh_networks(self):
        resolver = NetworkTopologyResolver("c1", RWLock())
        resolver.reload_mesh_networks(cidr_networks())
        resolver.set_system_network("nw-sys")
        assert resolver.network("10.1.2.3", {}) == "nw-sys"

    def test_registry_membership_before_cidr(self):
        resolver = NetworkTopologyResolver("c1", RWLock())
        networks = cidr_networks()
        networks.networks["nw-reg"] = Network(
            endpoints=[NetworkEndpoint(from_registry="c1")]
        )
        resolver.reload_mesh_networks(networks)
        assert resolver.network("10.1.2.3", None) == "nw-reg"

    def test_first_matching_cidr_in_declaration_order(self):
        resolver = NetworkTopologyResolver("c1", RWLock())
        resolver.reload_mesh_networks(cidr_networks())
        assert resolver.network("10.1.2.3", None) == "nw-a"
        assert resolver.network("10.9.0.1", None) == "nw-b"
        assert resolver.network("192.168.0.1", None) == ""

    def test_unparseable_ip_has_no_network(self):
        resolver = NetworkTopologyResolver("c1", RWLock())
        resolver.reload_mesh_networks(cidr_networks())
        assert resolver.network("not-an-ip", None) == ""

    def test_invalid_cidr_is_skipped(self):
        resolver = NetworkTopologyResolver("c1", RWLock())
        resolver.reload_mesh_networks(
            MeshNetworks(
                networks={
                    "bad": Network(endpoints=[NetworkEndpoint(from_cidr="10.0.0.0/99")]),
                    "good": Network(endpoints=[NetworkEndpoint(from_cidr="10.0.0.0/8")]),
                }
            )
        )
        assert resolver.network("10.0.0.1", None) == "good"

    def test_clearing_mesh_networks(self):
        resolver = NetworkTopologyResolver("c1", RWLock())
        resolver.reload_mesh_networks(cidr_networks())
        resolver.reload_mesh_networks(None)
        assert resolver.network("10.1.2.3", None) == ""

    def test_set_system_network_reports_change(self):
        resolver = NetworkTopologyResolver("c1", RWLock())
        assert resolver.set_system_network("nw1") is True
        assert resolver.set_system_network("nw1") is False
        assert resolver.set_system_network("") is True


class TestGatewayExtraction:
    def test_labelled_service_uses_default_port(self):
        resolver = NetworkTopologyResolver("c1", RWLock())
        svc = convert(
            make_load_balancer(
                "gw", "istio-system", "3.3.3.3", {TOPOLOGY_NETWORK_LABEL: "nw1"}
            ),
            cluster_id="c1",
        )
        assert resolver.extract_gateways_from_service(svc) is True
        assert resolver.network_gateways() == [
            NetworkGateway(network="nw1", address="3.3.3.3", port=15443, cluster="c1")
        ]
        assert resolver.extract_gateways_from_service(svc) is False

    def test_port_label_overrides_default(self):
        resolver = NetworkTopologyResolver("c1", RWLock())
        svc = convert(
            make_load_balancer(
                "gw",
                "istio-system",
                "3.3.3.3",
                {TOPOLOGY_NETWORK_LABEL: "nw1", GATEWAY_PORT_LABEL: "16443"},
            ),
            cluster_id="c1",
        )
        resolver.extract_gateways_from_service(svc)
        assert [gw.port for gw in resolver.network_gateways()] == [16443]

    def test_unparseable_port_label_falls_back(self):
        resolver = NetworkTopologyResolver("c1", RWLock())
        svc = convert(
            make_load_balancer(
                "gw",
                "istio-system",
                "3.3.3.3",
                {TOPOLOGY_NETWORK_LABEL: "nw1", GATEWAY_PORT_LABEL: "abc"},
            ),
            cluster_id="c1",
        )
        resolver.extract_gateways_from_service(svc)
        assert [gw.port for gw in resolver.network_gateways()] == [15443]

    def test_unlabelled_unregistered_service_is_not_a_gateway(self):
        resolver = NetworkTopologyResolver("c1", RWLock())
        svc = convert(make_load_balancer("gw", "istio-system", "3.3.3.3"), cluster_id="c1")
        assert resolver.extract_gateways_from_service(svc) is False
        assert resolver.network_gateways() == []


def system_namespace(network: str):
    return make_namespace("istio-system", {TOPOLOGY_NETWORK_LABEL: network})


def web_objects(pod_labels=None):
    labels = {"app": "web", **(pod_labels or {})}
    return (
        [make_service("web")],
        [make_pod("web", ip="10.1.0.5", labels=labels)],
        [make_endpoints("web", addresses=[("10.1.0.5", "web")])],
    )


def networks_of(endpoints) -> set[str]:
    return {ep.network for ep in endpoints}


class TestControllerNetworks:
    def test_system_namespace_network_applies_to_endpoints(self):
        controller, caches, updater = new_controller()
        services, pods, endpoints = web_objects()
        caches.namespaces.load([system_namespace("nw-sys")])
        caches.services.load(services)
        caches.pods.load(pods)
        caches.endpoints.load(endpoints)
        sync_and_drain(controller)

        assert networks_of(updater.last_eds(WEB_HOST)) == {"nw-sys"}

    def test_pod_label_beats_system_namespace(self):
        controller, caches, updater = new_controller()
        services, pods, endpoints = web_objects({TOPOLOGY_NETWORK_LABEL: "nw-pod"})
        caches.namespaces.load([system_namespace("nw-sys")])
        caches.services.load(services)
        caches.pods.load(pods)
        caches.endpoints.load(endpoints)
        sync_and_drain(controller)

        assert networks_of(updater.last_eds(WEB_HOST)) == {"nw-pod"}

    def test_cidr_used_without_labels(self):
        controller, caches, updater = new_controller(mesh_networks=cidr_networks())
        services, pods, endpoints = web_objects()
        caches.services.load(services)
        caches.pods.load(pods)
        caches.endpoints.load(endpoints)
        sync_and_drain(controller)

        assert networks_of(updater.last_eds(WEB_HOST)) == {"nw-a"}

    def test_default_network_change_recomputes_and_pushes(self):
        controller, caches, updater = new_controller()
        services, pods, endpoints = web_objects()
        caches.namespaces.load([system_namespace("nw-1")])
        caches.services.load(services)
        caches.pods.load(pods)
        caches.endpoints.load(endpoints)
        sync_and_drain(controller)
        updater.clear()

        caches.namespaces.upsert(
            make_namespace("istio-system", {TOPOLOGY_NETWORK_LABEL: "nw-2"})
        )
        drain(controller.queue)

        assert controller.networks.system_network() == "nw-2"
        assert networks_of(updater.last_eds(WEB_HOST)) == {"nw-2"}
        assert updater.full_pushes(TriggerReason.NETWORKS)

    def test_unrelated_namespace_does_not_change_network(self):
        controller, caches, updater = new_controller()
        sync_and_drain(controller)

        caches.namespaces.upsert(make_namespace("other", {TOPOLOGY_NETWORK_LABEL: "nw-x"}))
        drain(controller.queue)

        assert controller.networks.system_network() == ""
        assert updater.full_pushes(TriggerReason.NETWORKS) == []


class TestControllerGateways:
    def registry_gateway_env(self):
        networks = MeshNetworks(
            networks={
                "nw2": Network(
                    gateways=[NetworkGatewaySpec(registry_service_name=LB_HOST, port=443)]
                )
            }
        )
        controller, caches, updater = new_controller(mesh_networks=networks)
        caches.services.load([make_load_balancer("lb", "istio-system", "3.3.3.3")])
        notified: list[int] = []
        controller.append_network_gateway_handler(lambda: notified.append(1))
        sync_and_drain(controller)
        return controller, caches, updater, notified

    def test_registry_gateway_uses_declaring_network(self):
        controller, _, updater, notified = self.registry_gateway_env()
        assert controller.network_gateways() == [
            NetworkGateway(network="nw2", address="3.3.3.3", port=443, cluster="cluster-1")
        ]
        assert notified
        assert updater.full_pushes(TriggerReason.NETWORKS)

    def test_deleting_gateway_service_removes_gateways(self):
        controller, caches, updater, notified = self.registry_gateway_env()
        updater.clear()
        notified.clear()

        caches.services.delete("lb", "istio-system")
        drain(controller.queue)

        assert controller.network_gateways() == []
        assert notified == [1]
        assert updater.full_pushes(TriggerReason.NETWORKS)

    def test_gateway_address_change_replaces_gateways(self):
        controller, caches, _, _ = self.registry_gateway_env()

        caches.services.upsert(make_load_balancer("lb", "istio-system", "4.4.4.4"))
        drain(controller.queue)

        assert [gw.address for gw in controller.network_gateways()] == ["4.4.4.4"]

    def test_mesh_networks_reload_through_watcher(self):
        class Watcher:
            def __init__(self):
                self.current = MeshNetworks()
                self.handlers = []

            def networks(self):
                return self.current

            def add_networks_handler(self, handler):
                self.handlers.append(handler)

        watcher = Watcher()
        caches = ClusterCaches.in_memory()
        updater = RecordingXDSUpdater()
        controller = Controller(
            ControllerSettings(cluster_id="cluster-1"),
            updater,
            caches,
            networks_watcher=watcher,
        )
        caches.services.load([make_load_balancer("lb", "istio-system", "3.3.3.3")])
        sync_and_drain(controller)
        assert controller.network_gateways() == []

        watcher.current = MeshNetworks(
            networks={
                "nw2": Network(
                    endpoints=[NetworkEndpoint(from_registry="cluster-1")],
                    gateways=[NetworkGatewaySpec(registry_service_name=LB_HOST)],
                )
            }
        )
        for handler in watcher.handlers:
            handler()
        drain(controller.queue)

        assert controller.network("10.9.9.9", None) == "nw2"
        assert [gw.network for gw in controller.network_gateways()] == ["nw2"]
        assert updater.full_pushes(TriggerReason.NETWORKS)
