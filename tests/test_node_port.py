"""NodePort gateway services publish the external addresses of selected nodes."""

import threading

from meshreg.core.model import NetworkGateway
from meshreg.core.push import TriggerReason
from meshreg.kube.resources import EndpointPort
from meshreg.kube.wellknown import NODE_ZONE_LABEL_GA, TOPOLOGY_NETWORK_LABEL
from tests.helpers import (
    drain,
    make_endpoints,
    make_node,
    make_node_port_gateway,
    make_pod,
    make_service,
    new_controller,
    sync_and_drain,
)

GATEWAY_HOST = "gateway.istio-system.svc.cluster.local"


def edge_cluster():
    controller, caches, updater = new_controller()
    caches.nodes.load(
        [
            make_node("n1", "1.1.1.1", {"role": "edge"}),
            make_node("n2", "2.2.2.2", {"role": "other"}),
            make_node("n3", labels={"role": "edge"}, internal_ip="10.9.0.3"),
        ]
    )
    caches.services.load(
        [
            make_node_port_gateway(
                node_selector={"role": "edge"},
                labels={TOPOLOGY_NETWORK_LABEL: "nw1"},
            )
        ]
    )
    sync_and_drain(controller)
    return controller, caches, updater


class TestNodePortAddresses:
    def test_only_selected_nodes_with_external_ip(self):
        controller, _, _ = edge_cluster()
        assert controller.node_port_addresses(GATEWAY_HOST) == ("1.1.1.1",)

    def test_empty_selector_selects_every_external_node(self):
        controller, caches, _ = new_controller()
        caches.nodes.load(
            [make_node("n1", "1.1.1.1"), make_node("n2", "2.2.2.2", {"zone": "b"})]
        )
        caches.services.load([make_node_port_gateway(node_selector={})])
        sync_and_drain(controller)
        assert controller.node_port_addresses(GATEWAY_HOST) == ("1.1.1.1", "2.2.2.2")

    def test_node_ports_recorded_on_service(self):
        controller, _, _ = edge_cluster()
        svc = controller.get_service(GATEWAY_HOST)
        assert svc.attributes.cluster_external_ports == {"cluster-1": {15443: 32443}}

    def test_unknown_service_has_no_addresses(self):
        controller, _, _ = edge_cluster()
        assert controller.node_port_addresses("missing.default.svc.cluster.local") == ()

    def test_gateway_published_for_labelled_network(self):
        controller, _, _ = edge_cluster()
        assert controller.network_gateways() == [
            NetworkGateway(network="nw1", address="1.1.1.1", port=15443, cluster="cluster-1")
        ]


class TestNodeEvents:
    def test_new_matching_node_triggers_full_push(self):
        controller, caches, updater = edge_cluster()
        updater.clear()

        caches.nodes.upsert(make_node("n4", "4.4.4.4", {"role": "edge"}))
        drain(controller.queue)

        assert controller.node_port_addresses(GATEWAY_HOST) == ("1.1.1.1", "4.4.4.4")
        assert updater.full_pushes(TriggerReason.SERVICE_UPDATE)
        assert {gw.address for gw in controller.network_gateways()} == {
            "1.1.1.1",
            "4.4.4.4",
        }

    def test_non_matching_node_does_not_push(self):
        controller, caches, updater = edge_cluster()
        updater.clear()

        caches.nodes.upsert(make_node("n5", "5.5.5.5", {"role": "other"}))
        drain(controller.queue)

        assert controller.node_port_addresses(GATEWAY_HOST) == ("1.1.1.1",)
        assert updater.full_pushes(TriggerReason.SERVICE_UPDATE) == []

    def test_node_losing_external_ip_is_dropped(self):
        controller, caches, updater = edge_cluster()
        caches.nodes.upsert(make_node("n4", "4.4.4.4", {"role": "edge"}))
        drain(controller.queue)
        updater.clear()

        caches.nodes.upsert(make_node("n4", labels={"role": "edge"}, internal_ip="10.9.0.4"))
        drain(controller.queue)

        assert controller.node_port_addresses(GATEWAY_HOST) == ("1.1.1.1",)
        assert updater.full_pushes(TriggerReason.SERVICE_UPDATE)

    def test_deleted_node_is_dropped(self):
        controller, caches, updater = edge_cluster()
        updater.clear()

        caches.nodes.delete("n1")
        drain(controller.queue)

        assert controller.node_port_addresses(GATEWAY_HOST) == ()
        assert updater.full_pushes(TriggerReason.SERVICE_UPDATE)
        assert controller.network_gateways() == []

    def test_relabelled_node_moves_out_of_selection(self):
        controller, caches, _ = edge_cluster()
        caches.nodes.upsert(make_node("n1", "1.1.1.1", {"role": "other"}))
        drain(controller.queue)
        assert controller.node_port_addresses(GATEWAY_HOST) == ()

    def test_unchanged_resync_does_not_push(self):
        controller, caches, updater = edge_cluster()
        updater.clear()

        caches.nodes.resync()
        drain(controller.queue)

        assert updater.config_updates == []

    def test_service_created_after_nodes_picks_them_up(self):
        controller, caches, _ = new_controller()
        caches.nodes.load([make_node("n1", "1.1.1.1", {"role": "edge"})])
        sync_and_drain(controller)

        caches.services.upsert(make_node_port_gateway(node_selector={"role": "edge"}))
        drain(controller.queue)

        assert controller.node_port_addresses(GATEWAY_HOST) == ("1.1.1.1",)


class TestFullSync:
    def test_nodes_are_known_before_services_and_endpoints(self):
        controller, caches, _ = new_controller()
        caches.nodes.load(
            [make_node("n1", "192.168.1.1", {NODE_ZONE_LABEL_GA: "z1"})]
        )
        caches.services.load(
            [make_node_port_gateway(node_selector={NODE_ZONE_LABEL_GA: "z1"})]
        )
        caches.pods.load([make_pod("gateway", "istio-system", ip="10.1.0.7", node_name="n1")])
        caches.endpoints.load(
            [
                make_endpoints(
                    "gateway",
                    "istio-system",
                    addresses=[("10.1.0.7", "gateway")],
                    ports=(EndpointPort(port=15443, name="tls"),),
                )
            ]
        )

        sync_and_drain(controller)

        svc = controller.get_service(GATEWAY_HOST)
        assert svc is not None
        assert controller.node_port_addresses(GATEWAY_HOST) == ("192.168.1.1",)
        [instance] = controller.instances_by_port(svc, 15443)
        assert instance.endpoint.address == "10.1.0.7"
        assert instance.endpoint.locality.label == "/z1/"


class TestGatewayRemoval:
    def test_deleted_gateway_no_longer_tracks_nodes(self):
        controller, caches, updater = edge_cluster()

        caches.services.delete("gateway", "istio-system")
        drain(controller.queue)
        updater.clear()

        assert controller._node_selectors == {}
        caches.nodes.upsert(make_node("n4", "4.4.4.4", {"role": "edge"}))
        drain(controller.queue)

        assert controller.node_port_addresses(GATEWAY_HOST) == ()
        assert updater.full_pushes(TriggerReason.SERVICE_UPDATE) == []

    def test_gateway_turned_cluster_ip_no_longer_tracks_nodes(self):
        controller, caches, updater = edge_cluster()

        caches.services.upsert(make_service("gateway", "istio-system"))
        drain(controller.queue)
        updater.clear()

        assert GATEWAY_HOST not in controller._node_selectors
        caches.nodes.upsert(make_node("n4", "4.4.4.4", {"role": "edge"}))
        drain(controller.queue)

        assert controller.node_port_addresses(GATEWAY_HOST) == ()
        assert updater.full_pushes(TriggerReason.SERVICE_UPDATE) == []

    def test_readers_never_see_a_service_without_its_node_selector(self):
        controller, caches, _ = edge_cluster()
        stop = threading.Event()
        broken: list[str] = []

        def reader() -> None:
            while not stop.is_set():
                with controller._lock.read():
                    if (
                        GATEWAY_HOST in controller._services
                        and GATEWAY_HOST not in controller._node_selectors
                    ):
                        broken.append(GATEWAY_HOST)

        thread = threading.Thread(target=reader, daemon=True)
        thread.start()
        try:
            for _ in range(200):
                caches.services.delete("gateway", "istio-system")
                drain(controller.queue)
                caches.services.upsert(make_node_port_gateway(node_selector={"role": "edge"}))
                drain(controller.queue)
        finally:
            stop.set()
            thread.join(timeout=5)

        assert broken == []
        assert controller.node_port_addresses(GATEWAY_HOST) == ("1.1.1.1",)
