"""Tests for multi-cluster service exports and imports."""

from meshreg.core.model import EndpointDiscoverability, Event, NamespacedName
from meshreg.core.push import TriggerReason
from meshreg.kube.resources import CustomResourceDefinition
from meshreg.kube.wellknown import SERVICE_EXPORT_CRD, SERVICE_IMPORT_CRD
from tests.helpers import (
    drain,
    make_endpoints,
    make_pod,
    make_service,
    make_service_export,
    make_service_import,
    meta,
    new_controller,
    settle,
    sync_and_drain,
)

WEB_HOST = "web.default.svc.cluster.local"
WEB_CLUSTERSET = "web.default.svc.clusterset.local"


def federated_env(*, exports=(), imports=(), **settings):
    controller, caches, updater = new_controller(multicluster=True, **settings)
    caches.services.load([make_service("web")])
    caches.pods.load([make_pod("web", ip="10.1.0.5")])
    caches.endpoints.load([make_endpoints("web", addresses=[("10.1.0.5", "web")])])
    caches.service_exports.load(list(exports))
    caches.service_imports.load(list(imports))
    sync_and_drain(controller)
    settle(controller)
    return controller, caches, updater


def discoverability(updater, hostname=WEB_HOST) -> set[EndpointDiscoverability]:
    return {ep.discoverability for ep in updater.last_eds(hostname)}


class TestServiceExports:
    settings = dict(enable_mcs_service_discovery=True, enable_mcs_cluster_local=True)

    def test_unexported_service_is_cluster_local(self):
        _, _, updater = federated_env(**self.settings)
        assert discoverability(updater) == {EndpointDiscoverability.CLUSTER_LOCAL}

    def test_exported_service_is_discoverable_everywhere(self):
        _, _, updater = federated_env(exports=[make_service_export("web")], **self.settings)
        assert discoverability(updater) == {EndpointDiscoverability.ALL_CLUSTERS}

    def test_export_created_later_repushes_endpoints(self):
        controller, caches, updater = federated_env(**self.settings)
        updater.clear()

        caches.service_exports.upsert(make_service_export("web"))
        settle(controller)

        assert discoverability(updater) == {EndpointDiscoverability.ALL_CLUSTERS}

    def test_export_removed_reverts_to_cluster_local(self):
        controller, caches, updater = federated_env(
            exports=[make_service_export("web")], **self.settings
        )
        updater.clear()

        caches.service_exports.delete("web", "default")
        settle(controller)

        assert discoverability(updater) == {EndpointDiscoverability.CLUSTER_LOCAL}

    def test_without_cluster_local_mode_everything_is_discoverable(self):
        _, _, updater = federated_env(enable_mcs_service_discovery=True)
        assert discoverability(updater) == {EndpointDiscoverability.ALL_CLUSTERS}

    def test_mcs_services_reports_exports(self):
        controller, _, _ = federated_env(
            exports=[make_service_export("web")], **self.settings
        )
        [info] = controller.mcs_services()
        assert (info.name, info.namespace, info.exported, info.imported) == (
            "web",
            "default",
            True,
            False,
        )
        assert info.discoverability == {WEB_HOST: "all_clusters"}


class TestServiceImports:
    settings = dict(enable_mcs_host=True)

    def test_import_creates_clusterset_service(self):
        controller, _, _ = federated_env(
            imports=[make_service_import("web", ips=("240.0.0.1",))], **self.settings
        )
        mcs = controller.get_service(WEB_CLUSTERSET)
        assert mcs is not None
        assert mcs.default_address == "240.0.0.1"
        assert mcs.attributes.cluster_vips["cluster-1"] == ("240.0.0.1",)
        assert [p.port for p in mcs.ports] == [80]

    def test_endpoints_published_under_both_hostnames(self):
        _, _, updater = federated_env(
            imports=[make_service_import("web", ips=("240.0.0.1",))], **self.settings
        )
        assert [ep.address for ep in updater.last_eds(WEB_CLUSTERSET)] == ["10.1.0.5"]
        assert [ep.address for ep in updater.last_eds(WEB_HOST)] == ["10.1.0.5"]

    def test_import_without_ips_is_ignored(self):
        controller, _, _ = federated_env(
            imports=[make_service_import("web")], **self.settings
        )
        assert controller.get_service(WEB_CLUSTERSET) is None

    def test_import_added_later(self):
        controller, caches, _ = federated_env(**self.settings)
        caches.service_imports.upsert(make_service_import("web", ips=("240.0.0.1",)))
        settle(controller)
        assert controller.get_service(WEB_CLUSTERSET).default_address == "240.0.0.1"

    def test_import_for_unknown_service_is_dropped(self):
        controller, caches, _ = federated_env(**self.settings)
        caches.service_imports.upsert(make_service_import("ghost", ips=("240.0.0.9",)))
        settle(controller)
        assert controller.get_service("ghost.default.svc.clusterset.local") is None

    def test_vip_change_triggers_full_push(self):
        controller, caches, updater = federated_env(
            imports=[make_service_import("web", ips=("240.0.0.1",))], **self.settings
        )
        updater.clear()

        caches.service_imports.upsert(make_service_import("web", ips=("240.0.0.2",)))
        settle(controller)

        assert controller.get_service(WEB_CLUSTERSET).default_address == "240.0.0.2"
        assert updater.full_pushes(TriggerReason.SERVICE_UPDATE)

    def test_deleting_import_removes_clusterset_service(self):
        controller, caches, updater = federated_env(
            imports=[make_service_import("web", ips=("240.0.0.1",))], **self.settings
        )
        updater.clear()

        caches.service_imports.delete("web", "default")
        settle(controller)

        assert controller.get_service(WEB_CLUSTERSET) is None
        assert (WEB_CLUSTERSET, "default", Event.DELETE) in updater.svc_updates

    def test_deleting_real_service_removes_clusterset_service(self):
        controller, caches, _ = federated_env(
            imports=[make_service_import("web", ips=("240.0.0.1",))], **self.settings
        )

        caches.services.delete("web", "default")
        settle(controller)

        assert controller.get_service(WEB_HOST) is None
        assert controller.get_service(WEB_CLUSTERSET) is None

    def test_mcs_services_reports_imports(self):
        controller, _, _ = federated_env(
            imports=[make_service_import("web", ips=("240.0.0.1",))], **self.settings
        )
        [info] = controller.mcs_services()
        assert info.imported and not info.exported
        assert info.cluster_set_vips == ("240.0.0.1",)

    def test_hostnames_include_clusterset_when_enabled(self):
        controller, _, _ = federated_env(**self.settings)
        assert controller.hostnames_for_namespaced_name(
            NamespacedName(namespace="default", name="web")
        ) == [WEB_HOST, WEB_CLUSTERSET]


class TestCustomResourceDefinitions:
    def test_crd_handlers_run_on_the_queue(self):
        controller, caches, _ = new_controller(multicluster=True)
        sync_and_drain(controller)
        seen: list[str] = []
        controller.append_crd_handler(seen.append)

        caches.crds.upsert(CustomResourceDefinition(meta=meta(SERVICE_IMPORT_CRD)))
        assert seen == []
        drain(controller.queue)

        assert seen == [SERVICE_IMPORT_CRD]

    def test_federation_caches_gate_sync_only_when_installed(self):
        controller, caches, _ = new_controller(
            multicluster=True, synced=False, enable_mcs_host=True
        )
        for cache in (
            caches.namespaces,
            caches.services,
            caches.pods,
            caches.nodes,
            caches.endpoints,
            caches.crds,
        ):
            cache.mark_synced()
        assert controller.informers_synced()

        caches.crds.load([CustomResourceDefinition(meta=meta(SERVICE_IMPORT_CRD))])
        assert not controller.informers_synced()

        caches.service_imports.mark_synced()
        assert controller.informers_synced()

        caches.crds.load([CustomResourceDefinition(meta=meta(SERVICE_EXPORT_CRD))])
        assert controller.informers_synced()
