"""Tests for controller settings loading and logging configuration."""

from types import SimpleNamespace

from loguru import logger

from meshreg.config import ControllerSettings, EndpointMode
from meshreg.core.logging import (
    configure_from_settings,
    configure_logging,
    debug_scope_filter,
    normalize_scopes,
)


def record(level: str, name: str) -> dict:
    return {"level": SimpleNamespace(name=level), "name": name}


class TestControllerSettings:
    def test_defaults(self):
        settings = ControllerSettings()
        assert settings.system_namespace == "istio-system"
        assert settings.domain_suffix == "cluster.local"
        assert settings.endpoint_mode is EndpointMode.ENDPOINTS_ONLY
        assert settings.queue_close_timeout == 30.0
        assert settings.log_debug_scopes == ()

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("MESHREG_CLUSTER_ID", "east")
        monkeypatch.setenv("MESHREG_ENDPOINT_MODE", "EndpointSliceOnly")
        monkeypatch.setenv("MESHREG_ENABLE_MCS_HOST", "true")
        monkeypatch.setenv("MESHREG_LOG_DEBUG_SCOPES", "controller.pods, kube")

        settings = ControllerSettings()

        assert settings.cluster_id == "east"
        assert settings.endpoint_mode is EndpointMode.ENDPOINT_SLICE_ONLY
        assert settings.enable_mcs_host is True
        assert settings.log_debug_scopes == ("controller.pods", "kube")

    def test_scopes_accept_sequences(self):
        settings = ControllerSettings(log_debug_scopes=["controller"])
        assert settings.log_debug_scopes == ("controller",)


class TestDebugScopes:
    def test_normalize_qualifies_and_dedupes(self):
        assert normalize_scopes(
            [" controller.pods", "meshreg.kube", "", "controller.pods", "meshreg"]
        ) == ("meshreg.controller.pods", "meshreg.kube", "meshreg")

    def test_filter_matches_module_prefixes(self):
        allow = debug_scope_filter(("meshreg.controller",))
        assert allow(record("DEBUG", "meshreg.controller.pods"))
        assert allow(record("DEBUG", "meshreg.controller"))
        assert not allow(record("DEBUG", "meshreg.controllers"))
        assert not allow(record("DEBUG", "meshreg.kube.client"))
        assert not allow(record("INFO", "meshreg.controller.pods"))
        assert not allow("not a record")


class TestConfigureLogging:
    def test_single_sink_without_scopes(self):
        assert len(configure_logging("INFO")) == 1

    def test_scoped_debug_sink(self):
        assert len(configure_logging("INFO", debug_scopes=["controller"])) == 2

    def test_debug_level_needs_no_scoped_sink(self):
        assert len(configure_logging("DEBUG", debug_scopes=["controller"])) == 1

    def test_scoped_sink_receives_only_selected_modules(self):
        selected: list[str] = []
        other: list[str] = []
        logger.add(selected.append, level="DEBUG", filter=debug_scope_filter((__name__,)))
        logger.add(other.append, level="DEBUG", filter=debug_scope_filter(("meshreg.kube",)))

        logger.debug("inside scope")

        assert any("inside scope" in message for message in selected)
        assert other == []

    def test_from_settings_merges_scopes(self):
        settings = ControllerSettings(log_level="WARNING", log_debug_scopes=["kube"])
        assert len(configure_from_settings(settings, extra_scopes=["controller"])) == 2
        assert len(configure_from_settings(settings, verbose=True)) == 1
