from enum import Enum
from typing import Annotated

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

DEFAULT_NETWORK_GATEWAY_PORT = 15443


class EndpointMode(str, Enum):
    """Which endpoint source the controller reads."""

    ENDPOINTS_ONLY = "EndpointsOnly"
    ENDPOINT_SLICE_ONLY = "EndpointSliceOnly"


class NetworkEndpoint(BaseModel):
    """One way of recognising endpoints that belong to a network."""

    from_cidr: str | None = Field(
        None, description="CIDR range whose addresses belong to the network."
    )
    from_registry: str | None = Field(
        None, description="Registry (cluster id) whose endpoints belong to the network."
    )


class NetworkGatewaySpec(BaseModel):
    """A cross-network gateway declared in mesh networks."""

    address: str | None = Field(None, description="Fixed gateway address.")
    registry_service_name: str | None = Field(
        None, description="Hostname of a registry service acting as the gateway."
    )
    port: int = Field(DEFAULT_NETWORK_GATEWAY_PORT, description="Gateway port.")


class Network(BaseModel):
    endpoints: list[NetworkEndpoint] = Field(default_factory=list)
    gateways: list[NetworkGatewaySpec] = Field(default_factory=list)


class MeshNetworks(BaseModel):
    """Mesh-wide network topology configuration, in declaration order."""

    networks: dict[str, Network] = Field(default_factory=dict)


class ControllerSettings(BaseSettings):
    """Registry controller configuration settings."""

    model_config = SettingsConfigDict(
        env_prefix="MESHREG_", env_file=".env", extra="ignore"
    )

    cluster_id: str = Field(
        "Kubernetes", description="Identifier of the cluster this controller watches."
    )
    system_namespace: str = Field(
        "istio-system",
        description="Namespace whose network label sets the default network.",
    )
    domain_suffix: str = Field(
        "cluster.local", description="DNS suffix used to build service hostnames."
    )
    trust_domain: str = Field(
        "cluster.local", description="Trust domain used for workload identities."
    )
    endpoint_mode: EndpointMode = Field(
        EndpointMode.ENDPOINTS_ONLY, description="Endpoint source strategy."
    )
    sync_timeout: float | None = Field(
        None,
        description="If set, the controller reports synced after this many seconds "
        "even when the initial ordered sync has not finished.",
    )
    queue_close_timeout: float = Field(
        30.0, description="Grace period for draining the event queue on cleanup."
    )
    cache_sync_poll_interval: float = Field(
        0.1, description="Poll interval while waiting for object caches to sync."
    )
    send_unhealthy_endpoints: bool = Field(
        False, description="Include not-ready addresses as unhealthy endpoints."
    )
    enable_k8s_service_select_workload_entries: bool = Field(
        True,
        description="Let cluster services select externally registered workloads.",
    )
    enable_mcs_service_discovery: bool = Field(
        False, description="Watch ServiceExport records."
    )
    enable_mcs_host: bool = Field(
        False, description="Serve clusterset.local hostnames for ServiceImports."
    )
    enable_mcs_cluster_local: bool = Field(
        False, description="Keep endpoints of non-exported services cluster-local."
    )
    discovery_selectors: list[dict[str, str]] = Field(
        default_factory=list,
        description="Namespace label selectors; empty means every namespace.",
    )
    log_level: str = Field("INFO", description="Log level for the process.")
    log_debug_scopes: Annotated[tuple[str, ...], NoDecode] = Field(
        (),
        description="Modules that log at DEBUG regardless of log_level, "
        "e.g. controller.endpoints; comma-separated in the environment.",
    )

    @field_validator("log_debug_scopes", mode="before")
    @classmethod
    def _split_scopes(cls, value: object) -> object:
        if isinstance(value, str):
            return tuple(scope.strip() for scope in value.split(",") if scope.strip())
        return value
