"""Interface to the downstream distribution system."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from loguru import logger

from meshreg.core.model import KUBERNETES_REGISTRY, Event, IstioEndpoint
from meshreg.datastructures.type_aliases import (
    ClusterId,
    Hostname,
    IPAddress,
    NamespaceName,
)


class TriggerReason(Enum):
    SERVICE_UPDATE = "service"
    ENDPOINT_UPDATE = "endpoint"
    HEADLESS_ENDPOINT_UPDATE = "headlessendpoint"
    NETWORKS = "networks"
    GLOBAL_UPDATE = "global"


@dataclass(frozen=True, slots=True)
class ShardKey:
    """Scopes updates from one registry instance."""

    cluster: ClusterId
    provider: str = KUBERNETES_REGISTRY

    def __str__(self) -> str:
        return f"{self.provider}/{self.cluster}"


@dataclass(frozen=True, slots=True)
class PushRequest:
    full: bool = False
    reasons: frozenset[TriggerReason] = field(default_factory=frozenset)


class XDSUpdater(Protocol):
    """Receives computed endpoint sets and push triggers."""

    def svc_update(
        self,
        shard: ShardKey,
        hostname: Hostname,
        namespace: NamespaceName,
        event: Event,
    ) -> None: ...

    def eds_update(
        self,
        shard: ShardKey,
        hostname: Hostname,
        namespace: NamespaceName,
        endpoints: list[IstioEndpoint],
    ) -> None: ...

    def eds_cache_update(
        self,
        shard: ShardKey,
        hostname: Hostname,
        namespace: NamespaceName,
        endpoints: list[IstioEndpoint],
    ) -> None: ...

    def config_update(self, request: PushRequest) -> None: ...

    def proxy_update(self, cluster: ClusterId, ip: IPAddress) -> None: ...

    def remove_shard(self, shard: ShardKey) -> None: ...


def full_push(*reasons: TriggerReason) -> PushRequest:
    return PushRequest(full=True, reasons=frozenset(reasons))


class LoggingXDSUpdater:
    """An ``XDSUpdater`` that only logs what it is told; used by the CLI."""

    def svc_update(
        self, shard: ShardKey, hostname: Hostname, namespace: NamespaceName, event: Event
    ) -> None:
        logger.debug(f"[{shard}] service {event.value}: {hostname} ({namespace})")

    def eds_update(
        self,
        shard: ShardKey,
        hostname: Hostname,
        namespace: NamespaceName,
        endpoints: list[IstioEndpoint],
    ) -> None:
        logger.debug(f"[{shard}] eds update: {hostname} has {len(endpoints)} endpoint(s)")

    def eds_cache_update(
        self,
        shard: ShardKey,
        hostname: Hostname,
        namespace: NamespaceName,
        endpoints: list[IstioEndpoint],
    ) -> None:
        logger.debug(
            f"[{shard}] eds cache update: {hostname} has {len(endpoints)} endpoint(s)"
        )

    def config_update(self, request: PushRequest) -> None:
        reasons = ",".join(sorted(reason.value for reason in request.reasons))
        logger.debug(f"config update full={request.full} reasons={reasons}")

    def proxy_update(self, cluster: ClusterId, ip: IPAddress) -> None:
        logger.debug(f"[{cluster}] proxy update for {ip}")

    def remove_shard(self, shard: ShardKey) -> None:
        logger.debug(f"[{shard}] shard removed")
