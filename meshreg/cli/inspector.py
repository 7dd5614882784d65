"""
Offline inspection of a cluster snapshot.

``RegistryInspector`` feeds a snapshot through a controller's full sync,
without running the event queue, and renders what the registry would serve.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from loguru import logger
from rich.console import Console
from rich.table import Table

from meshreg.config import ControllerSettings
from meshreg.controller import ClusterCaches, Controller
from meshreg.controller.sync_state import SyncPhase
from meshreg.core.model import NetworkGateway, Service, ServiceInstance
from meshreg.core.push import LoggingXDSUpdater
from meshreg.kube.snapshot import load_snapshot


@dataclass(slots=True)
class InspectionReport:
    cluster_id: str
    services: list[Service] = field(default_factory=list)
    instances: dict[str, list[ServiceInstance]] = field(default_factory=dict)
    node_port_addresses: dict[str, tuple[str, ...]] = field(default_factory=dict)
    gateways: list[NetworkGateway] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "cluster_id": self.cluster_id,
            "services": [svc.to_dict() for svc in self.services],
            "instances": {
                hostname: [
                    {
                        "service_port": instance.service_port.port,
                        **instance.endpoint.to_dict(),
                    }
                    for instance in instances
                ]
                for hostname, instances in self.instances.items()
            },
            "node_port_addresses": {
                hostname: list(addresses)
                for hostname, addresses in self.node_port_addresses.items()
            },
            "gateways": [
                {
                    "network": gw.network,
                    "address": gw.address,
                    "port": gw.port,
                    "cluster": gw.cluster,
                }
                for gw in self.gateways
            ],
            "errors": list(self.errors),
        }


class RegistryInspector:
    """Builds and displays an ``InspectionReport`` for a snapshot file."""

    def __init__(self, settings: ControllerSettings, console: Console | None = None) -> None:
        self.settings = settings
        self.console = console or Console()

    def inspect(self, snapshot: str | Path) -> InspectionReport:
        caches = ClusterCaches.from_snapshot(load_snapshot(snapshot))
        controller = Controller(self.settings, LoggingXDSUpdater(), caches)
        report = InspectionReport(cluster_id=controller.cluster())

        error = controller.sync_all()
        controller.sync_state.advance(SyncPhase.STEADY_STATE)
        if error is not None:
            logger.warning(f"snapshot sync finished with errors: {error}")
            report.errors = [str(e) for e in error.errors]

        report.services = controller.services()
        for svc in report.services:
            instances: list[ServiceInstance] = []
            for port in svc.ports:
                instances.extend(controller.instances_by_port(svc, port.port))
            report.instances[svc.hostname] = instances
            addresses = controller.node_port_addresses(svc.hostname)
            if svc.attributes.cluster_external_ports and addresses:
                report.node_port_addresses[svc.hostname] = addresses
        report.gateways = controller.network_gateways()
        return report

    def display(self, report: InspectionReport) -> None:
        services = Table(title=f"Services ({report.cluster_id})")
        services.add_column("Hostname", style="cyan", no_wrap=True)
        services.add_column("Resolution", style="magenta")
        services.add_column("Address", style="green")
        services.add_column("Ports")
        services.add_column("Instances", justify="right")
        for svc in report.services:
            ports = ", ".join(
                f"{p.name or '-'}:{p.port}/{p.protocol.value}" for p in svc.ports
            )
            services.add_row(
                svc.hostname,
                svc.resolution.value,
                svc.default_address,
                ports,
                str(len(report.instances.get(svc.hostname, []))),
            )
        self.console.print(services)

        instances = Table(title="Service instances")
        instances.add_column("Hostname", style="cyan", no_wrap=True)
        instances.add_column("Port", justify="right")
        instances.add_column("Endpoint", style="green")
        instances.add_column("Health", justify="center")
        instances.add_column("Network", style="yellow")
        instances.add_column("Locality", style="blue")
        for hostname, items in report.instances.items():
            for instance in items:
                endpoint = instance.endpoint
                health = (
                    "[green]healthy[/green]"
                    if endpoint.health_status.value == "healthy"
                    else "[red]unhealthy[/red]"
                )
                instances.add_row(
                    hostname,
                    str(instance.service_port.port),
                    f"{endpoint.address}:{endpoint.endpoint_port}",
                    health,
                    endpoint.network or "-",
                    endpoint.locality.label or "-",
                )
        self.console.print(instances)

        if report.node_port_addresses:
            node_ports = Table(title="NodePort gateway addresses")
            node_ports.add_column("Hostname", style="cyan", no_wrap=True)
            node_ports.add_column("Node addresses", style="green")
            for hostname, addresses in report.node_port_addresses.items():
                node_ports.add_row(hostname, ", ".join(addresses))
            self.console.print(node_ports)

        if report.gateways:
            gateways = Table(title="Network gateways")
            gateways.add_column("Network", style="yellow")
            gateways.add_column("Address", style="green")
            gateways.add_column("Port", justify="right")
            for gw in report.gateways:
                gateways.add_row(gw.network, gw.address, str(gw.port))
            self.console.print(gateways)

        for error in report.errors:
            self.console.print(f"[yellow]sync error: {error}[/yellow]")
