#!/usr/bin/env python3
"""
Main CLI entry point for meshreg.

Provides offline tooling around the registry controller:
- Inspect what a cluster snapshot reconciles into
"""

import json
import sys

import click
from rich.console import Console

from meshreg.config import ControllerSettings, EndpointMode
from meshreg.core.logging import configure_from_settings
from meshreg.errors import RegistryError

from .inspector import RegistryInspector

console = Console()


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.option(
    "--debug-scope",
    multiple=True,
    help="Enable DEBUG logs for a module, e.g. controller.endpoints",
)
@click.pass_context
def cli(ctx, verbose: bool, debug_scope: tuple[str, ...]):
    """
    meshreg service registry tools.

    Settings are read from MESHREG_* environment variables and a .env file;
    command line options override them.
    """
    settings = ControllerSettings()
    configure_from_settings(
        settings, verbose=verbose, extra_scopes=debug_scope, colorize=True
    )
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


@cli.command()
@click.argument("snapshot", type=click.Path(exists=True, dir_okay=False))
@click.option("--cluster-id", help="Cluster id to reconcile the snapshot as")
@click.option("--domain-suffix", help="DNS suffix for service hostnames")
@click.option(
    "--endpoint-mode",
    type=click.Choice([mode.value for mode in EndpointMode]),
    help="Endpoint source strategy",
)
@click.option("--json", "as_json", is_flag=True, help="Print the report as JSON")
@click.pass_context
def inspect(
    ctx,
    snapshot: str,
    cluster_id: str | None,
    domain_suffix: str | None,
    endpoint_mode: str | None,
    as_json: bool,
):
    """Run one full sync over SNAPSHOT and print the resulting registry."""
    settings: ControllerSettings = ctx.obj["settings"]
    overrides: dict[str, object] = {}
    if cluster_id:
        overrides["cluster_id"] = cluster_id
    if domain_suffix:
        overrides["domain_suffix"] = domain_suffix
    if endpoint_mode:
        overrides["endpoint_mode"] = EndpointMode(endpoint_mode)
    if overrides:
        settings = settings.model_copy(update=overrides)

    inspector = RegistryInspector(settings, console)
    try:
        report = inspector.inspect(snapshot)
    except RegistryError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)

    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
    else:
        inspector.display(report)


def main():
    """Main CLI entry point."""
    try:
        cli()
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled by user[/yellow]")
        sys.exit(1)


if __name__ == "__main__":
    main()
