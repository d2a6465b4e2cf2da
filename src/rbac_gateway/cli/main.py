import logging
import threading
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from ..config import STRATEGIES, GatewayConfig, get_default_config_path, load_config
from ..errors import GatewayException, MalformedPath
from ..proxy import RequestFilter, UpstreamProxy, create_app
from ..rbac import Identity, PermissionStore, ProbeResolver, RBACWatcher
from ..request_info import classify
from ..scoped import ScopedListerWatcher
from ..utils.kube import load_kubernetes_configuration

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@click.group()
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    default=None,
    help="Path to the gateway config file.",
)
@click.pass_context
def main(ctx, config_path) -> None:
    """An RBAC-aware gateway in front of the Kubernetes API server."""
    ctx.ensure_object(dict)
    try:
        ctx.obj["CONFIG"] = load_config(config_path or get_default_config_path())
    except GatewayException as e:
        raise click.ClickException(str(e))


@main.command(help="Serve the gateway.")
@click.option("--identity", type=str, default=None, help="Service account to track.")
@click.option(
    "--strategy",
    type=click.Choice(STRATEGIES),
    default=None,
    help="Resolve permissions from a binding cache or live access reviews.",
)
@click.option("--address", type=str, default=None, help="Address to listen on.")
@click.option("--port", type=int, default=None, help="Port to listen on.")
@click.option(
    "--track-provenance",
    is_flag=True,
    help="Keep a grant until the last binding contributing it is removed.",
)
@click.option("--context", "kube_context", type=str, default=None, help="Kubeconfig context.")
@click.pass_context
def serve(
    ctx,
    identity: Optional[str],
    strategy: Optional[str],
    address: Optional[str],
    port: Optional[int],
    track_provenance: bool,
    kube_context: Optional[str],
) -> None:
    raw = ctx.obj["CONFIG"]
    if identity:
        raw["identity"] = identity
    if strategy:
        raw["strategy"] = strategy
    if address:
        raw["server"]["address"] = address
    if port:
        raw["server"]["port"] = port
    if track_provenance:
        raw["permissions"]["track_provenance"] = True

    try:
        settings = GatewayConfig.from_dict(raw)
        logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)
        run_gateway(settings, kube_context)
    except (GatewayException, ValueError) as e:
        raise click.ClickException(str(e))


def run_gateway(settings: GatewayConfig, kube_context: Optional[str] = None) -> None:
    console = Console()
    tracked = Identity.parse(settings.identity)
    configuration = load_kubernetes_configuration(kube_context)

    stop_flag = threading.Event()
    if settings.strategy == "cache":
        resolver = RBACWatcher(
            tracked, PermissionStore(track_provenance=settings.track_provenance)
        )
        resolver.initialize()
        resolver.start_in_background(stop_flag)
    else:
        resolver = ProbeResolver()

    access = ScopedListerWatcher(
        resolver,
        max_workers=settings.max_workers,
        request_timeout=settings.request_timeout,
        watch_timeout_seconds=settings.watch_timeout_seconds,
    )
    app = create_app(
        access,
        UpstreamProxy.from_configuration(configuration),
        RequestFilter.from_config(settings),
    )

    console.print(
        f"[bold green]RBAC gateway[/bold green] for [cyan]{tracked}[/cyan] "
        f"({settings.strategy} strategy) serving on "
        f"[cyan]{settings.address}:{settings.port}[/cyan] -> {configuration.host}"
    )
    try:
        app.run(host=settings.address, port=settings.port, threaded=True)
    finally:
        stop_flag.set()


@main.command(name="classify", help="Show how a request path is classified.")
@click.argument("path", type=str)
@click.option("--watch", is_flag=True, help="Classify as a watch request.")
@click.option("--method", type=str, default="GET", help="HTTP method of the request.")
def classify_command(path: str, watch: bool, method: str) -> None:
    console = Console()
    try:
        descriptor = classify(path, "watch=true" if watch else None, method)
    except MalformedPath as e:
        raise click.ClickException(str(e))

    table = Table(show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Group", descriptor.group or '""')
    table.add_row("Version", descriptor.version)
    table.add_row("Kind", descriptor.kind)
    table.add_row("Resource", descriptor.resource)
    table.add_row("Scope", descriptor.scope)
    table.add_row("Namespace", descriptor.namespace or "-")
    table.add_row("Name", descriptor.name or "-")
    table.add_row("Subresource", descriptor.subresource or "-")
    table.add_row("Verb", descriptor.verb)
    console.print(table)


if __name__ == "__main__":
    main()
