"""Main CLI entry point for cluster lifecycle management."""

from pathlib import Path

import typer
from pydantic import ValidationError as PydanticValidationError
from rich.console import Console
from rich.table import Table

from kubefleet.exceptions import KubefleetError
from kubefleet.logging_config import get_logger, setup_logging

app = typer.Typer(
    name="kubefleet",
    help="Kubernetes cluster lifecycle management over SSH",
    add_completion=False,
)

console = Console()
logger = get_logger(__name__)


# Global callback to set up logging
@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
    log_file: str | None = typer.Option(None, "--log-file", help="Path to log file"),
):
    """Global options for all commands."""
    log_path = Path(log_file) if log_file else None
    setup_logging(verbose=verbose, log_file=log_path)
    logger.debug("Logging initialized")


@app.command()
def version() -> None:
    """Show version information."""
    from kubefleet import __version__

    typer.echo(f"Kubefleet version {__version__}")


def _split_hosts(value: str | None) -> list[str]:
    """Parse a comma separated host list."""
    if not value:
        return []
    return [h.strip() for h in value.split(",") if h.strip()]


def _fail(e: Exception) -> None:
    """Print an error the way every command does and exit with code 1."""
    if isinstance(e, KubefleetError):
        logger.error(f"Operation failed: {e.message}")
        console.print(f"[red]Error:[/red] {e.message}")
        if e.details:
            console.print(f"\n[yellow]Details:[/yellow] {e.details}")
    elif isinstance(e, PydanticValidationError):
        console.print(f"[red]Invalid cluster configuration:[/red]\n{e}")
    else:
        logger.error(f"Unexpected error: {e}", exc_info=True)
        console.print(f"[red]Unexpected error:[/red] {e}")
        console.print("\nRun with --verbose --log-file debug.log for more details")
    raise typer.Exit(code=1)


def _resolve_clusterfile(name: str, clusterfile: str | None):
    from kubefleet.clusterfile import ClusterFile

    path = Path(clusterfile) if clusterfile else ClusterFile.default_path(name)
    return ClusterFile(path)


def _build_installer(cluster, cluster_file, rootfs: str | None, force: bool = False, prune: bool = False):
    """Wire the collaborators for one operation on ``cluster``."""
    from kubefleet.container_runtime import get_cluster_install_info
    from kubefleet.distributor import ScpDistributor
    from kubefleet.hooks import hooks_from_plugins
    from kubefleet.infradriver import AnsibleInfraDriver
    from kubefleet.installer import Installer, InstallerOptions, RuntimeConfig

    driver = AnsibleInfraDriver(cluster)
    distributor = ScpDistributor(rootfs or driver.get_cluster_rootfs_path(), driver)
    runtime_config = RuntimeConfig(
        distributor=distributor,
        container_runtime_config=cluster.spec.container_runtime,
        kubeadm_config=cluster.spec.kubeadm_config,
        kubeconfig_path=cluster_file.kubeconfig_path,
        local_rootfs=rootfs,
    )
    install_info = get_cluster_install_info({}, cluster.spec.container_runtime)
    hooks = hooks_from_plugins(cluster.spec.plugins, driver).build()

    return Installer(
        driver,
        runtime_config,
        install_info,
        hooks=hooks,
        cluster_file=cluster_file,
        options=InstallerOptions(force=force, prune=prune),
    )


@app.command()
def run(
    name: str = typer.Option("my-cluster", "--name", "-n", help="Cluster name"),
    image: str | None = typer.Option(None, "--image", "-i", help="Cluster image reference"),
    masters: str | None = typer.Option(None, "--masters", "-m", help="Comma separated master addresses"),
    nodes: str | None = typer.Option(None, "--nodes", help="Comma separated node addresses"),
    user: str = typer.Option("root", "--user", "-u", help="SSH user"),
    password: str | None = typer.Option(None, "--passwd", "-p", help="SSH password"),
    pk: str | None = typer.Option(None, "--pk", help="SSH private key file"),
    port: int = typer.Option(22, "--port", help="SSH port"),
    env: list[str] = typer.Option([], "--env", "-e", help="Cluster environment variable KEY=VALUE"),
    cmds: list[str] = typer.Option([], "--cmd", help="Command to launch after install"),
    clusterfile: str | None = typer.Option(
        None, "--clusterfile", "-f", help="Install from an existing Clusterfile instead of flags"
    ),
    rootfs: str | None = typer.Option(None, "--rootfs", help="Local directory holding the unpacked image"),
) -> None:
    """
    Create a new cluster.

    The cluster is described either by flags or by a Clusterfile. The first
    master becomes master0, where the control plane is initialized.
    """
    from kubefleet.clusterfile import ClusterFile
    from kubefleet.models.cluster import MASTER, NODE, Cluster, ClusterSpec, Host, SSHConfig

    try:
        if clusterfile:
            source = ClusterFile(clusterfile)
            cluster = source.load()
            cluster_file = ClusterFile(ClusterFile.default_path(cluster.name))
        else:
            master_ips = _split_hosts(masters)
            if not image or not master_ips:
                console.print("[red]Error:[/red] --image and --masters are required without --clusterfile")
                raise typer.Exit(code=1)
            hosts = [Host(ips=master_ips, roles=[MASTER])]
            node_ips = _split_hosts(nodes)
            if node_ips:
                hosts.append(Host(ips=node_ips, roles=[NODE]))
            cluster = Cluster(
                name=name,
                spec=ClusterSpec(
                    image=image,
                    env=env,
                    cmds=cmds,
                    hosts=hosts,
                    ssh=SSHConfig(user=user, password=password, port=port, pk=pk),
                ),
            )
            cluster_file = _resolve_clusterfile(name, None)

        if cluster_file.exists():
            console.print(f"[red]Error:[/red] Cluster '{cluster.name}' already exists at {cluster_file.path}")
            console.print("Use 'kubefleet scale-up' to add hosts or 'kubefleet delete --all' first")
            raise typer.Exit(code=1)

        console.print(f"[cyan]Installing cluster {cluster.name} from {cluster.spec.image}...[/cyan]")
        installer = _build_installer(cluster, cluster_file, rootfs)
        installer.install()

        console.print(f"[green]✓[/green] Cluster {cluster.name} is ready")
        console.print(f"  Master0: {cluster.master0}")
        console.print(f"  Kubeconfig: {installer.kubeconfig_path}")

    except typer.Exit:
        raise
    except Exception as e:
        _fail(e)


@app.command("scale-up")
def scale_up(
    name: str = typer.Option("my-cluster", "--name", "-n", help="Cluster name"),
    masters: str | None = typer.Option(None, "--masters", "-m", help="Comma separated master addresses"),
    nodes: str | None = typer.Option(None, "--nodes", help="Comma separated node addresses"),
    clusterfile: str | None = typer.Option(None, "--clusterfile", "-f", help="Path to the Clusterfile"),
    rootfs: str | None = typer.Option(None, "--rootfs", help="Local directory holding the unpacked image"),
) -> None:
    """Add masters or nodes to an existing cluster."""
    master_ips = _split_hosts(masters)
    node_ips = _split_hosts(nodes)
    if not master_ips and not node_ips:
        console.print("[red]Error:[/red] Provide --masters and/or --nodes")
        raise typer.Exit(code=1)

    try:
        cluster_file = _resolve_clusterfile(name, clusterfile)
        cluster = cluster_file.load()
        installer = _build_installer(cluster, cluster_file, rootfs)

        console.print(f"[cyan]Scaling up cluster {cluster.name}...[/cyan]")
        installer.scale_up(master_ips, node_ips)
        console.print(f"[green]✓[/green] Added {len(master_ips) + len(node_ips)} host(s) to {cluster.name}")

    except Exception as e:
        _fail(e)


@app.command()
def delete(
    name: str = typer.Option("my-cluster", "--name", "-n", help="Cluster name"),
    masters: str | None = typer.Option(None, "--masters", "-m", help="Comma separated masters to remove"),
    nodes: str | None = typer.Option(None, "--nodes", help="Comma separated nodes to remove"),
    delete_all: bool = typer.Option(False, "--all", "-a", help="Delete the whole cluster"),
    force: bool = typer.Option(False, "--force", help="Skip confirmation and keep going past failures"),
    prune: bool = typer.Option(False, "--prune", help="Also remove the cluster data directory on hosts"),
    clusterfile: str | None = typer.Option(None, "--clusterfile", "-f", help="Path to the Clusterfile"),
) -> None:
    """
    Remove hosts from a cluster, or delete the whole cluster.

    Hosts that cannot be reached over SSH are only removed from Kubernetes.
    """
    master_ips = _split_hosts(masters)
    node_ips = _split_hosts(nodes)
    if delete_all == bool(master_ips or node_ips):
        console.print("[red]Error:[/red] Use either --all or --masters/--nodes")
        raise typer.Exit(code=1)

    try:
        cluster_file = _resolve_clusterfile(name, clusterfile)
        cluster = cluster_file.load()

        if delete_all and not force:
            if not typer.confirm(f"Delete cluster {cluster.name} and all its hosts?"):
                console.print("Cancelled")
                raise typer.Exit(code=0)

        installer = _build_installer(cluster, cluster_file, None, force=force, prune=prune)

        if delete_all:
            console.print(f"[cyan]Deleting cluster {cluster.name}...[/cyan]")
            installer.uninstall()
            console.print(f"[green]✓[/green] Cluster {cluster.name} deleted")
        else:
            console.print(f"[cyan]Removing hosts from cluster {cluster.name}...[/cyan]")
            installer.scale_down(master_ips, node_ips)
            console.print(f"[green]✓[/green] Hosts removed, master0 is {cluster.master0}")

    except typer.Exit:
        raise
    except Exception as e:
        _fail(e)


def _switch_image(name: str, image: str, clusterfile: str | None, rootfs: str | None, rollback: bool) -> None:
    try:
        cluster_file = _resolve_clusterfile(name, clusterfile)
        cluster = cluster_file.load()
        previous = cluster.spec.image
        cluster.spec.image = image
        installer = _build_installer(cluster, cluster_file, rootfs)

        action = "Rolling back" if rollback else "Upgrading"
        console.print(f"[cyan]{action} cluster {cluster.name}: {previous} -> {image}[/cyan]")
        if rollback:
            installer.rollback()
        else:
            installer.upgrade()
        console.print(f"[green]✓[/green] Cluster {cluster.name} now runs {image}")

    except Exception as e:
        _fail(e)


@app.command()
def upgrade(
    image: str = typer.Argument(..., help="New cluster image reference"),
    name: str = typer.Option("my-cluster", "--name", "-n", help="Cluster name"),
    clusterfile: str | None = typer.Option(None, "--clusterfile", "-f", help="Path to the Clusterfile"),
    rootfs: str | None = typer.Option(None, "--rootfs", help="Local directory holding the unpacked image"),
) -> None:
    """Upgrade a cluster to a new image."""
    _switch_image(name, image, clusterfile, rootfs, rollback=False)


@app.command()
def rollback(
    image: str = typer.Argument(..., help="Previously installed cluster image reference"),
    name: str = typer.Option("my-cluster", "--name", "-n", help="Cluster name"),
    clusterfile: str | None = typer.Option(None, "--clusterfile", "-f", help="Path to the Clusterfile"),
    rootfs: str | None = typer.Option(None, "--rootfs", help="Local directory holding the unpacked image"),
) -> None:
    """Roll a cluster back to a previous image without downgrading Kubernetes."""
    _switch_image(name, image, clusterfile, rootfs, rollback=True)


@app.command("load-images")
def load_images(
    name: str = typer.Option("my-cluster", "--name", "-n", help="Cluster name"),
    clusterfile: str | None = typer.Option(None, "--clusterfile", "-f", help="Path to the Clusterfile"),
    rootfs: str | None = typer.Option(None, "--rootfs", help="Local directory holding the unpacked image"),
) -> None:
    """Push the container images of an unpacked image into the cluster registry."""
    try:
        cluster_file = _resolve_clusterfile(name, clusterfile)
        cluster = cluster_file.load()
        installer = _build_installer(cluster, cluster_file, rootfs)

        registry_driver, _ = installer.get_current_driver()
        console.print(f"[cyan]Loading container images into {registry_driver.get_info().url}...[/cyan]")
        registry_driver.upload_container_images()
        console.print(f"[green]✓[/green] Container images loaded for {cluster.name}")

    except Exception as e:
        _fail(e)


@app.command()
def status(
    name: str = typer.Option("my-cluster", "--name", "-n", help="Cluster name"),
    clusterfile: str | None = typer.Option(None, "--clusterfile", "-f", help="Path to the Clusterfile"),
) -> None:
    """Show the persisted state of a cluster."""
    try:
        cluster_file = _resolve_clusterfile(name, clusterfile)
        cluster = cluster_file.load()
    except Exception as e:
        _fail(e)

    table = Table(title=f"Cluster {cluster.name}")
    table.add_column("Address", style="cyan")
    table.add_column("Roles", style="magenta")
    table.add_column("Labels", style="green")
    table.add_column("Taints", style="yellow")

    for host in cluster.spec.hosts:
        for ip in host.ips:
            labels = ", ".join(f"{k}={v}" for k, v in host.labels.items()) or "-"
            table.add_row(ip, ", ".join(host.roles), labels, ", ".join(host.taints) or "-")

    console.print(table)
    console.print(f"\n[bold]Image:[/bold] {cluster.spec.image}")
    try:
        console.print(f"[bold]Master0:[/bold] {cluster.master0}")
    except KubefleetError as e:
        console.print(f"[bold]Master0:[/bold] [red]{e.message}[/red]")

    registry = cluster.spec.registry
    if registry.external_registry is not None:
        console.print(f"[bold]Registry:[/bold] external {registry.external_registry.url}")
    else:
        local = registry.local_registry
        mode = "HA" if local.ha else "single"
        deploy_hosts = ", ".join(local.deploy_hosts) or "none"
        console.print(f"[bold]Registry:[/bold] {local.url} ({mode}) on {deploy_hosts}")


if __name__ == "__main__":
    app()
