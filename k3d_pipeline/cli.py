"""Main CLI entry point for the provisioning pipeline."""

from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from k3d_pipeline.exceptions import PipelineError, ProvisionError
from k3d_pipeline.logging_config import get_logger, setup_logging
from k3d_pipeline.models.cluster import ClusterHandle, ClusterLifecycle
from k3d_pipeline.models.config import PipelineConfig
from k3d_pipeline.pipeline import STAGES, PipelineReport, ProvisioningPipeline, StageStatus

app = typer.Typer(
    name="k3d-pipeline",
    help="Provision an EC2 host and run a k3d cluster on it",
    add_completion=False,
)

console = Console()
logger = get_logger(__name__)

DEFAULT_CONFIG = "k3d-pipeline.yml"

STATUS_STYLES = {
    StageStatus.SUCCEEDED: "[green]✓ succeeded[/green]",
    StageStatus.FAILED: "[red]✗ failed[/red]",
    StageStatus.CANCELLED: "[yellow]cancelled[/yellow]",
    StageStatus.SKIPPED: "[blue]skipped[/blue]",
    StageStatus.NOT_ATTEMPTED: "[dim]not attempted[/dim]",
}


def config_option():
    return typer.Option(DEFAULT_CONFIG, "--config", "-c", help="Path to pipeline configuration")


def load_config(path: str) -> PipelineConfig:
    return PipelineConfig.load(path)


def build_pipeline(config: PipelineConfig) -> ProvisioningPipeline:
    return ProvisioningPipeline(config)


def _fail(e: PipelineError) -> None:
    logger.error(e.message)
    console.print(f"[red]Error:[/red] {e.message}")
    if e.details:
        console.print(f"\n{e.details}")
    raise typer.Exit(code=1)


def _interrupted(action: str) -> None:
    console.print(f"\n[yellow]{action} interrupted by user[/yellow]")
    console.print("Completed steps are kept; re-run the command to continue")
    raise typer.Exit(code=130)


def _cluster_handle(pipeline: ProvisioningPipeline, builder) -> ClusterHandle:
    topology = pipeline.config.cluster
    return builder.get(topology.name) or ClusterHandle(
        name=topology.name, context=topology.context, lifecycle=ClusterLifecycle.ABSENT
    )


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
    from k3d_pipeline import __version__

    typer.echo(f"k3d-pipeline version {__version__}")


@app.command()
def probe() -> None:
    """
    Check the local toolchain and host resources.

    Absent tools are reported, not treated as errors. Only terraform is
    required locally; the cluster tools are installed on the remote host.
    """
    from k3d_pipeline.probe import EnvironmentProbe

    status = EnvironmentProbe().probe()

    table = Table(title=f"Toolchain on {status.host}")
    table.add_column("Tool", style="cyan")
    table.add_column("Status")
    table.add_column("Path", style="magenta")
    table.add_column("Version", style="blue")
    for name, tool in status.tools.items():
        found = "[green]✓ found[/green]" if tool.found else "[red]✗ missing[/red]"
        table.add_row(name, found, tool.path or "-", tool.version or "-")
    console.print(table)

    for warning in status.resources.warnings():
        console.print(f"[yellow]Warning:[/yellow] {warning}")

    if status.missing:
        console.print(f"\n[bold]Missing:[/bold] {', '.join(status.missing)}")
    else:
        console.print("\n[green]✓ All tools found[/green]")


@app.command()
def validate(config_path: str = config_option()) -> None:
    """Validate the configuration without contacting any external system."""
    from k3d_pipeline.terraform import InfrastructureProvisioner

    try:
        config = load_config(config_path)
        InfrastructureProvisioner.validate(config.provisioning)
        manifests = config.manifest_set()
        manifests.validate_order()
    except PipelineError as e:
        _fail(e)

    console.print(f"[green]✓[/green] Configuration {config_path} is valid")
    console.print(f"  Region: {config.provisioning.region}")
    console.print(f"  Instance: {config.provisioning.instance_type} ({config.provisioning.volume_size}GB)")
    console.print(
        f"  Cluster: {config.cluster.name} "
        f"({config.cluster.servers} servers, {config.cluster.agents} agents)"
    )
    console.print(f"  Manifests: {', '.join(manifests.names)}")


@app.command()
def plan(
    config_path: str = config_option(),
    destroy: bool = typer.Option(False, "--destroy", help="Plan destruction instead"),
) -> None:
    """Show the infrastructure changes the configuration would make."""
    try:
        config = load_config(config_path)
        summary = build_pipeline(config).provisioner.plan(config.provisioning, destroy=destroy)
    except PipelineError as e:
        _fail(e)

    if not summary.has_changes:
        console.print("[green]✓[/green] Infrastructure matches the configuration")
        return

    table = Table(title="Planned Changes")
    table.add_column("Action", style="magenta")
    table.add_column("Resource", style="cyan")
    for change in summary.changes:
        if change.kind == "no-op":
            continue
        action = f"[red]{change.kind}[/red]" if change.destructive else change.kind
        table.add_row(action, change.address)
    console.print(table)

    if summary.destructive and not destroy:
        console.print(
            "\n[yellow]Warning:[/yellow] This plan replaces or deletes resources; "
            "provision requires --allow-replace"
        )


@app.command()
def provision(
    config_path: str = config_option(),
    allow_replace: bool = typer.Option(
        False, "--allow-replace", help="Apply plans that replace or delete resources"
    ),
) -> None:
    """Create or update the EC2 host. Unchanged configuration makes no changes."""
    try:
        config = load_config(config_path)
        state = build_pipeline(config).provisioner.apply(
            config.provisioning, allow_replace=allow_replace
        )
    except KeyboardInterrupt:
        _interrupted("Provisioning")
    except PipelineError as e:
        _fail(e)

    console.print(f"[green]✓[/green] Instance {state.instance_id} is ready")
    console.print(f"  Public IP: {state.public_ip}")
    if state.private_ip:
        console.print(f"  Private IP: {state.private_ip}")
    console.print(f"\nSSH: ssh -i {config.ssh.private_key_path} {config.ssh.user}@{state.public_ip}")


@app.command()
def bootstrap(config_path: str = config_option()) -> None:
    """Install docker, kubectl, k3d and helm on the provisioned host."""
    try:
        config = load_config(config_path)
        pipeline = build_pipeline(config)
        state = pipeline.provisioner.outputs()
        status = pipeline.bootstrapper.bootstrap(state)
    except KeyboardInterrupt:
        _interrupted("Bootstrap")
    except PipelineError as e:
        _fail(e)

    table = Table(title=f"Toolchain on {status.host}")
    table.add_column("Tool", style="cyan")
    table.add_column("Version", style="blue")
    for name, tool in status.tools.items():
        table.add_row(name, tool.version or "-")
    console.print(table)
    for warning in status.resources.warnings():
        console.print(f"[yellow]Warning:[/yellow] {warning}")
    console.print(f"\n[green]✓[/green] Bootstrap complete (session: {status.session_mode.value})")


@app.command("create-cluster")
def create_cluster(config_path: str = config_option()) -> None:
    """Create the k3d cluster on the provisioned host and save its credentials."""
    from k3d_pipeline.credentials import CredentialStore

    try:
        config = load_config(config_path)
        pipeline = build_pipeline(config)
        state = pipeline.provisioner.outputs()
        builder = pipeline.builder_factory(pipeline.cluster_runner(state))
        handle, credentials = builder.create_cluster(
            config.cluster,
            CredentialStore.load(config.kubeconfig),
            timeout=config.timeouts.cluster_ready,
            api_host=state.public_ip,
        )
        credentials.save()
    except KeyboardInterrupt:
        _interrupted("Cluster creation")
    except PipelineError as e:
        _fail(e)

    _print_nodes(handle)
    console.print(f"\n[green]✓[/green] Cluster {handle.name} is {handle.lifecycle.value}")
    console.print(f"  Context: {handle.context}")
    console.print(f"  Kubeconfig: {credentials.path}")


def _print_nodes(handle: ClusterHandle) -> None:
    if not handle.nodes:
        return
    table = Table(title=f"Nodes of {handle.name}")
    table.add_column("Name", style="cyan")
    table.add_column("Role", style="magenta")
    table.add_column("Status", style="green")
    for node in handle.nodes:
        ready = "[green]✓ Ready[/green]" if node.ready else "[red]✗ NotReady[/red]"
        table.add_row(node.name, node.role, ready)
    console.print(table)


@app.command()
def apply(
    config_path: str = config_option(),
    resume_from: str | None = typer.Option(
        None, "--resume-from", help="Skip entries before this one"
    ),
    dry_run: bool = typer.Option(False, "--dry-run", help="Validate without changing the cluster"),
) -> None:
    """Apply namespaces, manifests and charts in order."""
    from k3d_pipeline.credentials import CredentialStore
    from k3d_pipeline.exceptions import ClusterError

    try:
        config = load_config(config_path)
        manifests = config.manifest_set()
        manifests.validate_order()
        pipeline = build_pipeline(config)
        state = pipeline.provisioner.outputs()
        runner = pipeline.cluster_runner(state)
        handle = pipeline.builder_factory(runner).get(config.cluster.name)
        if handle is None:
            raise ClusterError(
                f"Cluster '{config.cluster.name}' does not exist", "Run create-cluster first"
            )
        outcomes = pipeline.applier_factory(runner).apply(
            manifests,
            handle,
            CredentialStore.load(config.kubeconfig),
            rollout_timeout=config.timeouts.rollout,
            dry_run=dry_run,
            resume_from=resume_from,
        )
    except KeyboardInterrupt:
        _interrupted("Apply")
    except PipelineError as e:
        _fail(e)

    table = Table(title="Applied Manifests")
    table.add_column("Entry", style="cyan")
    table.add_column("Status", style="green")
    table.add_column("Resources")
    for outcome in outcomes:
        table.add_row(outcome.name, outcome.status.value, str(len(outcome.resources)))
    console.print(table)


@app.command()
def up(
    config_path: str = config_option(),
    start_at: str = typer.Option(
        "probe", "--start-at", help=f"Stage to start at: {', '.join(STAGES)}"
    ),
    allow_replace: bool = typer.Option(
        False, "--allow-replace", help="Apply plans that replace or delete resources"
    ),
    dry_run: bool = typer.Option(False, "--dry-run", help="Apply manifests with --dry-run"),
) -> None:
    """
    Run the whole pipeline: probe, provision, bootstrap, cluster, manifests.

    Every stage is safe to repeat. After a failure, fix the cause and run
    again, optionally with --start-at set to the failed stage.
    """
    if start_at not in STAGES:
        console.print(
            f"[red]Error:[/red] Invalid stage '{start_at}'. Must be one of: {', '.join(STAGES)}"
        )
        raise typer.Exit(code=1)

    try:
        config = load_config(config_path)
        report = build_pipeline(config).run(
            start_at=start_at, allow_replace=allow_replace, dry_run=dry_run
        )
    except KeyboardInterrupt:
        _interrupted("Pipeline")
    except PipelineError as e:
        _fail(e)

    print_report(report)
    if not report.succeeded:
        console.print(f"\n[red]✗ Stage {report.failed_stage} failed[/red]")
        console.print(report.error.format_message())
        console.print(f"\nRe-run with --start-at {report.failed_stage} once the cause is fixed")
        raise typer.Exit(code=1)

    console.print("\n[green]✓ Pipeline completed successfully[/green]")
    if report.state:
        console.print(f"  Host: {report.state.public_ip} ({report.state.instance_id})")
    if report.cluster:
        console.print(f"  Context: {report.cluster.context}")
    if report.credentials:
        console.print(f"  Kubeconfig: {report.credentials.path}")


def print_report(report: PipelineReport) -> None:
    table = Table(title="Pipeline Stages")
    table.add_column("Stage", style="cyan")
    table.add_column("Status")
    table.add_column("Duration", justify="right")
    table.add_column("Detail")
    for record in report.stages:
        duration = f"{record.duration:.1f}s" if record.duration else "-"
        table.add_row(record.name, STATUS_STYLES[record.status], duration, record.detail)
    console.print(table)


@app.command()
def start(config_path: str = config_option()) -> None:
    """Start a stopped cluster."""
    try:
        config = load_config(config_path)
        pipeline = build_pipeline(config)
        state = pipeline.provisioner.outputs()
        builder = pipeline.builder_factory(pipeline.cluster_runner(state))
        handle = builder.start(
            _cluster_handle(pipeline, builder), timeout=config.timeouts.cluster_ready
        )
    except KeyboardInterrupt:
        _interrupted("Start")
    except PipelineError as e:
        _fail(e)

    _print_nodes(handle)
    console.print(f"[green]✓[/green] Cluster {handle.name} is running")


@app.command()
def stop(config_path: str = config_option()) -> None:
    """Stop the cluster, keeping its data."""
    try:
        config = load_config(config_path)
        pipeline = build_pipeline(config)
        state = pipeline.provisioner.outputs()
        builder = pipeline.builder_factory(pipeline.cluster_runner(state))
        handle = builder.stop(_cluster_handle(pipeline, builder))
    except PipelineError as e:
        _fail(e)

    console.print(f"[green]✓[/green] Cluster {handle.name} is {handle.lifecycle.value}")


@app.command()
def status(
    config_path: str = config_option(),
    show_pods: bool = typer.Option(False, "--pods", "-p", help="Show pods"),
    namespace: str | None = typer.Option(
        None, "--namespace", "-n", help="Filter pods by namespace (requires --pods)"
    ),
) -> None:
    """
    Show node and pod health through the saved cluster credentials.

    Examples:
        k3d-pipeline status
        k3d-pipeline status --pods --namespace databases
    """
    from kubernetes import client
    from kubernetes import config as kube_config
    from kubernetes.client.rest import ApiException
    from kubernetes.config.config_exception import ConfigException

    try:
        config = load_config(config_path)
    except PipelineError as e:
        _fail(e)

    kubeconfig = config.kubeconfig.expanduser()
    try:
        kube_config.load_kube_config(
            config_file=str(kubeconfig), context=config.cluster.context
        )
    except (ConfigException, OSError) as e:
        console.print(f"[red]Error:[/red] Failed to load kubeconfig: {e}")
        console.print("\nMake sure:")
        console.print("  1. The cluster has been created with create-cluster or up")
        console.print(f"  2. Credentials are saved at {kubeconfig}")
        raise typer.Exit(code=1)

    v1 = client.CoreV1Api()
    try:
        nodes = v1.list_node()
    except ApiException as e:
        console.print(f"[red]Error:[/red] Failed to list nodes: {e}")
        raise typer.Exit(code=1)

    table = Table(title=f"Nodes of {config.cluster.name}")
    table.add_column("Name", style="cyan")
    table.add_column("Role", style="magenta")
    table.add_column("Status", style="green")
    table.add_column("Version", style="blue")

    ready_nodes = 0
    for node in sorted(nodes.items, key=lambda n: n.metadata.name):
        labels = node.metadata.labels or {}
        if (
            "node-role.kubernetes.io/control-plane" in labels
            or "node-role.kubernetes.io/master" in labels
        ):
            role = "server"
        else:
            role = "agent"
        conditions = node.status.conditions or []
        ready = any(c.type == "Ready" and c.status == "True" for c in conditions)
        ready_nodes += ready
        table.add_row(
            node.metadata.name,
            role,
            "[green]✓ Ready[/green]" if ready else "[red]✗ NotReady[/red]",
            node.status.node_info.kubelet_version if node.status.node_info else "-",
        )
    console.print(table)

    if show_pods:
        try:
            if namespace:
                pods = v1.list_namespaced_pod(namespace)
            else:
                pods = v1.list_pod_for_all_namespaces()
        except ApiException as e:
            console.print(f"[red]Error:[/red] Failed to list pods: {e}")
            raise typer.Exit(code=1)

        pods_table = Table(title="Pods")
        pods_table.add_column("Namespace", style="cyan")
        pods_table.add_column("Name", style="magenta")
        pods_table.add_column("Phase", style="green")
        pods_table.add_column("Restarts")
        for pod in sorted(pods.items, key=lambda p: (p.metadata.namespace, p.metadata.name)):
            restarts = sum(cs.restart_count for cs in (pod.status.container_statuses or []))
            pods_table.add_row(
                pod.metadata.namespace, pod.metadata.name, pod.status.phase, str(restarts)
            )
        console.print(pods_table)

    console.print(f"\n[bold]Ready nodes:[/bold] {ready_nodes}/{len(nodes.items)}")
    if ready_nodes != len(nodes.items):
        raise typer.Exit(code=1)


@app.command()
def teardown(
    config_path: str = config_option(),
    keep_data: bool = typer.Option(
        False, "--keep-data", help="Stop the cluster and keep the host instead of destroying"
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompt"),
) -> None:
    """
    Delete the cluster and destroy the host, or stop the cluster with --keep-data.

    The cluster is always deleted before the host is destroyed.
    """
    from k3d_pipeline.credentials import CredentialStore
    from k3d_pipeline.teardown import TeardownController

    try:
        config = load_config(config_path)
        pipeline = build_pipeline(config)
        try:
            state = pipeline.provisioner.outputs()
        except ProvisionError:
            if pipeline.provisioner.resources():
                raise
            console.print("[green]✓[/green] Nothing to tear down; no infrastructure exists")
            return

        if not keep_data and not yes:
            console.print(
                f"[yellow]Warning:[/yellow] This deletes cluster '{config.cluster.name}' "
                f"and destroys instance {state.instance_id}"
            )
            if not typer.confirm("Are you sure you want to continue?"):
                console.print("Operation cancelled")
                raise typer.Exit(code=0)

        builder = pipeline.builder_factory(pipeline.cluster_runner(state))
        report = TeardownController(builder, pipeline.provisioner).teardown(
            _cluster_handle(pipeline, builder),
            state,
            keep_data,
            credentials=CredentialStore.load(config.kubeconfig),
            config=config.provisioning,
        )
        if report.credentials is not None and not keep_data:
            report.credentials.save()
    except KeyboardInterrupt:
        _interrupted("Teardown")
    except PipelineError as e:
        _fail(e)

    if report.infrastructure_destroyed:
        console.print(f"[green]✓[/green] Cluster deleted and instance {state.instance_id} destroyed")
    else:
        console.print(
            f"[green]✓[/green] Cluster {report.cluster.name} is {report.cluster.lifecycle.value}; "
            f"instance {state.instance_id} kept"
        )


@app.command()
def destroy(
    config_path: str = config_option(),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompt"),
) -> None:
    """Destroy the infrastructure without contacting the cluster host."""
    try:
        config = load_config(config_path)
        provisioner = build_pipeline(config).provisioner
        if not yes and not typer.confirm("Destroy all provisioned infrastructure?"):
            console.print("Operation cancelled")
            raise typer.Exit(code=0)
        provisioner.destroy(config=config.provisioning)
    except KeyboardInterrupt:
        _interrupted("Destroy")
    except PipelineError as e:
        _fail(e)

    console.print("[green]✓[/green] Infrastructure destroyed")


if __name__ == "__main__":
    app()
