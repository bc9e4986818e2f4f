import typer

from cpc.commands import common
from cpc.errors import CpcError
from cpc.modules.models import NodeRole
from cpc.modules.nodes import NodeLifecycleManager


def _manager(workflow: str):
    runtime = common.build_runtime(workflow)
    manager = NodeLifecycleManager(
        runtime.context,
        runtime.store,
        runtime.infra,
        runtime.config_runner,
        runtime.control_plane,
        runtime.recovery,
        csr_pattern=runtime.settings.addons.csr_pattern,
        domain=runtime.settings.domain,
    )
    return runtime, manager


def add_node_cmd(
    role: NodeRole = typer.Option(NodeRole.WORKER, "--role", help="Node role"),
    name: str = typer.Option(None, "--name", help="Explicit node name (default: next free name)"),
):
    """Add a node to the roster and create its VM."""
    runtime = None
    try:
        runtime, manager = _manager("add-node")
        spec = manager.add(role, name)
    except CpcError as e:
        common.fail(e, runtime.recovery if runtime else None)
    typer.echo(f"✅ Added {spec.role.value} {spec.name} ({spec.state.value})")
    typer.echo(f"Next: cpc prepare-node {spec.name} && cpc join-node {spec.name}")


def remove_node_cmd(
    name: str = typer.Argument(..., help="Node name, e.g. worker-3"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
    skip_drain: bool = typer.Option(False, "--skip-drain", help="Do not drain the node first"),
):
    """Drain a node, remove it from the roster and destroy its VM."""
    runtime = None
    try:
        runtime, manager = _manager("remove-node")
        manager.removable(name)
        if not yes and not typer.confirm(f"Remove node '{name}' and destroy its VM?", default=False):
            typer.echo("❌ Removal cancelled.")
            raise typer.Exit()
        report = manager.remove(name, drain=not skip_drain)
    except CpcError as e:
        common.fail(e, runtime.recovery if runtime else None)
    for warning in report.warnings:
        common.warn(warning)
    typer.echo(f"✅ Removed {report.name}")


def prepare_node_cmd(name: str = typer.Argument(..., help="Node name")):
    """Install Kubernetes components on one provisioned node."""
    runtime = None
    try:
        runtime, manager = _manager("prepare-node")
        manager.prepare(name)
    except CpcError as e:
        common.fail(e, runtime.recovery if runtime else None)
    typer.echo(f"✅ {name} prepared")


def join_node_cmd(name: str = typer.Argument(..., help="Node name")):
    """Join one provisioned node to the cluster."""
    runtime = None
    try:
        runtime, manager = _manager("join-node")
        joined = manager.join(name)
    except CpcError as e:
        common.fail(e, runtime.recovery if runtime else None)
    typer.echo(f"✅ {name} joined" if joined else f"ℹ️  {name} was already a member")


def drain_node_cmd(name: str = typer.Argument(..., help="Node name")):
    """Evict workloads from a node."""
    runtime = None
    try:
        runtime, manager = _manager("drain-node")
        manager.drain(name)
    except CpcError as e:
        common.fail(e, runtime.recovery if runtime else None)


def upgrade_node_cmd(
    name: str = typer.Argument(..., help="Node name"),
    version: str = typer.Option(..., "--version", help="Target Kubernetes version, X.Y.Z"),
    skip_drain: bool = typer.Option(False, "--skip-drain", help="Do not drain the node first"),
):
    """Upgrade Kubernetes on one node."""
    runtime = None
    try:
        runtime, manager = _manager("upgrade-node")
        manager.upgrade(name, version, drain=not skip_drain)
    except CpcError as e:
        common.fail(e, runtime.recovery if runtime else None)
    typer.echo(f"✅ {name} upgraded to {version}")


def reset_node_cmd(
    name: str = typer.Argument(..., help="Node name"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
):
    """Wipe Kubernetes from one node (destructive)."""
    runtime = None
    try:
        runtime, manager = _manager("reset-node")
        if not yes and not typer.confirm(f"Reset Kubernetes on '{name}'?", default=False):
            typer.echo("❌ Reset cancelled.")
            raise typer.Exit()
        manager.reset(name)
    except CpcError as e:
        common.fail(e, runtime.recovery if runtime else None)
    typer.echo(f"✅ {name} reset")
