import json
from enum import Enum

import typer
from rich.console import Console
from rich.table import Table

from cpc.commands import common
from cpc.errors import CpcError, FatalError
from cpc.modules.adapters.tofu import InfraDelta
from cpc.modules.roster import roster_variables

console = Console()


class DeployAction(str, Enum):
    plan = "plan"
    apply = "apply"


class OutputFormat(str, Enum):
    table = "table"
    json = "json"


def deploy_cmd(action: DeployAction = typer.Argument(DeployAction.plan, help="plan or apply")):
    """Run the provisioner with the workspace's roster."""
    runtime = None
    try:
        runtime = common.build_runtime("deploy")
        delta = InfraDelta(variables=roster_variables(runtime.context), plan_only=action == DeployAction.plan)
        ok = runtime.recovery.execute_with_recovery(
            lambda: runtime.infra.apply(delta),
            f"deploy_{action.value}",
            f"'{runtime.infra.binary} {action.value}' failed; see output above",
        )
    except CpcError as e:
        common.fail(e, runtime.recovery if runtime else None)
    if not ok:
        common.fail(
            FatalError(f"Provisioner {action.value} failed", hint=f"Fix the error above and re-run 'cpc deploy {action.value}'"),
            runtime.recovery,
        )
    typer.echo(f"✅ {action.value} finished for workspace '{runtime.context.name}'")


def cluster_info_cmd(fmt: OutputFormat = typer.Option(OutputFormat.table, "--format", help="table or json")):
    """Show the VMs the provisioner reports for this workspace."""
    try:
        runtime = common.build_runtime("cluster-info")
        summary = runtime.infra.cluster_summary()
    except CpcError as e:
        common.fail(e)
    if fmt == OutputFormat.json:
        typer.echo(json.dumps(summary.to_dict(), indent=2))
        return
    if not len(summary):
        typer.echo("No VMs deployed.")
        return
    table = Table(title=f"Cluster: {runtime.context.name}")
    for column in ("Node", "Role", "Hostname", "IP", "VM ID"):
        table.add_column(column)
    for key, node in sorted(summary.nodes.items()):
        table.add_row(key, node.role.value, node.hostname, node.address, node.infra_id or "-")
    console.print(table)
