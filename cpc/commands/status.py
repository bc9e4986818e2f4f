import json
from enum import Enum

import typer
from rich.console import Console
from rich.table import Table

from cpc.commands import common
from cpc.errors import CpcError
from cpc.modules.cache import StatusCache
from cpc.modules.status import StatusAggregator

console = Console()


class StatusMode(str, Enum):
    fast = "fast"
    full = "full"


def _mark(ok):
    if ok is None:
        return ""
    return "✅" if ok else "❌"


def status_cmd(
    mode: StatusMode = typer.Argument(StatusMode.fast, help="fast (cached counts) or full"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON instead of a table"),
):
    """Show cluster health."""
    try:
        runtime = common.build_runtime("status")
    except CpcError as e:
        common.fail(e)
    settings = runtime.settings
    aggregator = StatusAggregator(
        runtime.context.name,
        runtime.infra,
        runtime.control_plane,
        runtime.shell.is_reachable,
        StatusCache(runtime.config.CACHE_DIR, runtime.context.name),
        ssh_ttl=settings.cache.ssh_ttl,
        infra_ttl=settings.cache.infra_ttl,
    )
    report = aggregator.collect(mode.value)

    if as_json:
        typer.echo(json.dumps(report.as_dict(), indent=2, default=str))
        return

    table = Table(title=f"Cluster status: {report.workspace} ({report.mode})")
    table.add_column("Check")
    table.add_column("Value")
    table.add_column("")
    for check in report.checks:
        value = check.error or check.value
        if isinstance(value, dict):
            value = ", ".join(f"{k}={'up' if v else 'down'}" for k, v in value.items()) or "-"
        table.add_row(check.name, str(value), _mark(check.ok))
    console.print(table)
    for check in report.checks:
        if check.error:
            common.warn(f"{check.name}: {check.error}")
