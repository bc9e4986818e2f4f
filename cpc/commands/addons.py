import typer
from rich.console import Console
from rich.table import Table

from cpc.commands import common
from cpc.errors import CpcError
from cpc.modules.addons import ALL, AddonUpgradeOrchestrator
from cpc.modules.models import AddonOutcome

console = Console()

OUTCOME_STYLE = {
    AddonOutcome.CURRENT: "cyan",
    AddonOutcome.UPGRADED: "green",
    AddonOutcome.FAILED: "red",
}


def upgrade_addons_cmd(
    addon: str = typer.Option(ALL, "--addon", help="Addon name or 'all'"),
    version: str = typer.Option(None, "--version", help="Target version (single addon only)"),
):
    """Upgrade cluster addons whose live version differs from the target."""
    runtime = None
    try:
        runtime = common.build_runtime("upgrade-addons")
        orchestrator = AddonUpgradeOrchestrator(
            runtime.context,
            runtime.control_plane,
            runtime.recovery,
            ready_timeout=runtime.settings.timeouts.addon_ready,
            annotation_threshold=runtime.settings.addons.annotation_threshold_bytes,
        )
        results = orchestrator.upgrade(addon, version)
    except CpcError as e:
        common.fail(e, runtime.recovery if runtime else None)

    table = Table(title=f"Addons in {runtime.context.name}")
    table.add_column("Addon")
    table.add_column("Before")
    table.add_column("After")
    table.add_column("Target")
    table.add_column("Result")
    for r in results:
        style = OUTCOME_STYLE[r.outcome]
        table.add_row(r.name, r.before or "-", r.after or "-", r.target or "-", f"[{style}]{r.outcome.value}[/{style}]")
    console.print(table)

    for r in results:
        for warning in r.warnings:
            common.warn(f"{r.name}: {warning}")
    failed = [r.name for r in results if r.outcome == AddonOutcome.FAILED]
    if failed:
        typer.echo(f"❌ Failed: {', '.join(failed)}", err=True)
        raise typer.Exit(code=1)
