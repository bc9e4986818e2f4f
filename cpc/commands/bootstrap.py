import typer

from cpc.commands import common
from cpc.errors import CpcError
from cpc.modules.addons import AddonUpgradeOrchestrator
from cpc.modules.bootstrap import NEXT_STEPS, BootstrapOrchestrator
from cpc.modules.retry import RetryPolicy


def bootstrap_cmd(
    force: bool = typer.Option(False, "--force", help="Re-run initialization even if a control plane exists"),
    skip_check: bool = typer.Option(False, "--skip-check", help="Skip the SSH connectivity pre-check"),
):
    """Install Kubernetes on the workspace's VMs and bring the cluster up."""
    runtime = None
    try:
        runtime = common.build_runtime("bootstrap")
        settings = runtime.settings
        typer.echo(f"🚀 Bootstrapping cluster in workspace '{runtime.context.name}'")
        addons = AddonUpgradeOrchestrator(
            runtime.context,
            runtime.control_plane,
            runtime.recovery,
            ready_timeout=settings.timeouts.addon_ready,
            annotation_threshold=settings.addons.annotation_threshold_bytes,
        )
        orchestrator = BootstrapOrchestrator(
            runtime.context,
            runtime.infra,
            runtime.config_runner,
            runtime.control_plane,
            addons,
            runtime.recovery,
            refresh_credentials=runtime.refresh_credentials,
            timeouts=settings.timeouts,
            csr_pattern=settings.addons.csr_pattern,
            csr_policy=RetryPolicy(max_attempts=5, delay=settings.retry.delay * 2, backoff="linear"),
        )
        result = orchestrator.run(force=force, skip_check=skip_check)
    except CpcError as e:
        common.fail(e, runtime.recovery if runtime else None)

    for warning in result.warnings:
        common.warn(warning)
    typer.echo(f"✅ Bootstrap finished: {result.phase.value}")
    typer.echo("Next steps:")
    for step in NEXT_STEPS:
        typer.echo(f"  {step}")
