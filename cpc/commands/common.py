"""Per-invocation wiring shared by every command."""
import logging
from dataclasses import dataclass
from typing import Optional

import typer

from cpc.config import Config, CpcSettings, get_settings
from cpc.errors import CpcError, FatalError
from cpc.modules.adapters.ansible import ConfigRunnerAdapter
from cpc.modules.adapters.kube import ControlPlaneAdapter
from cpc.modules.adapters.tofu import InfraAdapter
from cpc.modules.cache import clear_caches
from cpc.modules.context import ContextStore
from cpc.modules.kubeconfig import context_name, install_credentials
from cpc.modules.models import ClusterSummary, WorkspaceContext
from cpc.modules.recovery import RecoveryLog
from cpc.modules.retry import RetryPolicy
from cpc.modules.ssh import RemoteShell

logger = logging.getLogger("cpc.commands")


@dataclass
class Runtime:
    config: Config
    settings: CpcSettings
    store: ContextStore
    context: WorkspaceContext
    infra: InfraAdapter
    shell: RemoteShell
    control_plane: ControlPlaneAdapter
    config_runner: ConfigRunnerAdapter
    recovery: RecoveryLog

    def refresh_credentials(self, summary: ClusterSummary) -> None:
        """Fetch admin credentials from the first control plane and reload the API client."""
        control_planes = summary.control_planes()
        if not control_planes:
            raise FatalError("No control-plane node in cluster_summary", hint="Run 'cpc deploy apply' first")
        self.control_plane.context_name = install_credentials(
            self.shell, control_planes[0].address, self.context.name, self.config.KUBECONFIG
        )
        self.control_plane.reset_client()


def build_store(config: Optional[Config] = None, infra: Optional[InfraAdapter] = None) -> ContextStore:
    config = config or Config()
    return ContextStore(
        envs_dir=config.ENVS_DIR,
        context_file=config.CONTEXT_FILE,
        infra=infra,
        clear_caches=lambda ws: clear_caches(config.CACHE_DIR, ws),
    )


def build_infra(config: Config, settings: CpcSettings) -> InfraAdapter:
    return InfraAdapter(
        config.TERRAFORM_DIR,
        binary=config.INFRA_BINARY,
        retry=RetryPolicy.from_settings(settings.retry),
    )


def build_runtime(workflow: str) -> Runtime:
    """Resolve the active workspace once and wire the adapters for it."""
    config = Config()
    settings = get_settings()
    retry = RetryPolicy.from_settings(settings.retry)
    infra = build_infra(config, settings)
    store = build_store(config, infra)
    context = store.get_active_context()
    logger.debug(f"Active workspace: {context.name}")

    infra.select_workspace(context.name, create=False)
    shell = RemoteShell(
        username=settings.ssh.user or config.REMOTE_USER,
        key_path=settings.ssh.key_path or config.SSH_KEY_PATH,
        port=settings.ssh.port,
        connect_timeout=settings.ssh.connect_timeout,
        command_timeout=settings.ssh.command_timeout,
    )
    control_plane = ControlPlaneAdapter(
        config.KUBECONFIG,
        context_name=context_name(context.name),
        shell=shell,
        retry=retry,
    )
    control_plane.poll_interval = settings.timeouts.poll_interval

    summary_cache = {}

    def summary() -> ClusterSummary:
        if "value" not in summary_cache:
            summary_cache["value"] = infra.cluster_summary()
        return summary_cache["value"]

    config_runner = ConfigRunnerAdapter(
        config.ANSIBLE_DIR,
        context,
        summary,
        remote_user=settings.ssh.user or config.REMOTE_USER,
        ssh_key_path=settings.ssh.key_path or config.SSH_KEY_PATH,
        retry=retry,
    )
    return Runtime(
        config=config,
        settings=settings,
        store=store,
        context=context,
        infra=infra,
        shell=shell,
        control_plane=control_plane,
        config_runner=config_runner,
        recovery=RecoveryLog(workflow, log_dir=config.CACHE_DIR),
    )


def warn(message: str) -> None:
    typer.echo(f"⚠️  {message}", err=True)


def fail(error: CpcError, recovery: Optional[RecoveryLog] = None) -> None:
    """Print a one-line cause and the suggested next command, then exit 1."""
    typer.echo(f"❌ {error.message}", err=True)
    if error.hint:
        typer.echo(f"👉 {error.hint}", err=True)
    if recovery is not None and recovery.checkpoints:
        logger.debug(recovery.report())
        typer.echo(f"ℹ️  {recovery.resume_hint()}", err=True)
        if recovery.log_path is not None:
            typer.echo(f"ℹ️  Checkpoint log: {recovery.log_path}", err=True)
    raise typer.Exit(code=1)
